"""
Firefly III Client

Writes normalized bank transactions into Firefly III.
API reference: https://api-docs.firefly-iii.org/

Authentication: Bearer token (Personal Access Token of a service user)
API base: {FIREFLY_BASE_URL}/api/v1
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Any, List, Optional, Union

import httpx
from pydantic import BaseModel, ValidationError, field_validator

from ..errors import (
    AuthenticationFailed, ConfigurationError, UpstreamApiError,
    UpstreamProtocolError, UpstreamUnavailable, ValidationFailed
)

logger = logging.getLogger(__name__)

DIRECTIONS = ("withdrawal", "deposit")
CENT = Decimal("0.01")


class FireflyResource(BaseModel):
    """JSON:API resource object."""
    id: str
    type: Optional[str] = None
    attributes: Dict[str, Any] = {}

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        if value is None or value == "":
            raise ValueError("resource id is required")
        return str(value)


class FireflySingleResponse(BaseModel):
    data: FireflyResource


class FireflyListResponse(BaseModel):
    data: List[FireflyResource]
    meta: Dict[str, Any] = {}


@dataclass
class FireflyAccount:
    id: str
    name: Optional[str]
    type: Optional[str] = None


@dataclass
class FireflyImportResult:
    id: str
    description: str


def _is_duplicate_error(body: Any) -> bool:
    """Firefly reports duplicate-hash rejections as 422 with 'duplicate' in the text."""
    if not isinstance(body, dict):
        return False

    message = body.get("message")
    if isinstance(message, str) and "duplicate" in message.lower():
        return True

    errors = body.get("errors")
    if isinstance(errors, dict):
        for messages in errors.values():
            items = messages if isinstance(messages, list) else [messages]
            if any(isinstance(m, str) and "duplicate" in m.lower() for m in items):
                return True

    return False


def _validation_detail(body: Any) -> str:
    """First human-readable reason from a 422 body."""
    if not isinstance(body, dict):
        return ""

    message = body.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()

    errors = body.get("errors")
    if isinstance(errors, dict) and errors:
        field, messages = next(iter(errors.items()))
        if isinstance(messages, list) and messages:
            return f"{field}: {messages[0]}"
        if messages:
            return f"{field}: {messages}"

    return ""


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _flatten_transaction_groups(groups: List[FireflyResource]) -> List[Dict[str, Any]]:
    """Split JSON:API transaction groups into one dict per split."""
    transactions = []
    for group in groups:
        attributes = group.attributes or {}
        base = {
            "group_id": group.id,
            "group_title": attributes.get("group_title"),
        }
        splits = attributes.get("transactions")
        if isinstance(splits, list) and splits:
            for split in splits:
                if isinstance(split, dict):
                    transactions.append({**base, **split})
        else:
            transactions.append({**base, **attributes})
    return transactions


class FireflyClient:
    """
    Firefly III API client.

    Built once at startup and shared; construction fails fast when the
    service token is missing.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        expense_account_name: str = "Business Expenses",
        revenue_account_name: str = "Business Income",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if not token:
            raise ConfigurationError("Firefly III service PAT not configured (FIREFLY_SERVICE_PAT)")

        self.expense_account_name = expense_account_name
        self.revenue_account_name = revenue_account_name
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/api/v1",
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.api+json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """Send a request; map network failures and 401 to typed errors."""
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            logger.error(f"Firefly III {method} {path} timed out")
            raise UpstreamUnavailable("Firefly III request timed out") from e
        except httpx.TransportError as e:
            logger.error(f"Firefly III network error on {method} {path}: {type(e).__name__}")
            raise UpstreamUnavailable("Unable to connect to Firefly III") from e

        if response.status_code == 401:
            raise AuthenticationFailed("Firefly III authentication failed (check service PAT)")

        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if not response.is_success:
            logger.error(f"Firefly III {operation} error {response.status_code}: {response.text[:500]}")
            raise UpstreamApiError(
                f"Firefly III API error: {response.status_code}",
                status_code=response.status_code
            )

    @staticmethod
    def _parse_single(response: httpx.Response) -> FireflyResource:
        try:
            return FireflySingleResponse.model_validate(response.json()).data
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid Firefly III response: {response.text[:500]}")
            raise UpstreamProtocolError("Invalid response from Firefly III") from e

    @staticmethod
    def _parse_list(response: httpx.Response) -> FireflyListResponse:
        try:
            return FireflyListResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid Firefly III list response: {response.text[:500]}")
            raise UpstreamProtocolError("Invalid response from Firefly III") from e

    async def _get_paginated(
        self,
        path: str,
        params: Dict[str, Any],
        operation: str,
        max_pages: int = 100,
        limit: Optional[int] = None
    ) -> List[FireflyResource]:
        """Follow ``meta.pagination`` until the last page, ``max_pages`` or ``limit``."""
        collected: List[FireflyResource] = []
        page = 1

        while page <= max_pages:
            response = await self._send("GET", path, params={**params, "page": page})
            self._raise_for_status(response, operation)
            listing = self._parse_list(response)
            collected.extend(listing.data)

            if limit and len(collected) >= limit:
                return collected[:limit]

            pagination = listing.meta.get("pagination") if isinstance(listing.meta, dict) else None
            if isinstance(pagination, dict) and pagination.get("current_page") is not None:
                current_page = int(pagination["current_page"])
                total_pages = int(pagination.get("total_pages") or current_page)
                if current_page >= total_pages:
                    break
                page = current_page + 1
            else:
                if not listing.data:
                    break
                page += 1
        else:
            logger.warning(f"Firefly III pagination limit reached for {path}")

        return collected

    @staticmethod
    def _to_account(resource: FireflyResource) -> FireflyAccount:
        return FireflyAccount(
            id=resource.id,
            name=resource.attributes.get("name"),
            type=resource.attributes.get("type")
        )

    async def get_account(self, account_id: str) -> Optional[FireflyAccount]:
        """Fetch an account by id; None if Firefly does not know it."""
        response = await self._send("GET", f"/accounts/{account_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "account fetch")
        return self._to_account(self._parse_single(response))

    async def list_accounts(self, account_type: Optional[str] = None) -> List[FireflyAccount]:
        params = {"type": account_type} if account_type else {}
        resources = await self._get_paginated("/accounts", params, "account search")
        return [self._to_account(r) for r in resources]

    async def find_account_by_name(
        self,
        name: str,
        account_type: Optional[str] = None
    ) -> Optional[FireflyAccount]:
        for account in await self.list_accounts(account_type):
            if account.name == name:
                return account
        return None

    async def _post_account(self, name: str, account_type: str) -> httpx.Response:
        payload: Dict[str, Any] = {"name": name, "type": account_type, "active": True}
        if account_type == "asset":
            payload["account_role"] = "sharedAsset"
        return await self._send("POST", "/accounts", json=payload)

    async def create_account(self, name: str, account_type: str) -> FireflyAccount:
        """
        Create an account, tolerating "already exists".

        On 409/422 the account is looked up by name; if it still cannot be
        found an asset account is retried once as "<name> (Card)".

        Raises:
            ValidationFailed: If the name is taken and no fallback worked
        """
        logger.info(f"Creating Firefly III {account_type} account: {name}")
        response = await self._post_account(name, account_type)

        if response.status_code in (409, 422):
            logger.info(f"Firefly III {account_type} account may already exist, searching...")
            existing = await self.find_account_by_name(name, account_type)
            if existing:
                logger.info(f"Found existing account: ID {existing.id}")
                return existing

            if account_type != "asset":
                raise ValidationFailed(f"{account_type.capitalize()} account name already exists")

            fallback_name = f"{name} (Card)"
            logger.info(f"Creating account with fallback name: {fallback_name}")
            response = await self._post_account(fallback_name, account_type)
            if response.status_code in (409, 422):
                raise ValidationFailed("Account name already exists")
            name = fallback_name

        self._raise_for_status(response, "create account")
        resource = self._parse_single(response)
        logger.info(f"Account created successfully: ID {resource.id}")
        return FireflyAccount(
            id=resource.id,
            name=resource.attributes.get("name") or name,
            type=account_type
        )

    async def ensure_asset_account(
        self,
        existing_id: Optional[str],
        desired_name: str
    ) -> FireflyAccount:
        """
        Resolve the asset account a connection posts into.

        A known id is kept if it still points at an asset account; otherwise
        the account is found by name or created.
        """
        account = None
        if existing_id:
            account = await self.get_account(str(existing_id))

        if account and account.type == "asset":
            return account

        name = desired_name or (account.name if account else None) or "Business Card"
        existing = await self.find_account_by_name(name, "asset")
        if existing:
            return existing

        return await self.create_account(name, "asset")

    async def ensure_revenue_account(self, name: Optional[str] = None) -> FireflyAccount:
        name = name or self.revenue_account_name
        existing = await self.find_account_by_name(name, "revenue")
        if existing:
            return existing
        return await self.create_account(name, "revenue")

    async def import_transaction(
        self,
        *,
        transaction_date: Union[date, str],
        amount: Union[Decimal, float, str],
        description: str,
        external_id: str,
        direction: str,
        asset_account_id: Optional[str] = None,
        source_account_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Optional[FireflyImportResult]:
        """
        Post a single transaction.

        ``amount`` is an unsigned magnitude; ``direction`` alone decides
        whether money leaves (withdrawal) or enters (deposit) the asset account.
        It is sent rounded half-up to cents.

        Returns:
            FireflyImportResult, or None when Firefly reports a duplicate

        Raises:
            ValidationFailed: Missing fields, a zero amount at cent precision
                or a non-duplicate 422
            AuthenticationFailed: 401
            UpstreamUnavailable: Network error or timeout
        """
        try:
            magnitude = abs(Decimal(str(amount))).quantize(CENT, rounding=ROUND_HALF_UP)
        except (InvalidOperation, ValueError):
            raise ValidationFailed("Transaction amount is not a number") from None

        if not transaction_date or not description or not asset_account_id or not external_id:
            raise ValidationFailed("Missing required transaction fields")

        if not magnitude:
            raise ValidationFailed("Transaction amount is zero after rounding to cents")

        if direction not in DIRECTIONS:
            raise ValidationFailed(f"Unknown transaction direction: {direction}")

        date_str = transaction_date.isoformat() if hasattr(transaction_date, "isoformat") else str(transaction_date)
        logger.info(f"Importing {direction}: {description} ({date_str})")

        split: Dict[str, Any] = {
            "type": direction,
            "date": date_str,
            "amount": f"{magnitude:.2f}",
            "description": description,
            "external_id": external_id,
            "notes": notes or None,
        }

        if direction == "withdrawal":
            split["source_id"] = str(asset_account_id)
            split["destination_name"] = self.expense_account_name
        else:
            if not source_account_id:
                source_account_id = (await self.ensure_revenue_account()).id
            split["source_id"] = str(source_account_id)
            split["destination_id"] = str(asset_account_id)

        payload = {
            "error_if_duplicate_hash": True,
            "apply_rules": True,
            "fire_webhooks": True,
            "transactions": [split],
        }

        response = await self._send("POST", "/transactions", json=payload)

        if response.status_code == 422:
            body = _json_body(response)
            if _is_duplicate_error(body):
                logger.info(f"Duplicate transaction skipped: {external_id}")
                return None

            detail = _validation_detail(body)
            logger.error(f"Firefly III validation error: {body}")
            suffix = f" ({detail})" if detail else ""
            raise ValidationFailed(f"Transaction validation failed{suffix}")

        self._raise_for_status(response, "import")
        resource = self._parse_single(response)
        logger.info(f"Transaction imported: ID {resource.id}")

        return FireflyImportResult(id=resource.id, description=description)

    async def fetch_account_transactions(
        self,
        account_id: str,
        start: Optional[Union[date, str]] = None,
        end: Optional[Union[date, str]] = None,
        transaction_type: Optional[str] = None,
        limit: Optional[int] = None,
        max_pages: int = 100
    ) -> List[Dict[str, Any]]:
        """Fetch transactions of one account, flattened to one dict per split."""
        params: Dict[str, Any] = {}
        if start:
            params["start"] = start.isoformat() if hasattr(start, "isoformat") else start
        if end:
            params["end"] = end.isoformat() if hasattr(end, "isoformat") else end
        if transaction_type:
            params["type"] = transaction_type
        if limit:
            params["limit"] = limit

        groups = await self._get_paginated(
            f"/accounts/{account_id}/transactions",
            params,
            "transaction fetch",
            max_pages=max_pages
        )
        transactions = _flatten_transaction_groups(groups)
        return transactions[:limit] if limit else transactions
