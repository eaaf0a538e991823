"""
SimpleFIN Bridge Provider Implementation

Read-only bank data access over the SimpleFIN protocol.
Documentation: https://www.simplefin.org/protocol.html

Flow:
1. User obtains a Setup Token from SimpleFIN Bridge
2. Setup Token is a Base64-encoded URL
3. If the decoded URL carries Basic Auth credentials it is already the
   Access URL; otherwise it is a claim URL and is POSTed once to obtain one
4. Access URL is used for all further GETs

Rate limit: the bridge allows roughly 24 requests per day per connection.
"""

import base64
import binascii
import logging
from datetime import date, datetime, timezone
from typing import Dict, Any, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit, unquote

import httpx
from pydantic import BaseModel, ValidationError

from .base import BaseBankProvider, StartDate
from ..errors import (
    AccessRevoked, InvalidToken, RateLimited, UpstreamApiError,
    UpstreamProtocolError, UpstreamUnavailable
)

logger = logging.getLogger(__name__)


class SimplefinAccountSet(BaseModel):
    """Body of ``GET {access_url}``."""
    accounts: List[Dict[str, Any]]
    errors: List[Any] = []


def normalize_access_url(raw_url: str) -> str:
    """
    Point an access URL at the ``/simplefin/accounts`` endpoint.

    Bridges hand out URLs ending in ``/simplefin``; some users paste the bare
    host. Unparseable input is returned unchanged.
    """
    try:
        parts = urlsplit(raw_url)
    except ValueError:
        return raw_url

    if not parts.scheme or not parts.netloc:
        return raw_url

    path = parts.path.rstrip("/")
    if not path.endswith("/simplefin/accounts"):
        if path.endswith("/simplefin"):
            path = f"{path}/accounts"
        elif not path:
            path = "/simplefin/accounts"

    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def decode_setup_token(setup_token: str) -> str:
    """
    Decode a Base64 setup token into the URL it wraps.

    Accepts standard and URL-safe alphabets, with or without padding.

    Raises:
        InvalidToken: If decoding fails or the result is not an http(s) URL
    """
    if not setup_token or not isinstance(setup_token, str):
        raise InvalidToken("Setup token is required")

    normalized = setup_token.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)

    try:
        decoded = base64.b64decode(normalized, validate=True).decode("utf-8").strip()
    except (binascii.Error, ValueError):
        raise InvalidToken("Invalid setup token format (must be Base64)") from None

    if not _is_http_url(decoded):
        raise InvalidToken("Invalid setup token (decoded URL is invalid)")

    return decoded


def to_unix_seconds(value: StartDate) -> Optional[int]:
    """Convert a start date (unix seconds, date or datetime) to unix seconds."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise TypeError(f"Unsupported start date type: {type(value).__name__}")


def _is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def _has_credentials(value: str) -> bool:
    try:
        return urlsplit(value).username is not None
    except ValueError:
        return False


def _safe_url(value: str) -> str:
    """Host and path only, for logging."""
    try:
        parts = urlsplit(value)
        return f"{parts.hostname}{parts.path}"
    except ValueError:
        return "<unparseable url>"


def _split_credentials(access_url: str) -> Tuple[str, Optional[httpx.BasicAuth]]:
    """Strip userinfo from the URL and return it as an httpx auth object."""
    try:
        parts = urlsplit(access_url)
        port = parts.port
    except ValueError:
        raise InvalidToken("Access URL is malformed") from None

    if parts.username is None:
        return access_url, None

    netloc = parts.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"

    clean_url = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    auth = httpx.BasicAuth(unquote(parts.username), unquote(parts.password or ""))
    return clean_url, auth


def _account_matches(account: Dict[str, Any], account_id: str) -> bool:
    candidate = account.get("id")
    if candidate is None:
        candidate = account.get("account_id", account.get("accountId"))
    if candidate is None:
        return False
    return str(candidate) == account_id


class SimplefinProvider(BaseBankProvider):
    """
    SimpleFIN Bridge client.

    Holds one pooled ``httpx.AsyncClient`` for the life of the process;
    close it with ``aclose()`` on shutdown.
    """

    def __init__(
        self,
        timeout: float = 15.0,
        user_agent: str = "Daycare-SimpleFIN/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
            transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        accept: str = "application/json"
    ) -> httpx.Response:
        """Send a request and map transport/status failures to typed errors."""
        clean_url, auth = _split_credentials(url)

        try:
            response = await self._client.request(
                method,
                clean_url,
                params=params,
                auth=auth,
                headers={"Accept": accept}
            )
        except httpx.TimeoutException as e:
            logger.error(f"SimpleFIN request to {_safe_url(url)} timed out")
            raise UpstreamUnavailable("SimpleFIN Bridge request timed out") from e
        except httpx.TransportError as e:
            logger.error(f"SimpleFIN network error for {_safe_url(url)}: {type(e).__name__}")
            raise UpstreamUnavailable("Unable to connect to SimpleFIN Bridge") from e

        if response.status_code == 401:
            raise AccessRevoked("SimpleFIN access revoked or expired")
        if response.status_code == 429:
            raise RateLimited("SimpleFIN rate limit exceeded (max 24 requests/day)")
        if not response.is_success:
            logger.error(f"SimpleFIN API error {response.status_code} from {_safe_url(url)}")
            raise UpstreamApiError(
                f"SimpleFIN API error: {response.status_code}",
                status_code=response.status_code
            )

        return response

    async def claim_setup_token(self, setup_token: str) -> str:
        """
        Exchange a SimpleFIN Setup Token for an Access URL.

        Args:
            setup_token: Base64-encoded token from the bridge

        Returns:
            Normalized access URL (includes Basic Auth credentials)

        Raises:
            InvalidToken: Token undecodable, already claimed, or the bridge
                returned something that is not an access URL
        """
        decoded_url = decode_setup_token(setup_token)

        if _has_credentials(decoded_url):
            logger.info(f"Setup token carries access URL for {_safe_url(decoded_url)}")
            return normalize_access_url(decoded_url)

        logger.info(f"Claiming SimpleFIN access URL from {_safe_url(decoded_url)}")

        try:
            response = await self._request("POST", decoded_url, accept="text/plain")
        except AccessRevoked as e:
            raise InvalidToken("Setup token was rejected") from e
        except UpstreamApiError as e:
            # 403 means the setup token was already claimed
            if e.status_code == 403:
                raise InvalidToken("Setup token was already claimed") from e
            raise

        access_url: Any = response.text
        if "json" in response.headers.get("content-type", ""):
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                access_url = payload.get("access_url") or payload.get("url") or ""

        access_url = access_url.strip() if isinstance(access_url, str) else ""

        if not _is_http_url(access_url) or not _has_credentials(access_url):
            raise InvalidToken("Invalid SimpleFIN claim response")

        normalized = normalize_access_url(access_url)
        logger.info(f"Access URL claimed for {_safe_url(normalized)}")
        return normalized

    async def _get_account_set(
        self,
        access_url: str,
        params: Optional[Dict[str, Any]] = None
    ) -> SimplefinAccountSet:
        if not access_url or not isinstance(access_url, str):
            raise InvalidToken("Access URL is required")

        response = await self._request("GET", normalize_access_url(access_url), params=params)

        try:
            account_set = SimplefinAccountSet.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid SimpleFIN response body: {type(e).__name__}")
            raise UpstreamProtocolError("Invalid response from SimpleFIN") from e

        if account_set.errors:
            logger.warning(f"SimpleFIN reported errors: {account_set.errors}")

        return account_set

    async def fetch_accounts(self, access_url: str) -> List[Dict[str, Any]]:
        """
        Fetch accounts from SimpleFIN.

        Raises:
            AccessRevoked, RateLimited, UpstreamUnavailable, UpstreamApiError,
            UpstreamProtocolError
        """
        logger.info("Fetching SimpleFIN accounts")
        account_set = await self._get_account_set(access_url)
        logger.info(f"Found {len(account_set.accounts)} account(s)")
        return account_set.accounts

    async def fetch_account(
        self,
        access_url: str,
        account_id: str,
        start_date: StartDate = None
    ) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Fetch one account and its transactions.

        SimpleFIN returns every account behind the access URL; the requested
        one is picked out by id. An absent account is not an error because
        the bridge omits accounts without activity.
        """
        if not account_id:
            raise ValueError("Account ID is required")

        params = {}
        start_unix = to_unix_seconds(start_date)
        if start_unix is not None:
            params["start-date"] = start_unix

        logger.info(f"Fetching transactions for account {account_id} since {start_unix}")
        account_set = await self._get_account_set(access_url, params=params)

        account_key = str(account_id)
        account = next(
            (a for a in account_set.accounts if _account_matches(a, account_key)),
            None
        )

        if account is None:
            logger.warning(f"Account {account_id} not found in SimpleFIN response")
            return None, []

        transactions = account.get("transactions") or []
        if not isinstance(transactions, list):
            raise UpstreamProtocolError("Invalid transactions list from SimpleFIN")

        logger.info(f"Found {len(transactions)} transaction(s)")
        return account, transactions
