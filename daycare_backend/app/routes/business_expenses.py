"""
Business Expense Routes (ADMIN only)

Manages SimpleFIN Bridge connections and their Firefly III import:
- Claiming setup tokens and choosing the card account
- Listing, editing and disconnecting connections
- Manual sync with a daily per-owner quota
- Recent business expense feed read back from Firefly III
"""

import logging
import secrets
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from daycare_backend.config import Settings, get_settings
from daycare_backend.database import get_db
from daycare_backend.app import models, schemas
from daycare_backend.app.auth import get_current_admin_user
from daycare_backend.app.bank_integration.categorization import categorize
from daycare_backend.app.bank_integration.clients import SyncClients, get_sync_clients
from daycare_backend.app.bank_integration.errors import (
    AccessRevoked,
    ConnectionSyncError,
    DecryptionFailed,
    InvalidToken,
    RateLimited,
    SyncError,
)
from daycare_backend.app.bank_integration.service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/business-expenses", tags=["business-expenses"])

ACCOUNT_SEPARATOR = " • "


def _to_safe_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value)


def _account_option(account: Dict[str, Any]) -> schemas.SimplefinAccountOption:
    """Display data for one bridge account; the account number is masked."""
    name = _to_safe_string(account.get("name") or account.get("nickname") or account.get("account_name"))

    org = account.get("org") or account.get("institution")
    if isinstance(org, dict):
        org = org.get("name") or org.get("domain")
    institution = _to_safe_string(org)

    account_type = _to_safe_string(account.get("type") or account.get("account_type"))

    raw_number = (
        account.get("account") or account.get("number")
        or account.get("account_number") or account.get("accountNumber") or ""
    )
    digits = "".join(ch for ch in str(raw_number) if ch.isdigit())
    masked = f"****{digits[-4:]}" if len(digits) >= 4 else ""

    account_id = _to_safe_string(account.get("id"))
    display_name = ACCOUNT_SEPARATOR.join(part for part in (name, institution, account_type, masked) if part)

    return schemas.SimplefinAccountOption(
        id=account_id,
        name=name,
        institution=institution or None,
        type=account_type or None,
        masked_account=masked or None,
        display_name=display_name or account_id
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _store_pending_claim(
    db: Session,
    user_id: int,
    access_url: str,
    clients: SyncClients,
    settings: Settings
) -> str:
    db.query(models.SimplefinPendingClaim).filter(
        models.SimplefinPendingClaim.expires_at <= _utcnow()
    ).delete(synchronize_session=False)

    claim_token = secrets.token_hex(24)
    db.add(models.SimplefinPendingClaim(
        claim_token=claim_token,
        user_id=user_id,
        access_url=clients.encryption.encrypt(access_url),
        expires_at=_utcnow() + timedelta(minutes=settings.claim_ttl_minutes)
    ))
    db.commit()
    return claim_token


def _load_pending_claim(db: Session, user_id: int, claim_token: str, clients: SyncClients) -> str:
    pending = db.query(models.SimplefinPendingClaim).filter(
        models.SimplefinPendingClaim.claim_token == claim_token,
        models.SimplefinPendingClaim.user_id == user_id,
        models.SimplefinPendingClaim.expires_at > _utcnow()
    ).first()

    if not pending:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Claim token expired or invalid. Please reconnect."
        )

    try:
        return clients.encryption.decrypt(pending.access_url)
    except DecryptionFailed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Claim token expired or invalid. Please reconnect."
        )


def _get_connection(db: Session, connection_id: int, user: models.User) -> models.SimplefinConnection:
    connection = db.query(models.SimplefinConnection).filter(
        models.SimplefinConnection.id == connection_id,
        models.SimplefinConnection.user_id == user.id,
        models.SimplefinConnection.is_active == True
    ).first()

    if not connection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )
    return connection


def _quota_date(clients: SyncClients) -> date:
    """Manual sync quota resets at midnight in the sync timezone."""
    return datetime.now(clients.timezone).date()


def _get_sync_limit(db: Session, user_id: int, clients: SyncClients, settings: Settings) -> schemas.SyncLimit:
    usage = db.query(models.ManualSyncUsage).filter(
        models.ManualSyncUsage.user_id == user_id,
        models.ManualSyncUsage.usage_date == _quota_date(clients)
    ).first()

    used = usage.count if usage else 0
    limit = settings.manual_sync_daily_limit
    return schemas.SyncLimit(limit=limit, used=used, remaining=max(limit - used, 0))


def _consume_manual_sync(db: Session, user_id: int, clients: SyncClients, settings: Settings) -> schemas.SyncLimit:
    usage_date = _quota_date(clients)
    usage = db.query(models.ManualSyncUsage).filter(
        models.ManualSyncUsage.user_id == user_id,
        models.ManualSyncUsage.usage_date == usage_date
    ).first()

    if usage is None:
        usage = models.ManualSyncUsage(user_id=user_id, usage_date=usage_date, count=0)
        db.add(usage)

    usage.count += 1
    db.commit()

    limit = settings.manual_sync_daily_limit
    return schemas.SyncLimit(limit=limit, used=usage.count, remaining=max(limit - usage.count, 0))


def _sync_failure(error: ConnectionSyncError) -> HTTPException:
    """Map a failed sync to a status; the detail never carries upstream text."""
    cause = error.__cause__

    if isinstance(cause, (AccessRevoked, DecryptionFailed)):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="SimpleFIN access is no longer valid. Please reconnect this card."
        )
    if isinstance(cause, RateLimited):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="SimpleFIN rate limit reached. Try again tomorrow."
        )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Sync failed. Please try again later."
    )


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


@router.get("/", response_model=schemas.BusinessExpenseFeed)
async def list_business_expenses(
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user),
    clients: SyncClients = Depends(get_sync_clients)
):
    """
    Recent transactions imported into Firefly III for the admin's cards.

    Category comes from Firefly III when set there, otherwise from the
    admin's category rules.
    """
    connections = db.query(models.SimplefinConnection).filter(
        models.SimplefinConnection.user_id == current_user.id,
        models.SimplefinConnection.is_active == True,
        models.SimplefinConnection.firefly_account_id.isnot(None)
    ).all()

    if not connections:
        return {"expenses": []}

    rules = db.query(models.CategoryRule).filter(
        models.CategoryRule.user_id == current_user.id
    ).all()

    start = date.today() - timedelta(days=days)
    expenses: List[schemas.BusinessExpense] = []

    for connection in connections:
        try:
            transactions = await clients.ledger.fetch_account_transactions(
                connection.firefly_account_id,
                start=start,
                limit=limit
            )
        except SyncError as e:
            logger.warning(f"Could not load Firefly transactions for connection {connection.id}: {e}")
            continue

        for txn in transactions:
            direction = txn.get("type")
            if direction not in ("withdrawal", "deposit"):
                continue

            vendor = txn.get("destination_name") if direction == "withdrawal" else txn.get("source_name")
            description = txn.get("description")
            category = txn.get("category_name") or categorize(rules, description, vendor, direction)
            posted = txn.get("date")

            expenses.append(schemas.BusinessExpense(
                id=str(txn.get("transaction_journal_id") or txn.get("group_id") or ""),
                connection_id=connection.id,
                account_name=connection.account_name,
                date=posted[:10] if isinstance(posted, str) else None,
                description=description,
                vendor=vendor,
                amount=_parse_decimal(txn.get("amount")),
                direction=direction,
                category=category
            ))

    expenses.sort(key=lambda e: e.date or "", reverse=True)
    return {"expenses": expenses[:limit]}


@router.post("/simplefin/claim", response_model=schemas.SimplefinClaimResponse)
async def claim_simplefin_connection(
    claim_request: schemas.SimplefinClaimRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user),
    clients: SyncClients = Depends(get_sync_clients),
    settings: Settings = Depends(get_settings)
):
    """
    Exchange a SimpleFIN setup token for an access URL and connect a card.

    When the bridge exposes several accounts and none was chosen, the access
    URL is parked as an encrypted pending claim and the masked account list
    is returned. The client then repeats the call with ``claim_token`` and
    ``simplefin_account_id``.

    Example:
        POST /business-expenses/simplefin/claim
        {
            "setup_token": "aHR0cHM6Ly9icmlkZ2Uuc2ltcGxlZmluLm9yZy9zaW1wbGVmaW4vY2xhaW0vZGVtbw==",
            "account_name": "Business Visa"
        }

        Response:
        {
            "requires_account_selection": true,
            "claim_token": "9f3c...",
            "accounts": [{"id": "ACT-1", "display_name": "Visa • Demo Bank • ****1234", ...}]
        }
    """
    if not claim_request.setup_token and not claim_request.claim_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Setup token required"
        )

    logger.info(f"User {current_user.id} claiming SimpleFIN setup token")

    if claim_request.claim_token:
        access_url = _load_pending_claim(db, current_user.id, claim_request.claim_token, clients)
    else:
        try:
            access_url = await clients.bridge.claim_setup_token(claim_request.setup_token)
        except InvalidToken as e:
            logger.warning(f"SimpleFIN claim rejected: {e}")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except SyncError as e:
            logger.error(f"SimpleFIN claim failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Failed to claim SimpleFIN setup token"
            )

    try:
        accounts = await clients.bridge.fetch_accounts(access_url)
    except SyncError as e:
        logger.error(f"SimpleFIN fetch accounts failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to verify SimpleFIN connection"
        )

    if not accounts:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No accounts found in SimpleFIN connection"
        )

    selected_account_id = claim_request.simplefin_account_id
    if not selected_account_id:
        if len(accounts) == 1:
            selected_account_id = str(accounts[0].get("id"))
        else:
            pending_token = claim_request.claim_token or _store_pending_claim(
                db, current_user.id, access_url, clients, settings
            )
            return schemas.SimplefinClaimResponse(
                requires_account_selection=True,
                claim_token=pending_token,
                accounts=[_account_option(account) for account in accounts]
            )

    simplefin_account = next(
        (account for account in accounts if str(account.get("id")) == str(selected_account_id)),
        None
    )
    if not simplefin_account:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Selected account not found in SimpleFIN connection"
        )

    owner_name = current_user.full_name
    ledger_account_name = (
        f"{owner_name} - {claim_request.account_name}" if owner_name else claim_request.account_name
    )

    try:
        ledger_account = await clients.ledger.ensure_asset_account(None, ledger_account_name)
    except SyncError as e:
        logger.error(f"Firefly account creation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create Firefly III account"
        )

    connection = models.SimplefinConnection(
        user_id=current_user.id,
        access_url=clients.encryption.encrypt(access_url),
        account_name=claim_request.account_name,
        account_type=claim_request.account_type,
        opening_balance=claim_request.opening_balance,
        opening_balance_date=claim_request.opening_balance_date,
        simplefin_account_id=str(simplefin_account.get("id")),
        firefly_account_id=ledger_account.id,
        is_active=True
    )
    db.add(connection)

    if claim_request.claim_token:
        db.query(models.SimplefinPendingClaim).filter(
            models.SimplefinPendingClaim.claim_token == claim_request.claim_token
        ).delete()

    db.commit()
    db.refresh(connection)

    logger.info(f"Connection created: ID {connection.id}")

    return schemas.SimplefinClaimResponse(
        message="Business card connected successfully",
        connection=connection
    )


@router.get("/connections", response_model=schemas.SimplefinConnectionList)
def list_connections(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user),
    clients: SyncClients = Depends(get_sync_clients),
    settings: Settings = Depends(get_settings)
):
    """List the admin's connected cards with today's manual sync quota."""
    connections = db.query(models.SimplefinConnection).filter(
        models.SimplefinConnection.user_id == current_user.id,
        models.SimplefinConnection.is_active == True
    ).order_by(models.SimplefinConnection.created_at.desc(), models.SimplefinConnection.id.desc()).all()

    return {
        "connections": connections,
        "sync_limit": _get_sync_limit(db, current_user.id, clients, settings)
    }


@router.get("/connections/{connection_id}", response_model=schemas.SimplefinConnectionDetail)
def get_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user)
):
    return {"connection": _get_connection(db, connection_id, current_user)}


@router.patch("/connections/{connection_id}", response_model=schemas.SimplefinConnectionDetail)
def update_connection(
    connection_id: int,
    update: schemas.SimplefinConnectionUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user)
):
    """Edit display name, card type and opening balance of a connection."""
    connection = _get_connection(db, connection_id, current_user)

    for field, value in update.model_dump(exclude_unset=True).items():
        if field in ("account_name", "account_type") and value is None:
            continue
        setattr(connection, field, value)

    db.commit()
    db.refresh(connection)
    return {"connection": connection}


@router.delete("/connections/{connection_id}")
def disconnect_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user)
):
    """
    Disconnect a business card.

    The connection is deactivated, not deleted: its sync log stays so that
    already imported transactions are never imported again.
    """
    connection = _get_connection(db, connection_id, current_user)
    connection.is_active = False
    db.commit()

    logger.info(f"Connection disconnected: {connection.account_name}")

    return {"message": "Connection disconnected successfully"}


@router.post("/sync/{connection_id}", response_model=schemas.SyncResponse)
async def manual_sync(
    connection_id: int,
    debug: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user),
    clients: SyncClients = Depends(get_sync_clients),
    settings: Settings = Depends(get_settings)
):
    """
    Manually trigger sync for one connection.

    Each attempt uses one unit of the owner's daily quota, including
    attempts that fail upstream.

    Example:
        POST /business-expenses/sync/3

        Response:
        {
            "message": "Sync completed",
            "imported": 4,
            "skipped": 1,
            "total": 5,
            "sync_limit": {"limit": 6, "used": 1, "remaining": 5}
        }
    """
    _get_connection(db, connection_id, current_user)

    sync_limit = _get_sync_limit(db, current_user.id, clients, settings)
    if sync_limit.remaining <= 0:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": "Daily manual sync limit reached",
                "sync_limit": sync_limit.model_dump()
            }
        )

    sync_limit = _consume_manual_sync(db, current_user.id, clients, settings)

    logger.info(f"Manual sync requested for connection {connection_id}")

    service = SyncService.from_settings(db, clients, settings)
    try:
        result = await service.sync_connection(connection_id, debug=debug)
    except ConnectionSyncError as e:
        db.rollback()
        logger.error(f"Manual sync failed for connection {connection_id} at {e.stage}: {e}")
        raise _sync_failure(e)

    return {
        "message": "Sync completed",
        **result.as_dict(debug=debug),
        "sync_limit": sync_limit
    }


@router.get("/status", response_model=schemas.BusinessExpenseStatus)
def get_status(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user),
    settings: Settings = Depends(get_settings)
):
    """Whether Firefly III is configured and how many cards are connected."""
    connection_count = db.query(models.SimplefinConnection).filter(
        models.SimplefinConnection.user_id == current_user.id,
        models.SimplefinConnection.is_active == True
    ).count()

    return {
        "configured": bool(settings.firefly_service_pat),
        "connection_count": connection_count
    }
