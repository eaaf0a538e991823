"""
SimpleFIN -> Firefly III Sync Service

Main orchestration service that handles:
- Decrypting stored SimpleFIN credentials
- Resolving the Firefly III asset account for a connection
- Computing the fetch window from the sync watermark
- Deduplication via the transaction sync log
- Importing new transactions into Firefly III
- Advancing the watermark to the latest posted transaction
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from daycare_backend.app.models import ConnectionAccountType, SimplefinConnection

from .deduplication import TransactionDeduplicator
from .encryption import TokenEncryption
from .errors import ConnectionSyncError, DecryptionFailed, SyncError
from .providers.base import BaseBankProvider
from .providers.firefly import FireflyClient
from .timezones import resolve_timezone

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Business expense"
MAX_ERROR_SAMPLES = 10


@dataclass
class ConnectionSyncResult:
    """Outcome of one connection's sync pass."""
    imported: int = 0
    skipped: int = 0
    total: int = 0
    skipped_duplicates: int = 0
    skipped_invalid: int = 0
    skipped_errors: int = 0
    latest_posted: Optional[int] = None
    window_start: Optional[int] = None
    error_samples: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self, debug: bool = False) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "imported": self.imported,
            "skipped": self.skipped,
            "total": self.total,
        }
        if debug:
            result["debug"] = {
                "window_start": self.window_start,
                "latest_posted": self.latest_posted,
                "skipped_duplicates": self.skipped_duplicates,
                "skipped_invalid": self.skipped_invalid,
                "skipped_errors": self.skipped_errors,
                "error_samples": list(self.error_samples),
            }
        return result


@dataclass
class SyncAllResult:
    """Aggregate outcome of a "sync all active connections" run."""
    connections_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_imported: int = 0
    total_skipped: int = 0
    total_transactions: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "connectionsProcessed": self.connections_processed,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "totalImported": self.total_imported,
            "totalSkipped": self.total_skipped,
            "totalTransactions": self.total_transactions,
        }


def coerce_timestamp(value: Any) -> Optional[int]:
    """
    Convert a SimpleFIN timestamp to unix seconds.

    Accepts unix seconds, unix milliseconds (numbers or digit strings) and
    ISO-8601 strings. Returns None for anything unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if number != number or number in (float("inf"), float("-inf")):
            return None
        seconds = number / 1000 if number >= 1e12 else number
        return int(seconds)

    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())

    return None


def posted_seconds(txn: Dict[str, Any]) -> Optional[int]:
    """Posting time of a SimpleFIN transaction; falls back to ``transacted_at``."""
    for key in ("posted", "transacted_at"):
        seconds = coerce_timestamp(txn.get(key))
        if seconds:
            return seconds
    return None


def parse_amount(value: Any) -> Optional[Decimal]:
    """Signed decimal amount, or None if missing/unparseable."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps read back from some drivers are naive; they are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _unix_to_date(value: Any) -> Optional[date]:
    seconds = coerce_timestamp(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).date()


class SyncService:
    """
    Sync orchestrator.

    All collaborators are injected: the database session, the encryption
    object and both upstream clients. One instance serves one unit of work
    (a request or a scheduler firing).
    """

    def __init__(
        self,
        db: Session,
        encryption: TokenEncryption,
        bridge: BaseBankProvider,
        ledger: FireflyClient,
        sync_timezone: Union[str, ZoneInfo] = "UTC",
        default_days: int = 30,
        lookback_days: int = 0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.encryption = encryption
        self.bridge = bridge
        self.ledger = ledger
        self.timezone = resolve_timezone(sync_timezone)
        self.default_days = default_days
        self.lookback_days = lookback_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, db: Session, clients, settings) -> "SyncService":
        return cls(
            db=db,
            encryption=clients.encryption,
            bridge=clients.bridge,
            ledger=clients.ledger,
            sync_timezone=clients.timezone,
            default_days=settings.sync_default_days,
            lookback_days=settings.sync_lookback_days
        )

    def _window_start(self, connection: SimplefinConnection, now: datetime) -> datetime:
        """
        Start of the SimpleFIN fetch window.

        The watermark is only trusted when the connection also has sync-log
        rows; a connection that never logged a transaction always gets the
        default lookback window.
        """
        has_history = TransactionDeduplicator.has_sync_history(self.db, connection.id)
        last_sync = _as_utc(connection.last_sync_at) if has_history else None

        if last_sync and last_sync > now:
            logger.warning(
                f"last_sync_at is in the future for connection {connection.id}, "
                f"falling back to default window"
            )
            last_sync = None

        if last_sync:
            return last_sync - timedelta(days=self.lookback_days)

        return now - timedelta(days=self.default_days)

    def _update_balance_snapshot(self, connection: SimplefinConnection, account: Dict[str, Any]) -> None:
        is_credit = connection.account_type == ConnectionAccountType.CREDIT

        def normalize(value: Optional[Decimal]) -> Optional[Decimal]:
            if value is None:
                return None
            return abs(value) if is_credit else value

        balance = normalize(parse_amount(account.get("balance")))
        available = normalize(parse_amount(account.get("available-balance")))
        credit_limit = parse_amount(account.get("credit-limit"))
        balance_date = _unix_to_date(account.get("balance-date"))

        if balance is not None:
            connection.balance = balance
        if balance_date is not None:
            connection.balance_date = balance_date
        if available is not None:
            connection.available_balance = available
            connection.available_balance_date = balance_date
        if credit_limit is not None:
            connection.credit_limit = abs(credit_limit)

        self.db.commit()

    async def _process_transaction(
        self,
        connection: SimplefinConnection,
        txn: Dict[str, Any],
        result: ConnectionSyncResult
    ) -> None:
        posted = posted_seconds(txn)
        if posted is None:
            logger.warning("Transaction missing posted date, skipping")
            result.skipped += 1
            result.skipped_invalid += 1
            return

        if result.latest_posted is None or posted > result.latest_posted:
            result.latest_posted = posted

        simplefin_txn_id = txn.get("id")
        if not simplefin_txn_id:
            logger.warning("Transaction missing ID, skipping")
            result.skipped += 1
            result.skipped_invalid += 1
            return
        simplefin_txn_id = str(simplefin_txn_id)

        if TransactionDeduplicator.is_synced(self.db, connection.id, simplefin_txn_id):
            result.skipped += 1
            result.skipped_duplicates += 1
            return

        raw_amount = parse_amount(txn.get("amount"))
        if raw_amount is None or raw_amount == 0:
            logger.warning(f"Transaction {simplefin_txn_id} amount missing or zero, skipping")
            result.skipped += 1
            result.skipped_invalid += 1
            return

        direction = "withdrawal" if raw_amount < 0 else "deposit"
        description = txn.get("payee") or txn.get("description") or DEFAULT_DESCRIPTION

        notes = None
        if txn.get("description") and txn.get("memo"):
            notes = f"{txn['description']}\n{txn['memo']}"
        elif txn.get("memo"):
            notes = txn["memo"]

        transaction_date = datetime.fromtimestamp(posted, tz=self.timezone).date()

        imported = await self.ledger.import_transaction(
            transaction_date=transaction_date,
            amount=abs(raw_amount),
            description=description,
            asset_account_id=connection.firefly_account_id,
            external_id=simplefin_txn_id,
            direction=direction,
            notes=notes
        )

        if imported is None:
            result.skipped += 1
            result.skipped_duplicates += 1
            return

        if TransactionDeduplicator.record_synced(self.db, connection.id, simplefin_txn_id):
            result.imported += 1
        else:
            # A concurrent run logged it first
            result.skipped += 1
            result.skipped_duplicates += 1

    async def sync_connection(self, connection_id: int, debug: bool = False) -> ConnectionSyncResult:
        """
        Sync transactions for a single SimpleFIN connection.

        Steps before the transaction loop (load, decrypt, ledger account,
        fetch) abort the whole connection with ``ConnectionSyncError``.
        Failures inside the loop are contained per transaction.

        Returns:
            ConnectionSyncResult (zero result for missing/inactive connections)

        Example:
            >>> result = await service.sync_connection(7)
            >>> result.as_dict()
            {'imported': 3, 'skipped': 0, 'total': 3}
        """
        logger.info(f"Starting sync for connection {connection_id}")
        result = ConnectionSyncResult()

        connection = self.db.query(SimplefinConnection).filter(
            SimplefinConnection.id == connection_id,
            SimplefinConnection.is_active == True
        ).first()

        if not connection:
            logger.info(f"Connection {connection_id} not found or inactive")
            return result

        try:
            access_url = self.encryption.decrypt(connection.access_url)
        except DecryptionFailed as e:
            logger.error(f"Failed to decrypt access URL for connection {connection_id}")
            raise ConnectionSyncError(
                connection_id, "decrypt", "Failed to decrypt connection credentials"
            ) from e

        owner_name = connection.user.full_name if connection.user else ""
        ledger_account_name = (
            f"{owner_name} - {connection.account_name}" if owner_name else connection.account_name
        )

        try:
            asset_account = await self.ledger.ensure_asset_account(
                connection.firefly_account_id,
                ledger_account_name
            )
        except SyncError as e:
            logger.error(f"Firefly account validation failed for connection {connection_id}: {e}")
            raise ConnectionSyncError(
                connection_id, "ledger_account", "Failed to verify Firefly III account"
            ) from e

        if asset_account.id != connection.firefly_account_id:
            logger.info(
                f"Connection {connection_id}: Firefly account "
                f"{connection.firefly_account_id} -> {asset_account.id}"
            )
            connection.firefly_account_id = asset_account.id
            self.db.commit()

        now = self._clock()
        window_start = self._window_start(connection, now)
        result.window_start = int(window_start.timestamp())

        logger.info(
            f"Fetching transactions since {window_start.date().isoformat()} "
            f"for \"{connection.account_name}\""
        )

        try:
            account, transactions = await self.bridge.fetch_account(
                access_url,
                connection.simplefin_account_id,
                result.window_start
            )
        except SyncError as e:
            logger.error(f"SimpleFIN fetch failed for connection {connection_id}: {e}")
            raise ConnectionSyncError(connection_id, "fetch", f"SimpleFIN sync failed: {e}") from e

        if account:
            self._update_balance_snapshot(connection, account)

        result.total = len(transactions)
        logger.info(f"Found {result.total} transaction(s)")

        for txn in transactions:
            try:
                await self._process_transaction(connection, txn, result)
            except Exception as e:
                self.db.rollback()
                txn_id = txn.get("id") if isinstance(txn, dict) else None
                logger.error(f"Error processing transaction {txn_id}: {e}")
                result.skipped += 1
                result.skipped_errors += 1
                if len(result.error_samples) < MAX_ERROR_SAMPLES:
                    result.error_samples.append({"id": txn_id, "error": str(e) or type(e).__name__})

        if result.latest_posted is not None:
            watermark = datetime.fromtimestamp(result.latest_posted, tz=timezone.utc)
            current = _as_utc(connection.last_sync_at)
            if current is None or watermark > current:
                connection.last_sync_at = watermark
                self.db.commit()

        logger.info(
            f"Completed sync for connection {connection_id}: "
            f"{result.imported} imported, {result.skipped} skipped"
        )
        return result

    async def sync_all_connections(self) -> SyncAllResult:
        """
        Sync every active connection, one after another.

        A failing connection is logged and counted; it never stops the run.
        """
        connection_ids = [
            row.id for row in self.db.query(SimplefinConnection.id).filter(
                SimplefinConnection.is_active == True
            ).order_by(SimplefinConnection.id).all()
        ]

        logger.info(f"Found {len(connection_ids)} active connection(s)")
        summary = SyncAllResult(connections_processed=len(connection_ids))

        for connection_id in connection_ids:
            try:
                result = await self.sync_connection(connection_id)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to sync connection {connection_id}: {e}")
                summary.failure_count += 1
                continue

            summary.total_imported += result.imported
            summary.total_skipped += result.skipped
            summary.total_transactions += result.total
            summary.success_count += 1

        logger.info(
            f"All connections synced: {summary.success_count} succeeded, "
            f"{summary.failure_count} failed"
        )
        logger.info(
            f"Total: {summary.total_imported} imported, {summary.total_skipped} skipped, "
            f"{summary.total_transactions} total"
        )
        return summary
