"""
Transaction Deduplication Module

The transaction sync log is the single source of truth for "already
imported": a row for (connection, SimpleFIN transaction id) means the
transaction must never be sent to Firefly III again.
"""

from sqlalchemy.orm import Session
from sqlalchemy import and_, func

from daycare_backend.app.models import TransactionSyncLog


def _dialect_insert(db: Session):
    """Dialect-specific INSERT supporting ON CONFLICT DO NOTHING."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for sync log: {dialect}")
    return insert


class TransactionDeduplicator:
    """
    Sync-log lookups and appends.

    Log rows are never updated or deleted; disconnecting a connection keeps
    its history so a reconnect cannot re-import old transactions.
    """

    @staticmethod
    def has_sync_history(db: Session, connection_id: int) -> bool:
        """True if at least one transaction was ever logged for the connection."""
        row = db.query(TransactionSyncLog.id).filter(
            TransactionSyncLog.connection_id == connection_id
        ).first()
        return row is not None

    @staticmethod
    def is_synced(db: Session, connection_id: int, simplefin_transaction_id: str) -> bool:
        row = db.query(TransactionSyncLog.id).filter(
            and_(
                TransactionSyncLog.connection_id == connection_id,
                TransactionSyncLog.simplefin_transaction_id == simplefin_transaction_id
            )
        ).first()
        return row is not None

    @staticmethod
    def record_synced(db: Session, connection_id: int, simplefin_transaction_id: str) -> bool:
        """
        Append a log row, tolerating a concurrent run that already wrote it.

        Returns:
            True if this call inserted the row, False if it already existed
        """
        insert = _dialect_insert(db)
        stmt = insert(TransactionSyncLog).values(
            connection_id=connection_id,
            simplefin_transaction_id=simplefin_transaction_id,
            synced_at=func.now()
        ).on_conflict_do_nothing(
            index_elements=["connection_id", "simplefin_transaction_id"]
        )

        result = db.execute(stmt)
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def count_synced(db: Session, connection_id: int) -> int:
        return db.query(TransactionSyncLog).filter(
            TransactionSyncLog.connection_id == connection_id
        ).count()
