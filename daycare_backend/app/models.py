from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, DECIMAL, Text, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from daycare_backend.database import Base


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    PARENT = "PARENT"


class ConnectionAccountType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class RuleMatchField(str, enum.Enum):
    DESCRIPTION = "description"
    VENDOR = "vendor"
    BOTH = "both"


class RuleTransactionType(str, enum.Enum):
    EXPENSE = "expense"
    INCOME = "income"
    BOTH = "both"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.PARENT)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    simplefin_connections = relationship("SimplefinConnection", back_populates="user")

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


# SimpleFIN -> Firefly III sync models

class SimplefinConnection(Base):
    __tablename__ = "simplefin_connections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Display
    account_name = Column(String(255), nullable=False)
    account_type = Column(
        SQLEnum(ConnectionAccountType, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ConnectionAccountType.CREDIT
    )
    opening_balance = Column(DECIMAL(12, 2), nullable=True)
    opening_balance_date = Column(Date, nullable=True)

    # Encrypted SimpleFIN access URL (never returned to clients)
    access_url = Column(Text, nullable=False)

    # External linkage
    simplefin_account_id = Column(String(255), nullable=False)
    firefly_account_id = Column(String(64), nullable=True)

    # Latest balance snapshot reported by the bridge
    balance = Column(DECIMAL(12, 2), nullable=True)
    balance_date = Column(Date, nullable=True)
    available_balance = Column(DECIMAL(12, 2), nullable=True)
    available_balance_date = Column(Date, nullable=True)
    credit_limit = Column(DECIMAL(12, 2), nullable=True)

    # Sync state
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="simplefin_connections")
    sync_log = relationship("TransactionSyncLog", back_populates="connection")


class SimplefinPendingClaim(Base):
    __tablename__ = "simplefin_pending_claims"

    id = Column(Integer, primary_key=True, index=True)
    claim_token = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    access_url = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TransactionSyncLog(Base):
    """Append-only dedup ledger: one row per (connection, SimpleFIN transaction id)."""
    __tablename__ = "transaction_sync_log"
    __table_args__ = (
        UniqueConstraint("connection_id", "simplefin_transaction_id", name="uq_sync_log_connection_txn"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("simplefin_connections.id"), nullable=False, index=True)
    simplefin_transaction_id = Column(String(255), nullable=False)
    synced_at = Column(DateTime(timezone=True), server_default=func.now())

    connection = relationship("SimplefinConnection", back_populates="sync_log")


class CategoryRule(Base):
    __tablename__ = "category_rules"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    keyword = Column(String(255), nullable=False)
    match_field = Column(
        SQLEnum(RuleMatchField, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RuleMatchField.DESCRIPTION
    )
    transaction_type = Column(
        SQLEnum(RuleTransactionType, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RuleTransactionType.EXPENSE
    )
    category = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ManualSyncUsage(Base):
    """Per-owner counter of manual syncs per calendar day."""
    __tablename__ = "manual_sync_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_manual_sync_usage_user_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    usage_date = Column(Date, nullable=False)
    count = Column(Integer, nullable=False, default=0)
