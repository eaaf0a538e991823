from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from decimal import Decimal

from .models import ConnectionAccountType, RuleMatchField, RuleTransactionType


class TokenData(BaseModel):
    email: Optional[str] = None


# SimpleFIN connections
class SimplefinClaimRequest(BaseModel):
    """Either a fresh setup token or the claim token of a pending account selection."""
    setup_token: Optional[str] = None
    claim_token: Optional[str] = None
    account_name: str = Field(..., min_length=1, max_length=255)
    account_type: ConnectionAccountType = ConnectionAccountType.CREDIT
    simplefin_account_id: Optional[str] = None
    opening_balance: Optional[Decimal] = None
    opening_balance_date: Optional[date] = None


class SimplefinAccountOption(BaseModel):
    id: str
    name: str
    institution: Optional[str] = None
    type: Optional[str] = None
    masked_account: Optional[str] = None
    display_name: str


class SimplefinConnection(BaseModel):
    id: int
    account_name: str
    account_type: ConnectionAccountType
    opening_balance: Optional[Decimal] = None
    opening_balance_date: Optional[date] = None
    simplefin_account_id: str
    firefly_account_id: Optional[str] = None
    balance: Optional[Decimal] = None
    balance_date: Optional[date] = None
    available_balance: Optional[Decimal] = None
    available_balance_date: Optional[date] = None
    credit_limit: Optional[Decimal] = None
    last_sync_at: Optional[datetime] = None
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SimplefinConnectionUpdate(BaseModel):
    account_name: Optional[str] = Field(None, min_length=1, max_length=255)
    account_type: Optional[ConnectionAccountType] = None
    opening_balance: Optional[Decimal] = None
    opening_balance_date: Optional[date] = None


class SimplefinClaimResponse(BaseModel):
    message: Optional[str] = None
    connection: Optional[SimplefinConnection] = None
    requires_account_selection: bool = False
    claim_token: Optional[str] = None
    accounts: Optional[List[SimplefinAccountOption]] = None


class SyncLimit(BaseModel):
    limit: int
    used: int
    remaining: int


class SimplefinConnectionList(BaseModel):
    connections: List[SimplefinConnection]
    sync_limit: SyncLimit


class SimplefinConnectionDetail(BaseModel):
    connection: SimplefinConnection


class SyncResponse(BaseModel):
    message: str
    imported: int
    skipped: int
    total: int
    sync_limit: SyncLimit
    debug: Optional[Dict[str, Any]] = None


class BusinessExpenseStatus(BaseModel):
    configured: bool
    connection_count: int


# Business expense feed
class BusinessExpense(BaseModel):
    id: Optional[str] = None
    connection_id: int
    account_name: str
    date: Optional[str] = None
    description: Optional[str] = None
    vendor: Optional[str] = None
    amount: Optional[Decimal] = None
    direction: str
    category: Optional[str] = None


class BusinessExpenseFeed(BaseModel):
    expenses: List[BusinessExpense]


# Category rules
class CategoryRuleCreate(BaseModel):
    keyword: str = Field(..., min_length=1, max_length=255)
    match_field: RuleMatchField = RuleMatchField.DESCRIPTION
    transaction_type: RuleTransactionType = RuleTransactionType.EXPENSE
    category: str = Field(..., min_length=1, max_length=100)


class CategoryRule(BaseModel):
    id: int
    keyword: str
    match_field: RuleMatchField
    transaction_type: RuleTransactionType
    category: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
