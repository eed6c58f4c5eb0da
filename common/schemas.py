from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional

class Provider(str, Enum):
    STRIPE = "stripe"
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"

class WebhookStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"

class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"

class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"

class EntryType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"

class ReportStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

# Requests

class AccountCreate(BaseModel):
    owner_id: str
    currency: str = "NGN"
    provider: Optional[Provider] = None
    account_id: Optional[str] = None

class TransactionCreate(BaseModel):
    account_id: str
    amount: int = Field(..., description="Signed amount in minor units (kobo, cents)")
    currency: str = "NGN"
    type: TransactionType = TransactionType.TRANSFER
    provider: Provider
    external_reference: Optional[str] = None
    description: str = ""
    recipient_code: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

class ReconcileRequest(BaseModel):
    account_id: str
    # Omitted bounds default to the trailing window ending now
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    timeout_seconds: Optional[float] = None

# Responses

class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    currency: str
    provider: Optional[str] = None
    balance: int
    updated_at: Optional[datetime] = None

class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    external_reference: str
    account_id: str
    amount: int
    currency: str
    type: TransactionType
    status: TransactionStatus
    provider: str
    description: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: str
    account_id: str
    amount: int
    balance_after: int
    type: EntryType
    created_at: Optional[datetime] = None

class BalanceOut(BaseModel):
    account_id: str
    currency: str
    balance: int
    entries_total: int
    consistent: bool

class ReconciliationReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    window_start: datetime
    window_end: datetime
    total_transactions: int
    matched_count: int
    unmatched_count: int
    discrepancy_count: int
    balance_difference: int
    status: ReportStatus
    error: Optional[str] = None
    details: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    provider_event_id: str
    event_type: str
    status: WebhookStatus
    processed: bool
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    note: Optional[str] = None
    retry_count: int
    retryable: bool = False
    processing_started_at: Optional[datetime] = None

class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
    event_id: Optional[str] = None
    outcome: Optional[Literal["processed", "failed", "ignored"]] = None

class LedgerEvent(BaseModel):
    type: Literal["EntryPosted"] = "EntryPosted"
    entry_id: int
    transaction_id: str
    account_id: str
    amount: int
    balance_after: int
    status: TransactionStatus
