import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, BigInteger, Boolean, DateTime, Text, JSON, ForeignKey, UniqueConstraint, func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def _uuid() -> str:
    return str(uuid.uuid4())

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True, default=_uuid)
    owner_id = Column(String(64), nullable=False, index=True)
    currency = Column(String(3), nullable=False)
    provider = Column(String(16))
    # Minor units; cached sum of ledger_entries.amount for this account
    balance = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("provider", "external_reference", name="uq_transactions_provider_reference"),)
    id = Column(String(64), primary_key=True, default=_uuid)
    external_reference = Column(String(128), nullable=False)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    type = Column(String(16), nullable=False)  # income|expense|transfer
    status = Column(String(16), nullable=False, default="pending")
    provider = Column(String(16), nullable=False)
    description = Column(String(512), nullable=False, default="")
    recipient_code = Column(String(64))
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    transaction_id = Column(String(64), ForeignKey("transactions.id"), nullable=False, index=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)  # signed
    balance_after = Column(BigInteger, nullable=False)
    type = Column(String(8), nullable=False)  # 'debit' or 'credit'
    created_at = Column(DateTime, nullable=False, default=utcnow)

class TransferRecipient(Base):
    __tablename__ = "transfer_recipients"
    __table_args__ = (UniqueConstraint("provider", "recipient_code", name="uq_recipients_provider_code"),)
    id = Column(String(64), primary_key=True, default=_uuid)
    provider = Column(String(16), nullable=False)
    recipient_code = Column(String(64), nullable=False)
    name = Column(String(128), nullable=False, default="")
    account_number = Column(String(32))
    bank_code = Column(String(16))
    last_used_at = Column(DateTime)

class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "provider_event_id", name="uq_webhook_events_provider_event"),)
    id = Column(String(64), primary_key=True, default=_uuid)
    provider = Column(String(16), nullable=False)
    provider_event_id = Column(String(191), nullable=False)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    raw_body = Column(Text)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    status = Column(String(16), nullable=False, default="received", index=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime)
    error = Column(Text)
    note = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    retryable = Column(Boolean, nullable=False, default=False)
    processing_started_at = Column(DateTime)

class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_idempotency_provider_event"),)
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    provider = Column(String(16), nullable=False)
    event_id = Column(String(191), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class ReconciliationReport(Base):
    __tablename__ = "reconciliation_reports"
    id = Column(String(64), primary_key=True, default=_uuid)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    total_transactions = Column(Integer, nullable=False, default=0)
    matched_count = Column(Integer, nullable=False, default=0)
    unmatched_count = Column(Integer, nullable=False, default=0)
    discrepancy_count = Column(Integer, nullable=False, default=0)
    balance_difference = Column(BigInteger, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="pending")
    error = Column(Text)
    details = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(String(4000), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    status = Column(String(16), default="new")  # new|sent|failed
