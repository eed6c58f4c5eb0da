"""
Ledger Service
Owns account balances, transactions and the append-only ledger entries.

Every balance change happens inside one database transaction that inserts
the entry, moves the cached account balance, updates the transaction status
and writes the outbox record. Mutations on one account are serialized by an
in-process lock plus a row lock (SELECT ... FOR UPDATE); different accounts
proceed in parallel.
"""

import logging
import re
import threading
import uuid
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from common.error_handling import (
    AccountNotFoundError,
    BusinessLogicError,
    ErrorCodes,
    IdempotencyConflictError,
    InvalidStateTransitionError,
    InvariantViolationError,
    TransactionNotFoundError,
)
from common.kafka import TOPIC_LEDGER_EVENTS
from common.schemas import EntryType, LedgerEvent, TransactionCreate, TransactionStatus, TransactionType
from ledger_service.interface import LedgerGateway, TransitionResult
from ledger_service.models import Account, LedgerEntry, Outbox, Transaction, TransferRecipient, utcnow

logger = logging.getLogger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
# Short or numeric-only references match too many free-text descriptions
MIN_DESCRIPTION_MATCH_LENGTH = 6

PENDING = TransactionStatus.PENDING.value
COMPLETED = TransactionStatus.COMPLETED.value
FAILED = TransactionStatus.FAILED.value
REVERSED = TransactionStatus.REVERSED.value

TRANSACTION_TRANSITIONS = {
    PENDING: {COMPLETED, FAILED, REVERSED},
    COMPLETED: {REVERSED, FAILED},
    FAILED: set(),
    REVERSED: set(),
}


@dataclass(frozen=True)
class BalanceAudit:
    account_id: str
    currency: str
    balance: int
    entries_total: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.entries_total


class AccountLocks:
    """
    Per-account mutexes for this process, striped over a fixed pool so memory
    stays bounded however many accounts pass through. Two accounts may share a
    stripe; that only serializes them, and no caller holds more than one.
    """

    def __init__(self, stripes: int = 256):
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def lock_for(self, account_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(account_id.encode("utf-8")) % len(self._locks)]

    @contextmanager
    def hold(self, account_id: str):
        with self.lock_for(account_id):
            yield


def validate_currency(currency: str) -> str:
    if not currency or not CURRENCY_PATTERN.match(currency):
        raise BusinessLogicError(
            ErrorCodes.VALIDATION_ERROR,
            f"Currency must be a 3-letter ISO code, got {currency!r}",
            field="currency",
        )
    return currency


def new_reference() -> str:
    return f"TXN_{uuid.uuid4().hex[:20].upper()}"


class LedgerService(LedgerGateway):

    def __init__(
        self,
        session_factory: sessionmaker,
        allow_description_match: bool = False,
        locks: Optional[AccountLocks] = None,
    ):
        self.session_factory = session_factory
        self.allow_description_match = allow_description_match
        self.locks = locks or AccountLocks()

    # Accounts

    def create_account(
        self,
        owner_id: str,
        currency: str = "NGN",
        provider: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> Account:
        validate_currency(currency)
        with self.session_factory() as db:
            if account_id:
                existing = db.get(Account, account_id)
                if existing:
                    if existing.owner_id != owner_id or existing.currency != currency:
                        raise IdempotencyConflictError(f"Account {account_id} already exists with different owner or currency")
                    return existing
            account = Account(owner_id=owner_id, currency=currency, provider=provider, balance=0)
            if account_id:
                account.id = account_id
            db.add(account)
            db.commit()
            logger.info(f"Created account {account.id} for owner {owner_id} ({currency})")
            return account

    def get_account(self, account_id: str) -> Account:
        with self.session_factory() as db:
            account = db.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return account

    def list_accounts(self, owner_id: Optional[str] = None) -> List[Account]:
        with self.session_factory() as db:
            query = select(Account).order_by(Account.created_at, Account.id)
            if owner_id:
                query = query.where(Account.owner_id == owner_id)
            return list(db.execute(query).scalars().all())

    def get_account_balance(self, account_id: str) -> int:
        """Cached balance; always equal to the sum of the account's entries."""
        return self.get_account(account_id).balance

    def audit_account_balance(self, account_id: str) -> BalanceAudit:
        with self.session_factory() as db:
            account = db.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            total = db.execute(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.account_id == account_id)
            ).scalar_one()
            return BalanceAudit(account.id, account.currency, account.balance, int(total))

    # Transactions

    def create_transaction(self, data: TransactionCreate) -> Transaction:
        validate_currency(data.currency)
        if data.amount == 0:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "Amount must be non-zero", field="amount")
        if data.type == TransactionType.INCOME and data.amount < 0:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "Income amounts must be positive", field="amount")
        if data.type == TransactionType.EXPENSE and data.amount > 0:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "Expense amounts must be negative", field="amount")

        provider = data.provider.value
        reference = data.external_reference or new_reference()

        with self.session_factory() as db:
            account = db.get(Account, data.account_id)
            if account is None:
                raise AccountNotFoundError(data.account_id)
            if account.currency != data.currency:
                raise BusinessLogicError(
                    ErrorCodes.CURRENCY_MISMATCH,
                    f"Account {account.id} holds {account.currency}, transaction is {data.currency}",
                    field="currency",
                )

            existing = self._by_reference(db, provider, reference)
            if existing is not None:
                return self._same_or_conflict(existing, data)

            tx = Transaction(
                external_reference=reference,
                account_id=account.id,
                amount=data.amount,
                currency=data.currency,
                type=data.type.value,
                status=PENDING,
                provider=provider,
                description=data.description,
                recipient_code=data.recipient_code,
                metadata_=dict(data.metadata),
            )
            db.add(tx)
            try:
                db.commit()
            except IntegrityError:
                # Lost a race with an identical create
                db.rollback()
                existing = self._by_reference(db, provider, reference)
                if existing is None:
                    raise
                return self._same_or_conflict(existing, data)

            logger.info(f"📝 Transaction {reference} created: {data.amount} {data.currency} on {account.id}")
            return tx

    def get_transaction(self, transaction_id: str) -> Transaction:
        with self.session_factory() as db:
            return self._get_transaction(db, transaction_id)

    def list_transactions(
        self,
        account_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Transaction]:
        """Transactions ordered by creation time; the window is [start, end)."""
        with self.session_factory() as db:
            query = select(Transaction).order_by(Transaction.created_at, Transaction.id)
            if account_id:
                query = query.where(Transaction.account_id == account_id)
            if start is not None:
                query = query.where(Transaction.created_at >= start)
            if end is not None:
                query = query.where(Transaction.created_at < end)
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return list(db.execute(query).scalars().all())

    def window_snapshot(self, account_id: str, start: datetime, end: datetime) -> List[Tuple[Transaction, int]]:
        """Transactions in [start, end) paired with the net amount posted for each."""
        with self.session_factory() as db:
            transactions = db.execute(
                select(Transaction)
                .where(Transaction.account_id == account_id, Transaction.created_at >= start, Transaction.created_at < end)
                .order_by(Transaction.created_at, Transaction.id)
            ).scalars().all()
            ids = [tx.id for tx in transactions]
            net: Dict[str, int] = {}
            if ids:
                rows = db.execute(
                    select(LedgerEntry.transaction_id, func.sum(LedgerEntry.amount))
                    .where(LedgerEntry.transaction_id.in_(ids))
                    .group_by(LedgerEntry.transaction_id)
                ).all()
                net = {tx_id: int(total) for tx_id, total in rows}
            return [(tx, net.get(tx.id, 0)) for tx in transactions]

    def find_transaction_by_reference(self, provider: str, reference: str) -> Optional[Transaction]:
        if not reference:
            return None
        with self.session_factory() as db:
            tx = self._by_reference(db, provider, reference)
            if tx is None and self.allow_description_match and len(reference) >= MIN_DESCRIPTION_MATCH_LENGTH:
                # Legacy fallback: only accept an unambiguous description hit
                candidates = db.execute(
                    select(Transaction)
                    .where(Transaction.provider == provider, Transaction.description.contains(reference))
                    .limit(2)
                ).scalars().all()
                if len(candidates) == 1:
                    tx = candidates[0]
                    logger.warning(f"Matched {provider} reference {reference!r} by description to {tx.external_reference}")
            return tx

    # Entries

    def post_entry(
        self,
        transaction_id: str,
        account_id: str,
        amount: int,
        entry_type,
        status=TransactionStatus.COMPLETED,
    ) -> LedgerEntry:
        """Insert an entry, move the balance and update the transaction as one unit."""
        entry_type = EntryType(entry_type)
        if amount == 0 or (entry_type == EntryType.CREDIT) != (amount > 0):
            raise BusinessLogicError(
                ErrorCodes.VALIDATION_ERROR,
                f"{entry_type.value} entries need a {'positive' if entry_type == EntryType.CREDIT else 'negative'} amount",
                field="amount",
            )
        with self._account_unit(account_id) as (db, account):
            tx = self._get_transaction(db, transaction_id)
            if tx.account_id != account_id:
                raise BusinessLogicError(
                    ErrorCodes.INVALID_INPUT,
                    f"Transaction {transaction_id} does not belong to account {account_id}",
                    field="account_id",
                )
            return self._post(db, account, tx, amount, TransactionStatus(status).value)

    def reverse_entry(self, transaction_id: str, status=TransactionStatus.REVERSED) -> Optional[LedgerEntry]:
        """
        Post the compensating entry for everything posted against a transaction.

        Original entries are left untouched. Returns None when nothing had been
        posted, in which case only the status changes.
        """
        account_id = self._account_of(transaction_id)
        with self._account_unit(account_id) as (db, account):
            tx = self._get_transaction(db, transaction_id)
            return self._compensate(db, account, tx, TransactionStatus(status).value)

    def list_entries(self, account_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
        with self.session_factory() as db:
            query = select(LedgerEntry).order_by(LedgerEntry.id.desc()).limit(limit).offset(offset)
            if account_id:
                query = query.where(LedgerEntry.account_id == account_id)
            return list(db.execute(query).scalars().all())

    def entries_for_transaction(self, transaction_id: str) -> List[LedgerEntry]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(LedgerEntry).where(LedgerEntry.transaction_id == transaction_id).order_by(LedgerEntry.id)
                ).scalars().all()
            )

    # Handler-level operations

    def settle_transaction(self, transaction_id: str) -> TransitionResult:
        account_id = self._account_of(transaction_id)
        with self._account_unit(account_id) as (db, account):
            tx = self._get_transaction(db, transaction_id)
            previous = tx.status
            if previous == COMPLETED:
                return TransitionResult(tx.id, previous, previous)
            entry = self._post(db, account, tx, tx.amount, COMPLETED)
            return TransitionResult(tx.id, previous, COMPLETED, entry)

    def fail_transaction(self, transaction_id: str, reason: Optional[str] = None) -> TransitionResult:
        account_id = self._account_of(transaction_id)
        with self._account_unit(account_id) as (db, account):
            tx = self._get_transaction(db, transaction_id)
            previous = tx.status
            if previous in (FAILED, REVERSED):
                return TransitionResult(tx.id, previous, previous)
            entry = self._compensate(db, account, tx, FAILED)
            if reason:
                tx.metadata_ = {**(tx.metadata_ or {}), "failure_reason": reason}
            return TransitionResult(tx.id, previous, FAILED, entry)

    def reverse_transaction(self, transaction_id: str, reason: Optional[str] = None) -> TransitionResult:
        account_id = self._account_of(transaction_id)
        with self._account_unit(account_id) as (db, account):
            tx = self._get_transaction(db, transaction_id)
            previous = tx.status
            if previous in (FAILED, REVERSED):
                # Funds were already returned (or never left)
                return TransitionResult(tx.id, previous, previous)
            entry = self._compensate(db, account, tx, REVERSED)
            if reason:
                tx.metadata_ = {**(tx.metadata_ or {}), "reversal_reason": reason}
            return TransitionResult(tx.id, previous, REVERSED, entry)

    # Transfer recipients

    def upsert_recipient(
        self,
        provider: str,
        recipient_code: str,
        name: str = "",
        account_number: Optional[str] = None,
        bank_code: Optional[str] = None,
    ) -> TransferRecipient:
        with self.session_factory() as db:
            recipient = db.execute(
                select(TransferRecipient).where(
                    TransferRecipient.provider == provider, TransferRecipient.recipient_code == recipient_code
                )
            ).scalar_one_or_none()
            if recipient is None:
                recipient = TransferRecipient(provider=provider, recipient_code=recipient_code)
                db.add(recipient)
            recipient.name = name
            recipient.account_number = account_number
            recipient.bank_code = bank_code
            db.commit()
            return recipient

    def get_recipient(self, provider: str, recipient_code: str) -> Optional[TransferRecipient]:
        with self.session_factory() as db:
            return db.execute(
                select(TransferRecipient).where(
                    TransferRecipient.provider == provider, TransferRecipient.recipient_code == recipient_code
                )
            ).scalar_one_or_none()

    def touch_recipient(self, provider: str, recipient_code: str) -> bool:
        if not recipient_code:
            return False
        with self.session_factory() as db:
            result = db.execute(
                update(TransferRecipient)
                .where(TransferRecipient.provider == provider, TransferRecipient.recipient_code == recipient_code)
                .values(last_used_at=utcnow())
            )
            db.commit()
            return result.rowcount > 0

    # Internals

    @contextmanager
    def _account_unit(self, account_id: str) -> Iterator[Tuple[Session, Account]]:
        with self.locks.hold(account_id):
            with self.session_factory() as db:
                account = db.execute(
                    select(Account).where(Account.id == account_id).with_for_update()
                ).scalar_one_or_none()
                if account is None:
                    raise AccountNotFoundError(account_id)
                try:
                    yield db, account
                    db.commit()
                except Exception:
                    db.rollback()
                    raise

    def _account_of(self, transaction_id: str) -> str:
        with self.session_factory() as db:
            return self._get_transaction(db, transaction_id).account_id

    @staticmethod
    def _get_transaction(db: Session, transaction_id: str) -> Transaction:
        tx = db.get(Transaction, transaction_id)
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return tx

    @staticmethod
    def _by_reference(db: Session, provider: str, reference: str) -> Optional[Transaction]:
        return db.execute(
            select(Transaction).where(Transaction.provider == provider, Transaction.external_reference == reference)
        ).scalar_one_or_none()

    @staticmethod
    def _same_or_conflict(existing: Transaction, data: TransactionCreate) -> Transaction:
        if existing.account_id == data.account_id and existing.amount == data.amount:
            return existing
        raise IdempotencyConflictError(
            f"Reference {existing.external_reference} is already used by a different {existing.provider} transaction"
        )

    @staticmethod
    def _transition(tx: Transaction, target: str):
        if target not in TRANSACTION_TRANSITIONS[tx.status]:
            raise InvalidStateTransitionError(f"transaction {tx.external_reference}", tx.status, target)
        tx.status = target
        tx.updated_at = utcnow()

    @staticmethod
    def _net_posted(db: Session, transaction_id: str) -> int:
        total = db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.transaction_id == transaction_id)
        ).scalar_one()
        return int(total)

    def _compensate(self, db: Session, account: Account, tx: Transaction, status: str) -> Optional[LedgerEntry]:
        net = self._net_posted(db, tx.id)
        if net == 0:
            self._transition(tx, status)
            return None
        return self._post(db, account, tx, -net, status)

    def _post(self, db: Session, account: Account, tx: Transaction, amount: int, status: str) -> LedgerEntry:
        new_balance = account.balance + amount
        if new_balance < 0:
            raise InvariantViolationError(
                f"Posting {amount} to account {account.id} would leave a negative balance ({new_balance})",
                code=ErrorCodes.INSUFFICIENT_FUNDS,
                context={"account_id": account.id, "balance": account.balance, "amount": amount},
            )
        self._transition(tx, status)

        now = utcnow()
        entry = LedgerEntry(
            transaction_id=tx.id,
            account_id=account.id,
            amount=amount,
            balance_after=new_balance,
            type=EntryType.CREDIT.value if amount > 0 else EntryType.DEBIT.value,
            created_at=now,
        )
        account.balance = new_balance
        account.updated_at = now
        db.add(entry)
        db.flush()

        event = LedgerEvent(
            entry_id=entry.id,
            transaction_id=tx.id,
            account_id=account.id,
            amount=amount,
            balance_after=new_balance,
            status=status,
        )
        db.add(Outbox(topic=TOPIC_LEDGER_EVENTS, payload=event.model_dump_json()))

        logger.info(f"💰 Posted {amount} {tx.currency} to {account.id} for {tx.external_reference}; balance {new_balance}")
        return entry
