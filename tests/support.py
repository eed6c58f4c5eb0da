"""
Shared fixtures for the ledger and webhook tests: a throwaway SQLite
database per test and helpers that sign payloads like the providers do.
"""
import hashlib
import hmac
import json
import os
import shutil
import tempfile
import time
import unittest
from typing import Optional

from common.schemas import Provider, TransactionCreate, TransactionType
from common.settings import Settings
from ledger_service.db import build_engine, build_session_factory, init_db
from ledger_service.service import LedgerService

STRIPE_SECRET = "whsec_test_secret"
PAYSTACK_SECRET = "sk_test_paystack"
FLUTTERWAVE_HASH = "flw_test_hash"


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        stripe_webhook_secret=STRIPE_SECRET,
        paystack_secret_key=PAYSTACK_SECRET,
        flutterwave_secret_hash=FLUTTERWAVE_HASH,
        stripe_secret_key="",
        flutterwave_secret_key="",
        idempotency_backend="database",
        allow_description_reference_match=False,
    )
    values.update(overrides)
    return Settings(**values)


def encode(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def stripe_header(body: bytes, secret: str = STRIPE_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def paystack_signature(body: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def flutterwave_signature(body: bytes, secret: str = FLUTTERWAVE_HASH) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def paystack_event(event: str, reference: str, data_id: int = 1001, **data) -> dict:
    return {"event": event, "data": {"id": data_id, "reference": reference, **data}}


class DatabaseTestCase(unittest.TestCase):
    """Gives each test its own SQLite file and a LedgerService over it."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="ledger-test-")
        self.engine = build_engine(f"sqlite:///{os.path.join(self.tmpdir, 'ledger.db')}")
        init_db(self.engine)
        self.session_factory = build_session_factory(self.engine)
        self.ledger = LedgerService(self.session_factory)

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def create_account(self, account_id: str = "acct_1", currency: str = "NGN", provider: str = "paystack"):
        return self.ledger.create_account("owner_1", currency, provider=provider, account_id=account_id)

    def create_transaction(
        self,
        reference: str,
        amount: int,
        account_id: str = "acct_1",
        provider: Provider = Provider.PAYSTACK,
        type: TransactionType = TransactionType.TRANSFER,
        currency: str = "NGN",
        **extra,
    ):
        return self.ledger.create_transaction(TransactionCreate(
            account_id=account_id,
            amount=amount,
            currency=currency,
            type=type,
            provider=provider,
            external_reference=reference,
            **extra,
        ))

    def fund(self, amount: int, account_id: str = "acct_1", reference: str = "FUND_1"):
        """Credit the account through a settled income transaction."""
        tx = self.create_transaction(reference, amount, account_id=account_id, type=TransactionType.INCOME)
        self.ledger.settle_transaction(tx.id)
        return tx
