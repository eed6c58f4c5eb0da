"""
Tests for the ledger service: postings, balances, state machine and locking
"""
import json
import random
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from sqlalchemy import select

from common.error_handling import (
    AccountNotFoundError,
    BusinessLogicError,
    IdempotencyConflictError,
    InvalidStateTransitionError,
    InvariantViolationError,
)
from common.schemas import Provider, TransactionType
from ledger_service.models import Outbox, utcnow
from ledger_service.service import AccountLocks, LedgerService

from support import DatabaseTestCase


class TestAccounts(DatabaseTestCase):

    def test_create_and_get(self):
        account = self.create_account()
        self.assertEqual(account.balance, 0)
        self.assertEqual(self.ledger.get_account("acct_1").currency, "NGN")
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 0)

    def test_create_with_same_id_is_idempotent(self):
        self.create_account()
        self.assertEqual(self.create_account().id, "acct_1")
        with self.assertRaises(IdempotencyConflictError):
            self.ledger.create_account("someone_else", "NGN", account_id="acct_1")

    def test_invalid_currency(self):
        for currency in ("ngn", "NAIRA", "", "N1N"):
            with self.assertRaises(BusinessLogicError):
                self.ledger.create_account("owner", currency)

    def test_unknown_account(self):
        with self.assertRaises(AccountNotFoundError):
            self.ledger.get_account("nope")

    def test_list_accounts(self):
        self.create_account("a")
        self.create_account("b")
        self.ledger.create_account("owner_2", "USD", account_id="c")
        self.assertEqual([a.id for a in self.ledger.list_accounts(owner_id="owner_1")], ["a", "b"])


class TestTransactions(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.create_account()

    def test_created_pending(self):
        tx = self.create_transaction("TRF_100", 5000)
        self.assertEqual(tx.status, "pending")
        self.assertEqual(tx.amount, 5000)
        self.assertEqual(self.ledger.entries_for_transaction(tx.id), [])

    def test_generated_reference(self):
        tx = self.create_transaction(None, 100)
        self.assertTrue(tx.external_reference.startswith("TXN_"))
        self.assertEqual(len(tx.external_reference), 24)

    def test_validation(self):
        """Test amount sign, currency and account checks"""
        with self.assertRaises(BusinessLogicError):
            self.create_transaction("R0", 0)
        with self.assertRaises(BusinessLogicError):
            self.create_transaction("R1", -100, type=TransactionType.INCOME)
        with self.assertRaises(BusinessLogicError):
            self.create_transaction("R2", 100, type=TransactionType.EXPENSE)
        with self.assertRaises(BusinessLogicError) as ctx:
            self.create_transaction("R3", 100, currency="USD")
        self.assertEqual(ctx.exception.code, "CURRENCY_MISMATCH")
        with self.assertRaises(AccountNotFoundError):
            self.create_transaction("R4", 100, account_id="missing")

    def test_reference_reuse(self):
        """Test that an identical resubmission returns the same row and a conflicting one fails"""
        first = self.create_transaction("TRF_1", 5000)
        self.assertEqual(self.create_transaction("TRF_1", 5000).id, first.id)
        with self.assertRaises(IdempotencyConflictError):
            self.create_transaction("TRF_1", 7000)
        # Same reference under another provider is a different transaction
        other = self.create_transaction("TRF_1", 5000, provider=Provider.STRIPE)
        self.assertNotEqual(other.id, first.id)

    def test_find_by_reference_exact_only(self):
        tx = self.create_transaction("TRF_2", 5000, description="Payout for invoice INV-77")
        self.assertEqual(self.ledger.find_transaction_by_reference("paystack", "TRF_2").id, tx.id)
        self.assertIsNone(self.ledger.find_transaction_by_reference("stripe", "TRF_2"))
        self.assertIsNone(self.ledger.find_transaction_by_reference("paystack", "INV-77"))
        self.assertIsNone(self.ledger.find_transaction_by_reference("paystack", ""))

    def test_description_fallback_behind_flag(self):
        """Test that the legacy description match only works when enabled and unambiguous"""
        tx = self.create_transaction("TRF_3", 5000, description="Payout for invoice INV-77")
        legacy = LedgerService(self.session_factory, allow_description_match=True)
        self.assertEqual(legacy.find_transaction_by_reference("paystack", "INV-77").id, tx.id)
        self.assertIsNone(legacy.find_transaction_by_reference("paystack", "77"))

        self.create_transaction("TRF_4", 100, description="Second payout for INV-77")
        self.assertIsNone(legacy.find_transaction_by_reference("paystack", "INV-77"))

    def test_list_transactions_window(self):
        self.create_transaction("A", 100)
        self.create_transaction("B", 200)
        now = utcnow()
        window = self.ledger.list_transactions("acct_1", now - timedelta(hours=1), now + timedelta(hours=1))
        self.assertEqual([t.external_reference for t in window], ["A", "B"])
        self.assertEqual(self.ledger.list_transactions("acct_1", start=now + timedelta(hours=1)), [])
        self.assertEqual(len(self.ledger.list_transactions(limit=1)), 1)


class TestPosting(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.create_account()

    def test_settle_posts_signed_amount(self):
        """Test that settling a pending transfer posts one entry of its amount"""
        tx = self.create_transaction("TRF_100", 5000)
        result = self.ledger.settle_transaction(tx.id)

        self.assertTrue(result.changed)
        self.assertEqual((result.previous_status, result.status), ("pending", "completed"))
        self.assertEqual(result.entry.amount, 5000)
        self.assertEqual(result.entry.balance_after, 5000)
        self.assertEqual(result.entry.type, "credit")
        self.assertEqual(self.ledger.get_transaction(tx.id).status, "completed")
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 5000)

    def test_settle_is_idempotent(self):
        tx = self.create_transaction("TRF_100", 5000)
        self.ledger.settle_transaction(tx.id)
        again = self.ledger.settle_transaction(tx.id)
        self.assertFalse(again.changed)
        self.assertIsNone(again.entry)
        self.assertEqual(len(self.ledger.entries_for_transaction(tx.id)), 1)

    def test_reversal_restores_balance(self):
        """Test that reversing a settled transfer nets its entries to zero"""
        self.fund(10_000)
        before = self.ledger.get_account_balance("acct_1")
        tx = self.create_transaction("TRF_100", 5000)
        self.ledger.settle_transaction(tx.id)
        result = self.ledger.reverse_transaction(tx.id, "bank rejected")

        self.assertEqual(result.status, "reversed")
        self.assertEqual(result.entry.amount, -5000)
        self.assertEqual(result.entry.type, "debit")
        entries = self.ledger.entries_for_transaction(tx.id)
        self.assertEqual([e.amount for e in entries], [5000, -5000])
        self.assertEqual(sum(e.amount for e in entries), 0)
        self.assertEqual(self.ledger.get_account_balance("acct_1"), before)
        self.assertEqual(self.ledger.get_transaction(tx.id).metadata_["reversal_reason"], "bank rejected")

    def test_reversal_of_outflow(self):
        self.fund(10_000)
        tx = self.create_transaction("PAYOUT_1", -4000, type=TransactionType.EXPENSE)
        self.ledger.settle_transaction(tx.id)
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 6000)
        self.ledger.reverse_transaction(tx.id)
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 10_000)

    def test_reverse_pending_posts_nothing(self):
        tx = self.create_transaction("TRF_5", 5000)
        result = self.ledger.reverse_transaction(tx.id)
        self.assertEqual(result.status, "reversed")
        self.assertIsNone(result.entry)
        self.assertEqual(self.ledger.entries_for_transaction(tx.id), [])

    def test_fail_after_completion_compensates(self):
        self.fund(1000)
        tx = self.create_transaction("TRF_6", -600, type=TransactionType.EXPENSE)
        self.ledger.settle_transaction(tx.id)
        result = self.ledger.fail_transaction(tx.id, "insufficient bank balance")
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.entry.amount, 600)
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 1000)

    def test_terminal_states(self):
        """Test that failed and reversed transactions cannot be settled again"""
        tx = self.create_transaction("TRF_7", 5000)
        self.ledger.fail_transaction(tx.id)
        with self.assertRaises(InvalidStateTransitionError):
            self.ledger.settle_transaction(tx.id)
        self.assertFalse(self.ledger.fail_transaction(tx.id).changed)
        self.assertFalse(self.ledger.reverse_transaction(tx.id).changed)
        self.assertEqual(self.ledger.get_transaction(tx.id).status, "failed")

    def test_negative_balance_rejected(self):
        """Test that a posting that would overdraw the account is refused and rolled back"""
        self.fund(1000)
        tx = self.create_transaction("PAYOUT_2", -3000, type=TransactionType.EXPENSE)
        with self.assertRaises(InvariantViolationError) as ctx:
            self.ledger.settle_transaction(tx.id)
        self.assertEqual(ctx.exception.code, "INSUFFICIENT_FUNDS")
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 1000)
        self.assertEqual(self.ledger.get_transaction(tx.id).status, "pending")
        self.assertEqual(self.ledger.entries_for_transaction(tx.id), [])

    def test_post_entry_validates_direction(self):
        tx = self.create_transaction("TRF_8", 5000)
        with self.assertRaises(BusinessLogicError):
            self.ledger.post_entry(tx.id, "acct_1", 5000, "debit")
        with self.assertRaises(BusinessLogicError):
            self.ledger.post_entry(tx.id, "acct_1", 0, "credit")
        entry = self.ledger.post_entry(tx.id, "acct_1", 5000, "credit")
        self.assertEqual(entry.balance_after, 5000)

    def test_post_entry_checks_account(self):
        self.create_account("acct_2")
        tx = self.create_transaction("TRF_9", 5000)
        with self.assertRaises(BusinessLogicError):
            self.ledger.post_entry(tx.id, "acct_2", 5000, "credit")

    def test_reverse_entry(self):
        tx = self.create_transaction("TRF_10", 2500)
        self.ledger.post_entry(tx.id, "acct_1", 2500, "credit")
        compensation = self.ledger.reverse_entry(tx.id)
        self.assertEqual(compensation.amount, -2500)
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 0)

    def test_each_entry_writes_outbox_event(self):
        tx = self.create_transaction("TRF_11", 5000)
        result = self.ledger.settle_transaction(tx.id)
        with self.session_factory() as db:
            rows = db.execute(select(Outbox)).scalars().all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].topic, "ledger_events")
        event = json.loads(rows[0].payload)
        self.assertEqual(event["type"], "EntryPosted")
        self.assertEqual(event["entry_id"], result.entry.id)
        self.assertEqual(event["amount"], 5000)
        self.assertEqual(event["status"], "completed")


class TestBalanceConservation(DatabaseTestCase):

    def test_balance_equals_sum_of_entries(self):
        """Test that after any mix of operations the cached balance matches the entries"""
        self.create_account()
        self.fund(50_000)
        rng = random.Random(7)
        for i in range(30):
            amount = rng.choice([1, -1]) * rng.randint(1, 4000)
            tx_type = TransactionType.INCOME if amount > 0 else TransactionType.EXPENSE
            tx = self.create_transaction(f"R{i}", amount, type=tx_type)
            try:
                self.ledger.settle_transaction(tx.id)
            except InvariantViolationError:
                continue
            if rng.random() < 0.3:
                self.ledger.reverse_transaction(tx.id)

            audit = self.ledger.audit_account_balance("acct_1")
            self.assertTrue(audit.consistent, audit)
            self.assertGreaterEqual(audit.balance, 0)


class TestConcurrency(DatabaseTestCase):

    def test_concurrent_settles_post_once(self):
        """Test that racing settles of one transaction post exactly one entry"""
        self.create_account()
        tx = self.create_transaction("TRF_100", 5000)
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: self.ledger.settle_transaction(tx.id), range(8)))
        self.assertEqual(sum(1 for r in results if r.changed), 1)
        self.assertEqual(len(self.ledger.entries_for_transaction(tx.id)), 1)
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 5000)

    def test_concurrent_postings_keep_balance_consistent(self):
        self.create_account()
        txs = [self.create_transaction(f"C{i}", 100 + i) for i in range(20)]
        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(lambda t: self.ledger.settle_transaction(t.id), txs))
        audit = self.ledger.audit_account_balance("acct_1")
        self.assertTrue(audit.consistent)
        self.assertEqual(audit.balance, sum(100 + i for i in range(20)))

    def test_account_locks_are_bounded(self):
        """Test that many accounts share a fixed pool of locks and one account always maps to the same lock"""
        locks = AccountLocks(stripes=8)
        seen = {id(locks.lock_for(f"acct_{i}")) for i in range(1000)}
        self.assertLessEqual(len(seen), 8)
        self.assertIs(locks.lock_for("acct_42"), locks.lock_for("acct_42"))

        with locks.hold("acct_42"):
            self.assertTrue(locks.lock_for("acct_42").locked())
        self.assertFalse(locks.lock_for("acct_42").locked())

    def test_shared_stripe_still_posts_both_accounts(self):
        self.ledger.locks = AccountLocks(stripes=1)
        self.create_account()
        self.create_account("acct_2")
        txs = [self.create_transaction(f"S{i}", 100, account_id=f"acct_{1 + i % 2}") for i in range(10)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda t: self.ledger.settle_transaction(t.id), txs))
        self.assertEqual(self.ledger.get_account_balance("acct_1"), 500)
        self.assertEqual(self.ledger.get_account_balance("acct_2"), 500)


if __name__ == "__main__":
    unittest.main()
