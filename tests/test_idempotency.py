"""
Tests for the SQL and Redis idempotency stores
"""
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

from common.redis_client import RedisClient
from webhook_service.idempotency import (
    RedisIdempotencyStore,
    SqlIdempotencyStore,
    build_idempotency_store,
)

from support import DatabaseTestCase, make_settings


class TestSqlIdempotencyStore(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.store = SqlIdempotencyStore(self.session_factory)

    def test_first_claim_wins(self):
        """Test that only the first claim for an event id succeeds"""
        self.assertTrue(self.store.claim("paystack", "evt_1"))
        self.assertFalse(self.store.claim("paystack", "evt_1"))
        self.assertTrue(self.store.seen_before("paystack", "evt_1"))

    def test_keys_are_scoped_by_provider(self):
        self.assertTrue(self.store.claim("paystack", "evt_1"))
        self.assertTrue(self.store.claim("stripe", "evt_1"))

    def test_mark_seen(self):
        self.assertFalse(self.store.seen_before("flutterwave", "evt_9"))
        self.store.mark_seen("flutterwave", "evt_9")
        self.assertTrue(self.store.seen_before("flutterwave", "evt_9"))

    def test_release_forgets_claim(self):
        self.store.claim("paystack", "evt_2")
        self.store.release("paystack", "evt_2")
        self.assertFalse(self.store.seen_before("paystack", "evt_2"))
        self.assertTrue(self.store.claim("paystack", "evt_2"))

    def test_claim_in_caller_session_commits_with_caller(self):
        """Test that a claim made inside a caller session disappears on rollback"""
        with self.session_factory() as db:
            self.assertTrue(self.store.claim("paystack", "evt_3", session=db))
            db.rollback()
        self.assertFalse(self.store.seen_before("paystack", "evt_3"))

        with self.session_factory() as db:
            self.assertTrue(self.store.claim("paystack", "evt_3", session=db))
            db.commit()
        self.assertTrue(self.store.seen_before("paystack", "evt_3"))

    def test_concurrent_claims_have_one_winner(self):
        """Test that racing claims for the same event produce exactly one winner"""
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: self.store.claim("paystack", "evt_race"), range(8)))
        self.assertEqual(results.count(True), 1)

    def test_durable_across_store_instances(self):
        """Test that a restart (new store over the same database) still sees old claims"""
        self.store.claim("stripe", "evt_restart")
        fresh = SqlIdempotencyStore(self.session_factory)
        self.assertTrue(fresh.seen_before("stripe", "evt_restart"))
        self.assertFalse(fresh.claim("stripe", "evt_restart"))


class TestRedisIdempotencyStore(unittest.TestCase):

    def setUp(self):
        self.redis = MagicMock()
        self.store = RedisIdempotencyStore(RedisClient(client=self.redis), ttl_seconds=3600)

    def test_claim_uses_set_nx_with_ttl(self):
        self.redis.set.return_value = True
        self.assertTrue(self.store.claim("paystack", "evt_1"))
        self.redis.set.assert_called_once_with("webhook:seen:paystack:evt_1", 1, nx=True, ex=3600)

    def test_claim_of_existing_key_fails(self):
        self.redis.set.return_value = None
        self.assertFalse(self.store.claim("paystack", "evt_1"))

    def test_seen_before_and_release(self):
        self.redis.exists.return_value = 1
        self.assertTrue(self.store.seen_before("stripe", "evt_2"))
        self.store.release("stripe", "evt_2")
        self.redis.delete.assert_called_once_with("webhook:seen:stripe:evt_2")


class TestBuildIdempotencyStore(DatabaseTestCase):

    def test_database_backend_is_default(self):
        store = build_idempotency_store(make_settings(), self.session_factory)
        self.assertIsInstance(store, SqlIdempotencyStore)

    def test_redis_backend(self):
        client = RedisClient(client=MagicMock())
        store = build_idempotency_store(make_settings(idempotency_backend="redis"), self.session_factory, client)
        self.assertIsInstance(store, RedisIdempotencyStore)
        self.assertIs(store.redis, client)


if __name__ == "__main__":
    unittest.main()
