"""
Idempotency stores for webhook events.

A claim is an atomic check-and-set: exactly one caller wins per
(provider, event_id), across threads, processes and restarts.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from common.redis_client import RedisClient
from common.settings import Settings
from ledger_service.models import IdempotencyKey

logger = logging.getLogger(__name__)


class IdempotencyStore(ABC):

    @abstractmethod
    def claim(self, provider: str, event_id: str, session: Optional[Session] = None) -> bool:
        """Record the event as seen. True for the first caller only."""

    @abstractmethod
    def seen_before(self, provider: str, event_id: str) -> bool:
        ...

    @abstractmethod
    def release(self, provider: str, event_id: str):
        """Forget a claim whose event could not be persisted."""

    def mark_seen(self, provider: str, event_id: str):
        self.claim(provider, event_id)


class SqlIdempotencyStore(IdempotencyStore):
    """Backed by the unique (provider, event_id) constraint on idempotency_keys."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def claim(self, provider: str, event_id: str, session: Optional[Session] = None) -> bool:
        """
        Insert the key. With a caller session the insert is flushed but not
        committed, so it lands together with whatever the caller writes next;
        the claim must be the first write in that session, since losing it
        rolls the session back.
        """
        if session is not None:
            return self._insert(session, provider, event_id)
        with self.session_factory() as db:
            if not self._insert(db, provider, event_id):
                return False
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    @staticmethod
    def _insert(db: Session, provider: str, event_id: str) -> bool:
        db.add(IdempotencyKey(provider=provider, event_id=event_id))
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info(f"Duplicate {provider} event {event_id}")
            return False
        return True

    def seen_before(self, provider: str, event_id: str) -> bool:
        with self.session_factory() as db:
            return db.execute(
                select(IdempotencyKey.id).where(IdempotencyKey.provider == provider, IdempotencyKey.event_id == event_id)
            ).first() is not None

    def release(self, provider: str, event_id: str):
        with self.session_factory() as db:
            db.execute(
                delete(IdempotencyKey).where(IdempotencyKey.provider == provider, IdempotencyKey.event_id == event_id)
            )
            db.commit()


class RedisIdempotencyStore(IdempotencyStore):
    """SET NX EX on the shared Redis; keys expire after the configured TTL."""

    def __init__(self, redis_client: RedisClient, ttl_seconds: int):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    def claim(self, provider: str, event_id: str, session: Optional[Session] = None) -> bool:
        return self.redis.claim_event(provider, event_id, self.ttl_seconds)

    def seen_before(self, provider: str, event_id: str) -> bool:
        return self.redis.event_seen(provider, event_id)

    def release(self, provider: str, event_id: str):
        self.redis.release_event(provider, event_id)


def build_idempotency_store(
    settings: Settings,
    session_factory: sessionmaker,
    redis_client: Optional[RedisClient] = None,
) -> IdempotencyStore:
    if settings.idempotency_backend == "redis":
        logger.info("Using Redis idempotency store")
        return RedisIdempotencyStore(redis_client or RedisClient(url=settings.redis_url), settings.idempotency_ttl_seconds)
    return SqlIdempotencyStore(session_factory)
