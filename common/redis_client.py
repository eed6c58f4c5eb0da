"""
Redis client utilities for webhook event dedup
"""
import redis
import logging
from typing import Optional
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, client: Optional[redis.Redis] = None, url: Optional[str] = None):
        self.client = client or redis.Redis.from_url(url or settings.redis_url, decode_responses=True)

    @staticmethod
    def event_key(provider: str, event_id: str) -> str:
        return f"webhook:seen:{provider}:{event_id}"

    def claim_event(self, provider: str, event_id: str, ttl_seconds: int) -> bool:
        """Atomically mark an event as seen. True only for the first caller."""
        return bool(self.client.set(self.event_key(provider, event_id), 1, nx=True, ex=ttl_seconds))

    def event_seen(self, provider: str, event_id: str) -> bool:
        return bool(self.client.exists(self.event_key(provider, event_id)))

    def release_event(self, provider: str, event_id: str) -> bool:
        return bool(self.client.delete(self.event_key(provider, event_id)))
