"""
Webhook event de-duplication

Best-effort only; every handler is idempotent on its own. The in-memory
store lasts for the process lifetime, the Redis store is shared between
workers and expires entries after EVENT_DEDUPE_TTL_SECONDS.
"""

import logging
from threading import Lock
from typing import Optional, Protocol

import redis

from ...config import EVENT_DEDUPE_TTL_SECONDS
from ...redis_client import get_redis_client, redis_configured

logger = logging.getLogger(__name__)


class EventDeduplicator(Protocol):
    def was_seen_before(self, event_id: str) -> bool: ...

    def mark_seen(self, event_id: str) -> None: ...


class InMemoryEventDeduplicator:
    """Process-lifetime set of handled event ids"""

    def __init__(self):
        self._seen: set[str] = set()
        self._lock = Lock()

    def was_seen_before(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._seen

    def mark_seen(self, event_id: str) -> None:
        with self._lock:
            self._seen.add(event_id)


class RedisEventDeduplicator:
    """Redis-backed store; any Redis failure answers "not seen" (fail-open)"""

    def __init__(self, client: redis.Redis, ttl: int = EVENT_DEDUPE_TTL_SECONDS, prefix: str = "stripe_evt:"):
        self.client = client
        self.ttl = ttl
        self.prefix = prefix

    def _key(self, event_id: str) -> str:
        return f"{self.prefix}{event_id}"

    def was_seen_before(self, event_id: str) -> bool:
        try:
            seen = bool(self.client.exists(self._key(event_id)))
        except redis.RedisError as e:
            logger.error(f"❌ Dedupe lookup failed for {event_id}: {e}")
            return False
        if seen:
            logger.debug(f"✅ Dedupe HIT: {event_id}")
        return seen

    def mark_seen(self, event_id: str) -> None:
        try:
            self.client.set(self._key(event_id), "1", ex=self.ttl)
        except redis.RedisError as e:
            logger.error(f"❌ Dedupe mark failed for {event_id}: {e}")


def build_event_deduplicator(ttl: Optional[int] = None) -> EventDeduplicator:
    """Redis when configured and reachable, otherwise in-memory."""
    if redis_configured():
        try:
            return RedisEventDeduplicator(get_redis_client(), ttl=ttl or EVENT_DEDUPE_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"⚠️ Redis unavailable, webhook de-duplication is process-local: {e}")
    return InMemoryEventDeduplicator()
