"""
Idempotency Guard
=================
Time-bounded record of previously seen event identifiers.

Both ingestion gates own one guard each (separate namespaces). The guard
closes the race between two near-simultaneous deliveries of the same
event: check-and-record is a single atomic operation, performed before
any domain work.

Implementations:
- InMemoryIdempotencyGuard: single-instance table, asyncio.Lock guarded,
  purged by the periodic sweep in tasks/idempotency_sweeper.py
- RedisIdempotencyGuard: shared store for horizontally scaled deployments
  (SET NX EX; Redis expires keys itself)
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(component="idempotency")

DEFAULT_RETENTION_SECONDS = 3600


# =============================================================================
# INTERFACE
# =============================================================================

class IIdempotencyGuard(ABC):
    """At-most-once processing within a bounded retention window"""

    namespace: str
    retention_seconds: int

    @abstractmethod
    async def seen(self, event_id: str) -> bool:
        """True if the id was recorded and has not expired."""
        pass

    @abstractmethod
    async def record(self, event_id: str) -> None:
        """Record the id unconditionally."""
        pass

    @abstractmethod
    async def check_and_record(self, event_id: str) -> bool:
        """
        Atomically record the id if unseen.
        Returns True on first sighting, False for a duplicate.
        """
        pass

    @abstractmethod
    async def release(self, event_id: str) -> bool:
        """Forget an id so a redelivery can be processed again."""
        pass

    @abstractmethod
    async def evict_expired(self) -> int:
        """Drop entries older than the retention window. Returns count removed."""
        pass

    @abstractmethod
    async def size(self) -> int:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryIdempotencyGuard(IIdempotencyGuard):
    """
    Process-local processed-event table.

    Entries live for `retention_seconds` after insertion. Lookups ignore
    expired entries even before the sweep removes them, so the window is
    exact regardless of sweep cadence.
    """

    def __init__(
        self,
        namespace: str,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.namespace = namespace
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _is_live(self, inserted_at: float, now: float) -> bool:
        return now - inserted_at < self.retention_seconds

    async def seen(self, event_id: str) -> bool:
        async with self._lock:
            inserted_at = self._entries.get(event_id)
            return inserted_at is not None and self._is_live(inserted_at, self._clock())

    async def record(self, event_id: str) -> None:
        async with self._lock:
            self._entries[event_id] = self._clock()

    async def check_and_record(self, event_id: str) -> bool:
        async with self._lock:
            now = self._clock()
            inserted_at = self._entries.get(event_id)
            if inserted_at is not None and self._is_live(inserted_at, now):
                return False
            self._entries[event_id] = now
            return True

    async def release(self, event_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(event_id, None) is not None

    async def evict_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, ts in self._entries.items() if not self._is_live(ts, now)]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug("idempotency_evicted", namespace=self.namespace, count=len(expired))
        return len(expired)

    async def size(self) -> int:
        async with self._lock:
            return len(self._entries)


# =============================================================================
# REDIS IMPLEMENTATION
# =============================================================================

class RedisIdempotencyGuard(IIdempotencyGuard):
    """
    Shared idempotency table for multi-instance deployments.

    check_and_record is `SET key value NX EX retention`; Redis applies the
    retention window itself, so evict_expired is a no-op.
    """

    def __init__(
        self,
        redis_client,
        namespace: str,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        key_prefix: str = "idempotency",
    ):
        self._redis = redis_client
        self.namespace = namespace
        self.retention_seconds = retention_seconds
        self._prefix = f"{key_prefix}:{namespace}:"

    def _key(self, event_id: str) -> str:
        return f"{self._prefix}{event_id}"

    async def seen(self, event_id: str) -> bool:
        return bool(await self._redis.exists(self._key(event_id)))

    async def record(self, event_id: str) -> None:
        await self._redis.set(
            self._key(event_id),
            datetime.utcnow().isoformat(),
            ex=self.retention_seconds,
        )

    async def check_and_record(self, event_id: str) -> bool:
        acquired = await self._redis.set(
            self._key(event_id),
            datetime.utcnow().isoformat(),
            nx=True,
            ex=self.retention_seconds,
        )
        return bool(acquired)

    async def release(self, event_id: str) -> bool:
        return bool(await self._redis.delete(self._key(event_id)))

    async def evict_expired(self) -> int:
        return 0

    async def size(self) -> int:
        count = 0
        async for _ in self._redis.scan_iter(match=f"{self._prefix}*"):
            count += 1
        return count


def build_guard(
    namespace: str,
    retention_seconds: int,
    redis_client: Optional[object] = None,
) -> IIdempotencyGuard:
    """Pick the Redis guard when a client is supplied, else the in-memory table."""
    if redis_client is not None:
        return RedisIdempotencyGuard(redis_client, namespace, retention_seconds)
    return InMemoryIdempotencyGuard(namespace, retention_seconds)
