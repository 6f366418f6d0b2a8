"""Per-token lease lock serializing reconciliation writes.

Scheduled sweeps, manual refreshes, backfills and corruption fixes can
all target the same token.  Each must hold the token's lease while it
reads stored progress and writes the result, so two passes never both
"improve" on the same stale multiplier.

Acquisition is a single compare-and-set: it succeeds only if no lease
exists or the existing one has expired.  A lease left behind by a
crashed holder simply expires after ``lock_ttl_seconds``.
"""

import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

from config import settings
from models.database import release_token_lock, try_acquire_token_lock
from services.errors import LockContention

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockStore(Protocol):
    def try_acquire(self, key: str, holder_id: str, ttl_seconds: float, now: float) -> bool: ...

    def release(self, key: str, holder_id: str) -> None: ...


class InMemoryLockStore:
    """Process-local lease table; only valid for a single instance."""

    def __init__(self) -> None:
        self._leases: dict[str, tuple[str, float]] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, key: str, holder_id: str, ttl_seconds: float, now: float) -> bool:
        with self._mutex:
            current = self._leases.get(key)
            if current is not None and current[1] > now:
                return False
            self._leases[key] = (holder_id, now + ttl_seconds)
            return True

    def release(self, key: str, holder_id: str) -> None:
        with self._mutex:
            current = self._leases.get(key)
            if current is not None and current[0] == holder_id:
                del self._leases[key]

    def holder(self, key: str) -> Optional[str]:
        current = self._leases.get(key)
        return current[0] if current else None


class SupabaseLockStore:
    """Leases in the ``token_locks`` table, shared by every instance."""

    def try_acquire(self, key: str, holder_id: str, ttl_seconds: float, now: float) -> bool:
        return try_acquire_token_lock(key, holder_id, ttl_seconds, now)

    def release(self, key: str, holder_id: str) -> None:
        release_token_lock(key, holder_id)


class TokenLockCoordinator:
    def __init__(
        self,
        store: LockStore,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.lock_ttl_seconds
        self.clock = clock

    @asynccontextmanager
    async def hold(self, token: str) -> AsyncIterator[str]:
        """Hold the token's lease for the duration of the block.

        Raises:
            LockContention: Another holder has a live lease on ``token``.
        """
        holder_id = uuid.uuid4().hex
        if not self.store.try_acquire(token, holder_id, self.ttl_seconds, self.clock()):
            raise LockContention(token)
        logger.debug("Lock: %s acquired by %s", token, holder_id[:8])
        try:
            yield holder_id
        finally:
            try:
                self.store.release(token, holder_id)
            except Exception:
                # The lease expires on its own after the TTL
                logger.exception("Lock: failed to release %s", token)

    async def with_token_lock(self, token: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.hold(token):
            return await fn()


_coordinator: Optional[TokenLockCoordinator] = None


def get_token_lock_coordinator() -> TokenLockCoordinator:
    global _coordinator
    if _coordinator is None:
        if settings.lock_backend == "memory":
            store: LockStore = InMemoryLockStore()
        else:
            store = SupabaseLockStore()
        _coordinator = TokenLockCoordinator(store)
        logger.info("Lock: using %s lock store (ttl=%ss)", settings.lock_backend, _coordinator.ttl_seconds)
    return _coordinator
