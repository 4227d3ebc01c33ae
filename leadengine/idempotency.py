"""
Idempotency keys, single-winner claims and keyed locks.

Redis is used when ``REDIS_URL`` is configured; otherwise everything falls
back to process-local state, which is enough for a single worker and tests.
"""

from __future__ import annotations

import contextlib
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Optional

import redis

from leadengine.config import settings
from leadengine.runtime import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "leadengine"


def _key(*parts: str) -> str:
    return ":".join([KEY_PREFIX, *[p for p in parts if p]])


class IdempotencyStore:
    """Redis idempotency with a bounded local fallback for webhook deduplication."""

    def __init__(self, max_mem_size: int = 10000):
        self.r: Optional[redis.Redis] = None
        s = settings()
        if s.REDIS_URL:
            try:
                self.r = redis.from_url(s.REDIS_URL, ssl=s.REDIS_TLS, decode_responses=True, socket_timeout=3)
            except Exception:
                logger.error("Redis init failed; using local idempotency store", exc_info=True)
                self.r = None
        self._mem: "OrderedDict[str, float]" = OrderedDict()
        self._max_mem_size = max_mem_size
        self._mem_lock = threading.Lock()

    def _remember(self, key: str, ttl: int) -> bool:
        """Return True if ``key`` was newly added (or had expired) in the local set."""
        now = time.monotonic()
        with self._mem_lock:
            expires_at = self._mem.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._mem.pop(key, None)
            if len(self._mem) >= self._max_mem_size:
                # drop oldest 20%
                for _ in range(self._max_mem_size // 5):
                    self._mem.popitem(last=False)
            self._mem[key] = now + ttl
            return True

    def claim(self, key: str, ttl: Optional[int] = None) -> bool:
        """Single-winner claim: True for the first caller, False afterwards."""
        if not key:
            return True
        full_key = _key("claim", key)
        ttl = ttl or settings().IDEMPOTENCY_TTL_SEC
        if self.r is not None:
            try:
                return bool(self.r.set(full_key, "1", nx=True, ex=ttl))
            except redis.RedisError:
                logger.warning("Redis claim failed for %s; using local store", key, exc_info=True)
        return self._remember(full_key, ttl)

    def release(self, key: str) -> None:
        if not key:
            return
        full_key = _key("claim", key)
        if self.r is not None:
            try:
                self.r.delete(full_key)
            except redis.RedisError:
                logger.warning("Redis release failed for %s", key, exc_info=True)
        with self._mem_lock:
            self._mem.pop(full_key, None)

    def seen(self, event_id: Optional[str], namespace: str = "inbound") -> bool:
        """Check whether a provider event id was already processed, marking it if not."""
        if not event_id:
            return False
        return not self.claim(f"{namespace}:{event_id}")

    def forget(self, event_id: Optional[str], namespace: str = "inbound") -> None:
        """Undo ``seen`` so a redelivery of a failed event is processed again."""
        if event_id:
            self.release(f"{namespace}:{event_id}")


_local_locks: Dict[str, List[Any]] = {}
_local_locks_guard = threading.Lock()


def _local_lock(name: str) -> threading.Lock:
    """Check out the lock for ``name``; pair with ``_return_local_lock``."""
    with _local_locks_guard:
        entry = _local_locks.get(name)
        if entry is None:
            entry = _local_locks[name] = [threading.Lock(), 0]
        entry[1] += 1
        return entry[0]


def _return_local_lock(name: str) -> None:
    with _local_locks_guard:
        entry = _local_locks.get(name)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del _local_locks[name]


@contextlib.contextmanager
def keyed_lock(name: str, timeout: Optional[int] = None) -> Iterator[None]:
    """Mutual exclusion per key (phone, partner, lead dedup bucket)."""
    timeout = timeout or settings().LOCK_TIMEOUT_SEC
    store = get_store()
    if store.r is not None:
        lock = store.r.lock(_key("lock", name), timeout=timeout, blocking_timeout=timeout)
        if not lock.acquire():
            raise TimeoutError(f"Could not acquire lock {name}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning("Lock %s expired before release", name)
        return

    local = _local_lock(name)
    try:
        if not local.acquire(timeout=timeout):
            raise TimeoutError(f"Could not acquire lock {name}")
        try:
            yield
        finally:
            local.release()
    finally:
        _return_local_lock(name)


_STORE: Optional[IdempotencyStore] = None


def get_store() -> IdempotencyStore:
    global _STORE
    if _STORE is None:
        _STORE = IdempotencyStore()
    return _STORE


def reset_idempotency() -> None:
    global _STORE
    _STORE = None
    with _local_locks_guard:
        _local_locks.clear()
