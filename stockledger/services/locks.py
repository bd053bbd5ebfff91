from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

from stockledger.core.cache import CacheClient
from stockledger.core.errors import LockTimeout

logger = logging.getLogger(__name__)

INITIAL_BACKOFF_SECONDS = 0.05
MAX_BACKOFF_SECONDS = 1.0


def product_lock_key(product_id: str) -> str:
    return f"inventory_lock:product:{product_id}"


class LockManager:
    """Per-key mutual exclusion on top of the shared key-value store.

    Every lock carries a TTL so a crashed holder cannot wedge other workers,
    and release is compare-and-delete on the owner token so a holder whose
    lock already expired never frees a later holder's lock.
    """

    def __init__(self, cache: CacheClient, max_wait_seconds: float = 30.0, ttl_seconds: int = 60) -> None:
        self.cache = cache
        self.max_wait_seconds = max_wait_seconds
        self.ttl_seconds = ttl_seconds

    def acquire(self, key: str, max_wait: float | None = None, ttl: int | None = None) -> str:
        max_wait = self.max_wait_seconds if max_wait is None else max_wait
        ttl = ttl or self.ttl_seconds
        token = uuid4().hex
        deadline = time.monotonic() + max_wait
        backoff = INITIAL_BACKOFF_SECONDS
        attempts = 0

        while True:
            attempts += 1
            if self.cache.set_if_absent(key, token, ttl):
                if attempts > 1:
                    logger.debug("Acquired lock %s after %d attempts", key, attempts)
                return token
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Timed out waiting %.1fs for lock %s", max_wait, key)
                raise LockTimeout(f"Could not acquire lock {key} within {max_wait}s", details={"key": key})
            time.sleep(min(backoff, remaining))
            backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)

    def release(self, key: str, token: str) -> bool:
        released = self.cache.delete_if_equals(key, token)
        if not released:
            logger.info("Lock %s was no longer held by this owner; nothing released", key)
        return released

    @contextmanager
    def hold(self, key: str, max_wait: float | None = None, ttl: int | None = None) -> Iterator[str]:
        token = self.acquire(key, max_wait=max_wait, ttl=ttl)
        try:
            yield token
        finally:
            self.release(key, token)
