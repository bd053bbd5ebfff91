from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel

from stockledger.core.cache import CacheClient, CacheResult
from stockledger.core.errors import DuplicateOperation

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_TTL_SECONDS = 7 * 24 * 3600


def build_key(kind: str, *parts: object) -> str:
    """Deterministic key from an operation's natural identity."""
    encoded = json.dumps([str(part) if part is not None else None for part in parts], separators=(",", ":"))
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
    return f"idempotency:{kind}:{digest}"


def digest_payload(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()


class IdempotencyStore:
    def __init__(self, cache: CacheClient, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def lookup(self, key: str) -> CacheResult:
        return self.cache.get_json(key)

    def lookup_model(self, key: str, model: type[ModelT]) -> ModelT | None:
        cached = self.lookup(key)
        if not cached.hit:
            return None
        return model.model_validate(cached.value)

    def remember(self, key: str, result: BaseModel) -> None:
        self.cache.set_json(key, result.model_dump(mode="json"), ttl_seconds=self.ttl_seconds)

    def forget(self, key: str) -> None:
        self.cache.delete(key)

    def run(self, key: str, model: type[ModelT], operation: Callable[[], ModelT]) -> tuple[ModelT, bool]:
        """Run ``operation`` once per key. Returns the result and whether it came from cache.

        Exceptions are not cached, so a failed attempt is retried in full on
        redelivery. A ``DuplicateOperation`` carrying the earlier result resolves
        to that result, as if it had been served from cache.
        """
        cached = self.lookup_model(key, model)
        if cached is not None:
            logger.info("Idempotency hit for %s", key)
            return cached, True
        try:
            result = operation()
        except DuplicateOperation as exc:
            if exc.result is None:
                raise
            logger.info("Operation for %s already applied: %s", key, exc.message)
            self.remember(key, exc.result)
            return exc.result, True
        self.remember(key, result)
        return result, False
