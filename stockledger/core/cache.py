from __future__ import annotations

import fnmatch
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

from stockledger.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Expired fallback entries are only swept this often.
PRUNE_INTERVAL_SECONDS = 60.0

COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass
class CacheResult:
    hit: bool
    value: Any | None


class CacheClient:
    """Key-value access backed by Redis, with a process-local fallback.

    Plain cache reads and writes degrade to the fallback when Redis is
    unavailable. Coordination primitives (``set_if_absent``,
    ``delete_if_equals``) propagate ``RedisError`` instead, since a
    process-local lock is not a lock.
    """

    def __init__(self, redis: Redis | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._redis = redis
        self._clock = clock
        self._fallback: dict[str, tuple[str, float | None]] = {}
        self._fallback_lock = threading.Lock()
        self._next_prune = clock() + PRUNE_INTERVAL_SECONDS
        self._compare_and_delete = redis.register_script(COMPARE_AND_DELETE) if redis is not None else None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> CacheClient:
        settings = settings or get_settings()
        redis: Redis | None = None
        if settings.cache_enabled:
            try:
                redis = Redis.from_url(settings.redis_url, decode_responses=True)
                redis.ping()
            except RedisError as exc:
                logger.warning("Redis unavailable at %s, using in-process store: %s", settings.redis_url, exc)
                redis = None
        return cls(redis)

    @property
    def is_distributed(self) -> bool:
        return self._redis is not None

    def get_json(self, key: str) -> CacheResult:
        value = self.get(key)
        if value is None:
            return CacheResult(hit=False, value=None)
        return CacheResult(hit=True, value=json.loads(value))

    def set_json(self, key: str, payload: Any, ttl_seconds: int) -> None:
        encoded = json.dumps(payload, default=str)
        try:
            if self._redis:
                self._redis.setex(key, ttl_seconds, encoded)
                return
        except RedisError:
            logger.warning("Redis write failed for %s, caching locally", key)
        self._fallback_set(key, encoded, ttl_seconds)

    def get(self, key: str) -> str | None:
        try:
            if self._redis:
                return self._redis.get(key)
        except RedisError:
            logger.warning("Redis read failed for %s, reading local cache", key)
        return self._fallback_get(key)

    def exists(self, key: str) -> bool:
        try:
            if self._redis:
                return bool(self._redis.exists(key))
        except RedisError:
            logger.warning("Redis exists failed for %s, checking local cache", key)
        return self._fallback_get(key) is not None

    def delete(self, key: str) -> None:
        try:
            if self._redis:
                self._redis.delete(key)
        except RedisError:
            logger.warning("Redis delete failed for %s", key)
        with self._fallback_lock:
            self._fallback.pop(key, None)

    def keys(self, pattern: str) -> list[str]:
        if self._redis:
            return sorted(self._redis.scan_iter(match=pattern))
        with self._fallback_lock:
            now = self._clock()
            return sorted(
                key
                for key, (_, expires_at) in self._fallback.items()
                if fnmatch.fnmatchcase(key, pattern) and (expires_at is None or expires_at > now)
            )

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if self._redis:
            return bool(self._redis.set(key, value, nx=True, ex=ttl_seconds))
        with self._fallback_lock:
            self._prune_expired()
            if self._live_value(key) is not None:
                return False
            self._fallback[key] = (value, self._clock() + ttl_seconds)
            return True

    def delete_if_equals(self, key: str, expected: str) -> bool:
        if self._compare_and_delete is not None:
            return bool(self._compare_and_delete(keys=[key], args=[expected]))
        with self._fallback_lock:
            if self._live_value(key) != expected:
                return False
            del self._fallback[key]
            return True

    def _fallback_get(self, key: str) -> str | None:
        with self._fallback_lock:
            return self._live_value(key)

    def _fallback_set(self, key: str, value: str, ttl_seconds: int | None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._fallback_lock:
            self._prune_expired()
            self._fallback[key] = (value, expires_at)

    def _live_value(self, key: str) -> str | None:
        entry = self._fallback.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._fallback[key]
            return None
        return value

    def _prune_expired(self) -> None:
        now = self._clock()
        if now < self._next_prune:
            return
        self._next_prune = now + PRUNE_INTERVAL_SECONDS
        expired = [key for key, (_, expires_at) in self._fallback.items() if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._fallback[key]
