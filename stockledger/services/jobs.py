from __future__ import annotations

import json
import logging
import os
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from stockledger.core.cache import CacheClient
from stockledger.core.errors import JobConflict
from stockledger.models.entities import utc_now

logger = logging.getLogger(__name__)

ORDER_SYNC = "order_sync"
INVENTORY_IMPORT = "inventory_import"
INVENTORY_SYNC = "inventory_sync"

JOB_CONFLICTS: dict[str, tuple[str, ...]] = {
    ORDER_SYNC: (INVENTORY_IMPORT, INVENTORY_SYNC),
    INVENTORY_IMPORT: (ORDER_SYNC, INVENTORY_SYNC),
    INVENTORY_SYNC: (ORDER_SYNC, INVENTORY_IMPORT),
}


def job_lock_key(owner: int | str, kind: str) -> str:
    return f"job_lock:{owner}:{kind}"


class JobCoordinator:
    """Per-shop gate that keeps structurally conflicting jobs apart."""

    def __init__(
        self,
        cache: CacheClient,
        ttl_seconds: int = 1800,
        max_attempts: int = 3,
        wait_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.wait_seconds = wait_seconds
        self._sleep = sleep

    def acquire_job_lock(self, owner: int | str, kind: str, job_id: str | None = None) -> str:
        """Claim ``kind`` for ``owner`` or raise ``JobConflict``.

        The job's own key is claimed before the conflicting keys are read, so of
        two conflicting jobs starting together at least one sees the other and
        backs off.
        """
        key = job_lock_key(owner, kind)
        value = json.dumps(
            {
                "job_id": job_id,
                "started_at": utc_now().isoformat(),
                "pid": os.getpid(),
                "hostname": socket.gethostname(),
            }
        )
        if not self.cache.set_if_absent(key, value, self.ttl_seconds):
            logger.warning("Job lock %s already held (%s)", key, self.cache.get(key))
            raise JobConflict(
                f"Job {kind} already running for shop {owner}",
                details={"owner": owner, "kind": kind, "blocked_by": kind},
            )

        for conflict in JOB_CONFLICTS.get(kind, ()):
            holder = self.cache.get(job_lock_key(owner, conflict))
            if holder is not None:
                self.cache.delete_if_equals(key, value)
                logger.warning("Job conflict: %s blocked by %s for shop %s (%s)", kind, conflict, owner, holder)
                raise JobConflict(
                    f"Cannot start {kind} while {conflict} is running for shop {owner}",
                    details={"owner": owner, "kind": kind, "blocked_by": conflict},
                )

        logger.info("Acquired job lock %s (%s)", key, job_id)
        return key

    def release_job_lock(self, owner: int | str, kind: str, job_id: str | None = None) -> bool:
        key = job_lock_key(owner, kind)
        current = self.cache.get(key)
        if current is None:
            return False
        try:
            holder = json.loads(current)
        except ValueError:
            logger.warning("Unreadable job lock %s: %r", key, current)
            return False
        if job_id is not None and holder.get("job_id") != job_id:
            return False
        released = self.cache.delete_if_equals(key, current)
        if released:
            logger.info("Released job lock %s", key)
        return released

    @contextmanager
    def coordinate(self, owner: int | str, kind: str, job_id: str | None = None) -> Iterator[str]:
        attempts = 0
        while True:
            try:
                key = self.acquire_job_lock(owner, kind, job_id)
                break
            except JobConflict:
                attempts += 1
                if attempts >= self.max_attempts:
                    logger.warning("Giving up on %s for shop %s after %s attempts", kind, owner, attempts)
                    raise
                logger.info(
                    "%s busy for shop %s, waiting %ss (attempt %s/%s)",
                    kind,
                    owner,
                    self.wait_seconds,
                    attempts,
                    self.max_attempts,
                )
                self._sleep(self.wait_seconds)
        try:
            yield key
        finally:
            self.release_job_lock(owner, kind, job_id)

    def job_locked(self, owner: int | str, kind: str) -> bool:
        return self.cache.exists(job_lock_key(owner, kind))

    def can_run_job(self, owner: int | str, kind: str) -> bool:
        if self.job_locked(owner, kind):
            return False
        return not any(self.job_locked(owner, conflict) for conflict in JOB_CONFLICTS.get(kind, ()))

    def active_jobs(self, owner: int | str) -> list[dict]:
        jobs = []
        for key in self.cache.keys(job_lock_key(owner, "*")):
            raw = self.cache.get(key)
            if raw is None:
                continue
            try:
                info = json.loads(raw)
                started_at = datetime.fromisoformat(info["started_at"])
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Error parsing job lock %s: %s", key, exc)
                continue
            jobs.append(
                {
                    "kind": key.rsplit(":", 1)[-1],
                    "job_id": info.get("job_id"),
                    "started_at": started_at,
                    "pid": info.get("pid"),
                    "hostname": info.get("hostname"),
                }
            )
        return jobs
