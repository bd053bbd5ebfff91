from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from stockledger.schemas.ledger import SyncRequest

logger = logging.getLogger(__name__)


class TaskScheduler(ABC):
    """Hands work to the background task system."""

    @abstractmethod
    def push(self, request: SyncRequest) -> None:
        raise NotImplementedError

    @abstractmethod
    def schedule_retry(self, failure_id: str, delay_seconds: int) -> None:
        raise NotImplementedError


def dispatch_followups(scheduler: TaskScheduler, followups: Iterable[SyncRequest]) -> int:
    dispatched = 0
    for request in followups:
        scheduler.push(request)
        dispatched += 1
    if dispatched:
        logger.debug("Dispatched %s follow-up pushes", dispatched)
    return dispatched
