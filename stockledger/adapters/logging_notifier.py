from __future__ import annotations

import logging
from typing import Any

from stockledger.adapters.base import Notifier

logger = logging.getLogger(__name__)

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class LoggingNotifier(Notifier):
    """Default notifier for workers that have no user-facing alert channel wired in."""

    def notify(
        self,
        owner: int,
        title: str,
        message: str,
        category: str,
        severity: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        logger.log(
            _LEVELS.get(severity, logging.INFO),
            "notification shop=%s category=%s title=%s: %s %s",
            owner,
            category,
            title,
            message,
            metadata or {},
        )
