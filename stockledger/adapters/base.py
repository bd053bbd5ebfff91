from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from stockledger.models import PlatformMirror

EBAY = "ebay"
SHOPIFY = "shopify"
PLATFORMS = (EBAY, SHOPIFY)


class PlatformAdapter(ABC):
    """Outbound port to one marketplace. Implementations own all marketplace I/O."""

    platform: str

    @abstractmethod
    def push_quantity(self, mirror: PlatformMirror, desired_quantity: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    def end_listing(self, mirror: PlatformMirror, reason: str) -> bool:
        raise NotImplementedError


class Notifier(ABC):
    @abstractmethod
    def notify(
        self,
        owner: int,
        title: str,
        message: str,
        category: str,
        severity: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        raise NotImplementedError


AdapterRegistry = dict[str, PlatformAdapter]
