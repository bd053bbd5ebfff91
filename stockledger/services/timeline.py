from __future__ import annotations

from datetime import datetime
from typing import Literal

from stockledger.models.entities import ensure_utc

InventoryAction = Literal["allocate", "release", "noop"]


def decide_inventory_action(
    imported_at: datetime | None,
    mirror_synced_at: datetime | None,
    placed_at: datetime | None,
    cancelled_at: datetime | None = None,
    inventory_sync_enabled: bool = True,
) -> InventoryAction:
    """Decide whether an order event should still move the quantity-of-record.

    An order only counts when the product was already tracked when it was
    placed and it happened after the mirror last captured the marketplace's
    true quantity; anything earlier is already folded into the quantity the
    mirror observed. A cancellation at or before that capture is likewise
    already reflected.
    """
    if not inventory_sync_enabled:
        return "noop"

    imported_at = ensure_utc(imported_at)
    synced_at = ensure_utc(mirror_synced_at)
    placed_at = ensure_utc(placed_at)
    cancelled_at = ensure_utc(cancelled_at)

    if placed_at is None or imported_at is None or synced_at is None:
        return "noop"
    if not imported_at < placed_at:
        return "noop"
    if not placed_at > synced_at:
        return "noop"

    if cancelled_at is not None:
        if cancelled_at <= synced_at:
            return "noop"
        return "release"
    return "allocate"
