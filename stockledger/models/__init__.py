from stockledger.db.base import Base
from stockledger.models.entities import (
    LedgerTransaction,
    Order,
    OrderItem,
    PlatformMirror,
    Product,
    Shop,
    SyncFailureRecord,
)

__all__ = [
    "Base",
    "LedgerTransaction",
    "Order",
    "OrderItem",
    "PlatformMirror",
    "Product",
    "Shop",
    "SyncFailureRecord",
]
