from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from stockledger.schemas.ledger import SyncRequest

ItemAction = Literal["allocate", "release", "noop", "unlinked", "failed"]


class NormalizedLineItem(BaseModel):
    platform_item_id: str
    quantity: int = Field(ge=0)
    title: str | None = None


class NormalizedOrder(BaseModel):
    platform: str
    platform_order_id: str
    placed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    line_items: list[NormalizedLineItem] = Field(default_factory=list)
    subtotal: Decimal | None = None
    total_price: Decimal | None = None
    shipping_cost: Decimal | None = None
    fulfillment_status: str | None = None
    payment_status: str | None = None
    customer_name: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancelled_at is not None


class ProcessedItem(BaseModel):
    order_item_id: str
    platform_item_id: str
    product_id: str | None = None
    action: ItemAction
    transaction_id: str | None = None


class OrderProcessingResult(BaseModel):
    order_id: str
    platform: str
    platform_order_id: str
    processed_items: list[ProcessedItem] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    success: bool = True
    cached: bool = False
    followups: list[SyncRequest] = Field(default_factory=list)
