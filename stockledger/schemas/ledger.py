from datetime import datetime

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    """A cross-platform push the caller must dispatch once the ledger has committed."""

    product_id: str
    skip_platform: str | None = None
    platforms: list[str] | None = None
    reason: str = "inventory_change"


class LedgerResult(BaseModel):
    product_id: str
    transaction_type: str
    transaction_id: str | None = None
    delta: int = 0
    previous_quantity: int
    new_quantity: int
    status: str
    idempotency_key: str | None = None
    duplicate: bool = False
    cached: bool = False
    pending_commit: bool = False
    sync_suppressed: bool = False
    followups: list[SyncRequest] = Field(default_factory=list)
    created_at: datetime | None = None
