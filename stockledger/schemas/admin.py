from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class AdjustmentRequest(BaseModel):
    delta: int
    notes: str | None = None
    idempotency_key: str | None = None
    suppress_downstream_sync: bool = False


class ReconcileRequest(BaseModel):
    push_to_platforms: bool = True


class DiscrepancyOut(BaseModel):
    platform: str
    expected: int
    actual: int
    difference: int
    significant: bool
    corrected: bool
    error: str | None = None


class ReconcileResponse(BaseModel):
    product_id: str
    previous_quantity: int
    quantity: int
    internal_correction: int
    discrepancies: list[DiscrepancyOut] = Field(default_factory=list)


class ShopReconcileResponse(BaseModel):
    shop_id: int
    products_checked: int
    products_corrected: int
    discrepancies: int
    errors: int


class FailureStatsOut(BaseModel):
    total: int
    open: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    by_platform: dict[str, int]
    resolution_rate: float


class ActiveJobOut(BaseModel):
    kind: str
    job_id: str | None
    started_at: datetime
    pid: int | None
    hostname: str | None


class HealthAlert(BaseModel):
    type: str
    severity: str
    count: int
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class HealthSummary(BaseModel):
    shop_id: int | None
    checked_at: datetime
    overall_status: str
    total_alerts: int
    alerts_by_severity: dict[str, int]
    alerts: list[HealthAlert]
