from uuid import uuid4

from fastapi import APIRouter, Depends, Query

from stockledger.api.deps import get_services, require_admin_token
from stockledger.core.errors import ApiError, AppHTTPException
from stockledger.schemas.admin import (
    ActiveJobOut,
    AdjustmentRequest,
    DiscrepancyOut,
    FailureStatsOut,
    HealthSummary,
    ReconcileRequest,
    ReconcileResponse,
    ShopReconcileResponse,
)
from stockledger.schemas.ledger import LedgerResult
from stockledger.services.container import Services
from stockledger.services.dispatch import dispatch_followups
from stockledger.services.jobs import INVENTORY_SYNC

router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.post("/products/{product_id}/adjustments", response_model=LedgerResult)
def adjust_inventory(
    product_id: str,
    payload: AdjustmentRequest,
    services: Services = Depends(get_services),
) -> LedgerResult:
    result = services.ledger.manual_adjustment(
        product_id,
        payload.delta,
        notes=payload.notes,
        idempotency_key=payload.idempotency_key,
        suppress_downstream_sync=payload.suppress_downstream_sync,
    )
    dispatch_followups(services.scheduler, result.followups)
    return result


@router.post("/products/{product_id}/reconcile", response_model=ReconcileResponse)
def reconcile_product(
    product_id: str,
    payload: ReconcileRequest | None = None,
    services: Services = Depends(get_services),
) -> ReconcileResponse:
    payload = payload or ReconcileRequest()
    if not payload.push_to_platforms:
        result = services.ledger.reconcile(product_id, suppress_downstream_sync=True)
        return ReconcileResponse(
            product_id=product_id,
            previous_quantity=result.previous_quantity,
            quantity=result.new_quantity,
            internal_correction=result.delta if result.transaction_id else 0,
        )

    report = services.reconciliation.reconcile_product(product_id)
    return ReconcileResponse(
        product_id=report.product_id,
        previous_quantity=report.previous_quantity,
        quantity=report.quantity,
        internal_correction=report.internal_correction,
        discrepancies=[
            DiscrepancyOut(
                platform=item.platform,
                expected=item.expected,
                actual=item.actual,
                difference=item.difference,
                significant=item.significant,
                corrected=item.corrected,
                error=item.error,
            )
            for item in report.discrepancies
        ],
    )


@router.post("/shops/{shop_id}/reconcile", response_model=ShopReconcileResponse)
def reconcile_shop(
    shop_id: int,
    batch_size: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
) -> ShopReconcileResponse:
    with services.jobs.coordinate(shop_id, INVENTORY_SYNC, uuid4().hex):
        summary = services.reconciliation.reconcile_shop(shop_id, batch_size=batch_size)
    return ShopReconcileResponse(
        shop_id=summary.shop_id,
        products_checked=summary.products_checked,
        products_corrected=summary.products_corrected,
        discrepancies=summary.discrepancies,
        errors=summary.errors,
    )


@router.get("/sync-failures/stats", response_model=FailureStatsOut)
def sync_failure_stats(
    shop_id: int | None = Query(default=None),
    services: Services = Depends(get_services),
) -> FailureStatsOut:
    return FailureStatsOut(**services.recovery.failure_stats(shop_id=shop_id))


@router.post("/sync-failures/{failure_id}/retry")
def retry_sync_failure(failure_id: str, services: Services = Depends(get_services)) -> dict[str, str | int]:
    record = services.recovery.retry(failure_id, force=True)
    if record is None:
        raise AppHTTPException(status_code=404, error=ApiError(code="not_found", message="Sync failure not found"))
    return {"id": record.id, "status": record.status, "retry_count": record.retry_count}


@router.get("/shops/{shop_id}/jobs", response_model=list[ActiveJobOut])
def active_jobs(shop_id: int, services: Services = Depends(get_services)) -> list[ActiveJobOut]:
    return [ActiveJobOut(**job) for job in services.jobs.active_jobs(shop_id)]


@router.get("/health", response_model=HealthSummary)
def inventory_health(
    shop_id: int | None = Query(default=None),
    services: Services = Depends(get_services),
) -> HealthSummary:
    return services.monitor.check(shop_id)
