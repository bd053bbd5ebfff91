from sqlalchemy import select

from stockledger.adapters.base import EBAY
from stockledger.models import PlatformMirror, Product, SyncFailureRecord
from stockledger.services.jobs import ORDER_SYNC, JobCoordinator

HEADERS = {"X-Admin-Token": "dev-admin-token"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_admin_requires_token(client, product):
    response = client.post(f"/v1/admin/products/{product.id}/adjustments", json={"delta": 1})
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "unauthorized"


def test_adjustment_applies_and_dispatches_push(client, session, scheduler, product):
    response = client.post(
        f"/v1/admin/products/{product.id}/adjustments",
        json={"delta": 3, "notes": "found in back room"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["previous_quantity"] == 10
    assert payload["new_quantity"] == 13
    assert payload["transaction_type"] == "manual_adjustment"
    assert [request.product_id for request in scheduler.pushes] == [product.id]
    assert session.get(Product, product.id).quantity == 13


def test_adjustment_below_zero_is_rejected(client, scheduler, product):
    response = client.post(f"/v1/admin/products/{product.id}/adjustments", json={"delta": -20}, headers=HEADERS)

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "invalid_adjustment"
    assert scheduler.pushes == []


def test_adjustment_for_missing_product(client):
    response = client.post("/v1/admin/products/missing/adjustments", json={"delta": 1}, headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not_found"


def test_adjustment_body_is_validated(client, product):
    response = client.post(f"/v1/admin/products/{product.id}/adjustments", json={"delta": "lots"}, headers=HEADERS)

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_reconcile_product_reports_and_corrects(client, session, adapters, product):
    mirror = session.execute(
        select(PlatformMirror).where(PlatformMirror.product_id == product.id, PlatformMirror.platform == EBAY)
    ).scalar_one()
    mirror.quantity = 4
    session.commit()

    response = client.post(f"/v1/admin/products/{product.id}/reconcile", headers=HEADERS)

    assert response.status_code == 200
    payload = response.json()
    assert payload["internal_correction"] == 0
    assert payload["discrepancies"] == [
        {
            "platform": EBAY,
            "expected": 10,
            "actual": 4,
            "difference": 6,
            "significant": True,
            "corrected": True,
            "error": None,
        }
    ]
    assert adapters[EBAY].pushed == [("ebay-1", 10)]


def test_reconcile_product_without_push(client, session, adapters, product):
    product.quantity = 7
    session.commit()

    response = client.post(
        f"/v1/admin/products/{product.id}/reconcile",
        json={"push_to_platforms": False},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["internal_correction"] == 3
    assert response.json()["discrepancies"] == []
    assert adapters[EBAY].pushed == []


def test_reconcile_shop(client, shop, product_factory):
    product_factory(ebay_id="e-1", shopify_id=None)
    product_factory(ebay_id="e-2", shopify_id=None)

    response = client.post(f"/v1/admin/shops/{shop.id}/reconcile", params={"batch_size": 1}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["products_checked"] == 2
    assert response.json()["errors"] == 0


def test_reconcile_shop_conflicts_with_running_order_sync(client, cache, shop):
    JobCoordinator(cache).acquire_job_lock(shop.id, ORDER_SYNC, job_id="orders-1")

    response = client.post(f"/v1/admin/shops/{shop.id}/reconcile", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "job_conflict"

    jobs = client.get(f"/v1/admin/shops/{shop.id}/jobs", headers=HEADERS).json()
    assert [(job["kind"], job["job_id"]) for job in jobs] == [(ORDER_SYNC, "orders-1")]


def test_sync_failure_stats_and_retry(client, session, product):
    record = SyncFailureRecord(
        product_id=product.id,
        shop_id=product.shop_id,
        failed_platforms=[EBAY],
        successful_platforms=[],
        error_details=["ebay: timeout"],
        failure_type="partial_failure",
        status="retrying",
    )
    session.add(record)
    session.commit()

    stats = client.get("/v1/admin/sync-failures/stats", params={"shop_id": product.shop_id}, headers=HEADERS)
    assert stats.status_code == 200
    assert stats.json()["open"] == 1
    assert stats.json()["by_platform"] == {EBAY: 1}

    retried = client.post(f"/v1/admin/sync-failures/{record.id}/retry", headers=HEADERS)
    assert retried.status_code == 200
    assert retried.json() == {"id": record.id, "status": "resolved", "retry_count": 1}


def test_retry_unknown_failure(client):
    response = client.post("/v1/admin/sync-failures/missing/retry", headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not_found"


def test_inventory_health(client, shop, product_factory):
    product_factory(quantity=2, ebay_id="e-2", shopify_id=None)

    response = client.get("/v1/admin/health", params={"shop_id": shop.id}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["overall_status"] == "critical"
    assert response.json()["alerts_by_severity"]["critical"] == 1
