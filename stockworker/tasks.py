from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

import dramatiq

from stockledger.core.config import get_settings
from stockledger.core.errors import ProductNotFound
from stockledger.models import Shop
from stockledger.schemas.ledger import SyncRequest
from stockledger.services.container import Services, build_services
from stockledger.services.dispatch import TaskScheduler, dispatch_followups
from stockledger.services.jobs import INVENTORY_SYNC, ORDER_SYNC
from stockworker import runtime
from stockworker.broker import broker  # noqa: F401

logger = logging.getLogger(__name__)

SYNC_QUEUE = "sync"
ORDERS_QUEUE = "orders"
MAINTENANCE_QUEUE = "maintenance"


class DramatiqScheduler(TaskScheduler):
    def push(self, request: SyncRequest) -> None:
        push_inventory.send(request.product_id, request.skip_platform, request.platforms)

    def schedule_retry(self, failure_id: str, delay_seconds: int) -> None:
        retry_sync_failure.send_with_options(args=(failure_id,), delay=int(delay_seconds * 1000))


@contextmanager
def worker_services() -> Iterator[Services]:
    with runtime.session_factory() as db:
        yield build_services(db, runtime.get_cache(), DramatiqScheduler(), adapters=runtime.ADAPTERS)


def _shop(services: Services, shop_id: int) -> Shop:
    shop = services.db.get(Shop, shop_id)
    if shop is None:
        raise ValueError(f"Shop {shop_id} not found")
    return shop


@dramatiq.actor(queue_name=SYNC_QUEUE, max_retries=3, min_backoff=5000)
def push_inventory(product_id: str, skip_platform: str | None = None, platforms: list[str] | None = None) -> None:
    with worker_services() as services:
        try:
            outcome = services.sync.sync_product(product_id, skip_platform=skip_platform, platforms=platforms)
        except ProductNotFound:
            logger.warning("Skipping push for missing product_id=%s", product_id)
            return
        logger.info(
            "push_inventory product_id=%s ok=%s successful=%s failed=%s",
            product_id,
            outcome.ok,
            outcome.successful,
            outcome.failed,
        )


@dramatiq.actor(queue_name=SYNC_QUEUE, max_retries=0)
def retry_sync_failure(failure_id: str) -> None:
    with worker_services() as services:
        record = services.recovery.retry(failure_id)
        if record is not None:
            logger.info("retry_sync_failure %s -> %s (retry %s)", failure_id, record.status, record.retry_count)


@dramatiq.actor(queue_name=ORDERS_QUEUE, max_retries=3, min_backoff=5000)
def process_order(payload: dict[str, Any], platform: str, shop_id: int) -> None:
    with worker_services() as services:
        result = services.orders.process_order(payload, platform, _shop(services, shop_id))
        dispatch_followups(services.scheduler, result.followups)


@dramatiq.actor(queue_name=ORDERS_QUEUE, max_retries=3, min_backoff=10000)
def sync_orders(shop_id: int, platform: str, payloads: list[dict[str, Any]], job_id: str | None = None) -> None:
    job_id = job_id or uuid4().hex
    with worker_services() as services:
        shop = _shop(services, shop_id)
        with services.jobs.coordinate(shop_id, ORDER_SYNC, job_id):
            summary = services.orders.process_batch(payloads, platform, shop)
        dispatch_followups(services.scheduler, summary.followups)
        logger.info(
            "sync_orders shop=%s platform=%s total=%s processed=%s cached=%s failed=%s",
            shop_id,
            platform,
            summary.items_total,
            summary.items_processed,
            summary.items_cached,
            summary.items_failed,
        )


@dramatiq.actor(queue_name=MAINTENANCE_QUEUE, max_retries=1, time_limit=30 * 60 * 1000)
def reconcile_shop(shop_id: int, job_id: str | None = None) -> None:
    job_id = job_id or uuid4().hex
    with worker_services() as services:
        with services.jobs.coordinate(shop_id, INVENTORY_SYNC, job_id):
            services.reconciliation.reconcile_shop(shop_id, batch_size=get_settings().reconciliation_batch_size)


@dramatiq.actor(queue_name=MAINTENANCE_QUEUE, max_retries=0)
def sweep_sync_failures() -> None:
    with worker_services() as services:
        services.recovery.retry_failed_syncs()
        services.recovery.cleanup_old_failures()


@dramatiq.actor(queue_name=MAINTENANCE_QUEUE, max_retries=0)
def push_unprocessed(shop_id: int | None = None) -> None:
    with worker_services() as services:
        pushed = services.sync.sync_unprocessed(shop_id)
        logger.info("push_unprocessed shop=%s pushed=%s", shop_id, pushed)


@dramatiq.actor(queue_name=MAINTENANCE_QUEUE, max_retries=0)
def check_inventory_health(shop_id: int | None = None) -> None:
    with worker_services() as services:
        summary = services.monitor.check(shop_id)
        logger.info("Inventory health for shop=%s: %s (%s alerts)", shop_id, summary.overall_status, summary.total_alerts)
