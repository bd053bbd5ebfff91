from __future__ import annotations

import argparse
import json
from pathlib import Path
from uuid import uuid4

from stockledger.adapters.base import PLATFORMS
from stockledger.core.config import get_settings
from stockledger.core.logging import configure_logging
from stockledger.models import Shop
from stockledger.services.dispatch import dispatch_followups
from stockledger.services.jobs import INVENTORY_SYNC, ORDER_SYNC
from stockworker.tasks import worker_services


def run_reconcile(shop_id: int, batch_size: int) -> None:
    with worker_services() as services:
        with services.jobs.coordinate(shop_id, INVENTORY_SYNC, uuid4().hex):
            summary = services.reconciliation.reconcile_shop(shop_id, batch_size=batch_size)
        print(
            f"shop={summary.shop_id} checked={summary.products_checked} corrected={summary.products_corrected} "
            f"discrepancies={summary.discrepancies} errors={summary.errors}"
        )


def run_orders(shop_id: int, platform: str, path: Path) -> None:
    payloads = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payloads, dict):
        payloads = [payloads]
    with worker_services() as services:
        shop = services.db.get(Shop, shop_id)
        if shop is None:
            raise ValueError(f"Shop {shop_id} not found")
        with services.jobs.coordinate(shop_id, ORDER_SYNC, uuid4().hex):
            summary = services.orders.process_batch(payloads, platform, shop)
        pushes = dispatch_followups(services.scheduler, summary.followups)
        print(
            f"shop={shop_id} platform={platform} total={summary.items_total} processed={summary.items_processed} "
            f"cached={summary.items_cached} failed={summary.items_failed} item_errors={summary.item_errors} "
            f"pushes={pushes}"
        )


def run_retry_failed() -> None:
    with worker_services() as services:
        retried = services.recovery.retry_failed_syncs()
        print(f"retried={retried}")


def run_push_unprocessed(shop_id: int | None) -> None:
    with worker_services() as services:
        pushed = services.sync.sync_unprocessed(shop_id)
        print(f"pushed={pushed}")


def run_cleanup() -> None:
    with worker_services() as services:
        removed = services.recovery.cleanup_old_failures()
        print(f"removed={removed}")


def run_health(shop_id: int | None) -> None:
    with worker_services() as services:
        summary = services.monitor.check(shop_id)
        print(f"status={summary.overall_status} alerts={summary.total_alerts}")
        for alert in summary.alerts:
            print(f"  [{alert.severity}] {alert.type}: {alert.message}")


def run_jobs(shop_id: int) -> None:
    with worker_services() as services:
        for job in services.jobs.active_jobs(shop_id):
            print(f"{job['kind']} job={job['job_id']} host={job['hostname']} pid={job['pid']} since={job['started_at']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="StockLedger maintenance worker")
    parser.add_argument("--log-level", default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    reconcile = commands.add_parser("reconcile", help="Reconcile every product of a shop")
    reconcile.add_argument("--shop", type=int, required=True)
    reconcile.add_argument("--batch-size", type=int, default=get_settings().reconciliation_batch_size)

    orders = commands.add_parser("orders", help="Ingest marketplace orders from a JSON file")
    orders.add_argument("--shop", type=int, required=True)
    orders.add_argument("--platform", required=True, choices=PLATFORMS)
    orders.add_argument("--file", type=Path, required=True)

    commands.add_parser("retry-failed", help="Retry overdue sync failures")
    commands.add_parser("cleanup", help="Delete old resolved and failed sync failure records")

    unprocessed = commands.add_parser("push-unprocessed", help="Push products whose transactions were never synced")
    unprocessed.add_argument("--shop", type=int, default=None)

    health = commands.add_parser("health", help="Run inventory health checks")
    health.add_argument("--shop", type=int, default=None)

    jobs = commands.add_parser("jobs", help="List active job locks for a shop")
    jobs.add_argument("--shop", type=int, required=True)

    args = parser.parse_args()
    configure_logging(args.log_level)

    if args.command == "reconcile":
        run_reconcile(args.shop, max(1, args.batch_size))
    elif args.command == "orders":
        run_orders(args.shop, args.platform, args.file)
    elif args.command == "retry-failed":
        run_retry_failed()
    elif args.command == "cleanup":
        run_cleanup()
    elif args.command == "push-unprocessed":
        run_push_unprocessed(args.shop)
    elif args.command == "health":
        run_health(args.shop)
    elif args.command == "jobs":
        run_jobs(args.shop)


if __name__ == "__main__":
    main()
