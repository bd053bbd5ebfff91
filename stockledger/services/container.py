from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import Session

from stockledger.adapters.base import AdapterRegistry, Notifier
from stockledger.adapters.logging_notifier import LoggingNotifier
from stockledger.core.cache import CacheClient
from stockledger.core.config import Settings, get_settings
from stockledger.services.dispatch import TaskScheduler
from stockledger.services.idempotency import IdempotencyStore
from stockledger.services.jobs import JobCoordinator
from stockledger.services.ledger import InventoryLedger
from stockledger.services.locks import LockManager
from stockledger.services.monitoring import InventoryHealthMonitor
from stockledger.services.orders import OrderIngestionPipeline
from stockledger.services.platform_sync import PlatformPusher, PlatformSyncService
from stockledger.services.reconciliation import ReconciliationEngine
from stockledger.services.recovery import SyncRecoveryManager


@dataclass
class Services:
    db: Session
    cache: CacheClient
    ledger: InventoryLedger
    orders: OrderIngestionPipeline
    sync: PlatformSyncService
    recovery: SyncRecoveryManager
    reconciliation: ReconciliationEngine
    jobs: JobCoordinator
    monitor: InventoryHealthMonitor
    scheduler: TaskScheduler


def build_services(
    db: Session,
    cache: CacheClient,
    scheduler: TaskScheduler,
    adapters: AdapterRegistry | None = None,
    notifier: Notifier | None = None,
    settings: Settings | None = None,
) -> Services:
    settings = settings or get_settings()
    notifier = notifier or LoggingNotifier()
    adapters = adapters if adapters is not None else {}

    locks = LockManager(cache, max_wait_seconds=settings.lock_max_wait_seconds, ttl_seconds=settings.lock_ttl_seconds)
    idempotency = IdempotencyStore(cache, ttl_seconds=settings.idempotency_ttl_seconds)
    ledger = InventoryLedger(db, locks, idempotency, notifier)
    pusher = PlatformPusher(db, adapters)
    recovery = SyncRecoveryManager(
        db,
        ledger,
        pusher,
        notifier,
        scheduler,
        retry_intervals=settings.retry_intervals_seconds,
        critical_retry_delay=settings.critical_retry_delay_seconds,
    )
    return Services(
        db=db,
        cache=cache,
        ledger=ledger,
        orders=OrderIngestionPipeline(db, ledger, idempotency, notifier),
        sync=PlatformSyncService(
            db,
            ledger,
            pusher,
            recovery,
            unprocessed_grace=timedelta(seconds=settings.unprocessed_grace_seconds),
        ),
        recovery=recovery,
        reconciliation=ReconciliationEngine(
            db,
            ledger,
            pusher,
            notifier,
            recovery=recovery,
            percentage_threshold=settings.reconciliation_percentage_threshold,
            notify_threshold=settings.reconciliation_notify_threshold,
        ),
        jobs=JobCoordinator(
            cache,
            ttl_seconds=settings.job_lock_ttl_seconds,
            max_attempts=settings.job_lock_max_attempts,
            wait_seconds=settings.job_lock_wait_seconds,
        ),
        monitor=InventoryHealthMonitor(db, notifier, percentage_threshold=settings.reconciliation_percentage_threshold),
        scheduler=scheduler,
    )
