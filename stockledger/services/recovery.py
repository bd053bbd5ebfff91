from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session

from stockledger.adapters.base import Notifier
from stockledger.models import Product, SyncFailureRecord
from stockledger.models.entities import OPEN_FAILURE_STATUSES, ensure_utc, utc_now
from stockledger.services.dispatch import TaskScheduler
from stockledger.services.ledger import InventoryLedger
from stockledger.services.platform_sync import PlatformPusher, PushOutcome

logger = logging.getLogger(__name__)

RETRY_INTERVALS = (300, 900, 3600, 14400)
CRITICAL_RETRY_DELAY = 30
# Clock skew allowed between the scheduling and the executing worker.
RETRY_DUE_TOLERANCE = timedelta(seconds=5)
RESOLVED_RETENTION = timedelta(days=7)
FAILED_RETENTION = timedelta(days=30)


def classify_failure(targeted: int, failed: int) -> str:
    if failed >= targeted:
        return "total_failure"
    if failed == 1:
        return "partial_failure"
    return "multiple_failure"


def is_critical(targeted: int, failed: int, succeeded: int) -> bool:
    return succeeded == 0 or failed > targeted / 2


def _merge(*groups: Sequence[str]) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for platform in group:
            if platform not in merged:
                merged.append(platform)
    return merged


class SyncRecoveryManager:
    """Retry and escalation state machine for failed cross-platform pushes.

    ``pending -> retrying -> {resolved | critical} -> ... -> {resolved | failed}``.
    A record is retried at most ``len(retry_intervals)`` times; each retry only
    re-attempts the platforms that are still failing.
    """

    def __init__(
        self,
        db: Session,
        ledger: InventoryLedger,
        pusher: PlatformPusher,
        notifier: Notifier,
        scheduler: TaskScheduler,
        retry_intervals: Sequence[int] = RETRY_INTERVALS,
        critical_retry_delay: int = CRITICAL_RETRY_DELAY,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.pusher = pusher
        self.notifier = notifier
        self.scheduler = scheduler
        self.retry_intervals = tuple(retry_intervals)
        self.critical_retry_delay = critical_retry_delay

    @property
    def max_retries(self) -> int:
        return len(self.retry_intervals)

    def open_failure(self, product_id: str) -> SyncFailureRecord | None:
        return self.db.execute(
            select(SyncFailureRecord)
            .where(SyncFailureRecord.product_id == product_id, SyncFailureRecord.status.in_(OPEN_FAILURE_STATUSES))
            .order_by(SyncFailureRecord.created_at.desc())
        ).scalars().first()

    def handle_failure(self, product: Product, outcome: PushOutcome) -> SyncFailureRecord:
        targeted = len(outcome.targeted)
        failed = len(outcome.failed)
        succeeded = len(outcome.successful)
        errors = [f"{platform}: {message}" for platform, message in outcome.errors.items()]

        record = self.open_failure(product.id)
        if record is None:
            record = SyncFailureRecord(
                product_id=product.id,
                shop_id=product.shop_id,
                failed_platforms=list(outcome.failed),
                successful_platforms=list(outcome.successful),
                error_details=errors,
                failure_type=classify_failure(targeted, failed),
                retry_count=0,
                status="pending",
            )
            self.db.add(record)
        else:
            # Platforms outside this push keep whichever side they were already on.
            record.failed_platforms = [
                platform
                for platform in _merge(record.failed_platforms, outcome.failed)
                if platform not in outcome.successful
            ]
            record.successful_platforms = [
                platform
                for platform in _merge(record.successful_platforms, outcome.successful)
                if platform not in outcome.failed
            ]
            record.error_details = [*record.error_details, *errors]

        if is_critical(targeted, failed, succeeded):
            self._escalate(record, product)
            return record

        if record.status != "critical":
            record.status = "retrying"
        if record.next_retry_at is not None:
            self.db.commit()
            logger.warning(
                "Sync failure for product_id=%s on %s merged into %s; retry already due at %s",
                product.id,
                ", ".join(record.failed_platforms),
                record.id,
                record.next_retry_at,
            )
            return record

        delay = self.retry_intervals[min(record.retry_count, self.max_retries - 1)]
        self._schedule(record, delay)
        logger.warning(
            "Sync failure for product_id=%s on %s; retry in %ss",
            product.id,
            ", ".join(record.failed_platforms),
            delay,
        )
        return record

    def retry(self, failure_id: str, now: datetime | None = None, force: bool = False) -> SyncFailureRecord | None:
        """Re-push the platforms still failing for ``failure_id``.

        A retry delivered before the record's ``next_retry_at`` belongs to a
        superseded schedule and is dropped; ``force`` skips that check for
        operator-triggered retries.
        """
        now = now or utc_now()
        record = self.db.get(SyncFailureRecord, failure_id)
        if record is None:
            logger.info("Sync failure %s no longer exists", failure_id)
            return None
        if not record.is_open:
            logger.info("Sync failure %s already %s; nothing to retry", failure_id, record.status)
            return record
        due_at = ensure_utc(record.next_retry_at)
        if not force and due_at is not None and now + RETRY_DUE_TOLERANCE < due_at:
            logger.info("Sync failure %s is not due until %s; skipping early retry", failure_id, due_at)
            return record
        if record.retry_count >= self.max_retries:
            self._abandon(record)
            return record

        product = record.product
        record.retry_count += 1
        record.next_retry_at = None
        outcome = self.pusher.push_to_platforms(product, platforms=list(record.failed_platforms))

        if outcome.ok:
            self._resolve(record, outcome)
            return record

        record.failed_platforms = list(outcome.failed)
        record.successful_platforms = _merge(record.successful_platforms, outcome.successful)
        record.error_details = [
            *record.error_details,
            *(f"retry {record.retry_count} {platform}: {message}" for platform, message in outcome.errors.items()),
        ]
        if record.retry_count >= self.max_retries:
            self._abandon(record)
            return record

        record.status = "retrying"
        delay = self.retry_intervals[record.retry_count]
        self._schedule(record, delay, now)
        logger.warning(
            "Retry %s/%s for product_id=%s still failing on %s; next retry in %ss",
            record.retry_count,
            self.max_retries,
            product.id,
            ", ".join(record.failed_platforms),
            delay,
        )
        return record

    def retry_failed_syncs(self, now: datetime | None = None) -> int:
        """Retry open records whose scheduled retry is overdue (e.g. lost with a worker)."""
        now = now or utc_now()
        records = self.db.execute(
            select(SyncFailureRecord)
            .where(SyncFailureRecord.status.in_(OPEN_FAILURE_STATUSES))
            .order_by(SyncFailureRecord.updated_at)
        ).scalars().all()

        retried = 0
        for record in records:
            if self._due_at(record) > now:
                continue
            self.retry(record.id, now=now)
            retried += 1
        if retried:
            logger.info("Retried %s overdue sync failures", retried)
        return retried

    def cleanup_old_failures(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        result = self.db.execute(
            delete(SyncFailureRecord).where(
                or_(
                    and_(SyncFailureRecord.status == "resolved", SyncFailureRecord.resolved_at < now - RESOLVED_RETENTION),
                    and_(SyncFailureRecord.status == "failed", SyncFailureRecord.abandoned_at < now - FAILED_RETENTION),
                )
            )
        )
        self.db.commit()
        removed = result.rowcount or 0
        logger.info("Removed %s old sync failure records", removed)
        return removed

    def failure_stats(self, shop_id: int | None = None, since: datetime | None = None) -> dict:
        query = select(SyncFailureRecord)
        if shop_id is not None:
            query = query.where(SyncFailureRecord.shop_id == shop_id)
        if since is not None:
            query = query.where(SyncFailureRecord.created_at >= since)
        records = self.db.execute(query).scalars().all()

        by_status = Counter(record.status for record in records)
        by_type = Counter(record.failure_type for record in records)
        by_platform = Counter(platform for record in records for platform in record.failed_platforms)
        total = len(records)
        return {
            "total": total,
            "open": sum(by_status[status] for status in OPEN_FAILURE_STATUSES),
            "by_status": dict(by_status),
            "by_type": dict(by_type),
            "by_platform": dict(by_platform),
            "resolution_rate": round(by_status["resolved"] / total * 100, 1) if total else 0.0,
        }

    def _escalate(self, record: SyncFailureRecord, product: Product) -> None:
        # Pending transactions would otherwise be re-pushed by every later sync.
        marked = self.ledger.mark_processed(product.id)
        record.status = "critical"
        record.escalated_at = utc_now()
        self.db.commit()
        logger.error(
            "Critical sync failure for product_id=%s on %s (%s transactions marked processed)",
            product.id,
            ", ".join(record.failed_platforms),
            marked,
        )
        self.notifier.notify(
            record.shop_id,
            "Critical Sync Failure",
            f"Inventory for '{product.title or product.id}' could not be synced to "
            f"{', '.join(record.failed_platforms)}. Retrying shortly.",
            "sync",
            "error",
            self._metadata(record),
        )
        if record.next_retry_at is None:
            self._schedule(record, self.critical_retry_delay)

    def _schedule(self, record: SyncFailureRecord, delay: int, now: datetime | None = None) -> None:
        # One outstanding retry per record; next_retry_at marks it.
        record.next_retry_at = (now or utc_now()) + timedelta(seconds=delay)
        self.db.commit()
        self.scheduler.schedule_retry(record.id, delay)

    def _due_at(self, record: SyncFailureRecord) -> datetime:
        if record.next_retry_at is not None:
            return ensure_utc(record.next_retry_at)
        if record.status == "critical" and record.retry_count == 0:
            wait = self.critical_retry_delay
        else:
            wait = self.retry_intervals[min(record.retry_count, self.max_retries - 1)]
        return ensure_utc(record.updated_at) + timedelta(seconds=wait)

    def _resolve(self, record: SyncFailureRecord, outcome: PushOutcome) -> None:
        record.successful_platforms = _merge(record.successful_platforms, outcome.successful)
        record.failed_platforms = []
        record.status = "resolved"
        record.next_retry_at = None
        record.resolved_at = utc_now()
        self.ledger.mark_processed(record.product_id)
        self.db.commit()
        logger.info("Sync failure %s resolved after %s retries", record.id, record.retry_count)

    def _abandon(self, record: SyncFailureRecord) -> None:
        record.status = "failed"
        record.next_retry_at = None
        record.abandoned_at = utc_now()
        self.db.commit()
        logger.error(
            "Giving up on sync for product_id=%s after %s retries; failing platforms: %s",
            record.product_id,
            record.retry_count,
            ", ".join(record.failed_platforms),
        )
        self.notifier.notify(
            record.shop_id,
            "Inventory Sync Failed",
            f"Inventory sync to {', '.join(record.failed_platforms)} failed after "
            f"{record.retry_count} retries. Manual attention is required.",
            "sync",
            "error",
            self._metadata(record),
        )

    @staticmethod
    def _metadata(record: SyncFailureRecord) -> dict:
        return {
            "failure_id": record.id,
            "product_id": record.product_id,
            "failed_platforms": list(record.failed_platforms),
            "failure_type": record.failure_type,
            "retry_count": record.retry_count,
        }
