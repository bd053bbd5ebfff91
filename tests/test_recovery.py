from datetime import timedelta

import pytest
from sqlalchemy import select

from stockledger.adapters.base import EBAY, SHOPIFY
from stockledger.models import SyncFailureRecord
from stockledger.models.entities import ensure_utc, utc_now
from stockledger.services.recovery import classify_failure, is_critical


def _only_record(session) -> SyncFailureRecord:
    return session.execute(select(SyncFailureRecord)).scalar_one()


def _run_due_retry(services, session, record):
    session.refresh(record)
    return services.recovery.retry(record.id, now=ensure_utc(record.next_retry_at))


def _record(session, product, status, failed=(EBAY,), **kwargs) -> SyncFailureRecord:
    record = SyncFailureRecord(
        product_id=product.id,
        shop_id=product.shop_id,
        failed_platforms=list(failed),
        successful_platforms=[],
        error_details=[],
        failure_type="partial_failure",
        status=status,
        **kwargs,
    )
    session.add(record)
    session.commit()
    return record


@pytest.mark.parametrize(
    ("targeted", "failed", "expected"),
    [(2, 2, "total_failure"), (1, 1, "total_failure"), (3, 1, "partial_failure"), (3, 2, "multiple_failure")],
)
def test_classify_failure(targeted, failed, expected):
    assert classify_failure(targeted, failed) == expected


def test_is_critical_when_nothing_succeeded_or_majority_failed():
    assert is_critical(2, 2, 0) is True
    assert is_critical(3, 2, 1) is True
    assert is_critical(2, 1, 1) is False
    assert is_critical(4, 2, 2) is False


def test_partial_failure_schedules_first_retry(session, services, adapters, scheduler, notifier, product):
    adapters[EBAY].fail = True
    services.ledger.manual_adjustment(product.id, 1)

    services.sync.sync_product(product.id)

    record = _only_record(session)
    assert record.status == "retrying"
    assert record.retry_count == 0
    assert scheduler.retries == [(record.id, 300)]
    assert notifier.titles() == []


def test_total_failure_escalates_immediately(session, services, adapters, scheduler, notifier, product):
    adapters[EBAY].fail = True
    adapters[SHOPIFY].fail = True
    services.ledger.manual_adjustment(product.id, 1)

    services.sync.sync_product(product.id)

    record = _only_record(session)
    assert record.status == "critical"
    assert record.failure_type == "total_failure"
    assert record.escalated_at is not None
    assert scheduler.retries == [(record.id, 30)]
    assert notifier.titles() == ["Critical Sync Failure"]
    assert services.ledger.unprocessed_transactions(product.id) == []


def test_retry_success_resolves_and_stops(session, services, adapters, scheduler, product):
    adapters[EBAY].fail = True
    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id)
    record = _only_record(session)

    adapters[EBAY].fail = False
    _run_due_retry(services, session, record)

    session.refresh(record)
    assert record.status == "resolved"
    assert record.retry_count == 1
    assert record.failed_platforms == []
    assert set(record.successful_platforms) == {EBAY, SHOPIFY}
    assert record.resolved_at is not None
    assert adapters[EBAY].pushed == [("ebay-1", 11)]
    assert len(scheduler.retries) == 1
    assert services.ledger.unprocessed_transactions(product.id) == []


def test_retries_follow_ladder_then_give_up(session, services, adapters, scheduler, notifier, product):
    adapters[EBAY].fail = True
    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id)
    record = _only_record(session)

    for _ in range(4):
        _run_due_retry(services, session, record)

    session.refresh(record)
    assert [delay for _, delay in scheduler.retries] == [300, 900, 3600, 14400]
    assert record.status == "failed"
    assert record.retry_count == 4
    assert record.abandoned_at is not None
    assert notifier.titles() == ["Inventory Sync Failed"]

    services.recovery.retry(record.id)
    session.refresh(record)
    assert record.retry_count == 4
    assert len(scheduler.retries) == 4


def test_critical_failure_is_retried_at_most_four_times(session, services, adapters, scheduler, notifier, product):
    adapters[EBAY].fail = True
    adapters[SHOPIFY].fail = True
    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id)
    record = _only_record(session)

    for _ in range(6):
        _run_due_retry(services, session, record)

    session.refresh(record)
    assert [delay for _, delay in scheduler.retries] == [30, 900, 3600, 14400]
    assert record.status == "failed"
    assert notifier.titles() == ["Critical Sync Failure", "Inventory Sync Failed"]


def test_retry_only_targets_failed_platforms(session, services, adapters, product):
    adapters[SHOPIFY].fail = True
    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id)
    record = _only_record(session)
    adapters[EBAY].pushed.clear()

    adapters[SHOPIFY].fail = False
    _run_due_retry(services, session, record)

    assert adapters[EBAY].pushed == []
    assert adapters[SHOPIFY].pushed == [("shopify-1", 11)]


def test_new_failure_merges_into_open_record(session, services, adapters, scheduler, product):
    adapters[EBAY].fail = True
    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id)

    adapters[EBAY].fail = False
    adapters[SHOPIFY].fail = True
    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id)

    record = _only_record(session)
    assert record.failed_platforms == [SHOPIFY]
    assert record.successful_platforms == [EBAY]
    assert len(record.error_details) == 2
    assert scheduler.retries == [(record.id, 300)]


def test_merged_failure_keeps_untargeted_platforms(session, services, adapters, scheduler, product):
    adapters[EBAY].fail = True
    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id)

    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id, skip_platform=SHOPIFY)

    record = _only_record(session)
    assert record.failed_platforms == [EBAY]
    assert record.successful_platforms == [SHOPIFY]
    assert record.status == "critical"
    assert scheduler.retries == [(record.id, 300)]


def test_repeated_failures_share_one_retry_schedule(session, services, adapters, scheduler, notifier, product):
    adapters[EBAY].fail = True
    for _ in range(2):
        services.ledger.manual_adjustment(product.id, 1)
        services.sync.sync_product(product.id)
    record = _only_record(session)
    assert scheduler.retries == [(record.id, 300)]

    due_times = []
    while record.status != "failed":
        session.refresh(record)
        due_times.append(ensure_utc(record.next_retry_at))
        services.recovery.retry(record.id, now=due_times[-1])
        # a second delivery of the same message is stale once the retry has run
        services.recovery.retry(record.id, now=due_times[-1])

    offsets = [(due - due_times[0]).total_seconds() for due in due_times]
    assert offsets == [0, 900, 4500, 18900]
    assert record.retry_count == 4
    assert [delay for _, delay in scheduler.retries] == [300, 900, 3600, 14400]
    assert notifier.titles() == ["Inventory Sync Failed"]


def test_early_retry_is_dropped_unless_forced(session, services, adapters, product):
    adapters[EBAY].fail = True
    services.ledger.manual_adjustment(product.id, 1)
    services.sync.sync_product(product.id)
    record = _only_record(session)
    adapters[EBAY].fail = False

    services.recovery.retry(record.id)
    session.refresh(record)
    assert record.retry_count == 0
    assert adapters[EBAY].pushed == []

    services.recovery.retry(record.id, force=True)
    session.refresh(record)
    assert record.status == "resolved"
    assert record.next_retry_at is None


def test_unknown_failure_id_is_ignored(services):
    assert services.recovery.retry("missing") is None


def test_retry_failed_syncs_picks_up_overdue_records(session, services, product):
    now = utc_now()
    overdue = _record(session, product, "retrying", next_retry_at=now - timedelta(minutes=1))
    pending = _record(
        session,
        product,
        "retrying",
        updated_at=now - timedelta(hours=1),
        next_retry_at=now + timedelta(minutes=4),
    )
    unscheduled = _record(session, product, "retrying", updated_at=now - timedelta(minutes=10))
    recent = _record(session, product, "retrying", updated_at=now - timedelta(minutes=1))

    retried = services.recovery.retry_failed_syncs(now=now)

    assert retried == 2
    for record in (overdue, pending, unscheduled, recent):
        session.refresh(record)
    assert overdue.status == "resolved"
    assert unscheduled.status == "resolved"
    assert pending.status == "retrying"
    assert pending.retry_count == 0
    assert recent.status == "retrying"


def test_cleanup_removes_only_expired_terminal_records(session, services, product):
    now = utc_now()
    _record(session, product, "resolved", resolved_at=now - timedelta(days=8))
    kept_resolved = _record(session, product, "resolved", resolved_at=now - timedelta(days=1))
    _record(session, product, "failed", abandoned_at=now - timedelta(days=31))
    kept_failed = _record(session, product, "failed", abandoned_at=now - timedelta(days=10))
    kept_open = _record(session, product, "retrying")

    removed = services.recovery.cleanup_old_failures(now=now)

    assert removed == 2
    remaining = {record.id for record in session.execute(select(SyncFailureRecord)).scalars()}
    assert remaining == {kept_resolved.id, kept_failed.id, kept_open.id}


def test_failure_stats(session, services, product):
    _record(session, product, "resolved", failed=())
    _record(session, product, "retrying", failed=(EBAY,))
    _record(session, product, "failed", failed=(EBAY, SHOPIFY))
    _record(session, product, "critical", failed=(SHOPIFY,))

    stats = services.recovery.failure_stats(shop_id=product.shop_id)

    assert stats["total"] == 4
    assert stats["open"] == 2
    assert stats["by_status"] == {"resolved": 1, "retrying": 1, "failed": 1, "critical": 1}
    assert stats["by_platform"] == {EBAY: 2, SHOPIFY: 2}
    assert stats["resolution_rate"] == 25.0
    assert services.recovery.failure_stats(shop_id=product.shop_id + 1)["total"] == 0
