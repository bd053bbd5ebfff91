from datetime import datetime, timedelta, timezone

import pytest

from stockledger.services.timeline import decide_inventory_action

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
TS = T0 + timedelta(days=1)


@pytest.mark.parametrize(
    ("placed_at", "cancelled_at", "expected"),
    [
        (TS - timedelta(hours=2), None, "noop"),
        (TS - timedelta(hours=2), TS - timedelta(hours=1), "noop"),
        (TS - timedelta(hours=2), TS + timedelta(hours=1), "noop"),
        (TS + timedelta(hours=1), None, "allocate"),
        (TS + timedelta(hours=1), TS - timedelta(minutes=30), "noop"),
        (TS + timedelta(hours=1), TS + timedelta(hours=2), "release"),
    ],
)
def test_decision_table(placed_at, cancelled_at, expected):
    assert decide_inventory_action(T0, TS, placed_at, cancelled_at) == expected


def test_order_placed_before_import_is_ignored():
    assert decide_inventory_action(T0, T0 - timedelta(days=2), T0 - timedelta(days=1)) == "noop"


def test_order_placed_exactly_at_sync_is_ignored():
    assert decide_inventory_action(T0, TS, TS) == "noop"


def test_cancellation_exactly_at_sync_is_ignored():
    assert decide_inventory_action(T0, TS, TS + timedelta(hours=1), TS) == "noop"


def test_missing_timestamps_are_noop():
    assert decide_inventory_action(None, TS, TS + timedelta(hours=1)) == "noop"
    assert decide_inventory_action(T0, None, TS + timedelta(hours=1)) == "noop"
    assert decide_inventory_action(T0, TS, None) == "noop"


def test_shop_without_inventory_sync_never_adjusts():
    decision = decide_inventory_action(T0, TS, TS + timedelta(hours=1), inventory_sync_enabled=False)
    assert decision == "noop"


def test_naive_timestamps_are_treated_as_utc():
    naive_sync = TS.replace(tzinfo=None)
    assert decide_inventory_action(T0.replace(tzinfo=None), naive_sync, TS + timedelta(hours=1)) == "allocate"
