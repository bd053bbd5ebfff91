from datetime import timedelta

from stockledger.models import LedgerTransaction
from stockledger.models.entities import utc_now


def _alerts(summary):
    return {alert.type: alert for alert in summary.alerts}


def _fresh(session, *products):
    now = utc_now()
    for product in products:
        product.last_inventory_update = now
    session.commit()


def test_healthy_shop(session, services, shop, product_factory, notifier):
    stocked = product_factory(quantity=40, ebay_id="e-40", shopify_id=None)
    _fresh(session, stocked)

    summary = services.monitor.check(shop.id)

    assert summary.overall_status == "healthy"
    assert summary.alerts == []
    assert notifier.notifications == []


def test_low_inventory_levels(session, services, shop, product_factory, notifier):
    critical = product_factory(quantity=3, ebay_id="e-3", shopify_id=None)
    warning = product_factory(quantity=8, ebay_id="e-8", shopify_id=None)
    ended = product_factory(quantity=0, ebay_id="e-0", shopify_id=None, status="completed")
    _fresh(session, critical, warning, ended)

    summary = services.monitor.check(shop.id)

    alerts = _alerts(summary)
    assert alerts["critical_low_inventory"].details["product_ids"] == [critical.id]
    assert alerts["warning_low_inventory"].details["product_ids"] == [warning.id]
    assert summary.overall_status == "critical"
    assert notifier.titles() == ["Critical Inventory Alert"]


def test_allocation_failures_and_stuck_transactions(session, services, shop, product):
    _fresh(session, product)
    now = utc_now()
    for index in range(5):
        session.add(
            LedgerTransaction(
                product_id=product.id,
                transaction_type="allocation_failed",
                delta=-1,
                previous_quantity=10,
                new_quantity=10,
                processed=True,
                created_at=now - timedelta(minutes=index),
            )
        )
    session.add(
        LedgerTransaction(
            product_id=product.id,
            transaction_type="manual_adjustment",
            delta=0,
            previous_quantity=10,
            new_quantity=10,
            created_at=now - timedelta(hours=2),
        )
    )
    session.commit()

    summary = services.monitor.check(shop.id, now=now)

    alerts = _alerts(summary)
    assert alerts["high_allocation_failures"].count == 5
    assert alerts["high_allocation_failures"].severity == "error"
    assert alerts["stuck_transactions"].count == 1
    assert summary.overall_status == "warning"


def test_mirror_drift_and_stale_data(session, services, shop, product):
    product.mirrors[0].quantity = 2
    session.commit()

    summary = services.monitor.check(shop.id)

    alerts = _alerts(summary)
    assert alerts["platform_discrepancies"].count == 1
    assert alerts["platform_discrepancies"].details["discrepancies"][0]["platform_quantity"] == 2
    assert alerts["stale_inventory_data"].severity == "info"
    assert summary.overall_status == "warning"


def test_stale_data_alone_is_info(services, product_factory):
    product_factory(quantity=40, ebay_id="e-40", shopify_id=None)

    summary = services.monitor.check()

    assert summary.overall_status == "info"
    assert summary.shop_id is None
