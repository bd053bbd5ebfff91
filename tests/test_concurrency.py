import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from stockledger.adapters.base import EBAY
from stockledger.core.cache import CacheClient
from stockledger.core.errors import InsufficientInventory, InvalidAdjustment
from stockledger.db.base import Base
from stockledger.models import LedgerTransaction, Order, OrderItem, Product, Shop
from stockledger.services.container import build_services

from conftest import RecordingNotifier, RecordingScheduler, make_product


@pytest.fixture()
def file_sessions(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={"timeout": 30})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


def _run_in_threads(count, target):
    barrier = threading.Barrier(count)
    threads = [threading.Thread(target=target, args=(barrier, index)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


def test_concurrent_allocations_never_oversell(file_sessions):
    cache = CacheClient(None)
    notifier = RecordingNotifier()
    with file_sessions() as setup:
        shop = Shop(name="Vintage Finds")
        setup.add(shop)
        setup.commit()
        product_id = make_product(setup, shop, quantity=5).id
        items = []
        for index in range(8):
            order = Order(
                shop_id=shop.id,
                platform=EBAY,
                platform_order_id=f"order-{index}",
                placed_at=datetime(2026, 1, 3, tzinfo=timezone.utc),
            )
            item = OrderItem(order=order, platform=EBAY, platform_item_id="ebay-1", quantity=1, product_id=product_id)
            setup.add(item)
            setup.flush()
            items.append((order.id, item.id))
        setup.commit()

    outcomes = []

    def allocate(barrier, index):
        with file_sessions() as db:
            services = build_services(db, cache, RecordingScheduler(), notifier=notifier)
            order_id, item_id = items[index]
            order = db.get(Order, order_id)
            item = db.get(OrderItem, item_id)
            barrier.wait()
            try:
                services.ledger.allocate(product_id, 1, order, item)
                outcomes.append("ok")
            except InsufficientInventory:
                outcomes.append("insufficient")

    _run_in_threads(8, allocate)

    assert outcomes.count("ok") == 5
    assert outcomes.count("insufficient") == 3
    with file_sessions() as check:
        assert check.get(Product, product_id).quantity == 0
        allocations = check.execute(
            select(func.count()).where(
                LedgerTransaction.product_id == product_id,
                LedgerTransaction.transaction_type == "allocation",
            )
        ).scalar_one()
        assert allocations == 5


def test_concurrent_adjustments_match_replay(file_sessions):
    cache = CacheClient(None)
    with file_sessions() as setup:
        shop = Shop(name="Vintage Finds")
        setup.add(shop)
        setup.commit()
        product_id = make_product(setup, shop, quantity=6).id

    rejected = []

    def adjust(barrier, index):
        with file_sessions() as db:
            services = build_services(db, cache, RecordingScheduler(), notifier=RecordingNotifier())
            barrier.wait()
            for _ in range(3):
                try:
                    services.ledger.manual_adjustment(product_id, -1)
                except InvalidAdjustment:
                    rejected.append(index)

    _run_in_threads(4, adjust)

    assert len(rejected) == 6
    with file_sessions() as check:
        services = build_services(check, cache, RecordingScheduler(), notifier=RecordingNotifier())
        assert check.get(Product, product_id).quantity == 0
        assert services.ledger.expected_quantity(product_id) == 0
