import os

os.environ.setdefault("STOCKLEDGER_INLINE_JOBS", "1")
os.environ.setdefault("STOCKLEDGER_CACHE_ENABLED", "0")
os.environ.setdefault("STOCKLEDGER_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STOCKLEDGER_JOB_LOCK_WAIT_SECONDS", "0")

from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stockledger.adapters.base import EBAY, SHOPIFY, Notifier, PlatformAdapter
from stockledger.core.cache import CacheClient
from stockledger.core.config import get_settings
from stockledger.db.base import Base
from stockledger.models import PlatformMirror, Product, Shop
from stockledger.schemas.ledger import SyncRequest
from stockledger.services.container import Services, build_services
from stockledger.services.dispatch import TaskScheduler

TEST_DB_URL = "sqlite:///:memory:"
IMPORTED_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)
MIRROR_SYNCED_AT = datetime(2026, 1, 2, tzinfo=timezone.utc)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.notifications: list[dict[str, Any]] = []

    def notify(self, owner, title, message, category, severity, metadata=None) -> None:
        self.notifications.append(
            {
                "owner": owner,
                "title": title,
                "message": message,
                "category": category,
                "severity": severity,
                "metadata": metadata or {},
            }
        )

    def titles(self) -> list[str]:
        return [item["title"] for item in self.notifications]


class RecordingScheduler(TaskScheduler):
    def __init__(self) -> None:
        self.pushes: list[SyncRequest] = []
        self.retries: list[tuple[str, int]] = []

    def push(self, request: SyncRequest) -> None:
        self.pushes.append(request)

    def schedule_retry(self, failure_id: str, delay_seconds: int) -> None:
        self.retries.append((failure_id, delay_seconds))


class FakeAdapter(PlatformAdapter):
    def __init__(self, platform: str) -> None:
        self.platform = platform
        self.pushed: list[tuple[str, int]] = []
        self.ended: list[tuple[str, str]] = []
        self.fail = False
        self.error: Exception | None = None

    def push_quantity(self, mirror: PlatformMirror, desired_quantity: int) -> bool:
        if self.error is not None:
            raise self.error
        if self.fail:
            return False
        self.pushed.append((mirror.external_id, desired_quantity))
        return True

    def end_listing(self, mirror: PlatformMirror, reason: str) -> bool:
        if self.error is not None:
            raise self.error
        if self.fail:
            return False
        self.ended.append((mirror.external_id, reason))
        return True


@pytest.fixture()
def session() -> Session:
    engine = create_engine(TEST_DB_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def cache() -> CacheClient:
    return CacheClient(None)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture()
def adapters() -> dict[str, FakeAdapter]:
    return {EBAY: FakeAdapter(EBAY), SHOPIFY: FakeAdapter(SHOPIFY)}


@pytest.fixture()
def services(session, cache, scheduler, adapters, notifier) -> Services:
    settings = get_settings().model_copy(update={"lock_max_wait_seconds": 1.0, "job_lock_wait_seconds": 0.0})
    return build_services(session, cache, scheduler, adapters=adapters, notifier=notifier, settings=settings)


@pytest.fixture()
def shop(session) -> Shop:
    shop = Shop(name="Vintage Finds", inventory_sync=True)
    session.add(shop)
    session.commit()
    return shop


def make_product(
    session: Session,
    shop: Shop,
    quantity: int = 10,
    title: str = "Brass Compass",
    ebay_id: str | None = "ebay-1",
    shopify_id: str | None = "shopify-1",
    status: str = "active",
) -> Product:
    product = Product(
        shop_id=shop.id,
        title=title,
        quantity=quantity,
        initial_quantity=quantity,
        status=status,
        imported_at=IMPORTED_AT,
    )
    session.add(product)
    session.flush()
    if ebay_id:
        session.add(
            PlatformMirror(
                product_id=product.id,
                platform=EBAY,
                external_id=ebay_id,
                quantity=quantity,
                last_sync_at=MIRROR_SYNCED_AT,
                created_at=MIRROR_SYNCED_AT,
            )
        )
    if shopify_id:
        session.add(
            PlatformMirror(
                product_id=product.id,
                platform=SHOPIFY,
                external_id=shopify_id,
                quantity=quantity,
                last_sync_at=MIRROR_SYNCED_AT,
                created_at=MIRROR_SYNCED_AT,
            )
        )
    session.commit()
    return product


@pytest.fixture()
def product(session, shop) -> Product:
    return make_product(session, shop)


@pytest.fixture()
def product_factory(session, shop):
    def _make(**kwargs) -> Product:
        return make_product(session, shop, **kwargs)

    return _make


@pytest.fixture()
def client(session, cache, scheduler, adapters) -> TestClient:
    from stockledger.api.deps import get_adapters, get_cache, get_scheduler
    from stockledger.db.session import get_db
    from stockledger.main import app

    def _get_db() -> Session:
        return session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_adapters] = lambda: adapters
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
