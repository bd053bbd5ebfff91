from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.adapters.base import AdapterRegistry
from stockledger.core.errors import PlatformSyncError, ProductNotFound
from stockledger.models import LedgerTransaction, PlatformMirror, Product, SyncFailureRecord
from stockledger.models.entities import OPEN_FAILURE_STATUSES, utc_now
from stockledger.services.ledger import InventoryLedger

logger = logging.getLogger(__name__)

END_LISTING_REASON = "NotAvailable"
UNPROCESSED_GRACE = timedelta(minutes=10)


@dataclass
class PushOutcome:
    product_id: str
    targeted: list[str] = field(default_factory=list)
    successful: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def listing_should_end(product: Product) -> bool:
    return product.quantity <= 0 or product.status != "active"


class PlatformPusher:
    """Pushes a product's quantity-of-record to its marketplace mirrors."""

    def __init__(self, db: Session, adapters: AdapterRegistry) -> None:
        self.db = db
        self.adapters = adapters

    def targets(
        self,
        product: Product,
        skip_platform: str | None = None,
        platforms: Iterable[str] | None = None,
    ) -> list[PlatformMirror]:
        wanted = set(platforms) if platforms is not None else None
        return [
            mirror
            for mirror in product.mirrors
            if mirror.platform != skip_platform and (wanted is None or mirror.platform in wanted)
        ]

    def push_to_platforms(
        self,
        product: Product,
        skip_platform: str | None = None,
        platforms: Iterable[str] | None = None,
    ) -> PushOutcome:
        outcome = PushOutcome(product_id=product.id)
        for mirror in self.targets(product, skip_platform=skip_platform, platforms=platforms):
            outcome.targeted.append(mirror.platform)
            try:
                self._push_one(product, mirror)
            except PlatformSyncError as exc:
                logger.warning("Push to %s failed for product_id=%s: %s", mirror.platform, product.id, exc.message)
                outcome.failed.append(mirror.platform)
                outcome.errors[mirror.platform] = exc.message
            else:
                outcome.successful.append(mirror.platform)
        self.db.flush()
        return outcome

    def _push_one(self, product: Product, mirror: PlatformMirror) -> None:
        adapter = self.adapters.get(mirror.platform)
        if adapter is None:
            raise PlatformSyncError(mirror.platform, f"No adapter configured for {mirror.platform}")

        end_listing = listing_should_end(product)
        try:
            if end_listing:
                accepted = adapter.end_listing(mirror, END_LISTING_REASON)
            else:
                accepted = adapter.push_quantity(mirror, product.quantity)
        except PlatformSyncError:
            raise
        except Exception as exc:
            raise PlatformSyncError(mirror.platform, f"{type(exc).__name__}: {exc}") from exc

        if not accepted:
            action = "end listing" if end_listing else "update quantity"
            raise PlatformSyncError(mirror.platform, f"{mirror.platform} rejected {action} for {mirror.external_id}")

        # last_sync_at is owned by whoever observes the marketplace, not by pushes
        mirror.quantity = max(product.quantity, 0)
        mirror.listing_status = "ended" if end_listing else "active"
        logger.debug(
            "Pushed product_id=%s to %s: quantity=%s listing=%s",
            product.id,
            mirror.platform,
            mirror.quantity,
            mirror.listing_status,
        )


class PlatformSyncService:
    """Executes follow-up pushes and routes failures into recovery."""

    def __init__(
        self,
        db: Session,
        ledger: InventoryLedger,
        pusher: PlatformPusher,
        recovery=None,
        unprocessed_grace: timedelta = UNPROCESSED_GRACE,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.pusher = pusher
        self.recovery = recovery
        self.unprocessed_grace = unprocessed_grace

    def sync_product(
        self,
        product_id: str,
        skip_platform: str | None = None,
        platforms: Iterable[str] | None = None,
    ) -> PushOutcome:
        product = self.db.get(Product, product_id)
        if product is None:
            raise ProductNotFound("Product not found", details={"product_id": product_id})

        outcome = self.pusher.push_to_platforms(product, skip_platform=skip_platform, platforms=platforms)
        if outcome.ok:
            marked = self.ledger.mark_processed(product.id)
            self.db.commit()
            logger.info(
                "Synced product_id=%s to %s (%s transactions processed)",
                product.id,
                ", ".join(outcome.successful) or "no platforms",
                marked,
            )
            return outcome

        self.db.commit()
        if self.recovery is not None:
            self.recovery.handle_failure(product, outcome)
        else:
            logger.error("Sync failed for product_id=%s on %s with no recovery configured", product.id, outcome.failed)
        return outcome

    def sync_unprocessed(self, shop_id: int | None = None, now: datetime | None = None) -> int:
        """Push products whose committed transactions never reached the marketplaces.

        Covers a worker dying between the ledger commit and the follow-up push.
        Products with an open sync failure are left to recovery.
        """
        now = now or utc_now()
        open_failure = (
            select(SyncFailureRecord.id)
            .where(
                SyncFailureRecord.product_id == LedgerTransaction.product_id,
                SyncFailureRecord.status.in_(OPEN_FAILURE_STATUSES),
            )
            .exists()
        )
        query = (
            select(LedgerTransaction.product_id)
            .join(Product, Product.id == LedgerTransaction.product_id)
            .where(
                LedgerTransaction.processed.is_(False),
                LedgerTransaction.created_at <= now - self.unprocessed_grace,
                ~open_failure,
            )
            .distinct()
            .order_by(LedgerTransaction.product_id)
        )
        if shop_id is not None:
            query = query.where(Product.shop_id == shop_id)
        product_ids = self.db.execute(query).scalars().all()

        pushed = 0
        for product_id in product_ids:
            try:
                self.sync_product(product_id)
            except Exception:
                self.db.rollback()
                logger.exception("Catch-up push failed for product_id=%s", product_id)
                continue
            pushed += 1
        if product_ids:
            logger.warning("Pushed %s of %s products with unprocessed transactions", pushed, len(product_ids))
        return pushed
