from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.adapters.base import Notifier
from stockledger.core.errors import ProductNotFound
from stockledger.models import Product
from stockledger.services.ledger import InventoryLedger
from stockledger.services.platform_sync import PlatformPusher

logger = logging.getLogger(__name__)

PERCENTAGE_THRESHOLD = 10.0
NOTIFY_THRESHOLD = 5


@dataclass
class Discrepancy:
    platform: str
    expected: int
    actual: int
    significant: bool
    corrected: bool = False
    error: str | None = None

    @property
    def difference(self) -> int:
        return self.expected - self.actual


@dataclass
class ReconciliationReport:
    product_id: str
    previous_quantity: int
    quantity: int
    internal_correction: int = 0
    discrepancies: list[Discrepancy] = field(default_factory=list)
    notified: bool = False

    @property
    def corrected(self) -> list[Discrepancy]:
        return [item for item in self.discrepancies if item.corrected]

    @property
    def uncorrected(self) -> list[Discrepancy]:
        return [item for item in self.discrepancies if item.significant and not item.corrected]


@dataclass
class ShopReconciliationSummary:
    shop_id: int
    products_checked: int = 0
    products_corrected: int = 0
    discrepancies: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)


def is_significant(internal: int, platform: int, percentage_threshold: float = PERCENTAGE_THRESHOLD) -> bool:
    difference = abs(internal - platform)
    if difference == 0:
        return False
    if internal == 0 or platform == 0:
        return True
    return difference / internal * 100 > percentage_threshold


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        ledger: InventoryLedger,
        pusher: PlatformPusher,
        notifier: Notifier,
        recovery=None,
        percentage_threshold: float = PERCENTAGE_THRESHOLD,
        notify_threshold: int = NOTIFY_THRESHOLD,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.pusher = pusher
        self.notifier = notifier
        self.recovery = recovery
        self.percentage_threshold = percentage_threshold
        self.notify_threshold = notify_threshold

    def reconcile_product(self, product_id: str) -> ReconciliationReport:
        result = self.ledger.reconcile(product_id, suppress_downstream_sync=True)
        product = self.db.get(Product, product_id)
        if product is None:
            raise ProductNotFound("Product not found", details={"product_id": product_id})

        report = ReconciliationReport(
            product_id=product.id,
            previous_quantity=result.previous_quantity,
            quantity=product.quantity,
            internal_correction=result.delta if result.transaction_id else 0,
        )

        for mirror in product.mirrors:
            if mirror.quantity == product.quantity:
                continue
            report.discrepancies.append(
                Discrepancy(
                    platform=mirror.platform,
                    expected=product.quantity,
                    actual=mirror.quantity,
                    significant=is_significant(product.quantity, mirror.quantity, self.percentage_threshold),
                )
            )

        divergent = [item.platform for item in report.discrepancies if item.significant]
        if divergent:
            self._correct(product, report, divergent)

        if self._should_notify(report):
            self._notify(product, report)
            report.notified = True

        logger.info(
            "Reconciled product_id=%s: internal correction %s, %s discrepancies, %s corrected",
            product.id,
            report.internal_correction,
            len(report.discrepancies),
            len(report.corrected),
        )
        return report

    def reconcile_shop(self, shop_id: int, batch_size: int = 100) -> ShopReconciliationSummary:
        summary = ShopReconciliationSummary(shop_id=shop_id)
        last_id = ""
        while True:
            product_ids = self.db.execute(
                select(Product.id)
                .where(Product.shop_id == shop_id, Product.id > last_id)
                .order_by(Product.id)
                .limit(batch_size)
            ).scalars().all()
            if not product_ids:
                break
            for product_id in product_ids:
                summary.products_checked += 1
                try:
                    report = self.reconcile_product(product_id)
                except Exception as exc:
                    self.db.rollback()
                    summary.errors += 1
                    summary.error_details.append(f"{product_id}: {exc}")
                    logger.exception("Reconciliation failed for product_id=%s", product_id)
                    continue
                summary.discrepancies += len(report.discrepancies)
                if report.internal_correction or report.corrected:
                    summary.products_corrected += 1
            last_id = product_ids[-1]

        if summary.errors:
            self.notifier.notify(
                shop_id,
                "Inventory Reconciliation Errors",
                f"Reconciliation hit errors on {summary.errors} of {summary.products_checked} products.",
                "inventory",
                "error",
                {"errors": summary.error_details[:20], "products_checked": summary.products_checked},
            )
        logger.info(
            "Shop %s reconciliation: checked=%s corrected=%s discrepancies=%s errors=%s",
            shop_id,
            summary.products_checked,
            summary.products_corrected,
            summary.discrepancies,
            summary.errors,
        )
        return summary

    def _correct(self, product: Product, report: ReconciliationReport, platforms: list[str]) -> None:
        outcome = self.pusher.push_to_platforms(product, platforms=platforms)
        self.db.commit()
        for item in report.discrepancies:
            if item.platform in outcome.successful:
                item.corrected = True
            elif item.platform in outcome.errors:
                item.error = outcome.errors[item.platform]

        if not outcome.ok:
            if self.recovery is not None:
                self.recovery.handle_failure(product, outcome)
            else:
                logger.error("Reconciliation push failed for product_id=%s on %s", product.id, outcome.failed)

    def _should_notify(self, report: ReconciliationReport) -> bool:
        large = any(abs(item.difference) >= self.notify_threshold for item in report.discrepancies)
        return large or bool(report.uncorrected)

    def _notify(self, product: Product, report: ReconciliationReport) -> None:
        total = len(report.discrepancies)
        corrected = len(report.corrected)
        if not report.uncorrected:
            severity = "info"
        elif corrected > 0:
            severity = "warning"
        else:
            severity = "error"

        self.notifier.notify(
            product.shop_id,
            "Inventory Reconciliation",
            f"Found {total} inventory discrepancies for '{product.title or product.id}'. "
            f"{corrected} were automatically corrected.",
            "inventory",
            severity,
            {
                "product_id": product.id,
                "discrepancies": [
                    {
                        "platform": item.platform,
                        "expected": item.expected,
                        "actual": item.actual,
                        "difference": item.difference,
                        "corrected": item.corrected,
                    }
                    for item in report.discrepancies
                ],
                "total_discrepancies": total,
                "corrected_count": corrected,
            },
        )
