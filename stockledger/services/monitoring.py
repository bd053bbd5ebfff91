from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from stockledger.adapters.base import Notifier
from stockledger.models import LedgerTransaction, Product
from stockledger.models.entities import ALLOCATION_FAILED, utc_now
from stockledger.schemas.admin import HealthAlert, HealthSummary
from stockledger.services.reconciliation import is_significant

logger = logging.getLogger(__name__)

CRITICAL_LOW_INVENTORY = 5
WARNING_LOW_INVENTORY = 10
FAILED_ALLOCATIONS_PER_HOUR = 5
STUCK_TRANSACTION_AGE = timedelta(minutes=30)
STALE_INVENTORY_AGE = timedelta(hours=4)


class InventoryHealthMonitor:
    def __init__(self, db: Session, notifier: Notifier, percentage_threshold: float = 10.0) -> None:
        self.db = db
        self.notifier = notifier
        self.percentage_threshold = percentage_threshold

    def check(self, shop_id: int | None = None, now: datetime | None = None) -> HealthSummary:
        now = now or utc_now()
        logger.info("Starting inventory health check for shop_id=%s", shop_id if shop_id is not None else "all")

        alerts: list[HealthAlert] = []
        alerts.extend(self._low_inventory(shop_id))
        alerts.extend(self._failed_allocations(shop_id, now))
        alerts.extend(self._mirror_drift(shop_id))
        alerts.extend(self._stale_inventory(shop_id, now))
        alerts.extend(self._stuck_transactions(shop_id, now))

        by_severity = Counter(alert.severity for alert in alerts)
        summary = HealthSummary(
            shop_id=shop_id,
            checked_at=now,
            overall_status=self._overall_status(by_severity),
            total_alerts=len(alerts),
            alerts_by_severity=dict(by_severity),
            alerts=alerts,
        )
        if by_severity["critical"]:
            self._alert(summary)
        return summary

    def _products(self, shop_id: int | None):
        query = select(Product).where(Product.status == "active")
        if shop_id is not None:
            query = query.where(Product.shop_id == shop_id)
        return query

    def _transactions(self, shop_id: int | None):
        query = select(func.count(LedgerTransaction.id))
        if shop_id is not None:
            query = query.join(Product, Product.id == LedgerTransaction.product_id).where(Product.shop_id == shop_id)
        return query

    def _low_inventory(self, shop_id: int | None) -> list[HealthAlert]:
        products = self.db.execute(
            self._products(shop_id).where(Product.quantity <= WARNING_LOW_INVENTORY)
        ).scalars().all()
        critical = [product.id for product in products if product.quantity <= CRITICAL_LOW_INVENTORY]
        warning = [product.id for product in products if product.quantity > CRITICAL_LOW_INVENTORY]

        alerts = []
        if critical:
            alerts.append(
                HealthAlert(
                    type="critical_low_inventory",
                    severity="critical",
                    count=len(critical),
                    message=f"{len(critical)} products have critically low inventory (<={CRITICAL_LOW_INVENTORY})",
                    details={"product_ids": critical[:50]},
                )
            )
        if warning:
            alerts.append(
                HealthAlert(
                    type="warning_low_inventory",
                    severity="warning",
                    count=len(warning),
                    message=f"{len(warning)} products have low inventory (<={WARNING_LOW_INVENTORY})",
                    details={"product_ids": warning[:50]},
                )
            )
        return alerts

    def _failed_allocations(self, shop_id: int | None, now: datetime) -> list[HealthAlert]:
        count = self.db.execute(
            self._transactions(shop_id).where(
                LedgerTransaction.transaction_type == ALLOCATION_FAILED,
                LedgerTransaction.created_at >= now - timedelta(hours=1),
            )
        ).scalar_one()
        if count < FAILED_ALLOCATIONS_PER_HOUR:
            return []
        return [
            HealthAlert(
                type="high_allocation_failures",
                severity="error",
                count=count,
                message=f"{count} allocation failures in the last hour (threshold: {FAILED_ALLOCATIONS_PER_HOUR})",
            )
        ]

    def _mirror_drift(self, shop_id: int | None) -> list[HealthAlert]:
        products = self.db.execute(self._products(shop_id).options(selectinload(Product.mirrors))).scalars().all()
        drifted = []
        for product in products:
            for mirror in product.mirrors:
                if is_significant(product.quantity, mirror.quantity, self.percentage_threshold):
                    drifted.append(
                        {
                            "product_id": product.id,
                            "platform": mirror.platform,
                            "internal": product.quantity,
                            "platform_quantity": mirror.quantity,
                        }
                    )
        if not drifted:
            return []
        return [
            HealthAlert(
                type="platform_discrepancies",
                severity="warning",
                count=len(drifted),
                message=f"{len(drifted)} platform mirrors differ significantly from inventory",
                details={"discrepancies": drifted[:50]},
            )
        ]

    def _stale_inventory(self, shop_id: int | None, now: datetime) -> list[HealthAlert]:
        query = select(func.count(Product.id)).where(
            (Product.last_inventory_update < now - STALE_INVENTORY_AGE) | Product.last_inventory_update.is_(None)
        )
        if shop_id is not None:
            query = query.where(Product.shop_id == shop_id)
        count = self.db.execute(query).scalar_one()
        if not count:
            return []
        return [
            HealthAlert(
                type="stale_inventory_data",
                severity="info",
                count=count,
                message=f"{count} products have stale inventory data (last updated >4 hours ago)",
            )
        ]

    def _stuck_transactions(self, shop_id: int | None, now: datetime) -> list[HealthAlert]:
        count = self.db.execute(
            self._transactions(shop_id).where(
                LedgerTransaction.processed.is_(False),
                LedgerTransaction.created_at <= now - STUCK_TRANSACTION_AGE,
            )
        ).scalar_one()
        if not count:
            return []
        return [
            HealthAlert(
                type="stuck_transactions",
                severity="error",
                count=count,
                message=f"{count} inventory transactions are stuck in unprocessed state",
            )
        ]

    @staticmethod
    def _overall_status(by_severity: Counter) -> str:
        if by_severity["critical"]:
            return "critical"
        if by_severity["error"] or by_severity["warning"]:
            return "warning"
        if by_severity["info"]:
            return "info"
        return "healthy"

    def _alert(self, summary: HealthSummary) -> None:
        critical = [alert for alert in summary.alerts if alert.severity == "critical"]
        lines = "\n".join(f"- {alert.message}" for alert in critical)
        if summary.shop_id is None:
            logger.error("Critical inventory alert: %s", lines)
            return
        self.notifier.notify(
            summary.shop_id,
            "Critical Inventory Alert",
            f"Critical inventory issues detected:\n{lines}",
            "inventory",
            "error",
            {"critical_alerts": [alert.model_dump() for alert in critical]},
        )
