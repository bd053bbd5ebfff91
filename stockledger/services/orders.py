from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stockledger.adapters.base import Notifier
from stockledger.core.errors import InsufficientInventory, LockTimeout, OrderProcessingError
from stockledger.models import Order, OrderItem, PlatformMirror, Shop
from stockledger.models.entities import utc_now
from stockledger.schemas.ledger import LedgerResult, SyncRequest
from stockledger.schemas.orders import NormalizedLineItem, NormalizedOrder, OrderProcessingResult, ProcessedItem
from stockledger.services.idempotency import IdempotencyStore, build_key, digest_payload
from stockledger.services.ledger import InventoryLedger
from stockledger.services.normalizers import normalize_order
from stockledger.services.timeline import decide_inventory_action

logger = logging.getLogger(__name__)


@dataclass
class OrderBatchSummary:
    items_total: int = 0
    items_processed: int = 0
    items_cached: int = 0
    items_failed: int = 0
    item_errors: int = 0
    followups: list[SyncRequest] = field(default_factory=list)


def order_idempotency_key(order: NormalizedOrder) -> str:
    # Line items, cancellation and fulfillment state all feed the key so a
    # modified or retro-actively cancelled order is processed again.
    line_items = [item.model_dump(mode="json") for item in order.line_items]
    return build_key(
        "order",
        order.platform,
        order.platform_order_id,
        digest_payload(line_items),
        "cancelled" if order.cancelled else "open",
        order.fulfillment_status,
    )


def merge_followups(followups: Iterable[SyncRequest]) -> list[SyncRequest]:
    """Collapse follow-ups to one push per (product, skipped platform)."""
    merged: dict[tuple[str, str | None], SyncRequest] = {}
    for request in followups:
        merged.setdefault((request.product_id, request.skip_platform), request)
    return list(merged.values())


class OrderIngestionPipeline:
    def __init__(
        self,
        db: Session,
        ledger: InventoryLedger,
        idempotency: IdempotencyStore,
        notifier: Notifier,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.idempotency = idempotency
        self.notifier = notifier

    def process_order(
        self,
        payload: dict[str, Any] | NormalizedOrder,
        platform: str,
        shop: Shop,
    ) -> OrderProcessingResult:
        platform = platform.lower()
        try:
            normalized = normalize_order(payload, platform)
        except (KeyError, TypeError, ValueError) as exc:
            self._notify_failure(shop, platform, exc)
            raise OrderProcessingError(f"Failed to process order: {exc}", details={"platform": platform}) from exc

        key = order_idempotency_key(normalized)
        cached = self.idempotency.lookup_model(key, OrderProcessingResult)
        if cached is not None:
            logger.info(
                "%s order %s already processed (cached, success=%s)",
                platform,
                normalized.platform_order_id,
                cached.success,
            )
            return cached.model_copy(update={"cached": True, "followups": []})

        try:
            result, ledger_results = self._process(normalized, shop)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.exception("Error processing %s order %s", platform, normalized.platform_order_id)
            self._notify_failure(shop, platform, exc, platform_order_id=normalized.platform_order_id)
            raise OrderProcessingError(
                f"Failed to process order: {exc}",
                details={"platform": platform, "platform_order_id": normalized.platform_order_id},
            ) from exc

        completed = [self.ledger.complete(ledger_result) for ledger_result in ledger_results]
        result.followups = merge_followups(request for item in completed for request in item.followups)
        self.idempotency.remember(key, result.model_copy(update={"followups": []}))

        if result.success:
            logger.info("Processed %s order %s", platform, normalized.platform_order_id)
        else:
            logger.warning(
                "%s order %s processed with errors: %s",
                platform,
                normalized.platform_order_id,
                ", ".join(result.errors),
            )
        return result

    def process_batch(
        self,
        payloads: Iterable[dict[str, Any] | NormalizedOrder],
        platform: str,
        shop: Shop,
    ) -> OrderBatchSummary:
        summary = OrderBatchSummary()
        followups: list[SyncRequest] = []
        for payload in payloads:
            summary.items_total += 1
            try:
                result = self.process_order(payload, platform, shop)
            except OrderProcessingError:
                summary.items_failed += 1
                continue
            if result.cached:
                summary.items_cached += 1
                continue
            summary.items_processed += 1
            summary.item_errors += len(result.errors)
            followups.extend(result.followups)
        summary.followups = merge_followups(followups)
        return summary

    def _process(self, normalized: NormalizedOrder, shop: Shop) -> tuple[OrderProcessingResult, list[LedgerResult]]:
        order = self._upsert_order(normalized, shop)
        processed: list[ProcessedItem] = []
        ledger_results: list[LedgerResult] = []
        errors: list[str] = []

        for line_item in normalized.line_items:
            order_item = self._upsert_order_item(order, line_item)
            try:
                item, ledger_result = self._process_item(order, order_item, line_item, shop)
            except LockTimeout:
                raise
            except InsufficientInventory as exc:
                errors.append(f"Insufficient inventory for item {line_item.platform_item_id}: {exc.message}")
                logger.warning("Insufficient inventory for order %s: %s", order.platform_order_id, exc.message)
                item = self._processed(order_item, "failed")
                ledger_result = None
            except Exception as exc:
                errors.append(f"Failed to process item {line_item.platform_item_id}: {exc}")
                logger.exception("Error processing order item %s", line_item.platform_item_id)
                item = self._processed(order_item, "failed")
                ledger_result = None
            processed.append(item)
            if ledger_result is not None:
                ledger_results.append(ledger_result)

        result = OrderProcessingResult(
            order_id=order.id,
            platform=order.platform,
            platform_order_id=order.platform_order_id,
            processed_items=processed,
            errors=errors,
            success=not errors,
        )
        return result, ledger_results

    def _process_item(
        self,
        order: Order,
        order_item: OrderItem,
        line_item: NormalizedLineItem,
        shop: Shop,
    ) -> tuple[ProcessedItem, LedgerResult | None]:
        mirror = self.db.execute(
            select(PlatformMirror).where(
                and_(PlatformMirror.platform == order.platform, PlatformMirror.external_id == line_item.platform_item_id)
            )
        ).scalar_one_or_none()
        if mirror is None:
            logger.debug("No %s mirror for item %s; order item left unlinked", order.platform, line_item.platform_item_id)
            return self._processed(order_item, "unlinked"), None

        product = mirror.product
        order_item.product_id = product.id
        self.db.flush()

        if line_item.quantity <= 0:
            return self._processed(order_item, "noop"), None

        action = decide_inventory_action(
            imported_at=product.imported_at,
            mirror_synced_at=mirror.last_sync_at or mirror.created_at,
            placed_at=order.placed_at,
            cancelled_at=order.cancelled_at,
            inventory_sync_enabled=shop.inventory_sync,
        )
        logger.debug(
            "Order %s item %s: placed_at=%s mirror_synced_at=%s -> %s",
            order.platform_order_id,
            line_item.platform_item_id,
            order.placed_at,
            mirror.last_sync_at,
            action,
        )
        if action == "noop":
            return self._processed(order_item, "noop"), None

        if action == "release":
            ledger_result = self.ledger.release(product.id, line_item.quantity, order, order_item, defer_commit=True)
        else:
            ledger_result = self.ledger.allocate(product.id, line_item.quantity, order, order_item, defer_commit=True)
        return self._processed(order_item, action, ledger_result.transaction_id), ledger_result

    def _upsert_order(self, normalized: NormalizedOrder, shop: Shop) -> Order:
        order = self.db.execute(
            select(Order).where(
                and_(Order.platform == normalized.platform, Order.platform_order_id == normalized.platform_order_id)
            )
        ).scalar_one_or_none()
        if order is None:
            order = Order(shop_id=shop.id, platform=normalized.platform, platform_order_id=normalized.platform_order_id)
            self.db.add(order)

        order.placed_at = normalized.placed_at
        order.cancelled_at = normalized.cancelled_at
        order.cancellation_reason = normalized.cancellation_reason
        order.subtotal = normalized.subtotal
        order.total_price = normalized.total_price
        order.shipping_cost = normalized.shipping_cost
        order.fulfillment_status = normalized.fulfillment_status
        order.payment_status = normalized.payment_status
        order.customer_name = normalized.customer_name
        order.last_synced_at = utc_now()
        self.db.flush()
        return order

    def _upsert_order_item(self, order: Order, line_item: NormalizedLineItem) -> OrderItem:
        order_item = self.db.execute(
            select(OrderItem).where(
                and_(OrderItem.order_id == order.id, OrderItem.platform_item_id == line_item.platform_item_id)
            )
        ).scalar_one_or_none()
        if order_item is None:
            order_item = OrderItem(order_id=order.id, platform=order.platform, platform_item_id=line_item.platform_item_id)
            self.db.add(order_item)
        order_item.title = line_item.title
        order_item.quantity = line_item.quantity
        self.db.flush()
        return order_item

    @staticmethod
    def _processed(order_item: OrderItem, action: str, transaction_id: str | None = None) -> ProcessedItem:
        return ProcessedItem(
            order_item_id=order_item.id,
            platform_item_id=order_item.platform_item_id,
            product_id=order_item.product_id,
            action=action,
            transaction_id=transaction_id,
        )

    def _notify_failure(
        self,
        shop: Shop,
        platform: str,
        error: Exception,
        platform_order_id: str | None = None,
    ) -> None:
        self.notifier.notify(
            shop.id,
            "Order Processing Error",
            f"Failed to process {platform} order: {error}",
            "order",
            "error",
            {
                "platform": platform,
                "platform_order_id": platform_order_id,
                "error": str(error),
                "error_class": type(error).__name__,
            },
        )
