from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.adapters.base import Notifier
from stockledger.core.errors import DuplicateOperation, InsufficientInventory, InvalidAdjustment, ProductNotFound
from stockledger.models import LedgerTransaction, Order, OrderItem, Product
from stockledger.models.entities import (
    ALLOCATION,
    ALLOCATION_FAILED,
    MANUAL_ADJUSTMENT,
    RECONCILIATION,
    RELEASE,
    REPLAY_TRANSACTION_TYPES,
    STATUS_CHANGE,
    utc_now,
)
from stockledger.schemas.ledger import LedgerResult, SyncRequest
from stockledger.services.idempotency import IdempotencyStore, build_key
from stockledger.services.locks import LockManager, product_lock_key

logger = logging.getLogger(__name__)


@dataclass
class _Applied:
    product: Product
    transaction: LedgerTransaction | None
    duplicate: bool = False
    insufficient: bool = False
    requested: int = 0


class InventoryLedger:
    """Atomic, idempotent mutations of a product's quantity-of-record.

    Each operation short-circuits on a cached idempotency key, then takes the
    product's advisory lock and runs one unit of work under a row lock. The
    unit never performs network I/O: cross-platform pushes come back as
    ``SyncRequest`` follow-ups on the result for the caller to dispatch.

    Allocate and release accept ``defer_commit=True`` for callers that own an
    outer unit of work (order ingestion). The unit then runs in a savepoint
    and the result is returned with ``pending_commit=True``; the caller hands
    it to :meth:`complete` once the outer transaction has committed.
    """

    def __init__(
        self,
        db: Session,
        locks: LockManager,
        idempotency: IdempotencyStore,
        notifier: Notifier,
    ) -> None:
        self.db = db
        self.locks = locks
        self.idempotency = idempotency
        self.notifier = notifier

    def allocate(
        self,
        product_id: str,
        quantity: int,
        order: Order,
        order_item: OrderItem,
        suppress_downstream_sync: bool = False,
        defer_commit: bool = False,
    ) -> LedgerResult:
        key = build_key(ALLOCATION, order.platform, order.platform_order_id, order_item.platform_item_id, quantity)

        def apply(product: Product) -> _Applied:
            existing = self._existing(product.id, order_item.id, ALLOCATION)
            if existing is not None:
                return _Applied(product=product, transaction=existing, duplicate=True)

            previous = product.quantity
            if previous < quantity:
                if self._existing(product.id, order_item.id, ALLOCATION_FAILED) is not None:
                    return _Applied(product=product, transaction=None, insufficient=True, requested=quantity)
                failed = self._record(
                    product,
                    ALLOCATION_FAILED,
                    delta=-quantity,
                    new_quantity=previous,
                    order=order,
                    order_item=order_item,
                    notes=f"Insufficient inventory: requested {quantity}, available {previous}. Quantity unchanged.",
                )
                return _Applied(product=product, transaction=failed, insufficient=True, requested=quantity)

            transaction = self._record(
                product,
                ALLOCATION,
                delta=-quantity,
                new_quantity=previous - quantity,
                order=order,
                order_item=order_item,
            )
            self._apply_quantity(product, transaction.new_quantity)
            return _Applied(product=product, transaction=transaction)

        return self._execute(
            key,
            product_id,
            ALLOCATION,
            apply,
            order_item_id=order_item.id,
            order=order,
            origin_platform=order.platform,
            suppress_downstream_sync=suppress_downstream_sync,
            defer_commit=defer_commit,
        )

    def release(
        self,
        product_id: str,
        quantity: int,
        order: Order,
        order_item: OrderItem,
        suppress_downstream_sync: bool = False,
        defer_commit: bool = False,
    ) -> LedgerResult:
        key = build_key(RELEASE, order.platform, order.platform_order_id, order_item.platform_item_id, quantity)

        def apply(product: Product) -> _Applied:
            existing = self._existing(product.id, order_item.id, RELEASE)
            if existing is not None:
                return _Applied(product=product, transaction=existing, duplicate=True)

            transaction = self._record(
                product,
                RELEASE,
                delta=quantity,
                new_quantity=product.quantity + quantity,
                order=order,
                order_item=order_item,
            )
            self._apply_quantity(product, transaction.new_quantity)
            return _Applied(product=product, transaction=transaction)

        return self._execute(
            key,
            product_id,
            RELEASE,
            apply,
            order_item_id=order_item.id,
            order=order,
            origin_platform=order.platform,
            suppress_downstream_sync=suppress_downstream_sync,
            defer_commit=defer_commit,
        )

    def manual_adjustment(
        self,
        product_id: str,
        delta: int,
        notes: str | None = None,
        idempotency_key: str | None = None,
        suppress_downstream_sync: bool = False,
    ) -> LedgerResult:
        key = build_key(MANUAL_ADJUSTMENT, product_id, idempotency_key) if idempotency_key else None

        def apply(product: Product) -> _Applied:
            previous = product.quantity
            if previous + delta < 0:
                raise InvalidAdjustment(
                    f"Adjustment of {delta} would take product {product.id} below zero",
                    details={"product_id": product.id, "quantity": previous, "delta": delta},
                )
            transaction = self._record(
                product,
                MANUAL_ADJUSTMENT,
                delta=delta,
                new_quantity=previous + delta,
                notes=notes,
            )
            self._apply_quantity(product, transaction.new_quantity)
            return _Applied(product=product, transaction=transaction)

        return self._execute(
            key,
            product_id,
            MANUAL_ADJUSTMENT,
            apply,
            suppress_downstream_sync=suppress_downstream_sync,
        )

    def reconcile(
        self,
        product_id: str,
        idempotency_key: str | None = None,
        suppress_downstream_sync: bool = False,
    ) -> LedgerResult:
        key = build_key(RECONCILIATION, product_id, idempotency_key) if idempotency_key else None

        def apply(product: Product) -> _Applied:
            expected = self.expected_quantity(product.id, product.initial_quantity)
            current = product.quantity
            if expected == current:
                return _Applied(product=product, transaction=None)

            difference = expected - current
            transaction = self._record(
                product,
                RECONCILIATION,
                delta=difference,
                new_quantity=expected,
                notes=f"Inventory reconciliation: {'added' if difference > 0 else 'removed'} {abs(difference)} units",
            )
            self._apply_quantity(product, expected)
            logger.info("Reconciled product_id=%s: %s -> %s", product.id, current, expected)
            return _Applied(product=product, transaction=transaction)

        return self._execute(
            key,
            product_id,
            RECONCILIATION,
            apply,
            suppress_downstream_sync=suppress_downstream_sync,
        )

    def complete(self, result: LedgerResult) -> LedgerResult:
        """Cache a result produced inside an outer transaction, after that transaction committed."""
        if not result.pending_commit:
            return result
        completed = result.model_copy(update={"pending_commit": False})
        if completed.idempotency_key and not completed.cached:
            self.idempotency.remember(completed.idempotency_key, completed)
        return completed

    def expected_quantity(self, product_id: str, initial_quantity: int | None = None) -> int:
        if initial_quantity is None:
            product = self.db.get(Product, product_id)
            if product is None:
                raise ProductNotFound("Product not found", details={"product_id": product_id})
            initial_quantity = product.initial_quantity
        total = self.db.execute(
            select(func.coalesce(func.sum(LedgerTransaction.delta), 0)).where(
                LedgerTransaction.product_id == product_id,
                LedgerTransaction.transaction_type.in_(REPLAY_TRANSACTION_TYPES),
            )
        ).scalar_one()
        return max(0, (initial_quantity or 0) + int(total))

    def unprocessed_transactions(self, product_id: str) -> list[LedgerTransaction]:
        return list(
            self.db.execute(
                select(LedgerTransaction)
                .where(LedgerTransaction.product_id == product_id, LedgerTransaction.processed.is_(False))
                .order_by(LedgerTransaction.created_at)
            ).scalars()
        )

    def mark_processed(self, product_id: str) -> int:
        """Flag the product's pending transactions as pushed. The caller owns the commit."""
        result = self.db.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.product_id == product_id, LedgerTransaction.processed.is_(False))
            .values(processed=True)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def _execute(
        self,
        key: str | None,
        product_id: str,
        transaction_type: str,
        apply: Callable[[Product], _Applied],
        order_item_id: str | None = None,
        order: Order | None = None,
        origin_platform: str | None = None,
        suppress_downstream_sync: bool = False,
        defer_commit: bool = False,
    ) -> LedgerResult:
        def operation() -> LedgerResult:
            return self._apply_locked(
                key,
                product_id,
                transaction_type,
                apply,
                order_item_id=order_item_id,
                order=order,
                origin_platform=origin_platform,
                suppress_downstream_sync=suppress_downstream_sync,
                defer_commit=defer_commit,
            )

        if key and not defer_commit:
            result, cached = self.idempotency.run(key, LedgerResult, operation)
            if cached:
                logger.info("Skipping duplicate %s for product_id=%s", transaction_type, product_id)
                return result.model_copy(update={"cached": True, "followups": []})
            return result

        # Deferred results are remembered by complete() once the outer transaction commits.
        if key:
            cached_result = self.idempotency.lookup_model(key, LedgerResult)
            if cached_result is not None:
                logger.info("Skipping duplicate %s for product_id=%s (cached)", transaction_type, product_id)
                return cached_result.model_copy(update={"cached": True, "followups": []})
        try:
            return operation()
        except DuplicateOperation as exc:
            if exc.result is None:
                raise
            return exc.result

    def _apply_locked(
        self,
        key: str | None,
        product_id: str,
        transaction_type: str,
        apply: Callable[[Product], _Applied],
        order_item_id: str | None,
        order: Order | None,
        origin_platform: str | None,
        suppress_downstream_sync: bool,
        defer_commit: bool,
    ) -> LedgerResult:
        with self.locks.hold(product_lock_key(product_id)):
            try:
                with self._unit_of_work(defer_commit):
                    product = self._locked_product(product_id)
                    applied = apply(product)
            except IntegrityError:
                if order_item_id is None:
                    raise
                # another writer bypassed the advisory lock and committed the same (product, item, type)
                existing = self._existing(product_id, order_item_id, transaction_type)
                if existing is None:
                    raise
                logger.warning("Lost race on %s for product_id=%s; treating as duplicate", transaction_type, product_id)
                product = self.db.get(Product, product_id)
                applied = _Applied(product=product, transaction=existing, duplicate=True)

        if applied.insufficient:
            self._notify_insufficient(applied, order)
            raise InsufficientInventory(
                f"Insufficient inventory for product {product_id}",
                details={
                    "product_id": product_id,
                    "requested": applied.requested,
                    "available": applied.product.quantity,
                },
            )

        result = self._build_result(
            applied,
            transaction_type,
            key,
            pending_commit=defer_commit,
            origin_platform=origin_platform,
            suppress_downstream_sync=suppress_downstream_sync,
        )
        if applied.duplicate:
            logger.info("%s already applied for product_id=%s order_item_id=%s", transaction_type, product_id, order_item_id)
            raise DuplicateOperation(
                f"{transaction_type} already recorded for order item {order_item_id}",
                result=result,
                details={"product_id": product_id, "order_item_id": order_item_id},
            )
        return result

    @contextmanager
    def _unit_of_work(self, defer_commit: bool) -> Iterator[None]:
        if defer_commit:
            with self.db.begin_nested():
                yield
            return
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _locked_product(self, product_id: str) -> Product:
        product = self.db.execute(
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if product is None:
            raise ProductNotFound("Product not found", details={"product_id": product_id})
        return product

    def _existing(self, product_id: str, order_item_id: str | None, transaction_type: str) -> LedgerTransaction | None:
        if order_item_id is None:
            return None
        return self.db.execute(
            select(LedgerTransaction).where(
                LedgerTransaction.product_id == product_id,
                LedgerTransaction.order_item_id == order_item_id,
                LedgerTransaction.transaction_type == transaction_type,
            )
        ).scalars().first()

    def _record(
        self,
        product: Product,
        transaction_type: str,
        delta: int,
        new_quantity: int,
        order: Order | None = None,
        order_item: OrderItem | None = None,
        notes: str | None = None,
    ) -> LedgerTransaction:
        transaction = LedgerTransaction(
            product_id=product.id,
            transaction_type=transaction_type,
            delta=delta,
            previous_quantity=product.quantity,
            new_quantity=new_quantity,
            order_id=order.id if order is not None else None,
            order_item_id=order_item.id if order_item is not None else None,
            processed=False,
            notes=notes,
            created_at=utc_now(),
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def _apply_quantity(self, product: Product, new_quantity: int) -> None:
        product.quantity = new_quantity
        product.last_inventory_update = utc_now()

        previous_status = product.status
        if new_quantity == 0:
            product.status = "completed"
        elif previous_status == "completed":
            product.status = "active"

        if product.status != previous_status:
            self._record(
                product,
                STATUS_CHANGE,
                delta=0,
                new_quantity=new_quantity,
                notes=f"{previous_status} -> {product.status}",
            )
        self.db.flush()

    def _build_result(
        self,
        applied: _Applied,
        transaction_type: str,
        key: str | None,
        pending_commit: bool,
        origin_platform: str | None,
        suppress_downstream_sync: bool,
    ) -> LedgerResult:
        product = applied.product
        transaction = applied.transaction
        followups: list[SyncRequest] = []
        if transaction is not None and not applied.duplicate and not suppress_downstream_sync:
            followups.append(
                SyncRequest(
                    product_id=product.id,
                    skip_platform=origin_platform,
                    reason=transaction_type,
                )
            )

        if transaction is None:
            return LedgerResult(
                product_id=product.id,
                transaction_type=transaction_type,
                previous_quantity=product.quantity,
                new_quantity=product.quantity,
                status=product.status,
                idempotency_key=key,
                pending_commit=pending_commit,
                sync_suppressed=suppress_downstream_sync,
            )

        return LedgerResult(
            product_id=product.id,
            transaction_type=transaction.transaction_type,
            transaction_id=transaction.id,
            delta=transaction.delta,
            previous_quantity=transaction.previous_quantity,
            new_quantity=transaction.new_quantity,
            status=product.status,
            idempotency_key=key,
            duplicate=applied.duplicate,
            pending_commit=pending_commit,
            sync_suppressed=suppress_downstream_sync,
            followups=followups,
            created_at=transaction.created_at,
        )

    def _notify_insufficient(self, applied: _Applied, order: Order | None) -> None:
        if applied.transaction is None:
            return
        product = applied.product
        self.notifier.notify(
            product.shop_id,
            "Insufficient Inventory",
            f"Insufficient inventory for '{product.title or product.id}': "
            f"requested {applied.requested}, available {product.quantity}",
            "inventory",
            "warning",
            {
                "product_id": product.id,
                "order_id": order.id if order is not None else None,
                "order_item_id": applied.transaction.order_item_id,
                "transaction_id": applied.transaction.id,
            },
        )
