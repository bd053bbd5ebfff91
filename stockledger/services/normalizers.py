from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from stockledger.adapters.base import EBAY, SHOPIFY
from stockledger.schemas.orders import NormalizedLineItem, NormalizedOrder

logger = logging.getLogger(__name__)

Payload = dict[str, Any]


def _dig(payload: Any, *path: str | int) -> Any:
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.debug("Ignoring non-numeric amount %r", value)
        return None


def _timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def id_from_gid(gid: str | None) -> str | None:
    """``gid://shopify/Product/123`` -> ``123``."""
    if not gid:
        return None
    return str(gid).rstrip("/").split("/")[-1] or None


def normalize_ebay_order(payload: Payload) -> NormalizedOrder:
    cancel_state = _dig(payload, "cancelStatus", "cancelState")
    fulfillment_status = payload.get("orderFulfillmentStatus")
    cancelled = fulfillment_status == "CANCELLED" or cancel_state == "CANCELED"

    cancelled_at = None
    cancellation_reason = None
    if cancelled:
        cancelled_at = _timestamp(
            _dig(payload, "cancelStatus", "cancelRequestDate")
            or _dig(payload, "cancelStatus", "cancelDate")
            or payload.get("modificationDate")
        ) or datetime.now(timezone.utc)
        cancellation_reason = _dig(payload, "cancelStatus", "cancelReason") or "Order cancelled"
        fulfillment_status = "cancelled"

    line_items = [
        NormalizedLineItem(
            platform_item_id=str(item["legacyItemId"]),
            quantity=int(item.get("quantity") or 0),
            title=item.get("title"),
        )
        for item in payload.get("lineItems") or []
        if item.get("legacyItemId")
    ]

    return NormalizedOrder(
        platform=EBAY,
        platform_order_id=str(payload["orderId"]),
        placed_at=_timestamp(payload.get("creationDate")),
        cancelled_at=cancelled_at,
        cancellation_reason=cancellation_reason,
        line_items=line_items,
        subtotal=_decimal(_dig(payload, "pricingSummary", "priceSubtotal", "value")),
        total_price=_decimal(_dig(payload, "pricingSummary", "total", "value")),
        shipping_cost=_decimal(_dig(payload, "pricingSummary", "deliveryCost", "value")) or Decimal("0"),
        fulfillment_status=fulfillment_status,
        payment_status=payload.get("orderPaymentStatus"),
        customer_name=_dig(payload, "buyer", "username") or "eBay Buyer",
    )


def normalize_shopify_order(payload: Payload) -> NormalizedOrder:
    financial_status = (payload.get("displayFinancialStatus") or "").lower() or None
    cancelled = payload.get("cancelled") is True or financial_status == "cancelled"

    line_items: list[NormalizedLineItem] = []
    for edge in _dig(payload, "lineItems", "edges") or []:
        node = edge.get("node") or {}
        product_id = id_from_gid(_dig(node, "product", "id"))
        if not product_id:
            # product deleted on Shopify
            continue
        line_items.append(
            NormalizedLineItem(
                platform_item_id=product_id,
                quantity=int(node.get("quantity") or 0),
                title=node.get("title"),
            )
        )

    return NormalizedOrder(
        platform=SHOPIFY,
        platform_order_id=id_from_gid(payload.get("id")) or str(payload.get("id")),
        placed_at=_timestamp(payload.get("createdAt")),
        cancelled_at=(_timestamp(payload.get("cancelledAt") or payload.get("updatedAt")) or datetime.now(timezone.utc))
        if cancelled
        else None,
        cancellation_reason=(payload.get("cancelReason") or "Order cancelled") if cancelled else None,
        line_items=line_items,
        subtotal=_decimal(_dig(payload, "subtotalPriceSet", "shopMoney", "amount")),
        total_price=_decimal(_dig(payload, "totalPriceSet", "shopMoney", "amount")),
        shipping_cost=_decimal(_dig(payload, "totalShippingPriceSet", "shopMoney", "amount")),
        fulfillment_status=(payload.get("displayFulfillmentStatus") or "").lower() or None,
        payment_status=financial_status,
        customer_name=None,
    )


NORMALIZERS: dict[str, Callable[[Payload], NormalizedOrder]] = {
    EBAY: normalize_ebay_order,
    SHOPIFY: normalize_shopify_order,
}


def normalize_order(payload: Payload | NormalizedOrder, platform: str) -> NormalizedOrder:
    if isinstance(payload, NormalizedOrder):
        return payload
    normalizer = NORMALIZERS.get(platform.lower())
    if normalizer is None:
        raise ValueError(f"Unsupported platform: {platform}")
    return normalizer(payload)
