"""
Validity State Machine

A line item is VALID (counts toward edition numbering, shown to its owner)
only when every one of its own flags and its parent order's flags allow it.
Any single failing condition makes it INVALID; there is no precedence.

Pure functions: no queries, no writes.
"""

from __future__ import annotations

VALID = "VALID"
INVALID = "INVALID"

LINE_STATUS_ACTIVE = "active"
LINE_STATUS_REMOVED = "removed"

REFUND_NONE = "none"
REFUND_REFUNDED = "refunded"

INVALIDATING_FULFILLMENT = frozenset({"restocked", "canceled"})
INVALIDATING_FINANCIAL = frozenset({"refunded", "voided"})


def invalid_reasons(line_item, order) -> list[str]:
    """Every condition that keeps this item from being VALID (empty when VALID)."""
    reasons = []
    if line_item.status == LINE_STATUS_REMOVED:
        reasons.append("removed")
    if line_item.restocked:
        reasons.append("restocked")
    if line_item.refund_status not in (None, REFUND_NONE):
        reasons.append(f"refund_status:{line_item.refund_status}")
    if order is not None:
        if order.fulfillment_status in INVALIDATING_FULFILLMENT:
            reasons.append(f"order_fulfillment:{order.fulfillment_status}")
        if order.financial_status in INVALIDATING_FINANCIAL:
            reasons.append(f"order_financial:{order.financial_status}")
    return reasons


def classify(line_item, order) -> str:
    return INVALID if invalid_reasons(line_item, order) else VALID


def is_valid(line_item, order) -> bool:
    return classify(line_item, order) == VALID


def is_numberable(line_item, order) -> bool:
    """VALID and tied to a product; accessory items without a product never get a number."""
    return bool(line_item.product_id) and is_valid(line_item, order)


def is_order_cancelled(order) -> bool:
    """Order-level cancellation as used by validity and deduplication."""
    return (
        order.fulfillment_status in INVALIDATING_FULFILLMENT
        or order.financial_status in INVALIDATING_FINANCIAL
    )
