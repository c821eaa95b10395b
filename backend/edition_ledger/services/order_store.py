# Overview: Purchase record store access; the query/update surface over orders and line items.

from __future__ import annotations

from typing import Iterable

from sqlalchemy import func, or_

from ..extensions import db
from ..models import LineItem, Order, Product
from .concurrency import lock_for_update
from .errors import NotFoundError, ValidationError

ORDER_MUTABLE_FIELDS = frozenset({
    "financial_status",
    "fulfillment_status",
    "cancelled_at",
    "archived",
    "platform_status",
})

LINE_ITEM_MUTABLE_FIELDS = frozenset({
    "status",
    "restocked",
    "refund_status",
    "edition_number",
    "edition_total",
    "owner_id",
    "owner_email",
    "owner_name",
})


def normalize_order_number(value) -> str | None:
    """'#1114' and '1114' both normalize to '1114'."""
    if value is None:
        return None
    s = str(value).strip().lstrip("#").strip()
    return s or None


def get_order(order_id: str) -> Order:
    order = db.session.get(Order, str(order_id))
    if not order:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def find_orders(*, order_number=None, customer: str | None = None) -> list[Order]:
    """Orders matching a human-facing number and/or a customer (email or id)."""
    q = db.session.query(Order)
    if order_number is not None:
        number = normalize_order_number(order_number)
        q = q.filter(or_(Order.order_number == number, Order.order_name == f"#{number}"))
    if customer:
        if "@" in customer:
            q = q.filter(func.lower(Order.customer_email) == customer.strip().lower())
        else:
            q = q.filter(Order.customer_id == customer)
    return q.order_by(Order.created_at.asc(), Order.id.asc()).all()


def list_orders(order_ref: str | None = None, limit: int = 100) -> list[Order]:
    """
    Orders for a reconciliation sweep, newest first.

    order_ref may be a stable order id or a human-facing order number.
    """
    limit = max(1, int(limit))
    if order_ref:
        order = db.session.get(Order, str(order_ref))
        if order:
            return [order]
        return find_orders(order_number=order_ref)[:limit]
    return (
        db.session.query(Order)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .all()
    )


def get_line_item(line_item_id: str, *, for_update: bool = False) -> LineItem:
    q = db.session.query(LineItem).filter(LineItem.id == str(line_item_id))
    if for_update:
        q = lock_for_update(q)
    item = q.first()
    if not item:
        raise NotFoundError(f"Line item {line_item_id} not found", details={"line_item_id": line_item_id})
    return item


def line_items_for_order(order_id: str) -> list[LineItem]:
    return (
        db.session.query(LineItem)
        .filter(LineItem.order_id == str(order_id))
        .order_by(LineItem.created_at.asc(), LineItem.id.asc())
        .all()
    )


def line_items_for_product(product_id: str, *, for_update: bool = False) -> list[tuple[LineItem, Order]]:
    """All line items of a product with their orders, in purchase order (created_at, id)."""
    q = (
        db.session.query(LineItem, Order)
        .join(Order, LineItem.order_id == Order.id)
        .filter(LineItem.product_id == str(product_id))
        .order_by(LineItem.created_at.asc(), LineItem.id.asc())
    )
    if for_update:
        q = lock_for_update(q)
    return q.all()


def line_items_for_owner(owner: str) -> list[tuple[LineItem, Order]]:
    """Line items owned by an email or owner/customer id, with their orders."""
    q = db.session.query(LineItem, Order).join(Order, LineItem.order_id == Order.id)
    if "@" in owner:
        email = owner.strip().lower()
        q = q.filter(or_(
            func.lower(LineItem.owner_email) == email,
            func.lower(Order.customer_email) == email,
        ))
    else:
        q = q.filter(or_(LineItem.owner_id == owner, Order.customer_id == owner))
    return q.order_by(LineItem.created_at.asc(), LineItem.id.asc()).all()


def get_product(product_id: str) -> Product | None:
    return db.session.get(Product, str(product_id))


def _apply_fields(obj, fields: dict, allowed: Iterable[str]) -> dict:
    allowed = set(allowed)
    unknown = sorted(set(fields) - allowed)
    if unknown:
        raise ValidationError(f"Fields not updatable: {', '.join(unknown)}", details={"fields": unknown})
    changes = {}
    for key, value in fields.items():
        before = getattr(obj, key)
        if before != value:
            setattr(obj, key, value)
            changes[key] = {"before": before, "after": value}
    return changes


def update_order_fields(order: Order, fields: dict) -> dict:
    """Set status fields on an order; returns {field: {before, after}} for real changes."""
    return _apply_fields(order, fields, ORDER_MUTABLE_FIELDS)


def update_line_item_fields(item: LineItem, fields: dict) -> dict:
    return _apply_fields(item, fields, LINE_ITEM_MUTABLE_FIELDS)
