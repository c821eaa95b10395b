"""
Platform order ingestion

WHY: Line item validity flags must be derived the same way every time an
order arrives (webhook, cron sync, manual re-sync). This is the single place
that turns a platform order payload into ledger rows.

STATUS DERIVATION (per line item):
- refund_status="refunded" when the item appears in any refund, carries a
  refunded status, or has a refunded quantity
- restocked when the item or its refund entry carries a restock marker
- status="removed" when a "removed" property is set, or when nothing is left
  to fulfil on an item that was never fulfilled
Order-level cancellation is left on the order; validity reads it from there.

Existing edition numbers are never written here; the products touched are
resequenced afterwards (unless skip_editions).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from ..extensions import db
from ..models import LineItem, Order
from edition_ledger.time_utils import parse_iso_datetime, utcnow
from .concurrency import product_locks, run_with_retry
from .dedupe_service import MANUAL_ID_PREFIX
from .edition_service import resequence_many
from .errors import OUTCOME_APPLIED, OUTCOME_FAILED, ValidationError
from .order_store import normalize_order_number
from .reconciliation_service import platform_archived


@dataclass
class IngestResult:
    order_id: str
    order_name: str | None
    outcome: str
    line_items: list[dict] = field(default_factory=list)
    resequenced: list[dict] = field(default_factory=list)

    @property
    def line_items_synced(self) -> int:
        return len(self.line_items)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["line_items_synced"] = self.line_items_synced
        return data


def refunded_line_item_ids(payload: dict) -> set[str]:
    ids = set()
    for refund in payload.get("refunds") or []:
        for entry in refund.get("refund_line_items") or []:
            if entry.get("line_item_id") is not None:
                ids.add(str(entry["line_item_id"]))
    return ids


def _refund_entry(payload: dict, line_item_id: str) -> dict | None:
    for refund in payload.get("refunds") or []:
        for entry in refund.get("refund_line_items") or []:
            if str(entry.get("line_item_id")) == line_item_id:
                return entry
    return None


def _has_removed_property(li: dict) -> bool:
    for prop in li.get("properties") or []:
        key = prop.get("name") or prop.get("key")
        if key == "removed" and prop.get("value") in (True, "true"):
            return True
    return False


def line_item_flags(payload: dict, li: dict) -> dict:
    """status / restocked / refund_status for one platform line item."""
    li_id = str(li["id"])
    refund_entry = _refund_entry(payload, li_id)

    refunded = (
        li_id in refunded_line_item_ids(payload)
        or li.get("refund_status") == "refunded"
        or bool(li.get("refunded_quantity"))
    )
    restocked = bool(
        li.get("restocked") is True
        or li.get("restock_type")
        or li.get("fulfillment_status") == "restocked"
        or (refund_entry or {}).get("restock_type")
    )
    removed_by_qty = (
        str(li.get("fulfillable_quantity")) == "0"
        and li.get("fulfillment_status") != "fulfilled"
    )
    removed = _has_removed_property(li) or removed_by_qty

    return {
        "status": "removed" if removed else "active",
        "restocked": restocked,
        "refund_status": "refunded" if refunded else "none",
    }


def _customer_name(payload: dict) -> str | None:
    for source in (payload.get("customer"), payload.get("shipping_address"), payload.get("billing_address")):
        if source and (source.get("first_name") or source.get("last_name")):
            return f"{source.get('first_name') or ''} {source.get('last_name') or ''}".strip()
    return None


def _upsert(payload: dict) -> tuple[Order, list[LineItem]]:
    order_id = str(payload["id"])
    name = payload.get("name")
    created_at = parse_iso_datetime(payload.get("created_at")) or utcnow()
    email = (payload.get("email") or "").strip().lower() or None
    customer = payload.get("customer") or {}

    order = db.session.get(Order, order_id)
    if order is None:
        order = Order(id=order_id, created_at=created_at)
        db.session.add(order)

    order.order_name = name
    order.order_number = normalize_order_number(payload.get("order_number") or name)
    order.financial_status = payload.get("financial_status")
    order.fulfillment_status = payload.get("fulfillment_status") or None
    order.cancelled_at = parse_iso_datetime(payload.get("cancelled_at"))
    order.archived = platform_archived(payload)
    order.platform_status = payload.get("status") or None
    order.source = "manual" if order_id.upper().startswith(MANUAL_ID_PREFIX) else "platform"
    order.customer_id = str(customer["id"]) if customer.get("id") is not None else None
    order.customer_email = email
    order.customer_name = _customer_name(payload)
    order.processed_at = parse_iso_datetime(payload.get("processed_at")) or created_at

    items = []
    for li in payload.get("line_items") or []:
        li_id = str(li["id"])
        item = db.session.get(LineItem, li_id)
        if item is None:
            item = LineItem(id=li_id, order_id=order_id, created_at=created_at)
            db.session.add(item)
        item.product_id = str(li["product_id"]) if li.get("product_id") else None
        item.name = li.get("title")
        item.quantity = li.get("quantity") or 1
        item.owner_email = email
        item.owner_name = order.customer_name
        item.owner_id = order.customer_id
        for key, value in line_item_flags(payload, li).items():
            setattr(item, key, value)
        items.append(item)
    return order, items


def ingest_platform_order(payload: dict, *, skip_editions: bool = False, actor: str | None = None) -> IngestResult:
    """Upsert an order and its line items from a platform payload, then resequence."""
    if not payload or payload.get("id") is None:
        raise ValidationError("Platform order payload must include an id")

    product_ids = {str(li["product_id"]) for li in payload.get("line_items") or [] if li.get("product_id")}
    existing = db.session.query(LineItem.product_id).filter(
        LineItem.order_id == str(payload["id"]), LineItem.product_id.isnot(None)
    ).all()
    product_ids.update(pid for (pid,) in existing)

    def _op():
        try:
            order, items = _upsert(payload)
            db.session.commit()
            return order.id, order.order_name, [
                {
                    "line_item_id": item.id,
                    "status": item.status,
                    "restocked": item.restocked,
                    "refund_status": item.refund_status,
                }
                for item in items
            ]
        except Exception:
            db.session.rollback()
            raise

    with product_locks(product_ids):
        order_id, order_name, line_items = run_with_retry(_op)
        resequenced = [] if skip_editions else resequence_many(product_ids, actor=actor)

    failed = any(r.outcome == OUTCOME_FAILED for r in resequenced)
    return IngestResult(
        order_id=order_id,
        order_name=order_name,
        outcome=OUTCOME_FAILED if failed else OUTCOME_APPLIED,
        line_items=line_items,
        resequenced=[r.to_dict() for r in resequenced],
    )
