"""
Edition Assignment Engine

WHY: Each valid purchase of a limited-edition product holds "edition N of M",
and N must be unique and stable for as long as the purchase stays valid.

DESIGN PRINCIPLES:
- Numbering is dense: VALID items of a product hold exactly 1..k
- Order is purchase time (created_at), ties broken by line item id; the oldest
  purchaser holds the lowest number
- Resequencing is idempotent: an unchanged valid set produces zero writes
- All writes for a product happen under that product's lock, and a whole
  resequence commits or rolls back as one unit (never partial numbering)
- Every number change and validity transition is appended to the audit log
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import LineItem, Order
from edition_ledger.time_utils import to_utc_z
from . import audit_service, order_store
from .audit_service import (
    EVENT_ASSIGNED,
    EVENT_INTEGRITY_VIOLATION,
    EVENT_RESEQUENCED,
    EVENT_STATUS_CHANGED,
)
from .concurrency import product_lock, run_with_retry
from .dedupe_service import dedupe
from .errors import (
    OUTCOME_APPLIED,
    OUTCOME_FAILED,
    OUTCOME_REPORTED,
    InvariantViolation,
    LedgerError,
    ValidationError,
)
from .validity import classify, invalid_reasons, is_numberable


# =============================================================================
# INVALIDATION REASONS
# =============================================================================

REASON_REMOVED = "removed"
REASON_REFUNDED = "refunded"
REASON_RESTOCKED = "restocked"
REASON_MANUAL = "manual"

REASON_FLAGS = {
    REASON_REMOVED: {"status": "removed"},
    REASON_MANUAL: {"status": "removed"},
    REASON_REFUNDED: {"refund_status": "refunded"},
    REASON_RESTOCKED: {"restocked": True},
}


@dataclass
class ResequenceResult:
    product_id: str
    assigned_count: int = 0
    cleared_count: int = 0
    valid_count: int = 0
    outcome: str = OUTCOME_APPLIED
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MarkInvalidResult:
    line_item_id: str
    product_id: str | None
    reason: str
    previous_edition_number: int | None
    outcome: str
    changes: dict = field(default_factory=dict)
    resequence: ResequenceResult | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["resequence"] = self.resequence.to_dict() if self.resequence else None
        return data


def jsonable(value):
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [jsonable(v) for v in value]
    return value


def _rollback_on_error(func):
    def _op():
        try:
            return func()
        except Exception:
            db.session.rollback()
            raise
    return _op


# =============================================================================
# RESEQUENCE
# =============================================================================

def _resequence_locked(product_id: str, actor: str | None) -> ResequenceResult:
    rows = order_store.line_items_for_product(product_id, for_update=True)
    rows.sort(key=lambda row: (row[0].created_at, row[0].id))

    product = order_store.get_product(product_id)
    fallback_total = product.edition_size if product else None

    result = ResequenceResult(product_id=product_id)
    events = []
    next_number = 1

    for item, order in rows:
        if classify(item, order) == "VALID":
            result.valid_count += 1
            if item.edition_total is None and fallback_total is not None:
                item.edition_total = fallback_total
            if item.edition_number != next_number:
                previous = item.edition_number
                item.edition_number = next_number
                result.assigned_count += 1
                events.append(audit_service.build_event(
                    event_type=EVENT_ASSIGNED if previous is None else EVENT_RESEQUENCED,
                    line_item=item,
                    edition_number=next_number,
                    event_data={"previous_edition_number": previous, "edition_total": item.edition_total},
                    created_by=actor,
                ))
            next_number += 1
        elif item.edition_number is not None:
            previous = item.edition_number
            item.edition_number = None
            result.cleared_count += 1
            events.append(audit_service.build_event(
                event_type=EVENT_STATUS_CHANGED,
                line_item=item,
                edition_number=previous,
                event_data={
                    "reason": "invalidated",
                    "invalid_reasons": invalid_reasons(item, order),
                    "previous_edition_number": previous,
                },
                created_by=actor,
            ))

    audit_service.record_many(events)
    return result


def resequence(product_id: str, *, actor: str | None = None) -> ResequenceResult:
    """
    Recompute dense 1..k numbering for a product's VALID line items.

    Writes only rows whose number changes. A failure anywhere rolls the whole
    product back and the whole resequence is retried.
    """
    if not product_id:
        raise ValidationError("product_id is required")
    product_id = str(product_id)

    @_rollback_on_error
    def _op():
        result = _resequence_locked(product_id, actor)
        db.session.commit()
        return result

    with product_lock(product_id):
        result = run_with_retry(_op)

    if result.assigned_count or result.cleared_count:
        current_app.logger.info(
            "Resequenced product %s: %d assigned, %d cleared, %d valid",
            product_id, result.assigned_count, result.cleared_count, result.valid_count,
        )
    return result


def resequence_many(product_ids: Iterable[str], *, actor: str | None = None) -> list[ResequenceResult]:
    """Batch resequence; one product's failure never aborts the rest."""
    results = []
    for product_id in sorted({str(pid) for pid in product_ids if pid}):
        try:
            results.append(resequence(product_id, actor=actor))
        except Exception as exc:
            current_app.logger.exception("Resequence failed for product %s", product_id)
            results.append(ResequenceResult(product_id=product_id, outcome=OUTCOME_FAILED, error=str(exc)))
    return results


# =============================================================================
# INVALIDATION
# =============================================================================

def mark_invalid(
    line_item_id: str,
    reason: str,
    *,
    notes: str | None = None,
    actor: str | None = None,
) -> MarkInvalidResult:
    """
    Flip a validity flag, clear the item's number, then resequence its product.

    The clear is committed before the resequence so a crash in between leaves
    only a gap that the next resequence heals, never a stale number.
    """
    if reason not in REASON_FLAGS:
        raise ValidationError(
            f"Unknown invalidation reason: {reason}",
            details={"allowed": sorted(REASON_FLAGS)},
        )

    product_id = order_store.get_line_item(line_item_id).product_id
    lock = product_lock(product_id) if product_id else nullcontext()

    @_rollback_on_error
    def _op():
        item = order_store.get_line_item(line_item_id, for_update=True)
        before_status = item.status
        before_number = item.edition_number
        changes = order_store.update_line_item_fields(
            item, {**REASON_FLAGS[reason], "edition_number": None}
        )
        if changes:
            audit_service.record(
                event_type=EVENT_STATUS_CHANGED,
                line_item=item,
                edition_number=before_number,
                event_data={
                    "reason": reason,
                    "notes": notes,
                    "before_status": before_status,
                    "after_status": item.status,
                    "changes": jsonable(changes),
                },
                created_by=actor,
            )
        db.session.commit()
        return before_number, changes

    with lock:
        before_number, changes = run_with_retry(_op)
        reseq = resequence(product_id, actor=actor) if product_id else None

    return MarkInvalidResult(
        line_item_id=str(line_item_id),
        product_id=product_id,
        reason=reason,
        previous_edition_number=before_number,
        outcome=OUTCOME_APPLIED if changes else OUTCOME_REPORTED,
        changes=jsonable(changes),
        resequence=reseq,
    )


# =============================================================================
# INTEGRITY
# =============================================================================

def numbering_issues(product_id: str) -> dict:
    """Duplicate, gapped, stale or missing numbers for one product (empty when healthy)."""
    rows = order_store.line_items_for_product(product_id)
    valid_numbers = []
    holders: dict[int, list[str]] = {}
    stale = []
    unnumbered = []

    for item, order in rows:
        numberable = is_numberable(item, order)
        if item.edition_number is not None:
            holders.setdefault(item.edition_number, []).append(item.id)
            if numberable:
                valid_numbers.append(item.edition_number)
            else:
                stale.append(item.id)
        elif numberable:
            unnumbered.append(item.id)

    issues = {}
    duplicates = {n: ids for n, ids in holders.items() if len(ids) > 1}
    if duplicates:
        issues["duplicates"] = {str(n): ids for n, ids in sorted(duplicates.items())}
    expected = set(range(1, len(valid_numbers) + len(unnumbered) + 1))
    gaps = sorted(expected - set(valid_numbers))
    if gaps and valid_numbers:
        issues["gaps"] = gaps
    out_of_range = sorted(n for n in set(valid_numbers) if n not in expected)
    if out_of_range:
        issues["out_of_range"] = out_of_range
    if stale:
        issues["invalid_with_number"] = stale
    if unnumbered:
        issues["valid_without_number"] = unnumbered
    return issues


def verify_numbering(product_id: str) -> None:
    issues = numbering_issues(product_id)
    if issues:
        raise InvariantViolation(
            f"Edition numbering for product {product_id} is inconsistent",
            details={"product_id": product_id, "issues": issues},
        )


def check_and_heal(product_id: str, *, actor: str | None = None) -> dict:
    """
    Detect an invariant violation, record it, and resequence to heal it.

    Returns {"product_id", "healthy", "issues", "resequence"}.
    """
    product_id = str(product_id)
    with product_lock(product_id):
        try:
            verify_numbering(product_id)
        except InvariantViolation as exc:
            issues = exc.details["issues"]
            current_app.logger.error(
                "INVARIANT VIOLATION: product %s edition numbering inconsistent: %s",
                product_id, issues,
            )
            audit_service.record(
                event_type=EVENT_INTEGRITY_VIOLATION,
                product_id=product_id,
                event_data={"issues": issues},
                created_by=actor,
            )
            db.session.commit()
            result = resequence(product_id, actor=actor)
            return {
                "product_id": product_id,
                "healthy": False,
                "issues": issues,
                "resequence": result.to_dict(),
            }

    return {"product_id": product_id, "healthy": True, "issues": {}, "resequence": None}


def check_duplicates(product_id: str) -> dict:
    rows = order_store.line_items_for_product(product_id)
    numbered = [
        {"edition_number": item.edition_number, "line_item_id": item.id, "order_id": item.order_id}
        for item, order in rows
        if item.edition_number is not None and is_numberable(item, order)
    ]
    counts: dict[int, int] = {}
    for row in numbered:
        counts[row["edition_number"]] = counts.get(row["edition_number"], 0) + 1
    duplicate_numbers = sorted(n for n, c in counts.items() if c > 1)
    return {
        "product_id": str(product_id),
        "total_editions": len(numbered),
        "unique_editions": len(counts),
        "has_duplicates": bool(duplicate_numbers),
        "duplicate_edition_numbers": duplicate_numbers,
        "duplicate_items": [r for r in numbered if r["edition_number"] in duplicate_numbers],
    }


def validate_integrity(product_id: str | None = None, owner: str | None = None) -> dict:
    """Audit line items for validity/number disagreements and duplicate numbers."""
    if owner:
        rows = order_store.line_items_for_owner(owner)
        if product_id:
            rows = [r for r in rows if r[0].product_id == str(product_id)]
    elif product_id:
        rows = order_store.line_items_for_product(product_id)
    else:
        rows = (
            db.session.query(LineItem, Order)
            .join(Order, LineItem.order_id == Order.id)
            .order_by(LineItem.created_at.asc(), LineItem.id.asc())
            .all()
        )

    issues = []
    for item, order in rows:
        reasons = invalid_reasons(item, order)
        if reasons and item.edition_number is not None:
            issues.append({
                "type": "invalid_with_number",
                "line_item_id": item.id,
                "product_id": item.product_id,
                "edition_number": item.edition_number,
                "description": f"Line item {item.id} holds edition #{item.edition_number} but is invalid ({', '.join(reasons)})",
                "severity": "critical",
            })

    for pid in sorted({item.product_id for item, _ in rows if item.product_id}):
        dupes = check_duplicates(pid)
        for number in dupes["duplicate_edition_numbers"]:
            ids = [d["line_item_id"] for d in dupes["duplicate_items"] if d["edition_number"] == number]
            issues.append({
                "type": "duplicate_edition",
                "product_id": pid,
                "edition_number": number,
                "description": f"Edition #{number} assigned to {len(ids)} line items: {', '.join(ids)}",
                "severity": "critical",
            })

    return {
        "issues_found": len(issues),
        "issues": issues,
        "scope": {"product_id": product_id or "all", "owner": owner or "all"},
    }


# =============================================================================
# READ SIDE
# =============================================================================

def _edition_view(item: LineItem) -> dict:
    return {
        "line_item_id": item.id,
        "product_id": item.product_id,
        "edition_number": item.edition_number,
        "edition_total": item.edition_total,
        "certificate_access_token": item.certificate_access_token,
        "nfc_tag_id": item.nfc_tag_id,
        "nfc_claimed_at": to_utc_z(item.nfc_claimed_at) if item.nfc_claimed_at else None,
    }


def get_valid_editions_for(owner: str) -> list[dict]:
    """
    Deduplicated, validity-filtered editions owned by an email or owner id.

    Duplicate order rows are collapsed before any edition is listed, so one
    purchase never shows as two editions.
    """
    if not owner or not owner.strip():
        raise ValidationError("owner identifier is required")
    rows = order_store.line_items_for_owner(owner)

    orders = []
    seen = set()
    for _, order in rows:
        if order.id not in seen:
            seen.add(order.id)
            orders.append(order)
    winners = {order.id for order in dedupe(orders)}

    return [
        _edition_view(item)
        for item, order in rows
        if order.id in winners and is_numberable(item, order)
    ]


def verify_edition(line_item_id: str, order_id: str | None = None) -> dict:
    item = order_store.get_line_item(line_item_id)
    if order_id and item.order_id != str(order_id):
        raise LedgerError(
            f"Line item {line_item_id} does not belong to order {order_id}",
            details={"line_item_id": line_item_id, "order_id": order_id},
        )
    return {
        "verified": True,
        "line_item_id": item.id,
        "order_id": item.order_id,
        "product_id": item.product_id,
        "edition_number": item.edition_number,
        "edition_total": item.edition_total,
        "owner": {"name": item.owner_name, "email": item.owner_email, "id": item.owner_id},
        "status": item.status,
        "validity": classify(item, item.order),
        "nfc_authenticated": item.nfc_claimed_at is not None,
        "nfc_claimed_at": to_utc_z(item.nfc_claimed_at) if item.nfc_claimed_at else None,
        "created_at": to_utc_z(item.created_at),
    }


def get_edition_history(line_item_id: str) -> dict:
    order_store.get_line_item(line_item_id)
    events = audit_service.history(line_item_id)
    return {
        "line_item_id": str(line_item_id),
        "event_count": len(events),
        "events": [e.to_dict() for e in events],
    }


def get_product_editions(product_id: str, include_history: bool = False) -> dict:
    rows = order_store.line_items_for_product(product_id)
    editions = []
    for item, order in rows:
        if item.edition_number is None or not is_numberable(item, order):
            continue
        view = _edition_view(item)
        view["order_id"] = item.order_id
        view["owner"] = {"name": item.owner_name, "email": item.owner_email, "id": item.owner_id}
        if include_history:
            view["history"] = [e.to_dict() for e in audit_service.history(item.id)]
        editions.append(view)
    editions.sort(key=lambda e: e["edition_number"])
    return {"product_id": str(product_id), "total_editions": len(editions), "editions": editions}
