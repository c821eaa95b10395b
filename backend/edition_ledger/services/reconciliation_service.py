"""
Reconciliation Engine

WHY: The local store is a fast-read cache of the commerce platform's order
state. The two drift (late cancellations, refunds, archiving), and edition
validity depends on exactly those fields.

PIPELINE:
1. compare()          read local, verify against the platform, report (read-only)
2. human review       a person decides which discrepancies are real
3. apply_correction() explicit write of reviewed fields, re-running validity
                      and resequencing any product whose valid set changed

compare() never writes. A paid + cancelled + unfulfilled platform order is
always flagged critical and is never corrected automatically.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field

from flask import current_app

from ..extensions import db
from edition_ledger.time_utils import parse_iso_datetime
from . import audit_service, order_store
from .audit_service import EVENT_STATUS_CHANGED
from .concurrency import product_locks, run_with_retry
from .edition_service import jsonable, resequence_many
from .errors import (
    OUTCOME_APPLIED,
    OUTCOME_FAILED,
    OUTCOME_REPORTED,
    LedgerError,
    NotFoundError,
    TransientNetworkError,
    UpstreamNotFound,
    ValidationError,
)
from .platform_client import ShopifyClient
from .validity import INVALIDATING_FINANCIAL, classify


SEVERITY_INFO = "info"
SEVERITY_MISMATCH = "mismatch"
SEVERITY_CRITICAL = "critical"
_SEVERITY_RANK = {None: 0, SEVERITY_INFO: 1, SEVERITY_MISMATCH: 2, SEVERITY_CRITICAL: 3}

COMPARISON_MATCH = "match"
COMPARISON_MISMATCH = "mismatch"
COMPARISON_NOT_FOUND = "not_found"
COMPARISON_UNAVAILABLE = "upstream_unavailable"
COMPARISON_ERROR = "error"


@dataclass
class Mismatch:
    order_id: str
    order_number: str | None
    field: str
    local_value: object
    platform_value: object
    severity: str
    message: str

    def to_dict(self) -> dict:
        return jsonable(asdict(self))


@dataclass
class LocalOrderSnapshot:
    """Plain copy of the fields compare() reads, safe to hand to worker threads."""
    order_id: str
    order_number: str | None
    financial_status: str | None
    fulfillment_status: str | None
    archived: bool | None

    @classmethod
    def of(cls, order) -> "LocalOrderSnapshot":
        return cls(
            order_id=order.id,
            order_number=order.order_number or order_store.normalize_order_number(order.order_name),
            financial_status=order.financial_status,
            fulfillment_status=order.fulfillment_status,
            archived=order.archived,
        )

    @property
    def cancelled(self) -> bool:
        return self.financial_status in INVALIDATING_FINANCIAL


@dataclass
class OrderComparison:
    order_id: str
    order_number: str | None
    status: str = COMPARISON_MATCH
    local_financial_status: str | None = None
    platform_financial_status: str | None = None
    local_fulfillment_status: str | None = None
    platform_fulfillment_status: str | None = None
    local_cancelled: bool = False
    platform_cancelled: bool = False
    local_archived: bool | None = None
    platform_archived: bool = False
    mismatches: list[Mismatch] = field(default_factory=list)
    platform_order_data: dict | None = None

    @property
    def has_mismatch(self) -> bool:
        return bool(self.mismatches)

    @property
    def severity(self) -> str | None:
        worst = None
        for m in self.mismatches:
            if _SEVERITY_RANK[m.severity] > _SEVERITY_RANK[worst]:
                worst = m.severity
        return worst

    def add(self, field_name: str, local_value, platform_value, severity: str, message: str) -> None:
        self.mismatches.append(Mismatch(
            order_id=self.order_id,
            order_number=self.order_number,
            field=field_name,
            local_value=local_value,
            platform_value=platform_value,
            severity=severity,
            message=message,
        ))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mismatches"] = [m.to_dict() for m in self.mismatches]
        data["severity"] = self.severity
        return jsonable(data)


@dataclass
class ReconciliationReport:
    comparisons: list[OrderComparison] = field(default_factory=list)
    cancelled: bool = False

    @property
    def mismatches(self) -> list[OrderComparison]:
        return [c for c in self.comparisons if c.has_mismatch]

    @property
    def summary(self) -> dict:
        total = len(self.comparisons)
        mismatched = len(self.mismatches)
        return {
            "total_checked": total,
            "mismatches": mismatched,
            "matches": total - mismatched,
            "critical": sum(1 for c in self.comparisons if c.severity == SEVERITY_CRITICAL),
            "unavailable": sum(1 for c in self.comparisons if c.status == COMPARISON_UNAVAILABLE),
            "cancelled": self.cancelled,
        }

    def to_dict(self) -> dict:
        return {
            "comparisons": [c.to_dict() for c in self.comparisons],
            "mismatches": [c.to_dict() for c in self.mismatches],
            "summary": self.summary,
        }


@dataclass
class CorrectionResult:
    order_id: str
    outcome: str
    changes: dict = field(default_factory=dict)
    validity_changes: list[dict] = field(default_factory=list)
    resequenced: list[dict] = field(default_factory=list)
    message: str | None = None

    def to_dict(self) -> dict:
        return jsonable(asdict(self))


# =============================================================================
# PLATFORM-SIDE DERIVED FIELDS
# =============================================================================

def platform_cancelled(platform_order: dict) -> bool:
    return bool(platform_order.get("cancelled_at"))


def platform_archived(platform_order: dict) -> bool:
    tags = (platform_order.get("tags") or "").lower()
    return "archived" in tags or platform_order.get("status") == "closed"


def _platform_summary(platform_order: dict) -> dict:
    keys = ("id", "name", "financial_status", "fulfillment_status", "cancelled_at",
            "tags", "note", "status", "closed_at")
    return {k: platform_order.get(k) for k in keys}


# =============================================================================
# COMPARE
# =============================================================================

def compare_order(local: LocalOrderSnapshot, platform_order: dict) -> OrderComparison:
    """Field-by-field comparison of one local order with its platform twin."""
    name = platform_order.get("name")
    comparison = OrderComparison(
        order_id=local.order_id,
        order_number=order_store.normalize_order_number(name) or local.order_number,
        local_financial_status=local.financial_status,
        platform_financial_status=platform_order.get("financial_status"),
        local_fulfillment_status=local.fulfillment_status,
        platform_fulfillment_status=platform_order.get("fulfillment_status") or None,
        local_cancelled=local.cancelled,
        platform_cancelled=platform_cancelled(platform_order),
        local_archived=local.archived,
        platform_archived=platform_archived(platform_order),
        platform_order_data=_platform_summary(platform_order),
    )
    c = comparison

    if c.local_financial_status != c.platform_financial_status:
        c.add("financial_status", c.local_financial_status, c.platform_financial_status, SEVERITY_MISMATCH,
              f'Financial Status: local="{c.local_financial_status}" vs platform="{c.platform_financial_status}"')

    if c.local_fulfillment_status != c.platform_fulfillment_status:
        c.add("fulfillment_status", c.local_fulfillment_status, c.platform_fulfillment_status, SEVERITY_MISMATCH,
              f'Fulfillment Status: local="{c.local_fulfillment_status or "null"}" '
              f'vs platform="{c.platform_fulfillment_status or "null"}"')

    if c.local_cancelled != c.platform_cancelled:
        c.add("cancelled", c.local_cancelled, c.platform_cancelled, SEVERITY_MISMATCH,
              f"Cancelled Status: local={c.local_cancelled} vs platform={c.platform_cancelled} "
              f"(cancelled_at: {platform_order.get('cancelled_at') or 'null'})")

    if c.platform_archived and not c.local_archived:
        severity = SEVERITY_INFO if c.local_archived is None else SEVERITY_MISMATCH
        c.add("archived", c.local_archived, True, severity,
              "Archived Status: order is archived on the platform but not marked locally")
    elif c.local_archived and not c.platform_archived:
        c.add("archived", True, False, SEVERITY_MISMATCH,
              "Archived Status: order is archived locally but open on the platform")

    if (
        c.platform_financial_status == "paid"
        and c.platform_cancelled
        and c.platform_fulfillment_status != "fulfilled"
    ):
        c.add("paid_cancelled_unfulfilled",
              None,
              {"financial_status": "paid", "cancelled_at": platform_order.get("cancelled_at"),
               "fulfillment_status": c.platform_fulfillment_status},
              SEVERITY_CRITICAL,
              "CRITICAL: order is PAID + CANCELLED + UNFULFILLED on the platform (needs manual review)")

    if c.mismatches:
        c.status = COMPARISON_MISMATCH
    return comparison


def _compare_one(local: LocalOrderSnapshot, client: ShopifyClient) -> OrderComparison:
    base = dict(
        order_id=local.order_id,
        order_number=local.order_number,
        local_financial_status=local.financial_status,
        local_fulfillment_status=local.fulfillment_status,
        local_cancelled=local.cancelled,
        local_archived=local.archived,
    )
    try:
        platform_order = client.find_order(local.order_id, local.order_number)
    except UpstreamNotFound:
        comparison = OrderComparison(status=COMPARISON_NOT_FOUND, **base)
        comparison.add("order", local.order_id, None, SEVERITY_CRITICAL,
                       "Order not found upstream (may have been deleted on the platform)")
        return comparison
    except TransientNetworkError as exc:
        comparison = OrderComparison(status=COMPARISON_UNAVAILABLE, **base)
        comparison.add("upstream", None, None, SEVERITY_INFO,
                       f"Upstream unavailable: {exc.details.get('last_error') or exc}")
        return comparison
    except Exception as exc:
        current_app.logger.exception("Error comparing order %s", local.order_id)
        comparison = OrderComparison(status=COMPARISON_ERROR, **base)
        comparison.add("error", None, None, SEVERITY_MISMATCH, f"Error comparing: {exc}")
        return comparison

    return compare_order(local, platform_order)


def compare(
    order_ref: str | None = None,
    limit: int | None = None,
    *,
    client: ShopifyClient | None = None,
    cancel_event: threading.Event | None = None,
    max_workers: int | None = None,
) -> ReconciliationReport:
    """
    Compare local orders against the platform and report discrepancies.

    order_ref: a stable order id or a human-facing order number; None sweeps
    the most recent `limit` orders; an order_ref that matches nothing locally
    raises NotFoundError. Platform calls run on a bounded worker
    pool. Setting cancel_event stops the sweep; comparisons completed before
    that point are kept in the report.
    """
    app = current_app._get_current_object()
    limit = limit or app.config.get("RECONCILE_DEFAULT_LIMIT", 100)
    workers = max_workers or app.config.get("RECONCILE_CONCURRENCY", 5)

    snapshots = [LocalOrderSnapshot.of(o) for o in order_store.list_orders(order_ref, limit)]
    if order_ref and not snapshots:
        raise NotFoundError(f"Order {order_ref} not found", details={"order": order_ref})
    report = ReconciliationReport()
    if not snapshots:
        return report

    owns_client = client is None
    if owns_client:
        client = ShopifyClient.from_config(app.config)

    def _work(snapshot):
        if cancel_event is not None and cancel_event.is_set():
            return None
        with app.app_context():
            return _compare_one(snapshot, client)

    results: list[OrderComparison | None] = [None] * len(snapshots)
    try:
        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            futures = {pool.submit(_work, snap): i for i, snap in enumerate(snapshots)}
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                results[futures[future]] = future.result()
                if cancel_event is not None and cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()
    finally:
        if owns_client:
            client.close()

    report.comparisons = [r for r in results if r is not None]
    report.cancelled = len(report.comparisons) < len(snapshots)
    if report.cancelled:
        current_app.logger.warning(
            "Reconciliation cancelled after %d of %d orders", len(report.comparisons), len(snapshots),
        )
    return report


# =============================================================================
# APPLY
# =============================================================================

def _normalize_fields(fields: dict) -> dict:
    normalized = dict(fields)
    if "cancelled_at" in normalized:
        try:
            normalized["cancelled_at"] = parse_iso_datetime(normalized["cancelled_at"])
        except (TypeError, ValueError) as exc:
            raise ValidationError("cancelled_at must be an ISO-8601 datetime or null") from exc
    if "archived" in normalized and normalized["archived"] is not None:
        normalized["archived"] = bool(normalized["archived"])
    return normalized


def apply_correction(order_id: str, fields: dict, *, actor: str | None = None) -> CorrectionResult:
    """
    Write reviewed status fields onto a local order.

    Runs under the locks of every product on the order. Line items whose
    validity flips get a status_changed event, and their products are
    resequenced.
    """
    if not fields:
        raise ValidationError("No fields to apply")
    unknown = sorted(set(fields) - order_store.ORDER_MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields not updatable: {', '.join(unknown)}", details={"fields": unknown})
    fields = _normalize_fields(fields)

    order = order_store.get_order(order_id)
    product_ids = {item.product_id for item in order_store.line_items_for_order(order.id) if item.product_id}

    def _op():
        try:
            current = order_store.get_order(order_id)
            items = order_store.line_items_for_order(current.id)
            before = {item.id: classify(item, current) for item in items}
            changes = order_store.update_order_fields(current, fields)

            flipped = []
            for item in items:
                after = classify(item, current)
                if after == before[item.id]:
                    continue
                flipped.append({
                    "line_item_id": item.id,
                    "product_id": item.product_id,
                    "before": before[item.id],
                    "after": after,
                })
                audit_service.record(
                    event_type=EVENT_STATUS_CHANGED,
                    line_item=item,
                    edition_number=item.edition_number,
                    event_data={
                        "reason": "reconciliation_correction",
                        "before_validity": before[item.id],
                        "after_validity": after,
                        "order_changes": jsonable(changes),
                    },
                    created_by=actor,
                )
            db.session.commit()
            return changes, flipped
        except Exception:
            db.session.rollback()
            raise

    with product_locks(product_ids):
        changes, flipped = run_with_retry(_op)
        if not changes:
            return CorrectionResult(
                order_id=str(order_id),
                outcome=OUTCOME_REPORTED,
                message="Local order already matches the requested fields",
            )
        resequenced = resequence_many({f["product_id"] for f in flipped if f["product_id"]}, actor=actor)

    failed = [r for r in resequenced if r.outcome == OUTCOME_FAILED]
    current_app.logger.info(
        "Applied correction to order %s: %s (%d validity changes)", order_id, sorted(changes), len(flipped),
    )
    return CorrectionResult(
        order_id=str(order_id),
        outcome=OUTCOME_FAILED if failed else OUTCOME_APPLIED,
        changes=jsonable(changes),
        validity_changes=flipped,
        resequenced=[r.to_dict() for r in resequenced],
        message="Correction saved; resequence failed for some products" if failed else None,
    )


def corrections_from_platform(order, platform_order: dict) -> dict:
    """
    Fields that would bring a local order in line with the platform.

    A cancellation upstream always maps to financial_status="voided".
    """
    target = {
        "financial_status": "voided" if platform_cancelled(platform_order) else platform_order.get("financial_status"),
        "fulfillment_status": platform_order.get("fulfillment_status") or None,
        "cancelled_at": parse_iso_datetime(platform_order.get("cancelled_at")),
        "archived": platform_archived(platform_order),
        "platform_status": platform_order.get("status") or None,
    }
    return {k: v for k, v in target.items() if getattr(order, k) != v}


def apply_sync(order_id: str, *, client: ShopifyClient | None = None, actor: str | None = None) -> CorrectionResult:
    """Fetch one order from the platform and apply every differing status field."""
    order = order_store.get_order(order_id)
    owns_client = client is None
    if owns_client:
        client = ShopifyClient.from_config(current_app.config)
    try:
        platform_order = client.find_order(order.id, order.order_number or order.order_name)
    except UpstreamNotFound as exc:
        return CorrectionResult(order_id=order.id, outcome=OUTCOME_REPORTED, message=str(exc))
    except (TransientNetworkError, LedgerError) as exc:
        return CorrectionResult(order_id=order.id, outcome=OUTCOME_FAILED, message=str(exc))
    finally:
        if owns_client:
            client.close()

    if (
        platform_order.get("financial_status") == "paid"
        and platform_cancelled(platform_order)
        and (platform_order.get("fulfillment_status") or None) != "fulfilled"
    ):
        return CorrectionResult(
            order_id=order.id,
            outcome=OUTCOME_REPORTED,
            message="Paid + cancelled + unfulfilled on the platform; left for manual review",
        )

    fields = corrections_from_platform(order, platform_order)
    if not fields:
        return CorrectionResult(order_id=order.id, outcome=OUTCOME_REPORTED, message="Already in sync")
    return apply_correction(order.id, fields, actor=actor)
