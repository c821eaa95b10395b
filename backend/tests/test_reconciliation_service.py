"""
Reconciliation tests.

Verifies:
- compare() is read-only and flags paid + cancelled + unfulfilled as critical
- not-found / upstream-unavailable orders are reported, not raised
- cancellation keeps the comparisons finished so far
- apply_correction / apply_sync re-run validity and resequence
"""

import threading

import pytest

from edition_ledger.extensions import db
from edition_ledger.models import EditionEvent, Order
from edition_ledger.services import edition_service, reconciliation_service
from edition_ledger.services.errors import NotFoundError, ValidationError
from edition_ledger.services.reconciliation_service import (
    COMPARISON_MATCH,
    COMPARISON_NOT_FOUND,
    COMPARISON_UNAVAILABLE,
    LocalOrderSnapshot,
    compare_order,
)


pytestmark = pytest.mark.reconciliation


def _local(**kw):
    values = dict(order_id="5001", order_number="1114", financial_status="paid",
                  fulfillment_status=None, archived=None)
    values.update(kw)
    return LocalOrderSnapshot(**values)


# =============================================================================
# FIELD COMPARISON
# =============================================================================


class TestCompareOrder:

    @pytest.mark.smoke
    def test_paid_cancelled_unfulfilled_is_exactly_one_critical(self):
        platform_order = {"id": 5001, "name": "#1114", "financial_status": "paid",
                          "cancelled_at": "2024-04-02T09:30:00Z", "fulfillment_status": "pending"}

        comparison = compare_order(_local(), platform_order)

        critical = [m for m in comparison.mismatches if m.severity == "critical"]
        assert len(critical) == 1
        assert critical[0].field == "paid_cancelled_unfulfilled"
        assert comparison.severity == "critical"

    def test_fulfilled_cancellation_is_not_critical(self):
        platform_order = {"financial_status": "paid", "cancelled_at": "2024-04-02T09:30:00Z",
                          "fulfillment_status": "fulfilled"}

        comparison = compare_order(_local(fulfillment_status="fulfilled"), platform_order)

        assert comparison.severity == "mismatch"
        assert [m.field for m in comparison.mismatches] == ["cancelled"]

    def test_matching_order(self):
        comparison = compare_order(_local(), {"name": "#1114", "financial_status": "paid"})
        assert comparison.status == COMPARISON_MATCH
        assert comparison.mismatches == []

    def test_local_cancelled_derived_from_financial_status(self):
        platform_order = {"financial_status": "voided", "cancelled_at": "2024-04-02T09:30:00Z"}
        comparison = compare_order(_local(financial_status="voided"), platform_order)
        assert comparison.local_cancelled is True
        assert comparison.mismatches == []

    def test_archived_unknown_locally_is_info(self):
        comparison = compare_order(_local(), {"financial_status": "paid", "tags": "vip, Archived"})
        [mismatch] = comparison.mismatches
        assert (mismatch.field, mismatch.severity) == ("archived", "info")

    def test_archived_disagreement_when_known(self):
        comparison = compare_order(_local(archived=False), {"financial_status": "paid", "status": "closed"})
        assert comparison.mismatches[0].severity == "mismatch"

        reverse = compare_order(_local(archived=True), {"financial_status": "paid"})
        assert reverse.mismatches[0].field == "archived"


# =============================================================================
# COMPARE SWEEP
# =============================================================================


class TestCompare:

    def test_sweep_reports_each_outcome(self, make_order, platform):
        ok = make_order("5001")
        platform.add(ok.id)
        make_order("5002")  # missing upstream
        down = make_order("5003")
        platform.failing.add(down.id)

        report = reconciliation_service.compare(client=platform.client())

        by_id = {c.order_id: c for c in report.comparisons}
        assert by_id["5001"].status == COMPARISON_MATCH
        assert by_id["5002"].status == COMPARISON_NOT_FOUND
        assert by_id["5002"].severity == "critical"
        assert by_id["5003"].status == COMPARISON_UNAVAILABLE
        assert by_id["5003"].severity == "info"

        summary = report.summary
        assert summary["total_checked"] == 3
        assert summary["matches"] == 1
        assert summary["critical"] == 1
        assert summary["unavailable"] == 1
        assert summary["cancelled"] is False

    def test_search_fallback_by_number(self, make_order, platform):
        make_order("ord-local", order_name="#1114", order_number="1114")
        platform.add("gid-1", name="#1114")

        report = reconciliation_service.compare("1114", client=platform.client())

        [comparison] = report.comparisons
        assert comparison.status == COMPARISON_MATCH
        assert comparison.order_number == "1114"

    def test_compare_never_writes(self, make_order, make_line_item, platform):
        order = make_order("5001")
        make_line_item(order)
        edition_service.resequence("prod-1")
        platform.add("5001", financial_status="refunded", cancelled_at="2024-04-02T09:30:00Z")
        events_before = db.session.query(EditionEvent).count()

        report = reconciliation_service.compare("5001", client=platform.client())

        assert report.mismatches
        db.session.expire_all()
        assert db.session.get(Order, "5001").financial_status == "paid"
        assert db.session.query(EditionEvent).count() == events_before

    def test_unknown_order_ref_is_not_found(self, db_session, platform):
        with pytest.raises(NotFoundError):
            reconciliation_service.compare("does-not-exist", 10, client=platform.client())
        assert platform.requests == []

    def test_preset_cancel_returns_empty_cancelled_report(self, make_order, platform):
        make_order("5001")
        stop = threading.Event()
        stop.set()

        report = reconciliation_service.compare(client=platform.client(), cancel_event=stop)

        assert report.comparisons == []
        assert report.cancelled is True
        assert platform.requests == []

    def test_cancel_mid_sweep_keeps_finished_work(self, make_order, platform):
        for i in range(5):
            make_order(f"500{i}")
            platform.add(f"500{i}")
        stop = threading.Event()
        handler = platform.handler

        def cancelling_handler(request):
            stop.set()
            return handler(request)

        platform.handler = cancelling_handler
        report = reconciliation_service.compare(client=platform.client(), cancel_event=stop, max_workers=1)

        assert len(report.comparisons) == 1
        assert report.cancelled is True
        assert report.summary["cancelled"] is True

    def test_report_is_json_ready(self, make_order, platform):
        make_order("5001")
        platform.add("5001", cancelled_at="2024-04-02T09:30:00Z")

        data = reconciliation_service.compare(client=platform.client()).to_dict()

        assert data["summary"]["critical"] == 1
        assert data["mismatches"][0]["severity"] == "critical"


# =============================================================================
# APPLY
# =============================================================================


class TestApplyCorrection:

    def test_void_clears_and_resequences(self, make_order, make_line_item, numbers):
        first = make_order("5001")
        second = make_order("5002")
        a = make_line_item(first, minutes=1)
        b = make_line_item(second, minutes=2)
        edition_service.resequence("prod-1")

        result = reconciliation_service.apply_correction(
            "5001", {"financial_status": "voided", "cancelled_at": "2024-04-02T09:30:00Z"}, actor="reviewer",
        )

        assert result.outcome == "applied"
        assert result.validity_changes == [
            {"line_item_id": a.id, "product_id": "prod-1", "before": "VALID", "after": "INVALID"},
        ]
        assert numbers() == {a.id: None, b.id: 1}
        assert result.changes["cancelled_at"]["after"] == "2024-04-02T09:30:00Z"
        reasons = [e.event_data.get("reason") for e in
                   db.session.query(EditionEvent).filter_by(line_item_id=a.id, event_type="status_changed")]
        assert "reconciliation_correction" in reasons

    def test_reinstated_order_gets_number_back(self, make_order, make_line_item, numbers):
        voided = make_order("5001", financial_status="voided")
        item = make_line_item(voided)

        result = reconciliation_service.apply_correction("5001", {"financial_status": "paid"})

        assert result.outcome == "applied"
        assert numbers() == {item.id: 1}

    def test_no_change_is_reported(self, make_order):
        make_order("5001")
        result = reconciliation_service.apply_correction("5001", {"financial_status": "paid"})
        assert result.outcome == "reported"

    def test_non_status_fields_rejected(self, make_order):
        make_order("5001")
        with pytest.raises(ValidationError):
            reconciliation_service.apply_correction("5001", {"customer_email": "x@y.z"})

    def test_bad_timestamp_rejected(self, make_order):
        make_order("5001")
        with pytest.raises(ValidationError):
            reconciliation_service.apply_correction("5001", {"cancelled_at": "yesterday"})

    def test_unknown_order(self, db_session):
        with pytest.raises(NotFoundError):
            reconciliation_service.apply_correction("nope", {"financial_status": "paid"})


class TestApplySync:

    def test_refund_upstream_is_applied(self, make_order, make_line_item, platform, numbers):
        order = make_order("5001")
        item = make_line_item(order)
        edition_service.resequence("prod-1")
        platform.add("5001", financial_status="refunded")

        result = reconciliation_service.apply_sync("5001", client=platform.client())

        assert result.outcome == "applied"
        assert result.changes["financial_status"] == {"before": "paid", "after": "refunded"}
        assert numbers() == {item.id: None}

    def test_paid_cancelled_unfulfilled_left_for_review(self, make_order, make_line_item, platform, numbers):
        order = make_order("5001")
        item = make_line_item(order)
        edition_service.resequence("prod-1")
        platform.add("5001", cancelled_at="2024-04-02T09:30:00Z", fulfillment_status="pending")

        result = reconciliation_service.apply_sync("5001", client=platform.client())

        assert result.outcome == "reported"
        assert numbers() == {item.id: 1}
        db.session.expire_all()
        assert db.session.get(Order, "5001").financial_status == "paid"

    def test_already_in_sync(self, make_order, platform):
        make_order("5001", archived=False, platform_status="open")
        platform.add("5001")

        result = reconciliation_service.apply_sync("5001", client=platform.client())

        assert result.outcome == "reported"
        assert result.message == "Already in sync"

    def test_missing_upstream_is_reported(self, make_order, platform):
        make_order("5001")
        result = reconciliation_service.apply_sync("5001", client=platform.client())
        assert result.outcome == "reported"

    def test_upstream_down_is_failed(self, make_order, platform):
        make_order("5001")
        platform.failing.add("5001")
        result = reconciliation_service.apply_sync("5001", client=platform.client())
        assert result.outcome == "failed"
