"""
Edition audit log tests.

Verifies:
- Every validity transition leaves at least one row for the product
- Rows are never mutated or deleted after insertion
- Owner/status snapshot is taken at event time
"""

import pytest

from edition_ledger.extensions import db
from edition_ledger.models import AppendOnlyViolation, EditionEvent
from edition_ledger.services import audit_service, edition_service, reconciliation_service


def _snapshot():
    db.session.expire_all()
    return [e.to_dict() for e in db.session.query(EditionEvent).order_by(EditionEvent.id).all()]


def test_transitions_are_all_recorded(make_order, make_line_item):
    order = make_order()
    items = [make_line_item(order, minutes=m) for m in range(5)]
    edition_service.resequence("prod-1")

    transitions = 0
    for item in items[:3]:
        edition_service.mark_invalid(item.id, "removed")
        transitions += 1

    status_rows = audit_service.product_history("prod-1", event_type=audit_service.EVENT_STATUS_CHANGED)
    assert len(status_rows) >= transitions
    assert len(audit_service.product_history("prod-1")) >= transitions


def test_rows_unchanged_by_later_operations(make_order, make_line_item):
    order = make_order()
    a = make_line_item(order, minutes=1)
    make_line_item(order, minutes=2)
    edition_service.resequence("prod-1")
    before = _snapshot()

    edition_service.mark_invalid(a.id, "refunded")
    other = make_order()
    make_line_item(other, product_id="prod-2")
    edition_service.resequence("prod-2")
    reconciliation_service.apply_correction(other.id, {"financial_status": "voided"})

    after = _snapshot()
    assert after[:len(before)] == before
    assert len(after) > len(before)


def test_update_is_rejected(make_order, make_line_item):
    make_line_item(make_order())
    edition_service.resequence("prod-1")
    event = db.session.query(EditionEvent).first()

    event.edition_number = 99
    with pytest.raises(AppendOnlyViolation):
        db.session.commit()
    db.session.rollback()


def test_delete_is_rejected(make_order, make_line_item):
    make_line_item(make_order())
    edition_service.resequence("prod-1")
    event = db.session.query(EditionEvent).first()

    db.session.delete(event)
    with pytest.raises(AppendOnlyViolation):
        db.session.commit()
    db.session.rollback()


def test_event_snapshots_owner_and_status(make_order, make_line_item, db_session):
    item = make_line_item(make_order(), owner_name="Grace Collector")

    event = audit_service.record(
        event_type=audit_service.EVENT_STATUS_CHANGED,
        line_item=item,
        edition_number=3,
        event_data={"reason": "removed"},
    )
    db_session.commit()

    item.owner_name = "Someone Else"
    db_session.commit()

    db_session.refresh(event)
    assert event.owner_name == "Grace Collector"
    assert event.status == "active"
    assert event.product_id == "prod-1"
    assert event.created_by == "edition_ledger"
