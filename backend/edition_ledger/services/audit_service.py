# Overview: Service-layer operations for the edition audit log; append-only inserts and reads.

from __future__ import annotations

from typing import Iterable, Optional

from flask import current_app

from ..extensions import db
from ..models import EditionEvent
from edition_ledger.time_utils import utcnow
"""
Edition Audit Log Invariants (authoritative)

- Append-only: one row per edition-affecting transition.
- No domain logic here; callers decide what happened.
- Events are written inside the same DB transaction as the change they record.
- No update/delete path (enforced by ORM hooks on EditionEvent).
"""

EVENT_ASSIGNED = "assigned"
EVENT_RESEQUENCED = "resequenced"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_INTEGRITY_VIOLATION = "integrity_violation"


def _default_actor() -> str:
    return current_app.config.get("LEDGER_ACTOR", "edition_ledger")


def build_event(
    *,
    event_type: str,
    line_item=None,
    line_item_id: str | None = None,
    product_id: str | None = None,
    edition_number: int | None = None,
    event_data: Optional[dict] = None,
    created_by: str | None = None,
) -> EditionEvent:
    """Build (not persist) an event, snapshotting owner and status from line_item."""
    ev = EditionEvent(
        line_item_id=line_item.id if line_item is not None else line_item_id,
        product_id=product_id if product_id is not None else getattr(line_item, "product_id", None),
        edition_number=edition_number,
        event_type=event_type,
        event_data=event_data or {},
        created_at=utcnow(),
        created_by=created_by or _default_actor(),
    )
    if line_item is not None:
        ev.owner_id = line_item.owner_id
        ev.owner_email = line_item.owner_email
        ev.owner_name = line_item.owner_name
        ev.status = line_item.status
    return ev


def record(**kwargs) -> EditionEvent:
    """Append a single event to the current transaction."""
    ev = build_event(**kwargs)
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def record_many(events: Iterable[EditionEvent]) -> int:
    """Batch append; used during bulk resequences."""
    events = list(events)
    if events:
        db.session.add_all(events)
        db.session.flush()
    return len(events)


def history(line_item_id: str) -> list[EditionEvent]:
    return (
        db.session.query(EditionEvent)
        .filter(EditionEvent.line_item_id == line_item_id)
        .order_by(EditionEvent.created_at.asc(), EditionEvent.id.asc())
        .all()
    )


def product_history(product_id: str, event_type: str | None = None, limit: int = 500) -> list[EditionEvent]:
    q = db.session.query(EditionEvent).filter(EditionEvent.product_id == product_id)
    if event_type:
        q = q.filter(EditionEvent.event_type == event_type)
    return q.order_by(EditionEvent.created_at.asc(), EditionEvent.id.asc()).limit(limit).all()
