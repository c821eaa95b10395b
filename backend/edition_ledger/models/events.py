from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


class AppendOnlyViolation(RuntimeError):
    """Raised when an edition event is modified or deleted through the ORM."""


class EditionEvent(db.Model):
    """
    Edition audit trail.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    One row per transition (assignment, resequence, validity change,
    integrity alarm), never one per poll.
    """
    __tablename__ = "edition_events"
    __table_args__ = (
        db.Index("ix_edition_events_line_item_created", "line_item_id", "created_at"),
        db.Index("ix_edition_events_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    line_item_id = db.Column(db.String(64), nullable=True, index=True)
    product_id = db.Column(db.String(64), nullable=True, index=True)
    edition_number = db.Column(db.Integer, nullable=True)

    event_type = db.Column(db.String(32), nullable=False, index=True)  # assigned, resequenced, status_changed, integrity_violation
    event_data = db.Column(db.JSON, nullable=True)

    # Snapshot at the time of the event
    owner_id = db.Column(db.String(64), nullable=True)
    owner_email = db.Column(db.String(255), nullable=True)
    owner_name = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = db.Column(db.String(128), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_item_id": self.line_item_id,
            "product_id": self.product_id,
            "edition_number": self.edition_number,
            "event_type": self.event_type,
            "event_data": self.event_data,
            "owner_id": self.owner_id,
            "owner_email": self.owner_email,
            "owner_name": self.owner_name,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "created_by": self.created_by,
        }


@event.listens_for(EditionEvent, "before_update")
def _reject_update(mapper, connection, target):
    raise AppendOnlyViolation(f"Edition event {target.id} is immutable")


@event.listens_for(EditionEvent, "before_delete")
def _reject_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"Edition event {target.id} cannot be deleted")
