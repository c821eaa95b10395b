from __future__ import annotations

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


class Order(db.Model):
    """
    One commerce transaction.

    IDENTITY: `id` is the stable identifier shared with the commerce platform.
    Manually keyed-in orders (warehouse gifts, backfills) use a `WH-` prefixed id
    and source="manual" until the platform sync confirms them.

    NEVER DELETED: cancellation is a status (financial_status / fulfillment_status /
    cancelled_at), not a row removal.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_order_number", "order_number"),
        db.Index("ix_orders_customer_email", "customer_email"),
        db.Index("ix_orders_created", "created_at"),
    )

    id = db.Column(db.String(64), primary_key=True)

    # Human-facing identifiers (may repeat across sources)
    order_number = db.Column(db.String(64), nullable=True)
    order_name = db.Column(db.String(64), nullable=True)

    # Status fields read by the validity state machine
    financial_status = db.Column(db.String(32), nullable=True)  # paid, refunded, voided, ...
    fulfillment_status = db.Column(db.String(32), nullable=True)  # fulfilled, canceled, restocked, ...
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # NULL means "unknown locally"; ingestion and reconciliation corrections populate it
    archived = db.Column(db.Boolean, nullable=True)
    platform_status = db.Column(db.String(16), nullable=True)  # open, closed, cancelled

    source = db.Column(db.String(16), nullable=False, default="platform")  # platform, manual

    customer_id = db.Column(db.String(64), nullable=True, index=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    line_items = db.relationship(
        "LineItem",
        back_populates="order",
        lazy=True,
        order_by="LineItem.created_at",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id!r} name={self.order_name!r} source={self.source}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "order_name": self.order_name,
            "financial_status": self.financial_status,
            "fulfillment_status": self.fulfillment_status,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "archived": self.archived,
            "platform_status": self.platform_status,
            "source": self.source,
            "customer_id": self.customer_id,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class LineItem(db.Model):
    """
    A single purchased unit; the candidate for an edition number.

    EDITION FIELDS: edition_number / edition_total are written only by the
    edition service. created_at is the captured purchase time and is the
    explicit ordering key for numbering (never storage row order).

    NUMBER HELD IFF VALID: edition_number is non-null exactly when the item
    classifies VALID. status=active alone is not enough: an active item on a
    refunded or voided order, or a restocked one, stays active and holds no
    number. status only ever moves between active and removed.
    """
    __tablename__ = "line_items"
    __table_args__ = (
        db.Index("ix_line_items_product_created", "product_id", "created_at"),
        db.Index("ix_line_items_owner_email", "owner_email"),
    )

    id = db.Column(db.String(64), primary_key=True)  # line_item_id
    order_id = db.Column(db.String(64), db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    edition_number = db.Column(db.Integer, nullable=True)
    edition_total = db.Column(db.Integer, nullable=True)

    # Validity flags
    status = db.Column(db.String(16), nullable=False, default="active")  # active, removed
    restocked = db.Column(db.Boolean, nullable=False, default=False)
    refund_status = db.Column(db.String(16), nullable=True, default="none")  # none, refunded

    # Ownership / certificate
    owner_id = db.Column(db.String(64), nullable=True, index=True)
    owner_email = db.Column(db.String(255), nullable=True)
    owner_name = db.Column(db.String(255), nullable=True)
    certificate_access_token = db.Column(db.String(128), nullable=True)
    nfc_tag_id = db.Column(db.String(128), nullable=True)
    nfc_claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", back_populates="line_items")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def line_item_id(self) -> str:
        return self.id

    def __repr__(self) -> str:
        return (
            f"<LineItem id={self.id!r} product_id={self.product_id!r} "
            f"edition={self.edition_number} status={self.status}>"
        )

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "edition_number": self.edition_number,
            "edition_total": self.edition_total,
            "status": self.status,
            "restocked": self.restocked,
            "refund_status": self.refund_status,
            "owner_id": self.owner_id,
            "owner_email": self.owner_email,
            "owner_name": self.owner_name,
            "certificate_access_token": self.certificate_access_token,
            "nfc_tag_id": self.nfc_tag_id,
            "nfc_claimed_at": to_utc_z(self.nfc_claimed_at) if self.nfc_claimed_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class Product(db.Model):
    """Read-only product reference; edition_size backs edition_total."""
    __tablename__ = "products"

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=True)
    edition_size = db.Column(db.Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<Product id={self.id!r} name={self.name!r} edition_size={self.edition_size}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "edition_size": self.edition_size,
        }
