from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class LedgerImmutableError(RuntimeError):
    """Raised when code tries to rewrite stock history."""


class InventoryRecord(db.Model):
    """
    Stock on hand for one product at one location.

    INVARIANTS:
    - quantity >= 0 at every committed state (CHECK constraint is the backstop;
      inventory_service rejects negative results before writing)
    - one row per (tenant, product, location), created lazily at zero
    - quantity only changes through inventory_service.apply_stock_delta, which
      appends exactly one LedgerEntry per change
    """
    __tablename__ = "inventory_records"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "product_id", "location_id", name="uq_inventory_product_location"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    sku = db.Column(db.String(64), nullable=False)
    location_id = db.Column(db.String(64), nullable=False)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    reorder_point = db.Column(db.Integer, nullable=False, default=0)
    reorder_quantity = db.Column(db.Integer, nullable=False, default=0)

    last_received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("inventory_records", lazy=True))

    def __repr__(self) -> str:
        return f"<InventoryRecord product_id={self.product_id} location={self.location_id!r} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "sku": self.sku,
            "location_id": self.location_id,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.quantity - self.reserved_quantity,
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "last_received_at": to_utc_z(self.last_received_at) if self.last_received_at else None,
            "updated_at": to_utc_z(self.updated_at),
        }


class LedgerEntry(db.Model):
    """
    Append-only record of one stock quantity change.

    WHY: The ledger is the sole answer to "why did stock change". Entries are
    written in the same DB transaction as the quantity update they describe.

    IMMUTABLE: ORM updates and deletes raise LedgerImmutableError.
    Corrections are new entries (an opposite adjustment), never edits.

    entry_type: adjustment | import | sale | return | ...
    """
    __tablename__ = "stock_ledger_entries"
    __table_args__ = (
        db.CheckConstraint(
            "quantity_after - quantity_before = quantity_delta",
            name="ck_ledger_delta_matches",
        ),
        db.Index("ix_ledger_tenant_product_created", "tenant_id", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    sku = db.Column(db.String(64), nullable=False)
    location_id = db.Column(db.String(64), nullable=False)

    entry_type = db.Column(db.String(32), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(64), nullable=True)
    reference = db.Column(db.String(128), nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)
    actor = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "sku": self.sku,
            "location_id": self.location_id,
            "type": self.entry_type,
            "quantity_delta": self.quantity_delta,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "reason": self.reason,
            "reference": self.reference,
            "notes": self.notes,
            "actor": self.actor,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"ledger entry {target.id} is append-only")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"ledger entry {target.id} is append-only")
