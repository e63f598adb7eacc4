# Overview: Service-layer operations for stock levels; the only writer of on-hand quantity.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import InventoryRecord, LedgerEntry, Product
from ..time_utils import utcnow
from ..validation import ValidationError
from .concurrency import lock_for_update, run_with_retry
from .events import STOCK_ADJUSTED, emit
from .ledger_service import append_ledger_entry, list_entries_for_product

"""
Inventory Invariants (authoritative)

- InventoryRecord.quantity >= 0 at every committed state.
- Every quantity change goes through apply_stock_delta, which locks the
  (product, location) row, rejects negative results before writing, and
  appends exactly one ledger entry.
- A rejected change has no partial effect (not even the lazily created
  zero-quantity record survives the rollback).
"""


class InsufficientStockError(ValidationError):
    """Change would drive on-hand below zero."""


class ProductNotFoundError(ValueError):
    """Product does not exist for this tenant."""


def default_location_id() -> str:
    return current_app.config.get("DEFAULT_LOCATION_ID") or "main"


def get_product(tenant_id: str, product_id: int) -> Product:
    product = (
        db.session.query(Product)
        .filter(Product.tenant_id == tenant_id, Product.id == product_id)
        .first()
    )
    if product is None:
        raise ProductNotFoundError(f"Product {product_id} not found")
    return product


def _record_query(tenant_id: str, product_id: int, location_id: str):
    return db.session.query(InventoryRecord).filter(
        InventoryRecord.tenant_id == tenant_id,
        InventoryRecord.product_id == product_id,
        InventoryRecord.location_id == location_id,
    )


def get_or_create_record(
    *,
    tenant_id: str,
    product: Product,
    location_id: str,
    reorder_point: int | None = None,
    reorder_quantity: int | None = None,
) -> InventoryRecord:
    """
    Locked inventory record for (product, location), created at zero if absent.

    The SKU on a new record is copied from the product. A concurrent creator
    losing the unique-constraint race re-reads the winner's row.
    """
    record = lock_for_update(_record_query(tenant_id, product.id, location_id)).first()
    if record is not None:
        return record

    nested = db.session.begin_nested()
    try:
        record = InventoryRecord(
            tenant_id=tenant_id,
            product_id=product.id,
            sku=product.sku,
            location_id=location_id,
            quantity=0,
            reserved_quantity=0,
            reorder_point=max(reorder_point or 0, 0),
            reorder_quantity=max(reorder_quantity or 0, 0),
        )
        db.session.add(record)
        db.session.flush()
        nested.commit()
        return record
    except IntegrityError:
        nested.rollback()
        return lock_for_update(_record_query(tenant_id, product.id, location_id)).one()


def apply_stock_delta(
    *,
    tenant_id: str,
    product: Product,
    quantity_change: int,
    entry_type: str,
    location_id: str,
    reason: str | None = None,
    reference: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> LedgerEntry:
    """
    Change on-hand quantity and append the matching ledger entry.

    No commit here; the caller owns the transaction.
    Raises InsufficientStockError before any write if the result is negative.
    """
    record = get_or_create_record(tenant_id=tenant_id, product=product, location_id=location_id)
    before = record.quantity
    after = before + quantity_change
    if after < 0:
        raise InsufficientStockError("adjustment would make on-hand negative")

    record.quantity = after
    if quantity_change > 0 and entry_type == "import":
        record.last_received_at = utcnow()

    return append_ledger_entry(
        tenant_id=tenant_id,
        product_id=product.id,
        sku=record.sku,
        location_id=location_id,
        entry_type=entry_type,
        quantity_before=before,
        quantity_after=after,
        reason=reason,
        reference=reference,
        notes=notes,
        actor=actor,
    )


def adjust_stock(
    *,
    tenant_id: str,
    product_id: int,
    quantity_change: int,
    reason: str = "adjustment",
    notes: str | None = None,
    location_id: str | None = None,
    actor: str | None = None,
) -> dict:
    """
    Single-item stock adjustment in its own transaction.

    Concurrent adjustments of the same (product, location) serialize on the
    row lock; lock timeouts and deadlocks are retried with backoff.
    """
    location = location_id or default_location_id()

    def _op():
        product = get_product(tenant_id, product_id)
        entry = apply_stock_delta(
            tenant_id=tenant_id,
            product=product,
            quantity_change=quantity_change,
            entry_type="adjustment",
            location_id=location,
            reason=reason,
            notes=notes,
            actor=actor,
        )
        db.session.commit()
        return entry

    try:
        entry = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    emit(
        STOCK_ADJUSTED,
        tenant_id=tenant_id,
        data={
            "product_id": entry.product_id,
            "sku": entry.sku,
            "location_id": entry.location_id,
            "quantity_change": entry.quantity_delta,
            "quantity_after": entry.quantity_after,
            "ledger_entry_id": entry.id,
            "reason": reason,
        },
    )
    return {
        "product_id": entry.product_id,
        "sku": entry.sku,
        "location_id": entry.location_id,
        "previous": entry.quantity_before,
        "new": entry.quantity_after,
        "change": entry.quantity_delta,
        "ledger_entry_id": entry.id,
    }


def get_stock_level(tenant_id: str, product_id: int, location_id: str | None = None) -> dict:
    product = get_product(tenant_id, product_id)
    q = db.session.query(InventoryRecord).filter(
        InventoryRecord.tenant_id == tenant_id,
        InventoryRecord.product_id == product_id,
    )
    if location_id:
        q = q.filter(InventoryRecord.location_id == location_id)
    records = q.order_by(InventoryRecord.location_id.asc()).all()
    return {
        "product_id": product.id,
        "sku": product.sku,
        "name": product.name,
        "quantity": sum(r.quantity for r in records),
        "locations": [r.to_dict() for r in records],
    }


def list_ledger_entries(
    tenant_id: str,
    product_id: int,
    *,
    location_id: str | None = None,
    since=None,
    limit: int = 100,
) -> list[dict]:
    get_product(tenant_id, product_id)
    entries = list_entries_for_product(
        tenant_id=tenant_id,
        product_id=product_id,
        location_id=location_id,
        since=since,
        limit=limit,
    )
    return [e.to_dict() for e in entries]
