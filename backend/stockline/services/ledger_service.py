# Overview: Service-layer operations for the stock ledger; append-only writes.

from __future__ import annotations

from ..extensions import db
from ..models import LedgerEntry
"""
Stock Ledger Invariants (authoritative)

- Append-only: entries are never updated or deleted (ORM hooks enforce it).
- Written inside the same DB transaction as the quantity change they record.
- quantity_after - quantity_before == quantity_delta, always.
- created_at is system time.
"""


def append_ledger_entry(
    *,
    tenant_id: str,
    product_id: int,
    sku: str,
    location_id: str,
    entry_type: str,
    quantity_before: int,
    quantity_after: int,
    reason: str | None = None,
    reference: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> LedgerEntry:
    """
    Append one ledger entry and flush it.

    No commit here; the caller owns the transaction.
    """
    entry = LedgerEntry(
        tenant_id=tenant_id,
        product_id=product_id,
        sku=sku,
        location_id=location_id,
        entry_type=entry_type,
        quantity_delta=quantity_after - quantity_before,
        quantity_before=quantity_before,
        quantity_after=quantity_after,
        reason=reason,
        reference=reference,
        notes=notes,
        actor=actor,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_entries_for_product(
    *,
    tenant_id: str,
    product_id: int,
    location_id: str | None = None,
    since=None,
    limit: int = 100,
) -> list[LedgerEntry]:
    """Newest first. since is inclusive."""
    q = db.session.query(LedgerEntry).filter(
        LedgerEntry.tenant_id == tenant_id,
        LedgerEntry.product_id == product_id,
    )
    if location_id:
        q = q.filter(LedgerEntry.location_id == location_id)
    if since is not None:
        q = q.filter(LedgerEntry.created_at >= since)
    return q.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc()).limit(limit).all()
