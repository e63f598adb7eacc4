# Overview: Service-layer commit of staged import rows into products, stock and ledger.

"""
Import Commit Engine

One database transaction per commit. Rows are processed sequentially, each
inside its own SAVEPOINT:

- a row-level failure (bad value, unresolvable SKU, row constraint hit)
  rolls back that savepoint only, becomes "Row failed: <label> -> <reason>"
  and the batch continues;
- an infrastructure failure (connection loss, lock timeout, anything raised
  as OperationalError/InterfaceError, or a failing final COMMIT) rolls back
  the whole batch and surfaces as CommitError.

Sequential processing is required: SKU de-duplication must observe products
flushed by earlier rows of the same batch.

Events are emitted only after the transaction commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError

from ..extensions import db
from ..models import Product
from ..validation import CommitOptions, RowError, ValidationError
from .events import PRODUCT_CREATED, PRODUCT_UPDATED, STOCK_ADJUSTED, emit
from .identifier_service import (
    SkuCollisionError,
    build_sku_slug,
    ensure_unique_sku,
    generate_auto_barcode,
    generate_auto_sku,
    normalize_identifier,
)
from .inventory_service import apply_stock_delta, default_location_id, get_or_create_record
from .normalizer import CandidateRow, normalize_row
from .session_service import (
    ImportSessionError,
    ImportSessionNotFoundError,
    ImportSessionStore,
)


logger = logging.getLogger(__name__)

PLACEHOLDER_NAME = "Unnamed Product"

# Maximum price: $9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999
MAX_TAX_RATE_BPS = 10_000

# Fresh SKU attempts when a concurrent writer takes ours between check and insert
SKU_INSERT_ATTEMPTS = 3

INFRASTRUCTURE_ERRORS = (OperationalError, InterfaceError)


class CommitError(ValueError):
    """Transaction-level failure; nothing from the batch was persisted."""


@dataclass
class CommitSummary:
    created: int = 0
    updated: int = 0
    stock_added: int = 0
    skus_generated: int = 0
    barcodes_generated: int = 0
    warnings: list[str] = field(default_factory=list)
    products: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "stock_added": self.stock_added,
            "skus_generated": self.skus_generated,
            "barcodes_generated": self.barcodes_generated,
            "warnings": list(self.warnings),
            "products": list(self.products),
        }


@dataclass
class _RowOutcome:
    action: str
    product_id: int
    sku: str
    name: str
    sku_generated: bool = False
    barcode_generated: bool = False
    stock_added: int = 0
    quantity_after: int | None = None
    ledger_entry_id: int | None = None


def _to_cents(value: float | None, label: str) -> int | None:
    if value is None:
        return None
    try:
        cents = int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise RowError(f"{label} is not a number")
    if cents < 0:
        raise RowError(f"{label} cannot be negative")
    if cents > MAX_PRICE_CENTS:
        raise RowError(f"{label} exceeds maximum allowed ({MAX_PRICE_CENTS / 100:,.2f})")
    return cents


def _to_bps(percent: float | None) -> int | None:
    if percent is None:
        return None
    bps = int((Decimal(str(percent)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if not 0 <= bps <= MAX_TAX_RATE_BPS:
        raise RowError("tax_rate must be between 0 and 100")
    return bps


def _find_by_sku(tenant_id: str, sku: str) -> Product | None:
    return (
        db.session.query(Product)
        .filter(Product.tenant_id == tenant_id, Product.sku == sku)
        .first()
    )


def _insert_product(tenant_id: str, sku: str, fields: dict[str, Any]) -> Product:
    """Insert with a fresh SKU if a concurrent writer claimed ours first."""
    for _ in range(SKU_INSERT_ATTEMPTS):
        inner = db.session.begin_nested()
        product = Product(tenant_id=tenant_id, sku=sku, **fields)
        db.session.add(product)
        try:
            db.session.flush()
            inner.commit()
            return product
        except IntegrityError:
            inner.rollback()
            sku = ensure_unique_sku(tenant_id, sku)
    raise SkuCollisionError(f"SKU '{sku}' kept colliding with concurrent inserts")


def _commit_row(
    *,
    tenant_id: str,
    index: int,
    row: CandidateRow,
    options: CommitOptions,
    location_id: str,
    reference: str | None,
    actor: str | None,
) -> _RowOutcome:
    if row.quantity is not None and row.quantity < 0:
        raise RowError("quantity cannot be negative")
    cost_cents = _to_cents(row.cost_price, "cost_price")
    price_cents = _to_cents(row.unit_price, "unit_price")
    tax_bps = _to_bps(row.tax_rate)
    default_tax_bps = _to_bps(options.default_tax) or 0

    name = row.name or row.description or PLACEHOLDER_NAME
    category = row.category or options.default_category

    explicit_sku = normalize_identifier(row.sku) if row.sku else None
    existing = None
    if explicit_sku and options.strategy == "upsert":
        existing = _find_by_sku(tenant_id, explicit_sku)

    if existing is not None:
        if row.name:
            existing.name = row.name
        if row.description is not None:
            existing.description = row.description
        if row.category is not None:
            existing.category = row.category
        if cost_cents is not None:
            existing.cost_cents = cost_cents
        if price_cents is not None:
            existing.price_cents = price_cents
        if tax_bps is not None:
            existing.tax_rate_bps = tax_bps
        if row.barcode:
            existing.barcode = row.barcode
        if row.attributes:
            existing.attributes = {**(existing.attributes or {}), **row.attributes}
        db.session.flush()
        product = existing
        outcome = _RowOutcome(action="updated", product_id=product.id, sku=product.sku, name=product.name)
    else:
        sku_generated = False
        if explicit_sku:
            candidate = explicit_sku
        else:
            candidate = generate_auto_sku(index, category, options.auto_sku) or build_sku_slug(
                {
                    "name": name,
                    "category": category,
                    **(row.attributes or {}),
                }
            )
            sku_generated = True
        sku = ensure_unique_sku(tenant_id, candidate)

        barcode_generated = False
        barcode = row.barcode
        if not barcode:
            barcode = generate_auto_barcode(index, options.auto_barcode)
            barcode_generated = barcode is not None
        if not barcode:
            barcode = sku

        product = _insert_product(
            tenant_id,
            sku,
            {
                "barcode": barcode,
                "name": name,
                "description": row.description,
                "category": category,
                "cost_cents": cost_cents,
                "price_cents": price_cents or 0,
                "tax_rate_bps": tax_bps if tax_bps is not None else default_tax_bps,
                "status": "active",
                "attributes": row.attributes,
            },
        )
        get_or_create_record(
            tenant_id=tenant_id,
            product=product,
            location_id=location_id,
            reorder_point=row.reorder_point,
            reorder_quantity=row.reorder_quantity,
        )
        outcome = _RowOutcome(
            action="created",
            product_id=product.id,
            sku=product.sku,
            name=product.name,
            sku_generated=sku_generated,
            barcode_generated=barcode_generated,
        )

    if row.quantity:
        entry = apply_stock_delta(
            tenant_id=tenant_id,
            product=product,
            quantity_change=row.quantity,
            entry_type="import",
            location_id=location_id,
            reason="import",
            reference=reference,
            notes=options.notes,
            actor=actor,
        )
        outcome.stock_added = row.quantity
        outcome.quantity_after = entry.quantity_after
        outcome.ledger_entry_id = entry.id
    return outcome


def _emit_outcome_events(tenant_id: str, location_id: str, outcomes: list[_RowOutcome]) -> None:
    for outcome in outcomes:
        emit(
            PRODUCT_CREATED if outcome.action == "created" else PRODUCT_UPDATED,
            tenant_id=tenant_id,
            data={"product_id": outcome.product_id, "sku": outcome.sku, "name": outcome.name},
        )
        if outcome.stock_added:
            emit(
                STOCK_ADJUSTED,
                tenant_id=tenant_id,
                data={
                    "product_id": outcome.product_id,
                    "sku": outcome.sku,
                    "location_id": location_id,
                    "quantity_change": outcome.stock_added,
                    "quantity_after": outcome.quantity_after,
                    "ledger_entry_id": outcome.ledger_entry_id,
                    "reason": "import",
                },
            )


def commit_import(
    *,
    tenant_id: str,
    options: CommitOptions,
    session_id: str | None = None,
    rows: list[Any] | None = None,
    actor: str | None = None,
    sessions: ImportSessionStore | None = None,
) -> CommitSummary:
    """
    Apply staged (or caller-supplied override) rows in one transaction.

    rows overrides the session's staged rows when given. When a session is
    involved it is claimed first, so a concurrent second commit of the same
    session fails before writing anything. Any failure releases the claim;
    success marks the session committed.
    """
    claimed = bool(session_id and sessions is not None)
    if claimed:
        state = sessions.claim_for_commit(tenant_id, session_id)
        if rows is None:
            rows = state["rows"]
    try:
        summary, location_id, outcomes = _apply_rows(
            tenant_id=tenant_id, options=options, session_id=session_id, rows=rows, actor=actor
        )
    except Exception:
        if claimed:
            sessions.release_claim(tenant_id, session_id)
        raise

    logger.info(
        "Import committed for tenant %s: %s created, %s updated, %s units, %s warnings",
        tenant_id, summary.created, summary.updated, summary.stock_added, len(summary.warnings),
    )
    _emit_outcome_events(tenant_id, location_id, outcomes)

    if claimed:
        try:
            sessions.mark_committed(tenant_id, session_id, summary.to_dict())
        except (ImportSessionNotFoundError, ImportSessionError) as exc:
            logger.warning("Import session %s not marked committed: %s", session_id, exc)
    return summary


def _apply_rows(
    *,
    tenant_id: str,
    options: CommitOptions,
    session_id: str | None,
    rows: list[Any] | None,
    actor: str | None,
) -> tuple[CommitSummary, str, list[_RowOutcome]]:
    if rows is None:
        raise ValidationError("rows or session_id is required")
    if not isinstance(rows, list):
        raise ValidationError("rows must be a list")

    candidates = [r if isinstance(r, CandidateRow) else normalize_row(r, source="manual") for r in rows]
    if not candidates:
        raise ValidationError("No rows to commit")

    location_id = options.location_id or default_location_id()
    reference = f"import:{session_id}" if session_id else "import"
    summary = CommitSummary()
    outcomes: list[_RowOutcome] = []

    try:
        for index, row in enumerate(candidates):
            nested = db.session.begin_nested()
            try:
                outcome = _commit_row(
                    tenant_id=tenant_id,
                    index=index,
                    row=row,
                    options=options,
                    location_id=location_id,
                    reference=reference,
                    actor=actor,
                )
                nested.commit()
            except INFRASTRUCTURE_ERRORS:
                raise
            except Exception as exc:  # noqa: BLE001
                nested.rollback()
                summary.warnings.append(f"Row failed: {row.label()} -> {exc}")
                continue

            outcomes.append(outcome)
            if outcome.action == "created":
                summary.created += 1
            else:
                summary.updated += 1
            summary.stock_added += outcome.stock_added
            summary.skus_generated += int(outcome.sku_generated)
            summary.barcodes_generated += int(outcome.barcode_generated)
            summary.products.append(
                {"row": index + 1, "product_id": outcome.product_id, "sku": outcome.sku, "action": outcome.action}
            )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Import commit rolled back for tenant %s session %s", tenant_id, session_id)
        raise CommitError(f"Import failed and was rolled back: {exc.__class__.__name__}") from exc
    return summary, location_id, outcomes
