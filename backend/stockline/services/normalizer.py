# Overview: Canonical candidate-row shape and the total normalization function.

"""
Row Normalizer

Source documents arrive with arbitrary column names ("Product Name", "qty",
"Selling Price (Rs)") and decorated values ("$1,299.00", "18%"). Everything
downstream works on CandidateRow only.

RULES:
- Unset fields stay None so "not provided" is distinguishable from zero.
- Numeric fields strip currency symbols, separators and "%" before parsing.
- Unparsable numbers become 0 instead of failing the row.
- normalize_row never raises and is idempotent over CandidateRow.to_dict().
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any


CONFIDENCE_LEVELS = ("high", "medium", "low")
SOURCES = ("csv", "excel", "pdf_ocr", "image_ocr", "ai_vision", "manual")

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "product name", "product", "item", "item name", "title", "product title"),
    "sku": ("sku", "sku code", "code", "item code", "product code", "item number", "part number", "article"),
    "barcode": ("barcode", "bar code", "upc", "ean", "gtin", "ean13", "upc code"),
    "category": ("category", "department", "group", "product type", "type"),
    "description": ("description", "desc", "details", "product description"),
    "cost_price": ("cost price", "cost", "unit cost", "purchase price", "buy price", "cost rs"),
    "unit_price": ("unit price", "price", "selling price", "sale price", "sell price", "retail price", "mrp", "rate"),
    "tax_rate": ("tax rate", "tax", "tax percent", "vat", "gst", "gst rate"),
    "quantity": ("quantity", "qty", "stock", "on hand", "units", "count", "stock quantity"),
    "reorder_point": ("reorder point", "reorder level", "min stock", "minimum stock"),
    "reorder_quantity": ("reorder quantity", "reorder qty"),
}

ATTRIBUTE_KEYS = {
    "color": "color",
    "colour": "color",
    "material": "material",
    "design": "design",
    "edition": "edition",
    "collection": "collection",
    "size": "size",
}

_ALIAS_LOOKUP = {alias: field for field, aliases in FIELD_ALIASES.items() for alias in aliases}

TEXT_FIELDS = ("name", "sku", "barcode", "category", "description")
DECIMAL_FIELDS = ("cost_price", "unit_price", "tax_rate")
INTEGER_FIELDS = ("quantity", "reorder_point", "reorder_quantity")

_KEY_NOISE = re.compile(r"[^a-z0-9]+")
# "Selling Price (Rs)", "Cost USD": trailing currency tokens in headers
_CURRENCY_SUFFIX = re.compile(r"(?: (?:rs|inr|usd|eur|gbp))+$")
_NUMBER = re.compile(r"-?\d[\d,]*(?:\.\d+)?|-?\.\d+")


@dataclass
class CandidateRow:
    name: str | None = None
    sku: str | None = None
    barcode: str | None = None
    category: str | None = None
    description: str | None = None
    cost_price: float | None = None
    unit_price: float | None = None
    tax_rate: float | None = None
    quantity: int | None = None
    reorder_point: int | None = None
    reorder_quantity: int | None = None
    attributes: dict[str, Any] | None = None
    confidence: str = "medium"
    source: str = "manual"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CandidateRow":
        return normalize_row(data, source=data.get("source") or "manual")

    def is_blank(self) -> bool:
        return not (self.name or self.sku or self.barcode)

    def label(self) -> str:
        return self.name or self.sku or "unknown"


def canonical_key(key: Any) -> str:
    return _KEY_NOISE.sub(" ", str(key).lower()).strip()


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        # Spreadsheet cells hand back 12345.0 for numeric codes
        value = int(value)
    text = str(value).strip()
    return text if text else None


def _to_decimal(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    match = _NUMBER.search(text)
    if match is None:
        return 0.0
    return float(match.group(0).replace(",", ""))


def _to_int(value: Any) -> int | None:
    number = _to_decimal(value)
    if number is None:
        return None
    try:
        return int(number)
    except (OverflowError, ValueError):
        return 0


def _coerce_attributes(value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        return {}
    out = {}
    for key, item in value.items():
        text = _to_text(item)
        if text is not None:
            out[str(key)] = text
    return out


def normalize_row(raw: Any, *, source: str = "csv", confidence: str = "medium") -> CandidateRow:
    """
    Map an arbitrary record onto CandidateRow.

    The first raw key that resolves to a field wins. A "confidence" or
    "source" key inside the record overrides the caller's default.
    """
    row = CandidateRow(source=source, confidence=confidence)
    if not isinstance(raw, Mapping):
        return row

    values: dict[str, Any] = {}
    attributes: dict[str, Any] = {}

    for key, value in raw.items():
        ckey = canonical_key(key)
        if ckey == "attributes":
            attributes.update(_coerce_attributes(value))
            continue
        if ckey in ATTRIBUTE_KEYS:
            text = _to_text(value)
            if text is not None:
                attributes[ATTRIBUTE_KEYS[ckey]] = text
            continue
        if ckey == "confidence":
            text = (_to_text(value) or "").lower()
            if text in CONFIDENCE_LEVELS:
                row.confidence = text
            continue
        if ckey == "source":
            text = _to_text(value)
            if text:
                row.source = text
            continue
        field = _ALIAS_LOOKUP.get(ckey) or _ALIAS_LOOKUP.get(_CURRENCY_SUFFIX.sub("", ckey))
        if field is None or values.get(field) is not None:
            continue
        values[field] = value

    for field in TEXT_FIELDS:
        setattr(row, field, _to_text(values.get(field)))
    for field in DECIMAL_FIELDS:
        setattr(row, field, _to_decimal(values.get(field)))
    for field in INTEGER_FIELDS:
        setattr(row, field, _to_int(values.get(field)))
    row.attributes = attributes or None
    return row


def normalize_rows(raw_rows, *, source: str, confidence: str = "medium") -> list[CandidateRow]:
    """Normalize and drop rows with nothing to identify a product by."""
    rows = []
    for raw in raw_rows:
        row = normalize_row(raw, source=source, confidence=confidence)
        if not row.is_blank():
            rows.append(row)
    return rows
