# Overview: Service-layer operations for SKU and barcode identifiers.

"""
Identifier Service - SKU and barcode generation

UNIQUENESS RULES:
- SKU: unique per tenant. ensure_unique_sku appends -1, -2, ... until free and
  observes rows flushed earlier in the same transaction, so one batch never
  produces duplicates.
- BARCODE: best-effort. Generated barcodes are padded to the symbology's body
  length only. No check digit (the rendering side owns that math) and no
  uniqueness check; bundles may deliberately share one barcode.
"""

from __future__ import annotations

import re
from typing import Any

from ..extensions import db
from ..models import Product
from ..time_utils import utcnow
from ..validation import AutoBarcodeConfig, AutoSkuConfig, RowError


MAX_SKU_LENGTH = 64
MAX_SUFFIX_ATTEMPTS = 10_000

# Digits in the barcode body before any check digit.
BARCODE_BODY_LENGTHS = {
    "EAN13": 12,
    "EAN8": 7,
    "UPC": 11,
}
VARIABLE_LENGTH_FORMATS = ("CODE128", "CODE39")
VARIABLE_LENGTH_DIGITS = 6


class SkuCollisionError(RowError):
    """No free SKU could be derived from the candidate."""


def normalize_identifier(value: str) -> str:
    """Normalize to uppercase, no spaces."""
    return value.upper().strip().replace(" ", "")


def sku_exists(tenant_id: str, sku: str) -> bool:
    return (
        db.session.query(Product.id)
        .filter(Product.tenant_id == tenant_id, Product.sku == sku)
        .first()
        is not None
    )


def ensure_unique_sku(tenant_id: str, candidate: str) -> str:
    """
    Return candidate, or candidate-N for the smallest free N.

    Raises SkuCollisionError when the suffix space is exhausted.
    """
    base = normalize_identifier(candidate)[:MAX_SKU_LENGTH] or "SKU"
    if not sku_exists(tenant_id, base):
        return base
    for n in range(1, MAX_SUFFIX_ATTEMPTS + 1):
        suffix = f"-{n}"
        attempt = base[: MAX_SKU_LENGTH - len(suffix)] + suffix
        if not sku_exists(tenant_id, attempt):
            return attempt
    raise SkuCollisionError(f"Could not derive a unique SKU from '{candidate}'")


def _slug_part(value: Any, length: int) -> str:
    if not value:
        return ""
    cleaned = re.sub(r"[^A-Za-z0-9]", "", str(value))
    return cleaned[:length].upper()


def build_sku_slug(attributes: dict[str, Any]) -> str:
    """
    CAT-NAME-COLOR-MAT-YYMM from whatever attributes are present.

    Name contributes the first three letters of up to three words.
    """
    words = re.findall(r"[A-Za-z0-9]+", str(attributes.get("name") or ""))
    name_part = "".join(w[:3] for w in words[:3]).upper()
    parts = [
        _slug_part(attributes.get("category"), 3),
        name_part or "ITEM",
        _slug_part(attributes.get("color"), 3),
        _slug_part(attributes.get("material"), 3),
        _slug_part(attributes.get("design") or attributes.get("edition") or attributes.get("collection"), 3),
        utcnow().strftime("%y%m"),
    ]
    return "-".join(p for p in parts if p)


def generate_sku_for_product(tenant_id: str, attributes: dict[str, Any]) -> str:
    return ensure_unique_sku(tenant_id, build_sku_slug(attributes))


def generate_auto_sku(index: int, category: str | None, config: AutoSkuConfig) -> str | None:
    """PREFIX-[CAT-]NNNN from the row position; None when disabled."""
    if not config.enabled:
        return None
    number = str(config.start_number + index).zfill(config.digits)
    category_part = ""
    if config.include_category and category:
        category_part = f"{_slug_part(category, 3)}{config.separator}"
    return f"{config.prefix}{config.separator}{category_part}{number}"


def generate_auto_barcode(index: int, config: AutoBarcodeConfig) -> str | None:
    """
    Numeric barcode body for the configured symbology; None when disabled.

    EAN-13/EAN-8/UPC bodies are exactly 12/7/11 digits. CODE128/CODE39
    (and unknown formats) are the prefix followed by six digits.
    """
    if not config.enabled:
        return None
    number = config.start_number + index
    length = BARCODE_BODY_LENGTHS.get(config.format)
    if length is None:
        return f"{config.prefix}{str(number).zfill(VARIABLE_LENGTH_DIGITS)}"

    prefix = re.sub(r"\D", "", config.prefix)[:length]
    width = length - len(prefix)
    digits = str(number).zfill(width)[-width:] if width else ""
    return prefix + digits
