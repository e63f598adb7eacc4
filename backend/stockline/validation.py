from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., committing a committed session)."""


class RowError(ValueError):
    """Row-level business error inside a commit; becomes a warning, never aborts the batch."""


@dataclass(frozen=True)
class AutoSkuConfig:
    enabled: bool = False
    prefix: str = "SKU"
    separator: str = "-"
    start_number: int = 1
    digits: int = 4
    include_category: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AutoSkuConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            prefix=str(data.get("prefix") or "SKU"),
            separator=str(data.get("separator") or "-"),
            start_number=int(data.get("start_number", data.get("startNumber", 1)) or 0),
            digits=int(data.get("digits") or 4),
            include_category=bool(data.get("include_category", data.get("includeCategory", False))),
        )


@dataclass(frozen=True)
class AutoBarcodeConfig:
    enabled: bool = False
    prefix: str = "200"
    format: str = "EAN13"
    start_number: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AutoBarcodeConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            prefix=str(data.get("prefix") or "200"),
            format=str(data.get("format") or "EAN13").upper().replace("-", ""),
            start_number=int(data.get("start_number", data.get("startNumber", 1)) or 0),
        )


COMMIT_STRATEGIES = ("create", "upsert")

# Percent; anything above 100% is a data entry error
MAX_TAX_RATE = 100.0


def _coerce_int(name: str, value: Any, *, required: bool = True) -> int | None:
    """Strict integer: rejects floats, decimals and scientific notation."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    if isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    raise ValidationError(f"{name} must be an integer")


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class CommitOptions:
    strategy: str = "create"
    default_tax: float = 0.0
    default_category: str | None = None
    auto_sku: AutoSkuConfig = field(default_factory=AutoSkuConfig)
    auto_barcode: AutoBarcodeConfig = field(default_factory=AutoBarcodeConfig)
    notes: str | None = None
    location_id: str | None = None


def parse_commit_options(payload: dict | None) -> CommitOptions:
    payload = payload or {}
    strategy = (_coerce_text(payload.get("strategy")) or "create").lower()
    if strategy not in COMMIT_STRATEGIES:
        raise ValidationError(f"strategy must be one of {', '.join(COMMIT_STRATEGIES)}")

    raw_tax = payload.get("default_tax", 0)
    if raw_tax in (None, ""):
        raw_tax = 0
    if isinstance(raw_tax, bool):
        raise ValidationError("default_tax must be a number")
    try:
        default_tax = float(raw_tax)
    except (TypeError, ValueError):
        raise ValidationError("default_tax must be a number")
    if not 0 <= default_tax <= MAX_TAX_RATE:
        raise ValidationError("default_tax must be between 0 and 100")

    auto_sku = payload.get("auto_sku")
    auto_barcode = payload.get("auto_barcode")
    if auto_sku is not None and not isinstance(auto_sku, dict):
        raise ValidationError("auto_sku must be an object")
    if auto_barcode is not None and not isinstance(auto_barcode, dict):
        raise ValidationError("auto_barcode must be an object")
    try:
        sku_config = AutoSkuConfig.from_dict(auto_sku)
        barcode_config = AutoBarcodeConfig.from_dict(auto_barcode)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"invalid auto identifier config: {exc}")

    return CommitOptions(
        strategy=strategy,
        default_tax=default_tax,
        default_category=_coerce_text(payload.get("default_category")),
        auto_sku=sku_config,
        auto_barcode=barcode_config,
        notes=_coerce_text(payload.get("notes")),
        location_id=_coerce_text(payload.get("location_id")),
    )


def parse_adjust_payload(payload: dict | None) -> dict[str, Any]:
    payload = payload or {}
    product_id = _coerce_int("product_id", payload.get("product_id"))
    quantity_change = _coerce_int("quantity_change", payload.get("quantity_change"))
    if quantity_change == 0:
        raise ValidationError("quantity_change must be non-zero")
    return {
        "product_id": product_id,
        "quantity_change": quantity_change,
        "reason": _coerce_text(payload.get("reason")) or "adjustment",
        "notes": _coerce_text(payload.get("notes")),
        "location_id": _coerce_text(payload.get("location_id")),
    }
