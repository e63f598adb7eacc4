# Overview: Best-effort line parser for OCR and PDF text.

from __future__ import annotations

import re

from .normalizer import CandidateRow, normalize_row


_CURRENCY = r"(?P<cur>Rs\.?|INR|USD|[$€£₹])?"
_PRICE = r"(?P<price>\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)"
_NAME = r"(?P<name>[A-Za-z][\w\s\-/&'.()]*?)"

# Ordered: the first pattern that matches a line wins.
QTY_NAME_AT_PRICE = re.compile(
    r"^\s*(?P<qty>\d+)\s*(?P<mult>[xX*×])?\s+" + _NAME + r"\s*(?:@|\bat\b)\s*" + _CURRENCY + r"\s*" + _PRICE + r"\s*$"
)
NAME_QTY_PRICE = re.compile(
    r"^\s*" + _NAME + r"\s+(?P<qty>\d+)\s+" + _CURRENCY + r"\s*" + _PRICE + r"\s*$"
)
NAME_DASH_PRICE = re.compile(
    r"^\s*" + _NAME + r"\s*[-–:]\s*" + _CURRENCY + r"\s*" + _PRICE + r"\s*$"
)


def _price(text: str) -> float:
    return float(text.replace(",", ""))


def parse_line(line: str, *, source: str = "pdf_ocr") -> CandidateRow | None:
    """Return a candidate row for one line, or None when nothing matches."""
    match = QTY_NAME_AT_PRICE.match(line)
    if match:
        confidence = "high" if match.group("mult") and match.group("cur") else "medium"
        return normalize_row(
            {
                "name": match.group("name"),
                "quantity": int(match.group("qty")),
                "unit_price": _price(match.group("price")),
            },
            source=source,
            confidence=confidence,
        )

    match = NAME_QTY_PRICE.match(line)
    if match:
        return normalize_row(
            {
                "name": match.group("name"),
                "quantity": int(match.group("qty")),
                "unit_price": _price(match.group("price")),
            },
            source=source,
            confidence="medium",
        )

    match = NAME_DASH_PRICE.match(line)
    if match:
        return normalize_row(
            {"name": match.group("name"), "quantity": 1, "unit_price": _price(match.group("price"))},
            source=source,
            confidence="low",
        )
    return None


def parse_text(text: str | None, *, source: str = "pdf_ocr") -> list[CandidateRow]:
    """
    Turn free text into candidate rows, one line at a time.

    Lines that match no pattern are dropped; this is best-effort extraction,
    not complete extraction.
    """
    rows: list[CandidateRow] = []
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        row = parse_line(line, source=source)
        if row is not None:
            rows.append(row)
    return rows
