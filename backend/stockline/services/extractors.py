# Overview: Per-format extractors turning uploaded files into candidate rows.

"""
Format Extractors

One extractor per source kind, selected by extension/MIME:

    csv   -> DelimitedExtractor    (stdlib csv, dialect sniffed)
    excel -> SpreadsheetExtractor  (openpyxl, first worksheet, first non-empty row is the header)
    pdf   -> PdfTextExtractor      (pypdf text layer; OCR of embedded images when there is none)
    image -> ImageOcrExtractor     (tesseract via pytesseract)

Cloud vision lives in vision_service and shares ExtractionResult.

CONTRACT:
- Expected failures never raise. They come back as ExtractionResult with
  success=False, an error_code and an empty row list, scoped to one file.
- Extractors only read source bytes. They never touch the database; the
  usage sample they carry is recorded by the caller.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import pytesseract
from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .normalizer import CandidateRow, normalize_rows
from .text_parser import parse_text


logger = logging.getLogger(__name__)

DELIMITED_EXTENSIONS = {"csv", "tsv", "txt"}
SPREADSHEET_EXTENSIONS = {"xlsx", "xlsm"}
LEGACY_SPREADSHEET_EXTENSIONS = {"xls"}
PDF_EXTENSIONS = {"pdf"}
IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "webp", "gif", "bmp", "tif", "tiff"}

SPREADSHEET_MIMES = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel.sheet.macroenabled.12",
}

# Mean tesseract word confidence (0-100) below which every parsed row is "low"
LOW_OCR_CONFIDENCE = 60.0


@dataclass
class UsageSample:
    service: str
    model: str
    operation: str = "extract_inventory"
    tokens_input: int = 0
    tokens_output: int = 0
    duration_ms: int = 0
    success: bool = True
    error_message: str | None = None
    details: dict[str, Any] | None = None


@dataclass
class ExtractionResult:
    method: str
    success: bool = True
    rows: list[CandidateRow] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    raw_text: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    usage: UsageSample | None = None
    filename: str | None = None
    duration_ms: int = 0

    @classmethod
    def failure(cls, method: str, error: str, error_code: str, **kwargs) -> "ExtractionResult":
        return cls(method=method, success=False, error=error, error_code=error_code, rows=[], **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "method": self.method,
            "success": self.success,
            "products": [r.to_dict() for r in self.rows],
            "count": len(self.rows),
            "warnings": list(self.warnings),
            "error": self.error,
            "error_code": self.error_code,
            "details": self.details,
            "duration_ms": self.duration_ms,
        }


def ocr_image(image, language: str = "eng") -> tuple[str, float | None]:
    """
    Run tesseract over a PIL image.

    Returns (text, mean word confidence 0-100 or None when no words scored).
    Raises pytesseract.TesseractNotFoundError when the engine is missing.
    """
    text = (pytesseract.image_to_string(image, lang=language) or "").strip()
    data = pytesseract.image_to_data(image, lang=language, output_type=pytesseract.Output.DICT)
    scores = []
    for raw_conf in data.get("conf", []):
        try:
            value = float(raw_conf)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            scores.append(value)
    mean = round(sum(scores) / len(scores), 1) if scores else None
    return text, mean


def _file_extension(filename: str | None) -> str:
    return os.path.splitext(filename or "")[1].lstrip(".").lower()


def detect_kind(filename: str | None, mime: str | None = None) -> str | None:
    """csv | excel | pdf | image, or None when the file is not importable."""
    ext = _file_extension(filename)
    if ext in DELIMITED_EXTENSIONS:
        return "csv"
    if ext in SPREADSHEET_EXTENSIONS:
        return "excel"
    if ext in LEGACY_SPREADSHEET_EXTENSIONS:
        return "legacy_excel"
    if ext in PDF_EXTENSIONS:
        return "pdf"
    if ext in IMAGE_EXTENSIONS:
        return "image"

    mime = (mime or "").split(";")[0].strip().lower()
    if mime in ("text/csv", "text/tab-separated-values", "text/plain"):
        return "csv"
    if mime in SPREADSHEET_MIMES:
        return "excel"
    if mime == "application/pdf":
        return "pdf"
    if mime.startswith("image/"):
        return "image"
    return None


class BaseExtractor:
    method = ""

    def extract(self, path: str, *, filename: str | None = None) -> ExtractionResult:
        raise NotImplementedError


class DelimitedExtractor(BaseExtractor):
    method = "csv"
    encodings = ("utf-8-sig", "cp1252")

    def _read_rows(self, path: str, encoding: str) -> list[dict]:
        with open(path, "r", encoding=encoding, newline="") as fh:
            sample = fh.read(4096)
            fh.seek(0)
            try:
                dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
            except csv.Error:
                dialect = csv.excel
            return [row for row in csv.DictReader(fh, dialect=dialect)]

    def extract(self, path: str, *, filename: str | None = None) -> ExtractionResult:
        raw_rows = None
        last_error: Exception | None = None
        for encoding in self.encodings:
            try:
                raw_rows = self._read_rows(path, encoding)
                break
            except UnicodeDecodeError as exc:
                last_error = exc
            except (csv.Error, OSError) as exc:
                return ExtractionResult.failure(self.method, f"Could not read CSV: {exc}", "extraction_failed")
        if raw_rows is None:
            return ExtractionResult.failure(self.method, f"Could not decode CSV: {last_error}", "extraction_failed")

        rows = normalize_rows(raw_rows, source="csv", confidence="high")
        result = ExtractionResult(method=self.method, rows=rows, details={"raw_rows": len(raw_rows)})
        skipped = len(raw_rows) - len(rows)
        if skipped:
            result.warnings.append(f"{filename or 'csv'}: skipped {skipped} row(s) without name, SKU or barcode")
        return result


class SpreadsheetExtractor(BaseExtractor):
    method = "excel"

    def extract(self, path: str, *, filename: str | None = None) -> ExtractionResult:
        from openpyxl import load_workbook

        try:
            wb = load_workbook(path, read_only=True, data_only=True)
        except Exception as exc:  # noqa: BLE001
            return ExtractionResult.failure(self.method, f"Could not open workbook: {exc}", "extraction_failed")
        try:
            sheet = wb.active
            data = [row for row in sheet.iter_rows(values_only=True) if any(v not in (None, "") for v in row)]
            sheet_title = sheet.title
        finally:
            wb.close()

        if not data:
            return ExtractionResult(
                method=self.method,
                warnings=[f"{filename or 'workbook'}: worksheet is empty"],
            )

        headers = [str(h).strip() if h is not None else "" for h in data[0]]
        raw_rows = [
            {headers[i]: row[i] for i in range(min(len(headers), len(row))) if headers[i]}
            for row in data[1:]
        ]
        rows = normalize_rows(raw_rows, source="excel", confidence="high")
        result = ExtractionResult(
            method=self.method,
            rows=rows,
            details={"sheet": sheet_title, "raw_rows": len(raw_rows)},
        )
        skipped = len(raw_rows) - len(rows)
        if skipped:
            result.warnings.append(f"{filename or 'workbook'}: skipped {skipped} row(s) without name, SKU or barcode")
        return result


class PdfTextExtractor(BaseExtractor):
    """
    Text layer first. A PDF with no text layer is treated as scanned and its
    embedded page images are OCR'd before heuristic parsing.
    """
    method = "pdf_ocr"

    def __init__(self, ocr_language: str = "eng"):
        self.ocr_language = ocr_language

    def _ocr_page_images(self, reader: PdfReader) -> str:
        chunks = []
        for page in reader.pages:
            for image_file in page.images:
                try:
                    image = Image.open(io.BytesIO(image_file.data))
                except UnidentifiedImageError:
                    logger.warning("Skipping undecodable image %s in PDF", image_file.name)
                    continue
                text, _ = ocr_image(image, self.ocr_language)
                if text:
                    chunks.append(text)
        return "\n".join(chunks)

    def extract(self, path: str, *, filename: str | None = None) -> ExtractionResult:
        started = time.perf_counter()
        usage = UsageSample(service="pypdf", model="text-layer")
        try:
            reader = PdfReader(path)
            page_count = len(reader.pages)
            text = "\n".join((page.extract_text() or "").strip() for page in reader.pages).strip()
        except (PdfReadError, OSError, ValueError) as exc:
            usage.success = False
            usage.error_message = str(exc)
            usage.duration_ms = int((time.perf_counter() - started) * 1000)
            return ExtractionResult.failure(self.method, f"PDF parsing failed: {exc}", "extraction_failed", usage=usage)

        details: dict[str, Any] = {"pages": page_count, "ocr_fallback": False}
        warnings: list[str] = []
        if not text:
            details["ocr_fallback"] = True
            usage = UsageSample(service="tesseract", model=self.ocr_language)
            try:
                text = self._ocr_page_images(reader)
            except pytesseract.TesseractNotFoundError:
                logger.warning("Scanned PDF %s needs OCR but tesseract is not installed", filename)
                usage.success = False
                usage.error_message = "tesseract not installed"
                usage.duration_ms = int((time.perf_counter() - started) * 1000)
                return ExtractionResult.failure(
                    self.method,
                    "PDF has no text layer and the OCR engine is unavailable",
                    "engine_unavailable",
                    usage=usage,
                    details=details,
                )
            if not text:
                warnings.append(f"{filename or 'pdf'}: no text layer and no readable page images")

        rows = parse_text(text, source="pdf_ocr")
        if text and not rows:
            warnings.append(f"{filename or 'pdf'}: no product lines recognised")
        usage.duration_ms = int((time.perf_counter() - started) * 1000)
        usage.details = {**details, "rows": len(rows)}
        return ExtractionResult(
            method=self.method,
            rows=rows,
            warnings=warnings,
            raw_text=text,
            details=details,
            usage=usage,
        )


class ImageOcrExtractor(BaseExtractor):
    method = "image_ocr"

    def __init__(self, language: str = "eng"):
        self.language = language

    def extract(self, path: str, *, filename: str | None = None) -> ExtractionResult:
        try:
            with open(path, "rb") as fh:
                data = fh.read()
        except OSError as exc:
            return ExtractionResult.failure(self.method, f"Could not read image: {exc}", "extraction_failed")
        return self.extract_bytes(data, filename=filename)

    def extract_bytes(self, data: bytes, *, filename: str | None = None) -> ExtractionResult:
        started = time.perf_counter()
        usage = UsageSample(service="tesseract", model=self.language)

        def _fail(message: str, code: str) -> ExtractionResult:
            usage.success = False
            usage.error_message = message
            usage.duration_ms = int((time.perf_counter() - started) * 1000)
            return ExtractionResult.failure(self.method, message, code, usage=usage)

        try:
            image = Image.open(io.BytesIO(data))
            text, mean_conf = ocr_image(image, self.language)
        except UnidentifiedImageError:
            return _fail("File is not a readable image", "unsupported_file")
        except pytesseract.TesseractNotFoundError:
            logger.warning("Image OCR requested but tesseract is not installed")
            return _fail("OCR engine (tesseract) is not installed on this server", "engine_unavailable")
        except pytesseract.TesseractError as exc:
            return _fail(f"OCR failed: {exc}", "extraction_failed")

        rows = parse_text(text, source="image_ocr")
        if mean_conf is not None and mean_conf < LOW_OCR_CONFIDENCE:
            for row in rows:
                row.confidence = "low"

        warnings = []
        if not rows:
            warnings.append(f"{filename or 'image'}: no product lines recognised")
        details = {"ocr_confidence": mean_conf, "characters": len(text)}
        usage.duration_ms = int((time.perf_counter() - started) * 1000)
        usage.details = {**details, "rows": len(rows)}
        return ExtractionResult(
            method=self.method,
            rows=rows,
            warnings=warnings,
            raw_text=text,
            details=details,
            usage=usage,
        )


def build_extractors(config: dict) -> dict[str, BaseExtractor]:
    language = config.get("OCR_LANGUAGE") or "eng"
    return {
        "csv": DelimitedExtractor(),
        "excel": SpreadsheetExtractor(),
        "pdf": PdfTextExtractor(ocr_language=language),
        "image": ImageOcrExtractor(language=language),
    }


def extract_file(
    extractors: dict[str, BaseExtractor],
    path: str,
    *,
    filename: str,
    mime: str | None = None,
) -> ExtractionResult:
    """Dispatch one stored file to its extractor. Never raises."""
    started = time.perf_counter()
    kind = detect_kind(filename, mime)
    if kind == "legacy_excel":
        result = ExtractionResult.failure(
            "excel",
            "Legacy .xls workbooks are not supported; save the file as .xlsx",
            "unsupported_file",
        )
    elif kind is None or kind not in extractors:
        result = ExtractionResult.failure(
            "unknown",
            f"Unsupported file type: {_file_extension(filename) or mime or 'unknown'}",
            "unsupported_file",
        )
    else:
        try:
            result = extractors[kind].extract(path, filename=filename)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Extractor %s crashed on %s", kind, filename)
            result = ExtractionResult.failure(extractors[kind].method, f"Extraction failed: {exc}", "extraction_failed")
    result.filename = filename
    result.duration_ms = int((time.perf_counter() - started) * 1000)
    return result
