# backend/stockline/routes/system.py
"""
System health endpoint.

Reports database connectivity and whether the local OCR engine is present,
since image and scanned-PDF imports degrade without it.
"""

import time

import pytesseract
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_ocr_engine() -> dict:
    try:
        version = pytesseract.get_tesseract_version()
        return {"status": "healthy", "version": str(version)}
    except (pytesseract.TesseractNotFoundError, OSError):
        return {"status": "degraded", "error": "tesseract not installed; OCR imports unavailable"}


@system_bp.get("/health")
def health():
    """
    Overall status is unhealthy if the database is down, degraded if only
    OCR is missing.
    """
    database = check_database_health()
    ocr = check_ocr_engine()
    if database["status"] != "healthy":
        status, code = "unhealthy", 503
    elif ocr["status"] != "healthy":
        status, code = "degraded", 200
    else:
        status, code = "healthy", 200
    return {
        "status": status,
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database, "ocr": ocr},
    }, code
