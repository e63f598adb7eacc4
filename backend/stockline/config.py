# backend/stockline/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockline.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Uploaded source documents are kept here, one folder per import session
    UPLOAD_DIR = os.environ.get("UPLOAD_DIR", os.path.join(os.getcwd(), "storage", "uploads"))
    MAX_CONTENT_LENGTH = int(os.environ.get("MAX_CONTENT_LENGTH", 25 * 1024 * 1024))

    # Shared TTL store for import sessions; unset means process-local memory
    SESSION_STORE_URL = os.environ.get("SESSION_STORE_URL") or os.environ.get("REDIS_URL")
    IMPORT_SESSION_TTL_SECONDS = int(os.environ.get("IMPORT_SESSION_TTL_SECONDS", 3600))
    IMPORT_MAX_FILES = int(os.environ.get("IMPORT_MAX_FILES", 5))
    IMPORT_EXTRACT_WORKERS = int(os.environ.get("IMPORT_EXTRACT_WORKERS", 4))

    DEFAULT_LOCATION_ID = os.environ.get("DEFAULT_LOCATION_ID", "main")

    # BYOK credential service; unset means environment keys only
    KEY_SERVICE_URL = os.environ.get("KEY_SERVICE_URL")
    KEY_SERVICE_TIMEOUT_SECONDS = float(os.environ.get("KEY_SERVICE_TIMEOUT_SECONDS", 3.0))
    KEY_CACHE_SECONDS = int(os.environ.get("KEY_CACHE_SECONDS", 60))

    VISION_TIMEOUT_SECONDS = float(os.environ.get("VISION_TIMEOUT_SECONDS", 60))
    OCR_LANGUAGE = os.environ.get("OCR_LANGUAGE", "eng")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
