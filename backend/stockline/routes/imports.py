# Overview: Flask API routes for inventory imports; parses input and returns JSON responses.

"""
Import Routes

Session-based import pipeline:
    create session -> upload files -> review preview (edit rows) -> commit

Every response carries success. success=true may include warnings[];
success=false always carries a single error and means nothing was persisted
in that scope.
"""

import base64
import binascii
import csv
import io
import os
import tempfile

from flask import Blueprint, Response, current_app, g, jsonify, request

from ..decorators import require_tenant
from ..services import usage_service
from ..services.import_service import CommitError, commit_import
from ..services.session_service import (
    ImportSessionError,
    ImportSessionNotFoundError,
    UploadedFile,
    get_session_store,
)
from ..validation import ValidationError, parse_commit_options


imports_bp = Blueprint("imports", __name__, url_prefix="/api/imports")

EXTRACT_MODES = ("local", "cloud")

# Extractor failure code -> HTTP status for the direct extraction endpoint
EXTRACT_ERROR_STATUS = {
    "not_configured": 400,
    "unsupported_provider": 400,
    "unsupported_file": 415,
    "engine_unavailable": 503,
    "timeout": 504,
    "http_error": 502,
    "malformed_response": 502,
    "extraction_failed": 422,
}

TEMPLATE_COLUMNS = [
    "name", "sku", "barcode", "category", "description",
    "cost_price", "unit_price", "tax_rate", "quantity",
    "reorder_point", "reorder_quantity", "color", "size",
]
TEMPLATE_ROWS = [
    ["Cotton T-Shirt", "TSH-001", "", "Apparel", "Crew neck tee", "4.50", "12.99", "18", "24", "5", "10", "Blue", "M"],
    ["Ceramic Mug", "", "", "Kitchen", "", "2.10", "7.50", "5", "12", "", "", "White", ""],
]


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _session_error_response(exc: Exception):
    if isinstance(exc, ImportSessionNotFoundError):
        return _error(str(exc), 404)
    if isinstance(exc, ImportSessionError):
        return _error(str(exc), 409)
    return _error(str(exc), 400)


@imports_bp.post("/sessions")
@require_tenant
def create_session_route():
    session_id = get_session_store().create_session(g.tenant_id)
    return jsonify({"success": True, "session_id": session_id}), 201


@imports_bp.post("/sessions/<session_id>/files")
@require_tenant
def upload_files_route(session_id: str):
    files = request.files.getlist("files") or request.files.getlist("file")
    files = [f for f in files if f and f.filename]
    if not files:
        return _error("files are required", 400)

    store = get_session_store()
    tmp_dir = os.path.join(current_app.config["UPLOAD_DIR"], "tmp")
    os.makedirs(tmp_dir, exist_ok=True)

    uploads = []
    try:
        for storage in files:
            fd, tmp_path = tempfile.mkstemp(dir=tmp_dir)
            os.close(fd)
            storage.save(tmp_path)
            uploads.append(
                UploadedFile(
                    filename=storage.filename,
                    path=tmp_path,
                    mime=storage.mimetype,
                    size=os.path.getsize(tmp_path),
                )
            )
        result = store.upload_files(g.tenant_id, session_id, uploads)
        return jsonify({"success": True, **result})
    except (ValidationError, ImportSessionNotFoundError, ImportSessionError) as e:
        return _session_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process import upload")
        return _error("Failed to process upload", 500)
    finally:
        for upload in uploads:
            if os.path.exists(upload.path) and os.path.dirname(upload.path) == tmp_dir:
                os.remove(upload.path)


@imports_bp.get("/sessions/<session_id>/preview")
@require_tenant
def preview_route(session_id: str):
    try:
        preview = get_session_store().get_preview(g.tenant_id, session_id)
    except ImportSessionNotFoundError as e:
        return _session_error_response(e)
    return jsonify({"success": True, **preview})


@imports_bp.get("/sessions/<session_id>")
@require_tenant
def get_session_route(session_id: str):
    try:
        state = get_session_store().get_session(g.tenant_id, session_id)
    except ImportSessionNotFoundError as e:
        return _session_error_response(e)
    return jsonify({"success": True, "session": state})


@imports_bp.put("/sessions/<session_id>/rows")
@require_tenant
def replace_rows_route(session_id: str):
    data = request.get_json(silent=True) or {}
    try:
        state = get_session_store().replace_rows(g.tenant_id, session_id, data.get("rows"))
    except (ValidationError, ImportSessionNotFoundError, ImportSessionError) as e:
        return _session_error_response(e)
    return jsonify({"success": True, "rows": state["rows"], "warnings": state["warnings"]})


@imports_bp.delete("/sessions/<session_id>")
@require_tenant
def delete_session_route(session_id: str):
    try:
        get_session_store().delete_session(g.tenant_id, session_id)
    except ImportSessionNotFoundError as e:
        return _session_error_response(e)
    return jsonify({"success": True})


@imports_bp.post("/sessions/<session_id>/commit")
@require_tenant
def commit_session_route(session_id: str):
    """
    Commit staged rows (or rows supplied in the body) in one transaction.

    Body: {strategy, default_tax, default_category, auto_sku, auto_barcode,
    notes, location_id, rows?}
    """
    data = request.get_json(silent=True) or {}
    try:
        options = parse_commit_options(data)
        summary = commit_import(
            tenant_id=g.tenant_id,
            session_id=session_id,
            options=options,
            rows=data.get("rows"),
            actor=g.actor,
            sessions=get_session_store(),
        )
    except (ValidationError, ImportSessionNotFoundError, ImportSessionError) as e:
        return _session_error_response(e)
    except CommitError as e:
        return _error(str(e), 500)
    except Exception:
        current_app.logger.exception("Failed to commit import")
        return _error("Failed to commit import", 500)
    return jsonify({"success": True, **summary.to_dict()})


def _decode_image(value: str) -> tuple[bytes, str | None]:
    """Accept raw base64 or a data: URL. Returns (bytes, mime from the URL)."""
    mime = None
    if value.startswith("data:") and "," in value:
        header, value = value.split(",", 1)
        mime = header[5:].split(";")[0] or None
    try:
        return base64.b64decode(value, validate=True), mime
    except (binascii.Error, ValueError):
        raise ValidationError("image must be base64 encoded")


@imports_bp.post("/extract")
@require_tenant
def extract_route():
    """
    Extract rows from one base64 image.

    mode=local runs tesseract; mode=cloud calls a vision provider with a
    BYOK key. No automatic fallback between modes. With session_id, rows
    from a successful extraction are appended to that session.
    """
    data = request.get_json(silent=True) or {}
    mode = (data.get("mode") or "local").lower()
    session_id = data.get("session_id")
    try:
        if mode not in EXTRACT_MODES:
            raise ValidationError(f"mode must be one of {', '.join(EXTRACT_MODES)}")
        if not data.get("image"):
            raise ValidationError("image is required")
        image_bytes, url_mime = _decode_image(str(data["image"]))
        mime = data.get("mime_type") or url_mime or "image/jpeg"

        store = get_session_store()
        if session_id:
            store.get_session(g.tenant_id, session_id)

        if mode == "local":
            result = store.extractors["image"].extract_bytes(image_bytes, filename=data.get("filename"))
        else:
            result = current_app.extensions["stockline.vision"].extract(
                base64.b64encode(image_bytes).decode("ascii"),
                mime=mime,
                provider=data.get("provider"),
                model=data.get("model"),
            )
    except (ValidationError, ImportSessionNotFoundError) as e:
        return _session_error_response(e)

    if result.usage is not None:
        usage_service.record_usage(tenant_id=g.tenant_id, sample=result.usage, session_id=session_id)

    if not result.success:
        return jsonify(result.to_dict()), EXTRACT_ERROR_STATUS.get(result.error_code, 422)

    if session_id:
        try:
            store.append_rows(
                g.tenant_id,
                session_id,
                result.rows,
                warnings=result.warnings,
                source_type=result.method,
            )
        except (ImportSessionNotFoundError, ImportSessionError) as e:
            return _session_error_response(e)
    return jsonify(result.to_dict())


@imports_bp.get("/ai-usage")
@require_tenant
def ai_usage_route():
    try:
        stats = usage_service.get_usage_stats(g.tenant_id)
    except Exception:
        current_app.logger.exception("Failed to load extraction usage stats")
        return _error("Failed to load usage stats", 500)
    return jsonify({"success": True, "stats": stats})


@imports_bp.get("/template")
def template_route():
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(TEMPLATE_COLUMNS)
    writer.writerows(TEMPLATE_ROWS)
    return Response(
        buffer.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=inventory_import_template.csv"},
    )
