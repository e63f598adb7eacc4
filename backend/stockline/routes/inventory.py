# backend/stockline/routes/inventory.py
"""
Inventory routes.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- since filtering is inclusive: created_at >= since.
"""
from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..decorators import require_tenant
from ..services import inventory_service
from ..services.inventory_service import ProductNotFoundError
from ..time_utils import parse_since
from ..validation import ValidationError, parse_adjust_payload


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

MAX_LEDGER_LIMIT = 500


@inventory_bp.post("/adjust")
@require_tenant
def adjust_inventory_route():
    """
    Adjust stock for one product (corrections, shrink, recounts).

    Rejected with 400 when the result would be negative; nothing is written.
    """
    payload = request.get_json(silent=True) or {}
    try:
        params = parse_adjust_payload(payload)
        result = inventory_service.adjust_stock(tenant_id=g.tenant_id, actor=g.actor, **params)
    except ValidationError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except ProductNotFoundError as e:
        return jsonify({"success": False, "error": str(e)}), 404
    except (OperationalError, StaleDataError):
        current_app.logger.exception("Stock adjustment contended past retries")
        return jsonify({"success": False, "error": "Inventory is busy, please retry"}), 503
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return jsonify({"success": False, "error": "Failed to adjust inventory"}), 500
    return jsonify({"success": True, **result})


@inventory_bp.get("/<int:product_id>")
@require_tenant
def stock_level_route(product_id: int):
    try:
        stock = inventory_service.get_stock_level(
            g.tenant_id, product_id, location_id=request.args.get("location_id")
        )
    except ProductNotFoundError as e:
        return jsonify({"success": False, "error": str(e)}), 404
    return jsonify({"success": True, "stock": stock})


@inventory_bp.get("/<int:product_id>/ledger")
@require_tenant
def ledger_route(product_id: int):
    try:
        since = parse_since(request.args.get("since"))
    except ValueError:
        return jsonify({"success": False, "error": "since must be an ISO-8601 datetime"}), 400
    try:
        limit = int(request.args.get("limit", 100))
    except ValueError:
        return jsonify({"success": False, "error": "limit must be an integer"}), 400
    limit = max(1, min(limit, MAX_LEDGER_LIMIT))

    try:
        entries = inventory_service.list_ledger_entries(
            g.tenant_id,
            product_id,
            location_id=request.args.get("location_id"),
            since=since,
            limit=limit,
        )
    except ProductNotFoundError as e:
        return jsonify({"success": False, "error": str(e)}), 404
    return jsonify({"success": True, "entries": entries})
