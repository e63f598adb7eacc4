# Overview: Request decorators for API routes.

from functools import wraps

from flask import g, jsonify, request


TENANT_HEADER = "X-Tenant-ID"
ACTOR_HEADER = "X-User-ID"


def require_tenant(f):
    """
    Establish tenant context from request headers.

    Tenant resolution (authentication, membership) happens upstream; this
    service trusts the gateway-provided header.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.tenant_id: tenant every query is scoped to - REQUIRED
    - g.actor: acting user id for the ledger (may be None)

    Returns 401 if the tenant header is missing or blank.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
        if not tenant_id:
            return jsonify({"success": False, "error": "Tenant context required"}), 401
        if len(tenant_id) > 64:
            return jsonify({"success": False, "error": "Invalid tenant id"}), 400

        g.tenant_id = tenant_id
        g.actor = (request.headers.get(ACTOR_HEADER) or "").strip() or None
        return f(*args, **kwargs)

    return decorated_function
