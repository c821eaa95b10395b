# Overview: Request decorators for the internal admin API routes.

import hmac
from functools import wraps
from flask import current_app, request, jsonify, g


def require_admin_token(f):
    """
    Require the shared admin bearer token.

    Sets g.actor from the X-Ledger-Actor header (falls back to "admin_api")
    so audit rows carry who triggered the change.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Token does not match ADMIN_API_TOKEN
    Returns 503 if no ADMIN_API_TOKEN is configured.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_TOKEN")
        if not expected:
            return jsonify({"error": "Admin API is not configured"}), 503

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        if not hmac.compare_digest(token, expected):
            current_app.logger.warning("Rejected admin token for %s %s", request.method, request.path)
            return jsonify({"error": "Invalid token"}), 401

        g.actor = request.headers.get("X-Ledger-Actor") or "admin_api"
        return f(*args, **kwargs)

    return decorated_function
