# backend/edition_ledger/routes/system.py
"""
System health and version endpoints.

Health reports ledger table counts and whether the commerce platform
credentials are configured. It never calls the platform.
"""

import sys
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, LineItem, EditionEvent
from edition_ledger.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        line_item_count = db.session.query(LineItem).count()
        event_count = db.session.query(EditionEvent).count()
        numbered = db.session.query(LineItem).filter(LineItem.edition_number.isnot(None)).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "line_items": line_item_count,
                "numbered_line_items": numbered,
                "edition_events": event_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_platform_config() -> dict:
    configured = bool(current_app.config.get("SHOPIFY_SHOP") and current_app.config.get("SHOPIFY_ACCESS_TOKEN"))
    if not configured:
        return {"status": "degraded", "warning": "Platform credentials not configured; reconciliation unavailable"}
    return {"status": "healthy", "details": {"api_version": current_app.config["SHOPIFY_API_VERSION"]}}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (reconciliation disabled)
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    platform_health = check_platform_config()

    checks = [database_health, platform_health]
    if any(c["status"] == "unhealthy" for c in checks):
        overall_status, http_status = "unhealthy", 503
    elif any(c["status"] == "degraded" for c in checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "platform": platform_health,
        }
    }, http_status


@system_bp.get("/version")
def version():
    env = "production" if not current_app.debug else "development"
    return {
        "api_version": "0.1.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
