# Overview: Flask API routes for order reconciliation against the commerce platform.

"""
Flow:
- GET  /compare           read-only report (never writes)
- POST /orders/<id>/apply apply reviewed fields (human-in-the-loop)
- POST /orders/<id>/sync  fetch from platform and apply differing fields,
                          except paid + cancelled + unfulfilled orders
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_store, reconciliation_service
from ..services.dedupe_service import duplicate_groups
from ..services.errors import LedgerError, NotFoundError, ValidationError
from ..decorators import require_admin_token

reconciliation_bp = Blueprint("reconciliation", __name__, url_prefix="/api/reconciliation")


def _ledger_error(e: LedgerError):
    status = 404 if isinstance(e, NotFoundError) else 400 if isinstance(e, ValidationError) else 409
    return jsonify({"error": str(e), "details": e.details}), status


@reconciliation_bp.get("/compare")
@require_admin_token
def compare_route():
    order_ref = request.args.get("order") or request.args.get("orderNumber")
    limit = request.args.get("limit", default=current_app.config["RECONCILE_DEFAULT_LIMIT"], type=int)
    limit = max(1, min(limit, 1000))

    try:
        report = reconciliation_service.compare(order_ref, limit)
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to compare orders")
        return jsonify({"success": False, "error": "Failed to compare orders"}), 500

    body = report.to_dict()
    body["success"] = True
    return jsonify(body), 200


@reconciliation_bp.post("/orders/<order_id>/apply")
@require_admin_token
def apply_correction_route(order_id: str):
    """
    Request body:
    {
        "fields": {"financial_status": "voided", "cancelled_at": "2024-05-01T10:00:00Z"}
    }
    """
    data = request.get_json(silent=True) or {}
    fields = data.get("fields")
    if not isinstance(fields, dict) or not fields:
        return jsonify({"error": "fields object required"}), 400

    try:
        result = reconciliation_service.apply_correction(order_id, fields, actor=g.actor)
        return jsonify({"result": result.to_dict()}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to apply correction to order %s", order_id)
        return jsonify({"result": {"order_id": order_id, "outcome": "failed"},
                        "error": "Internal server error"}), 500


@reconciliation_bp.post("/orders/<order_id>/sync")
@require_admin_token
def apply_sync_route(order_id: str):
    try:
        result = reconciliation_service.apply_sync(order_id, actor=g.actor)
        return jsonify({"result": result.to_dict()}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to sync order %s", order_id)
        return jsonify({"result": {"order_id": order_id, "outcome": "failed"},
                        "error": "Internal server error"}), 500


@reconciliation_bp.get("/duplicates")
@require_admin_token
def duplicates_route():
    """Order rows sharing a canonical key, with the row consumers will see."""
    customer = request.args.get("customer")
    orders = order_store.find_orders(customer=customer) if customer else order_store.find_orders()
    groups = duplicate_groups(orders)
    return jsonify({"groups": [grp.to_dict() for grp in groups], "count": len(groups)}), 200
