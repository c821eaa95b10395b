# Overview: Flask API routes for edition ledger operations; parses input and returns JSON responses.

"""
Edition Ledger API Routes

DESIGN:
- Read side: collector editions (deduplicated + validity-filtered), single
  edition verification, per-product listings, audit history
- Write side (admin token only): resequence, mark invalid, integrity heal,
  platform order ingestion
- Every write returns a structured outcome (applied / reported / failed)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import audit_service, edition_service, ingest_service
from ..services.errors import LedgerError, NotFoundError, ValidationError
from ..decorators import require_admin_token


editions_bp = Blueprint("editions", __name__, url_prefix="/api/editions")


def _ledger_error(e: LedgerError):
    status = 404 if isinstance(e, NotFoundError) else 400 if isinstance(e, ValidationError) else 409
    return jsonify({"error": str(e), "details": e.details}), status


# =============================================================================
# READ SIDE
# =============================================================================

@editions_bp.get("/owners/<path:owner>")
@require_admin_token
def list_owner_editions_route(owner: str):
    """
    Editions held by a collector (email or owner/customer id).

    Returns:
        200: {"owner": ..., "editions": [...]}
    """
    try:
        editions = edition_service.get_valid_editions_for(owner)
        return jsonify({"owner": owner, "total_editions": len(editions), "editions": editions}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to list owner editions")
        return jsonify({"error": "Internal server error"}), 500


@editions_bp.get("/line-items/<line_item_id>")
@require_admin_token
def verify_edition_route(line_item_id: str):
    try:
        return jsonify(edition_service.verify_edition(line_item_id, request.args.get("order_id"))), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to verify edition")
        return jsonify({"error": "Internal server error"}), 500


@editions_bp.get("/line-items/<line_item_id>/history")
@require_admin_token
def edition_history_route(line_item_id: str):
    try:
        return jsonify(edition_service.get_edition_history(line_item_id)), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to load edition history")
        return jsonify({"error": "Internal server error"}), 500


@editions_bp.get("/products/<product_id>")
@require_admin_token
def product_editions_route(product_id: str):
    include_history = request.args.get("include_history", "false").lower() == "true"
    try:
        return jsonify(edition_service.get_product_editions(product_id, include_history=include_history)), 200
    except Exception:
        current_app.logger.exception("Failed to list product editions")
        return jsonify({"error": "Internal server error"}), 500


@editions_bp.get("/products/<product_id>/events")
@require_admin_token
def product_events_route(product_id: str):
    limit = request.args.get("limit", default=100, type=int)
    limit = max(1, min(limit, 500))
    events = audit_service.product_history(product_id, event_type=request.args.get("event_type"), limit=limit)
    return jsonify({"product_id": product_id, "events": [e.to_dict() for e in events]}), 200


@editions_bp.get("/integrity")
@require_admin_token
def validate_integrity_route():
    try:
        report = edition_service.validate_integrity(
            product_id=request.args.get("product_id"),
            owner=request.args.get("owner"),
        )
        return jsonify(report), 200
    except Exception:
        current_app.logger.exception("Failed to validate integrity")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# WRITE SIDE
# =============================================================================

@editions_bp.post("/products/<product_id>/resequence")
@require_admin_token
def resequence_route(product_id: str):
    """
    Recompute dense numbering for one product.

    Returns:
        200: {"result": {"assigned_count", "cleared_count", "valid_count", "outcome"}}
    """
    try:
        result = edition_service.resequence(product_id, actor=g.actor)
        return jsonify({"result": result.to_dict()}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to resequence product %s", product_id)
        return jsonify({"result": {"product_id": product_id, "outcome": "failed"},
                        "error": "Internal server error"}), 500


@editions_bp.post("/products/<product_id>/heal")
@require_admin_token
def heal_route(product_id: str):
    try:
        return jsonify(edition_service.check_and_heal(product_id, actor=g.actor)), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to heal product %s", product_id)
        return jsonify({"error": "Internal server error"}), 500


@editions_bp.post("/line-items/<line_item_id>/invalidate")
@require_admin_token
def mark_invalid_route(line_item_id: str):
    """
    Mark a line item invalid and resequence its product.

    Request body:
    {
        "reason": "removed" | "refunded" | "restocked" | "manual",
        "notes": "Customer swapped for a different print"  (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    reason = data.get("reason")
    if not reason:
        return jsonify({"error": "reason required"}), 400

    try:
        result = edition_service.mark_invalid(line_item_id, reason, notes=data.get("notes"), actor=g.actor)
        return jsonify({"result": result.to_dict()}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to mark line item %s invalid", line_item_id)
        return jsonify({"error": "Internal server error"}), 500


@editions_bp.post("/orders/ingest")
@require_admin_token
def ingest_order_route():
    """
    Upsert a platform order payload (webhook body or re-sync) and resequence.

    Query: skip_editions=true to defer numbering.
    """
    payload = request.get_json(silent=True)
    skip = request.args.get("skip_editions", "false").lower() == "true"
    try:
        result = ingest_service.ingest_platform_order(payload or {}, skip_editions=skip, actor=g.actor)
        return jsonify({"result": result.to_dict()}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to ingest platform order")
        return jsonify({"error": "Internal server error"}), 500
