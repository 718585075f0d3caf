# Overview: Flask API routes for tenant rent payments; parses input and returns JSON responses.

# backend/rentflow/routes/payments.py
"""
Tenant Payment API Routes

WHY: A tenant pays one or more open lease charges with a saved method.
Money moves to the landlord's connected account as a destination charge.

DESIGN:
- Idempotency-Key header (or "idempotency_key" in the body) makes the POST
  safe to retry; the same key with different parameters is a 409
- A submitted payment whose outcome is still pending returns 202
- Failures still report fees and payment_id when they were known

SECURITY:
- TENANT callers only; tenant id comes from the caller identity
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import TenantPayer, error_response, require_actor
from ..services import charge_service
from ..validation import PaymentsError, http_status_for


payments_bp = Blueprint("payments", __name__, url_prefix="/api/tenant/payments")


# =============================================================================
# PAYMENT CREATION
# =============================================================================

@payments_bp.post("/")
@require_actor(TenantPayer)
def process_payment_route():
    """
    Pay lease charges.

    Headers:
        Idempotency-Key: client-chosen key (optional; generated if absent)

    Request body:
    {
        "lease_id": 12,
        "charge_ids": [101, 102],
        "payment_method_id": 7,
        "amount_cents": 200000,           (must equal the sum of the charges)
        "description": "March rent"       (optional)
    }

    Returns:
        201: Payment succeeded
        202: Payment submitted, outcome pending (e.g. ACH processing)
        402: Declined
        409: Idempotency key reused with different parameters, or payouts not configured
        422: Charges or method invalid, amount mismatch
        503: Processor unavailable (retry with the same key)
    """
    try:
        data = request.get_json(silent=True) or {}
        payment_request = charge_service.build_request(
            tenant_id=g.actor.tenant_id,
            lease_id=data.get("lease_id"),
            charge_ids=data.get("charge_ids"),
            payment_method_id=data.get("payment_method_id"),
            amount_cents=data.get("amount_cents"),
            description=data.get("description"),
            idempotency_key=request.headers.get("Idempotency-Key") or data.get("idempotency_key"),
        )
        result = charge_service.process_payment(payment_request)

        if not result.success:
            return jsonify(result.to_dict()), http_status_for(result.failure_code)
        status_code = 202 if result.status == charge_service.TXN_PROCESSING else 201
        return jsonify(result.to_dict()), status_code

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process payment")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("/<int:payment_id>")
@require_actor(TenantPayer)
def get_payment_route(payment_id: int):
    try:
        txn = charge_service.get_transaction(payment_id, tenant_id=g.actor.tenant_id)
        return jsonify({"success": True, "payment": txn.to_dict()}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@payments_bp.get("/")
@require_actor(TenantPayer)
def list_payments_route():
    """
    Payment history, newest first.

    Query params:
        lease_id: filter to one lease
        status: PENDING | PROCESSING | SUCCEEDED | FAILED
        limit: max rows (default 50, max 200)
    """
    try:
        txns = charge_service.list_transactions(
            tenant_id=g.actor.tenant_id,
            lease_id=request.args.get("lease_id", type=int),
            status=request.args.get("status"),
            limit=request.args.get("limit", default=50, type=int),
        )
        return jsonify({"success": True, "payments": [t.to_dict() for t in txns]}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500
