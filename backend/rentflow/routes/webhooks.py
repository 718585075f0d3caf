# Overview: Inbound processor results: generic reconcile endpoint and the Stripe webhook.

# backend/rentflow/routes/webhooks.py
"""
Processor Result API Routes

- POST /api/webhooks/reconcile: internal callers (SYSTEM) report a final
  processor result for a transaction
- POST /api/webhooks/stripe: Stripe event delivery; authenticated by the
  Stripe-Signature header, deduplicated by event id

Stripe retries any non-2xx response, so only signature failures return 400
and genuine errors return 500.
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import System, error_response, require_actor
from ..services import charge_service, webhook_service
from ..services.processor import get_processor
from ..validation import PaymentsError, coerce_id, require_text


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/reconcile")
@require_actor(System)
def reconcile_route():
    """
    Apply an asynchronous processor result.

    Request body:
    {
        "processor_charge_id": "pi_123",   (or "payment_id")
        "payment_id": 42,                  (optional fallback)
        "final_status": "SUCCEEDED",       (PROCESSING | SUCCEEDED | FAILED)
        "failure_reason": "...",           (optional)
        "receipt_url": "https://..."       (optional)
    }

    Returns:
        200: Transaction after applying the result (late results on a final
             transaction are ignored)
        404: No matching transaction
    """
    try:
        data = request.get_json(silent=True) or {}
        payment_id = data.get("payment_id")
        txn = charge_service.reconcile_transaction(
            require_text(data.get("processor_charge_id"), "processor_charge_id", allow_none=True),
            data.get("final_status"),
            failure_reason=require_text(data.get("failure_reason"), "failure_reason", max_length=500, allow_none=True),
            payment_id=coerce_id(payment_id, "payment_id") if payment_id is not None else None,
            receipt_url=require_text(data.get("receipt_url"), "receipt_url", max_length=2048, allow_none=True),
        )
        return jsonify({"success": True, "payment": txn.to_dict()}), 200

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reconcile transaction")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")
    try:
        event = get_processor().construct_webhook_event(payload, signature)
    except PaymentsError as e:
        current_app.logger.warning("Rejected webhook delivery: %s", e.message)
        return error_response(e)

    try:
        outcome = webhook_service.handle_event(event)
        return jsonify({"success": True, **outcome}), 200
    except PaymentsError as e:
        current_app.logger.warning("Webhook %s failed: %s", event["id"], e.message)
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to handle webhook event %s", event["id"])
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500
