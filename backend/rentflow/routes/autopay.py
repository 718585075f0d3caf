# Overview: Flask API routes for a tenant's AutoPay schedules.

# backend/rentflow/routes/autopay.py
"""
AutoPay API Routes

One schedule per lease. The scheduler itself runs from the CLI
(`flask payments run-autopay`); these routes only manage the schedules.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import TenantPayer, error_response, require_actor
from ..services import autopay_service
from ..validation import PaymentsError, ValidationError, coerce_id


autopay_bp = Blueprint("autopay", __name__, url_prefix="/api/tenant/autopay")


def _schedule_payload(schedule) -> dict:
    data = schedule.to_dict()
    next_date = autopay_service.next_payment_date(schedule)
    data["next_payment_date"] = next_date.isoformat() if next_date else None
    return data


@autopay_bp.post("/")
@require_actor(TenantPayer)
def setup_autopay_route():
    """
    Turn on AutoPay for a lease.

    Request body:
    {
        "lease_id": 12,
        "payment_method_id": 7,
        "day_of_month": 1,                (1-31; 29-31 run on the 28th)
        "amount_mode": "FULL_BALANCE",    (optional: FULL_BALANCE | FIXED)
        "amount_cents": 150000,           (required for FIXED)
        "charge_types": ["RENT"]          (optional)
    }

    Returns:
        201: Schedule active
        404: Lease not found or not active
        409: AutoPay already active for this lease
    """
    try:
        data = request.get_json(silent=True) or {}
        schedule = autopay_service.setup_autopay(
            tenant_id=g.actor.tenant_id,
            lease_id=coerce_id(data.get("lease_id"), "lease_id"),
            payment_method_id=data.get("payment_method_id"),
            day_of_month=data.get("day_of_month"),
            amount_mode=data.get("amount_mode"),
            amount_cents=data.get("amount_cents"),
            charge_types=data.get("charge_types"),
        )
        return jsonify({"success": True, "autopay": _schedule_payload(schedule)}), 201

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set up AutoPay")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@autopay_bp.get("/")
@require_actor(TenantPayer)
def list_autopay_route():
    try:
        schedules = autopay_service.list_for_tenant(g.actor.tenant_id)
        return jsonify({"success": True, "autopay": [_schedule_payload(s) for s in schedules]}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list AutoPay schedules")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@autopay_bp.get("/<int:lease_id>")
@require_actor(TenantPayer)
def get_autopay_route(lease_id: int):
    try:
        schedule = autopay_service.get_autopay(tenant_id=g.actor.tenant_id, lease_id=lease_id)
        return jsonify({"success": True, "autopay": _schedule_payload(schedule)}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get AutoPay schedule")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@autopay_bp.patch("/<int:lease_id>")
@require_actor(TenantPayer)
def update_autopay_route(lease_id: int):
    """
    Change an active schedule. Body may contain any of payment_method_id,
    day_of_month, amount_mode, amount_cents, charge_types.
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            raise ValidationError("Request body must be a non-empty JSON object")
        if "tenant_id" in data or "lease_id" in data:
            raise ValidationError("tenant_id and lease_id cannot be changed")
        schedule = autopay_service.update_autopay(tenant_id=g.actor.tenant_id, lease_id=lease_id, **data)
        return jsonify({"success": True, "autopay": _schedule_payload(schedule)}), 200

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update AutoPay schedule")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@autopay_bp.delete("/<int:lease_id>")
@require_actor(TenantPayer)
def cancel_autopay_route(lease_id: int):
    try:
        schedule = autopay_service.cancel_autopay(tenant_id=g.actor.tenant_id, lease_id=lease_id)
        return jsonify({"success": True, "autopay": _schedule_payload(schedule)}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel AutoPay")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500
