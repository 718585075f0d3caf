# Overview: Flask API routes for a tenant's saved payment methods.

# backend/rentflow/routes/payment_methods.py
"""
Tenant Payment Method API Routes

Collection happens client-side against the processor: the tenant starts a
setup session here, confirms it in the browser, then posts the resulting
processor method id back to be saved.

SECURITY:
- TENANT callers only; the tenant always comes from the caller identity
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import TenantPayer, error_response, require_actor
from ..services import payment_method_service
from ..validation import PaymentsError, ValidationError, require_text


payment_methods_bp = Blueprint("payment_methods", __name__, url_prefix="/api/tenant/payment-methods")


def _internal_error(message: str):
    current_app.logger.exception(message)
    return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@payment_methods_bp.get("/")
@require_actor(TenantPayer)
def list_methods_route():
    """Active methods, default first."""
    try:
        methods = payment_method_service.list_methods(g.actor.tenant_id)
        return jsonify({"success": True, "payment_methods": [m.to_dict() for m in methods]}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to list payment methods")


@payment_methods_bp.post("/setup-session")
@require_actor(TenantPayer)
def setup_session_route():
    """
    Start collecting a new method.

    Request body (optional):
    {
        "method_classes": ["CARD", "US_BANK_ACCOUNT"],
        "return_url": "https://..."
    }

    Returns:
        201: {setup_intent_id, client_secret, customer_id, payment_method_types, return_url}
    """
    try:
        data = request.get_json(silent=True) or {}
        method_classes = data.get("method_classes")
        if method_classes is not None and not isinstance(method_classes, list):
            raise ValidationError("method_classes must be a list")
        session = payment_method_service.create_setup_session(
            tenant_id=g.actor.tenant_id,
            method_classes=method_classes,
            return_url=require_text(data.get("return_url"), "return_url", max_length=2048, allow_none=True),
        )
        return jsonify({"success": True, **session}), 201

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to create setup session")


@payment_methods_bp.post("/")
@require_actor(TenantPayer)
def save_method_route():
    """
    Save a confirmed processor method.

    Request body:
    {
        "processor_method_id": "pm_123",
        "set_as_default": true,   (optional)
        "nickname": "Checking"    (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        method = payment_method_service.save_method(
            tenant_id=g.actor.tenant_id,
            processor_method_id=require_text(data.get("processor_method_id"), "processor_method_id"),
            set_as_default=bool(data.get("set_as_default", False)),
            nickname=data.get("nickname"),
        )
        return jsonify({"success": True, "payment_method": method.to_dict()}), 201

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to save payment method")


@payment_methods_bp.get("/<int:method_id>")
@require_actor(TenantPayer)
def get_method_route(method_id: int):
    try:
        method = payment_method_service.get_method(tenant_id=g.actor.tenant_id, method_id=method_id)
        return jsonify({"success": True, "payment_method": method.to_dict()}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to get payment method")


@payment_methods_bp.put("/<int:method_id>/default")
@require_actor(TenantPayer)
def set_default_route(method_id: int):
    try:
        method = payment_method_service.set_default(tenant_id=g.actor.tenant_id, method_id=method_id)
        return jsonify({"success": True, "payment_method": method.to_dict()}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to set default payment method")


@payment_methods_bp.patch("/<int:method_id>")
@require_actor(TenantPayer)
def update_method_route(method_id: int):
    """
    Request body:
    {
        "nickname": "Joint checking"   (null clears it)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        method = payment_method_service.update_nickname(
            tenant_id=g.actor.tenant_id,
            method_id=method_id,
            nickname=data.get("nickname"),
        )
        return jsonify({"success": True, "payment_method": method.to_dict()}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to update payment method")


@payment_methods_bp.delete("/<int:method_id>")
@require_actor(TenantPayer)
def remove_method_route(method_id: int):
    """
    Returns:
        200: Method removed
        409: An active AutoPay schedule uses this method
    """
    try:
        method = payment_method_service.remove(tenant_id=g.actor.tenant_id, method_id=method_id)
        return jsonify({"success": True, "payment_method": method.to_dict()}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to remove payment method")
