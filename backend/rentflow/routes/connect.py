# Overview: Flask API routes for landlord payout accounts (Stripe Connect) and payout policy.

# backend/rentflow/routes/connect.py
"""
Landlord Payout Account API Routes

WHY: Landlords must onboard a connected account before tenants can pay
them. These routes drive onboarding, expose the synced status, and manage
the organization's payout delay and fee policy.

SECURITY:
- Writes require an organization OWNER
- Reads are available to OWNER and MEMBER
- The organization always comes from the caller identity, never the body
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import OrgMember, OrgOwner, System, error_response, require_actor
from ..services import connect_service, payout_policy_service
from ..validation import PaymentsError, require_text


connect_bp = Blueprint("connect", __name__, url_prefix="/api/connect")


# =============================================================================
# ACCOUNT LIFECYCLE
# =============================================================================

@connect_bp.post("/accounts")
@require_actor(OrgOwner)
def create_account_route():
    """
    Create the organization's connected account.

    Request body:
    {
        "business_type": "company",     (individual | company)
        "entity_type": "LLC",           (LLC, LP, S_CORP, C_CORP, TRUST, INDIVIDUAL, OTHER)
        "business_name": "Acme Rentals", (optional)
        "email": "owner@example.com"     (optional)
    }

    Returns:
        201: Account created (status ONBOARDING)
        409: Organization already has an account
        502/503/504: Processor failure
    """
    try:
        data = request.get_json(silent=True) or {}
        account = connect_service.create_account(
            org_id=g.actor.org_id,
            business_type=data.get("business_type"),
            entity_type=data.get("entity_type"),
            business_name=require_text(data.get("business_name"), "business_name", allow_none=True),
            email=require_text(data.get("email"), "email", allow_none=True),
        )
        return jsonify({"success": True, "account": account.to_dict()}), 201

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create connected account")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@connect_bp.get("/status")
@require_actor(OrgOwner, OrgMember)
def account_status_route():
    """Last synced account status (NOT_STARTED when no account exists)."""
    try:
        return jsonify({"success": True, **connect_service.get_account_status(g.actor.org_id)}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get account status")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@connect_bp.post("/onboarding-link")
@require_actor(OrgOwner)
def onboarding_link_route():
    """
    Issue a fresh onboarding link.

    Request body (all optional):
    {
        "refresh_url": "https://...",
        "return_url": "https://..."
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        link = connect_service.get_onboarding_url(
            org_id=g.actor.org_id,
            refresh_url=require_text(data.get("refresh_url"), "refresh_url", max_length=2048, allow_none=True),
            return_url=require_text(data.get("return_url"), "return_url", max_length=2048, allow_none=True),
        )
        expires_at = link["expires_at"]
        return jsonify({
            "success": True,
            "url": link["url"],
            "expires_at": expires_at.isoformat() if expires_at else None,
        }), 200

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create onboarding link")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@connect_bp.post("/sync")
@require_actor(OrgOwner, OrgMember)
def sync_account_route():
    """Pull the account state from the processor now (e.g. after onboarding return)."""
    try:
        status = connect_service.get_account_status(g.actor.org_id)
        if not status["account"]:
            return jsonify({"success": True, **status}), 200
        account = connect_service.sync_account_status(status["account"]["processor_account_id"])
        return jsonify({"success": True, "org_id": g.actor.org_id, "status": account.status,
                        "account": account.to_dict()}), 200

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to sync account status")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@connect_bp.get("/dashboard-link")
@require_actor(OrgOwner)
def dashboard_link_route():
    try:
        url = connect_service.get_express_dashboard_url(g.actor.org_id)
        return jsonify({"success": True, "url": url}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create dashboard link")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@connect_bp.get("/can-accept")
@require_actor(OrgOwner, OrgMember, System)
def can_accept_route():
    """
    Whether the organization can take payments right now.

    SYSTEM callers pass ?org_id=; organization callers get their own.
    """
    try:
        if isinstance(g.actor, System):
            org_id = request.args.get("org_id", type=int)
            if not org_id:
                return jsonify({"success": False,
                                "error": {"code": "VALIDATION_ERROR", "message": "org_id is required"}}), 400
        else:
            org_id = g.actor.org_id
        result = connect_service.can_accept_payments(org_id)
        return jsonify({"success": True, "org_id": org_id, **result.to_dict()}), 200

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to check payment readiness")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


# =============================================================================
# PAYOUT POLICY
# =============================================================================

@connect_bp.get("/payout-settings")
@require_actor(OrgOwner, OrgMember)
def payout_settings_route():
    try:
        return jsonify({"success": True, **payout_policy_service.get_payout_settings(g.actor.org_id)}), 200
    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get payout settings")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@connect_bp.put("/payout-delay")
@require_actor(OrgOwner)
def payout_delay_route():
    """
    Change the payout delay.

    Request body:
    {
        "delay_days": 5
    }

    Returns:
        200: Updated settings
        422: Below the trust-tier minimum or above the maximum
    """
    try:
        data = request.get_json(silent=True) or {}
        payout_policy_service.set_payout_delay(org_id=g.actor.org_id, requested_days=data.get("delay_days"))
        return jsonify({"success": True, **payout_policy_service.get_payout_settings(g.actor.org_id)}), 200

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update payout delay")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500


@connect_bp.put("/fee-policy")
@require_actor(OrgOwner)
def fee_policy_route():
    """
    Request body:
    {
        "fee_policy": "TENANT_PAYS"   (LANDLORD_ABSORBS | TENANT_PAYS | SPLIT_FEES)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        payout_policy_service.set_fee_policy(org_id=g.actor.org_id, policy=data.get("fee_policy"))
        return jsonify({"success": True, **payout_policy_service.get_payout_settings(g.actor.org_id)}), 200

    except PaymentsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update fee policy")
        return jsonify({"success": False, "error": {"code": "INTERNAL", "message": "Internal server error"}}), 500
