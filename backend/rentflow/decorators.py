# Overview: Caller identity and role gating for API routes.

"""
Identity comes from the upstream gateway, which authenticates the caller and
forwards who they are in headers:

    X-Actor-Role:      OWNER | MEMBER | TENANT | SYSTEM
    X-Organization-Id: organization the caller acts for (OWNER, MEMBER, TENANT)
    X-Tenant-Id:       payer id (TENANT)

Routes never look at raw headers; they declare which actor kinds may call
them and read the typed actor from g.actor.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Union

from flask import g, jsonify, request

from .validation import PaymentsError


@dataclass(frozen=True)
class OrgOwner:
    org_id: int


@dataclass(frozen=True)
class OrgMember:
    org_id: int


@dataclass(frozen=True)
class TenantPayer:
    org_id: int
    tenant_id: int


@dataclass(frozen=True)
class System:
    pass


Actor = Union[OrgOwner, OrgMember, TenantPayer, System]


def _header_id(name: str) -> int | None:
    raw = (request.headers.get(name) or "").strip()
    if not raw.isdigit() or int(raw) <= 0:
        return None
    return int(raw)


def actor_from_request() -> Actor | None:
    """Typed actor for the current request, or None if the headers are incomplete."""
    role = (request.headers.get("X-Actor-Role") or "").strip().upper()
    org_id = _header_id("X-Organization-Id")

    if role == "SYSTEM":
        return System()
    if role == "OWNER" and org_id:
        return OrgOwner(org_id=org_id)
    if role == "MEMBER" and org_id:
        return OrgMember(org_id=org_id)
    if role == "TENANT" and org_id:
        tenant_id = _header_id("X-Tenant-Id")
        if tenant_id:
            return TenantPayer(org_id=org_id, tenant_id=tenant_id)
    return None


def error_response(error: PaymentsError):
    """Standard JSON failure body for an expected business error."""
    return jsonify({"success": False, "error": error.to_dict()}), error.http_status


def require_actor(*kinds):
    """
    Require a gateway-identified caller of one of the given actor types.

    Sets g.actor. Returns 401 when identity is missing, 403 when the actor
    kind is not allowed.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor = actor_from_request()
            if actor is None:
                return jsonify({
                    "success": False,
                    "error": {"code": "UNAUTHENTICATED", "message": "Caller identity required"},
                }), 401
            if kinds and not isinstance(actor, kinds):
                return jsonify({
                    "success": False,
                    "error": {"code": "FORBIDDEN", "message": "Not allowed for this role"},
                }), 403
            g.actor = actor
            return f(*args, **kwargs)
        return decorated_function
    return decorator
