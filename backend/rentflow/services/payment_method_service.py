# Overview: Tenant payment instruments (tokenized at the processor) and default selection.

"""
Payment Method Store

WHY: Tenants save a card or bank account once and reuse it for one-time
payments and AutoPay. Only processor tokens and display metadata are kept.

INVARIANTS:
- At most one ACTIVE method per tenant has is_default = True
- The first method a tenant saves becomes the default
- Removal is soft (status REMOVED); rows stay for history and AutoPay

CONCURRENCY:
- Changes to a tenant's method set lock the tenant row (SELECT ... FOR UPDATE)
  so concurrent default changes serialize
- Processor calls are made before taking or after releasing that lock
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import AutoPaySchedule, PaymentMethod, ProcessorCustomer, Tenant
from rentflow.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .event_service import METHOD_DEFAULT_CHANGED, METHOD_REMOVED, METHOD_SAVED, emit
from .fee_service import (
    METHOD_CARD,
    METHOD_US_BANK_ACCOUNT,
    VALID_METHOD_CLASSES,
)
from .processor import get_processor, stripe_method_type
from ..validation import (
    ConflictError,
    NotFound,
    PaymentMethodInvalid,
    PaymentsError,
    ValidationError,
    require_choice,
    require_text,
)

logger = logging.getLogger(__name__)


METHOD_STATUS_ACTIVE = "ACTIVE"
METHOD_STATUS_REMOVED = "REMOVED"

DEFAULT_SETUP_CLASSES = [METHOD_CARD, METHOD_US_BANK_ACCOUNT]

def _get_tenant(tenant_id: int, *, lock: bool = False) -> Tenant:
    query = db.session.query(Tenant).filter_by(id=tenant_id)
    if lock:
        query = lock_for_update(query)
    tenant = query.first()
    if not tenant:
        raise NotFound(f"Tenant {tenant_id} not found")
    return tenant


def _active_method(tenant_id: int, method_id: int) -> PaymentMethod:
    method = db.session.query(PaymentMethod).filter_by(
        id=method_id, tenant_id=tenant_id, status=METHOD_STATUS_ACTIVE
    ).first()
    if not method:
        raise NotFound("Payment method not found")
    return method


def _sync_processor_default(customer_id: str, processor_method_id: str) -> None:
    """Best effort: charges always name the method explicitly."""
    try:
        get_processor().set_customer_default_method(customer_id, processor_method_id)
    except PaymentsError as exc:
        logger.warning("Failed to set processor default %s for %s: %s", processor_method_id, customer_id, exc)


# =============================================================================
# CUSTOMERS AND SETUP SESSIONS
# =============================================================================

def get_or_create_customer(tenant_id: int) -> ProcessorCustomer:
    """Processor-side customer record for a tenant (created once)."""
    existing = db.session.query(ProcessorCustomer).filter_by(tenant_id=tenant_id).first()
    if existing:
        return existing

    tenant = _get_tenant(tenant_id)
    email, name, phone = tenant.email, tenant.full_name, tenant.phone
    db.session.commit()

    customer_id = get_processor().create_customer(
        tenant_id=tenant_id,
        email=email,
        name=name,
        phone=phone,
        idempotency_key=f"tenant-{tenant_id}-customer",
    )

    customer = ProcessorCustomer(tenant_id=tenant_id, processor_customer_id=customer_id, email=email)
    db.session.add(customer)
    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent request recorded it first
        db.session.rollback()
        customer = db.session.query(ProcessorCustomer).filter_by(tenant_id=tenant_id).first()
        if not customer:
            raise
        return customer

    logger.info("Processor customer %s created for tenant %s", customer_id, tenant_id)
    return customer


def create_setup_session(*, tenant_id: int, method_classes: list[str] | None = None,
                         return_url: str | None = None) -> dict:
    """
    Start collecting a new instrument; the client confirms with client_secret.

    Raises:
        NotFound: Tenant unknown
        ValidationError: Unknown method class
    """
    classes = [require_choice(c, VALID_METHOD_CLASSES, "method_class") for c in (method_classes or DEFAULT_SETUP_CLASSES)]
    processor_types = []
    for method_class in classes:
        processor_type = stripe_method_type(method_class)
        if processor_type not in processor_types:
            processor_types.append(processor_type)

    customer = get_or_create_customer(tenant_id)
    session = get_processor().create_setup_session(
        customer_id=customer.processor_customer_id,
        payment_method_types=processor_types,
        return_url=return_url,
        tenant_id=tenant_id,
    )
    return {
        "setup_intent_id": session.setup_intent_id,
        "client_secret": session.client_secret,
        "customer_id": session.customer_id,
        "payment_method_types": session.payment_method_types,
        "return_url": session.return_url,
    }


# =============================================================================
# METHOD MANAGEMENT
# =============================================================================

def save_method(
    *,
    tenant_id: int,
    processor_method_id: str,
    set_as_default: bool = False,
    nickname: str | None = None,
) -> PaymentMethod:
    """
    Attach a collected instrument to the tenant's customer and record it.

    Saving an already-recorded method for the same tenant returns it,
    made default first when set_as_default asks for it.

    Raises:
        NotFound: Tenant or processor customer missing
        PaymentMethodInvalid: Token belongs to someone else or was removed
        ProcessorError: Attach failed
    """
    processor_method_id = require_text(processor_method_id, "processor_method_id", max_length=64)
    nickname = require_text(nickname, "nickname", max_length=64, allow_none=True)

    _get_tenant(tenant_id)
    customer = db.session.query(ProcessorCustomer).filter_by(tenant_id=tenant_id).first()
    if not customer:
        raise NotFound("Processor customer not found for tenant")
    customer_id = customer.processor_customer_id

    existing = db.session.query(PaymentMethod).filter_by(processor_method_id=processor_method_id).first()
    if existing:
        if existing.tenant_id != tenant_id:
            raise PaymentMethodInvalid("Payment method belongs to another payer")
        if existing.status != METHOD_STATUS_ACTIVE:
            raise PaymentMethodInvalid("Payment method was removed; collect it again")
        if set_as_default and not existing.is_default:
            return set_default(tenant_id=tenant_id, method_id=existing.id)
        return existing
    db.session.commit()

    details = get_processor().attach_payment_method(processor_method_id, customer_id)

    def _op():
        _get_tenant(tenant_id, lock=True)

        active = db.session.query(PaymentMethod).filter_by(
            tenant_id=tenant_id, status=METHOD_STATUS_ACTIVE
        ).all()
        make_default = bool(set_as_default) or not active
        if make_default:
            for other in active:
                other.is_default = False

        method = PaymentMethod(
            tenant_id=tenant_id,
            processor_method_id=details.method_id,
            processor_customer_id=customer_id,
            method_class=details.method_class,
            is_default=make_default,
            nickname=nickname,
            status=METHOD_STATUS_ACTIVE,
            card_brand=details.card_brand,
            last4=details.last4,
            exp_month=details.exp_month,
            exp_year=details.exp_year,
            bank_name=details.bank_name,
            wallet_type=details.wallet_type,
        )
        db.session.add(method)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            again = db.session.query(PaymentMethod).filter_by(processor_method_id=details.method_id).first()
            if again and again.tenant_id == tenant_id:
                return again, False
            raise
        return method, True

    method, created = run_with_retry(_op)
    if not created:
        return method

    if method.is_default:
        _sync_processor_default(customer_id, method.processor_method_id)

    logger.info("Payment method %s saved for tenant %s (default=%s)", method.id, tenant_id, method.is_default)
    emit(METHOD_SAVED, entity_type="payment_method", entity_id=method.id, tenant_id=tenant_id,
         method_class=method.method_class, is_default=method.is_default)
    return method


def set_default(*, tenant_id: int, method_id: int) -> PaymentMethod:
    """Make one active method the tenant's default; all others are cleared."""
    method = _active_method(tenant_id, method_id)
    customer_id, processor_method_id = method.processor_customer_id, method.processor_method_id
    db.session.commit()

    # Processor first: a failure leaves the local default unchanged
    get_processor().set_customer_default_method(customer_id, processor_method_id)

    def _op():
        _get_tenant(tenant_id, lock=True)
        target = _active_method(tenant_id, method_id)
        others = db.session.query(PaymentMethod).filter(
            PaymentMethod.tenant_id == tenant_id,
            PaymentMethod.is_default.is_(True),
            PaymentMethod.id != method_id,
        ).all()
        for other in others:
            other.is_default = False
        target.is_default = True
        db.session.commit()
        return target

    method = run_with_retry(_op)
    logger.info("Payment method %s is now default for tenant %s", method_id, tenant_id)
    emit(METHOD_DEFAULT_CHANGED, entity_type="payment_method", entity_id=method_id, tenant_id=tenant_id)
    return method


def update_nickname(*, tenant_id: int, method_id: int, nickname: str | None) -> PaymentMethod:
    nickname = require_text(nickname, "nickname", max_length=64, allow_none=True)

    def _op():
        method = _active_method(tenant_id, method_id)
        method.nickname = nickname
        db.session.commit()
        return method

    return run_with_retry(_op)


def remove(*, tenant_id: int, method_id: int) -> PaymentMethod:
    """
    Soft-remove a method, then detach it at the processor.

    Local state is authoritative: the method is unusable as soon as the
    commit lands. A failed detach is logged, not retried here.

    Raises:
        NotFound: Method not active for this tenant
        ConflictError: An active AutoPay schedule uses the method
    """
    def _op():
        _get_tenant(tenant_id, lock=True)
        method = _active_method(tenant_id, method_id)

        in_use = db.session.query(AutoPaySchedule).filter_by(
            payment_method_id=method_id, active=True
        ).first()
        if in_use:
            raise ConflictError(
                "Payment method is used by an active AutoPay schedule; cancel or change the schedule first"
            )

        was_default = method.is_default
        method.status = METHOD_STATUS_REMOVED
        method.is_default = False
        method.removed_at = utcnow()

        promoted = None
        if was_default:
            promoted = db.session.query(PaymentMethod).filter(
                PaymentMethod.tenant_id == tenant_id,
                PaymentMethod.status == METHOD_STATUS_ACTIVE,
                PaymentMethod.id != method_id,
            ).order_by(PaymentMethod.created_at.desc(), PaymentMethod.id.desc()).first()
            if promoted:
                promoted.is_default = True

        db.session.commit()
        return method, promoted

    method, promoted = run_with_retry(_op)
    logger.info("Payment method %s removed for tenant %s", method_id, tenant_id)

    try:
        get_processor().detach_payment_method(method.processor_method_id)
    except PaymentsError as exc:
        logger.warning("Detach of %s failed after local removal: %s", method.processor_method_id, exc)

    if promoted:
        _sync_processor_default(promoted.processor_customer_id, promoted.processor_method_id)
        emit(METHOD_DEFAULT_CHANGED, entity_type="payment_method", entity_id=promoted.id, tenant_id=tenant_id)

    emit(METHOD_REMOVED, entity_type="payment_method", entity_id=method_id, tenant_id=tenant_id,
         promoted_method_id=promoted.id if promoted else None)
    return method


# =============================================================================
# READS
# =============================================================================

def list_methods(tenant_id: int) -> list[PaymentMethod]:
    """Active methods, default first."""
    _get_tenant(tenant_id)
    return db.session.query(PaymentMethod).filter_by(
        tenant_id=tenant_id, status=METHOD_STATUS_ACTIVE
    ).order_by(
        PaymentMethod.is_default.desc(),
        PaymentMethod.created_at.desc(),
        PaymentMethod.id.desc(),
    ).all()


def get_method(*, tenant_id: int, method_id: int) -> PaymentMethod:
    if isinstance(method_id, bool) or not isinstance(method_id, int):
        raise ValidationError("method_id must be an integer id")
    return _active_method(tenant_id, method_id)
