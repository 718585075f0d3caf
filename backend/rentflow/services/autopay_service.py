# Overview: Recurring monthly rent payments from a saved payment method.

"""
AutoPay Scheduler

WHY: Most tenants want rent to just happen. A schedule is a standing
instruction; run_due turns it into one Charge Processor call per billing
month, with spaced retries when a payment fails.

RULES:
- day_of_month 1-28 (29-31 are clamped to 28 so no month is skipped)
- One row per (tenant, lease); cancel deactivates, setup reactivates
- One charge attempt per schedule per billing month; the idempotency key
  is derived from (schedule, month) so a re-run can never double-charge
- A failure never cancels the schedule; consecutive_failures lets the
  caller-side policy (disable_failing_schedules) switch it off
- PROCESSING is not a failure; the final result is carried onto the
  schedule when the charge settles (settle_transaction_result)
"""

from __future__ import annotations

import logging
from calendar import monthrange
from datetime import date, datetime, time, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import AutoPaySchedule, Lease, LeaseCharge, PaymentMethod, PaymentTransaction, TransactionCharge
from rentflow.time_utils import as_of_timestamp, billing_period, to_naive_utc, utcnow
from .charge_service import (
    FINAL_STATUSES,
    IN_FLIGHT_STATUSES,
    SOURCE_AUTOPAY,
    TXN_PROCESSING,
    TXN_SUCCEEDED,
    build_request,
    process_payment,
    resume_transaction,
)
from .concurrency import lock_for_update, run_with_retry
from .event_service import (
    AUTOPAY_CANCELLED,
    AUTOPAY_CREATED,
    AUTOPAY_DISABLED,
    AUTOPAY_RUN,
    AUTOPAY_UPDATED,
    emit,
)
from ..validation import (
    ConflictError,
    NotActive,
    NotFound,
    PaymentMethodInvalid,
    ValidationError,
    coerce_cents,
    coerce_id,
    require_choice,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

AMOUNT_MODE_FIXED = "FIXED"
AMOUNT_MODE_FULL_BALANCE = "FULL_BALANCE"
VALID_AMOUNT_MODES = [AMOUNT_MODE_FIXED, AMOUNT_MODE_FULL_BALANCE]

CHARGE_TYPES = ["RENT", "LATE_FEE", "UTILITY", "DEPOSIT", "OTHER"]
DEFAULT_CHARGE_TYPES = ["RENT"]

MAX_DAY_OF_MONTH = 28

RESULT_SUCCEEDED = "SUCCEEDED"
RESULT_PROCESSING = "PROCESSING"
RESULT_FAILED = "FAILED"
RESULT_NO_CHARGES = "NO_CHARGES"
RESULT_ERROR = "ERROR"

DEFAULT_RETRY_DELAYS_DAYS = (1, 3, 7)


def normalize_day_of_month(value) -> int:
    """1-28 as given; 29-31 become 28; anything else is rejected."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("day_of_month must be an integer")
    if value < 1 or value > 31:
        raise ValidationError("Day of month must be between 1 and 28")
    return min(value, MAX_DAY_OF_MONTH)


def _normalize_charge_types(values) -> list[str]:
    if values is None:
        return list(DEFAULT_CHARGE_TYPES)
    if not isinstance(values, (list, tuple)) or not values:
        raise ValidationError("charge_types must be a non-empty list")
    normalized = []
    for value in values:
        charge_type = require_choice(value, CHARGE_TYPES, "charge_type")
        if charge_type not in normalized:
            normalized.append(charge_type)
    return normalized


def _resolve_amount(amount_mode, amount_cents) -> tuple[str, int | None]:
    if amount_mode is None:
        amount_mode = AMOUNT_MODE_FIXED if amount_cents is not None else AMOUNT_MODE_FULL_BALANCE
    amount_mode = require_choice(amount_mode, VALID_AMOUNT_MODES, "amount_mode")
    if amount_mode == AMOUNT_MODE_FIXED:
        return amount_mode, coerce_cents(amount_cents, "amount_cents")
    return amount_mode, None


def _tenant_method(tenant_id: int, method_id: int) -> PaymentMethod:
    method = db.session.query(PaymentMethod).filter_by(
        id=method_id, tenant_id=tenant_id, status="ACTIVE"
    ).first()
    if not method:
        raise PaymentMethodInvalid("Payment method not found for tenant")
    return method


def _get_schedule(tenant_id: int, lease_id: int, *, lock: bool = False) -> AutoPaySchedule | None:
    query = db.session.query(AutoPaySchedule).filter_by(tenant_id=tenant_id, lease_id=lease_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


# =============================================================================
# SCHEDULE MANAGEMENT
# =============================================================================

def setup_autopay(
    *,
    tenant_id: int,
    lease_id: int,
    payment_method_id: int,
    day_of_month: int,
    amount_mode: str | None = None,
    amount_cents: int | None = None,
    charge_types: list[str] | None = None,
) -> AutoPaySchedule:
    """
    Create (or reactivate) the AutoPay schedule for a lease.

    Raises:
        ValidationError: Bad day, amount or charge types
        NotFound: Lease missing, not the tenant's, or not active
        PaymentMethodInvalid: Method missing or not the tenant's
        ConflictError: An active schedule already exists for the lease
    """
    payment_method_id = coerce_id(payment_method_id, "payment_method_id")
    day_of_month = normalize_day_of_month(day_of_month)
    amount_mode, amount_cents = _resolve_amount(amount_mode, amount_cents)
    charge_types = _normalize_charge_types(charge_types)

    def _op():
        lease = lock_for_update(db.session.query(Lease).filter_by(id=lease_id)).first()
        if not lease or lease.tenant_id != tenant_id or lease.status != "ACTIVE":
            raise NotFound("Lease not found or not active")
        _tenant_method(tenant_id, payment_method_id)

        schedule = _get_schedule(tenant_id, lease_id, lock=True)
        if schedule and schedule.active:
            raise ConflictError("AutoPay is already active for this lease")

        if schedule is None:
            schedule = AutoPaySchedule(tenant_id=tenant_id, lease_id=lease_id)
            db.session.add(schedule)

        schedule.payment_method_id = payment_method_id
        schedule.day_of_month = day_of_month
        schedule.amount_mode = amount_mode
        schedule.amount_cents = amount_cents
        schedule.charge_types = charge_types
        schedule.active = True
        schedule.cancelled_at = None
        schedule.consecutive_failures = 0
        schedule.next_retry_at = None
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("AutoPay is already active for this lease")
        return schedule

    schedule = run_with_retry(_op)
    logger.info("AutoPay %s active for tenant %s lease %s (day %s)", schedule.id, tenant_id, lease_id, day_of_month)
    emit(AUTOPAY_CREATED, entity_type="autopay_schedule", entity_id=schedule.id, tenant_id=tenant_id,
         lease_id=lease_id, day_of_month=day_of_month, amount_mode=amount_mode)
    return schedule


def get_autopay(*, tenant_id: int, lease_id: int) -> AutoPaySchedule:
    schedule = _get_schedule(tenant_id, lease_id)
    if not schedule:
        raise NotFound("AutoPay schedule not found")
    return schedule


def list_for_tenant(tenant_id: int) -> list[AutoPaySchedule]:
    return db.session.query(AutoPaySchedule).filter_by(tenant_id=tenant_id).order_by(
        AutoPaySchedule.active.desc(), AutoPaySchedule.id.asc()
    ).all()


_UPDATABLE = {"payment_method_id", "day_of_month", "amount_mode", "amount_cents", "charge_types"}


def update_autopay(*, tenant_id: int, lease_id: int, **changes) -> AutoPaySchedule:
    """
    Change an active schedule. Accepts payment_method_id, day_of_month,
    amount_mode, amount_cents, charge_types.
    """
    unknown = set(changes) - _UPDATABLE
    if unknown:
        raise ValidationError(f"Cannot update fields: {sorted(unknown)}")

    def _op():
        schedule = _get_schedule(tenant_id, lease_id, lock=True)
        if not schedule:
            raise NotFound("AutoPay schedule not found")
        if not schedule.active:
            raise NotActive("AutoPay schedule is cancelled; set it up again")

        if "payment_method_id" in changes:
            method_id = coerce_id(changes["payment_method_id"], "payment_method_id")
            _tenant_method(tenant_id, method_id)
            schedule.payment_method_id = method_id
        if "day_of_month" in changes:
            schedule.day_of_month = normalize_day_of_month(changes["day_of_month"])
        if "amount_mode" in changes or "amount_cents" in changes:
            mode = changes.get("amount_mode", schedule.amount_mode if "amount_cents" not in changes else None)
            amount = changes.get("amount_cents", schedule.amount_cents)
            schedule.amount_mode, schedule.amount_cents = _resolve_amount(mode, amount)
        if "charge_types" in changes:
            schedule.charge_types = _normalize_charge_types(changes["charge_types"])

        db.session.commit()
        return schedule

    schedule = run_with_retry(_op)
    logger.info("AutoPay %s updated: %s", schedule.id, sorted(changes))
    emit(AUTOPAY_UPDATED, entity_type="autopay_schedule", entity_id=schedule.id, tenant_id=tenant_id,
         lease_id=lease_id, fields=sorted(changes))
    return schedule


def cancel_autopay(*, tenant_id: int, lease_id: int) -> AutoPaySchedule:
    """Idempotent: cancelling an inactive schedule succeeds unchanged."""
    def _op():
        schedule = _get_schedule(tenant_id, lease_id, lock=True)
        if not schedule:
            raise NotFound("AutoPay schedule not found")
        if not schedule.active:
            db.session.commit()
            return schedule, False
        schedule.active = False
        schedule.cancelled_at = utcnow()
        schedule.next_retry_at = None
        db.session.commit()
        return schedule, True

    schedule, changed = run_with_retry(_op)
    if changed:
        logger.info("AutoPay %s cancelled", schedule.id)
        emit(AUTOPAY_CANCELLED, entity_type="autopay_schedule", entity_id=schedule.id,
             tenant_id=tenant_id, lease_id=lease_id)
    return schedule


def next_payment_date(schedule: AutoPaySchedule, as_of: date | None = None) -> date | None:
    """Next date run_due will charge this schedule (None when inactive)."""
    if not schedule.active:
        return None
    as_of = as_of or utcnow().date()
    ran_this_month = (
        schedule.last_run_at is not None and billing_period(schedule.last_run_at) == billing_period(as_of)
    )
    if as_of.day <= schedule.day_of_month and not ran_this_month:
        return as_of.replace(day=schedule.day_of_month)
    year, month = (as_of.year + 1, 1) if as_of.month == 12 else (as_of.year, as_of.month + 1)
    return date(year, month, min(schedule.day_of_month, monthrange(year, month)[1]))


# =============================================================================
# RUNNER
# =============================================================================

def _month_bounds(as_of: date) -> tuple[datetime, datetime]:
    start = datetime(as_of.year, as_of.month, 1)
    days = monthrange(as_of.year, as_of.month)[1]
    return start, start + timedelta(days=days)


def _select_due(as_of: date) -> list[tuple[int, bool]]:
    """(schedule id, is_retry) pairs to run on as_of."""
    month_start, month_end = _month_bounds(as_of)
    day_end = datetime.combine(as_of + timedelta(days=1), time.min)

    selected: list[tuple[int, bool]] = []
    for schedule in db.session.query(AutoPaySchedule).filter_by(
        active=True, day_of_month=as_of.day
    ).order_by(AutoPaySchedule.id.asc()).all():
        last = to_naive_utc(schedule.last_run_at)
        if last is None or not (month_start <= last < month_end):
            selected.append((schedule.id, False))

    seen = {schedule_id for schedule_id, _ in selected}
    for schedule in db.session.query(AutoPaySchedule).filter(
        AutoPaySchedule.active.is_(True),
        AutoPaySchedule.next_retry_at.isnot(None),
        AutoPaySchedule.next_retry_at < day_end,
    ).order_by(AutoPaySchedule.id.asc()).all():
        if schedule.id in seen:
            continue
        # Retries belong to the month of the failed run
        if schedule.last_run_at is not None and month_start <= to_naive_utc(schedule.last_run_at) < month_end:
            selected.append((schedule.id, True))
    return selected


def _eligible_charges(schedule: AutoPaySchedule) -> list[LeaseCharge]:
    """Unpaid charges of the schedule's types, oldest first, not already in flight."""
    in_flight = db.session.query(TransactionCharge.charge_id).join(
        PaymentTransaction, PaymentTransaction.id == TransactionCharge.transaction_id
    ).filter(PaymentTransaction.status.in_(IN_FLIGHT_STATUSES))

    charges = db.session.query(LeaseCharge).filter(
        LeaseCharge.lease_id == schedule.lease_id,
        LeaseCharge.status == "UNPAID",
        LeaseCharge.charge_type.in_(list(schedule.charge_types or DEFAULT_CHARGE_TYPES)),
        LeaseCharge.id.notin_(in_flight),
    ).order_by(LeaseCharge.due_date.asc(), LeaseCharge.id.asc()).all()

    if schedule.amount_mode != AMOUNT_MODE_FIXED:
        return charges

    # Gross must equal the sum of whole charges: take the oldest that fit
    selected, total = [], 0
    for charge in charges:
        if total + charge.amount_cents > (schedule.amount_cents or 0):
            break
        selected.append(charge)
        total += charge.amount_cents
    return selected


def _period_attempts(schedule_id: int, period: str) -> list[PaymentTransaction]:
    base = f"autopay-{schedule_id}-{period}"
    return db.session.query(PaymentTransaction).filter(
        PaymentTransaction.autopay_schedule_id == schedule_id,
        (PaymentTransaction.idempotency_key == base) | PaymentTransaction.idempotency_key.like(f"{base}-r%"),
    ).order_by(PaymentTransaction.id.desc()).all()


def _unsubmitted_attempt(schedule_id: int, period: str) -> PaymentTransaction | None:
    """This month's latest attempt if it never got a processor id back."""
    attempts = _period_attempts(schedule_id, period)
    if attempts and attempts[0].status in IN_FLIGHT_STATUSES and attempts[0].processor_charge_id is None:
        return attempts[0]
    return None


def _attempt_key(schedule_id: int, period: str) -> str:
    """Idempotency key for a new attempt this month; each retry gets a new suffix."""
    base = f"autopay-{schedule_id}-{period}"
    previous = _period_attempts(schedule_id, period)
    if not previous:
        return base
    return f"{base}-r{len(previous)}"


def _retry_delays() -> tuple[int, ...]:
    return tuple(current_app.config.get("AUTOPAY_RETRY_DELAYS_DAYS") or DEFAULT_RETRY_DELAYS_DAYS)


def _apply_result(schedule: AutoPaySchedule, *, ran_at: datetime, result: str,
                  failure_reason: str | None = None) -> None:
    schedule.last_result = result
    if result in (RESULT_FAILED, RESULT_ERROR):
        schedule.consecutive_failures = (schedule.consecutive_failures or 0) + 1
        schedule.last_failure_reason = (failure_reason or "")[:500] or None
        delays = _retry_delays()
        attempt = schedule.consecutive_failures
        schedule.next_retry_at = ran_at + timedelta(days=delays[attempt - 1]) if attempt <= len(delays) else None
    else:
        schedule.next_retry_at = None
        if result == RESULT_SUCCEEDED:
            schedule.consecutive_failures = 0
            schedule.last_failure_reason = None


def _record_run(schedule_id: int, *, ran_at: datetime, result: str, transaction_id: int | None = None,
                failure_reason: str | None = None) -> AutoPaySchedule:
    def _op():
        schedule = lock_for_update(db.session.query(AutoPaySchedule).filter_by(id=schedule_id)).first()
        run_result, reason = result, failure_reason
        if result == RESULT_PROCESSING and transaction_id is not None:
            # A webhook may have settled the charge before we got here
            txn = db.session.query(PaymentTransaction).filter_by(
                id=transaction_id
            ).populate_existing().first()
            if txn is not None and txn.status in FINAL_STATUSES:
                run_result = RESULT_SUCCEEDED if txn.status == TXN_SUCCEEDED else RESULT_FAILED
                reason = txn.failure_reason

        schedule.last_run_at = ran_at
        if transaction_id is not None:
            schedule.last_transaction_id = transaction_id
        _apply_result(schedule, ran_at=ran_at, result=run_result, failure_reason=reason)

        db.session.commit()
        return schedule

    return run_with_retry(_op)


def settle_transaction_result(transaction_id: int) -> AutoPaySchedule | None:
    """
    Carry a late final result (ACH settles days after the run) onto the
    schedule whose PROCESSING run created the transaction.

    Retry timing counts from the original run, so a failure reported after
    the first retry day is picked up by the next run_due.
    """
    def _op():
        txn = db.session.get(PaymentTransaction, transaction_id)
        if txn is None or txn.autopay_schedule_id is None or txn.status not in FINAL_STATUSES:
            return None
        schedule = lock_for_update(
            db.session.query(AutoPaySchedule).filter_by(id=txn.autopay_schedule_id)
        ).first()
        if (schedule is None or schedule.last_transaction_id != txn.id
                or schedule.last_result != RESULT_PROCESSING):
            db.session.commit()
            return None

        result = RESULT_SUCCEEDED if txn.status == TXN_SUCCEEDED else RESULT_FAILED
        ran_at = to_naive_utc(schedule.last_run_at) or utcnow()
        _apply_result(schedule, ran_at=ran_at, result=result, failure_reason=txn.failure_reason)
        db.session.commit()
        return schedule

    schedule = run_with_retry(_op)
    if schedule is not None:
        logger.info("AutoPay %s settled %s by transaction %s (failures=%s)", schedule.id,
                    schedule.last_result, transaction_id, schedule.consecutive_failures)
        emit(AUTOPAY_RUN, entity_type="autopay_schedule", entity_id=schedule.id,
             result=schedule.last_result, payment_id=transaction_id, retry=False, settled=True)
    return schedule


def _run_schedule(schedule_id: int, as_of: date, *, is_retry: bool) -> dict:
    schedule = db.session.get(AutoPaySchedule, schedule_id)
    ran_at = as_of_timestamp(as_of)
    period = billing_period(as_of)

    pending = _unsubmitted_attempt(schedule_id, period)
    if pending is not None:
        # Same key, same charges: the processor returns the original if it landed
        logger.info("AutoPay %s resuming unsubmitted transaction %s", schedule_id, pending.id)
        payment = resume_transaction(pending.id)
    else:
        charges = _eligible_charges(schedule)
        if not charges:
            _record_run(schedule_id, ran_at=ran_at, result=RESULT_NO_CHARGES)
            logger.info("AutoPay %s: no eligible charges", schedule_id)
            return {"schedule_id": schedule_id, "result": RESULT_NO_CHARGES, "retry": is_retry}

        lease = db.session.get(Lease, schedule.lease_id)
        request = build_request(
            tenant_id=schedule.tenant_id,
            lease_id=schedule.lease_id,
            charge_ids=[c.id for c in charges],
            payment_method_id=schedule.payment_method_id,
            amount_cents=sum(c.amount_cents for c in charges),
            description=f"AutoPay - {lease.label}",
            idempotency_key=_attempt_key(schedule_id, period),
            source=SOURCE_AUTOPAY,
            autopay_schedule_id=schedule_id,
        )
        payment = process_payment(request)

    if payment.success and payment.status == TXN_SUCCEEDED:
        result = RESULT_SUCCEEDED
    elif payment.success and payment.status == TXN_PROCESSING:
        result = RESULT_PROCESSING
    else:
        result = RESULT_FAILED

    schedule = _record_run(
        schedule_id,
        ran_at=ran_at,
        result=result,
        transaction_id=payment.payment_id,
        failure_reason=payment.failure_reason,
    )
    logger.info("AutoPay %s run %s (txn %s, failures=%s)", schedule_id, result, payment.payment_id,
                schedule.consecutive_failures)
    return {
        "schedule_id": schedule_id,
        "result": result,
        "retry": is_retry,
        "payment_id": payment.payment_id,
        "failure_code": payment.failure_code,
        "failure_reason": payment.failure_reason,
    }


def run_due(as_of: date | None = None) -> dict:
    """
    Charge every schedule due on as_of, plus retries whose time has come.

    Inactive schedules are never selected and their last_run_at is left
    untouched.
    """
    as_of = as_of or utcnow().date()
    due = _select_due(as_of)
    db.session.commit()

    summary = {
        "as_of": as_of.isoformat(),
        "processed": 0,
        "succeeded": 0,
        "processing": 0,
        "failed": 0,
        "no_charges": 0,
        "errors": [],
        "results": [],
    }
    for schedule_id, is_retry in due:
        summary["processed"] += 1
        try:
            outcome = _run_schedule(schedule_id, as_of, is_retry=is_retry)
        except Exception as exc:
            db.session.rollback()
            logger.exception("AutoPay %s run raised", schedule_id)
            _record_run(schedule_id, ran_at=as_of_timestamp(as_of), result=RESULT_ERROR, failure_reason=str(exc))
            outcome = {"schedule_id": schedule_id, "result": RESULT_ERROR, "retry": is_retry,
                       "failure_reason": str(exc)}
            summary["errors"].append(f"Schedule {schedule_id}: {exc}")

        result = outcome["result"]
        if result == RESULT_SUCCEEDED:
            summary["succeeded"] += 1
        elif result == RESULT_PROCESSING:
            summary["processing"] += 1
        elif result == RESULT_NO_CHARGES:
            summary["no_charges"] += 1
        else:
            summary["failed"] += 1
            if result == RESULT_FAILED:
                summary["errors"].append(f"Schedule {schedule_id}: {outcome.get('failure_reason') or 'Unknown error'}")
        summary["results"].append(outcome)

        emit(AUTOPAY_RUN, entity_type="autopay_schedule", entity_id=schedule_id,
             result=result, payment_id=outcome.get("payment_id"), retry=is_retry)

    logger.info("AutoPay run %s: %s processed, %s succeeded, %s failed",
                summary["as_of"], summary["processed"], summary["succeeded"], summary["failed"])
    return summary


def disable_failing_schedules(threshold: int | None = None) -> list[int]:
    """Deactivate schedules that failed `threshold` times in a row."""
    if threshold is None:
        threshold = int(current_app.config.get("AUTOPAY_MAX_CONSECUTIVE_FAILURES", 3))
    if threshold < 1:
        raise ValidationError("threshold must be at least 1")

    def _op():
        schedules = lock_for_update(db.session.query(AutoPaySchedule).filter(
            AutoPaySchedule.active.is_(True),
            AutoPaySchedule.consecutive_failures >= threshold,
        )).all()
        now = utcnow()
        disabled = []
        for schedule in schedules:
            schedule.active = False
            schedule.cancelled_at = now
            schedule.next_retry_at = None
            disabled.append((schedule.id, schedule.tenant_id, schedule.lease_id, schedule.consecutive_failures))
        db.session.commit()
        return disabled

    disabled = run_with_retry(_op)
    for schedule_id, tenant_id, lease_id, failures in disabled:
        logger.warning("AutoPay %s disabled after %s consecutive failures", schedule_id, failures)
        emit(AUTOPAY_DISABLED, entity_type="autopay_schedule", entity_id=schedule_id,
             tenant_id=tenant_id, lease_id=lease_id, consecutive_failures=failures)
    return [schedule_id for schedule_id, _, _, _ in disabled]
