# Overview: Idempotent tenant -> landlord money movement (destination charges).

"""
Charge Processor

WHY: This is the only code path that moves money. It must never charge a
tenant twice for the same request, never charge into an account that cannot
receive payouts, and never tell a tenant a payment failed when it may have
gone through.

ALGORITHM (process_payment):
1. Validate input; all charges exist, belong to the lease, are unpaid and
   sum to the amount
2. Resolve the organization's fee policy and the method class; compute fees
3. Require an ACTIVE connected account (destination for the net amount)
4. Write-ahead: commit a PENDING transaction keyed by the idempotency key
   BEFORE calling the processor
5. Call the processor with the same idempotency key:
   - succeeded    -> SUCCEEDED, charges marked PAID in the same commit
   - declined     -> FAILED with the processor's reason
   - unavailable  -> stays PENDING; retrying with the same key re-issues
   - timeout      -> PROCESSING; reconciliation resolves it later
6. Return the fee breakdown regardless of outcome

Expected business failures come back as PaymentResult(success=False);
only infrastructure faults raise.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    ConnectedAccount,
    Lease,
    LeaseCharge,
    Organization,
    PaymentMethod,
    PaymentTransaction,
    TransactionCharge,
)
from rentflow.time_utils import to_naive_utc, utcnow
from .concurrency import lock_for_update, run_with_retry
from .event_service import CHARGE_FAILED, CHARGE_PROCESSING, CHARGE_SUCCEEDED, emit
from .fee_service import DEFAULT_SPLIT_PAYER_SHARE, FeeError, compute_fees
from .processor import get_processor
from ..validation import (
    AmountMismatch,
    ChargesInvalid,
    ConflictError,
    NotFound,
    PaymentMethodInvalid,
    PaymentsError,
    PayoutNotConfigured,
    ProcessorDeclined,
    ProcessorError,
    ProcessorTimeout,
    ProcessorUnavailable,
    ValidationError,
    coerce_cents,
    coerce_id,
    coerce_id_list,
    require_choice,
    require_text,
)

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSACTION STATUS (CONSTANTS)
# =============================================================================

TXN_PENDING = "PENDING"
TXN_PROCESSING = "PROCESSING"
TXN_SUCCEEDED = "SUCCEEDED"
TXN_FAILED = "FAILED"

IN_FLIGHT_STATUSES = [TXN_PENDING, TXN_PROCESSING]
FINAL_STATUSES = [TXN_SUCCEEDED, TXN_FAILED]

SOURCE_ONE_TIME = "ONE_TIME"
SOURCE_AUTOPAY = "AUTOPAY"

CHARGE_UNPAID = "UNPAID"
CHARGE_PAID = "PAID"

# Processor idempotency keys are only honored for 24 hours
PROCESSOR_KEY_TTL = timedelta(hours=24)

# Processor error codes that mean the instrument itself is unusable
_METHOD_ERROR_CODES = {
    "resource_missing",
    "payment_method_unactivated",
    "payment_method_unexpected_state",
    "payment_method_not_available",
    "bank_account_unusable",
    "bank_account_unverified",
    "expired_card",
}


# =============================================================================
# REQUEST / RESULT
# =============================================================================

@dataclass(frozen=True)
class ProcessPaymentRequest:
    tenant_id: int
    lease_id: int
    charge_ids: tuple
    payment_method_id: int
    amount_cents: int
    description: str | None = None
    idempotency_key: str | None = None
    source: str = SOURCE_ONE_TIME
    autopay_schedule_id: int | None = None

    def fingerprint(self) -> str:
        """SHA-256 over the canonical request (key excluded)."""
        canonical = json.dumps(
            {
                "tenant_id": self.tenant_id,
                "lease_id": self.lease_id,
                "charge_ids": sorted(self.charge_ids),
                "payment_method_id": self.payment_method_id,
                "amount_cents": self.amount_cents,
                "description": self.description,
                "source": self.source,
                "autopay_schedule_id": self.autopay_schedule_id,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class PaymentResult:
    success: bool
    payment_id: int | None = None
    status: str | None = None
    fees: dict | None = None
    net_amount_to_landlord_cents: int | None = None
    receipt_url: str | None = None
    receipt_number: str | None = None
    idempotency_key: str | None = None
    failure_code: str | None = None
    failure_reason: str | None = None

    @classmethod
    def from_transaction(cls, txn: PaymentTransaction) -> "PaymentResult":
        failed = txn.status == TXN_FAILED
        return cls(
            success=not failed,
            payment_id=txn.id,
            status=txn.status,
            fees=txn.fee_dict(),
            net_amount_to_landlord_cents=txn.net_to_landlord_cents,
            receipt_url=txn.receipt_url,
            receipt_number=txn.receipt_number,
            idempotency_key=txn.idempotency_key,
            failure_code=txn.failure_code if failed else None,
            failure_reason=txn.failure_reason if failed else None,
        )

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "payment_id": self.payment_id,
            "status": self.status,
            "fees": self.fees,
            "net_amount_to_landlord_cents": self.net_amount_to_landlord_cents,
            "idempotency_key": self.idempotency_key,
        }
        if self.success:
            data["receipt_url"] = self.receipt_url
            data["receipt_number"] = self.receipt_number
        else:
            data["error"] = {"code": self.failure_code, "message": self.failure_reason}
        return data


@dataclass
class _Attempt:
    """What is known so far, reported even when the attempt fails."""
    fees: dict | None = None
    payment_id: int | None = None
    idempotency_key: str | None = None

    def failure(self, exc: PaymentsError, *, status: str | None = None) -> PaymentResult:
        return PaymentResult(
            success=False,
            payment_id=self.payment_id,
            status=status,
            fees=self.fees,
            net_amount_to_landlord_cents=(self.fees or {}).get("net_to_landlord_cents"),
            idempotency_key=self.idempotency_key,
            failure_code=exc.code,
            failure_reason=exc.message,
        )


def build_request(
    *,
    tenant_id,
    lease_id,
    charge_ids,
    payment_method_id,
    amount_cents,
    description=None,
    idempotency_key=None,
    source: str = SOURCE_ONE_TIME,
    autopay_schedule_id: int | None = None,
) -> ProcessPaymentRequest:
    """
    Validate raw input into a ProcessPaymentRequest.

    Raises:
        ValidationError: Bad shape or range (before any I/O)
    """
    if idempotency_key is not None:
        idempotency_key = require_text(idempotency_key, "idempotency_key", max_length=255)
    return ProcessPaymentRequest(
        tenant_id=coerce_id(tenant_id, "tenant_id"),
        lease_id=coerce_id(lease_id, "lease_id"),
        charge_ids=tuple(coerce_id_list(charge_ids, "charge_ids")),
        payment_method_id=coerce_id(payment_method_id, "payment_method_id"),
        amount_cents=coerce_cents(amount_cents, "amount_cents"),
        description=require_text(description, "description", allow_none=True),
        idempotency_key=idempotency_key,
        source=require_choice(source, [SOURCE_ONE_TIME, SOURCE_AUTOPAY], "source"),
        autopay_schedule_id=autopay_schedule_id,
    )


# =============================================================================
# PROCESS PAYMENT
# =============================================================================

def process_payment(request: ProcessPaymentRequest) -> PaymentResult:
    """
    Execute one idempotent tenant -> landlord payment.

    Same idempotency key + same parameters returns the original transaction
    (re-issuing the processor call only if it never reached the processor).
    Same key + different parameters is a CONFLICT.
    """
    if request.idempotency_key is None:
        request = replace(request, idempotency_key=f"pay-{uuid.uuid4().hex}")

    attempt = _Attempt(idempotency_key=request.idempotency_key)
    fingerprint = request.fingerprint()

    try:
        existing = db.session.query(PaymentTransaction).filter_by(
            idempotency_key=request.idempotency_key
        ).first()
        if existing:
            return _replay(existing, fingerprint, attempt)

        txn_id = _write_ahead(request, fingerprint, attempt)
        if txn_id is None:
            # Lost the race for this key to an identical request
            existing = db.session.query(PaymentTransaction).filter_by(
                idempotency_key=request.idempotency_key
            ).first()
            return _replay(existing, fingerprint, attempt)

        return _submit(txn_id, attempt)
    except PaymentsError as exc:
        db.session.rollback()
        logger.info("Payment %s rejected: %s %s", request.idempotency_key, exc.code, exc.message)
        status = None
        if attempt.payment_id is not None:
            txn = db.session.get(PaymentTransaction, attempt.payment_id)
            status = txn.status if txn else None
        return attempt.failure(exc, status=status)


def _replay(txn: PaymentTransaction, fingerprint: str, attempt: _Attempt) -> PaymentResult:
    attempt.payment_id = txn.id
    attempt.fees = txn.fee_dict()
    if txn.request_fingerprint != fingerprint:
        raise ConflictError("Idempotency key was already used with different parameters")

    if _needs_submission(txn):
        logger.info("Re-issuing processor call for transaction %s (%s)", txn.id, txn.status)
        return _submit(txn.id, attempt)
    return PaymentResult.from_transaction(txn)


def _needs_submission(txn: PaymentTransaction) -> bool:
    """Row never got a processor id back: the call may not have landed."""
    return txn.status in IN_FLIGHT_STATUSES and txn.processor_charge_id is None


def _write_ahead(request: ProcessPaymentRequest, fingerprint: str, attempt: _Attempt) -> int | None:
    """Validate against the ledger and commit the PENDING row. Returns its id."""
    lease = db.session.query(Lease).filter_by(id=request.lease_id).first()
    if not lease or lease.tenant_id != request.tenant_id:
        raise NotFound("Lease not found for tenant")

    method = db.session.query(PaymentMethod).filter_by(
        id=request.payment_method_id, tenant_id=request.tenant_id
    ).first()
    if not method or method.status != "ACTIVE":
        raise PaymentMethodInvalid("Payment method is not available for this tenant")

    org = db.session.query(Organization).filter_by(id=lease.org_id).first()
    if not org:
        raise NotFound("Organization not found for lease")

    try:
        fees = compute_fees(
            request.amount_cents,
            method.method_class,
            org.fee_policy,
            split_payer_share=current_app.config.get("FEE_SPLIT_PAYER_SHARE", DEFAULT_SPLIT_PAYER_SHARE),
        )
    except FeeError as exc:
        raise ValidationError(str(exc))
    attempt.fees = fees.to_dict()

    account = db.session.query(ConnectedAccount).filter_by(org_id=org.id).first()
    if not account or account.status != "ACTIVE" or not account.charges_enabled or not account.payouts_enabled:
        raise PayoutNotConfigured("Landlord has not finished setting up payouts")

    destination = account.processor_account_id
    description = request.description or f"Rent payment for {lease.label}"
    org_id = org.id

    def _op():
        charges = lock_for_update(
            db.session.query(LeaseCharge).filter(LeaseCharge.id.in_(request.charge_ids))
        ).all()
        found = {c.id: c for c in charges}
        missing = [cid for cid in request.charge_ids if cid not in found]
        if missing:
            raise ChargesInvalid(f"Charges not found: {missing}")
        foreign = [c.id for c in charges if c.lease_id != request.lease_id]
        if foreign:
            raise ChargesInvalid(f"Charges do not belong to lease {request.lease_id}: {sorted(foreign)}")
        paid = [c.id for c in charges if c.status != CHARGE_UNPAID]
        if paid:
            raise ChargesInvalid(f"Charges already paid: {sorted(paid)}")

        total = sum(c.amount_cents for c in charges)
        if total != request.amount_cents:
            raise AmountMismatch(f"Amount {request.amount_cents} does not equal charges total {total}")

        in_flight = db.session.query(TransactionCharge.charge_id).join(
            PaymentTransaction, PaymentTransaction.id == TransactionCharge.transaction_id
        ).filter(
            TransactionCharge.charge_id.in_(request.charge_ids),
            PaymentTransaction.status.in_(IN_FLIGHT_STATUSES),
        ).all()
        if in_flight:
            raise ConflictError(
                f"Charges already have a payment in progress: {sorted({row[0] for row in in_flight})}"
            )

        txn = PaymentTransaction(
            idempotency_key=request.idempotency_key,
            request_fingerprint=fingerprint,
            org_id=org_id,
            tenant_id=request.tenant_id,
            lease_id=request.lease_id,
            payment_method_id=request.payment_method_id,
            autopay_schedule_id=request.autopay_schedule_id,
            source=request.source,
            description=description,
            method_class=fees.method_class,
            fee_policy=fees.fee_policy,
            fee_schedule_version=fees.fee_schedule_version,
            amount_cents=fees.amount_cents,
            processing_fee_cents=fees.processing_fee_cents,
            payer_portion_cents=fees.payer_portion_cents,
            landlord_portion_cents=fees.landlord_portion_cents,
            payer_total_cents=fees.payer_total_cents,
            net_to_landlord_cents=fees.net_to_landlord_cents,
            destination_account_id=destination,
            status=TXN_PENDING,
        )
        try:
            db.session.add(txn)
            db.session.flush()
            for charge in sorted(charges, key=lambda c: c.id):
                db.session.add(TransactionCharge(
                    transaction_id=txn.id,
                    charge_id=charge.id,
                    amount_cents=charge.amount_cents,
                ))
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return None
        return txn.id

    txn_id = run_with_retry(_op)
    if txn_id is not None:
        attempt.payment_id = txn_id
        logger.info("Transaction %s PENDING (%s, payer_total=%s)", txn_id, request.idempotency_key,
                    fees.payer_total_cents)
    return txn_id


def _submit(txn_id: int, attempt: _Attempt) -> PaymentResult:
    """Issue (or re-issue) the processor call for a write-ahead row and record the outcome."""
    txn = db.session.get(PaymentTransaction, txn_id)
    attempt.payment_id = txn.id
    attempt.fees = txn.fee_dict()

    method = txn.payment_method
    params = dict(
        amount_cents=txn.payer_total_cents,
        currency=current_app.config.get("PAYMENTS_CURRENCY", "usd"),
        customer_id=method.processor_customer_id,
        method_id=method.processor_method_id,
        method_class=txn.method_class,
        destination_account_id=txn.destination_account_id,
        transfer_amount_cents=txn.net_to_landlord_cents,
        description=txn.description,
        statement_descriptor=current_app.config.get("STATEMENT_DESCRIPTOR"),
        metadata={
            "transaction_id": txn.id,
            "org_id": txn.org_id,
            "tenant_id": txn.tenant_id,
            "lease_id": txn.lease_id,
            "charge_ids": ",".join(str(c.charge_id) for c in txn.charges),
            "source": txn.source,
        },
        idempotency_key=txn.idempotency_key,
    )
    # No transaction held across the processor call
    db.session.commit()

    try:
        outcome = get_processor().create_destination_charge(**params)
    except ProcessorDeclined as exc:
        _finalize(txn_id, TXN_FAILED, processor_charge_id=exc.payment_id,
                  failure_code=exc.code, failure_reason=exc.message)
        raise
    except ProcessorTimeout:
        logger.warning("Transaction %s outcome unknown; left PROCESSING for reconciliation", txn_id)
        txn = _finalize(txn_id, TXN_PROCESSING)
        return PaymentResult.from_transaction(txn)
    except ProcessorUnavailable:
        logger.warning("Processor unavailable for transaction %s; left PENDING", txn_id)
        raise
    except ProcessorError as exc:
        if (exc.param or "").startswith("payment_method") or exc.processor_code in _METHOD_ERROR_CODES:
            error = PaymentMethodInvalid(exc.message)
        else:
            error = exc
        _finalize(txn_id, TXN_FAILED, failure_code=error.code, failure_reason=error.message)
        raise error

    if outcome.status == TXN_FAILED:
        declined = ProcessorDeclined(outcome.failure_message or "Payment was declined",
                                     processor_code=outcome.failure_code)
        _finalize(txn_id, TXN_FAILED, processor_charge_id=outcome.payment_id,
                  failure_code=declined.code, failure_reason=declined.message)
        raise declined

    txn = _finalize(txn_id, outcome.status, processor_charge_id=outcome.payment_id,
                    receipt_url=outcome.receipt_url)
    return PaymentResult.from_transaction(txn)


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

def _finalize(
    txn_id: int,
    status: str,
    *,
    processor_charge_id: str | None = None,
    failure_code: str | None = None,
    failure_reason: str | None = None,
    receipt_url: str | None = None,
) -> PaymentTransaction:
    """
    Move a transaction forward. SUCCEEDED and FAILED are final; a late or
    duplicate report for a final row is ignored.
    """
    def _op():
        txn = lock_for_update(db.session.query(PaymentTransaction).filter_by(id=txn_id)).first()
        if not txn:
            raise NotFound(f"Transaction {txn_id} not found")

        previous = txn.status
        if previous in FINAL_STATUSES or previous == status == TXN_PROCESSING:
            if previous != status:
                logger.warning("Ignoring %s for transaction %s already %s", status, txn_id, previous)
            if processor_charge_id and not txn.processor_charge_id:
                txn.processor_charge_id = processor_charge_id
            db.session.commit()
            return txn, previous, False

        now = utcnow()
        txn.status = status
        txn.submitted_at = txn.submitted_at or now
        if processor_charge_id and not txn.processor_charge_id:
            txn.processor_charge_id = processor_charge_id
        if receipt_url:
            txn.receipt_url = receipt_url

        if status == TXN_SUCCEEDED:
            txn.completed_at = now
            txn.receipt_number = f"RCP-{txn.id:08d}"
            txn.failure_code = None
            txn.failure_reason = None
            charge_ids = [link.charge_id for link in txn.charges]
            charges = lock_for_update(
                db.session.query(LeaseCharge).filter(LeaseCharge.id.in_(charge_ids))
            ).all()
            for charge in charges:
                if charge.status == CHARGE_PAID and charge.paid_transaction_id != txn.id:
                    logger.warning("Charge %s already paid by transaction %s", charge.id, charge.paid_transaction_id)
                    continue
                charge.status = CHARGE_PAID
                charge.paid_transaction_id = txn.id
                charge.paid_at = now
        elif status == TXN_FAILED:
            txn.completed_at = now
            txn.failure_code = failure_code
            txn.failure_reason = (failure_reason or "")[:500] or None

        db.session.commit()
        return txn, previous, True

    txn, previous, changed = run_with_retry(_op)
    if changed:
        logger.info("Transaction %s %s -> %s", txn_id, previous, txn.status)
        event_type = {
            TXN_SUCCEEDED: CHARGE_SUCCEEDED,
            TXN_PROCESSING: CHARGE_PROCESSING,
            TXN_FAILED: CHARGE_FAILED,
        }[txn.status]
        emit(event_type, entity_type="payment_transaction", entity_id=txn.id, org_id=txn.org_id,
             tenant_id=txn.tenant_id, lease_id=txn.lease_id, amount_cents=txn.amount_cents,
             payer_total_cents=txn.payer_total_cents, failure_code=txn.failure_code,
             failure_reason=txn.failure_reason)
        if txn.source == SOURCE_AUTOPAY and txn.status in FINAL_STATUSES:
            from .autopay_service import settle_transaction_result
            settle_transaction_result(txn.id)
    return txn


def reconcile_transaction(
    processor_charge_id: str | None,
    final_status: str,
    failure_reason: str | None = None,
    *,
    payment_id: int | None = None,
    receipt_url: str | None = None,
) -> PaymentTransaction:
    """
    Apply an asynchronous processor result (webhook or polling).

    Looks the transaction up by processor charge id, falling back to our own
    payment id for rows whose processor call timed out before an id came back.

    Raises:
        ValidationError: Unknown status or no identifier
        NotFound: No matching transaction
    """
    final_status = require_choice(final_status, [TXN_PROCESSING, TXN_SUCCEEDED, TXN_FAILED], "final_status")
    if not processor_charge_id and payment_id is None:
        raise ValidationError("processor_charge_id or payment_id is required")

    txn = None
    if processor_charge_id:
        txn = db.session.query(PaymentTransaction).filter_by(processor_charge_id=processor_charge_id).first()
    if txn is None and payment_id is not None:
        txn = db.session.get(PaymentTransaction, payment_id)
    if txn is None:
        raise NotFound(f"Transaction for {processor_charge_id or payment_id} not found")

    txn_id = txn.id
    db.session.commit()
    return _finalize(
        txn_id,
        final_status,
        processor_charge_id=processor_charge_id,
        failure_code=ProcessorDeclined.code if final_status == TXN_FAILED else None,
        failure_reason=failure_reason,
        receipt_url=receipt_url,
    )


# =============================================================================
# CRASH REPAIR
# =============================================================================

def resume_transaction(payment_id: int) -> PaymentResult:
    """
    Re-issue the processor call for a row that never recorded a processor id.

    Uses the original idempotency key, so a call that did land is returned
    by the processor instead of being repeated.
    """
    txn = db.session.get(PaymentTransaction, payment_id)
    if not txn:
        raise NotFound(f"Transaction {payment_id} not found")
    if not _needs_submission(txn):
        return PaymentResult.from_transaction(txn)

    attempt = _Attempt(payment_id=txn.id, fees=txn.fee_dict(), idempotency_key=txn.idempotency_key)
    try:
        return _submit(txn.id, attempt)
    except PaymentsError as exc:
        db.session.rollback()
        txn = db.session.get(PaymentTransaction, payment_id)
        return attempt.failure(exc, status=txn.status if txn else None)


def repair_stale_transactions(*, older_than_minutes: int = 15) -> dict:
    """
    Resume write-ahead rows left behind by a crash or an unavailable processor.

    Rows older than the processor's idempotency window are reported, not
    re-issued: a new call could no longer be matched to the original.
    """
    now = utcnow()
    cutoff = now - timedelta(minutes=older_than_minutes)
    rows = db.session.query(PaymentTransaction).filter(
        PaymentTransaction.status.in_(IN_FLIGHT_STATUSES),
        PaymentTransaction.processor_charge_id.is_(None),
        PaymentTransaction.created_at < cutoff,
    ).order_by(PaymentTransaction.id.asc()).all()
    candidates = [(row.id, to_naive_utc(row.created_at)) for row in rows]
    db.session.commit()

    resumed, skipped = [], []
    for txn_id, created_at in candidates:
        if created_at is not None and now - created_at > PROCESSOR_KEY_TTL:
            logger.warning("Transaction %s is past the idempotency window; needs manual review", txn_id)
            skipped.append(txn_id)
            continue
        result = resume_transaction(txn_id)
        resumed.append({"payment_id": txn_id, "status": result.status, "success": result.success})
    return {"resumed": resumed, "skipped": skipped}


# =============================================================================
# READS
# =============================================================================

def get_transaction(payment_id: int, *, tenant_id: int | None = None, org_id: int | None = None) -> PaymentTransaction:
    txn = db.session.get(PaymentTransaction, payment_id)
    if not txn:
        raise NotFound(f"Transaction {payment_id} not found")
    if tenant_id is not None and txn.tenant_id != tenant_id:
        raise NotFound(f"Transaction {payment_id} not found")
    if org_id is not None and txn.org_id != org_id:
        raise NotFound(f"Transaction {payment_id} not found")
    return txn


def list_transactions(
    *,
    tenant_id: int | None = None,
    lease_id: int | None = None,
    org_id: int | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[PaymentTransaction]:
    query = db.session.query(PaymentTransaction)
    if tenant_id is not None:
        query = query.filter(PaymentTransaction.tenant_id == tenant_id)
    if lease_id is not None:
        query = query.filter(PaymentTransaction.lease_id == lease_id)
    if org_id is not None:
        query = query.filter(PaymentTransaction.org_id == org_id)
    if status:
        query = query.filter(PaymentTransaction.status == require_choice(
            status, IN_FLIGHT_STATUSES + FINAL_STATUSES, "status"
        ))
    limit = max(1, min(int(limit), 200))
    return query.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()).limit(limit).all()
