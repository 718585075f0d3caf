# Overview: Chargebacks reported by the processor, tracked per organization.

"""
Disputes

Rows are written only from processor webhooks. Opening is an upsert keyed
by the processor dispute id (a redelivered or re-opened dispute updates the
same row); closing records the processor's verdict.

Recent disputes hold back trust upgrades (see payout_policy_service).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Dispute, PaymentTransaction
from rentflow.time_utils import to_naive_utc, utcnow
from .concurrency import lock_for_update, run_with_retry
from .event_service import DISPUTE_CLOSED, DISPUTE_OPENED, emit
from ..validation import NotFound, ValidationError

logger = logging.getLogger(__name__)


DISPUTE_NEEDS_RESPONSE = "NEEDS_RESPONSE"
DISPUTE_WON = "WON"
DISPUTE_LOST = "LOST"
DISPUTE_CHARGE_REFUNDED = "CHARGE_REFUNDED"

# Processor final status -> local status; anything else is treated as lost
_CLOSED_STATUSES = {
    "won": DISPUTE_WON,
    "warning_closed": DISPUTE_WON,
    "lost": DISPUTE_LOST,
    "charge_refunded": DISPUTE_CHARGE_REFUNDED,
}

DEFAULT_WINDOW_DAYS = 90


def record_dispute_opened(
    processor_dispute_id: str,
    *,
    processor_charge_id: str | None,
    amount_cents: int,
    currency: str | None = None,
    reason: str | None = None,
    evidence_due_by: datetime | None = None,
    opened_at: datetime | None = None,
) -> Dispute:
    """
    Record (or refresh) a dispute against one of our payments.

    Raises:
        ValidationError: No dispute id
        NotFound: The disputed payment is not ours
    """
    if not processor_dispute_id:
        raise ValidationError("processor_dispute_id is required")
    txn = None
    if processor_charge_id:
        txn = db.session.query(PaymentTransaction).filter_by(processor_charge_id=processor_charge_id).first()
    if txn is None:
        raise NotFound(f"Payment for disputed charge {processor_charge_id} not found")
    txn_id, org_id = txn.id, txn.org_id
    db.session.commit()

    opened_at = to_naive_utc(opened_at) or utcnow()

    def _op():
        dispute = lock_for_update(
            db.session.query(Dispute).filter_by(processor_dispute_id=processor_dispute_id)
        ).first()
        if dispute is not None:
            dispute.status = DISPUTE_NEEDS_RESPONSE
            dispute.amount_cents = int(amount_cents)
            db.session.commit()
            return dispute, False

        dispute = Dispute(
            processor_dispute_id=processor_dispute_id,
            org_id=org_id,
            transaction_id=txn_id,
            amount_cents=int(amount_cents),
            currency=(currency or "usd").lower(),
            reason=reason,
            status=DISPUTE_NEEDS_RESPONSE,
            evidence_due_by=to_naive_utc(evidence_due_by),
            opened_at=opened_at,
        )
        db.session.add(dispute)
        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent delivery inserted it first
            db.session.rollback()
            return db.session.query(Dispute).filter_by(processor_dispute_id=processor_dispute_id).one(), False
        return dispute, True

    dispute, created = run_with_retry(_op)
    if created:
        logger.warning("Dispute %s opened on transaction %s (org %s): %s", processor_dispute_id, txn_id,
                       org_id, reason)
        emit(DISPUTE_OPENED, entity_type="dispute", entity_id=dispute.id, org_id=org_id,
             transaction_id=txn_id, amount_cents=dispute.amount_cents, reason=reason)
    return dispute


def record_dispute_closed(processor_dispute_id: str, processor_status: str | None) -> Dispute:
    """
    Raises:
        NotFound: Dispute was never recorded
    """
    status = _CLOSED_STATUSES.get((processor_status or "").lower(), DISPUTE_LOST)

    def _op():
        dispute = lock_for_update(
            db.session.query(Dispute).filter_by(processor_dispute_id=processor_dispute_id)
        ).first()
        if dispute is None:
            raise NotFound(f"Dispute {processor_dispute_id} not found")
        changed = dispute.status != status
        dispute.status = status
        dispute.outcome = processor_status
        dispute.resolved_at = dispute.resolved_at or utcnow()
        db.session.commit()
        return dispute, changed

    dispute, changed = run_with_retry(_op)
    if changed:
        logger.info("Dispute %s closed: %s", processor_dispute_id, status)
        emit(DISPUTE_CLOSED, entity_type="dispute", entity_id=dispute.id, org_id=dispute.org_id,
             transaction_id=dispute.transaction_id, status=status, outcome=processor_status)
    return dispute


def count_recent_disputes(org_id: int, *, as_of: datetime | None = None,
                          window_days: int = DEFAULT_WINDOW_DAYS) -> int:
    """Disputes opened in the window ending at as_of, whatever their outcome."""
    as_of = to_naive_utc(as_of) or utcnow()
    return db.session.query(Dispute).filter(
        Dispute.org_id == org_id,
        Dispute.opened_at >= as_of - timedelta(days=window_days),
        Dispute.opened_at <= as_of,
    ).count()
