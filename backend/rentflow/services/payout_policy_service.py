# Overview: Trust tiers, payout delay bounds and organization fee policy.

"""
Trust / Payout Policy

WHY: New landlords get their money later than proven ones. The delay gives
the platform a window to recover funds from chargebacks and disputes; it
shrinks as an organization builds a clean payout history: enough payouts,
enough time, and no disputes in the last DISPUTE_WINDOW_DAYS.

DESIGN PRINCIPLES:
- derive_trust_level is pure (no I/O) and monotonic; a recent dispute holds
  the current tier instead of lowering it
- trust_level and payout_delay_minimum are derived, never set directly
- payout_delay_days is rejected (not clamped) outside [minimum, maximum]
- Processor payout schedule is updated first; local value changes only after
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from ..extensions import db
from ..models import ConnectedAccount, Organization
from rentflow.time_utils import to_naive_utc, utcnow
from .concurrency import lock_for_update, run_with_retry
from .dispute_service import count_recent_disputes
from .event_service import FEE_POLICY_CHANGED, PAYOUT_DELAY_CHANGED, PAYOUT_FAILED, TRUST_LEVEL_CHANGED, emit
from .fee_service import VALID_FEE_POLICIES
from .processor import get_processor
from ..validation import NotFound, PolicyViolation, ValidationError, require_choice

logger = logging.getLogger(__name__)


# =============================================================================
# TRUST TIERS (CONSTANTS)
# =============================================================================

TRUST_NEW = "NEW"
TRUST_ESTABLISHED = "ESTABLISHED"
TRUST_TRUSTED = "TRUSTED"

# Lowest to highest
TRUST_TIERS = [TRUST_NEW, TRUST_ESTABLISHED, TRUST_TRUSTED]

MINIMUM_DELAY_DAYS = {
    TRUST_NEW: 7,
    TRUST_ESTABLISHED: 4,
    TRUST_TRUSTED: 2,
}

# Upgrade thresholds: (successful payouts, days since first payout)
ESTABLISHED_THRESHOLD = (3, 90)
TRUSTED_THRESHOLD = (12, 180)

# No upgrades while a dispute opened within this many days exists
DISPUTE_WINDOW_DAYS = 90

PLATFORM_MIN_DELAY_DAYS = 2
MAX_PAYOUT_DELAY_DAYS = 14


@dataclass(frozen=True)
class TrustAssessment:
    trust_level: str
    minimum_delay_days: int


def _meets(threshold: tuple[int, int], count: int, days_active: int) -> bool:
    min_count, min_days = threshold
    return count >= min_count and days_active >= min_days


def derive_trust_level(
    successful_payout_count: int,
    first_successful_payout_at: datetime | None,
    *,
    as_of: datetime | None = None,
    current_level: str | None = None,
    recent_disputes: int = 0,
) -> TrustAssessment:
    """
    Map a payout track record to a trust tier and minimum payout delay.

    Args:
        successful_payout_count: Payouts that reached the landlord's bank
        first_successful_payout_at: When the first one landed (None if never)
        as_of: Evaluation time (defaults to now)
        current_level: Tier already held; the result is never lower
        recent_disputes: Disputes opened in the last DISPUTE_WINDOW_DAYS;
            any at all blocks an upgrade

    Returns:
        TrustAssessment
    """
    count = max(int(successful_payout_count or 0), 0)
    if first_successful_payout_at is None or count == 0:
        days_active = 0
    else:
        days_active = max(((as_of or utcnow()) - to_naive_utc(first_successful_payout_at)).days, 0)

    if recent_disputes > 0:
        level = TRUST_NEW
    elif _meets(TRUSTED_THRESHOLD, count, days_active):
        level = TRUST_TRUSTED
    elif _meets(ESTABLISHED_THRESHOLD, count, days_active):
        level = TRUST_ESTABLISHED
    else:
        level = TRUST_NEW

    if current_level in TRUST_TIERS and TRUST_TIERS.index(current_level) > TRUST_TIERS.index(level):
        level = current_level

    minimum = max(MINIMUM_DELAY_DAYS[level], PLATFORM_MIN_DELAY_DAYS)
    return TrustAssessment(trust_level=level, minimum_delay_days=minimum)


def assess_organization(org: Organization, *, as_of: datetime | None = None) -> TrustAssessment:
    return derive_trust_level(
        org.successful_payout_count,
        org.first_successful_payout_at,
        as_of=as_of,
        current_level=org.trust_level,
        recent_disputes=count_recent_disputes(org.id, as_of=as_of, window_days=DISPUTE_WINDOW_DAYS),
    )


def _get_org(org_id: int, *, lock: bool = False) -> Organization:
    query = db.session.query(Organization).filter_by(id=org_id)
    if lock:
        query = lock_for_update(query)
    org = query.first()
    if not org:
        raise NotFound(f"Organization {org_id} not found")
    return org


# =============================================================================
# PAYOUT DELAY
# =============================================================================

def set_payout_delay(*, org_id: int, requested_days) -> Organization:
    """
    Change an organization's payout delay.

    Raises:
        ValidationError: requested_days is not an integer
        NotFound: Organization or connected account missing
        PolicyViolation: Below the tier minimum or above the platform maximum
        ProcessorError: Processor rejected the schedule (local value unchanged)
    """
    if isinstance(requested_days, bool) or not isinstance(requested_days, int):
        raise ValidationError("requested_days must be an integer")

    org = _get_org(org_id)
    account = db.session.query(ConnectedAccount).filter_by(org_id=org_id).first()
    if not account:
        raise NotFound("Organization does not have a connected account")

    assessment = assess_organization(org)
    if requested_days < assessment.minimum_delay_days:
        raise PolicyViolation(
            f"Payout delay cannot be less than {assessment.minimum_delay_days} days "
            f"for trust level {assessment.trust_level}"
        )
    if requested_days > MAX_PAYOUT_DELAY_DAYS:
        raise PolicyViolation(f"Payout delay cannot exceed {MAX_PAYOUT_DELAY_DAYS} days")

    previous = org.payout_delay_days
    processor_account_id = account.processor_account_id
    db.session.commit()

    # Processor first: a failure here leaves the local value untouched
    get_processor().update_payout_delay(processor_account_id, requested_days)

    def _op():
        locked = _get_org(org_id, lock=True)
        locked.payout_delay_days = requested_days
        locked.payout_delay_minimum = assessment.minimum_delay_days
        locked.trust_level = assessment.trust_level
        db.session.commit()
        return locked

    org = run_with_retry(_op)
    logger.info("Payout delay for org %s changed %s -> %s days", org_id, previous, requested_days)
    emit(PAYOUT_DELAY_CHANGED, entity_type="organization", entity_id=org_id, org_id=org_id,
         previous_days=previous, delay_days=requested_days)
    return org


def record_successful_payout(*, org_id: int, paid_at: datetime | None = None) -> Organization:
    """
    Count a payout that reached the landlord's bank and re-derive the tier.

    An upgrade lowers payout_delay_minimum only; the configured
    payout_delay_days stays as the owner chose it.
    """
    paid_at = paid_at or utcnow()

    def _op():
        org = _get_org(org_id, lock=True)
        org.successful_payout_count = (org.successful_payout_count or 0) + 1
        if org.first_successful_payout_at is None:
            org.first_successful_payout_at = paid_at

        previous_level = org.trust_level
        assessment = assess_organization(org, as_of=paid_at)
        org.trust_level = assessment.trust_level
        org.payout_delay_minimum = assessment.minimum_delay_days
        db.session.commit()
        return org, previous_level

    org, previous_level = run_with_retry(_op)
    if org.trust_level != previous_level:
        logger.info("Org %s trust level upgraded %s -> %s", org_id, previous_level, org.trust_level)
        emit(TRUST_LEVEL_CHANGED, entity_type="organization", entity_id=org_id, org_id=org_id,
             previous_level=previous_level, trust_level=org.trust_level,
             minimum_delay_days=org.payout_delay_minimum)
    return org


def record_failed_payout(*, org_id: int, failure_code: str | None = None,
                         failure_message: str | None = None) -> None:
    """
    A payout bounced at the landlord's bank. Funds return to the connected
    account balance; nothing local changes beyond the PAYOUT_FAILED event.
    """
    _get_org(org_id)
    db.session.commit()
    logger.warning("Payout failed for org %s: %s (%s)", org_id, failure_message, failure_code)
    emit(PAYOUT_FAILED, entity_type="organization", entity_id=org_id, org_id=org_id,
         failure_code=failure_code, failure_message=failure_message)


# =============================================================================
# FEE POLICY
# =============================================================================

def set_fee_policy(*, org_id: int, policy: str) -> Organization:
    """Affects charges created after the change only."""
    policy = require_choice(policy, VALID_FEE_POLICIES, "fee_policy")

    def _op():
        org = _get_org(org_id, lock=True)
        previous = org.fee_policy
        org.fee_policy = policy
        db.session.commit()
        return org, previous

    org, previous = run_with_retry(_op)
    if previous != policy:
        logger.info("Fee policy for org %s changed %s -> %s", org_id, previous, policy)
        emit(FEE_POLICY_CHANGED, entity_type="organization", entity_id=org_id, org_id=org_id,
             previous_policy=previous, fee_policy=policy)
    return org


def get_payout_settings(org_id: int) -> dict:
    org = _get_org(org_id)
    assessment = assess_organization(org)
    account = db.session.query(ConnectedAccount).filter_by(org_id=org_id).first()
    return {
        "org_id": org.id,
        "fee_policy": org.fee_policy,
        "trust_level": assessment.trust_level,
        "payout_delay_days": org.payout_delay_days,
        "payout_delay_minimum": assessment.minimum_delay_days,
        "payout_delay_maximum": MAX_PAYOUT_DELAY_DAYS,
        "successful_payout_count": org.successful_payout_count,
        "recent_disputes": count_recent_disputes(org.id, window_days=DISPUTE_WINDOW_DAYS),
        "account_status": account.status if account else "NOT_STARTED",
    }
