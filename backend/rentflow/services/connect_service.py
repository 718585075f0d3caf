# Overview: Lifecycle of an organization's connected (payout) account at the processor.

"""
Connected Account Manager

WHY: A landlord can only be paid once the processor has verified them.
This service creates the processor account, hands out onboarding links and
mirrors the processor's view of the account into connected_accounts.

STATE MACHINE:
    NOT_STARTED (no row) -> ONBOARDING -> ACTIVE
    ONBOARDING | ACTIVE -> RESTRICTED   (disabled_reason / past-due requirements)
    RESTRICTED -> ACTIVE                (requirements resolved)
    any -> REJECTED                     (terminal)

CONCURRENCY:
- Processor calls happen with no row locks held
- sync_account_status is the sole writer of capability flags and requirement
  lists; it is a compare-and-swap on last_synced_at, so an older snapshot
  never overwrites a newer one
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import ConnectedAccount, Organization
from ..time_utils import to_naive_utc
from .concurrency import lock_for_update, run_with_retry
from .event_service import ACCOUNT_CREATED, ACCOUNT_STATUS_CHANGED, emit
from .processor import AccountSnapshot, business_structure_for, get_processor
from ..validation import (
    AlreadyExists,
    NotActive,
    NotFound,
    ValidationError,
    require_choice,
    require_text,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ACCOUNT STATUS (CONSTANTS)
# =============================================================================

STATUS_NOT_STARTED = "NOT_STARTED"
STATUS_ONBOARDING = "ONBOARDING"
STATUS_ACTIVE = "ACTIVE"
STATUS_RESTRICTED = "RESTRICTED"
STATUS_REJECTED = "REJECTED"

BUSINESS_TYPES = ["individual", "company"]
ENTITY_TYPES = ["LLC", "LP", "S_CORP", "C_CORP", "TRUST", "INDIVIDUAL", "OTHER"]


@dataclass(frozen=True)
class CanAcceptResult:
    can_accept: bool
    reason: str | None = None

    def to_dict(self) -> dict:
        return {"can_accept": self.can_accept, "reason": self.reason}


def derive_account_status(current: str, snapshot: AccountSnapshot) -> str:
    """Next local status for a processor snapshot."""
    if current == STATUS_REJECTED:
        return STATUS_REJECTED
    reason = snapshot.disabled_reason or ""
    if reason.startswith("rejected"):
        return STATUS_REJECTED
    if reason or snapshot.past_due:
        return STATUS_RESTRICTED
    if snapshot.charges_enabled and snapshot.payouts_enabled and snapshot.details_submitted:
        return STATUS_ACTIVE
    if current == STATUS_ACTIVE:
        # Lost capabilities without a stated reason
        return STATUS_RESTRICTED
    return current


def _snapshot_values(snapshot: AccountSnapshot) -> dict:
    return {
        "charges_enabled": snapshot.charges_enabled,
        "payouts_enabled": snapshot.payouts_enabled,
        "details_submitted": snapshot.details_submitted,
        "currently_due": list(snapshot.currently_due),
        "eventually_due": list(snapshot.eventually_due),
        "past_due": list(snapshot.past_due),
        "disabled_reason": snapshot.disabled_reason,
        "card_payments_capability": snapshot.card_payments,
        "transfers_capability": snapshot.transfers,
        "us_bank_account_capability": snapshot.us_bank_account,
        "default_bank_last4": snapshot.bank_last4,
        "default_bank_name": snapshot.bank_name,
        "last_synced_at": snapshot.observed_at,
    }


def _account_for_org(org_id: int) -> ConnectedAccount:
    account = db.session.query(ConnectedAccount).filter_by(org_id=org_id).first()
    if not account:
        raise NotFound("Organization does not have a connected account")
    return account


def connect_idempotency_key(org_id: int, params: dict) -> str:
    """
    Per-org key with a digest of the account parameters. A retry with the
    same details reuses the key; edited details get a fresh one instead of a
    processor-side parameter mismatch.
    """
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"org-{org_id}-connect-account-{digest}"


# =============================================================================
# ACCOUNT CREATION
# =============================================================================

def create_account(
    *,
    org_id: int,
    business_type: str,
    entity_type: str,
    business_name: str | None = None,
    email: str | None = None,
) -> ConnectedAccount:
    """
    Create the processor account and its local row (status ONBOARDING).

    The local row is written only after the processor confirms. The
    processor call carries an idempotency key derived from the org id and
    the account details, so a retry after a failed local write gets the same
    processor account back and the insert finds it by processor_account_id
    instead of duplicating.

    Raises:
        ValidationError: Unknown business/entity type
        NotFound: Organization missing
        AlreadyExists: Organization already has a connected account
        ProcessorError: Processor refused to create the account
    """
    if not isinstance(business_type, str) or business_type.lower() not in BUSINESS_TYPES:
        raise ValidationError(f"Invalid business_type: {business_type}. Must be one of {BUSINESS_TYPES}")
    business_type = business_type.lower()
    entity_type = require_choice(entity_type, ENTITY_TYPES, "entity_type")
    business_name = require_text(business_name, "business_name", allow_none=True)

    org = db.session.query(Organization).filter_by(id=org_id).first()
    if not org:
        raise NotFound(f"Organization {org_id} not found")
    if db.session.query(ConnectedAccount).filter_by(org_id=org_id).first():
        raise AlreadyExists("Organization already has a connected account")

    params = {
        "email": email or org.email,
        "business_type": business_type,
        "business_structure": business_structure_for(entity_type),
        "business_name": business_name or org.name,
        "payout_delay_days": org.payout_delay_days,
    }
    db.session.commit()

    snapshot = get_processor().create_connected_account(
        org_id=org_id,
        idempotency_key=connect_idempotency_key(org_id, params),
        **params,
    )

    def _op():
        existing = db.session.query(ConnectedAccount).filter_by(
            processor_account_id=snapshot.account_id
        ).first()
        if existing:
            return existing, False

        account = ConnectedAccount(
            org_id=org_id,
            processor_account_id=snapshot.account_id,
            status=STATUS_ONBOARDING,
            business_type=business_type,
            entity_type=entity_type,
            business_name=business_name,
            **_snapshot_values(snapshot),
        )
        db.session.add(account)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = db.session.query(ConnectedAccount).filter_by(
                processor_account_id=snapshot.account_id
            ).first()
            if existing:
                return existing, False
            raise AlreadyExists("Organization already has a connected account")
        return account, True

    account, created = run_with_retry(_op)
    if created:
        logger.info("Connected account %s created for org %s", account.processor_account_id, org_id)
        emit(ACCOUNT_CREATED, entity_type="connected_account", entity_id=account.id, org_id=org_id,
             processor_account_id=account.processor_account_id, status=account.status)
    else:
        logger.info("Connected account %s already recorded for org %s", account.processor_account_id, org_id)
    return account


# =============================================================================
# ONBOARDING AND DASHBOARD
# =============================================================================

def get_onboarding_url(*, org_id: int, refresh_url: str | None = None, return_url: str | None = None) -> dict:
    """
    Short-lived onboarding link; a fresh one is issued on every call.

    Raises:
        NotFound: No connected account
        NotActive: Account was rejected
    """
    account = _account_for_org(org_id)
    if account.status == STATUS_REJECTED:
        raise NotActive("Connected account was rejected by the processor")

    base_url = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    refresh_url = refresh_url or f"{base_url}/dashboard/settings/payments?refresh=true"
    return_url = return_url or f"{base_url}/dashboard/settings/payments?onboarding=complete"

    link = get_processor().create_onboarding_link(account.processor_account_id, refresh_url, return_url)
    return {"url": link.url, "expires_at": link.expires_at}


def get_express_dashboard_url(org_id: int) -> str:
    account = _account_for_org(org_id)
    if account.status != STATUS_ACTIVE:
        raise NotActive("Account must be fully active to access the dashboard")
    return get_processor().create_dashboard_link(account.processor_account_id).url


# =============================================================================
# STATUS SYNCHRONIZATION
# =============================================================================

def sync_account_status(processor_account_id: str) -> ConnectedAccount:
    """
    Pull the processor's view of the account and store it.

    Safe to run concurrently with itself: the write only lands if the
    snapshot is newer than the stored last_synced_at.

    Raises:
        NotFound: Unknown processor account
        ProcessorError: Processor lookup failed
    """
    account = db.session.query(ConnectedAccount).filter_by(
        processor_account_id=processor_account_id
    ).first()
    if not account:
        raise NotFound(f"Connected account {processor_account_id} not found")
    account_id = account.id
    db.session.commit()

    snapshot = get_processor().retrieve_account(processor_account_id)

    def _op():
        current = lock_for_update(db.session.query(ConnectedAccount).filter_by(id=account_id)).first()
        previous_status = current.status
        if current.last_synced_at is not None and to_naive_utc(current.last_synced_at) >= snapshot.observed_at:
            db.session.commit()
            return current, previous_status, False

        values = _snapshot_values(snapshot)
        values["status"] = derive_account_status(previous_status, snapshot)
        if values["status"] == STATUS_ACTIVE and current.activated_at is None:
            values["activated_at"] = snapshot.observed_at

        updated = db.session.query(ConnectedAccount).filter(
            ConnectedAccount.id == account_id,
            or_(
                ConnectedAccount.last_synced_at.is_(None),
                ConnectedAccount.last_synced_at < snapshot.observed_at,
            ),
        ).update(values, synchronize_session=False)
        db.session.commit()
        return current, previous_status, bool(updated)

    account, previous_status, applied = run_with_retry(_op)
    if not applied:
        logger.info("Discarded stale snapshot for %s (observed %s)", processor_account_id, snapshot.observed_at)
        return account

    if account.status != previous_status:
        logger.info("Connected account %s status %s -> %s", processor_account_id, previous_status, account.status)
        emit(ACCOUNT_STATUS_CHANGED, entity_type="connected_account", entity_id=account.id,
             org_id=account.org_id, previous_status=previous_status, status=account.status,
             disabled_reason=account.disabled_reason)
    return account


def sync_all_accounts() -> dict:
    """Re-sync every non-terminal account (used by the CLI job)."""
    account_ids = [
        row.processor_account_id
        for row in db.session.query(ConnectedAccount)
        .filter(ConnectedAccount.status != STATUS_REJECTED)
        .order_by(ConnectedAccount.id.asc())
        .all()
    ]
    db.session.commit()

    synced, failed = [], []
    for processor_account_id in account_ids:
        try:
            account = sync_account_status(processor_account_id)
            synced.append({"processor_account_id": processor_account_id, "status": account.status})
        except Exception as exc:
            db.session.rollback()
            logger.warning("Sync failed for %s: %s", processor_account_id, exc)
            failed.append({"processor_account_id": processor_account_id, "error": str(exc)})
    return {"synced": synced, "failed": failed}


def mark_account_deauthorized(processor_account_id: str) -> ConnectedAccount:
    """The landlord disconnected the platform; the account can no longer be paid."""
    def _op():
        account = lock_for_update(
            db.session.query(ConnectedAccount).filter_by(processor_account_id=processor_account_id)
        ).first()
        if not account:
            raise NotFound(f"Connected account {processor_account_id} not found")
        previous = account.status
        account.status = STATUS_REJECTED
        account.charges_enabled = False
        account.payouts_enabled = False
        account.disabled_reason = "platform.deauthorized"
        db.session.commit()
        return account, previous

    account, previous = run_with_retry(_op)
    if previous != STATUS_REJECTED:
        logger.warning("Connected account %s deauthorized (was %s)", processor_account_id, previous)
        emit(ACCOUNT_STATUS_CHANGED, entity_type="connected_account", entity_id=account.id,
             org_id=account.org_id, previous_status=previous, status=STATUS_REJECTED,
             disabled_reason=account.disabled_reason)
    return account


# =============================================================================
# READS
# =============================================================================

def get_account_status(org_id: int) -> dict:
    """Local (last synced) view of the account."""
    org = db.session.query(Organization).filter_by(id=org_id).first()
    if not org:
        raise NotFound(f"Organization {org_id} not found")
    account = db.session.query(ConnectedAccount).filter_by(org_id=org_id).first()
    return {
        "org_id": org_id,
        "status": account.status if account else STATUS_NOT_STARTED,
        "account": account.to_dict() if account else None,
    }


def can_accept_payments(org_id: int) -> CanAcceptResult:
    org = db.session.query(Organization).filter_by(id=org_id).first()
    if not org:
        return CanAcceptResult(False, "Organization not found")

    account = db.session.query(ConnectedAccount).filter_by(org_id=org_id).first()
    if not account:
        return CanAcceptResult(False, "Payment account not set up")
    if account.status != STATUS_ACTIVE:
        return CanAcceptResult(False, f"Account status: {account.status.lower()}")
    if not account.charges_enabled:
        return CanAcceptResult(False, "Charges not enabled on account")
    if not account.payouts_enabled:
        return CanAcceptResult(False, "Payouts not enabled on account")
    if account.past_due:
        return CanAcceptResult(False, "Account has past-due requirements")
    return CanAcceptResult(True)
