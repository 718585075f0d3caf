# Overview: Applies processor webhook events to local state (deduplicated by event id).

"""
Processor Webhooks

Events are delivered at least once, in any order. Each event id is claimed
in processor_events before it is applied; a redelivery finds the claim and
is acknowledged without touching anything. If applying fails the claim is
released so the processor's retry can apply it.

HANDLED EVENTS:
- payment_intent.succeeded / .processing / .payment_failed -> reconcile_transaction
- account.updated                                          -> sync_account_status
- account.application.deauthorized                         -> mark_account_deauthorized
- payout.paid                                              -> record_successful_payout
- payout.failed                                            -> record_failed_payout
- charge.dispute.created / .closed                         -> dispute_service
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import ConnectedAccount, ProcessorEvent
from ..time_utils import from_unix
from ..validation import NotFound
from . import charge_service, connect_service, dispute_service, payout_policy_service

logger = logging.getLogger(__name__)


_INTENT_STATUS = {
    "payment_intent.succeeded": charge_service.TXN_SUCCEEDED,
    "payment_intent.processing": charge_service.TXN_PROCESSING,
    "payment_intent.payment_failed": charge_service.TXN_FAILED,
}


def _claim(event_id: str, event_type: str) -> bool:
    db.session.add(ProcessorEvent(event_id=event_id, event_type=event_type))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def _release(event_id: str) -> None:
    db.session.rollback()
    db.session.query(ProcessorEvent).filter_by(event_id=event_id).delete()
    db.session.commit()


def _org_for_account(account_id: str) -> int:
    account = db.session.query(ConnectedAccount).filter_by(processor_account_id=account_id).first()
    if not account:
        raise NotFound(f"Connected account {account_id} not found")
    return account.org_id


def handle_event(event) -> dict:
    """
    Apply one verified event.

    Returns:
        {"event_id", "event_type", "duplicate", "handled"}
    """
    event_id = event["id"]
    event_type = event["type"]

    if not _claim(event_id, event_type):
        logger.info("Duplicate webhook event %s (%s) ignored", event_id, event_type)
        return {"event_id": event_id, "event_type": event_type, "duplicate": True, "handled": False}

    try:
        handled = _dispatch(event_type, event)
    except NotFound as exc:
        # Object we never created (or another platform's); acknowledge
        logger.warning("Webhook %s (%s) references unknown object: %s", event_id, event_type, exc.message)
        handled = False
    except Exception:
        _release(event_id)
        raise

    return {"event_id": event_id, "event_type": event_type, "duplicate": False, "handled": handled}


def _dispatch(event_type: str, event) -> bool:
    obj = event["data"]["object"]

    if event_type in _INTENT_STATUS:
        metadata = obj.get("metadata") or {}
        payment_id = metadata.get("transaction_id")
        error = obj.get("last_payment_error") or {}
        charge_service.reconcile_transaction(
            obj["id"],
            _INTENT_STATUS[event_type],
            failure_reason=error.get("message"),
            payment_id=int(payment_id) if payment_id and str(payment_id).isdigit() else None,
        )
        return True

    if event_type == "account.updated":
        connect_service.sync_account_status(obj["id"])
        return True

    if event_type == "account.application.deauthorized":
        account_id = event.get("account")
        if not account_id:
            return False
        connect_service.mark_account_deauthorized(account_id)
        return True

    if event_type in ("payout.paid", "payout.failed"):
        account_id = event.get("account")
        if not account_id:
            return False
        org_id = _org_for_account(account_id)
        if event_type == "payout.paid":
            payout_policy_service.record_successful_payout(
                org_id=org_id,
                paid_at=from_unix(obj.get("arrival_date")),
            )
        else:
            payout_policy_service.record_failed_payout(
                org_id=org_id,
                failure_code=obj.get("failure_code"),
                failure_message=obj.get("failure_message"),
            )
        return True

    if event_type == "charge.dispute.created":
        evidence = obj.get("evidence_details") or {}
        dispute_service.record_dispute_opened(
            obj["id"],
            processor_charge_id=obj.get("payment_intent"),
            amount_cents=obj.get("amount") or 0,
            currency=obj.get("currency"),
            reason=obj.get("reason"),
            evidence_due_by=from_unix(evidence.get("due_by")),
            opened_at=from_unix(obj.get("created")),
        )
        return True

    if event_type == "charge.dispute.closed":
        dispute_service.record_dispute_closed(obj["id"], obj.get("status"))
        return True

    logger.debug("Unhandled webhook event type %s", event_type)
    return False
