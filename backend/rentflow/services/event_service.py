# Overview: Audit/notification events for payment state transitions.

"""
Payment Events

Every state transition (account created, status changed, charge
succeeded/failed, schedule created/cancelled...) is announced on the
`payment_event` signal after the database commit that made it durable.

Receivers are fire-and-forget: an exception in one receiver is logged and
never propagates back into the financial operation that emitted it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from blinker import Namespace

from rentflow.time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)

_signals = Namespace()

payment_event = _signals.signal("payment-event")


# =============================================================================
# EVENT TYPES (CONSTANTS)
# =============================================================================

ACCOUNT_CREATED = "account.created"
ACCOUNT_STATUS_CHANGED = "account.status_changed"
PAYOUT_DELAY_CHANGED = "account.payout_delay_changed"
FEE_POLICY_CHANGED = "organization.fee_policy_changed"
TRUST_LEVEL_CHANGED = "organization.trust_level_changed"
PAYOUT_FAILED = "account.payout_failed"

METHOD_SAVED = "payment_method.saved"
METHOD_DEFAULT_CHANGED = "payment_method.default_changed"
METHOD_REMOVED = "payment_method.removed"

CHARGE_SUCCEEDED = "charge.succeeded"
CHARGE_PROCESSING = "charge.processing"
CHARGE_FAILED = "charge.failed"

AUTOPAY_CREATED = "autopay.created"
AUTOPAY_UPDATED = "autopay.updated"
AUTOPAY_CANCELLED = "autopay.cancelled"
AUTOPAY_RUN = "autopay.run"
AUTOPAY_DISABLED = "autopay.disabled"

DISPUTE_OPENED = "dispute.opened"
DISPUTE_CLOSED = "dispute.closed"


@dataclass(frozen=True)
class PaymentEvent:
    event_type: str
    entity_type: str
    entity_id: int | None
    org_id: int | None = None
    tenant_id: int | None = None
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "org_id": self.org_id,
            "tenant_id": self.tenant_id,
            "payload": dict(self.payload),
            "occurred_at": to_utc_z(self.occurred_at),
        }


def emit(
    event_type: str,
    *,
    entity_type: str,
    entity_id: int | None,
    org_id: int | None = None,
    tenant_id: int | None = None,
    **payload,
) -> PaymentEvent:
    """
    Publish a committed state transition.

    Must be called after db.session.commit(); never inside a transaction
    that can still roll back.
    """
    event = PaymentEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        org_id=org_id,
        tenant_id=tenant_id,
        payload=payload,
    )
    logger.info("payment event %s %s=%s", event_type, entity_type, entity_id)

    for receiver in payment_event.receivers_for(event):
        try:
            receiver(event)
        except Exception:
            logger.exception("payment event receiver failed for %s", event_type)

    return event
