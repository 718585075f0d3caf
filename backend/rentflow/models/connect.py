from __future__ import annotations

from ..extensions import db
from rentflow.time_utils import to_utc_z


class ConnectedAccount(db.Model):
    """
    An organization's Stripe Connect (Express) account.

    LIFECYCLE: ONBOARDING -> ACTIVE <-> RESTRICTED, any -> REJECTED (terminal).
    NOT_STARTED is the absence of a row.

    WRITERS:
    - connect_service.create_account (initial row)
    - connect_service.sync_account_status: sole writer of capability flags and
      requirement lists, guarded by last_synced_at compare-and-swap

    INVARIANT: status == ACTIVE implies charges_enabled and payouts_enabled.
    Rows are never deleted.
    """
    __tablename__ = "connected_accounts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, unique=True, index=True)
    processor_account_id = db.Column(db.String(64), nullable=False, unique=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="ONBOARDING", index=True)

    business_type = db.Column(db.String(16), nullable=False)  # individual, company
    entity_type = db.Column(db.String(16), nullable=False)  # LLC, LP, S_CORP, C_CORP, TRUST, INDIVIDUAL, OTHER
    business_name = db.Column(db.String(255), nullable=True)

    charges_enabled = db.Column(db.Boolean, nullable=False, default=False)
    payouts_enabled = db.Column(db.Boolean, nullable=False, default=False)
    details_submitted = db.Column(db.Boolean, nullable=False, default=False)

    # Requirement lists as reported by the processor
    currently_due = db.Column(db.JSON, nullable=False, default=list)
    eventually_due = db.Column(db.JSON, nullable=False, default=list)
    past_due = db.Column(db.JSON, nullable=False, default=list)
    disabled_reason = db.Column(db.String(128), nullable=True)

    # Capability states: inactive, pending, active
    card_payments_capability = db.Column(db.String(16), nullable=True)
    transfers_capability = db.Column(db.String(16), nullable=True)
    us_bank_account_capability = db.Column(db.String(16), nullable=True)

    default_bank_last4 = db.Column(db.String(4), nullable=True)
    default_bank_name = db.Column(db.String(128), nullable=True)

    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("connected_account", uselist=False, lazy=True))

    def __repr__(self) -> str:
        return f"<ConnectedAccount org_id={self.org_id} account={self.processor_account_id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "processor_account_id": self.processor_account_id,
            "status": self.status,
            "business_type": self.business_type,
            "entity_type": self.entity_type,
            "business_name": self.business_name,
            "charges_enabled": self.charges_enabled,
            "payouts_enabled": self.payouts_enabled,
            "details_submitted": self.details_submitted,
            "currently_due": list(self.currently_due or []),
            "eventually_due": list(self.eventually_due or []),
            "past_due": list(self.past_due or []),
            "disabled_reason": self.disabled_reason,
            "capabilities": {
                "card_payments": self.card_payments_capability,
                "transfers": self.transfers_capability,
                "us_bank_account_ach_payments": self.us_bank_account_capability,
            },
            "default_bank_last4": self.default_bank_last4,
            "default_bank_name": self.default_bank_name,
            "activated_at": to_utc_z(self.activated_at),
            "last_synced_at": to_utc_z(self.last_synced_at),
            "created_at": to_utc_z(self.created_at),
        }


class ProcessorEvent(db.Model):
    """Webhook event ids already handled (at-least-once delivery dedupe)."""
    __tablename__ = "processor_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    event_type = db.Column(db.String(128), nullable=False)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
