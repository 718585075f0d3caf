from __future__ import annotations

from ..extensions import db
from rentflow.time_utils import to_utc_z


class Dispute(db.Model):
    """
    A chargeback opened by the payer's bank against a settled payment.

    WHY: Disputes within the trust window hold back payout-delay upgrades;
    the delay is what lets the platform recover a lost dispute.

    LIFECYCLE: NEEDS_RESPONSE -> WON | LOST | CHARGE_REFUNDED
    Written only from processor webhooks; one row per processor dispute id.
    """
    __tablename__ = "disputes"
    __table_args__ = (
        db.Index("ix_disputes_org_opened", "org_id", "opened_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    processor_dispute_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)
    transaction_id = db.Column(db.Integer, db.ForeignKey("payment_transactions.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    reason = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="NEEDS_RESPONSE", index=True)
    outcome = db.Column(db.String(32), nullable=True)  # processor's final status, verbatim

    evidence_due_by = db.Column(db.DateTime(timezone=True), nullable=True)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    transaction = db.relationship("PaymentTransaction", lazy=True)

    def __repr__(self) -> str:
        return f"<Dispute {self.processor_dispute_id} txn={self.transaction_id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "processor_dispute_id": self.processor_dispute_id,
            "org_id": self.org_id,
            "transaction_id": self.transaction_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "reason": self.reason,
            "status": self.status,
            "outcome": self.outcome,
            "evidence_due_by": to_utc_z(self.evidence_due_by),
            "opened_at": to_utc_z(self.opened_at),
            "resolved_at": to_utc_z(self.resolved_at),
        }
