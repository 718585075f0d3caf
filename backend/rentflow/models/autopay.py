from __future__ import annotations

from ..extensions import db
from rentflow.time_utils import to_utc_z


class AutoPaySchedule(db.Model):
    """
    Standing monthly instruction to pay a lease from a saved method.

    One row per (tenant, lease); cancel flips active to False and setup
    reactivates the same row, so "at most one active schedule per lease"
    is enforced by the unique constraint.
    """
    __tablename__ = "autopay_schedules"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "lease_id", name="uq_autopay_tenant_lease"),
        db.Index("ix_autopay_active_day", "active", "day_of_month"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    lease_id = db.Column(db.Integer, db.ForeignKey("leases.id"), nullable=False, index=True)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=False, index=True)

    day_of_month = db.Column(db.Integer, nullable=False)  # 1-28
    amount_mode = db.Column(db.String(16), nullable=False, default="FULL_BALANCE")  # FIXED, FULL_BALANCE
    amount_cents = db.Column(db.Integer, nullable=True)  # required when FIXED
    charge_types = db.Column(db.JSON, nullable=False, default=lambda: ["RENT"])

    active = db.Column(db.Boolean, nullable=False, default=True)

    # Run bookkeeping
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_result = db.Column(db.String(16), nullable=True)  # SUCCEEDED, PROCESSING, FAILED, NO_CHARGES, ERROR
    last_failure_reason = db.Column(db.String(500), nullable=True)
    last_transaction_id = db.Column(db.Integer, db.ForeignKey("payment_transactions.id", use_alter=True, name="fk_autopay_last_transaction_id"), nullable=True)
    consecutive_failures = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lease = db.relationship("Lease")
    payment_method = db.relationship("PaymentMethod")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        method = self.payment_method
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "lease_id": self.lease_id,
            "payment_method_id": self.payment_method_id,
            "payment_method": {
                "method_class": method.method_class if method else None,
                "last4": method.last4 if method else None,
                "card_brand": method.card_brand if method else None,
                "bank_name": method.bank_name if method else None,
            },
            "day_of_month": self.day_of_month,
            "amount_mode": self.amount_mode,
            "amount_cents": self.amount_cents,
            "charge_types": list(self.charge_types or []),
            "active": self.active,
            "last_run_at": to_utc_z(self.last_run_at),
            "last_result": self.last_result,
            "last_failure_reason": self.last_failure_reason,
            "last_transaction_id": self.last_transaction_id,
            "consecutive_failures": self.consecutive_failures,
            "next_retry_at": to_utc_z(self.next_retry_at),
            "created_at": to_utc_z(self.created_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
        }
