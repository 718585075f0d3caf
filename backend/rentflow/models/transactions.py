from __future__ import annotations

from ..extensions import db
from rentflow.time_utils import to_utc_z


class PaymentTransaction(db.Model):
    """
    One money-movement attempt (tenant -> landlord destination charge).

    WHY: Written PENDING before the processor is called so a retried request
    reuses the same idempotency key and can never double-charge.

    LIFECYCLE: PENDING -> PROCESSING -> SUCCEEDED | FAILED
    (PENDING may jump straight to SUCCEEDED/FAILED when the processor answers
    synchronously.) SUCCEEDED rows are immutable.

    INVARIANT: amount_cents equals the sum of the linked TransactionCharge
    amounts, snapshotted at creation.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_transactions_tenant_created", "tenant_id", "created_at"),
        db.Index("ix_payment_transactions_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(255), nullable=False, unique=True, index=True)
    request_fingerprint = db.Column(db.String(64), nullable=False)

    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False)
    lease_id = db.Column(db.Integer, db.ForeignKey("leases.id"), nullable=False, index=True)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=False)
    autopay_schedule_id = db.Column(db.Integer, db.ForeignKey("autopay_schedules.id"), nullable=True, index=True)

    source = db.Column(db.String(16), nullable=False, default="ONE_TIME")  # ONE_TIME, AUTOPAY
    description = db.Column(db.String(255), nullable=True)

    # Fee breakdown snapshot (all cents)
    method_class = db.Column(db.String(32), nullable=False)
    fee_policy = db.Column(db.String(32), nullable=False)
    fee_schedule_version = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)  # gross obligation amount
    processing_fee_cents = db.Column(db.Integer, nullable=False)
    payer_portion_cents = db.Column(db.Integer, nullable=False)
    landlord_portion_cents = db.Column(db.Integer, nullable=False)
    payer_total_cents = db.Column(db.Integer, nullable=False)
    net_to_landlord_cents = db.Column(db.Integer, nullable=False)

    destination_account_id = db.Column(db.String(64), nullable=False)
    processor_charge_id = db.Column(db.String(64), nullable=True, unique=True)  # PaymentIntent id

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    failure_code = db.Column(db.String(64), nullable=True)
    failure_reason = db.Column(db.String(500), nullable=True)
    receipt_url = db.Column(db.String(500), nullable=True)
    receipt_number = db.Column(db.String(32), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    charges = db.relationship("TransactionCharge", backref="transaction", lazy=True, order_by="TransactionCharge.id")
    payment_method = db.relationship("PaymentMethod")

    __mapper_args__ = {"version_id_col": version_id}

    def fee_dict(self) -> dict:
        return {
            "fee_schedule_version": self.fee_schedule_version,
            "method_class": self.method_class,
            "fee_policy": self.fee_policy,
            "amount_cents": self.amount_cents,
            "processing_fee_cents": self.processing_fee_cents,
            "payer_portion_cents": self.payer_portion_cents,
            "landlord_portion_cents": self.landlord_portion_cents,
            "payer_total_cents": self.payer_total_cents,
            "net_to_landlord_cents": self.net_to_landlord_cents,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "org_id": self.org_id,
            "tenant_id": self.tenant_id,
            "lease_id": self.lease_id,
            "payment_method_id": self.payment_method_id,
            "autopay_schedule_id": self.autopay_schedule_id,
            "source": self.source,
            "description": self.description,
            "charge_ids": [c.charge_id for c in self.charges],
            "fees": self.fee_dict(),
            "destination_account_id": self.destination_account_id,
            "processor_charge_id": self.processor_charge_id,
            "status": self.status,
            "failure_code": self.failure_code,
            "failure_reason": self.failure_reason,
            "receipt_url": self.receipt_url,
            "receipt_number": self.receipt_number,
            "created_at": to_utc_z(self.created_at),
            "submitted_at": to_utc_z(self.submitted_at),
            "completed_at": to_utc_z(self.completed_at),
        }


class TransactionCharge(db.Model):
    """Source obligation covered by a transaction, with its amount at creation time."""
    __tablename__ = "transaction_charges"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "charge_id", name="uq_transaction_charges_txn_charge"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("payment_transactions.id"), nullable=False, index=True)
    charge_id = db.Column(db.Integer, db.ForeignKey("lease_charges.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
