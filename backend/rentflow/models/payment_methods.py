from __future__ import annotations

from ..extensions import db
from rentflow.time_utils import to_utc_z


class ProcessorCustomer(db.Model):
    """Tenant <-> Stripe customer link (one per tenant)."""
    __tablename__ = "processor_customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, unique=True, index=True)
    processor_customer_id = db.Column(db.String(64), nullable=False, unique=True)
    email = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    tenant = db.relationship("Tenant", backref=db.backref("processor_customer", uselist=False, lazy=True))


class PaymentMethod(db.Model):
    """
    Tokenized, reusable payment instrument belonging to one tenant.

    INVARIANT: at most one ACTIVE row per tenant has is_default = True.
    Removal is soft (status REMOVED); rows stay for AutoPay and transaction
    history.
    """
    __tablename__ = "payment_methods"
    __table_args__ = (
        db.Index("ix_payment_methods_tenant_status", "tenant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False)
    processor_method_id = db.Column(db.String(64), nullable=False, unique=True)
    processor_customer_id = db.Column(db.String(64), nullable=False)

    # CARD, US_BANK_ACCOUNT, APPLE_PAY, GOOGLE_PAY, LINK
    method_class = db.Column(db.String(32), nullable=False)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    nickname = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")  # ACTIVE, REMOVED

    # Display metadata (never the instrument itself)
    card_brand = db.Column(db.String(32), nullable=True)
    last4 = db.Column(db.String(4), nullable=True)
    exp_month = db.Column(db.Integer, nullable=True)
    exp_year = db.Column(db.Integer, nullable=True)
    bank_name = db.Column(db.String(128), nullable=True)
    wallet_type = db.Column(db.String(32), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    removed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    tenant = db.relationship("Tenant", backref=db.backref("payment_methods", lazy=True))

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "processor_method_id": self.processor_method_id,
            "method_class": self.method_class,
            "is_default": self.is_default,
            "nickname": self.nickname,
            "status": self.status,
            "card_brand": self.card_brand,
            "last4": self.last4,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
            "bank_name": self.bank_name,
            "wallet_type": self.wallet_type,
            "created_at": to_utc_z(self.created_at),
            "removed_at": to_utc_z(self.removed_at),
        }
