from __future__ import annotations

from ..extensions import db
from rentflow.time_utils import to_utc_z

class Organization(db.Model):
    """
    Landlord organization: the payee of every rent payment.

    DESIGN:
    - fee_policy decides who pays processing fees (read at charge time only;
      changing it never recomputes existing transactions)
    - payout policy columns are maintained by payout_policy_service;
      trust_level and payout_delay_minimum are derived, never set directly
    - payout_delay_days >= payout_delay_minimum at all times
    """
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # FeePolicy: LANDLORD_ABSORBS, TENANT_PAYS, SPLIT_FEES
    fee_policy = db.Column(db.String(32), nullable=False, default="LANDLORD_ABSORBS")

    # PayoutPolicy
    trust_level = db.Column(db.String(16), nullable=False, default="NEW")
    payout_delay_days = db.Column(db.Integer, nullable=False, default=7)
    payout_delay_minimum = db.Column(db.Integer, nullable=False, default=7)
    successful_payout_count = db.Column(db.Integer, nullable=False, default=0)
    first_successful_payout_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Organization id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "fee_policy": self.fee_policy,
            "trust_level": self.trust_level,
            "payout_delay_days": self.payout_delay_days,
            "payout_delay_minimum": self.payout_delay_minimum,
            "successful_payout_count": self.successful_payout_count,
            "first_successful_payout_at": to_utc_z(self.first_successful_payout_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Tenant(db.Model):
    """
    Payer. Owned by the property-management CRUD layer; read here for
    customer creation and ownership checks.
    """
    __tablename__ = "tenants"
    __table_args__ = (
        db.Index("ix_tenants_org_id", "org_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    # Row is locked FOR UPDATE to serialize changes to the tenant's method set
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("tenants", lazy=True))

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "created_at": to_utc_z(self.created_at),
        }


class Lease(db.Model):
    __tablename__ = "leases"
    __table_args__ = (
        db.Index("ix_leases_org_tenant", "org_id", "tenant_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False)
    label = db.Column(db.String(255), nullable=False)  # e.g. "12 Elm St, Unit 4"
    rent_amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)  # ACTIVE, ENDED

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("leases", lazy=True))
    tenant = db.relationship("Tenant", backref=db.backref("leases", lazy=True))

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "tenant_id": self.tenant_id,
            "label": self.label,
            "rent_amount_cents": self.rent_amount_cents,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class LeaseCharge(db.Model):
    """
    A single obligation on a lease (rent, late fee, utility...).

    Only the charge processor flips status UNPAID -> PAID, inside the same
    transaction that marks the paying transaction SUCCEEDED.
    """
    __tablename__ = "lease_charges"
    __table_args__ = (
        db.Index("ix_lease_charges_lease_status_due", "lease_id", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    lease_id = db.Column(db.Integer, db.ForeignKey("leases.id"), nullable=False)
    charge_type = db.Column(db.String(32), nullable=False, default="RENT")  # RENT, LATE_FEE, UTILITY, DEPOSIT, OTHER
    description = db.Column(db.String(255), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="UNPAID")  # UNPAID, PAID

    paid_transaction_id = db.Column(db.Integer, db.ForeignKey("payment_transactions.id"), nullable=True, index=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lease = db.relationship("Lease", backref=db.backref("charges", lazy=True))

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lease_id": self.lease_id,
            "charge_type": self.charge_type,
            "description": self.description,
            "amount_cents": self.amount_cents,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status,
            "paid_transaction_id": self.paid_transaction_id,
            "paid_at": to_utc_z(self.paid_at),
        }
