"""
Pytest fixtures for RentFlow payments tests.

Provides the test app on an in-memory database, a per-test table wipe,
a recording fake payment processor, and landlord/tenant/lease factories.
"""

import json
from datetime import date, timedelta
from itertools import count

import pytest

from rentflow import create_app
from rentflow.extensions import db
from rentflow.models import (
    ConnectedAccount,
    Lease,
    LeaseCharge,
    Organization,
    PaymentMethod,
    PaymentTransaction,
    ProcessorCustomer,
    Tenant,
)
from rentflow.services.event_service import payment_event
from rentflow.services.processor import (
    AccountSnapshot,
    ChargeOutcome,
    LinkResult,
    MethodDetails,
    PaymentProcessor,
    SetupSession,
)
from rentflow.time_utils import utcnow
from rentflow.validation import ValidationError


class FakeProcessor(PaymentProcessor):
    """
    In-memory processor double.

    Every call is recorded in `calls` as (name, kwargs). `fail(name, exc)`
    makes that operation raise until `clear_failures()`. Destination charges
    succeed unless `charge_outcome` or a failure says otherwise.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.accounts = {}
        self.methods = {}
        self.charge_outcome = None
        self._ids = count(1)
        self._clock = utcnow()

    # -- test controls -------------------------------------------------------

    def fail(self, name, exc):
        self.failures[name] = exc

    def clear_failures(self):
        self.failures.clear()

    def calls_to(self, name):
        return [kwargs for call_name, kwargs in self.calls if call_name == name]

    def set_account(self, account_id, **state):
        self.accounts.setdefault(account_id, {}).update(state)

    def register_method(self, method_id, method_class="CARD", **details):
        self.methods[method_id] = dict(method_class=method_class, **details)

    def _record(self, operation, **kwargs):
        self.calls.append((operation, kwargs))
        if operation in self.failures:
            raise self.failures[operation]

    def _tick(self):
        self._clock = self._clock + timedelta(seconds=1)
        return self._clock

    def _snapshot(self, account_id):
        state = self.accounts.get(account_id, {})
        return AccountSnapshot(
            account_id=account_id,
            charges_enabled=state.get("charges_enabled", False),
            payouts_enabled=state.get("payouts_enabled", False),
            details_submitted=state.get("details_submitted", False),
            currently_due=list(state.get("currently_due", [])),
            eventually_due=list(state.get("eventually_due", [])),
            past_due=list(state.get("past_due", [])),
            disabled_reason=state.get("disabled_reason"),
            card_payments=state.get("card_payments"),
            transfers=state.get("transfers"),
            us_bank_account=state.get("us_bank_account"),
            bank_last4=state.get("bank_last4"),
            bank_name=state.get("bank_name"),
            observed_at=state.get("observed_at") or self._tick(),
        )

    # -- connected accounts --------------------------------------------------

    def create_connected_account(self, *, org_id, email, business_type, business_structure,
                                 business_name, payout_delay_days, idempotency_key):
        self._record("create_connected_account", org_id=org_id, email=email, business_type=business_type,
                     business_structure=business_structure, business_name=business_name,
                     payout_delay_days=payout_delay_days, idempotency_key=idempotency_key)
        account_id = f"acct_{idempotency_key}"
        self.accounts.setdefault(account_id, {"currently_due": ["external_account"]})
        return self._snapshot(account_id)

    def retrieve_account(self, account_id):
        self._record("retrieve_account", account_id=account_id)
        return self._snapshot(account_id)

    def create_onboarding_link(self, account_id, refresh_url, return_url):
        self._record("create_onboarding_link", account_id=account_id, refresh_url=refresh_url,
                     return_url=return_url)
        return LinkResult(url=f"https://connect.example/setup/{account_id}",
                          expires_at=utcnow() + timedelta(minutes=5))

    def create_dashboard_link(self, account_id):
        self._record("create_dashboard_link", account_id=account_id)
        return LinkResult(url=f"https://connect.example/express/{account_id}")

    def update_payout_delay(self, account_id, delay_days):
        self._record("update_payout_delay", account_id=account_id, delay_days=delay_days)

    # -- customers and methods ----------------------------------------------

    def create_customer(self, *, tenant_id, email, name, phone, idempotency_key):
        self._record("create_customer", tenant_id=tenant_id, email=email, name=name, phone=phone,
                     idempotency_key=idempotency_key)
        return f"cus_{tenant_id}"

    def create_setup_session(self, *, customer_id, payment_method_types, return_url, tenant_id):
        self._record("create_setup_session", customer_id=customer_id,
                     payment_method_types=list(payment_method_types), return_url=return_url,
                     tenant_id=tenant_id)
        intent_id = f"seti_{next(self._ids)}"
        return SetupSession(
            setup_intent_id=intent_id,
            client_secret=f"{intent_id}_secret",
            customer_id=customer_id,
            payment_method_types=list(payment_method_types),
            return_url=return_url,
        )

    def attach_payment_method(self, method_id, customer_id):
        self._record("attach_payment_method", method_id=method_id, customer_id=customer_id)
        details = dict(self.methods.get(method_id) or {"method_class": "CARD", "card_brand": "visa", "last4": "4242"})
        return MethodDetails(method_id=method_id, customer_id=customer_id, **details)

    def set_customer_default_method(self, customer_id, method_id):
        self._record("set_customer_default_method", customer_id=customer_id, method_id=method_id)

    def detach_payment_method(self, method_id):
        self._record("detach_payment_method", method_id=method_id)

    # -- charges -------------------------------------------------------------

    def create_destination_charge(self, *, amount_cents, currency, customer_id, method_id, method_class,
                                  destination_account_id, transfer_amount_cents, description,
                                  statement_descriptor, metadata, idempotency_key):
        self._record("create_destination_charge", amount_cents=amount_cents, currency=currency,
                     customer_id=customer_id, method_id=method_id, method_class=method_class,
                     destination_account_id=destination_account_id,
                     transfer_amount_cents=transfer_amount_cents, description=description,
                     statement_descriptor=statement_descriptor, metadata=dict(metadata),
                     idempotency_key=idempotency_key)
        if self.charge_outcome is not None:
            return self.charge_outcome
        payment_id = f"pi_{idempotency_key}"
        return ChargeOutcome(
            payment_id=payment_id,
            status="SUCCEEDED",
            amount_cents=amount_cents,
            receipt_url=f"https://pay.example/receipts/{payment_id}",
        )

    # -- webhooks ------------------------------------------------------------

    def construct_webhook_event(self, payload, signature):
        if signature != "valid-signature":
            raise ValidationError("Invalid webhook payload: bad signature")
        return json.loads(payload)


# =============================================================================
# APP AND DATABASE
# =============================================================================

@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'APP_BASE_URL': 'https://app.rentflow.test',
        'STRIPE_SECRET_KEY': 'sk_test_unused',
        'STRIPE_WEBHOOK_SECRET': 'whsec_unused',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def processor(app, db_session):
    """Install a fresh FakeProcessor for the test."""
    fake = FakeProcessor()
    previous = app.extensions.get("payment_processor")
    app.extensions["payment_processor"] = fake
    yield fake
    app.extensions["payment_processor"] = previous


@pytest.fixture(scope='function')
def events():
    """Collect every payment event emitted during the test."""
    captured = []

    def _receiver(event):
        captured.append(event)

    payment_event.connect(_receiver)
    yield captured
    payment_event.disconnect(_receiver)


# =============================================================================
# FACTORIES
# =============================================================================

def make_org(session, **overrides):
    fields = dict(name="Maple Property Group", email="owner@maple.test")
    fields.update(overrides)
    org = Organization(**fields)
    session.add(org)
    session.commit()
    return org


def make_active_account(session, org, processor_account_id=None):
    account = ConnectedAccount(
        org_id=org.id,
        processor_account_id=processor_account_id or f"acct_active_{org.id}",
        status="ACTIVE",
        business_type="company",
        entity_type="LLC",
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
        currently_due=[],
        eventually_due=[],
        past_due=[],
        activated_at=utcnow() - timedelta(days=30),
        last_synced_at=utcnow() - timedelta(days=1),
    )
    session.add(account)
    session.commit()
    return account


def make_tenant(session, org, **overrides):
    fields = dict(org_id=org.id, first_name="Dana", last_name="Reyes", email="dana@example.test")
    fields.update(overrides)
    tenant = Tenant(**fields)
    session.add(tenant)
    session.commit()
    return tenant


def make_lease(session, org, tenant, **overrides):
    fields = dict(org_id=org.id, tenant_id=tenant.id, label="12 Elm St, Unit 4", rent_amount_cents=200000)
    fields.update(overrides)
    lease = Lease(**fields)
    session.add(lease)
    session.commit()
    return lease


def make_charge(session, lease, amount_cents=200000, charge_type="RENT", due_date=None, **overrides):
    charge = LeaseCharge(
        lease_id=lease.id,
        charge_type=charge_type,
        amount_cents=amount_cents,
        due_date=due_date or date(2026, 3, 1),
        **overrides,
    )
    session.add(charge)
    session.commit()
    return charge


def make_method(session, tenant, method_class="US_BANK_ACCOUNT", is_default=True, processor_method_id=None):
    customer = session.query(ProcessorCustomer).filter_by(tenant_id=tenant.id).first()
    if customer is None:
        customer = ProcessorCustomer(tenant_id=tenant.id, processor_customer_id=f"cus_{tenant.id}",
                                     email=tenant.email)
        session.add(customer)
        session.flush()
    method = PaymentMethod(
        tenant_id=tenant.id,
        processor_method_id=processor_method_id or f"pm_{method_class.lower()}_{tenant.id}",
        processor_customer_id=customer.processor_customer_id,
        method_class=method_class,
        is_default=is_default,
        status="ACTIVE",
        last4="6789" if method_class == "US_BANK_ACCOUNT" else "4242",
        bank_name="Test Bank" if method_class == "US_BANK_ACCOUNT" else None,
        card_brand=None if method_class == "US_BANK_ACCOUNT" else "visa",
    )
    session.add(method)
    session.commit()
    return method


def make_settled_payment(session, org, processor_charge_id="pi_settled", amount_cents=200000):
    """A SUCCEEDED ACH rent payment with its own tenant, lease and method."""
    tenant = make_tenant(session, org, first_name="Lee", email=f"lee-{processor_charge_id}@example.test")
    lease = make_lease(session, org, tenant)
    method = make_method(session, tenant)
    txn = PaymentTransaction(
        idempotency_key=f"seed-{processor_charge_id}",
        request_fingerprint="0" * 64,
        org_id=org.id,
        tenant_id=tenant.id,
        lease_id=lease.id,
        payment_method_id=method.id,
        method_class="US_BANK_ACCOUNT",
        fee_policy="LANDLORD_ABSORBS",
        fee_schedule_version="2025-01",
        amount_cents=amount_cents,
        processing_fee_cents=500,
        payer_portion_cents=0,
        landlord_portion_cents=500,
        payer_total_cents=amount_cents,
        net_to_landlord_cents=amount_cents - 500,
        destination_account_id=f"acct_active_{org.id}",
        processor_charge_id=processor_charge_id,
        status="SUCCEEDED",
    )
    session.add(txn)
    session.commit()
    return txn


@pytest.fixture(scope='function')
def org(db_session):
    return make_org(db_session)


@pytest.fixture(scope='function')
def account(db_session, org):
    return make_active_account(db_session, org)


@pytest.fixture(scope='function')
def tenant(db_session, org):
    return make_tenant(db_session, org)


@pytest.fixture(scope='function')
def lease(db_session, org, tenant):
    return make_lease(db_session, org, tenant)


@pytest.fixture(scope='function')
def rent_charge(db_session, lease):
    return make_charge(db_session, lease)


@pytest.fixture(scope='function')
def bank_method(db_session, tenant):
    return make_method(db_session, tenant)


def owner_headers(org):
    return {"X-Actor-Role": "OWNER", "X-Organization-Id": str(org.id)}


def member_headers(org):
    return {"X-Actor-Role": "MEMBER", "X-Organization-Id": str(org.id)}


def tenant_headers(tenant):
    return {"X-Actor-Role": "TENANT", "X-Organization-Id": str(tenant.org_id), "X-Tenant-Id": str(tenant.id)}


SYSTEM_HEADERS = {"X-Actor-Role": "SYSTEM"}
