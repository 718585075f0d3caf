"""
Connected account lifecycle tests.
"""

from datetime import timedelta

import pytest

from conftest import make_active_account, make_org
from rentflow.models import ConnectedAccount
from rentflow.services import connect_service
from rentflow.services.connect_service import (
    STATUS_ACTIVE,
    STATUS_ONBOARDING,
    STATUS_REJECTED,
    STATUS_RESTRICTED,
    derive_account_status,
)
from rentflow.services.event_service import ACCOUNT_CREATED, ACCOUNT_STATUS_CHANGED
from rentflow.services.processor import AccountSnapshot
from rentflow.time_utils import utcnow
from rentflow.validation import AlreadyExists, NotActive, NotFound, ProcessorError, ValidationError


def _snapshot(**overrides):
    fields = dict(account_id="acct_1", charges_enabled=False, payouts_enabled=False, details_submitted=False)
    fields.update(overrides)
    return AccountSnapshot(**fields)


def _verified(processor, account_id):
    processor.set_account(
        account_id,
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
        currently_due=[],
        card_payments="active",
        transfers="active",
        bank_last4="6789",
    )


class TestDeriveAccountStatus:
    def test_fully_enabled_is_active(self):
        snapshot = _snapshot(charges_enabled=True, payouts_enabled=True, details_submitted=True)
        assert derive_account_status(STATUS_ONBOARDING, snapshot) == STATUS_ACTIVE

    def test_incomplete_stays_onboarding(self):
        snapshot = _snapshot(details_submitted=True, currently_due=["external_account"])
        assert derive_account_status(STATUS_ONBOARDING, snapshot) == STATUS_ONBOARDING

    def test_past_due_is_restricted(self):
        snapshot = _snapshot(charges_enabled=True, payouts_enabled=True, details_submitted=True,
                             past_due=["individual.verification.document"])
        assert derive_account_status(STATUS_ACTIVE, snapshot) == STATUS_RESTRICTED

    def test_disabled_reason_is_restricted(self):
        snapshot = _snapshot(disabled_reason="requirements.past_due")
        assert derive_account_status(STATUS_ONBOARDING, snapshot) == STATUS_RESTRICTED

    def test_rejected_reason_is_terminal(self):
        snapshot = _snapshot(disabled_reason="rejected.fraud")
        assert derive_account_status(STATUS_ACTIVE, snapshot) == STATUS_REJECTED

        enabled = _snapshot(charges_enabled=True, payouts_enabled=True, details_submitted=True)
        assert derive_account_status(STATUS_REJECTED, enabled) == STATUS_REJECTED

    def test_active_losing_capabilities_is_restricted(self):
        snapshot = _snapshot(details_submitted=True)
        assert derive_account_status(STATUS_ACTIVE, snapshot) == STATUS_RESTRICTED

    def test_restricted_recovers_when_resolved(self):
        snapshot = _snapshot(charges_enabled=True, payouts_enabled=True, details_submitted=True)
        assert derive_account_status(STATUS_RESTRICTED, snapshot) == STATUS_ACTIVE


class TestCreateAccount:
    def test_creates_onboarding_account(self, db_session, processor, events, org):
        account = connect_service.create_account(org_id=org.id, business_type="company", entity_type="llc")

        assert account.status == STATUS_ONBOARDING
        assert account.entity_type == "LLC"
        assert account.currently_due == ["external_account"]
        call = processor.calls_to("create_connected_account")[0]
        assert call["idempotency_key"].startswith(f"org-{org.id}-connect-account-")
        assert account.processor_account_id == f"acct_{call['idempotency_key']}"
        assert call["payout_delay_days"] == 7
        assert call["email"] == org.email
        assert call["business_name"] == org.name
        assert [e.event_type for e in events] == [ACCOUNT_CREATED]

    def test_second_account_rejected(self, db_session, processor, org):
        connect_service.create_account(org_id=org.id, business_type="company", entity_type="LLC")

        with pytest.raises(AlreadyExists):
            connect_service.create_account(org_id=org.id, business_type="company", entity_type="LLC")

        assert len(processor.calls_to("create_connected_account")) == 1

    def test_rejects_unknown_business_type(self, db_session, processor, org):
        with pytest.raises(ValidationError):
            connect_service.create_account(org_id=org.id, business_type="partnership", entity_type="LLC")
        assert processor.calls == []

    def test_rejects_unknown_entity_type(self, db_session, processor, org):
        with pytest.raises(ValidationError):
            connect_service.create_account(org_id=org.id, business_type="company", entity_type="COOP")

    def test_unknown_org(self, db_session, processor):
        with pytest.raises(NotFound):
            connect_service.create_account(org_id=4242, business_type="company", entity_type="LLC")

    def test_processor_failure_writes_nothing(self, db_session, processor, org):
        processor.fail("create_connected_account", ProcessorError("Country not supported"))

        with pytest.raises(ProcessorError):
            connect_service.create_account(org_id=org.id, business_type="company", entity_type="LLC")

        assert db_session.query(ConnectedAccount).count() == 0

    def test_retry_key_follows_account_details(self, db_session, processor, org):
        processor.fail("create_connected_account", ProcessorError("Country not supported"))
        for name in ("Maple LLC", "Maple LLC", "Maple Holdings LLC"):
            with pytest.raises(ProcessorError):
                connect_service.create_account(org_id=org.id, business_type="company", entity_type="LLC",
                                               business_name=name)

        keys = [c["idempotency_key"] for c in processor.calls_to("create_connected_account")]
        assert keys[0] == keys[1]
        assert keys[2] != keys[0]
        assert all(key.startswith(f"org-{org.id}-connect-account-") for key in keys)


class TestLinks:
    def test_onboarding_link_uses_app_urls(self, db_session, processor, org):
        account = connect_service.create_account(org_id=org.id, business_type="individual",
                                                 entity_type="INDIVIDUAL")

        link = connect_service.get_onboarding_url(org_id=org.id)

        assert link["url"].endswith(account.processor_account_id)
        call = processor.calls_to("create_onboarding_link")[0]
        assert call["refresh_url"].startswith("https://app.rentflow.test/")
        assert call["return_url"].startswith("https://app.rentflow.test/")

    def test_onboarding_link_requires_account(self, db_session, processor, org):
        with pytest.raises(NotFound):
            connect_service.get_onboarding_url(org_id=org.id)

    def test_dashboard_requires_active_account(self, db_session, processor, org):
        connect_service.create_account(org_id=org.id, business_type="company", entity_type="LLC")

        with pytest.raises(NotActive):
            connect_service.get_express_dashboard_url(org.id)

    def test_dashboard_link_for_active_account(self, db_session, processor, org, account):
        url = connect_service.get_express_dashboard_url(org.id)
        assert url == f"https://connect.example/express/{account.processor_account_id}"


class TestSyncAccountStatus:
    def test_sync_activates_account(self, db_session, processor, events, org):
        account = connect_service.create_account(org_id=org.id, business_type="company", entity_type="LLC")
        _verified(processor, account.processor_account_id)

        synced = connect_service.sync_account_status(account.processor_account_id)

        assert synced.status == STATUS_ACTIVE
        assert synced.charges_enabled is True
        assert synced.activated_at is not None
        assert synced.default_bank_last4 == "6789"
        assert [e.event_type for e in events] == [ACCOUNT_CREATED, ACCOUNT_STATUS_CHANGED]
        assert events[-1].payload["previous_status"] == STATUS_ONBOARDING

    def test_stale_snapshot_is_discarded(self, db_session, processor, events, org, account):
        processor.set_account(
            account.processor_account_id,
            disabled_reason="requirements.past_due",
            observed_at=utcnow() - timedelta(days=2),
        )

        synced = connect_service.sync_account_status(account.processor_account_id)

        assert synced.status == STATUS_ACTIVE
        assert synced.disabled_reason is None
        assert events == []

    def test_past_due_restricts_active_account(self, db_session, processor, events, org, account):
        processor.set_account(
            account.processor_account_id,
            charges_enabled=True,
            payouts_enabled=False,
            details_submitted=True,
            past_due=["external_account"],
            disabled_reason="requirements.past_due",
        )

        synced = connect_service.sync_account_status(account.processor_account_id)

        assert synced.status == STATUS_RESTRICTED
        assert synced.past_due == ["external_account"]
        assert [e.event_type for e in events] == [ACCOUNT_STATUS_CHANGED]

    def test_unknown_account(self, db_session, processor):
        with pytest.raises(NotFound):
            connect_service.sync_account_status("acct_missing")
        assert processor.calls == []

    def test_sync_all_reports_each_account(self, db_session, processor, org, account):
        other = make_org(db_session, name="Birch Rentals")
        other_account = make_active_account(db_session, other)
        _verified(processor, account.processor_account_id)
        _verified(processor, other_account.processor_account_id)

        result = connect_service.sync_all_accounts()

        assert [r["processor_account_id"] for r in result["synced"]] == [
            account.processor_account_id,
            other_account.processor_account_id,
        ]
        assert result["failed"] == []

    def test_sync_all_collects_failures(self, db_session, processor, org, account):
        processor.fail("retrieve_account", ProcessorError("No such account"))

        result = connect_service.sync_all_accounts()

        assert result["synced"] == []
        assert result["failed"][0]["processor_account_id"] == account.processor_account_id


class TestDeauthorize:
    def test_marks_account_rejected(self, db_session, processor, events, org, account):
        updated = connect_service.mark_account_deauthorized(account.processor_account_id)

        assert updated.status == STATUS_REJECTED
        assert updated.charges_enabled is False
        assert updated.payouts_enabled is False
        assert [e.event_type for e in events] == [ACCOUNT_STATUS_CHANGED]

        connect_service.mark_account_deauthorized(account.processor_account_id)
        assert len(events) == 1

    def test_rejected_account_never_reactivates(self, db_session, processor, org, account):
        connect_service.mark_account_deauthorized(account.processor_account_id)
        _verified(processor, account.processor_account_id)

        synced = connect_service.sync_account_status(account.processor_account_id)
        assert synced.status == STATUS_REJECTED


class TestCanAcceptPayments:
    def test_unknown_org(self, db_session):
        result = connect_service.can_accept_payments(9999)
        assert result.can_accept is False
        assert result.reason == "Organization not found"

    def test_without_account(self, db_session, org):
        result = connect_service.can_accept_payments(org.id)
        assert result.to_dict() == {"can_accept": False, "reason": "Payment account not set up"}

    def test_active_account(self, db_session, org, account):
        assert connect_service.can_accept_payments(org.id).can_accept is True

    def test_onboarding_account(self, db_session, processor, org):
        connect_service.create_account(org_id=org.id, business_type="company", entity_type="LLC")

        result = connect_service.can_accept_payments(org.id)
        assert result.can_accept is False
        assert result.reason == "Account status: onboarding"

    def test_status_view(self, db_session, org, account):
        status = connect_service.get_account_status(org.id)
        assert status["status"] == STATUS_ACTIVE
        assert status["account"]["processor_account_id"] == account.processor_account_id

        other = make_org(db_session, name="Birch Rentals")
        assert connect_service.get_account_status(other.id) == {
            "org_id": other.id, "status": "NOT_STARTED", "account": None,
        }
