"""
AutoPay schedule management and runner tests.
"""

from datetime import date, datetime

import pytest

from conftest import make_charge, make_method, make_tenant
from rentflow.models import AutoPaySchedule, LeaseCharge, PaymentTransaction
from rentflow.services import autopay_service, charge_service
from rentflow.services.event_service import AUTOPAY_CANCELLED, AUTOPAY_CREATED, AUTOPAY_DISABLED, AUTOPAY_RUN
from rentflow.services.processor import ChargeOutcome
from rentflow.validation import (
    ConflictError,
    NotActive,
    NotFound,
    PaymentMethodInvalid,
    ProcessorDeclined,
    ProcessorUnavailable,
    ValidationError,
)


MARCH_1 = date(2026, 3, 1)


def _setup(tenant, lease, method, day=1, **extra):
    return autopay_service.setup_autopay(
        tenant_id=tenant.id, lease_id=lease.id, payment_method_id=method.id, day_of_month=day, **extra
    )


class TestNormalizeDay:
    @pytest.mark.parametrize("value,expected", [(1, 1), (15, 15), (28, 28), (29, 28), (30, 28), (31, 28)])
    def test_valid_days(self, value, expected):
        assert autopay_service.normalize_day_of_month(value) == expected

    @pytest.mark.parametrize("value", [0, 32, -1, "5", 1.0, True, None])
    def test_invalid_days(self, value):
        with pytest.raises(ValidationError):
            autopay_service.normalize_day_of_month(value)


class TestNextPaymentDate:
    def test_later_this_month(self):
        schedule = AutoPaySchedule(active=True, day_of_month=5)
        assert autopay_service.next_payment_date(schedule, date(2026, 3, 1)) == date(2026, 3, 5)

    def test_rolls_into_next_month(self):
        schedule = AutoPaySchedule(active=True, day_of_month=5)
        assert autopay_service.next_payment_date(schedule, date(2026, 3, 10)) == date(2026, 4, 5)

    def test_rolls_into_next_year(self):
        schedule = AutoPaySchedule(active=True, day_of_month=1)
        assert autopay_service.next_payment_date(schedule, date(2026, 12, 2)) == date(2027, 1, 1)

    def test_already_ran_this_month(self):
        schedule = AutoPaySchedule(active=True, day_of_month=5, last_run_at=datetime(2026, 3, 1))
        assert autopay_service.next_payment_date(schedule, date(2026, 3, 3)) == date(2026, 4, 5)

    def test_inactive_has_no_date(self):
        schedule = AutoPaySchedule(active=False, day_of_month=5)
        assert autopay_service.next_payment_date(schedule, date(2026, 3, 1)) is None


class TestScheduleManagement:
    def test_setup_defaults(self, db_session, events, tenant, lease, bank_method):
        schedule = _setup(tenant, lease, bank_method, day=31)

        assert schedule.active is True
        assert schedule.day_of_month == 28
        assert schedule.amount_mode == "FULL_BALANCE"
        assert schedule.amount_cents is None
        assert schedule.charge_types == ["RENT"]
        assert [e.event_type for e in events] == [AUTOPAY_CREATED]

    def test_fixed_amount_inferred_from_amount(self, db_session, tenant, lease, bank_method):
        schedule = _setup(tenant, lease, bank_method, amount_cents=150000)

        assert schedule.amount_mode == "FIXED"
        assert schedule.amount_cents == 150000

    def test_fixed_requires_amount(self, db_session, tenant, lease, bank_method):
        with pytest.raises(ValidationError):
            _setup(tenant, lease, bank_method, amount_mode="FIXED")

    def test_second_active_schedule_conflicts(self, db_session, tenant, lease, bank_method):
        _setup(tenant, lease, bank_method)

        with pytest.raises(ConflictError):
            _setup(tenant, lease, bank_method, day=15)

    def test_cancel_then_setup_reactivates_same_row(self, db_session, events, tenant, lease, bank_method):
        original = _setup(tenant, lease, bank_method)
        cancelled = autopay_service.cancel_autopay(tenant_id=tenant.id, lease_id=lease.id)
        assert cancelled.active is False
        assert cancelled.cancelled_at is not None

        again = _setup(tenant, lease, bank_method, day=10)

        assert again.id == original.id
        assert again.active is True
        assert again.day_of_month == 10
        assert again.cancelled_at is None
        assert [e.event_type for e in events] == [AUTOPAY_CREATED, AUTOPAY_CANCELLED, AUTOPAY_CREATED]

    def test_cancel_is_idempotent(self, db_session, events, tenant, lease, bank_method):
        _setup(tenant, lease, bank_method)
        autopay_service.cancel_autopay(tenant_id=tenant.id, lease_id=lease.id)
        autopay_service.cancel_autopay(tenant_id=tenant.id, lease_id=lease.id)

        assert [e.event_type for e in events].count(AUTOPAY_CANCELLED) == 1

    def test_other_tenants_method_rejected(self, db_session, org, tenant, lease):
        other = make_tenant(db_session, org, first_name="Sam", email="sam@example.test")
        theirs = make_method(db_session, other)

        with pytest.raises(PaymentMethodInvalid):
            _setup(tenant, lease, theirs)

    def test_ended_lease_rejected(self, db_session, tenant, lease, bank_method):
        lease.status = "ENDED"
        db_session.commit()

        with pytest.raises(NotFound):
            _setup(tenant, lease, bank_method)

    def test_update_changes_day_and_method(self, db_session, tenant, lease, bank_method):
        _setup(tenant, lease, bank_method)
        card = make_method(db_session, tenant, method_class="CARD", is_default=False)

        updated = autopay_service.update_autopay(
            tenant_id=tenant.id, lease_id=lease.id, day_of_month=30, payment_method_id=card.id
        )

        assert updated.day_of_month == 28
        assert updated.payment_method_id == card.id

    def test_update_back_to_full_balance(self, db_session, tenant, lease, bank_method):
        _setup(tenant, lease, bank_method, amount_cents=150000)

        updated = autopay_service.update_autopay(tenant_id=tenant.id, lease_id=lease.id,
                                                 amount_mode="FULL_BALANCE")

        assert updated.amount_mode == "FULL_BALANCE"
        assert updated.amount_cents is None

    def test_update_cancelled_schedule(self, db_session, tenant, lease, bank_method):
        _setup(tenant, lease, bank_method)
        autopay_service.cancel_autopay(tenant_id=tenant.id, lease_id=lease.id)

        with pytest.raises(NotActive):
            autopay_service.update_autopay(tenant_id=tenant.id, lease_id=lease.id, day_of_month=3)

    def test_update_rejects_unknown_fields(self, db_session, tenant, lease, bank_method):
        _setup(tenant, lease, bank_method)

        with pytest.raises(ValidationError):
            autopay_service.update_autopay(tenant_id=tenant.id, lease_id=lease.id, active=False)


class TestRunDue:
    def test_charges_due_schedule(self, db_session, processor, events, account, tenant, lease, rent_charge,
                                  bank_method):
        schedule = _setup(tenant, lease, bank_method)

        summary = autopay_service.run_due(MARCH_1)

        assert summary["processed"] == 1
        assert summary["succeeded"] == 1
        assert summary["errors"] == []

        txn = db_session.query(PaymentTransaction).one()
        assert txn.source == "AUTOPAY"
        assert txn.autopay_schedule_id == schedule.id
        assert txn.idempotency_key == f"autopay-{schedule.id}-2026-03"
        assert db_session.get(LeaseCharge, rent_charge.id).status == "PAID"

        schedule = db_session.get(AutoPaySchedule, schedule.id)
        assert schedule.last_result == "SUCCEEDED"
        assert schedule.last_transaction_id == txn.id
        assert schedule.last_run_at.replace(tzinfo=None) == datetime(2026, 3, 1)
        assert AUTOPAY_RUN in [e.event_type for e in events]

    def test_runs_once_per_month(self, db_session, processor, account, tenant, lease, rent_charge, bank_method):
        _setup(tenant, lease, bank_method)
        autopay_service.run_due(MARCH_1)
        make_charge(db_session, lease, charge_type="RENT", due_date=date(2026, 3, 15))

        summary = autopay_service.run_due(MARCH_1)

        assert summary["processed"] == 0
        assert len(processor.calls_to("create_destination_charge")) == 1

    def test_other_days_not_selected(self, db_session, processor, account, tenant, lease, rent_charge,
                                     bank_method):
        _setup(tenant, lease, bank_method, day=5)

        assert autopay_service.run_due(MARCH_1)["processed"] == 0

    def test_inactive_schedule_untouched(self, db_session, processor, account, tenant, lease, rent_charge,
                                         bank_method):
        schedule = _setup(tenant, lease, bank_method)
        autopay_service.cancel_autopay(tenant_id=tenant.id, lease_id=lease.id)

        summary = autopay_service.run_due(MARCH_1)

        assert summary["processed"] == 0
        assert db_session.get(AutoPaySchedule, schedule.id).last_run_at is None
        assert processor.calls == []

    def test_no_charges(self, db_session, processor, account, tenant, lease, bank_method):
        schedule = _setup(tenant, lease, bank_method)

        summary = autopay_service.run_due(MARCH_1)

        assert summary["no_charges"] == 1
        schedule = db_session.get(AutoPaySchedule, schedule.id)
        assert schedule.last_result == "NO_CHARGES"
        assert schedule.consecutive_failures == 0

    def test_only_schedule_charge_types(self, db_session, processor, account, tenant, lease, rent_charge,
                                        bank_method):
        utility = make_charge(db_session, lease, amount_cents=4500, charge_type="UTILITY")
        _setup(tenant, lease, bank_method)

        autopay_service.run_due(MARCH_1)

        assert db_session.get(LeaseCharge, rent_charge.id).status == "PAID"
        assert db_session.get(LeaseCharge, utility.id).status == "UNPAID"

    def test_fixed_amount_pays_whole_charges_that_fit(self, db_session, processor, account, tenant, lease,
                                                      rent_charge, bank_method):
        late_fee = make_charge(db_session, lease, amount_cents=5000, charge_type="LATE_FEE",
                               due_date=date(2026, 3, 6))
        _setup(tenant, lease, bank_method, amount_cents=200000, charge_types=["RENT", "LATE_FEE"])

        autopay_service.run_due(MARCH_1)

        assert processor.calls_to("create_destination_charge")[0]["amount_cents"] == 200000
        assert db_session.get(LeaseCharge, late_fee.id).status == "UNPAID"

    def test_processing_is_not_a_failure(self, db_session, processor, account, tenant, lease, rent_charge,
                                         bank_method):
        schedule = _setup(tenant, lease, bank_method)
        processor.charge_outcome = ChargeOutcome(payment_id="pi_ach", status="PROCESSING", amount_cents=200000)

        summary = autopay_service.run_due(MARCH_1)

        assert summary["processing"] == 1
        schedule = db_session.get(AutoPaySchedule, schedule.id)
        assert schedule.consecutive_failures == 0
        assert schedule.next_retry_at is None


class TestFailuresAndRetries:
    def test_failure_schedules_retry_then_succeeds(self, db_session, processor, account, tenant, lease,
                                                   rent_charge, bank_method):
        schedule = _setup(tenant, lease, bank_method)
        processor.fail("create_destination_charge", ProcessorDeclined("Insufficient funds"))

        first = autopay_service.run_due(MARCH_1)

        assert first["failed"] == 1
        assert first["errors"] == [f"Schedule {schedule.id}: Insufficient funds"]
        failed = db_session.get(AutoPaySchedule, schedule.id)
        assert failed.active is True
        assert failed.consecutive_failures == 1
        assert failed.last_failure_reason == "Insufficient funds"
        assert failed.next_retry_at.replace(tzinfo=None) == datetime(2026, 3, 2)

        processor.clear_failures()
        second = autopay_service.run_due(date(2026, 3, 2))

        assert second["succeeded"] == 1
        assert second["results"][0]["retry"] is True
        keys = [c["idempotency_key"] for c in processor.calls_to("create_destination_charge")]
        assert keys == [f"autopay-{schedule.id}-2026-03", f"autopay-{schedule.id}-2026-03-r1"]

        recovered = db_session.get(AutoPaySchedule, schedule.id)
        assert recovered.consecutive_failures == 0
        assert recovered.next_retry_at is None
        assert db_session.get(LeaseCharge, rent_charge.id).status == "PAID"

    def test_repeated_failures_disable_schedule(self, db_session, processor, events, account, tenant, lease,
                                                rent_charge, bank_method):
        schedule = _setup(tenant, lease, bank_method)
        processor.fail("create_destination_charge", ProcessorDeclined("Insufficient funds"))

        for day in (date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 5)):
            assert autopay_service.run_due(day)["failed"] == 1

        assert db_session.get(AutoPaySchedule, schedule.id).consecutive_failures == 3

        disabled = autopay_service.disable_failing_schedules(3)

        assert disabled == [schedule.id]
        assert db_session.get(AutoPaySchedule, schedule.id).active is False
        assert events[-1].event_type == AUTOPAY_DISABLED
        assert autopay_service.disable_failing_schedules(3) == []

    def test_async_bank_failure_schedules_retry(self, db_session, processor, events, account, tenant, lease,
                                                rent_charge, bank_method):
        schedule = _setup(tenant, lease, bank_method)
        processor.charge_outcome = ChargeOutcome(payment_id="pi_ach", status="PROCESSING", amount_cents=200000)
        assert autopay_service.run_due(MARCH_1)["processing"] == 1

        charge_service.reconcile_transaction("pi_ach", "FAILED", "Account closed")

        failed = db_session.get(AutoPaySchedule, schedule.id)
        assert failed.last_result == "FAILED"
        assert failed.consecutive_failures == 1
        assert failed.last_failure_reason == "Account closed"
        assert failed.next_retry_at.replace(tzinfo=None) == datetime(2026, 3, 2)
        assert events[-1].event_type == AUTOPAY_RUN

        processor.charge_outcome = None
        retry = autopay_service.run_due(date(2026, 3, 2))

        assert retry["succeeded"] == 1
        assert retry["results"][0]["retry"] is True
        keys = [c["idempotency_key"] for c in processor.calls_to("create_destination_charge")]
        assert keys == [f"autopay-{schedule.id}-2026-03", f"autopay-{schedule.id}-2026-03-r1"]
        assert db_session.get(AutoPaySchedule, schedule.id).consecutive_failures == 0

    def test_async_bank_success_settles_schedule(self, db_session, processor, account, tenant, lease,
                                                 rent_charge, bank_method):
        schedule = _setup(tenant, lease, bank_method)
        processor.charge_outcome = ChargeOutcome(payment_id="pi_ach", status="PROCESSING", amount_cents=200000)
        autopay_service.run_due(MARCH_1)

        charge_service.reconcile_transaction("pi_ach", "SUCCEEDED")

        settled = db_session.get(AutoPaySchedule, schedule.id)
        assert settled.last_result == "SUCCEEDED"
        assert settled.next_retry_at is None
        assert autopay_service.run_due(date(2026, 3, 2))["processed"] == 0

    def test_late_result_for_older_attempt_ignored(self, db_session, processor, account, tenant, lease,
                                                   rent_charge, bank_method):
        schedule = _setup(tenant, lease, bank_method)
        processor.charge_outcome = ChargeOutcome(payment_id="pi_ach", status="PROCESSING", amount_cents=200000)
        autopay_service.run_due(MARCH_1)
        db_session.get(AutoPaySchedule, schedule.id).last_result = "NO_CHARGES"
        db_session.commit()

        charge_service.reconcile_transaction("pi_ach", "FAILED", "Account closed")

        unchanged = db_session.get(AutoPaySchedule, schedule.id)
        assert unchanged.last_result == "NO_CHARGES"
        assert unchanged.consecutive_failures == 0
        assert unchanged.next_retry_at is None

    def test_disable_rejects_zero_threshold(self, db_session):
        with pytest.raises(ValidationError):
            autopay_service.disable_failing_schedules(0)

    def test_unsubmitted_attempt_is_resumed_with_same_key(self, db_session, processor, account, tenant, lease,
                                                          rent_charge, bank_method):
        schedule = _setup(tenant, lease, bank_method)
        processor.fail("create_destination_charge", ProcessorUnavailable("Rate limited"))

        autopay_service.run_due(MARCH_1)
        assert db_session.query(PaymentTransaction).one().status == "PENDING"

        processor.clear_failures()
        summary = autopay_service.run_due(date(2026, 3, 2))

        assert summary["succeeded"] == 1
        assert db_session.query(PaymentTransaction).count() == 1
        keys = [c["idempotency_key"] for c in processor.calls_to("create_destination_charge")]
        assert keys == [f"autopay-{schedule.id}-2026-03"] * 2
