"""
Stripe adapter tests: request building and error/status translation.

Stripe's resource classes are monkeypatched; nothing touches the network.
"""

import pytest
import stripe

from rentflow.services.processor import StripeProcessor, stripe_method_type
from rentflow.validation import (
    PaymentMethodInvalid,
    ProcessorDeclined,
    ProcessorError,
    ProcessorTimeout,
    ProcessorUnavailable,
    ValidationError,
)


def _stub(monkeypatch, resource, method, result=None, error=None):
    """Replace stripe.<resource>.<method>; returns the list of recorded calls."""
    calls = []

    def _call(*args, **kwargs):
        calls.append((args, kwargs))
        if error is not None:
            raise error
        return result

    monkeypatch.setattr(resource, method, _call)
    return calls


def _charge(adapter, method_class="CARD", **overrides):
    params = dict(
        amount_cents=203000,
        currency="usd",
        customer_id="cus_1",
        method_id="pm_1",
        method_class=method_class,
        destination_account_id="acct_landlord",
        transfer_amount_cents=200000,
        description="Rent - 12 Elm St",
        statement_descriptor="RENTFLOW 12 ELM ST UNIT 4 MARCH",
        metadata={"transaction_id": 7, "lease_id": 3},
        idempotency_key="pay-key-1",
    )
    params.update(overrides)
    return adapter.create_destination_charge(**params)


SUCCEEDED_INTENT = {
    "id": "pi_1",
    "status": "succeeded",
    "amount": 203000,
    "latest_charge": {"id": "ch_1", "receipt_url": "https://pay.stripe.test/receipts/ch_1"},
}


@pytest.fixture
def adapter():
    return StripeProcessor("sk_test_123", webhook_secret="whsec_123", app_base_url="https://app.rentflow.test")


class TestMethodTypes:
    @pytest.mark.parametrize("method_class,expected", [
        ("CARD", "card"),
        ("APPLE_PAY", "card"),
        ("GOOGLE_PAY", "card"),
        ("US_BANK_ACCOUNT", "us_bank_account"),
        ("LINK", "link"),
    ])
    def test_mapping(self, method_class, expected):
        assert stripe_method_type(method_class) == expected

    def test_unknown_class(self):
        with pytest.raises(PaymentMethodInvalid):
            stripe_method_type("CHECK")


class TestDestinationCharge:
    @pytest.mark.parametrize("method_class,expected", [
        ("LINK", ["link"]),
        ("US_BANK_ACCOUNT", ["us_bank_account"]),
        ("APPLE_PAY", ["card"]),
    ])
    def test_payment_method_types_follow_class(self, monkeypatch, adapter, method_class, expected):
        calls = _stub(monkeypatch, stripe.PaymentIntent, "create", result=SUCCEEDED_INTENT)

        _charge(adapter, method_class=method_class)

        assert calls[0][1]["payment_method_types"] == expected

    def test_request_shape(self, monkeypatch, adapter):
        calls = _stub(monkeypatch, stripe.PaymentIntent, "create", result=SUCCEEDED_INTENT)

        outcome = _charge(adapter)

        kwargs = calls[0][1]
        assert kwargs["amount"] == 203000
        assert kwargs["transfer_data"] == {"destination": "acct_landlord", "amount": 200000}
        assert kwargs["metadata"] == {"transaction_id": "7", "lease_id": "3", "platform": "rentflow"}
        assert kwargs["off_session"] is True and kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == "pay-key-1"
        assert kwargs["api_key"] == "sk_test_123"
        assert len(kwargs["statement_descriptor_suffix"]) == 22

        assert outcome.status == "SUCCEEDED"
        assert outcome.payment_id == "pi_1"
        assert outcome.receipt_url == "https://pay.stripe.test/receipts/ch_1"

    def test_processing_intent(self, monkeypatch, adapter):
        _stub(monkeypatch, stripe.PaymentIntent, "create",
              result={"id": "pi_2", "status": "processing", "amount": 200500, "latest_charge": "ch_2"})

        outcome = _charge(adapter, method_class="US_BANK_ACCOUNT")

        assert outcome.status == "PROCESSING"
        assert outcome.receipt_url is None
        assert outcome.failure_code is None

    def test_intent_needing_action_is_failed(self, monkeypatch, adapter):
        _stub(monkeypatch, stripe.PaymentIntent, "create",
              result={"id": "pi_3", "status": "requires_action", "amount": 203000})

        outcome = _charge(adapter)

        assert outcome.status == "FAILED"
        assert outcome.failure_code == "requires_action"
        assert outcome.failure_message == "Payment requires customer action and could not be completed"

    def test_card_error_keeps_intent_id(self, monkeypatch, adapter):
        error = stripe.CardError(
            "Your card has insufficient funds.", None, "card_declined",
            json_body={"error": {"decline_code": "insufficient_funds", "payment_intent": {"id": "pi_declined"}}},
        )
        _stub(monkeypatch, stripe.PaymentIntent, "create", error=error)

        with pytest.raises(ProcessorDeclined) as exc_info:
            _charge(adapter)

        assert exc_info.value.message == "Your card has insufficient funds."
        assert exc_info.value.processor_code == "insufficient_funds"
        assert exc_info.value.payment_id == "pi_declined"

    @pytest.mark.parametrize("error,expected", [
        (stripe.APIConnectionError("Connection reset"), ProcessorTimeout),
        (stripe.RateLimitError("Too many requests"), ProcessorUnavailable),
        (stripe.APIError("Internal error"), ProcessorUnavailable),
    ])
    def test_transport_errors(self, monkeypatch, adapter, error, expected):
        _stub(monkeypatch, stripe.PaymentIntent, "create", error=error)

        with pytest.raises(expected):
            _charge(adapter)

    def test_invalid_request_keeps_param(self, monkeypatch, adapter):
        _stub(monkeypatch, stripe.PaymentIntent, "create",
              error=stripe.InvalidRequestError("No such PaymentMethod", "payment_method", code="resource_missing"))

        with pytest.raises(ProcessorError) as exc_info:
            _charge(adapter)

        assert type(exc_info.value) is ProcessorError
        assert exc_info.value.param == "payment_method"
        assert exc_info.value.processor_code == "resource_missing"
        assert exc_info.value.message == "Failed to create payment: No such PaymentMethod"


class TestConnectedAccounts:
    ACCOUNT = {
        "id": "acct_1",
        "charges_enabled": True,
        "payouts_enabled": False,
        "details_submitted": True,
        "requirements": {"currently_due": ["external_account"], "past_due": [], "disabled_reason": None},
        "capabilities": {"card_payments": "active", "transfers": "pending"},
        "external_accounts": {"data": [
            {"object": "bank_account", "last4": "1111", "bank_name": "Old Bank"},
            {"object": "bank_account", "last4": "6789", "bank_name": "Test Bank", "default_for_currency": True},
        ]},
    }

    def test_create_express_company_account(self, monkeypatch, adapter):
        calls = _stub(monkeypatch, stripe.Account, "create", result=self.ACCOUNT)

        snapshot = adapter.create_connected_account(
            org_id=4, email="owner@maple.test", business_type="company", business_structure="llc",
            business_name="Maple Property Group", payout_delay_days=7, idempotency_key="org-4-connect-account",
        )

        kwargs = calls[0][1]
        assert kwargs["type"] == "express"
        assert kwargs["company"] == {"structure": "llc"}
        assert kwargs["settings"]["payouts"]["schedule"] == {"delay_days": 7, "interval": "daily"}
        assert kwargs["metadata"] == {"org_id": "4", "platform": "rentflow"}
        assert kwargs["idempotency_key"] == "org-4-connect-account"

        assert snapshot.account_id == "acct_1"
        assert snapshot.charges_enabled is True
        assert snapshot.currently_due == ["external_account"]
        assert snapshot.card_payments == "active"
        assert snapshot.us_bank_account == "inactive"
        assert (snapshot.bank_last4, snapshot.bank_name) == ("6789", "Test Bank")

    def test_individual_has_no_company_block(self, monkeypatch, adapter):
        calls = _stub(monkeypatch, stripe.Account, "create", result=self.ACCOUNT)

        adapter.create_connected_account(
            org_id=4, email=None, business_type="individual", business_structure=None,
            business_name=None, payout_delay_days=7, idempotency_key="org-4-connect-account",
        )

        assert "company" not in calls[0][1]
        assert "email" not in calls[0][1]

    def test_payout_delay_update(self, monkeypatch, adapter):
        calls = _stub(monkeypatch, stripe.Account, "modify", result={})

        adapter.update_payout_delay("acct_1", 4)

        args, kwargs = calls[0]
        assert args == ("acct_1",)
        assert kwargs["settings"] == {"payouts": {"schedule": {"delay_days": 4, "interval": "daily"}}}

    def test_retrieve_failure_is_translated(self, monkeypatch, adapter):
        _stub(monkeypatch, stripe.Account, "retrieve", error=stripe.AuthenticationError("Invalid API key"))

        with pytest.raises(ProcessorError) as exc_info:
            adapter.retrieve_account("acct_1")

        assert exc_info.value.message == "Failed to get account status: Invalid API key"


class TestPaymentMethods:
    def test_attach_apple_pay_card(self, monkeypatch, adapter):
        _stub(monkeypatch, stripe.PaymentMethod, "retrieve", result={"id": "pm_1", "customer": None, "type": "card"})
        attach = _stub(monkeypatch, stripe.PaymentMethod, "attach", result={
            "id": "pm_1", "customer": "cus_1", "type": "card",
            "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030,
                     "wallet": {"type": "apple_pay"}},
        })

        details = adapter.attach_payment_method("pm_1", "cus_1")

        assert attach[0][1]["customer"] == "cus_1"
        assert details.method_class == "APPLE_PAY"
        assert details.wallet_type == "apple_pay"
        assert details.last4 == "4242"

    def test_already_attached_bank_account(self, monkeypatch, adapter):
        _stub(monkeypatch, stripe.PaymentMethod, "retrieve", result={
            "id": "pm_2", "customer": "cus_1", "type": "us_bank_account",
            "us_bank_account": {"bank_name": "Test Bank", "last4": "6789"},
        })
        attach = _stub(monkeypatch, stripe.PaymentMethod, "attach")

        details = adapter.attach_payment_method("pm_2", "cus_1")

        assert attach == []
        assert details.method_class == "US_BANK_ACCOUNT"
        assert details.bank_name == "Test Bank"

    def test_unsupported_type(self, monkeypatch, adapter):
        _stub(monkeypatch, stripe.PaymentMethod, "retrieve",
              result={"id": "pm_3", "customer": "cus_1", "type": "sepa_debit"})

        with pytest.raises(PaymentMethodInvalid):
            adapter.attach_payment_method("pm_3", "cus_1")

    def test_setup_session_for_bank_requests_financial_connections(self, monkeypatch, adapter):
        calls = _stub(monkeypatch, stripe.SetupIntent, "create",
                      result={"id": "seti_1", "client_secret": "seti_1_secret"})

        session = adapter.create_setup_session(customer_id="cus_1", payment_method_types=["card", "us_bank_account"],
                                               return_url=None, tenant_id=9)

        kwargs = calls[0][1]
        assert kwargs["usage"] == "off_session"
        assert "us_bank_account" in kwargs["payment_method_options"]
        assert session.client_secret == "seti_1_secret"


class TestWebhookVerification:
    def test_missing_secret(self):
        with pytest.raises(ValidationError):
            StripeProcessor("sk_test_123").construct_webhook_event(b"{}", "t=1,v1=abc")

    def test_bad_signature(self, monkeypatch, adapter):
        _stub(monkeypatch, stripe.Webhook, "construct_event",
              error=stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc"))

        with pytest.raises(ValidationError):
            adapter.construct_webhook_event(b"{}", "t=1,v1=abc")

    def test_verified_event_returned(self, monkeypatch, adapter):
        calls = _stub(monkeypatch, stripe.Webhook, "construct_event", result={"id": "evt_1"})

        assert adapter.construct_webhook_event(b"{}", "sig")["id"] == "evt_1"
        assert calls[0][0] == (b"{}", "sig", "whsec_123")
