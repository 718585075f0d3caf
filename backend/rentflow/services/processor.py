# Overview: Payment processor adapter (Stripe Connect); the only module that talks to Stripe.

"""
Payment Processor Adapter

WHY: Services depend on a narrow processor interface so that the money
logic can be tested without the network and so that Stripe's error zoo is
translated into our taxonomy in exactly one place.

ERROR TRANSLATION:
- CardError                 -> ProcessorDeclined (message verbatim)
- RateLimitError / 5xx      -> ProcessorUnavailable (retry with the same key)
- APIConnectionError        -> ProcessorTimeout (outcome unknown)
- anything else from Stripe -> ProcessorError

The active processor lives in app.extensions["payment_processor"].
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import stripe
from flask import current_app

from rentflow.time_utils import from_unix, utcnow
from ..validation import (
    PaymentMethodInvalid,
    ProcessorDeclined,
    ProcessorError,
    ProcessorTimeout,
    ProcessorUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)


PLATFORM_TAG = "rentflow"

# Real Estate Agents and Managers
REAL_ESTATE_MCC = "6513"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class AccountSnapshot:
    """Processor-reported account state at observed_at."""
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    currently_due: list[str] = field(default_factory=list)
    eventually_due: list[str] = field(default_factory=list)
    past_due: list[str] = field(default_factory=list)
    disabled_reason: Optional[str] = None
    card_payments: Optional[str] = None
    transfers: Optional[str] = None
    us_bank_account: Optional[str] = None
    bank_last4: Optional[str] = None
    bank_name: Optional[str] = None
    observed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class LinkResult:
    url: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class SetupSession:
    setup_intent_id: str
    client_secret: str
    customer_id: str
    payment_method_types: list[str]
    return_url: Optional[str] = None


@dataclass(frozen=True)
class MethodDetails:
    method_id: str
    customer_id: Optional[str]
    method_class: str
    card_brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    bank_name: Optional[str] = None
    wallet_type: Optional[str] = None


@dataclass(frozen=True)
class ChargeOutcome:
    """
    status: SUCCEEDED, PROCESSING or FAILED (processor answered definitively)
    """
    payment_id: str
    status: str
    amount_cents: int
    receipt_url: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


# =============================================================================
# INTERFACE
# =============================================================================

class PaymentProcessor:
    """Processor operations used by the payment services."""

    def create_connected_account(self, *, org_id: int, email: str | None, business_type: str,
                                 business_structure: str | None, business_name: str | None,
                                 payout_delay_days: int, idempotency_key: str) -> AccountSnapshot:
        raise NotImplementedError

    def retrieve_account(self, account_id: str) -> AccountSnapshot:
        raise NotImplementedError

    def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> LinkResult:
        raise NotImplementedError

    def create_dashboard_link(self, account_id: str) -> LinkResult:
        raise NotImplementedError

    def update_payout_delay(self, account_id: str, delay_days: int) -> None:
        raise NotImplementedError

    def create_customer(self, *, tenant_id: int, email: str, name: str, phone: str | None,
                        idempotency_key: str) -> str:
        raise NotImplementedError

    def create_setup_session(self, *, customer_id: str, payment_method_types: list[str],
                             return_url: str | None, tenant_id: int) -> SetupSession:
        raise NotImplementedError

    def attach_payment_method(self, method_id: str, customer_id: str) -> MethodDetails:
        raise NotImplementedError

    def set_customer_default_method(self, customer_id: str, method_id: str) -> None:
        raise NotImplementedError

    def detach_payment_method(self, method_id: str) -> None:
        raise NotImplementedError

    def create_destination_charge(self, *, amount_cents: int, currency: str, customer_id: str,
                                  method_id: str, method_class: str, destination_account_id: str,
                                  transfer_amount_cents: int, description: str | None,
                                  statement_descriptor: str | None, metadata: dict,
                                  idempotency_key: str) -> ChargeOutcome:
        raise NotImplementedError

    def construct_webhook_event(self, payload: bytes, signature: str | None):
        raise NotImplementedError


def get_processor() -> PaymentProcessor:
    return current_app.extensions["payment_processor"]


# =============================================================================
# STRIPE IMPLEMENTATION
# =============================================================================

_STRUCTURES = {
    "LLC": "llc",
    "LP": "limited_partnership",
    "S_CORP": "s_corporation",
    "C_CORP": "corporation",
    "TRUST": "trust",
}


def business_structure_for(entity_type: str) -> str | None:
    """INDIVIDUAL / OTHER have no Stripe structure."""
    return _STRUCTURES.get(entity_type)


# Wallets are cards at Stripe
_METHOD_TYPES = {
    "CARD": "card",
    "APPLE_PAY": "card",
    "GOOGLE_PAY": "card",
    "US_BANK_ACCOUNT": "us_bank_account",
    "LINK": "link",
}


def stripe_method_type(method_class: str) -> str:
    try:
        return _METHOD_TYPES[method_class]
    except KeyError:
        raise PaymentMethodInvalid(f"Unsupported payment method class: {method_class}")


class StripeProcessor(PaymentProcessor):
    """Stripe Connect destination-charge implementation."""

    def __init__(self, api_key: str, *, webhook_secret: str = "", api_version: str | None = None,
                 app_base_url: str | None = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.app_base_url = app_base_url

    @classmethod
    def from_config(cls, config) -> "StripeProcessor":
        # Library-level retries reuse the idempotency key of the original request
        stripe.max_network_retries = int(config.get("STRIPE_MAX_NETWORK_RETRIES", 0))
        return cls(
            config.get("STRIPE_SECRET_KEY", ""),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET", ""),
            api_version=config.get("STRIPE_API_VERSION"),
            app_base_url=config.get("APP_BASE_URL"),
        )

    def _opts(self, idempotency_key: str | None = None) -> dict:
        opts = {"api_key": self.api_key}
        if self.api_version:
            opts["stripe_version"] = self.api_version
        if idempotency_key:
            opts["idempotency_key"] = idempotency_key
        return opts

    # -------------------------------------------------------------------------
    # Connected accounts
    # -------------------------------------------------------------------------

    def create_connected_account(self, *, org_id, email, business_type, business_structure,
                                 business_name, payout_delay_days, idempotency_key):
        params = {
            "type": "express",
            "country": "US",
            "business_type": business_type,
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
                "us_bank_account_ach_payments": {"requested": True},
            },
            "business_profile": {
                "mcc": REAL_ESTATE_MCC,
                "name": business_name,
                "product_description": "Property management and rent collection",
                "url": self.app_base_url,
            },
            "settings": {
                "payouts": {"schedule": {"delay_days": payout_delay_days, "interval": "daily"}},
            },
            "metadata": {"org_id": str(org_id), "platform": PLATFORM_TAG},
        }
        if email:
            params["email"] = email
        if business_type == "company" and business_structure:
            params["company"] = {"structure": business_structure}
        try:
            account = stripe.Account.create(**params, **self._opts(idempotency_key))
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to create connected account")
        return _account_snapshot(account)

    def retrieve_account(self, account_id):
        try:
            account = stripe.Account.retrieve(account_id, **self._opts())
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to get account status")
        return _account_snapshot(account)

    def create_onboarding_link(self, account_id, refresh_url, return_url):
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
                **self._opts(),
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to get onboarding URL")
        return LinkResult(url=link["url"], expires_at=from_unix(link.get("expires_at")))

    def create_dashboard_link(self, account_id):
        try:
            link = stripe.Account.create_login_link(account_id, **self._opts())
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to get Express Dashboard URL")
        return LinkResult(url=link["url"])

    def update_payout_delay(self, account_id, delay_days):
        try:
            stripe.Account.modify(
                account_id,
                settings={"payouts": {"schedule": {"delay_days": delay_days, "interval": "daily"}}},
                **self._opts(),
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to update payout schedule")

    # -------------------------------------------------------------------------
    # Customers and payment methods
    # -------------------------------------------------------------------------

    def create_customer(self, *, tenant_id, email, name, phone, idempotency_key):
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                phone=phone,
                metadata={"tenant_id": str(tenant_id), "platform": PLATFORM_TAG},
                **self._opts(idempotency_key),
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to create customer")
        return customer["id"]

    def create_setup_session(self, *, customer_id, payment_method_types, return_url, tenant_id):
        params = {
            "customer": customer_id,
            "payment_method_types": payment_method_types,
            "usage": "off_session",
            "metadata": {"tenant_id": str(tenant_id)},
        }
        if "us_bank_account" in payment_method_types:
            params["payment_method_options"] = {
                "us_bank_account": {
                    "financial_connections": {"permissions": ["payment_method"]},
                    "verification_method": "automatic",
                },
            }
        try:
            intent = stripe.SetupIntent.create(**params, **self._opts())
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to create setup session")
        return SetupSession(
            setup_intent_id=intent["id"],
            client_secret=intent["client_secret"],
            customer_id=customer_id,
            payment_method_types=list(payment_method_types),
            return_url=return_url,
        )

    def attach_payment_method(self, method_id, customer_id):
        try:
            method = stripe.PaymentMethod.retrieve(method_id, **self._opts())
            if method.get("customer") != customer_id:
                method = stripe.PaymentMethod.attach(method_id, customer=customer_id, **self._opts())
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to attach payment method")
        return _method_details(method)

    def set_customer_default_method(self, customer_id, method_id):
        try:
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": method_id},
                **self._opts(),
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to set default payment method")

    def detach_payment_method(self, method_id):
        try:
            stripe.PaymentMethod.detach(method_id, **self._opts())
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to detach payment method")

    # -------------------------------------------------------------------------
    # Charges
    # -------------------------------------------------------------------------

    def create_destination_charge(self, *, amount_cents, currency, customer_id, method_id, method_class,
                                  destination_account_id, transfer_amount_cents, description,
                                  statement_descriptor, metadata, idempotency_key):
        params = {
            "amount": amount_cents,
            "currency": currency,
            "customer": customer_id,
            "payment_method": method_id,
            "payment_method_types": [stripe_method_type(method_class)],
            "off_session": True,
            "confirm": True,
            "transfer_data": {
                "destination": destination_account_id,
                "amount": transfer_amount_cents,
            },
            "metadata": {**{k: str(v) for k, v in metadata.items()}, "platform": PLATFORM_TAG},
            "description": description,
            "expand": ["latest_charge"],
        }
        if statement_descriptor:
            # Card statement descriptor suffix limit
            params["statement_descriptor_suffix"] = statement_descriptor[:22]
        try:
            intent = stripe.PaymentIntent.create(**params, **self._opts(idempotency_key))
        except stripe.CardError as exc:
            # Off-session declines still create the PaymentIntent
            body = (exc.json_body or {}).get("error") or {}
            raise ProcessorDeclined(
                exc.user_message or str(exc),
                processor_code=body.get("decline_code") or exc.code,
                payment_id=(body.get("payment_intent") or {}).get("id"),
            ) from exc
        except stripe.StripeError as exc:
            raise _translate(exc, "Failed to create payment")
        return _charge_outcome(intent)

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def construct_webhook_event(self, payload, signature):
        if not self.webhook_secret:
            raise ValidationError("Webhook secret is not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationError(f"Invalid webhook payload: {exc}")


# =============================================================================
# MAPPING HELPERS
# =============================================================================

def _translate(exc: Exception, context: str) -> ProcessorError:
    processor_code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc)
    if isinstance(exc, stripe.CardError):
        return ProcessorDeclined(message, processor_code=processor_code)
    if isinstance(exc, stripe.APIConnectionError):
        logger.warning("%s: processor outcome unknown (%s)", context, exc)
        return ProcessorTimeout(f"{context}: {message}", processor_code=processor_code)
    if isinstance(exc, (stripe.RateLimitError, stripe.APIError)):
        return ProcessorUnavailable(f"{context}: {message}", processor_code=processor_code)
    return ProcessorError(f"{context}: {message}", processor_code=processor_code, param=getattr(exc, "param", None))


def _capability(capabilities, name: str) -> str:
    if not capabilities:
        return "inactive"
    return capabilities.get(name) or "inactive"


def _account_snapshot(account) -> AccountSnapshot:
    requirements = account.get("requirements") or {}
    bank_last4 = None
    bank_name = None
    external = account.get("external_accounts") or {}
    for ext in external.get("data", []) or []:
        if ext.get("object") == "bank_account" and (ext.get("default_for_currency") or bank_last4 is None):
            bank_last4 = ext.get("last4")
            bank_name = ext.get("bank_name")
    capabilities = account.get("capabilities")
    return AccountSnapshot(
        account_id=account["id"],
        charges_enabled=bool(account.get("charges_enabled")),
        payouts_enabled=bool(account.get("payouts_enabled")),
        details_submitted=bool(account.get("details_submitted")),
        currently_due=list(requirements.get("currently_due") or []),
        eventually_due=list(requirements.get("eventually_due") or []),
        past_due=list(requirements.get("past_due") or []),
        disabled_reason=requirements.get("disabled_reason"),
        card_payments=_capability(capabilities, "card_payments"),
        transfers=_capability(capabilities, "transfers"),
        us_bank_account=_capability(capabilities, "us_bank_account_ach_payments"),
        bank_last4=bank_last4,
        bank_name=bank_name,
        observed_at=utcnow(),
    )


def _method_details(method) -> MethodDetails:
    method_type = method.get("type")
    card = method.get("card") or {}
    bank = method.get("us_bank_account") or {}
    wallet = (card.get("wallet") or {}).get("type") if card else None

    if method_type == "us_bank_account":
        method_class = "US_BANK_ACCOUNT"
    elif method_type == "link":
        method_class = "LINK"
    elif wallet == "apple_pay":
        method_class = "APPLE_PAY"
    elif wallet == "google_pay":
        method_class = "GOOGLE_PAY"
    elif method_type == "card":
        method_class = "CARD"
    else:
        raise PaymentMethodInvalid(f"Unsupported payment method type: {method_type}")

    return MethodDetails(
        method_id=method["id"],
        customer_id=method.get("customer"),
        method_class=method_class,
        card_brand=card.get("brand"),
        last4=card.get("last4") or bank.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
        bank_name=bank.get("bank_name"),
        wallet_type=wallet,
    )


_INTENT_STATUS = {
    "succeeded": "SUCCEEDED",
    "processing": "PROCESSING",
    "requires_capture": "PROCESSING",
}


def _charge_outcome(intent) -> ChargeOutcome:
    status = _INTENT_STATUS.get(intent.get("status"), "FAILED")
    charge = intent.get("latest_charge")
    receipt_url = charge.get("receipt_url") if charge and not isinstance(charge, str) else None
    error = intent.get("last_payment_error") or {}
    failure_message = None
    failure_code = None
    if status == "FAILED":
        failure_code = error.get("decline_code") or error.get("code") or intent.get("status")
        failure_message = error.get("message") or "Payment requires customer action and could not be completed"
    return ChargeOutcome(
        payment_id=intent["id"],
        status=status,
        amount_cents=intent.get("amount") or 0,
        receipt_url=receipt_url,
        failure_code=failure_code,
        failure_message=failure_message,
    )
