# Overview: Pure fee arithmetic for rent payments; no database or network access.

"""
Processing Fee Calculator

WHY: Every charge must be able to explain, years later, exactly why the
tenant paid what they paid and why the landlord received what they
received. Fees are therefore computed from a versioned rate table and the
version is stored on each transaction.

DESIGN PRINCIPLES:
- Pure function of (amount, method class, policy, schedule, split share)
- Integer cents in, integer cents out; Decimal in between
- payer_total - processing_fee == net_to_landlord, always
- SPLIT_FEES: payer share rounds DOWN, remainder goes to the landlord
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP


# =============================================================================
# FEE POLICIES (CONSTANTS)
# =============================================================================

POLICY_LANDLORD_ABSORBS = "LANDLORD_ABSORBS"
POLICY_TENANT_PAYS = "TENANT_PAYS"
POLICY_SPLIT_FEES = "SPLIT_FEES"

VALID_FEE_POLICIES = [
    POLICY_LANDLORD_ABSORBS,
    POLICY_TENANT_PAYS,
    POLICY_SPLIT_FEES,
]


# =============================================================================
# METHOD CLASSES (CONSTANTS)
# =============================================================================

METHOD_CARD = "CARD"
METHOD_US_BANK_ACCOUNT = "US_BANK_ACCOUNT"
METHOD_APPLE_PAY = "APPLE_PAY"
METHOD_GOOGLE_PAY = "GOOGLE_PAY"
METHOD_LINK = "LINK"

VALID_METHOD_CLASSES = [
    METHOD_CARD,
    METHOD_US_BANK_ACCOUNT,
    METHOD_APPLE_PAY,
    METHOD_GOOGLE_PAY,
    METHOD_LINK,
]


class FeeError(ValueError):
    """Raised for invalid fee inputs."""
    pass


# =============================================================================
# RATE TABLE
# =============================================================================

@dataclass(frozen=True)
class FeeRate:
    """
    percent_bps: percentage component in basis points (290 = 2.90%)
    fixed_cents: flat component added after the percentage
    cap_cents: optional ceiling on the total fee
    """
    percent_bps: int
    fixed_cents: int = 0
    cap_cents: int | None = None

    def fee_for(self, amount_cents: int) -> int:
        pct = (Decimal(amount_cents) * Decimal(self.percent_bps) / Decimal(10_000)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        fee = int(pct) + self.fixed_cents
        if self.cap_cents is not None:
            fee = min(fee, self.cap_cents)
        return fee


_CARD_LIKE_2024 = FeeRate(percent_bps=290, fixed_cents=30)

FEE_SCHEDULES: dict[str, dict[str, FeeRate]] = {
    "2024-01": {
        METHOD_CARD: _CARD_LIKE_2024,
        METHOD_APPLE_PAY: _CARD_LIKE_2024,
        METHOD_GOOGLE_PAY: _CARD_LIKE_2024,
        METHOD_LINK: _CARD_LIKE_2024,
        # ACH debit: 0.8% capped at $5.00
        METHOD_US_BANK_ACCOUNT: FeeRate(percent_bps=80, cap_cents=500),
    },
}

CURRENT_FEE_SCHEDULE = "2024-01"

DEFAULT_SPLIT_PAYER_SHARE = Decimal("0.5")


@dataclass(frozen=True)
class FeeBreakdown:
    fee_schedule_version: str
    method_class: str
    fee_policy: str
    amount_cents: int
    processing_fee_cents: int
    payer_portion_cents: int
    landlord_portion_cents: int
    payer_total_cents: int
    net_to_landlord_cents: int

    def to_dict(self) -> dict:
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


def get_fee_rate(method_class: str, schedule: str = CURRENT_FEE_SCHEDULE) -> FeeRate:
    rates = FEE_SCHEDULES.get(schedule)
    if rates is None:
        raise FeeError(f"Unknown fee schedule: {schedule}")
    rate = rates.get(method_class)
    if rate is None:
        raise FeeError(f"Invalid method class: {method_class}. Must be one of {sorted(rates)}")
    return rate


def compute_fees(
    amount_cents: int,
    method_class: str,
    policy: str,
    *,
    schedule: str = CURRENT_FEE_SCHEDULE,
    split_payer_share: Decimal = DEFAULT_SPLIT_PAYER_SHARE,
) -> FeeBreakdown:
    """
    Compute the processing-fee split for one payment.

    Args:
        amount_cents: Gross obligation amount (sum of the charges being paid)
        method_class: CARD, US_BANK_ACCOUNT, APPLE_PAY, GOOGLE_PAY, LINK
        policy: LANDLORD_ABSORBS, TENANT_PAYS, SPLIT_FEES
        schedule: Rate-table version (historical versions stay valid)
        split_payer_share: Fraction of the fee the payer covers under SPLIT_FEES

    Returns:
        FeeBreakdown

    Raises:
        FeeError: If amount is not a positive integer, or policy/method/schedule unknown
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise FeeError("amount_cents must be a positive integer")
    if policy not in VALID_FEE_POLICIES:
        raise FeeError(f"Invalid fee policy: {policy}. Must be one of {VALID_FEE_POLICIES}")

    fee = get_fee_rate(method_class, schedule).fee_for(amount_cents)

    if policy == POLICY_TENANT_PAYS:
        payer_portion = fee
    elif policy == POLICY_SPLIT_FEES:
        share = Decimal(split_payer_share)
        if share < 0 or share > 1:
            raise FeeError("split_payer_share must be between 0 and 1")
        payer_portion = int((Decimal(fee) * share).quantize(Decimal("1"), rounding=ROUND_DOWN))
    else:
        payer_portion = 0

    landlord_portion = fee - payer_portion
    if amount_cents - landlord_portion <= 0:
        raise FeeError("Amount is too small to cover the processing fee")

    return FeeBreakdown(
        fee_schedule_version=schedule,
        method_class=method_class,
        fee_policy=policy,
        amount_cents=amount_cents,
        processing_fee_cents=fee,
        payer_portion_cents=payer_portion,
        landlord_portion_cents=landlord_portion,
        payer_total_cents=amount_cents + payer_portion,
        net_to_landlord_cents=amount_cents - landlord_portion,
    )
