from __future__ import annotations

from typing import Any, Iterable

from .time_utils import parse_iso_date


# Maximum single payment: $999,999.99 (99,999,999 cents)
# Keeps processor amounts inside Stripe's 8-digit limit
MAX_AMOUNT_CENTS = 99_999_999


class PaymentsError(Exception):
    """
    Base for expected business failures.

    Every subclass carries a stable machine-readable code; the message is
    safe to show to end users.
    """
    code = "PAYMENTS_ERROR"
    http_status = 400

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(PaymentsError):
    """400-level input problem (rejected before any I/O)."""
    code = "VALIDATION_ERROR"


class NotFound(PaymentsError):
    code = "NOT_FOUND"
    http_status = 404


class AlreadyExists(PaymentsError):
    code = "ALREADY_EXISTS"
    http_status = 409


class ConflictError(PaymentsError):
    """409-level business rule conflict (e.g., idempotency key reuse)."""
    code = "CONFLICT"
    http_status = 409


class PolicyViolation(PaymentsError):
    code = "POLICY_VIOLATION"
    http_status = 422


class NotActive(PaymentsError):
    code = "NOT_ACTIVE"
    http_status = 409


class PayoutNotConfigured(PaymentsError):
    code = "PAYOUT_NOT_CONFIGURED"
    http_status = 409


class PaymentMethodInvalid(PaymentsError):
    code = "PAYMENT_METHOD_INVALID"
    http_status = 422


class AmountMismatch(PaymentsError):
    code = "AMOUNT_MISMATCH"
    http_status = 422


class ChargesInvalid(PaymentsError):
    code = "CHARGES_INVALID"
    http_status = 422


# =============================================================================
# PROCESSOR ERRORS
# =============================================================================

class ProcessorError(PaymentsError):
    """Processor rejected a request; message is the processor's, verbatim."""
    code = "PROCESSOR_ERROR"
    http_status = 502

    def __init__(self, message: str, *, code: str | None = None, processor_code: str | None = None,
                 payment_id: str | None = None, param: str | None = None):
        super().__init__(message, code=code)
        self.processor_code = processor_code
        # Processor-side object created before the failure, if any
        self.payment_id = payment_id
        self.param = param


class ProcessorDeclined(ProcessorError):
    code = "PROCESSOR_DECLINED"
    http_status = 402


class ProcessorUnavailable(ProcessorError):
    """Definitely not processed (rate limit, 5xx); retryable by the caller."""
    code = "PROCESSOR_UNAVAILABLE"
    http_status = 503


class ProcessorTimeout(ProcessorError):
    """Outcome unknown: the request may or may not have been applied."""
    code = "PROCESSOR_TIMEOUT"
    http_status = 504


HTTP_STATUS_BY_CODE = {
    cls.code: cls.http_status
    for cls in (
        PaymentsError, ValidationError, NotFound, AlreadyExists, ConflictError, PolicyViolation,
        NotActive, PayoutNotConfigured, PaymentMethodInvalid, AmountMismatch, ChargesInvalid,
        ProcessorError, ProcessorDeclined, ProcessorUnavailable, ProcessorTimeout,
    )
}


def http_status_for(code: str | None) -> int:
    return HTTP_STATUS_BY_CODE.get(code, 400)


# =============================================================================
# INPUT COERCION
# =============================================================================

def coerce_cents(value: Any, field: str = "amount_cents", *, allow_none: bool = False) -> int | None:
    """
    Strict integer-cents coercion.

    Rejects floats, booleans, scientific notation and decimals so that money
    never passes through binary floating point.
    """
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        cents = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e5")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            cents = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if cents <= 0:
        raise ValidationError(f"{field} must be positive")
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS} (${MAX_AMOUNT_CENTS / 100:,.2f})")
    return cents


def coerce_id(value: Any, field: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.strip().isdigit():
        result = int(value.strip())
    else:
        raise ValidationError(f"{field} must be an integer id")
    if result <= 0:
        raise ValidationError(f"{field} must be a positive id")
    return result


def coerce_id_list(values: Any, field: str) -> list[int]:
    if not isinstance(values, (list, tuple)) or not values:
        raise ValidationError(f"{field} must be a non-empty list")
    ids = [coerce_id(v, field) for v in values]
    if len(set(ids)) != len(ids):
        raise ValidationError(f"{field} contains duplicates")
    return ids


def require_choice(value: Any, choices: Iterable[str], field: str) -> str:
    allowed = list(choices)
    if not isinstance(value, str) or value.upper() not in allowed:
        raise ValidationError(f"Invalid {field}: {value}. Must be one of {allowed}")
    return value.upper()


def coerce_date(value: Any, field: str):
    if value is None:
        return None
    try:
        return parse_iso_date(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date (YYYY-MM-DD)")


def require_text(value: Any, field: str, *, max_length: int = 255, allow_none: bool = False) -> str | None:
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")
    text = str(value).strip()
    if not text:
        if allow_none:
            return None
        raise ValidationError(f"{field} cannot be blank")
    if len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text
