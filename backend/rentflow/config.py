# backend/rentflow/config.py
from __future__ import annotations
import os
from decimal import Decimal


def _int_list(raw: str) -> tuple[int, ...]:
    return tuple(int(part) for part in raw.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/rentflow.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///rentflow.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Stripe Connect (destination charges)
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_VERSION = os.environ.get("STRIPE_API_VERSION") or None
    STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "0"))

    # Used to build onboarding refresh/return URLs
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:3000")

    PAYMENTS_CURRENCY = os.environ.get("PAYMENTS_CURRENCY", "usd")
    STATEMENT_DESCRIPTOR = os.environ.get("STATEMENT_DESCRIPTOR", "RENT PAYMENT")

    # Share of the processing fee the payer covers under SPLIT_FEES
    FEE_SPLIT_PAYER_SHARE = Decimal(os.environ.get("FEE_SPLIT_PAYER_SHARE", "0.5"))

    AUTOPAY_MAX_CONSECUTIVE_FAILURES = int(os.environ.get("AUTOPAY_MAX_CONSECUTIVE_FAILURES", "3"))
    AUTOPAY_RETRY_DELAYS_DAYS = _int_list(os.environ.get("AUTOPAY_RETRY_DELAYS_DAYS", "1,3,7"))
