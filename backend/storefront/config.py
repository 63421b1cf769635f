# backend/storefront/config.py
from __future__ import annotations
import os

from flask import current_app


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")
    DEFAULT_WAREHOUSE = os.environ.get("DEFAULT_WAREHOUSE", "default")

    # Order numbers look like ORD-20250923-0001
    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD")
    ORDER_NUMBER_ATTEMPTS = int(os.environ.get("ORDER_NUMBER_ATTEMPTS", "5"))

    PERSISTENCE_RETRY_ATTEMPTS = int(os.environ.get("PERSISTENCE_RETRY_ATTEMPTS", "3"))
    RETRY_BACKOFF_BASE = float(os.environ.get("RETRY_BACKOFF_BASE", "0.1"))

    # Order / return policy switches
    ALLOW_PARTIAL_PAYMENT_PROCESSING = _env_bool("ALLOW_PARTIAL_PAYMENT_PROCESSING", False)
    ALLOW_RETURNS_ON_SHIPPED = _env_bool("ALLOW_RETURNS_ON_SHIPPED", False)
    REFUND_ORDER_ON_FULL_RETURN = _env_bool("REFUND_ORDER_ON_FULL_RETURN", False)

    # Reconciliation sweeps
    PAYMENT_TIMEOUT_SECONDS = int(os.environ.get("PAYMENT_TIMEOUT_SECONDS", "900"))
    RESERVATION_TTL_SECONDS = int(os.environ.get("RESERVATION_TTL_SECONDS", "600"))

    ACTIVITY_LOG_ENABLED = _env_bool("ACTIVITY_LOG_ENABLED", True)


def get_setting(name: str):
    """Read a setting from the active app, falling back to the Config default."""
    return current_app.config.get(name, getattr(Config, name))
