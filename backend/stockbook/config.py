# backend/stockbook/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockbook.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockbook.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Purchase booking
    PURCHASE_NUMBER_PREFIX = os.environ.get("PURCHASE_NUMBER_PREFIX", "POB")
    PURCHASE_PAYMENT_METHOD = os.environ.get("PURCHASE_PAYMENT_METHOD", "cash")
    DEFAULT_SUPPLIER_NAME = os.environ.get("DEFAULT_SUPPLIER_NAME", "Direct Purchase")

    # Refill purchases hand the same number of empty cylinders back to the supplier.
    # The legacy booking drawer always did this on checkout (never on quick-add);
    # here it is opt-in and applies to both paths alike.
    EXCHANGE_EMPTIES_ON_REFILL = _env_bool("EXCHANGE_EMPTIES_ON_REFILL", False)

    # Open carts idle this long are dropped (default one day)
    CART_IDLE_TTL_SECONDS = int(os.environ.get("CART_IDLE_TTL_SECONDS", "86400"))

    # Bounded retry for counter and sequence writes
    STOCK_WRITE_ATTEMPTS = int(os.environ.get("STOCK_WRITE_ATTEMPTS", "3"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")
