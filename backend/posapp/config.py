# backend/posapp/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/posapp.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///posapp.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Password hashing cost
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

    # Presentation defaults, not checkout invariants
    LOW_STOCK_THRESHOLD = _env_int("LOW_STOCK_THRESHOLD", 10)
    DEFAULT_PRODUCT_CATEGORY = os.environ.get("DEFAULT_PRODUCT_CATEGORY", "General")

    # Checkout limits
    MAX_LINE_QUANTITY = _env_int("MAX_LINE_QUANTITY", 9999)
    SALE_NUMBER_MAX_ATTEMPTS = _env_int("SALE_NUMBER_MAX_ATTEMPTS", 3)

    PAGINATION_MAX_LIMIT = _env_int("PAGINATION_MAX_LIMIT", 100)

    # Receipt header
    RECEIPT_COMPANY_NAME = os.environ.get("RECEIPT_COMPANY_NAME", "POS System")
    RECEIPT_ADDRESS = os.environ.get("RECEIPT_ADDRESS", "123 Business Street")
    RECEIPT_PHONE = os.environ.get("RECEIPT_PHONE", "+1 (555) 123-4567")
    RECEIPT_EMAIL = os.environ.get("RECEIPT_EMAIL", "info@possystem.com")
    RECEIPT_WEBSITE = os.environ.get("RECEIPT_WEBSITE", "www.possystem.com")
