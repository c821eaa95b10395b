# backend/edition_ledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/edition_ledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///edition_ledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Commerce platform (read-only Admin API access)
    SHOPIFY_SHOP = os.environ.get("SHOPIFY_SHOP", "")
    SHOPIFY_ACCESS_TOKEN = os.environ.get("SHOPIFY_ACCESS_TOKEN", "")
    SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2024-01")

    # Per-call timeout and bounded retries on transient network failures only
    PLATFORM_TIMEOUT_SECONDS = float(os.environ.get("PLATFORM_TIMEOUT_SECONDS", "10"))
    PLATFORM_MAX_RETRIES = int(os.environ.get("PLATFORM_MAX_RETRIES", "3"))
    PLATFORM_BACKOFF_SECONDS = float(os.environ.get("PLATFORM_BACKOFF_SECONDS", "0.25"))

    # Reconciliation sweep worker width (platform rate limits)
    RECONCILE_CONCURRENCY = int(os.environ.get("RECONCILE_CONCURRENCY", "5"))
    RECONCILE_DEFAULT_LIMIT = int(os.environ.get("RECONCILE_DEFAULT_LIMIT", "100"))

    # Shared bearer token for the internal admin endpoints
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN", "")

    # created_by value on audit rows written without an explicit actor
    LEDGER_ACTOR = os.environ.get("LEDGER_ACTOR", "edition_ledger")
