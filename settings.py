"""
Centralized configuration for the bundle checkout engine.
"""
from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Shopify Admin API
SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2024-10")
SHOPIFY_API_SECRET: str = os.getenv("SHOPIFY_API_SECRET", "")
# Local development only: accept unsigned webhooks when no secret is configured
SHOPIFY_WEBHOOK_ALLOW_UNSIGNED: bool = _env_bool("SHOPIFY_WEBHOOK_ALLOW_UNSIGNED", False)
SHOPIFY_HTTP_TIMEOUT_SECONDS: float = float(os.getenv("SHOPIFY_HTTP_TIMEOUT_SECONDS", "15"))

# Backoff for RateLimited responses
RATE_LIMIT_RETRIES: int = int(os.getenv("RATE_LIMIT_RETRIES", "3"))
RATE_LIMIT_BASE_DELAY_SECONDS: float = float(os.getenv("RATE_LIMIT_BASE_DELAY_SECONDS", "0.5"))

# Read-after-write polling for materialized SKUs (12-20 attempts, 0.5-0.8s apart)
SKU_READY_POLL_ATTEMPTS: int = min(20, max(12, int(os.getenv("SKU_READY_POLL_ATTEMPTS", "20"))))
SKU_READY_POLL_INTERVAL_SECONDS: float = min(
    0.8, max(0.5, float(os.getenv("SKU_READY_POLL_INTERVAL_SECONDS", "0.8")))
)
SKU_INVENTORY_QUANTITY: int = int(os.getenv("SKU_INVENTORY_QUANTITY", "999"))
SHARED_MASTER_SKU: bool = _env_bool("SHARED_MASTER_SKU", False)

# Ephemeral discount rules
DISCOUNT_RULE_TTL_MINUTES: int = int(os.getenv("DISCOUNT_RULE_TTL_MINUTES", "10"))
DISCOUNT_CODE_PREFIX: str = os.getenv("DISCOUNT_CODE_PREFIX", "BNDL-")
DISCOUNT_RULE_TITLE_PREFIX: str = os.getenv("DISCOUNT_RULE_TITLE_PREFIX", "bundle-")
JANITOR_SWEEP_TIMEOUT_SECONDS: float = float(os.getenv("JANITOR_SWEEP_TIMEOUT_SECONDS", "5"))

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


def sanitize_shop_id(value: Optional[Any]) -> Optional[str]:
    """Normalize raw shop domains (strip whitespace, scheme and trailing slash, lower-case)."""
    if value is None:
        return None
    text = str(value).strip().lower()
    for scheme in ("https://", "http://"):
        if text.startswith(scheme):
            text = text[len(scheme):]
    text = text.rstrip("/")
    if not text:
        return None
    return text


def resolve_shop_domain(*candidates: Optional[Any]) -> Optional[str]:
    """
    Pick the first usable shop domain from candidates (query string, header, ...).
    Returns None when no candidate is usable.
    """
    for candidate in candidates:
        normalized = sanitize_shop_id(candidate)
        if normalized:
            return normalized
    return None
