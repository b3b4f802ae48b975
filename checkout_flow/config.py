"""
Configuration Module for Checkout Flow
======================================

This module centralizes all configuration settings, environment variables, and
constants used throughout the checkout flow service. Values are parsed and
typed at module load time so configuration errors surface early.

Configuration Categories:
-------------------------
- **One-Time Codes**: Code length, attempt ceiling and expiry for the
  out-of-band authentication step.

- **Coordinator Calls**: Upper bound on every external call the orchestrator
  makes (account search, code send/verify, card listing, charges).

- **Flow Sessions**: TTL and capacity of the in-memory store that keeps one
  flow instance per browser session.

- **Modifier Lookup**: TTL and capacity of the per-SKU modifier cache.

- **Backends**: Hosted commerce endpoints and the database URL used by the
  reference (SQL) backends.

- **Rate Limiting / CORS**: HTTP surface protection.

Environment Variables:
----------------------
- OTP_MAX_ATTEMPTS: Wrong codes allowed per session (default: 5)
- OTP_EXPIRY_SECONDS: Code validity window (default: 600)
- COORDINATOR_TIMEOUT_SECONDS: External call bound (default: 15)
- FLOW_SESSION_TTL_SECONDS: Idle flow eviction (default: 3600)
- FLOW_SESSION_MAX_CACHE_SIZE: Max live flows (default: 1000)
- MODIFIER_CACHE_TTL_SECONDS: Modifier cache TTL (default: 300)
- CHECKOUT_BACKEND: "sql" or "http" (default: "sql")
- CHECKOUT_API_BASE_URL: Base URL of the hosted commerce endpoints
- DATABASE_URL: SQLAlchemy URL for the reference backends
- RATE_LIMIT_CHECKOUT: Event endpoint rate limit (default: "60 per minute")
- CORS_ORIGINS: Comma-separated allowed origins (default: "*")

Usage:
------
    from checkout_flow.config import (
        OTP_MAX_ATTEMPTS,
        COORDINATOR_TIMEOUT_SECONDS,
    )
"""

import os
from typing import List


# =============================================================================
# One-Time Code Configuration
# =============================================================================
# The client-visible attempt ceiling bounds brute-force attempts against the
# backend's code store. Expiry is not observable by the client contract, but
# a code older than this is rejected without a provider round-trip.

OTP_CODE_LENGTH: int = 6

OTP_MAX_ATTEMPTS: int = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))

# 10 minutes
OTP_EXPIRY_SECONDS: int = int(os.getenv("OTP_EXPIRY_SECONDS", "600"))


# =============================================================================
# Coordinator Call Configuration
# =============================================================================
# A call that never resolves is treated exactly like a coordinator failure
# once this many seconds have passed.

COORDINATOR_TIMEOUT_SECONDS: float = float(os.getenv("COORDINATOR_TIMEOUT_SECONDS", "15"))

# Per-request timeout for the requests-based HTTP backends
HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))


# =============================================================================
# Flow Session Configuration
# =============================================================================
# Each browser session owns exactly one flow instance. Instances live only in
# memory; evicted flows restart from an empty cart.

FLOW_SESSION_TTL_SECONDS: int = int(os.getenv("FLOW_SESSION_TTL_SECONDS", "3600"))  # 1 hour

FLOW_SESSION_MAX_CACHE_SIZE: int = int(os.getenv("FLOW_SESSION_MAX_CACHE_SIZE", "1000"))


# =============================================================================
# Modifier Lookup Configuration
# =============================================================================

MODIFIER_CACHE_TTL_SECONDS: int = int(os.getenv("MODIFIER_CACHE_TTL_SECONDS", "300"))  # 5 minutes

MODIFIER_CACHE_MAX_SIZE: int = int(os.getenv("MODIFIER_CACHE_MAX_SIZE", "500"))


# =============================================================================
# Backend Configuration
# =============================================================================
# "sql" wires the SQLAlchemy reference backends (local development, tests).
# "http" wires the requests-based clients for the hosted commerce endpoints.

CHECKOUT_BACKEND: str = os.getenv("CHECKOUT_BACKEND", "sql").lower()

CHECKOUT_API_BASE_URL: str = os.getenv("CHECKOUT_API_BASE_URL", "").rstrip("/")

GUEST_SEARCH_PATH: str = os.getenv("GUEST_SEARCH_PATH", "/guests/search")
GUEST_CREATE_PATH: str = os.getenv("GUEST_CREATE_PATH", "/guests")
CARDS_PATH: str = os.getenv("CARDS_PATH", "/customers/{customer_id}/cards")
NONCE_PATH: str = os.getenv("NONCE_PATH", "/payments/nonces/{nonce}")
CHARGE_PATH: str = os.getenv("CHARGE_PATH", "/payments/charges")
MODIFIERS_URL: str = os.getenv("MODIFIERS_URL", "")

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./checkout_flow.db")

# Region assumed for phone numbers typed without a country code
DEFAULT_COUNTRY_REGION: str = os.getenv("DEFAULT_COUNTRY_REGION", "US")

# Name used in verification messages
BRAND_NAME: str = os.getenv("BRAND_NAME", "Checkout")


# =============================================================================
# Rate Limiting Configuration
# =============================================================================

RATE_LIMIT_CHECKOUT: str = os.getenv("RATE_LIMIT_CHECKOUT", "60 per minute")
RATE_LIMIT_ENABLED: bool = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"


def get_rate_limit_checkout() -> str:
    """
    Return the current checkout event rate limit.

    Allows tests to override the limit without touching the module constant.
    """
    return RATE_LIMIT_CHECKOUT


# =============================================================================
# CORS Configuration
# =============================================================================
# Format: comma-separated list of origins, e.g. "https://shop.example.com"
# Default "*" allows all origins (suitable for development only)

_cors_origins_env = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS: List[str] = [
    origin.strip()
    for origin in _cors_origins_env.split(",")
    if origin.strip()
] or ["*"]
