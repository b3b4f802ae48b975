"""
Backend contracts consumed by the coordinators.

The account store, one-time-code service and payment processor are external
services. Coordinators reach them only through these protocols; concrete
implementations live in checkout_flow.backends.

Backends raise whatever their transport raises. Coordinators own the
translation into the checkout error taxonomy.
"""

from typing import Any, Protocol

from .models import ContactSnapshot, OtpChannel


class AccountDirectory(Protocol):
    """Guest/customer record store."""

    def search(self, contact: ContactSnapshot) -> list[dict[str, Any]]:
        """Return raw account records loosely matching the contact."""
        ...

    def create_account(self, contact: ContactSnapshot) -> str:
        """Create an account for a verified new customer and return its id."""
        ...


class OtpProvider(Protocol):
    """One-time code delivery and checking."""

    def send(self, channel: OtpChannel, destination: str) -> str:
        """Dispatch a code and return the provider's verification sid."""
        ...

    def check(self, channel: OtpChannel, destination: str, code: str, sid: str) -> bool:
        """True when the code is approved for this destination."""
        ...


class PaymentGateway(Protocol):
    """Card vault and charge API."""

    def resolve_nonce(self, nonce: str) -> dict[str, Any]:
        """Exchange a widget nonce for {token, brand, last4, exp_month, exp_year}."""
        ...

    def list_cards(self, customer_id: str) -> list[dict[str, Any]]:
        ...

    def save_card(self, customer_id: str, token: str, idempotency_key: str) -> dict[str, Any]:
        ...

    def charge(self, customer_id: str, card_id: str, amount: float, idempotency_key: str) -> dict[str, Any]:
        ...
