"""
Payment Coordinator.

Wraps the PaymentGateway with the checkout's card rules:

- Tokenize: the card widget hands over a nonce; the gateway exchanges it for
  a reusable token plus brand, last four and expiry.
- Duplicate cards: a new card whose brand, last four and expiry match a
  saved card is refused before anything is saved.
- Idempotency: every save and charge carries the caller's idempotency key.
  Transport failures are reported as non-definitive so the caller reuses
  the key on retry. A retried new-card attempt whose card is already on file
  is charged on that card under the same key instead of being refused.
"""

import logging
from typing import Any, Iterable

from .backends import PaymentGateway
from .errors import DuplicateCard, PaymentError, TokenizationError
from .models import CardDetails, CardInput, ChargeResult, SavedCard, TokenizedCard

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"COMPLETED", "APPROVED", "SUCCEEDED"})

CARD_RECORD_ALIASES = {
    "id": ("id", "card_id"),
    "brand": ("brand", "card_brand"),
    "last4": ("last4", "last_4"),
    "exp_month": ("exp_month",),
    "exp_year": ("exp_year",),
}


def _pick(record: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if record.get(key) not in (None, ""):
            return record[key]
    return None


def _card_fields(record: dict[str, Any]) -> dict[str, Any]:
    return {name: _pick(record, keys) for name, keys in CARD_RECORD_ALIASES.items()}


def card_from_record(record: dict[str, Any]) -> SavedCard:
    """Build a SavedCard from a gateway record. Raises ValueError if incomplete."""
    fields = _card_fields(record)
    missing = [name for name, value in fields.items() if value is None]
    if missing:
        raise ValueError(f"card record missing {', '.join(missing)}")
    return SavedCard(
        id=str(fields["id"]),
        brand=str(fields["brand"]),
        last4=str(fields["last4"])[-4:],
        exp_month=int(fields["exp_month"]),
        exp_year=int(fields["exp_year"]),
    )


def find_duplicate(card: CardDetails, saved_cards: Iterable[SavedCard]) -> SavedCard | None:
    """Return the saved card with the same fingerprint as `card`, if any."""
    fingerprint = card.fingerprint
    for saved in saved_cards:
        if saved.fingerprint == fingerprint:
            return saved
    return None


def _is_valid_details(last4: str, exp_month: int, exp_year: int) -> bool:
    return len(last4) == 4 and last4.isdigit() and 1 <= exp_month <= 12 and exp_year > 0


class PaymentCoordinator:
    """Card and charge operations against a PaymentGateway."""

    def __init__(self, gateway: PaymentGateway):
        self._gateway = gateway

    def tokenize(self, card_input: CardInput) -> TokenizedCard:
        """
        Exchange the widget nonce for a token and verified card details.

        Details the gateway does not report fall back to what the widget
        reported.

        Raises:
            TokenizationError: No nonce, the gateway refused it, or the card
                details are incomplete.
        """
        if not card_input.nonce:
            raise TokenizationError()

        try:
            record = self._gateway.resolve_nonce(card_input.nonce)
        except Exception as e:
            logger.warning("Nonce exchange failed: %s", e)
            raise TokenizationError() from e

        token = record.get("token")
        fields = _card_fields(record)
        brand = fields["brand"] or card_input.brand
        last4 = str(fields["last4"] or card_input.last4 or "")[-4:]
        try:
            exp_month = int(fields["exp_month"] or card_input.exp_month or 0)
            exp_year = int(fields["exp_year"] or card_input.exp_year or 0)
        except (TypeError, ValueError) as e:
            raise TokenizationError() from e

        if not token or not brand or not _is_valid_details(last4, exp_month, exp_year):
            logger.warning("Nonce exchange returned incomplete card details")
            raise TokenizationError()

        return TokenizedCard(token=token, brand=brand, last4=last4, exp_month=exp_month, exp_year=exp_year)

    def list_saved_cards(self, customer_id: str) -> list[SavedCard]:
        """
        Raises:
            PaymentError: The gateway could not list the customer's cards.
        """
        try:
            records = self._gateway.list_cards(customer_id)
        except Exception as e:
            logger.warning("Listing cards for %s failed: %s", customer_id, e)
            raise PaymentError("Could not retrieve saved cards.") from e

        cards = []
        for record in records or []:
            try:
                cards.append(card_from_record(record))
            except (ValueError, TypeError) as e:
                logger.warning("Skipping unusable card record for %s: %s", customer_id, e)
        return cards

    def charge_saved_card(self, customer_id: str, card_id: str, amount: float, idempotency_key: str) -> ChargeResult:
        """
        Charge a card already on file.

        Raises:
            PaymentError: definitive=True for a decline, False when the
                outcome is unknown.
        """
        try:
            record = self._gateway.charge(customer_id, card_id, amount, idempotency_key)
        except Exception as e:
            logger.warning("Charge for %s with key %s did not complete: %s", customer_id, idempotency_key, e)
            raise PaymentError("We couldn't confirm your payment. Please try again.", definitive=False) from e

        status = str(record.get("status") or "").upper()
        if status not in SUCCESS_STATUSES:
            logger.info("Charge for %s declined (status=%s)", customer_id, status or "unknown")
            raise PaymentError(record.get("error") or None, definitive=True)

        logger.info("Charged %.2f to customer %s", amount, customer_id)
        return ChargeResult(
            payment_id=str(record.get("id") or record.get("payment_id")),
            customer_id=customer_id,
            card_id=card_id,
            amount=amount,
            idempotency_key=idempotency_key,
            status=status,
        )

    def save_new_card(self, customer_id: str, token: str, idempotency_key: str) -> SavedCard:
        """
        Raises:
            PaymentError: The card could not be saved.
        """
        try:
            record = self._gateway.save_card(customer_id, token, idempotency_key)
            return card_from_record(record)
        except (ValueError, TypeError) as e:
            raise PaymentError("Your card was not saved. Please re-enter it.") from e
        except Exception as e:
            logger.warning("Saving card for %s failed: %s", customer_id, e)
            raise PaymentError("Your card was not saved. Please try again.", definitive=False) from e

    def save_new_card_and_charge(
        self,
        customer_id: str,
        card_input: CardInput,
        amount: float,
        idempotency_key: str,
        retried: bool = False,
    ) -> tuple[SavedCard, ChargeResult]:
        """
        Tokenize, re-check for duplicates, save, then charge.

        The duplicate check runs against a freshly listed set of cards since
        cards may have been added in another session.

        Args:
            retried: idempotency_key was already used by an attempt whose
                outcome is unknown. A matching saved card is then charged
                under the same key rather than refused.

        Raises:
            TokenizationError, DuplicateCard, PaymentError
        """
        card = self.tokenize(card_input)
        current_cards = self.list_saved_cards(customer_id)

        duplicate = find_duplicate(card, current_cards)
        if duplicate is not None and retried:
            logger.info("Retrying key %s on card %s already saved for %s", idempotency_key, duplicate.id, customer_id)
            return duplicate, self.charge_saved_card(customer_id, duplicate.id, amount, idempotency_key)
        if duplicate is not None:
            logger.info("New card for %s duplicates saved card %s", customer_id, duplicate.id)
            raise DuplicateCard(existing_card_id=duplicate.id, saved_cards=current_cards)

        saved = self.save_new_card(customer_id, card.token, idempotency_key)
        return saved, self.charge_saved_card(customer_id, saved.id, amount, idempotency_key)
