"""
SQLAlchemy-backed reference backends.

SqlAccountDirectory and SandboxPaymentGateway implement the AccountDirectory
and PaymentGateway contracts against the local database. They are used in
development and tests, and as the default when no hosted endpoints are
configured.

Each call opens its own session from the factory, since coordinator calls
run in worker threads.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..flow.models import ContactSnapshot
from ..models import ChargeRecord, GuestAccount, SavedCardRecord

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

# Test nonces accepted by the sandbox, in the processor's own format
SANDBOX_NONCES: Dict[str, Dict[str, Any]] = {
    "cnon:card-nonce-ok": {"brand": "VISA", "last4": "1111", "exp_month": 12, "exp_year": 2030},
    "cnon:card-nonce-mastercard": {"brand": "MASTERCARD", "last4": "5100", "exp_month": 6, "exp_year": 2029},
    "cnon:card-nonce-declined": {"brand": "VISA", "last4": "0002", "exp_month": 12, "exp_year": 2030},
}

# Cards ending in these digits are always declined
DECLINED_LAST4 = frozenset({"0002"})


def _account_to_record(account: GuestAccount) -> Dict[str, Any]:
    return {
        "account_id": account.id,
        "first_name": account.first_name,
        "last_name": account.last_name,
        "organization_name": account.organization_name,
        "email": account.email,
        "mobile_number": account.mobile_number,
    }


def _card_to_record(card: SavedCardRecord) -> Dict[str, Any]:
    return {
        "id": card.id,
        "brand": card.brand,
        "last4": card.last4,
        "exp_month": card.exp_month,
        "exp_year": card.exp_year,
    }


def _charge_to_record(charge: ChargeRecord) -> Dict[str, Any]:
    record = {
        "id": charge.id,
        "status": charge.status,
        "amount": charge.amount,
        "card_id": charge.card_id,
    }
    if charge.status != "COMPLETED":
        record["error"] = "Your card was declined."
    return record


class SqlAccountDirectory:
    """Guest accounts stored in the guest_accounts table."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def search(self, contact: ContactSnapshot) -> List[Dict[str, Any]]:
        """Loose search: any shared channel, or the same full name."""
        with self._session_factory() as db:
            accounts = (
                db.query(GuestAccount)
                .filter(
                    or_(
                        GuestAccount.email == contact.email.lower(),
                        GuestAccount.mobile_number == contact.mobile_number,
                        (func.lower(GuestAccount.first_name) == contact.first_name.lower())
                        & (func.lower(GuestAccount.last_name) == contact.last_name.lower()),
                    )
                )
                .order_by(GuestAccount.created_at)
                .all()
            )
            return [_account_to_record(account) for account in accounts]

    def create_account(self, contact: ContactSnapshot) -> str:
        with self._session_factory() as db:
            account = GuestAccount(
                first_name=contact.first_name,
                last_name=contact.last_name,
                organization_name=contact.organization_name,
                email=contact.email.lower(),
                mobile_number=contact.mobile_number,
            )
            db.add(account)
            db.commit()
            logger.info("Created guest account %s", account.id)
            return account.id


class SandboxPaymentGateway:
    """
    Card vault and charges stored locally.

    Nonces come from SANDBOX_NONCES or register_nonce(). Saves and charges
    are deduplicated by idempotency key: replaying a key returns the record
    the first request created.
    """

    def __init__(self, session_factory: SessionFactory, nonces: Optional[Dict[str, Dict[str, Any]]] = None):
        self._session_factory = session_factory
        self._nonces = dict(SANDBOX_NONCES if nonces is None else nonces)
        # token -> card details, filled by resolve_nonce
        self._tokens: Dict[str, Dict[str, Any]] = {}

    def register_nonce(self, nonce: str, brand: str, last4: str, exp_month: int, exp_year: int) -> None:
        self._nonces[nonce] = {"brand": brand, "last4": last4, "exp_month": exp_month, "exp_year": exp_year}

    def resolve_nonce(self, nonce: str) -> Dict[str, Any]:
        details = self._nonces.get(nonce)
        if details is None:
            raise ValueError(f"Unknown card nonce {nonce!r}")
        token = f"ccof:{uuid.uuid4().hex}"
        self._tokens[token] = details
        return {"token": token, **details}

    def list_cards(self, customer_id: str) -> List[Dict[str, Any]]:
        with self._session_factory() as db:
            cards = (
                db.query(SavedCardRecord)
                .filter(SavedCardRecord.customer_id == customer_id)
                .order_by(SavedCardRecord.created_at)
                .all()
            )
            return [_card_to_record(card) for card in cards]

    def save_card(self, customer_id: str, token: str, idempotency_key: str) -> Dict[str, Any]:
        with self._session_factory() as db:
            existing = db.query(SavedCardRecord).filter(SavedCardRecord.idempotency_key == idempotency_key).first()
            if existing is not None:
                logger.info("Replayed card save with key %s", idempotency_key)
                return _card_to_record(existing)

            details = self._tokens.get(token)
            if details is None:
                raise ValueError("Unknown card token")

            card = SavedCardRecord(customer_id=customer_id, token=token, idempotency_key=idempotency_key, **details)
            db.add(card)
            db.commit()
            logger.info("Saved card %s for customer %s", card.id, customer_id)
            return _card_to_record(card)

    def charge(self, customer_id: str, card_id: str, amount: float, idempotency_key: str) -> Dict[str, Any]:
        with self._session_factory() as db:
            existing = db.query(ChargeRecord).filter(ChargeRecord.idempotency_key == idempotency_key).first()
            if existing is not None:
                logger.info("Replayed charge with key %s", idempotency_key)
                return _charge_to_record(existing)

            card = db.get(SavedCardRecord, card_id)
            if card is None or card.customer_id != customer_id:
                return {"status": "DECLINED", "error": "Card not found."}

            status = "DECLINED" if card.last4 in DECLINED_LAST4 else "COMPLETED"
            charge = ChargeRecord(
                customer_id=customer_id,
                card_id=card_id,
                amount=amount,
                status=status,
                idempotency_key=idempotency_key,
            )
            db.add(charge)
            db.commit()
            logger.info("Charge %s for customer %s: %s", charge.id, customer_id, status)
            return _charge_to_record(charge)
