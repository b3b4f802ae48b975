"""
Flow Effects.

An effect describes the single external call a state performs on entry.
The orchestrator only describes effects; the runner performs them. Every
effect carries the attempt token its completion event must echo back.
"""

from dataclasses import dataclass

from .models import CardInput, ContactSnapshot, OTPSession, OtpChannel


@dataclass(frozen=True)
class Effect:
    attempt: int


@dataclass(frozen=True)
class ResolveMatches(Effect):
    contact: ContactSnapshot


@dataclass(frozen=True)
class SendCode(Effect):
    channel: OtpChannel
    destination: str
    account_id: str | None


@dataclass(frozen=True)
class VerifyCode(Effect):
    session: OTPSession
    code: str
    new_account: ContactSnapshot | None


@dataclass(frozen=True)
class FetchSavedCards(Effect):
    customer_id: str


@dataclass(frozen=True)
class ChargeSavedCard(Effect):
    customer_id: str
    card_id: str
    amount: float
    idempotency_key: str


@dataclass(frozen=True)
class SaveNewCardAndCharge(Effect):
    customer_id: str
    card: CardInput
    amount: float
    idempotency_key: str
    retried: bool = False
