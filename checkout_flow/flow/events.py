"""
Flow Events.

Events are what callers (the HTTP layer, tests) dispatch into the
orchestrator. Completion events are dispatched by the runner when an
external call finishes; each carries the attempt token of the call that
produced it so late results can be discarded.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ErrorKind, ValidationError
from .models import (
    CandidateAccount,
    CardInput,
    CatalogItem,
    ChargeResult,
    OTPSession,
    PlanSelection,
    SavedCard,
)


class EventType(str, Enum):
    """Events a caller may dispatch."""
    ADD_TO_CART = "ADD_TO_CART"
    UPDATE_QUANTITY = "UPDATE_QUANTITY"
    REMOVE_ITEM = "REMOVE_ITEM"
    SELECT_PLAN = "SELECT_PLAN"
    CHECKOUT = "CHECKOUT"
    UPDATE_FIELD = "UPDATE_FIELD"
    SUBMIT_CONTACT = "SUBMIT_CONTACT"
    SELECT_ACCOUNT = "SELECT_ACCOUNT"
    SELECT_PARTIAL_MATCH = "SELECT_PARTIAL_MATCH"
    CONFIRM_ACCOUNT = "CONFIRM_ACCOUNT"
    CONFIRM_PARTIAL_MATCH = "CONFIRM_PARTIAL_MATCH"
    CONFIRM_LOGIN_ACCOUNT = "CONFIRM_LOGIN_ACCOUNT"
    CHOOSE_SMS = "CHOOSE_SMS"
    CHOOSE_EMAIL = "CHOOSE_EMAIL"
    SUBMIT_CODE = "SUBMIT_CODE"
    SELECT_SAVED_CARD = "SELECT_SAVED_CARD"
    PAY_WITH_SAVED_CARD = "PAY_WITH_SAVED_CARD"
    USE_NEW_CARD = "USE_NEW_CARD"
    SUBMIT_NONCE = "SUBMIT_NONCE"
    BACK = "BACK"
    RESTART = "RESTART"


CONFIRM_SELECTION_EVENTS = frozenset({
    EventType.CONFIRM_ACCOUNT,
    EventType.CONFIRM_PARTIAL_MATCH,
    EventType.CONFIRM_LOGIN_ACCOUNT,
})

HIGHLIGHT_EVENTS = frozenset({
    EventType.SELECT_ACCOUNT,
    EventType.SELECT_PARTIAL_MATCH,
})


# =============================================================================
# User events
# =============================================================================

@dataclass(frozen=True)
class UserEvent:
    """An event with no payload (CHECKOUT, BACK, RESTART, CHOOSE_SMS...)."""
    type: EventType


@dataclass(frozen=True)
class AddToCart(UserEvent):
    item: CatalogItem = None
    modifier_ids: list[str] = field(default_factory=list)
    quantity: int = 1
    type: EventType = EventType.ADD_TO_CART


@dataclass(frozen=True)
class UpdateQuantity(UserEvent):
    line_id: str = ""
    change: int = 0
    type: EventType = EventType.UPDATE_QUANTITY


@dataclass(frozen=True)
class RemoveItem(UserEvent):
    line_id: str = ""
    type: EventType = EventType.REMOVE_ITEM


@dataclass(frozen=True)
class SelectPlan(UserEvent):
    plan: PlanSelection = None
    type: EventType = EventType.SELECT_PLAN


@dataclass(frozen=True)
class UpdateField(UserEvent):
    field: str = ""
    value: str = ""
    type: EventType = EventType.UPDATE_FIELD


@dataclass(frozen=True)
class SelectAccount(UserEvent):
    """Highlight a candidate, or NEW_ACCOUNT_OPTION for "create new"."""
    account_id: str = ""
    type: EventType = EventType.SELECT_ACCOUNT


@dataclass(frozen=True)
class SubmitCode(UserEvent):
    code: str = ""
    type: EventType = EventType.SUBMIT_CODE


@dataclass(frozen=True)
class SelectSavedCard(UserEvent):
    card_id: str = ""
    type: EventType = EventType.SELECT_SAVED_CARD


@dataclass(frozen=True)
class SubmitNonce(UserEvent):
    card: CardInput = None
    type: EventType = EventType.SUBMIT_NONCE


# =============================================================================
# Completion events
# =============================================================================

@dataclass(frozen=True)
class Completion:
    """Base for results of coordinator calls."""
    attempt: int


@dataclass(frozen=True)
class CallFailed(Completion):
    """Any coordinator failure, including timeouts."""
    kind: ErrorKind = ErrorKind.FATAL
    message: str = ""
    definitive: bool = True
    refreshed_cards: list[SavedCard] | None = None
    existing_card_id: str | None = None


@dataclass(frozen=True)
class MatchesResolved(Completion):
    candidates: list[CandidateAccount] = field(default_factory=list)


@dataclass(frozen=True)
class CodeSent(Completion):
    session: OTPSession = None


@dataclass(frozen=True)
class CodeVerified(Completion):
    account_id: str = ""


@dataclass(frozen=True)
class CardsFetched(Completion):
    cards: list[SavedCard] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentSucceeded(Completion):
    result: ChargeResult = None
    saved_card: SavedCard | None = None


# =============================================================================
# Construction from wire payloads
# =============================================================================

def build_event(event_type: EventType | str, payload: dict[str, Any] | None = None) -> UserEvent:
    """
    Build a user event from its type and a JSON payload.

    Raises:
        ValidationError: If the type is unknown or the payload is malformed.
    """
    payload = payload or {}
    try:
        event_type = EventType(event_type)
    except ValueError:
        raise ValidationError(f"Unknown event type: {event_type}")

    try:
        if event_type == EventType.ADD_TO_CART:
            return AddToCart(
                item=CatalogItem.model_validate(payload["item"]),
                modifier_ids=list(payload.get("modifier_ids") or []),
                quantity=int(payload.get("quantity", 1)),
            )
        if event_type == EventType.UPDATE_QUANTITY:
            return UpdateQuantity(line_id=payload["line_id"], change=int(payload["change"]))
        if event_type == EventType.REMOVE_ITEM:
            return RemoveItem(line_id=payload["line_id"])
        if event_type == EventType.SELECT_PLAN:
            return SelectPlan(plan=PlanSelection.model_validate(payload["plan"]))
        if event_type == EventType.UPDATE_FIELD:
            return UpdateField(field=payload["field"], value=str(payload.get("value") or ""))
        if event_type in HIGHLIGHT_EVENTS:
            return SelectAccount(account_id=payload["account_id"], type=event_type)
        if event_type == EventType.SUBMIT_CODE:
            return SubmitCode(code=str(payload.get("code") or ""))
        if event_type == EventType.SELECT_SAVED_CARD:
            return SelectSavedCard(card_id=payload["card_id"])
        if event_type == EventType.SUBMIT_NONCE:
            return SubmitNonce(card=CardInput.model_validate(payload.get("card") or payload))
    except (KeyError, TypeError, ValueError) as e:
        # pydantic's ValidationError subclasses ValueError
        raise ValidationError(f"Malformed {event_type.value} payload: {e}")

    return UserEvent(type=event_type)
