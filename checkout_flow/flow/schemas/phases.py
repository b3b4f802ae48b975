"""
Flow State Definitions.

This module defines the FlowState enum identifying every state of the
checkout orchestrator, plus the product verticals and session roles that
parameterise a flow.
"""

from enum import Enum


class FlowState(str, Enum):
    """States of the checkout flow."""
    REVIEWING_CART = "reviewingCart"
    ENTERING_CONTACT_INFO = "enteringContactInfo"
    RESOLVING_MATCHES = "resolvingMatches"  # AccountMatcher call outstanding
    SELECTING_ACCOUNT = "selectingAccount"
    AUTHENTICATION_CHOICE = "authenticationChoice"
    SENDING_CODE = "sendingCode"  # send_code call outstanding
    ENTERING_CODE = "enteringCode"
    VERIFYING_CODE = "verifyingCode"  # verify_code call outstanding
    FETCHING_CARD_DETAILS = "fetchingCardDetails"  # list_saved_cards call outstanding
    CONFIRM_SAVED_CARD = "confirmSavedCard"
    ENTER_NEW_CARD = "enterNewCard"
    PROCESSING_SAVED_CARD_PAYMENT = "processingSavedCardPayment"  # charge outstanding
    SAVING_NEW_CARD = "savingNewCard"  # save + charge outstanding
    SUCCESS = "success"

    @property
    def is_terminal(self) -> bool:
        return self is FlowState.SUCCESS

    @property
    def is_busy(self) -> bool:
        """True for states that own an outstanding coordinator call."""
        return self in BUSY_STATES


BUSY_STATES = frozenset({
    FlowState.RESOLVING_MATCHES,
    FlowState.SENDING_CODE,
    FlowState.VERIFYING_CODE,
    FlowState.FETCHING_CARD_DETAILS,
    FlowState.PROCESSING_SAVED_CARD_PAYMENT,
    FlowState.SAVING_NEW_CARD,
})


class FlowVariant(str, Enum):
    """Product vertical a flow instance checks out for."""
    SUBSCRIPTION = "subscription"  # plan signup, amount is the plan price
    CATERING = "catering"  # cart checkout, amount is the cart total
    EVENT_REGISTRATION = "event_registration"  # fundraiser/event booking

    @property
    def uses_plan(self) -> bool:
        return self is FlowVariant.SUBSCRIPTION

    @property
    def discounts_require_authentication(self) -> bool:
        # Catering bulk pricing is shown to verified guests only
        return self is FlowVariant.CATERING


class SessionRole(str, Enum):
    """Role of the person checking out."""
    GUEST = "guest"
    HOST = "host"
    ORGANIZER = "organizer"

    @property
    def requires_organization(self) -> bool:
        return self in (SessionRole.HOST, SessionRole.ORGANIZER)
