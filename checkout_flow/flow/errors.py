"""
Checkout error taxonomy.

Coordinators raise CheckoutError subclasses; the runner converts them into
failure completion events and the orchestrator stores them in the flow
context as FlowError(kind, message). Anything that is not a CheckoutError is
reported as ErrorKind.FATAL.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Kinds of error a flow can surface to the customer."""
    VALIDATION = "ValidationError"
    LOOKUP_FAILED = "LookupFailed"
    AUTH_SEND_FAILED = "AuthSendFailed"
    AUTH_REJECTED = "AuthRejected"
    TOKENIZATION = "TokenizationError"
    DUPLICATE_CARD = "DuplicateCard"
    PAYMENT = "PaymentError"
    FATAL = "Fatal"


class CheckoutError(Exception):
    """Base class for every known checkout failure."""

    kind: ErrorKind = ErrorKind.FATAL
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CheckoutError):
    """Local input validation failure. Never reaches a coordinator."""

    kind = ErrorKind.VALIDATION
    default_message = "Please check the highlighted fields."

    def __init__(self, message: str | None = None, field_errors: dict[str, str] | None = None):
        super().__init__(message)
        self.field_errors = field_errors or {}


class MatchLookupFailed(CheckoutError):
    kind = ErrorKind.LOOKUP_FAILED
    default_message = "We couldn't look up your account right now. Please try again."


class AuthSendFailed(CheckoutError):
    kind = ErrorKind.AUTH_SEND_FAILED
    default_message = "We couldn't send your verification code. Please try again."


class InvalidCode(CheckoutError):
    """
    Submitted code was not approved.

    definitive is False when the provider could not be reached; such a
    failure does not use up an attempt.
    """

    kind = ErrorKind.AUTH_REJECTED
    default_message = "That code didn't work. Please check it and try again."

    def __init__(self, message: str | None = None, definitive: bool = True):
        super().__init__(message)
        self.definitive = definitive


class AccountCreationFailed(CheckoutError):
    kind = ErrorKind.LOOKUP_FAILED
    default_message = "We verified your code but couldn't set up your account. Please try again."


class TokenizationError(CheckoutError):
    kind = ErrorKind.TOKENIZATION
    default_message = "We couldn't read that card. Please re-enter it."


class DuplicateCard(CheckoutError):
    kind = ErrorKind.DUPLICATE_CARD
    default_message = "This card is already saved on your account. Please choose it from your saved cards."

    def __init__(self, message: str | None = None, existing_card_id: str | None = None, saved_cards=None):
        super().__init__(message)
        self.existing_card_id = existing_card_id
        # Freshly listed cards when the duplicate was caught against the backend
        self.saved_cards = saved_cards


class PaymentError(CheckoutError):
    """
    Charge or card-save failure.

    definitive is False when the outcome is unknown (transport error,
    timeout), in which case a retry must reuse the same idempotency key.
    """

    kind = ErrorKind.PAYMENT
    default_message = "Your payment didn't go through. Please try again or use another card."

    def __init__(self, message: str | None = None, definitive: bool = True):
        super().__init__(message)
        self.definitive = definitive
