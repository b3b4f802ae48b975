"""
Checkout flow core.

The orchestrator state machine plus the coordinators it drives:

- CheckoutOrchestrator: pure transition function, one instance per session
- FlowRunner: runs the orchestrator's effects against the coordinators
- AccountMatcher / AuthenticationCoordinator / PaymentCoordinator
- discounts: tiered unit pricing
"""

from .authentication import AuthenticationCoordinator
from .discounts import cart_total, display_price, line_total, price_for
from .errors import (
    AccountCreationFailed,
    AuthSendFailed,
    CheckoutError,
    DuplicateCard,
    ErrorKind,
    InvalidCode,
    MatchLookupFailed,
    PaymentError,
    TokenizationError,
    ValidationError,
)
from .events import EventType, build_event
from .matching import AccountMatcher, fill_gaps
from .payments import PaymentCoordinator, find_duplicate
from .result import DispatchResult
from .runner import FlowRunner
from .schemas import FlowState, FlowVariant, SessionRole
from .state_machine import CheckoutOrchestrator

__all__ = [
    "AccountCreationFailed",
    "AccountMatcher",
    "AuthSendFailed",
    "AuthenticationCoordinator",
    "CheckoutError",
    "CheckoutOrchestrator",
    "DispatchResult",
    "DuplicateCard",
    "ErrorKind",
    "EventType",
    "FlowRunner",
    "FlowState",
    "FlowVariant",
    "InvalidCode",
    "MatchLookupFailed",
    "PaymentCoordinator",
    "PaymentError",
    "SessionRole",
    "TokenizationError",
    "ValidationError",
    "build_event",
    "cart_total",
    "display_price",
    "fill_gaps",
    "find_duplicate",
    "line_total",
    "price_for",
]
