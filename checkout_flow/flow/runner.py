"""
Flow Runner.

Runs the effects a CheckoutOrchestrator emits. Each effect becomes one
coordinator call executed in a worker thread, bounded by
COORDINATOR_TIMEOUT_SECONDS, and its outcome is fed back into the
orchestrator as a completion event carrying the effect's attempt token.

Events for a flow are processed one at a time under an asyncio.Lock; the
coordinator calls themselves run outside the lock so BACK and RESTART stay
responsive while a call is outstanding.
"""

import asyncio
import logging

from ..config import COORDINATOR_TIMEOUT_SECONDS
from .authentication import AuthenticationCoordinator
from .effects import (
    ChargeSavedCard,
    Effect,
    FetchSavedCards,
    ResolveMatches,
    SaveNewCardAndCharge,
    SendCode,
    VerifyCode,
)
from .errors import CheckoutError, ErrorKind
from .events import (
    CallFailed,
    CardsFetched,
    CodeSent,
    CodeVerified,
    Completion,
    MatchesResolved,
    PaymentSucceeded,
    UserEvent,
)
from .matching import AccountMatcher
from .payments import PaymentCoordinator
from .result import DispatchResult
from .state_machine import CheckoutOrchestrator

logger = logging.getLogger(__name__)

# Error a timed-out call is reported as, per effect
TIMEOUT_FAILURES = {
    ResolveMatches: (ErrorKind.LOOKUP_FAILED, "Looking up your account took too long. Please try again."),
    SendCode: (ErrorKind.AUTH_SEND_FAILED, "Sending your code took too long. Please try again."),
    VerifyCode: (ErrorKind.AUTH_REJECTED, "Checking your code took too long. Please try again."),
    FetchSavedCards: (ErrorKind.PAYMENT, "Could not retrieve saved cards."),
    ChargeSavedCard: (ErrorKind.PAYMENT, "Your payment is taking too long to confirm. Please try again."),
    SaveNewCardAndCharge: (ErrorKind.PAYMENT, "Your payment is taking too long to confirm. Please try again."),
}

FATAL_MESSAGE = "Something went wrong. Please try again."


class FlowRunner:
    """Drives one orchestrator against the coordinators."""

    def __init__(
        self,
        orchestrator: CheckoutOrchestrator,
        matcher: AccountMatcher,
        authentication: AuthenticationCoordinator,
        payments: PaymentCoordinator,
        timeout: float = COORDINATOR_TIMEOUT_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.matcher = matcher
        self.authentication = authentication
        self.payments = payments
        self.timeout = timeout
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def flow_id(self) -> str:
        return self.orchestrator.context.flow_id

    async def dispatch(self, event: UserEvent | Completion) -> DispatchResult:
        """
        Process one event and start the call it triggers, if any.

        Returns as soon as the event is applied. Use settle() to wait for the
        resulting call (and any call its completion triggers) to finish.
        """
        async with self._lock:
            result = self.orchestrator.process(event)
        if result.effect is not None:
            task = asyncio.create_task(self._run_effect(result.effect))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return result

    async def settle(self) -> None:
        """Wait until no coordinator call is outstanding."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    @property
    def is_settled(self) -> bool:
        return not self._tasks

    async def _run_effect(self, effect: Effect) -> None:
        completion = await self._perform(effect)
        await self.dispatch(completion)

    async def _perform(self, effect: Effect) -> Completion:
        """Run the coordinator call for `effect`, converting every failure."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._call, effect), timeout=self.timeout)
        except asyncio.TimeoutError:
            kind, message = TIMEOUT_FAILURES[type(effect)]
            logger.warning("Flow %s: %s timed out after %ss", self.flow_id, type(effect).__name__, self.timeout)
            return CallFailed(attempt=effect.attempt, kind=kind, message=message, definitive=False)
        except CheckoutError as e:
            return CallFailed(
                attempt=effect.attempt,
                kind=e.kind,
                message=e.message,
                definitive=getattr(e, "definitive", True),
                refreshed_cards=getattr(e, "saved_cards", None),
                existing_card_id=getattr(e, "existing_card_id", None),
            )
        except Exception:
            logger.exception("Flow %s: unexpected failure in %s", self.flow_id, type(effect).__name__)
            return CallFailed(attempt=effect.attempt, kind=ErrorKind.FATAL, message=FATAL_MESSAGE)

    def _call(self, effect: Effect) -> Completion:
        """Blocking coordinator call. Runs in a worker thread."""
        if isinstance(effect, ResolveMatches):
            return MatchesResolved(attempt=effect.attempt, candidates=self.matcher.resolve(effect.contact))
        if isinstance(effect, SendCode):
            session = self.authentication.send_code(effect.channel, effect.destination, effect.account_id)
            return CodeSent(attempt=effect.attempt, session=session)
        if isinstance(effect, VerifyCode):
            account_id = self.authentication.verify_code(effect.session, effect.code, effect.new_account)
            return CodeVerified(attempt=effect.attempt, account_id=account_id)
        if isinstance(effect, FetchSavedCards):
            return CardsFetched(attempt=effect.attempt, cards=self.payments.list_saved_cards(effect.customer_id))
        if isinstance(effect, ChargeSavedCard):
            result = self.payments.charge_saved_card(
                effect.customer_id, effect.card_id, effect.amount, effect.idempotency_key,
            )
            return PaymentSucceeded(attempt=effect.attempt, result=result)
        if isinstance(effect, SaveNewCardAndCharge):
            saved, result = self.payments.save_new_card_and_charge(
                effect.customer_id, effect.card, effect.amount, effect.idempotency_key, retried=effect.retried,
            )
            return PaymentSucceeded(attempt=effect.attempt, result=result, saved_card=saved)
        raise TypeError(f"Unknown effect {type(effect).__name__}")
