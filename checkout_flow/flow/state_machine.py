"""
State Machine for Checkout Flow.

This module provides the deterministic state machine that drives a customer
from cart review through account matching, one-time code verification and
payment. Each state has its own handler and only the events that make sense
in that state are accepted; anything else is a logged no-op.

Key insight: the orchestrator never performs I/O. Entering a state that needs
an external call produces an Effect (see on_enter), and the result of that
call comes back later as a completion event carrying the attempt token it
was issued with. A completion whose token is no longer pending is discarded,
so leaving a state with BACK never needs to cancel anything.
"""

import logging

from .discounts import cart_total
from .effects import (
    ChargeSavedCard,
    Effect,
    FetchSavedCards,
    ResolveMatches,
    SaveNewCardAndCharge,
    SendCode,
    VerifyCode,
)
from .errors import ErrorKind
from .events import (
    CONFIRM_SELECTION_EVENTS,
    HIGHLIGHT_EVENTS,
    AddToCart,
    CallFailed,
    CardsFetched,
    CodeSent,
    CodeVerified,
    Completion,
    EventType,
    MatchesResolved,
    PaymentSucceeded,
    RemoveItem,
    SelectAccount,
    SelectPlan,
    SelectSavedCard,
    SubmitCode,
    SubmitNonce,
    UpdateField,
    UpdateQuantity,
    UserEvent,
)
from .matching import fill_gaps
from .models import (
    NEW_ACCOUNT_OPTION,
    AuthenticationBranch,
    ContactInfo,
    ExistingAccount,
    FlowContext,
    NewAccount,
    OtpChannel,
    PaymentBranch,
    PendingCall,
    ResolutionBranch,
)
from .payments import find_duplicate
from .result import DispatchResult
from .schemas import FlowState, FlowVariant, SessionRole
from .validators import validate_code, validate_contact_form

logger = logging.getLogger(__name__)

EDITABLE_CONTACT_FIELDS = frozenset(ContactInfo.model_fields)


class CheckoutOrchestrator:
    """
    Checkout flow for one customer session.

    process() is the only way to change state. It returns a DispatchResult
    carrying the effect the caller must perform, if any.
    """

    def __init__(
        self,
        variant: FlowVariant = FlowVariant.CATERING,
        role: SessionRole = SessionRole.GUEST,
        flow_id: str | None = None,
    ):
        self.state = FlowState.REVIEWING_CART
        self.context = FlowContext(variant=variant, role=role)
        if flow_id:
            self.context.flow_id = flow_id

    @property
    def show_discounts(self) -> bool:
        if self.context.variant.discounts_require_authentication:
            return self.context.is_authenticated
        return True

    def charge_amount(self) -> float:
        """Amount the customer is about to pay."""
        if self.context.variant.uses_plan:
            return self.context.plan.price if self.context.plan else 0.0
        return cart_total(self.context.cart, self.show_discounts)

    # =========================================================================
    # Dispatch
    # =========================================================================

    def process(self, event: UserEvent | Completion) -> DispatchResult:
        """
        Apply one event.

        Args:
            event: A user event, or a completion from a coordinator call

        Returns:
            DispatchResult with the resulting state, whether the event was
            accepted, and the effect to run (if a busy state was entered)
        """
        if isinstance(event, Completion):
            return self._handle_completion(event)

        if event.type == EventType.RESTART:
            return self._restart()

        logger.debug("Flow %s: %s in state %s", self.context.flow_id, event.type.value, self.state.value)

        previous_error = self.context.error
        self.context.clear_error()

        if event.type == EventType.BACK:
            result = self._handle_back()
        elif self.state == FlowState.REVIEWING_CART:
            result = self._handle_reviewing_cart(event)
        elif self.state == FlowState.ENTERING_CONTACT_INFO:
            result = self._handle_entering_contact_info(event)
        elif self.state == FlowState.SELECTING_ACCOUNT:
            result = self._handle_selecting_account(event)
        elif self.state == FlowState.AUTHENTICATION_CHOICE:
            result = self._handle_authentication_choice(event)
        elif self.state == FlowState.ENTERING_CODE:
            result = self._handle_entering_code(event)
        elif self.state == FlowState.CONFIRM_SAVED_CARD:
            result = self._handle_confirm_saved_card(event)
        elif self.state == FlowState.ENTER_NEW_CARD:
            result = self._handle_enter_new_card(event)
        else:
            # Busy states and success accept nothing but BACK/RESTART
            result = None

        if result is None:
            self.context.error = previous_error
            logger.debug("Flow %s: ignoring %s in state %s", self.context.flow_id, event.type.value, self.state.value)
            return DispatchResult(state=self.state, accepted=False)
        return result

    def on_enter(self, state: FlowState) -> Effect | None:
        """
        Describe the external call entering `state` performs.

        Reads the current context only. The attempt token is the one the
        call will be issued with if the state is actually entered.
        """
        attempt = self.context.attempt_counter + 1
        ctx = self.context

        if state == FlowState.RESOLVING_MATCHES:
            return ResolveMatches(attempt=attempt, contact=ctx.resolution.snapshot)
        if state == FlowState.SENDING_CODE:
            channel = ctx.authentication.channel
            return SendCode(
                attempt=attempt,
                channel=channel,
                destination=self._code_destination(channel),
                account_id=self._selected_account_id(),
            )
        if state == FlowState.VERIFYING_CODE:
            selection = ctx.resolution.selection
            return VerifyCode(
                attempt=attempt,
                session=ctx.authentication.session,
                code=ctx.authentication.submitted_code,
                new_account=selection.contact if isinstance(selection, NewAccount) else None,
            )
        if state == FlowState.FETCHING_CARD_DETAILS:
            return FetchSavedCards(attempt=attempt, customer_id=ctx.payment.customer_id)
        if state == FlowState.PROCESSING_SAVED_CARD_PAYMENT:
            return ChargeSavedCard(
                attempt=attempt,
                customer_id=ctx.payment.customer_id,
                card_id=ctx.payment.selected_card_id,
                amount=self.charge_amount(),
                idempotency_key=ctx.payment.idempotency.key,
            )
        if state == FlowState.SAVING_NEW_CARD:
            return SaveNewCardAndCharge(
                attempt=attempt,
                customer_id=ctx.payment.customer_id,
                card=ctx.payment.pending_card,
                amount=self.charge_amount(),
                idempotency_key=ctx.payment.idempotency.key,
                retried=ctx.payment.idempotency.retried,
            )
        return None

    def _transition(self, state: FlowState) -> DispatchResult:
        """Enter `state`, issuing its effect under a fresh attempt token."""
        logger.info("Flow %s: %s -> %s", self.context.flow_id, self.state.value, state.value)
        effect = self.on_enter(state)
        self.state = state
        if effect is not None:
            self.context.attempt_counter = effect.attempt
            self.context.pending = PendingCall(state=state, attempt=effect.attempt)
        else:
            self.context.pending = None
        return DispatchResult(state=state, effect=effect)

    def _stay(self) -> DispatchResult:
        return DispatchResult(state=self.state)

    def _restart(self) -> DispatchResult:
        logger.info("Flow %s: restart from %s", self.context.flow_id, self.state.value)
        old = self.context
        self.context = FlowContext(flow_id=old.flow_id, variant=old.variant, role=old.role)
        # Tokens stay monotonic so completions from before the restart are stale
        self.context.attempt_counter = old.attempt_counter
        self.state = FlowState.REVIEWING_CART
        return self._stay()

    # =========================================================================
    # Account helpers
    # =========================================================================

    def _selected_account_id(self) -> str | None:
        selection = self.context.resolution.selection
        return selection.account_id if isinstance(selection, ExistingAccount) else None

    def _code_destination(self, channel: OtpChannel) -> str:
        """
        Where to send the code for the current selection.

        An existing account's own channel is used; a missing value is filled
        from what the customer typed.
        """
        resolution = self.context.resolution
        source = resolution.snapshot
        account_id = self._selected_account_id()
        if account_id:
            candidate = resolution.candidate(account_id)
            if candidate is not None:
                source = fill_gaps(candidate, resolution.snapshot)
        return source.mobile_number if channel == OtpChannel.SMS else source.email

    # =========================================================================
    # User event handlers
    # =========================================================================

    def _handle_reviewing_cart(self, event: UserEvent) -> DispatchResult | None:
        cart = self.context.cart

        if isinstance(event, AddToCart):
            if event.item is None:
                return None
            line = cart.add(event.item, event.modifier_ids, event.quantity)
            logger.debug("Cart line %s now x%d", line.id, line.quantity)
            return self._stay()
        if isinstance(event, UpdateQuantity):
            return self._stay() if cart.update_quantity(event.line_id, event.change) else None
        if isinstance(event, RemoveItem):
            return self._stay() if cart.remove(event.line_id) else None
        if isinstance(event, SelectPlan):
            if not self.context.variant.uses_plan or event.plan is None:
                return None
            self.context.plan = event.plan
            return self._stay()

        if event.type == EventType.CHECKOUT:
            if self.context.variant.uses_plan and self.context.plan is None:
                self.context.set_error(ErrorKind.VALIDATION, "Please choose a plan first.")
                return self._stay()
            if not self.context.variant.uses_plan and cart.is_empty():
                self.context.set_error(ErrorKind.VALIDATION, "Your cart is empty.")
                return self._stay()
            return self._transition(FlowState.ENTERING_CONTACT_INFO)
        return None

    def _handle_entering_contact_info(self, event: UserEvent) -> DispatchResult | None:
        ctx = self.context

        if isinstance(event, UpdateField):
            if event.field not in EDITABLE_CONTACT_FIELDS:
                return None
            setattr(ctx.contact, event.field, event.value)
            ctx.form_errors.pop(event.field, None)
            return self._stay()

        if event.type == EventType.SUBMIT_CONTACT:
            email, mobile, errors = validate_contact_form(ctx.contact, ctx.role)
            if errors:
                ctx.form_errors = errors
                ctx.set_error(ErrorKind.VALIDATION, "Please check the highlighted fields.")
                return self._stay()
            ctx.form_errors = {}
            ctx.resolution = ResolutionBranch(snapshot=ctx.contact.snapshot(email, mobile))
            return self._transition(FlowState.RESOLVING_MATCHES)
        return None

    def _handle_selecting_account(self, event: UserEvent) -> DispatchResult | None:
        resolution = self.context.resolution

        if event.type in HIGHLIGHT_EVENTS and isinstance(event, SelectAccount):
            if event.account_id != NEW_ACCOUNT_OPTION and resolution.candidate(event.account_id) is None:
                return None
            resolution.highlighted = event.account_id
            return self._stay()

        if event.type in CONFIRM_SELECTION_EVENTS:
            if resolution.highlighted is None:
                self.context.set_error(ErrorKind.VALIDATION, "Please choose an account to continue.")
                return self._stay()
            if resolution.highlighted == NEW_ACCOUNT_OPTION:
                resolution.selection = NewAccount(contact=resolution.snapshot)
            else:
                resolution.selection = ExistingAccount(account_id=resolution.highlighted)
            self.context.authentication = AuthenticationBranch()
            return self._transition(FlowState.AUTHENTICATION_CHOICE)
        return None

    def _choose_channel(self, event: UserEvent) -> DispatchResult | None:
        if event.type == EventType.CHOOSE_SMS:
            channel = OtpChannel.SMS
        elif event.type == EventType.CHOOSE_EMAIL:
            channel = OtpChannel.EMAIL
        else:
            return None
        auth = self.context.authentication
        auth.channel = channel
        auth.session = None
        auth.submitted_code = None
        return self._transition(FlowState.SENDING_CODE)

    def _handle_authentication_choice(self, event: UserEvent) -> DispatchResult | None:
        return self._choose_channel(event)

    def _handle_entering_code(self, event: UserEvent) -> DispatchResult | None:
        auth = self.context.authentication

        if isinstance(event, SubmitCode):
            code = validate_code(event.code, auth.session.code_length)
            if code is None:
                self.context.form_errors = {"code": f"Enter the {auth.session.code_length}-digit code"}
                self.context.set_error(ErrorKind.VALIDATION, "Incomplete code.")
                return self._stay()
            self.context.form_errors = {}
            auth.submitted_code = code
            return self._transition(FlowState.VERIFYING_CODE)

        # Resend, or switch channel. The current session is discarded.
        return self._choose_channel(event)

    def _handle_confirm_saved_card(self, event: UserEvent) -> DispatchResult | None:
        payment = self.context.payment

        if isinstance(event, SelectSavedCard):
            if payment.card(event.card_id) is None:
                return None
            payment.selected_card_id = event.card_id
            return self._stay()

        if event.type == EventType.PAY_WITH_SAVED_CARD:
            if payment.selected_card_id is None:
                self.context.set_error(ErrorKind.VALIDATION, "Please choose a card.")
                return self._stay()
            payment.idempotency_key_for(f"charge:{payment.selected_card_id}:{self.charge_amount():.2f}")
            return self._transition(FlowState.PROCESSING_SAVED_CARD_PAYMENT)

        if event.type == EventType.USE_NEW_CARD:
            return self._transition(FlowState.ENTER_NEW_CARD)
        return None

    def _handle_enter_new_card(self, event: UserEvent) -> DispatchResult | None:
        if not isinstance(event, SubmitNonce) or event.card is None:
            return None
        payment = self.context.payment

        if not event.card.nonce:
            self.context.set_error(ErrorKind.TOKENIZATION, "We couldn't read that card. Please re-enter it.")
            return self._stay()

        details = event.card.details()
        if details is not None:
            duplicate = find_duplicate(details, payment.saved_cards)
            if duplicate is not None:
                logger.info("Flow %s: new card duplicates saved card %s", self.context.flow_id, duplicate.id)
                self.context.set_error(
                    ErrorKind.DUPLICATE_CARD,
                    "This card is already saved on your account. Please choose it from your saved cards.",
                )
                return self._stay()
            card_key = "{}:{}:{}:{}".format(*details.fingerprint)
        else:
            card_key = event.card.nonce

        payment.pending_card = event.card
        payment.idempotency_key_for(f"new-card:{card_key}:{self.charge_amount():.2f}")
        return self._transition(FlowState.SAVING_NEW_CARD)

    # =========================================================================
    # BACK
    # =========================================================================

    def _drop_verification(self) -> None:
        """Leave the payment branch for authentication."""
        self.context.payment = None
        self.context.authentication = AuthenticationBranch()

    def _handle_back(self) -> DispatchResult | None:
        ctx = self.context
        state = self.state

        if state == FlowState.REVIEWING_CART:
            logger.debug("Flow %s: BACK at the first step", ctx.flow_id)
            return None
        if state == FlowState.SUCCESS:
            return None

        if state == FlowState.ENTERING_CONTACT_INFO:
            ctx.form_errors = {}
            return self._transition(FlowState.REVIEWING_CART)
        if state in (FlowState.RESOLVING_MATCHES, FlowState.SELECTING_ACCOUNT):
            ctx.resolution = None
            return self._transition(FlowState.ENTERING_CONTACT_INFO)
        if state == FlowState.AUTHENTICATION_CHOICE:
            ctx.authentication = None
            if ctx.resolution.candidates:
                ctx.resolution.selection = None
                return self._transition(FlowState.SELECTING_ACCOUNT)
            ctx.resolution = None
            return self._transition(FlowState.ENTERING_CONTACT_INFO)
        if state in (FlowState.SENDING_CODE, FlowState.ENTERING_CODE):
            ctx.authentication.session = None
            ctx.authentication.submitted_code = None
            ctx.form_errors = {}
            return self._transition(FlowState.AUTHENTICATION_CHOICE)
        if state == FlowState.VERIFYING_CODE:
            ctx.authentication.submitted_code = None
            return self._transition(FlowState.ENTERING_CODE)
        if state in (FlowState.FETCHING_CARD_DETAILS, FlowState.CONFIRM_SAVED_CARD):
            self._drop_verification()
            return self._transition(FlowState.AUTHENTICATION_CHOICE)
        if state == FlowState.ENTER_NEW_CARD:
            if ctx.payment.saved_cards:
                return self._transition(FlowState.CONFIRM_SAVED_CARD)
            self._drop_verification()
            return self._transition(FlowState.AUTHENTICATION_CHOICE)
        if state == FlowState.PROCESSING_SAVED_CARD_PAYMENT:
            return self._transition(FlowState.CONFIRM_SAVED_CARD)
        if state == FlowState.SAVING_NEW_CARD:
            ctx.payment.pending_card = None
            return self._transition(FlowState.ENTER_NEW_CARD)
        return None

    # =========================================================================
    # Completion handlers
    # =========================================================================

    def _handle_completion(self, event: Completion) -> DispatchResult:
        pending = self.context.pending
        if pending is None or pending.attempt != event.attempt or pending.state != self.state:
            logger.info(
                "Flow %s: discarding stale %s (attempt %d) in state %s",
                self.context.flow_id, type(event).__name__, event.attempt, self.state.value,
            )
            return DispatchResult(state=self.state, accepted=False)

        self.context.pending = None
        failed = event if isinstance(event, CallFailed) else None
        if failed is not None:
            logger.info(
                "Flow %s: %s failed with %s", self.context.flow_id, self.state.value, failed.kind.value,
            )

        if self.state == FlowState.RESOLVING_MATCHES:
            result = self._complete_resolving_matches(event, failed)
        elif self.state == FlowState.SENDING_CODE:
            result = self._complete_sending_code(event, failed)
        elif self.state == FlowState.VERIFYING_CODE:
            result = self._complete_verifying_code(event, failed)
        elif self.state == FlowState.FETCHING_CARD_DETAILS:
            result = self._complete_fetching_card_details(event, failed)
        elif self.state == FlowState.PROCESSING_SAVED_CARD_PAYMENT:
            result = self._complete_payment(event, failed, retry_state=FlowState.CONFIRM_SAVED_CARD)
        elif self.state == FlowState.SAVING_NEW_CARD:
            result = self._complete_payment(event, failed, retry_state=FlowState.ENTER_NEW_CARD)
        else:
            result = None

        if result is None:
            # Completion type does not belong to this state
            logger.error(
                "Flow %s: unexpected %s in state %s", self.context.flow_id, type(event).__name__, self.state.value,
            )
            self.context.pending = pending
            return DispatchResult(state=self.state, accepted=False)
        return result

    def _complete_resolving_matches(self, event: Completion, failed: CallFailed | None) -> DispatchResult | None:
        ctx = self.context
        if failed is not None:
            ctx.resolution = None
            ctx.set_error(failed.kind, failed.message)
            return self._transition(FlowState.ENTERING_CONTACT_INFO)
        if not isinstance(event, MatchesResolved):
            return None

        ctx.resolution.candidates = list(event.candidates)
        if not event.candidates:
            ctx.resolution.selection = NewAccount(contact=ctx.resolution.snapshot)
            ctx.authentication = AuthenticationBranch()
            return self._transition(FlowState.AUTHENTICATION_CHOICE)
        return self._transition(FlowState.SELECTING_ACCOUNT)

    def _complete_sending_code(self, event: Completion, failed: CallFailed | None) -> DispatchResult | None:
        auth = self.context.authentication
        if failed is not None:
            auth.session = None
            self.context.set_error(failed.kind, failed.message)
            return self._transition(FlowState.AUTHENTICATION_CHOICE)
        if not isinstance(event, CodeSent):
            return None
        auth.session = event.session
        return self._transition(FlowState.ENTERING_CODE)

    def _complete_verifying_code(self, event: Completion, failed: CallFailed | None) -> DispatchResult | None:
        ctx = self.context
        auth = ctx.authentication

        if failed is not None:
            auth.submitted_code = None
            ctx.set_error(failed.kind, failed.message)
            if failed.kind != ErrorKind.AUTH_REJECTED:
                # Session may be consumed; start verification over
                auth.session = None
                return self._transition(FlowState.AUTHENTICATION_CHOICE)
            if failed.definitive:
                auth.session = auth.session.after_failed_attempt()
                if auth.session.attempts_remaining == 0:
                    logger.info("Flow %s: out of code attempts", ctx.flow_id)
                    auth.session = None
                    ctx.set_error(ErrorKind.AUTH_REJECTED, "Too many incorrect codes. Please request a new one.")
                    return self._transition(FlowState.AUTHENTICATION_CHOICE)
            return self._transition(FlowState.ENTERING_CODE)

        if not isinstance(event, CodeVerified):
            return None
        auth.submitted_code = None
        auth.session = None
        auth.verified_account_id = event.account_id
        ctx.payment = PaymentBranch(customer_id=event.account_id)
        return self._transition(FlowState.FETCHING_CARD_DETAILS)

    def _complete_fetching_card_details(self, event: Completion, failed: CallFailed | None) -> DispatchResult | None:
        payment = self.context.payment
        if failed is not None:
            self.context.set_error(ErrorKind.PAYMENT, "Could not retrieve saved cards.")
            return self._transition(FlowState.ENTER_NEW_CARD)
        if not isinstance(event, CardsFetched):
            return None

        payment.saved_cards = list(event.cards)
        if payment.saved_cards:
            payment.selected_card_id = payment.saved_cards[0].id
            return self._transition(FlowState.CONFIRM_SAVED_CARD)
        return self._transition(FlowState.ENTER_NEW_CARD)

    def _complete_payment(
        self,
        event: Completion,
        failed: CallFailed | None,
        retry_state: FlowState,
    ) -> DispatchResult | None:
        payment = self.context.payment
        if failed is not None:
            if failed.definitive:
                payment.idempotency = None
            if failed.refreshed_cards is not None:
                payment.saved_cards = list(failed.refreshed_cards)
            if failed.existing_card_id is not None and payment.card(failed.existing_card_id) is not None:
                payment.selected_card_id = failed.existing_card_id
            payment.pending_card = None
            self.context.set_error(failed.kind, failed.message)
            return self._transition(retry_state)
        if not isinstance(event, PaymentSucceeded):
            return None

        payment.idempotency = None
        payment.pending_card = None
        if event.saved_card is not None:
            if payment.card(event.saved_card.id) is None:
                payment.saved_cards.append(event.saved_card)
            payment.selected_card_id = event.saved_card.id
        self.context.receipt = event.result
        logger.info("Flow %s: paid %.2f (payment %s)", self.context.flow_id, event.result.amount, event.result.payment_id)
        return self._transition(FlowState.SUCCESS)
