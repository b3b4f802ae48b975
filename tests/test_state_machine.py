"""
Tests for the checkout orchestrator.

Drives CheckoutOrchestrator directly: effects are inspected, never run, and
coordinator results are fed back as completion events by hand.
"""

import pytest

from checkout_flow.flow import CheckoutOrchestrator, ErrorKind, FlowState, FlowVariant, SessionRole
from checkout_flow.flow.effects import (
    ChargeSavedCard,
    FetchSavedCards,
    ResolveMatches,
    SaveNewCardAndCharge,
    SendCode,
    VerifyCode,
)
from checkout_flow.flow.events import (
    AddToCart,
    CallFailed,
    CardsFetched,
    CodeSent,
    CodeVerified,
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
from checkout_flow.flow.models import (
    NEW_ACCOUNT_OPTION,
    CandidateAccount,
    CardInput,
    CatalogItem,
    ChargeResult,
    ExistingAccount,
    NewAccount,
    OtpChannel,
    PlanSelection,
    SavedCard,
)

TICKET = CatalogItem(id="ticket", name="Gala ticket", base_price=50.0)

CONTACT = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@gmail.com",
    "mobile_number": "2015551234",
}

CANDIDATE = CandidateAccount(account_id="acct-1", first_name="Ada", last_name="Lovelace", email="ada@gmail.com")

VISA = SavedCard(id="card-visa", brand="VISA", last4="4242", exp_month=12, exp_year=2026)
AMEX = SavedCard(id="card-amex", brand="AMEX", last4="0005", exp_month=3, exp_year=2028)


def event(event_type):
    return UserEvent(type=event_type)


# =============================================================================
# Flow drivers
# =============================================================================

def go_to_contact_info(orch, item=TICKET, quantity=1):
    orch.process(AddToCart(item=item, quantity=quantity))
    return orch.process(event(EventType.CHECKOUT))


def submit_contact(orch, item=TICKET, quantity=1, **overrides):
    go_to_contact_info(orch, item, quantity)
    for field, value in {**CONTACT, **overrides}.items():
        orch.process(UpdateField(field=field, value=value))
    return orch.process(event(EventType.SUBMIT_CONTACT))


def resolve(orch, candidates, **kwargs):
    effect = submit_contact(orch, **kwargs).effect
    return orch.process(MatchesResolved(attempt=effect.attempt, candidates=candidates))


def go_to_code_entry(orch, session, **kwargs):
    resolve(orch, [CANDIDATE], **kwargs)
    orch.process(SelectAccount(account_id="acct-1"))
    orch.process(event(EventType.CONFIRM_ACCOUNT))
    effect = orch.process(event(EventType.CHOOSE_SMS)).effect
    return orch.process(CodeSent(attempt=effect.attempt, session=session))


def verify(orch, session, **kwargs):
    go_to_code_entry(orch, session, **kwargs)
    effect = orch.process(SubmitCode(code="123456")).effect
    return orch.process(CodeVerified(attempt=effect.attempt, account_id="acct-1"))


def go_to_cards(orch, session, cards, **kwargs):
    effect = verify(orch, session, **kwargs).effect
    return orch.process(CardsFetched(attempt=effect.attempt, cards=cards))


def receipt(card_id, amount, key):
    return ChargeResult(payment_id="pay-1", customer_id="acct-1", card_id=card_id, amount=amount, idempotency_key=key)


# =============================================================================
# Cart review
# =============================================================================

class TestReviewingCart:

    def test_starts_in_cart_review(self, orchestrator):
        assert orchestrator.state == FlowState.REVIEWING_CART
        assert orchestrator.context.pending is None

    def test_empty_cart_cannot_check_out(self, orchestrator):
        result = orchestrator.process(event(EventType.CHECKOUT))

        assert result.state == FlowState.REVIEWING_CART
        assert result.effect is None
        assert orchestrator.context.error.kind == ErrorKind.VALIDATION
        assert orchestrator.context.error.message == "Your cart is empty."

    def test_same_item_merges_into_one_line(self, orchestrator):
        orchestrator.process(AddToCart(item=TICKET))
        orchestrator.process(AddToCart(item=TICKET, quantity=2))

        lines = orchestrator.context.cart.lines
        assert len(lines) == 1
        assert lines[0].quantity == 3

    def test_quantity_never_drops_below_one(self, orchestrator):
        orchestrator.process(AddToCart(item=TICKET, quantity=2))
        line_id = orchestrator.context.cart.lines[0].id

        result = orchestrator.process(UpdateQuantity(line_id=line_id, change=-5))

        assert result.accepted
        assert orchestrator.context.cart.lines[0].quantity == 1

    def test_remove_unknown_line_rejected(self, orchestrator):
        assert not orchestrator.process(RemoveItem(line_id="missing")).accepted

    def test_remove_line(self, orchestrator):
        orchestrator.process(AddToCart(item=TICKET))
        line_id = orchestrator.context.cart.lines[0].id
        orchestrator.process(RemoveItem(line_id=line_id))
        assert orchestrator.context.cart.is_empty()

    def test_plan_rejected_outside_subscriptions(self, orchestrator):
        result = orchestrator.process(SelectPlan(plan=PlanSelection(plan_id="monthly", price=29.0)))
        assert not result.accepted

    def test_subscription_requires_plan(self):
        orch = CheckoutOrchestrator(variant=FlowVariant.SUBSCRIPTION)

        orch.process(event(EventType.CHECKOUT))
        assert orch.state == FlowState.REVIEWING_CART
        assert orch.context.error.kind == ErrorKind.VALIDATION

        orch.process(SelectPlan(plan=PlanSelection(plan_id="monthly", price=29.0)))
        orch.process(event(EventType.CHECKOUT))
        assert orch.state == FlowState.ENTERING_CONTACT_INFO
        assert orch.charge_amount() == 29.0

    def test_checkout_moves_to_contact_info(self, orchestrator):
        result = go_to_contact_info(orchestrator)
        assert result.state == FlowState.ENTERING_CONTACT_INFO
        assert result.effect is None


# =============================================================================
# Contact info and matching
# =============================================================================

class TestEnteringContactInfo:

    def test_invalid_form_stays_without_effect(self, orchestrator):
        result = submit_contact(orchestrator, email="nope", mobile_number="123")

        assert result.state == FlowState.ENTERING_CONTACT_INFO
        assert result.effect is None
        assert set(orchestrator.context.form_errors) == {"email", "mobile_number"}
        assert orchestrator.context.resolution is None

    def test_editing_a_field_clears_its_error(self, orchestrator):
        submit_contact(orchestrator, email="nope")
        orchestrator.process(UpdateField(field="email", value="ada@gmail.com"))
        assert "email" not in orchestrator.context.form_errors

    def test_unknown_field_rejected(self, orchestrator):
        go_to_contact_info(orchestrator)
        assert not orchestrator.process(UpdateField(field="password", value="x")).accepted

    def test_host_needs_organization(self):
        orch = CheckoutOrchestrator(variant=FlowVariant.EVENT_REGISTRATION, role=SessionRole.HOST)

        submit_contact(orch)
        assert "organization_name" in orch.context.form_errors

        orch.process(UpdateField(field="organization_name", value="Analytical Society"))
        result = orch.process(event(EventType.SUBMIT_CONTACT))
        assert result.state == FlowState.RESOLVING_MATCHES

    def test_valid_form_emits_resolve(self, orchestrator):
        result = submit_contact(orchestrator)

        assert result.state == FlowState.RESOLVING_MATCHES
        assert isinstance(result.effect, ResolveMatches)
        assert result.effect.contact.mobile_number == "+12015551234"
        assert orchestrator.context.pending.attempt == result.effect.attempt

    def test_lookup_failure_returns_to_form(self, orchestrator):
        effect = submit_contact(orchestrator).effect

        orchestrator.process(CallFailed(attempt=effect.attempt, kind=ErrorKind.LOOKUP_FAILED, message="try again"))

        assert orchestrator.state == FlowState.ENTERING_CONTACT_INFO
        assert orchestrator.context.error.kind == ErrorKind.LOOKUP_FAILED
        assert orchestrator.context.contact.email == "ada@gmail.com"


class TestNewCustomer:
    """No candidates: skip account selection and verify as a new account."""

    def test_goes_straight_to_authentication(self, orchestrator):
        result = resolve(orchestrator, [])

        assert result.state == FlowState.AUTHENTICATION_CHOICE
        selection = orchestrator.context.resolution.selection
        assert isinstance(selection, NewAccount)
        assert selection.contact.email == "ada@gmail.com"

    def test_code_goes_to_typed_contact(self, orchestrator):
        resolve(orchestrator, [])

        effect = orchestrator.process(event(EventType.CHOOSE_EMAIL)).effect

        assert isinstance(effect, SendCode)
        assert effect.channel == OtpChannel.EMAIL
        assert effect.destination == "ada@gmail.com"
        assert effect.account_id is None

    def test_verify_carries_new_account(self, orchestrator, otp_session):
        resolve(orchestrator, [])
        effect = orchestrator.process(event(EventType.CHOOSE_SMS)).effect
        orchestrator.process(CodeSent(attempt=effect.attempt, session=otp_session()))

        effect = orchestrator.process(SubmitCode(code="123456")).effect

        assert isinstance(effect, VerifyCode)
        assert effect.new_account.first_name == "Ada"


class TestSelectingAccount:

    def test_candidates_require_selection(self, orchestrator):
        result = resolve(orchestrator, [CANDIDATE])
        assert result.state == FlowState.SELECTING_ACCOUNT
        assert orchestrator.context.resolution.selection is None

    def test_confirm_without_highlight(self, orchestrator):
        resolve(orchestrator, [CANDIDATE])

        result = orchestrator.process(event(EventType.CONFIRM_ACCOUNT))

        assert result.state == FlowState.SELECTING_ACCOUNT
        assert orchestrator.context.error.message == "Please choose an account to continue."

    def test_highlight_unknown_account_rejected(self, orchestrator):
        resolve(orchestrator, [CANDIDATE])
        assert not orchestrator.process(SelectAccount(account_id="acct-999")).accepted

    def test_highlight_does_not_select(self, orchestrator):
        resolve(orchestrator, [CANDIDATE])
        orchestrator.process(SelectAccount(account_id="acct-1"))

        assert orchestrator.context.resolution.highlighted == "acct-1"
        assert orchestrator.context.resolution.selection is None

    def test_confirm_existing_account(self, orchestrator):
        resolve(orchestrator, [CANDIDATE])
        orchestrator.process(SelectAccount(account_id="acct-1"))

        result = orchestrator.process(event(EventType.CONFIRM_ACCOUNT))

        assert result.state == FlowState.AUTHENTICATION_CHOICE
        assert orchestrator.context.resolution.selection == ExistingAccount(account_id="acct-1")

    @pytest.mark.parametrize("confirm", [EventType.CONFIRM_PARTIAL_MATCH, EventType.CONFIRM_LOGIN_ACCOUNT])
    def test_confirm_variants(self, orchestrator, confirm):
        resolve(orchestrator, [CANDIDATE])
        orchestrator.process(SelectAccount(account_id="acct-1", type=EventType.SELECT_PARTIAL_MATCH))
        assert orchestrator.process(event(confirm)).state == FlowState.AUTHENTICATION_CHOICE

    def test_none_of_these_creates_new(self, orchestrator):
        resolve(orchestrator, [CANDIDATE])
        orchestrator.process(SelectAccount(account_id=NEW_ACCOUNT_OPTION))
        orchestrator.process(event(EventType.CONFIRM_ACCOUNT))

        assert isinstance(orchestrator.context.resolution.selection, NewAccount)

    def test_missing_channel_filled_from_typed_contact(self, orchestrator):
        resolve(orchestrator, [CANDIDATE])
        orchestrator.process(SelectAccount(account_id="acct-1"))
        orchestrator.process(event(EventType.CONFIRM_ACCOUNT))

        effect = orchestrator.process(event(EventType.CHOOSE_SMS)).effect

        assert effect.destination == "+12015551234"
        assert effect.account_id == "acct-1"

    def test_account_channel_preferred(self, orchestrator):
        candidate = CANDIDATE.model_copy(update={"email": "augusta@gmail.com"})
        resolve(orchestrator, [candidate])
        orchestrator.process(SelectAccount(account_id="acct-1"))
        orchestrator.process(event(EventType.CONFIRM_ACCOUNT))

        effect = orchestrator.process(event(EventType.CHOOSE_EMAIL)).effect

        assert effect.destination == "augusta@gmail.com"


# =============================================================================
# One-time codes
# =============================================================================

class TestSendingCode:

    def test_send_failure_returns_to_choice(self, orchestrator):
        resolve(orchestrator, [])
        effect = orchestrator.process(event(EventType.CHOOSE_SMS)).effect

        result = orchestrator.process(
            CallFailed(attempt=effect.attempt, kind=ErrorKind.AUTH_SEND_FAILED, message="Could not send"),
        )

        assert result.state == FlowState.AUTHENTICATION_CHOICE
        assert orchestrator.context.error.kind == ErrorKind.AUTH_SEND_FAILED
        assert orchestrator.context.authentication.session is None

    def test_code_sent_opens_entry(self, orchestrator, otp_session):
        result = go_to_code_entry(orchestrator, otp_session())
        assert result.state == FlowState.ENTERING_CODE
        assert orchestrator.context.authentication.session.sid == "VE1"

    def test_resend_discards_session(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session())

        result = orchestrator.process(event(EventType.CHOOSE_EMAIL))

        assert result.state == FlowState.SENDING_CODE
        assert result.effect.channel == OtpChannel.EMAIL
        assert orchestrator.context.authentication.session is None


class TestVerifyingCode:

    def test_incomplete_code_checked_locally(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session())

        result = orchestrator.process(SubmitCode(code="12"))

        assert result.state == FlowState.ENTERING_CODE
        assert result.effect is None
        assert orchestrator.context.error.kind == ErrorKind.VALIDATION

    def test_second_submit_while_verifying_ignored(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session())

        first = orchestrator.process(SubmitCode(code="123456"))
        second = orchestrator.process(SubmitCode(code="123456"))

        assert isinstance(first.effect, VerifyCode)
        assert not second.accepted
        assert second.effect is None
        assert orchestrator.context.pending.attempt == first.effect.attempt

    def test_wrong_code_uses_an_attempt(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session(attempts=5))
        effect = orchestrator.process(SubmitCode(code="000000")).effect

        result = orchestrator.process(
            CallFailed(attempt=effect.attempt, kind=ErrorKind.AUTH_REJECTED, message="Wrong code"),
        )

        assert result.state == FlowState.ENTERING_CODE
        assert orchestrator.context.authentication.session.attempts_remaining == 4
        assert orchestrator.context.error.kind == ErrorKind.AUTH_REJECTED

    def test_unreachable_provider_keeps_attempts(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session(attempts=5))
        effect = orchestrator.process(SubmitCode(code="123456")).effect

        orchestrator.process(CallFailed(
            attempt=effect.attempt, kind=ErrorKind.AUTH_REJECTED, message="Try again", definitive=False,
        ))

        assert orchestrator.state == FlowState.ENTERING_CODE
        assert orchestrator.context.authentication.session.attempts_remaining == 5

    def test_last_attempt_sends_back_to_choice(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session(attempts=1))
        effect = orchestrator.process(SubmitCode(code="000000")).effect

        result = orchestrator.process(
            CallFailed(attempt=effect.attempt, kind=ErrorKind.AUTH_REJECTED, message="Wrong code"),
        )

        assert result.state == FlowState.AUTHENTICATION_CHOICE
        assert orchestrator.context.authentication.session is None
        assert orchestrator.context.error.kind == ErrorKind.AUTH_REJECTED

    def test_attempts_never_increase(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session(attempts=3))
        seen = []
        for _ in range(2):
            effect = orchestrator.process(SubmitCode(code="000000")).effect
            orchestrator.process(CallFailed(attempt=effect.attempt, kind=ErrorKind.AUTH_REJECTED, message="x"))
            seen.append(orchestrator.context.authentication.session.attempts_remaining)
        assert seen == [2, 1]

    def test_other_failure_restarts_verification(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session())
        effect = orchestrator.process(SubmitCode(code="123456")).effect

        result = orchestrator.process(
            CallFailed(attempt=effect.attempt, kind=ErrorKind.LOOKUP_FAILED, message="Account setup failed"),
        )

        assert result.state == FlowState.AUTHENTICATION_CHOICE
        assert orchestrator.context.authentication.session is None

    def test_verified_fetches_cards(self, orchestrator, otp_session):
        result = verify(orchestrator, otp_session())

        assert result.state == FlowState.FETCHING_CARD_DETAILS
        assert isinstance(result.effect, FetchSavedCards)
        assert result.effect.customer_id == "acct-1"
        assert orchestrator.context.is_authenticated
        assert orchestrator.context.authentication.session is None

    def test_error_survives_rejected_event(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session())
        effect = orchestrator.process(SubmitCode(code="000000")).effect
        orchestrator.process(CallFailed(attempt=effect.attempt, kind=ErrorKind.AUTH_REJECTED, message="Wrong code"))

        assert not orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).accepted
        assert orchestrator.context.error.message == "Wrong code"

        orchestrator.process(SubmitCode(code="123456"))
        assert orchestrator.context.error is None


# =============================================================================
# Cards and payment
# =============================================================================

class TestFetchingCardDetails:

    def test_saved_cards_preselect_first(self, orchestrator, otp_session):
        result = go_to_cards(orchestrator, otp_session(), [VISA, AMEX])

        assert result.state == FlowState.CONFIRM_SAVED_CARD
        assert orchestrator.context.payment.selected_card_id == "card-visa"

    def test_no_cards_enters_new_card(self, orchestrator, otp_session):
        assert go_to_cards(orchestrator, otp_session(), []).state == FlowState.ENTER_NEW_CARD

    def test_failure_falls_back_to_new_card(self, orchestrator, otp_session):
        effect = verify(orchestrator, otp_session()).effect

        result = orchestrator.process(CallFailed(attempt=effect.attempt, kind=ErrorKind.PAYMENT, message="vault down"))

        assert result.state == FlowState.ENTER_NEW_CARD
        assert orchestrator.context.error.kind == ErrorKind.PAYMENT
        assert orchestrator.context.error.message == "Could not retrieve saved cards."


class TestSavedCardPayment:

    def test_select_unknown_card_rejected(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        assert not orchestrator.process(SelectSavedCard(card_id="card-x")).accepted

    def test_pay_emits_charge(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA, AMEX])
        orchestrator.process(SelectSavedCard(card_id="card-amex"))

        result = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD))

        assert result.state == FlowState.PROCESSING_SAVED_CARD_PAYMENT
        assert isinstance(result.effect, ChargeSavedCard)
        assert result.effect.card_id == "card-amex"
        assert result.effect.amount == 50.0
        assert result.effect.idempotency_key

    def test_success(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        effect = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect

        result = orchestrator.process(PaymentSucceeded(
            attempt=effect.attempt, result=receipt("card-visa", 50.0, effect.idempotency_key),
        ))

        assert result.state == FlowState.SUCCESS
        assert orchestrator.context.receipt.payment_id == "pay-1"
        assert orchestrator.context.payment.idempotency is None

    def test_unknown_outcome_reuses_key(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        first = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect
        orchestrator.process(CallFailed(
            attempt=first.attempt, kind=ErrorKind.PAYMENT, message="timed out", definitive=False,
        ))
        assert orchestrator.state == FlowState.CONFIRM_SAVED_CARD

        second = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect

        assert second.idempotency_key == first.idempotency_key
        assert second.attempt > first.attempt

    def test_decline_retires_key(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        first = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect
        orchestrator.process(CallFailed(attempt=first.attempt, kind=ErrorKind.PAYMENT, message="declined"))

        second = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect

        assert second.idempotency_key != first.idempotency_key

    def test_different_card_gets_new_key(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA, AMEX])
        first = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect
        orchestrator.process(CallFailed(
            attempt=first.attempt, kind=ErrorKind.PAYMENT, message="timed out", definitive=False,
        ))
        orchestrator.process(SelectSavedCard(card_id="card-amex"))

        second = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect

        assert second.idempotency_key != first.idempotency_key


class TestNewCardPayment:

    def test_duplicate_caught_locally(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        orchestrator.process(event(EventType.USE_NEW_CARD))

        result = orchestrator.process(SubmitNonce(card=CardInput(
            nonce="nonce-visa", brand="visa", last4="4242", exp_month=12, exp_year=26,
        )))

        assert result.state == FlowState.ENTER_NEW_CARD
        assert result.effect is None
        assert orchestrator.context.error.kind == ErrorKind.DUPLICATE_CARD

    def test_missing_nonce(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [])

        result = orchestrator.process(SubmitNonce(card=CardInput(nonce="")))

        assert result.state == FlowState.ENTER_NEW_CARD
        assert orchestrator.context.error.kind == ErrorKind.TOKENIZATION

    def test_submit_emits_save_and_charge(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        orchestrator.process(event(EventType.USE_NEW_CARD))

        result = orchestrator.process(SubmitNonce(card=CardInput(nonce="nonce-amex")))

        assert result.state == FlowState.SAVING_NEW_CARD
        assert isinstance(result.effect, SaveNewCardAndCharge)
        assert result.effect.card.nonce == "nonce-amex"
        assert result.effect.amount == 50.0

    def test_duplicate_from_backend_refreshes_cards(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [])
        effect = orchestrator.process(SubmitNonce(card=CardInput(nonce="nonce-visa"))).effect

        result = orchestrator.process(CallFailed(
            attempt=effect.attempt,
            kind=ErrorKind.DUPLICATE_CARD,
            message="Already saved",
            refreshed_cards=[VISA],
        ))

        assert result.state == FlowState.ENTER_NEW_CARD
        assert orchestrator.context.payment.saved_cards == [VISA]
        assert orchestrator.context.payment.pending_card is None

    def test_duplicate_from_backend_preselects_existing_card(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [])
        effect = orchestrator.process(SubmitNonce(card=CardInput(nonce="nonce-visa"))).effect
        orchestrator.process(CallFailed(
            attempt=effect.attempt,
            kind=ErrorKind.DUPLICATE_CARD,
            message="Already saved",
            refreshed_cards=[VISA],
            existing_card_id=VISA.id,
        ))

        back = orchestrator.process(event(EventType.BACK))
        assert back.state == FlowState.CONFIRM_SAVED_CARD
        assert orchestrator.context.payment.selected_card_id == VISA.id

        pay = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD))
        assert pay.state == FlowState.PROCESSING_SAVED_CARD_PAYMENT
        assert pay.effect.card_id == VISA.id

    def test_resubmit_after_unknown_outcome_is_marked_retried(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [])
        first = orchestrator.process(SubmitNonce(card=CardInput(nonce="nonce-visa"))).effect
        assert first.retried is False

        orchestrator.process(CallFailed(
            attempt=first.attempt, kind=ErrorKind.PAYMENT, message="timed out", definitive=False,
        ))
        second = orchestrator.process(SubmitNonce(card=CardInput(nonce="nonce-visa"))).effect

        assert second.idempotency_key == first.idempotency_key
        assert second.retried is True

    def test_success_adds_saved_card(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [])
        effect = orchestrator.process(SubmitNonce(card=CardInput(nonce="nonce-amex"))).effect
        new_card = AMEX.model_copy(update={"id": "card-new"})

        result = orchestrator.process(PaymentSucceeded(
            attempt=effect.attempt, result=receipt("card-new", 50.0, effect.idempotency_key), saved_card=new_card,
        ))

        assert result.state == FlowState.SUCCESS
        assert orchestrator.context.payment.saved_cards == [new_card]


class TestSuccess:

    @pytest.fixture
    def paid(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        effect = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect
        orchestrator.process(PaymentSucceeded(
            attempt=effect.attempt, result=receipt("card-visa", 50.0, effect.idempotency_key),
        ))
        return orchestrator

    def test_terminal(self, paid):
        assert paid.state.is_terminal
        assert not paid.process(event(EventType.BACK)).accepted
        assert not paid.process(event(EventType.PAY_WITH_SAVED_CARD)).accepted

    def test_restart_clears_everything(self, paid):
        flow_id = paid.context.flow_id

        result = paid.process(event(EventType.RESTART))

        assert result.state == FlowState.REVIEWING_CART
        assert paid.context.cart.is_empty()
        assert paid.context.receipt is None
        assert paid.context.flow_id == flow_id


# =============================================================================
# Attempt tokens
# =============================================================================

class TestStaleCompletions:

    def test_result_after_back_is_discarded(self, orchestrator):
        effect = submit_contact(orchestrator).effect
        orchestrator.process(event(EventType.BACK))

        result = orchestrator.process(MatchesResolved(attempt=effect.attempt, candidates=[CANDIDATE]))

        assert not result.accepted
        assert orchestrator.state == FlowState.ENTERING_CONTACT_INFO
        assert orchestrator.context.resolution is None

    def test_only_latest_attempt_counts(self, orchestrator):
        old = submit_contact(orchestrator).effect
        orchestrator.process(event(EventType.BACK))
        new = orchestrator.process(event(EventType.SUBMIT_CONTACT)).effect

        assert not orchestrator.process(MatchesResolved(attempt=old.attempt, candidates=[])).accepted
        assert orchestrator.state == FlowState.RESOLVING_MATCHES

        assert orchestrator.process(MatchesResolved(attempt=new.attempt, candidates=[])).accepted
        assert orchestrator.state == FlowState.AUTHENTICATION_CHOICE

    def test_result_after_restart_is_discarded(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session())
        effect = orchestrator.process(SubmitCode(code="123456")).effect
        orchestrator.process(event(EventType.RESTART))

        result = orchestrator.process(CodeVerified(attempt=effect.attempt, account_id="acct-1"))

        assert not result.accepted
        assert orchestrator.state == FlowState.REVIEWING_CART
        assert not orchestrator.context.is_authenticated

    def test_tokens_monotonic_across_restart(self, orchestrator):
        before = submit_contact(orchestrator).effect
        orchestrator.process(event(EventType.RESTART))

        after = submit_contact(orchestrator).effect

        assert after.attempt > before.attempt

    def test_mismatched_completion_type_keeps_pending(self, orchestrator):
        effect = submit_contact(orchestrator).effect

        result = orchestrator.process(CodeVerified(attempt=effect.attempt, account_id="acct-1"))

        assert not result.accepted
        assert orchestrator.context.pending.attempt == effect.attempt

    def test_busy_state_ignores_user_events(self, orchestrator):
        submit_contact(orchestrator)
        assert not orchestrator.process(event(EventType.SUBMIT_CONTACT)).accepted


# =============================================================================
# BACK
# =============================================================================

class TestBack:

    def test_not_accepted_at_first_step(self, orchestrator):
        assert not orchestrator.process(event(EventType.BACK)).accepted

    def test_contact_info_to_cart(self, orchestrator):
        go_to_contact_info(orchestrator)
        orchestrator.process(UpdateField(field="first_name", value="Ada"))

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.REVIEWING_CART
        assert orchestrator.context.contact.first_name == "Ada"

    def test_selecting_account_to_contact_info(self, orchestrator):
        resolve(orchestrator, [CANDIDATE])

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.ENTERING_CONTACT_INFO
        assert orchestrator.context.resolution is None

    def test_authentication_choice_to_selection(self, orchestrator):
        resolve(orchestrator, [CANDIDATE])
        orchestrator.process(SelectAccount(account_id="acct-1"))
        orchestrator.process(event(EventType.CONFIRM_ACCOUNT))

        result = orchestrator.process(event(EventType.BACK))

        assert result.state == FlowState.SELECTING_ACCOUNT
        assert orchestrator.context.resolution.selection is None
        assert orchestrator.context.authentication is None

    def test_authentication_choice_without_candidates(self, orchestrator):
        resolve(orchestrator, [])

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.ENTERING_CONTACT_INFO
        assert orchestrator.context.resolution is None

    def test_code_entry_to_choice(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session())

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.AUTHENTICATION_CHOICE
        assert orchestrator.context.authentication.session is None

    def test_verifying_to_code_entry(self, orchestrator, otp_session):
        go_to_code_entry(orchestrator, otp_session())
        orchestrator.process(SubmitCode(code="123456"))

        result = orchestrator.process(event(EventType.BACK))

        assert result.state == FlowState.ENTERING_CODE
        assert orchestrator.context.authentication.session is not None
        assert orchestrator.context.pending is None

    def test_saved_cards_drop_verification(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.AUTHENTICATION_CHOICE
        assert orchestrator.context.payment is None
        assert not orchestrator.context.is_authenticated

    def test_new_card_to_saved_cards(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        orchestrator.process(event(EventType.USE_NEW_CARD))

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.CONFIRM_SAVED_CARD

    def test_new_card_without_saved_cards(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [])

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.AUTHENTICATION_CHOICE

    def test_processing_keeps_key(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [VISA])
        first = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.CONFIRM_SAVED_CARD
        assert not orchestrator.process(PaymentSucceeded(
            attempt=first.attempt, result=receipt("card-visa", 50.0, first.idempotency_key),
        )).accepted

        second = orchestrator.process(event(EventType.PAY_WITH_SAVED_CARD)).effect
        assert second.idempotency_key == first.idempotency_key

    def test_saving_new_card_to_entry(self, orchestrator, otp_session):
        go_to_cards(orchestrator, otp_session(), [])
        orchestrator.process(SubmitNonce(card=CardInput(nonce="nonce-amex")))

        assert orchestrator.process(event(EventType.BACK)).state == FlowState.ENTER_NEW_CARD
        assert orchestrator.context.payment.pending_card is None


# =============================================================================
# Discount visibility
# =============================================================================

class TestDiscountVisibility:

    def test_catering_discounts_need_verification(self, tray, otp_session):
        orch = CheckoutOrchestrator(variant=FlowVariant.CATERING)
        go_to_contact_info(orch, item=tray, quantity=10)

        assert not orch.show_discounts
        assert orch.charge_amount() == 100.0

    def test_catering_discounts_after_verification(self, tray, otp_session):
        orch = CheckoutOrchestrator(variant=FlowVariant.CATERING)
        go_to_cards(orch, otp_session(), [VISA], item=tray, quantity=10)

        assert orch.show_discounts
        effect = orch.process(event(EventType.PAY_WITH_SAVED_CARD)).effect
        assert effect.amount == 80.0

    def test_event_registration_always_shows_discounts(self, orchestrator, tray):
        go_to_contact_info(orchestrator, item=tray, quantity=5)
        assert orchestrator.charge_amount() == 45.0
