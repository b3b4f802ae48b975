"""
Checkout Schemas
================

Pydantic models for the checkout API. The flow snapshot is what the client
renders: the current state, the editable contact form, the priced cart, the
candidates to choose from (gap-filled with what the customer typed) and the
last error.

Endpoint Coverage:
------------------
- POST /checkout/start: Start a new checkout flow
- POST /checkout/{flow_id}/events: Dispatch an event into a flow
- GET /checkout/{flow_id}: Current snapshot
- GET /catalog/modifiers/{sku}: Modifier categories for an item

Nothing secret is exposed: OTP session ids, submitted codes, card tokens and
widget nonces stay server-side.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..flow.discounts import display_price, line_total, modifier_total
from ..flow.matching import fill_gaps
from ..flow.models import ContactInfo, ExistingAccount, NewAccount, PlanSelection
from ..flow.schemas import FlowState, FlowVariant, SessionRole
from ..flow.state_machine import CheckoutOrchestrator


class CheckoutStartRequest(BaseModel):
    variant: FlowVariant = FlowVariant.CATERING
    role: SessionRole = SessionRole.GUEST


class CheckoutEventRequest(BaseModel):
    """
    An event for a flow.

    Attributes:
        type: Event name, e.g. "SUBMIT_CONTACT"
        payload: Event fields, e.g. {"field": "email", "value": "..."}
        wait: Wait for the call the event triggers to finish before
            answering (default). With wait=False the snapshot may show a
            busy state; poll GET /checkout/{flow_id}.
    """
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    wait: bool = True


class ErrorOut(BaseModel):
    kind: str
    message: str


class CandidateOut(BaseModel):
    account_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_name: Optional[str] = None
    email: Optional[str] = None
    mobile_number: Optional[str] = None


class CartLineOut(BaseModel):
    id: str
    item_id: str
    name: str
    quantity: int
    unit_price: float
    modifier_price: float
    line_total: float


class CodeSessionOut(BaseModel):
    channel: str
    destination: str
    code_length: int
    attempts_remaining: int
    expires_at: datetime


class SavedCardOut(BaseModel):
    id: str
    brand: str
    last4: str
    exp_month: int
    exp_year: int


class ReceiptOut(BaseModel):
    payment_id: str
    amount: float
    status: str


class FlowSnapshot(BaseModel):
    flow_id: str
    state: FlowState
    busy: bool
    variant: FlowVariant
    role: SessionRole

    contact: ContactInfo
    form_errors: Dict[str, str] = Field(default_factory=dict)
    error: Optional[ErrorOut] = None

    cart: List[CartLineOut] = Field(default_factory=list)
    plan: Optional[PlanSelection] = None
    show_discounts: bool
    amount_due: float

    candidates: List[CandidateOut] = Field(default_factory=list)
    highlighted_account_id: Optional[str] = None
    selection: Optional[str] = None  # "existing" / "new"
    verification_channel: Optional[str] = None
    code_session: Optional[CodeSessionOut] = None
    verified: bool = False

    saved_cards: List[SavedCardOut] = Field(default_factory=list)
    selected_card_id: Optional[str] = None
    receipt: Optional[ReceiptOut] = None


class CheckoutEventResponse(BaseModel):
    accepted: bool
    snapshot: FlowSnapshot


def build_flow_snapshot(orchestrator: CheckoutOrchestrator) -> FlowSnapshot:
    """Render the orchestrator's current state for the client."""
    ctx = orchestrator.context
    show_discounts = orchestrator.show_discounts

    snapshot = FlowSnapshot(
        flow_id=ctx.flow_id,
        state=orchestrator.state,
        busy=orchestrator.state.is_busy,
        variant=ctx.variant,
        role=ctx.role,
        contact=ctx.contact,
        form_errors=dict(ctx.form_errors),
        error=ErrorOut(kind=ctx.error.kind.value, message=ctx.error.message) if ctx.error else None,
        cart=[
            CartLineOut(
                id=line.id,
                item_id=line.item.id,
                name=line.item.name,
                quantity=line.quantity,
                unit_price=display_price(line.item, line.quantity, show_discounts),
                modifier_price=modifier_total(line),
                line_total=line_total(line, show_discounts),
            )
            for line in ctx.cart.lines
        ],
        plan=ctx.plan,
        show_discounts=show_discounts,
        amount_due=orchestrator.charge_amount(),
        verified=ctx.is_authenticated,
        receipt=ReceiptOut(
            payment_id=ctx.receipt.payment_id, amount=ctx.receipt.amount, status=ctx.receipt.status,
        ) if ctx.receipt else None,
    )

    if ctx.resolution is not None:
        snapshot.candidates = [
            CandidateOut(**fill_gaps(candidate, ctx.contact).model_dump())
            for candidate in ctx.resolution.candidates
        ]
        snapshot.highlighted_account_id = ctx.resolution.highlighted
        if isinstance(ctx.resolution.selection, ExistingAccount):
            snapshot.selection = "existing"
        elif isinstance(ctx.resolution.selection, NewAccount):
            snapshot.selection = "new"

    if ctx.authentication is not None:
        auth = ctx.authentication
        snapshot.verification_channel = auth.channel.value if auth.channel else None
        if auth.session is not None:
            snapshot.code_session = CodeSessionOut(
                channel=auth.session.channel.value,
                destination=auth.session.destination,
                code_length=auth.session.code_length,
                attempts_remaining=auth.session.attempts_remaining,
                expires_at=auth.session.expires_at,
            )

    if ctx.payment is not None:
        snapshot.saved_cards = [SavedCardOut(**card.model_dump()) for card in ctx.payment.saved_cards]
        snapshot.selected_card_id = ctx.payment.selected_card_id

    return snapshot
