"""
Pydantic models for the checkout flow.

The flow context is a single record owned by the orchestrator:
- FlowContext (root)
  - ContactInfo (editable form data)
  - Cart / PlanSelection (what is being bought)
  - ResolutionBranch (only while matching accounts)
  - AuthenticationBranch (only while proving identity)
  - PaymentBranch (only while paying)

Branch records exist only while their branch of the flow is active, so an
OTP session can never be present while the customer is still typing contact
details.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorKind
from .schemas.phases import FlowState, FlowVariant, SessionRole


# -----------------------------------------------------------------------------
# Contact details and candidate accounts
# -----------------------------------------------------------------------------

class ContactInfo(BaseModel):
    """Contact form as the customer is typing it."""

    first_name: str = ""
    last_name: str = ""
    organization_name: str | None = None
    email: str = ""
    mobile_number: str = ""

    def snapshot(self, email: str, mobile_number: str) -> "ContactSnapshot":
        """Freeze the form with normalized email/phone for matching."""
        return ContactSnapshot(
            first_name=self.first_name.strip(),
            last_name=self.last_name.strip(),
            organization_name=(self.organization_name or "").strip() or None,
            email=email,
            mobile_number=mobile_number,
        )


class ContactSnapshot(ContactInfo):
    """Contact info as submitted. Immutable once taken."""

    model_config = ConfigDict(frozen=True)


class CandidateAccount(BaseModel):
    """An existing backend account record. Any field may be missing."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    first_name: str | None = None
    last_name: str | None = None
    organization_name: str | None = None
    email: str | None = None
    mobile_number: str | None = None


# -----------------------------------------------------------------------------
# Match selection
# -----------------------------------------------------------------------------

class ExistingAccount(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["existing"] = "existing"
    account_id: str


class NewAccount(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["new"] = "new"
    contact: ContactSnapshot


MatchSelection = Annotated[Union[ExistingAccount, NewAccount], Field(discriminator="kind")]

# Highlight value for the "none of these, create a new account" option
NEW_ACCOUNT_OPTION = "__new__"


# -----------------------------------------------------------------------------
# One-time code session
# -----------------------------------------------------------------------------

class OtpChannel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class OTPSession(BaseModel):
    """A dispatched one-time code. Single use."""

    model_config = ConfigDict(frozen=True)

    channel: OtpChannel
    destination: str
    sid: str
    code_length: int = 6
    attempts_remaining: int
    sent_at: datetime
    expires_at: datetime
    account_id: str | None = None  # None when verifying a brand new account

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def after_failed_attempt(self) -> "OTPSession":
        """Return a copy with one fewer attempt. Never goes below zero."""
        return self.model_copy(update={"attempts_remaining": max(0, self.attempts_remaining - 1)})


# -----------------------------------------------------------------------------
# Cards
# -----------------------------------------------------------------------------

def _full_year(year: int) -> int:
    return year + 2000 if year < 100 else year


class CardDetails(BaseModel):
    """Brand, last four and expiry shared by saved and freshly tokenized cards."""

    model_config = ConfigDict(frozen=True)

    brand: str
    last4: str
    exp_month: int
    exp_year: int

    @property
    def fingerprint(self) -> tuple[str, str, int, int]:
        """Identity used for duplicate-card detection."""
        return (self.brand.strip().upper(), self.last4, int(self.exp_month), _full_year(int(self.exp_year)))


class SavedCard(CardDetails):
    id: str


class TokenizedCard(CardDetails):
    token: str


class CardInput(BaseModel):
    """Result handed over by the payment provider's embedded card widget."""

    nonce: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None

    def details(self) -> CardDetails | None:
        """Card details reported by the widget, if it reported all of them."""
        if not (self.brand and self.last4 and self.exp_month and self.exp_year):
            return None
        return CardDetails(brand=self.brand, last4=self.last4, exp_month=self.exp_month, exp_year=self.exp_year)


class ChargeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: str
    customer_id: str
    card_id: str
    amount: float
    idempotency_key: str
    status: str = "COMPLETED"


# -----------------------------------------------------------------------------
# Catalog and cart
# -----------------------------------------------------------------------------

class DiscountTier(BaseModel):
    """Bulk discount that applies from minimum_quantity units upward."""

    model_config = ConfigDict(frozen=True)

    minimum_quantity: int = Field(ge=1)
    fixed_amount: float | None = None  # per-unit deduction
    percentage: float | None = None  # fraction, 0.1 == 10% off


class ModifierOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    price: float = 0.0


class CatalogItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    base_price: float
    sku: str | None = None
    discounts: list[DiscountTier] = Field(default_factory=list)
    modifiers: list[ModifierOption] = Field(default_factory=list)


class CartLine(BaseModel):
    id: str
    item: CatalogItem
    selected_modifier_ids: list[str] = Field(default_factory=list)
    quantity: int = Field(default=1, ge=1)

    @staticmethod
    def line_key(item_id: str, modifier_ids: list[str]) -> str:
        """Lines with the same item and modifier set merge into one."""
        return f"{item_id}-{','.join(sorted(modifier_ids))}"


class Cart(BaseModel):
    lines: list[CartLine] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.lines

    def find(self, line_id: str) -> CartLine | None:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None

    def add(self, item: CatalogItem, modifier_ids: list[str], quantity: int = 1) -> CartLine:
        quantity = max(1, quantity)
        key = CartLine.line_key(item.id, modifier_ids)
        existing = self.find(key)
        if existing:
            existing.quantity += quantity
            return existing
        line = CartLine(id=key, item=item, selected_modifier_ids=sorted(modifier_ids), quantity=quantity)
        self.lines.append(line)
        return line

    def update_quantity(self, line_id: str, change: int) -> CartLine | None:
        """Apply a quantity delta. Decrementing below 1 leaves the line at 1."""
        line = self.find(line_id)
        if line is None:
            return None
        line.quantity = max(1, line.quantity + change)
        return line

    def remove(self, line_id: str) -> bool:
        before = len(self.lines)
        self.lines = [line for line in self.lines if line.id != line_id]
        return len(self.lines) != before


class PlanSelection(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    price: float
    location_id: str | None = None
    model_id: str | None = None


# -----------------------------------------------------------------------------
# Flow context
# -----------------------------------------------------------------------------

class FlowError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class ResolutionBranch(BaseModel):
    """Account matching results. Only present from resolvingMatches onward."""

    snapshot: ContactSnapshot
    candidates: list[CandidateAccount] = Field(default_factory=list)
    highlighted: str | None = None  # account id or NEW_ACCOUNT_OPTION
    selection: MatchSelection | None = None

    def candidate(self, account_id: str) -> CandidateAccount | None:
        for candidate in self.candidates:
            if candidate.account_id == account_id:
                return candidate
        return None


class AuthenticationBranch(BaseModel):
    """Out-of-band verification. Only present from authenticationChoice onward."""

    channel: OtpChannel | None = None
    session: OTPSession | None = None
    submitted_code: str | None = None  # held only while verifyingCode
    verified_account_id: str | None = None


class IdempotencyRecord(BaseModel):
    """Key for one billable attempt, reused while its outcome is unknown."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    key: str = Field(default_factory=lambda: str(uuid.uuid4()))
    # Set once the key is handed out again after an unknown outcome
    retried: bool = False


class PaymentBranch(BaseModel):
    """Card selection and charge state. Only present once identity is verified."""

    customer_id: str
    saved_cards: list[SavedCard] = Field(default_factory=list)
    selected_card_id: str | None = None
    pending_card: CardInput | None = None
    idempotency: IdempotencyRecord | None = None

    def card(self, card_id: str) -> SavedCard | None:
        for card in self.saved_cards:
            if card.id == card_id:
                return card
        return None

    def idempotency_key_for(self, fingerprint: str) -> str:
        """Reuse the outstanding key for the same operation, else mint a new one."""
        if self.idempotency is None or self.idempotency.fingerprint != fingerprint:
            self.idempotency = IdempotencyRecord(fingerprint=fingerprint)
        elif not self.idempotency.retried:
            self.idempotency = self.idempotency.model_copy(update={"retried": True})
        return self.idempotency.key


class PendingCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: FlowState
    attempt: int


class FlowContext(BaseModel):
    """Everything the orchestrator knows about one checkout."""

    flow_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    variant: FlowVariant = FlowVariant.CATERING
    role: SessionRole = SessionRole.GUEST

    contact: ContactInfo = Field(default_factory=ContactInfo)
    form_errors: dict[str, str] = Field(default_factory=dict)
    cart: Cart = Field(default_factory=Cart)
    plan: PlanSelection | None = None
    error: FlowError | None = None

    resolution: ResolutionBranch | None = None
    authentication: AuthenticationBranch | None = None
    payment: PaymentBranch | None = None

    pending: PendingCall | None = None
    attempt_counter: int = 0
    receipt: ChargeResult | None = None

    def set_error(self, kind: ErrorKind, message: str) -> None:
        self.error = FlowError(kind=kind, message=message)

    def clear_error(self) -> None:
        self.error = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.authentication and self.authentication.verified_account_id)
