from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from checkout_flow.backends import Backends, LocalOtpProvider, SandboxPaymentGateway, SqlAccountDirectory
from checkout_flow.flow import (
    AccountMatcher,
    AuthenticationCoordinator,
    CheckoutOrchestrator,
    FlowRunner,
    FlowVariant,
    PaymentCoordinator,
)
from checkout_flow.flow.models import CatalogItem, DiscountTier, OTPSession, OtpChannel
from checkout_flow.models import Base
from checkout_flow.routes import limiter

VALID_CODE = "123456"


# =============================================================================
# In-memory backends
# =============================================================================

class FakeDirectory:
    """AccountDirectory returning canned records."""

    def __init__(self, records=None, fail=False):
        self.records = list(records or [])
        self.fail = fail
        self.search_calls = []
        self.created = []

    def search(self, contact):
        self.search_calls.append(contact)
        if self.fail:
            raise ConnectionError("directory unreachable")
        return list(self.records)

    def create_account(self, contact):
        self.created.append(contact)
        return f"new-{len(self.created)}"


class FakeOtpProvider:
    """OtpProvider that approves VALID_CODE."""

    def __init__(self, fail_send=False, fail_check=False):
        self.fail_send = fail_send
        self.fail_check = fail_check
        self.sends = []
        self.checks = []

    def send(self, channel, destination):
        self.sends.append((channel, destination))
        if self.fail_send:
            raise ConnectionError("network down")
        return f"VE{len(self.sends)}"

    def check(self, channel, destination, code, sid):
        self.checks.append((channel, destination, code, sid))
        if self.fail_check:
            raise ConnectionError("network down")
        return code == VALID_CODE


class FakeGateway:
    """PaymentGateway with cards and charges in dicts."""

    def __init__(self, nonces=None, cards=None):
        self.nonces = dict(nonces or {})
        self.cards = {customer: list(records) for customer, records in (cards or {}).items()}
        self.tokens = {}
        self.saves = []
        self.charges = []
        self.list_calls = []
        self.fail_list = False
        self.charge_error = None
        self.decline = False

    def resolve_nonce(self, nonce):
        if nonce not in self.nonces:
            raise ValueError("unknown nonce")
        token = f"tok-{nonce}"
        self.tokens[token] = self.nonces[nonce]
        return {"token": token, **self.nonces[nonce]}

    def list_cards(self, customer_id):
        self.list_calls.append(customer_id)
        if self.fail_list:
            raise ConnectionError("vault unreachable")
        return list(self.cards.get(customer_id, []))

    def save_card(self, customer_id, token, idempotency_key):
        self.saves.append((customer_id, token, idempotency_key))
        card = {"id": f"card-{len(self.saves)}", **self.tokens[token]}
        self.cards.setdefault(customer_id, []).append(card)
        return card

    def charge(self, customer_id, card_id, amount, idempotency_key):
        self.charges.append((customer_id, card_id, amount, idempotency_key))
        if self.charge_error is not None:
            raise self.charge_error
        if self.decline:
            return {"status": "DECLINED", "error": "Your card was declined."}
        return {"id": f"pay-{len(self.charges)}", "status": "COMPLETED"}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def session_factory():
    """Session factory on an in-memory SQLite DB.

    Uses StaticPool so all connections (including worker threads) share the
    same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def otp_provider():
    return FakeOtpProvider()


@pytest.fixture
def gateway():
    return FakeGateway(nonces={
        "nonce-visa": {"brand": "VISA", "last4": "4242", "exp_month": 12, "exp_year": 2026},
        "nonce-amex": {"brand": "AMEX", "last4": "0005", "exp_month": 3, "exp_year": 2028},
    })


@pytest.fixture
def matcher(directory):
    return AccountMatcher(directory)


@pytest.fixture
def authentication(otp_provider, directory):
    return AuthenticationCoordinator(otp_provider, directory)


@pytest.fixture
def payments(gateway):
    return PaymentCoordinator(gateway)


@pytest.fixture
def orchestrator():
    return CheckoutOrchestrator(variant=FlowVariant.EVENT_REGISTRATION)


@pytest.fixture
def make_runner(matcher, authentication, payments):
    """Build a FlowRunner on the fake backends."""
    def _make(variant=FlowVariant.EVENT_REGISTRATION, timeout=5.0):
        return FlowRunner(CheckoutOrchestrator(variant=variant), matcher, authentication, payments, timeout=timeout)
    return _make


@pytest.fixture
def tray():
    """Catering tray with a percentage tier at 5 and a fixed tier at 10."""
    return CatalogItem(
        id="tray-1",
        name="Sandwich Tray",
        base_price=10.0,
        sku="TRAY-1",
        discounts=[
            DiscountTier(minimum_quantity=5, percentage=0.1),
            DiscountTier(minimum_quantity=10, fixed_amount=2.0),
        ],
    )


@pytest.fixture
def otp_session():
    def _make(attempts=5, account_id=None, expired=False):
        now = datetime.now(timezone.utc)
        expires_at = now - timedelta(seconds=1) if expired else now + timedelta(minutes=10)
        return OTPSession(
            channel=OtpChannel.SMS,
            destination="+12015551234",
            sid="VE1",
            attempts_remaining=attempts,
            sent_at=now,
            expires_at=expires_at,
            account_id=account_id,
        )
    return _make


@pytest.fixture
def sent_codes():
    """Codes delivered by LocalOtpProvider, keyed by destination."""
    return {}


@pytest.fixture
def sql_backends(session_factory, sent_codes):
    def _capture(destination, code):
        sent_codes[destination] = code
        return {"status": "sent", "mock": True}

    return Backends(
        directory=SqlAccountDirectory(session_factory),
        otp=LocalOtpProvider(session_factory, sms_sender=_capture, email_sender=_capture),
        gateway=SandboxPaymentGateway(session_factory),
    )


@pytest.fixture
def client(sql_backends, monkeypatch):
    """FastAPI TestClient on the SQL backends and an in-memory DB."""
    from unittest.mock import MagicMock

    from checkout_flow.main import create_app
    from checkout_flow.services.modifiers import ModifierLookup
    from checkout_flow.services.session import FlowSessionStore

    monkeypatch.setattr(limiter, "enabled", False)

    http = MagicMock()
    http.get.return_value.json.return_value = {"sku": "TRAY-1", "hasModifiers": False, "modifierCategories": []}
    app = create_app(
        flow_store=FlowSessionStore(sql_backends),
        modifier_lookup=ModifierLookup(url="http://modifiers.test", http=http),
    )

    with TestClient(app) as test_client:
        yield test_client
