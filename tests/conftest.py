"""
Pytest configuration and fixtures.
"""
import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from payment_broker.config import Settings
from payment_broker.core.clock import FixedClock
from payment_broker.core.errors import OrderCreationError, PaymentProviderError
from payment_broker.core.models import (
    Account,
    CheckoutSession,
    ConfirmedPayment,
    CustomerInfo,
    OrderResult,
    PaymentReference,
    SessionTotals,
)
from payment_broker.database.account_registry import AccountRegistry
from payment_broker.database.connection import create_session_factory, init_db
from payment_broker.database.session_store import SessionStore
from payment_broker.integrations.stripe_client import StripeClient

# 2024-01-01T00:00:00Z, the start of rotation window 78892 for 6 hour windows
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_account(label: str, order: int = 0, **overrides: Any) -> Account:
    """Fully credentialed, active account."""
    fields: Dict[str, Any] = {
        "label": label,
        "secret_key": f"sk_test_{label}",
        "publishable_key": f"pk_test_{label}",
        "webhook_secret": f"whsec_{label}",
        "active": True,
        "order": order,
        "merchant_site": f"https://{label.lower()}.example.com",
        "display_titles": [f"{label} product"],
    }
    fields.update(overrides)
    return Account(**fields)


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header for payload, signed with secret."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    session_id: Optional[str] = "sess_1",
    event_type: str = "payment_intent.succeeded",
    reference_id: str = "pi_1",
    amount_cents: int = 1500,
    event_id: str = "evt_1",
) -> bytes:
    """Raw webhook body for a PaymentIntent event."""
    metadata = {"session_id": session_id} if session_id else {}
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": reference_id,
                    "object": "payment_intent",
                    "amount": amount_cents,
                    "amount_received": amount_cents,
                    "currency": "eur",
                    "metadata": metadata,
                }
            },
        }
    ).encode("utf-8")


class FakeStripeClient:
    """In-memory stand-in for StripeClient's payment calls."""

    def __init__(self, create_delay: float = 0.0, error: Optional[PaymentProviderError] = None):
        self.create_delay = create_delay
        self.error = error
        self.created: List[Dict[str, Any]] = []
        self.updated: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self._verifier = StripeClient(Settings(_env_file=None))

    async def create_payment_reference(
        self,
        account: Account,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> PaymentReference:
        if self.error is not None:
            raise self.error
        number = len(self.created) + 1
        self.created.append(
            {
                "account_label": account.label,
                "amount_cents": amount_cents,
                "currency": currency,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
                "params": params or {},
            }
        )
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        return PaymentReference(
            id=f"pi_{number}",
            client_secret=f"pi_{number}_secret_{number}",
            status="requires_payment_method",
        )

    async def update_payment_reference(
        self,
        account: Account,
        reference_id: str,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        params: Optional[Dict[str, Any]] = None,
    ) -> PaymentReference:
        if self.error is not None:
            raise self.error
        self.updated.append(
            {
                "account_label": account.label,
                "reference_id": reference_id,
                "amount_cents": amount_cents,
                "metadata": metadata,
            }
        )
        return PaymentReference(
            id=reference_id,
            client_secret=f"{reference_id}_secret_updated",
            status="requires_payment_method",
        )

    async def cancel_payment_reference(self, account: Account, reference_id: str) -> None:
        self.cancelled.append(reference_id)

    async def find_or_create_customer(
        self,
        account: Account,
        customer: CustomerInfo,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Optional[str]:
        return f"cus_{account.label}" if customer.email else None

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str, webhook_secret: str) -> bool:
        return self._verifier.verify_webhook_signature(raw_payload, signature_header, webhook_secret)


class FakeOrderCreator:
    """Order collaborator that records calls."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.calls: List[ConfirmedPayment] = []

    async def create_order(
        self,
        items: List[Dict[str, Any]],
        customer: CustomerInfo,
        payment_reference: ConfirmedPayment,
        shipping_cents: int = 0,
    ) -> OrderResult:
        self.calls.append(payment_reference)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise OrderCreationError("Shopify rejected order with status 422", session_id=payment_reference.session_id)
        number = len(self.calls)
        return OrderResult(order_id=f"order_{number}", order_number=str(1000 + number))


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'broker.db'}",
        app_name="payment-broker-test",
        app_env="test",
        log_level="DEBUG",
        stripe_max_attempts=1,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """SQLite file database with all tables, one per test."""
    eng = create_async_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def registry(session_factory: async_sessionmaker[AsyncSession], test_settings: Settings) -> AccountRegistry:
    return AccountRegistry(session_factory, test_settings)


@pytest.fixture
def session_store(session_factory: async_sessionmaker[AsyncSession], test_settings: Settings) -> SessionStore:
    return SessionStore(session_factory, test_settings)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def order_creator() -> FakeOrderCreator:
    return FakeOrderCreator()


@pytest_asyncio.fixture
async def accounts(registry: AccountRegistry) -> List[Account]:
    """Two eligible accounts, ALPHA before BETA."""
    stored = []
    for account in (make_account("ALPHA", order=1), make_account("BETA", order=2)):
        stored.append(await registry.upsert(account))
    return stored


@pytest_asyncio.fixture
async def checkout_session(session_store: SessionStore) -> CheckoutSession:
    """A captured cart worth 15.00 EUR."""
    return await session_store.create(
        CheckoutSession(
            session_id="sess_1",
            cart_snapshot={
                "items": [
                    {
                        "variant_id": "44556677",
                        "title": "Linen shirt",
                        "quantity": 1,
                        "price_cents": 1500,
                        "line_price_cents": 1500,
                    }
                ]
            },
            totals=SessionTotals(subtotal_cents=1500, currency="EUR"),
            customer=CustomerInfo(full_name="Maria Rossi", email="maria@example.com"),
        )
    )
