"""
Tests for webhook authentication and exactly-once order reconciliation.
"""
import asyncio
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, patch

import pytest

from payment_broker.config import Settings
from payment_broker.core.clock import FixedClock
from payment_broker.core.errors import (
    ConcurrentProcessingError,
    ConfigurationError,
    OrderCreationError,
    SignatureError,
    StoreUnavailableError,
)
from payment_broker.core.models import (
    CheckoutSession,
    ConfirmedPayment,
    CustomerInfo,
    OrderResult,
    ReconcileStatus,
    SessionTotals,
)
from payment_broker.core.webhook_reconciler import WebhookReconciler
from payment_broker.database.account_registry import AccountRegistry
from payment_broker.database.session_store import SessionStore

from .conftest import T0, FakeOrderCreator, FakeStripeClient, make_account, make_event, sign_payload


@pytest.fixture
def reconciler(
    registry: AccountRegistry,
    session_store: SessionStore,
    fake_stripe: FakeStripeClient,
    order_creator: FakeOrderCreator,
    clock: FixedClock,
    test_settings: Settings,
) -> WebhookReconciler:
    return WebhookReconciler(registry, session_store, fake_stripe, order_creator, clock, test_settings)


class TestSignatureAuthentication:
    """Multi-secret signature verification."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_first_account_secret(
        self, reconciler: WebhookReconciler, accounts: list, checkout_session: CheckoutSession
    ) -> None:
        payload = make_event()

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.account_label == "ALPHA"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_account_secret(
        self,
        reconciler: WebhookReconciler,
        fake_stripe: FakeStripeClient,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        """Signed with BETA's secret: ALPHA is tried and rejected first."""
        payload = make_event()

        with patch.object(
            fake_stripe, "verify_webhook_signature", wraps=fake_stripe.verify_webhook_signature
        ) as spy:
            result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_BETA"))

        assert result.status == ReconcileStatus.PROCESSED
        assert result.account_label == "BETA"
        assert [c.args[2] for c in spy.call_args_list] == ["whsec_ALPHA", "whsec_BETA"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_secret_is_rejected_without_side_effects(
        self,
        reconciler: WebhookReconciler,
        session_store: SessionStore,
        order_creator: FakeOrderCreator,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        payload = make_event()

        with pytest.raises(SignatureError):
            await reconciler.reconcile(payload, sign_payload(payload, "whsec_somebody_else"))

        session = await session_store.get("sess_1")
        assert order_creator.calls == []
        assert session.order_id is None
        assert session.order_claimed_at is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tampered_payload_is_rejected(
        self, reconciler: WebhookReconciler, accounts: list, checkout_session: CheckoutSession
    ) -> None:
        header = sign_payload(make_event(amount_cents=1500), "whsec_ALPHA")

        with pytest.raises(SignatureError):
            await reconciler.reconcile(make_event(amount_cents=1), header)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_signature_is_rejected(
        self, reconciler: WebhookReconciler, accounts: list, checkout_session: CheckoutSession
    ) -> None:
        payload = make_event()
        header = sign_payload(payload, "whsec_ALPHA", timestamp=int(time.time()) - 3600)

        with pytest.raises(SignatureError):
            await reconciler.reconcile(payload, header)

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "not-a-signature"])
    async def test_missing_or_malformed_header(
        self, reconciler: WebhookReconciler, accounts: list, checkout_session: CheckoutSession, header: Any
    ) -> None:
        with pytest.raises(SignatureError):
            await reconciler.reconcile(make_event(), header)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_inactive_account_secret_is_not_accepted(
        self,
        reconciler: WebhookReconciler,
        registry: AccountRegistry,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        await registry.upsert(make_account("GAMMA", order=3, active=False))
        payload = make_event()

        with pytest.raises(SignatureError):
            await reconciler.reconcile(payload, sign_payload(payload, "whsec_GAMMA"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_no_account_with_webhook_secret(
        self,
        reconciler: WebhookReconciler,
        registry: AccountRegistry,
        checkout_session: CheckoutSession,
    ) -> None:
        await registry.upsert(make_account("ALPHA", order=1, webhook_secret=""))
        payload = make_event()

        with pytest.raises(ConfigurationError):
            await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))


class TestReconciliation:
    """Event routing and order creation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirmed_payment_creates_order(
        self,
        reconciler: WebhookReconciler,
        session_store: SessionStore,
        order_creator: FakeOrderCreator,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        payload = make_event(reference_id="pi_1", amount_cents=1500)

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.PROCESSED
        assert result.event_id == "evt_1"
        assert result.session_id == "sess_1"
        assert result.order_id == "order_1"
        assert result.order_number == "1001"

        assert len(order_creator.calls) == 1
        payment = order_creator.calls[0]
        assert payment.reference_id == "pi_1"
        assert payment.amount_cents == 1500
        assert payment.currency == "EUR"
        assert payment.account_label == "ALPHA"

        session = await session_store.get("sess_1")
        assert session.order_id == "order_1"
        assert session.order_number == "1001"
        assert session.processed_at == T0
        assert session.order_claimed_at is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redelivery_is_already_processed(
        self,
        reconciler: WebhookReconciler,
        order_creator: FakeOrderCreator,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        payload = make_event()
        header = sign_payload(payload, "whsec_ALPHA")

        first = await reconciler.reconcile(payload, header)
        second = await reconciler.reconcile(payload, header)

        assert first.status == ReconcileStatus.PROCESSED
        assert second.status == ReconcileStatus.ALREADY_PROCESSED
        assert second.order_id == "order_1"
        assert len(order_creator.calls) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_event_types_are_ignored(
        self,
        reconciler: WebhookReconciler,
        session_store: SessionStore,
        order_creator: FakeOrderCreator,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        payload = make_event(event_type="payment_intent.created")

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.IGNORED
        assert result.event_type == "payment_intent.created"
        assert order_creator.calls == []
        assert (await session_store.get("sess_1")).order_id is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_event_without_session_id(
        self,
        reconciler: WebhookReconciler,
        order_creator: FakeOrderCreator,
        accounts: list,
    ) -> None:
        payload = make_event(session_id=None)

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.IGNORED
        assert result.warning == "no_session_id"
        assert order_creator.calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_session(
        self,
        reconciler: WebhookReconciler,
        order_creator: FakeOrderCreator,
        accounts: list,
    ) -> None:
        payload = make_event(session_id="sess_missing")

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.IGNORED
        assert result.warning == "session_not_found"
        assert result.session_id == "sess_missing"
        assert order_creator.calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_event_body(
        self, reconciler: WebhookReconciler, order_creator: FakeOrderCreator, accounts: list
    ) -> None:
        payload = b'{"not": "an event"'

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.IGNORED
        assert result.warning == "malformed_event"
        assert order_creator.calls == []


class TestOrderCreationFailures:
    """Failures after the payment was confirmed."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failure_leaves_session_unmarked_for_retry(
        self,
        reconciler: WebhookReconciler,
        session_store: SessionStore,
        order_creator: FakeOrderCreator,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        payload = make_event()
        header = sign_payload(payload, "whsec_ALPHA")
        order_creator.fail = True

        with pytest.raises(OrderCreationError) as exc_info:
            await reconciler.reconcile(payload, header)

        assert exc_info.value.session_id == "sess_1"
        session = await session_store.get("sess_1")
        assert session.order_id is None
        assert session.order_claimed_at is None

        order_creator.fail = False
        retried = await reconciler.reconcile(payload, header)

        assert retried.status == ReconcileStatus.PROCESSED
        assert len(order_creator.calls) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_timeout_releases_claim(
        self,
        registry: AccountRegistry,
        session_store: SessionStore,
        fake_stripe: FakeStripeClient,
        clock: FixedClock,
        test_settings: Settings,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        settings = test_settings.model_copy(update={"order_timeout_seconds": 0.05})
        slow = FakeOrderCreator(delay=1.0)
        reconciler = WebhookReconciler(registry, session_store, fake_stripe, slow, clock, settings)
        payload = make_event()

        with pytest.raises(OrderCreationError):
            await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        session = await session_store.get("sess_1")
        assert session.order_id is None
        assert session.order_claimed_at is None


class TestConcurrentDeliveries:
    """Exactly one order per session under concurrency."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_deliveries_create_one_order(
        self,
        reconciler: WebhookReconciler,
        session_store: SessionStore,
        order_creator: FakeOrderCreator,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        order_creator.delay = 0.05
        payload = make_event()
        header = sign_payload(payload, "whsec_ALPHA")

        results = await asyncio.gather(
            *(reconciler.reconcile(payload, header) for _ in range(5)),
            return_exceptions=True,
        )

        assert len(order_creator.calls) == 1
        processed = [r for r in results if not isinstance(r, Exception) and r.status == ReconcileStatus.PROCESSED]
        assert len(processed) == 1
        for r in results:
            if isinstance(r, Exception):
                assert isinstance(r, ConcurrentProcessingError)
            else:
                assert r.status in (ReconcileStatus.PROCESSED, ReconcileStatus.ALREADY_PROCESSED)
        assert (await session_store.get("sess_1")).order_id == "order_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_held_claim_requests_retry(
        self,
        reconciler: WebhookReconciler,
        session_store: SessionStore,
        order_creator: FakeOrderCreator,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        await session_store.claim_order_creation("sess_1", T0, timedelta(seconds=120))
        payload = make_event()

        with pytest.raises(ConcurrentProcessingError):
            await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert order_creator.calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_claim_is_taken_over(
        self,
        reconciler: WebhookReconciler,
        session_store: SessionStore,
        order_creator: FakeOrderCreator,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        await session_store.claim_order_creation("sess_1", T0 - timedelta(minutes=10), timedelta(seconds=120))
        payload = make_event()

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.PROCESSED
        assert len(order_creator.calls) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_recorded_elsewhere_wins(
        self,
        registry: AccountRegistry,
        session_store: SessionStore,
        fake_stripe: FakeStripeClient,
        clock: FixedClock,
        test_settings: Settings,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        """If an order lands while ours is being created, the stored one is kept."""

        class RacingOrderCreator:
            def __init__(self) -> None:
                self.calls: List[Dict[str, Any]] = []

            async def create_order(
                self,
                items: List[Dict[str, Any]],
                customer: CustomerInfo,
                payment_reference: ConfirmedPayment,
                shipping_cents: int = 0,
            ) -> OrderResult:
                self.calls.append({"session_id": payment_reference.session_id})
                await session_store.mark_processed_if_absent("sess_1", "order_other", "2001", T0)
                return OrderResult(order_id="order_mine", order_number="2002")

        creator = RacingOrderCreator()
        reconciler = WebhookReconciler(registry, session_store, fake_stripe, creator, clock, test_settings)
        payload = make_event()

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.ALREADY_PROCESSED
        assert result.order_id == "order_other"
        assert (await session_store.get("sess_1")).order_id == "order_other"


class FakeCartClearer:
    """Cart collaborator that records which carts it was asked to empty."""

    def __init__(self, result: bool = True, delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.cleared: List[str] = []

    async def clear_cart(self, cart_id: str) -> bool:
        self.cleared.append(cart_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


async def session_with_cart(
    session_store: SessionStore,
    cart_id: Optional[str] = "gid://shopify/Cart/c1",
) -> CheckoutSession:
    snapshot: Dict[str, Any] = {"items": [{"variant_id": "44556677", "quantity": 1, "price_cents": 1500}]}
    if cart_id:
        snapshot["cart_id"] = cart_id
    return await session_store.create(
        CheckoutSession(
            session_id="sess_cart",
            cart_snapshot=snapshot,
            totals=SessionTotals(subtotal_cents=1500, currency="EUR"),
        )
    )


class TestOrderRecording:
    """Recording a created order when the store misbehaves."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transient_store_failure_on_record_is_retried(
        self,
        reconciler: WebhookReconciler,
        session_store: SessionStore,
        order_creator: FakeOrderCreator,
        clock: FixedClock,
        test_settings: Settings,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        """The order exists once the store recovers, and a late redelivery never creates another."""
        original = session_store.mark_processed_if_absent
        failures = [StoreUnavailableError("store timed out")]

        async def flaky_mark(*args: Any, **kwargs: Any) -> Any:
            if failures:
                raise failures.pop()
            return await original(*args, **kwargs)

        payload = make_event()
        with patch.object(session_store, "mark_processed_if_absent", AsyncMock(side_effect=flaky_mark)) as mark:
            result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.PROCESSED
        assert result.order_id == "order_1"
        assert mark.await_count == 2

        clock.set(T0 + timedelta(seconds=test_settings.order_claim_lease_seconds + 60))
        redelivered = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert redelivered.status == ReconcileStatus.ALREADY_PROCESSED
        assert redelivered.order_id == "order_1"
        assert len(order_creator.calls) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unrecorded_order_keeps_claim_and_is_logged(
        self,
        registry: AccountRegistry,
        session_store: SessionStore,
        fake_stripe: FakeStripeClient,
        order_creator: FakeOrderCreator,
        clock: FixedClock,
        test_settings: Settings,
        accounts: list,
        checkout_session: CheckoutSession,
    ) -> None:
        settings = test_settings.model_copy(update={"order_mark_max_attempts": 2})
        reconciler = WebhookReconciler(registry, session_store, fake_stripe, order_creator, clock, settings)
        payload = make_event()
        header = sign_payload(payload, "whsec_ALPHA")

        with patch.object(
            session_store,
            "mark_processed_if_absent",
            AsyncMock(side_effect=StoreUnavailableError("store timed out")),
        ) as mark, patch("payment_broker.core.webhook_reconciler.logger") as log:
            with pytest.raises(StoreUnavailableError):
                await reconciler.reconcile(payload, header)

        assert mark.await_count == 2
        log.error.assert_any_call(
            "order_mark_failed",
            session_id="sess_1",
            order_id="order_1",
            order_number="1001",
            error="store timed out",
        )
        session = await session_store.get("sess_1")
        assert session.order_id is None
        assert session.order_claimed_at is not None

        with pytest.raises(ConcurrentProcessingError):
            await reconciler.reconcile(payload, header)
        assert len(order_creator.calls) == 1


class TestCartClearing:
    """Best-effort cart clearing after an order is recorded."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cart_is_cleared_after_order_is_recorded(
        self,
        registry: AccountRegistry,
        session_store: SessionStore,
        fake_stripe: FakeStripeClient,
        order_creator: FakeOrderCreator,
        clock: FixedClock,
        test_settings: Settings,
        accounts: list,
    ) -> None:
        await session_with_cart(session_store)
        clearer = FakeCartClearer()
        reconciler = WebhookReconciler(
            registry, session_store, fake_stripe, order_creator, clock, test_settings, clearer
        )
        payload = make_event(session_id="sess_cart")

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))
        again = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.PROCESSED
        assert again.status == ReconcileStatus.ALREADY_PROCESSED
        assert clearer.cleared == ["gid://shopify/Cart/c1"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cart_clear_failure_does_not_affect_outcome(
        self,
        registry: AccountRegistry,
        session_store: SessionStore,
        fake_stripe: FakeStripeClient,
        order_creator: FakeOrderCreator,
        clock: FixedClock,
        test_settings: Settings,
        accounts: list,
    ) -> None:
        await session_with_cart(session_store)
        settings = test_settings.model_copy(update={"order_timeout_seconds": 0.05})
        slow = FakeCartClearer(delay=1.0)
        reconciler = WebhookReconciler(registry, session_store, fake_stripe, order_creator, clock, settings, slow)
        payload = make_event(session_id="sess_cart")

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.PROCESSED
        assert (await session_store.get("sess_cart")).order_id == "order_1"

        rejected = FakeCartClearer(result=False)
        reconciler.cart_clearer = rejected
        await session_store.create(
            CheckoutSession(
                session_id="sess_cart_2",
                cart_snapshot={"items": [{"variant_id": "1", "price_cents": 900}], "cart_id": "gid://shopify/Cart/c2"},
                totals=SessionTotals(subtotal_cents=900, currency="EUR"),
            )
        )
        payload = make_event(session_id="sess_cart_2", event_id="evt_2", reference_id="pi_2", amount_cents=900)

        second = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert second.status == ReconcileStatus.PROCESSED
        assert rejected.cleared == ["gid://shopify/Cart/c2"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cart_is_kept_when_no_order_was_recorded(
        self,
        registry: AccountRegistry,
        session_store: SessionStore,
        fake_stripe: FakeStripeClient,
        order_creator: FakeOrderCreator,
        clock: FixedClock,
        test_settings: Settings,
        accounts: list,
    ) -> None:
        await session_with_cart(session_store)
        clearer = FakeCartClearer()
        reconciler = WebhookReconciler(
            registry, session_store, fake_stripe, order_creator, clock, test_settings, clearer
        )
        order_creator.fail = True
        payload = make_event(session_id="sess_cart")

        with pytest.raises(OrderCreationError):
            await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert clearer.cleared == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_session_without_cart_id_skips_clearing(
        self,
        registry: AccountRegistry,
        session_store: SessionStore,
        fake_stripe: FakeStripeClient,
        order_creator: FakeOrderCreator,
        clock: FixedClock,
        test_settings: Settings,
        accounts: list,
    ) -> None:
        await session_with_cart(session_store, cart_id=None)
        clearer = FakeCartClearer()
        reconciler = WebhookReconciler(
            registry, session_store, fake_stripe, order_creator, clock, test_settings, clearer
        )
        payload = make_event(session_id="sess_cart")

        result = await reconciler.reconcile(payload, sign_payload(payload, "whsec_ALPHA"))

        assert result.status == ReconcileStatus.PROCESSED
        assert clearer.cleared == []
