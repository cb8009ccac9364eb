"""
Webhook reconciliation: authenticated payment confirmations to orders, exactly once.

The signing secret of a delivery is not known up front, so the payload is
checked against every account able to verify webhooks, in rotation order;
the first account that verifies it is the authoritative match.

Order creation is guarded twice:
- a claim lease (conditional write) keeps concurrent deliveries from calling
  the commerce platform at the same time
- mark_processed_if_absent (conditional write) keeps order_id write-once

Once an order exists its mark is retried for as long as the claim lease
lasts; the buyer cart is emptied best-effort after the mark lands.
"""
import asyncio
import json
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

import structlog
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from payment_broker.config import Settings, get_settings
from payment_broker.core.clock import Clock, SystemClock
from payment_broker.core.errors import (
    ConcurrentProcessingError,
    ConfigurationError,
    OrderCreationError,
    SignatureError,
    StoreUnavailableError,
)
from payment_broker.core.models import (
    Account,
    CheckoutSession,
    ConditionalWriteResult,
    ConfirmationEvent,
    ConfirmedPayment,
    CustomerInfo,
    OrderResult,
    ReconcileResult,
    ReconcileStatus,
)
from payment_broker.core.rotation import eligible_accounts
from payment_broker.database.account_registry import AccountRegistry
from payment_broker.database.session_store import SessionStore
from payment_broker.integrations.stripe_client import StripeClient
from payment_broker.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderCreator(Protocol):
    """Commerce platform collaborator that turns a confirmed payment into an order."""

    async def create_order(
        self,
        items: List[Dict[str, Any]],
        customer: CustomerInfo,
        payment_reference: ConfirmedPayment,
        shipping_cents: int = 0,
    ) -> OrderResult:
        ...


class CartClearer(Protocol):
    """Storefront collaborator that empties the buyer cart once the order exists."""

    async def clear_cart(self, cart_id: str) -> bool:
        ...


class WebhookReconciler:
    """
    Authenticates confirmation webhooks and creates one order per session.

    Outcomes:
    - processed: an order was created and recorded
    - already_processed: the session already had an order
    - ignored: authenticated but not actionable (other event type, no session)
    """

    def __init__(
        self,
        registry: AccountRegistry,
        session_store: SessionStore,
        provider: StripeClient,
        order_creator: OrderCreator,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        cart_clearer: Optional[CartClearer] = None,
    ):
        """
        Initialize webhook reconciler.

        Args:
            registry: Account registry (signing secrets)
            session_store: Checkout session store
            provider: Payment provider client (signature verification)
            order_creator: Commerce platform order collaborator
            clock: Optional clock
            settings: Optional settings
            cart_clearer: Optional storefront collaborator that empties the cart
        """
        self.registry = registry
        self.session_store = session_store
        self.provider = provider
        self.order_creator = order_creator
        self.cart_clearer = cart_clearer
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.order_event_types = self.settings.get_order_event_types()
        self.claim_lease = timedelta(seconds=self.settings.order_claim_lease_seconds)

        logger.info(
            "webhook_reconciler_initialized",
            order_event_types=sorted(self.order_event_types),
        )

    async def reconcile(self, raw_payload: bytes, signature_header: Optional[str]) -> ReconcileResult:
        """
        Authenticate a webhook delivery and reconcile it into an order.

        Args:
            raw_payload: Raw request body
            signature_header: Stripe-Signature header value

        Returns:
            ReconcileResult: Structured acknowledgement

        Raises:
            SignatureError: If no configured account authenticates the payload
            ConfigurationError: If no account can verify webhooks at all
            ConcurrentProcessingError: If another delivery holds the session claim
            OrderCreationError: If the commerce platform fails
            StoreUnavailableError: If the store cannot confirm idempotency state
        """
        start_time = time.time()
        account = await self._authenticate(raw_payload, signature_header)

        event = self._parse_event(raw_payload)
        if event is None:
            return self._finish(
                ReconcileResult(
                    status=ReconcileStatus.IGNORED,
                    account_label=account.label,
                    warning="malformed_event",
                ),
                start_time,
            )

        log = logger.bind(event_id=event.id, event_type=event.type, account_label=account.label)
        base = {"event_id": event.id, "event_type": event.type, "account_label": account.label}

        if event.type not in self.order_event_types:
            log.info("webhook_event_ignored")
            return self._finish(ReconcileResult(status=ReconcileStatus.IGNORED, **base), start_time)

        session_id = event.session_id
        if not session_id:
            log.warning("webhook_event_without_session_id")
            return self._finish(
                ReconcileResult(status=ReconcileStatus.IGNORED, warning="no_session_id", **base),
                start_time,
            )

        log = log.bind(session_id=session_id)
        session = await self.session_store.get(session_id)
        if session is None:
            log.warning("webhook_session_not_found")
            return self._finish(
                ReconcileResult(
                    status=ReconcileStatus.IGNORED,
                    session_id=session_id,
                    warning="session_not_found",
                    **base,
                ),
                start_time,
            )

        if session.is_processed:
            log.info("webhook_session_already_processed", order_id=session.order_id)
            return self._finish(self._already_processed(session, base), start_time)

        claimed_at = self.clock.now()
        claim = await self.session_store.claim_order_creation(session_id, claimed_at, self.claim_lease)
        if not claim.applied:
            if claim.current.is_processed:
                log.info("webhook_session_processed_concurrently", order_id=claim.current.order_id)
                return self._finish(self._already_processed(claim.current, base), start_time)
            log.warning("webhook_session_claim_held")
            metrics.record_webhook_event(event.type, "in_flight", time.time() - start_time)
            raise ConcurrentProcessingError(session_id)

        payment = self._confirmed_payment(event, claim.current, account)
        if session.payment_reference_id and session.payment_reference_id != payment.reference_id:
            log.warning(
                "webhook_payment_reference_mismatch",
                stored_reference_id=session.payment_reference_id,
                event_reference_id=payment.reference_id,
            )

        order = await self._create_order(claim.current, payment, claimed_at, event.type, start_time)

        mark = await self._mark_processed(session_id, order)
        if not mark.applied:
            log.error(
                "duplicate_order_created",
                order_id=order.order_id,
                stored_order_id=mark.current.order_id,
            )
            return self._finish(self._already_processed(mark.current, base), start_time)

        log.info(
            "webhook_order_recorded",
            order_id=order.order_id,
            order_number=order.order_number,
        )
        cart_id = claim.current.cart_id
        if cart_id and self.cart_clearer is not None:
            await self._clear_cart(session_id, cart_id)

        return self._finish(
            ReconcileResult(
                status=ReconcileStatus.PROCESSED,
                session_id=session_id,
                order_id=order.order_id,
                order_number=order.order_number,
                **base,
            ),
            start_time,
        )

    async def _authenticate(self, raw_payload: bytes, signature_header: Optional[str]) -> Account:
        """
        Find the first account, in rotation order, whose secret verifies the payload.

        Raises:
            ConfigurationError: If no account has a webhook secret
            SignatureError: If none of them verifies it
        """
        if not signature_header:
            metrics.record_signature_failure()
            logger.error("webhook_signature_header_missing")
            raise SignatureError()

        candidates = [a for a in eligible_accounts(await self.registry.get()) if a.can_verify_webhooks]
        if not candidates:
            logger.error("no_webhook_capable_account")
            raise ConfigurationError("No active payment account has a webhook secret")

        for account in candidates:
            matched = self.provider.verify_webhook_signature(
                raw_payload,
                signature_header,
                account.webhook_secret.get_secret_value(),
            )
            logger.debug("webhook_signature_attempt", account_label=account.label, matched=matched)
            if matched:
                logger.info("webhook_signature_verified", account_label=account.label)
                return account

        metrics.record_signature_failure()
        logger.error(
            "webhook_signature_verification_failed",
            accounts_tried=[a.label for a in candidates],
        )
        raise SignatureError()

    @staticmethod
    def _parse_event(raw_payload: bytes) -> Optional[ConfirmationEvent]:
        try:
            return ConfirmationEvent.model_validate(json.loads(raw_payload))
        except (ValueError, PydanticValidationError) as e:
            logger.warning("webhook_event_malformed", error=str(e))
            return None

    @staticmethod
    def _confirmed_payment(
        event: ConfirmationEvent,
        session: CheckoutSession,
        account: Account,
    ) -> ConfirmedPayment:
        obj = event.payment_object
        amount = obj.get("amount_received") or obj.get("amount") or session.totals.total_cents
        return ConfirmedPayment(
            reference_id=str(obj.get("id") or session.payment_reference_id or ""),
            amount_cents=int(amount),
            currency=str(obj.get("currency") or session.totals.currency).upper(),
            account_label=account.label,
            session_id=session.session_id,
        )

    async def _create_order(
        self,
        session: CheckoutSession,
        payment: ConfirmedPayment,
        claimed_at: datetime,
        event_type: str,
        start_time: float,
    ) -> OrderResult:
        """Call the order collaborator once; on failure give the claim back and re-raise."""
        try:
            return await asyncio.wait_for(
                self.order_creator.create_order(
                    session.items,
                    session.customer or CustomerInfo(),
                    payment,
                    shipping_cents=session.totals.shipping_cents,
                ),
                timeout=self.settings.order_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            await self._release_claim(session.session_id, claimed_at)
            metrics.record_webhook_event(event_type, "failed", time.time() - start_time)
            logger.error("order_creation_timeout", session_id=session.session_id)
            raise OrderCreationError("Order creation timed out", session_id=session.session_id) from e
        except OrderCreationError as e:
            await self._release_claim(session.session_id, claimed_at)
            metrics.record_webhook_event(event_type, "failed", time.time() - start_time)
            logger.error(
                "order_creation_failed",
                session_id=session.session_id,
                error=str(e),
            )
            e.session_id = e.session_id or session.session_id
            raise

    async def _mark_processed(self, session_id: str, order: OrderResult) -> ConditionalWriteResult:
        """
        Record a created order, retrying while the store is unavailable.

        Retries stop before the claim lease could lapse, so no other delivery
        can take the session over while this order is still unrecorded.
        """
        budget = self.settings.order_claim_lease_seconds - self.settings.order_timeout_seconds
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(StoreUnavailableError),
            stop=stop_after_attempt(self.settings.order_mark_max_attempts) | stop_after_delay(budget),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "order_mark_retry",
                            session_id=session_id,
                            order_id=order.order_id,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    return await self.session_store.mark_processed_if_absent(
                        session_id, order.order_id, order.order_number, self.clock.now()
                    )
        except StoreUnavailableError as e:
            logger.error(
                "order_mark_failed",
                session_id=session_id,
                order_id=order.order_id,
                order_number=order.order_number,
                error=str(e),
            )
            raise

    async def _clear_cart(self, session_id: str, cart_id: str) -> None:
        try:
            cleared = await asyncio.wait_for(
                self.cart_clearer.clear_cart(cart_id),
                timeout=self.settings.order_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("cart_clear_timeout", session_id=session_id, cart_id=cart_id)
            return
        logger.info("cart_clear_finished", session_id=session_id, cart_id=cart_id, cleared=cleared)

    async def _release_claim(self, session_id: str, claimed_at: datetime) -> None:
        try:
            released = await self.session_store.release_order_claim(session_id, claimed_at)
        except StoreUnavailableError as e:
            # The lease expires on its own
            logger.warning("order_claim_release_failed", session_id=session_id, error=str(e))
            return
        logger.info("order_claim_released", session_id=session_id, released=released)

    @staticmethod
    def _already_processed(session: CheckoutSession, base: Dict[str, Any]) -> ReconcileResult:
        return ReconcileResult(
            status=ReconcileStatus.ALREADY_PROCESSED,
            session_id=session.session_id,
            order_id=session.order_id,
            order_number=session.order_number,
            **base,
        )

    @staticmethod
    def _finish(result: ReconcileResult, start_time: float) -> ReconcileResult:
        metrics.record_webhook_event(
            result.event_type or "unknown",
            result.status.value,
            time.time() - start_time,
        )
        return result
