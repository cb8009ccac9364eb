"""
Stripe API client for a fleet of independently credentialed accounts.

Implements:
- Per-call account credentials (no global stripe.api_key)
- Exponential backoff for transient errors
- One circuit breaker per account
- Explicit timeouts around every blocking SDK call
- Webhook signature verification against a given signing secret
"""
import asyncio
import threading
import time
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from payment_broker.config import Settings, get_settings
from payment_broker.core.errors import PaymentProviderError
from payment_broker.core.models import Account, CustomerInfo, PaymentReference
from payment_broker.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker for one account's Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        label: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            label: Account label the breaker guards
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.label = label
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = threading.Lock()

    def call(self, func: Callable[[], Any]) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            PaymentProviderError: If circuit is open
        """
        with self._lock:
            if self.state == "open":
                if (
                    self.last_failure_time
                    and time.time() - self.last_failure_time > self.timeout
                ):
                    self.state = "half_open"
                    self.success_count = 0
                    logger.info("circuit_breaker_half_open", account_label=self.label)
                else:
                    raise PaymentProviderError(
                        "Payment provider temporarily unavailable",
                        retryable=False,
                        account_label=self.label,
                    )

        try:
            result = func()
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = "closed"
                    logger.info("circuit_breaker_closed", account_label=self.label)

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.failure_count >= self.failure_threshold and self.state != "open":
                self.state = "open"
                logger.warning(
                    "circuit_breaker_opened",
                    account_label=self.label,
                    failure_count=self.failure_count,
                )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, PaymentProviderError) and error.retryable


class StripeClient:
    """
    Wrapper for the Stripe API that always acts on behalf of one account.

    Every request passes the account's secret key explicitly, so requests
    for different accounts can run concurrently in the same process.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe client."""
        self.settings = settings or get_settings()
        self.timeout = self.settings.provider_timeout_seconds
        self._breakers: Dict[str, CircuitBreaker] = {}

        logger.info(
            "stripe_client_initialized",
            api_version=self.settings.stripe_api_version,
        )

    def _breaker_for(self, label: str) -> CircuitBreaker:
        breaker = self._breakers.get(label)
        if breaker is None:
            breaker = self._breakers.setdefault(label, CircuitBreaker(label))
        return breaker

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> bool:
        """
        Classify Stripe error for retry logic.

        Returns:
            bool: True if the error is transient and worth retrying
        """
        if isinstance(error, (stripe.RateLimitError, stripe.APIConnectionError)):
            return True
        if isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return False
        # APIError and anything unknown are treated as transient
        return True

    def _translate_error(self, error: stripe.StripeError, account: Account) -> PaymentProviderError:
        """Turn an SDK error into a PaymentProviderError with a credential-free message."""
        retryable = self._classify_error(error)
        message = getattr(error, "user_message", None) or str(error) or type(error).__name__
        for credential in (account.secret_key.get_secret_value(), account.webhook_secret.get_secret_value()):
            if credential:
                message = message.replace(credential, "[redacted]")

        logger.error(
            "stripe_api_error",
            account_label=account.label,
            retryable=retryable,
            error_code=getattr(error, "code", None),
            error_message=message,
        )
        metrics.record_provider_error(account.label, "transient" if retryable else "permanent")

        return PaymentProviderError(
            message,
            retryable=retryable,
            account_label=account.label,
            original_error=error,
        )

    async def _call_once(self, account: Account, operation: str, func: Callable[[], Any]) -> Any:
        breaker = self._breaker_for(account.label)
        loop = asyncio.get_running_loop()
        start_time = time.time()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, breaker.call, func),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            metrics.record_provider_call(account.label, operation, "timeout", time.time() - start_time)
            logger.error(
                "stripe_api_timeout",
                account_label=account.label,
                operation=operation,
                timeout_seconds=self.timeout,
            )
            raise PaymentProviderError(
                "Payment provider request timed out",
                retryable=True,
                account_label=account.label,
            ) from e
        except stripe.StripeError as e:
            metrics.record_provider_call(account.label, operation, "error", time.time() - start_time)
            raise self._translate_error(e, account) from e

        metrics.record_provider_call(account.label, operation, "success", time.time() - start_time)
        return result

    async def _call(self, account: Account, operation: str, func: Callable[[], Any]) -> Any:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.stripe_max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_once(account, operation, func)

    def _request_options(self, account: Account) -> Dict[str, Any]:
        return {
            "api_key": account.secret_key.get_secret_value(),
            "stripe_version": self.settings.stripe_api_version,
        }

    async def create_payment_reference(
        self,
        account: Account,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> PaymentReference:
        """
        Create a PaymentIntent on the given account.

        Args:
            account: Account the intent is created on
            amount_cents: Amount in minor units
            currency: Currency code
            metadata: Metadata attached to the intent
            idempotency_key: Stripe idempotency key
            params: Extra PaymentIntent parameters (shipping, description, ...)

        Returns:
            PaymentReference: id and client secret of the intent

        Raises:
            PaymentProviderError: If creation fails
        """
        logger.info(
            "creating_payment_intent",
            account_label=account.label,
            amount_cents=amount_cents,
            currency=currency,
        )

        def _create() -> Any:
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True, "allow_redirects": "always"},
                idempotency_key=idempotency_key,
                **(params or {}),
                **self._request_options(account),
            )

        intent = await self._call(account, "create_payment_intent", _create)

        logger.info(
            "payment_intent_created",
            account_label=account.label,
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return PaymentReference(id=intent.id, client_secret=intent.client_secret, status=intent.status)

    async def update_payment_reference(
        self,
        account: Account,
        reference_id: str,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        params: Optional[Dict[str, Any]] = None,
    ) -> PaymentReference:
        """
        Update amount and metadata of an existing PaymentIntent.

        Raises:
            PaymentProviderError: If the update fails
        """
        logger.info(
            "updating_payment_intent",
            account_label=account.label,
            payment_intent_id=reference_id,
            amount_cents=amount_cents,
        )

        def _modify() -> Any:
            return stripe.PaymentIntent.modify(
                reference_id,
                amount=amount_cents,
                currency=currency.lower(),
                metadata=metadata,
                **(params or {}),
                **self._request_options(account),
            )

        intent = await self._call(account, "update_payment_intent", _modify)

        logger.info(
            "payment_intent_updated",
            account_label=account.label,
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return PaymentReference(id=intent.id, client_secret=intent.client_secret, status=intent.status)

    async def cancel_payment_reference(self, account: Account, reference_id: str) -> None:
        """Cancel a PaymentIntent that lost a creation race."""
        logger.info(
            "cancelling_payment_intent",
            account_label=account.label,
            payment_intent_id=reference_id,
        )

        def _cancel() -> Any:
            return stripe.PaymentIntent.cancel(reference_id, **self._request_options(account))

        await self._call(account, "cancel_payment_intent", _cancel)

    async def find_or_create_customer(
        self,
        account: Account,
        customer: CustomerInfo,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Optional[str]:
        """
        Look up a customer by e-mail on the account, creating one if missing.

        Args:
            account: Account the customer lives on
            customer: Customer captured at checkout
            metadata: Metadata attached to a newly created customer
            idempotency_key: Optional Stripe idempotency key for the create call

        Returns:
            Optional[str]: Customer id, or None when no e-mail is known
        """
        if not customer.email:
            return None

        def _find_or_create() -> str:
            existing = stripe.Customer.list(
                email=customer.email, limit=1, **self._request_options(account)
            )
            if existing.data:
                return existing.data[0].id

            params: Dict[str, Any] = {
                "email": customer.email,
                "metadata": metadata,
            }
            if customer.display_name:
                params["name"] = customer.display_name
            if customer.phone:
                params["phone"] = customer.phone
            if customer.address1:
                params["address"] = _address_params(customer)
            if idempotency_key:
                params["idempotency_key"] = idempotency_key
            return stripe.Customer.create(**params, **self._request_options(account)).id

        customer_id = await self._call(account, "find_or_create_customer", _find_or_create)
        logger.info("stripe_customer_resolved", account_label=account.label, customer_id=customer_id)
        return customer_id

    def verify_webhook_signature(
        self,
        raw_payload: bytes,
        signature_header: str,
        webhook_secret: str,
    ) -> bool:
        """
        Check a Stripe-Signature header against one signing secret.

        Args:
            raw_payload: Raw request body as bytes
            signature_header: Stripe-Signature header value
            webhook_secret: Signing secret of one account

        Returns:
            bool: True if the signature is valid and fresh
        """
        try:
            payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError:
            return False

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                webhook_secret,
                tolerance=self.settings.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError:
            return False
        return True


def _address_params(customer: CustomerInfo) -> Dict[str, str]:
    """Stripe address block, without empty fields."""
    address = {
        "line1": customer.address1,
        "line2": customer.address2,
        "city": customer.city,
        "postal_code": customer.postal_code,
        "state": customer.province,
        "country": customer.country_code,
    }
    return {key: value for key, value in address.items() if value}


def shipping_params(customer: CustomerInfo) -> Optional[Dict[str, Any]]:
    """PaymentIntent shipping block, only when the address is complete."""
    if not customer.has_shipping_address:
        return None
    shipping: Dict[str, Any] = {
        "name": customer.display_name,
        "address": _address_params(customer),
    }
    if customer.phone:
        shipping["phone"] = customer.phone
    return shipping
