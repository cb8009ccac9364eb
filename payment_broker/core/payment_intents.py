"""
Payment request management, idempotent per checkout session.

Flow:
1. Validate amount and currency
2. Load the session and store the customer block
3. Existing reference: update it on the account that created it
4. No reference: select an account, create the intent, then attach it with
   a single create-if-absent write. The stored reference always wins; a
   losing intent is cancelled and the winner is updated instead.
"""
import hashlib
import json
import random
import re
import time
from typing import Any, Dict, Optional

import structlog

from payment_broker.config import Settings, get_settings
from payment_broker.core.errors import (
    ConfigurationError,
    NotFoundError,
    PaymentBrokerError,
    PaymentProviderError,
    ValidationError,
)
from payment_broker.core.models import (
    Account,
    CheckoutSession,
    CustomerInfo,
    PaymentRequestResult,
)
from payment_broker.core.rotation import AccountRotationSelector
from payment_broker.database.account_registry import AccountRegistry
from payment_broker.database.session_store import SessionStore
from payment_broker.integrations.stripe_client import StripeClient, shipping_params
from payment_broker.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Za-z]{3}$")
STATEMENT_DESCRIPTOR_MAX_LENGTH = 22


def statement_descriptor_suffix(label: str, fallback: str = "ORDER") -> str:
    """Account label reduced to what card statements accept."""
    cleaned = re.sub(r"[^A-Za-z0-9 ]", "", label)[:STATEMENT_DESCRIPTOR_MAX_LENGTH].strip()
    return cleaned or fallback


def params_digest(*parts: Dict[str, Any]) -> str:
    """Short stable hash of request parameters, independent of key order."""
    encoded = json.dumps(list(parts), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


def idempotency_key(
    session_id: str,
    account_label: str,
    amount_cents: int,
    currency: str,
    digest: str = "",
) -> str:
    """
    Provider idempotency key for creating a session's payment reference.

    The digest covers the customer-derived body, so a retry reuses the key
    while a request with other customer details gets its own.
    """
    key = f"pref:{session_id}:{account_label}:{amount_cents}:{currency.upper()}"
    return f"{key}:{digest}" if digest else key


def pick_display_title(account: Account, session_id: str, fallback: str) -> str:
    """
    One of the account's display titles, fixed per session.

    Seeded by the session id so retried creations send identical parameters
    under the same idempotency key.
    """
    if not account.display_titles:
        return fallback
    return random.Random(session_id).choice(account.display_titles)


class PaymentIntentManager:
    """
    Creates or refreshes the single payment reference of a checkout session.

    Two concurrent calls for one session never store two references: the
    attach step is a conditional write in the session store.
    """

    def __init__(
        self,
        session_store: SessionStore,
        registry: AccountRegistry,
        selector: AccountRotationSelector,
        provider: StripeClient,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment intent manager.

        Args:
            session_store: Checkout session store
            registry: Account registry (resolves the account of an existing reference)
            selector: Rotation selector for new references
            provider: Payment provider client
            settings: Optional settings
        """
        self.session_store = session_store
        self.registry = registry
        self.selector = selector
        self.provider = provider
        self.settings = settings or get_settings()

        logger.info("payment_intent_manager_initialized")

    def _validate(self, session_id: str, amount_cents: Any, currency: Optional[str]) -> None:
        """
        Validate payment request parameters.

        Raises:
            ValidationError: If validation fails
        """
        if not session_id or not str(session_id).strip():
            raise ValidationError("Session ID is required")

        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
            raise ValidationError("Amount must be an integer number of cents")

        if amount_cents < self.settings.min_charge_cents:
            raise ValidationError(
                f"Amount must be at least {self.settings.min_charge_cents} cents"
            )

        if currency is not None and not CURRENCY_PATTERN.match(currency):
            raise ValidationError("Currency must be 3-letter code")

    async def ensure_payment_request(
        self,
        session_id: str,
        amount_cents: int,
        currency: Optional[str] = None,
        customer: Optional[CustomerInfo] = None,
    ) -> PaymentRequestResult:
        """
        Create or update the payment reference of a session.

        Args:
            session_id: Checkout session id
            amount_cents: Amount to charge, recomputed by the caller from the cart
            currency: Currency code (session currency if not provided)
            customer: Customer details captured at checkout

        Returns:
            PaymentRequestResult: Client secret and the account it belongs to

        Raises:
            ValidationError: If amount or currency is malformed
            NotFoundError: If the session does not exist
            ConfigurationError: If no usable account is available
            PaymentProviderError: If the charge API fails
        """
        start_time = time.time()
        outcome = "failed"
        try:
            self._validate(session_id, amount_cents, currency)

            session = await self.session_store.get(session_id)
            if session is None:
                raise NotFoundError(f"Checkout session {session_id} not found")

            currency = (currency or session.totals.currency or self.settings.default_currency).upper()

            if customer is not None:
                await self.session_store.update_customer(session_id, customer)
            else:
                customer = session.customer or CustomerInfo()

            if session.payment_reference_id:
                result = await self._update_existing(session, amount_cents, currency, customer)
                outcome = "updated"
            else:
                result = await self._create_new(session, amount_cents, currency, customer)
                outcome = "created" if result.created else "race_lost"
            return result

        except (ValidationError, NotFoundError):
            outcome = "rejected"
            raise
        except PaymentBrokerError as e:
            logger.error(
                "payment_request_failed",
                session_id=session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        finally:
            metrics.record_payment_request(
                outcome,
                (currency or self.settings.default_currency).upper(),
                amount_cents if isinstance(amount_cents, int) else 0,
                time.time() - start_time,
            )

    async def _create_new(
        self,
        session: CheckoutSession,
        amount_cents: int,
        currency: str,
        customer: CustomerInfo,
    ) -> PaymentRequestResult:
        account = await self.selector.select()

        params = self._intent_params(session, customer)
        params["statement_descriptor_suffix"] = statement_descriptor_suffix(account.label)
        customer_id = await self._resolve_customer(account, session, customer)
        if customer_id:
            params["customer"] = customer_id

        metadata = self._metadata(session, account, customer)
        reference = await self.provider.create_payment_reference(
            account,
            amount_cents,
            currency,
            metadata,
            idempotency_key(
                session.session_id,
                account.label,
                amount_cents,
                currency,
                params_digest(params, metadata),
            ),
            params,
        )

        write = await self.session_store.create_payment_reference_if_absent(
            session.session_id,
            reference.id,
            reference.client_secret,
            account.label,
        )

        if write.applied or write.current.payment_reference_id == reference.id:
            logger.info(
                "payment_reference_attached",
                session_id=session.session_id,
                payment_reference_id=reference.id,
                account_label=account.label,
                amount_cents=amount_cents,
            )
            return PaymentRequestResult(
                client_secret=reference.client_secret,
                payment_reference_id=reference.id,
                account_label=account.label,
                publishable_key=account.publishable_key,
                amount_cents=amount_cents,
                currency=currency,
                created=write.applied,
            )

        # Another request attached its reference first
        logger.warning(
            "payment_reference_race_lost",
            session_id=session.session_id,
            orphan_reference_id=reference.id,
            stored_reference_id=write.current.payment_reference_id,
        )
        await self._cancel_orphan(account, reference.id)
        return await self._update_existing(write.current, amount_cents, currency, customer)

    async def _update_existing(
        self,
        session: CheckoutSession,
        amount_cents: int,
        currency: str,
        customer: CustomerInfo,
    ) -> PaymentRequestResult:
        account = None
        if session.account_label_used:
            account = await self.registry.find(session.account_label_used)
        if account is None or not account.secret_key.get_secret_value():
            logger.error(
                "payment_reference_account_unavailable",
                session_id=session.session_id,
                account_label=session.account_label_used,
            )
            raise ConfigurationError(
                f"Account {session.account_label_used!r} of the existing payment reference is not usable"
            )

        reference = await self.provider.update_payment_reference(
            account,
            session.payment_reference_id,
            amount_cents,
            currency,
            self._metadata(session, account, customer),
            self._intent_params(session, customer),
        )

        client_secret = reference.client_secret or session.payment_reference_secret
        if not client_secret:
            raise PaymentProviderError(
                "Payment provider returned no client secret",
                account_label=account.label,
            )

        logger.info(
            "payment_reference_updated",
            session_id=session.session_id,
            payment_reference_id=session.payment_reference_id,
            account_label=account.label,
            amount_cents=amount_cents,
        )
        return PaymentRequestResult(
            client_secret=client_secret,
            payment_reference_id=session.payment_reference_id,
            account_label=account.label,
            publishable_key=account.publishable_key,
            amount_cents=amount_cents,
            currency=currency,
            created=False,
        )

    async def _cancel_orphan(self, account: Account, reference_id: str) -> None:
        try:
            await self.provider.cancel_payment_reference(account, reference_id)
        except PaymentProviderError as e:
            logger.warning(
                "orphan_payment_reference_cancel_failed",
                account_label=account.label,
                payment_reference_id=reference_id,
                error=str(e),
            )

    async def _resolve_customer(
        self,
        account: Account,
        session: CheckoutSession,
        customer: CustomerInfo,
    ) -> Optional[str]:
        """Provider customer for the e-mail, or None; lookup failures do not block payment."""
        if not customer.email:
            return None
        try:
            return await self.provider.find_or_create_customer(
                account,
                customer,
                {
                    "merchant_site": account.merchant_site,
                    "session_id": session.session_id,
                    "account_label": account.label,
                },
                idempotency_key=f"cust:{session.session_id}:{account.label}",
            )
        except PaymentProviderError as e:
            logger.warning(
                "customer_lookup_failed",
                session_id=session.session_id,
                account_label=account.label,
                error=str(e),
            )
            return None

    def _metadata(
        self,
        session: CheckoutSession,
        account: Account,
        customer: CustomerInfo,
    ) -> Dict[str, str]:
        return {
            "session_id": session.session_id,
            "merchant_site": account.merchant_site,
            "customer_email": customer.email,
            "customer_name": customer.display_name,
            "order_id": session.session_id,
            "display_title": pick_display_title(
                account, session.session_id, self.settings.fallback_display_title
            ),
            "account_label": account.label,
            "account_order": str(account.order),
            "created_at": session.created_at.isoformat() if session.created_at else "",
        }

    @staticmethod
    def _intent_params(session: CheckoutSession, customer: CustomerInfo) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "description": f"{session.session_id} | {customer.display_name or 'Guest'}",
        }
        if customer.email:
            params["receipt_email"] = customer.email
        shipping = shipping_params(customer)
        if shipping:
            params["shipping"] = shipping
        return params
