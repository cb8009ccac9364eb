"""Service wiring for the API."""
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_broker.config import Settings, get_settings
from payment_broker.core.clock import Clock, SystemClock
from payment_broker.core.payment_intents import PaymentIntentManager
from payment_broker.core.rotation import AccountRotationSelector
from payment_broker.core.webhook_reconciler import CartClearer, OrderCreator, WebhookReconciler
from payment_broker.database.account_registry import AccountRegistry
from payment_broker.database.connection import get_session_factory
from payment_broker.database.session_store import SessionStore
from payment_broker.integrations.shopify_client import ShopifyOrderClient
from payment_broker.integrations.stripe_client import StripeClient
from payment_broker.monitoring.health import HealthCheck


class Services:
    """The broker's collaborating services, built once per application."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Clock] = None,
        provider: Optional[StripeClient] = None,
        order_creator: Optional[OrderCreator] = None,
        cart_clearer: Optional[CartClearer] = None,
    ):
        """
        Build all services.

        Args:
            settings: Optional settings
            session_factory: Optional session factory (global one if not provided)
            clock: Optional clock
            provider: Optional payment provider client
            order_creator: Optional order collaborator (Shopify if not provided)
            cart_clearer: Optional cart collaborator (the Shopify client when it
                also creates the orders)
        """
        self.settings = settings or get_settings()
        session_factory = session_factory or get_session_factory()
        clock = clock or SystemClock()
        if order_creator is None:
            shopify = ShopifyOrderClient.from_settings(self.settings)
            order_creator = shopify
            cart_clearer = cart_clearer or shopify

        self.registry = AccountRegistry(session_factory, self.settings)
        self.session_store = SessionStore(session_factory, self.settings)
        self.provider = provider or StripeClient(self.settings)
        self.selector = AccountRotationSelector(self.registry, clock, self.settings)
        self.payment_intents = PaymentIntentManager(
            self.session_store,
            self.registry,
            self.selector,
            self.provider,
            self.settings,
        )
        self.reconciler = WebhookReconciler(
            self.registry,
            self.session_store,
            self.provider,
            order_creator,
            clock,
            self.settings,
            cart_clearer,
        )
        self.health_check = HealthCheck(session_factory)


def get_services(request: Request) -> Services:
    """Dependency returning the services attached to the running app."""
    return request.app.state.services
