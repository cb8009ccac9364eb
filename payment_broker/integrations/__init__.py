"""External integrations: Stripe accounts and the Shopify order API."""
from .shopify_client import ShopifyOrderClient
from .stripe_client import StripeClient

__all__ = ["StripeClient", "ShopifyOrderClient"]
