"""
Shopify client used as the order-creation and cart collaborator.

Creates one paid order per confirmed payment through the Admin REST API.
Every order failure, including a missing shop configuration, surfaces as
OrderCreationError so the reconciler can leave the session unmarked for a
later retry.

Emptying the buyer cart through the Storefront GraphQL API is best-effort:
failures are logged and reported as False, never raised.
"""
import re
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog

from payment_broker.config import Settings, get_settings
from payment_broker.core.errors import OrderCreationError
from payment_broker.core.models import ConfirmedPayment, CustomerInfo, OrderResult
from payment_broker.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

FALLBACK_EMAIL = "noreply@notforresale.it"
FALLBACK_PHONE = "+39 000 0000000"

CART_LINES_QUERY = """
query getCart($cartId: ID!) {
  cart(id: $cartId) {
    lines(first: 100) { edges { node { id } } }
  }
}
"""

CART_LINES_REMOVE_MUTATION = """
mutation cartLinesRemove($cartId: ID!, $lineIds: [ID!]!) {
  cartLinesRemove(cartId: $cartId, lineIds: $lineIds) {
    cart { id totalQuantity }
    userErrors { field message }
  }
}
"""


def _format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def _variant_id(item: Dict[str, Any]) -> Optional[int]:
    """Numeric variant id from a plain id or a gid://shopify/ProductVariant/... URI."""
    raw = item.get("variant_id") or item.get("id")
    if raw is None:
        return None
    digits = re.sub(r"\D", "", str(raw).rsplit("/", 1)[-1])
    if not digits or int(digits) <= 0:
        return None
    return int(digits)


def build_line_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Map cart snapshot items to order line items, skipping unusable ones."""
    line_items = []
    for index, item in enumerate(items):
        variant_id = _variant_id(item)
        if variant_id is None:
            logger.warning("order_line_item_skipped", position=index + 1, reason="invalid_variant_id")
            continue
        quantity = int(item.get("quantity") or 1)
        line_cents = item.get("line_price_cents") or int(item.get("price_cents") or 0) * quantity
        line_items.append(
            {
                "variant_id": variant_id,
                "quantity": quantity,
                "price": _format_amount(int(line_cents)),
            }
        )
    return line_items


def _address(customer: CustomerInfo, first_name: str, last_name: str, phone: str) -> Dict[str, str]:
    return {
        "first_name": first_name,
        "last_name": last_name,
        "address1": customer.address1 or "N/A",
        "address2": customer.address2,
        "city": customer.city or "N/A",
        "province": customer.province,
        "zip": customer.postal_code or "00000",
        "country_code": customer.country_code,
        "phone": phone,
    }


def build_order_payload(
    items: List[Dict[str, Any]],
    customer: CustomerInfo,
    payment: ConfirmedPayment,
    shipping_cents: int = 0,
) -> Dict[str, Any]:
    """
    Build the orders.json request body.

    Raises:
        OrderCreationError: If no cart item maps to a valid line item
    """
    line_items = build_line_items(items)
    if not line_items:
        raise OrderCreationError("No valid line items in cart", session_id=payment.session_id)

    name_parts = (customer.display_name or "Cliente Checkout").split()
    first_name = name_parts[0]
    last_name = " ".join(name_parts[1:]) or "Checkout"
    phone = customer.phone if len(customer.phone) >= 5 else FALLBACK_PHONE
    email = customer.email or FALLBACK_EMAIL
    address = _address(customer, first_name, last_name, phone)

    order: Dict[str, Any] = {
        "email": email,
        "fulfillment_status": "unfulfilled",
        "financial_status": "paid",
        "send_receipt": True,
        "send_fulfillment_receipt": False,
        "line_items": line_items,
        "customer": {
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "phone": phone,
        },
        "shipping_address": address,
        "billing_address": dict(address),
        "transactions": [
            {
                "kind": "sale",
                "status": "success",
                "amount": _format_amount(payment.amount_cents),
                "currency": payment.currency.upper(),
                "gateway": f"Stripe ({payment.account_label})",
                "authorization": payment.reference_id,
            }
        ],
        "note": (
            f"Checkout custom - Session: {payment.session_id} - "
            f"Stripe Account: {payment.account_label} - Payment Intent: {payment.reference_id}"
        ),
        "tags": f"checkout-custom,stripe-paid,{payment.account_label},automated",
    }
    if shipping_cents > 0:
        order["shipping_lines"] = [
            {"title": "Spedizione Standard", "price": _format_amount(shipping_cents), "code": "STANDARD"}
        ]
    return {"order": order}


class ShopifyOrderClient:
    """Creates paid orders through the Shopify Admin API."""

    def __init__(
        self,
        shop_domain: str,
        admin_token: str,
        api_version: str = "2024-10",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        storefront_token: str = "",
    ):
        self.shop_domain = shop_domain.strip().rstrip("/")
        self.admin_token = admin_token.strip()
        self.storefront_token = storefront_token.strip()
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ShopifyOrderClient":
        """Create a client from application settings."""
        settings = settings or get_settings()
        return cls(
            shop_domain=settings.shopify_shop_domain,
            admin_token=settings.shopify_admin_token,
            api_version=settings.shopify_api_version,
            timeout=settings.order_timeout_seconds,
            transport=transport,
            storefront_token=settings.shopify_storefront_token,
        )

    @property
    def orders_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/orders.json"

    @property
    def storefront_url(self) -> str:
        return f"https://{self.shop_domain}/api/{self.api_version}/graphql.json"

    async def create_order(
        self,
        items: List[Dict[str, Any]],
        customer: CustomerInfo,
        payment_reference: ConfirmedPayment,
        shipping_cents: int = 0,
    ) -> OrderResult:
        """
        Create a paid order for a confirmed payment.

        Args:
            items: Cart snapshot items
            customer: Customer captured at checkout
            payment_reference: The confirmed charge
            shipping_cents: Shipping charged on the order

        Returns:
            OrderResult: Shopify order id and order number

        Raises:
            OrderCreationError: On missing configuration or any API failure
        """
        session_id = payment_reference.session_id
        if not self.shop_domain or not self.admin_token:
            logger.error("shopify_not_configured", session_id=session_id)
            raise OrderCreationError("Shopify shop domain or admin token missing", session_id=session_id)

        payload = build_order_payload(items, customer, payment_reference, shipping_cents)
        start_time = time.time()

        logger.info(
            "creating_shopify_order",
            session_id=session_id,
            line_items=len(payload["order"]["line_items"]),
            account_label=payment_reference.account_label,
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.orders_url,
                    json=payload,
                    headers={"X-Shopify-Access-Token": self.admin_token},
                )
        except httpx.HTTPError as e:
            metrics.record_order_creation("failed", time.time() - start_time)
            logger.error(
                "shopify_request_failed",
                session_id=session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise OrderCreationError(f"Shopify request failed: {type(e).__name__}", session_id=session_id) from e

        if response.is_error:
            metrics.record_order_creation("failed", time.time() - start_time)
            logger.error(
                "shopify_order_rejected",
                session_id=session_id,
                status_code=response.status_code,
                body=response.text[:1000],
            )
            raise OrderCreationError(
                f"Shopify rejected order with status {response.status_code}", session_id=session_id
            )

        try:
            order = response.json().get("order") or {}
        except ValueError as e:
            metrics.record_order_creation("failed", time.time() - start_time)
            raise OrderCreationError("Shopify returned a non-JSON response", session_id=session_id) from e

        if not order.get("id"):
            metrics.record_order_creation("failed", time.time() - start_time)
            logger.error("shopify_order_missing_id", session_id=session_id)
            raise OrderCreationError("Shopify response has no order id", session_id=session_id)

        result = OrderResult(
            order_id=str(order["id"]),
            order_number=str(order["order_number"]) if order.get("order_number") is not None else None,
        )
        metrics.record_order_creation("success", time.time() - start_time)
        logger.info(
            "shopify_order_created",
            session_id=session_id,
            order_id=result.order_id,
            order_number=result.order_number,
        )
        return result

    async def clear_cart(self, cart_id: str) -> bool:
        """
        Remove every line from a storefront cart.

        Args:
            cart_id: Storefront cart id (gid://shopify/Cart/...)

        Returns:
            bool: True if the cart is empty afterwards, False if clearing was
            skipped or failed
        """
        if not self.shop_domain or not self.storefront_token:
            logger.info("cart_clear_skipped", cart_id=cart_id, reason="storefront_not_configured")
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                lines = await self._storefront(client, CART_LINES_QUERY, {"cartId": cart_id})
                edges = ((lines.get("cart") or {}).get("lines") or {}).get("edges") or []
                line_ids = [edge["node"]["id"] for edge in edges if (edge.get("node") or {}).get("id")]
                if not line_ids:
                    logger.info("cart_already_empty", cart_id=cart_id)
                    return True

                removed = await self._storefront(
                    client,
                    CART_LINES_REMOVE_MUTATION,
                    {"cartId": cart_id, "lineIds": line_ids},
                )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "cart_clear_failed",
                cart_id=cart_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        user_errors = (removed.get("cartLinesRemove") or {}).get("userErrors") or []
        if user_errors:
            logger.warning("cart_clear_rejected", cart_id=cart_id, errors=user_errors)
            return False

        logger.info("cart_cleared", cart_id=cart_id, lines_removed=len(line_ids))
        return True

    async def _storefront(
        self,
        client: httpx.AsyncClient,
        query: str,
        variables: Dict[str, Any],
    ) -> Dict[str, Any]:
        """POST one GraphQL operation; raises ValueError on GraphQL errors."""
        response = await client.post(
            self.storefront_url,
            json={"query": query, "variables": variables},
            headers={"X-Shopify-Storefront-Access-Token": self.storefront_token},
        )
        response.raise_for_status()
        body = response.json()
        if body.get("errors"):
            raise ValueError(f"Storefront API errors: {body['errors']}")
        return body.get("data") or {}
