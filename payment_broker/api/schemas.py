"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from payment_broker.core.models import CustomerInfo


class CartItem(BaseModel):
    """One cart line, prices in minor units."""

    id: str = Field(default="", description="Cart line id")
    variant_id: str = Field(..., min_length=1, description="Product variant id")
    product_id: str = Field(default="", description="Product id")
    title: str = Field(default="Product", description="Product title")
    quantity: int = Field(default=1, ge=1, description="Quantity")
    price_cents: int = Field(..., ge=0, description="Unit price in cents")
    line_price_cents: Optional[int] = Field(default=None, ge=0, description="Line total in cents")
    image: str = Field(default="", description="Image URL")

    @field_validator("id", "variant_id", "product_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        """Cart APIs hand out numeric ids; they are stored as strings."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @property
    def line_total_cents(self) -> int:
        if self.line_price_cents is not None:
            return self.line_price_cents
        return self.price_cents * self.quantity


class CreateCartSessionRequest(BaseModel):
    """Request schema for capturing a cart into a checkout session."""

    items: List[CartItem] = Field(..., min_length=1, description="Cart lines")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3, description="Currency code")
    subtotal_cents: Optional[int] = Field(
        default=None, ge=0, description="Cart subtotal in cents (sum of lines if omitted)"
    )
    shipping_cents: int = Field(default=0, ge=0, description="Shipping in cents")
    discount_cents: int = Field(default=0, ge=0, description="Discount in cents")
    customer: Optional[CustomerInfo] = Field(default=None, description="Customer details, if known")
    cart_id: Optional[str] = Field(
        default=None, max_length=255, description="Storefront cart id, emptied once the order exists"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [
                        {
                            "variant_id": "44556677889900",
                            "title": "Linen shirt",
                            "quantity": 2,
                            "price_cents": 2450,
                        }
                    ],
                    "currency": "EUR",
                    "shipping_cents": 590,
                }
            ]
        }
    }


class SessionTotalsResponse(BaseModel):
    """Totals of a checkout session."""

    subtotal_cents: int
    shipping_cents: int
    discount_cents: int
    currency: str


class CheckoutSessionResponse(BaseModel):
    """Response schema for a checkout session (no payment secret)."""

    session_id: str = Field(..., description="Checkout session id")
    cart_snapshot: Dict[str, Any] = Field(default_factory=dict, description="Captured cart")
    totals: SessionTotalsResponse
    customer: Optional[CustomerInfo] = None
    payment_reference_id: Optional[str] = None
    account_label_used: Optional[str] = None
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PaymentIntentRequest(BaseModel):
    """
    Request schema for creating or refreshing a session's payment request.

    No total is accepted: the amount is recomputed from the stored cart.
    """

    session_id: str = Field(..., min_length=1, description="Checkout session id")
    shipping_cents: Optional[int] = Field(
        default=None, ge=0, description="Shipping in cents (session value if omitted)"
    )
    discount_cents: Optional[int] = Field(
        default=None, ge=0, description="Discount in cents (session value if omitted)"
    )
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3, description="Currency code")
    customer: Optional[CustomerInfo] = Field(default=None, description="Customer details")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v


class PaymentIntentResponse(BaseModel):
    """Response schema for a payment request."""

    client_secret: str = Field(..., description="Client secret for browser confirmation")
    payment_reference_id: str = Field(..., description="Stripe PaymentIntent ID")
    account_label: str = Field(..., description="Account the intent lives on")
    publishable_key: str = Field(..., description="Publishable key of that account")
    amount_cents: int = Field(..., description="Charged amount in cents")
    currency: str = Field(..., description="Currency code")
    created: bool = Field(..., description="True if this call created the reference")


class RotationStatusResponse(BaseModel):
    """Response schema for the rotation status."""

    account: Dict[str, Any] = Field(..., description="Current account (public fields only)")
    slot_number: int = Field(..., description="1-based slot of the current account")
    total_slots: int = Field(..., description="Number of eligible accounts")
    window_index: int = Field(..., description="Index of the current rotation window")
    next_rotation_at: datetime = Field(..., description="Start of the next window")


class WebhookResponse(BaseModel):
    """Response schema for webhook acknowledgement."""

    received: bool = True
    status: str = Field(..., description="processed, already_processed, ignored or order_creation_failed")
    event_id: Optional[str] = None
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    warning: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    message: Optional[str] = Field(default=None, description="Status message")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
