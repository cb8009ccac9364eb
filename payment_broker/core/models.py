"""
Domain models shared by the rotation selector, the payment intent manager and
the webhook reconciler.

These are plain pydantic models; the ORM rows in database.models are mapped
to and from them by the registry and the session store.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

# Accounts carry at most this many display titles (title-1 .. title-10).
MAX_DISPLAY_TITLES = 10


class Account(BaseModel):
    """
    A payment account credential set with its activation metadata.

    Credentials are SecretStr so they never render in logs or reprs.
    """

    label: str = Field(..., min_length=1, description="Unique account label")
    secret_key: SecretStr = Field(default=SecretStr(""), description="Charge API secret key")
    publishable_key: str = Field(default="", description="Publishable key handed to browsers")
    webhook_secret: SecretStr = Field(default=SecretStr(""), description="Webhook signing secret")
    active: bool = Field(default=False, description="Whether the account takes part in rotation")
    order: int = Field(default=0, description="Rotation rank, ascending")
    merchant_site: str = Field(default="", description="Merchant site reported in metadata")
    display_titles: List[str] = Field(
        default_factory=list, description=f"Up to {MAX_DISPLAY_TITLES} display titles"
    )
    last_used_at: Optional[datetime] = Field(default=None, description="Audit only")

    @field_validator("label")
    @classmethod
    def strip_label(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("label must not be blank")
        return v

    @field_validator("display_titles")
    @classmethod
    def validate_display_titles(cls, v: List[str]) -> List[str]:
        """Drop blank titles and enforce the upper bound."""
        titles = [title.strip() for title in v if title and title.strip()]
        if len(titles) > MAX_DISPLAY_TITLES:
            raise ValueError(f"At most {MAX_DISPLAY_TITLES} display titles are allowed")
        return titles

    @property
    def is_eligible(self) -> bool:
        """Active and holding both the charge and the publishable credential."""
        return (
            self.active
            and bool(self.secret_key.get_secret_value())
            and bool(self.publishable_key)
        )

    @property
    def can_verify_webhooks(self) -> bool:
        return self.is_eligible and bool(self.webhook_secret.get_secret_value())

    @property
    def rotation_key(self) -> tuple[int, str]:
        return (self.order, self.label)

    def public_view(self) -> Dict[str, Any]:
        """Account fields that are safe to hand to a browser."""
        return {
            "label": self.label,
            "publishable_key": self.publishable_key,
            "order": self.order,
            "merchant_site": self.merchant_site,
        }


class CustomerInfo(BaseModel):
    """Customer details captured during checkout."""

    full_name: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    postal_code: str = ""
    province: str = ""
    country_code: str = "IT"

    @field_validator("*", mode="before")
    @classmethod
    def strip_strings(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("country_code")
    @classmethod
    def upper_country(cls, v: str) -> str:
        return (v or "IT").upper()

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def has_shipping_address(self) -> bool:
        return bool(self.display_name and self.address1 and self.city and self.postal_code)


class SessionTotals(BaseModel):
    """Monetary totals of a cart, all in minor units."""

    subtotal_cents: int = Field(default=0, ge=0)
    shipping_cents: int = Field(default=0, ge=0)
    discount_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def total_cents(self) -> int:
        return compute_amount_cents(self.subtotal_cents, self.shipping_cents, self.discount_cents)


def compute_amount_cents(subtotal_cents: int, shipping_cents: int, discount_cents: int) -> int:
    """Charge amount from cart parts; a discount never drives it below zero."""
    return max(0, subtotal_cents + shipping_cents - discount_cents)


class CheckoutSession(BaseModel):
    """Durable per-checkout record."""

    session_id: str
    cart_snapshot: Dict[str, Any] = Field(default_factory=dict)
    totals: SessionTotals = Field(default_factory=SessionTotals)
    customer: Optional[CustomerInfo] = None
    payment_reference_id: Optional[str] = None
    payment_reference_secret: Optional[str] = None
    account_label_used: Optional[str] = None
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    processed_at: Optional[datetime] = None
    order_claimed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def items(self) -> List[Dict[str, Any]]:
        return list(self.cart_snapshot.get("items") or [])

    @property
    def cart_id(self) -> Optional[str]:
        """Storefront cart the snapshot was taken from, if the client sent one."""
        return self.cart_snapshot.get("cart_id") or None

    @property
    def is_processed(self) -> bool:
        return self.order_id is not None

    def public_view(self) -> Dict[str, Any]:
        """Session fields without the payment reference secret."""
        return self.model_dump(
            mode="json",
            exclude={"payment_reference_secret", "order_claimed_at"},
        )


class ConditionalWriteResult(BaseModel):
    """Outcome of a create-if-absent / mark-if-absent write."""

    applied: bool
    current: CheckoutSession

    @property
    def created(self) -> bool:
        return self.applied


class PaymentReference(BaseModel):
    """Provider-side handle of a pending charge."""

    id: str
    client_secret: str
    status: Optional[str] = None


class PaymentRequestResult(BaseModel):
    """What the checkout flow needs to confirm a payment in the browser."""

    client_secret: str
    payment_reference_id: str
    account_label: str
    publishable_key: str
    amount_cents: int
    currency: str
    created: bool


class ConfirmedPayment(BaseModel):
    """A provider-confirmed charge, as handed to order creation."""

    reference_id: str
    amount_cents: int
    currency: str
    account_label: str
    session_id: str


class OrderResult(BaseModel):
    """Identifiers returned by the commerce platform."""

    order_id: str
    order_number: Optional[str] = None


class ReconcileStatus(str, Enum):
    """Outcome classes of a webhook reconciliation."""

    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"


class ReconcileResult(BaseModel):
    """Structured acknowledgement of one webhook delivery."""

    status: ReconcileStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    account_label: Optional[str] = None
    session_id: Optional[str] = None
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    warning: Optional[str] = None


class ConfirmationEvent(BaseModel):
    """The subset of a provider event the reconciler reads."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def payment_object(self) -> Dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}

    @property
    def metadata(self) -> Dict[str, Any]:
        metadata = self.payment_object.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def session_id(self) -> Optional[str]:
        value = self.metadata.get("session_id")
        return str(value) if value else None


class RotationStatus(BaseModel):
    """Which account the current rotation window serves."""

    account: Dict[str, Any]
    slot_number: int
    total_slots: int
    window_index: int
    next_rotation_at: datetime
