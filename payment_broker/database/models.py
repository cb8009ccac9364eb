"""SQLAlchemy database models for the payment broker."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentAccountRecord(Base):
    """
    Payment account credential sets.

    One row per account; the label is the natural key. The rotation
    selector only ever writes last_used_at.
    """

    __tablename__ = "payment_accounts"

    label: Mapped[str] = mapped_column(String(100), primary_key=True)
    secret_key: Mapped[str] = mapped_column(Text, nullable=False, default="")
    publishable_key: Mapped[str] = mapped_column(Text, nullable=False, default="")
    webhook_secret: Mapped[str] = mapped_column(Text, nullable=False, default="")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # "order" is a reserved word in SQL
    order: Mapped[int] = mapped_column("rotation_order", Integer, nullable=False, default=0)
    merchant_site: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    display_titles: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (Index("idx_payment_accounts_active_order", "active", "rotation_order"),)

    def __repr__(self) -> str:
        """String representation without credentials."""
        return (
            f"<PaymentAccountRecord(label={self.label}, active={self.active}, "
            f"order={self.order})>"
        )


class CheckoutSessionRecord(Base):
    """
    Per-checkout session records.

    payment_reference_id and order_id are only ever written through
    conditional UPDATEs guarded by "IS NULL", which makes both write-once.
    """

    __tablename__ = "checkout_sessions"

    session_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    cart_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shipping_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    customer: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    payment_reference_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    payment_reference_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    account_label_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    order_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    order_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("subtotal_cents >= 0", name="non_negative_subtotal"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
    )

    def __repr__(self) -> str:
        """String representation of CheckoutSessionRecord."""
        return (
            f"<CheckoutSessionRecord(session_id={self.session_id}, "
            f"payment_reference_id={self.payment_reference_id}, order_id={self.order_id})>"
        )
