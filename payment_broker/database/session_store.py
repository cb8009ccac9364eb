"""
Checkout session store with atomic conditional writes.

Idempotency of the whole broker rests on two writes here:

- create_payment_reference_if_absent: set payment_reference_id only if unset
- mark_processed_if_absent: set order_id only if unset

Both are single UPDATE ... WHERE <field> IS NULL statements committed in
their own transaction. The database evaluates the guard and applies the
write atomically, so concurrent callers cannot both succeed. There is no
read-then-write anywhere on these paths.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from payment_broker.core.errors import NotFoundError
from payment_broker.core.models import (
    CheckoutSession,
    ConditionalWriteResult,
    CustomerInfo,
    SessionTotals,
)
from payment_broker.database.models import CheckoutSessionRecord
from payment_broker.database.store_base import StoreBase, as_utc

logger = structlog.get_logger(__name__)


def _to_session(record: CheckoutSessionRecord) -> CheckoutSession:
    return CheckoutSession(
        session_id=record.session_id,
        cart_snapshot=dict(record.cart_snapshot or {}),
        totals=SessionTotals(
            subtotal_cents=record.subtotal_cents or 0,
            shipping_cents=record.shipping_cents or 0,
            discount_cents=record.discount_cents or 0,
            currency=record.currency or "EUR",
        ),
        customer=CustomerInfo(**record.customer) if record.customer else None,
        payment_reference_id=record.payment_reference_id,
        payment_reference_secret=record.payment_reference_secret,
        account_label_used=record.account_label_used,
        order_id=record.order_id,
        order_number=record.order_number,
        processed_at=as_utc(record.processed_at),
        order_claimed_at=as_utc(record.order_claimed_at),
        created_at=as_utc(record.created_at),
    )


class SessionStore(StoreBase):
    """Durable per-checkout records."""

    store_name = "session_store"

    async def _load(self, db: AsyncSession, session_id: str) -> CheckoutSession:
        record = await db.get(CheckoutSessionRecord, session_id, populate_existing=True)
        if record is None:
            raise NotFoundError(f"Checkout session {session_id} not found")
        return _to_session(record)

    async def _conditional_update(
        self,
        operation: str,
        session_id: str,
        guard: Any,
        values: Dict[str, Any],
    ) -> ConditionalWriteResult:
        async def _write() -> ConditionalWriteResult:
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(CheckoutSessionRecord)
                        .where(CheckoutSessionRecord.session_id == session_id, guard)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                applied = result.rowcount == 1
                current = await self._load(db, session_id)
            return ConditionalWriteResult(applied=applied, current=current)

        outcome = await self._run(operation, _write)
        logger.info(
            "session_conditional_write",
            operation=operation,
            session_id=session_id,
            applied=outcome.applied,
        )
        return outcome

    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        """
        Load a session.

        Returns:
            Optional[CheckoutSession]: The session, or None if it does not exist
        """

        async def _get() -> Optional[CheckoutSession]:
            async with self.session_factory() as db:
                record = await db.get(CheckoutSessionRecord, session_id)
                return _to_session(record) if record is not None else None

        return await self._run("get", _get)

    async def create(self, session: CheckoutSession) -> CheckoutSession:
        """
        Persist a new session captured from a cart.

        Payment and order fields are never accepted here; they only enter
        through the conditional writes below.
        """

        async def _create() -> CheckoutSession:
            async with self.session_factory() as db:
                async with db.begin():
                    db.add(
                        CheckoutSessionRecord(
                            session_id=session.session_id,
                            cart_snapshot=session.cart_snapshot,
                            subtotal_cents=session.totals.subtotal_cents,
                            shipping_cents=session.totals.shipping_cents,
                            discount_cents=session.totals.discount_cents,
                            currency=session.totals.currency,
                            customer=session.customer.model_dump() if session.customer else None,
                            created_at=session.created_at or datetime.now(timezone.utc),
                        )
                    )
                return await self._load(db, session.session_id)

        created = await self._run("create", _create)
        logger.info(
            "checkout_session_created",
            session_id=created.session_id,
            items=len(created.items),
            total_cents=created.totals.total_cents,
        )
        return created

    async def update_customer(self, session_id: str, customer: CustomerInfo) -> None:
        """Overwrite the customer block (last writer wins, nothing depends on it)."""

        async def _update() -> int:
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(CheckoutSessionRecord)
                        .where(CheckoutSessionRecord.session_id == session_id)
                        .values(customer=customer.model_dump())
                        .execution_options(synchronize_session=False)
                    )
            return result.rowcount

        if await self._run("update_customer", _update) == 0:
            raise NotFoundError(f"Checkout session {session_id} not found")

    async def create_payment_reference_if_absent(
        self,
        session_id: str,
        reference_id: str,
        reference_secret: str,
        account_label: str,
    ) -> ConditionalWriteResult:
        """
        Attach a payment reference unless the session already has one.

        Returns:
            ConditionalWriteResult: applied (created) flag and the stored session
        """
        return await self._conditional_update(
            "create_payment_reference_if_absent",
            session_id,
            CheckoutSessionRecord.payment_reference_id.is_(None),
            {
                "payment_reference_id": reference_id,
                "payment_reference_secret": reference_secret,
                "account_label_used": account_label,
            },
        )

    async def claim_order_creation(
        self,
        session_id: str,
        claimed_at: datetime,
        lease: timedelta,
    ) -> ConditionalWriteResult:
        """
        Take the order-creation lease for a session.

        Applies only while no order exists and no unexpired claim is held.
        An expired claim (a reconciler that died mid-flight) can be taken over.
        """
        return await self._conditional_update(
            "claim_order_creation",
            session_id,
            CheckoutSessionRecord.order_id.is_(None)
            & or_(
                CheckoutSessionRecord.order_claimed_at.is_(None),
                CheckoutSessionRecord.order_claimed_at < claimed_at - lease,
            ),
            {"order_claimed_at": claimed_at},
        )

    async def release_order_claim(self, session_id: str, claimed_at: datetime) -> bool:
        """Give back a lease taken at claimed_at, if it is still ours."""
        outcome = await self._conditional_update(
            "release_order_claim",
            session_id,
            CheckoutSessionRecord.order_id.is_(None)
            & (CheckoutSessionRecord.order_claimed_at == claimed_at),
            {"order_claimed_at": None},
        )
        return outcome.applied

    async def mark_processed_if_absent(
        self,
        session_id: str,
        order_id: str,
        order_number: Optional[str],
        timestamp: datetime,
    ) -> ConditionalWriteResult:
        """
        Record the created order unless one is already recorded.

        The order fields and the claim release land in the same statement.
        """
        return await self._conditional_update(
            "mark_processed_if_absent",
            session_id,
            CheckoutSessionRecord.order_id.is_(None),
            {
                "order_id": order_id,
                "order_number": order_number,
                "processed_at": timestamp,
                "order_claimed_at": None,
            },
        )
