"""
Account registry: durable catalog of payment account credential sets.

Accounts are edited by configuration tooling; the broker itself only reads
them and records the last_used_at audit timestamp.
"""
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import or_, select, update

from payment_broker.core.models import Account
from payment_broker.database.models import PaymentAccountRecord
from payment_broker.database.store_base import StoreBase, as_utc

logger = structlog.get_logger(__name__)


def _to_account(record: PaymentAccountRecord) -> Account:
    return Account(
        label=record.label,
        secret_key=record.secret_key or "",
        publishable_key=record.publishable_key or "",
        webhook_secret=record.webhook_secret or "",
        active=bool(record.active),
        order=record.order or 0,
        merchant_site=record.merchant_site or "",
        display_titles=list(record.display_titles or []),
        last_used_at=as_utc(record.last_used_at),
    )


class AccountRegistry(StoreBase):
    """Reads and audits payment accounts."""

    store_name = "account_registry"

    async def get(self) -> List[Account]:
        """
        Load every configured account, eligible or not.

        Returns:
            List[Account]: Accounts sorted by (order, label)
        """

        async def _get() -> List[Account]:
            async with self.session_factory() as db:
                result = await db.execute(select(PaymentAccountRecord))
                records = result.scalars().all()
            return sorted((_to_account(r) for r in records), key=lambda a: a.rotation_key)

        return await self._run("get", _get)

    async def find(self, label: str) -> Optional[Account]:
        """Load a single account by label."""

        async def _find() -> Optional[Account]:
            async with self.session_factory() as db:
                record = await db.get(PaymentAccountRecord, label)
            return _to_account(record) if record is not None else None

        return await self._run("find", _find)

    async def set_last_used(
        self,
        label: str,
        timestamp: datetime,
        throttle: Optional[timedelta] = None,
    ) -> bool:
        """
        Record when an account was last selected.

        With a throttle, the write only applies when the stored value is
        missing or older than timestamp - throttle, so concurrent selectors
        collapse to a single write per interval.

        Args:
            label: Account label
            timestamp: Time of selection
            throttle: Optional minimum interval between writes

        Returns:
            bool: True if the row was updated
        """

        async def _set() -> bool:
            stmt = update(PaymentAccountRecord).where(PaymentAccountRecord.label == label)
            if throttle is not None:
                stmt = stmt.where(
                    or_(
                        PaymentAccountRecord.last_used_at.is_(None),
                        PaymentAccountRecord.last_used_at < timestamp - throttle,
                    )
                )
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        stmt.values(last_used_at=timestamp).execution_options(
                            synchronize_session=False
                        )
                    )
            return result.rowcount == 1

        return await self._run("set_last_used", _set)

    async def upsert(self, account: Account) -> Account:
        """
        Create or replace an account.

        last_used_at is preserved when the incoming account does not carry one.
        """

        async def _upsert() -> Account:
            async with self.session_factory() as db:
                async with db.begin():
                    record = await db.get(PaymentAccountRecord, account.label)
                    if record is None:
                        record = PaymentAccountRecord(label=account.label)
                        db.add(record)
                    record.secret_key = account.secret_key.get_secret_value()
                    record.publishable_key = account.publishable_key
                    record.webhook_secret = account.webhook_secret.get_secret_value()
                    record.active = account.active
                    record.order = account.order
                    record.merchant_site = account.merchant_site
                    record.display_titles = list(account.display_titles)
                    if account.last_used_at is not None:
                        record.last_used_at = account.last_used_at
                    stored = _to_account(record)
            logger.info(
                "payment_account_upserted",
                label=stored.label,
                active=stored.active,
                order=stored.order,
            )
            return stored

        return await self._run("upsert", _upsert)
