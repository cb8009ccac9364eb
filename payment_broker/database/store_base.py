"""Shared plumbing for the account registry and the session store."""
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_broker.config import Settings, get_settings
from payment_broker.core.errors import StoreUnavailableError
from payment_broker.database.connection import get_session_factory

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; everything here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StoreBase:
    """
    Base class for store components backed by the SQL database.

    Every operation runs in its own session under an explicit timeout. A
    timeout or driver failure surfaces as StoreUnavailableError so callers
    can request a retry instead of guessing at the outcome.
    """

    store_name = "store"

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Optional session factory (global one if not provided)
            settings: Optional settings (cached settings if not provided)
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.timeout = self.settings.store_timeout_seconds

    async def _run(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(func(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                "store_operation_timeout",
                store=self.store_name,
                operation=operation,
                timeout_seconds=self.timeout,
            )
            raise StoreUnavailableError(
                f"{self.store_name} timed out during {operation}"
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "store_operation_failed",
                store=self.store_name,
                operation=operation,
                error=str(e),
            )
            raise StoreUnavailableError(f"{self.store_name} failed during {operation}") from e
