"""
Time-sliced account rotation.

The account of record is a pure function of the eligible account set and
the wall clock:

    slot = floor(epoch_seconds(now) / window) mod len(eligible)

No counter is stored anywhere. The only write is the throttled
last_used_at audit timestamp, which never feeds back into selection.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

import structlog

from payment_broker.config import Settings, get_settings
from payment_broker.core.clock import Clock, SystemClock
from payment_broker.core.errors import ConfigurationError, StoreUnavailableError
from payment_broker.core.models import Account, RotationStatus
from payment_broker.database.account_registry import AccountRegistry
from payment_broker.database.store_base import as_utc
from payment_broker.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def window_index(now: datetime, window_seconds: int) -> int:
    """Index of the rotation window containing now; naive datetimes are UTC."""
    return int(as_utc(now).timestamp() // window_seconds)


def next_rotation_time(now: datetime, window_seconds: int) -> datetime:
    """Start of the window after the one containing now."""
    return datetime.fromtimestamp(
        (window_index(now, window_seconds) + 1) * window_seconds, tz=timezone.utc
    )


def eligible_accounts(accounts: Iterable[Account]) -> List[Account]:
    """Eligible accounts in rotation order: ascending order, then label."""
    return sorted((a for a in accounts if a.is_eligible), key=lambda a: a.rotation_key)


def select_account(accounts: Iterable[Account], now: datetime, window_seconds: int) -> Account:
    """
    Pick the account of record for the window containing now.

    Args:
        accounts: Registry contents, eligible or not
        now: Current time
        window_seconds: Rotation window duration

    Returns:
        Account: The selected account

    Raises:
        ConfigurationError: If no account is eligible
    """
    candidates = eligible_accounts(accounts)
    if not candidates:
        raise ConfigurationError("No active payment account is configured")
    return candidates[window_index(now, window_seconds) % len(candidates)]


class AccountRotationSelector:
    """
    Registry-backed rotation selector.

    Loads the registry on every call so configuration edits take effect at
    once; the choice itself is delegated to select_account.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the selector.

        Args:
            registry: Account registry
            clock: Optional clock (system UTC clock if not provided)
            settings: Optional settings
        """
        self.registry = registry
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.window_seconds = self.settings.rotation_window_seconds
        self.throttle = timedelta(seconds=self.settings.last_used_throttle_seconds)

    async def _pick(self, now: datetime) -> tuple[Account, List[Account]]:
        accounts = await self.registry.get()
        try:
            account = select_account(accounts, now, self.window_seconds)
        except ConfigurationError:
            metrics.record_no_eligible_account()
            logger.error(
                "no_eligible_payment_account",
                configured_accounts=len(accounts),
            )
            raise
        return account, eligible_accounts(accounts)

    async def select(self) -> Account:
        """
        Select the account for the current window.

        Returns:
            Account: The selected account

        Raises:
            ConfigurationError: If no account is eligible
            StoreUnavailableError: If the registry cannot be read
        """
        now = self.clock.now()
        account, candidates = await self._pick(now)

        logger.info(
            "payment_account_selected",
            account_label=account.label,
            window_index=window_index(now, self.window_seconds),
            eligible_accounts=len(candidates),
        )
        metrics.record_account_selection(account.label)

        await self._record_last_used(account, now)
        return account

    async def _record_last_used(self, account: Account, now: datetime) -> None:
        """Best-effort audit write; a failure never fails the selection."""
        if account.last_used_at is not None and now - account.last_used_at <= self.throttle:
            return
        try:
            updated = await self.registry.set_last_used(account.label, now, throttle=self.throttle)
        except StoreUnavailableError as e:
            logger.warning(
                "last_used_update_failed",
                account_label=account.label,
                error=str(e),
            )
            return
        if updated:
            logger.debug("last_used_recorded", account_label=account.label)

    async def rotation_status(self) -> RotationStatus:
        """
        Describe the current rotation without writing to the registry.

        Returns:
            RotationStatus: Selected account (public fields), slot and next rotation
        """
        now = self.clock.now()
        account, candidates = await self._pick(now)
        return RotationStatus(
            account=account.public_view(),
            slot_number=candidates.index(account) + 1,
            total_slots=len(candidates),
            window_index=window_index(now, self.window_seconds),
            next_rotation_at=next_rotation_time(now, self.window_seconds),
        )
