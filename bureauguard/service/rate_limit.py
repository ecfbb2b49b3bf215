from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from bureauguard.logging import get_logger
from bureauguard.service.errors import RateLimitedError
from bureauguard.storage.models import AttemptCounts, Block, BlockStatus

logger = get_logger(__name__)


class RateLimitStore(Protocol):
    def record_failure(self, account: Optional[str], origin: str, now: datetime) -> None: ...

    def count_recent_failures(
        self, account: Optional[str], origin: str, now: datetime, window_minutes: int
    ) -> AttemptCounts: ...

    def get_block_status(
        self, account: Optional[str], origin: Optional[str], now: datetime
    ) -> BlockStatus: ...

    def create_block(
        self,
        account: Optional[str],
        origin: Optional[str],
        expires_at: datetime,
        *,
        now: datetime,
    ) -> Block: ...

    def clear_account_failures(self, account: str) -> int: ...

    def purge_expired(self, now: datetime, window_minutes: int) -> int: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoginRateLimitService:
    """Failed-login policy over a rate limit store.

    A failure is counted while ``now - window < timestamp``. Reaching a
    threshold blocks that key (account or origin) for ``block_minutes``.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        window_minutes: int = 10,
        block_minutes: int = 10,
        account_threshold: int = 10,
        origin_threshold: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if window_minutes <= 0:
            raise ValueError("window_minutes must be greater than zero")
        if block_minutes <= 0:
            raise ValueError("block_minutes must be greater than zero")
        if account_threshold <= 0 or origin_threshold <= 0:
            raise ValueError("thresholds must be greater than zero")
        self.store = store
        self.window_minutes = window_minutes
        self.block_minutes = block_minutes
        self.account_threshold = account_threshold
        self.origin_threshold = origin_threshold
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    def block_status(self, account: Optional[str], origin: str) -> BlockStatus:
        return self.store.get_block_status(account, origin, self._now())

    def check_block(self, account: Optional[str], origin: str) -> None:
        now = self._now()
        status = self.store.get_block_status(account, origin, now)
        if not status.blocked:
            return
        retry_after = 0
        if status.expires_at is not None:
            retry_after = math.ceil((status.expires_at - now).total_seconds())
        logger.warning(
            "login_blocked",
            account=account,
            origin=origin,
            blocked_by="account" if status.account else "origin",
            retry_after=retry_after,
        )
        raise RateLimitedError(
            "too many failed login attempts",
            retry_after=retry_after,
            detail={
                "expires_at": status.expires_at.isoformat() if status.expires_at else None,
            },
        )

    def record_failure(self, account: Optional[str], origin: str) -> AttemptCounts:
        now = self._now()
        self.store.record_failure(account, origin, now)
        counts = self.store.count_recent_failures(
            account, origin, now, self.window_minutes
        )
        expires_at = now + timedelta(minutes=self.block_minutes)
        if account is not None and counts.account >= self.account_threshold:
            self.store.create_block(account, None, expires_at, now=now)
            logger.warning(
                "rate_limit_block_created",
                account=account,
                failures=counts.account,
                expires_at=expires_at.isoformat(),
            )
        if counts.origin >= self.origin_threshold:
            self.store.create_block(None, origin, expires_at, now=now)
            logger.warning(
                "rate_limit_block_created",
                origin=origin,
                failures=counts.origin,
                expires_at=expires_at.isoformat(),
            )
        return counts

    def clear_account(self, account: str) -> int:
        return self.store.clear_account_failures(account)

    def cleanup(self) -> int:
        removed = self.store.purge_expired(self._now(), self.window_minutes)
        logger.info("rate_limit_cleanup", removed=removed)
        return removed
