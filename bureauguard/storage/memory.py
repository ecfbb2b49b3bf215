from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from bureauguard.logging import get_logger
from bureauguard.storage.errors import ConstraintViolation
from bureauguard.storage.models import (
    AttemptCounts,
    Block,
    BlockStatus,
    FailedAttempt,
    IssuedToken,
    UserCredential,
)


def _window_start(now: datetime, window_minutes: int) -> datetime:
    if window_minutes <= 0:
        raise ValueError("window_minutes must be greater than zero")
    return now - timedelta(minutes=window_minutes)


class MemoryRateLimitStore:
    """In-process failed-attempt and block tables.

    Counts are always derived by scanning the rows, never kept as counters.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.attempts: List[FailedAttempt] = []
        self.blocks: List[Block] = []
        self._data_lock = threading.RLock()

    def record_failure(
        self, account: Optional[str], origin: str, now: datetime
    ) -> None:
        with self._data_lock:
            self.attempts.append(
                FailedAttempt(timestamp=now, origin=origin, account=account)
            )

    def count_recent_failures(
        self,
        account: Optional[str],
        origin: str,
        now: datetime,
        window_minutes: int,
    ) -> AttemptCounts:
        since = _window_start(now, window_minutes)
        counts = AttemptCounts()
        with self._data_lock:
            for attempt in self.attempts:
                if attempt.timestamp <= since:
                    continue
                if account is not None and attempt.account == account:
                    counts.account += 1
                if attempt.origin == origin:
                    counts.origin += 1
        return counts

    def get_block_status(
        self, account: Optional[str], origin: Optional[str], now: datetime
    ) -> BlockStatus:
        with self._data_lock:
            matches = [
                block
                for block in self.blocks
                if block.is_active(now)
                and (
                    (account is not None and block.account == account)
                    or (origin is not None and block.origin == origin)
                )
            ]
        if not matches:
            return BlockStatus.clear()
        latest = max(matches, key=lambda block: block.expires_at)
        return BlockStatus.from_block(latest)

    def create_block(
        self,
        account: Optional[str],
        origin: Optional[str],
        expires_at: datetime,
        *,
        now: datetime,
    ) -> Block:
        block = Block(created_at=now, expires_at=expires_at, account=account, origin=origin)
        with self._data_lock:
            self.blocks.append(block)
        return block

    def clear_account_failures(self, account: str) -> int:
        cleared = 0
        with self._data_lock:
            for attempt in self.attempts:
                if attempt.account == account:
                    attempt.account = None
                    cleared += 1
        return cleared

    def purge_expired(self, now: datetime, window_minutes: int) -> int:
        cutoff = _window_start(now, window_minutes)
        with self._data_lock:
            kept_attempts = [a for a in self.attempts if a.timestamp > cutoff]
            kept_blocks = [b for b in self.blocks if b.is_active(now)]
            removed = (len(self.attempts) - len(kept_attempts)) + (
                len(self.blocks) - len(kept_blocks)
            )
            self.attempts = kept_attempts
            self.blocks = kept_blocks
        if removed:
            self.logger.info("rate_limit_purged", removed=removed)
        return removed


class MemoryReplayGuard:
    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tokens: Dict[str, IssuedToken] = {}
        self._data_lock = threading.RLock()

    def register(self, jti: str, user_id: str, issued_at: datetime) -> IssuedToken:
        with self._data_lock:
            if jti in self.tokens:
                raise ConstraintViolation("token identifier exists", {"jti": jti})
            record = IssuedToken(jti=jti, user_id=user_id, issued_at=issued_at)
            self.tokens[jti] = record
        return record

    def get(self, jti: str) -> Optional[IssuedToken]:
        with self._data_lock:
            return self.tokens.get(jti)

    def contains(self, jti: str) -> bool:
        return self.get(jti) is not None

    def revoke(self, jti: str) -> bool:
        with self._data_lock:
            removed = self.tokens.pop(jti, None)
        if removed is not None:
            self.logger.info("replay_guard_revoked", jti=jti, user_id=removed.user_id)
        return removed is not None


class MemoryCredentialStore:
    def __init__(self) -> None:
        self.users: Dict[str, UserCredential] = {}
        self._data_lock = threading.RLock()

    def get_by_email(self, email: str) -> Optional[UserCredential]:
        with self._data_lock:
            return self.users.get(email)

    def create_user(
        self, email: str, password_hash: str, *, user_id: Optional[str] = None
    ) -> UserCredential:
        with self._data_lock:
            if email in self.users:
                raise ConstraintViolation("email already registered", {"field": "email"})
            user = UserCredential(
                user_id=user_id or str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
            )
            self.users[email] = user
        return user
