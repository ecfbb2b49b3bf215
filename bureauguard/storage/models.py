from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class FailedAttempt:
    timestamp: datetime
    origin: str
    account: Optional[str] = None


@dataclass
class Block:
    created_at: datetime
    expires_at: datetime
    account: Optional[str] = None
    origin: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class BlockStatus:
    blocked: bool
    account: Optional[str] = None
    origin: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def clear(cls) -> "BlockStatus":
        return cls(blocked=False)

    @classmethod
    def from_block(cls, block: Block) -> "BlockStatus":
        return cls(
            blocked=True,
            account=block.account,
            origin=block.origin,
            expires_at=block.expires_at,
        )


@dataclass
class AttemptCounts:
    account: int = 0
    origin: int = 0


@dataclass
class IssuedToken:
    jti: str
    user_id: str
    issued_at: datetime


@dataclass
class UserCredential:
    user_id: str
    email: str
    password_hash: str
    is_active: bool = True
