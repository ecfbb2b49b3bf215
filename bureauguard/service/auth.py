from __future__ import annotations

import secrets
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bureauguard.logging import get_logger
from bureauguard.service.errors import (
    AuthenticationError,
    RateLimitedError,
    ValidationError,
)
from bureauguard.service.rate_limit import LoginRateLimitService
from bureauguard.service.tokens import REMEMBER_ME, SESSION, TokenGrant, TokenService
from bureauguard.storage.models import UserCredential

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid credentials"


class CredentialStore(Protocol):
    def get_by_email(self, email: str) -> Optional[UserCredential]: ...

    def create_user(
        self, email: str, password_hash: str, *, user_id: Optional[str] = None
    ) -> UserCredential: ...


def normalize_account(email: str) -> str:
    return (email or "").strip().lower()


class LoginService:
    """Password login wrapped in the failed-attempt policy.

    Blocked attempts, unknown accounts and wrong passwords all cost one
    argon2 verification and fail with the same error, unless
    ``reveal_blocks`` asks for blocked attempts to be reported as such.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        rate_limiter: LoginRateLimitService,
        tokens: TokenService,
        *,
        reveal_blocks: bool = False,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.reveal_blocks = reveal_blocks
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def register_user(self, email: str, password: str) -> UserCredential:
        account = normalize_account(email)
        if not account or "@" not in account:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        user = self.credentials.create_user(account, self.hash_password(password))
        logger.info("user_created", user_id=user.user_id)
        return user

    def login(
        self,
        email: str,
        password: str,
        origin: str,
        *,
        remember_me: bool = False,
    ) -> TokenGrant:
        account = normalize_account(email)
        blocked: Optional[RateLimitedError] = None
        try:
            self.rate_limiter.check_block(account, origin)
        except RateLimitedError as exc:
            blocked = exc

        user = self.credentials.get_by_email(account) if account else None
        usable = user is not None and user.is_active
        stored_hash = user.password_hash if usable else self._dummy_hash
        password_ok = self._verify_password(stored_hash, password or "")

        if blocked is not None:
            if self.reveal_blocks:
                raise blocked
            raise AuthenticationError(_INVALID_CREDENTIALS)

        if not usable or not password_ok:
            counts = self.rate_limiter.record_failure(account or None, origin)
            logger.warning(
                "login_failed",
                account=account,
                origin=origin,
                reason=(
                    "unknown_account"
                    if user is None
                    else "inactive_account" if not user.is_active else "bad_password"
                ),
                account_failures=counts.account,
                origin_failures=counts.origin,
            )
            raise AuthenticationError(_INVALID_CREDENTIALS)

        self.rate_limiter.clear_account(account)
        grant = self.tokens.issue(user.user_id, REMEMBER_ME if remember_me else SESSION)
        logger.info("login_succeeded", user_id=user.user_id, origin=origin)
        return grant
