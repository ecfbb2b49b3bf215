from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from bureauguard.config import Settings
from bureauguard.logging import get_logger
from bureauguard.service.errors import InvalidTokenError, ValidationError
from bureauguard.storage.errors import StorageError
from bureauguard.storage.models import IssuedToken

logger = get_logger(__name__)

SESSION = "session"
REMEMBER_ME = "remember_me"
CLI = "cli"
TOKEN_TYPES = frozenset({SESSION, REMEMBER_ME, CLI})


class ReplayGuard(Protocol):
    def register(self, jti: str, user_id: str, issued_at: datetime) -> IssuedToken: ...

    def get(self, jti: str) -> Optional[IssuedToken]: ...

    def contains(self, jti: str) -> bool: ...

    def revoke(self, jti: str) -> bool: ...


@dataclass
class TokenGrant:
    token: str
    token_type: str
    issued_at: datetime
    expires_at: Optional[datetime]
    jti: str


@dataclass
class TokenClaims:
    user_id: str
    jti: str
    token_type: str
    issued_at: datetime
    expires_at: Optional[datetime]


def _from_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class TokenService:
    """Mints and checks HS256 tokens whose identifiers live in a replay guard."""

    def __init__(
        self,
        settings: Settings,
        replay_guard: ReplayGuard,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is required to sign tokens")
        self.settings = settings
        self.replay_guard = replay_guard
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _ttl(self, token_type: str) -> Optional[timedelta]:
        if token_type == SESSION:
            return timedelta(minutes=self.settings.session_token_ttl_minutes)
        if token_type == REMEMBER_ME:
            return timedelta(minutes=self.settings.remember_me_token_ttl_minutes)
        return None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("unsupported token algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("bad token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("unexpected token audience")
        return payload

    def issue(self, user_id: str, token_type: str = SESSION) -> TokenGrant:
        if token_type not in TOKEN_TYPES:
            raise ValidationError(
                "unknown token type", detail={"token_type": token_type}
            )
        issued_at = self._now().replace(microsecond=0)
        ttl = self._ttl(token_type)
        expires_at = issued_at + ttl if ttl is not None else None
        jti = uuid.uuid4().hex
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "type": token_type,
        }
        if expires_at is not None:
            payload["exp"] = int(expires_at.timestamp())
        token = self._encode_jwt(payload)
        self.replay_guard.register(jti, user_id, issued_at)
        logger.info("token_issued", user_id=user_id, token_type=token_type, jti=jti)
        return TokenGrant(
            token=token,
            token_type=token_type,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=jti,
        )

    def decode(
        self,
        token: str,
        *,
        leeway: Optional[timedelta] = None,
        check_expiry: bool = True,
    ) -> TokenClaims:
        """Check signature, issuer, audience and expiry without consulting the whitelist."""

        payload = self._decode_jwt(token)
        token_type = payload.get("type")
        user_id = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(token_type, str) or token_type not in TOKEN_TYPES:
            raise InvalidTokenError("malformed token")
        if not user_id or not jti:
            raise InvalidTokenError("malformed token")
        try:
            expires_at = _from_ts(payload.get("exp"))
            issued_at = _from_ts(payload.get("iat"))
        except (TypeError, ValueError, OverflowError):
            raise InvalidTokenError("malformed token")
        if expires_at is None and token_type != CLI:
            raise InvalidTokenError("token has no expiry")
        if check_expiry and expires_at is not None:
            cutoff = self._now() - (leeway or timedelta(0))
            if expires_at <= cutoff:
                raise InvalidTokenError("token expired")
        return TokenClaims(
            user_id=str(user_id),
            jti=str(jti),
            token_type=token_type,
            issued_at=issued_at or self._now(),
            expires_at=expires_at,
        )

    def verify(self, token: str, *, leeway: Optional[timedelta] = None) -> TokenClaims:
        claims = self.decode(token, leeway=leeway)
        record = self.replay_guard.get(claims.jti)
        if record is None or record.user_id != claims.user_id:
            logger.warning("token_not_whitelisted", jti=claims.jti, user_id=claims.user_id)
            raise InvalidTokenError("token revoked")
        return claims

    def refresh(self, token: str) -> TokenGrant:
        """Swap a live or recently expired token for a new one of the same type.

        The old identifier is revoked before the new token is issued, so one
        token can only ever be refreshed once. If issuing fails after
        the revoke the caller is left without a token and has to log in again.
        """

        grace = timedelta(minutes=self.settings.refresh_grace_minutes)
        claims = self.verify(token, leeway=grace)
        if claims.token_type == CLI:
            raise ValidationError("cli tokens cannot be refreshed")
        if not self.replay_guard.revoke(claims.jti):
            raise InvalidTokenError("token revoked")
        try:
            grant = self.issue(claims.user_id, claims.token_type)
        except StorageError:
            logger.error(
                "token_refresh_issue_failed",
                user_id=claims.user_id,
                superseded_jti=claims.jti,
            )
            raise
        logger.info(
            "token_refreshed",
            user_id=claims.user_id,
            token_type=claims.token_type,
            superseded_jti=claims.jti,
            jti=grant.jti,
        )
        return grant

    def revoke(self, token: str) -> bool:
        claims = self.decode(token, check_expiry=False)
        return self.revoke_jti(claims.jti)

    def revoke_jti(self, jti: str) -> bool:
        removed = self.replay_guard.revoke(jti)
        logger.info("token_revoked", jti=jti, removed=removed)
        return removed
