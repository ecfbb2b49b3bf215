from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from bureauguard.logging import get_logger
from bureauguard.storage.errors import ConstraintViolation, StorageError
from bureauguard.storage.models import IssuedToken


class RedisReplayGuard:
    """Token identifier whitelist with one Redis key per identifier.

    Values are ``user_id:unix_ts``. Keys never expire unless ``ttl_seconds``
    is given, in which case every registration carries that TTL.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: Optional[Redis] = None,
        key_prefix: str = "bureauguard:jti:",
        ttl_seconds: Optional[int] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger(__name__)

    def _key(self, jti: str) -> str:
        return f"{self.key_prefix}{jti}"

    def _fail(self, operation: str, exc: Exception) -> StorageError:
        self.logger.error("redis_operation_failed", operation=operation, error=str(exc))
        return StorageError(f"{operation} failed", {"operation": operation})

    def verify_connection(self) -> None:
        try:
            self.client.ping()
        except RedisError as exc:
            raise self._fail("ping", exc) from exc

    def register(self, jti: str, user_id: str, issued_at: datetime) -> IssuedToken:
        value = f"{user_id}:{int(issued_at.timestamp())}"
        try:
            created = self.client.set(self._key(jti), value, nx=True, ex=self.ttl_seconds)
        except RedisError as exc:
            raise self._fail("register_token", exc) from exc
        if not created:
            raise ConstraintViolation("token identifier exists", {"jti": jti})
        return IssuedToken(jti=jti, user_id=user_id, issued_at=issued_at)

    def get(self, jti: str) -> Optional[IssuedToken]:
        try:
            raw = self.client.get(self._key(jti))
        except RedisError as exc:
            raise self._fail("get_token", exc) from exc
        if raw is None:
            return None
        user_id, _, ts = str(raw).rpartition(":")
        try:
            issued_at = datetime.fromtimestamp(int(ts), tz=timezone.utc)
        except ValueError:
            self.logger.warning("replay_guard_malformed_entry", jti=jti)
            return None
        return IssuedToken(jti=jti, user_id=user_id, issued_at=issued_at)

    def contains(self, jti: str) -> bool:
        try:
            return bool(self.client.exists(self._key(jti)))
        except RedisError as exc:
            raise self._fail("contains_token", exc) from exc

    def revoke(self, jti: str) -> bool:
        try:
            removed = bool(self.client.delete(self._key(jti)))
        except RedisError as exc:
            raise self._fail("revoke_token", exc) from exc
        if removed:
            self.logger.info("replay_guard_revoked", jti=jti)
        return removed

    def close(self) -> None:
        self.client.close()
