from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from bureauguard.client.coordinator import CoordinatedAuth, TokenRefreshCoordinator
from bureauguard.client.monitor import ActivityBus, ActivityMonitor, ActivitySource
from bureauguard.client.session import SessionState, SessionTerminator
from bureauguard.client.storage import ClientTokenState, TokenStorage
from bureauguard.logging import get_logger
from bureauguard.service.errors import (
    AuthenticationError,
    RateLimitedError,
    ServiceError,
)

logger = get_logger(__name__)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AuthApiClient:
    """Calls the /v1/auth endpoints and unwraps their envelopes."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.http = http
        self._now = now or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def _bearer(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _raise_for_error(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        message = "request failed"
        details = None
        code = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = body["error"].get("message") or message
            details = body["error"].get("details")
            code = body["error"].get("code")
        if response.status_code == 401:
            raise AuthenticationError(message)
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "0")
            raise RateLimitedError(
                message,
                retry_after=int(retry_after) if retry_after.isdigit() else 0,
            )
        raise ServiceError(
            message,
            status_code=response.status_code,
            detail=details if isinstance(details, dict) else None,
            error_code=code,
        )

    def _token_state(self, response: httpx.Response) -> ClientTokenState:
        self._raise_for_error(response)
        data = response.json().get("data") or {}
        token = data.get("token")
        if not token:
            raise ServiceError("response carried no token", status_code=502, error_code="server_error")
        return ClientTokenState(
            token=token,
            issued_at=_parse_datetime(data.get("issued_at")) or self._now(),
            expires_at=_parse_datetime(data.get("expires_at")),
        )

    async def login(
        self, email: str, password: str, *, remember_me: bool = False
    ) -> ClientTokenState:
        response = await self.http.post(
            "/v1/auth/login",
            json={"email": email, "password": password, "remember_me": remember_me},
        )
        return self._token_state(response)

    async def refresh_token(self, token: str) -> ClientTokenState:
        response = await self.http.post("/v1/auth/token-refresh", headers=self._bearer(token))
        return self._token_state(response)

    async def logout(self, token: str) -> bool:
        response = await self.http.post("/v1/auth/logout", headers=self._bearer(token))
        self._raise_for_error(response)
        return bool((response.json().get("data") or {}).get("revoked"))


class AuthenticatedClient:
    """Wires storage, session, coordinator and activity monitor around two httpx clients.

    ``http`` carries application calls with coordinated bearer auth; the
    auth endpoints go through a separate plain client so a refresh never
    re-enters the coordinator.
    """

    def __init__(
        self,
        base_url: str,
        *,
        storage_path: str | os.PathLike[str] | None = None,
        notifier: Optional[Callable[[str], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        activity_source: Optional[ActivitySource] = None,
        debounce_seconds: float = 5.0,
        threshold_fraction: float = 0.10,
        now: Optional[Callable[[], datetime]] = None,
        timeout: float = 10.0,
    ) -> None:
        self.storage = TokenStorage(storage_path)
        stored = self.storage.load_token()
        self.session = SessionState(authenticated=bool(stored and stored.token))
        self.terminator = SessionTerminator(self.storage, self.session, notifier)
        self._auth_http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self.api = AuthApiClient(self._auth_http, now=now)
        self.coordinator = TokenRefreshCoordinator(
            self.storage,
            self.session,
            self.terminator,
            self.api.refresh_token,
            now=now,
        )
        self.http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            auth=CoordinatedAuth(self.coordinator),
        )
        self.activity = activity_source or ActivityBus()
        self.monitor = ActivityMonitor(
            self.coordinator,
            self.session,
            self.activity,
            debounce_seconds=debounce_seconds,
            threshold_fraction=threshold_fraction,
        )
        self.session.subscribe(self._on_auth_change)
        if self.session.authenticated:
            self._start_monitoring()

    def _on_auth_change(self, authenticated: bool) -> None:
        if authenticated:
            self._start_monitoring()

    def _start_monitoring(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Built outside an event loop; __aenter__ starts it later
            return
        self.monitor.start()

    async def login(self, email: str, password: str, *, remember_me: bool = False) -> ClientTokenState:
        state = await self.api.login(email, password, remember_me=remember_me)
        self.coordinator.set_token(state)
        self._start_monitoring()
        logger.info("client_logged_in", remember_me=remember_me)
        return state

    async def logout(self) -> None:
        token = self.coordinator.current_token
        try:
            if token:
                await self.api.logout(token)
        finally:
            self.coordinator.clear()

    async def aclose(self) -> None:
        self.monitor.stop()
        await self.http.aclose()
        await self._auth_http.aclose()

    async def __aenter__(self) -> "AuthenticatedClient":
        if self.session.authenticated:
            self._start_monitoring()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
