from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Generator, MutableMapping, Optional

import httpx

from bureauguard.client.session import SessionState, SessionTerminator
from bureauguard.client.storage import ClientTokenState, TokenStorage
from bureauguard.logging import get_logger
from bureauguard.service.errors import AuthenticationError

logger = get_logger(__name__)

RefreshOperation = Callable[[str], Awaitable[ClientTokenState]]


class RefreshFailedError(AuthenticationError):
    """The one failure handed to every caller waiting on a refresh."""


class _Flight:
    __slots__ = ("task", "reactive")

    def __init__(self) -> None:
        self.task: Optional[asyncio.Task] = None
        self.reactive = False


class TokenRefreshCoordinator:
    """Owns the client's token and makes sure only one refresh runs at a time.

    Every caller that asks for a refresh while one is running awaits the same
    task and sees the same outcome: the same new token or the same
    RefreshFailedError instance. A failed refresh that any reactive caller
    was waiting on ends the session through the terminator.
    """

    def __init__(
        self,
        storage: TokenStorage,
        session: SessionState,
        terminator: SessionTerminator,
        refresh_operation: RefreshOperation,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.storage = storage
        self.session = session
        self.terminator = terminator
        self._refresh_operation = refresh_operation
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._state: Optional[ClientTokenState] = storage.load_token()
        self._flight: Optional[_Flight] = None
        self.refresh_count = 0
        self._generation = 0
        session.subscribe(self._on_auth_change)

    @property
    def token_state(self) -> Optional[ClientTokenState]:
        return self._state

    @property
    def current_token(self) -> Optional[str]:
        return self._state.token if self._state else None

    @property
    def refreshing(self) -> bool:
        return self._flight is not None

    def _on_auth_change(self, authenticated: bool) -> None:
        if not authenticated:
            self._state = None
            self._generation += 1

    def now(self) -> datetime:
        return self._now()

    def set_token(self, state: ClientTokenState) -> None:
        self._state = state
        self.storage.save_token(state)
        self.session.set_authenticated(bool(state.token))

    def clear(self) -> None:
        self._state = None
        self._generation += 1
        self.storage.clear_token()
        self.session.set_authenticated(False)

    def attach(self, headers: MutableMapping[str, str]) -> Optional[str]:
        token = self.current_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return token

    async def refresh(self, *, reactive: bool = True) -> ClientTokenState:
        flight = self._flight
        if flight is None:
            flight = _Flight()
            self._flight = flight
            flight.task = asyncio.get_running_loop().create_task(self._run(flight))
        if reactive:
            flight.reactive = True
        return await asyncio.shield(flight.task)

    async def _run(self, flight: _Flight) -> ClientTokenState:
        token = self.current_token
        generation = self._generation
        try:
            if not token:
                raise RefreshFailedError("no token to refresh")
            self.refresh_count += 1
            new_state = await self._refresh_operation(token)
            if not new_state.token:
                raise RefreshFailedError("refresh returned no token")
        except Exception as exc:
            self._flight = None
            failure = (
                exc
                if isinstance(exc, RefreshFailedError)
                else RefreshFailedError(
                    "token refresh failed", detail={"error_type": type(exc).__name__}
                )
            )
            logger.warning(
                "token_refresh_failed",
                reactive=flight.reactive,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if flight.reactive:
                self.terminator.terminate("refresh_failed")
            if failure is exc:
                raise
            raise failure from exc
        if self._generation != generation:
            # Logged out while the request was in flight; the session stays ended
            self._flight = None
            logger.info("token_refresh_discarded", reactive=flight.reactive)
            raise RefreshFailedError("session ended during refresh")
        if self.current_token != token:
            self._flight = None
            logger.info("token_refresh_superseded", reactive=flight.reactive)
            return self._state
        try:
            self.set_token(new_state)
        finally:
            self._flight = None
        logger.info("token_refreshed", reactive=flight.reactive)
        return new_state


class CoordinatedAuth(httpx.Auth):
    """Bearer auth for an AsyncClient that refreshes through the coordinator on 401.

    A 401 for a request sent before the token was replaced is retried with
    the current token instead of refreshing again.
    """

    def __init__(self, coordinator: TokenRefreshCoordinator) -> None:
        self.coordinator = coordinator

    def sync_auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("CoordinatedAuth requires httpx.AsyncClient")

    async def async_auth_flow(self, request: httpx.Request):
        sent = self.coordinator.attach(request.headers)
        response = yield request
        if response.status_code != 401 or sent is None:
            return

        coordinator = self.coordinator
        if coordinator.refreshing or coordinator.current_token in (None, sent):
            state = await coordinator.refresh()
            token = state.token
        else:
            token = coordinator.current_token
            logger.debug("stale_token_retry")
        request.headers["Authorization"] = f"Bearer {token}"
        yield request
