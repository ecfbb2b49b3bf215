from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Set

from bureauguard.client.coordinator import RefreshFailedError, TokenRefreshCoordinator
from bureauguard.client.session import SessionState
from bureauguard.logging import get_logger

logger = get_logger(__name__)

ActivityListener = Callable[[], None]


class ActivitySource(Protocol):
    def add_listener(self, listener: ActivityListener) -> None: ...

    def remove_listener(self, listener: ActivityListener) -> None: ...


class ActivityBus:
    """In-process activity source; call ``emit`` on any user interaction."""

    def __init__(self) -> None:
        self._listeners: List[ActivityListener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: ActivityListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ActivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self) -> None:
        for listener in list(self._listeners):
            listener()


class ActivityMonitor:
    """Refreshes the token ahead of expiry while the user is active.

    Activity is debounced (trailing edge). After a quiet period the monitor
    compares the token's remaining lifetime with its total lifetime and
    refreshes through the coordinator when less than ``threshold_fraction``
    is left. Failures are logged only.
    """

    def __init__(
        self,
        coordinator: TokenRefreshCoordinator,
        session: SessionState,
        source: ActivitySource,
        *,
        debounce_seconds: float = 5.0,
        threshold_fraction: float = 0.10,
    ) -> None:
        if not 0 < threshold_fraction < 1:
            raise ValueError("threshold_fraction must be between 0 and 1")
        if debounce_seconds < 0:
            raise ValueError("debounce_seconds must not be negative")
        self.coordinator = coordinator
        self.session = session
        self.source = source
        self.debounce_seconds = debounce_seconds
        self.threshold_fraction = threshold_fraction
        self._active = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        if self._active:
            return
        self._loop = asyncio.get_running_loop()
        self._active = True
        self.source.add_listener(self._on_activity)
        self._unsubscribe = self.session.subscribe(self._on_auth_change)
        logger.debug("activity_monitor_started")

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self.source.remove_listener(self._on_activity)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        logger.debug("activity_monitor_stopped")

    def _on_auth_change(self, authenticated: bool) -> None:
        if not authenticated:
            self.stop()

    def _on_activity(self) -> None:
        if not self._active or self._loop is None:
            return
        if self._pending is not None:
            self._pending.cancel()
        self._pending = self._loop.call_later(self.debounce_seconds, self._tick)

    def _tick(self) -> None:
        self._pending = None
        if not self._active or not self.should_refresh():
            return
        task = self._loop.create_task(self._refresh())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def should_refresh(self, now: Optional[datetime] = None) -> bool:
        state = self.coordinator.token_state
        if state is None or not state.token:
            return False
        lifetime = state.lifetime
        if lifetime is None or lifetime.total_seconds() <= 0:
            return False
        remaining = state.remaining(now or self.coordinator.now())
        if remaining is None or remaining.total_seconds() <= 0:
            return False
        return remaining / lifetime < self.threshold_fraction

    async def _refresh(self) -> bool:
        try:
            await self.coordinator.refresh(reactive=False)
        except RefreshFailedError as exc:
            logger.warning("proactive_refresh_failed", error=exc.message)
            return False
        return True

    async def check_now(self) -> bool:
        """Run one activity evaluation immediately; True if a refresh succeeded."""
        if not self.should_refresh():
            return False
        return await self._refresh()

    async def drain(self) -> None:
        """Wait for refreshes started by activity ticks."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
