from __future__ import annotations

import threading
from typing import Callable, List, Optional

from bureauguard.client.storage import TokenStorage
from bureauguard.logging import get_logger

logger = get_logger(__name__)

AuthListener = Callable[[bool], None]


class SessionState:
    """Client-side authenticated flag with change listeners."""

    def __init__(self, authenticated: bool = False) -> None:
        self._authenticated = authenticated
        self._listeners: List[AuthListener] = []
        self._lock = threading.Lock()

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_authenticated(self, value: bool) -> None:
        with self._lock:
            if self._authenticated == value:
                return
            self._authenticated = value
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(value)
            except Exception:
                logger.exception("session_listener_failed", authenticated=value)


class SessionTerminator:
    """Forced logout after a terminal refresh failure.

    Runs at most once per authenticated session no matter how many callers
    report the failure; a later login re-arms it.
    """

    def __init__(
        self,
        storage: TokenStorage,
        session: SessionState,
        notifier: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.storage = storage
        self.session = session
        self.notifier = notifier
        self._lock = threading.Lock()
        self._armed = session.authenticated
        self.terminations = 0
        session.subscribe(self._on_auth_change)

    def _on_auth_change(self, authenticated: bool) -> None:
        if authenticated:
            with self._lock:
                self._armed = True

    def terminate(self, reason: str = "session_invalid") -> bool:
        with self._lock:
            if not self._armed:
                return False
            self._armed = False
            self.terminations += 1
        logger.warning("session_terminated", reason=reason)
        self.storage.clear_token()
        self.session.set_authenticated(False)
        if self.notifier is not None:
            try:
                self.notifier(reason)
            except Exception:
                logger.exception("session_notifier_failed", reason=reason)
        return True
