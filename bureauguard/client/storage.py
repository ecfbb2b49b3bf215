from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from bureauguard.logging import get_logger

logger = get_logger(__name__)

TOKEN_SLOT = "auth_token"


@dataclass
class ClientTokenState:
    token: Optional[str]
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def lifetime(self) -> Optional[timedelta]:
        if self.issued_at is None or self.expires_at is None:
            return None
        return self.expires_at - self.issued_at

    def remaining(self, now: datetime) -> Optional[timedelta]:
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientTokenState":
        def _parse(value: Any) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            token=data.get("token"),
            issued_at=_parse(data.get("issued_at")),
            expires_at=_parse(data.get("expires_at")),
        )


class TokenStorage:
    """Durable key-value slots in a JSON file, with an in-memory stand-in.

    When the file cannot be read or written, every slot moves to process
    memory for the rest of the session: writes still land somewhere but
    do not survive a restart.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._memory: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.degraded = self.path is None
        if self.path is not None and not self._probe():
            self._degrade("probe_failed")

    def _probe(self) -> bool:
        assert self.path is not None
        directory = self.path.parent
        if not directory.is_dir() or not os.access(directory, os.W_OK):
            return False
        if self.path.exists():
            try:
                self._memory = self._read_file()
            except (OSError, ValueError):
                return False
        return True

    def _degrade(self, reason: str, error: Optional[Exception] = None) -> None:
        if not self.degraded:
            logger.warning(
                "token_storage_memory_fallback",
                path=str(self.path),
                reason=reason,
                error=str(error) if error else None,
            )
        self.degraded = True

    def _read_file(self) -> Dict[str, Any]:
        assert self.path is not None
        with open(self.path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError("token storage file must hold an object")
        return data

    def _write_file(self, data: Dict[str, Any]) -> None:
        assert self.path is not None
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".tokens_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def get_item(self, key: str) -> Any:
        with self._lock:
            return self._memory.get(key)

    def set_item(self, key: str, value: Any) -> None:
        with self._lock:
            self._memory[key] = value
            self._flush()

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._memory.pop(key, None)
            self._flush()

    def _flush(self) -> None:
        if self.degraded:
            return
        try:
            self._write_file(dict(self._memory))
        except OSError as exc:
            self._degrade("write_failed", exc)

    def load_token(self) -> Optional[ClientTokenState]:
        raw = self.get_item(TOKEN_SLOT)
        if not isinstance(raw, dict):
            return None
        try:
            return ClientTokenState.from_dict(raw)
        except ValueError:
            logger.warning("token_storage_corrupt_slot", slot=TOKEN_SLOT)
            return None

    def save_token(self, state: ClientTokenState) -> None:
        self.set_item(TOKEN_SLOT, state.to_dict())

    def clear_token(self) -> None:
        self.remove_item(TOKEN_SLOT)
