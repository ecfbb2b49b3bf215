from __future__ import annotations

import csv
import fcntl
import io
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Iterator, List, Optional

from bureauguard.logging import get_logger
from bureauguard.storage.errors import (
    ConstraintViolation,
    StorageError,
    StorageInitError,
)
from bureauguard.storage.models import IssuedToken


class FileReplayGuard:
    """Token identifier whitelist kept in a CSV file of ``jti,user_id,unix_ts`` rows.

    Lookups scan the file. Registration appends one row; revocation rewrites
    the file without the row and removes the file once it is empty.

    Writers are serialised with ``flock`` and an in-process lock, which is
    only sound while every writer runs on the same host against a local
    filesystem. Use the database or Redis backends for anything wider.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        directory = self.path.parent
        if not directory.is_dir():
            raise StorageInitError(
                "replay guard directory does not exist", {"path": str(directory)}
            )
        if not os.access(directory, os.W_OK | os.X_OK):
            raise StorageInitError(
                "replay guard directory is not writable", {"path": str(directory)}
            )
        if self.path.exists() and not os.access(self.path, os.R_OK | os.W_OK):
            raise StorageInitError(
                "replay guard file is not writable", {"path": str(self.path)}
            )

    @contextmanager
    def _locked(self, mode: str, lock_type: int) -> Iterator[IO[str]]:
        while True:
            handle = open(self.path, mode, newline="")
            try:
                fcntl.flock(handle.fileno(), lock_type)
            except OSError:
                handle.close()
                raise
            # The file may have been emptied and unlinked while we waited
            if os.fstat(handle.fileno()).st_nlink > 0:
                break
            handle.close()
        try:
            yield handle
        finally:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            finally:
                handle.close()

    @staticmethod
    def _rows(handle: IO[str]) -> List[List[str]]:
        handle.seek(0)
        return [row for row in csv.reader(handle) if row]

    @staticmethod
    def _to_record(row: List[str]) -> Optional[IssuedToken]:
        if len(row) != 3:
            return None
        jti, user_id, ts = row
        try:
            issued_at = datetime.fromtimestamp(int(ts), tz=timezone.utc)
        except ValueError:
            return None
        return IssuedToken(jti=jti, user_id=user_id, issued_at=issued_at)

    def register(self, jti: str, user_id: str, issued_at: datetime) -> IssuedToken:
        line = io.StringIO()
        csv.writer(line, lineterminator="\n").writerow(
            [jti, user_id, int(issued_at.timestamp())]
        )
        try:
            with self._lock, self._locked("a+", fcntl.LOCK_EX) as handle:
                if any(row[0] == jti for row in self._rows(handle)):
                    raise ConstraintViolation("token identifier exists", {"jti": jti})
                handle.seek(0, os.SEEK_END)
                handle.write(line.getvalue())
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            self.logger.error("replay_guard_write_failed", path=str(self.path), error=str(exc))
            raise StorageError("register_token failed", {"operation": "register_token"}) from exc
        return IssuedToken(jti=jti, user_id=user_id, issued_at=issued_at)

    def get(self, jti: str) -> Optional[IssuedToken]:
        try:
            with self._lock:
                if not self.path.exists():
                    return None
                with self._locked("r", fcntl.LOCK_SH) as handle:
                    for row in self._rows(handle):
                        if row[0] == jti:
                            return self._to_record(row)
        except FileNotFoundError:
            return None
        except OSError as exc:
            self.logger.error("replay_guard_read_failed", path=str(self.path), error=str(exc))
            raise StorageError("get_token failed", {"operation": "get_token"}) from exc
        return None

    def contains(self, jti: str) -> bool:
        return self.get(jti) is not None

    def revoke(self, jti: str) -> bool:
        removed = False
        try:
            with self._lock:
                if not self.path.exists():
                    return False
                with self._locked("r+", fcntl.LOCK_EX) as handle:
                    rows = self._rows(handle)
                    remaining = [row for row in rows if row[0] != jti]
                    removed = len(remaining) != len(rows)
                    if removed and not remaining:
                        self.path.unlink()
                    elif removed:
                        handle.seek(0)
                        csv.writer(handle, lineterminator="\n").writerows(remaining)
                        handle.truncate()
                        handle.flush()
                        os.fsync(handle.fileno())
        except FileNotFoundError:
            return False
        except OSError as exc:
            self.logger.error("replay_guard_write_failed", path=str(self.path), error=str(exc))
            raise StorageError("revoke_token failed", {"operation": "revoke_token"}) from exc
        if removed:
            self.logger.info("replay_guard_revoked", jti=jti)
        return removed
