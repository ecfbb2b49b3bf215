"""Whitelist contract shared by the memory, flat-file and Redis replay guards."""

import os
import threading
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from bureauguard.storage.errors import ConstraintViolation, StorageError, StorageInitError
from bureauguard.storage.flatfile import FileReplayGuard
from bureauguard.storage.memory import MemoryReplayGuard
from bureauguard.storage.redis_cache import RedisReplayGuard

ISSUED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.expiries = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    def ping(self):
        self._check()
        return True

    def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def exists(self, key):
        self._check()
        return 1 if key in self.data else 0

    def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    def close(self):
        pass


@pytest.fixture(params=["memory", "file", "redis"])
def guard(request, tmp_path):
    if request.param == "memory":
        return MemoryReplayGuard()
    if request.param == "file":
        return FileReplayGuard(tmp_path / "jwt_jti.csv")
    return RedisReplayGuard(client=FakeRedis())


class TestWhitelistContract:
    def test_register_then_contains(self, guard):
        guard.register("jti-1", "user-1", ISSUED)
        assert guard.contains("jti-1") is True
        record = guard.get("jti-1")
        assert record.user_id == "user-1"
        assert record.issued_at == ISSUED

    def test_unknown_identifier_is_plain_false(self, guard):
        assert guard.contains("missing") is False
        assert guard.get("missing") is None

    def test_revoke_then_not_contained(self, guard):
        guard.register("jti-1", "user-1", ISSUED)
        assert guard.revoke("jti-1") is True
        assert guard.contains("jti-1") is False

    def test_revoke_absent_identifier_does_not_raise(self, guard):
        assert guard.revoke("never-issued") is False
        guard.register("jti-1", "user-1", ISSUED)
        guard.revoke("jti-1")
        assert guard.revoke("jti-1") is False

    def test_same_user_tokens_revoked_independently(self, guard):
        guard.register("laptop", "user-1", ISSUED)
        guard.register("phone", "user-1", ISSUED)

        guard.revoke("laptop")

        assert guard.contains("laptop") is False
        assert guard.contains("phone") is True

    def test_duplicate_identifier_rejected(self, guard):
        guard.register("jti-1", "user-1", ISSUED)
        with pytest.raises(ConstraintViolation):
            guard.register("jti-1", "user-2", ISSUED)


class TestFileReplayGuard:
    def test_missing_directory_fails_fast(self, tmp_path):
        with pytest.raises(StorageInitError):
            FileReplayGuard(tmp_path / "nope" / "jwt_jti.csv")

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_unwritable_directory_fails_fast(self, tmp_path):
        locked = tmp_path / "locked"
        locked.mkdir()
        locked.chmod(0o500)
        try:
            with pytest.raises(StorageInitError):
                FileReplayGuard(locked / "jwt_jti.csv")
        finally:
            locked.chmod(0o700)

    def test_rows_are_csv_lines(self, tmp_path):
        path = tmp_path / "jwt_jti.csv"
        guard = FileReplayGuard(path)
        guard.register("a", "user-1", ISSUED)
        guard.register("b", "user-2", ISSUED)

        ts = int(ISSUED.timestamp())
        assert path.read_text().splitlines() == [f"a,user-1,{ts}", f"b,user-2,{ts}"]

    def test_revoke_removes_line_in_place(self, tmp_path):
        path = tmp_path / "jwt_jti.csv"
        guard = FileReplayGuard(path)
        for jti in ("a", "b", "c"):
            guard.register(jti, "user-1", ISSUED)

        guard.revoke("b")

        assert [line.split(",")[0] for line in path.read_text().splitlines()] == ["a", "c"]

    def test_file_removed_after_last_revoke(self, tmp_path):
        path = tmp_path / "jwt_jti.csv"
        guard = FileReplayGuard(path)
        guard.register("a", "user-1", ISSUED)
        guard.revoke("a")
        assert not path.exists()
        guard.register("b", "user-1", ISSUED)
        assert guard.contains("b")

    def test_two_instances_share_the_file(self, tmp_path):
        path = tmp_path / "jwt_jti.csv"
        first = FileReplayGuard(path)
        second = FileReplayGuard(path)
        first.register("a", "user-1", ISSUED)
        assert second.contains("a")
        second.revoke("a")
        assert not first.contains("a")


class TestRedisReplayGuard:
    def test_value_layout_and_ttl(self):
        client = FakeRedis()
        guard = RedisReplayGuard(client=client, ttl_seconds=3600)
        guard.register("jti-1", "user:with:colons", ISSUED)

        key = "bureauguard:jti:jti-1"
        assert client.data[key] == f"user:with:colons:{int(ISSUED.timestamp())}"
        assert client.expiries[key] == 3600
        assert guard.get("jti-1").user_id == "user:with:colons"

    def test_backend_failure_is_storage_error_not_miss(self):
        client = FakeRedis()
        guard = RedisReplayGuard(client=client)
        client.fail = True
        with pytest.raises(StorageError):
            guard.contains("jti-1")
        with pytest.raises(StorageError):
            guard.revoke("jti-1")
        with pytest.raises(StorageError):
            guard.verify_connection()

    def test_concurrent_writers_across_instances(self, tmp_path):
        path = tmp_path / "jwt_jti.csv"
        guards = [FileReplayGuard(path) for _ in range(4)]
        errors = []

        def writer(index):
            guard = guards[index % len(guards)]
            try:
                for n in range(50):
                    jti = f"t{index}-{n}"
                    guard.register(jti, f"user-{index}", ISSUED)
                    if n % 2:
                        assert guard.revoke(jti) is True
            except Exception as exc:  # surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        lines = path.read_text().splitlines()
        assert len(lines) == 200
        assert len(set(lines)) == 200
        for line in lines:
            jti, user_id, ts = line.split(",")
            index, n = jti[1:].split("-")
            assert user_id == f"user-{index}"
            assert int(n) % 2 == 0
            assert int(ts) == int(ISSUED.timestamp())
