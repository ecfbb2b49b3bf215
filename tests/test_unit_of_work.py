import asyncio
import threading

import pytest

from bureauguard.storage.unit_of_work import UnitOfWork


class RecordingBackend:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, name):
        with self._lock:
            self.calls.append(name)

    def unit_of_work(self):
        return UnitOfWork(
            lambda: self._record("begin"),
            lambda: self._record("commit"),
            lambda: self._record("rollback"),
        )


def test_nested_scopes_commit_once():
    backend = RecordingBackend()
    uow = backend.unit_of_work()

    with uow.scope():
        with uow.scope():
            assert uow.depth == 2
        assert backend.calls == ["begin"]

    assert backend.calls == ["begin", "commit"]
    assert uow.depth == 0


def test_inner_failure_rolls_back_outermost():
    backend = RecordingBackend()
    uow = backend.unit_of_work()

    with pytest.raises(RuntimeError):
        with uow.scope():
            with uow.scope():
                raise RuntimeError("boom")

    assert backend.calls == ["begin", "rollback"]
    assert uow.depth == 0


def test_wrap_runs_handler_inside_scope():
    backend = RecordingBackend()
    uow = backend.unit_of_work()

    @uow.wrap
    def handler(value):
        assert uow.depth == 1
        return value * 2

    assert handler(21) == 42
    assert backend.calls == ["begin", "commit"]


def test_threads_track_depth_independently():
    backend = RecordingBackend()
    uow = backend.unit_of_work()
    barrier = threading.Barrier(4)
    depths = []

    def worker():
        with uow.scope():
            barrier.wait()
            depths.append(uow.depth)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert depths == [1, 1, 1, 1]
    assert backend.calls.count("begin") == 4
    assert backend.calls.count("commit") == 4


@pytest.mark.asyncio
async def test_tasks_track_depth_independently():
    backend = RecordingBackend()
    uow = backend.unit_of_work()

    async def worker():
        with uow.scope():
            await asyncio.sleep(0)
            return uow.depth

    results = await asyncio.gather(*(worker() for _ in range(3)))

    assert results == [1, 1, 1]
    assert backend.calls.count("commit") == 3
