from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps
from typing import Callable, Iterator, TypeVar

from bureauguard.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class UnitOfWork:
    """Reentrant begin/commit/rollback guard.

    Only the outermost ``scope()`` on the current call stack talks to the
    backend. The nesting depth lives in a ContextVar, so threads and asyncio
    tasks sharing one instance each track their own depth.

    Failed-login records go through the rate limit store on their own
    connection and are never part of this transaction.
    """

    def __init__(
        self,
        begin: Callable[[], None],
        commit: Callable[[], None],
        rollback: Callable[[], None],
        *,
        name: str = "unit_of_work",
    ) -> None:
        self._begin = begin
        self._commit = commit
        self._rollback = rollback
        self.name = name
        self._depth: ContextVar[int] = ContextVar(f"{name}_depth", default=0)

    @property
    def depth(self) -> int:
        return self._depth.get()

    @contextmanager
    def scope(self) -> Iterator[None]:
        depth = self._depth.get()
        outermost = depth == 0
        if outermost:
            self._begin()
        token = self._depth.set(depth + 1)
        try:
            yield
        except BaseException:
            self._depth.reset(token)
            if outermost:
                logger.warning("unit_of_work_rollback", name=self.name)
                self._rollback()
            raise
        self._depth.reset(token)
        if outermost:
            self._commit()

    def wrap(self, handler: Callable[..., T]) -> Callable[..., T]:
        @wraps(handler)
        def wrapped(*args, **kwargs) -> T:
            with self.scope():
                return handler(*args, **kwargs)

        return wrapped
