"""
Coordination primitives for in-flight work.

The whole engine follows one idiom: "pending work counter + per-key waitlist".

    Waitlist   - keys currently in flight, and the futures of everybody who
                 asked for such a key while it was in flight. Completing the
                 key drains its waiters (last in, first out).
    WaitGroup  - a counted join owned by one resolution node. Every spawned
                 task bumps the counter; the node has converged once the
                 counter is back at zero.

Everything runs on a single event loop, so neither primitive needs locking.
Callers must still not assume that state observed before an await is
unchanged after it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class Waitlist(Generic[K]):
    """Pending keys plus suspended waiters per key."""

    def __init__(self, name: str = "waitlist"):
        self.name = name
        self._pending: set[K] = set()
        self._waiters: dict[K, list[asyncio.Future]] = {}

    def begin(self, key: K) -> None:
        """Mark a key as in flight."""
        self._pending.add(key)

    def is_pending(self, key: K) -> bool:
        return key in self._pending

    def wait(self, key: K) -> asyncio.Future:
        """
        Park the caller on a pending key.

        Returns:
            Future completed when the key resolves or fails
        """
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(key, []).append(future)
        logger.debug(f"[{self.name}] Parked waiter on '{key}' ({len(self._waiters[key])} waiting)")
        return future

    def waiting(self, key: K) -> int:
        """Number of waiters parked on a key."""
        return len(self._waiters.get(key, ()))

    def resolve(self, key: K, value: Any) -> int:
        """
        Complete a key and wake every waiter with its value.

        Returns:
            Number of waiters woken
        """
        self._pending.discard(key)
        waiters = self._waiters.pop(key, [])
        woken = 0
        while waiters:
            future = waiters.pop()
            if not future.done():
                future.set_result(value)
                woken += 1
        return woken

    def fail(self, key: K, error: BaseException) -> int:
        """Complete a key with an error for every waiter."""
        self._pending.discard(key)
        waiters = self._waiters.pop(key, [])
        woken = 0
        while waiters:
            future = waiters.pop()
            if not future.done():
                future.set_exception(error)
                woken += 1
        return woken

    def clear(self) -> None:
        """Forget all pending keys and cancel every parked waiter."""
        for waiters in self._waiters.values():
            for future in waiters:
                if not future.done():
                    future.cancel()
        self._waiters.clear()
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def __repr__(self) -> str:
        return f"<Waitlist {self.name} pending={len(self._pending)}>"


class WaitGroup:
    """
    Counted join over spawned tasks.

    Example:
        group = WaitGroup("instance blank-1")
        for key, dep in dependencies:
            group.spawn(solve(dep), on_result=partial(slot.__setitem__, key))
        await group.wait()   # converged
    """

    def __init__(self, name: str = "group"):
        self.name = name
        self._pending = 0
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._error: BaseException | None = None

    @property
    def pending(self) -> int:
        """Outstanding operations."""
        return self._pending

    def add(self, count: int = 1) -> None:
        self._pending += count
        if self._pending > 0:
            self._idle.clear()

    def done(self) -> None:
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    def spawn(
        self,
        awaitable: Awaitable[Any],
        on_result: Callable[[Any], None] | None = None,
    ) -> asyncio.Task:
        """
        Run an awaitable as a task tracked by this group.

        Args:
            awaitable: Work to run
            on_result: Called with the result before the counter is released,
                so it may spawn follow-up work into the same group
        """
        self.add()
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finish(t, on_result))
        return task

    def _finish(self, task: asyncio.Task, on_result: Callable[[Any], None] | None) -> None:
        self._tasks.discard(task)
        try:
            if task.cancelled():
                if self._error is None:
                    self._record(asyncio.CancelledError())
            elif task.exception() is not None:
                self._record(task.exception())
            elif on_result is not None and self._error is None:
                try:
                    on_result(task.result())
                except Exception as e:
                    self._record(e)
        finally:
            self.done()

    def _record(self, error: BaseException) -> None:
        if self._error is None or isinstance(self._error, asyncio.CancelledError):
            self._error = error
            logger.debug(f"[{self.name}] Operation failed, cancelling {len(self._tasks)} siblings: {error!r}")
            for task in list(self._tasks):
                task.cancel()

    async def wait(self) -> None:
        """
        Wait until every spawned operation has finished.

        Raises:
            The first error raised by a spawned operation
        """
        try:
            await self._idle.wait()
        except asyncio.CancelledError:
            for task in list(self._tasks):
                task.cancel()
            raise
        if self._error is not None:
            raise self._error

    def __repr__(self) -> str:
        return f"<WaitGroup {self.name} pending={self._pending}>"
