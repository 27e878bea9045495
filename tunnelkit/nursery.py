"""Structured concurrency on the global scheduler.

A nursery is a scope in which tasks are spawned; waiting on it returns once
every task has finished and every handle onto it has been closed, or raises
the first error a task propagates.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ClassVar, Deque, Dict, List, Optional, Tuple

from tunnelkit import scheduler


class _Kind(enum.Enum):
    IGNORE = "ignore"
    PROPAGATE = "propagate"
    CUSTOM = "custom"


@dataclass(frozen=True)
class OnError:
    """The strategy used to recover from an error a task raises."""

    kind: _Kind
    func: Optional[Callable[[BaseException], "OnError"]] = None

    IGNORE: ClassVar["OnError"]
    PROPAGATE: ClassVar["OnError"]

    @classmethod
    def custom(cls, f: Callable[[BaseException], "OnError"]) -> "OnError":
        """A strategy decided by calling ``f`` with the error."""
        return cls(_Kind.CUSTOM, f)

    @classmethod
    def ignore_with(cls, f: Callable[[BaseException], Any]) -> "OnError":
        """Call ``f`` with the error, then ignore it."""

        def run(err: BaseException) -> "OnError":
            f(err)
            return cls.IGNORE

        return cls.custom(run)

    @classmethod
    def propagate_with(cls, f: Callable[[BaseException], Any]) -> "OnError":
        """Call ``f`` with the error, then propagate it to the nursery."""

        def run(err: BaseException) -> "OnError":
            f(err)
            return cls.PROPAGATE

        return cls.custom(run)


OnError.IGNORE = OnError(_Kind.IGNORE)
OnError.PROPAGATE = OnError(_Kind.PROPAGATE)


def _resolve(strategy: OnError, err: BaseException) -> OnError:
    while strategy.kind is _Kind.CUSTOM:
        strategy = strategy.func(err)
        if not isinstance(strategy, OnError):
            raise TypeError("an error strategy must return an OnError")
    return strategy


def _wake(fut: "asyncio.Future[None]") -> None:
    if not fut.done():
        fut.set_result(None)


class _State:
    def __init__(self) -> None:
        self.cond = threading.Condition()
        self.live = 0
        self.errors: Deque[BaseException] = deque()
        self.tasks: Dict[int, Optional[scheduler.Task]] = {}
        self.next_id = 0
        self.waiters: List[Tuple[asyncio.AbstractEventLoop, "asyncio.Future[None]"]] = []

    def _notify(self) -> None:
        self.cond.notify_all()
        waiters, self.waiters = self.waiters, []
        for loop, fut in waiters:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(_wake, fut)

    def acquire_handle(self) -> None:
        with self.cond:
            self.live += 1

    def release_handle(self) -> None:
        with self.cond:
            self.live -= 1
            self._notify()

    def push_error(self, err: BaseException) -> None:
        with self.cond:
            self.errors.append(err)
            self._notify()

    def outcome(self) -> Tuple[bool, Optional[BaseException]]:
        if self.errors:
            return True, self.errors.popleft()
        return self.live == 0, None

    def reserve(self) -> int:
        with self.cond:
            tid = self.next_id
            self.next_id += 1
            self.tasks[tid] = None
            return tid

    def attach(self, tid: int, task: scheduler.Task) -> None:
        with self.cond:
            if tid in self.tasks:
                self.tasks[tid] = task

    def forget(self, tid: int) -> None:
        with self.cond:
            self.tasks.pop(tid, None)

    def cancel_all(self) -> None:
        with self.cond:
            tasks = [task for task in self.tasks.values() if task is not None]
        for task in tasks:
            task.cancel()


class NurseryHandle:
    """A handle through which tasks are spawned into a nursery.

    While a handle is open the nursery's wait does not return; close it when
    done, or use it as a context manager. The handle given to a spawned task
    is closed when that task finishes.
    """

    def __init__(self, _state: _State, _counted: bool = True) -> None:
        self._state = _state
        self._counted = _counted
        self._closed = False
        self._lock = threading.Lock()
        if _counted:
            _state.acquire_handle()

    def spawn(
        self,
        on_error: OnError,
        task_gen: Callable[["NurseryHandle"], Awaitable[Any]],
    ) -> None:
        """Spawn ``task_gen(handle)`` in the nursery, recovering from errors with ``on_error``."""
        with self._lock:
            if self._closed:
                raise RuntimeError("nursery handle is closed")
        state = self._state
        child = NurseryHandle(state)
        tid = state.reserve()
        try:
            task = scheduler.spawn(self._supervise(child, on_error, task_gen, tid))
        except BaseException:
            child.close()
            state.forget(tid)
            raise
        state.attach(tid, task)

    async def _supervise(
        self,
        child: "NurseryHandle",
        on_error: OnError,
        task_gen: Callable[["NurseryHandle"], Awaitable[Any]],
        tid: int,
    ) -> None:
        try:
            try:
                await task_gen(child)
            except asyncio.CancelledError:
                raise
            except Exception as err:
                try:
                    strategy = _resolve(on_error, err)
                except Exception as resolver_err:
                    self._state.push_error(resolver_err)
                else:
                    if strategy.kind is _Kind.PROPAGATE:
                        self._state.push_error(err)
        finally:
            child.close()
            self._state.forget(tid)

    def close(self) -> None:
        """Release this handle; closing twice is harmless."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._counted:
            self._state.release_handle()

    def __enter__(self) -> "NurseryHandle":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class Nursery:
    """A scope whose tasks must finish before waiting on it returns."""

    def __init__(self) -> None:
        self._state = _State()
        self._handle = NurseryHandle(self._state, _counted=False)

    def handle(self) -> NurseryHandle:
        """A new open handle onto this nursery."""
        return NurseryHandle(self._state)

    def spawn(
        self,
        on_error: OnError,
        task_gen: Callable[[NurseryHandle], Awaitable[Any]],
    ) -> None:
        """Spawn a task in the nursery; see NurseryHandle.spawn."""
        self._handle.spawn(on_error, task_gen)

    def _finish(self, error: Optional[BaseException]) -> None:
        if error is not None:
            self._state.cancel_all()
            raise error

    async def wait(self) -> None:
        """Wait until all tasks end and all handles close, raising the first propagated error.

        On an error the remaining tasks are cancelled.
        """
        loop = asyncio.get_running_loop()
        state = self._state
        while True:
            with state.cond:
                done, error = state.outcome()
                if not done:
                    fut: "asyncio.Future[None]" = loop.create_future()
                    state.waiters.append((loop, fut))
            if done:
                break
            await fut
        self._finish(error)

    def wait_sync(self) -> None:
        """Blocking form of wait."""
        state = self._state
        with state.cond:
            while True:
                done, error = state.outcome()
                if done:
                    break
                state.cond.wait()
        self._finish(error)