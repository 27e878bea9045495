"""A global, self-scaling task scheduler built on per-thread asyncio loops.

Coroutines spawned here run on a pool of worker threads, each driving its own
event loop. A monitor watches for workers whose loop has stopped making
progress, for example because a task blocks or computes for a long time, and
starts extra workers so that other tasks are not held up. Extra workers retire
once they have been idle for a while.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import os
import threading
import time
from typing import Any, Callable, Coroutine, Generator, List, Optional

log = logging.getLogger(__name__)

MONITOR_INTERVAL = 0.2
"""Seconds between monitor checks; a busy loop silent this long counts as stalled."""

MAX_THREADS = 500
"""Most worker threads the scheduler will run at once."""

EXITABLE_IDLE = 5.0
"""Seconds an extra worker waits before retiring when it has nothing to do."""

_HEARTBEAT = 0.05

_single_thread = False
_executor_lock = threading.Lock()
_executor_instance: Optional["_Executor"] = None

_running_lock = threading.Lock()
_running_tasks = 0


def permanently_single_threaded() -> bool:
    """Irrevocably run every task on one thread.

    Only takes effect if called before the first task is spawned; returns
    whether it did.
    """
    global _single_thread
    with _executor_lock:
        _single_thread = True
        started = _executor_instance is not None
    if started:
        log.warning("scheduler already running; single-threaded mode not applied")
    return not started


def active_task_count() -> int:
    """Number of spawned tasks that have not yet finished."""
    with _running_lock:
        return _running_tasks


def _count_task(delta: int) -> None:
    global _running_tasks
    with _running_lock:
        _running_tasks += delta


class Task:
    """Handle to a coroutine running on the scheduler.

    It can be waited on from any thread with ``result`` or awaited from any
    event loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._future: concurrent.futures.Future = concurrent.futures.Future()
        self._atask: Optional[asyncio.Task] = None
        self.detached = False

    def _start(self, coro: Coroutine[Any, Any, Any], on_finish: Callable[[], None]) -> None:
        if not self._future.set_running_or_notify_cancel():
            coro.close()
            on_finish()
            return
        atask = self._loop.create_task(coro)
        self._atask = atask

        def finished(done: asyncio.Task) -> None:
            on_finish()
            if done.cancelled():
                self._future.set_exception(concurrent.futures.CancelledError())
            elif done.exception() is not None:
                self._future.set_exception(done.exception())
            else:
                self._future.set_result(done.result())

        atask.add_done_callback(finished)

    def _request_cancel(self) -> None:
        if self._atask is not None:
            self._atask.cancel()

    @property
    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> Any:
        """Block until the task finishes and return its value or raise its error.

        Raises TimeoutError if it does not finish within ``timeout`` seconds,
        and concurrent.futures.CancelledError if it was cancelled.
        """
        try:
            return self._future.result(timeout)
        except concurrent.futures.TimeoutError:
            if self._future.done():
                raise
            raise TimeoutError("task did not finish in time") from None

    def cancel(self) -> bool:
        """Ask the task to stop; False if it had already finished."""
        if self._future.cancel():
            return True
        if self._future.done():
            return False
        try:
            self._loop.call_soon_threadsafe(self._request_cancel)
        except RuntimeError:
            return False
        return True

    def detach(self) -> None:
        """Let the task run to completion unattended."""
        self.detached = True

    def __await__(self) -> Generator[Any, None, Any]:
        return asyncio.wrap_future(self._future).__await__()


class _Worker:
    def __init__(self, executor: "_Executor", exitable: bool) -> None:
        self._executor = executor
        self.exitable = exitable
        self.loop = asyncio.new_event_loop()
        self.active = 0
        self.heartbeat = time.monotonic()
        self.thread = threading.Thread(
            target=self._run,
            name="sscale-wkr-e" if exitable else "sscale-wkr-c",
            daemon=True,
        )

    def stalled(self, now: float) -> bool:
        return self.active > 0 and now - self.heartbeat > MONITOR_INTERVAL

    def _beat(self) -> None:
        self.heartbeat = time.monotonic()
        self.loop.call_later(_HEARTBEAT, self._beat)

    def _idle_check(self) -> None:
        if self._executor.retire(self):
            self.loop.stop()
        else:
            self.loop.call_later(EXITABLE_IDLE, self._idle_check)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._beat)
        if self.exitable:
            self.loop.call_later(EXITABLE_IDLE, self._idle_check)
        try:
            self.loop.run_forever()
        finally:
            self.loop.close()
            log.debug("worker %s retired", self.thread.name)


class _Executor:
    def __init__(self, single_threaded: bool) -> None:
        self._lock = threading.Lock()
        self._workers: List[_Worker] = []
        self._single = single_threaded
        count = 1 if single_threaded else (os.cpu_count() or 1)
        with self._lock:
            for _ in range(count):
                self._add_worker(exitable=False)
        if not single_threaded:
            threading.Thread(target=self._monitor, name="sscale-mon", daemon=True).start()

    def _add_worker(self, exitable: bool) -> _Worker:
        worker = _Worker(self, exitable)
        self._workers.append(worker)
        worker.thread.start()
        return worker

    def assign(self) -> _Worker:
        now = time.monotonic()
        with self._lock:
            ready = [w for w in self._workers if not w.stalled(now)]
            if not ready:
                if self._single or len(self._workers) >= MAX_THREADS:
                    ready = self._workers
                else:
                    ready = [self._add_worker(exitable=True)]
            worker = min(ready, key=lambda w: w.active)
            worker.active += 1
            return worker

    def release(self, worker: _Worker) -> None:
        with self._lock:
            worker.active -= 1

    def retire(self, worker: _Worker) -> bool:
        with self._lock:
            if worker.active:
                return False
            self._workers.remove(worker)
            return True

    def _monitor(self) -> None:
        while True:
            time.sleep(MONITOR_INTERVAL)
            now = time.monotonic()
            with self._lock:
                some_stalled = any(w.stalled(now) for w in self._workers)
                some_idle = any(w.active == 0 for w in self._workers)
                if some_stalled and not some_idle and len(self._workers) < MAX_THREADS:
                    self._add_worker(exitable=True)


def _executor() -> _Executor:
    global _executor_instance
    with _executor_lock:
        if _executor_instance is None:
            _executor_instance = _Executor(_single_thread)
        return _executor_instance


def spawn(coro: Coroutine[Any, Any, Any]) -> Task:
    """Run a coroutine on the global scheduler and return its handle.

    The coroutine may block or compute for a long time without holding up
    other tasks.
    """
    if not inspect.iscoroutine(coro):
        raise TypeError(f"spawn() needs a coroutine, not {type(coro).__name__}")
    executor = _executor()
    worker = executor.assign()
    task = Task(worker.loop)
    _count_task(1)

    def on_finish() -> None:
        executor.release(worker)
        _count_task(-1)

    worker.loop.call_soon_threadsafe(task._start, coro, on_finish)
    return task


def block_on(coro: Coroutine[Any, Any, Any]) -> Any:
    """Spawn a coroutine on the scheduler and block until it returns."""
    return spawn(coro).result()