"""
Clock and Scheduler abstractions
Repeating tasks and background coroutines go through a scheduler so teardown
is deterministic and tests can drive time by hand.
"""

import asyncio
import inspect
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Awaitable, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

TaskCallback = Callable[[], Any]


class Clock:
    """Wall clock in epoch milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def advance(self, ms: int) -> int:
        self._now += ms
        return self._now


class TaskHandle:
    """Cancellable handle for a repeating task."""

    def __init__(self, cancel_fn: Optional[Callable[[], None]] = None):
        self._cancel_fn = cancel_fn
        self.cancelled = False

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        if self._cancel_fn:
            self._cancel_fn()


async def _invoke(callback: TaskCallback):
    result = callback()
    if inspect.isawaitable(result):
        await result


class Scheduler(ABC):

    @abstractmethod
    def call_every(self, interval: float, callback: TaskCallback) -> TaskHandle:
        """Run ``callback`` every ``interval`` seconds until the handle is cancelled."""

    @abstractmethod
    def spawn(self, coro: Awaitable) -> None:
        """Run a coroutine in the background without waiting for it."""


class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop, callable from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self._background: Set[asyncio.Future] = set()

    def _in_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self.loop
        except RuntimeError:
            return False

    async def _repeat(self, interval: float, callback: TaskCallback, handle: TaskHandle):
        while not handle.cancelled:
            await asyncio.sleep(interval)
            if handle.cancelled:
                break
            try:
                await _invoke(callback)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Repeating task failed: {str(e)}")

    def call_every(self, interval: float, callback: TaskCallback) -> TaskHandle:
        state = {}

        def _cancel():
            task = state.get('task')
            if task is not None:
                self.loop.call_soon_threadsafe(task.cancel)

        handle = TaskHandle(_cancel)

        def _start():
            if not handle.cancelled:
                state['task'] = self.loop.create_task(self._repeat(interval, callback, handle))

        if self._in_loop_thread():
            _start()
        else:
            self.loop.call_soon_threadsafe(_start)
        return handle

    def spawn(self, coro: Awaitable) -> None:
        if self._in_loop_thread():
            future = asyncio.ensure_future(coro)
        else:
            future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        self._background.add(future)
        future.add_done_callback(self._on_done)

    def _on_done(self, future):
        self._background.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background task failed: {str(error)}")


class ManualScheduler(Scheduler):
    """Scheduler for tests: time advances only through ``advance``."""

    def __init__(self):
        self.now = 0.0
        self._tasks: List[dict] = []
        self._spawned: List[Awaitable] = []

    def call_every(self, interval: float, callback: TaskCallback) -> TaskHandle:
        entry = {'interval': interval, 'due': self.now + interval, 'callback': callback}
        handle = TaskHandle(lambda: self._tasks.remove(entry) if entry in self._tasks else None)
        entry['handle'] = handle
        self._tasks.append(entry)
        return handle

    def spawn(self, coro: Awaitable) -> None:
        self._spawned.append(coro)

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    @property
    def pending_spawned(self) -> int:
        return len(self._spawned)

    async def run_spawned(self) -> None:
        """Await every coroutine spawned so far, including ones spawned meanwhile."""
        while self._spawned:
            coro = self._spawned.pop(0)
            await coro

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing due repeating tasks in order."""
        target = self.now + seconds
        while True:
            due = [entry for entry in self._tasks if entry['due'] <= target]
            if not due:
                break
            entry = min(due, key=lambda e: e['due'])
            self.now = entry['due']
            entry['due'] += entry['interval']
            await _invoke(entry['callback'])
            await self.run_spawned()
        self.now = target


class AsyncRunner:
    """Owns a background event loop thread and runs coroutines on it.

    Flask views are synchronous; they hand coroutines to ``run`` and block on
    the result.
    """

    def __init__(self, name: str = 'petsync-loop'):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name=name, daemon=True)
        self._started = False

    def _run_loop(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> 'AsyncRunner':
        if not self._started:
            self._thread.start()
            self._started = True
        return self

    def run(self, coro: Awaitable, timeout: Optional[float] = None) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)

    async def _cancel_outstanding(self):
        current = asyncio.current_task()
        tasks = [task for task in asyncio.all_tasks() if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def stop(self, timeout: float = 5.0):
        """Cancel and await every task still on the loop, then stop it."""
        if not self._started:
            return
        try:
            self.run(self._cancel_outstanding(), timeout)
        except FutureTimeoutError:
            logger.warning("Background tasks did not finish cancelling before shutdown")
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=timeout)
        self._started = False
        self.loop.close()
