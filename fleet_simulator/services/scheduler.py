"""
Per-device task scheduler

Each simulator owns one DeviceScheduler. Every timer the device runs
(press schedule, health loop, delayed auto-accept, ...) is a named asyncio
task held here, so stopping a device is one ``cancel_all()`` call.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[Awaitable[None], None]]


async def _invoke(callback: Callback):
    result = callback()
    if asyncio.iscoroutine(result):
        await result


class DeviceScheduler:
    """Named, cancellable delayed and repeating tasks"""

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancelled: List[asyncio.Task] = []
        self._counter = 0

    def call_later(self, name: str, delay: float, callback: Callback) -> asyncio.Task:
        """Run ``callback`` once after ``delay`` seconds.

        ``delay`` is converted to float up front so a bad value raises here,
        not inside the task.
        """
        delay = max(0.0, float(delay))

        async def runner():
            await asyncio.sleep(delay)
            try:
                await _invoke(callback)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self.owner}] Scheduled task '{name}' failed: {e}")

        return self._track(name, runner())

    def call_every(
        self,
        name: str,
        interval: float,
        callback: Callback,
        initial_delay: Optional[float] = None,
    ) -> asyncio.Task:
        """Run ``callback`` every ``interval`` seconds until cancelled"""
        interval = float(interval)
        if interval <= 0:
            raise ValueError(f"Interval for '{name}' must be positive, got {interval}")
        first_delay = interval if initial_delay is None else max(0.0, float(initial_delay))

        async def runner():
            await asyncio.sleep(first_delay)
            while True:
                try:
                    await _invoke(callback)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"[{self.owner}] Periodic task '{name}' failed: {e}")
                if self._tasks.get(name) is not asyncio.current_task():
                    # cancelled or replaced from inside the callback
                    return
                await asyncio.sleep(interval)

        return self._track(name, runner())

    def spawn(self, name: Optional[str], coro: Awaitable) -> asyncio.Task:
        """Run a coroutine under this scheduler's control.

        Unnamed tasks get a unique name so several may run side by side.
        """
        if name is None:
            self._counter += 1
            name = f"task-{self._counter}"

        async def runner():
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self.owner}] Task '{name}' failed: {e}")

        task = self._track(name, runner())
        close = getattr(coro, "close", None)
        if close is not None:
            # Cancelled before its first step: the inner coroutine never ran
            task.add_done_callback(lambda t: close() if t.cancelled() else None)
        return task

    def _track(self, name: str, coro) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._forget(n, t))
        return task

    def _forget(self, name: str, task: asyncio.Task):
        if self._tasks.get(name) is task:
            del self._tasks[name]

    def cancel(self, name: str) -> bool:
        """Cancel one named task. Returns True if something was pending."""
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        if task is asyncio.current_task():
            # A task may replace itself (e.g. rescheduling); let it finish.
            return False
        task.cancel()
        self._remember_cancelled(task)
        return True

    def cancel_all(self) -> int:
        """Cancel every pending task synchronously"""
        current = asyncio.current_task() if self._has_running_loop() else None
        count = 0
        for name in list(self._tasks):
            task = self._tasks.pop(name)
            if task is current:
                continue
            task.cancel()
            self._remember_cancelled(task)
            count += 1
        return count

    def _remember_cancelled(self, task: asyncio.Task):
        # Tasks that already unwound need no waiting
        self._cancelled = [t for t in self._cancelled if not t.done()]
        self._cancelled.append(task)

    async def wait_cancelled(self):
        """Wait until every cancelled task has actually unwound"""
        pending = [t for t in self._cancelled if t is not asyncio.current_task()]
        self._cancelled = []
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def is_scheduled(self, name: str) -> bool:
        return name in self._tasks

    def pending(self) -> List[str]:
        """Names of tasks that have not finished"""
        return sorted(self._tasks)

    @staticmethod
    def _has_running_loop() -> bool:
        try:
            asyncio.get_running_loop()
            return True
        except RuntimeError:
            return False
