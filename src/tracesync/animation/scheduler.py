"""Deferred callbacks for the animation sequencer."""

from typing import Callable, Protocol

import trio
from loguru import logger


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Schedules a callback to run once after ``delay`` seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class TrioTimer:
    """Handle for one pending trio timer."""

    def __init__(self, delay: float):
        self.delay = delay
        self.cancel_scope = trio.CancelScope()
        self.fired = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_scope.cancel_called

    def cancel(self) -> None:
        self.cancel_scope.cancel()


class TrioScheduler:
    """Runs each timer as a task of ``nursery`` inside its own cancel scope."""

    def __init__(self, nursery: trio.Nursery):
        self._nursery = nursery

    def call_later(self, delay: float, callback: Callable[[], None]) -> TrioTimer:
        timer = TrioTimer(delay)
        self._nursery.start_soon(self._run, timer, callback)
        return timer

    async def _run(self, timer: TrioTimer, callback: Callable[[], None]) -> None:
        with timer.cancel_scope:
            await trio.sleep(timer.delay)
            timer.fired = True
            logger.trace(f"Timer fired after {timer.delay:.3f}s")
            callback()
