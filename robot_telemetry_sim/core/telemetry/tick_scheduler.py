"""
Tick Schedulers

Timer facilities that drive series generators. A scheduler supplies the
current instant and fires periodic callbacks:

- ``ManualTickScheduler``: virtual clock advanced explicitly. Callbacks fire
  in due-time order with the clock set to each due instant, which makes
  whole simulations reproducible.
- ``AsyncioTickScheduler``: wall clock on an asyncio event loop. The next
  tick is armed only after the previous callback has returned, so ticks of
  one timer never overlap.

Both are single-threaded; a callback always runs to completion.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class TimerHandle:
    """Registration of a periodic callback."""
    interval: float
    callback: Callable[[], Any]
    next_due: float = 0.0
    cancelled: bool = False
    order: int = 0
    _loop_handle: Any = field(default=None, repr=False)


class TickScheduler(ABC):
    """Clock plus periodic timer registration."""

    @abstractmethod
    def now(self) -> float:
        """Current instant, epoch seconds."""
        pass

    @abstractmethod
    def call_every(self, interval: float, callback: Callable[[], Any]) -> TimerHandle:
        """Fire ``callback`` every ``interval`` seconds, first at now + interval."""
        pass

    @abstractmethod
    def cancel(self, handle: TimerHandle) -> None:
        """Stop a periodic callback; idempotent."""
        pass


class ManualTickScheduler(TickScheduler):
    """
    Virtual-time scheduler.

    Parameters
    ----------
    start_time : float
        Initial clock value, epoch seconds
    """

    def __init__(self, start_time: float = 0.0):
        self._now = float(start_time)
        self._timers: List[TimerHandle] = []
        self._counter = 0

    def now(self) -> float:
        return self._now

    def call_every(self, interval: float, callback: Callable[[], Any]) -> TimerHandle:
        if interval <= 0:
            raise ValueError(f"Timer interval must be positive, got {interval}")
        self._counter += 1
        handle = TimerHandle(
            interval=float(interval),
            callback=callback,
            next_due=self._now + interval,
            order=self._counter,
        )
        self._timers.append(handle)
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        handle.cancelled = True
        if handle in self._timers:
            self._timers.remove(handle)

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def advance(self, seconds: float) -> int:
        """
        Move the clock forward, firing every callback that falls due.

        Parameters
        ----------
        seconds : float
            Amount of virtual time to advance [s]

        Returns
        -------
        int
            Number of callbacks fired
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance by a negative amount: {seconds}")

        target = self._now + seconds
        fired = 0
        while True:
            due = [h for h in self._timers if h.next_due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.next_due, h.order))
            self._now = handle.next_due
            handle.next_due += handle.interval
            handle.callback()
            fired += 1

        self._now = target
        return fired

    def advance_to(self, instant: float) -> int:
        return self.advance(max(0.0, instant - self._now))


class AsyncioTickScheduler(TickScheduler):
    """
    Wall-clock scheduler on an asyncio event loop.

    Parameters
    ----------
    loop : asyncio.AbstractEventLoop, optional
        Loop to schedule on; defaults to the running loop at registration
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def now(self) -> float:
        return time.time()

    def call_every(self, interval: float, callback: Callable[[], Any]) -> TimerHandle:
        if interval <= 0:
            raise ValueError(f"Timer interval must be positive, got {interval}")
        loop = self._loop or asyncio.get_running_loop()
        handle = TimerHandle(interval=float(interval), callback=callback,
                             next_due=self.now() + interval)

        def fire():
            if handle.cancelled:
                return
            try:
                callback()
            except Exception:
                logger.exception("Periodic tick callback failed")
            if not handle.cancelled:
                handle.next_due = self.now() + interval
                handle._loop_handle = loop.call_later(interval, fire)

        handle._loop_handle = loop.call_later(interval, fire)
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        handle.cancelled = True
        if handle._loop_handle is not None:
            handle._loop_handle.cancel()
