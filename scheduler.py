"""
Cooperative periodic timers.

All timers run on one thread. Each timer carries a busy flag so a callback
never starts while a previous run of the same timer is still in flight;
the overlapping tick is skipped, not queued.
"""
import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

log = logging.getLogger(__name__)


class ReentrancyGuard:
    """Busy flag for one resource."""

    def __init__(self, name: str):
        self.name = name
        self.busy = False

    @contextmanager
    def hold(self):
        """
        Yield True if the guard was free and is now held, False if already busy.

        The guard is released on exit only if this block acquired it.
        """
        if self.busy:
            log.warning("%s already in progress, skipping", self.name)
            yield False
            return
        self.busy = True
        try:
            yield True
        finally:
            self.busy = False


@dataclass
class PeriodicTimer:
    name: str
    interval: float            # seconds
    callback: Callable[[], None]
    next_due: float
    guard: ReentrancyGuard
    runs: int = 0
    skipped: int = 0


class Scheduler:
    """
    Registry of periodic timers driven by `run_pending` or the `serve` loop.

    Usage:
        sched = Scheduler()
        sched.add("sync", 30, flush)
        sched.run_pending()
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._timers: Dict[str, PeriodicTimer] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._timers

    def names(self) -> List[str]:
        return list(self._timers)

    def get(self, name: str) -> Optional[PeriodicTimer]:
        return self._timers.get(name)

    def add(self, name: str, interval: float, callback: Callable[[], None],
            run_immediately: bool = False) -> PeriodicTimer:
        """Register (or replace) a timer firing every `interval` seconds."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        now = self.clock()
        timer = PeriodicTimer(
            name=name,
            interval=interval,
            callback=callback,
            next_due=now if run_immediately else now + interval,
            guard=ReentrancyGuard(name),
        )
        self._timers[name] = timer
        return timer

    def cancel(self, name: str) -> bool:
        """Remove a timer. A run already in progress is allowed to finish."""
        return self._timers.pop(name, None) is not None

    def clear(self) -> None:
        self._timers.clear()

    def fire(self, timer: PeriodicTimer) -> bool:
        """Run one timer's callback under its guard; callback errors are logged."""
        with timer.guard.hold() as acquired:
            if not acquired:
                timer.skipped += 1
                return False
            try:
                timer.callback()
            except Exception:
                log.exception("Timer %s callback failed", timer.name)
            timer.runs += 1
            return True

    def run_pending(self) -> List[str]:
        """Fire every timer that is due; return the names that ran."""
        now = self.clock()
        fired = []
        for timer in list(self._timers.values()):
            if timer.next_due > now:
                continue
            timer.next_due = now + timer.interval
            if self.fire(timer):
                fired.append(timer.name)
        return fired

    def seconds_until_next(self) -> Optional[float]:
        if not self._timers:
            return None
        return max(0.0, min(t.next_due for t in self._timers.values()) - self.clock())

    async def serve(self, stop: asyncio.Event, max_sleep: float = 1.0) -> None:
        """Run timers until `stop` is set."""
        while not stop.is_set():
            self.run_pending()
            wait = self.seconds_until_next()
            wait = max_sleep if wait is None else min(wait, max_sleep)
            try:
                await asyncio.wait_for(stop.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass
