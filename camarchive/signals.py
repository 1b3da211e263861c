"""Single-fire signals and the wall clock used by the recording loop."""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Callable, Optional


class OneShotSignal:
    """Broadcast flag that can be fired once and observed by any number of waiters.

    ``fire()`` returns ``True`` only for the call that actually raised the
    signal; later calls are no-ops that return ``False``.  ``is_set()`` never
    blocks, so loops can check it alongside other conditions.
    """

    def __init__(self, name: str = "signal") -> None:
        self.name = name
        self._cond = threading.Condition(threading.Lock())
        self._fired = False

    def fire(self) -> bool:
        with self._cond:
            if self._fired:
                return False
            self._fired = True
            self._cond.notify_all()
        return True

    def is_set(self) -> bool:
        with self._cond:
            return self._fired

    def wait(self, timeout: Optional[float] = None) -> bool:
        deadline: float | None = None
        if timeout is not None:
            deadline = time.monotonic() + timeout

        with self._cond:
            while not self._fired:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def __repr__(self) -> str:
        return f"OneShotSignal({self.name!r}, fired={self.is_set()})"


class SystemClock:
    """Wall clock; tests substitute an object with the same two methods."""

    def now(self) -> datetime:
        return datetime.now()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class Ticker:
    """Call ``callback`` every ``interval`` seconds until ``stop`` fires."""

    def __init__(
        self,
        interval: float,
        callback: Callable[[datetime], None],
        *,
        clock: SystemClock | None = None,
    ) -> None:
        self.interval = max(0.0, float(interval))
        self._callback = callback
        self._clock = clock or SystemClock()

    def run(self, stop: OneShotSignal) -> None:
        while not stop.is_set():
            self._callback(self._clock.now())
            if stop.is_set():
                break
            self._clock.sleep(self.interval)
