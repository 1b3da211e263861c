from __future__ import annotations

import threading
from datetime import datetime, timedelta

from camarchive.signals import OneShotSignal, Ticker


def test_fire_is_reported_once():
    signal = OneShotSignal("start")
    assert signal.is_set() is False
    assert signal.fire() is True
    assert signal.fire() is False
    assert signal.is_set() is True


def test_wait_times_out_when_not_fired():
    signal = OneShotSignal()
    assert signal.wait(0.01) is False


def test_fire_wakes_every_waiter():
    signal = OneShotSignal()
    woke: list[bool] = []
    lock = threading.Lock()

    def waiter():
        result = signal.wait(5.0)
        with lock:
            woke.append(result)

    threads = [threading.Thread(target=waiter) for _ in range(4)]
    for t in threads:
        t.start()
    signal.fire()
    for t in threads:
        t.join(5.0)

    assert woke == [True, True, True, True]


def test_concurrent_fire_has_single_winner():
    signal = OneShotSignal()
    results: list[bool] = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def fire():
        barrier.wait()
        won = signal.fire()
        with lock:
            results.append(won)

    threads = [threading.Thread(target=fire) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5.0)

    assert results.count(True) == 1


class _StepClock:
    def __init__(self, start: datetime):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)


def test_ticker_runs_until_stopped():
    clock = _StepClock(datetime(2024, 1, 1, 8, 0))
    stop = OneShotSignal()
    seen: list[datetime] = []

    def callback(now: datetime) -> None:
        seen.append(now)
        if len(seen) == 3:
            stop.fire()

    Ticker(2.0, callback, clock=clock).run(stop)

    assert seen == [
        datetime(2024, 1, 1, 8, 0),
        datetime(2024, 1, 1, 8, 0, 2),
        datetime(2024, 1, 1, 8, 0, 4),
    ]
    assert clock.sleeps == [2.0, 2.0]
