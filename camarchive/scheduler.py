#!/usr/bin/env python3
"""Daily recording window and the clock-polling loop that drives the supervisor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timedelta
from typing import Any, Callable, Mapping, Optional

from camarchive.signals import OneShotSignal, SystemClock, Ticker
from camarchive.supervisor import RecordingSupervisor, SupervisorState

ONE_DAY = timedelta(days=1)

_log = logging.getLogger("scheduler")


@dataclass(frozen=True)
class RecordingWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValueError(f"window start {self.start} must precede end {self.end}")

    @classmethod
    def for_day(cls, day: date, start: dtime, end: dtime) -> "RecordingWindow":
        """Window on ``day``; an end at or before the start rolls to the next day."""
        start_at = datetime.combine(day, start)
        end_at = datetime.combine(day, end)
        if end_at <= start_at:
            end_at += ONE_DAY
        return cls(start_at, end_at)

    @classmethod
    def from_config(cls, recording_cfg: Mapping[str, Any], now: datetime) -> "RecordingWindow":
        start = dtime(int(recording_cfg.get("start_hour", 0)), int(recording_cfg.get("start_minute", 0)))
        end = dtime(int(recording_cfg.get("end_hour", 0)), int(recording_cfg.get("end_minute", 0)))
        window = cls.for_day(now.date(), start, end)
        if end <= start:
            # an overnight window opened yesterday may still be running
            previous = cls.for_day(now.date() - ONE_DAY, start, end)
            if previous.contains(now):
                return previous
        return window

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def advance(self) -> "RecordingWindow":
        return RecordingWindow(self.start + ONE_DAY, self.end + ONE_DAY)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class WindowScheduler:
    def __init__(
        self,
        window: RecordingWindow,
        supervisor: RecordingSupervisor,
        *,
        clock: Optional[SystemClock] = None,
        poll_interval: float = 1.0,
        on_cycle_end: Optional[Callable[[RecordingWindow], None]] = None,
    ) -> None:
        self.window = window
        self.supervisor = supervisor
        self._clock = clock or SystemClock()
        self.poll_interval = float(poll_interval)
        self._on_cycle_end = on_cycle_end
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def _ensure_armed(self) -> None:
        if self._active or self.supervisor.state is not SupervisorState.IDLE:
            return
        self.supervisor.arm(self.window.end, day=self.window.start.date())

    def _advance(self, now: datetime) -> None:
        finished = self.window
        self.window = self.window.advance()
        while now >= self.window.end:
            self.window = self.window.advance()
        _log.info(
            "Next recording period %s -> %s",
            self.window.start.strftime("%Y-%m-%d %H:%M"),
            self.window.end.strftime("%Y-%m-%d %H:%M"),
        )
        if self._on_cycle_end is not None:
            try:
                self._on_cycle_end(finished)
            except Exception:  # noqa: BLE001 - log and continue
                _log.exception("cycle end hook failed")

    def tick(self, now: Optional[datetime] = None) -> None:
        now = now or self._clock.now()
        self._ensure_armed()

        if self.window.contains(now):
            if not self._active and not self.supervisor.is_recording():
                self._active = True
                _log.info("Current time %s is within recording period, starting recording", now.strftime("%H:%M:%S"))
                self.supervisor.start()
        elif now >= self.window.end:
            if self._active:
                self._active = False
                _log.info("Reached end time %s, stopping recording", self.window.end.strftime("%H:%M:%S"))
                self.supervisor.stop()
                self.supervisor.wait()
            else:
                _log.info("Recording period ending %s already passed; skipping", self.window.end.strftime("%Y-%m-%d %H:%M"))
                self.supervisor.disarm()
            self._advance(now)
            self._ensure_armed()

    def _safe_tick(self, now: datetime) -> None:
        try:
            self.tick(now)
        except Exception:  # noqa: BLE001 - log and continue
            _log.exception("scheduler tick failed")

    def run(self, stop: OneShotSignal) -> None:
        _log.info(
            "Waiting for recording period %s -> %s",
            self.window.start.strftime("%Y-%m-%d %H:%M"),
            self.window.end.strftime("%Y-%m-%d %H:%M"),
        )
        try:
            Ticker(self.poll_interval, self._safe_tick, clock=self._clock).run(stop)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        if self._active:
            self._active = False
            _log.info("Shutdown requested; stopping active recording")
            self.supervisor.stop()
            self.supervisor.wait()
        else:
            self.supervisor.disarm()
