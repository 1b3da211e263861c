#!/usr/bin/env python3
"""
Recording supervisor: owns one capture process per recording cycle.

States: IDLE -> WAITING (armed, blocked on the start signal) -> CAPTURING
-> STOPPING -> IDLE.

- Capture launch failures and capture exits before the deadline are retried
  indefinitely with a fixed delay.
- The stop signal and the end-time deadline are checked on every poll.
- Teardown stops the capture, waits for file handles to settle, merges once,
  clears the recording flag and hands the artifact to the uploader in the
  background.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from camarchive.capture import CaptureError, CaptureProcess
from camarchive.merge import MergeEngine, MergeError
from camarchive.signals import OneShotSignal, SystemClock
from camarchive.uploader import UploadCoordinator

_log = logging.getLogger("supervisor")


class SupervisorState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    CAPTURING = "capturing"
    STOPPING = "stopping"


class RecordingSupervisor:
    def __init__(
        self,
        capture_factory: Callable[[], CaptureProcess],
        merge_engine: MergeEngine,
        *,
        uploader: Optional[UploadCoordinator] = None,
        clock: Optional[SystemClock] = None,
        retry_delay: float = 5.0,
        settle_delay: float = 5.0,
        stop_timeout: float = 5.0,
        poll_interval: float = 1.0,
    ) -> None:
        self._capture_factory = capture_factory
        self.merge_engine = merge_engine
        self.uploader = uploader
        self._clock = clock or SystemClock()
        self.retry_delay = float(retry_delay)
        self.settle_delay = float(settle_delay)
        self.stop_timeout = float(stop_timeout)
        self.poll_interval = float(poll_interval)

        self._lock = threading.Lock()
        self._state = SupervisorState.IDLE
        self._recording = False
        self._cancelled = False
        self._start_signal = OneShotSignal("start")
        self._stop_signal = OneShotSignal("stop")
        self._thread: Optional[threading.Thread] = None
        self._capture: Optional[CaptureProcess] = None
        self._end_time: Optional[datetime] = None
        self._cycle_day: Optional[date] = None

        self.retry_count = 0
        self.last_artifact: Optional[Path] = None
        self.last_error: Optional[str] = None

        if self.merge_engine.release_capture is None:
            self.merge_engine.release_capture = self.kill_capture

    # --- Synchronized accessors ---
    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    def _set_state(self, state: SupervisorState) -> None:
        with self._lock:
            self._state = state
        _log.debug("state -> %s", state.value)

    def is_recording(self) -> bool:
        with self._lock:
            return self._recording

    @property
    def end_time(self) -> Optional[datetime]:
        return self._end_time

    # --- Cycle control ---
    def arm(self, end_time: datetime, *, day: Optional[date] = None) -> threading.Thread:
        """Prepare a new cycle ending at ``end_time`` and wait for ``start()``."""
        with self._lock:
            if self._state is not SupervisorState.IDLE:
                raise RuntimeError(f"cannot arm supervisor while {self._state.value}")
            self._end_time = end_time
            self._cycle_day = day or end_time.date()
            self._start_signal = OneShotSignal("start")
            self._stop_signal = OneShotSignal("stop")
            self._cancelled = False
            self._state = SupervisorState.WAITING
            thread = threading.Thread(target=self._run, name="recording-supervisor", daemon=True)
            self._thread = thread
        thread.start()
        return thread

    def start(self) -> bool:
        with self._lock:
            if self._recording or self._state is not SupervisorState.WAITING:
                return False
            self._recording = True
            signal = self._start_signal
        return signal.fire()

    def stop(self) -> bool:
        with self._lock:
            if not self._recording:
                return False
            signal = self._stop_signal
        return signal.fire()

    def disarm(self) -> None:
        """Release an armed cycle that never started, without capturing or merging."""
        with self._lock:
            if self._state is not SupervisorState.WAITING or self._recording:
                return
            self._cancelled = True
            signal = self._start_signal
        signal.fire()
        self.wait()

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def kill_capture(self) -> None:
        with self._lock:
            capture = self._capture
        if capture is not None:
            capture.kill()

    # --- Worker thread ---
    def _should_stop(self) -> bool:
        if self._stop_signal.is_set():
            return True
        end_time = self._end_time
        if end_time is not None and self._clock.now() >= end_time:
            _log.info("Reached end time %s", end_time.strftime("%H:%M:%S"))
            return True
        return False

    def _backoff(self) -> None:
        self._stop_signal.wait(self.retry_delay)

    def _capture_loop(self) -> None:
        while not self._should_stop():
            try:
                capture = self._capture_factory()
                capture.start()
            except (CaptureError, OSError) as exc:
                self.retry_count += 1
                _log.error("Error starting capture (attempt %d): %s", self.retry_count, exc)
                self._backoff()
                continue

            with self._lock:
                self._capture = capture
            self.retry_count = 0
            _log.info("Successfully connected to camera")

            rc = None
            while rc is None:
                if self._should_stop():
                    return
                rc = capture.wait(timeout=self.poll_interval)

            if self._should_stop():
                return
            self.retry_count += 1
            _log.warning("Capture exited with rc=%s (attempt %d); restarting", rc, self.retry_count)
            self._backoff()

    def _teardown(self) -> None:
        self._set_state(SupervisorState.STOPPING)
        with self._lock:
            capture = self._capture
        if capture is not None:
            try:
                capture.stop(timeout=self.stop_timeout)
            except Exception as exc:  # noqa: BLE001 - log and continue
                _log.warning("Failed to stop capture process: %r", exc)
        self._clock.sleep(self.settle_delay)

        artifact: Optional[Path] = None
        try:
            artifact = self.merge_engine.merge(day=self._cycle_day)
            self.last_error = None
        except MergeError as exc:
            self.last_error = str(exc)
            _log.warning("Failed to merge segments: %s", exc)
        except Exception as exc:  # noqa: BLE001 - log and continue
            self.last_error = repr(exc)
            _log.exception("Unexpected merge failure")
        self.last_artifact = artifact

        with self._lock:
            self._recording = False
            self._capture = None

        if artifact is not None and self.uploader is not None:
            try:
                size = artifact.stat().st_size
            except OSError:
                size = 0
            if size > 0:
                _log.info("Starting background upload of %s", artifact)
                self.uploader.upload_async([artifact])

    def _run(self) -> None:
        self._start_signal.wait()
        with self._lock:
            cancelled = self._cancelled
        if cancelled:
            self._set_state(SupervisorState.IDLE)
            return

        self._set_state(SupervisorState.CAPTURING)
        try:
            self._capture_loop()
        except Exception:  # noqa: BLE001 - log and continue
            _log.exception("Capture loop error")
        finally:
            try:
                self._teardown()
            finally:
                with self._lock:
                    self._recording = False
                    self._state = SupervisorState.IDLE
