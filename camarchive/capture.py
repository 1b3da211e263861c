#!/usr/bin/env python3
"""
Capture process handle: one ffmpeg invocation writing numbered segments.

- start() spawns ffmpeg in its own session so the whole process group can be
  signalled without touching unrelated ffmpeg instances
- wait() blocks up to a timeout and reports the exit code (or None)
- stop() asks politely (SIGTERM), then SIGKILLs the process group
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import Callable, Optional, Sequence

from camarchive.segments import SegmentStore

_log = logging.getLogger("capture")


class CaptureError(RuntimeError):
    """Raised when the capture process cannot be launched."""


def build_capture_command(
    source_url: str,
    store: SegmentStore,
    *,
    segment_time: int,
    start_number: int = 0,
    ffmpeg: str = "ffmpeg",
    transport: str = "tcp",
    connect_timeout_sec: float = 5.0,
) -> list[str]:
    timeout_us = int(max(0.0, float(connect_timeout_sec)) * 1_000_000)
    return [
        ffmpeg,
        "-hide_banner",
        "-loglevel", "warning",
        "-rtsp_transport", transport,
        "-timeout", str(timeout_us),
        "-i", source_url,
        "-c", "copy",
        "-f", "segment",
        "-segment_time", str(int(segment_time)),
        "-segment_format", "matroska",
        "-segment_start_number", str(int(start_number)),
        "-reset_timestamps", "1",
        "-fflags", "+genpts",
        store.output_pattern(),
    ]


class CaptureProcess:
    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Optional[str] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.command = list(command)
        self.cwd = cwd
        self._popen = popen
        self._proc: Optional[subprocess.Popen] = None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    def start(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            return
        try:
            self._proc = self._popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as exc:
            self._proc = None
            raise CaptureError(f"failed to start capture: {exc}") from exc
        _log.info("capture started pid=%s", self._proc.pid)

    def poll(self) -> Optional[int]:
        if self._proc is None:
            return None
        return self._proc.poll()

    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Return the exit code, or ``None`` if still running after ``timeout``."""
        if self._proc is None:
            return None
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def _kill_group(self) -> None:
        proc = self._proc
        if proc is None:
            return
        if os.name == "posix":
            try:
                os.killpg(proc.pid, signal.SIGKILL)
                return
            except ProcessLookupError:
                return
            except OSError as exc:
                # Fall back to the direct child only; descendants may survive.
                _log.warning("killpg(%s) failed: %r; killing pid only", proc.pid, exc)
        proc.kill()

    def stop(self, timeout: float = 5.0) -> Optional[int]:
        """Terminate the capture process, escalating to SIGKILL after ``timeout``."""
        proc = self._proc
        if proc is None:
            return None

        rc = proc.poll()
        if rc is not None:
            _log.info("capture already exited rc=%s", rc)
            return rc

        try:
            proc.terminate()
            try:
                rc = proc.wait(timeout=timeout)
                _log.info("capture terminated rc=%s", rc)
                return rc
            except subprocess.TimeoutExpired:
                _log.warning("capture did not exit after SIGTERM; sending SIGKILL")
            self._kill_group()
            try:
                rc = proc.wait(timeout=timeout)
                _log.info("capture killed rc=%s", rc)
            except subprocess.TimeoutExpired:
                _log.error("capture pid=%s still not reaped after SIGKILL", proc.pid)
        except OSError as exc:
            _log.error("Error during capture termination: %r", exc)
        return rc

    def kill(self) -> None:
        """Forced termination without the graceful phase."""
        if self._proc is None or self._proc.poll() is not None:
            return
        try:
            self._kill_group()
            self._proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            _log.error("capture pid=%s still not reaped after SIGKILL", self._proc.pid)
        except OSError as exc:
            _log.error("capture kill failed: %r", exc)
