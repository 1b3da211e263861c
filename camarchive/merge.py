#!/usr/bin/env python3
"""Consolidate a cycle's capture segments into one archive file with ffmpeg concat."""

from __future__ import annotations

import logging
import subprocess
import time
from datetime import date
from pathlib import Path
from typing import Callable, Optional, Sequence

from camarchive.segments import Segment, SegmentStore, remove_with_retry

MANIFEST_NAME = "concat_list.txt"
MERGED_PREFIX = "merged_"

_log = logging.getLogger("merge")


class MergeError(RuntimeError):
    """Base class for merge failures that end the cycle without an artifact."""


class NoValidSegmentsError(MergeError):
    pass


class MergeFailedError(MergeError):
    pass


def merged_name(day: date, extension: str = ".mkv") -> str:
    return f"{MERGED_PREFIX}{day.strftime('%Y%m%d')}{extension}"


def _quote_manifest_path(path: Path) -> str:
    # ffmpeg concat syntax: single quotes, embedded quotes closed and escaped
    return "'" + path.as_posix().replace("'", "'\\''") + "'"


def run_concat(
    manifest: Path,
    output: Path,
    *,
    ffmpeg: str = "ffmpeg",
    cwd: Optional[Path] = None,
) -> int:
    cmd = [
        ffmpeg,
        "-hide_banner",
        "-loglevel", "warning",
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", str(manifest),
        "-c", "copy",
        str(output),
    ]
    try:
        proc = subprocess.run(cmd, cwd=cwd, stdin=subprocess.DEVNULL, check=False)
    except OSError as exc:
        _log.error("concat could not be launched: %r", exc)
        return -1
    return proc.returncode


class MergeEngine:
    def __init__(
        self,
        store: SegmentStore,
        *,
        concat: Callable[[Path, Path], int] | None = None,
        release_capture: Optional[Callable[[], None]] = None,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        settle_delay: float = 5.0,
        min_output_bytes: int = 1024,
        delete_attempts: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self._concat = concat or (lambda manifest, output: run_concat(manifest, output, cwd=store.directory))
        self.release_capture = release_capture
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = float(retry_delay)
        self.settle_delay = float(settle_delay)
        self.min_output_bytes = int(min_output_bytes)
        self.delete_attempts = max(1, int(delete_attempts))
        self._sleep = sleep

    @property
    def manifest_path(self) -> Path:
        return self.store.directory / MANIFEST_NAME

    def output_path(self, day: date) -> Path:
        return self.store.directory / merged_name(day, self.store.extension)

    def _release(self) -> None:
        if self.release_capture is None:
            return
        try:
            self.release_capture()
        except Exception as exc:  # noqa: BLE001 - log and continue
            _log.warning("Releasing capture process failed: %r", exc)

    def write_manifest(self, segments: Sequence[Segment]) -> list[Segment]:
        listed: list[Segment] = []
        lines: list[str] = []
        for segment in segments:
            if not segment.path.exists():
                _log.warning("Segment %s no longer exists, skipping", segment.path)
                continue
            lines.append(f"file {_quote_manifest_path(segment.path)}\n")
            listed.append(segment)
        if not listed:
            return listed
        self.manifest_path.write_text("".join(lines), encoding="utf-8")
        _log.info("Writing concat list with %d segments", len(listed))
        _log.debug("Contents of %s:\n%s", MANIFEST_NAME, "".join(lines))
        return listed

    def _output_ok(self, output: Path) -> bool:
        try:
            size = output.stat().st_size
        except OSError as exc:
            _log.warning("Output file verification failed: %s", exc)
            return False
        if size < self.min_output_bytes:
            _log.warning("Output file verification failed: %s is only %d bytes", output, size)
            return False
        return True

    def _discard_output(self, output: Path) -> None:
        try:
            output.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            _log.warning("Failed to remove partial output %s: %s", output, exc)

    def _remove_manifest(self) -> None:
        try:
            self.manifest_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            _log.warning("Failed to remove concat list file: %s", exc)

    def merge(self, day: Optional[date] = None) -> Path:
        """Merge the directory's valid segments into ``merged_<day>``.

        Raises ``NoValidSegmentsError`` when nothing can be merged and
        ``MergeFailedError`` once every concat attempt failed; in the latter
        case the segments are left in place for manual recovery.
        """
        day = day or date.today()

        self._release()
        self._sleep(self.settle_delay)

        segments = self.store.collect_valid()
        if not segments:
            raise NoValidSegmentsError("no valid segments found to merge")

        listed = self.write_manifest(segments)
        if not listed:
            raise NoValidSegmentsError("no valid segments available for merging")

        output = self.output_path(day)
        merged = False
        for attempt in range(1, self.max_attempts + 1):
            _log.info("Attempting to merge segments (attempt %d/%d)", attempt, self.max_attempts)
            rc = self._concat(self.manifest_path, output)
            if rc != 0:
                _log.warning("Merge attempt %d failed: exit code %s", attempt, rc)
            elif self._output_ok(output):
                merged = True
                break
            if attempt < self.max_attempts:
                _log.info("Waiting %.0f seconds before retry", self.retry_delay)
                self._sleep(self.retry_delay)

        if not merged:
            self._discard_output(output)
            self._remove_manifest()
            raise MergeFailedError(f"merge failed after {self.max_attempts} attempts")

        _log.info("Merge successful, cleaning up segment files")
        for segment in listed:
            remove_with_retry(
                segment.path,
                attempts=self.delete_attempts,
                delay=1.0,
                busy_delay=2.0,
                before_attempt=self._release,
                sleep=self._sleep,
            )
        self._remove_manifest()
        _log.info("Successfully merged %d segments into %s", len(listed), output)
        return output
