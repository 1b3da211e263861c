#!/usr/bin/env python3
"""Fan uploads out over a bounded worker pool without transferring a file twice."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Optional

from camarchive.compress import DEFAULT_THRESHOLD, maybe_compress
from camarchive.segments import SegmentStore, remove_with_retry, sort_numerically
from camarchive.transport import RemoteTransport, TransportError

DEFAULT_CONCURRENCY = 3

_log = logging.getLogger("uploader")


class UploadState(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class UploadStatus:
    """Shared per-file upload state.

    ``claim`` is a single test-and-set under the lock: it succeeds only when
    the file is neither in progress nor already completed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, UploadState] = {}

    @staticmethod
    def key(path: str | Path) -> str:
        return str(Path(path).resolve())

    def claim(self, key: str) -> bool:
        with self._lock:
            if key in self._states:
                return False
            self._states[key] = UploadState.IN_PROGRESS
            return True

    def mark_completed(self, key: str) -> None:
        with self._lock:
            self._states[key] = UploadState.COMPLETED

    def forget_missing(self) -> int:
        """Drop completed entries whose file is gone; returns how many."""
        with self._lock:
            gone = [
                k for k, v in self._states.items()
                if v is UploadState.COMPLETED and not Path(k).exists()
            ]
            for key in gone:
                del self._states[key]
        return len(gone)

    def release(self, key: str) -> None:
        with self._lock:
            if self._states.get(key) is UploadState.IN_PROGRESS:
                del self._states[key]

    def state(self, key: str) -> UploadState | None:
        with self._lock:
            return self._states.get(key)

    def in_progress(self) -> set[str]:
        with self._lock:
            return {k for k, v in self._states.items() if v is UploadState.IN_PROGRESS}

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return {k: v.value for k, v in self._states.items()}


@dataclass
class UploadTask:
    source: Path
    destination: Optional[str]
    attempts_remaining: int


@dataclass
class UploadResult:
    source: Path
    ok: bool
    attempts: int
    worker: str
    response: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class UploadSummary:
    total: int = 0
    results: list[UploadResult] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> list[Path]:
        return [r.source for r in self.results if not r.ok and not r.skipped]

    def __str__(self) -> str:
        return f"{self.completed}/{self.total} uploaded"


class UploadCoordinator:
    def __init__(
        self,
        transport: RemoteTransport,
        *,
        concurrency: int | None = DEFAULT_CONCURRENCY,
        retry_count: int = 3,
        retry_delay: float = 5.0,
        status: Optional[UploadStatus] = None,
        compress: bool = False,
        compress_threshold: float = DEFAULT_THRESHOLD,
        sleep=time.sleep,
    ) -> None:
        self.transport = transport
        try:
            concurrency = int(concurrency or 0)
        except (TypeError, ValueError):
            concurrency = 0
        self.concurrency = concurrency if concurrency > 0 else DEFAULT_CONCURRENCY
        self.retry_count = max(1, int(retry_count))
        self.retry_delay = float(retry_delay)
        self.status = status or UploadStatus()
        self.compress = bool(compress)
        self.compress_threshold = float(compress_threshold)
        self._sleep = sleep
        self._background: list[threading.Thread] = []
        self._background_lock = threading.Lock()

    @classmethod
    def from_config(cls, transport: RemoteTransport, upload_cfg: dict[str, Any]) -> "UploadCoordinator":
        return cls(
            transport,
            concurrency=upload_cfg.get("concurrency"),
            retry_count=int(upload_cfg.get("retry_count", 3)),
            retry_delay=float(upload_cfg.get("retry_delay_sec", 5.0)),
            compress=bool(upload_cfg.get("compress", False)),
            compress_threshold=float(upload_cfg.get("compress_threshold", DEFAULT_THRESHOLD)),
        )

    # --- Enumeration ---
    def _enumerate(self, paths: Iterable[str | Path]) -> list[Path]:
        seen: set[str] = set()
        found: list[Path] = []
        for raw in paths:
            path = Path(raw)
            if not path.is_file():
                _log.warning("skip missing file: %s", path)
                continue
            key = self.status.key(path)
            if key in seen:
                continue
            seen.add(key)
            found.append(path)
        return sort_numerically(found)

    # --- Per-file work ---
    def _prepare(self, source: Path, destination: Optional[str]) -> tuple[Path, Optional[str], bool]:
        if not self.compress:
            return source, destination, False
        result = maybe_compress(source, threshold=self.compress_threshold)
        if result.compressed and destination:
            destination = str(PurePosixPath(destination).with_suffix(result.path.suffix))
        return result.path, destination, result.compressed

    def _transfer(self, task: UploadTask) -> dict[str, Any]:
        send_path, destination, compressed = self._prepare(task.source, task.destination)
        try:
            response = self.transport.transfer_file(send_path, destination)
        finally:
            if compressed:
                send_path.unlink(missing_ok=True)
        if compressed and self.transport.delete_source:
            remove_with_retry(task.source, sleep=self._sleep)
        return response

    def _run_task(self, task: UploadTask, worker: str) -> UploadResult:
        key = self.status.key(task.source)
        if not self.status.claim(key):
            _log.info("[%s] %s already claimed or uploaded; skipping", worker, task.source.name)
            return UploadResult(task.source, ok=False, attempts=0, worker=worker, skipped=True)

        attempts = 0
        last_error: str | None = None
        try:
            while task.attempts_remaining > 0:
                if not task.source.is_file():
                    _log.info("[%s] %s disappeared before upload; skipping", worker, task.source.name)
                    return UploadResult(task.source, ok=False, attempts=attempts, worker=worker, skipped=True)
                task.attempts_remaining -= 1
                attempts += 1
                try:
                    response = self._transfer(task)
                except (TransportError, OSError) as exc:
                    last_error = str(exc)
                    _log.warning(
                        "[%s] upload attempt %d/%d failed for %s: %s",
                        worker,
                        attempts,
                        self.retry_count,
                        task.source.name,
                        exc,
                    )
                    if task.attempts_remaining > 0 and task.source.is_file():
                        self._sleep(self.retry_delay)
                    continue
                self.status.mark_completed(key)
                _log.info("[%s] uploaded %s", worker, task.source.name)
                return UploadResult(task.source, ok=True, attempts=attempts, worker=worker, response=response)
        finally:
            self.status.release(key)

        _log.error(
            "[%s] failed to upload %s after %d attempts: %s",
            worker,
            task.source,
            attempts,
            last_error,
        )
        return UploadResult(task.source, ok=False, attempts=attempts, worker=worker, error=last_error)

    def _worker_main(
        self,
        name: str,
        tasks: "queue.Queue[UploadTask]",
        summary: UploadSummary,
        summary_lock: threading.Lock,
    ) -> None:
        while True:
            try:
                task = tasks.get_nowait()
            except queue.Empty:
                return
            try:
                result = self._run_task(task, name)
            except Exception as exc:  # noqa: BLE001 - log and continue
                _log.exception("[%s] unexpected error uploading %s", name, task.source)
                result = UploadResult(task.source, ok=False, attempts=0, worker=name, error=repr(exc))
            finally:
                tasks.task_done()
            with summary_lock:
                summary.results.append(result)

    # --- Public API ---
    def upload(self, paths: Iterable[str | Path], destination: Optional[str] = None) -> UploadSummary:
        """Upload ``paths`` with ``concurrency`` workers and block until done.

        ``destination`` only applies when a single file is given; otherwise
        each file goes to the transport's default dated location.
        """
        self.status.forget_missing()
        files = self._enumerate(paths)
        summary = UploadSummary(total=len(files))
        if not files:
            return summary

        tasks: "queue.Queue[UploadTask]" = queue.Queue()
        for path in files:
            dest = destination if destination and len(files) == 1 else None
            tasks.put(UploadTask(source=path, destination=dest, attempts_remaining=self.retry_count))

        summary_lock = threading.Lock()
        workers = []
        for index in range(min(self.concurrency, len(files))):
            worker = threading.Thread(
                target=self._worker_main,
                args=(f"upload-{index + 1}", tasks, summary, summary_lock),
                name=f"upload-{index + 1}",
                daemon=True,
            )
            worker.start()
            workers.append(worker)
        for worker in workers:
            worker.join()

        _log.info("Upload finished: %s", summary)
        return summary

    def upload_segments(self, store: SegmentStore) -> UploadSummary:
        segments = store.collect_valid()
        return self.upload([segment.path for segment in segments])

    def upload_async(self, paths: Iterable[str | Path]) -> threading.Thread:
        files = list(paths)
        thread = threading.Thread(
            target=self.upload,
            args=(files,),
            name="upload-coordinator",
            daemon=True,
        )
        with self._background_lock:
            self._background = [t for t in self._background if t.is_alive()]
            self._background.append(thread)
        thread.start()
        return thread

    def wait_for_background(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._background_lock:
            threads = list(self._background)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(t.is_alive() for t in threads)


def _matching_files(directory: Path, pattern: str) -> list[Path]:
    return sort_numerically(p for p in directory.glob(pattern) if p.is_file())


def _is_expired(path: Path, cutoff: datetime) -> bool:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime) < cutoff
    except FileNotFoundError:
        return False


def prune_expired(
    directory: str | Path,
    pattern: str,
    max_age_days: float,
    *,
    now: Optional[datetime] = None,
) -> list[Path]:
    """Delete files matching ``pattern`` older than ``max_age_days`` (0 disables)."""
    if not max_age_days or max_age_days <= 0:
        return []
    cutoff = (now or datetime.now()) - timedelta(days=float(max_age_days))
    removed: list[Path] = []
    for path in _matching_files(Path(directory), pattern):
        if not _is_expired(path, cutoff):
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            _log.warning("Failed to remove old file %s: %s", path, exc)
            continue
        _log.info("Removed old file: %s", path)
        removed.append(path)
    return removed


def upload_pending(
    coordinator: UploadCoordinator,
    directory: str | Path,
    pattern: str,
    *,
    max_age_days: float = 0,
    now: Optional[datetime] = None,
) -> UploadSummary:
    """Upload leftover archives in ``directory``; expired ones are deleted instead."""
    prune_expired(directory, pattern, max_age_days, now=now)
    return coordinator.upload(_matching_files(Path(directory), pattern))
