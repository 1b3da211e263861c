"""Numbered capture segments on disk: listing, validation and removal."""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

SEGMENT_PREFIX = "segment_"
DEFAULT_EXTENSION = ".mkv"
MIN_SEGMENT_BYTES = 1024

_TRAILING_DIGITS_RE = re.compile(r"(\d+)(?=\.[^.]*$|$)")

_log = logging.getLogger("segments")


@dataclass(frozen=True)
class Segment:
    path: Path
    sequence: int
    size: int

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class SegmentScan:
    valid: list[Segment] = field(default_factory=list)
    invalid: list[Path] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.valid) + len(self.invalid)


def numeric_sort_key(path: str | os.PathLike[str]) -> tuple[int, int, str]:
    """Order names by their trailing number, so ``x_2`` sorts before ``x_10``.

    Names without a number sort after numbered ones, alphabetically.
    """
    name = Path(path).name
    match = _TRAILING_DIGITS_RE.search(name)
    if match is None:
        return (1, 0, name)
    return (0, int(match.group(1)), name)


def sort_numerically(paths: Iterable[str | os.PathLike[str]]) -> list[Path]:
    return sorted((Path(p) for p in paths), key=numeric_sort_key)


def remove_with_retry(
    path: Path,
    *,
    attempts: int = 3,
    delay: float = 0.5,
    busy_delay: float | None = None,
    before_attempt: Optional[Callable[[], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Delete ``path``, retrying while the OS still reports it in use.

    Returns ``True`` once the file is gone (including when it was already
    missing).  Errors other than "in use" stop the loop after one warning.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        if before_attempt is not None:
            before_attempt()
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return True
        except PermissionError as exc:
            if attempt >= attempts:
                _log.warning("Giving up on %s after %d attempts: %s", path, attempts, exc)
                return False
            _log.debug("Attempt %d: %s still in use (%s), retrying", attempt, path, exc)
            sleep(busy_delay if busy_delay is not None else delay)
        except OSError as exc:
            _log.warning("Failed to remove %s: %s", path, exc)
            return False
    return False


class SegmentStore:
    """Directory shared between the capture process and the merge/upload stages."""

    def __init__(
        self,
        directory: str | os.PathLike[str],
        *,
        prefix: str = SEGMENT_PREFIX,
        extension: str = DEFAULT_EXTENSION,
        min_bytes: int = MIN_SEGMENT_BYTES,
    ) -> None:
        self.directory = Path(directory).resolve()
        self.prefix = prefix
        self.extension = extension if extension.startswith(".") else f".{extension}"
        self.min_bytes = int(min_bytes)
        self._name_re = re.compile(
            rf"^{re.escape(self.prefix)}(\d+){re.escape(self.extension)}$"
        )

    def ensure_exists(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def output_pattern(self) -> str:
        """ffmpeg segment muxer pattern, e.g. ``/dir/segment_%03d.mkv``."""
        return (self.directory / f"{self.prefix}%03d{self.extension}").as_posix()

    def sequence_of(self, name: str) -> int | None:
        match = self._name_re.match(name)
        if match is None:
            return None
        return int(match.group(1))

    def candidates(self) -> list[Path]:
        try:
            entries = list(self.directory.iterdir())
        except FileNotFoundError:
            return []
        found = [p for p in entries if self.sequence_of(p.name) is not None]
        return sort_numerically(found)

    def next_sequence(self) -> int:
        numbers = [self.sequence_of(p.name) for p in self.candidates()]
        known = [n for n in numbers if n is not None]
        return (max(known) + 1) if known else 0

    def scan(self) -> SegmentScan:
        result = SegmentScan()
        for path in self.candidates():
            sequence = self.sequence_of(path.name)
            if sequence is None:
                continue
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                # Vanished since listing; nothing to validate or delete.
                continue
            except OSError as exc:
                _log.warning("Cannot stat %s: %s", path, exc)
                result.invalid.append(path)
                continue
            if size < self.min_bytes:
                result.invalid.append(path)
            else:
                result.valid.append(Segment(path=path, sequence=sequence, size=size))
        result.valid.sort(key=lambda seg: seg.sequence)
        return result

    def purge_invalid(self, scan: SegmentScan) -> int:
        removed = 0
        for path in scan.invalid:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as exc:
                _log.warning("Failed to remove invalid segment %s: %s", path, exc)
        return removed

    def collect_valid(self) -> list[Segment]:
        """Scan, delete undersized segments and return the rest in sequence order."""
        scan = self.scan()
        _log.info("Found %d total segment files", scan.total)
        self.purge_invalid(scan)
        _log.info(
            "Found %d valid segments and %d invalid segments",
            len(scan.valid),
            len(scan.invalid),
        )
        return scan.valid
