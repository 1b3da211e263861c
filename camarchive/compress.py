"""Optional zip step before upload; only kept when it actually saves space."""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path

DEFAULT_THRESHOLD = 0.95

_log = logging.getLogger("compress")


@dataclass(frozen=True)
class CompressionResult:
    path: Path
    compressed: bool
    ratio: float | None = None


def maybe_compress(source: Path, *, threshold: float = DEFAULT_THRESHOLD) -> CompressionResult:
    """Zip ``source`` next to itself; fall back to the original if the ratio is poor.

    The original file is never modified.  When compression is not worth it
    the zip is removed and ``source`` is returned unchanged.
    """
    original_size = source.stat().st_size
    target = source.with_suffix(".zip")

    try:
        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.write(source, arcname=source.name)
    except (OSError, zipfile.BadZipFile) as exc:
        _log.warning("Compression of %s failed: %s", source, exc)
        target.unlink(missing_ok=True)
        return CompressionResult(source, False)

    compressed_size = target.stat().st_size
    ratio = compressed_size / original_size if original_size else 1.0
    _log.info(
        "Compressed %s: %.2f MB -> %.2f MB (%.2f%%)",
        source.name,
        original_size / 1024 / 1024,
        compressed_size / 1024 / 1024,
        ratio * 100,
    )
    if ratio >= threshold:
        _log.info("Compression not effective, using original file")
        target.unlink(missing_ok=True)
        return CompressionResult(source, False, ratio)
    return CompressionResult(target, True, ratio)
