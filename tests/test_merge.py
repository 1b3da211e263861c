from __future__ import annotations

import re
from datetime import date
from pathlib import Path

import pytest

from camarchive.merge import (
    MANIFEST_NAME,
    MergeEngine,
    MergeFailedError,
    NoValidSegmentsError,
    merged_name,
)
from camarchive.segments import SegmentStore

_MANIFEST_LINE = re.compile(r"^file '(.*)'$")


def _write(path: Path, payload: bytes) -> Path:
    path.write_bytes(payload)
    return path


def _fake_concat(calls: list[list[str]]):
    """Stand-in for ffmpeg concat: appends the listed files into the output."""

    def concat(manifest: Path, output: Path) -> int:
        listed = []
        for line in manifest.read_text(encoding="utf-8").splitlines():
            match = _MANIFEST_LINE.match(line)
            assert match, line
            listed.append(match.group(1))
        calls.append(listed)
        with output.open("wb") as out:
            for name in listed:
                out.write(Path(name).read_bytes())
        return 0

    return concat


def _engine(store: SegmentStore, concat, sleeps: list[float], **kwargs) -> MergeEngine:
    return MergeEngine(store, concat=concat, sleep=sleeps.append, **kwargs)


def test_merged_name():
    assert merged_name(date(2024, 3, 9)) == "merged_20240309.mkv"


def test_merge_end_to_end(tmp_path):
    store = SegmentStore(tmp_path)
    _write(tmp_path / "segment_000.mkv", b"a" * 2048)
    _write(tmp_path / "segment_001.mkv", b"b" * 500)
    _write(tmp_path / "segment_002.mkv", b"c" * 3072)
    calls: list[list[str]] = []
    sleeps: list[float] = []
    released: list[int] = []

    engine = _engine(
        store,
        _fake_concat(calls),
        sleeps,
        release_capture=lambda: released.append(1),
    )
    output = engine.merge(day=date(2024, 1, 2))

    assert output == tmp_path.resolve() / "merged_20240102.mkv"
    assert output.read_bytes() == b"a" * 2048 + b"c" * 3072
    assert [Path(p).name for p in calls[0]] == ["segment_000.mkv", "segment_002.mkv"]
    assert list(tmp_path.glob("segment_*")) == []
    assert not (tmp_path / MANIFEST_NAME).exists()
    assert released
    assert sleeps[0] == 5.0


def test_merge_orders_segments_numerically(tmp_path):
    store = SegmentStore(tmp_path)
    for seq in (10, 2, 1):
        _write(tmp_path / f"segment_{seq:03d}.mkv", bytes([seq]) * 1500)
    calls: list[list[str]] = []

    output = _engine(store, _fake_concat(calls), []).merge(day=date(2024, 1, 2))

    assert [Path(p).name for p in calls[0]] == [
        "segment_001.mkv",
        "segment_002.mkv",
        "segment_010.mkv",
    ]
    assert output.read_bytes() == b"\x01" * 1500 + b"\x02" * 1500 + b"\x0a" * 1500


def test_manifest_quotes_single_quotes(tmp_path):
    odd_dir = tmp_path / "it's here"
    odd_dir.mkdir()
    store = SegmentStore(odd_dir)
    _write(odd_dir / "segment_000.mkv", b"x" * 2048)

    engine = MergeEngine(store, concat=lambda m, o: 0, sleep=lambda s: None)
    engine.write_manifest(store.collect_valid())

    text = engine.manifest_path.read_text(encoding="utf-8")
    assert text.startswith("file '")
    assert "it'\\''s here" in text


def test_no_valid_segments(tmp_path):
    store = SegmentStore(tmp_path)
    _write(tmp_path / "segment_000.mkv", b"x" * 10)
    calls: list[list[str]] = []

    with pytest.raises(NoValidSegmentsError):
        _engine(store, _fake_concat(calls), []).merge(day=date(2024, 1, 2))

    assert calls == []
    assert not (tmp_path / "merged_20240102.mkv").exists()
    assert not (tmp_path / "segment_000.mkv").exists()


def test_empty_directory(tmp_path):
    store = SegmentStore(tmp_path / "segments")
    with pytest.raises(NoValidSegmentsError):
        _engine(store, _fake_concat([]), []).merge(day=date(2024, 1, 2))


def test_failed_merge_keeps_segments(tmp_path):
    store = SegmentStore(tmp_path)
    _write(tmp_path / "segment_000.mkv", b"x" * 2048)
    _write(tmp_path / "segment_001.mkv", b"y" * 2048)
    attempts: list[int] = []
    sleeps: list[float] = []

    def broken_concat(manifest: Path, output: Path) -> int:
        attempts.append(1)
        output.write_bytes(b"partial")
        return 1

    engine = _engine(store, broken_concat, sleeps, retry_delay=5.0, settle_delay=0.0)
    with pytest.raises(MergeFailedError):
        engine.merge(day=date(2024, 1, 2))

    assert len(attempts) == 3
    # settle, then one wait between each pair of attempts
    assert sleeps == [0.0, 5.0, 5.0]
    assert not (tmp_path / "merged_20240102.mkv").exists()
    assert (tmp_path / "segment_000.mkv").exists()
    assert (tmp_path / "segment_001.mkv").exists()
    assert not (tmp_path / MANIFEST_NAME).exists()


def test_undersized_output_is_retried(tmp_path):
    store = SegmentStore(tmp_path)
    _write(tmp_path / "segment_000.mkv", b"x" * 2048)
    calls: list[list[str]] = []
    real_concat = _fake_concat(calls)

    def flaky_concat(manifest: Path, output: Path) -> int:
        if not calls:
            calls.append([])
            output.write_bytes(b"tiny")
            return 0
        return real_concat(manifest, output)

    output = _engine(store, flaky_concat, []).merge(day=date(2024, 1, 2))

    assert len(calls) == 2
    assert output.stat().st_size == 2048
