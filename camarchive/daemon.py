#!/usr/bin/env python3
"""
camarchive daemon and one-shot tools.

  camarchive [run]          capture during the daily window, merge, upload
  camarchive merge          merge whatever segments are on disk now
  camarchive upload PATH..  upload files through the worker pool
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional

from camarchive import config as config_module
from camarchive.capture import CaptureProcess, build_capture_command
from camarchive.merge import MergeEngine, MergeError
from camarchive.scheduler import RecordingWindow, WindowScheduler
from camarchive.segments import SegmentStore
from camarchive.signals import OneShotSignal, SystemClock
from camarchive.supervisor import RecordingSupervisor
from camarchive.transport import RemoteTransport
from camarchive.uploader import UploadCoordinator, prune_expired, upload_pending

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
SHUTDOWN_UPLOAD_TIMEOUT = 300.0

_log = logging.getLogger("daemon")


@dataclass
class Runtime:
    cfg: Dict[str, Any]
    store: SegmentStore
    merge_engine: MergeEngine
    coordinator: Optional[UploadCoordinator]
    supervisor: RecordingSupervisor
    scheduler: WindowScheduler


def configure_logging(level: str, *, dev_mode: bool = False) -> None:
    resolved = logging.DEBUG if dev_mode else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    # requests/urllib3 connection chatter is not useful at INFO
    logging.getLogger("urllib3").setLevel(max(resolved, logging.WARNING))


def build_store(cfg: Dict[str, Any]) -> SegmentStore:
    rec = cfg["recording"]
    return SegmentStore(
        rec["output_dir"],
        extension=str(rec.get("segment_extension", ".mkv")),
        min_bytes=int(rec.get("min_segment_bytes", 1024)),
    )


def build_merge_engine(cfg: Dict[str, Any], store: SegmentStore) -> MergeEngine:
    merge_cfg = cfg["merge"]
    return MergeEngine(
        store,
        max_attempts=int(merge_cfg.get("max_attempts", 3)),
        retry_delay=float(merge_cfg.get("retry_delay_sec", 5.0)),
        settle_delay=float(merge_cfg.get("settle_delay_sec", 5.0)),
        min_output_bytes=int(merge_cfg.get("min_output_bytes", 1024)),
        delete_attempts=int(merge_cfg.get("delete_attempts", 10)),
    )


def build_coordinator(cfg: Dict[str, Any]) -> Optional[UploadCoordinator]:
    upload_cfg = cfg["upload"]
    if not upload_cfg.get("enabled"):
        _log.info("uploads disabled (upload.enabled is false)")
        return None
    if not str(upload_cfg.get("base_url", "")).strip():
        _log.warning("uploads disabled: upload.base_url is not configured")
        return None
    transport = RemoteTransport.from_config(upload_cfg)
    return UploadCoordinator.from_config(transport, upload_cfg)


def build_runtime(cfg: Dict[str, Any], *, clock: Optional[SystemClock] = None) -> Runtime:
    clock = clock or SystemClock()
    rec = cfg["recording"]
    camera = cfg["camera"]
    store = build_store(cfg)
    store.ensure_exists()
    source_url = config_module.rtsp_url(cfg)

    def capture_factory() -> CaptureProcess:
        cmd = build_capture_command(
            source_url,
            store,
            segment_time=int(rec.get("segment_time", 300)),
            start_number=store.next_sequence(),
            ffmpeg=str(rec.get("ffmpeg_path", "ffmpeg")),
            transport=str(camera.get("transport", "tcp")),
            connect_timeout_sec=float(camera.get("connect_timeout_sec", 5.0)),
        )
        return CaptureProcess(cmd, cwd=str(store.directory))

    merge_engine = build_merge_engine(cfg, store)
    coordinator = build_coordinator(cfg)
    supervisor = RecordingSupervisor(
        capture_factory,
        merge_engine,
        uploader=coordinator,
        clock=clock,
        retry_delay=float(rec.get("retry_delay_sec", 5.0)),
        settle_delay=float(rec.get("settle_delay_sec", 5.0)),
        stop_timeout=float(rec.get("stop_timeout_sec", 5.0)),
        poll_interval=float(rec.get("poll_interval_sec", 1.0)),
    )

    upload_cfg = cfg["upload"]
    max_age = float(upload_cfg.get("max_file_age_days", 0) or 0)
    pattern = str(upload_cfg.get("file_pattern", "merged_*.mkv"))

    def on_cycle_end(_window: RecordingWindow) -> None:
        prune_expired(store.directory, pattern, max_age)

    scheduler = WindowScheduler(
        RecordingWindow.from_config(rec, clock.now()),
        supervisor,
        clock=clock,
        poll_interval=float(rec.get("poll_interval_sec", 1.0)),
        on_cycle_end=on_cycle_end,
    )
    return Runtime(cfg, store, merge_engine, coordinator, supervisor, scheduler)


def cmd_run(cfg: Dict[str, Any]) -> int:
    try:
        runtime = build_runtime(cfg)
    except ValueError as exc:
        _log.error("Unable to start: %s", exc)
        return 1

    stop = OneShotSignal("shutdown")

    def handle_signal(signum, frame):  # noqa
        _log.info("received signal %s, shutting down...", signum)
        stop.fire()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    upload_cfg = cfg["upload"]
    if runtime.coordinator is not None and upload_cfg.get("sweep_on_start"):
        pattern = str(upload_cfg.get("file_pattern", "merged_*.mkv"))
        prune_expired(runtime.store.directory, pattern, float(upload_cfg.get("max_file_age_days", 0) or 0))
        runtime.coordinator.upload_async(sorted(runtime.store.directory.glob(pattern)))

    _log.info("camarchive started; segments in %s", runtime.store.directory)
    runtime.scheduler.run(stop)

    if runtime.coordinator is not None:
        if not runtime.coordinator.wait_for_background(SHUTDOWN_UPLOAD_TIMEOUT):
            _log.warning("background uploads still running at exit")
    _log.info("clean shutdown complete")
    return 0


def cmd_merge(cfg: Dict[str, Any], directory: Optional[str], upload: bool) -> int:
    if directory:
        cfg = dict(cfg)
        cfg["recording"] = dict(cfg["recording"], output_dir=directory)
    store = build_store(cfg)
    engine = build_merge_engine(cfg, store)
    try:
        artifact = engine.merge(day=date.today())
    except MergeError as exc:
        _log.error("merge failed: %s", exc)
        return 1
    print(artifact, flush=True)
    if upload:
        coordinator = build_coordinator(cfg)
        if coordinator is None:
            return 1
        summary = coordinator.upload([artifact])
        return 0 if summary.completed == summary.total else 1
    return 0


def cmd_upload(cfg: Dict[str, Any], paths: list[str], pending: bool) -> int:
    coordinator = build_coordinator(cfg)
    if coordinator is None:
        return 1
    upload_cfg = cfg["upload"]
    if pending:
        summary = upload_pending(
            coordinator,
            cfg["recording"]["output_dir"],
            str(upload_cfg.get("file_pattern", "merged_*.mkv")),
            max_age_days=float(upload_cfg.get("max_file_age_days", 0) or 0),
        )
    else:
        summary = coordinator.upload(paths)
    print(f"{summary.completed}/{summary.total} completed", flush=True)
    return 0 if summary.completed == summary.total else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Daily stream capture, merge and upload.")
    parser.add_argument("--config", help="Path to config.yaml (overrides CAMARCHIVE_CONFIG).")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the scheduler loop (default).")
    merge_parser = sub.add_parser("merge", help="Merge the segments currently on disk.")
    merge_parser.add_argument("--dir", help="Segment directory (defaults to recording.output_dir).")
    merge_parser.add_argument("--upload", action="store_true", help="Upload the merged file afterwards.")
    upload_parser = sub.add_parser("upload", help="Upload files to remote storage.")
    upload_parser.add_argument("paths", nargs="*", help="Files to upload")
    upload_parser.add_argument(
        "--pending",
        action="store_true",
        help="Upload archives matching upload.file_pattern in the output directory.",
    )
    args = parser.parse_args(argv)

    if args.config:
        os.environ["CAMARCHIVE_CONFIG"] = str(Path(args.config).expanduser())
    cfg = config_module.reload_cfg()
    configure_logging(args.log_level, dev_mode=bool(cfg["logging"].get("dev_mode")))
    active = config_module.active_config_path()
    _log.info("configuration: %s", active if active else "built-in defaults")

    if args.command == "merge":
        return cmd_merge(cfg, args.dir, args.upload)
    if args.command == "upload":
        if not args.paths and not args.pending:
            parser.error("upload requires PATH arguments or --pending")
        return cmd_upload(cfg, args.paths, args.pending)
    return cmd_run(cfg)


if __name__ == "__main__":
    try:
        sys.stdout.reconfigure(line_buffering=True)
    except AttributeError:
        pass
    raise SystemExit(main())
