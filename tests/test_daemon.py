from __future__ import annotations

import copy
from datetime import date, datetime
from pathlib import Path

from camarchive import config as config_module
from camarchive import daemon
from camarchive import merge as merge_module
from camarchive.capture import CaptureProcess


def _cfg(tmp_path: Path, **upload) -> dict:
    cfg = copy.deepcopy(config_module._DEFAULTS)
    cfg["camera"].update({"host": "cam.local", "username": "admin", "password": "pw", "stream": "live"})
    cfg["recording"]["output_dir"] = str(tmp_path / "segments")
    cfg["upload"].update(upload)
    return cfg


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


class _Clock:
    def now(self):
        return datetime(2024, 3, 1, 12, 0)

    def sleep(self, seconds):
        pass


def test_build_runtime_wires_components(tmp_path):
    cfg = _cfg(tmp_path, base_url="https://storage.example.net", concurrency=2)
    (tmp_path / "segments").mkdir()
    (tmp_path / "segments" / "segment_004.mkv").write_bytes(b"x")

    runtime = daemon.build_runtime(cfg, clock=_Clock())

    assert runtime.store.directory == (tmp_path / "segments").resolve()
    assert runtime.coordinator is not None
    assert runtime.coordinator.concurrency == 2
    assert runtime.supervisor.uploader is runtime.coordinator
    assert runtime.merge_engine.release_capture == runtime.supervisor.kill_capture
    assert runtime.scheduler.window.start == datetime(2024, 3, 1, 8, 0)
    assert runtime.scheduler.window.end == datetime(2024, 3, 1, 18, 0)

    capture = runtime.supervisor._capture_factory()
    assert isinstance(capture, CaptureProcess)
    cmd = capture.command
    assert cmd[cmd.index("-i") + 1] == "rtsp://admin:pw@cam.local:554/live"
    assert cmd[cmd.index("-segment_start_number") + 1] == "5"


def test_build_runtime_without_upload(tmp_path):
    runtime = daemon.build_runtime(_cfg(tmp_path, enabled=False), clock=_Clock())
    assert runtime.coordinator is None
    assert runtime.supervisor.uploader is None


def test_missing_base_url_disables_upload(tmp_path):
    assert daemon.build_coordinator(_cfg(tmp_path, base_url="")) is None


def test_run_without_camera_host_fails(tmp_path):
    cfg = _cfg(tmp_path)
    cfg["camera"]["host"] = ""
    assert daemon.cmd_run(cfg) == 1


def test_merge_command(monkeypatch, tmp_path, capsys):
    segments = tmp_path / "segments"
    segments.mkdir()
    (segments / "segment_000.mkv").write_bytes(b"a" * 2048)
    (segments / "segment_001.mkv").write_bytes(b"b" * 2048)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "merge:\n  settle_delay_sec: 0\n  retry_delay_sec: 0\nupload:\n  enabled: false\n"
    )

    def fake_concat(manifest, output, **kwargs):
        Path(output).write_bytes(b"m" * 4096)
        return 0

    monkeypatch.setattr(merge_module, "run_concat", fake_concat)
    monkeypatch.delenv("REC_DIR", raising=False)
    monkeypatch.delenv("UPLOAD_ENABLED", raising=False)
    monkeypatch.setenv("CAMARCHIVE_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    rc = daemon.main(["--config", str(config_path), "merge", "--dir", str(segments)])

    assert rc == 0
    expected = segments.resolve() / f"merged_{date.today().strftime('%Y%m%d')}.mkv"
    assert expected.exists()
    assert list(segments.glob("segment_*")) == []
    assert str(expected) in capsys.readouterr().out


def test_merge_command_without_segments(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("merge:\n  settle_delay_sec: 0\n")
    monkeypatch.setenv("CAMARCHIVE_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    rc = daemon.main(["--config", str(config_path), "merge", "--dir", str(tmp_path / "empty")])

    assert rc == 1


def test_upload_command_requires_configured_storage(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("upload:\n  enabled: true\n  base_url: ''\n")
    monkeypatch.delenv("UPLOAD_URL", raising=False)
    monkeypatch.setenv("CAMARCHIVE_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    assert daemon.main(["--config", str(config_path), "upload", str(config_path)]) == 1
