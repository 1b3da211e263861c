#!/usr/bin/env python3
"""
Unified configuration loader for camarchive.

Load order (first found wins):
  1) CAMARCHIVE_CONFIG (env, absolute or relative to CWD)
  2) /etc/camarchive/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping
from urllib.parse import quote

import yaml

_DEFAULTS: Dict[str, Any] = {
    "camera": {
        "host": "",
        "port": 554,
        "username": "",
        "password": "",
        "stream": "",
        "transport": "tcp",
        "connect_timeout_sec": 5.0,
    },
    "recording": {
        "output_dir": "/apps/camarchive/segments",
        "segment_time": 300,
        "start_hour": 8,
        "start_minute": 0,
        "end_hour": 18,
        "end_minute": 0,
        "segment_extension": ".mkv",
        "min_segment_bytes": 1024,
        "retry_delay_sec": 5.0,
        "settle_delay_sec": 5.0,
        "stop_timeout_sec": 5.0,
        "poll_interval_sec": 1.0,
        "ffmpeg_path": "ffmpeg",
    },
    "merge": {
        "max_attempts": 3,
        "retry_delay_sec": 5.0,
        "settle_delay_sec": 5.0,
        "min_output_bytes": 1024,
        "delete_attempts": 10,
    },
    "upload": {
        "enabled": True,
        "base_url": "",
        "username": "",
        "password": "",
        "remote_path": "/",
        "retry_count": 3,
        "retry_delay_sec": 5.0,
        "concurrency": 3,
        "max_file_age_days": 0,
        "file_pattern": "merged_*.mkv",
        "delete_after_upload": True,
        "compress": False,
        "compress_threshold": 0.95,
        "request_timeout_sec": 600.0,
        "sweep_on_start": False,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Keep going with other locations/defaults
        _log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _log.warning("Ignoring config %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("CAMARCHIVE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/camarchive/config.yaml"),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map: Dict[str, tuple[str, str, Callable[[str], Any]]] = {
        "CAMERA_HOST": ("camera", "host", str),
        "CAMERA_PORT": ("camera", "port", int),
        "CAMERA_USER": ("camera", "username", str),
        "CAMERA_PASSWORD": ("camera", "password", str),
        "CAMERA_STREAM": ("camera", "stream", str),
        "REC_DIR": ("recording", "output_dir", str),
        "UPLOAD_ENABLED": ("upload", "enabled", _parse_bool),
        "UPLOAD_URL": ("upload", "base_url", str),
        "UPLOAD_USER": ("upload", "username", str),
        "UPLOAD_PASSWORD": ("upload", "password", str),
        "UPLOAD_CONCURRENCY": ("upload", "concurrency", int),
        "UPLOAD_RETRY_COUNT": ("upload", "retry_count", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key].strip()
        if not raw:
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            _log.warning("Ignoring %s=%r: not a valid %s", env_key, raw, cast.__name__)


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # camarchive/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def rtsp_url(cfg: Mapping[str, Any]) -> str:
    """Build the camera stream URL from the ``camera`` section."""
    camera = cfg.get("camera") or {}
    host = str(camera.get("host", "")).strip()
    if not host:
        raise ValueError("camera.host is not configured")
    port = camera.get("port") or 554
    stream = str(camera.get("stream", "")).lstrip("/")
    username = str(camera.get("username") or "")
    password = str(camera.get("password") or "")
    credentials = ""
    if username:
        credentials = quote(username, safe="")
        if password:
            credentials += ":" + quote(password, safe="")
        credentials += "@"
    return f"rtsp://{credentials}{host}:{port}/{stream}"
