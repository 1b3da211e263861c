#!/usr/bin/env python3
"""Remote storage client: token login and multipart file transfer."""

from __future__ import annotations

import logging
import threading
import time
from datetime import date
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import quote

import requests

from camarchive.segments import remove_with_retry

LOGIN_ENDPOINT = "/api/auth/login"
UPLOAD_ENDPOINT = "/api/fs/form"
CODE_OK = 200
CODE_EXPIRED = 401

_log = logging.getLogger("transport")


class TransportError(RuntimeError):
    """Base class for remote storage failures."""


class AuthError(TransportError):
    pass


class UploadError(TransportError):
    def __init__(self, message: str, *, status: int | None = None, code: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class _TokenCache:
    """Process-lifetime bearer token shared by all upload workers.

    Refreshes are single-flight: a caller presenting a stale token either
    performs the login itself or, if another thread already replaced that
    token, reuses the new one without logging in again.
    """

    def __init__(self, login: Callable[[], str]) -> None:
        self._login = login
        self._lock = threading.Lock()
        self._token: str | None = None

    def peek(self) -> str | None:
        return self._token

    def current(self) -> str:
        token = self._token
        if token:
            return token
        with self._lock:
            if not self._token:
                self._token = self._login()
            return self._token

    def refresh(self, stale: str | None) -> str:
        with self._lock:
            if not self._token or self._token == stale:
                self._token = None
                self._token = self._login()
            return self._token

    def clear(self) -> None:
        with self._lock:
            self._token = None


class RemoteTransport:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        remote_path: str = "/",
        session: Optional[requests.Session] = None,
        timeout: float = 600.0,
        delete_source: bool = True,
        delete_attempts: int = 3,
        delete_delay: float = 0.5,
        release_pause: float = 0.1,
        today: Callable[[], date] = date.today,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("remote storage base_url is not configured")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.remote_path = remote_path or "/"
        self.session = session or requests.Session()
        self.timeout = float(timeout)
        self.delete_source = bool(delete_source)
        self.delete_attempts = int(delete_attempts)
        self.delete_delay = float(delete_delay)
        self.release_pause = float(release_pause)
        self._today = today
        self._sleep = sleep
        self._tokens = _TokenCache(self._login)

    @classmethod
    def from_config(cls, upload_cfg: Mapping[str, Any], **kwargs: Any) -> "RemoteTransport":
        return cls(
            str(upload_cfg.get("base_url", "")).strip(),
            str(upload_cfg.get("username", "")),
            str(upload_cfg.get("password", "")),
            remote_path=str(upload_cfg.get("remote_path") or "/"),
            timeout=float(upload_cfg.get("request_timeout_sec", 600.0)),
            delete_source=bool(upload_cfg.get("delete_after_upload", True)),
            **kwargs,
        )

    # --- Authentication ---
    def _login(self) -> str:
        url = self.base_url + LOGIN_ENDPOINT
        try:
            resp = self.session.post(
                url,
                json={"username": self.username, "password": self.password},
                timeout=min(self.timeout, 30.0),
            )
        except requests.RequestException as exc:
            raise AuthError(f"failed to send login request: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise AuthError(f"login failed with status {resp.status_code}: {resp.text}")
        try:
            result = resp.json()
        except ValueError as exc:
            raise AuthError(f"failed to decode login response: {exc}") from exc
        if not isinstance(result, dict) or result.get("code") != CODE_OK:
            message = result.get("message") if isinstance(result, dict) else result
            raise AuthError(f"login failed: {message}")
        token = (result.get("data") or {}).get("token")
        if not isinstance(token, str) or not token:
            raise AuthError("login response did not include a token")
        _log.info("Successfully obtained remote storage token")
        return token

    def authenticate(self) -> str:
        """Log in unconditionally and replace any held token."""
        return self._tokens.refresh(self._tokens.peek())

    @property
    def token(self) -> str | None:
        return self._tokens.peek()

    # --- Paths ---
    @staticmethod
    def normalize_destination(destination: str) -> str:
        cleaned = destination.replace("\\", "/")
        return str(PurePosixPath("/") / cleaned.lstrip("/"))

    def destination_for(self, source: Path, day: Optional[date] = None) -> str:
        day = day or self._today()
        remote = PurePosixPath("/") / self.remote_path.replace("\\", "/").lstrip("/")
        return str(remote / day.strftime("%Y%m%d") / source.name)

    # --- Transfer ---
    def _put(self, source: Path, destination: str, token: str) -> tuple[int, Dict[str, Any]]:
        headers = {
            "Authorization": token,
            "Referer": self.base_url + self.remote_path,
            "File-Path": quote(destination, safe=""),
        }
        try:
            with source.open("rb") as fh:
                resp = self.session.put(
                    self.base_url + UPLOAD_ENDPOINT,
                    headers=headers,
                    files={"file": (source.name, fh, "application/octet-stream")},
                    data={"path": destination},
                    timeout=self.timeout,
                )
        except requests.RequestException as exc:
            raise UploadError(f"failed to send request: {exc}") from exc

        if resp.status_code == CODE_EXPIRED:
            return resp.status_code, {"code": CODE_EXPIRED, "message": resp.text}
        if not 200 <= resp.status_code < 300:
            raise UploadError(
                f"upload failed with status {resp.status_code}: {resp.text}",
                status=resp.status_code,
            )
        try:
            result = resp.json()
        except ValueError as exc:
            raise UploadError(f"failed to decode response: {exc}", status=resp.status_code) from exc
        if not isinstance(result, dict):
            raise UploadError(f"unexpected response: {result!r}", status=resp.status_code)
        return resp.status_code, result

    def transfer_file(self, source: str | Path, destination: Optional[str] = None) -> Dict[str, Any]:
        """Upload ``source`` and return the decoded server response.

        An expired-token answer triggers one re-login and one retry of the
        same request; a second rejection surfaces as ``AuthError``.
        """
        source = Path(source)
        if not source.is_file():
            raise UploadError(f"source file does not exist: {source}")
        destination = (
            self.normalize_destination(destination) if destination else self.destination_for(source)
        )

        token = self._tokens.current()
        status, result = self._put(source, destination, token)
        if result.get("code") == CODE_EXPIRED:
            _log.info("Token expired while uploading %s; re-authenticating", source.name)
            token = self._tokens.refresh(token)
            status, result = self._put(source, destination, token)
            if result.get("code") == CODE_EXPIRED:
                raise AuthError(f"token rejected again after re-authentication for {source.name}")

        if result.get("code") != CODE_OK:
            raise UploadError(
                f"upload failed: {result.get('message')}", status=status, code=result.get("code")
            )

        _log.info("Uploaded %s -> %s", source, destination)
        if self.delete_source:
            self._sleep(self.release_pause)
            if remove_with_retry(
                source,
                attempts=self.delete_attempts,
                delay=self.delete_delay,
                sleep=self._sleep,
            ):
                _log.info("Removed source file: %s", source)
        return result
