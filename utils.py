from __future__ import annotations

import re
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from flask import jsonify


_DEFAULT_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "INVALID_NOMINEE": 400,
    "INVALID_CANDIDATE": 400,
    "DUPLICATE_NOMINATION": 400,
    "DUPLICATE_VOTE": 400,
    "INVALID_STATE": 409,
    "PERIOD_CLOSED": 409,
    "VALIDATION_REQUIRED": 400,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
}

_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_REDACT_KEYS = {"comment", "reason", "email"}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: Optional[int] = None, extra: Optional[dict] = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_HTTP_STATUS.get(self.code, 400))
        self.extra = dict(extra or {})


@dataclass(frozen=True)
class AuthContext:
    valid: bool
    userId: str
    name: str
    role: str


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            return datetime.fromisoformat(s.replace("Z", "+00:00"))
        dt = datetime.fromisoformat(s)
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except Exception:
        return None


def now_monotonic() -> float:
    return time.monotonic()


def new_prefixed_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:20].upper()}"


def normalize_role(role: Any) -> str:
    return str(role or "").upper().strip()


def parse_roles_csv(value: Any) -> list[str]:
    out: list[str] = []
    for part in str(value or "").split(","):
        r = normalize_role(part)
        if r and r not in out:
            out.append(r)
    return out


def require_id(value: Any, field: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", f"Missing {field}")
    if not _ID_RE.fullmatch(s):
        raise ApiError("BAD_REQUEST", f"Invalid {field}")
    return s


def optional_id(value: Any, field: str) -> str:
    if value is None or str(value).strip() == "":
        return ""
    return require_id(value, field)


def optional_text(value: Any, field: str, *, max_len: int) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ApiError("BAD_REQUEST", f"{field} must be a string")
    s = value.strip()
    if len(s) > max_len:
        raise ApiError("BAD_REQUEST", f"{field} is too long (max {max_len})")
    return s


def optional_bool(value: Any, field: str, default: bool = False) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ApiError("BAD_REQUEST", f"{field} must be a boolean")
    return value


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k) in _REDACT_KEYS and v:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x) for x in data[:50]]
    return data


def ok(data: Any, http_status: int = 200):
    return jsonify(data), http_status


def err(code: str, message: str, http_status: int = 400, extra: Optional[dict] = None):
    body = {"error": str(code or "INTERNAL").lower(), "message": str(message or "")}
    if extra:
        body.update(extra)
    return jsonify(body), http_status


class SimpleRateLimiter:
    """
    Fixed-window, in-process limiter keyed by caller + action.

    `limit` is "<count>/<seconds>" (e.g. "120/60"). Empty or "0/..." disables the check.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    @staticmethod
    def _parse(limit: str) -> tuple[int, int]:
        try:
            count_s, window_s = str(limit or "").split("/", 1)
            return max(0, int(count_s)), max(1, int(window_s))
        except Exception:
            return 0, 60

    def check(self, key: str, limit: str) -> None:
        max_count, window = self._parse(limit)
        if max_count <= 0:
            return
        now = now_monotonic()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= window:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            if len(self._windows) > 10_000:
                stale = [k for k, (s, _c) in self._windows.items() if now - s >= window]
                for k in stale:
                    self._windows.pop(k, None)
        if count > max_count:
            raise ApiError("RATE_LIMITED", "Too many requests, try again later")
