from __future__ import annotations

import contextvars
import json
import logging
import time
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from pythonjsonlogger import jsonlogger

from mailrag.core.config import settings

_request_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
_owner_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("owner_id", default=None)


class JsonLineFormatter(jsonlogger.JsonFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = super().format(record)
        return json.dumps(json.loads(payload), separators=(",", ":"), ensure_ascii=False, default=str)


class _StructuredContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id_ctx.get()
        if getattr(record, "owner_id", None) is None:
            record.owner_id = _owner_id_ctx.get()
        if not hasattr(record, "event_type"):
            record.event_type = None
        if not hasattr(record, "service"):
            record.service = settings.APP_NAME
        if not hasattr(record, "env"):
            record.env = "local"
        if not hasattr(record, "version"):
            record.version = settings.APP_VERSION
        if not hasattr(record, "ts"):
            record.ts = datetime.now(timezone.utc).isoformat()
        return True


def set_request_context(*, request_id: str | None = None, owner_id: str | None = None) -> None:
    _request_id_ctx.set(request_id)
    _owner_id_ctx.set(owner_id)


def clear_request_context() -> None:
    set_request_context(request_id=None, owner_id=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def get_owner_id() -> str | None:
    return _owner_id_ctx.get()


def log_event(
    event_type: str,
    *,
    level: int = logging.INFO,
    payload: dict[str, Any] | None = None,
    owner_id: str | None = None,
    request_id: str | None = None,
) -> None:
    logger = logging.getLogger("mailrag.events")
    extra = {
        "event_type": event_type,
        "request_id": request_id if request_id is not None else get_request_id(),
        "owner_id": owner_id if owner_id is not None else get_owner_id(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "service": settings.APP_NAME,
        "env": "local",
        "version": settings.APP_VERSION,
    }
    if payload:
        extra.update(payload)
    logger.log(level, event_type, extra=extra)


class ErrorLogSuppressor:
    """Remembers recently logged error keys so a failing backend logs once per window."""

    def __init__(self, window_seconds: float, clock=time.monotonic):
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._lock = Lock()

    def should_log(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            expired = [k for k, expires_at in self._seen.items() if expires_at <= now]
            for k in expired:
                del self._seen[k]
            if key in self._seen:
                return False
            self._seen[key] = now + self.window_seconds
            return True

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(_StructuredContextFilter())
    formatter = JsonLineFormatter(
        "%(ts)s %(levelname)s %(service)s %(env)s %(event_type)s %(request_id)s %(owner_id)s %(version)s %(message)s"
    )
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
