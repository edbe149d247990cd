"""
Structured JSON logging + heartbeat correlation IDs (stdlib-only).

- One JSON object per log line (stdout)
- Core fields on every line: service, env, version, request_id, heartbeat_id, event_type, severity
- FastAPI middleware that reads/propagates X-Request-ID and emits one http.request line per request
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional


_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_HEARTBEAT_ID: ContextVar[Optional[str]] = ContextVar("heartbeat_id", default=None)

# logging.LogRecord built-ins plus keys injected by the formatter.
_RESERVED_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "service",
        "env",
        "version",
        "request_id",
        "heartbeat_id",
        "event_type",
        "severity",
        "message",
        "timestamp",
    }
)


def _utc_ts() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean_text(v: Any, *, max_len: int = 2000) -> str:
    try:
        s = "" if v is None else str(v)
    except Exception:
        s = ""
    s = s.replace("\n", " ").replace("\r", " ").strip()
    if len(s) > max_len:
        s = s[: max_len - 1] + "…"
    return s


def _env_any(*names: str, default: str = "unknown") -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return _clean_text(v, max_len=128)
    return default


def _normalize_severity(level: str | int | None) -> str:
    if isinstance(level, int):
        return _normalize_severity(str(logging.getLevelName(level)))
    s = _clean_text(level or "INFO", max_len=16).upper()
    if s in {"DEBUG", "INFO", "NOTICE", "WARNING", "ERROR", "CRITICAL"}:
        return s
    if s == "WARN":
        return "WARNING"
    if s == "FATAL":
        return "CRITICAL"
    return "INFO"


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def get_heartbeat_id() -> Optional[str]:
    return _HEARTBEAT_ID.get()


@contextmanager
def bind_request_id(*, request_id: str | None = None) -> Iterator[str]:
    rid = _clean_text(request_id or "", max_len=128) or uuid.uuid4().hex
    token = _REQUEST_ID.set(rid)
    try:
        yield rid
    finally:
        _REQUEST_ID.reset(token)


@contextmanager
def bind_heartbeat_id(*, agent_id: str) -> Iterator[str]:
    """
    Bind a fresh correlation id for one heartbeat cycle.

    Every log line emitted inside the block (including from concurrently
    awaited sub-fetches, which inherit the context) carries the same id.
    """
    hid = f"hb_{_clean_text(agent_id, max_len=64)}_{uuid.uuid4().hex[:12]}"
    token = _HEARTBEAT_ID.set(hid)
    try:
        yield hid
    finally:
        _HEARTBEAT_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: str | None = None, env: str | None = None, version: str | None = None) -> None:
        super().__init__()
        self._service = service or _env_any("SERVICE_NAME", "K_SERVICE", default="agentmarket")
        self._env = env or _env_any("ENVIRONMENT", "ENV", default="unknown")
        self._version = version or _env_any("APP_VERSION", "K_REVISION", "GIT_SHA", default="unknown")

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (format required by logging)
        payload: dict[str, Any] = {
            "timestamp": _utc_ts(),
            "severity": _normalize_severity(getattr(record, "severity", None) or record.levelname),
            "service": self._service,
            "env": self._env,
            "version": self._version,
            "request_id": getattr(record, "request_id", None) or get_request_id(),
            "heartbeat_id": getattr(record, "heartbeat_id", None) or get_heartbeat_id(),
            "event_type": _clean_text(getattr(record, "event_type", None) or "", max_len=128) or "log",
            "message": _clean_text(record.getMessage(), max_len=4000),
            "logger": record.name,
        }

        if record.exc_info:
            try:
                payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]
            except Exception:
                payload["exception"] = "exception_format_failed"

        # extra={...} fields
        for k, v in record.__dict__.items():
            if k in _RESERVED_ATTRS or k.startswith("_"):
                continue
            payload[str(k)] = v

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def init_structured_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    version: str | None = None,
    level: str | int | None = None,
) -> None:
    """
    Configure stdlib logging to emit JSON lines to stdout.

    Safe to call multiple times (last call wins).
    """
    lvl = level or os.getenv("LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(lvl)

    root.handlers = []
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(lvl)
    handler.setFormatter(JsonLogFormatter(service=service, env=env, version=version))
    root.addHandler(handler)

    logging.captureWarnings(True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    **fields: Any,
) -> None:
    """
    Convenience wrapper for semantic events with stable `event_type`.
    """
    lvl = getattr(logging, str(severity).upper(), logging.INFO)
    logger.log(
        lvl,
        message or event_type,
        extra={"event_type": _clean_text(event_type, max_len=128), **fields},
    )


def install_fastapi_request_id_middleware(app: Any) -> None:
    """
    Read/propagate X-Request-ID, bind it for the request lifetime and emit
    one http.request JSON line per request.
    """
    from starlette.requests import Request  # noqa: WPS433
    from starlette.responses import Response  # noqa: WPS433

    http_logger = logging.getLogger("http")

    @app.middleware("http")
    async def _request_id_mw(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = request.headers.get("x-request-id") or None
        start = time.perf_counter()
        status_code: int | None = None
        with bind_request_id(request_id=incoming) as rid:
            try:
                resp: Response = await call_next(request)
                status_code = int(getattr(resp, "status_code", 200))
            except Exception:
                status_code = 500
                raise
            finally:
                log_event(
                    http_logger,
                    "http.request",
                    method=request.method,
                    path=str(request.url.path),
                    status_code=status_code,
                    duration_ms=int(max(0.0, (time.perf_counter() - start) * 1000.0)),
                )
        resp.headers["X-Request-ID"] = rid
        return resp
