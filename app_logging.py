"""JSON logging configuration and per-request context helpers.

Log records are rendered as single-line JSON objects so they can be shipped
to a log aggregator as-is. Request handlers bind a correlation id and
request metadata (method, path, status, actor) into one context variable;
every record emitted while that request is being served carries them.
Values stored under sensitive keys (tokens, face embeddings, e-mail
addresses) are redacted before output.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Set

_request_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("attendance_request")

REDACTED = "[REDACTED]"
_DEFAULT_SENSITIVE = "password,token,rotatingtoken,authorization,email,faceembedding,face_embedding"

# Order of the keys on every line; keys without a value are emitted as null.
LINE_FIELDS = (
    "ts",
    "level",
    "logger",
    "msg",
    "request_id",
    "method",
    "path",
    "route",
    "status",
    "duration_ms",
    "client_ip",
    "actor_id",
    "error_type",
    "error",
    "stack",
    "extra_context",
)

# Record attributes that may be passed via ``extra`` and land at top level.
_TOP_LEVEL_EXTRAS = frozenset({"method", "path", "route", "status", "duration_ms", "client_ip", "actor_id"})

_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def get_request_context() -> Dict[str, Any]:
    return _request_ctx.get({})


def merge_request_context(**values: Any) -> None:
    """Bind non-``None`` values to the current request context."""

    merged = dict(get_request_context())
    merged.update((key, value) for key, value in values.items() if value is not None)
    _request_ctx.set(merged)


def clear_request_context() -> None:
    _request_ctx.set({})


def get_request_id() -> Optional[str]:
    return get_request_context().get("request_id")


def set_request_id(request_id: str) -> None:
    merge_request_context(request_id=request_id)


def sensitive_fields() -> Set[str]:
    """Lower-cased key names whose values never reach the logs (``SENSITIVE_FIELDS``)."""

    raw = os.environ.get("SENSITIVE_FIELDS", _DEFAULT_SENSITIVE)
    return {name.strip().lower() for name in raw.split(",") if name.strip()}


def redact_sensitive_data(data: Any, fields: Optional[Iterable[str]] = None) -> Any:
    """Copy of ``data`` with values under sensitive keys replaced.

    Nested mappings and sequences are walked; keys match case-insensitively.
    """

    names = {name.lower() for name in fields} if fields is not None else sensitive_fields()
    if isinstance(data, dict):
        return {
            key: REDACTED if str(key).lower() in names else redact_sensitive_data(value, names)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple, set)):
        return [redact_sensitive_data(item, names) for item in data]
    return data


class JSONFormatter(logging.Formatter):
    """Render a record, the request context and its extras as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = dict.fromkeys(LINE_FIELDS)
        line.update(
            ts=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            level=record.levelname,
            logger=record.name,
            msg=record.getMessage(),
        )
        line.update(get_request_context())

        extras: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            if key in _TOP_LEVEL_EXTRAS:
                if value is not None:
                    line[key] = value
            else:
                extras[key] = value
        if extras:
            line["extra_context"] = redact_sensitive_data(extras)

        if record.exc_info and record.exc_info[0] is not None:
            line["error_type"] = record.exc_info[0].__name__
            line["error"] = str(record.exc_info[1])
            line["stack"] = self.formatException(record.exc_info)
        elif record.stack_info:
            line["stack"] = record.stack_info

        return json.dumps(line, default=_encode, separators=(",", ":"))


def _encode(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else str(value)


_configured = False


def configure_logging() -> None:
    """Install the JSON formatter on the root logger once per process.

    ``LOG_LEVEL`` selects the root level (default ``INFO``).
    """

    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO))
    logging.captureWarnings(True)

    # The request middleware logs requests itself.
    for name in ("werkzeug", "gunicorn.access", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


__all__ = [
    "JSONFormatter",
    "REDACTED",
    "clear_request_context",
    "configure_logging",
    "get_logger",
    "get_request_context",
    "get_request_id",
    "merge_request_context",
    "redact_sensitive_data",
    "sensitive_fields",
    "set_request_id",
]
