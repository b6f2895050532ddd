"""Structured start/end logs for API requests.

``request_start`` carries the redacted query string and JSON body,
``request_end`` the status, duration and the authenticated actor. Health
checks are never logged; other requests are sampled with
``REQUEST_LOG_SAMPLE_RATE`` (0.0 to 1.0, default 1.0). Start and end of a
request are either both logged or both skipped.
"""

from __future__ import annotations

import os
import random
import time
from typing import Any, Dict, Optional

from flask import Flask, Response, g, request

from app_logging import get_logger, merge_request_context, redact_sensitive_data

_logger = get_logger("attendance.request")

_UNLOGGED_PATHS = frozenset({"/health"})


def sample_rate() -> float:
    try:
        rate = float(os.environ.get("REQUEST_LOG_SAMPLE_RATE", "1.0"))
    except ValueError:
        return 1.0
    return min(1.0, max(0.0, rate))


def client_ip() -> str:
    # First hop of X-Forwarded-For when behind a proxy.
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() if forwarded else (request.remote_addr or "unknown")


def _route() -> Optional[str]:
    return request.url_rule.rule if request.url_rule is not None else None


def _request_payload() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if request.args:
        payload["query"] = redact_sensitive_data(request.args.to_dict())
    if request.is_json:
        body = request.get_json(silent=True)
        if body is not None:
            payload["json"] = redact_sensitive_data(body)
    return payload


def init_request_logging(app: Flask) -> None:
    @app.before_request
    def _start_request_log() -> None:
        g.request_started = time.perf_counter()
        merge_request_context(method=request.method, path=request.path, client_ip=client_ip(), route=_route())
        g.log_request = request.path not in _UNLOGGED_PATHS and random.random() < sample_rate()
        if g.log_request:
            _logger.info("request_start", extra={"request_payload": _request_payload()})

    @app.after_request
    def _end_request_log(response: Response) -> Response:
        duration_ms = round((time.perf_counter() - g.get("request_started", time.perf_counter())) * 1000, 2)
        current_user = g.get("current_user")
        merge_request_context(status=response.status_code, duration_ms=duration_ms,
                              actor_id=current_user.id if current_user is not None else None)
        if g.get("log_request"):
            _logger.info("request_end", extra={"status": response.status_code, "duration_ms": duration_ms})
        return response


__all__ = ["client_ip", "init_request_logging", "sample_rate"]
