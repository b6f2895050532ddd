"""Correlation ids for incoming requests.

A client-supplied ``X-Request-ID`` is reused when it looks like an id
(printable, at most 128 characters); otherwise a fresh UUID is generated.
The id is bound to the logging context for the whole request and echoed on
the response.
"""

from __future__ import annotations

import re
import uuid
from typing import Optional

from flask import Flask, Response, g, request

from app_logging import clear_request_context, set_request_id

HEADER_NAME = "X-Request-ID"

_ACCEPTABLE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def incoming_request_id() -> Optional[str]:
    candidate = request.headers.get(HEADER_NAME, "").strip()
    return candidate if _ACCEPTABLE_ID.match(candidate) else None


def init_correlation_id(app: Flask) -> None:
    @app.before_request
    def _bind_request_id() -> None:
        g.request_id = incoming_request_id() or uuid.uuid4().hex
        clear_request_context()
        set_request_id(g.request_id)

    @app.after_request
    def _echo_request_id(response: Response) -> Response:
        request_id = g.get("request_id")
        if request_id:
            response.headers[HEADER_NAME] = request_id
        return response

    @app.teardown_request
    def _unbind_request_id(_exc) -> None:
        clear_request_context()


__all__ = ["HEADER_NAME", "incoming_request_id", "init_correlation_id"]
