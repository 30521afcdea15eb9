"""X-Request-ID handling.

The API gateway usually sends its own request id; it is kept when it looks
sane (short, printable token) and replaced with a fresh UUID otherwise. The
id reaches every log line through core.logging and every error body through
the exception handlers.
"""

import re
import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def is_valid_request_id(value: str) -> bool:
    return bool(_REQUEST_ID_RE.match(value))


def setup_correlation_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: str(uuid.uuid4()),
        validator=is_valid_request_id,
    )


def get_correlation_id() -> str | None:
    return correlation_id.get(None)
