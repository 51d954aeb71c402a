"""Correlation ids for scans.

Scanner apps send ``X-Scanner-Id`` (the device) and may send
``X-Request-Id`` (the scan attempt, reused on retries). Both are bound to
the structlog context so a rejected scan can be traced from the device log
to the server log. Client-supplied ids are trimmed and must be printable.
"""

import re
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-Id"
SCANNER_ID_HEADER = "X-Scanner-Id"

_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def clean_id(value: str | None) -> str | None:
    """Return the header value if it is a usable id, else None."""
    if value is None:
        return None
    value = value.strip()
    return value if _ID_PATTERN.match(value) else None


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = clean_id(request.headers.get(REQUEST_ID_HEADER)) or uuid.uuid4().hex
        scanner_id = clean_id(request.headers.get(SCANNER_ID_HEADER))
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        if scanner_id:
            structlog.contextvars.bind_contextvars(scanner_id=scanner_id)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
