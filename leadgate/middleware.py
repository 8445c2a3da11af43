"""Request tracing middleware.

RequestIdMiddleware assigns every request a ULID, binds it into the logging
context (request_id appears on every log line emitted while handling the
request) and echoes it back in the X-Request-ID response header.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from leadgate.constants import HEADER_REQUEST_ID
from leadgate.utils.logger import bind_request_id, unbind_request_id
from leadgate.utils.ulid import generate_ulid


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = generate_ulid()
        bind_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            unbind_request_id()
        response.headers[HEADER_REQUEST_ID] = request_id
        return response
