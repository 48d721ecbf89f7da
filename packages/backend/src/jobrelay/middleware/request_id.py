"""Request ID middleware — correlate HTTP requests with relay log entries.

Learn: Every request gets an id, either from the incoming X-Request-ID
header (so the publisher's trace id flows through the ingestion route into
the publisher.* log entries) or a fresh UUID. It is bound to structlog's
contextvars for the duration of the request and echoed in the response.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Generate and propagate a unique request ID."""

    header = "X-Request-ID"

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(self.header) or str(uuid.uuid4())

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response: Response = await call_next(request)
        response.headers[self.header] = request_id
        return response
