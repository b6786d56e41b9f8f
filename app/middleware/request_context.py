"""Request context middleware.

Binds a request id (echoed from X-Request-ID or freshly generated) and,
on attempt routes, the attempt id from the path into the logging
context vars, so every record emitted while the request is handled
carries them. Logs one completion line per request with the timing.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import attempt_id_var, request_id_var

logger = logging.getLogger(__name__)

_ATTEMPT_PATH = re.compile(
    r"^/v1/attempts/"
    r"([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})"
    r"(?:/|$)"
)


def attempt_id_from_path(path: str) -> str | None:
    match = _ATTEMPT_PATH.match(path)
    return match.group(1).lower() if match else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request id, time the request, log the outcome."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request_token = request_id_var.set(req_id)
        attempt_token = attempt_id_var.set(attempt_id_from_path(request.url.path))

        try:
            start = time.monotonic()
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 1)

            logger.info(
                "%s %s -> %d (%.1fms)",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
        finally:
            attempt_id_var.reset(attempt_token)
            request_id_var.reset(request_token)

        response.headers["X-Request-ID"] = req_id
        return response
