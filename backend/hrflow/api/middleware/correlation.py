"""
Correlation ID Middleware

Every request carries an X-Correlation-Id; log records and audit events
written while serving it share that id.
"""

import re

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ...utils.logger import set_actor_context, set_correlation_id, get_logger
from ...utils.idgen import generate_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def resolve_correlation_id(header_value: str) -> str:
    """Client-supplied id when it is a plain token, otherwise a fresh one"""
    if header_value and _ACCEPTED_ID.match(header_value):
        return header_value
    return generate_correlation_id()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reads or mints the request's correlation ID and echoes it on the response"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER, ""))
        set_correlation_id(correlation_id)
        set_actor_context(None)

        response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={"action": request.method, "status": response.status_code}
        )
        return response
