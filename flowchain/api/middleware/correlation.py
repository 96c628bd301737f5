"""Bind each request to a correlation id.

The id comes from the caller's ``X-Correlation-Id`` header or is generated,
is stamped on every log line and history entry written while serving the
request, and is echoed on the response.
"""
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ...utils.idgen import generate_correlation_id
from ...utils.logger import get_logger, set_correlation_id

logger = get_logger(__name__)

HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(HEADER) or generate_correlation_id()
        set_correlation_id(correlation_id)

        started = time.perf_counter()
        response = await call_next(request)
        logger.debug(
            f"{request.method} {request.url.path} {response.status_code} "
            f"{(time.perf_counter() - started) * 1000:.0f}ms"
        )
        response.headers[HEADER] = correlation_id
        return response
