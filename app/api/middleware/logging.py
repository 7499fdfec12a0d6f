"""
Request logging middleware for the Prompt Composer API.

Logs each request with its duration and binds the request ID to log
records emitted while it is handled.
"""

import logging
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.logging import LogContext

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs method, path, status code and duration of every request.

    Adds an X-Process-Time header to the response.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        request_id = getattr(request.state, "request_id", None)

        with LogContext(request_id=request_id, path=request.url.path):
            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    f"Error processing request: {request.method} {request.url.path} "
                    f"({duration_ms:.2f}ms): {e}",
                    exc_info=True,
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"({duration_ms:.2f}ms)"
            )
            response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"
            return response
