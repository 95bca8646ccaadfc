"""Request id propagation and request timing logs."""
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from bookkeeping.logging_config import sanitize_string


logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and logs start, completion or failure of each request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        path = sanitize_string(str(request.url.path))
        started = time.perf_counter()

        logger.info(f"API request started: {request.method} {path} [{request_id}]")
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.error(f"API request failed: {request.method} {path} [{request_id}] after {duration_ms}ms: {e}")
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"API request completed: {request.method} {path} {response.status_code} "
            f"in {duration_ms}ms [{request_id}]"
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
