"""Per-request correlation id and access log."""
import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from wishbubble.core.logging import request_id_ctx_var, latency_bucket_ms

logger = logging.getLogger("wishbubble")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Bind x-request-id (incoming or generated) to the logging context,
    echo it on the response, and log one line per request.

    Server errors log at WARNING so gate outages (503) stand out.
    """

    def __init__(self, app, header_name: str = "x-request-id", user_header: str = "x-user-id"):
        super().__init__(app)
        self.header_name = header_name
        self.user_header = user_header

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        status = response.status_code
        logger.log(
            logging.WARNING if status >= 500 else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "user_id": request.headers.get(self.user_header),
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
