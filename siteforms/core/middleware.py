import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("siteforms.latency")

# Max latency per endpoint; the send endpoint waits on two providers.
SLO_THRESHOLDS = {
    "/api/send": 5.0,
    "/api/v1/send": 5.0,
    "/health": 0.200,
}


class LatencyMonitorMiddleware(BaseHTTPMiddleware):
    """
    Middleware to monitor request latency and check against defined SLOs.
    Logs warnings if SLO is breached.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(process_time)

        budget = SLO_THRESHOLDS.get(request.url.path.rstrip("/") or "/")
        if budget and process_time > budget:
            logger.warning(
                f"SLO_BREACH | Endpoint: {request.url.path} | Duration: {process_time:.4f}s | Budget: {budget:.3f}s"
            )

        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add X-Request-ID header for tracing.

    If the client sends X-Request-ID, it is preserved.
    Otherwise, a new UUID is generated and stored in request.state.request_id.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        logger.info(
            f"REQUEST | id={request_id} | method={request.method} | path={request.url.path}"
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response
