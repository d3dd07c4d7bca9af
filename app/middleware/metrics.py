# app/middleware/metrics.py
import logging
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from typing import Callable

logger = logging.getLogger(__name__)


def new_metrics() -> dict:
    return {
        "requests": 0,
        "total_response_ms": 0.0,
        "checkout_previews": 0,
        "checkout_finalized": 0,
        "checkout_conflicts": 0,
    }


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Collects in-process metrics:
      - total requests
      - total response time (ms)
      - checkout counters (routes increment app.state.metrics['checkout_*'])
    NOTE: do NOT touch app.state in __init__; it may not be available yet while middleware stack builds.
    """

    def __init__(self, app, dispatch: Callable = None):
        super().__init__(app, dispatch=dispatch)

    async def dispatch(self, request: Request, call_next):
        # lazy init: startup may not have run yet
        metrics = getattr(request.app.state, "metrics", None)
        if metrics is None:
            request.app.state.metrics = new_metrics()
            metrics = request.app.state.metrics

        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        # single-process counters
        metrics["requests"] = metrics.get("requests", 0) + 1
        metrics["total_response_ms"] = metrics.get("total_response_ms", 0.0) + elapsed_ms
        logger.debug("%s %s -> %s in %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)

        return response
