"""
HTTP middleware.
"""

import time
from collections.abc import Callable

from fastapi import Request

from renderqueue.observability.metrics import get_metrics

UNTRACKED_PATHS = ("/metrics", "/docs", "/openapi.json", "/redoc")


def create_metrics_middleware() -> Callable:
    """
    Create middleware recording request counts and latency.

    Requests are labelled by route template rather than raw path so job
    uuids do not explode label cardinality.
    """

    async def metrics_middleware(request: Request, call_next: Callable):
        if request.url.path in UNTRACKED_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)

        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        get_metrics().record_api_request(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
            duration_seconds=time.perf_counter() - start,
        )
        return response

    return metrics_middleware
