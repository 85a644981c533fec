"""
HTTP metrics middleware for Prometheus
Tracks request count, latency, and error rates
"""
import time
from typing import Callable
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from agentfleet.utils.metrics import record_http_request

_UNTRACKED = {"/metrics", "/health"}


def normalize_endpoint(path: str) -> str:
    """Collapse tenant, task and host ids so label cardinality stays bounded"""
    parts = path.strip("/").split("/")
    if len(parts) >= 3 and parts[0] == "internal":
        section = parts[1]
        if section == "tenants":
            return "/" + "/".join(["internal", "tenants", "{id}"] + parts[3:4])
        if section == "tasks" and len(parts) >= 4:
            return "/" + "/".join(["internal", "tasks", "{tenant}", "{task}"] + parts[4:5])
        if section == "hosts" and parts[2] not in ("register", "capacity"):
            return "/" + "/".join(["internal", "hosts", "{id}"] + parts[3:4])
    return path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request count, latency and 5xx errors per normalized internal route"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Scrapes and liveness checks are not recorded
        if request.url.path in _UNTRACKED:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - started

        record_http_request(request.method, normalize_endpoint(request.url.path), response.status_code, duration)

        return response
