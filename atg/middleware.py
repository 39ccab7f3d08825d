# FILE: atg/middleware.py
from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from .exporter import GatewayMetrics
from .logging import bind, unbind
from .ratelimit import RateLimiter


# --------------------------------
# Shared helpers
# --------------------------------


def _default_path_normalizer(path: str) -> str:
    """
    Collapse per-subject and per-session path segments so route labels stay
    low-cardinality.
    """
    p = re.sub(r"^/v1/subjects/[^/]+", "/v1/subjects/:subject", path)
    p = re.sub(r"^/admin/subjects/[^/]+", "/admin/subjects/:subject", p)
    p = re.sub(r"^/admin/sessions/[^/]+", "/admin/sessions/:id", p)
    p = re.sub(r"^/admin/remotes/[^/]+", "/admin/remotes/:domain", p)
    return p


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# --------------------------------
# Request context middleware
# --------------------------------


@dataclass
class RequestContextConfig:
    request_id_header: str = "X-Request-Id"
    accept_upstream_request_id: bool = True
    # Upstream ids that do not match are replaced with a fresh one.
    id_format_regex: str = r"^[0-9a-zA-Z_\-]{8,64}$"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id (or accepts a well-formed upstream one), attaches it
    to request.state and the logging context, and echoes it on the response.
    """

    def __init__(self, app, *, config: Optional[RequestContextConfig] = None):
        super().__init__(app)
        self._cfg = config or RequestContextConfig()
        self._id_pattern = re.compile(self._cfg.id_format_regex)

    def _request_id(self, request: Request) -> str:
        if self._cfg.accept_upstream_request_id:
            upstream = (request.headers.get(self._cfg.request_id_header) or "").strip()
            if upstream and self._id_pattern.match(upstream):
                return upstream
        return uuid.uuid4().hex[:16]

    async def dispatch(self, request: Request, call_next):
        rid = self._request_id(request)
        request.state.request_id = rid
        bind(req_id=rid)
        try:
            response = await call_next(request)
        finally:
            unbind("req_id", "subject")
        response.headers.setdefault(self._cfg.request_id_header, rid)
        return response


# --------------------------------
# IP-level rate limit middleware
# --------------------------------


@dataclass
class RateLimitConfig:
    """
    Per-IP token bucket in front of every route except the skip list.
    """

    capacity: float = 60.0
    refill_per_s: float = 30.0
    skip_paths: Tuple[str, ...] = (r"^/healthz$", r"^/readyz$", r"^/metrics$")


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        *,
        config: Optional[RateLimitConfig] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(app)
        self._cfg = config or RateLimitConfig()
        self.limiter = limiter or RateLimiter(self._cfg.capacity, self._cfg.refill_per_s)
        self._skip = [re.compile(p) for p in self._cfg.skip_paths]

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not any(p.search(path) for p in self._skip):
            if not self.limiter.consume(client_ip(request)):
                return JSONResponse(
                    {"detail": "rate limited"},
                    status_code=429,
                    headers={"Retry-After": "1"},
                )
        return await call_next(request)


# --------------------------------
# Metrics middleware
# --------------------------------


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    atg_http_requests_total{route, status} and
    atg_http_request_latency_seconds{route}.
    """

    def __init__(
        self,
        app,
        metrics: GatewayMetrics,
        *,
        path_normalizer: Callable[[str], str] = _default_path_normalizer,
    ):
        super().__init__(app)
        self.metrics = metrics
        self._normalize = path_normalizer

    async def dispatch(self, request: Request, call_next):
        route_label = self._normalize(request.url.path)
        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = int(response.status_code)
            return response
        finally:
            self.metrics.observe_http(route_label, status_code, time.perf_counter() - t0)


__all__ = [
    "client_ip",
    "RequestContextConfig",
    "RequestContextMiddleware",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "MetricsMiddleware",
]
