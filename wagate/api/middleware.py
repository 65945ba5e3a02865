"""API-key, rate-limit and request-logging middleware for FastAPI."""

from __future__ import annotations

import hmac
import logging
import math
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

logger = logging.getLogger("wagate.api")

# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID (the caller's X-Request-ID if sent) and log it."""

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id

        start = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "method=%s path=%s status_code=%s duration_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )

        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

EXEMPT_PREFIXES = ("/api/health", "/docs", "/openapi.json")


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """
    API-key authentication via the ``X-API-Key`` header or ``api_key`` query
    parameter.

    With no keys configured every request passes (development mode).
    """

    def __init__(self, app: ASGIApp, api_keys: Iterable[str] = ()) -> None:
        super().__init__(app)
        self._api_keys = tuple(k for k in api_keys if k)

    @property
    def enabled(self) -> bool:
        return bool(self._api_keys)

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        path = request.url.path

        if not self.enabled or any(path.startswith(p) for p in EXEMPT_PREFIXES):
            return await call_next(request)

        supplied = request.headers.get("x-api-key") or request.query_params.get("api_key") or ""
        if not supplied:
            return JSONResponse({"detail": "API key required"}, status_code=401)

        if not any(hmac.compare_digest(supplied.encode(), key.encode()) for key in self._api_keys):
            logger.warning("Rejected API key on %s %s", request.method, path)
            return JSONResponse({"detail": "Invalid API key"}, status_code=403)

        return await call_next(request)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

RATE_LIMIT_EXEMPT = ("/api/health",)


class SlidingWindowLimiter:
    """
    Per-client request counter over a rolling window.

    Each client keeps the timestamps of its requests inside the window;
    older ones are dropped on every check. A limit of 0 disables the
    limiter.
    """

    SWEEP_EVERY = 1000

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 0:
            raise ValueError("max_requests must be >= 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._checks = 0

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def hit(self, client: str) -> float | None:
        """
        Record a request from ``client``.

        Returns:
            None if the request is allowed, otherwise the seconds until the
            client's oldest request leaves the window. Rejected requests
            are not recorded.
        """
        now = self._clock()
        self._checks += 1
        if self._checks % self.SWEEP_EVERY == 0:
            self._sweep(now)

        hits = self._hits.setdefault(client, deque())
        cutoff = now - self.window
        while hits and hits[0] <= cutoff:
            hits.popleft()

        if len(hits) >= self.max_requests:
            return hits[0] + self.window - now
        hits.append(now)
        return None

    def _sweep(self, now: float) -> None:
        cutoff = now - self.window
        for client in [c for c, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[client]


def is_connect_path(path: str) -> bool:
    return path.startswith("/api/sessions/") and path.endswith("/connect")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Limit ``/api/`` requests per client address.

    Every API request counts against ``api_limiter``; connect requests,
    each of which may open a protocol connection, also count against the
    stricter ``connect_limiter``. Over the limit the client gets 429 with
    a ``Retry-After`` header.
    """

    def __init__(
        self,
        app: ASGIApp,
        api_limiter: SlidingWindowLimiter,
        connect_limiter: SlidingWindowLimiter,
    ) -> None:
        super().__init__(app)
        self._api = api_limiter
        self._connect = connect_limiter

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        path = request.url.path
        if not path.startswith("/api/") or path.startswith(RATE_LIMIT_EXEMPT):
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        retry_after = self._api.hit(client) if self._api.enabled else None
        if retry_after is None and self._connect.enabled and is_connect_path(path):
            retry_after = self._connect.hit(client)

        if retry_after is not None:
            logger.warning("Rate limit hit by %s on %s %s", client, request.method, path)
            return JSONResponse(
                {"status": "error", "detail": "Too many requests, try again later"},
                status_code=429,
                headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
            )

        return await call_next(request)
