import json
import math
import asyncio
import time
import uuid
import logging
from http import HTTPStatus
from typing import Dict, Iterable, Optional, Tuple

from aiohttp import web


REQUEST_ID_HEADER = "X-Request-Id"

REQUEST_ID_KEY = web.RequestKey("request_id", str)
# CORS and rate-limit headers collected for whatever response goes out
EXTRA_HEADERS_KEY = web.RequestKey("extra_headers", dict)

# Helmet's defaults, minus Content-Security-Policy
SECURITY_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
}

logger = logging.getLogger(__package__).getChild("access")


@web.middleware
async def request_id_middleware(request: web.Request, handler):
    """
    Tag the request with a correlation id and write one access log line when
    it finishes. The line never carries user content.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request[REQUEST_ID_KEY] = request_id
    start = time.monotonic()
    status = HTTPStatus.INTERNAL_SERVER_ERROR
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as error:
        status = error.status
        raise
    except asyncio.CancelledError:
        # Client went away, nginx calls this 499
        status = 499
        raise
    finally:
        logger.info(
            json.dumps(
                {
                    "rid": request_id,
                    "method": request.method,
                    "path": request.path,
                    "status": int(status),
                    "ms": round((time.monotonic() - start) * 1000),
                }
            )
        )


async def on_response_prepare(request: web.Request, response: web.StreamResponse) -> None:
    """Headers every response gets, streamed ones included."""
    if REQUEST_ID_KEY in request:
        response.headers[REQUEST_ID_HEADER] = request[REQUEST_ID_KEY]
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    for name, value in request.get(EXTRA_HEADERS_KEY, {}).items():
        response.headers[name] = value


def origin_lock_middleware(allowed_origins: Iterable[str]):
    """
    Refuse browser requests from origins not in the allow-list. An empty
    allow-list means development mode: everything passes.
    """
    allowed = frozenset(allowed_origins)

    @web.middleware
    async def middleware(request: web.Request, handler):
        if not allowed:
            return await handler(request)
        origin = request.headers.get("Origin")
        # Non-browser clients and same-origin requests
        if not origin:
            return await handler(request)
        if origin not in allowed:
            return web.json_response({"error": "Forbidden"}, status=HTTPStatus.FORBIDDEN)
        request[EXTRA_HEADERS_KEY] = {
            **request.get(EXTRA_HEADERS_KEY, {}),
            "Access-Control-Allow-Origin": origin,
            "Vary": "Origin",
            "Access-Control-Allow-Headers": "content-type",
            "Access-Control-Allow-Methods": "POST,GET,OPTIONS",
        }
        if request.method == "OPTIONS":
            return web.Response(status=HTTPStatus.NO_CONTENT)
        return await handler(request)

    return middleware


class RateLimiter:
    """Fixed-window request counter per client address, in process memory."""

    def __init__(self, limit: int, window_seconds: float = 60.0, clock=time.monotonic) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self.windows: Dict[str, Tuple[float, int]] = {}
        self.next_sweep: Optional[float] = None

    def hit(self, key: str) -> Tuple[bool, int, int]:
        """Count one request. Returns (allowed, remaining, seconds until reset)."""
        now = self.clock()
        # At most one sweep per window, addresses seen once must not pile up
        if self.next_sweep is None or now >= self.next_sweep:
            self._prune(now)
            self.next_sweep = now + self.window_seconds
        start, count = self.windows.get(key, (now, 0))
        if now - start >= self.window_seconds:
            start, count = now, 0
        count += 1
        self.windows[key] = (start, count)
        reset = max(0, math.ceil(start + self.window_seconds - now))
        return count <= self.limit, max(0, self.limit - count), reset

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, (start, _count) in self.windows.items()
            if now - start >= self.window_seconds
        ]
        for key in expired:
            del self.windows[key]


def rate_limit_middleware(limiter: RateLimiter):
    @web.middleware
    async def middleware(request: web.Request, handler):
        allowed, remaining, reset = limiter.hit(request.remote or "unknown")
        headers = {
            "RateLimit-Limit": str(limiter.limit),
            "RateLimit-Remaining": str(remaining),
            "RateLimit-Reset": str(reset),
        }
        if not allowed:
            headers["Retry-After"] = str(reset)
            return web.json_response(
                {"error": "Too many requests"},
                status=HTTPStatus.TOO_MANY_REQUESTS,
                headers=headers,
            )
        request[EXTRA_HEADERS_KEY] = {**request.get(EXTRA_HEADERS_KEY, {}), **headers}
        return await handler(request)

    return middleware
