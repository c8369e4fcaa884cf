"""
aiohttp middlewares: request ids and JSON errors, CORS, API-key auth and
per-client rate limiting.
"""

import hmac
import math
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from aiohttp import web

from ..exceptions import RequestValidationError, StorageError, VisionError

logger = structlog.get_logger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

PUBLIC_PATHS = frozenset({"/api/health"})
REQUEST_ID_KEY = "request_id"


def _is_protected(request: web.Request) -> bool:
    return request.path.startswith("/api/") and request.path not in PUBLIC_PATHS


def _error_response(request: web.Request, status: int, message: str) -> web.Response:
    return web.json_response(
        {"message": message, "requestId": request.get(REQUEST_ID_KEY)},
        status=status,
    )


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Tag the request with an id and turn exceptions into JSON error bodies."""
    request_id = str(uuid.uuid4())
    request[REQUEST_ID_KEY] = request_id

    try:
        response = await handler(request)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        response = _error_response(request, e.status, e.reason)
    except RequestValidationError as e:
        response = _error_response(request, 400, e.message)
    except VisionError as e:
        logger.error("vision_request_failed", request_id=request_id, error=str(e))
        response = _error_response(request, 502, "AI provider failed to analyze the image.")
    except StorageError as e:
        logger.error("storage_request_failed", request_id=request_id, error=str(e))
        response = _error_response(request, 500, "History storage is unavailable.")
    except Exception:
        logger.exception("request_failed", request_id=request_id, path=request.path)
        response = _error_response(request, 500, "Unexpected error.")

    if response.status >= 400:
        logger.warning("request_rejected", request_id=request_id, path=request.path, status=response.status)
    response.headers["X-Request-ID"] = request_id
    return response


def cors_middleware(origins: List[str]):
    """Allow cross-origin calls from origins (any origin when empty)."""
    allowed = set(origins)

    def _allow_origin(request: web.Request) -> Optional[str]:
        origin = request.headers.get("Origin")
        if not allowed:
            return "*"
        if origin and origin in allowed:
            return origin
        return None

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        allow_origin = _allow_origin(request)

        if request.method == "OPTIONS" and request.headers.get("Access-Control-Request-Method"):
            response: web.StreamResponse = web.Response(status=204)
            if allow_origin:
                response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type, x-api-key"
        else:
            response = await handler(request)

        if allow_origin:
            response.headers["Access-Control-Allow-Origin"] = allow_origin
            if allow_origin != "*":
                response.headers["Vary"] = "Origin"
        return response

    return middleware


def api_key_middleware(api_key: str):
    """Require a matching x-api-key header on protected routes when api_key is set."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if api_key and _is_protected(request):
            supplied = request.headers.get("x-api-key", "")
            if not hmac.compare_digest(supplied.encode("utf-8"), api_key.encode("utf-8")):
                return _error_response(request, 401, "Unauthorized.")
        return await handler(request)

    return middleware


@dataclass
class _Bucket:
    count: int
    reset_at: float


class RateLimiter:
    """
    Fixed-window request counter keyed by client.

    Args:
        window_seconds: Length of each counting window
        max_requests: Requests allowed per window
        clock: Wall-clock source in epoch seconds; injectable for tests
    """

    def __init__(self, window_seconds: int, max_requests: int, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._next_sweep = 0.0

    @property
    def tracked_clients(self) -> int:
        return len(self._buckets)

    def _sweep(self, now: float) -> None:
        # Runs at most once per window
        expired = [key for key, bucket in self._buckets.items() if now > bucket.reset_at]
        for key in expired:
            del self._buckets[key]
        self._next_sweep = now + self.window_seconds

    def hit(self, key: str) -> Tuple[bool, int, int]:
        """
        Count one request for key.

        Returns:
            (allowed, remaining, reset_epoch_seconds)
        """
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)

        bucket = self._buckets.get(key)
        if bucket is None or now > bucket.reset_at:
            bucket = _Bucket(count=0, reset_at=now + self.window_seconds)
            self._buckets[key] = bucket

        bucket.count += 1
        remaining = max(0, self.max_requests - bucket.count)
        return bucket.count <= self.max_requests, remaining, math.floor(bucket.reset_at)


def rate_limit_middleware(limiter: RateLimiter):
    """Reject protected requests over the limiter's budget with 429."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if not _is_protected(request):
            return await handler(request)

        allowed, remaining, reset_at = limiter.hit(request.remote or "global")
        headers = {
            "X-RateLimit-Limit": str(limiter.max_requests),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(reset_at),
        }

        if not allowed:
            response: web.StreamResponse = _error_response(request, 429, "Too many requests. Try again shortly.")
        else:
            response = await handler(request)
        response.headers.update(headers)
        return response

    return middleware
