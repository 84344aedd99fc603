"""
Fixed-window rate limiting as plain ASGI middleware.

Each client key (API key header, else client address) gets
``max_requests`` per ``window_seconds``. Every limited response carries
``X-RateLimit-Limit``, ``X-RateLimit-Remaining`` and ``X-RateLimit-Reset``
(epoch milliseconds); requests over the limit get a 429
``RATE_LIMIT_EXCEEDED`` envelope.

Written against raw ASGI rather than BaseHTTPMiddleware so streaming
responses and client disconnects pass through untouched.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from coderelay.core.clock import to_iso
from coderelay.core.config import RateLimitConfig
from coderelay.http.errors import error_response

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    requests: int
    reset_at: float


class RateLimitMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        config: RateLimitConfig,
        api_key_header: str = "x-api-key",
        path_prefix: str = "/api/",
        exempt_paths: tuple[str, ...] = ("/api/v1/health",),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app = app
        self.config = config
        self.api_key_header = api_key_header
        self.path_prefix = path_prefix
        self.exempt_paths = exempt_paths
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._applies(scope["path"]):
            await self.app(scope, receive, send)
            return

        now = self._clock()
        key = self._client_key(scope)
        window = self._hit(key, now)
        remaining = max(0, self.config.max_requests - window.requests)
        headers = {
            "X-RateLimit-Limit": str(self.config.max_requests),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(int(window.reset_at * 1000)),
        }

        if window.requests > self.config.max_requests:
            logger.warning(
                "Rate limit exceeded for %s (%d/%d)",
                key[:8] + "...",
                window.requests,
                self.config.max_requests,
            )
            response = error_response(
                "RATE_LIMIT_EXCEEDED",
                "Too many requests",
                429,
                details={
                    "limit": self.config.max_requests,
                    "window": int(self.config.window_seconds * 1000),
                    "reset": to_iso(window.reset_at),
                },
                headers=headers,
            )
            await response(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                mutable = MutableHeaders(scope=message)
                for name, value in headers.items():
                    mutable[name] = value
            await send(message)

        await self.app(scope, receive, send_with_headers)

    def _applies(self, path: str) -> bool:
        if not self.config.enabled:
            return False
        return path.startswith(self.path_prefix) and path not in self.exempt_paths

    def _client_key(self, scope: Scope) -> str:
        api_key = Headers(scope=scope).get(self.api_key_header)
        if api_key:
            return f"key:{api_key}"
        client = scope.get("client")
        return f"ip:{client[0]}" if client else "unknown"

    def _hit(self, key: str, now: float) -> _Window:
        self._prune(now)
        window = self._windows.get(key)
        if window is None or window.reset_at < now:
            window = _Window(requests=0, reset_at=now + self.config.window_seconds)
            self._windows[key] = window
        window.requests += 1
        return window

    def _prune(self, now: float) -> None:
        if len(self._windows) < 1024:
            return
        for key in [k for k, w in self._windows.items() if w.reset_at < now]:
            del self._windows[key]
