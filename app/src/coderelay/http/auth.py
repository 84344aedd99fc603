"""API key gate for mutating endpoints (FastAPI dependency)."""

from __future__ import annotations

import hmac
import logging
from typing import Awaitable, Callable

from fastapi import Request

from coderelay.core.config import AuthConfig
from coderelay.core.errors import RelayError

logger = logging.getLogger(__name__)


class MissingApiKeyError(RelayError):
    code = "MISSING_API_KEY"
    status_code = 401


class InvalidApiKeyError(RelayError):
    code = "INVALID_API_KEY"
    status_code = 403


def _mask(key: str) -> str:
    return key[:8] + "..."


def create_api_key_dependency(auth: AuthConfig) -> Callable[[Request], Awaitable[None]]:
    """Build the dependency that checks ``auth.header`` against the configured keys."""

    async def require_api_key(request: Request) -> None:
        if not auth.enabled:
            return

        api_key = request.headers.get(auth.header)
        if not api_key:
            logger.info("Request missing API key: %s %s", request.method, request.url.path)
            raise MissingApiKeyError(f"Missing {auth.header} header")

        if not any(hmac.compare_digest(api_key.encode(), known.encode()) for known in auth.api_keys):
            logger.info(
                "Invalid API key for %s %s: %s",
                request.method,
                request.url.path,
                _mask(api_key),
            )
            raise InvalidApiKeyError("Invalid API key")

        request.state.api_key = api_key

    return require_api_key
