"""
Coderelay — session-based HTTP relay for CLI coding agents.

Wires the store, session manager, expiry sweeper, query executor and
session service into one FastAPI app. Startup and shutdown run in the
app lifespan so the store connection lives on the server's loop.

Run: uv run uvicorn coderelay.main:create_app --factory --host 0.0.0.0 --port 8000
 or: python -m coderelay
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from asgi_correlation_id import CorrelationIdMiddleware
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

import coderelay.core.config as config_module
from coderelay import __version__
from coderelay.agents.base import AgentRegistry, build_default_registry
from coderelay.core.clock import Clock, SystemClock, Ticker
from coderelay.core.config import RelayConfig
from coderelay.http.auth import create_api_key_dependency
from coderelay.http.errors import register_exception_handlers
from coderelay.http.rate_limit import RateLimitMiddleware
from coderelay.http.sessions import create_session_router
from coderelay.query.executor import QueryExecutor
from coderelay.service import SessionService
from coderelay.session.manager import SessionManager
from coderelay.session.store import SessionStore
from coderelay.session.sweeper import ExpirySweeper

logger = logging.getLogger("coderelay")


def create_app(
    settings: RelayConfig | None = None,
    *,
    agents: AgentRegistry | None = None,
    clock: Clock | None = None,
    ticker: Ticker | None = None,
) -> FastAPI:
    """Build the app. Collaborators can be swapped for tests."""
    settings = settings or config_module.config
    clock = clock or SystemClock()
    agents = agents or build_default_registry(settings.agent)

    store = SessionStore(db_path=Path(settings.store.db_path), clock=clock)
    manager = SessionManager(
        store,
        clock=clock,
        ttl_seconds=settings.sessions.ttl_seconds,
        max_sessions=settings.sessions.max_sessions,
        defaults=settings.agent,
    )
    sweeper = ExpirySweeper(manager, ticker=ticker, interval=settings.sessions.sweep_interval)
    executor = QueryExecutor(
        manager,
        agents,
        clock=clock,
        recorder_queue_size=settings.stream.recorder_queue_size,
    )
    service = SessionService(manager, executor)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await store.start()
        await manager.load_statistics()
        await sweeper.start()
        logger.info(
            "Coderelay %s ready (db=%s, agents=%s, ttl=%ss, max_sessions=%d, auth=%s)",
            __version__,
            settings.store.db_path,
            agents.names(),
            settings.sessions.ttl_seconds,
            settings.sessions.max_sessions,
            "on" if settings.auth.enabled else "off",
        )
        try:
            yield
        finally:
            await sweeper.stop()
            await store.stop()
            logger.info("Coderelay stopped")

    app = FastAPI(title="Coderelay", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.manager = manager
    app.state.sweeper = sweeper
    app.state.service = service

    register_exception_handlers(app)

    # Last added runs first: request id → CORS → rate limit → routes
    app.add_middleware(
        RateLimitMiddleware,
        config=settings.rate_limit,
        api_key_header=settings.auth.header,
        clock=clock.now,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(
        create_session_router(
            service,
            stream_config=settings.stream,
            agent_names=agents.names(),
            default_agent=settings.agent.default_agent,
            require_api_key=create_api_key_dependency(settings.auth),
        )
    )

    @app.get("/")
    async def root() -> dict:
        return {"name": "coderelay", "version": __version__, "api": "/api/v1"}

    return app
