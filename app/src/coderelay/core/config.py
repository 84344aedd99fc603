"""
Coderelay Configuration — single source of truth for all settings.

Reads from environment variables with sensible defaults.
No config files, no YAML. Just env vars (and an optional .env).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


@dataclass(frozen=True)
class StoreConfig:
    """Durable session store settings."""

    db_path: str = "./data/sessions.db"

    @classmethod
    def from_env(cls) -> StoreConfig:
        return cls(db_path=os.getenv("CODERELAY_DB_PATH", "./data/sessions.db"))


@dataclass(frozen=True)
class SessionsConfig:
    """Session lifetime and quota."""

    ttl_seconds: float = 3600.0
    max_sessions: int = 100
    sweep_interval: float = 60.0  # seconds between expiry sweeps

    @classmethod
    def from_env(cls) -> SessionsConfig:
        return cls(
            ttl_seconds=float(os.getenv("CODERELAY_SESSION_TTL", "3600")),
            max_sessions=int(os.getenv("CODERELAY_MAX_SESSIONS", "100")),
            sweep_interval=float(os.getenv("CODERELAY_SWEEP_INTERVAL", "60")),
        )


@dataclass(frozen=True)
class AgentConfig:
    """Defaults merged into every new session's configuration."""

    default_agent: str = "claude"
    cwd: str = field(default_factory=os.getcwd)
    model: str | None = None  # None lets the backend pick its own default
    permission_mode: str = "default"
    max_turns: int = 10
    claude_bin: str = "claude"
    codex_bin: str = "codex"
    gemini_bin: str = "gemini"

    @classmethod
    def from_env(cls) -> AgentConfig:
        return cls(
            default_agent=os.getenv("CODERELAY_DEFAULT_AGENT", "claude"),
            cwd=os.getenv("CODERELAY_DEFAULT_CWD") or os.getcwd(),
            model=os.getenv("CODERELAY_DEFAULT_MODEL") or None,
            permission_mode=os.getenv("CODERELAY_DEFAULT_PERMISSION_MODE", "default"),
            max_turns=_env_int("CODERELAY_MAX_TURNS", 10) or 10,
            claude_bin=os.getenv("CODERELAY_CLAUDE_BIN", "claude"),
            codex_bin=os.getenv("CODERELAY_CODEX_BIN", "codex"),
            gemini_bin=os.getenv("CODERELAY_GEMINI_BIN", "gemini"),
        )


@dataclass(frozen=True)
class StreamConfig:
    """SSE relay settings."""

    keepalive_interval: float = 30.0
    queue_size: int = 1000
    recorder_queue_size: int = 1000

    @classmethod
    def from_env(cls) -> StreamConfig:
        return cls(
            keepalive_interval=float(os.getenv("CODERELAY_KEEPALIVE_INTERVAL", "30")),
            queue_size=int(os.getenv("CODERELAY_STREAM_QUEUE_SIZE", "1000")),
            recorder_queue_size=int(os.getenv("CODERELAY_RECORDER_QUEUE_SIZE", "1000")),
        )


def _api_keys_from_env() -> tuple[str, ...]:
    """Collect API keys: single, comma-separated, then numbered (_1, _2, ...)."""
    keys: list[str] = []

    single = os.getenv("CODERELAY_API_KEY")
    if single:
        keys.append(single.strip())

    many = os.getenv("CODERELAY_API_KEYS")
    if many:
        keys.extend(k.strip() for k in many.split(",") if k.strip())

    i = 1
    while os.getenv(f"CODERELAY_API_KEY_{i}"):
        keys.append(os.environ[f"CODERELAY_API_KEY_{i}"].strip())
        i += 1

    return tuple(keys)


@dataclass(frozen=True)
class AuthConfig:
    """API key gate for mutating endpoints."""

    enabled: bool = False
    header: str = "x-api-key"
    api_keys: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> AuthConfig:
        keys = _api_keys_from_env()
        return cls(
            # On by default only when there is something to check against
            enabled=_env_bool("CODERELAY_AUTH_ENABLED", bool(keys)),
            header=os.getenv("CODERELAY_API_KEY_HEADER", "x-api-key").lower(),
            api_keys=keys,
        )


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed-window request limiting."""

    enabled: bool = True
    window_seconds: float = 3600.0
    max_requests: int = 100

    @classmethod
    def from_env(cls) -> RateLimitConfig:
        return cls(
            enabled=_env_bool("CODERELAY_RATE_LIMIT_ENABLED", True),
            window_seconds=float(os.getenv("CODERELAY_RATE_LIMIT_WINDOW", "3600")),
            max_requests=int(os.getenv("CODERELAY_RATE_LIMIT_MAX", "100")),
        )


@dataclass(frozen=True)
class ServerConfig:
    """Server settings."""

    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> ServerConfig:
        return cls(
            host=os.getenv("CODERELAY_HOST", "0.0.0.0"),
            port=int(os.getenv("CODERELAY_PORT", "8000")),
        )


@dataclass(frozen=True)
class RelayConfig:
    """Root configuration — one object to rule them all."""

    store: StoreConfig = field(default_factory=StoreConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> RelayConfig:
        return cls(
            store=StoreConfig.from_env(),
            sessions=SessionsConfig.from_env(),
            agent=AgentConfig.from_env(),
            stream=StreamConfig.from_env(),
            auth=AuthConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
            server=ServerConfig.from_env(),
        )


# Process-wide config, built once at import
config = RelayConfig.from_env()
