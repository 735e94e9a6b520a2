"""
Centralized configuration for school tenancy.

- Dataclass settings loaded from OS env, with `.env` support via python-dotenv.
- Validation in __post_init__.
- Immutable singleton via functools.lru_cache.
- Credentials never logged (masked).
"""

from __future__ import annotations

import functools
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, cast

from dotenv import load_dotenv

# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------
_ASYNC_SCHEMES = ("postgresql+asyncpg", "sqlite+aiosqlite")
_SYNC_ALIASES = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _get_env_str(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    v = os.getenv(key, default)
    if required and (v is None or str(v).strip() == ""):
        raise ValueError(f"Missing required env var: {key}")
    return v


def _get_env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    v = v.strip().lower()
    return v in {"1", "true", "t", "yes", "y", "on"}


def _get_env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be an integer")


def _get_env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be a number")


def _validate_choice(value: str, *, choices: tuple[str, ...], key: str) -> str:
    if value not in choices:
        raise ValueError(f"{key} must be one of {choices}, got {value!r}")
    return value


def normalize_database_url(value: str, *, key: str = "DATABASE_URL") -> str:
    """Force an async driver onto the base URL (postgresql:// -> postgresql+asyncpg://)."""
    value = value.strip()
    scheme, sep, rest = value.partition("://")
    if not sep:
        raise ValueError(f"{key} must be a URL, got {value!r}")
    scheme = _SYNC_ALIASES.get(scheme, scheme)
    if scheme not in _ASYNC_SCHEMES:
        raise ValueError(f"{key} must use one of {_ASYNC_SCHEMES} (or postgresql:// / sqlite://)")
    return f"{scheme}://{rest}"


def _mask_url(value: str) -> str:
    # user:password@host -> user:***@host
    return re.sub(r"(://[^:/@]+):[^@]*@", r"\1:***@", value)


# ------------------------------------------------------------------------------
# Settings dataclass (immutable)
# ------------------------------------------------------------------------------
EnvName = Literal["local", "dev", "test", "staging", "prod"]


@dataclass(frozen=True)
class Settings:
    # Environment
    environment: EnvName = "local"
    debug: bool = False
    is_testing: bool = False
    application_name: str = "school-tenancy"

    # Base connection URI; tenant database names are substituted into it
    database_url: str = "postgresql+asyncpg://localhost:5432"

    # Tenant pool policy
    database_max_pool_size: int = 50
    database_min_pool_size: int = 5
    database_idle_timeout_seconds: float = 300.0
    database_server_selection_timeout_seconds: float = 5.0
    database_socket_timeout_seconds: float = 45.0
    tenant_connect_timeout_seconds: float = 10.0
    auto_create_databases: bool = True

    # Observability
    log_level: str = "INFO"
    json_logs: bool = True

    # Paths
    base_dir: Path = field(default_factory=lambda: Path(__file__).resolve().parent.parent.parent)

    # Derived/computed flags (filled in __post_init__)
    is_prod: bool = field(init=False)
    is_local: bool = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "environment",
            _validate_choice(self.environment, choices=("local", "dev", "test", "staging", "prod"), key="ENVIRONMENT"),
        )
        object.__setattr__(self, "database_url", normalize_database_url(self.database_url))

        # Pool bounds
        if self.database_min_pool_size < 0:
            raise ValueError("DATABASE_MIN_POOL_SIZE must be >= 0")
        if self.database_max_pool_size < max(self.database_min_pool_size, 1):
            raise ValueError("DATABASE_MAX_POOL_SIZE must be >= DATABASE_MIN_POOL_SIZE and > 0")

        # Timeouts
        for key, value in (
            ("DATABASE_IDLE_TIMEOUT_SECONDS", self.database_idle_timeout_seconds),
            ("DATABASE_SERVER_SELECTION_TIMEOUT_SECONDS", self.database_server_selection_timeout_seconds),
            ("DATABASE_SOCKET_TIMEOUT_SECONDS", self.database_socket_timeout_seconds),
            ("TENANT_CONNECT_TIMEOUT_SECONDS", self.tenant_connect_timeout_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{key} must be > 0")

        if not re.fullmatch(r"(?i)DEBUG|INFO|WARNING|ERROR|CRITICAL", self.log_level.strip()):
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")

        object.__setattr__(self, "is_prod", self.environment == "prod")
        object.__setattr__(self, "is_local", self.environment == "local")

    # Safe dict (for debug prints without secrets)
    def safe_dict(self) -> dict:
        return {
            "environment": self.environment,
            "debug": self.debug,
            "is_testing": self.is_testing,
            "application_name": self.application_name,
            "database_url": _mask_url(self.database_url),
            "database_max_pool_size": self.database_max_pool_size,
            "database_min_pool_size": self.database_min_pool_size,
            "database_idle_timeout_seconds": self.database_idle_timeout_seconds,
            "database_server_selection_timeout_seconds": self.database_server_selection_timeout_seconds,
            "database_socket_timeout_seconds": self.database_socket_timeout_seconds,
            "tenant_connect_timeout_seconds": self.tenant_connect_timeout_seconds,
            "auto_create_databases": self.auto_create_databases,
            "log_level": self.log_level,
            "json_logs": self.json_logs,
            "base_dir": str(self.base_dir),
        }


# ------------------------------------------------------------------------------
# Loader (singleton)
# ------------------------------------------------------------------------------
_logger = logging.getLogger(__name__)


def load_settings() -> Settings:
    """Build Settings from the environment (and a repo-root .env, if present)."""
    env_file = Path(__file__).resolve().parent.parent.parent / ".env"
    if env_file.exists():
        load_dotenv(dotenv_path=str(env_file), override=False)

    return Settings(
        environment=cast(EnvName, _get_env_str("ENVIRONMENT", "local") or "local"),
        debug=_get_env_bool("DEBUG", False),
        is_testing=_get_env_bool("IS_TESTING", False),
        application_name=_get_env_str("APPLICATION_NAME", "school-tenancy") or "school-tenancy",
        database_url=_get_env_str("DATABASE_URL", "postgresql+asyncpg://localhost:5432") or "",
        database_max_pool_size=_get_env_int("DATABASE_MAX_POOL_SIZE", 50),
        database_min_pool_size=_get_env_int("DATABASE_MIN_POOL_SIZE", 5),
        database_idle_timeout_seconds=_get_env_float("DATABASE_IDLE_TIMEOUT_SECONDS", 300.0),
        database_server_selection_timeout_seconds=_get_env_float("DATABASE_SERVER_SELECTION_TIMEOUT_SECONDS", 5.0),
        database_socket_timeout_seconds=_get_env_float("DATABASE_SOCKET_TIMEOUT_SECONDS", 45.0),
        tenant_connect_timeout_seconds=_get_env_float("TENANT_CONNECT_TIMEOUT_SECONDS", 10.0),
        auto_create_databases=_get_env_bool("AUTO_CREATE_DATABASES", True),
        log_level=_get_env_str("LOG_LEVEL", "INFO") or "INFO",
        json_logs=_get_env_bool("JSON_LOGS", True),
    )


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = load_settings()
    _logger.info("Settings loaded", extra={"settings": settings.safe_dict()})
    return settings
