"""
Database settings read from the environment and an optional ``.env`` file.

``load_settings()`` returns a frozen snapshot and fails fast with ConfigInvalid.
There is no module-level settings instance: the application loads settings once
at startup and passes them down.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import unquote, urlsplit

from pydantic import Field, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from formstore.core.errors import ConfigInvalid
from formstore.core.pool.manager import PoolConfig
from formstore.core.retry import RetryPolicy
from formstore.models import ConnectionParams, ProductTypeEnum

_URL_SCHEMES: dict[str, ProductTypeEnum] = {
    "postgres": ProductTypeEnum.POSTGRES,
    "postgresql": ProductTypeEnum.POSTGRES,
    "mysql": ProductTypeEnum.MYSQL,
    "sqlite": ProductTypeEnum.SQLITE,
}


def _parse_db_url(url: str) -> dict[str, Any]:
    """Split ``[jdbc:]scheme://[user[:password]@]host[:port]/database``."""
    raw = url.strip()
    if raw.lower().startswith("jdbc:"):
        raw = raw[5:]
    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme not in _URL_SCHEMES:
        raise ValueError(f"DB_URL has unsupported scheme: {parts.scheme!r}")
    out: dict[str, Any] = {"DB_PRODUCT": _URL_SCHEMES[scheme]}
    if out["DB_PRODUCT"] == ProductTypeEnum.SQLITE:
        # sqlite:///relative.db or sqlite:////abs/path.db
        path = parts.path[1:] if parts.path.startswith("/") else parts.path
        if path:
            out["DB_NAME"] = path
        return out
    if parts.hostname:
        out["DB_HOST"] = parts.hostname
    if parts.port:
        out["DB_PORT"] = parts.port
    if parts.path and parts.path != "/":
        out["DB_NAME"] = unquote(parts.path.lstrip("/"))
    if parts.username:
        out["DB_USER"] = unquote(parts.username)
    if parts.password:
        out["DB_PASSWORD"] = unquote(parts.password)
    return out


class DatabaseSettings(BaseSettings):
    """Connection target, pool sizing and retry knobs."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    DB_PRODUCT: ProductTypeEnum = ProductTypeEnum.POSTGRES
    DB_URL: str | None = None
    DB_HOST: str | None = None
    DB_PORT: int | None = Field(default=None, gt=0, lt=65536)
    DB_NAME: str | None = None
    DB_USER: str | None = None
    DB_PASSWORD: SecretStr = SecretStr("")

    DB_CONNECT_TIMEOUT: int = Field(default=10, gt=0)
    DB_STATEMENT_TIMEOUT: float | None = Field(default=None, gt=0)

    DB_POOL_MIN: int = Field(default=1, ge=0)
    DB_POOL_MAX: int = Field(default=10, ge=1)
    DB_ACQUIRE_TIMEOUT_MS: int = Field(default=30_000, ge=0)
    DB_IDLE_TIMEOUT_SEC: float = Field(default=300.0, gt=0)
    DB_MAX_LIFETIME_SEC: float = Field(default=1800.0, gt=0)
    DB_SHUTDOWN_GRACE_SEC: float = Field(default=10.0, ge=0)
    DB_EVICTION_INTERVAL_SEC: float = Field(default=30.0, gt=0)

    DB_RETRY_MAX: int = Field(default=3, ge=0)
    DB_RETRY_BASE_DELAY: float = Field(default=0.1, ge=0)
    DB_RETRY_MAX_DELAY: float = Field(default=2.0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _expand_url(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        url = data.get("DB_URL")
        if not url:
            return data
        # Explicit fields win over the URL.
        merged = _parse_db_url(url)
        merged.update({k: v for k, v in data.items() if v not in (None, "")})
        return merged

    @model_validator(mode="after")
    def _check_required(self) -> DatabaseSettings:
        if self.DB_PRODUCT == ProductTypeEnum.SQLITE:
            required = ["DB_NAME"]
        else:
            required = ["DB_HOST", "DB_NAME", "DB_USER"]
        missing = [name for name in required if not getattr(self, name)]
        if missing:
            raise ValueError(f"missing required settings: {', '.join(missing)}")
        if self.DB_POOL_MIN > self.DB_POOL_MAX:
            raise ValueError(
                f"DB_POOL_MIN ({self.DB_POOL_MIN}) must not exceed DB_POOL_MAX ({self.DB_POOL_MAX})"
            )
        return self

    def connection_params(self) -> ConnectionParams:
        return ConnectionParams(
            product_type=self.DB_PRODUCT,
            host=self.DB_HOST,
            port=self.DB_PORT,
            database=self.DB_NAME or "",
            username=self.DB_USER,
            password=self.DB_PASSWORD,
            connect_timeout=self.DB_CONNECT_TIMEOUT,
        )

    def pool_config(self) -> PoolConfig:
        return PoolConfig(
            min_size=self.DB_POOL_MIN,
            max_size=self.DB_POOL_MAX,
            acquire_timeout=self.DB_ACQUIRE_TIMEOUT_MS / 1000.0,
            idle_timeout=self.DB_IDLE_TIMEOUT_SEC,
            max_lifetime=self.DB_MAX_LIFETIME_SEC,
            shutdown_grace=self.DB_SHUTDOWN_GRACE_SEC,
            eviction_interval=self.DB_EVICTION_INTERVAL_SEC,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.DB_RETRY_MAX,
            base_delay=self.DB_RETRY_BASE_DELAY,
            max_delay=self.DB_RETRY_MAX_DELAY,
        )


def load_settings(**overrides: Any) -> DatabaseSettings:
    """
    Build settings from env / ``.env`` (overrides win). Raises ConfigInvalid
    listing every offending field instead of pydantic's ValidationError.
    """
    try:
        return DatabaseSettings(**overrides)
    except ValidationError as e:
        messages = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            msg = err.get("msg", "Invalid value")
            messages.append(f"{loc}: {msg}" if loc else msg)
        raise ConfigInvalid("; ".join(messages)) from e
