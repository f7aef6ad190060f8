"""Gateway configuration loaded once per process."""

from __future__ import annotations

import math
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import yaml
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ..routing import Origin, RouteRule


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class GatewayMode(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"


class GatewaySettings(BaseSettings):
    """Runtime settings for the gateway supervisor and its workers."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    mode: GatewayMode = env_field(GatewayMode.PRODUCTION, "EDGEPROXY_MODE")
    host: str = env_field("0.0.0.0", "EDGEPROXY_HOST")
    port: int = Field(80, ge=1, le=65535, validation_alias="EDGEPROXY_PORT")
    cache_dir: Path = env_field(Path("./cache"), "EDGEPROXY_CACHE_DIR")
    cache_ttl_seconds: float = Field(24 * 60 * 60, gt=0, validation_alias="EDGEPROXY_CACHE_TTL")
    max_workers: int = Field(6, ge=1, validation_alias="EDGEPROXY_MAX_WORKERS")
    admission_window_seconds: float = Field(60.0, gt=0, validation_alias="EDGEPROXY_ADMISSION_WINDOW")
    admission_max_requests: int = Field(100, ge=0, validation_alias="EDGEPROXY_ADMISSION_MAX_REQUESTS")
    admission_sweep_seconds: float = Field(60.0, gt=0, validation_alias="EDGEPROXY_ADMISSION_SWEEP")
    routes_file: Optional[Path] = env_field(None, "EDGEPROXY_ROUTES_FILE")
    default_origin: str = env_field("http://localhost:3000", "EDGEPROXY_DEFAULT_ORIGIN")
    overflow_origin: str = env_field("http://localhost:3000", "EDGEPROXY_OVERFLOW_ORIGIN")
    overflow_path: str = env_field("/retry-later", "EDGEPROXY_OVERFLOW_PATH")
    trusted_proxy_cidrs: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="EDGEPROXY_TRUSTED_PROXY_CIDRS",
    )
    upstream_timeout_seconds: float = env_field(20.0, "EDGEPROXY_UPSTREAM_TIMEOUT")
    internal_prefix: str = env_field("/_edge", "EDGEPROXY_INTERNAL_PREFIX")
    metrics_token: Optional[SecretStr] = env_field(None, "EDGEPROXY_METRICS_TOKEN")
    log_level: str = env_field("INFO", "EDGEPROXY_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "EDGEPROXY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "EDGEPROXY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "EDGEPROXY_OTEL_SAMPLER_RATIO")

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("trusted_proxy_cidrs", mode="before")
    @classmethod
    def _split_proxy_cidrs(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("overflow_path", "internal_prefix", mode="before")
    @classmethod
    def _ensure_leading_slash(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value.startswith("/"):
                value = f"/{value}"
        return value

    @field_validator("default_origin", "overflow_origin", mode="before")
    @classmethod
    def _strip_origin(cls, value):
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @property
    def caching_enabled(self) -> bool:
        return self.mode is GatewayMode.PRODUCTION

    @property
    def cache_max_age(self) -> int:
        return math.ceil(self.cache_ttl_seconds)

    @property
    def default_origin_target(self) -> Origin:
        return Origin(self.default_origin)

    @property
    def overflow_origin_target(self) -> Origin:
        return Origin(self.overflow_origin)

    def route_rules(self) -> list[RouteRule]:
        return load_route_rules(self.routes_file)


def load_route_rules(path: Path | None) -> list[RouteRule]:
    """Read the ordered route table from a YAML file.

    The file holds a top-level ``routes`` list; list order is the match order.
    A missing path yields an empty table so every request goes to the default
    origin.
    """
    if path is None:
        return []
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    entries = data.get("routes", []) if isinstance(data, dict) else data
    return [RouteRule.model_validate(item) for item in entries or []]
