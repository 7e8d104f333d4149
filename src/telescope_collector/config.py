"""Runtime configuration models for the Telescope collector."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CollectorSettings(BaseSettings):
    """Recording policy applied by the coordinator."""

    enabled: bool = Field(default=True, description="Master switch; when off every record call is a no-op.")
    path: str = Field(
        default="/__telescope",
        description="Dashboard mount path. Requests under it are never recorded so the UI does not observe itself.",
    )
    record_body: bool = Field(default=True, description="Whether request and response bodies are stored.")
    max_body_size: int = Field(
        default=64 * 1024,
        ge=0,
        description="Bodies whose serialized size exceeds this many bytes are replaced by a truncation marker.",
    )
    ignore_patterns: list[str] = Field(
        default_factory=list,
        description="Paths that are never recorded. Exact paths or glob patterns such as `/internal/*`.",
    )
    prune_after_hours: float | None = Field(
        default=None,
        gt=0,
        description="When set, entries older than this are pruned by a background task.",
    )
    prune_interval_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Cadence of the auto-prune task.",
    )
    stats_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Cadence of the stats snapshot pushed to attached real-time clients.",
    )
    default_limit: int = Field(default=50, ge=1, description="Page size used when a query gives no limit.")
    max_limit: int = Field(default=100, ge=1, description="Upper bound applied to every query limit.")
    redact: bool | list[str] = Field(
        default=False,
        description=(
            "`true` redacts the default sensitive paths, a list adds paths to the defaults, `false` disables "
            "redaction."
        ),
    )
    redact_censor: str = Field(default="[REDACTED]", description="Replacement value for redacted fields.")

    model_config = SettingsConfigDict(env_prefix="TELESCOPE_")


class StorageSettings(BaseSettings):
    """Selects and configures the storage backend."""

    backend: Literal["memory", "sql"] = Field(default="memory", description="Storage implementation to use.")
    max_entries: int = Field(
        default=1000,
        ge=1,
        description="Per-stream cap of the in-memory backend; the oldest entries are dropped beyond it.",
    )
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy URL for the `sql` backend, e.g. `postgresql+psycopg://...` or `sqlite:///telescope.db`.",
    )
    table_prefix: str = Field(
        default="telescope",
        pattern=r"^[A-Za-z_][A-Za-z0-9_]*$",
        description="Tables are named `{prefix}_requests`, `{prefix}_exceptions` and `{prefix}_logs`.",
    )
    create_tables: bool = Field(default=True, description="Create missing tables when the backend starts.")

    model_config = SettingsConfigDict(env_prefix="TELESCOPE_STORAGE_")


class MetricsSettings(BaseSettings):
    """Shape of the in-process request metrics."""

    bucket_size_ms: int = Field(default=60_000, ge=1000, description="Width of a time bucket.")
    max_buckets: int = Field(
        default=1440,
        ge=1,
        description="Time buckets retained; 1440 one-minute buckets cover 24 hours.",
    )
    max_samples_per_bucket: int = Field(
        default=1000,
        ge=1,
        description="Reservoir size used for percentile estimation in each bucket.",
    )

    model_config = SettingsConfigDict(env_prefix="TELESCOPE_METRICS_")


class OtlpSettings(BaseSettings):
    """OTLP/JSON receiver behaviour."""

    log_metrics: bool = Field(
        default=False,
        description="Write every received metric data point to the log stream at debug level.",
    )
    forward_url: str | None = Field(
        default=None,
        description="When set, normalized metric data points are POSTed to this URL.",
    )
    forward_timeout_seconds: float = Field(default=5.0, ge=0.5, le=60.0, description="Timeout for forwarding calls.")

    model_config = SettingsConfigDict(env_prefix="TELESCOPE_OTLP_")


class ApiSettings(BaseSettings):
    """API-level configuration for the FastAPI application."""

    host: str = Field(default="0.0.0.0", description="Address the uvicorn server binds to.")
    port: int = Field(default=4318, ge=1, le=65535, description="Port exposed for HTTP traffic.")
    log_level: str = Field(default="INFO", description="Level of the collector's own console logging.")
    enable_cors: bool = Field(default=True, description="Whether to allow cross-origin requests from a dashboard.")
    allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173"],
        description="Whitelisted origins if CORS is enabled.",
    )

    model_config = SettingsConfigDict(env_prefix="TELESCOPE_API_")


class Settings(BaseSettings):
    """Top-level settings container that aggregates subsystem configuration."""

    collector: CollectorSettings = Field(default_factory=CollectorSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    otlp: OtlpSettings = Field(default_factory=OtlpSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    model_config = SettingsConfigDict(env_prefix="TELESCOPE_", env_nested_delimiter="__")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings instance.

    Tests that change the environment must call ``get_settings.cache_clear()``.
    """

    return Settings()


__all__ = [
    "Settings",
    "get_settings",
    "CollectorSettings",
    "StorageSettings",
    "MetricsSettings",
    "OtlpSettings",
    "ApiSettings",
]
