"""SDK configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_ENV_PREFIX = "DOCMON_"


@dataclass(frozen=True)
class MonitorConfig:
    """Immutable monitor configuration."""

    service_name: str = "docmon"
    environment: str = "development"
    enabled: bool = True
    batch_size: int = 10
    metrics_collection: str = "performance_metrics"
    query_log_size: int = 1000
    slow_query_threshold_ms: float = 1000.0
    max_queue_size: int | None = None
    stale_span_timeout_ms: float | None = None
    app_url: str = ""
    sink_url: str | None = None
    api_key: str | None = None
    otlp_endpoint: str | None = None
    export_batch_size: int = 512
    flush_interval_ms: int = 5000
    export_buffer_size: int = 8192

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.query_log_size < 1:
            raise ValueError(f"query_log_size must be >= 1, got {self.query_log_size}")
        if self.max_queue_size is not None and self.max_queue_size < self.batch_size:
            raise ValueError("max_queue_size must be at least batch_size")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MonitorConfig:
        """Build a config from ``DOCMON_*`` environment variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(_ENV_PREFIX + name)
            return value if value else None

        kwargs: dict[str, object] = {}
        for name in ("service_name", "environment", "metrics_collection", "app_url"):
            value = get(name.upper())
            if value is not None:
                kwargs[name] = value
        for name in ("sink_url", "api_key", "otlp_endpoint"):
            kwargs[name] = get(name.upper())
        for name in ("batch_size", "query_log_size", "max_queue_size"):
            value = get(name.upper())
            if value is not None:
                kwargs[name] = int(value)
        for name in ("slow_query_threshold_ms", "stale_span_timeout_ms"):
            value = get(name.upper())
            if value is not None:
                kwargs[name] = float(value)
        enabled = get("ENABLED")
        if enabled is not None:
            kwargs["enabled"] = enabled.lower() not in ("0", "false", "no", "off")
        return cls(**kwargs)  # type: ignore[arg-type]
