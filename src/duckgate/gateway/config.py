"""Gateway configuration.

Values resolve with priority: explicit argument > environment variable >
YAML config file > default. The config file path comes from the
`config_file` argument or the DUCKGATE_CONFIG environment variable.

Example config file:
    host: 0.0.0.0
    port: 3264
    max_requests_per_window: 15
    min_interval_ms: 1500
    rate_limit_store: /var/run/duckgate/rate-limit.json
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from duckgate.gateway.clients.upstream_client import UpstreamClientConfig
from duckgate.gateway.models import DEFAULT_MODEL
from duckgate.gateway.ratelimit.limiter import RateLimitConfig
from duckgate.gateway.ratelimit.store import default_store_path

CONFIG_ENV = "DUCKGATE_CONFIG"

# field name -> environment variable
ENV_KEYS = {
    "host": "DUCKGATE_HOST",
    "port": "DUCKGATE_PORT",
    "upstream_base_url": "DUCKGATE_UPSTREAM_URL",
    "connect_timeout": "DUCKGATE_CONNECT_TIMEOUT",
    "read_timeout": "DUCKGATE_READ_TIMEOUT",
    "max_requests_per_window": "DUCKGATE_RATE_LIMIT_MAX",
    "window_ms": "DUCKGATE_RATE_LIMIT_WINDOW_MS",
    "min_interval_ms": "DUCKGATE_MIN_INTERVAL_MS",
    "stale_after_ms": "DUCKGATE_STATE_STALE_MS",
    "rate_limit_store": "DUCKGATE_RATE_LIMIT_STORE",
    "rate_limit_retries": "DUCKGATE_RATE_LIMIT_RETRIES",
    "retry_max_delay": "DUCKGATE_RETRY_MAX_DELAY",
    "default_model": "DUCKGATE_DEFAULT_MODEL",
    "debug_dir": "DUCKGATE_DEBUG_DIR",
}


@dataclass
class GatewayConfig:
    """Configuration for the gateway server and its core components."""

    host: str = "127.0.0.1"
    port: int = 3264

    # Upstream
    upstream_base_url: str = "https://duckduckgo.com/duckchat/v1"
    connect_timeout: float = 10.0
    read_timeout: float = 120.0

    # Shared rate limiting
    max_requests_per_window: int = 20
    window_ms: int = 60_000
    min_interval_ms: int = 1_000
    stale_after_ms: int = 5 * 60 * 1000
    rate_limit_store: str = str(default_store_path())

    # Orchestrator retry of upstream 429s
    rate_limit_retries: int = 2
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0

    default_model: str = DEFAULT_MODEL

    # Request limits
    max_body_size: int = 10 * 1024 * 1024  # 10MB

    # Debug: save raw requests/responses to files
    debug_dir: str | None = None

    def upstream_config(self) -> UpstreamClientConfig:
        return UpstreamClientConfig(
            base_url=self.upstream_base_url,
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
        )

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_requests=self.max_requests_per_window,
            window_ms=self.window_ms,
            min_interval_ms=self.min_interval_ms,
            stale_after_ms=self.stale_after_ms,
        )


def _coerce(value: Any, template: Any) -> Any:
    """Convert a string/env value to the type of the field default."""
    if value is None or template is None:
        return value
    if isinstance(template, bool):
        return str(value).lower() in ("1", "true", "yes", "on")
    if isinstance(template, int):
        return int(value)
    if isinstance(template, float):
        return float(value)
    return str(value)


def read_config_file(config_file: str | Path | None) -> dict[str, Any]:
    """Load the YAML config file, or {} when none is configured."""
    config_path = config_file or os.environ.get(CONFIG_ENV)
    if not config_path:
        return {}
    content = Path(config_path).read_text(encoding="utf-8")
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return data


def load_config(config_file: str | Path | None = None, **overrides: Any) -> GatewayConfig:
    """Resolve a GatewayConfig from arguments, environment and config file."""
    file_config = read_config_file(config_file)
    defaults = GatewayConfig()
    values: dict[str, Any] = {}

    for f in fields(GatewayConfig):
        default = getattr(defaults, f.name)
        arg = overrides.get(f.name)
        env_key = ENV_KEYS.get(f.name)
        env_val = os.environ.get(env_key) if env_key else None

        if arg is not None:
            values[f.name] = arg
        elif env_val:
            values[f.name] = _coerce(env_val, default)
        elif file_config.get(f.name) is not None:
            values[f.name] = _coerce(file_config[f.name], default)

    return GatewayConfig(**values)
