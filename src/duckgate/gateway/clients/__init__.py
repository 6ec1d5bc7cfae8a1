"""HTTP clients for the upstream chat service."""

from duckgate.gateway.clients.upstream_client import (
    FALLBACK_REPLY,
    UpstreamClient,
    UpstreamClientConfig,
)

__all__ = ["FALLBACK_REPLY", "UpstreamClient", "UpstreamClientConfig"]
