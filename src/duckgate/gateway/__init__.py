"""Duckgate Gateway - OpenAI-compatible front for the upstream chat service.

Components:
- Session negotiation: per-request handshake with the upstream
- Rate limiting: sliding window shared by every local gateway process
- Upstream client: blocking and streaming chat calls
- Transforms: event-stream decoding and Chat Completions framing
- Tools: function-calling emulation through prompting
- Server: aiohttp app exposing /v1/chat/completions and /v1/models

Usage (direct):
    from duckgate.gateway.config import load_config
    from duckgate.gateway.openai_server import GatewayServer
    import asyncio

    async def main():
        server = GatewayServer(config=load_config(port=3264))
        await server.serve()

    asyncio.run(main())
"""

from duckgate.gateway.errors import (
    ERROR_TYPE_MAP,
    AuthError,
    GatewayError,
    ProtocolError,
    UpstreamError,
    ValidationError,
)
from duckgate.gateway.tracing import RequestTracer

__all__ = [
    "ERROR_TYPE_MAP",
    "AuthError",
    "GatewayError",
    "ProtocolError",
    "UpstreamError",
    "ValidationError",
    "RequestTracer",
]
