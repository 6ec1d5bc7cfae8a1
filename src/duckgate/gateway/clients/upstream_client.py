"""Client for the upstream chat endpoint.

Uses aiohttp.ClientSession for both the handshake and the chat call.

Features:
- Blocking (`send`) and streaming (`stream`) requests
- Event-stream decoding that tolerates lines split across network reads
- 429 handling with retry-after parsing
- Bounded timeouts surfaced as UpstreamError(timeout)
- Prompt release of the upstream connection when a stream consumer stops
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass

import aiohttp

from duckgate.gateway.errors import (
    DEFAULT_RETRY_AFTER_MS,
    ProtocolError,
    UpstreamError,
)
from duckgate.gateway.session import BROWSER_HEADERS, SessionNegotiator
from duckgate.gateway.transforms.events import LineBuffer, is_error_body, parse_event_line
from duckgate.gateway.transforms.types import SessionCredential, UpstreamRequest

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "I apologize, but I'm unable to provide a response at the moment. Please try again."
)


@dataclass
class UpstreamClientConfig:
    """Configuration for the upstream client."""

    base_url: str = "https://duckduckgo.com/duckchat/v1"

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    read_timeout: float = 120.0

    # Front-end version the upstream expects from browsers
    fe_version: str = "serp_20250401_100419_ET-19d438eb199b2bf7c300"

    @property
    def status_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/status"

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat"


def parse_retry_after(value: str | None) -> int:
    """Convert a retry-after header (seconds) to milliseconds."""
    if not value:
        return DEFAULT_RETRY_AFTER_MS
    try:
        return max(0, int(float(value) * 1000))
    except ValueError:
        return DEFAULT_RETRY_AFTER_MS


class UpstreamClient:
    """HTTP client for the upstream chat service.

    Example:
        >>> client = UpstreamClient(UpstreamClientConfig())
        >>> await client.connect()
        >>> credential = await client.negotiator.negotiate()
        >>> text = await client.send(request, credential)
        >>> await client.close()
    """

    def __init__(self, config: UpstreamClientConfig | None = None):
        self.config = config or UpstreamClientConfig()
        self._session: aiohttp.ClientSession | None = None
        self._negotiator: SessionNegotiator | None = None

    async def connect(self) -> None:
        """Initialize the HTTP session."""
        timeout = aiohttp.ClientTimeout(
            connect=self.config.connect_timeout,
            total=self.config.read_timeout,
        )
        self._session = aiohttp.ClientSession(timeout=timeout)
        self._negotiator = SessionNegotiator(self._session, self.config.status_url)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
            self._negotiator = None

    @property
    def negotiator(self) -> SessionNegotiator:
        if self._negotiator is None:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self._negotiator

    def _headers(self, credential: SessionCredential) -> dict[str, str]:
        return {
            **BROWSER_HEADERS,
            "accept": "text/event-stream",
            "cache-control": "no-cache",
            "content-type": "application/json",
            "x-fe-version": self.config.fe_version,
            "user-agent": credential.user_agent,
            **credential.headers(),
        }

    async def _check_status(self, response: aiohttp.ClientResponse, trace_id: str) -> None:
        """Raise UpstreamError for 429 and other non-2xx responses."""
        if response.status == 429:
            retry_after_ms = parse_retry_after(response.headers.get("retry-after"))
            body = await response.text()
            logger.warning("[%s] Upstream rate limited, retry after %dms", trace_id, retry_after_ms)
            raise UpstreamError(
                f"Rate limited. Retry after {retry_after_ms}ms",
                "rate_limited",
                status_code=429,
                retry_after_ms=retry_after_ms,
                response_body=body,
            )
        if not 200 <= response.status < 300:
            body = await response.text()
            logger.error("[%s] Upstream error %d: %s", trace_id, response.status, body[:500])
            raise UpstreamError(
                f"Upstream returned {response.status}",
                "http_status",
                status_code=response.status,
                response_body=body,
            )

    @staticmethod
    def _fragment(line: str, trace_id: str) -> str | None:
        try:
            return parse_event_line(line)
        except ProtocolError as e:
            logger.debug("[%s] Skipping unparsable line: %s", trace_id, e.line[:200])
            return None

    async def send(
        self,
        request: UpstreamRequest,
        credential: SessionCredential,
        trace_id: str | None = None,
    ) -> str:
        """Blocking request returning the full reply text.

        An empty reply degrades to a fixed apology rather than an error.

        Raises:
            UpstreamError: On 429, non-2xx, upstream-reported error, timeout or
                network failure.
        """
        trace_id = trace_id or f"req_{int(time.time() * 1000)}"
        if self._session is None:
            raise RuntimeError("Client not connected. Call connect() first.")

        try:
            async with self._session.post(
                self.config.chat_url,
                json=request.to_body(),
                headers=self._headers(credential),
            ) as response:
                await self._check_status(response, trace_id)
                text = await response.text()
        except asyncio.TimeoutError as e:
            raise UpstreamError("Upstream request timed out", "timeout") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Upstream connection failed: {e}", "network") from e

        if is_error_body(text):
            raise UpstreamError(
                f"Upstream reported an error: {text[:500]}",
                "upstream_reported_error",
                response_body=text,
            )

        parts: list[str] = []
        for line in text.split("\n"):
            fragment = self._fragment(line, trace_id)
            if fragment:
                parts.append(fragment)

        reply = "".join(parts).strip()
        if not reply:
            logger.warning("[%s] Upstream returned empty response, using fallback", trace_id)
            return FALLBACK_REPLY
        return reply

    async def stream(
        self,
        request: UpstreamRequest,
        credential: SessionCredential,
        trace_id: str | None = None,
    ) -> AsyncIterator[str]:
        """Streaming request yielding message fragments as they arrive.

        Closing the iterator early (client disconnect) aborts the upstream read.

        Raises:
            UpstreamError: Same categories as `send`, raised on first iteration.
        """
        trace_id = trace_id or f"req_{int(time.time() * 1000)}"
        if self._session is None:
            raise RuntimeError("Client not connected. Call connect() first.")

        try:
            async with self._session.post(
                self.config.chat_url,
                json=request.to_body(),
                headers=self._headers(credential),
            ) as response:
                await self._check_status(response, trace_id)

                completed = False
                try:
                    buffer = LineBuffer()
                    line_count = 0
                    async for data in response.content.iter_any():
                        for line in buffer.feed(data):
                            line_count += 1
                            fragment = self._fragment(line, trace_id)
                            if fragment:
                                yield fragment
                    for line in buffer.flush():
                        fragment = self._fragment(line, trace_id)
                        if fragment:
                            yield fragment
                    completed = True
                finally:
                    if not completed:
                        # Consumer stopped early or the read failed: drop the connection
                        logger.debug("[%s] Aborting upstream stream", trace_id)
                        response.close()

                logger.debug("[%s] Stream complete, received %d lines", trace_id, line_count)
        except asyncio.TimeoutError as e:
            raise UpstreamError("Upstream stream timed out", "timeout") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Upstream connection failed: {e}", "network") from e
