"""Gateway orchestration.

Runs one inbound Chat Completions request through the core pipeline:

    tool prompt -> rate limiter -> handshake -> upstream call
        -> stream translation -> tool-call extraction

Each stage is awaited before the next one starts. Upstream 429s are retried
with backoff; every other failure propagates to the HTTP layer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from duckgate.gateway.clients.upstream_client import FALLBACK_REPLY, UpstreamClient
from duckgate.gateway.config import GatewayConfig
from duckgate.gateway.errors import UpstreamError, ValidationError
from duckgate.gateway.models import AVAILABLE_MODELS, OWNED_BY
from duckgate.gateway.ratelimit.limiter import RateLimiter
from duckgate.gateway.tools import ToolCallExtractor
from duckgate.gateway.transforms.openai import OpenAITransformer, models_response
from duckgate.gateway.transforms.stream import StreamTranslator
from duckgate.gateway.transforms.types import (
    ChatMessage,
    ToolDefinition,
    TranslatedChunk,
    UpstreamRequest,
)
from duckgate.gateway.transforms.validation import ChatCompletionRequest, parse_request

logger = logging.getLogger(__name__)


@dataclass
class PreparedRequest:
    """Inbound request after validation and prompt augmentation."""

    request: ChatCompletionRequest
    messages: list[ChatMessage]
    transformer: OpenAITransformer
    upstream: UpstreamRequest
    use_tools: bool


@dataclass
class GatewayService:
    """Validates inbound requests and drives the core components.

    Example:
        >>> service = GatewayService(config, client, limiter)
        >>> prepared = service.prepare(body)
        >>> response = await service.complete(prepared)
    """

    config: GatewayConfig
    client: UpstreamClient
    limiter: RateLimiter
    extractor: ToolCallExtractor = field(default_factory=ToolCallExtractor)

    def list_models(self) -> dict[str, Any]:
        return models_response(AVAILABLE_MODELS, owned_by=OWNED_BY)

    def prepare(self, body: Any) -> PreparedRequest:
        """Validate the request and build the upstream body.

        Raises:
            ValidationError: Before any network call when the request is malformed.
        """
        request = parse_request(body)
        use_tools = self.extractor.should_use_tools(request.tools, request.tool_choice)

        tool_prompt = None
        if use_tools:
            validation = self.extractor.validate_tools(request.tools)
            if not validation.valid:
                raise ValidationError(list(validation.errors))
            tools = [ToolDefinition.from_openai(t) for t in request.tools or []]
            tool_prompt = self.extractor.build_system_prompt(tools, request.tool_choice or "auto")

        messages = request.chat_messages()
        transformer = OpenAITransformer(model=request.model or self.config.default_model)
        return PreparedRequest(
            request=request,
            messages=messages,
            transformer=transformer,
            upstream=transformer.to_upstream(messages, tool_prompt),
            use_tools=use_tools,
        )

    # =========================================================================
    # Upstream call with admission control and 429 retry
    # =========================================================================

    async def _admit(self, trace_id: str) -> None:
        wait_ms = await asyncio.to_thread(self.limiter.admit)
        if wait_ms > 0:
            logger.info("[%s] Rate limiting: waiting %.0fms before upstream call", trace_id, wait_ms)
            await asyncio.sleep(wait_ms / 1000)

    def _retry_delay(self, error: UpstreamError, attempt: int) -> float:
        backoff = self.config.retry_base_delay * (2**attempt)
        suggested = (error.retry_after_ms or 0) / 1000
        return min(max(suggested, backoff), self.config.retry_max_delay)

    async def _handle_rate_limited(self, error: UpstreamError, attempt: int, trace_id: str) -> None:
        """Record a 429 and sleep, or re-raise once retries are exhausted."""
        await asyncio.to_thread(self.limiter.mark_limited, error.retry_after_ms)
        if attempt >= self.config.rate_limit_retries:
            raise error
        delay = self._retry_delay(error, attempt)
        logger.warning(
            "[%s] Upstream rate limited, retrying in %.1fs (attempt %d/%d)",
            trace_id,
            delay,
            attempt + 1,
            self.config.rate_limit_retries,
        )
        await asyncio.sleep(delay)

    async def _send(self, upstream: UpstreamRequest, trace_id: str) -> str:
        attempt = 0
        while True:
            await self._admit(trace_id)
            credential = await self.client.negotiator.negotiate(trace_id)
            await asyncio.to_thread(self.limiter.record_attempt)
            try:
                text = await self.client.send(upstream, credential, trace_id)
            except UpstreamError as e:
                if not e.retryable:
                    raise
                await self._handle_rate_limited(e, attempt, trace_id)
                attempt += 1
                continue
            await asyncio.to_thread(self.limiter.clear_limited)
            return text

    async def _open_stream(
        self, upstream: UpstreamRequest, trace_id: str
    ) -> tuple[str | None, AsyncIterator[str]]:
        """Start an upstream stream, retrying 429s that arrive before the first fragment."""
        attempt = 0
        while True:
            await self._admit(trace_id)
            credential = await self.client.negotiator.negotiate(trace_id)
            await asyncio.to_thread(self.limiter.record_attempt)
            fragments = self.client.stream(upstream, credential, trace_id)
            first: str | None
            try:
                first = await fragments.__anext__()
            except StopAsyncIteration:
                first = None
            except UpstreamError as e:
                if not e.retryable:
                    raise
                await self._handle_rate_limited(e, attempt, trace_id)
                attempt += 1
                continue
            await asyncio.to_thread(self.limiter.clear_limited)
            return first, fragments

    # =========================================================================
    # Public operations
    # =========================================================================

    async def complete(self, prepared: PreparedRequest, trace_id: str = "-") -> dict[str, Any]:
        """Non-streaming chat completion."""
        logger.info(
            "[%s] Request: model=%s, messages=%d, tools=%s, stream=False",
            trace_id,
            prepared.upstream.model,
            len(prepared.messages),
            prepared.use_tools,
        )
        text = await self._send(prepared.upstream, trace_id)

        tool_calls = self.extractor.extract_tool_calls(text) if prepared.use_tools else []
        if tool_calls:
            logger.info("[%s] Reply contains %d tool calls", trace_id, len(tool_calls))
        return prepared.transformer.completion(text, prepared.messages, tool_calls)

    async def stream(
        self, prepared: PreparedRequest, trace_id: str = "-"
    ) -> AsyncIterator[TranslatedChunk]:
        """Streaming chat completion.

        Closing this iterator closes the upstream stream.
        """
        logger.info(
            "[%s] Request: model=%s, messages=%d, tools=%s, stream=True",
            trace_id,
            prepared.upstream.model,
            len(prepared.messages),
            prepared.use_tools,
        )
        first, fragments = await self._open_stream(prepared.upstream, trace_id)
        translator = StreamTranslator(empty_reply=FALLBACK_REPLY)

        async def _replay() -> AsyncIterator[str]:
            if first is not None:
                yield first
            async for fragment in fragments:
                yield fragment

        replay = _replay()
        try:
            if not prepared.use_tools:
                async with aclosing(translator.translate(replay)) as translated:
                    async for chunk in translated:
                        yield chunk
                return

            # A tool-call reply cannot be recognized from a prefix: buffer it
            started = time.monotonic()
            text = "".join([fragment async for fragment in replay]).strip()
            tool_calls = self.extractor.extract_tool_calls(text)
            logger.debug(
                "[%s] Buffered %d chars for tool detection in %.2fs",
                trace_id,
                len(text),
                time.monotonic() - started,
            )
            if tool_calls:
                chunks = translator.translate_tool_calls(tool_calls)
            else:
                chunks = translator.translate_text(text)
            for chunk in chunks:
                yield chunk
        finally:
            await replay.aclose()
            await fragments.aclose()
