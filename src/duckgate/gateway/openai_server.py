"""OpenAI-compatible gateway server.

Exposes /v1/chat/completions and /v1/models on top of the upstream chat
service:
1. Accepts OpenAI Chat Completions requests
2. Validates them and prepends the tool prompt when tools are supplied
3. Negotiates a session, waits for rate-limit admission and forwards upstream
4. Re-frames the reply (or stream) as Chat Completions
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from duckgate.gateway.clients.upstream_client import UpstreamClient
from duckgate.gateway.config import GatewayConfig
from duckgate.gateway.errors import GatewayError, ValidationError, error_status
from duckgate.gateway.ratelimit.limiter import RateLimiter
from duckgate.gateway.ratelimit.store import FileRateLimitStore
from duckgate.gateway.service import GatewayService, PreparedRequest
from duckgate.gateway.tracing import RequestTracer
from duckgate.gateway.transforms.openai import error_body, estimate_tokens, format_error_sse

logger = logging.getLogger(__name__)


def build_limiter(config: GatewayConfig) -> RateLimiter:
    """Rate limiter backed by the shared file store named in the config."""
    store = FileRateLimitStore(
        path=config.rate_limit_store,
        stale_after_ms=config.stale_after_ms,
    )
    return RateLimiter(store=store, config=config.rate_limit_config())


@dataclass
class GatewayServer:
    """HTTP transport for the gateway.

    Example:
        >>> server = GatewayServer(config=load_config(port=3264))
        >>> await server.serve()
    """

    config: GatewayConfig
    limiter: RateLimiter | None = None
    port: int | None = None
    _app: web.Application | None = None
    _runner: web.AppRunner | None = None
    _client: UpstreamClient | None = None
    _service: GatewayService | None = None
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _tracer: RequestTracer = field(init=False)

    def __post_init__(self) -> None:
        self._tracer = RequestTracer(debug_dir=self.config.debug_dir)
        if self.limiter is None:
            self.limiter = build_limiter(self.config)

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self.config.max_body_size)
        app.router.add_post("/v1/chat/completions", self._handle_chat_completions)
        app.router.add_get("/v1/models", self._handle_models)
        app.router.add_get("/v1/rate-limit", self._handle_rate_limit)
        app.router.add_get("/health", self._handle_health)
        app.router.add_post("/api/shutdown", self._handle_shutdown)
        return app

    async def start(self) -> None:
        """Connect the upstream client and start listening.

        With `config.port == 0` the OS picks a port; the bound port is stored
        in `self.port`.
        """
        self._client = UpstreamClient(self.config.upstream_config())
        await self._client.connect()
        if self.limiter is None:
            self.limiter = build_limiter(self.config)
        self._service = GatewayService(config=self.config, client=self._client, limiter=self.limiter)

        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        self.port = self._runner.addresses[0][1]
        logger.info(
            "Gateway listening on %s:%s -> %s",
            self.config.host,
            self.port,
            self.config.upstream_base_url,
        )

    async def serve(self) -> None:
        """Start the server and block until shutdown is requested."""
        await self.start()
        try:
            await self._shutdown_event.wait()
            logger.info("Gateway shutdown requested")
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the server and close the upstream client."""
        if self._client:
            await self._client.close()
            self._client = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._service = None

    # =========================================================================
    # Chat completions
    # =========================================================================

    async def _handle_chat_completions(self, request: web.Request) -> web.StreamResponse:
        """Handle POST /v1/chat/completions."""
        service = self._service
        if service is None:
            return self._error_response("api_error", "Gateway not started", 503)

        content_type = request.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            return self._error_response(
                "invalid_request_error",
                f"Content-Type must be application/json, got: {content_type}",
                400,
            )

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return self._error_response("invalid_request_error", f"Invalid JSON: {e}", 400)

        trace_id = self._tracer.generate_trace_id(body if isinstance(body, dict) else {})
        started = time.monotonic()

        try:
            prepared = service.prepare(body)
        except ValidationError as e:
            self._tracer.log_response(trace_id, 400, time.monotonic() - started, error=e.message)
            return self._error_response("invalid_request_error", e.message, 400)

        self._tracer.save_debug(trace_id, "1_request.json", body)
        self._tracer.save_debug(trace_id, "2_upstream_request.json", prepared.upstream.to_body())

        if prepared.request.stream:
            return await self._handle_streaming(request, service, prepared, trace_id, started)
        return await self._handle_non_streaming(service, prepared, trace_id, started)

    async def _handle_non_streaming(
        self,
        service: GatewayService,
        prepared: PreparedRequest,
        trace_id: str,
        started: float,
    ) -> web.Response:
        try:
            completion = await service.complete(prepared, trace_id)
        except GatewayError as e:
            status, error_type, code = error_status(e)
            self._tracer.log_response(trace_id, status, time.monotonic() - started, error=e.message)
            return self._error_response(error_type, e.message, status, code, trace_id)
        except Exception as e:
            return self._internal_error(e, trace_id, started)

        self._tracer.save_debug(trace_id, "3_response.json", completion)
        usage = completion["usage"]
        self._tracer.log_response(
            trace_id,
            200,
            time.monotonic() - started,
            tokens_in=usage["prompt_tokens"],
            tokens_out=usage["completion_tokens"],
        )
        return web.json_response(completion, headers={"X-Trace-Id": trace_id})

    async def _handle_streaming(
        self,
        request: web.Request,
        service: GatewayService,
        prepared: PreparedRequest,
        trace_id: str,
        started: float,
    ) -> web.StreamResponse:
        chunks = service.stream(prepared, trace_id)

        # Pull the first chunk before committing to a 200 so that handshake,
        # rate-limit and status failures still get a proper HTTP error
        try:
            first = await chunks.__anext__()
        except GatewayError as e:
            status, error_type, code = error_status(e)
            self._tracer.log_response(trace_id, status, time.monotonic() - started, error=e.message)
            return self._error_response(error_type, e.message, status, code, trace_id)
        except Exception as e:
            return self._internal_error(e, trace_id, started)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Trace-Id": trace_id,
            },
        )
        await response.prepare(request)

        transformer = prepared.transformer
        debug_chunks: list[dict[str, Any]] = []
        output: list[str] = []
        error: str | None = None

        try:
            chunk = first
            while True:
                data = transformer.chunk_to_dict(chunk)
                if data is not None:
                    debug_chunks.append(data)
                output.append(chunk.content)
                await response.write(transformer.chunk_to_sse(chunk))
                if chunk.type == "done":
                    break
                chunk = await chunks.__anext__()
        except StopAsyncIteration:
            pass
        except GatewayError as e:
            status, error_type, code = error_status(e)
            logger.error("[%s] Upstream failed mid-stream: %s", trace_id, e.message)
            error = e.message
            await self._write_quietly(response, format_error_sse(e.message, error_type, code), trace_id)
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("[%s] Client disconnected during streaming", trace_id)
            error = "client disconnected"
        except Exception as e:
            logger.exception("[%s] Unexpected error during streaming", trace_id)
            error = str(e)
            await self._write_quietly(
                response, format_error_sse(f"Internal error: {e}", "api_error"), trace_id
            )
        finally:
            # Closes the upstream read when the client went away
            await chunks.aclose()

        self._tracer.save_debug(trace_id, "3_response_chunks.json", debug_chunks)
        self._tracer.log_response(
            trace_id,
            200,
            time.monotonic() - started,
            tokens_in=estimate_tokens(" ".join(m.content for m in prepared.messages)),
            tokens_out=estimate_tokens("".join(output)),
            error=error,
        )

        try:
            await response.write_eof()
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("[%s] Client already disconnected", trace_id)
        return response

    def _internal_error(self, error: Exception, trace_id: str, started: float) -> web.Response:
        logger.exception("[%s] Unexpected error", trace_id)
        self._tracer.log_response(trace_id, 500, time.monotonic() - started, error=str(error))
        return self._error_response("api_error", f"Internal error: {error}", 500, None, trace_id)

    @staticmethod
    async def _write_quietly(response: web.StreamResponse, data: bytes, trace_id: str) -> None:
        try:
            await response.write(data)
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("[%s] Client disconnected before error event", trace_id)

    def _error_response(
        self,
        error_type: str,
        message: str,
        status: int,
        code: str | None = None,
        trace_id: str | None = None,
    ) -> web.Response:
        """Return an OpenAI-format error response."""
        headers = {"X-Trace-Id": trace_id} if trace_id else None
        return web.json_response(error_body(message, error_type, code), status=status, headers=headers)

    # =========================================================================
    # Auxiliary routes
    # =========================================================================

    async def _handle_models(self, request: web.Request) -> web.Response:
        """Handle GET /v1/models."""
        if self._service is None:
            return self._error_response("api_error", "Gateway not started", 503)
        return web.json_response(self._service.list_models())

    async def _handle_rate_limit(self, request: web.Request) -> web.Response:
        """Handle GET /v1/rate-limit."""
        limiter = self.limiter
        if limiter is None:
            return self._error_response("api_error", "Rate limiter not configured", 503)
        status = await asyncio.to_thread(limiter.status)
        return web.json_response(
            {
                "status": status.to_dict(),
                "recommendations": limiter.recommendations(status),
            }
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health."""
        health: dict[str, Any] = {"status": "ok"}
        if self._client is None:
            health["status"] = "starting"
            return web.json_response(health, status=503)
        return web.json_response(health)

    async def _handle_shutdown(self, request: web.Request) -> web.Response:
        """Handle POST /api/shutdown."""
        self._shutdown_event.set()
        return web.json_response({"success": True, "message": "Shutdown initiated"})
