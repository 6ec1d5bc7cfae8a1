"""OpenAI Chat Completions API transformer.

Converts inbound Chat Completions requests to the upstream chat body, and
frames upstream replies as Chat Completions responses.

OpenAI API Reference:
- Request: POST /v1/chat/completions with {model, messages, tools?, tool_choice?, stream?}
- Response: {id, object: "chat.completion", created, model, choices, usage}
- Streaming: SSE with data: {"object": "chat.completion.chunk", "choices": [{"delta": {...}}]}
  terminated by data: [DONE]
"""

from __future__ import annotations

import json
import math
import secrets
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from duckgate.gateway.transforms.types import (
    ChatMessage,
    ToolCall,
    TranslatedChunk,
    UpstreamRequest,
)

SSE_DONE = b"data: [DONE]\n\n"


def generate_completion_id() -> str:
    return f"chatcmpl-{secrets.token_hex(8)}"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / 4)


def render_upstream_messages(
    messages: Sequence[ChatMessage],
    tool_prompt: str | None = None,
) -> tuple[ChatMessage, ...]:
    """Flatten a conversation into roles the upstream accepts.

    Tool results become user messages and assistant tool calls become their
    JSON text, so multi-turn tool conversations survive the translation.
    """
    rendered: list[ChatMessage] = []
    if tool_prompt:
        rendered.append(ChatMessage(role="system", content=tool_prompt))

    for msg in messages:
        if msg.role == "tool":
            rendered.append(
                ChatMessage(
                    role="user",
                    content=f"Function result for tool call {msg.tool_call_id}:\n{msg.content}",
                )
            )
        elif msg.role == "assistant" and msg.tool_calls:
            calls = json.dumps({"tool_calls": [tc.to_openai() for tc in msg.tool_calls]})
            content = f"{msg.content}\n{calls}" if msg.content else calls
            rendered.append(ChatMessage(role="assistant", content=content))
        else:
            rendered.append(ChatMessage(role=msg.role, content=msg.content))
    return tuple(rendered)


def models_response(model_ids: Iterable[str], owned_by: str = "duckai") -> dict[str, Any]:
    """Build the /v1/models list body."""
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {"id": model_id, "object": "model", "created": created, "owned_by": owned_by}
            for model_id in model_ids
        ],
    }


def error_body(message: str, error_type: str, code: str | None = None) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "code": code}}


def format_error_sse(message: str, error_type: str, code: str | None = None) -> bytes:
    """Format an error as an SSE event."""
    return f"event: error\ndata: {json.dumps(error_body(message, error_type, code))}\n\n".encode()


@dataclass
class OpenAITransformer:
    """Frames one completion (streaming or not) in the OpenAI format.

    One instance per inbound request: id and created timestamp are shared
    by every chunk of the response.
    """

    model: str
    completion_id: str = field(default_factory=generate_completion_id)
    created: int = field(default_factory=lambda: int(time.time()))

    def to_upstream(
        self,
        messages: Sequence[ChatMessage],
        tool_prompt: str | None = None,
    ) -> UpstreamRequest:
        """Convert inbound messages to the upstream request."""
        return UpstreamRequest(
            model=self.model,
            messages=render_upstream_messages(messages, tool_prompt),
        )

    def completion(
        self,
        content: str,
        prompt_messages: Sequence[ChatMessage],
        tool_calls: Sequence[ToolCall] = (),
    ) -> dict[str, Any]:
        """Build a non-streaming chat.completion body."""
        message: dict[str, Any] = {"role": "assistant", "content": content}
        finish_reason = "stop"
        if tool_calls:
            message = {
                "role": "assistant",
                "content": None,
                "tool_calls": [tc.to_openai() for tc in tool_calls],
            }
            finish_reason = "tool_calls"

        prompt_tokens = estimate_tokens(" ".join(m.content for m in prompt_messages))
        completion_tokens = estimate_tokens(content)
        return {
            "id": self.completion_id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }

    def chunk_to_dict(self, chunk: TranslatedChunk) -> dict[str, Any] | None:
        """Build a chat.completion.chunk body (None for the `done` sentinel)."""
        if chunk.type == "done":
            return None

        delta: dict[str, Any] = {}
        if chunk.role:
            delta["role"] = chunk.role
        if chunk.type == "content":
            delta["content"] = chunk.content
        elif chunk.type == "tool_calls":
            delta["tool_calls"] = [
                {"index": i, **tc.to_openai()} for i, tc in enumerate(chunk.tool_calls)
            ]

        return {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": chunk.finish_reason}],
        }

    def chunk_to_sse(self, chunk: TranslatedChunk) -> bytes:
        """Encode a chunk as an SSE `data:` event."""
        data = self.chunk_to_dict(chunk)
        if data is None:
            return SSE_DONE
        return f"data: {json.dumps(data)}\n\n".encode()
