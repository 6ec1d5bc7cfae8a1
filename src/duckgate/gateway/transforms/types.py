"""Types shared by the gateway transformers.

These represent the provider-agnostic internal format used when translating
between the OpenAI Chat Completions protocol and the upstream chat protocol.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]
ToolChoice = str | dict[str, Any]

@dataclass(frozen=True)
class ChallengeStructure:
    """Decoded handshake challenge."""

    server_hashes: tuple[str, ...]
    client_hashes: tuple[str, ...]
    signal: Any = None

@dataclass(frozen=True)
class SessionCredential:
    """One-time credential for a single upstream chat call."""

    token: str
    challenge: ChallengeStructure
    hash_header: str
    user_agent: str

    def headers(self) -> dict[str, str]:
        """Headers that attach this credential to a chat request."""
        return {
            "x-vqd-4": self.token,
            "x-vqd-hash-1": self.hash_header,
        }

@dataclass(frozen=True)
class ToolCall:
    """A tool call decoded from the model's reply."""

    id: str
    name: str
    arguments_json: str

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

@dataclass(frozen=True)
class ChatMessage:
    """A single conversation message."""

    role: Role
    content: str
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    @classmethod
    def from_openai(cls, data: dict[str, Any]) -> ChatMessage:
        tool_calls = []
        for tc in data.get("tool_calls") or []:
            function = tc.get("function") or {}
            arguments = function.get("arguments", "{}")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            tool_calls.append(
                ToolCall(id=tc.get("id", ""), name=function.get("name", ""), arguments_json=arguments)
            )
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tuple(tool_calls),
        )

@dataclass(frozen=True)
class ToolParameter:
    """A named parameter of a tool."""

    name: str
    type: str = "any"
    description: str = ""
    required: bool = False

@dataclass(frozen=True)
class ToolDefinition:
    """Definition of an available tool."""

    name: str
    description: str | None = None
    parameters: tuple[ToolParameter, ...] = ()

    @classmethod
    def from_openai(cls, tool: dict[str, Any]) -> ToolDefinition:
        """Build from an OpenAI `{"type": "function", "function": {...}}` entry.

        Schema pieces of the wrong shape are skipped rather than rejected;
        ToolCallExtractor.validate_tools is where they are reported.
        """
        function = tool.get("function")
        if not isinstance(function, dict):
            function = {}
        schema = function.get("parameters")
        properties = schema.get("properties") if isinstance(schema, dict) else None
        if not isinstance(properties, dict):
            properties = {}
        required = schema.get("required") if isinstance(schema, dict) else None
        if not isinstance(required, list):
            required = []
        parameters = tuple(
            ToolParameter(
                name=name,
                type=str(prop.get("type") or "any"),
                description=str(prop.get("description") or ""),
                required=name in required,
            )
            for name, prop in properties.items()
            if isinstance(prop, dict)
        )
        return cls(
            name=function.get("name", ""),
            description=function.get("description"),
            parameters=parameters,
        )


@dataclass(frozen=True)
class UpstreamRequest:
    """Request body for the upstream chat endpoint."""

    model: str
    messages: tuple[ChatMessage, ...]

    def to_body(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in self.messages],
        }

@dataclass(frozen=True)
class TranslatedChunk:
    """Single chunk of a translated streaming response.

    `content` chunks carry text (the first one also carries the role),
    `tool_calls` chunks carry decoded calls, `stop` is the terminal empty
    delta and `done` is the end-of-stream sentinel.
    """

    type: Literal["content", "tool_calls", "stop", "done"]
    content: str = ""
    role: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None
