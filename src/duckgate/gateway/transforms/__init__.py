"""Transformers between the upstream chat protocol and Chat Completions.

Upstream event lines are decoded into text fragments, re-framed as
Chat Completions chunks, and inbound requests are validated and flattened
into the upstream request body.
"""

from .events import LineBuffer, is_error_body, parse_event_line
from .openai import OpenAITransformer
from .stream import StreamTranslator
from .types import (
    ChallengeStructure,
    ChatMessage,
    SessionCredential,
    ToolCall,
    ToolDefinition,
    ToolParameter,
    TranslatedChunk,
    UpstreamRequest,
)
from .validation import ChatCompletionRequest, parse_request, validate_request

__all__ = [
    # Transformers
    "OpenAITransformer",
    "StreamTranslator",
    # Event decoding
    "LineBuffer",
    "is_error_body",
    "parse_event_line",
    # Types
    "ChallengeStructure",
    "ChatMessage",
    "SessionCredential",
    "ToolCall",
    "ToolDefinition",
    "ToolParameter",
    "TranslatedChunk",
    "UpstreamRequest",
    # Validation
    "ChatCompletionRequest",
    "parse_request",
    "validate_request",
]
