"""Pydantic models for Chat Completions request validation.

These models validate incoming requests before any upstream call is made.
They follow the OpenAI Chat Completions request shape.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from duckgate.gateway.errors import ValidationError
from duckgate.gateway.transforms.types import ChatMessage


class ToolCallFunction(BaseModel):
    """Function part of an assistant tool call."""

    model_config = ConfigDict(extra="allow")

    name: str
    arguments: str | dict[str, Any] = "{}"


class AssistantToolCall(BaseModel):
    """Tool call replayed in an assistant message."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: Literal["function"] = "function"
    function: ToolCallFunction


class Message(BaseModel):
    """A message in the conversation."""

    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[AssistantToolCall] | None = None

    @model_validator(mode="after")
    def check_content(self) -> "Message":
        """Content must be a non-empty string unless an assistant replays tool calls."""
        if self.role == "assistant" and self.tool_calls:
            return self
        if not isinstance(self.content, str) or not self.content:
            raise ValueError(f"{self.role} message must have content as a non-empty string")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool message must have a tool_call_id")
        return self


class ChatCompletionRequest(BaseModel):
    """Chat Completions request body."""

    model_config = ConfigDict(extra="allow")

    messages: list[Message]
    model: str | None = None
    stream: bool = False
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop: str | list[str] | None = None

    # Tool definitions are checked by ToolCallExtractor.validate_tools
    tools: list[Any] | None = None
    tool_choice: str | dict[str, Any] | None = None

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: list[Message]) -> list[Message]:
        """Validate messages list is not empty."""
        if not v:
            raise ValueError("messages array cannot be empty")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float | None) -> float | None:
        """Validate temperature is in valid range."""
        if v is not None and (v < 0 or v > 2):
            raise ValueError("temperature must be between 0 and 2")
        return v

    @field_validator("max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int | None) -> int | None:
        """Validate max_tokens is positive."""
        if v is not None and v <= 0:
            raise ValueError("max_tokens must be positive")
        return v

    @field_validator("tool_choice")
    @classmethod
    def validate_tool_choice(cls, v: Any) -> Any:
        if isinstance(v, str) and v not in ("auto", "none", "required"):
            raise ValueError('tool_choice must be "auto", "none", "required" or a function object')
        if isinstance(v, dict):
            function = v.get("function")
            if (
                v.get("type") != "function"
                or not isinstance(function, dict)
                or not isinstance(function.get("name"), str)
                or not function["name"]
            ):
                raise ValueError(
                    'tool_choice object must be {"type": "function", "function": {"name": ...}}'
                )
        return v

    def chat_messages(self) -> list[ChatMessage]:
        """Convert validated messages to internal ChatMessages."""
        return [ChatMessage.from_openai(m.model_dump(exclude_none=True)) for m in self.messages]


def _format_errors(error: PydanticValidationError) -> list[str]:
    errors = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid value").removeprefix("Value error, ")
        errors.append(f"{location}: {message}" if location else message)
    return errors


def validate_request(body: Any) -> list[str]:
    """Validate a Chat Completions request body.

    Args:
        body: The request body to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    if not isinstance(body, dict):
        return ["request body must be a JSON object"]
    try:
        ChatCompletionRequest.model_validate(body)
    except PydanticValidationError as e:
        return _format_errors(e)
    return []


def parse_request(body: Any) -> ChatCompletionRequest:
    """Validate and parse a request body.

    Raises:
        ValidationError: With every violated constraint.
    """
    if not isinstance(body, dict):
        raise ValidationError(["request body must be a JSON object"])
    try:
        return ChatCompletionRequest.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(_format_errors(e)) from e
