"""Function-calling emulation.

The upstream models have no native tool support. Tools are described to the
model in a system prompt that asks for a JSON `tool_calls` reply, and the
reply text is decoded back into structured ToolCall objects.

Decoding is best effort with a fixed fallback order:
1. The whole reply (or a fenced code block in it) parsed as JSON
2. A `tool_calls: [...]` span found in the text, parsed as a JSON array
3. Individual `function: {name: ..., arguments: ...}` fragments, only when the
   span from tier 2 exists but is not valid JSON
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from duckgate.gateway.transforms.types import (
    ChatMessage,
    ToolCall,
    ToolChoice,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

TOOL_CALL_FORMAT = """{
  "tool_calls": [
    {
      "id": "call_<unique_id>",
      "type": "function",
      "function": {
        "name": "<function_name>",
        "arguments": "<json_string_of_arguments>"
      }
    }
  ]
}"""

RULES = (
    "Only call functions when necessary to answer the user's question",
    "Use the exact function names provided",
    "Provide arguments as a JSON string",
    "Generate unique IDs for each tool call (e.g., call_1, call_2, etc.)",
    "If you don't need to call any functions, respond normally without the tool_calls format",
)

_TOOL_CALLS_START = re.compile(r"[\"']?tool_calls[\"']?\s*:\s*\[")
_FUNCTION_FRAGMENT = re.compile(
    r"[\"']?function[\"']?\s*:\s*\{[^}]*?[\"']?name[\"']?\s*:\s*[\"'](?P<name>[^\"']+)[\"']"
    r"[^}]*?[\"']?arguments[\"']?\s*:\s*(?P<quote>[\"'])(?P<arguments>(?:\\.|(?!(?P=quote)).)*)(?P=quote)",
    re.DOTALL,
)
_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

@dataclass(frozen=True)
class ToolValidation:
    """Result of validate_tools."""

    valid: bool
    errors: tuple[str, ...] = ()

def _balanced_array(text: str, start: int) -> str | None:
    """Return the `[...]` span starting at `start`, honoring quoted strings."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _schema_problems(parameters: dict[str, Any]) -> list[str]:
    """Shape errors in an object schema that would break the tool prompt."""
    properties = parameters.get("properties")
    if properties is None:
        return []
    if not isinstance(properties, dict):
        return ["function parameters properties must be an object"]
    return [
        f'parameter "{name}" must be a schema object'
        for name, schema in properties.items()
        if not isinstance(schema, dict)
    ]


@dataclass
class ToolCallExtractor:
    """Builds tool prompts and decodes tool calls from model replies."""

    clock: Callable[[], float] = time.time

    # =========================================================================
    # Prompt side
    # =========================================================================

    def build_system_prompt(
        self,
        tools: Sequence[ToolDefinition],
        tool_choice: ToolChoice | None = "auto",
    ) -> str:
        """Render the instruction block describing `tools`.

        The output depends only on the arguments.
        """
        descriptions = []
        for tool in tools:
            description = tool.name
            if tool.description:
                description += f": {tool.description}"
            if tool.parameters:
                lines = [
                    f"  - {p.name} ({p.type}, {'required' if p.required else 'optional'}): "
                    f"{p.description}"
                    for p in tool.parameters
                ]
                description += "\nParameters:\n" + "\n".join(lines)
            descriptions.append(description)

        rules = [f"{i}. {rule}" for i, rule in enumerate(RULES, start=1)]
        directive = self._choice_directive(tool_choice)
        if directive:
            rules.append(f"{len(RULES) + 1}. {directive}")

        sections = [
            "You are an AI assistant with access to the following functions. "
            "When you need to call a function, respond with a JSON object in this exact format:",
            TOOL_CALL_FORMAT,
            "Available functions:\n" + "\n\n".join(descriptions),
            "Important rules:\n" + "\n".join(rules),
        ]
        return "\n\n".join(sections)

    @staticmethod
    def _choice_directive(tool_choice: ToolChoice | None) -> str | None:
        if tool_choice == "required":
            return "You MUST call at least one function to answer this request"
        if tool_choice == "none":
            return "Do NOT call any functions, respond normally"
        if isinstance(tool_choice, dict) and tool_choice.get("type") == "function":
            function = tool_choice.get("function")
            name = function.get("name", "") if isinstance(function, dict) else ""
            return f'You MUST call the function "{name}"'
        return None

    @staticmethod
    def should_use_tools(
        tools: Sequence[Any] | None,
        tool_choice: ToolChoice | None = None,
    ) -> bool:
        """True when tools are present and tool_choice does not disable them."""
        if not tools:
            return False
        return tool_choice != "none"

    @staticmethod
    def validate_tools(tools: Any) -> ToolValidation:
        """Check OpenAI-format tool definitions, collecting every problem."""
        if not isinstance(tools, list):
            return ToolValidation(valid=False, errors=("Tools must be an array",))

        errors: list[str] = []
        for index, tool in enumerate(tools):
            if not isinstance(tool, dict):
                errors.append(f"Tool at index {index}: must be an object")
                continue
            if tool.get("type") != "function":
                errors.append(f'Tool at index {index}: type must be "function"')

            function = tool.get("function")
            if not isinstance(function, dict):
                errors.append(f"Tool at index {index}: function definition is required")
                continue

            name = function.get("name")
            if not isinstance(name, str) or not name:
                errors.append(
                    f"Tool at index {index}: function name is required and must be a string"
                )

            parameters = function.get("parameters")
            if parameters is not None and (
                not isinstance(parameters, dict) or parameters.get("type") != "object"
            ):
                errors.append(f'Tool at index {index}: function parameters type must be "object"')
            elif parameters is not None:
                errors.extend(
                    f"Tool at index {index}: {problem}" for problem in _schema_problems(parameters)
                )

        return ToolValidation(valid=not errors, errors=tuple(errors))

    @staticmethod
    def create_tool_result_message(tool_call_id: str, result: str) -> ChatMessage:
        return ChatMessage(role="tool", content=result, tool_call_id=tool_call_id)

    # =========================================================================
    # Reply side
    # =========================================================================

    def detect_tool_calls(self, text: str) -> bool:
        """Cheap check for a tool-call shaped reply."""
        parsed = self._parse_json(text.strip())
        if isinstance(parsed, dict):
            calls = parsed.get("tool_calls")
            return isinstance(calls, list) and len(calls) > 0
        return bool(_TOOL_CALLS_START.search(text))

    def extract_tool_calls(self, text: str) -> list[ToolCall]:
        """Decode tool calls from a model reply. Returns [] when there are none.

        The first tier that applies decides the result: a reply that is valid
        JSON never reaches the span or fragment search.
        """
        stripped = text.strip()
        parsed = self._parse_json(stripped)
        if parsed is not None:
            return self._entries_of(parsed)
        for block in _CODE_FENCE.findall(stripped):
            parsed = self._parse_json(block.strip())
            if isinstance(parsed, dict) and isinstance(parsed.get("tool_calls"), list):
                return self._decode_entries(parsed["tool_calls"])

        match = _TOOL_CALLS_START.search(text)
        if not match:
            return []

        span = _balanced_array(text, match.end() - 1)
        entries = self._parse_json(span) if span else None
        if isinstance(entries, list):
            calls = self._decode_entries(entries)
            logger.debug("Decoded %d tool calls from embedded span", len(calls))
            return calls

        # Span present but not valid JSON: salvage what fragments we can
        calls = [
            ToolCall(
                id=self._synthesize_id(i),
                name=fragment["name"],
                arguments_json=self._unescape(fragment["arguments"]),
            )
            for i, fragment in enumerate(_FUNCTION_FRAGMENT.finditer(text))
        ]
        if calls:
            logger.debug("Decoded %d tool calls from text fragments", len(calls))
        return calls

    def _entries_of(self, parsed: Any) -> list[ToolCall]:
        if isinstance(parsed, dict) and isinstance(parsed.get("tool_calls"), list):
            return self._decode_entries(parsed["tool_calls"])
        return []

    @staticmethod
    def _unescape(raw: str) -> str:
        """Undo string-literal escaping of a captured arguments value."""
        try:
            value = json.loads(f'"{raw}"')
        except json.JSONDecodeError:
            return raw
        return value if isinstance(value, str) else raw

    @staticmethod
    def _parse_json(text: str) -> Any:
        try:
            return json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return None

    def _synthesize_id(self, index: int) -> str:
        return f"call_{int(self.clock() * 1000)}_{index}"

    def _decode_entries(self, entries: list[Any]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                continue
            function = entry.get("function")
            if not isinstance(function, dict):
                function = entry
            name = function.get("name")
            if not isinstance(name, str) or not name:
                continue

            arguments = function.get("arguments", {})
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)

            call_id = entry.get("id")
            if not isinstance(call_id, str) or not call_id:
                call_id = self._synthesize_id(index)

            calls.append(ToolCall(id=call_id, name=name, arguments_json=arguments))
        return calls
