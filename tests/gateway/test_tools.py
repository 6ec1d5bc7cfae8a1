"""Tests for ToolCallExtractor."""

import json

import pytest

from duckgate.gateway.tools import RULES, ToolCallExtractor
from duckgate.gateway.transforms.types import ToolDefinition, ToolParameter


@pytest.fixture
def extractor():
    """Extractor with a fixed clock so synthesized ids are predictable."""
    return ToolCallExtractor(clock=lambda: 1_700_000_000.0)


@pytest.fixture
def weather_tool():
    return {
        "type": "function",
        "function": {
            "name": "get_weather",
            "description": "Get the current weather",
            "parameters": {
                "type": "object",
                "properties": {
                    "location": {"type": "string", "description": "City name"},
                    "unit": {"type": "string", "description": "celsius or fahrenheit"},
                },
                "required": ["location"],
            },
        },
    }


class TestBuildSystemPrompt:
    """Tests for build_system_prompt()."""

    def test_lists_tools_and_parameters(self, extractor, weather_tool):
        prompt = extractor.build_system_prompt([ToolDefinition.from_openai(weather_tool)])

        assert "get_weather: Get the current weather" in prompt
        assert "location (string, required): City name" in prompt
        assert "unit (string, optional): celsius or fahrenheit" in prompt
        assert '"tool_calls"' in prompt
        for rule in RULES:
            assert rule in prompt

    def test_deterministic(self, extractor, weather_tool):
        """Same tools, same prompt."""
        tools = [ToolDefinition.from_openai(weather_tool)]

        assert extractor.build_system_prompt(tools) == extractor.build_system_prompt(tools)

    def test_auto_adds_no_directive(self, extractor):
        prompt = extractor.build_system_prompt([ToolDefinition(name="noop")], "auto")

        assert "6." not in prompt

    def test_required_directive(self, extractor):
        prompt = extractor.build_system_prompt([ToolDefinition(name="noop")], "required")

        assert "6. You MUST call at least one function" in prompt

    def test_none_directive(self, extractor):
        prompt = extractor.build_system_prompt([ToolDefinition(name="noop")], "none")

        assert "6. Do NOT call any functions" in prompt

    def test_specific_function_directive(self, extractor):
        choice = {"type": "function", "function": {"name": "get_weather"}}

        prompt = extractor.build_system_prompt([ToolDefinition(name="get_weather")], choice)

        assert '6. You MUST call the function "get_weather"' in prompt

    def test_parameters_from_dataclass(self, extractor):
        tool = ToolDefinition(
            name="search",
            parameters=(ToolParameter(name="q", type="string", required=True),),
        )

        assert "q (string, required)" in extractor.build_system_prompt([tool])

    def test_malformed_choice_function(self, extractor):
        choice = {"type": "function", "function": "get_weather"}

        prompt = extractor.build_system_prompt([ToolDefinition(name="get_weather")], choice)

        assert '6. You MUST call the function ""' in prompt


class TestToolDefinition:
    """Tests for ToolDefinition.from_openai()."""

    def test_from_openai(self, weather_tool):
        tool = ToolDefinition.from_openai(weather_tool)

        assert tool.name == "get_weather"
        assert tool.parameters[0] == ToolParameter(
            name="location", type="string", description="City name", required=True
        )

    @pytest.mark.parametrize(
        "function",
        [
            {"name": "f", "parameters": {"type": "object", "properties": {"x": "string"}}},
            {"name": "f", "parameters": {"type": "object", "properties": ["x"]}},
            {"name": "f", "parameters": "object"},
        ],
    )
    def test_skips_malformed_schema(self, function):
        tool = ToolDefinition.from_openai({"type": "function", "function": function})

        assert tool == ToolDefinition(name="f")

    def test_non_object_function(self):
        assert ToolDefinition.from_openai({"type": "function", "function": "f"}) == ToolDefinition(
            name=""
        )


class TestShouldUseTools:
    def test_no_tools(self):
        assert ToolCallExtractor.should_use_tools(None) is False
        assert ToolCallExtractor.should_use_tools([]) is False

    def test_tool_choice_none_disables(self, weather_tool):
        assert ToolCallExtractor.should_use_tools([weather_tool], "none") is False

    def test_tools_present(self, weather_tool):
        assert ToolCallExtractor.should_use_tools([weather_tool], "auto") is True
        assert ToolCallExtractor.should_use_tools([weather_tool]) is True


class TestValidateTools:
    """Tests for validate_tools()."""

    def test_valid(self, weather_tool):
        result = ToolCallExtractor.validate_tools([weather_tool])

        assert result.valid is True
        assert result.errors == ()

    def test_not_an_array(self):
        result = ToolCallExtractor.validate_tools({"type": "function"})

        assert result.valid is False

    @pytest.mark.parametrize("name", [None, "", 42])
    def test_bad_name_reports_index(self, weather_tool, name):
        """A missing or non-string name is reported against its index."""
        bad = {"type": "function", "function": {"name": name}}
        if name is None:
            del bad["function"]["name"]

        result = ToolCallExtractor.validate_tools([weather_tool, bad])

        assert result.valid is False
        assert result.errors == (
            "Tool at index 1: function name is required and must be a string",
        )

    def test_errors_are_collected(self):
        """Every problem in the list is reported together."""
        tools = [
            {"type": "retrieval", "function": {"name": "a"}},
            {"type": "function", "function": {"name": "b", "parameters": {"type": "array"}}},
            {"type": "function"},
        ]

        result = ToolCallExtractor.validate_tools(tools)

        assert result.errors == (
            'Tool at index 0: type must be "function"',
            'Tool at index 1: function parameters type must be "object"',
            "Tool at index 2: function definition is required",
        )

    @pytest.mark.parametrize(
        ("properties", "error"),
        [
            ({"x": "string"}, 'Tool at index 0: parameter "x" must be a schema object'),
            (["x"], "Tool at index 0: function parameters properties must be an object"),
        ],
    )
    def test_malformed_properties(self, properties, error):
        """Property schemas that are not objects are reported, not crashed on."""
        tool = {
            "type": "function",
            "function": {"name": "f", "parameters": {"type": "object", "properties": properties}},
        }

        result = ToolCallExtractor.validate_tools([tool])

        assert result.errors == (error,)


class TestExtractToolCalls:
    """Tests for extract_tool_calls()."""

    def test_whole_reply_json(self, extractor):
        """A bare tool_calls object decodes with a synthesized id."""
        reply = (
            '{"tool_calls":[{"function":{"name":"get_weather",'
            '"arguments":"{\\"location\\":\\"SF\\"}"}}]}'
        )

        calls = extractor.extract_tool_calls(reply)

        assert len(calls) == 1
        assert calls[0].name == "get_weather"
        assert json.loads(calls[0].arguments_json) == {"location": "SF"}
        assert calls[0].id == "call_1700000000000_0"

    def test_keeps_supplied_ids(self, extractor):
        reply = json.dumps(
            {
                "tool_calls": [
                    {"id": "call_a", "type": "function", "function": {"name": "x", "arguments": "{}"}},
                    {"id": "call_b", "type": "function", "function": {"name": "y", "arguments": "{}"}},
                ]
            }
        )

        calls = extractor.extract_tool_calls(reply)

        assert [c.id for c in calls] == ["call_a", "call_b"]
        assert [c.name for c in calls] == ["x", "y"]

    def test_object_arguments_are_serialized(self, extractor):
        """Non-string arguments become a JSON string."""
        reply = json.dumps(
            {"tool_calls": [{"function": {"name": "get_weather", "arguments": {"location": "SF"}}}]}
        )

        calls = extractor.extract_tool_calls(reply)

        assert json.loads(calls[0].arguments_json) == {"location": "SF"}

    def test_fenced_code_block(self, extractor):
        reply = (
            "Let me check.\n```json\n"
            '{"tool_calls": [{"function": {"name": "get_weather", "arguments": "{}"}}]}\n'
            "```"
        )

        calls = extractor.extract_tool_calls(reply)

        assert [c.name for c in calls] == ["get_weather"]

    def test_embedded_span(self, extractor):
        """A tool_calls array inside prose is found and decoded on its own."""
        reply = (
            'Sure! tool_calls: [{"id": "call_1", "function": {"name": "get_weather", '
            '"arguments": "{\\"location\\": \\"SF\\"}"}}] hope that helps'
        )

        calls = extractor.extract_tool_calls(reply)

        assert len(calls) == 1
        assert calls[0].id == "call_1"
        assert json.loads(calls[0].arguments_json) == {"location": "SF"}

    def test_function_fragments(self, extractor):
        """A tool_calls span that is not valid JSON falls back to its fragments."""
        reply = (
            "tool_calls: [function: {name: 'get_weather', arguments: '{\"location\": \"SF\"}'}, "
            "function: {name: \"get_time\", arguments: \"{}\"}]"
        )

        calls = extractor.extract_tool_calls(reply)

        assert [c.name for c in calls] == ["get_weather", "get_time"]
        assert json.loads(calls[0].arguments_json) == {"location": "SF"}
        assert calls[1].arguments_json == "{}"
        assert [c.id for c in calls] == ["call_1700000000000_0", "call_1700000000000_1"]

    def test_json_without_tool_calls(self, extractor):
        """A reply that is valid JSON is decided by the first tier alone."""
        reply = '{"function": {"name": "get_weather", "arguments": "{}"}}'

        assert extractor.extract_tool_calls(reply) == []

    def test_prose_fragment_without_span(self, extractor):
        """Fragments are only salvaged from inside a tool_calls span."""
        reply = 'You could use function: {name: "get_weather", arguments: "{}"} for that.'

        assert extractor.extract_tool_calls(reply) == []

    def test_plain_text_has_no_calls(self, extractor):
        """Ordinary replies are not an error."""
        assert extractor.extract_tool_calls("The weather in SF is sunny.") == []

    def test_broken_json_yields_no_calls(self, extractor):
        assert extractor.extract_tool_calls('{"tool_calls": [{"function": ') == []

    def test_clean_input_is_stable(self, extractor):
        """Output fed back in decodes to the same calls via the first tier."""
        reply = json.dumps(
            {"tool_calls": [{"id": "call_1", "type": "function", "function": {"name": "a", "arguments": "{}"}}]}
        )
        calls = extractor.extract_tool_calls(reply)

        again = extractor.extract_tool_calls(json.dumps({"tool_calls": [c.to_openai() for c in calls]}))

        assert again == calls


class TestDetectToolCalls:
    def test_detects_json_reply(self, extractor):
        assert extractor.detect_tool_calls('{"tool_calls": [{"function": {"name": "a"}}]}') is True

    def test_detects_embedded_marker(self, extractor):
        assert extractor.detect_tool_calls('text "tool_calls": [ ...') is True

    def test_plain_text(self, extractor):
        assert extractor.detect_tool_calls("hello") is False

    def test_empty_calls_array(self, extractor):
        assert extractor.detect_tool_calls('{"tool_calls": []}') is False


class TestCreateToolResultMessage:
    def test_builds_tool_message(self):
        message = ToolCallExtractor.create_tool_result_message("call_1", "20C")

        assert message.role == "tool"
        assert message.tool_call_id == "call_1"
        assert message.content == "20C"
