"""Tests for upstream event-line decoding."""

import pytest

from duckgate.gateway.errors import ProtocolError
from duckgate.gateway.transforms.events import LineBuffer, is_error_body, parse_event_line


class TestParseEventLine:
    """Tests for parse_event_line()."""

    def test_message_fragment(self):
        assert parse_event_line('data: {"message": "Hi"}') == "Hi"

    def test_done_sentinel(self):
        assert parse_event_line("data: [DONE]") is None

    def test_non_data_line(self):
        """Comments, event names and blank lines carry no text."""
        assert parse_event_line("event: ping") is None
        assert parse_event_line("") is None
        assert parse_event_line(": keepalive") is None

    def test_object_without_message(self):
        assert parse_event_line('data: {"role": "assistant"}') is None

    def test_carriage_return_is_ignored(self):
        assert parse_event_line('data: {"message": "Hi"}\r') == "Hi"

    def test_invalid_json_raises(self):
        """Undecodable data lines raise so the caller can decide to skip them."""
        with pytest.raises(ProtocolError) as exc_info:
            parse_event_line("data: {broken")

        assert exc_info.value.line == "data: {broken"


class TestIsErrorBody:
    def test_error_object(self):
        assert is_error_body('{"action": "error", "type": "ERR_CHALLENGE"}') is True

    def test_event_stream_body(self):
        assert is_error_body('data: {"message": "Hi"}\n') is False

    def test_other_json(self):
        assert is_error_body('{"action": "success"}') is False


class TestLineBuffer:
    """Tests for LineBuffer."""

    def test_line_split_across_reads(self):
        """A line split between reads is emitted once it completes."""
        buffer = LineBuffer()

        assert buffer.feed(b'data: {"mess') == []
        assert buffer.feed(b'age": "Hi"}\ndata: {"message"') == ['data: {"message": "Hi"}']
        assert buffer.feed(b': "!"}\n') == ['data: {"message": "!"}']
        assert buffer.flush() == []

    def test_multibyte_character_split(self):
        """UTF-8 sequences split across reads decode correctly."""
        encoded = 'data: {"message": "café"}\n'.encode()
        split = encoded.index("é".encode()) + 1
        buffer = LineBuffer()

        lines = buffer.feed(encoded[:split]) + buffer.feed(encoded[split:])

        assert lines == ['data: {"message": "café"}']

    def test_flush_returns_trailing_line(self):
        buffer = LineBuffer()
        buffer.feed(b"data: [DONE]")

        assert buffer.flush() == ["data: [DONE]"]
