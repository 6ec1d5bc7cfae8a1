"""Re-framing of upstream fragments into Chat Completions chunks.

Chunk order for a text reply:
    content (role="assistant" + first fragment), content, ..., stop, done

Chunk order for a tool-call reply:
    content (role="assistant", empty text), tool_calls, stop("tool_calls"), done
"""

from collections.abc import AsyncIterator, Iterable

from duckgate.gateway.transforms.types import ToolCall, TranslatedChunk


class StreamTranslator:
    """Translate an upstream fragment sequence into TranslatedChunks.

    Content deltas keep the order the fragments arrive in.
    """

    def __init__(self, empty_reply: str = "") -> None:
        self._empty_reply = empty_reply

    async def translate(self, fragments: AsyncIterator[str]) -> AsyncIterator[TranslatedChunk]:
        """Yield content deltas, trimmed to match the buffered reply text.

        Leading whitespace is dropped and trailing whitespace is held back
        until more text follows it, so the joined deltas equal the stripped
        reply. A stream with no visible text yields `empty_reply`.
        """
        first = True
        pending = ""
        async for fragment in fragments:
            text = pending + fragment
            if first:
                text = text.lstrip()
            body = text.rstrip()
            pending = text[len(body) :]
            if not body:
                continue
            yield TranslatedChunk(
                type="content",
                content=body,
                role="assistant" if first else None,
            )
            first = False

        if first and self._empty_reply:
            yield TranslatedChunk(type="content", content=self._empty_reply, role="assistant")
        elif first:
            yield TranslatedChunk(type="content", role="assistant")

        yield TranslatedChunk(type="stop", finish_reason="stop")
        yield TranslatedChunk(type="done")

    def translate_text(self, text: str) -> Iterable[TranslatedChunk]:
        """Frame an already complete reply as a single-delta stream."""
        yield TranslatedChunk(type="content", content=text or self._empty_reply, role="assistant")
        yield TranslatedChunk(type="stop", finish_reason="stop")
        yield TranslatedChunk(type="done")

    def translate_tool_calls(self, tool_calls: Iterable[ToolCall]) -> Iterable[TranslatedChunk]:
        """Frame decoded tool calls as a stream."""
        yield TranslatedChunk(type="content", role="assistant")
        yield TranslatedChunk(type="tool_calls", tool_calls=tuple(tool_calls))
        yield TranslatedChunk(type="stop", finish_reason="tool_calls")
        yield TranslatedChunk(type="done")
