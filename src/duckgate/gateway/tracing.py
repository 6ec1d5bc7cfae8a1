"""Per-request trace ids and debug dumps.

A trace id reads like `00007_142501_3msgs_Whats_the_weather`: request
number, wall-clock time, conversation length and the opening words of the
latest user turn. It prefixes every log line of the request and is returned
to the caller as `X-Trace-Id`.

With a debug directory configured, each request also leaves its JSON
artifacts under `{debug_dir}/logs/{started_at}/{trace_id}/`.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


def conversation_hint(messages: Any, words: int = 3) -> str:
    """Filesystem-safe snippet of the most recent user message."""
    if not isinstance(messages, list):
        return "empty"
    for message in reversed(messages):
        if not isinstance(message, dict) or message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str) and content.strip():
            snippet = "_".join(word[:8] for word in content.split()[:words])[:20]
            return _UNSAFE.sub("", snippet) or "request"
    return "empty"


class RequestTracer:
    """Issues trace ids and writes debug artifacts for one server run.

    Example:
        tracer = RequestTracer(debug_dir="/tmp/duckgate-debug")
        trace_id = tracer.generate_trace_id(body)
        tracer.save_debug(trace_id, "1_request.json", body)
    """

    def __init__(self, debug_dir: str | Path | None = None):
        self.debug_root = debug_dir
        self.started_at = time.strftime("%Y-%m-%d_%H-%M-%S")
        self._sequence = itertools.count(1)

    @property
    def debug_dir(self) -> Path | None:
        """Folder holding this run's traces, or None when dumps are disabled."""
        if not self.debug_root:
            return None
        return Path(self.debug_root) / "logs" / self.started_at

    def generate_trace_id(self, body: dict[str, Any]) -> str:
        messages = body.get("messages")
        count = len(messages) if isinstance(messages, list) else 0
        return (
            f"{next(self._sequence):05d}_{time.strftime('%H%M%S')}_"
            f"{count}msgs_{conversation_hint(messages)}"
        )

    def save_debug(self, trace_id: str, filename: str, data: Any) -> None:
        """Dump `data` as JSON next to the other artifacts of `trace_id`.

        Write failures are logged and never fail the request.
        """
        root = self.debug_dir
        if root is None:
            return

        target = root / trace_id / filename
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        except OSError as e:
            logger.warning("[%s] Could not write debug artifact %s: %s", trace_id, filename, e)
            return
        logger.debug("[%s] Wrote debug artifact %s", trace_id, target)

    def log_response(
        self,
        trace_id: str,
        status_code: int,
        duration_s: float,
        tokens_in: int = 0,
        tokens_out: int = 0,
        error: str | None = None,
    ) -> None:
        """One summary line per request: WARNING on failure, INFO otherwise."""
        if error:
            logger.warning(
                "[%s] request_failed: status=%d, error=%s (%.2fs)",
                trace_id,
                status_code,
                error[:100],
                duration_s,
            )
            return
        logger.info(
            "[%s] request_complete: status=%d, tokens_in=%d, tokens_out=%d (%.2fs)",
            trace_id,
            status_code,
            tokens_in,
            tokens_out,
            duration_s,
        )
