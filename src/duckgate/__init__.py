"""Duckgate - OpenAI-compatible gateway for DuckDuckGo AI chat.

Accepts Chat Completions requests and serves them from the upstream chat
service, which needs a per-request handshake and tolerates only a small
number of calls per minute.

Layers:
    core/       Process-wide setup (logging)
    gateway/    Handshake, rate limiting, upstream client, translation, server
    frontends/  Command-line interface

Quick Start:
    $ duckgate serve --port 3264
    $ curl http://127.0.0.1:3264/v1/chat/completions \\
        -H 'Content-Type: application/json' \\
        -d '{"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "Hi"}]}'
"""

from duckgate.__version__ import __version__

__all__ = [
    "__version__",
]
