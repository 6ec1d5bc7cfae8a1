"""Upstream session negotiation.

Before every chat call the upstream requires a fresh credential:

1. GET the status endpoint with `x-vqd-accept: 1`
2. Read the continuation token (`x-vqd-4`) and the base64 challenge (`x-vqd-hash-1`)
3. Decode the challenge as data and SHA-256 each client hash
4. Assemble the `x-vqd-hash-1` request header from the server hashes,
   the computed client digests and the signal

The challenge payload is a small object literal meant for a script engine. It
is never evaluated here: it is decoded as a restricted data structure.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from fake_useragent import UserAgent

from duckgate.gateway.errors import AuthError, UpstreamError
from duckgate.gateway.transforms.types import ChallengeStructure, SessionCredential

logger = logging.getLogger(__name__)

TOKEN_HEADER = "x-vqd-4"
CHALLENGE_HEADER = "x-vqd-hash-1"

# Browser-like headers shared by the handshake and chat calls
BROWSER_HEADERS = {
    "accept-language": "en-US,en;q=0.9",
    "pragma": "no-cache",
    "priority": "u=1, i",
    "sec-fetch-dest": "empty",
    "sec-fetch-mode": "cors",
    "sec-fetch-site": "same-origin",
    "referer": "https://duckduckgo.com/",
}

_KEY_PATTERN = r"[\"']?{key}[\"']?\s*:\s*"
_STRING_PATTERN = re.compile(r"\"((?:[^\"\\]|\\.)*)\"|'((?:[^'\\]|\\.)*)'")


@dataclass
class UserAgentRotator:
    """Hands out a randomly drawn, current browser identity per handshake.

    `source` is anything with a `random` attribute; by default a
    fake_useragent.UserAgent backed by its bundled browser data.
    """

    source: UserAgent = field(default_factory=UserAgent)

    def next(self) -> str:
        return self.source.random


def _find_value_span(text: str, key: str, opener: str) -> str | None:
    """Return the balanced `opener...closer` span following `key:` in text."""
    closer = {"[": "]", "{": "}"}[opener]
    match = re.search(_KEY_PATTERN.format(key=re.escape(key)) + re.escape(opener), text)
    if not match:
        return None

    start = match.end() - 1
    depth = 0
    quote: str | None = None
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _string_array(span: str) -> list[str]:
    """Parse a flat array of string literals (either quote style)."""
    try:
        value = json.loads(span)
    except json.JSONDecodeError:
        inner = span[1:-1]
        if _STRING_PATTERN.sub("", inner).replace(",", "").strip():
            raise ValueError("array holds non-literal values") from None
        return [dq if dq or not sq else sq for dq, sq in _STRING_PATTERN.findall(inner)]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError("expected an array of strings")
    return value


def _literal_signal(text: str, key: str) -> Any:
    """Extract the opaque signal value, keeping it as decoded data when possible."""
    for opener in ("{", "["):
        span = _find_value_span(text, key, opener)
        if span is not None:
            try:
                return json.loads(span)
            except json.JSONDecodeError:
                return span
    match = re.search(_KEY_PATTERN.format(key=re.escape(key)) + r"([^,}\]]+)", text)
    if not match:
        return None
    raw = match.group(1).strip()
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw.strip("'\"")


def decode_challenge(encoded: str) -> ChallengeStructure:
    """Decode the base64 challenge header into a ChallengeStructure.

    Accepts strict JSON as well as a JS-style object literal (unquoted keys,
    single-quoted strings).

    Raises:
        AuthError: With reason `malformed_challenge` when the payload is not
            base64, or either hash array is missing or not an array.
    """
    try:
        text = base64.b64decode(encoded, validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise AuthError(f"Failed to decode challenge: {e}", "malformed_challenge") from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        client_hashes = data.get("client_hashes")
        server_hashes = data.get("server_hashes")
        signal = data.get("signals", data.get("signal"))
    else:
        client_span = _find_value_span(text, "client_hashes", "[")
        server_span = _find_value_span(text, "server_hashes", "[")
        try:
            client_hashes = _string_array(client_span) if client_span else None
            server_hashes = _string_array(server_span) if server_span else None
        except ValueError as e:
            raise AuthError(f"Invalid hash structure: {e}", "malformed_challenge") from e
        signal = _literal_signal(text, "signals")
        if signal is None:
            signal = _literal_signal(text, "signal")

    if not isinstance(client_hashes, list) or not isinstance(server_hashes, list):
        raise AuthError(f"Invalid hash structure: {text[:200]}", "malformed_challenge")

    return ChallengeStructure(
        server_hashes=tuple(str(h) for h in server_hashes),
        client_hashes=tuple(str(h) for h in client_hashes),
        signal=signal,
    )


def hash_client_value(value: str) -> str:
    """SHA-256 a client hash string and base64-encode the digest."""
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def build_hash_header(challenge: ChallengeStructure) -> str:
    """Assemble the `x-vqd-hash-1` header value for the chat request."""
    payload = {
        "server_hashes": list(challenge.server_hashes),
        "client_hashes": [hash_client_value(h) for h in challenge.client_hashes],
        "signals": challenge.signal,
    }
    return base64.b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode(
        "ascii"
    )


@dataclass
class SessionNegotiator:
    """Obtains a one-time session credential from the upstream.

    No retry is attempted here; callers own the retry policy.

    Example:
        >>> negotiator = SessionNegotiator(session, "https://duckduckgo.com/duckchat/v1/status")
        >>> credential = await negotiator.negotiate()
        >>> headers = credential.headers()
    """

    session: aiohttp.ClientSession
    status_url: str
    user_agents: UserAgentRotator = field(default_factory=UserAgentRotator)

    async def negotiate(self, trace_id: str = "-") -> SessionCredential:
        """Perform the handshake.

        Raises:
            AuthError: On non-2xx status, missing headers or a malformed challenge.
            UpstreamError: When the handshake times out or cannot connect.
        """
        user_agent = self.user_agents.next()
        headers = {
            **BROWSER_HEADERS,
            "accept": "*/*",
            "cache-control": "no-store",
            "x-vqd-accept": "1",
            "user-agent": user_agent,
        }

        try:
            async with self.session.get(self.status_url, headers=headers) as response:
                if not 200 <= response.status < 300:
                    raise AuthError(
                        f"Handshake failed: {response.status} {response.reason}",
                        "upstream_status",
                        status_code=response.status,
                    )
                token = response.headers.get(TOKEN_HEADER)
                encoded = response.headers.get(CHALLENGE_HEADER)
        except asyncio.TimeoutError as e:
            raise UpstreamError("Handshake timed out", "timeout") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Handshake connection failed: {e}", "network") from e

        if not token or not encoded:
            raise AuthError(
                f"Missing handshake headers: token={bool(token)}, challenge={bool(encoded)}",
                "missing_header",
            )

        challenge = decode_challenge(encoded)
        logger.debug(
            "[%s] Negotiated session: %d server hashes, %d client hashes",
            trace_id,
            len(challenge.server_hashes),
            len(challenge.client_hashes),
        )
        return SessionCredential(
            token=token,
            challenge=challenge,
            hash_header=build_hash_header(challenge),
            user_agent=user_agent,
        )
