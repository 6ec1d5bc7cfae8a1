"""Pytest configuration and fixtures."""

import base64
import json

import pytest

UPSTREAM_BASE_URL = "https://duckduckgo.test/duckchat/v1"


def _encode_challenge(payload: dict | str) -> str:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _event_stream(*fragments: str, done: bool = True) -> str:
    lines = [f"data: {json.dumps({'message': f})}" for f in fragments]
    if done:
        lines.append("data: [DONE]")
    return "\n".join(lines) + "\n"


@pytest.fixture
def upstream_base_url():
    """Base URL of the mocked upstream chat API."""
    return UPSTREAM_BASE_URL


@pytest.fixture
def status_url():
    return f"{UPSTREAM_BASE_URL}/status"


@pytest.fixture
def chat_url():
    return f"{UPSTREAM_BASE_URL}/chat"


@pytest.fixture
def encode_challenge():
    """Base64-encode a challenge payload the way the upstream sends it."""
    return _encode_challenge


@pytest.fixture
def event_stream():
    """Build an upstream event-stream body carrying the given fragments."""
    return _event_stream


@pytest.fixture
def challenge_payload():
    """Decoded handshake challenge."""
    return {
        "server_hashes": ["srv-a", "srv-b"],
        "client_hashes": ["client-1", "client-2"],
        "signals": {"t": 1},
    }


@pytest.fixture
def handshake_headers(challenge_payload):
    """Headers of a successful handshake response."""
    return {
        "x-vqd-4": "token-123",
        "x-vqd-hash-1": _encode_challenge(challenge_payload),
    }
