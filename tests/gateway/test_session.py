"""Tests for the upstream handshake."""

import base64
import hashlib
import itertools
import json

import aiohttp
import pytest
from aioresponses import aioresponses

from duckgate.gateway.errors import AuthError, UpstreamError
from duckgate.gateway.session import (
    SessionNegotiator,
    UserAgentRotator,
    build_hash_header,
    decode_challenge,
    hash_client_value,
)
from duckgate.gateway.transforms.types import ChallengeStructure


class TestDecodeChallenge:
    """Tests for decode_challenge()."""

    def test_json_payload(self, encode_challenge, challenge_payload):
        """Strict JSON challenges decode to their hash arrays and signal."""
        challenge = decode_challenge(encode_challenge(challenge_payload))

        assert challenge.server_hashes == ("srv-a", "srv-b")
        assert challenge.client_hashes == ("client-1", "client-2")
        assert challenge.signal == {"t": 1}

    def test_object_literal_payload(self, encode_challenge):
        """Unquoted keys and single-quoted strings are parsed, not evaluated."""
        literal = "{server_hashes:['a','b'],client_hashes:[\"c\"],signals:{}}"

        challenge = decode_challenge(encode_challenge(literal))

        assert challenge.server_hashes == ("a", "b")
        assert challenge.client_hashes == ("c",)
        assert challenge.signal == {}

    def test_script_is_never_executed(self, encode_challenge):
        """A payload containing code only yields the literal arrays."""
        literal = (
            "(function(){return {server_hashes:['s'],"
            "client_hashes:[String(1+1)], signals:{}}})()"
        )

        with pytest.raises(AuthError) as exc_info:
            decode_challenge(encode_challenge(literal))

        assert exc_info.value.reason == "malformed_challenge"

    def test_missing_client_hashes(self, encode_challenge):
        """Both hash arrays are required."""
        with pytest.raises(AuthError) as exc_info:
            decode_challenge(encode_challenge({"server_hashes": ["a"], "signals": {}}))

        assert exc_info.value.reason == "malformed_challenge"

    def test_hashes_must_be_arrays(self, encode_challenge):
        """A string in place of an array is rejected."""
        payload = {"server_hashes": "a", "client_hashes": ["b"]}

        with pytest.raises(AuthError) as exc_info:
            decode_challenge(encode_challenge(payload))

        assert exc_info.value.reason == "malformed_challenge"

    def test_not_base64(self):
        """Garbage header values fail as malformed challenges."""
        with pytest.raises(AuthError) as exc_info:
            decode_challenge("%%% not base64 %%%")

        assert exc_info.value.reason == "malformed_challenge"


class TestHashHeader:
    """Tests for the signed hash header."""

    def test_client_hashes_are_sha256_base64(self):
        """Client values are replaced by base64 SHA-256 digests."""
        expected = base64.b64encode(hashlib.sha256(b"client-1").digest()).decode()

        assert hash_client_value("client-1") == expected

    def test_header_contents(self):
        """Header carries server hashes verbatim, hashed client values and the signal."""
        challenge = ChallengeStructure(
            server_hashes=("srv",),
            client_hashes=("c1", "c2"),
            signal={"t": 1},
        )

        decoded = json.loads(base64.b64decode(build_hash_header(challenge)))

        assert decoded["server_hashes"] == ["srv"]
        assert decoded["client_hashes"] == [hash_client_value("c1"), hash_client_value("c2")]
        assert decoded["signals"] == {"t": 1}


class StaticAgents:
    """Stand-in agent source that cycles through fixed strings."""

    def __init__(self, *agents):
        self._agents = itertools.cycle(agents)

    @property
    def random(self):
        return next(self._agents)


class TestUserAgentRotator:
    def test_draws_from_source(self):
        rotator = UserAgentRotator(source=StaticAgents("agent-a", "agent-b"))

        assert [rotator.next() for _ in range(3)] == ["agent-a", "agent-b", "agent-a"]

    def test_default_source(self):
        """The bundled browser data yields a non-empty identity string."""
        agent = UserAgentRotator().next()

        assert isinstance(agent, str)
        assert agent.strip()

    async def test_handshake_uses_drawn_agent(self, status_url, handshake_headers):
        rotator = UserAgentRotator(source=StaticAgents("Mozilla/5.0 Test"))
        async with aiohttp.ClientSession() as session:
            negotiator = SessionNegotiator(session, status_url, user_agents=rotator)
            with aioresponses() as m:
                m.get(status_url, status=200, headers=handshake_headers)

                credential = await negotiator.negotiate()

                request = next(iter(m.requests.values()))[0]

        assert credential.user_agent == "Mozilla/5.0 Test"
        assert request.kwargs["headers"]["user-agent"] == "Mozilla/5.0 Test"


class TestSessionNegotiator:
    """Tests for SessionNegotiator.negotiate()."""

    async def test_successful_handshake(self, status_url, handshake_headers):
        """Handshake returns the token and a signed hash header."""
        async with aiohttp.ClientSession() as session:
            negotiator = SessionNegotiator(session, status_url)
            with aioresponses() as m:
                m.get(status_url, status=200, headers=handshake_headers)

                credential = await negotiator.negotiate()

                request = next(iter(m.requests.values()))[0]
                sent_headers = request.kwargs["headers"]

        assert credential.token == "token-123"
        assert credential.challenge.client_hashes == ("client-1", "client-2")
        assert credential.headers()["x-vqd-4"] == "token-123"
        assert credential.headers()["x-vqd-hash-1"] == credential.hash_header
        assert sent_headers["x-vqd-accept"] == "1"
        assert sent_headers["user-agent"] == credential.user_agent

    async def test_missing_challenge_header(self, status_url):
        """A 200 without the challenge header fails with missing_header."""
        async with aiohttp.ClientSession() as session:
            negotiator = SessionNegotiator(session, status_url)
            with aioresponses() as m:
                m.get(status_url, status=200, headers={"x-vqd-4": "token-123"})

                with pytest.raises(AuthError) as exc_info:
                    await negotiator.negotiate()

        assert exc_info.value.reason == "missing_header"

    async def test_missing_token_header(self, status_url, handshake_headers):
        """A 200 without the token header fails with missing_header."""
        headers = {"x-vqd-hash-1": handshake_headers["x-vqd-hash-1"]}
        async with aiohttp.ClientSession() as session:
            negotiator = SessionNegotiator(session, status_url)
            with aioresponses() as m:
                m.get(status_url, status=200, headers=headers)

                with pytest.raises(AuthError) as exc_info:
                    await negotiator.negotiate()

        assert exc_info.value.reason == "missing_header"

    async def test_non_2xx_status(self, status_url):
        """Handshake rejections surface the upstream status."""
        async with aiohttp.ClientSession() as session:
            negotiator = SessionNegotiator(session, status_url)
            with aioresponses() as m:
                m.get(status_url, status=418)

                with pytest.raises(AuthError) as exc_info:
                    await negotiator.negotiate()

        assert exc_info.value.reason == "upstream_status"
        assert exc_info.value.status_code == 418

    async def test_malformed_challenge_header(self, status_url, encode_challenge):
        """An undecodable challenge fails with malformed_challenge."""
        headers = {"x-vqd-4": "token", "x-vqd-hash-1": encode_challenge({"signals": {}})}
        async with aiohttp.ClientSession() as session:
            negotiator = SessionNegotiator(session, status_url)
            with aioresponses() as m:
                m.get(status_url, status=200, headers=headers)

                with pytest.raises(AuthError) as exc_info:
                    await negotiator.negotiate()

        assert exc_info.value.reason == "malformed_challenge"

    async def test_connection_failure(self, status_url):
        """Transport failures are upstream errors, not auth errors."""
        async with aiohttp.ClientSession() as session:
            negotiator = SessionNegotiator(session, status_url)
            with aioresponses() as m:
                m.get(status_url, exception=aiohttp.ClientConnectionError("refused"))

                with pytest.raises(UpstreamError) as exc_info:
                    await negotiator.negotiate()

        assert exc_info.value.category == "network"
