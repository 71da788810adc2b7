"""Tests for the signed authorization state."""

import pytest
from jose import jws

from neon_mcp.auth.grants import Grant, Preset, ScopeCategory
from neon_mcp.auth.state import DownstreamAuthRequest, StateCodec
from neon_mcp.core.exceptions import InvalidRequestError


@pytest.fixture
def codec(clock):
    return StateCodec("state-secret", max_age_seconds=900, clock=clock)


@pytest.fixture
def auth_request():
    return DownstreamAuthRequest(
        client_id="mcp_client",
        redirect_uri="https://client.example/callback",
        scope=["read", "write"],
        state="xyz",
        code_challenge="challenge",
        code_challenge_method="S256",
    )


class TestStateCodec:
    def test_round_trip(self, codec, auth_request):
        grant = Grant(preset=Preset.CUSTOM, scopes=[ScopeCategory.QUERYING], project_id="proj-1")
        token = codec.encode(auth_request, grant, locked=["project_id"], read_only=True)

        state = codec.decode(token)
        assert state.request == auth_request
        assert state.grant == grant
        assert state.locked == ["project_id"]
        assert state.read_only is True

    def test_tampered_token_is_rejected(self, codec, auth_request):
        token = codec.encode(auth_request, Grant())
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")])
        with pytest.raises(InvalidRequestError):
            codec.decode(tampered)

    def test_other_secret_is_rejected(self, clock, codec, auth_request):
        token = StateCodec("another-secret", clock=clock).encode(auth_request, Grant())
        with pytest.raises(InvalidRequestError):
            codec.decode(token)

    def test_expired_state_is_rejected(self, codec, clock, auth_request):
        token = codec.encode(auth_request, Grant())
        clock.advance(901)
        with pytest.raises(InvalidRequestError, match="expired"):
            codec.decode(token)

    def test_unknown_version_is_rejected(self, codec, clock, auth_request):
        payload = {
            "v": 99,
            "request": auth_request.model_dump(mode="json"),
            "grant": {},
            "iat": clock(),
        }
        token = jws.sign(payload, "state-secret", algorithm="HS256")
        with pytest.raises(InvalidRequestError, match="version"):
            codec.decode(token)

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
    def test_malformed_tokens_are_rejected(self, codec, token):
        with pytest.raises(InvalidRequestError):
            codec.decode(token)

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            StateCodec("")
