"""
Shared pytest fixtures for the Neon MCP server tests.

The upstream identity provider and the Neon API are replaced by in-process
fakes; every time-dependent component shares a controllable clock.
"""

import asyncio
import time
from urllib.parse import parse_qs, urlsplit

import pytest
from starlette.testclient import TestClient

from neon_mcp.auth.clients import ClientRegistrationRequest
from neon_mcp.auth.grants import Grant
from neon_mcp.auth.identity import InvalidCredentialError
from neon_mcp.auth.kv_store import OAuthStores
from neon_mcp.auth.oauth2_server import ConsentDecision, OAuth2Server
from neon_mcp.auth.setup import create_oauth2_app
from neon_mcp.auth.state import StateCodec
from neon_mcp.auth.storage import Account, UpstreamTokenSet

ISSUER = "https://mcp.test"
REDIRECT_URI = "https://client.example/callback"
TEST_API_KEY = "neon-api-key-12345"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Stand-in for UpstreamOAuthClient."""

    def __init__(self):
        self.exchanges = 0
        self.refreshes = 0

    async def authorization_url(self, state: str) -> str:
        return f"https://upstream.test/oauth2/auth?state={state}"

    async def exchange_code(self, current_url: str, expected_state: str) -> UpstreamTokenSet:
        self.exchanges += 1
        return UpstreamTokenSet(access_token="upstream-access", refresh_token="upstream-refresh")

    async def refresh(self, refresh_token: str) -> UpstreamTokenSet:
        await asyncio.sleep(0)
        self.refreshes += 1
        return UpstreamTokenSet(
            access_token=f"upstream-access-{self.refreshes}",
            refresh_token=refresh_token,
        )


class FakeIdentity:
    """Stand-in for NeonIdentityClient."""

    def __init__(self):
        self.lookups = 0

    async def resolve_account(self, credential: str):
        self.lookups += 1
        if credential.startswith("upstream-access"):
            return Account(id="user-1", name="Ada Lovelace", email="ada@example.com"), "oauth"
        if credential == TEST_API_KEY:
            return Account(id="org-1", name="Acme", is_org=True), "api_key_org"
        raise InvalidCredentialError("rejected")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def oauth2_server(clock, upstream, identity):
    """OAuth2 server with in-memory storage and fake collaborators."""
    return OAuth2Server(
        issuer=ISSUER,
        stores=OAuthStores.in_memory(clock),
        upstream=upstream,
        identity=identity,
        state_codec=StateCodec("test-state-secret", clock=clock),
        clock=clock,
    )


@pytest.fixture
def app(oauth2_server):
    return create_oauth2_app(oauth2_server)


@pytest.fixture
def client(app):
    return TestClient(app, base_url=ISSUER, follow_redirects=False)


async def register(server: OAuth2Server, **overrides):
    """Register a confidential client directly on the server."""
    fields = {
        "client_name": "Test Client",
        "redirect_uris": [REDIRECT_URI],
        "grant_types": ["authorization_code", "refresh_token"],
    }
    fields.update(overrides)
    return await server.register_client(ClientRegistrationRequest(**fields))


async def issue_code(
    server: OAuth2Server,
    client_id: str,
    *,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    grant: Grant | None = None,
    scope: str = "read write",
    state: str | None = "client-state",
) -> str:
    """Drive authorize -> consent -> upstream callback and return the downstream code."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "scope": scope,
    }
    if state:
        params["state"] = state
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = code_challenge_method or "S256"

    prompt = await server.begin_authorization(params, {})
    upstream_url = await server.complete_consent(
        ConsentDecision(
            state=prompt.state,
            approved=True,
            grant=grant or Grant(),
            scopes=scope.split(),
        )
    )
    upstream_state = parse_qs(urlsplit(upstream_url).query)["state"][0]
    redirect = await server.handle_callback(
        f"{ISSUER}/callback?code=upstream-code&state={upstream_state}",
        upstream_state,
        "upstream-code",
    )
    return parse_qs(urlsplit(redirect).query)["code"][0]
