"""Tests for the OAuth2 authorization server flow."""

import asyncio
import re
import secrets
from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import ISSUER, REDIRECT_URI, TEST_API_KEY, issue_code, register
from neon_mcp.auth.grants import Grant, Preset, ScopeCategory
from neon_mcp.auth.oauth2_server import ConsentDecision
from neon_mcp.auth.pkce import create_code_challenge
from neon_mcp.core.exceptions import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)

CODE_FORMAT = re.compile(r"^[A-Za-z0-9]{16}:[A-Za-z0-9]{32}$")


def _code_form(code: str, **extra) -> dict:
    form = {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI}
    form.update(extra)
    return form


class TestMetadata:
    def test_authorization_server_metadata(self, oauth2_server):
        metadata = oauth2_server.get_authorization_server_metadata()
        assert metadata["issuer"] == ISSUER
        assert metadata["token_endpoint"] == f"{ISSUER}/token"
        assert metadata["registration_endpoint"] == f"{ISSUER}/register"
        assert metadata["code_challenge_methods_supported"] == ["S256"]
        assert set(metadata["grant_types_supported"]) == {"authorization_code", "refresh_token"}
        assert "none" in metadata["token_endpoint_auth_methods_supported"]

    def test_protected_resource_metadata(self, oauth2_server):
        metadata = oauth2_server.get_protected_resource_metadata()
        assert metadata["resource"] == ISSUER
        assert metadata["authorization_servers"] == [ISSUER]


class TestAuthorization:
    async def test_begin_authorization_validates_client(self, oauth2_server):
        with pytest.raises(InvalidRequestError, match="client"):
            await oauth2_server.begin_authorization(
                {"response_type": "code", "client_id": "mcp_unknown", "redirect_uri": REDIRECT_URI},
                {},
            )

    async def test_begin_authorization_rejects_foreign_redirect(self, oauth2_server):
        registered = await register(oauth2_server)
        with pytest.raises(InvalidRequestError, match="redirect"):
            await oauth2_server.begin_authorization(
                {
                    "response_type": "code",
                    "client_id": registered.client_id,
                    "redirect_uri": "https://evil.example/cb",
                },
                {},
            )

    async def test_begin_authorization_requires_code_response_type(self, oauth2_server):
        registered = await register(oauth2_server)
        with pytest.raises(InvalidRequestError, match="response type"):
            await oauth2_server.begin_authorization(
                {"response_type": "token", "client_id": registered.client_id},
                {},
            )

    async def test_header_overrides_are_locked(self, oauth2_server):
        registered = await register(oauth2_server)
        prompt = await oauth2_server.begin_authorization(
            {"response_type": "code", "client_id": registered.client_id},
            {"X-Neon-Project-Id": "proj-1", "X-Neon-Read-Only": "true"},
        )
        assert prompt.request.redirect_uri == REDIRECT_URI
        assert prompt.grant.project_id == "proj-1"
        assert prompt.read_only is True
        assert set(prompt.locked) == {"project_id", "read_only"}

    async def test_locked_fields_win_over_form(self, oauth2_server):
        registered = await register(oauth2_server)
        prompt = await oauth2_server.begin_authorization(
            {"response_type": "code", "client_id": registered.client_id, "scope": "read write"},
            {"X-Neon-Project-Id": "proj-1", "X-Neon-Read-Only": "true"},
        )
        upstream_url = await oauth2_server.complete_consent(
            ConsentDecision(
                state=prompt.state,
                approved=True,
                grant=Grant(project_id="proj-other"),
                scopes=["read", "write"],
            )
        )
        upstream_state = parse_qs(urlsplit(upstream_url).query)["state"][0]
        pending = oauth2_server.state_codec.decode(upstream_state)
        assert pending.grant.project_id == "proj-1"
        assert pending.request.scope == ["read"]

    async def test_consent_cannot_add_write_beyond_request(self, oauth2_server):
        registered = await register(oauth2_server)
        prompt = await oauth2_server.begin_authorization(
            {"response_type": "code", "client_id": registered.client_id, "scope": "read"},
            {},
        )
        upstream_url = await oauth2_server.complete_consent(
            ConsentDecision(state=prompt.state, approved=True, grant=Grant(), scopes=["read", "write", "*"])
        )
        upstream_state = parse_qs(urlsplit(upstream_url).query)["state"][0]
        redirect = await oauth2_server.handle_callback(
            f"{ISSUER}/callback?code=upstream-code&state={upstream_state}",
            upstream_state,
            "upstream-code",
        )
        code = parse_qs(urlsplit(redirect).query)["code"][0]

        tokens = await oauth2_server.token(_code_form(code), registered.client_id, registered.client_secret)
        assert tokens["scope"] == "read"

    async def test_empty_scope_request_keeps_consented_scopes(self, oauth2_server):
        registered = await register(oauth2_server)
        prompt = await oauth2_server.begin_authorization(
            {"response_type": "code", "client_id": registered.client_id},
            {},
        )
        upstream_url = await oauth2_server.complete_consent(
            ConsentDecision(state=prompt.state, approved=True, grant=Grant(), scopes=["read", "write"])
        )
        upstream_state = parse_qs(urlsplit(upstream_url).query)["state"][0]
        assert oauth2_server.state_codec.decode(upstream_state).request.scope == ["read", "write"]

    async def test_unknown_preset_header_does_not_lock_preset(self, oauth2_server):
        registered = await register(oauth2_server)
        prompt = await oauth2_server.begin_authorization(
            {"response_type": "code", "client_id": registered.client_id, "scope": "read write"},
            {"X-Neon-Preset": "bogus"},
        )
        assert "preset" not in prompt.locked

        upstream_url = await oauth2_server.complete_consent(
            ConsentDecision(
                state=prompt.state,
                approved=True,
                grant=Grant(preset=Preset.PRODUCTION_USE),
                scopes=["read", "write"],
            )
        )
        upstream_state = parse_qs(urlsplit(upstream_url).query)["state"][0]
        pending = oauth2_server.state_codec.decode(upstream_state)
        assert pending.grant.preset is Preset.PRODUCTION_USE
        assert pending.request.scope == ["read"]

    async def test_known_preset_header_locks_preset(self, oauth2_server):
        registered = await register(oauth2_server)
        prompt = await oauth2_server.begin_authorization(
            {"response_type": "code", "client_id": registered.client_id},
            {"X-Neon-Preset": "Local_Development"},
        )
        assert prompt.locked == ["preset"]
        assert prompt.grant.preset is Preset.LOCAL_DEVELOPMENT

    async def test_denied_consent_redirects_with_error(self, oauth2_server):
        registered = await register(oauth2_server)
        prompt = await oauth2_server.begin_authorization(
            {"response_type": "code", "client_id": registered.client_id, "state": "s1"},
            {},
        )
        redirect = await oauth2_server.complete_consent(
            ConsentDecision(state=prompt.state, approved=False, grant=Grant(), scopes=[])
        )
        query = parse_qs(urlsplit(redirect).query)
        assert redirect.startswith(REDIRECT_URI)
        assert query == {"error": ["access_denied"], "state": ["s1"]}

    async def test_callback_issues_formatted_code(self, oauth2_server, upstream):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)
        assert CODE_FORMAT.match(code)
        assert upstream.exchanges == 1

    async def test_callback_requires_code_and_state(self, oauth2_server):
        with pytest.raises(InvalidRequestError):
            await oauth2_server.handle_callback(f"{ISSUER}/callback", None, "c")
        with pytest.raises(InvalidRequestError):
            await oauth2_server.handle_callback(f"{ISSUER}/callback", "s", None)

    async def test_callback_rejects_forged_state(self, oauth2_server):
        with pytest.raises(InvalidRequestError):
            await oauth2_server.handle_callback(f"{ISSUER}/callback?code=c&state=x", "x", "c")


class TestAuthorizationCodeGrant:
    async def test_code_exchange_returns_tokens(self, oauth2_server):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)

        tokens = await oauth2_server.token(
            _code_form(code), registered.client_id, registered.client_secret
        )
        assert tokens["token_type"] == "bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["scope"] == "read write"
        assert tokens["account"] == {"id": "user-1", "name": "Ada Lovelace", "email": "ada@example.com", "is_org": False}
        assert tokens["access_token"] != tokens["refresh_token"]

    async def test_code_is_single_use(self, oauth2_server):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)
        await oauth2_server.token(_code_form(code), registered.client_id, registered.client_secret)

        with pytest.raises(InvalidGrantError):
            await oauth2_server.token(_code_form(code), registered.client_id, registered.client_secret)

    async def test_expired_code_is_rejected(self, oauth2_server, clock):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)
        clock.advance(601)

        with pytest.raises(InvalidGrantError):
            await oauth2_server.token(_code_form(code), registered.client_id, registered.client_secret)

    async def test_code_of_other_client_is_rejected_and_consumed(self, oauth2_server):
        owner = await register(oauth2_server)
        other = await register(oauth2_server)
        code = await issue_code(oauth2_server, owner.client_id)

        with pytest.raises(InvalidGrantError):
            await oauth2_server.token(_code_form(code), other.client_id, other.client_secret)
        with pytest.raises(InvalidGrantError):
            await oauth2_server.token(_code_form(code), owner.client_id, owner.client_secret)

    async def test_pkce_verifier_is_checked(self, oauth2_server):
        registered = await register(oauth2_server, token_endpoint_auth_method="none")
        verifier = secrets.token_urlsafe(48)
        challenge = create_code_challenge(verifier)

        code = await issue_code(oauth2_server, registered.client_id, code_challenge=challenge)
        with pytest.raises(InvalidGrantError, match="code_verifier"):
            await oauth2_server.token(
                {"grant_type": "authorization_code", "code": code}, registered.client_id, None
            )

        code = await issue_code(oauth2_server, registered.client_id, code_challenge=challenge)
        with pytest.raises(InvalidGrantError, match="PKCE"):
            await oauth2_server.token(
                {"grant_type": "authorization_code", "code": code, "code_verifier": verifier + "x"},
                registered.client_id,
                None,
            )

        code = await issue_code(oauth2_server, registered.client_id, code_challenge=challenge)
        tokens = await oauth2_server.token(
            {"grant_type": "authorization_code", "code": code, "code_verifier": verifier},
            registered.client_id,
            None,
        )
        assert tokens["access_token"]

    async def test_redirect_uri_required_without_pkce(self, oauth2_server):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)
        with pytest.raises(InvalidRequestError, match="redirect_uri"):
            await oauth2_server.token(
                {"grant_type": "authorization_code", "code": code},
                registered.client_id,
                registered.client_secret,
            )

    async def test_redirect_uri_must_match(self, oauth2_server):
        registered = await register(
            oauth2_server, redirect_uris=[REDIRECT_URI, "https://client.example/other"]
        )
        code = await issue_code(oauth2_server, registered.client_id)
        with pytest.raises(InvalidGrantError, match="redirect_uri"):
            await oauth2_server.token(
                _code_form(code, redirect_uri="https://client.example/other"),
                registered.client_id,
                registered.client_secret,
            )

    async def test_wrong_secret_is_invalid_client(self, oauth2_server):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)
        with pytest.raises(InvalidClientError):
            await oauth2_server.token(_code_form(code), registered.client_id, "wrong")

    async def test_grant_type_is_checked_before_client(self, oauth2_server):
        with pytest.raises(UnsupportedGrantTypeError):
            await oauth2_server.token({"grant_type": "password"}, "mcp_unknown", None)
        with pytest.raises(InvalidRequestError):
            await oauth2_server.token({}, "mcp_unknown", None)

    async def test_grant_travels_to_access_token(self, oauth2_server):
        registered = await register(oauth2_server)
        grant = Grant(preset=Preset.CUSTOM, scopes=[ScopeCategory.QUERYING], project_id="proj-1")
        code = await issue_code(oauth2_server, registered.client_id, grant=grant)
        tokens = await oauth2_server.token(
            _code_form(code), registered.client_id, registered.client_secret
        )

        stored = await oauth2_server.load_access_token(tokens["access_token"])
        assert stored.grant == grant
        assert stored.scopes == ["read", "write"]


class TestRefreshTokenGrant:
    async def _tokens(self, server):
        registered = await register(server)
        code = await issue_code(server, registered.client_id)
        tokens = await server.token(_code_form(code), registered.client_id, registered.client_secret)
        return registered, tokens

    async def test_refresh_rotates_tokens(self, oauth2_server, upstream):
        registered, tokens = await self._tokens(oauth2_server)

        refreshed = await oauth2_server.token(
            {"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
            registered.client_id,
            registered.client_secret,
        )
        assert refreshed["refresh_token"] != tokens["refresh_token"]
        assert refreshed["access_token"] != tokens["access_token"]
        assert upstream.refreshes == 1

        assert await oauth2_server.load_access_token(tokens["access_token"]) is None
        stored = await oauth2_server.load_access_token(refreshed["access_token"])
        assert stored.upstream.access_token == "upstream-access-1"

        with pytest.raises(InvalidGrantError):
            await oauth2_server.token(
                {"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
                registered.client_id,
                registered.client_secret,
            )

    async def test_refresh_without_rotation_keeps_token(self, oauth2_server):
        oauth2_server.rotate_refresh_tokens = False
        registered, tokens = await self._tokens(oauth2_server)

        refreshed = await oauth2_server.token(
            {"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
            registered.client_id,
            registered.client_secret,
        )
        assert refreshed["refresh_token"] == tokens["refresh_token"]

    async def test_refresh_by_other_client_is_rejected(self, oauth2_server):
        _, tokens = await self._tokens(oauth2_server)
        other = await register(oauth2_server)
        with pytest.raises(InvalidGrantError):
            await oauth2_server.token(
                {"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
                other.client_id,
                other.client_secret,
            )

    async def test_concurrent_refreshes_of_one_token_succeed_once(self, oauth2_server, upstream):
        registered, tokens = await self._tokens(oauth2_server)
        form = {"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]}

        results = await asyncio.gather(
            oauth2_server.token(form, registered.client_id, registered.client_secret),
            oauth2_server.token(form, registered.client_id, registered.client_secret),
            return_exceptions=True,
        )

        issued = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, InvalidGrantError)]
        assert len(issued) == 1
        assert len(rejected) == 1
        assert upstream.refreshes == 1

    async def test_refresh_requires_registered_grant_type(self, oauth2_server):
        registered = await register(oauth2_server, grant_types=["authorization_code"])
        code = await issue_code(oauth2_server, registered.client_id)
        tokens = await oauth2_server.token(_code_form(code), registered.client_id, registered.client_secret)

        with pytest.raises(UnauthorizedClientError):
            await oauth2_server.token(
                {"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
                registered.client_id,
                registered.client_secret,
            )
        assert await oauth2_server.stores.refresh_tokens.get(tokens["refresh_token"]) is not None

    async def test_missing_refresh_token(self, oauth2_server):
        registered = await register(oauth2_server)
        with pytest.raises(InvalidRequestError):
            await oauth2_server.token(
                {"grant_type": "refresh_token"}, registered.client_id, registered.client_secret
            )


class TestRevocationAndBearer:
    async def test_revoking_access_token_revokes_refresh_token(self, oauth2_server):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)
        tokens = await oauth2_server.token(_code_form(code), registered.client_id, registered.client_secret)
        client = await oauth2_server.clients.lookup(registered.client_id)

        await oauth2_server.revoke(client, tokens["access_token"])
        assert await oauth2_server.resolve_bearer(tokens["access_token"]) is None
        assert await oauth2_server.stores.refresh_tokens.get(tokens["refresh_token"]) is None

    async def test_revoke_ignores_other_clients_tokens(self, oauth2_server):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)
        tokens = await oauth2_server.token(_code_form(code), registered.client_id, registered.client_secret)
        other = await register(oauth2_server)

        await oauth2_server.revoke(await oauth2_server.clients.lookup(other.client_id), tokens["access_token"])
        assert await oauth2_server.load_access_token(tokens["access_token"]) is not None

    async def test_resolve_bearer_for_access_token(self, oauth2_server):
        registered = await register(oauth2_server)
        code = await issue_code(oauth2_server, registered.client_id)
        tokens = await oauth2_server.token(_code_form(code), registered.client_id, registered.client_secret)

        context = await oauth2_server.resolve_bearer(tokens["access_token"])
        assert context.auth_method == "oauth"
        assert context.credential == "upstream-access"
        assert context.account.id == "user-1"
        assert context.client_id == registered.client_id

    async def test_resolve_bearer_for_api_key_is_cached(self, oauth2_server, identity):
        first = await oauth2_server.resolve_bearer(TEST_API_KEY)
        second = await oauth2_server.resolve_bearer(TEST_API_KEY)

        assert first.account.id == "org-1"
        assert first.auth_method == "api_key_org"
        assert first.scopes == ["*"]
        assert first.credential == TEST_API_KEY
        assert second.account == first.account
        assert identity.lookups == 1

    async def test_resolve_bearer_unknown_credential(self, oauth2_server):
        assert await oauth2_server.resolve_bearer("bogus") is None
        assert await oauth2_server.resolve_bearer("") is None
