"""
OAuth 2.0 Authorization Server in front of the Neon identity provider.

Implements:
- Authorization Server Metadata (RFC 8414)
- Protected Resource Metadata (RFC 9728)
- Dynamic Client Registration (RFC 7591)
- Authorization Code flow with PKCE (RFC 7636), delegated to the upstream provider
- Refresh tokens with rotation
- Token revocation (RFC 7009)
"""

import logging
import secrets
import string
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from neon_mcp.auth.clients import ClientRegistrationRequest, ClientRegistry, RegisteredClient
from neon_mcp.auth.grants import (
    Grant,
    Preset,
    consent_scopes,
    get_header,
    parse_bool_header,
    resolve_grant,
)
from neon_mcp.auth.identity import ApiKeyResolver, InvalidCredentialError, NeonIdentityClient
from neon_mcp.auth.kv_store import OAuthStores
from neon_mcp.auth.pkce import verify_code_verifier
from neon_mcp.auth.state import AuthorizationState, DownstreamAuthRequest, StateCodec
from neon_mcp.auth.storage import (
    Account,
    StoredAccessToken,
    StoredAuthCode,
    StoredClient,
    StoredRefreshToken,
    UpstreamTokenSet,
)
from neon_mcp.auth.upstream import UpstreamOAuthClient
from neon_mcp.core.constants import (
    AUTHORIZATION_CODE_TTL_SECONDS,
    CODE_GRANT_ID_LENGTH,
    CODE_NONCE_LENGTH,
    GRANT_TYPE_REFRESH_TOKEN,
    HEADER_PRESET,
    HEADER_PROJECT_ID,
    HEADER_READ_ONLY,
    HEADER_READ_ONLY_LEGACY,
    HEADER_SCOPES,
    SCOPE_WRITE,
    SUPPORTED_AUTH_METHODS,
    SUPPORTED_GRANT_TYPES,
    SUPPORTED_SCOPES,
)
from neon_mcp.core.exceptions import (
    InvalidGrantError,
    InvalidRequestError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_letters + string.digits


def _random_string(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _add_query(url: str, params: dict[str, str | None]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass
class AuthorizationPrompt:
    """Everything needed to render the consent page."""

    client: StoredClient
    request: DownstreamAuthRequest
    state: str
    grant: Grant
    read_only: bool | None = None
    locked: list[str] = field(default_factory=list)


@dataclass
class ConsentDecision:
    """Fields submitted from the consent form."""

    state: str
    approved: bool
    grant: Grant
    scopes: list[str]


@dataclass
class AuthContext:
    """Resolved bearer credential handed to the MCP session layer."""

    account: Account
    credential: str  # credential for Neon API calls
    auth_method: str
    client_id: str | None = None
    scopes: list[str] = field(default_factory=list)
    grant: Grant | None = None


class OAuth2Server:
    """OAuth 2.0 Authorization Server delegating login to the upstream provider."""

    def __init__(
        self,
        issuer: str,
        stores: OAuthStores,
        upstream: UpstreamOAuthClient,
        identity: NeonIdentityClient,
        state_codec: StateCodec,
        code_ttl: int = AUTHORIZATION_CODE_TTL_SECONDS,
        access_token_ttl: int = 3600,
        refresh_token_ttl: int | None = 30 * 24 * 3600,
        api_key_cache_ttl: int | None = 3600,
        rotate_refresh_tokens: bool = True,
        clock=time.time,
    ):
        """
        Initialize the authorization server.

        Args:
            issuer: Public base URL of this server
            stores: Key-value collections for OAuth records
            upstream: Client for the upstream identity provider
            identity: Neon API client used to resolve accounts
            state_codec: Signer for the authorization state
            code_ttl: Authorization code lifetime in seconds
            access_token_ttl: Access token lifetime in seconds
            refresh_token_ttl: Refresh token lifetime in seconds, None for no expiry
            api_key_cache_ttl: API key lookup cache lifetime in seconds
            rotate_refresh_tokens: Replace the refresh token on every refresh
            clock: Time source, seconds since the epoch
        """
        self.issuer = issuer.rstrip("/")
        self.stores = stores
        self.clients = ClientRegistry(stores.clients)
        self.upstream = upstream
        self.identity = identity
        self.api_keys = ApiKeyResolver(identity, stores.api_keys, api_key_cache_ttl)
        self.state_codec = state_codec
        self.code_ttl = code_ttl
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.clock = clock

    # ========== Metadata ==========

    def get_authorization_server_metadata(self) -> dict:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "registration_endpoint": f"{self.issuer}/register",
            "revocation_endpoint": f"{self.issuer}/revoke",
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "token_endpoint_auth_methods_supported": list(SUPPORTED_AUTH_METHODS),
            "scopes_supported": list(SUPPORTED_SCOPES),
            "code_challenge_methods_supported": ["S256"],
        }

    def get_protected_resource_metadata(self, resource_url: str | None = None) -> dict:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
        return {
            "resource": resource_url or self.issuer,
            "authorization_servers": [self.issuer],
            "scopes_supported": list(SUPPORTED_SCOPES),
            "bearer_methods_supported": ["header"],
        }

    # ========== Client Management ==========

    async def register_client(self, request: ClientRegistrationRequest) -> RegisteredClient:
        return await self.clients.register(request)

    # ========== Authorization ==========

    async def begin_authorization(
        self,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> AuthorizationPrompt:
        """Validate an authorization request and prepare the consent prompt.

        Header overrides (preset, scopes, project id, read-only) are applied to
        the pre-filled grant and locked so the consent form cannot change them.

        Raises:
            InvalidRequestError: if the client, response type or redirect URI is invalid
        """
        client = await self.clients.lookup(params.get("client_id"))
        if client is None:
            raise InvalidRequestError("Invalid client id")

        if params.get("response_type") != "code":
            raise InvalidRequestError("Invalid response type")

        redirect_uri = params.get("redirect_uri")
        if not redirect_uri and len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]
        if not self.clients.accepts_redirect_uri(client, redirect_uri):
            raise InvalidRequestError("Invalid redirect uri")

        code_challenge = params.get("code_challenge") or None
        code_challenge_method = params.get("code_challenge_method") or None
        if code_challenge and not code_challenge_method:
            code_challenge_method = "plain"
        if code_challenge_method and code_challenge_method not in ("S256", "plain"):
            raise InvalidRequestError("Unsupported code_challenge_method")

        request = DownstreamAuthRequest(
            response_type="code",
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            scope=(params.get("scope") or "").split(),
            state=params.get("state") or None,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method if code_challenge else None,
        )

        grant = resolve_grant(None, headers)
        read_only = parse_bool_header(get_header(headers, HEADER_READ_ONLY))
        if read_only is None:
            read_only = parse_bool_header(get_header(headers, HEADER_READ_ONLY_LEGACY))

        scopes_header = (get_header(headers, HEADER_SCOPES) or "").strip()
        locked = []
        if Preset.parse(get_header(headers, HEADER_PRESET)) is not None or scopes_header:
            locked.append("preset")
        if scopes_header:
            locked.append("scopes")
        if (get_header(headers, HEADER_PROJECT_ID) or "").strip():
            locked.append("project_id")
        if read_only is not None:
            locked.append("read_only")

        state = self.state_codec.encode(request, grant, locked=locked, read_only=read_only)
        logger.info("Authorization requested by client %s", client.client_id)
        return AuthorizationPrompt(
            client=client,
            request=request,
            state=state,
            grant=grant,
            read_only=read_only,
            locked=locked,
        )

    async def complete_consent(self, decision: ConsentDecision) -> str:
        """Turn a consent decision into the next redirect.

        Returns:
            The upstream authorization URL when approved, otherwise the
            client's redirect URI carrying ``error=access_denied``
        """
        pending = self.state_codec.decode(decision.state)
        request = pending.request

        if not decision.approved:
            logger.info("Authorization denied for client %s", request.client_id)
            return _add_query(
                request.redirect_uri,
                {"error": "access_denied", "state": request.state},
            )

        grant = decision.grant
        locked_grant = pending.grant
        if "preset" in pending.locked:
            grant.preset = locked_grant.preset
            grant.scopes = locked_grant.scopes
        if "project_id" in pending.locked:
            grant.project_id = locked_grant.project_id
        if locked_grant.protected_branches is not None and grant.protected_branches is None:
            grant.protected_branches = locked_grant.protected_branches

        scopes = consent_scopes(decision.scopes, grant.preset, grant.scopes or [], requested=request.scope)
        if pending.read_only:
            scopes = [s for s in scopes if s != SCOPE_WRITE]

        final_request = request.model_copy(update={"scope": scopes})
        upstream_state = self.state_codec.encode(final_request, grant)
        logger.info(
            "Consent granted for client %s (preset=%s, project=%s)",
            request.client_id,
            grant.preset.value,
            grant.project_id,
        )
        return await self.upstream.authorization_url(upstream_state)

    async def handle_callback(self, current_url: str, state: str | None, code: str | None) -> str:
        """Finish the upstream leg and mint the downstream authorization code.

        Returns:
            The client redirect URI carrying ``code`` (and ``state`` if the client sent one)

        Raises:
            InvalidRequestError: if the state or the client is invalid
            UpstreamError: if the upstream exchange or account lookup fails
        """
        if not code or not state:
            raise InvalidRequestError("Missing code or state")

        pending: AuthorizationState = self.state_codec.decode(state)
        request = pending.request

        client = await self.clients.lookup(request.client_id)
        if client is None:
            raise InvalidRequestError("Could not find client")

        upstream_tokens = await self.upstream.exchange_code(current_url, state)
        account = await self._resolve_oauth_account(upstream_tokens)

        authorization_code = f"{_random_string(CODE_GRANT_ID_LENGTH)}:{_random_string(CODE_NONCE_LENGTH)}"
        record = StoredAuthCode(
            code=authorization_code,
            client_id=client.client_id,
            redirect_uri=request.redirect_uri,
            scopes=request.scope,
            account=account,
            upstream=upstream_tokens,
            grant=pending.grant,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            expires_at=self.clock() + self.code_ttl,
        )
        await self.stores.authorization_codes.set(authorization_code, record, ttl=self.code_ttl)
        logger.info("Issued authorization code for client %s, account %s", client.client_id, account.id)

        return _add_query(request.redirect_uri, {"code": authorization_code, "state": request.state})

    async def _resolve_oauth_account(self, tokens: UpstreamTokenSet) -> Account:
        try:
            account, _ = await self.identity.resolve_account(tokens.access_token)
        except InvalidCredentialError as e:
            logger.error("Neon API rejected a freshly issued upstream token")
            raise UpstreamError("Could not resolve account") from e
        return account

    # ========== Token Endpoint ==========

    async def token(
        self,
        form: Mapping[str, str],
        client_id: str | None,
        client_secret: str | None,
    ) -> dict:
        """Dispatch a token request by grant type.

        Raises:
            UnsupportedGrantTypeError, InvalidClientError, UnauthorizedClientError,
            InvalidGrantError, InvalidRequestError, UpstreamError
        """
        grant_type = form.get("grant_type")
        if not grant_type:
            raise InvalidRequestError("grant_type is required")
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise UnsupportedGrantTypeError(f"Unsupported grant type: {grant_type}")

        client = await self.clients.authenticate(client_id, client_secret)
        if grant_type not in client.grant_types:
            raise UnauthorizedClientError(f"Client is not registered for the {grant_type} grant")

        if grant_type == GRANT_TYPE_REFRESH_TOKEN:
            return await self.exchange_refresh_token(client, form.get("refresh_token"))
        return await self.exchange_authorization_code(
            client,
            code=form.get("code"),
            code_verifier=form.get("code_verifier"),
            redirect_uri=form.get("redirect_uri"),
        )

    async def exchange_authorization_code(
        self,
        client: StoredClient,
        code: str | None,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
    ) -> dict:
        """Exchange a downstream authorization code for tokens.

        The code is taken out of the store before any check, so it is honored
        by at most one request even if the request then fails.
        """
        if not code:
            raise InvalidRequestError("code is required")

        record = await self.stores.authorization_codes.pop(code)
        if record is None:
            raise InvalidGrantError("Invalid authorization code")
        if record.client_id != client.client_id:
            raise InvalidGrantError("Authorization code was issued to another client")
        if record.expires_at <= self.clock():
            raise InvalidGrantError("Authorization code has expired")

        if record.code_challenge:
            if not code_verifier:
                raise InvalidGrantError("code_verifier is required")
            if not verify_code_verifier(record.code_challenge, record.code_challenge_method, code_verifier):
                raise InvalidGrantError("Invalid PKCE code_verifier")
        elif not redirect_uri:
            raise InvalidRequestError("redirect_uri is required when not using PKCE")

        if redirect_uri and redirect_uri != record.redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request")

        logger.info("Exchanged authorization code for client %s", client.client_id)
        return await self._issue_tokens(
            client_id=client.client_id,
            scopes=record.scopes,
            account=record.account,
            upstream=record.upstream,
            grant=record.grant,
        )

    async def exchange_refresh_token(self, client: StoredClient, refresh_token: str | None) -> dict:
        """Issue a new access token from a refresh token, rotating it when configured.

        With rotation the token is taken out of the store before the upstream
        refresh, so concurrent requests with the same token succeed at most once.
        """
        if not refresh_token:
            raise InvalidRequestError("refresh_token is required")

        record = await self.stores.refresh_tokens.get(refresh_token)
        if record is None:
            raise InvalidGrantError("Invalid refresh token")
        if record.client_id != client.client_id:
            raise InvalidGrantError("Refresh token was issued to another client")

        if self.rotate_refresh_tokens:
            record = await self.stores.refresh_tokens.pop(refresh_token)
            if record is None:
                raise InvalidGrantError("Refresh token has already been used")
            reuse = None
        else:
            reuse = refresh_token

        upstream = record.upstream
        if upstream.refresh_token:
            upstream = await self.upstream.refresh(upstream.refresh_token)

        await self.stores.access_tokens.delete(record.access_token)

        logger.info("Refreshed access token for client %s", client.client_id)
        return await self._issue_tokens(
            client_id=client.client_id,
            scopes=record.scopes,
            account=record.account,
            upstream=upstream,
            grant=record.grant,
            refresh_token=reuse,
        )

    async def _issue_tokens(
        self,
        client_id: str,
        scopes: list[str],
        account: Account,
        upstream: UpstreamTokenSet,
        grant: Grant,
        refresh_token: str | None = None,
    ) -> dict:
        now = self.clock()
        access_token = secrets.token_urlsafe(32)
        refresh_token = refresh_token or secrets.token_urlsafe(32)

        await self.stores.access_tokens.set(
            access_token,
            StoredAccessToken(
                token=access_token,
                client_id=client_id,
                scopes=scopes,
                account=account,
                upstream=upstream,
                grant=grant,
                refresh_token=refresh_token,
                expires_at=now + self.access_token_ttl,
            ),
            ttl=self.access_token_ttl,
        )
        await self.stores.refresh_tokens.set(
            refresh_token,
            StoredRefreshToken(
                token=refresh_token,
                client_id=client_id,
                scopes=scopes,
                account=account,
                upstream=upstream,
                grant=grant,
                access_token=access_token,
                expires_at=now + self.refresh_token_ttl if self.refresh_token_ttl else None,
            ),
            ttl=self.refresh_token_ttl,
        )

        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": self.access_token_ttl,
            "refresh_token": refresh_token,
            "scope": " ".join(scopes),
            "account": account.model_dump(mode="json", exclude_none=True),
        }

    # ========== Revocation ==========

    async def revoke(self, client: StoredClient, token: str | None) -> None:
        """Revoke an access or refresh token together with its counterpart (RFC 7009).

        Unknown tokens and tokens of other clients are ignored.
        """
        if not token:
            raise InvalidRequestError("token is required")

        access = await self.stores.access_tokens.get(token)
        if access is not None and access.client_id == client.client_id:
            await self.stores.access_tokens.delete(token)
            if access.refresh_token:
                await self.stores.refresh_tokens.delete(access.refresh_token)
            logger.info("Revoked access token for client %s", client.client_id)
            return

        refresh = await self.stores.refresh_tokens.get(token)
        if refresh is not None and refresh.client_id == client.client_id:
            await self.stores.refresh_tokens.delete(token)
            await self.stores.access_tokens.delete(refresh.access_token)
            logger.info("Revoked refresh token for client %s", client.client_id)

    # ========== Bearer Resolution ==========

    async def load_access_token(self, token: str) -> StoredAccessToken | None:
        return await self.stores.access_tokens.get(token)

    async def resolve_bearer(self, token: str) -> AuthContext | None:
        """Resolve a bearer credential: downstream access token first, then raw API key."""
        if not token:
            return None

        access = await self.load_access_token(token)
        if access is not None:
            return AuthContext(
                account=access.account,
                credential=access.upstream.access_token,
                auth_method="oauth",
                client_id=access.client_id,
                scopes=access.scopes,
                grant=access.grant,
            )

        api_key = await self.api_keys.resolve(token)
        if api_key is None:
            return None
        return AuthContext(
            account=api_key.account,
            credential=token,
            auth_method=api_key.auth_method,
            scopes=["*"],
        )
