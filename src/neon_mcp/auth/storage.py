"""Pydantic models for OAuth entity storage.

These models define the structure for persistent storage of OAuth entities
including clients, authorization codes, access tokens, refresh tokens and the
API key to account cache.
"""

import time

from pydantic import BaseModel, Field

from neon_mcp.auth.grants import Grant
from neon_mcp.core.constants import AUTH_METHOD_CLIENT_SECRET_POST


class Account(BaseModel):
    """Neon account a credential acts on behalf of."""

    id: str
    name: str
    email: str | None = None  # absent for organization accounts
    is_org: bool = False


class UpstreamTokenSet(BaseModel):
    """Tokens issued by the upstream identity provider."""

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = "bearer"
    scope: str | None = None
    expires_at: float | None = None


class StoredClient(BaseModel):
    """Dynamically registered OAuth client."""

    client_id: str
    client_secret_hash: str | None = None  # None for public clients
    client_name: str
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] = Field(default_factory=list)
    response_types: list[str] = Field(default_factory=list)
    token_endpoint_auth_method: str = AUTH_METHOD_CLIENT_SECRET_POST
    created_at: float = Field(default_factory=time.time)


class StoredAuthCode(BaseModel):
    """Pending authorization code, consumed by exactly one token call."""

    code: str
    client_id: str
    redirect_uri: str
    scopes: list[str] = Field(default_factory=list)
    account: Account
    upstream: UpstreamTokenSet
    grant: Grant = Field(default_factory=Grant)
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    expires_at: float


class StoredAccessToken(BaseModel):
    """Downstream access token handed to an MCP client."""

    token: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    account: Account
    upstream: UpstreamTokenSet
    grant: Grant = Field(default_factory=Grant)
    refresh_token: str | None = None
    expires_at: float


class StoredRefreshToken(BaseModel):
    """Downstream refresh token, linked to the access token issued with it."""

    token: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    account: Account
    upstream: UpstreamTokenSet
    grant: Grant = Field(default_factory=Grant)
    access_token: str
    expires_at: float | None = None  # None = no expiry


class StoredApiKey(BaseModel):
    """Cached account lookup for a raw Neon API key, keyed by key digest."""

    account: Account
    auth_method: str
    created_at: float = Field(default_factory=time.time)
