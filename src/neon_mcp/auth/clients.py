"""Dynamic client registration (RFC 7591) and client authentication."""

import ipaddress
import logging
import secrets
from urllib.parse import urlsplit

from passlib.context import CryptContext
from pydantic import BaseModel

from neon_mcp.auth.kv_store import KeyValueStore
from neon_mcp.auth.storage import StoredClient
from neon_mcp.core.constants import (
    AUTH_METHOD_CLIENT_SECRET_POST,
    AUTH_METHOD_NONE,
    GRANT_TYPE_AUTHORIZATION_CODE,
    SUPPORTED_AUTH_METHODS,
    SUPPORTED_GRANT_TYPES,
    SUPPORTED_RESPONSE_TYPES,
)
from neon_mcp.core.exceptions import InvalidClientError, InvalidRequestError

logger = logging.getLogger(__name__)

secret_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class ClientRegistrationRequest(BaseModel):
    """Dynamic Client Registration request (RFC 7591)."""

    client_name: str | None = None
    redirect_uris: list[str] | None = None
    grant_types: list[str] | None = None
    response_types: list[str] | None = None
    token_endpoint_auth_method: str | None = None


class RegisteredClient(BaseModel):
    """Registration response. The plain secret exists only here."""

    client_id: str
    client_secret: str | None = None
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    token_endpoint_auth_method: str
    client_id_issued_at: int


def is_absolute_uri(uri: str) -> bool:
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc or parts.path) and not parts.fragment


def _is_loopback(host: str | None) -> bool:
    if not host:
        return False
    if host in LOOPBACK_HOSTS:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def redirect_uri_matches(requested: str, registered: str) -> bool:
    """Compare a requested redirect URI against a registered one.

    Exact match, except that loopback redirects (RFC 8252 section 7.3) may use
    any port as long as scheme, host kind, path and query agree.
    """
    if requested == registered:
        return True
    try:
        req, reg = urlsplit(requested), urlsplit(registered)
        if not (_is_loopback(req.hostname) and _is_loopback(reg.hostname)):
            return False
        return (req.scheme, req.path, req.query) == (reg.scheme, reg.path, reg.query)
    except ValueError:
        return False


class ClientRegistry:
    """Registers, looks up and authenticates OAuth clients."""

    def __init__(self, store: KeyValueStore[StoredClient]) -> None:
        self.store = store

    async def register(self, request: ClientRegistrationRequest) -> RegisteredClient:
        """Validate client metadata and persist a new client.

        Raises:
            InvalidRequestError: if the metadata is incomplete or unsupported
        """
        if not request.client_name:
            raise InvalidRequestError("client_name is required")
        if not request.redirect_uris:
            raise InvalidRequestError("redirect_uris must be a non-empty list")
        for uri in request.redirect_uris:
            if not is_absolute_uri(uri):
                raise InvalidRequestError(f"Invalid redirect_uri: {uri}")

        grant_types = request.grant_types or [GRANT_TYPE_AUTHORIZATION_CODE]
        unsupported = set(grant_types) - set(SUPPORTED_GRANT_TYPES)
        if unsupported:
            raise InvalidRequestError(f"Unsupported grant_types: {', '.join(sorted(unsupported))}")

        response_types = request.response_types or list(SUPPORTED_RESPONSE_TYPES)
        if set(response_types) - set(SUPPORTED_RESPONSE_TYPES):
            raise InvalidRequestError("response_types must only contain 'code'")

        auth_method = request.token_endpoint_auth_method or AUTH_METHOD_CLIENT_SECRET_POST
        if auth_method not in SUPPORTED_AUTH_METHODS:
            raise InvalidRequestError(f"Unsupported token_endpoint_auth_method: {auth_method}")

        client_id = f"mcp_{secrets.token_urlsafe(16)}"
        client_secret = None if auth_method == AUTH_METHOD_NONE else secrets.token_urlsafe(32)

        stored = StoredClient(
            client_id=client_id,
            client_secret_hash=secret_context.hash(client_secret) if client_secret else None,
            client_name=request.client_name,
            redirect_uris=list(request.redirect_uris),
            grant_types=list(grant_types),
            response_types=list(response_types),
            token_endpoint_auth_method=auth_method,
        )
        await self.store.set(client_id, stored)
        logger.info("Registered client: %s (%s)", request.client_name, client_id)

        return RegisteredClient(
            client_id=client_id,
            client_secret=client_secret,
            client_name=stored.client_name,
            redirect_uris=stored.redirect_uris,
            grant_types=stored.grant_types,
            response_types=stored.response_types,
            token_endpoint_auth_method=auth_method,
            client_id_issued_at=int(stored.created_at),
        )

    async def lookup(self, client_id: str | None) -> StoredClient | None:
        if not client_id:
            return None
        return await self.store.get(client_id)

    async def authenticate(self, client_id: str | None, client_secret: str | None) -> StoredClient:
        """Authenticate a client at the token endpoint.

        Public clients (``token_endpoint_auth_method == "none"``) only need to
        identify themselves; confidential clients must present their secret.

        Raises:
            InvalidClientError: if the client is unknown or the secret is wrong
        """
        client = await self.lookup(client_id)
        if client is None:
            raise InvalidClientError("Unknown client")
        if client.token_endpoint_auth_method == AUTH_METHOD_NONE:
            return client
        if not client_secret or not client.client_secret_hash:
            raise InvalidClientError("Client authentication failed")
        if not secret_context.verify(client_secret, client.client_secret_hash):
            raise InvalidClientError("Client authentication failed")
        return client

    @staticmethod
    def accepts_redirect_uri(client: StoredClient, redirect_uri: str | None) -> bool:
        if not redirect_uri:
            return False
        return any(redirect_uri_matches(redirect_uri, r) for r in client.redirect_uris)
