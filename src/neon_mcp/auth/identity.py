"""Account resolution against the Neon API.

A bearer credential (an upstream OAuth access token or a raw Neon API key) is
mapped to the account it acts for. Organization API keys resolve to the
organization, everything else to the current user. Project-scoped API keys
cannot read account-level endpoints and fall back to a synthetic account.
"""

import hashlib
import logging

import httpx

from neon_mcp.auth.kv_store import KeyValueStore
from neon_mcp.auth.storage import Account, StoredApiKey
from neon_mcp.core.constants import (
    AUTH_METHOD_API_KEY_ORG,
    HTTP_NOT_FOUND,
    PROJECT_SCOPED_KEY_NAME,
)
from neon_mcp.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)

PROJECT_SCOPED_KEY_MESSAGE = "not allowed to perform actions outside the project"


class InvalidCredentialError(Exception):
    """The Neon API rejected the bearer credential (HTTP 401/403)."""


class _ProjectScopedKey(Exception):
    pass


class NeonIdentityClient:
    """Minimal Neon API client for the identity endpoints."""

    def __init__(
        self,
        api_host: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_host = api_host.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def resolve_account(self, credential: str) -> tuple[Account, str]:
        """Resolve the account behind ``credential``.

        Returns:
            The account and the Neon auth method (``api_key_org``, ``oauth``...)

        Raises:
            InvalidCredentialError: if the credential is rejected
            UpstreamError: on any other Neon API failure
        """
        headers = {"Authorization": f"Bearer {credential}", "Accept": "application/json"}
        async with httpx.AsyncClient(
            base_url=self.api_host,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        ) as http:
            auth = await self._get(http, "/auth")
            account_id = str(auth.get("account_id", ""))
            auth_method = str(auth.get("auth_method", ""))

            try:
                if auth_method == AUTH_METHOD_API_KEY_ORG:
                    org = await self._get(http, f"/organizations/{account_id}")
                    account = Account(id=account_id, name=org.get("name") or account_id, is_org=True)
                else:
                    user = await self._get(http, "/users/me")
                    name = f"{user.get('name') or ''} {user.get('last_name') or ''}".strip()
                    account = Account(
                        id=str(user.get("id", account_id)),
                        name=name or "Unknown",
                        email=user.get("email"),
                        is_org=False,
                    )
            except _ProjectScopedKey:
                logger.debug("Using project-scoped API key fallback for %s", account_id)
                account = Account(id=account_id, name=PROJECT_SCOPED_KEY_NAME, is_org=False)

        return account, auth_method

    async def list_project_branches(self, credential: str, project_id: str) -> list[dict]:
        """List the branches of a project, each with at least ``id`` and ``name``.

        Raises:
            InvalidCredentialError: if the credential is rejected
            UpstreamError: on any other Neon API failure
        """
        headers = {"Authorization": f"Bearer {credential}", "Accept": "application/json"}
        async with httpx.AsyncClient(
            base_url=self.api_host,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        ) as http:
            try:
                body = await self._get(http, f"/projects/{project_id}/branches")
            except _ProjectScopedKey as e:
                raise InvalidCredentialError(f"Credential cannot access project {project_id}") from e
        branches = body.get("branches") or []
        return [b for b in branches if isinstance(b, dict)]

    async def _get(self, http: httpx.AsyncClient, path: str) -> dict:
        try:
            response = await http.get(path)
        except httpx.HTTPError as e:
            logger.error("Neon API request %s failed: %s", path, e)
            raise UpstreamError("Neon API is unavailable") from e

        if response.status_code in (401, 403):
            raise InvalidCredentialError(f"Neon API rejected credential on {path}")
        if response.status_code == HTTP_NOT_FOUND and PROJECT_SCOPED_KEY_MESSAGE in response.text:
            raise _ProjectScopedKey()
        if response.is_error:
            logger.error("Neon API %s returned HTTP %s", path, response.status_code)
            raise UpstreamError("Neon API request failed")
        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError("Neon API returned an invalid response") from e
        return body if isinstance(body, dict) else {}


def api_key_digest(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


class ApiKeyResolver:
    """Resolves raw API keys to accounts, caching results in the ``api_keys`` store."""

    def __init__(
        self,
        identity: NeonIdentityClient,
        cache: KeyValueStore[StoredApiKey],
        cache_ttl: float | None = 3600,
    ) -> None:
        self.identity = identity
        self.cache = cache
        self.cache_ttl = cache_ttl or None

    async def resolve(self, api_key: str) -> StoredApiKey | None:
        """Return the cached or freshly resolved record, or None for a rejected key."""
        key = api_key_digest(api_key)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        try:
            account, auth_method = await self.identity.resolve_account(api_key)
        except InvalidCredentialError:
            logger.info("API key rejected by Neon API")
            return None

        record = StoredApiKey(account=account, auth_method=auth_method)
        await self.cache.set(key, record, ttl=self.cache_ttl)
        logger.info("Resolved API key for account %s", account.id)
        return record
