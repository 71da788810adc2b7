"""Upstream OAuth provider bridge.

Handles discovery against the upstream identity provider, building the
upstream authorization URL, and exchanging upstream authorization codes and
refresh tokens. The upstream leg uses confidential client credentials sent as
``client_secret_post``.
"""

import logging
import time
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
from pydantic import BaseModel, ValidationError

from neon_mcp.auth.storage import UpstreamTokenSet
from neon_mcp.core.exceptions import InvalidRequestError, UpstreamError

logger = logging.getLogger(__name__)

DISCOVERY_PATHS = (
    "/.well-known/openid-configuration",
    "/.well-known/oauth-authorization-server",
)


class UpstreamConfig(BaseModel):
    """Subset of upstream provider metadata this server relies on."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str | None = None


class UpstreamOAuthClient:
    """OAuth client for the upstream identity provider."""

    def __init__(
        self,
        issuer: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str],
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock=time.time,
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.timeout = timeout
        self.clock = clock
        self._transport = transport
        self._config: UpstreamConfig | None = None

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def discover(self) -> UpstreamConfig:
        """Fetch and cache the upstream provider metadata.

        Raises:
            UpstreamError: if no discovery document can be loaded
        """
        if self._config is not None:
            return self._config

        async with self._http() as http:
            for path in DISCOVERY_PATHS:
                try:
                    response = await http.get(f"{self.issuer}{path}")
                except httpx.HTTPError as e:
                    logger.error("Upstream discovery request failed: %s", e)
                    raise UpstreamError("Identity provider is unavailable") from e
                if response.status_code == 404:
                    continue
                if response.is_error:
                    logger.error("Upstream discovery returned HTTP %s", response.status_code)
                    raise UpstreamError("Identity provider is unavailable")
                try:
                    self._config = UpstreamConfig.model_validate(response.json())
                except (ValueError, ValidationError) as e:
                    logger.error("Upstream discovery document is invalid: %s", e)
                    raise UpstreamError("Identity provider is unavailable") from e
                logger.info("Discovered upstream provider %s", self._config.issuer)
                return self._config

        logger.error("No discovery document found at %s", self.issuer)
        raise UpstreamError("Identity provider is unavailable")

    async def authorization_url(self, state: str) -> str:
        config = await self.discover()
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": " ".join(self.scopes),
                "state": state,
            }
        )
        separator = "&" if "?" in config.authorization_endpoint else "?"
        return f"{config.authorization_endpoint}{separator}{query}"

    async def exchange_code(self, current_url: str, expected_state: str) -> UpstreamTokenSet:
        """Exchange the upstream authorization code found on the callback URL.

        Args:
            current_url: Full callback URL as received from the user agent
            expected_state: State value this server sent upstream

        Raises:
            InvalidRequestError: if the callback is malformed or the state differs
            UpstreamError: if the upstream provider rejects the exchange
        """
        query = parse_qs(urlsplit(current_url).query)
        if "error" in query:
            logger.warning("Upstream authorization failed: %s", query["error"][0])
            raise InvalidRequestError("Authorization was denied or failed upstream")
        code = query.get("code", [None])[0]
        state = query.get("state", [None])[0]
        if not code:
            raise InvalidRequestError("Missing upstream authorization code")
        if state != expected_state:
            raise InvalidRequestError("State mismatch")

        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )

    async def refresh(self, refresh_token: str) -> UpstreamTokenSet:
        """Refresh the upstream token set."""
        tokens = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        if tokens.refresh_token is None:
            tokens.refresh_token = refresh_token
        return tokens

    async def _token_request(self, data: dict[str, str]) -> UpstreamTokenSet:
        config = await self.discover()
        form = {**data, "client_id": self.client_id, "client_secret": self.client_secret}
        async with self._http() as http:
            try:
                response = await http.post(
                    config.token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                logger.error("Upstream token request failed: %s", e)
                raise UpstreamError("Identity provider is unavailable") from e

        if response.is_error:
            logger.error(
                "Upstream %s grant returned HTTP %s: %s",
                data["grant_type"],
                response.status_code,
                response.text[:500],
            )
            raise UpstreamError("Identity provider rejected the token request")

        try:
            body = response.json()
            expires_in = body.get("expires_in")
            return UpstreamTokenSet(
                access_token=body["access_token"],
                refresh_token=body.get("refresh_token"),
                id_token=body.get("id_token"),
                token_type=body.get("token_type", "bearer"),
                scope=body.get("scope"),
                expires_at=self.clock() + float(expires_in) if expires_in else None,
            )
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            logger.error("Upstream token response is invalid: %s", e)
            raise UpstreamError("Identity provider returned an invalid token response") from e
