"""
Bearer authentication middleware for the MCP endpoints.

Accepts either a downstream OAuth access token issued by this server or a raw
Neon API key. On success the resolved credential and the session's tool
listing are attached to ``request.state`` for the MCP session layer.
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from neon_mcp.auth.oauth2_server import OAuth2Server
from neon_mcp.auth.setup import PUBLIC_PATHS
from neon_mcp.core.exceptions import StoreError, UpstreamError
from neon_mcp.tools.access import list_tools

logger = logging.getLogger(__name__)


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """
    Middleware resolving ``Authorization: Bearer`` credentials.

    Resolution order:
    1. Downstream access token (grant and scopes come from the token)
    2. Raw Neon API key (account looked up and cached, full scope)

    Missing or unknown credentials get 401 with a ``WWW-Authenticate`` header
    pointing at the protected resource metadata.
    """

    def __init__(self, app, oauth2_server: OAuth2Server):
        """
        Initialize middleware.

        Args:
            app: ASGI application
            oauth2_server: OAuth2 server instance
        """
        super().__init__(app)
        self.oauth2_server = oauth2_server

    async def dispatch(self, request: Request, call_next):
        """Process request with bearer authentication."""
        if request.method == "OPTIONS" or request.url.path in ["/health", "/ping", "/healthz"]:
            return await call_next(request)

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.lower().startswith("bearer "):
            return self._unauthorized_response(request, "Missing or invalid Authorization header")

        token = auth_header[7:].strip()
        try:
            context = await self.oauth2_server.resolve_bearer(token)
        except UpstreamError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        except StoreError as e:
            logger.error("Storage failure during authentication: %s", e)
            return JSONResponse(
                {"error": "server_error", "error_description": "Internal storage error"},
                status_code=500,
            )

        if context is None:
            return self._unauthorized_response(request, "Invalid or expired token")

        request.state.auth = context
        request.state.auth_type = "oauth2" if context.auth_method == "oauth" else "api_key"
        request.state.tool_listing = list_tools(
            request.headers,
            stored_grant=context.grant,
            scopes=context.scopes,
        )
        logger.debug(
            "Authenticated %s request for account %s",
            request.state.auth_type,
            context.account.id,
        )
        return await call_next(request)

    def _unauthorized_response(self, request: Request, message: str) -> JSONResponse:
        """Return 401 Unauthorized response."""
        resource_metadata = f"{self.oauth2_server.issuer}/.well-known/oauth-protected-resource"
        return JSONResponse(
            {"error": "invalid_token", "error_description": message},
            status_code=401,
            headers={"WWW-Authenticate": f'Bearer resource_metadata="{resource_metadata}"'},
        )
