"""
OAuth2 route registration for the FastMCP server.

This module registers the OAuth2 endpoints from ``auth.routes`` with FastMCP.
Each handler takes the ``OAuth2Server`` as a second argument, so routes are
registered as closures that inject it.
"""

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from neon_mcp.auth import routes
from neon_mcp.core import logger

if TYPE_CHECKING:
    from fastmcp import FastMCP

    from neon_mcp.auth.oauth2_server import OAuth2Server

Handler = Callable[..., Awaitable[Response]]

# (path, methods, handler); handlers receive (request, oauth2_server)
OAUTH2_ROUTES: list[tuple[str, list[str], Handler]] = [
    ("/.well-known/oauth-authorization-server", ["GET"], routes.authorization_server_metadata),
    ("/.well-known/oauth-protected-resource", ["GET"], routes.protected_resource_metadata),
    ("/register", ["POST"], routes.register_client),
    ("/authorize", ["GET"], routes.authorize_get),
    ("/authorize", ["POST"], routes.authorize_post),
    ("/callback", ["GET"], routes.callback),
    ("/token", ["POST"], routes.token_endpoint),
    ("/revoke", ["POST"], routes.revoke_endpoint),
    ("/api/list-tools", ["GET"], routes.list_tools_endpoint),
]

# Endpoints answering CORS preflight requests
CORS_PATHS = [
    "/.well-known/oauth-authorization-server",
    "/.well-known/oauth-protected-resource",
    "/register",
    "/token",
    "/revoke",
    "/api/list-tools",
]

# Paths served without a bearer credential
PUBLIC_PATHS = [
    "/.well-known/oauth-authorization-server",
    "/.well-known/oauth-protected-resource",
    "/register",
    "/authorize",
    "/callback",
    "/token",
    "/revoke",
    "/api/list-tools",
]


def _bind(handler: Handler, oauth2_server: "OAuth2Server") -> Callable[[Request], Awaitable[Response]]:
    async def endpoint(request: Request) -> Response:
        return await handler(request, oauth2_server)

    endpoint.__name__ = handler.__name__
    return endpoint


def setup_oauth2_routes(mcp: "FastMCP", oauth2_server: "OAuth2Server") -> None:
    """
    Register OAuth2 endpoints with a FastMCP server.

    Registers:
    - /.well-known/oauth-authorization-server (RFC 8414)
    - /.well-known/oauth-protected-resource (RFC 9728)
    - /register (RFC 7591 - Dynamic Client Registration)
    - /authorize (GET/POST - consent flow)
    - /callback (upstream redirect target)
    - /token (code exchange and refresh)
    - /revoke (RFC 7009)
    - /api/list-tools (tool visibility preview)
    - OPTIONS preflight for the public JSON endpoints

    Args:
        mcp: FastMCP server instance
        oauth2_server: OAuth2Server instance for authentication
    """
    for path, methods, handler in OAUTH2_ROUTES:
        mcp.custom_route(path, methods=methods)(_bind(handler, oauth2_server))

    for path in CORS_PATHS:
        mcp.custom_route(path, methods=["OPTIONS"])(routes.cors_preflight)

    logger.info(
        "✓ OAuth2 endpoints registered (%d routes, %d preflight)",
        len(OAUTH2_ROUTES),
        len(CORS_PATHS),
    )


def build_oauth2_routes(oauth2_server: "OAuth2Server") -> list[Route]:
    """Build the same endpoints as plain Starlette routes."""
    app_routes = [
        Route(path, _bind(handler, oauth2_server), methods=methods)
        for path, methods, handler in OAUTH2_ROUTES
    ]
    app_routes.extend(Route(path, routes.cors_preflight, methods=["OPTIONS"]) for path in CORS_PATHS)
    return app_routes


def create_oauth2_app(oauth2_server: "OAuth2Server", middleware=None) -> Starlette:
    """Standalone Starlette application serving only the OAuth2 endpoints."""
    return Starlette(routes=build_oauth2_routes(oauth2_server), middleware=middleware)
