"""
Middleware configuration for the FastMCP server.

Builds the Starlette middleware stack installed in front of the MCP HTTP
transports.
"""

from typing import TYPE_CHECKING, List, Optional

from starlette.middleware import Middleware

from neon_mcp.core import logger

if TYPE_CHECKING:
    from neon_mcp.auth.oauth2_server import OAuth2Server


def setup_middleware(oauth2_server: Optional["OAuth2Server"] = None) -> List[Middleware]:
    """
    Configure authentication middleware.

    With an ``oauth2_server`` every non-public request must carry a bearer
    credential: a downstream access token or a raw Neon API key. Without one
    the server runs unauthenticated.

    Args:
        oauth2_server: OAuth2Server instance resolving bearer credentials

    Returns:
        List of configured Middleware instances

    Example:
        >>> middleware = setup_middleware(oauth2_server=oauth2_server)
        >>> await mcp.run_async(transport="streamable-http", middleware=middleware)
    """
    middleware = []

    if oauth2_server is not None:
        from neon_mcp.auth.middleware import BearerAuthMiddleware

        middleware.append(Middleware(BearerAuthMiddleware, oauth2_server=oauth2_server))
        logger.info("✓ Bearer authentication enabled (OAuth tokens and Neon API keys)")
    else:
        logger.warning("⚠ No authentication middleware configured")

    return middleware
