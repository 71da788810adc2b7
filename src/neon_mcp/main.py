"""
Main entry point for the Neon MCP server.

Wires the OAuth authorization server, its HTTP routes and the bearer
authentication middleware into a FastMCP server, installs the tool access
middleware on the MCP messages and runs the background expiry sweep for the
lifetime of the process.
"""

import asyncio
import contextlib
import sys
import traceback

from fastmcp import FastMCP

from neon_mcp.auth.identity import NeonIdentityClient
from neon_mcp.auth.kv_store import OAuthStores, run_expiry_sweeper
from neon_mcp.auth.oauth2_server import OAuth2Server
from neon_mcp.auth.setup import setup_oauth2_routes
from neon_mcp.auth.state import StateCodec
from neon_mcp.auth.upstream import UpstreamOAuthClient
from neon_mcp.config import Settings, get_settings
from neon_mcp.core import logger
from neon_mcp.middleware import ToolAccessMiddleware, setup_middleware


def create_oauth2_server(settings: Settings) -> OAuth2Server:
    """Build the authorization server and its collaborators from settings."""
    stores = OAuthStores.from_settings(settings)
    upstream = UpstreamOAuthClient(
        issuer=settings.upstream_oauth_host,
        client_id=settings.upstream_client_id,
        client_secret=settings.upstream_client_secret,
        redirect_uri=settings.callback_url,
        scopes=settings.get_upstream_scopes_list(),
        timeout=settings.upstream_timeout_seconds,
    )
    identity = NeonIdentityClient(
        api_host=settings.neon_api_host,
        timeout=settings.upstream_timeout_seconds,
    )
    return OAuth2Server(
        issuer=settings.issuer,
        stores=stores,
        upstream=upstream,
        identity=identity,
        state_codec=StateCodec(settings.oauth_state_secret, settings.state_max_age_seconds),
        code_ttl=settings.authorization_code_ttl_seconds,
        access_token_ttl=settings.access_token_ttl_seconds,
        refresh_token_ttl=settings.refresh_token_ttl_seconds,
        api_key_cache_ttl=settings.api_key_cache_ttl_seconds,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
    )


settings = get_settings()

try:
    logger.info("Initializing FastMCP server...")
    oauth2_server = create_oauth2_server(settings)
    mcp = FastMCP("Neon MCP Server")
    setup_oauth2_routes(mcp, oauth2_server)
    mcp.add_middleware(ToolAccessMiddleware(oauth2_server.identity))
    logger.info("✓ OAuth authorization server ready")
    logger.info("  - Issuer: %s", settings.issuer)
    logger.info("  - Upstream: %s", settings.upstream_oauth_host)
    logger.info("  - Storage: %s", settings.oauth_storage_backend)
except Exception as e:
    logger.error("Failed to initialize FastMCP server: %s", e)
    logger.error("Traceback: %s", traceback.format_exc())
    sys.exit(1)


async def main() -> None:
    """
    Main async function to run the MCP server.
    """
    sweeper = asyncio.create_task(
        run_expiry_sweeper(oauth2_server.stores, settings.expiry_sweep_interval_seconds)
    )
    try:
        transport = settings.transport.lower()
        logger.info("Transport mode: %s", transport)

        sys.stdout.flush()
        sys.stderr.flush()

        transport_map = {
            "http": "streamable-http",
            "streamable-http": "streamable-http",
            "sse": "sse",
            "stdio": "stdio",
        }
        fastmcp_transport = transport_map.get(transport, "stdio")

        if fastmcp_transport in ("streamable-http", "sse"):
            logger.info(
                "Setting up %s server on %s:%s...",
                fastmcp_transport,
                settings.host,
                settings.port,
            )
            await mcp.run_async(
                transport=fastmcp_transport,  # type: ignore[arg-type]
                host=settings.host,
                port=settings.port,
                middleware=setup_middleware(oauth2_server),
            )
        else:
            logger.info("Setting up stdio server...")
            await mcp.run_async(transport="stdio")

    except Exception as e:
        logger.error("Error in main function: %s", e)
        logger.error("Traceback: %s", traceback.format_exc())
        raise
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        logger.info("Shut down")


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
