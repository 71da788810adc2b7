"""
MCP-level tool access control.

BearerAuthMiddleware attaches the resolved credential and the session's tool
listing to the HTTP request. This FastMCP middleware reads them back for every
``tools/list`` and ``tools/call`` message: listings are filtered to the grant
and calls are checked (visibility, protected branches, project pinning) before
the tool body runs.
"""

import dataclasses
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import CallToolRequestParams, ListToolsRequest

from neon_mcp.core.exceptions import GrantViolationError
from neon_mcp.tools.access import ToolListing
from neon_mcp.tools.enforcement import check_tool_call

if TYPE_CHECKING:
    from neon_mcp.auth.identity import NeonIdentityClient
    from neon_mcp.auth.oauth2_server import AuthContext

logger = logging.getLogger(__name__)


class ToolAccessMiddleware(Middleware):
    """Filters tools/list and guards tools/call with the request's tool listing.

    Requests without a listing (stdio transport, unauthenticated HTTP) pass
    through unchanged.
    """

    def __init__(self, identity: "NeonIdentityClient | None" = None):
        """
        Args:
            identity: Neon API client used to resolve branch ids to names
        """
        self.identity = identity

    def _request_state(self) -> tuple[ToolListing | None, "AuthContext | None"]:
        try:
            request = get_http_request()
        except RuntimeError:
            return None, None
        return (
            getattr(request.state, "tool_listing", None),
            getattr(request.state, "auth", None),
        )

    async def on_list_tools(
        self,
        context: MiddlewareContext[ListToolsRequest],
        call_next: CallNext[ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        tools = await call_next(context)
        listing, _ = self._request_state()
        if listing is None:
            return tools

        visible = [tool for tool in tools if listing.allows(tool.name)]
        logger.debug("Tool list filtered to %d of %d tools", len(visible), len(tools))
        return visible

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        listing, auth = self._request_state()
        if listing is None:
            return await call_next(context)

        list_branches = None
        if self.identity is not None and auth is not None:
            identity = self.identity
            credential = auth.credential

            async def list_branches(project_id: str) -> list[dict[str, Any]]:
                return await identity.list_project_branches(credential, project_id)

        message = context.message
        try:
            arguments = await check_tool_call(listing, message.name, message.arguments or {}, list_branches)
        except GrantViolationError as e:
            raise ToolError(e.message) from e

        message = message.model_copy(update={"arguments": arguments})
        return await call_next(dataclasses.replace(context, message=message))
