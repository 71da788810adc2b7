"""Tool catalog and access control for the Neon MCP server."""

from .access import ToolListing, get_access_control_warnings, get_available_tools, list_tools
from .definitions import TOOL_DEFINITIONS, TOOLS_BY_NAME, ToolDefinition
from .enforcement import check_tool_call, enforce_protected_branches, inject_project_id

__all__ = [
    "TOOL_DEFINITIONS",
    "TOOLS_BY_NAME",
    "ToolDefinition",
    "ToolListing",
    "check_tool_call",
    "enforce_protected_branches",
    "get_access_control_warnings",
    "get_available_tools",
    "inject_project_id",
    "list_tools",
]
