"""Middleware for the Neon MCP server."""

from .setup import setup_middleware
from .tools import ToolAccessMiddleware

__all__ = ["ToolAccessMiddleware", "setup_middleware"]
