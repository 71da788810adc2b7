"""Neon MCP server: delegated OAuth authorization and tool access control."""

__version__ = "0.1.0"
