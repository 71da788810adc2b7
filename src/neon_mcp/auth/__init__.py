"""Delegated OAuth authorization for the Neon MCP server.

The authorization server lives in ``auth.oauth2_server``, its HTTP surface in
``auth.routes`` and ``auth.setup``, and request authentication in
``auth.middleware``.
"""

from neon_mcp.auth.grants import Grant, Preset, ScopeCategory

__all__ = ["Grant", "Preset", "ScopeCategory"]
