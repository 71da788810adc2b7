"""Core functionality for the Neon MCP server."""

from .decorators import track_request
from .exceptions import (
    GrantViolationError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    NeonMCPError,
    OAuthError,
    StoreError,
    UnsupportedGrantTypeError,
    UpstreamError,
)
from .logging import configure_logging, logger, request_id_ctx

__all__ = [
    "configure_logging",
    "logger",
    "request_id_ctx",
    "track_request",
    # Exceptions
    "GrantViolationError",
    "InvalidClientError",
    "InvalidGrantError",
    "InvalidRequestError",
    "NeonMCPError",
    "OAuthError",
    "StoreError",
    "UnsupportedGrantTypeError",
    "UpstreamError",
]
