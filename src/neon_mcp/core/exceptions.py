"""Custom exceptions for the Neon MCP server."""


# ========================================
# Base Exceptions
# ========================================


class NeonMCPError(Exception):
    """Base exception for all Neon MCP errors."""


# ========================================
# OAuth Protocol Exceptions
# ========================================


class OAuthError(NeonMCPError):
    """Error reported to OAuth clients as ``{error, error_description}`` JSON."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str, status_code: int | None = None):
        self.description = description
        if status_code is not None:
            self.status_code = status_code
        super().__init__(description)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class InvalidRequestError(OAuthError):
    """Malformed request, unknown client at authorize time, bad redirect URI."""

    error = "invalid_request"


class InvalidClientError(OAuthError):
    """Client authentication failed at the token endpoint."""

    error = "invalid_client"


class InvalidGrantError(OAuthError):
    """Authorization code or refresh token is missing, expired, reused or foreign."""

    error = "invalid_grant"


class UnsupportedGrantTypeError(OAuthError):
    """Grant type other than authorization_code or refresh_token."""

    error = "unsupported_grant_type"


class UnauthorizedClientError(OAuthError):
    """Client is not registered for the requested grant type."""

    error = "unauthorized_client"


class UpstreamError(OAuthError):
    """The upstream identity provider or the Neon API failed.

    The description is always a generic message; upstream response bodies are
    logged, never returned to the caller.
    """

    error = "invalid_request"
    status_code = 502


# ========================================
# Storage Exceptions
# ========================================


class StoreError(NeonMCPError):
    """Key-value store read or write failed."""


# ========================================
# Access Control Exceptions
# ========================================


class GrantViolationError(NeonMCPError):
    """A tool call is outside what the caller's grant permits."""

    def __init__(self, message: str, tool_name: str | None = None):
        self.message = message
        self.tool_name = tool_name
        super().__init__(message)
