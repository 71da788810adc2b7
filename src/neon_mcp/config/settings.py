"""Configuration settings for the Neon MCP Server using Pydantic Settings.

This module provides type-safe configuration management with automatic validation,
environment variable loading, and documentation generation.
"""

import logging
from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from neon_mcp.core.constants import AUTHORIZATION_CODE_TTL_SECONDS, UPSTREAM_SCOPES

logger = logging.getLogger(__name__)

_INSECURE_STATE_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    """Central configuration management with Pydantic validation.

    All settings are loaded from environment variables with automatic type conversion
    and validation. Default values are provided for non-critical settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True,
        populate_by_name=True,
    )

    # ========================================
    # Debug Settings
    # ========================================
    debug: bool = Field(
        default=False,
        alias="MCP_DEBUG",
        description="Enable debug mode with verbose logging",
    )

    # ========================================
    # Server Settings
    # ========================================
    host: str = Field(
        default="0.0.0.0",
        description="Server host address",
    )

    port: int = Field(
        default=3001,
        ge=1024,
        le=65535,
        description="Server port number",
    )

    transport: str = Field(
        default="http",
        description="Transport mode (http, sse or stdio)",
    )

    server_host: str | None = Field(
        default=None,
        description="Public base URL of this server, used as the OAuth issuer",
    )

    # ========================================
    # Upstream Identity Provider
    # ========================================
    upstream_oauth_host: str = Field(
        default="https://oauth2.neon.tech",
        description="Issuer URL of the upstream OAuth provider",
    )

    upstream_client_id: str = Field(
        default="",
        validation_alias=AliasChoices("upstream_client_id", "client_id"),
        description="Confidential client id registered with the upstream provider",
    )

    upstream_client_secret: str = Field(
        default="",
        validation_alias=AliasChoices("upstream_client_secret", "client_secret"),
        description="Client secret registered with the upstream provider",
    )

    upstream_scopes: str = Field(
        default=" ".join(UPSTREAM_SCOPES),
        description="Space or comma separated scopes requested from the upstream provider",
    )

    upstream_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout for upstream and Neon API HTTP calls",
    )

    # ========================================
    # Neon API
    # ========================================
    neon_api_host: str = Field(
        default="https://console.neon.tech/api/v2",
        description="Base URL of the Neon control-plane API",
    )

    # ========================================
    # OAuth Lifetimes
    # ========================================
    authorization_code_ttl_seconds: int = Field(
        default=AUTHORIZATION_CODE_TTL_SECONDS,
        ge=1,
        description="Lifetime of a pending authorization code",
    )

    access_token_ttl_seconds: int = Field(
        default=3600,
        ge=60,
        description="Lifetime of an issued access token",
    )

    refresh_token_ttl_seconds: int = Field(
        default=30 * 24 * 3600,
        ge=60,
        description="Lifetime of an issued refresh token",
    )

    api_key_cache_ttl_seconds: int = Field(
        default=3600,
        ge=0,
        description="How long an API key to account lookup is cached",
    )

    state_max_age_seconds: int = Field(
        default=900,
        ge=60,
        description="Maximum age of a signed authorization state payload",
    )

    # ========================================
    # OAuth Security
    # ========================================
    oauth_state_secret: str = Field(
        default=_INSECURE_STATE_SECRET,
        validation_alias=AliasChoices("oauth_state_secret", "cookie_secret"),
        description="HMAC key used to sign the authorization state",
    )

    rotate_refresh_tokens: bool = Field(
        default=True,
        description="Issue a new refresh token on every refresh and delete the old one",
    )

    # ========================================
    # Storage Settings
    # ========================================
    oauth_storage_backend: str = Field(
        default="memory",
        description="Key-value backend for OAuth records (memory or file)",
    )

    oauth_storage_dir: str = Field(
        default=".oauth_storage",
        description="Directory used by the file backend",
    )

    expiry_sweep_interval_seconds: int = Field(
        default=300,
        ge=1,
        description="Interval between background sweeps of expired records",
    )

    # ========================================
    # Validators
    # ========================================
    @field_validator("server_host", mode="before")
    @classmethod
    def set_server_host(cls, v: str | None, info: Any) -> str:
        """Set the public base URL from host and port if not provided."""
        if v:
            return str(v).rstrip("/")
        host = info.data.get("host", "0.0.0.0")
        port = info.data.get("port", 3001)
        if host == "0.0.0.0":
            host = "localhost"
        return f"http://{host}:{port}"

    @field_validator("oauth_storage_backend")
    @classmethod
    def check_storage_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "file"):
            raise ValueError("oauth_storage_backend must be 'memory' or 'file'")
        return v

    # ========================================
    # Helper Methods
    # ========================================
    @property
    def issuer(self) -> str:
        return self.server_host or f"http://localhost:{self.port}"

    @property
    def callback_url(self) -> str:
        return f"{self.issuer}/callback"

    def get_upstream_scopes_list(self) -> list[str]:
        """Get upstream scopes as a list."""
        return [s for s in self.upstream_scopes.replace(",", " ").split() if s]

    def has_upstream_config(self) -> bool:
        """Check if upstream client credentials are configured."""
        return bool(self.upstream_client_id and self.upstream_client_secret)

    def to_dict(self) -> dict[str, Any]:
        """Export settings as a dictionary (safe version without secrets)."""
        return {
            "debug": self.debug,
            "host": self.host,
            "port": self.port,
            "transport": self.transport,
            "issuer": self.issuer,
            "upstream_oauth_host": self.upstream_oauth_host,
            "has_upstream_config": self.has_upstream_config(),
            "neon_api_host": self.neon_api_host,
            "oauth_storage_backend": self.oauth_storage_backend,
            "rotate_refresh_tokens": self.rotate_refresh_tokens,
            "access_token_ttl_seconds": self.access_token_ttl_seconds,
        }


_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance (singleton pattern)."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
        logger.info("Settings initialized from environment")
        logger.debug("Storage backend: %s", _settings_instance.oauth_storage_backend)
        if not _settings_instance.has_upstream_config():
            logger.warning(
                "CLIENT_ID/CLIENT_SECRET are missing. Upstream login will fail.",
            )
        if _settings_instance.oauth_state_secret == _INSECURE_STATE_SECRET:
            logger.warning("OAUTH_STATE_SECRET is not set. Using an insecure default.")
    return _settings_instance


def reset_settings() -> None:
    """Reset settings instance (useful for testing)."""
    global _settings_instance
    _settings_instance = None
