"""Constants used throughout the Neon MCP server."""

# ========================================
# Request Headers
# ========================================

HEADER_PRESET = "X-Neon-Preset"
HEADER_SCOPES = "X-Neon-Scopes"
HEADER_PROJECT_ID = "X-Neon-Project-Id"
HEADER_PROTECT_PRODUCTION = "X-Neon-Protect-Production"
HEADER_READ_ONLY = "X-Neon-Read-Only"
HEADER_READ_ONLY_LEGACY = "x-read-only"

GRANT_HEADERS = (
    HEADER_PRESET,
    HEADER_SCOPES,
    HEADER_PROJECT_ID,
    HEADER_PROTECT_PRODUCTION,
    HEADER_READ_ONLY,
    HEADER_READ_ONLY_LEGACY,
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": ", ".join(("Authorization", "Content-Type") + GRANT_HEADERS),
}

# ========================================
# OAuth
# ========================================

AUTHORIZATION_CODE_TTL_SECONDS = 600  # 10 minutes
CODE_GRANT_ID_LENGTH = 16
CODE_NONCE_LENGTH = 32

SCOPE_READ = "read"
SCOPE_WRITE = "write"
SCOPE_ALL = "*"
SUPPORTED_SCOPES = [SCOPE_READ, SCOPE_WRITE]

GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"
GRANT_TYPE_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = [GRANT_TYPE_AUTHORIZATION_CODE, GRANT_TYPE_REFRESH_TOKEN]
SUPPORTED_RESPONSE_TYPES = ["code"]

AUTH_METHOD_CLIENT_SECRET_POST = "client_secret_post"
AUTH_METHOD_CLIENT_SECRET_BASIC = "client_secret_basic"
AUTH_METHOD_NONE = "none"
SUPPORTED_AUTH_METHODS = [
    AUTH_METHOD_CLIENT_SECRET_POST,
    AUTH_METHOD_CLIENT_SECRET_BASIC,
    AUTH_METHOD_NONE,
]

STATE_VERSION = 1

# ========================================
# Upstream Identity Provider
# ========================================

UPSTREAM_SCOPES = [
    "openid",
    "offline",
    "offline_access",
    "urn:neoncloud:projects:create",
    "urn:neoncloud:projects:read",
    "urn:neoncloud:projects:update",
    "urn:neoncloud:projects:delete",
    "urn:neoncloud:orgs:create",
    "urn:neoncloud:orgs:read",
    "urn:neoncloud:orgs:update",
    "urn:neoncloud:orgs:delete",
    "urn:neoncloud:orgs:permission",
]

AUTH_METHOD_API_KEY_ORG = "api_key_org"
PROJECT_SCOPED_KEY_NAME = "Project-scoped API Key"

# ========================================
# Branch Protection
# ========================================

DEFAULT_PROTECTED_BRANCHES = ["main", "master", "prod", "production"]

# ========================================
# HTTP Status Codes
# ========================================

HTTP_NOT_FOUND = 404
