"""
OAuth2 endpoints for the Neon MCP server using Starlette.

Implements:
- Authorization Server Metadata (RFC 8414)
- Protected Resource Metadata (RFC 9728)
- Dynamic Client Registration (RFC 7591)
- Authorization endpoint with a Jinja2 consent page
- Upstream callback
- Token and revocation endpoints
- Tool visibility preview (/api/list-tools)
"""

import base64
import binascii
import json
import logging
from pathlib import Path
from urllib.parse import unquote

from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from neon_mcp.auth.clients import ClientRegistrationRequest
from neon_mcp.auth.grants import PRESET_DESCRIPTIONS, Preset, ScopeCategory, grant_from_form
from neon_mcp.auth.oauth2_server import ConsentDecision, OAuth2Server
from neon_mcp.core.constants import CORS_HEADERS, SCOPE_READ, SCOPE_WRITE
from neon_mcp.core.decorators import track_request
from neon_mcp.core.exceptions import InvalidClientError, InvalidRequestError, OAuthError, StoreError
from neon_mcp.tools.access import list_tools

logger = logging.getLogger(__name__)

template_dir = Path(__file__).parent / "templates"
jinja_env = Environment(
    loader=FileSystemLoader(str(template_dir)),
    autoescape=select_autoescape(["html"]),
)

PRESET_TABS = [
    (Preset.CUSTOM, "Custom"),
    (Preset.LOCAL_DEVELOPMENT, "Local Development"),
    (Preset.PRODUCTION_USE, "Production Use"),
    (Preset.FULL_ACCESS, "Full Access"),
]


# Helpers
def render_template(template_name: str, context: dict, status_code: int = 200) -> HTMLResponse:
    """Render Jinja2 template."""
    template = jinja_env.get_template(template_name)
    html_content = template.render(**context)
    return HTMLResponse(content=html_content, status_code=status_code)


def error_response(error: OAuthError, cors: bool = False) -> JSONResponse:
    return JSONResponse(
        error.to_dict(),
        status_code=error.status_code,
        headers=CORS_HEADERS if cors else None,
    )


def server_error_response(error: Exception) -> JSONResponse:
    logger.error("Storage failure: %s", error)
    return JSONResponse(
        {"error": "server_error", "error_description": "Internal storage error"},
        status_code=500,
    )


def parse_client_credentials(request: Request, form) -> tuple[str | None, str | None]:
    """Extract client credentials from HTTP Basic auth or the request body."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("basic "):
        try:
            decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise InvalidClientError("Malformed Basic authorization header") from e
        client_id, sep, client_secret = decoded.partition(":")
        if not sep:
            raise InvalidClientError("Malformed Basic authorization header")
        return unquote(client_id), unquote(client_secret)
    return form.get("client_id"), form.get("client_secret")


def is_form_encoded(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower() == "application/x-www-form-urlencoded"


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


async def cors_preflight(request: Request) -> Response:
    """Answer CORS preflight requests for the public endpoints."""
    return Response(status_code=204, headers=CORS_HEADERS)


# OAuth2 endpoint handlers
async def authorization_server_metadata(request: Request, oauth2_server: OAuth2Server):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    return JSONResponse(oauth2_server.get_authorization_server_metadata(), headers=CORS_HEADERS)


async def protected_resource_metadata(
    request: Request, oauth2_server: OAuth2Server, resource_url: str | None = None
):
    """Protected Resource Metadata (RFC 9728)."""
    return JSONResponse(
        oauth2_server.get_protected_resource_metadata(resource_url),
        headers=CORS_HEADERS,
    )


@track_request("register")
async def register_client(request: Request, oauth2_server: OAuth2Server):
    """Dynamic Client Registration (RFC 7591)."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return error_response(InvalidRequestError("Request body must be JSON"), cors=True)
    if not isinstance(body, dict):
        return error_response(InvalidRequestError("Request body must be a JSON object"), cors=True)

    try:
        req = ClientRegistrationRequest(**body)
        client = await oauth2_server.register_client(req)
    except ValidationError as e:
        return error_response(InvalidRequestError(f"Invalid client metadata: {e.error_count()} error(s)"), cors=True)
    except OAuthError as e:
        return error_response(e, cors=True)
    except StoreError as e:
        return server_error_response(e)

    return JSONResponse(
        client.model_dump(exclude_none=True),
        status_code=201,
        headers=CORS_HEADERS,
    )


@track_request("authorize")
async def authorize_get(request: Request, oauth2_server: OAuth2Server):
    """Authorization endpoint (GET) - validates the request and shows the consent page."""
    try:
        prompt = await oauth2_server.begin_authorization(request.query_params, request.headers)
    except OAuthError as e:
        return error_response(e)
    except StoreError as e:
        return server_error_response(e)

    grant = prompt.grant
    selected = set(grant.scopes) if grant.scopes is not None else set(ScopeCategory)
    return render_template(
        "authorize.html",
        {
            "client_name": prompt.client.client_name,
            "redirect_uri": prompt.request.redirect_uri,
            "state": prompt.state,
            "preset": grant.preset.value,
            "presets": [
                {"value": p.value, "label": label, "description": PRESET_DESCRIPTIONS[p]}
                for p, label in PRESET_TABS
            ],
            "categories": [
                {
                    "value": c.value,
                    "label": c.label,
                    "description": c.description,
                    "sensitive": c.sensitive,
                    "checked": c in selected,
                }
                for c in ScopeCategory
            ],
            "project_id": grant.project_id or "",
            "protect_production": grant.protect_production,
            "write_requested": SCOPE_WRITE in prompt.request.scope or not prompt.request.scope,
            "read_only": prompt.read_only,
            "locked": prompt.locked,
        },
    )


@track_request("consent")
async def authorize_post(request: Request, oauth2_server: OAuth2Server):
    """Authorization endpoint (POST) - processes the consent decision."""
    form = await request.form()

    scopes = [s for s in form.getlist("scopes") if s] or [SCOPE_READ]
    if form.get("write_scope"):
        scopes.append(SCOPE_WRITE)

    decision = ConsentDecision(
        state=form.get("state") or "",
        approved=form.get("action", "approve") != "deny",
        grant=grant_from_form(
            preset=form.get("preset"),
            scope_categories=form.getlist("scope_categories"),
            project_id=form.get("project_id"),
            protect_production=bool(form.get("protect_production")),
        ),
        scopes=scopes,
    )

    try:
        redirect_url = await oauth2_server.complete_consent(decision)
    except OAuthError as e:
        return error_response(e)

    return RedirectResponse(url=redirect_url, status_code=302)


@track_request("callback")
async def callback(request: Request, oauth2_server: OAuth2Server):
    """Upstream redirect target: mints the downstream code and returns to the client."""
    try:
        redirect_url = await oauth2_server.handle_callback(
            current_url=str(request.url),
            state=request.query_params.get("state"),
            code=request.query_params.get("code"),
        )
    except OAuthError as e:
        return error_response(e)
    except StoreError as e:
        return server_error_response(e)

    return RedirectResponse(url=redirect_url, status_code=302)


@track_request("token")
async def token_endpoint(request: Request, oauth2_server: OAuth2Server):
    """Token endpoint - exchanges authorization codes and refresh tokens."""
    if not is_form_encoded(request):
        return JSONResponse(
            {
                "error": "invalid_request",
                "error_description": "Content-Type must be application/x-www-form-urlencoded",
            },
            status_code=415,
            headers=CORS_HEADERS,
        )

    form = await request.form()
    try:
        client_id, client_secret = parse_client_credentials(request, form)
        tokens = await oauth2_server.token(form, client_id, client_secret)
    except OAuthError as e:
        return error_response(e, cors=True)
    except StoreError as e:
        return server_error_response(e)

    return JSONResponse(
        tokens,
        headers={**CORS_HEADERS, "Cache-Control": "no-store", "Pragma": "no-cache"},
    )


@track_request("revoke")
async def revoke_endpoint(request: Request, oauth2_server: OAuth2Server):
    """Token revocation (RFC 7009)."""
    form = await request.form()
    try:
        client_id, client_secret = parse_client_credentials(request, form)
        client = await oauth2_server.clients.authenticate(client_id, client_secret)
        await oauth2_server.revoke(client, form.get("token"))
    except OAuthError as e:
        return error_response(e, cors=True)
    except StoreError as e:
        return server_error_response(e)

    return Response(status_code=200, headers=CORS_HEADERS)


async def list_tools_endpoint(request: Request, oauth2_server: OAuth2Server):
    """Preview the tools visible for the given bearer and override headers."""
    stored_grant = None
    scopes = None
    token = bearer_token(request)
    if token:
        try:
            access = await oauth2_server.load_access_token(token)
        except StoreError as e:
            return server_error_response(e)
        if access is not None:
            stored_grant = access.grant
            scopes = access.scopes

    listing = list_tools(request.headers, stored_grant=stored_grant, scopes=scopes)
    return JSONResponse(listing.to_dict(), headers=CORS_HEADERS)
