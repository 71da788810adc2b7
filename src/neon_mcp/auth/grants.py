"""Grant model: presets, scope categories and request-time overrides.

A grant describes what an MCP caller agreed to at consent time: a preset, an
optional list of scope categories (``custom`` preset only), an optional
project restriction and an optional list of protected branches. Grants are
embedded in the signed authorization state, copied onto authorization codes and
tokens, and re-resolved against request headers on every tool-list computation.
"""

from collections.abc import Iterable, Mapping
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from neon_mcp.core.constants import (
    DEFAULT_PROTECTED_BRANCHES,
    HEADER_PRESET,
    HEADER_PROJECT_ID,
    HEADER_PROTECT_PRODUCTION,
    HEADER_READ_ONLY,
    HEADER_READ_ONLY_LEGACY,
    HEADER_SCOPES,
    SCOPE_ALL,
    SCOPE_WRITE,
)


class Preset(str, Enum):
    """Closed set of access presets offered on the consent page."""

    FULL_ACCESS = "full_access"
    PRODUCTION_USE = "production_use"
    LOCAL_DEVELOPMENT = "local_development"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str | None) -> "Preset | None":
        if value is None:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class ScopeCategory(str, Enum):
    """Tool categories selectable under the ``custom`` preset."""

    PROJECTS = "projects"
    BRANCHES = "branches"
    SCHEMA = "schema"
    QUERYING = "querying"
    PERFORMANCE = "performance"
    NEON_AUTH = "neon_auth"
    DOCS = "docs"

    @property
    def label(self) -> str:
        return _CATEGORY_INFO[self][0]

    @property
    def description(self) -> str:
        return _CATEGORY_INFO[self][1]

    @property
    def sensitive(self) -> bool:
        return self is ScopeCategory.QUERYING

    @property
    def write_capable(self) -> bool:
        """Whether the category contains tools that modify resources."""
        return self not in (ScopeCategory.SCHEMA, ScopeCategory.DOCS)


_CATEGORY_INFO: dict[ScopeCategory, tuple[str, str]] = {
    ScopeCategory.PROJECTS: (
        "Project Management",
        "Create, list, describe and delete projects",
    ),
    ScopeCategory.BRANCHES: (
        "Branch Management",
        "Create, describe, reset and delete branches, fetch connection strings",
    ),
    ScopeCategory.SCHEMA: (
        "Schema and Table Inspection",
        "List tables, describe table schemas and compare branch schemas",
    ),
    ScopeCategory.QUERYING: (
        "SQL Query Execution",
        "Run arbitrary SQL and schema migrations against your databases",
    ),
    ScopeCategory.PERFORMANCE: (
        "Query Performance Optimization",
        "Explain statements, list slow queries and tune queries",
    ),
    ScopeCategory.NEON_AUTH: (
        "Neon Auth",
        "Provision Neon Auth and the Data API",
    ),
    ScopeCategory.DOCS: (
        "Documentation and Resources",
        "Browse Neon documentation and guides",
    ),
}

PRESET_DESCRIPTIONS: dict[Preset, str] = {
    Preset.FULL_ACCESS: "Full access including project deletion.",
    Preset.LOCAL_DEVELOPMENT: (
        "Full development access to existing projects. Project creation and deletion are disabled."
    ),
    Preset.PRODUCTION_USE: "Read-only access to your projects. No writes, no deletions.",
    Preset.CUSTOM: "Pick the tool categories this client may use.",
}


class Grant(BaseModel):
    """Access grant bound to an authorization request and the tokens it produces."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    preset: Preset = Preset.FULL_ACCESS
    scopes: list[ScopeCategory] | None = None
    project_id: str | None = None
    protected_branches: list[str] | None = None

    @property
    def protect_production(self) -> bool:
        return bool(self.protected_branches)

    def to_descriptor(self) -> dict:
        """JSON shape reported by ``/api/list-tools``."""
        return self.model_dump(mode="json", by_alias=True)


DEFAULT_GRANT = Grant()


def parse_scope_categories(values: Iterable[str]) -> list[ScopeCategory]:
    """Parse category names, dropping unknown ones and duplicates."""
    categories: list[ScopeCategory] = []
    for value in values:
        try:
            category = ScopeCategory(value.strip().lower())
        except ValueError:
            continue
        if category not in categories:
            categories.append(category)
    return categories


def parse_protected_branches(value: str | None) -> list[str] | None:
    """Parse a protect-production header or form value.

    ``"true"`` selects the default production branch names, ``"false"`` or an
    empty value disables protection, anything else is a comma separated list.
    """
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned or cleaned.lower() == "false":
        return None
    if cleaned.lower() == "true":
        return list(DEFAULT_PROTECTED_BRANCHES)
    branches = [b.strip() for b in cleaned.split(",") if b.strip()]
    return branches or None


def parse_bool_header(value: str | None) -> bool | None:
    """Header booleans are true only for the literal string "true"."""
    if value is None:
        return None
    return value.strip().lower() == "true"


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup for plain dicts and Starlette Headers."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def resolve_grant(stored: Grant | None, headers: Mapping[str, str]) -> Grant:
    """Layer request headers over a stored grant (or the default grant).

    Resolution order, each layer overriding the previous one: the default
    grant, the grant stored on the access token, then ``X-Neon-Preset``,
    ``X-Neon-Scopes``, ``X-Neon-Project-Id`` and ``X-Neon-Protect-Production``.
    An unknown preset is ignored; a non-empty scopes header forces the custom
    preset and keeps only valid categories.
    """
    grant = (stored or DEFAULT_GRANT).model_copy(deep=True)

    preset = Preset.parse(get_header(headers, HEADER_PRESET))
    if preset is not None:
        grant.preset = preset
        grant.scopes = None

    raw_scopes = get_header(headers, HEADER_SCOPES)
    if raw_scopes is not None and raw_scopes.strip():
        grant.preset = Preset.CUSTOM
        grant.scopes = parse_scope_categories(raw_scopes.split(","))

    project_id = get_header(headers, HEADER_PROJECT_ID)
    if project_id is not None and project_id.strip():
        grant.project_id = project_id.strip()

    protect = get_header(headers, HEADER_PROTECT_PRODUCTION)
    if protect is not None:
        grant.protected_branches = parse_protected_branches(protect)

    return grant


def has_write_scope(scopes: Iterable[str]) -> bool:
    scopes = list(scopes)
    return SCOPE_WRITE in scopes or SCOPE_ALL in scopes


def resolve_read_only(
    headers: Mapping[str, str],
    grant: Grant,
    scopes: Iterable[str] | None = None,
) -> bool:
    """Compute the effective read-only flag.

    Precedence, highest first: ``X-Neon-Read-Only``, the legacy
    ``x-read-only`` header, the ``production_use`` preset, an OAuth scope
    list without ``write`` (or ``*``), and finally ``False``.
    """
    explicit = parse_bool_header(get_header(headers, HEADER_READ_ONLY))
    if explicit is not None:
        return explicit

    legacy = parse_bool_header(get_header(headers, HEADER_READ_ONLY_LEGACY))
    if legacy is not None:
        return legacy

    if grant.preset is Preset.PRODUCTION_USE:
        return True

    scopes = [s for s in (scopes or []) if s]
    if scopes:
        return not has_write_scope(scopes)

    return False


def consent_scopes(
    selected: Iterable[str],
    preset: Preset,
    categories: Iterable[ScopeCategory],
    requested: Iterable[str] = (),
) -> list[str]:
    """OAuth scopes that survive a consent decision.

    ``selected`` are the scopes ticked on the consent form and ``requested``
    the ones the client asked for at ``/authorize``. The form cannot add
    ``write`` or ``*`` beyond the request; an empty request limits nothing.
    ``production_use`` never carries ``write``. Under ``custom`` the write
    scope is kept only when a write-capable category was selected.
    """
    asked = {s for s in requested if s}
    scopes: list[str] = []
    for scope in selected:
        if not scope or scope in scopes:
            continue
        if asked and SCOPE_ALL not in asked:
            if scope == SCOPE_ALL or (scope == SCOPE_WRITE and SCOPE_WRITE not in asked):
                continue
        scopes.append(scope)
    drop_write = preset is Preset.PRODUCTION_USE or (
        preset is Preset.CUSTOM and not any(c.write_capable for c in categories)
    )
    if drop_write:
        scopes = [s for s in scopes if s not in (SCOPE_WRITE, SCOPE_ALL)]
    return scopes


def grant_from_form(
    preset: str | None,
    scope_categories: Iterable[str],
    project_id: str | None,
    protect_production: bool,
) -> Grant:
    """Build a grant from the consent form fields."""
    resolved = Preset.parse(preset) or Preset.FULL_ACCESS
    return Grant(
        preset=resolved,
        scopes=parse_scope_categories(scope_categories) if resolved is Preset.CUSTOM else None,
        project_id=(project_id or "").strip() or None,
        protected_branches=list(DEFAULT_PROTECTED_BRANCHES) if protect_production else None,
    )
