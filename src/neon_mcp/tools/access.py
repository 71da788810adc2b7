"""Tool access control engine.

Turns a grant, an OAuth scope list and request headers into the set of tools
an MCP session may see, plus the effective read-only flag. Filtering runs in
three passes: the preset resolver, the project restriction, and the read-only
restriction.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from neon_mcp.auth.grants import Grant, Preset, resolve_grant, resolve_read_only
from neon_mcp.tools.definitions import (
    ALWAYS_AVAILABLE_TOOLS,
    LOCAL_DEVELOPMENT_BLOCKED_TOOLS,
    PROJECT_AGNOSTIC_TOOLS,
    TOOL_DEFINITIONS,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

PresetFilter = Callable[[Grant, list[ToolDefinition]], list[ToolDefinition]]


def _full_access(grant: Grant, tools: list[ToolDefinition]) -> list[ToolDefinition]:
    return list(tools)


def _production_use(grant: Grant, tools: list[ToolDefinition]) -> list[ToolDefinition]:
    return [t for t in tools if t.read_only_safe or t.name in ALWAYS_AVAILABLE_TOOLS]


def _local_development(grant: Grant, tools: list[ToolDefinition]) -> list[ToolDefinition]:
    return [t for t in tools if t.name not in LOCAL_DEVELOPMENT_BLOCKED_TOOLS]


def _custom(grant: Grant, tools: list[ToolDefinition]) -> list[ToolDefinition]:
    if not grant.scopes:
        return [t for t in tools if t.name in ALWAYS_AVAILABLE_TOOLS]
    selected = set(grant.scopes)
    return [
        t
        for t in tools
        if t.name in ALWAYS_AVAILABLE_TOOLS or t.scope is None or t.scope in selected
    ]


PRESET_FILTERS: dict[Preset, PresetFilter] = {
    Preset.FULL_ACCESS: _full_access,
    Preset.PRODUCTION_USE: _production_use,
    Preset.LOCAL_DEVELOPMENT: _local_development,
    Preset.CUSTOM: _custom,
}


def get_available_tools(
    grant: Grant,
    read_only: bool,
    tools: Iterable[ToolDefinition] = TOOL_DEFINITIONS,
) -> list[ToolDefinition]:
    """Filter ``tools`` down to what ``grant`` permits.

    Args:
        grant: Resolved grant for the session
        read_only: Effective read-only flag
        tools: Candidate tools, defaults to the full catalog

    Returns:
        Permitted tools in catalog order
    """
    available = PRESET_FILTERS[grant.preset](grant, list(tools))
    if grant.project_id:
        available = [t for t in available if t.name not in PROJECT_AGNOSTIC_TOOLS]
    if read_only:
        available = [t for t in available if t.read_only_safe]
    return available


def get_access_control_warnings(grant: Grant, read_only: bool) -> list[str]:
    warnings: list[str] = []
    if grant.preset is Preset.PRODUCTION_USE and not read_only:
        warnings.append(
            "⚠️ Warning: the production_use preset is combined with read-only=false. "
            "Write operations stay hidden, but the session is not marked read-only."
        )
    if grant.preset is Preset.CUSTOM and not grant.scopes:
        warnings.append(
            "⚠️ Warning: custom preset selected with no valid scope categories. "
            "Only search and fetch are available."
        )
    return warnings


@dataclass
class ToolListing:
    """Result of a tool-visibility computation for one session."""

    tools: list[ToolDefinition]
    read_only: bool
    grant: Grant
    warnings: list[str] = field(default_factory=list)

    @property
    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]

    def allows(self, tool_name: str) -> bool:
        return any(t.name == tool_name for t in self.tools)

    def to_dict(self) -> dict:
        body = {
            "tools": [t.to_listing() for t in self.tools],
            "readOnly": self.read_only,
            "grant": self.grant.to_descriptor(),
        }
        if self.warnings:
            body["warnings"] = list(self.warnings)
        return body


def list_tools(
    headers: Mapping[str, str],
    stored_grant: Grant | None = None,
    scopes: Iterable[str] | None = None,
) -> ToolListing:
    """Resolve tool visibility for a bearer/headers combination.

    Args:
        headers: Request headers (grant and read-only overrides)
        stored_grant: Grant recorded on the caller's access token, if any
        scopes: OAuth scopes of the caller's access token, if any

    Returns:
        The visible tools, the read-only flag, the resolved grant and warnings
    """
    grant = resolve_grant(stored_grant, headers)
    read_only = resolve_read_only(headers, grant, scopes)
    tools = get_available_tools(grant, read_only)
    warnings = get_access_control_warnings(grant, read_only)
    for warning in warnings:
        logger.warning(warning)
    logger.debug(
        "Resolved %d tools (preset=%s, read_only=%s, project=%s)",
        len(tools),
        grant.preset.value,
        read_only,
        grant.project_id,
    )
    return ToolListing(tools=tools, read_only=read_only, grant=grant, warnings=warnings)
