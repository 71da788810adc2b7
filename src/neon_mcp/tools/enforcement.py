"""Tool-call guards applied before a tool body runs."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from neon_mcp.auth.grants import Grant
from neon_mcp.core.exceptions import GrantViolationError
from neon_mcp.tools.access import ToolListing
from neon_mcp.tools.definitions import BRANCH_SENSITIVE_TOOLS, TOOLS_BY_NAME

logger = logging.getLogger(__name__)

# project id -> branches of that project, each with "id" and "name"
BranchLookup = Callable[[str], Awaitable[list[dict[str, Any]]]]


def _blocked(grant: Grant, tool_name: str, label: str) -> GrantViolationError:
    logger.warning("Blocked %s on protected branch %s", tool_name, label)
    return GrantViolationError(
        f"Branch {label} is protected. {tool_name} is not allowed on protected branches "
        f"({', '.join(grant.protected_branches or [])}).",
        tool_name=tool_name,
    )


async def enforce_protected_branches(
    grant: Grant,
    tool_name: str,
    args: dict[str, Any],
    list_branches: BranchLookup | None = None,
) -> None:
    """Block destructive or SQL tools that target a protected branch.

    The branch reference from the tool arguments is compared case-insensitively
    with the protected list. When ``list_branches`` is given and the arguments
    carry a project id, the reference is also resolved to the branch's id and
    name, so the protected list may hold either.

    Raises:
        GrantViolationError: if the targeted branch is protected
    """
    if not grant.protected_branches:
        return
    arg_key = BRANCH_SENSITIVE_TOOLS.get(tool_name)
    if arg_key is None:
        return
    target = args.get(arg_key)
    if not isinstance(target, str) or not target:
        return

    protected = {b.lower() for b in grant.protected_branches}
    ref = target.lower()
    if ref in protected:
        raise _blocked(grant, tool_name, f"'{target}'")

    project_id = args.get("projectId")
    if list_branches is None or not isinstance(project_id, str) or not project_id:
        return

    for branch in await list_branches(project_id):
        branch_id = str(branch.get("id", "")).lower()
        branch_name = str(branch.get("name", "")).lower()
        if ref not in (branch_id, branch_name):
            continue
        if branch_id in protected or branch_name in protected:
            raise _blocked(grant, tool_name, f"'{branch.get('name')}' ({branch.get('id')})")
        return


def inject_project_id(args: dict[str, Any], grant: Grant, tool_name: str | None = None) -> dict[str, Any]:
    """Pin tool arguments to the grant's project in project-scoped mode."""
    if not grant.project_id:
        return args
    if tool_name is not None:
        tool = TOOLS_BY_NAME.get(tool_name)
        if tool is not None and not tool.accepts_project_id:
            return args
    return {**args, "projectId": grant.project_id}


async def check_tool_call(
    listing: ToolListing,
    tool_name: str,
    args: dict[str, Any],
    list_branches: BranchLookup | None = None,
) -> dict[str, Any]:
    """Validate a tool call against the session's listing.

    Returns:
        Arguments with the project id injected when the grant is project-scoped

    Raises:
        GrantViolationError: if the tool is not visible or targets a protected branch
    """
    if not listing.allows(tool_name):
        raise GrantViolationError(
            f"Tool '{tool_name}' is not available for this grant",
            tool_name=tool_name,
        )
    pinned = inject_project_id(args, listing.grant, tool_name)
    await enforce_protected_branches(listing.grant, tool_name, pinned, list_branches)
    return pinned
