"""Catalog of the MCP tools exposed by the Neon MCP server.

Only metadata lives here: names, titles, scope categories and safety flags
used by the access control engine. Tool bodies are implemented by the domain
API layer.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from neon_mcp.auth.grants import ScopeCategory


class ToolAnnotations(BaseModel):
    """MCP tool annotations (hints for clients)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    title: str
    read_only_hint: bool = False
    destructive_hint: bool = False
    idempotent_hint: bool = False
    open_world_hint: bool = False


class ToolDefinition(BaseModel):
    """A tool the server can expose."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    title: str
    description: str
    scope: ScopeCategory | None = None  # None = not tied to a category
    read_only_safe: bool = False
    accepts_project_id: bool = True
    annotations: ToolAnnotations

    def to_listing(self) -> dict:
        return self.model_dump(
            mode="json",
            by_alias=True,
            include={"name", "title", "description", "scope", "read_only_safe"},
        )


def _tool(
    name: str,
    title: str,
    description: str,
    scope: ScopeCategory | None,
    read_only_safe: bool,
    destructive: bool = False,
    accepts_project_id: bool = True,
) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        title=title,
        description=description,
        scope=scope,
        read_only_safe=read_only_safe,
        accepts_project_id=accepts_project_id,
        annotations=ToolAnnotations(
            title=title,
            read_only_hint=read_only_safe,
            destructive_hint=destructive,
            idempotent_hint=read_only_safe,
            open_world_hint=False,
        ),
    )


_P = ScopeCategory.PROJECTS
_B = ScopeCategory.BRANCHES
_S = ScopeCategory.SCHEMA
_Q = ScopeCategory.QUERYING
_PERF = ScopeCategory.PERFORMANCE
_AUTH = ScopeCategory.NEON_AUTH
_D = ScopeCategory.DOCS

TOOL_DEFINITIONS: tuple[ToolDefinition, ...] = (
    # Projects
    _tool("list_projects", "List projects", "Lists the projects in the account or organization.", _P, True, accepts_project_id=False),
    _tool("list_organizations", "List organizations", "Lists the organizations the caller belongs to.", _P, True, accepts_project_id=False),
    _tool("list_shared_projects", "List shared projects", "Lists projects shared with the caller.", _P, True, accepts_project_id=False),
    _tool("describe_project", "Describe project", "Describes a project, its branches and databases.", _P, True),
    _tool("create_project", "Create project", "Creates a new Neon project.", _P, False, accepts_project_id=False),
    _tool("delete_project", "Delete project", "Deletes a Neon project and all of its data.", _P, False, destructive=True),
    # Branches
    _tool("create_branch", "Create branch", "Creates a branch in a project.", _B, False),
    _tool("delete_branch", "Delete branch", "Deletes a branch from a project.", _B, False, destructive=True),
    _tool("describe_branch", "Describe branch", "Describes a branch and its databases.", _B, True),
    _tool("reset_from_parent", "Reset branch from parent", "Resets a branch to the latest state of its parent.", _B, False, destructive=True),
    _tool("get_connection_string", "Get connection string", "Returns a Postgres connection string for a branch.", _B, True),
    _tool("list_branch_computes", "List branch computes", "Lists the compute endpoints of a project or branch.", _B, True),
    # Schema
    _tool("get_database_tables", "Get database tables", "Lists the tables of a database.", _S, True),
    _tool("describe_table_schema", "Describe table schema", "Describes the columns and indexes of a table.", _S, True),
    _tool("compare_database_schema", "Compare database schema", "Shows the schema diff between a branch and its parent.", _S, True),
    # Querying
    _tool("run_sql", "Run SQL", "Executes a single SQL statement.", _Q, True),
    _tool("run_sql_transaction", "Run SQL transaction", "Executes several SQL statements in one transaction.", _Q, True),
    _tool("prepare_database_migration", "Prepare database migration", "Applies a migration on a temporary branch for review.", _Q, False),
    _tool("complete_database_migration", "Complete database migration", "Applies a reviewed migration to the parent branch.", _Q, False),
    # Performance
    _tool("explain_sql_statement", "Explain SQL statement", "Returns the execution plan of a statement.", _PERF, True),
    _tool("list_slow_queries", "List slow queries", "Lists the slowest queries recorded by pg_stat_statements.", _PERF, True),
    _tool("prepare_query_tuning", "Prepare query tuning", "Analyzes a slow query on a temporary branch.", _PERF, False),
    _tool("complete_query_tuning", "Complete query tuning", "Applies or discards suggested tuning changes.", _PERF, False),
    # Neon Auth
    _tool("provision_neon_auth", "Provision Neon Auth", "Provisions Neon Auth for a branch.", _AUTH, False),
    _tool("provision_neon_data_api", "Provision Neon Data API", "Provisions the Neon Data API for a branch.", _AUTH, False),
    # Docs
    _tool("list_docs_resources", "List docs resources", "Lists available Neon documentation pages.", _D, True, accepts_project_id=False),
    _tool("get_doc_resource", "Get doc resource", "Fetches a Neon documentation page.", _D, True, accepts_project_id=False),
    # Always available
    _tool("search", "Search", "Searches projects, branches and docs.", None, True, accepts_project_id=False),
    _tool("fetch", "Fetch", "Fetches a resource returned by search.", None, True, accepts_project_id=False),
)

TOOLS_BY_NAME: dict[str, ToolDefinition] = {tool.name: tool for tool in TOOL_DEFINITIONS}

# Tools that make no sense when the grant is pinned to one project
PROJECT_AGNOSTIC_TOOLS = frozenset(
    {
        "list_projects",
        "list_organizations",
        "list_shared_projects",
        "create_project",
        "delete_project",
    }
)

# Organization-destructive tools hidden by the local_development preset
LOCAL_DEVELOPMENT_BLOCKED_TOOLS = frozenset({"create_project", "delete_project"})

ALWAYS_AVAILABLE_TOOLS = frozenset({"search", "fetch"})

# Tool name -> argument holding the target branch id
BRANCH_SENSITIVE_TOOLS: dict[str, str] = {
    "delete_branch": "branchId",
    "reset_from_parent": "branchIdOrName",
    "run_sql": "branchId",
    "run_sql_transaction": "branchId",
    "complete_database_migration": "parentBranchId",
    "complete_query_tuning": "branchId",
}


def tools_in_scope(scope: ScopeCategory) -> list[ToolDefinition]:
    return [tool for tool in TOOL_DEFINITIONS if tool.scope is scope]
