"""
KnowledgeMCP Server - project knowledge for AI coding sessions.

NOTE: On Windows, stdio may hang. Set PYTHONUNBUFFERED=1 or run with -u flag.

Captures checkpoints, checklists, technical debt, insights and work notes per
workspace, relates them with typed edges, and searches them with relevance
ranking shaped to a token budget.

Tools:
- store_knowledge: Store a TechnicalDebt, Insight or WorkNote
- find_knowledge: Ranked search with temporal scoring and token budgeting
- search_cross_project: find_knowledge across several (or all) workspaces
- get_knowledge / update_knowledge / archive_knowledge / delete_knowledge
- create_relationship / get_relationships / get_relationship_graph / delete_relationship
- save_checkpoint / get_checkpoint / list_checkpoints
- create_checklist / get_checklist / list_checklists / update_checklist_item
- get_overflow: Read a full result set offloaded by a truncated search
- get_timeline: Recent records grouped by day
- get_workspaces: Workspaces with record counts
"""

import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

try:
    from mcp.server.fastmcp import FastMCP
except ImportError:
    print("ERROR: mcp not installed. Run: pip install mcp", file=sys.stderr)
    sys.exit(1)

from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import DatabaseManager
from .errors import KnowledgeError, StoreUnavailable
from .knowledge import KnowledgeService
from .logging_config import configure_logging, with_request_id

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("KnowledgeMCP")

_service: Optional[KnowledgeService] = None
_service_lock = asyncio.Lock()


async def get_service() -> KnowledgeService:
    """
    Get the shared KnowledgeService, creating the database on first use.

    Initialization is lazy so the async engine is created inside the event
    loop FastMCP runs.
    """
    global _service
    if _service is not None:
        return _service

    async with _service_lock:
        if _service is None:
            db = DatabaseManager(settings.get_storage_path(), settings.db_name)
            await db.init_db()
            _service = KnowledgeService(db)
            logger.info(f"Knowledge store ready at {db.db_path}")
    return _service


async def close_service():
    global _service
    if _service is not None:
        await _service.close()
        _service = None


def _failure(operation: str, error: Exception) -> Dict[str, Any]:
    """Turn a failure into the error dict returned to the caller."""
    if isinstance(error, KnowledgeError):
        if error.operation is None:
            error.operation = operation
        logger.info(f"{operation} failed: {error.code} {error.message}")
        return error.to_dict()
    logger.error(f"{operation} failed in the store: {error}")
    return StoreUnavailable(f"Store failed during {operation}: {error}", operation=operation).to_dict()


# ============================================================================
# Records
# ============================================================================

@mcp.tool()
@with_request_id
async def store_knowledge(
    kind: str,
    content: str,
    tags: Optional[List[str]] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    workspace: Optional[str] = None
) -> Dict[str, Any]:
    """
    Store a piece of project knowledge.

    Args:
        kind: TechnicalDebt, Insight (or ProjectInsight) or WorkNote.
              Use save_checkpoint / create_checklist for the other kinds.
        content: The knowledge itself
        tags: Optional tags for filtering
        status: Optional free-form status (e.g. "open", "resolved")
        priority: Optional free-form priority (e.g. "high")
        metadata: Optional extra attributes stored with the record
        workspace: Workspace to store into (default: current project)

    Returns:
        The stored record
    """
    try:
        service = await get_service()
        record = await service.store_knowledge(
            kind, content, tags=tags, status=status, priority=priority,
            attributes=metadata, workspace=workspace
        )
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("store_knowledge", e)
    return {"status": "stored", "record": record.to_dict()}


@mcp.tool()
@with_request_id
async def find_knowledge(
    query: str = "",
    workspace: Optional[str] = None,
    kinds: Optional[List[str]] = None,
    tags: Optional[List[str]] = None,
    statuses: Optional[List[str]] = None,
    priorities: Optional[List[str]] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    include_archived: Optional[bool] = None,
    temporal_scoring: str = "default",
    order_by: Optional[str] = None,
    descending: Optional[bool] = None,
    boost_frequent: Optional[bool] = None,
    max_results: Optional[int] = None,
    token_budget: Optional[int] = None,
    filters: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Search knowledge, ranked by text match, recency and access frequency.

    The query may carry field filters such as ``type:Checklist`` or
    ``tag:auth``. When the results exceed the token budget, a preview is
    returned together with an overflow_handle for get_overflow.

    Args:
        query: Free text plus optional field:value filters
        workspace: Workspace to search (default: current project)
        kinds: Restrict to these kinds
        tags: Records must carry all of these tags
        statuses: Restrict to these statuses
        priorities: Restrict to these priorities
        since: ISO timestamp lower bound on creation time
        until: ISO timestamp upper bound on creation time
        include_archived: Include archived records (overrides an archived: token)
        temporal_scoring: none, default, aggressive or gentle
        order_by: Sort field when temporal_scoring is none
                  (created, modified, accessed, access_count, id; default created)
        descending: Sort direction when temporal_scoring is none (default true)
        boost_frequent: Let frequently read records rank higher (default false)
        max_results: Maximum records to rank and return (at least 1)
        token_budget: Approximate token ceiling for the response
        filters: Extra filters; unknown keys are ignored

    Returns:
        items, total_count, truncated, overflow_handle (when truncated),
        warnings, summary and next_actions
    """
    merged = dict(filters or {})
    merged.update({
        key: value for key, value in {
            "kinds": kinds,
            "tags": tags,
            "statuses": statuses,
            "priorities": priorities,
            "since": since,
            "until": until,
        }.items() if value
    })
    # Unset arguments leave query tokens and explicit filters alone
    for key, value in (
        ("include_archived", include_archived),
        ("order_by", order_by),
        ("descending", descending),
        ("boost_frequent", boost_frequent),
    ):
        if value is not None:
            merged.setdefault(key, value)

    try:
        service = await get_service()
        return await service.search(
            query, workspace=workspace, filters=merged, max_results=max_results,
            mode=temporal_scoring, token_budget=token_budget
        )
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("find_knowledge", e)


@mcp.tool()
@with_request_id
async def search_cross_project(
    query: str = "",
    workspaces: Optional[List[str]] = None,
    kinds: Optional[List[str]] = None,
    max_results: Optional[int] = None,
    token_budget: Optional[int] = None
) -> Dict[str, Any]:
    """
    Search several workspaces at once.

    Args:
        query: Free text plus optional field:value filters
        workspaces: Workspaces to search (default: every known workspace)
        kinds: Restrict to these kinds
        max_results: Maximum records to rank and return
        token_budget: Approximate token ceiling for the response
    """
    try:
        service = await get_service()
        if not workspaces:
            workspaces = [w["workspace"] for w in await service.get_workspaces()]
        if not workspaces:
            return {"items": [], "total_count": 0, "truncated": False, "workspaces": [],
                    "warnings": [], "summary": "No workspaces have any knowledge yet", "next_actions": []}
        filters: Dict[str, Any] = {"workspaces": workspaces}
        if kinds:
            filters["kinds"] = kinds
        result = await service.search(query, filters=filters, max_results=max_results, token_budget=token_budget)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("search_cross_project", e)
    result["workspaces"] = workspaces
    return result


@mcp.tool()
@with_request_id
async def get_knowledge(record_id: str) -> Dict[str, Any]:
    """Fetch a record by id (archived records included)."""
    try:
        service = await get_service()
        record = await service.get_knowledge(record_id)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("get_knowledge", e)
    return record.to_dict()


@mcp.tool()
@with_request_id
async def update_knowledge(
    record_id: str,
    content: Optional[str] = None,
    tags: Optional[List[str]] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None
) -> Dict[str, Any]:
    """
    Update a record's content, tags, status or priority.

    Only the fields given are changed; the record's kind never changes.
    """
    try:
        service = await get_service()
        record = await service.update_knowledge(
            record_id, body=content, tags=tags, status=status, priority=priority
        )
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("update_knowledge", e)
    return {"status": "updated", "record": record.to_dict()}


@mcp.tool()
@with_request_id
async def archive_knowledge(record_id: str, archived: bool = True) -> Dict[str, Any]:
    """Archive a record (hidden from search by default), or restore it with archived=False."""
    try:
        service = await get_service()
        record = await service.archive_knowledge(record_id, archived)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("archive_knowledge", e)
    return {"status": "archived" if archived else "restored", "record": record.to_dict()}


@mcp.tool()
@with_request_id
async def delete_knowledge(record_id: str) -> Dict[str, Any]:
    """Delete a record and every relationship touching it."""
    try:
        service = await get_service()
        await service.delete_knowledge(record_id)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("delete_knowledge", e)
    return {"status": "deleted", "id": record_id}


# ============================================================================
# Relationships
# ============================================================================

@mcp.tool()
@with_request_id
async def create_relationship(
    from_id: str,
    to_id: str,
    relationship_type: str = "relates_to",
    metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Link two records with a typed, directed edge.

    Linking the same (from_id, to_id, relationship_type) again replaces the
    metadata. Common types: relates_to, blocks, parent_of, implements,
    references, supersedes, depends_on.
    """
    try:
        service = await get_service()
        relationship = await service.link(from_id, to_id, relationship_type, metadata)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("create_relationship", e)
    return {"status": "linked", "relationship": relationship.to_dict()}


@mcp.tool()
@with_request_id
async def get_relationships(record_id: str, direction: str = "both") -> Dict[str, Any]:
    """
    List the edges of a record.

    Args:
        record_id: The record to inspect
        direction: outgoing, incoming or both
    """
    try:
        service = await get_service()
        relationships = await service.graph.neighbors(record_id, direction)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("get_relationships", e)
    return {
        "record_id": record_id,
        "direction": direction,
        "relationships": [r.to_dict() for r in relationships],
        "count": len(relationships),
    }


@mcp.tool()
@with_request_id
async def get_relationship_graph(record_id: str, max_depth: int = 2, direction: str = "both") -> Dict[str, Any]:
    """
    Walk the relationship graph breadth-first from a record.

    Returns each reachable id (within max_depth hops) mapped to the ids it
    is directly connected to.
    """
    try:
        service = await get_service()
        graph = await service.graph.expand(record_id, max_depth, direction)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("get_relationship_graph", e)
    return {"record_id": record_id, "max_depth": max_depth, "graph": graph, "node_count": len(graph)}


@mcp.tool()
@with_request_id
async def delete_relationship(
    from_id: str,
    to_id: str,
    relationship_type: Optional[str] = None
) -> Dict[str, Any]:
    """Remove one typed edge, or all edges from from_id to to_id when no type is given."""
    try:
        service = await get_service()
        removed = await service.graph.unlink(from_id, to_id, relationship_type)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("delete_relationship", e)
    return {
        "status": "unlinked" if removed else "not_found",
        "from_id": from_id,
        "to_id": to_id,
        "relationship_type": relationship_type,
        "removed_count": removed,
    }


# ============================================================================
# Checkpoints
# ============================================================================

@mcp.tool()
@with_request_id
async def save_checkpoint(
    content: str,
    session_id: Optional[str] = None,
    active_files: Optional[List[str]] = None,
    workspace: Optional[str] = None
) -> Dict[str, Any]:
    """
    Save a session checkpoint.

    Checkpoints in a session are numbered 1, 2, 3... A session id is
    generated when none is given; pass it back to continue the session.
    """
    try:
        service = await get_service()
        record = await service.save_checkpoint(content, session_id, active_files, workspace)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("save_checkpoint", e)
    return {
        "id": record.id,
        "session_id": record.payload.session_id,
        "sequence_number": record.payload.sequence_number,
        "created_at": record.to_dict()["created_at"],
    }


@mcp.tool()
@with_request_id
async def get_checkpoint(
    checkpoint_id: Optional[str] = None,
    session_id: Optional[str] = None,
    workspace: Optional[str] = None
) -> Dict[str, Any]:
    """Get a checkpoint by id, else the latest for session_id, else the latest overall."""
    try:
        service = await get_service()
        record = await service.get_checkpoint(checkpoint_id, session_id, workspace)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("get_checkpoint", e)
    return record.to_dict()


@mcp.tool()
@with_request_id
async def list_checkpoints(
    session_id: Optional[str] = None,
    workspace: Optional[str] = None,
    max_results: Optional[int] = None
) -> Dict[str, Any]:
    """List checkpoints, newest first, optionally for one session."""
    try:
        service = await get_service()
        records = await service.list_checkpoints(session_id, workspace, max_results)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("list_checkpoints", e)
    return {"checkpoints": [r.to_dict() for r in records], "count": len(records)}


# ============================================================================
# Checklists
# ============================================================================

@mcp.tool()
@with_request_id
async def create_checklist(
    content: str,
    items: List[str],
    parent_checklist_id: Optional[str] = None,
    tags: Optional[List[str]] = None,
    priority: Optional[str] = None,
    workspace: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create a checklist.

    Args:
        content: What the checklist is for
        items: Item texts, in order
        parent_checklist_id: Optional parent checklist (linked with parent_of)
        tags: Optional tags
        priority: Optional priority
        workspace: Workspace to store into (default: current project)
    """
    try:
        service = await get_service()
        record = await service.create_checklist(
            content, items, parent_checklist_id=parent_checklist_id,
            tags=tags, priority=priority, workspace=workspace
        )
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("create_checklist", e)
    return {"status": "created", "checklist": record.to_dict()}


@mcp.tool()
@with_request_id
async def get_checklist(checklist_id: str) -> Dict[str, Any]:
    """Get a checklist with its items and progress."""
    try:
        service = await get_service()
        record = await service.get_checklist(checklist_id)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("get_checklist", e)
    return record.to_dict()


@mcp.tool()
@with_request_id
async def list_checklists(
    include_completed: bool = True,
    workspace: Optional[str] = None,
    max_results: Optional[int] = None
) -> Dict[str, Any]:
    """List checklists, newest first."""
    try:
        service = await get_service()
        records = await service.list_checklists(include_completed, workspace, max_results)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("list_checklists", e)
    return {"checklists": [r.to_dict() for r in records], "count": len(records)}


@mcp.tool()
@with_request_id
async def update_checklist_item(
    checklist_id: str,
    item_id: str,
    is_completed: bool = True
) -> Dict[str, Any]:
    """Mark a checklist item complete (or incomplete) and return the new progress."""
    try:
        service = await get_service()
        return await service.update_checklist_item(checklist_id, item_id, is_completed)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("update_checklist_item", e)


# ============================================================================
# Overflow, timeline, workspaces
# ============================================================================

@mcp.tool()
@with_request_id
async def get_overflow(handle: str) -> Dict[str, Any]:
    """Read the full ranked result set stored under an overflow handle."""
    try:
        service = await get_service()
        return await service.get_overflow(handle)
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("get_overflow", e)


@mcp.tool()
@with_request_id
async def get_timeline(
    days_ago: Optional[int] = None,
    hours_ago: Optional[float] = None,
    kind: Optional[str] = None,
    workspace: Optional[str] = None,
    max_results: Optional[int] = None
) -> Dict[str, Any]:
    """
    Recent records grouped by day, newest first.

    Defaults to the last 7 days. hours_ago takes precedence over days_ago.
    """
    try:
        service = await get_service()
        return await service.get_timeline(
            days_ago=days_ago, hours_ago=hours_ago, kind=kind,
            workspace=workspace, max_results=max_results
        )
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("get_timeline", e)


@mcp.tool()
@with_request_id
async def get_workspaces() -> Dict[str, Any]:
    """List workspaces that hold knowledge, with record counts."""
    try:
        service = await get_service()
        workspaces = await service.get_workspaces()
    except (KnowledgeError, SQLAlchemyError) as e:
        return _failure("get_workspaces", e)
    return {"workspaces": workspaces, "current": settings.get_workspace()}


def main():
    """Run the MCP server."""
    import argparse

    parser = argparse.ArgumentParser(description="KnowledgeMCP Server")
    parser.add_argument(
        "--transport", "-t",
        choices=["stdio", "sse"],
        default="stdio",
        help="Transport type: stdio (default) or sse (HTTP server)"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=8765,
        help="Port for SSE transport (default: 8765)"
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host for SSE transport (default: 127.0.0.1)"
    )
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.structured_logs)

    logger.info("Starting KnowledgeMCP server...")
    logger.info(f"Workspace: {settings.get_workspace()}")
    logger.info(f"Transport: {args.transport}")

    # Database initialization is lazy and happens on the first tool call
    try:
        if args.transport == "sse":
            mcp.settings.host = args.host
            mcp.settings.port = args.port
            logger.info(f"SSE server at http://{args.host}:{args.port}/sse")
            mcp.run(transport="sse")
        else:
            mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise


if __name__ == "__main__":
    main()
