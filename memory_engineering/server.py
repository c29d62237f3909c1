"""
Memory Engineering Server - MCP tools over the memory and code-retrieval engine.

Tools:
- read_memory / read_all_memories / list_memories: Read core memories (reads count as access)
- update_memory: Create or replace a memory (dependency and quality gated)
- delete_memory: Remove a memory with no dependents
- remember / recall: Ephemeral working memories (30 day TTL)
- search: Hybrid search over memories
- search_code / sync_code: Index and search the project's source code
- check_repeated_call / start_execution / update_execution: Loop guard for agent tasks
- cleanup: Purge expired working memories and stale execution states
- index_status: Vector index readiness and counts

Every tool takes project_path. Each call resolves its own ProjectContext
and passes it down explicitly; no session state lives at module level.
"""

import sys
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from .config import settings
from .code_indexer import CodeIndexManager
from .database import DatabaseManager
from .embeddings import EmbeddingGateway
from .errors import ConfigurationError, EmbeddingError, IndexNotReadyError
from .logging_config import configure_logging, current_request_id, with_request_id
from .memory import MemoryStore
from .qdrant_store import QdrantVectorStore
from .search import HybridSearchEngine
from .tracking import AccessTracker, LoopGuard
from .validator import QualityValidator

logger = logging.getLogger(__name__)

mcp = FastMCP("MemoryEngineering")


@dataclass
class ProjectContext:
    """Everything one project's tool calls need, created once and cached."""
    project_path: str
    project_id: str
    storage_path: str
    db: DatabaseManager
    vector_store: QdrantVectorStore
    memory: MemoryStore
    search: HybridSearchEngine
    indexer: CodeIndexManager
    tracker: AccessTracker
    loop_guard: LoopGuard


_project_contexts: Dict[str, ProjectContext] = {}
_context_locks: Dict[str, asyncio.Lock] = {}
_contexts_lock = asyncio.Lock()


def _normalize_path(path: str) -> str:
    return str(Path(path).resolve())


def project_id_for(project_path: str) -> str:
    """Stable id for a project root."""
    return hashlib.sha256(_normalize_path(project_path).encode("utf-8")).hexdigest()[:16]


async def build_context(project_path: str, vector_path: Optional[str] = None) -> ProjectContext:
    """Wire up storage and engines for one project and wait for the vector index."""
    normalized = _normalize_path(project_path)
    storage_path = settings.get_storage_path(normalized)

    db = DatabaseManager(storage_path)
    await db.init_db()

    try:
        vector_store = QdrantVectorStore(
            vector_path or settings.get_qdrant_path(normalized),
            dimension=settings.embedding_dimensions,
        )
    except ConfigurationError:
        await db.close()
        raise
    await vector_store.ensure_ready(settings.index_ready_attempts, settings.index_ready_interval)

    embedder = EmbeddingGateway(settings)
    tracker = AccessTracker(db, settings.working_memory_ttl_days)
    memory = MemoryStore(db, embedder, vector_store, QualityValidator(settings.min_quality_grade), tracker)

    return ProjectContext(
        project_path=normalized,
        project_id=project_id_for(normalized),
        storage_path=storage_path,
        db=db,
        vector_store=vector_store,
        memory=memory,
        search=HybridSearchEngine(db, embedder, vector_store, tracker, settings),
        indexer=CodeIndexManager(db, embedder, vector_store, memory, config=settings),
        tracker=tracker,
        loop_guard=LoopGuard(
            db,
            max_calls=settings.loop_max_calls,
            window_minutes=settings.loop_window_minutes,
            terminal_ttl_hours=settings.terminal_state_ttl_hours,
        ),
    )


async def get_project_context(project_path: str) -> ProjectContext:
    """Get or create the context for a project, with per-project locking."""
    normalized = _normalize_path(project_path)
    if normalized in _project_contexts:
        return _project_contexts[normalized]

    async with _contexts_lock:
        lock = _context_locks.setdefault(normalized, asyncio.Lock())

    async with lock:
        if normalized not in _project_contexts:
            _project_contexts[normalized] = await build_context(normalized)
            logger.info(f"Project context ready: {normalized}")
        return _project_contexts[normalized]


def tool_errors(func: Callable) -> Callable:
    """
    Translate failures into structured tool responses.

    Nothing raised inside a tool may take the server down.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except IndexNotReadyError as e:
            return {
                "error": "INDEX_NOT_READY",
                "message": "The search index is still being provisioned. Try again shortly.",
                "retry_after_seconds": e.retry_after,
            }
        except ConfigurationError as e:
            return {"error": "CONFIGURATION_ERROR", "message": str(e)}
        except EmbeddingError as e:
            logger.warning(f"{func.__name__}: embedding provider failed: {e}")
            return {"error": "EMBEDDING_FAILED", "message": str(e)}
        except Exception as e:
            logger.exception(f"{func.__name__} failed")
            return {
                "error": "INTERNAL_ERROR",
                "message": f"{type(e).__name__}: {e}",
                "request_id": current_request_id(),
            }

    return wrapper


def _missing_project_path() -> Dict[str, Any]:
    return {
        "error": "MISSING_PROJECT_PATH",
        "message": "project_path is required. Pass the project's root directory.",
    }


@mcp.tool()
@with_request_id
@tool_errors
async def read_memory(memory_name: str, project_path: str = "") -> Dict[str, Any]:
    """
    Read one core memory (projectbrief, productContext, systemPatterns,
    techContext, activeContext, progress, codebaseMap).

    Counts as an access. A memory that does not exist yet returns NOT_FOUND
    with what it should contain.
    """
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.memory.read(ctx.project_id, memory_name)


@mcp.tool()
@with_request_id
@tool_errors
async def read_all_memories(project_path: str = "") -> Dict[str, Any]:
    """Read every core memory in hierarchy order, plus the ones still missing."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.memory.read_all(ctx.project_id)


@mcp.tool()
@with_request_id
@tool_errors
async def update_memory(
    memory_name: str,
    content: str,
    expected_version: Optional[int] = None,
    project_path: str = ""
) -> Dict[str, Any]:
    """
    Create or replace a core memory.

    Rejected (with guidance) when its dependencies do not exist yet or the
    content grades below the quality threshold. Pass expected_version to
    refuse the write if someone else updated the memory first.
    """
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.memory.update(ctx.project_id, memory_name, content, expected_version)


@mcp.tool()
@with_request_id
@tool_errors
async def list_memories(project_path: str = "") -> Dict[str, Any]:
    """Versions, sizes and access counts of stored memories (does not count as access)."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return {"memories": await ctx.memory.list_memories(ctx.project_id)}


@mcp.tool()
@with_request_id
@tool_errors
async def delete_memory(memory_name: str, project_path: str = "") -> Dict[str, Any]:
    """Delete a memory. Refused while memories that depend on it exist."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.memory.delete(ctx.project_id, memory_name)


@mcp.tool()
@with_request_id
@tool_errors
async def remember(key: str, content: str, project_path: str = "") -> Dict[str, Any]:
    """Store a short-lived working note. Expires after 30 days."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.memory.remember(ctx.project_id, key, content)


@mcp.tool()
@with_request_id
@tool_errors
async def recall(key: str, project_path: str = "") -> Dict[str, Any]:
    """Fetch a working note by key."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.memory.recall(ctx.project_id, key)


@mcp.tool()
@with_request_id
@tool_errors
async def search(
    query: str,
    limit: int = 10,
    mode: str = "hybrid",
    project_path: str = ""
) -> Dict[str, Any]:
    """
    Search memories.

    Args:
        query: Free text
        limit: 1-50 results
        mode: 'hybrid' (default), 'vector' or 'text'. Hybrid falls back to
              text when nothing is embedded yet and reports fallback=True.
    """
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.search.search(ctx.project_id, query, limit=limit, mode=mode)


@mcp.tool()
@with_request_id
@tool_errors
async def search_code(
    query: str,
    limit: int = 10,
    mode: str = "hybrid",
    file_path_filter: Optional[str] = None,
    project_path: str = ""
) -> Dict[str, Any]:
    """
    Search indexed code.

    Args:
        mode: 'hybrid', 'vector', 'text', 'implements' (functions/classes only),
              'uses' (files importing a module) or 'pattern' (e.g. 'service', 'async')
        file_path_filter: Only chunks whose path contains this string
    """
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.search.search_code(
        ctx.project_id, query, limit=limit, mode=mode, file_path_filter=file_path_filter
    )


@mcp.tool()
@with_request_id
@tool_errors
async def sync_code(
    patterns: Optional[List[str]] = None,
    include_tests: bool = False,
    min_chunk_size: Optional[int] = None,
    project_path: str = ""
) -> Dict[str, Any]:
    """
    Re-index the project's source code. Requires the codebaseMap memory.

    The previous index is replaced wholesale.
    """
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.indexer.sync_project(
        ctx.project_path, ctx.project_id,
        patterns=patterns, include_tests=include_tests, min_chunk_size=min_chunk_size,
    )


@mcp.tool()
@with_request_id
@tool_errors
async def check_repeated_call(task_name: str, project_path: str = "") -> Dict[str, Any]:
    """
    Record a call to a long-running task and report whether it is looping.

    isRepeated turns true once the task has been called repeatedly inside the
    loop window; stop and rethink instead of retrying.
    """
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    is_repeated, count = await ctx.loop_guard.check_call(ctx.project_id, task_name)
    return {"taskName": task_name, "isRepeated": is_repeated, "callCount": count}


@mcp.tool()
@with_request_id
@tool_errors
async def start_execution(task_name: str, total_steps: int = 0, project_path: str = "") -> Dict[str, Any]:
    """Begin tracking a long-running task."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return await ctx.loop_guard.start(ctx.project_id, task_name, total_steps)


@mcp.tool()
@with_request_id
@tool_errors
async def update_execution(
    execution_id: str,
    status: Optional[str] = None,
    current_step: Optional[str] = None,
    completed_step: Optional[str] = None,
    error: Optional[str] = None,
    project_path: str = ""
) -> Dict[str, Any]:
    """Advance a tracked task: planning, executing, complete or failed."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    try:
        state = await ctx.loop_guard.update(
            execution_id, status=status, current_step=current_step,
            completed_step=completed_step, error=error,
        )
    except ValueError as e:
        return {"error": "INVALID_STATUS", "message": str(e)}
    if state is None:
        return {"error": "NOT_FOUND", "message": f"No execution {execution_id}"}
    return state


@mcp.tool()
@with_request_id
@tool_errors
async def cleanup(project_path: str = "") -> Dict[str, Any]:
    """Purge expired working memories and execution states finished over 24h ago."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return {
        "expiredWorkingMemories": await ctx.tracker.purge_expired(),
        "staleExecutions": await ctx.loop_guard.purge_terminal(),
    }


@mcp.tool()
@with_request_id
@tool_errors
async def index_status(project_path: str = "") -> Dict[str, Any]:
    """Vector index readiness plus this project's embedded memory and chunk counts."""
    if not project_path:
        return _missing_project_path()
    ctx = await get_project_context(project_path)
    return {
        "collections": ctx.vector_store.status(),
        "embeddedMemories": ctx.vector_store.count(QdrantVectorStore.COLLECTION_MEMORIES, ctx.project_id),
        "embeddedChunks": ctx.vector_store.count(QdrantVectorStore.COLLECTION_CODE, ctx.project_id),
    }


def main():
    """Run the MCP server."""
    import argparse

    parser = argparse.ArgumentParser(description="Memory Engineering MCP Server")
    parser.add_argument(
        "--transport", "-t",
        choices=["stdio", "sse"],
        default="stdio",
        help="Transport type: stdio (default) or sse (HTTP server)"
    )
    parser.add_argument("--port", "-p", type=int, default=8765, help="Port for SSE transport")
    parser.add_argument("--host", default="127.0.0.1", help="Host for SSE transport")
    args = parser.parse_args()

    configure_logging(settings.log_level)

    try:
        settings.validate_for_startup()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logger.info("Starting Memory Engineering server...")
    logger.info(f"Transport: {args.transport}")

    # Project contexts are created lazily inside FastMCP's event loop
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


if __name__ == "__main__":
    main()
