"""
Memory Engineering CLI - admin commands outside an MCP session.

Usage:
    memory-engineering-cli [--json] [--project-path PATH] <command>

    memory-engineering-cli sync-code [--patterns *.py *.ts ...] [--include-tests]
    memory-engineering-cli search <query> [--limit N] [--mode MODE] [--code] [--file-filter TEXT]
    memory-engineering-cli status
    memory-engineering-cli cleanup

Global Options:
    --json              Output as JSON for automation/scripting
    --project-path PATH Project root (default: MEMORY_ENGINEERING_PROJECT_ROOT or cwd)
"""

import sys
import asyncio
import argparse
import json

from .config import settings
from .errors import ConfigurationError, MemoryEngineeringError
from .logging_config import configure_logging
from .qdrant_store import QdrantVectorStore
from .search import CODE_SEARCH_MODES
from .server import ProjectContext, build_context


def safe_print(text: str, file=None) -> None:
    """Print text, replacing characters the terminal cannot encode."""
    output = file or sys.stdout
    try:
        print(text, file=output)
    except UnicodeEncodeError:
        encoding = output.encoding or 'utf-8'
        print(text.encode(encoding, errors='replace').decode(encoding, errors='replace'), file=output)


async def _with_context(project_path: str, action):
    ctx = await build_context(project_path)
    try:
        return await action(ctx)
    finally:
        ctx.vector_store.close()
        await ctx.db.close()


async def run_sync(ctx: ProjectContext, patterns, include_tests: bool) -> dict:
    return await ctx.indexer.sync_project(
        ctx.project_path, ctx.project_id, patterns=patterns, include_tests=include_tests
    )


async def run_search(ctx: ProjectContext, query: str, limit: int, mode: str, code: bool, file_filter) -> dict:
    if code:
        return await ctx.search.search_code(ctx.project_id, query, limit=limit, mode=mode,
                                            file_path_filter=file_filter)
    return await ctx.search.search(ctx.project_id, query, limit=limit, mode=mode)


async def run_status(ctx: ProjectContext) -> dict:
    return {
        "project": ctx.project_path,
        "projectId": ctx.project_id,
        "storage": ctx.storage_path,
        "collections": ctx.vector_store.status(),
        "embeddedMemories": ctx.vector_store.count(QdrantVectorStore.COLLECTION_MEMORIES, ctx.project_id),
        "embeddedChunks": ctx.vector_store.count(QdrantVectorStore.COLLECTION_CODE, ctx.project_id),
        "memories": await ctx.memory.list_memories(ctx.project_id),
    }


async def run_cleanup(ctx: ProjectContext) -> dict:
    return {
        "expiredWorkingMemories": await ctx.tracker.purge_expired(),
        "staleExecutions": await ctx.loop_guard.purge_terminal(),
    }


def format_search(result: dict) -> str:
    lines = [f"{result['count']} results ({result['mode']})"]
    if result.get("fallback"):
        lines[0] += f" - fell back to text search: {result['fallbackReason']}"
    for item in result["results"]:
        source = item["source"]
        if source["type"] == "code":
            label = f"{source['filePath']}:{source['startLine']}-{source['endLine']} {source['name']}"
        else:
            label = f"{source['memoryName']} v{source['version']}"
        lines.append(f"  [{item['score']:.4f}] {label}")
        lines.append(f"      {item['preview']}")
    return "\n".join(lines)


def format_status(result: dict) -> str:
    lines = [f"Project: {result['project']} ({result['projectId']})", f"Storage: {result['storage']}"]
    for name, info in result["collections"].items():
        lines.append(f"  {name}: {info['status']} ({info['points']} points)")
    lines.append(f"Embedded memories: {result['embeddedMemories']}")
    lines.append(f"Embedded code chunks: {result['embeddedChunks']}")
    for mem in result["memories"]:
        meta = mem["metadata"]
        lines.append(f"  {mem['memoryName']}: v{meta['version']}, {mem['size']} chars, {meta['accessCount']} reads")
    return "\n".join(lines)


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Memory Engineering CLI")

    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("--project-path", help="Project root path")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    sync_parser = subparsers.add_parser("sync-code", help="Re-index the project's source code")
    sync_parser.add_argument("--patterns", nargs="*", default=None,
                             help="Glob patterns for files (e.g., **/*.py **/*.ts)")
    sync_parser.add_argument("--include-tests", action="store_true", help="Index test files too")

    search_parser = subparsers.add_parser("search", help="Search memories (or code with --code)")
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument("--limit", type=int, default=10, help="Max results (1-50)")
    search_parser.add_argument("--mode", default="hybrid", choices=list(CODE_SEARCH_MODES),
                               help="Search mode")
    search_parser.add_argument("--code", action="store_true", help="Search indexed code instead of memories")
    search_parser.add_argument("--file-filter", default=None, help="Only code paths containing this")

    subparsers.add_parser("status", help="Show index readiness and counts")
    subparsers.add_parser("cleanup", help="Purge expired working memories and stale executions")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(settings.log_level)
    project_path = args.project_path or settings.project_root

    if args.command == "sync-code":
        try:
            settings.validate_for_startup()
        except ConfigurationError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            sys.exit(1)

    try:
        if args.command == "sync-code":
            result = asyncio.run(_with_context(
                project_path, lambda ctx: run_sync(ctx, args.patterns, args.include_tests)))
        elif args.command == "search":
            result = asyncio.run(_with_context(
                project_path,
                lambda ctx: run_search(ctx, args.query, args.limit, args.mode, args.code, args.file_filter)))
        elif args.command == "status":
            result = asyncio.run(_with_context(project_path, run_status))
        else:
            result = asyncio.run(_with_context(project_path, run_cleanup))
    except MemoryEngineeringError as e:
        if args.json:
            print(json.dumps({"error": type(e).__name__, "message": str(e)}))
        else:
            print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result, default=str))
    elif "error" in result:
        safe_print(f"ERROR [{result['error']}]: {result['message']}", file=sys.stderr)
        sys.exit(1)
    elif args.command == "search":
        safe_print(format_search(result))
    elif args.command == "status":
        safe_print(format_status(result))
    elif args.command == "sync-code":
        print(f"Indexed {result['chunksIndexed']} chunks from {result['filesScanned']} files "
              f"in {result['durationSeconds']}s")
        if result.get("patterns"):
            print("Patterns: " + ", ".join(f"{name} ({count})" for name, count in result["patterns"].items()))
    else:
        print(f"Removed {result['expiredWorkingMemories']} expired working memories, "
              f"{result['staleExecutions']} stale executions")

    if args.json and "error" in result:
        sys.exit(1)


if __name__ == "__main__":
    main()
