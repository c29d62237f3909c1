"""
Code Indexer - splits source files into embeddable chunks and syncs them per project.

The default PatternChunker is a heuristic, language-agnostic stand-in for a
parser: declaration keywords start a chunk, and brace depth, indentation
or the next top-level declaration ends it. Anything implementing the
Chunker protocol can replace it without touching the sync or search code.
"""

import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import delete, select

from . import vectors
from .config import Settings, settings as default_settings
from .database import DatabaseManager
from .embeddings import EmbeddingGateway
from .models import CodeChunk
from .qdrant_store import QdrantVectorStore

logger = logging.getLogger(__name__)

FUNCTION_MAX_LINES = 200
CLASS_MAX_LINES = 300
CONTEXT_SCAN_LINES = 50
MODULE_MAX_CHARS = 2000

_MODIFIERS = (
    r"(?:(?:export|default|public|private|protected|internal|static|async|abstract|final|"
    r"sealed|partial|open|override|declare|pub(?:\([\w:]+\))?|unsafe|const)\s+)*"
)

CLASS_PATTERNS = [
    re.compile(rf"^{_MODIFIERS}class\s+(\w+)"),
    re.compile(rf"^{_MODIFIERS}interface\s+(\w+)"),
    re.compile(rf"^{_MODIFIERS}struct\s+(\w+)"),
    re.compile(r"^type\s+(\w+)\s+(?:struct|interface)\b"),
    re.compile(rf"^{_MODIFIERS}enum\s+(\w+)"),
    re.compile(rf"^{_MODIFIERS}type\s+(\w+)\s*(?:<[^>]*>)?\s*="),
]

FUNCTION_PATTERNS = [
    re.compile(rf"^{_MODIFIERS}function\b\s*\*?\s*(\w+)"),
    re.compile(rf"^{_MODIFIERS}def\s+(\w+)"),
    re.compile(rf"^{_MODIFIERS}func\s+(?:\([^)]*\)\s*)?(\w+)"),
    re.compile(rf"^{_MODIFIERS}fn\s+(\w+)"),
    re.compile(r"^(?:(?:export|const|let|var)\s+)*(\w+)\s*=\s*(?:async\s+)?function\b"),
    re.compile(r"^(?:(?:export|const|let|var)\s+)*(\w+)\s*=\s*(?:async\s+)?(?:\([^)]*\)|\w+)\s*=>"),
    re.compile(r"^(\w+)\s*:\s*(?:async\s+)?function\b"),
    re.compile(r"^(?:public|private|protected)\s+(?:static\s+)?(?:[\w<>\[\],]+\s+)+(\w+)\s*\("),
]

_COMMENT_PREFIXES = ("//", "/*", "*", "#", "--")
_CLOSERS = ("}", ")", "]", "{")
_IMPORT_LINE = re.compile(r"^(?:import|from|require|use|using|include|#include|package)\b|\brequire\(")

_DEPENDENCY_PATTERNS = [
    re.compile(r"""\bfrom\s+['"]([^'"]+)['"]"""),
    re.compile(r"""^import\s+['"]([^'"]+)['"]"""),
    re.compile(r"""\brequire\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"^from\s+([\w.]+)\s+import\b"),
    re.compile(r"^import\s+([\w.]+)(?:\s+as\s+\w+)?\s*$"),
    re.compile(r"^use\s+([\w:]+)"),
    re.compile(r"^using\s+([\w.]+)\s*;"),
    re.compile(r"""^#include\s*[<"]([^>"]+)[>"]"""),
]

# (label, substrings of the lowercased name)
NAME_PATTERNS: List[Tuple[str, Tuple[str, ...]]] = [
    ("event-handler", ("handler", "handle")),
    ("middleware", ("middleware",)),
    ("controller", ("controller",)),
    ("service", ("service",)),
    ("repository", ("repository", "repo")),
    ("error-handler", ("error", "exception")),
    ("authentication", ("auth", "login")),
    ("test", ("test", "spec")),
    ("utility", ("util",)),
    ("helper", ("helper",)),
    ("model", ("model", "schema")),
    ("router", ("route", "router")),
    ("api", ("api",)),
    ("database", ("db", "database")),
    ("cache", ("cache",)),
    ("queue", ("queue",)),
    ("logging", ("logger", "log")),
    ("configuration", ("config",)),
    ("validation", ("validator", "validate")),
]


@dataclass
class Chunk:
    """One extracted unit of code. Lines are 1-based and inclusive."""
    type: str
    name: str
    signature: str
    content: str
    context: str
    start_line: int
    end_line: int
    searchable_text: str
    dependencies: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    patterns: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return self.end_line - self.start_line

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def embedding_text(self, file_path: str) -> str:
        return (
            f"{self.signature or self.name}\n{self.content}\n"
            f"File: {file_path} | Type: {self.type} | Patterns: {', '.join(self.patterns)}"
        )


class Chunker(Protocol):
    def chunk(self, source: str, file_path: str) -> List[Chunk]:
        ...


def _indent(line: str) -> int:
    expanded = line.expandtabs(4)
    return len(expanded) - len(expanded.lstrip())


def _is_comment(stripped: str) -> bool:
    return stripped.startswith(_COMMENT_PREFIXES) and not stripped.startswith("#include")


def match_declaration(line: str) -> Optional[Tuple[str, str]]:
    """Return (chunk_type, name) when `line` opens a class-like or function-like declaration."""
    stripped = line.strip()
    if not stripped or _is_comment(stripped):
        return None
    for pattern in CLASS_PATTERNS:
        match = pattern.match(stripped)
        if match:
            return "class", match.group(1)
    for pattern in FUNCTION_PATTERNS:
        match = pattern.match(stripped)
        if match:
            return "function", match.group(1)
    return None


def detect_patterns(name: str, content: str = "") -> List[str]:
    """Heuristic labels used for filtering only."""
    labels: List[str] = []

    def add(label: str):
        if label not in labels:
            labels.append(label)

    lowered_name = name.lower()
    for label, needles in NAME_PATTERNS:
        if any(needle in lowered_name for needle in needles):
            add(label)

    body = content.lower()
    if body:
        if "try" in body and ("catch" in body or "except" in body):
            add("error-handling")
        if "throw" in body or "raise" in body or "error" in body:
            add("error-handling")
        if "async" in body or "await" in body:
            add("async")
        if "promise" in body:
            add("promise")
        if "export" in body or "module.exports" in body:
            add("module")
        if "import" in body or "require" in body:
            add("dependency")
        if re.search(r"\bclass\b", body):
            add("class-based")
        if re.search(r"\b(function|def)\b", body):
            add("functional")
        if re.search(r"\b(interface|type)\b", body):
            add("typescript")
    return labels


def extract_context(lines: List[str], limit: int = CONTEXT_SCAN_LINES) -> str:
    """Import-like lines and comments from the head of the file."""
    picked = []
    for line in lines[:limit]:
        stripped = line.strip()
        if _IMPORT_LINE.search(stripped) or stripped.startswith(("//", "/*", "#")):
            picked.append(line)
    return "\n".join(picked)


def extract_dependencies(lines: List[str]) -> List[str]:
    found: List[str] = []
    for line in lines:
        stripped = line.strip()
        if not _IMPORT_LINE.search(stripped):
            continue
        for pattern in _DEPENDENCY_PATTERNS:
            match = pattern.search(stripped)
            if match and match.group(1) not in found:
                found.append(match.group(1))
                break
    return found


def _header_end(lines: List[str], start: int, max_scan: int = 20) -> int:
    """Index of the line where the declaration's parameter list closes."""
    depth = 0
    for i in range(start, min(len(lines), start + max_scan)):
        depth += lines[i].count("(") - lines[i].count(")")
        if depth <= 0:
            return i
    return start


def _trim_blank_tail(lines: List[str], start: int, end: int) -> int:
    while end > start + 1 and not lines[end - 1].strip():
        end -= 1
    return end


def find_boundary(lines: List[str], start: int, max_lines: int) -> int:
    """
    Exclusive end index of the chunk starting at `start`.

    Because `start` is 0-based, the return value doubles as the 1-based
    inclusive end line.
    """
    base = _indent(lines[start])
    header = lines[_header_end(lines, start)].split("#")[0].rstrip()
    indent_block = header.endswith(":")
    limit = min(len(lines), start + max_lines)

    braces = 0
    parens = 0
    opened = False

    for i in range(start, limit):
        line = lines[i]
        stripped = line.strip()

        if i > start and stripped and braces <= 0 and parens <= 0:
            at_base = _indent(line) <= base
            if at_base and (indent_block or not opened) and not stripped.startswith(_CLOSERS):
                return _trim_blank_tail(lines, start, i)
            if at_base and match_declaration(line):
                return _trim_blank_tail(lines, start, i)

        if i > start and stripped and _indent(line) == 0 and match_declaration(line) and base == 0:
            # Unbalanced braces must not swallow the next top-level declaration
            return _trim_blank_tail(lines, start, i)

        for char in line:
            if char == "{":
                braces += 1
                opened = True
            elif char == "}":
                braces -= 1
            elif char == "(":
                parens += 1
            elif char == ")":
                parens -= 1

        if not indent_block and opened and braces <= 0 and parens <= 0:
            return i + 1

    return _trim_blank_tail(lines, start, limit)


class PatternChunker:
    """Default chunker: declaration patterns plus semantic-boundary scanning."""

    def __init__(
        self,
        function_max_lines: int = FUNCTION_MAX_LINES,
        class_max_lines: int = CLASS_MAX_LINES,
        module_max_chars: int = MODULE_MAX_CHARS,
    ):
        self.function_max_lines = function_max_lines
        self.class_max_lines = class_max_lines
        self.module_max_chars = module_max_chars

    def chunk(self, source: str, file_path: str) -> List[Chunk]:
        lines = source.splitlines()
        ext = Path(file_path).suffix
        context = extract_context(lines)
        dependencies = extract_dependencies(lines)

        chunks: List[Chunk] = []
        i = 0
        while i < len(lines):
            declaration = match_declaration(lines[i])
            if declaration is None:
                i += 1
                continue

            chunk_type, name = declaration
            cap = self.class_max_lines if chunk_type == "class" else self.function_max_lines
            end = find_boundary(lines, i, cap)
            body = "\n".join(lines[i:end])
            chunks.append(Chunk(
                type=chunk_type,
                name=name,
                signature=lines[i].strip(),
                content=body,
                context=context,
                start_line=i + 1,
                end_line=end,
                searchable_text=f"{name} {chunk_type} {ext}",
                dependencies=list(dependencies),
                exports=[name],
                patterns=detect_patterns(name, body),
            ))
            # Nested declarations stay inside their parent chunk
            i = max(end, i + 1)

        if not chunks:
            name = Path(file_path).name
            content = source[:self.module_max_chars]
            chunks.append(Chunk(
                type="module",
                name=name,
                signature="",
                content=content,
                context="",
                start_line=1,
                end_line=max(len(lines), 1),
                searchable_text=f"{name} module {ext}",
                dependencies=list(dependencies),
                exports=[],
                patterns=detect_patterns(name, content),
            ))

        return chunks


class CodeIndexManager:
    """
    Syncs a project's source tree into the chunk table and vector index.

    Each sync replaces the project's whole chunk set (delete-then-insert);
    nothing is patched incrementally.
    """

    TEST_FILE_RE = re.compile(r"(^test_|_test\.|\.test\.|\.spec\.)")
    TEST_DIRS = {"test", "tests", "__tests__", "spec"}

    def __init__(
        self,
        db: DatabaseManager,
        embedder: EmbeddingGateway,
        vector_store: QdrantVectorStore,
        memory_store,
        chunker: Optional[Chunker] = None,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.embedder = embedder
        self.vector_store = vector_store
        self.memory_store = memory_store
        self.chunker = chunker or PatternChunker()
        self.config = config or default_settings

    def _should_skip(self, path: Path, root: Path) -> bool:
        parts = set(path.relative_to(root).parts[:-1])
        return any(skip in parts for skip in self.config.code_skip_dirs)

    def _is_test_file(self, path: Path, root: Path) -> bool:
        if self.TEST_FILE_RE.search(path.name):
            return True
        return bool(self.TEST_DIRS & set(path.relative_to(root).parts[:-1]))

    def collect_files(self, root: Path, patterns: List[str], include_tests: bool = False) -> List[Path]:
        """Matching files under root, sorted so re-syncs are deterministic."""
        found = set()
        for pattern in patterns:
            for file_path in root.glob(pattern):
                if not file_path.is_file() or self._should_skip(file_path, root):
                    continue
                if not include_tests and self._is_test_file(file_path, root):
                    continue
                if file_path.stat().st_size > self.config.max_file_size:
                    logger.debug(f"Skipping oversized file: {file_path}")
                    continue
                found.add(file_path)
        return sorted(found)

    async def sync_project(
        self,
        project_path: str,
        project_id: str,
        patterns: Optional[List[str]] = None,
        include_tests: bool = False,
        min_chunk_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Re-index every matching file in the project.

        Requires the codebaseMap memory; its id tags the index run.
        Embedding failures, dimension mismatches and vector-store errors
        propagate and leave the previous index intact.
        """
        started = time.perf_counter()
        codebase_map = await self.memory_store.get(project_id, "codebaseMap")
        if codebase_map is None:
            return {
                "error": "CODEBASE_MAP_REQUIRED",
                "message": "Create the codebaseMap memory before syncing code",
            }

        root = Path(project_path).resolve()
        patterns = patterns or list(self.config.code_patterns)
        min_size = self.config.min_chunk_size if min_chunk_size is None else min_chunk_size

        files = self.collect_files(root, patterns, include_tests)
        collected: List[Tuple[str, Chunk]] = []
        for file_path in files:
            try:
                source = file_path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning(f"Could not read {file_path}: {e}")
                continue
            relative = file_path.relative_to(root).as_posix()
            for chunk in self.chunker.chunk(source, relative):
                if chunk.type == "module" or chunk.line_count >= min_size:
                    collected.append((relative, chunk))

        embeddings = await self.embedder.embed_batch(
            [chunk.embedding_text(path) for path, chunk in collected], mode="document"
        )
        for vector in embeddings:
            vectors.validate_dimension(vector, self.vector_store.dimension)

        # Vectors are swapped inside the SQL transaction, so a failed upsert
        # rolls the rows back and the previous index stays whole.
        rows: List[CodeChunk] = []
        async with self.db.get_session() as session:
            result = await session.execute(select(CodeChunk.id).where(CodeChunk.project_id == project_id))
            previous_ids = set(result.scalars().all())
            await session.execute(delete(CodeChunk).where(CodeChunk.project_id == project_id))
            for (path, chunk), vector in zip(collected, embeddings):
                row = CodeChunk(
                    project_id=project_id,
                    codebase_map_id=codebase_map.id,
                    file_path=path,
                    chunk_type=chunk.type,
                    name=chunk.name,
                    signature=chunk.signature,
                    content=chunk.content,
                    context=chunk.context,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    content_vector=vectors.encode(vector),
                    searchable_text=chunk.searchable_text,
                    dependencies=chunk.dependencies,
                    exports=chunk.exports,
                    patterns=chunk.patterns,
                    size=chunk.size,
                )
                session.add(row)
                rows.append(row)
            await session.flush()

            self.vector_store.upsert_many(
                QdrantVectorStore.COLLECTION_CODE,
                [
                    (row.id, vector, {
                        "project_id": project_id,
                        "file_path": row.file_path,
                        "chunk_type": row.chunk_type,
                        "name": row.name,
                    })
                    for row, vector in zip(rows, embeddings)
                ],
            )
            self.vector_store.delete(
                QdrantVectorStore.COLLECTION_CODE,
                sorted(previous_ids - {row.id for row in rows}),
            )

        pattern_counts = Counter(p for _, chunk in collected for p in chunk.patterns)
        duration = round(time.perf_counter() - started, 2)
        logger.info(f"Indexed {len(rows)} chunks from {len(files)} files in {duration}s")

        return {
            "success": True,
            "filesScanned": len(files),
            "chunksIndexed": len(rows),
            "codebaseMapId": codebase_map.id,
            "patterns": dict(pattern_counts.most_common(10)),
            "durationSeconds": duration,
        }
