"""
Hybrid Search Engine - vector + lexical retrieval over memories and code chunks.

Modes:
- text:   FTS5 bm25 ranking only
- vector: Qdrant cosine similarity only
- hybrid: both candidate pools fused with weighted reciprocal rank fusion

Hybrid degrades to text-only (and says so in the response) when the
project has no embeddings yet or the query cannot be embedded.
"""

import logging
import re
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select

from .config import Settings, settings as default_settings
from .database import DatabaseManager
from .embeddings import EmbeddingGateway
from .errors import EmbeddingError
from .models import CodeChunk, MemoryDocument
from .qdrant_store import QdrantVectorStore
from .tracking import AccessTracker

logger = logging.getLogger(__name__)

SEARCH_MODES = ("text", "vector", "hybrid")
CODE_SEARCH_MODES = SEARCH_MODES + ("implements", "uses", "pattern")

PREVIEW_WINDOW = 300
PREVIEW_STEP = 50
SENTENCE_SNAP = 50


def fuse_rankings(
    rankings: Sequence[Tuple[Sequence[Hashable], float]],
    k: int = 60
) -> List[Tuple[Hashable, float]]:
    """
    Weighted reciprocal rank fusion.

    Each ranking contributes weight / (k + rank) for every id it contains
    (rank is 1-based). Equal scores keep first-appearance order across the
    rankings as given, so the output is fully deterministic.
    """
    scores: Dict[Hashable, float] = {}
    first_seen: Dict[Hashable, int] = {}

    for ids, weight in rankings:
        seen_here = set()
        rank = 0
        for doc_id in ids:
            if doc_id in seen_here:
                continue
            seen_here.add(doc_id)
            rank += 1
            scores[doc_id] = scores.get(doc_id, 0.0) + weight / (k + rank)
            if doc_id not in first_seen:
                first_seen[doc_id] = len(first_seen)

    return sorted(
        scores.items(),
        key=lambda item: (-round(item[1], 12), first_seen[item[0]])
    )


def smart_preview(content: str, query: str, length: int = 200) -> str:
    """
    Excerpt centred on the densest cluster of query terms.

    Slides a 300-char window in 50-char steps, keeps the one with the most
    query-term occurrences (earliest wins ties), snaps forward to a sentence
    start if one is close, then clips to `length` characters.
    """
    terms = [t for t in re.findall(r"\w+", query.lower()) if len(t) > 1]
    lowered = content.lower()

    best_start, best_score = 0, 0
    for start in range(0, max(len(content) - PREVIEW_WINDOW // 2, 0), PREVIEW_STEP):
        window = lowered[start:start + PREVIEW_WINDOW]
        score = sum(window.count(term) for term in terms)
        if score > best_score:
            best_start, best_score = start, score

    excerpt = content[best_start:best_start + length]
    sentence = excerpt.find(". ")
    if 0 < sentence < SENTENCE_SNAP:
        excerpt = excerpt[sentence + 2:]

    excerpt = re.sub(r"\s*\n+\s*", " ", excerpt).strip()
    if best_start > 0:
        excerpt = "..." + excerpt
    if best_start + length < len(content):
        excerpt = excerpt + "..."
    return excerpt


def head_preview(content: str, length: int = 200) -> str:
    excerpt = re.sub(r"\s*\n+\s*", " ", content[:length]).strip()
    return excerpt + "..." if len(content) > length else excerpt


class HybridSearchEngine:
    """Answers memory and code queries for one storage backend."""

    def __init__(
        self,
        db: DatabaseManager,
        embedder: EmbeddingGateway,
        vector_store: QdrantVectorStore,
        tracker: Optional[AccessTracker] = None,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.embedder = embedder
        self.vector_store = vector_store
        self.tracker = tracker or AccessTracker(db)
        self.config = config or default_settings

    def _check_request(self, query: str, limit: int, mode: str, modes: Sequence[str]) -> Optional[dict]:
        if not query or not query.strip():
            return {"error": "INVALID_QUERY", "message": "Query cannot be empty"}
        if mode not in modes:
            return {"error": "INVALID_MODE", "message": f"mode must be one of {list(modes)}"}
        if not 1 <= limit <= self.config.search_max_limit:
            return {
                "error": "INVALID_LIMIT",
                "message": f"limit must be between 1 and {self.config.search_max_limit}",
            }
        return None

    async def _rank(
        self,
        collection: str,
        table: str,
        project_id: str,
        query: str,
        limit: int,
        mode: str,
        extra_where: str = "",
        params: Optional[Dict[str, Any]] = None,
        vector_filter=None,
    ) -> Tuple[List[Tuple[int, float]], str, bool, Optional[str]]:
        """
        Shared ranking core.

        Returns (ranked (id, score) pairs, effective mode, fallback, reason).
        vector_filter, when given, post-filters vector candidate ids.
        """
        pool = limit * self.config.search_oversample

        async def text_ranking(size: int):
            return await self.db.fts_search(table, query, project_id, limit=size,
                                            extra_where=extra_where, params=params)

        if mode == "text":
            return (await text_ranking(limit)), "text", False, None

        if self.vector_store.count(collection, project_id) == 0:
            if mode == "vector":
                return [], "vector", False, None
            logger.info(f"No embeddings for {project_id}; hybrid search falling back to text")
            return (await text_ranking(limit)), "text", True, "no_embeddings"

        try:
            query_vector = await self.embedder.embed(query, mode="query")
        except EmbeddingError as e:
            if mode == "vector":
                raise
            logger.warning(f"Query embedding failed; hybrid search falling back to text: {e}")
            return (await text_ranking(limit)), "text", True, "embedding_unavailable"

        vector_hits = self.vector_store.search(collection, query_vector, project_id, limit=pool)
        if vector_filter is not None:
            vector_hits = await vector_filter(vector_hits)

        if mode == "vector":
            return vector_hits[:limit], "vector", False, None

        text_hits = await text_ranking(pool)
        fused = fuse_rankings(
            [
                ([doc_id for doc_id, _ in vector_hits], self.config.hybrid_vector_weight),
                ([doc_id for doc_id, _ in text_hits], self.config.hybrid_text_weight),
            ],
            k=self.config.rrf_k,
        )
        return fused[:limit], "hybrid", False, None

    async def search(
        self,
        project_id: str,
        query: str,
        limit: int = 10,
        mode: str = "hybrid",
    ) -> Dict[str, Any]:
        """
        Search memory documents.

        Every returned document counts as an access.
        """
        invalid = self._check_request(query, limit, mode, SEARCH_MODES)
        if invalid:
            return invalid

        ranked, effective, fallback, reason = await self._rank(
            QdrantVectorStore.COLLECTION_MEMORIES, "memory_documents",
            project_id, query, limit, mode,
        )

        ids = [doc_id for doc_id, _ in ranked]
        async with self.db.get_session() as session:
            result = await session.execute(select(MemoryDocument).where(MemoryDocument.id.in_(ids)))
            docs = {d.id: d for d in result.scalars().all()}

        results = []
        for doc_id, score in ranked:
            doc = docs.get(doc_id)
            if doc is None:
                continue
            results.append({
                "source": {"type": "memory", "id": doc.id, "memoryName": doc.memory_name, "version": doc.version},
                "score": round(score, 6),
                "preview": self._preview(doc.content, query, effective),
            })

        await self.tracker.touch(r["source"]["id"] for r in results)
        logger.info(f"Search completed: {len(results)} results for '{query}' ({effective})")

        return {
            "query": query,
            "mode": effective,
            "requestedMode": mode,
            "fallback": fallback,
            "fallbackReason": reason,
            "count": len(results),
            "results": results,
        }

    async def search_code(
        self,
        project_id: str,
        query: str,
        limit: int = 10,
        mode: str = "hybrid",
        file_path_filter: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Search indexed code chunks.

        Extra modes:
            implements - text search over function/class chunks only
            uses       - chunks whose file imports a module matching `query`
            pattern    - chunks tagged with the pattern label `query`
        """
        invalid = self._check_request(query, limit, mode, CODE_SEARCH_MODES)
        if invalid:
            return invalid

        if mode in ("uses", "pattern"):
            ranked = await self._metadata_matches(project_id, query, limit, mode, file_path_filter)
            effective, fallback, reason = mode, False, None
        else:
            extra_where = ""
            params: Dict[str, Any] = {}
            if file_path_filter:
                # Literal, case-sensitive substring, same test as keep_matching_paths
                extra_where += " AND instr(t.file_path, :file_path) > 0"
                params["file_path"] = file_path_filter
            if mode == "implements":
                extra_where += " AND t.chunk_type IN ('function', 'class')"

            async def keep_matching_paths(hits):
                if not file_path_filter:
                    return hits
                allowed = await self._chunk_paths([doc_id for doc_id, _ in hits])
                return [(i, s) for i, s in hits if file_path_filter in allowed.get(i, "")]

            ranked, effective, fallback, reason = await self._rank(
                QdrantVectorStore.COLLECTION_CODE, "code_chunks",
                project_id, query, limit, "text" if mode == "implements" else mode,
                extra_where=extra_where, params=params, vector_filter=keep_matching_paths,
            )
            if mode == "implements":
                effective = "implements"

        ids = [doc_id for doc_id, _ in ranked]
        async with self.db.get_session() as session:
            result = await session.execute(select(CodeChunk).where(CodeChunk.id.in_(ids)))
            chunks = {c.id: c for c in result.scalars().all()}

        results = []
        for chunk_id, score in ranked:
            chunk = chunks.get(chunk_id)
            if chunk is None:
                continue
            results.append({
                "source": {
                    "type": "code",
                    "id": chunk.id,
                    "filePath": chunk.file_path,
                    "name": chunk.name,
                    "chunkType": chunk.chunk_type,
                    "signature": chunk.signature,
                    "startLine": chunk.start_line,
                    "endLine": chunk.end_line,
                    "patterns": chunk.patterns or [],
                },
                "score": round(score, 6),
                "preview": self._preview(chunk.content, query, effective),
            })

        return {
            "query": query,
            "mode": effective,
            "requestedMode": mode,
            "fallback": fallback,
            "fallbackReason": reason,
            "filePathFilter": file_path_filter,
            "count": len(results),
            "results": results,
        }

    def _preview(self, content: str, query: str, mode: str) -> str:
        length = self.config.preview_length
        if mode == "vector":
            return head_preview(content, length)
        return smart_preview(content, query, length)

    async def _chunk_paths(self, ids: List[int]) -> Dict[int, str]:
        if not ids:
            return {}
        async with self.db.get_session() as session:
            result = await session.execute(
                select(CodeChunk.id, CodeChunk.file_path).where(CodeChunk.id.in_(ids))
            )
            return {row.id: row.file_path for row in result.all()}

    async def _metadata_matches(
        self,
        project_id: str,
        term: str,
        limit: int,
        mode: str,
        file_path_filter: Optional[str],
    ) -> List[Tuple[int, float]]:
        stmt = select(CodeChunk).where(CodeChunk.project_id == project_id)
        if file_path_filter:
            stmt = stmt.where(func.instr(CodeChunk.file_path, file_path_filter) > 0)
        stmt = stmt.order_by(CodeChunk.file_path, CodeChunk.start_line)

        async with self.db.get_session() as session:
            result = await session.execute(stmt)
            chunks = result.scalars().all()

        needle = term.strip().lower()
        matched = []
        for chunk in chunks:
            if mode == "uses":
                hit = any(needle in dep.lower() for dep in (chunk.dependencies or []))
            else:
                hit = needle in [p.lower() for p in (chunk.patterns or [])]
            if hit:
                matched.append((chunk.id, 1.0))
            if len(matched) >= limit:
                break
        return matched
