"""
Memory Store - CRUD over the fixed set of named project memories.

Write path: dependency gate -> quality gate -> embed -> persist.

Embeddings are regenerated synchronously on every accepted write. If the
provider fails or the vector cannot be indexed, the content is still
persisted and the old vector is cleared, so search never serves a vector
for stale content.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update as sql_update
from sqlalchemy.exc import IntegrityError

from . import vectors
from .database import DatabaseManager
from .embeddings import EmbeddingGateway
from .errors import DimensionMismatchError, EmbeddingError
from .memory_structures import MEMORY_HIERARCHY, MEMORY_NAMES, dependents_of
from .models import MemoryDocument, WorkingMemory, as_utc
from .qdrant_store import QdrantVectorStore
from .tracking import AccessTracker
from .validator import QualityValidator

logger = logging.getLogger(__name__)


def _unknown_memory(memory_name: str) -> dict:
    return {
        "error": "UNKNOWN_MEMORY",
        "message": f"Unknown memory '{memory_name}'",
        "validNames": MEMORY_NAMES,
    }


class MemoryStore:
    """
    Named-memory documents for any number of projects.

    Exactly one live document exists per (project_id, memory_name).
    Concurrent writers are last-writer-wins unless the caller passes
    expected_version.
    """

    def __init__(
        self,
        db: DatabaseManager,
        embedder: EmbeddingGateway,
        vector_store: QdrantVectorStore,
        validator: Optional[QualityValidator] = None,
        tracker: Optional[AccessTracker] = None,
    ):
        self.db = db
        self.embedder = embedder
        self.vector_store = vector_store
        self.validator = validator or QualityValidator()
        self.tracker = tracker or AccessTracker(db)

    async def existing_names(self, project_id: str) -> List[str]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MemoryDocument.memory_name).where(MemoryDocument.project_id == project_id)
            )
            return [row[0] for row in result.all()]

    async def get(self, project_id: str, memory_name: str) -> Optional[MemoryDocument]:
        """Fetch a document without touching access counters."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MemoryDocument).where(
                    MemoryDocument.project_id == project_id,
                    MemoryDocument.memory_name == memory_name,
                )
            )
            return result.scalar_one_or_none()

    async def update(
        self,
        project_id: str,
        memory_name: str,
        content: str,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create or replace a memory document.

        Rejections come back as {"error": CODE, ...} dicts and never touch
        stored state:
            UNKNOWN_MEMORY, EMPTY_CONTENT, MISSING_DEPENDENCIES,
            QUALITY_REJECTED, VERSION_CONFLICT.

        Args:
            expected_version: Optional precondition; reject when the stored
                version differs (0 means "must not exist yet").
        """
        if not self.validator.is_known(memory_name):
            return _unknown_memory(memory_name)

        if not content or not content.strip():
            return {"error": "EMPTY_CONTENT", "message": f"Content for {memory_name} cannot be empty"}

        missing = self.validator.missing_dependencies(memory_name, await self.existing_names(project_id))
        if missing:
            return {
                "error": "MISSING_DEPENDENCIES",
                "message": f"Create {', '.join(missing)} before {memory_name}",
                "memoryName": memory_name,
                "missing": missing,
            }

        quality = self.validator.validate(memory_name, content)
        if not quality.accepted:
            logger.info(f"Rejected {memory_name} update: grade {quality.grade}")
            return self.validator.rejection(quality, content)

        if expected_version is not None:
            current = await self.get(project_id, memory_name)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return {
                    "error": "VERSION_CONFLICT",
                    "message": (
                        f"{memory_name} is at version {current_version}, expected {expected_version}. "
                        "Re-read the memory and retry."
                    ),
                    "currentVersion": current_version,
                }

        vector = None
        try:
            vector = await self.embedder.embed(content, mode="document")
            vectors.validate_dimension(vector, self.vector_store.dimension)
        except (EmbeddingError, DimensionMismatchError) as e:
            # Content durability wins over search completeness
            logger.warning(f"No usable embedding for {memory_name}; saving without vector: {e}")
            vector = None

        doc, created = await self._persist(project_id, memory_name, content, vector)

        if vector is not None:
            try:
                self.vector_store.upsert(
                    QdrantVectorStore.COLLECTION_MEMORIES,
                    doc.id,
                    vector,
                    {"project_id": project_id, "memory_name": memory_name},
                )
            except Exception:
                logger.exception(f"Vector upsert failed for {memory_name}; clearing its vector")
                await self._clear_vector(doc.id)
                vector = None
        if vector is None:
            self.vector_store.delete(QdrantVectorStore.COLLECTION_MEMORIES, [doc.id])

        logger.info(f"{'Created' if created else 'Updated'} {memory_name} v{doc.version} for {project_id}")
        return {
            "success": True,
            "created": created,
            "memoryName": memory_name,
            "version": doc.version,
            "grade": quality.grade,
            "embedding": "updated" if vector is not None else "failed",
            "suggestions": quality.suggestions,
        }

    async def _clear_vector(self, doc_id: int) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                sql_update(MemoryDocument).where(MemoryDocument.id == doc_id).values(content_vector=None)
            )

    async def _persist(self, project_id: str, memory_name: str, content: str, vector):
        now = datetime.now(timezone.utc)
        packed = vectors.encode(vector)

        for attempt in range(2):
            try:
                async with self.db.get_session() as session:
                    result = await session.execute(
                        select(MemoryDocument).where(
                            MemoryDocument.project_id == project_id,
                            MemoryDocument.memory_name == memory_name,
                        )
                    )
                    doc = result.scalar_one_or_none()
                    created = doc is None
                    if created:
                        doc = MemoryDocument(
                            project_id=project_id,
                            memory_name=memory_name,
                            content=content,
                            content_vector=packed,
                            version=1,
                            access_count=0,
                            last_modified=now,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(doc)
                    else:
                        doc.content = content
                        doc.content_vector = packed
                        doc.version = doc.version + 1
                        doc.last_modified = now
                        doc.updated_at = now
                    await session.flush()
                    return doc, created
            except IntegrityError:
                # A concurrent writer created the row first; apply ours on top
                if attempt:
                    raise
                logger.debug(f"Concurrent create of {memory_name}; retrying as update")

    async def read(self, project_id: str, memory_name: str) -> Dict[str, Any]:
        """
        Return one memory and record the access.

        A missing document is NOT_FOUND with guidance on what to write;
        it is never answered with template text posing as content.
        """
        if not self.validator.is_known(memory_name):
            return _unknown_memory(memory_name)

        doc = await self.get(project_id, memory_name)
        if doc is None:
            spec = MEMORY_HIERARCHY[memory_name]
            existing = await self.existing_names(project_id)
            return {
                "error": "NOT_FOUND",
                "message": f"{memory_name} has not been created yet",
                "memoryName": memory_name,
                "description": spec.description,
                "requiredSections": [s.name for s in spec.required_sections],
                "missingDependencies": self.validator.missing_dependencies(memory_name, existing),
            }

        await self.tracker.touch([doc.id])
        doc = await self.get(project_id, memory_name)
        return doc.to_dict()

    async def read_all(self, project_id: str) -> Dict[str, Any]:
        """All core memories in hierarchy order, plus the names not yet created."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MemoryDocument).where(MemoryDocument.project_id == project_id)
            )
            docs = {d.memory_name: d for d in result.scalars().all()}

        await self.tracker.touch(d.id for d in docs.values())

        async with self.db.get_session() as session:
            result = await session.execute(
                select(MemoryDocument).where(MemoryDocument.project_id == project_id)
            )
            docs = {d.memory_name: d for d in result.scalars().all()}

        return {
            "memories": [docs[name].to_dict() for name in MEMORY_NAMES if name in docs],
            "missing": [name for name in MEMORY_NAMES if name not in docs],
            "count": len(docs),
        }

    async def list_memories(self, project_id: str) -> List[Dict[str, Any]]:
        """Metadata for every stored memory; does not count as an access."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MemoryDocument).where(MemoryDocument.project_id == project_id)
            )
            docs = {d.memory_name: d for d in result.scalars().all()}

        listing = []
        for name in MEMORY_NAMES:
            doc = docs.get(name)
            if doc is None:
                continue
            data = doc.to_dict()
            data.pop("content")
            data["size"] = len(doc.content)
            listing.append(data)
        return listing

    async def delete(self, project_id: str, memory_name: str) -> Dict[str, Any]:
        """Remove a memory unless other stored memories depend on it."""
        if not self.validator.is_known(memory_name):
            return _unknown_memory(memory_name)

        existing = set(await self.existing_names(project_id))
        if memory_name not in existing:
            return {"error": "NOT_FOUND", "message": f"{memory_name} does not exist", "memoryName": memory_name}

        blocking = [name for name in dependents_of(memory_name) if name in existing]
        if blocking:
            return {
                "error": "DEPENDENTS_EXIST",
                "message": f"Delete {', '.join(blocking)} before {memory_name}",
                "dependents": blocking,
            }

        doc = await self.get(project_id, memory_name)
        async with self.db.get_session() as session:
            await session.execute(delete(MemoryDocument).where(MemoryDocument.id == doc.id))
        self.vector_store.delete(QdrantVectorStore.COLLECTION_MEMORIES, [doc.id])

        logger.info(f"Deleted {memory_name} for {project_id}")
        return {"success": True, "memoryName": memory_name}

    async def remember(self, project_id: str, key: str, content: str) -> Dict[str, Any]:
        """
        Store an ephemeral working memory.

        Writing an existing key replaces the entry, which restarts its expiry.
        """
        if not key or not content or not content.strip():
            return {"error": "EMPTY_CONTENT", "message": "Working memory needs a key and content"}

        now = datetime.now(timezone.utc)
        async with self.db.get_session() as session:
            await session.execute(
                delete(WorkingMemory).where(
                    WorkingMemory.project_id == project_id,
                    WorkingMemory.key == key,
                )
            )
            entry = WorkingMemory(
                project_id=project_id,
                key=key,
                content=content,
                created_at=now,
                expires_at=self.tracker.expiry_for(now),
            )
            session.add(entry)
            await session.flush()
            return entry.to_dict()

    async def recall(self, project_id: str, key: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkingMemory).where(
                    WorkingMemory.project_id == project_id,
                    WorkingMemory.key == key,
                )
            )
            entry = result.scalar_one_or_none()

        if entry is None or as_utc(entry.expires_at) <= now:
            return {"error": "NOT_FOUND", "message": f"No working memory for '{key}'"}
        return entry.to_dict()
