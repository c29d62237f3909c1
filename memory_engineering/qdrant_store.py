"""
Qdrant Vector Store - approximate-nearest-neighbour index for memories and code chunks.

This module provides:
- Persistent vector storage using Qdrant (local mode, no server required)
- project_id filtering on every query, count and delete
- Dimension validation on open (existing collections) and on write
- Bounded readiness polling for freshly provisioned collections
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from qdrant_client import QdrantClient
from qdrant_client.models import (
    CollectionStatus,
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointStruct,
    VectorParams,
)

from .errors import ConfigurationError, IndexNotReadyError
from .vectors import validate_dimension

logger = logging.getLogger(__name__)


class QdrantVectorStore:
    """
    Vector storage backend using Qdrant.

    Uses local file-based mode; pass path=":memory:" for an in-process store.
    Point ids are the SQLite row ids of the owning document or chunk.
    """

    COLLECTION_MEMORIES = "me_memories"
    COLLECTION_CODE = "me_code_chunks"

    def __init__(self, path: str = "./storage/qdrant", dimension: int = 1024):
        logger.info(f"Initializing Qdrant vector store at: {path}")
        if path == ":memory:":
            self.client = QdrantClient(location=":memory:")
        else:
            self.client = QdrantClient(path=path)
        self.dimension = dimension
        try:
            self._ensure_collections()
        except ConfigurationError:
            self.client.close()
            raise

    def _ensure_collections(self) -> None:
        """
        Create both collections with cosine distance if missing.

        An existing collection keeps the dimension it was created with; opening
        it with a different one raises ConfigurationError instead of failing on
        the first write.
        """
        existing = [c.name for c in self.client.get_collections().collections]

        for name in (self.COLLECTION_MEMORIES, self.COLLECTION_CODE):
            if name in existing:
                size = self.collection_dimension(name)
                if size is not None and size != self.dimension:
                    raise ConfigurationError(
                        f"Collection {name} holds {size}-dimensional vectors but embedding_dimensions "
                        f"is {self.dimension}. Restore the setting or remove the vector index to rebuild it."
                    )
            else:
                logger.info(f"Creating collection: {name}")
                self.client.create_collection(
                    collection_name=name,
                    vectors_config=VectorParams(size=self.dimension, distance=Distance.COSINE)
                )

    def collection_dimension(self, name: str) -> Optional[int]:
        """Vector size an existing collection was created with."""
        params = self.client.get_collection(name).config.params.vectors
        return getattr(params, "size", None)

    async def ensure_ready(self, attempts: int = 10, interval: float = 0.5) -> None:
        """
        Wait until both collections report green status.

        Index provisioning is asynchronous; this is the only operation that
        retries. Raises IndexNotReadyError after `attempts` polls.
        """
        pending = [self.COLLECTION_MEMORIES, self.COLLECTION_CODE]
        for attempt in range(attempts):
            pending = [
                name for name in pending
                if self.client.get_collection(name).status != CollectionStatus.GREEN
            ]
            if not pending:
                return
            logger.debug(f"Collections not ready (attempt {attempt + 1}/{attempts}): {pending}")
            await asyncio.sleep(interval)

        raise IndexNotReadyError(pending[0], retry_after=attempts * interval)

    def status(self) -> dict:
        """Per-collection status and point count."""
        report = {}
        for name in (self.COLLECTION_MEMORIES, self.COLLECTION_CODE):
            info = self.client.get_collection(name)
            report[name] = {
                "status": str(info.status.value if hasattr(info.status, "value") else info.status),
                "points": info.points_count or 0,
            }
        return report

    @staticmethod
    def _filter(project_id: str) -> Filter:
        return Filter(must=[FieldCondition(key="project_id", match=MatchValue(value=project_id))])

    def upsert(self, collection: str, point_id: int, vector: List[float], payload: dict) -> None:
        """Store or replace one vector. payload must carry project_id."""
        self.upsert_many(collection, [(point_id, vector, payload)])

    def upsert_many(self, collection: str, points: List[Tuple[int, List[float], dict]]) -> None:
        if not points:
            return
        for _, vector, _ in points:
            validate_dimension(vector, self.dimension)
        self.client.upsert(
            collection_name=collection,
            points=[
                PointStruct(id=point_id, vector=vector, payload=payload)
                for point_id, vector, payload in points
            ]
        )

    def search(
        self,
        collection: str,
        query_vector: List[float],
        project_id: str,
        limit: int = 20,
    ) -> List[Tuple[int, float]]:
        """
        Nearest neighbours within one project.

        Returns:
            List of (point_id, similarity) tuples, best first.
        """
        validate_dimension(query_vector, self.dimension)
        response = self.client.query_points(
            collection_name=collection,
            query=query_vector,
            query_filter=self._filter(project_id),
            limit=limit
        )
        return [(int(point.id), float(point.score)) for point in response.points]

    def count(self, collection: str, project_id: str) -> int:
        """Number of vectors stored for a project."""
        result = self.client.count(
            collection_name=collection,
            count_filter=self._filter(project_id),
            exact=True
        )
        return result.count

    def delete(self, collection: str, point_ids: List[int]) -> None:
        if not point_ids:
            return
        self.client.delete(collection_name=collection, points_selector=list(point_ids))

    def close(self) -> None:
        """Close the Qdrant client connection."""
        self.client.close()
