"""
Embedding Gateway - turns text into fixed-dimension vectors via Voyage AI.

Batches are split at the provider limit, issued sequentially, and every
batch is re-sorted by the per-item index the provider returns. Any
malformed response is a hard failure; nothing is ever defaulted to a zero
vector.
"""

import logging
from typing import List, Optional, Sequence

import httpx

from .config import Settings, settings as default_settings
from .errors import DimensionMismatchError, EmbeddingError, MissingCredentialsError
from .vectors import validate_dimension

logger = logging.getLogger(__name__)

INPUT_TYPES = ("document", "query")


class EmbeddingGateway:
    """
    Client for the remote embedding provider.

    Args:
        config: Settings to read the key, model, dimension and batch size from.
        transport: Optional httpx transport (tests pass an httpx.MockTransport).
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or default_settings
        self.model = self.config.embedding_model
        self.dimensions = self.config.embedding_dimensions
        self.batch_size = self.config.embedding_batch_size
        self._transport = transport

    def _require_key(self) -> str:
        key = self.config.voyage_api_key
        if not key:
            raise MissingCredentialsError(
                "VOYAGE_API_KEY is not configured; cannot generate embeddings"
            )
        return key

    async def embed(self, text: str, mode: str = "document") -> List[float]:
        """Embed a single text. mode is 'document' for storage, 'query' for search."""
        vectors = await self.embed_batch([text], mode=mode)
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str], mode: str = "document") -> List[List[float]]:
        """
        Embed many texts, returning vectors positionally matching `texts`.

        Raises:
            MissingCredentialsError: no API key (checked before any request).
            EmbeddingError: HTTP failure, empty or mismatched response.
        """
        if mode not in INPUT_TYPES:
            raise ValueError(f"mode must be one of {INPUT_TYPES}, got {mode!r}")

        key = self._require_key()
        if not texts:
            return []

        results: List[List[float]] = []
        async with httpx.AsyncClient(
            timeout=self.config.request_timeout,
            transport=self._transport,
        ) as client:
            for start in range(0, len(texts), self.batch_size):
                batch = list(texts[start:start + self.batch_size])
                results.extend(await self._embed_one_batch(client, key, batch, mode))

        logger.debug(f"Embedded {len(texts)} text(s) in {-(-len(texts) // self.batch_size)} batch(es)")
        return results

    async def _embed_one_batch(
        self,
        client: httpx.AsyncClient,
        key: str,
        batch: List[str],
        mode: str
    ) -> List[List[float]]:
        payload = {"input": batch, "model": self.model, "input_type": mode}
        headers = {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}

        try:
            response = await client.post(self.config.voyage_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if response.status_code != 200:
            raise EmbeddingError(
                f"Embedding provider returned {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json().get("data") or []
        except ValueError as e:
            raise EmbeddingError("Embedding provider returned invalid JSON") from e

        if not data:
            raise EmbeddingError("Embedding provider returned no embeddings")
        if len(data) != len(batch):
            raise EmbeddingError(
                f"Embedding count mismatch: sent {len(batch)}, received {len(data)}"
            )

        # Providers may reorder items; restore submission order by index
        ordered = sorted(data, key=lambda item: item.get("index", -1))
        indices = [item.get("index") for item in ordered]
        if indices != list(range(len(batch))):
            raise EmbeddingError(f"Embedding response has invalid indices: {indices}")

        vectors = []
        for item in ordered:
            vector = item.get("embedding")
            if not vector:
                raise EmbeddingError(f"Embedding missing for index {item.get('index')}")
            try:
                validate_dimension(vector, self.dimensions)
            except DimensionMismatchError as e:
                raise EmbeddingError(str(e)) from e
            vectors.append([float(v) for v in vector])
        return vectors
