"""In-memory vector store for memory records.

Records are partitioned by ``(scope, owner_key)``. Each record is embedded
once on insert; a search stacks the partition's vectors into one matrix and
ranks them by cosine similarity against the query embedding. Two embedders
are provided: ``GeminiEmbedder`` calls the Gemini embedding endpoint,
``HashingEmbedder`` is a deterministic bag-of-words projection that needs no
network and is used in tests and when no API key is configured.
"""

import asyncio
import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Tuple
from uuid import UUID

import google.generativeai as genai
import numpy as np
import structlog

from ..domain.models import MemoryRecord, MemoryScope, ScoredMemory
from .base import MemoryStore

logger = structlog.get_logger()

_TOKEN_RE = re.compile(r"\w+")


class Embedder(ABC):
    """Turns text into a fixed-length, L2-normalised vector."""

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """Embed a document for storage."""
        pass

    async def embed_query(self, text: str) -> np.ndarray:
        """Embed a search query. Same space as ``embed``."""
        return await self.embed(text)


class HashingEmbedder(Embedder):
    """Feature-hashed term counts, L2-normalised.

    Identical texts always map to identical vectors, so a query equal to a
    stored memory scores 1.0.
    """

    def __init__(self, dimensions: int = 512) -> None:
        self.dimensions = dimensions

    async def embed(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
        return normalise(vector)


class GeminiEmbedder(Embedder):
    """Embeddings from the Gemini API."""

    def __init__(self, api_key: str, model: str) -> None:
        genai.configure(api_key=api_key)
        self.model = model
        logger.info("gemini_embedder_init", model=model)

    async def _embed(self, text: str, task_type: str) -> np.ndarray:
        result = await asyncio.to_thread(
            genai.embed_content,
            model=self.model,
            content=text,
            task_type=task_type,
        )
        return normalise(np.asarray(result["embedding"], dtype=np.float32))

    async def embed(self, text: str) -> np.ndarray:
        return await self._embed(text, "retrieval_document")

    async def embed_query(self, text: str) -> np.ndarray:
        return await self._embed(text, "retrieval_query")


def normalise(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return vector / norm


def cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``.

    Zero vectors score 0.0.
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0:
        return np.zeros(len(matrix), dtype=np.float32)
    denominators = row_norms * query_norm
    dots = matrix @ query
    return np.divide(dots, denominators, out=np.zeros_like(dots), where=denominators > 0)


@dataclass
class _Entry:
    record: MemoryRecord
    vector: np.ndarray


class InMemoryVectorStore(MemoryStore):
    """Async-safe vector store kept in process memory."""

    def __init__(self, embedder: Embedder) -> None:
        self.embedder = embedder
        self._entries: Dict[Tuple[MemoryScope, str], List[_Entry]] = {}
        self._lock = asyncio.Lock()

    async def insert(self, scope: MemoryScope, owner_key: str, record: MemoryRecord) -> None:
        """Embed and store a record."""
        if record.scope != scope or record.owner_key != owner_key:
            raise ValueError("record does not belong to the target partition")
        vector = await self.embedder.embed(record.content)
        async with self._lock:
            self._entries.setdefault((scope, owner_key), []).append(_Entry(record, vector))
        logger.debug("memory_inserted", scope=scope.value, record_id=str(record.id))

    async def search(
        self,
        scope: MemoryScope,
        owner_key: str,
        query_text: str,
        threshold: float,
        limit: int,
    ) -> List[ScoredMemory]:
        """Records scoring at or above threshold, best first."""
        if limit <= 0:
            return []
        query_vector = await self.embedder.embed_query(query_text)
        async with self._lock:
            entries = list(self._entries.get((scope, owner_key), []))
        if not entries:
            return []

        scores = cosine_similarities(query_vector, np.stack([e.vector for e in entries]))
        # Stable descending sort keeps insertion order among equal scores.
        order = np.argsort(-scores, kind="stable")
        return [
            ScoredMemory(record=entries[i].record, score=float(scores[i]))
            for i in order[:limit]
            if scores[i] >= threshold
        ]

    async def list_recent(self, scope: MemoryScope, owner_key: str, limit: int) -> List[MemoryRecord]:
        """Newest records first."""
        if limit <= 0:
            return []
        async with self._lock:
            records = [e.record for e in reversed(self._entries.get((scope, owner_key), []))]
        # Stable sort: among equal timestamps the later insert stays first.
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def list_all(self, scope: MemoryScope, owner_key: str) -> List[MemoryRecord]:
        """Every record in the partition, oldest insert first."""
        async with self._lock:
            return [e.record for e in self._entries.get((scope, owner_key), [])]

    async def delete(self, scope: MemoryScope, owner_key: str, record_id: UUID) -> bool:
        """Delete one record by ID."""
        async with self._lock:
            entries = self._entries.get((scope, owner_key), [])
            for index, entry in enumerate(entries):
                if entry.record.id == record_id:
                    del entries[index]
                    return True
        return False

    async def delete_all(self, scope: MemoryScope, owner_key: str) -> int:
        """Delete the whole partition."""
        async with self._lock:
            removed = self._entries.pop((scope, owner_key), [])
        return len(removed)

    async def count(self, scope: MemoryScope, owner_key: str) -> int:
        """Number of records in the partition."""
        async with self._lock:
            return len(self._entries.get((scope, owner_key), []))


def build_embedder(api_key: str, model: str) -> Embedder:
    """Gemini embeddings when a key is configured, hashing embedder otherwise."""
    if api_key:
        return GeminiEmbedder(api_key=api_key, model=model)
    logger.warning("embedder_fallback", embedder="hashing", reason="no_api_key")
    return HashingEmbedder()
