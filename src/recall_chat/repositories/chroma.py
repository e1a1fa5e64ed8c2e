"""Persistent memory store backed by a local Chroma collection.

Every record lives in one collection; ``scope`` and ``owner_key`` are kept in
the record's metadata and every query filters on both. Embeddings come from
the configured ``Embedder`` and are handed to Chroma directly, so the
collection ranks by cosine distance over the same vectors the in-memory
store would use.
"""

import asyncio
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import UUID

import chromadb
import structlog
from chromadb.config import Settings as ChromaSettings

from ..domain.models import MemoryRecord, MemoryScope, ScoredMemory
from .base import MemoryStore
from .vector import Embedder

logger = structlog.get_logger()

DEFAULT_COLLECTION = "recall_chat_memories"


def _partition(scope: MemoryScope, owner_key: str) -> Dict[str, Any]:
    return {"$and": [{"scope": scope.value}, {"owner_key": owner_key}]}


def _metadata(record: MemoryRecord) -> Dict[str, Any]:
    return {
        "scope": record.scope.value,
        "owner_key": record.owner_key,
        "category": record.category.value,
        "importance": record.importance.value,
        "created_at": record.created_at.isoformat(),
        "inserted_ns": time.time_ns(),
    }


def _record(record_id: str, document: str, metadata: Dict[str, Any]) -> MemoryRecord:
    return MemoryRecord(
        id=UUID(record_id),
        scope=metadata["scope"],
        owner_key=metadata["owner_key"],
        content=document,
        category=metadata["category"],
        importance=metadata["importance"],
        created_at=datetime.fromisoformat(metadata["created_at"]),
    )


class ChromaMemoryStore(MemoryStore):
    """Memory store that survives restarts, persisted under ``persist_dir``."""

    def __init__(
        self,
        persist_dir: Path,
        embedder: Embedder,
        collection_name: str = DEFAULT_COLLECTION,
    ) -> None:
        self._persist_dir = Path(persist_dir)
        self._collection_name = collection_name
        self.embedder = embedder
        self._lock = asyncio.Lock()
        self._client: Optional[Any] = None
        self._collection: Optional[Any] = None

    def _ensure(self) -> None:
        """Open the client and collection on first use."""
        if self._collection is not None:
            return

        self._persist_dir.mkdir(parents=True, exist_ok=True)
        self._client = chromadb.PersistentClient(
            path=str(self._persist_dir),
            settings=ChromaSettings(anonymized_telemetry=False),
        )
        self._collection = self._client.get_or_create_collection(
            name=self._collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )
        logger.info(
            "memory_store_opened",
            path=str(self._persist_dir),
            collection=self._collection_name,
        )

    def _get(self, scope: MemoryScope, owner_key: str, include: List[str]) -> Dict[str, Any]:
        self._ensure()
        return self._collection.get(where=_partition(scope, owner_key), include=include)

    def _records(self, scope: MemoryScope, owner_key: str) -> List[MemoryRecord]:
        """Partition records in insertion order."""
        result = self._get(scope, owner_key, ["documents", "metadatas"])
        rows = sorted(
            zip(result["ids"], result["documents"], result["metadatas"]),
            key=lambda row: row[2]["inserted_ns"],
        )
        return [_record(record_id, document, metadata) for record_id, document, metadata in rows]

    async def insert(self, scope: MemoryScope, owner_key: str, record: MemoryRecord) -> None:
        """Embed and store a record."""
        if record.scope != scope or record.owner_key != owner_key:
            raise ValueError("record does not belong to the target partition")
        vector = await self.embedder.embed(record.content)
        async with self._lock:
            await asyncio.to_thread(self._ensure)
            await asyncio.to_thread(
                self._collection.add,
                ids=[str(record.id)],
                embeddings=[vector.tolist()],
                documents=[record.content],
                metadatas=[_metadata(record)],
            )
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
            available = len((await asyncio.to_thread(self._get, scope, owner_key, []))["ids"])
            if available == 0:
                return []
            result = await asyncio.to_thread(
                self._collection.query,
                query_embeddings=[query_vector.tolist()],
                n_results=min(limit, available),
                where=_partition(scope, owner_key),
                include=["documents", "metadatas", "distances"],
            )

        matches = []
        for record_id, document, metadata, distance in zip(
            result["ids"][0], result["documents"][0], result["metadatas"][0], result["distances"][0]
        ):
            score = 1.0 - float(distance)
            if score >= threshold:
                matches.append(ScoredMemory(record=_record(record_id, document, metadata), score=score))
        matches.sort(key=lambda s: s.score, reverse=True)
        return matches

    async def list_recent(self, scope: MemoryScope, owner_key: str, limit: int) -> List[MemoryRecord]:
        """Newest records first."""
        if limit <= 0:
            return []
        async with self._lock:
            records = await asyncio.to_thread(self._records, scope, owner_key)
        records.reverse()
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def list_all(self, scope: MemoryScope, owner_key: str) -> List[MemoryRecord]:
        """Every record in the partition, oldest insert first."""
        async with self._lock:
            return await asyncio.to_thread(self._records, scope, owner_key)

    async def delete(self, scope: MemoryScope, owner_key: str, record_id: UUID) -> bool:
        """Delete one record by ID."""
        async with self._lock:
            await asyncio.to_thread(self._ensure)
            found = await asyncio.to_thread(
                self._collection.get,
                ids=[str(record_id)],
                where=_partition(scope, owner_key),
                include=[],
            )
            if not found["ids"]:
                return False
            await asyncio.to_thread(self._collection.delete, ids=found["ids"])
        return True

    async def delete_all(self, scope: MemoryScope, owner_key: str) -> int:
        """Delete the whole partition."""
        async with self._lock:
            ids = (await asyncio.to_thread(self._get, scope, owner_key, []))["ids"]
            if ids:
                await asyncio.to_thread(self._collection.delete, ids=ids)
        return len(ids)

    async def count(self, scope: MemoryScope, owner_key: str) -> int:
        """Number of records in the partition."""
        async with self._lock:
            return len((await asyncio.to_thread(self._get, scope, owner_key, []))["ids"])
