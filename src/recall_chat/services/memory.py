"""Memory service: bridges conversation turns and the memory store.

Memories live in two independent scopes. ``user`` memories follow a user
across sessions, ``session`` memories belong to one session and are cleared
on their own. Each scope has a capacity; inserting into a full scope evicts
the least important record first, the oldest among equals.

The capacity check, eviction and insert for one (scope, owner) partition run
under a single lock, so concurrent extractions never overshoot capacity.
"""

import asyncio
import re
import weakref
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..config import Settings
from ..domain.errors import MemoryExtractionError, StoreCapacityError
from ..domain.models import (
    CandidateMemory,
    Importance,
    MemoryCategory,
    MemoryRecord,
    MemoryScope,
    MemoryStats,
    ScoredMemory,
)
from ..repositories.base import MemoryStore
from .extraction import MemoryExtractor

logger = structlog.get_logger()

_WHITESPACE_RE = re.compile(r"\s+")

SEARCH_LIMIT = 20


def normalize_content(content: str) -> str:
    """Comparison key for duplicate detection."""
    return _WHITESPACE_RE.sub(" ", content).strip().casefold().rstrip(".!")


class ScopeLocks:
    """One asyncio lock per (scope, owner key), shared by all MemoryService instances.

    A lock lives only while someone holds or waits on it, so sessions that
    have gone quiet do not accumulate locks.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Tuple[MemoryScope, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, scope: MemoryScope, owner_key: str) -> asyncio.Lock:
        key = (scope, owner_key)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class MemoryService:
    """Memory operations for one user/session pair."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        user_id: str,
        session_id: str,
        extractor: Optional[MemoryExtractor] = None,
        locks: Optional[ScopeLocks] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.user_id = user_id
        self.session_id = session_id
        self.extractor = extractor
        self.locks = locks if locks is not None else ScopeLocks()

    def owner_key(self, scope: MemoryScope) -> str:
        return self.user_id if scope == MemoryScope.USER else self.session_id

    def capacity(self, scope: MemoryScope) -> int:
        if scope == MemoryScope.USER:
            return self.settings.max_user_memories
        return self.settings.max_session_memories

    # -- Retrieval -----------------------------------------------------------

    async def get_relevant_memories(
        self, query: Optional[str] = None, limit: int = 10
    ) -> List[ScoredMemory]:
        """Memories relevant to ``query``, best first.

        With an empty query, returns the most recent memories ranked by
        importance then recency. Never raises.
        """
        if query is None:
            query = ""
        if not isinstance(query, str) or not isinstance(limit, int) or limit <= 0:
            return []

        try:
            if not query.strip():
                return await self._recent_memories(limit)
            return await self._search(query, limit, self.settings.similarity_threshold)
        except Exception as e:
            logger.error("memory_retrieval_failed", error=str(e), error_type=type(e).__name__)
            return []

    async def _recent_memories(self, limit: int) -> List[ScoredMemory]:
        records: List[MemoryRecord] = []
        for scope in MemoryScope:
            records.extend(await self.store.list_recent(scope, self.owner_key(scope), limit))

        unique = list({r.id: r for r in records}.values())
        unique.sort(key=lambda r: r.created_at, reverse=True)
        unique.sort(key=lambda r: r.importance.rank, reverse=True)
        return [ScoredMemory(record=r) for r in unique[:limit]]

    async def _search(self, query: str, limit: int, threshold: float) -> List[ScoredMemory]:
        results: List[ScoredMemory] = []
        for scope in MemoryScope:
            results.extend(
                await self.store.search(scope, self.owner_key(scope), query, threshold, limit)
            )
        results.sort(key=lambda s: s.score, reverse=True)

        seen = set()
        ranked = []
        for result in results:
            if result.record.id in seen:
                continue
            seen.add(result.record.id)
            ranked.append(result)
        return ranked[:limit]

    def format_memories_for_prompt(
        self, memories: Sequence[Union[MemoryRecord, ScoredMemory]]
    ) -> str:
        """Render memories as bullet facts grouped by category."""
        records = [getattr(m, "record", m) for m in memories]
        if not records:
            return ""

        lines: List[str] = []
        for category in MemoryCategory:
            facts = [r.content for r in records if r.category == category]
            if not facts:
                continue
            if lines:
                lines.append("")
            lines.append(f"{category.value.replace('_', ' ').title()}:")
            lines.extend(f"- {fact}" for fact in facts)
        return "\n".join(lines)

    # -- Storage -------------------------------------------------------------

    def _record_from_candidate(self, candidate: CandidateMemory) -> Optional[MemoryRecord]:
        content = candidate.content.strip()
        if not content:
            return None

        try:
            category = MemoryCategory(candidate.category)
        except ValueError:
            category = MemoryCategory.PERSONAL_FACTS
        try:
            importance = Importance(candidate.importance)
        except ValueError:
            importance = Importance.MEDIUM

        if candidate.type in (MemoryScope.USER.value, MemoryScope.SESSION.value):
            scope = MemoryScope(candidate.type)
        elif category == MemoryCategory.EVENTS:
            scope = MemoryScope.SESSION
        else:
            scope = MemoryScope.USER

        return MemoryRecord(
            scope=scope,
            owner_key=self.owner_key(scope),
            content=content,
            category=category,
            importance=importance,
        )

    async def store_record(self, record: MemoryRecord) -> bool:
        """Insert a record, evicting as needed. Returns False for duplicates."""
        scope, owner = record.scope, record.owner_key
        async with self.locks.get(scope, owner):
            existing = await self.store.list_all(scope, owner)
            key = normalize_content(record.content)
            if any(normalize_content(r.content) == key for r in existing):
                logger.debug("memory_duplicate_skipped", scope=scope.value)
                return False

            capacity = self.capacity(scope)
            while len(existing) >= capacity:
                victim = min(existing, key=lambda r: (r.importance.rank, r.created_at))
                if not await self.store.delete(scope, owner, victim.id):
                    raise StoreCapacityError(
                        f"{scope.value} scope is full and record {victim.id} could not be evicted"
                    )
                existing.remove(victim)
                logger.info(
                    "memory_evicted",
                    scope=scope.value,
                    record_id=str(victim.id),
                    importance=victim.importance.value,
                )

            await self.store.insert(scope, owner, record)
            return True

    async def _extract_and_store(
        self,
        conversation: Sequence[Dict[str, str]],
        latest_reply: str,
        candidates: Optional[Sequence[CandidateMemory]],
    ) -> int:
        try:
            if candidates is None:
                if self.extractor is None:
                    logger.debug("memory_extraction_skipped", reason="no_extractor")
                    return 0
                candidates = await self.extractor.extract(conversation, latest_reply)

            stored = 0
            for candidate in candidates:
                record = self._record_from_candidate(candidate)
                if record is not None and await self.store_record(record):
                    stored += 1
            return stored
        except Exception as e:
            raise MemoryExtractionError(str(e) or type(e).__name__) from e

    async def extract_and_store_memories(
        self,
        conversation: Sequence[Dict[str, str]],
        latest_reply: str,
        candidates: Optional[Sequence[CandidateMemory]] = None,
    ) -> int:
        """Store memories for a finished exchange. Never raises.

        ``candidates`` are memories the reply already carried (json mode);
        without them the extractor is asked. Returns the number stored.
        """
        try:
            stored = await self._extract_and_store(conversation, latest_reply, candidates)
        except MemoryExtractionError as e:
            logger.error(
                "memory_extraction_failed",
                user_id=self.user_id,
                session_id=self.session_id,
                error=str(e),
                cause=type(e.__cause__).__name__,
            )
            return 0

        logger.info(
            "memory_extraction_complete",
            user_id=self.user_id,
            session_id=self.session_id,
            stored=stored,
        )
        return stored

    # -- Management ----------------------------------------------------------

    async def clear_memories(self, scope: Union[MemoryScope, str]) -> int:
        """Delete the current owner's memories in one scope."""
        scope = MemoryScope(scope)
        owner = self.owner_key(scope)
        async with self.locks.get(scope, owner):
            removed = await self.store.delete_all(scope, owner)
        logger.info("memories_cleared", scope=scope.value, removed=removed)
        return removed

    async def get_memory_stats(self) -> MemoryStats:
        return MemoryStats(
            user_memory_count=await self.store.count(MemoryScope.USER, self.user_id),
            session_memory_count=await self.store.count(MemoryScope.SESSION, self.session_id),
        )

    async def _list_scope(self, scope: MemoryScope) -> List[MemoryRecord]:
        records = await self.store.list_all(scope, self.owner_key(scope))
        return list(reversed(records))

    async def get_user_memories(self) -> List[MemoryRecord]:
        return await self._list_scope(MemoryScope.USER)

    async def get_session_memories(self) -> List[MemoryRecord]:
        return await self._list_scope(MemoryScope.SESSION)

    async def search_memories(self, query: str) -> Dict[str, List[ScoredMemory]]:
        """Similarity search in each scope separately."""
        results: Dict[str, List[ScoredMemory]] = {"user_memories": [], "session_memories": []}
        if not isinstance(query, str) or not query.strip():
            return results
        threshold = self.settings.similarity_threshold
        for scope in MemoryScope:
            results[f"{scope.value}_memories"] = await self.store.search(
                scope, self.owner_key(scope), query, threshold, SEARCH_LIMIT
            )
        return results

    async def export_memories(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "exported_at": datetime.utcnow().isoformat(),
            "user_memories": [r.model_dump(mode="json") for r in await self.get_user_memories()],
            "session_memories": [
                r.model_dump(mode="json") for r in await self.get_session_memories()
            ],
        }

    async def import_memories(self, payload: Any) -> int:
        """Load an export document into the current owner's scopes.

        Entries that do not validate are skipped. Raises ValueError if the
        payload is not an export document at all.
        """
        if not isinstance(payload, dict):
            raise ValueError("memory import must be a JSON object")
        sections = {scope: payload.get(f"{scope.value}_memories", []) for scope in MemoryScope}
        if not any(f"{scope.value}_memories" in payload for scope in MemoryScope):
            raise ValueError("memory import has no user_memories or session_memories")
        if not all(isinstance(entries, list) for entries in sections.values()):
            raise ValueError("memory sections must be lists")

        imported = 0
        skipped = 0
        for scope, entries in sections.items():
            records = []
            for entry in entries:
                if not isinstance(entry, dict):
                    skipped += 1
                    continue
                data = {**entry, "id": uuid4(), "scope": scope, "owner_key": self.owner_key(scope)}
                try:
                    records.append(MemoryRecord.model_validate(data))
                except PydanticValidationError:
                    skipped += 1
            # Oldest first, so eviction during import keeps the newest.
            records.sort(key=lambda r: r.created_at)
            for record in records:
                if await self.store_record(record):
                    imported += 1

        logger.info("memories_imported", imported=imported, skipped=skipped)
        return imported
