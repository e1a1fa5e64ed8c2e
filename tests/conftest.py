"""Shared test fixtures."""

from typing import Callable, List, Optional

import pytest

from recall_chat.config import Settings
from recall_chat.repositories.memory import InMemoryChatRepository
from recall_chat.repositories.vector import HashingEmbedder, InMemoryVectorStore
from recall_chat.services.extraction import EXTRACTION_SYSTEM_PROMPT, MemoryExtractor
from recall_chat.services.memory import MemoryService, ScopeLocks
from recall_chat.services.tasks import BackgroundTaskRunner


class FakeCompletionClient:
    """Stands in for CompletionClient; replies from fixtures, never the network."""

    def __init__(
        self,
        replies: Optional[List] = None,
        extraction: str = '{"memories": []}',
        default_reply: str = "Happy to help!",
    ) -> None:
        self.replies = list(replies or [])
        self.extraction = extraction
        self.default_reply = default_reply
        self.calls: List[dict] = []

    @property
    def chat_calls(self) -> List[dict]:
        return [c for c in self.calls if c["system_prompt"] != EXTRACTION_SYSTEM_PROMPT]

    async def complete(self, system_prompt, history, options=None) -> str:
        self.calls.append(
            {"system_prompt": system_prompt, "history": list(history), "options": options}
        )
        if system_prompt == EXTRACTION_SYSTEM_PROMPT:
            if isinstance(self.extraction, Exception):
                raise self.extraction
            return self.extraction
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return self.default_reply


@pytest.fixture
def settings() -> Settings:
    return Settings(
        gemini_api_key="",
        max_user_memories=5,
        max_session_memories=3,
        similarity_threshold=0.7,
        debug_mode=False,
        response_format="text",
    )


@pytest.fixture
def repository() -> InMemoryChatRepository:
    return InMemoryChatRepository()


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore(HashingEmbedder())


@pytest.fixture
def locks() -> ScopeLocks:
    return ScopeLocks()


@pytest.fixture
def fake_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def runner() -> BackgroundTaskRunner:
    return BackgroundTaskRunner(workers=2, max_pending=50)


@pytest.fixture
def make_memory_service(store, settings, locks, fake_client) -> Callable[..., MemoryService]:
    """Factory for memory services sharing one store and lock registry."""

    def factory(user_id: str = "user-a", session_id: str = "session-a", **overrides) -> MemoryService:
        service_settings = settings.model_copy(update=overrides) if overrides else settings
        return MemoryService(
            store,
            service_settings,
            user_id=user_id,
            session_id=session_id,
            extractor=MemoryExtractor(fake_client, service_settings),
            locks=locks,
        )

    return factory


@pytest.fixture
def memory_service(make_memory_service) -> MemoryService:
    return make_memory_service()
