"""Base repository interfaces."""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
from uuid import UUID

from ..domain.models import Chat, MemoryRecord, MemoryScope, Message, Role, ScoredMemory


class ChatRepository(ABC):
    """Abstract base class for chat and message persistence."""

    @abstractmethod
    async def create_chat(self, title: Optional[str] = None) -> Chat:
        """Create a new chat."""
        pass

    @abstractmethod
    async def list_chats(self) -> List[Chat]:
        """List chats, newest first."""
        pass

    @abstractmethod
    async def get_chat(self, chat_id: UUID) -> Chat:
        """Retrieve a chat by ID, raising ChatNotFound if missing."""
        pass

    @abstractmethod
    async def rename_chat(self, chat_id: UUID, title: str) -> Chat:
        """Change a chat's title."""
        pass

    @abstractmethod
    async def delete_chat(self, chat_id: UUID) -> None:
        """Delete a chat and all of its messages."""
        pass

    @abstractmethod
    async def append_message(self, chat_id: UUID, role: Role, content: str) -> Message:
        """Append a message to a chat."""
        pass

    @abstractmethod
    async def list_messages(
        self, chat_id: UUID, exclude_roles: Iterable[Role] = ()
    ) -> List[Message]:
        """Get a chat's messages in creation order."""
        pass


class MemoryStore(ABC):
    """Abstract vector store partitioned by (scope, owner key)."""

    @abstractmethod
    async def insert(self, scope: MemoryScope, owner_key: str, record: MemoryRecord) -> None:
        """Store a record."""
        pass

    @abstractmethod
    async def search(
        self,
        scope: MemoryScope,
        owner_key: str,
        query_text: str,
        threshold: float,
        limit: int,
    ) -> List[ScoredMemory]:
        """Similarity search, best match first, scores at or above threshold."""
        pass

    @abstractmethod
    async def list_recent(self, scope: MemoryScope, owner_key: str, limit: int) -> List[MemoryRecord]:
        """Most recently stored records first."""
        pass

    @abstractmethod
    async def list_all(self, scope: MemoryScope, owner_key: str) -> List[MemoryRecord]:
        """Every record in the partition, in insertion order."""
        pass

    @abstractmethod
    async def delete(self, scope: MemoryScope, owner_key: str, record_id: UUID) -> bool:
        """Delete one record. Returns False if it was not present."""
        pass

    @abstractmethod
    async def delete_all(self, scope: MemoryScope, owner_key: str) -> int:
        """Delete every record in the partition. Returns the number removed."""
        pass

    @abstractmethod
    async def count(self, scope: MemoryScope, owner_key: str) -> int:
        """Number of records in the partition."""
        pass
