"""In-memory chat repository implementation."""

import asyncio
from typing import Dict, Iterable, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import ChatNotFound
from ..domain.models import Chat, Message, Role
from .base import ChatRepository

logger = structlog.get_logger()


class InMemoryChatRepository(ChatRepository):
    """Async-safe in-memory chat store."""

    def __init__(self) -> None:
        """Initialize empty chat and message storage."""
        self._chats: Dict[UUID, Chat] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._lock = asyncio.Lock()
        logger.info("repository_initialized")

    def _require(self, chat_id: UUID) -> Chat:
        """Return the chat or raise ChatNotFound. Caller holds the lock."""
        chat = self._chats.get(chat_id)
        if chat is None:
            logger.warning("chat_not_found", chat_id=str(chat_id))
            raise ChatNotFound(f"Chat {chat_id} not found")
        return chat

    async def create_chat(self, title: Optional[str] = None) -> Chat:
        """Create a new chat."""
        chat = Chat(title=title)
        async with self._lock:
            self._chats[chat.id] = chat
            self._messages[chat.id] = []
        logger.info("chat_created", chat_id=str(chat.id))
        return chat

    async def list_chats(self) -> List[Chat]:
        """List chats, newest first."""
        async with self._lock:
            return sorted(self._chats.values(), key=lambda c: c.created_at, reverse=True)

    async def get_chat(self, chat_id: UUID) -> Chat:
        """Retrieve a chat by ID."""
        async with self._lock:
            return self._require(chat_id)

    async def rename_chat(self, chat_id: UUID, title: str) -> Chat:
        """Change a chat's title; a blank title becomes the default."""
        async with self._lock:
            chat = self._require(chat_id)
            renamed = chat.model_copy(update={"title": Chat(title=title).title})
            self._chats[chat_id] = renamed
            return renamed

    async def delete_chat(self, chat_id: UUID) -> None:
        """Delete a chat and its messages."""
        async with self._lock:
            self._require(chat_id)
            del self._chats[chat_id]
            removed = self._messages.pop(chat_id, [])
        logger.info("chat_deleted", chat_id=str(chat_id), messages_removed=len(removed))

    async def append_message(self, chat_id: UUID, role: Role, content: str) -> Message:
        """Add a message to a chat."""
        message = Message(chat_id=chat_id, role=role, content=content)
        async with self._lock:
            self._require(chat_id)
            self._messages[chat_id].append(message)
        logger.info("message_added", chat_id=str(chat_id), message_role=message.role.value)
        return message

    async def list_messages(
        self, chat_id: UUID, exclude_roles: Iterable[Role] = ()
    ) -> List[Message]:
        """Get a chat's messages in creation order, minus excluded roles."""
        excluded = set(exclude_roles)
        async with self._lock:
            self._require(chat_id)
            # Append order is creation order; a stable sort keeps equal timestamps in place.
            messages = sorted(self._messages[chat_id], key=lambda m: m.created_at)
        return [m for m in messages if m.role not in excluded]
