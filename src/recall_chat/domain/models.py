"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

DEFAULT_CHAT_TITLE = "New Chat"


class Role(str, Enum):
    """Author of a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class MemoryScope(str, Enum):
    """Memory partition: long-lived per user, or ephemeral per session."""

    USER = "user"
    SESSION = "session"


class MemoryCategory(str, Enum):
    """Kind of fact a memory records."""

    PERSONAL_FACTS = "personal_facts"
    PREFERENCES = "preferences"
    GOALS = "goals"
    EVENTS = "events"
    SKILLS = "skills"
    PROJECTS = "projects"
    NAME = "name"
    FRIENDS = "friends"
    FAMILY = "family"


class Importance(str, Enum):
    """How much a memory matters when space runs out."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Ordering used for eviction and ranking: low < medium < high."""
        return _IMPORTANCE_RANK[self]


_IMPORTANCE_RANK = {Importance.LOW: 0, Importance.MEDIUM: 1, Importance.HIGH: 2}


class Chat(BaseModel):
    """Chat model."""

    id: UUID = Field(default_factory=uuid4)
    title: str = DEFAULT_CHAT_TITLE
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("title", mode="before")
    @classmethod
    def _default_blank_title(cls, value: Optional[str]) -> str:
        if value is None or not str(value).strip():
            return DEFAULT_CHAT_TITLE
        return str(value).strip()


class Message(BaseModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    chat_id: UUID
    role: Role
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message content must not be empty")
        return value

    def as_turn(self) -> Dict[str, str]:
        """Plain ``{role, content}`` form sent to the completion client."""
        return {"role": self.role.value, "content": self.content}


class MemoryRecord(BaseModel):
    """A stored memory owned by one (scope, owner key) partition."""

    id: UUID = Field(default_factory=uuid4)
    scope: MemoryScope
    owner_key: str
    content: str
    category: MemoryCategory = MemoryCategory.PERSONAL_FACTS
    importance: Importance = Importance.MEDIUM
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("memory content must not be empty")
        return value.strip()

    @field_validator("created_at")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        # Stored timestamps are naive UTC so they stay comparable.
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class ScoredMemory(BaseModel):
    """A memory returned from a relevance query, with its similarity score."""

    record: MemoryRecord
    score: float = 0.0


class CandidateMemory(BaseModel):
    """A memory proposed by the model but not yet stored."""

    content: str
    category: str = MemoryCategory.PERSONAL_FACTS.value
    importance: str = Importance.MEDIUM.value
    type: Optional[str] = None


class ParsedResponse(BaseModel):
    """Reply text and any memories carried by a completion."""

    reply: str
    memories: List[CandidateMemory] = []
    parse_error: Optional[str] = None


class MemoryStats(BaseModel):
    """Memory counts for the current user and session."""

    user_memory_count: int = 0
    session_memory_count: int = 0


class TurnResult(BaseModel):
    """Outcome of one user turn: the two messages it created."""

    user_message: Message
    assistant_message: Message
    fallback: bool = False
    debug: Optional[Dict[str, Any]] = None
