"""Conversation, message and attachment models for the client-side store."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class MessageRole(str, Enum):
    """Message sender role."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    """Lifecycle of a message: pending -> streaming -> done | error."""

    PENDING = "pending"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.DONE, MessageStatus.ERROR)


class AttachmentKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class Attachment(BaseModel):
    """Media attached to a single message. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    type: AttachmentKind
    url: Optional[str] = None
    mime: Optional[str] = None
    size: Optional[int] = None
    name: Optional[str] = None


class ConversationStats(BaseModel):
    """Statistics about the last upstream call made for a conversation."""

    last_latency_ms: Optional[int] = None
    last_status: Optional[int] = None
    last_provider: Optional[str] = None


class Conversation(BaseModel):
    """Conversation metadata. Messages are held separately by the store."""

    id: str = Field(default_factory=new_id)
    title: str
    system_prompt: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    stats: Optional[ConversationStats] = None
    # Set by an explicit rename; suppresses title derivation from the first message.
    title_locked: bool = False


class ChatMessage(BaseModel):
    """A single message owned by exactly one conversation."""

    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: MessageRole
    content: str = ""
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    attachments: list[Attachment] = Field(default_factory=list)


class StoreSnapshot(BaseModel):
    """Serialized form of the whole conversation store."""

    conversations: list[Conversation] = Field(default_factory=list)
    messages: dict[str, list[ChatMessage]] = Field(default_factory=dict)
