"""Conversation store: the ordered, persisted collection of conversations.

The store is the single source of truth for conversation metadata and
message lists. It is mutated only through its methods; each method writes the
full state to the ``ai-chat-store-v1`` slot and the current conversation id to
the ``ai-chat-current-v1`` slot. Storage failures are logged and ignored: the
in-memory state stays authoritative for the session.

List order and current selection are separate pieces of state. The list is
ordered by recency of activity (``add_conversation`` and ``set_current`` move
a conversation to the front); ``current_id`` is whichever conversation was
last selected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from chatrelay.client.storage import KeyValueStorage
from chatrelay.models.conversation import (
    ChatMessage,
    Conversation,
    ConversationStats,
    MessageRole,
    StoreSnapshot,
)

logger = logging.getLogger(__name__)

STORAGE_KEY = "ai-chat-store-v1"
CURRENT_KEY = "ai-chat-current-v1"
DEFAULT_TITLE = "New chat"
TITLE_LENGTH = 30


@dataclass(frozen=True)
class ReplaceFields:
    """Update descriptor: overwrite the named fields."""

    fields: dict[str, Any]


@dataclass(frozen=True)
class Transform:
    """Update descriptor: replace the message with ``fn(message)``."""

    fn: Callable[[ChatMessage], ChatMessage]


MessageUpdate = Union[ReplaceFields, Transform]


def append_content(delta: str) -> Transform:
    """Update descriptor that appends ``delta`` to the message content."""
    return Transform(lambda msg: msg.model_copy(update={"content": msg.content + delta}))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore:
    """Persisted conversations and their append-only message lists."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self._storage = storage
        self._conversations: list[Conversation] = []
        self._messages: dict[str, list[ChatMessage]] = {}
        self._current_id: Optional[str] = None
        self._load()

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    def _read_slot(self, key: str) -> Optional[str]:
        try:
            return self._storage.get(key)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read %s: %s", key, exc)
            return None

    def _load(self) -> None:
        snapshot = StoreSnapshot()
        raw = self._read_slot(STORAGE_KEY)
        if raw:
            try:
                snapshot = StoreSnapshot.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning("Discarding unreadable conversation store: %s", exc)

        self._conversations = list(snapshot.conversations)
        self._messages = {
            conv.id: list(snapshot.messages.get(conv.id, [])) for conv in self._conversations
        }

        if not self._conversations:
            first = Conversation(title=DEFAULT_TITLE)
            self._conversations = [first]
            self._messages = {first.id: []}
            self._current_id = first.id
            self._persist()
            return

        saved = self._read_slot(CURRENT_KEY)
        if saved and self._find(saved) is not None:
            self._current_id = saved
        else:
            self._current_id = self._conversations[0].id

    def _persist(self) -> None:
        snapshot = StoreSnapshot(conversations=self._conversations, messages=self._messages)
        try:
            self._storage.set(STORAGE_KEY, snapshot.model_dump_json())
            self._storage.set(CURRENT_KEY, self._current_id or "")
        except (OSError, ValueError) as exc:
            logger.warning("Failed to persist conversation store: %s", exc)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def conversations(self) -> list[Conversation]:
        return list(self._conversations)

    @property
    def current_id(self) -> Optional[str]:
        return self._current_id

    @property
    def current_conversation(self) -> Optional[Conversation]:
        if self._current_id is None:
            return None
        return self._find(self._current_id)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._find(conversation_id)

    def messages_for(self, conversation_id: str) -> list[ChatMessage]:
        return list(self._messages.get(conversation_id, []))

    def get_message(self, conversation_id: str, message_id: str) -> Optional[ChatMessage]:
        for message in self._messages.get(conversation_id, []):
            if message.id == message_id:
                return message
        return None

    def _find(self, conversation_id: str) -> Optional[Conversation]:
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def _replace(self, updated: Conversation) -> None:
        self._conversations = [
            updated if conv.id == updated.id else conv for conv in self._conversations
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_conversation(self, title: Optional[str] = None) -> Conversation:
        """Create a conversation, or reuse an existing empty one, and make it current."""
        empty = next(
            (c for c in self._conversations if not self._messages.get(c.id)), None
        )
        if empty is not None:
            conv = empty.model_copy(update={"updated_at": _utcnow()})
            self._conversations = [conv] + [
                c for c in self._conversations if c.id != conv.id
            ]
            self._messages.setdefault(conv.id, [])
        else:
            conv = Conversation(title=title or DEFAULT_TITLE)
            self._conversations = [conv] + self._conversations
            self._messages[conv.id] = []

        self._current_id = conv.id
        self._persist()
        return conv

    def rename_conversation(self, conversation_id: str, title: str) -> None:
        conv = self._find(conversation_id)
        if conv is None:
            return
        self._replace(
            conv.model_copy(
                update={"title": title, "title_locked": True, "updated_at": _utcnow()}
            )
        )
        self._persist()

    def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation together with all of its messages."""
        if self._find(conversation_id) is None:
            return
        self._conversations = [c for c in self._conversations if c.id != conversation_id]
        self._messages.pop(conversation_id, None)
        if self._current_id == conversation_id:
            self._current_id = self._conversations[0].id if self._conversations else None
        self._persist()

    def add_message(self, message: ChatMessage) -> None:
        """Append ``message``; a first user message names an untitled conversation."""
        conv = self._find(message.conversation_id)
        if conv is None:
            logger.warning(
                "Dropping message %s for unknown conversation %s",
                message.id,
                message.conversation_id,
            )
            return

        existing = self._messages.setdefault(conv.id, [])
        update: dict[str, Any] = {"updated_at": _utcnow()}
        if not existing and message.role == MessageRole.USER and not conv.title_locked:
            title = message.content[:TITLE_LENGTH]
            if title:
                update["title"] = title

        existing.append(message)
        self._replace(conv.model_copy(update=update))
        self._persist()

    def update_message(
        self, conversation_id: str, message_id: str, update: MessageUpdate
    ) -> Optional[ChatMessage]:
        """Apply ``update`` to one message. Terminal messages are left untouched."""
        messages = self._messages.get(conversation_id)
        if not messages:
            return None

        for index, message in enumerate(messages):
            if message.id != message_id:
                continue
            if message.status.is_terminal:
                logger.debug("Ignoring update to terminal message %s", message_id)
                return message
            if isinstance(update, ReplaceFields):
                updated = message.model_copy(update=update.fields)
            else:
                updated = update.fn(message)
            # Identity and ownership are never reassigned.
            updated = ChatMessage.model_validate(
                {
                    **updated.model_dump(),
                    "id": message.id,
                    "conversation_id": message.conversation_id,
                }
            )
            messages[index] = updated
            self._persist()
            return updated
        return None

    def update_stats(self, conversation_id: str, stats: ConversationStats) -> None:
        """Merge the set fields of ``stats`` into the conversation's last-call record."""
        conv = self._find(conversation_id)
        if conv is None:
            return
        merged = (conv.stats or ConversationStats()).model_copy(
            update=stats.model_dump(exclude_none=True)
        )
        self._replace(conv.model_copy(update={"stats": merged, "updated_at": _utcnow()}))
        self._persist()

    def set_current(self, conversation_id: str) -> None:
        """Select a conversation and move it to the front of the list."""
        conv = self._find(conversation_id)
        if conv is None:
            return
        self._conversations = [conv] + [
            c for c in self._conversations if c.id != conversation_id
        ]
        self._current_id = conversation_id
        self._persist()

    def update_system_prompt(self, conversation_id: str, prompt: str) -> None:
        conv = self._find(conversation_id)
        if conv is None:
            return
        self._replace(conv.model_copy(update={"system_prompt": prompt, "updated_at": _utcnow()}))
        self._persist()
