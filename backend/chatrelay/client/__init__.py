"""Client library: conversation store and stream reconciler for the relay."""

from .controller import ChatController
from .storage import JsonFileStorage, MemoryStorage
from .store import ConversationStore, ReplaceFields, Transform
from .stream import CancellationToken, IncrementDecoder, stream_chat

__all__ = [
    "CancellationToken",
    "ChatController",
    "ConversationStore",
    "IncrementDecoder",
    "JsonFileStorage",
    "MemoryStorage",
    "ReplaceFields",
    "Transform",
    "stream_chat",
]
