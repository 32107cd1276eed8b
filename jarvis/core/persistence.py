"""Persistence interface for conversations, messages and context snapshots.

Implemented by the local SQLite store (ConversationHistory) and the
remote HTTP backend (BackendClient). Writes are at-least-once; callers do
not get transactional rollback.

Stores come in two flavours. A plain store saves messages through
append_messages() and leaves reply generation to the model router. A
store with ``persists_replies`` set runs the whole exchange itself:
stream_reply() saves the user message, generates and streams the reply,
and saves that too.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from typing import Any

from jarvis.core.types import ContextSnapshot, ConversationRecord, StoredMessage


class ConversationStore(ABC):
    """Record store for conversations as seen by the chat orchestrator."""

    persists_replies: bool = False

    @abstractmethod
    async def list_conversations(self) -> list[ConversationRecord]:
        """Conversations, most recently updated first."""

    @abstractmethod
    async def create_conversation(self, title: str) -> ConversationRecord:
        """Create a conversation and return its record (with a new id)."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> ConversationRecord:
        """Fetch one conversation's metadata. Raises NotFoundError."""

    @abstractmethod
    async def get_messages(self, conversation_id: str) -> list[StoredMessage]:
        """Messages in send order. Raises NotFoundError."""

    async def append_messages(
        self, conversation_id: str, messages: Sequence[StoredMessage]
    ) -> None:
        """Append messages and bump the conversation's updated time."""
        raise NotImplementedError(f"{type(self).__name__} saves messages in stream_reply()")

    def stream_reply(self, conversation_id: str, content: str) -> AsyncIterator[Any]:
        """Save a user message and stream the generated reply as NDJSON lines."""
        raise NotImplementedError(f"{type(self).__name__} does not generate replies")

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation with its messages and context."""

    @abstractmethod
    async def get_context(self, conversation_id: str) -> ContextSnapshot | None:
        """Saved running-summary state, or None if never saved."""

    @abstractmethod
    async def put_context(self, conversation_id: str, snapshot: ContextSnapshot) -> None:
        """Save running-summary state."""

    async def close(self) -> None:
        """Release any held resources."""
