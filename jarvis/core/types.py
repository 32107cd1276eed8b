"""Shared data types for the Jarvis chat client."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from jarvis.core.errors import ValidationError

# Fixed sender identity for persisted assistant messages
ASSISTANT_SENDER_ID = "00000000-0000-0000-0000-000000000000"

PLACEHOLDER_TEXT = "Thinking..."
NO_RESPONSE_TEXT = "No response received."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Message role in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    ERROR = "error"  # Visible log only, never sent to a model


class SessionStatus(str, Enum):
    """Chat session lifecycle state."""

    IDLE = "idle"
    CREATING = "creating"
    LOADING = "loading"
    STREAMING = "streaming"
    ERROR = "error"


@dataclass(frozen=True)
class Turn:
    """A single conversation turn held by the context store."""

    role: Role
    content: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_litellm(self) -> dict[str, Any]:
        """Convert to LiteLLM-compatible message dict."""
        return {"role": self.role.value, "content": self.content}


@dataclass
class DisplayMessage:
    """One row of the visible conversation log.

    Unlike Turn this is mutable: the streaming assistant slot is
    rewritten in place as deltas arrive.
    """

    role: Role
    content: str
    pending: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class StoredMessage:
    """A message as returned by the persistence layer."""

    role: Role
    content: str
    sender_id: str = ""
    sent_at: datetime | None = None

    def to_display(self) -> DisplayMessage:
        return DisplayMessage(
            role=self.role,
            content=self.content,
            created_at=self.sent_at or _utcnow(),
        )


@dataclass
class ConversationRecord:
    """Conversation metadata as stored by the persistence layer."""

    id: str
    title: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime | None = None


@dataclass
class ContextSnapshot:
    """Persisted running-summary state for one conversation."""

    summary: str | None = None
    turns_since_last_summary: int = 0
    total_turns_processed: int = 0
    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runningSummary": self.summary,
            "messagesSinceLastSummary": self.turns_since_last_summary,
            "totalMessagesProcessed": self.total_turns_processed,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ContextSnapshot:
        """Parse the stored form, tolerating missing or mistyped counters."""
        summary = raw.get("runningSummary")
        since = raw.get("messagesSinceLastSummary")
        total = raw.get("totalMessagesProcessed")
        updated = raw.get("lastUpdated")
        last_updated = None
        if isinstance(updated, str):
            try:
                last_updated = datetime.fromisoformat(updated.replace("Z", "+00:00"))
            except ValueError:
                last_updated = None
        return cls(
            summary=summary if isinstance(summary, str) and summary.strip() else None,
            turns_since_last_summary=since if isinstance(since, int) and since >= 0 else 0,
            total_turns_processed=total if isinstance(total, int) and total >= 0 else 0,
            last_updated=last_updated,
        )


@dataclass
class ModelResponse:
    """Response from a non-streaming model call."""

    content: str | None = None
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str = ""


@dataclass
class StreamChunk:
    """One unit of a streamed model reply.

    Either carries incremental text, or is a terminal error marker.
    """

    delta_text: str = ""
    error: str | None = None
    details: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def parse(cls, raw: StreamChunk | str | bytes | dict[str, Any]) -> StreamChunk:
        """Parse a wire item into a StreamChunk.

        Raises ValidationError for anything that does not match the
        NDJSON chunk contract.
        """
        if isinstance(raw, StreamChunk):
            return raw
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValidationError("Unparseable stream chunk", details=str(e)) from e
        if not isinstance(raw, dict) or "success" not in raw:
            raise ValidationError("Stream chunk is not a chunk object")

        if raw["success"] is True:
            delta = raw.get("ollamaResponseChunk") or ""
            if not isinstance(delta, str):
                raise ValidationError("Stream chunk text is not a string")
            return cls(delta_text=delta)
        return cls(
            error=str(raw.get("error") or "Unknown"),
            details=str(raw.get("details") or "N/A"),
        )
