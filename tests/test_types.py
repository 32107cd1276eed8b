"""Tests for shared data types and the stream chunk contract."""

from __future__ import annotations

import json

import pytest

from jarvis.core.errors import JarvisError, TransportError, ValidationError
from jarvis.core.types import (
    ContextSnapshot,
    DisplayMessage,
    Role,
    StoredMessage,
    StreamChunk,
    Turn,
)


class TestStreamChunk:
    """Tests for StreamChunk.parse()."""

    def test_text_chunk(self):
        chunk = StreamChunk.parse('{"success": true, "ollamaResponseChunk": "Hel"}')
        assert chunk.delta_text == "Hel"
        assert not chunk.is_error

    def test_bytes_and_dict(self):
        assert StreamChunk.parse(b'{"success": true, "ollamaResponseChunk": "a"}').delta_text == "a"
        assert StreamChunk.parse({"success": True, "ollamaResponseChunk": "b"}).delta_text == "b"

    def test_passthrough(self):
        chunk = StreamChunk(delta_text="x")
        assert StreamChunk.parse(chunk) is chunk

    def test_missing_text_is_empty(self):
        assert StreamChunk.parse({"success": True}).delta_text == ""

    def test_error_marker(self):
        chunk = StreamChunk.parse('{"success": false, "error": "boom", "details": "oom"}')
        assert chunk.is_error
        assert (chunk.error, chunk.details) == ("boom", "oom")

    def test_error_marker_defaults(self):
        chunk = StreamChunk.parse({"success": False})
        assert (chunk.error, chunk.details) == ("Unknown", "N/A")

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        '{"ollamaResponseChunk": "no flag"}',
        '{"success": true, "ollamaResponseChunk": 5}',
        42,
    ])
    def test_malformed(self, raw):
        with pytest.raises(ValidationError):
            StreamChunk.parse(raw)


class TestContextSnapshot:
    """Tests for the persisted snapshot shape."""

    def test_to_dict_uses_stored_keys(self):
        data = ContextSnapshot(summary="S", turns_since_last_summary=2, total_turns_processed=9).to_dict()
        assert data == {
            "runningSummary": "S",
            "messagesSinceLastSummary": 2,
            "totalMessagesProcessed": 9,
            "lastUpdated": None,
        }

    def test_from_dict_tolerant(self):
        snapshot = ContextSnapshot.from_dict({
            "runningSummary": "   ",
            "messagesSinceLastSummary": None,
            "lastUpdated": "yesterday",
        })
        assert snapshot.summary is None
        assert snapshot.turns_since_last_summary == 0
        assert snapshot.last_updated is None

    def test_from_dict_parses_timestamp(self):
        snapshot = ContextSnapshot.from_dict({"lastUpdated": "2024-02-03T04:05:06Z"})
        assert snapshot.last_updated.year == 2024
        assert snapshot.last_updated.tzinfo is not None


class TestMessages:
    """Tests for turn and message conversions."""

    def test_turn_to_litellm(self):
        assert Turn(role=Role.USER, content="hi").to_litellm() == {"role": "user", "content": "hi"}

    def test_stored_to_display(self):
        display = StoredMessage(role=Role.ASSISTANT, content="hello").to_display()
        assert isinstance(display, DisplayMessage)
        assert (display.role, display.content, display.pending) == (Role.ASSISTANT, "hello", False)


class TestErrors:
    """Tests for the exception hierarchy."""

    def test_attributes(self):
        error = TransportError("down", details={"host": "x"}, status_code=503)
        assert isinstance(error, JarvisError)
        assert str(error) == "down"
        assert error.details == {"host": "x"}
        assert error.status_code == 503
