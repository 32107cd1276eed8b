"""Tests for the running-summary context: store, manager and snapshots."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from jarvis.config import ContextConfig
from jarvis.core.errors import SummarizationFailure
from jarvis.core.memory.manager import SUMMARY_PREFIX, ContextManager
from jarvis.core.memory.store import ContextStore
from jarvis.core.types import ContextSnapshot, Role, StoredMessage, Turn


# === Shared helpers ===

def _turn(i: int) -> Turn:
    role = Role.USER if i % 2 == 0 else Role.ASSISTANT
    return Turn(role=role, content=f"message {i}")


def _summarizer(*results):
    """Summarizer double whose summarize() returns/raises the given results in order."""
    summarizer = AsyncMock()
    summarizer.summarize = AsyncMock(side_effect=list(results))
    return summarizer


async def _add(manager: ContextManager, start: int, count: int) -> None:
    for i in range(start, start + count):
        manager.add_turn(_turn(i))
    await manager.wait_idle()


# =============================================================
# ContextStore
# =============================================================

class TestContextStore:
    """Tests for the pure context state."""

    def test_append_counts_only_history_roles(self):
        store = ContextStore()
        assert store.append(Turn(role=Role.USER, content="hi"))
        assert not store.append(Turn(role=Role.SYSTEM, content="sys"))
        assert not store.append(Turn(role=Role.ERROR, content="boom"))
        assert len(store.history) == 1
        assert store.total_turns_processed == 1
        assert store.turns_since_last_summary == 1

    def test_set_summary_keeps_late_turns_unsummarized(self):
        store = ContextStore()
        for i in range(10):
            store.append(_turn(i))
        # Summarizer saw the first 8; two arrived while it ran
        store.set_summary("S", folded_turns=8)
        assert store.summary == "S"
        assert store.turns_since_last_summary == 2
        assert store.unsummarized() == store.history[-2:]

    def test_trim_reports_turns_never_folded(self):
        store = ContextStore(max_recent=4)
        for i in range(6):
            store.append(_turn(i))
        lost = store.trim()
        assert lost == 2
        assert store.dropped_turns == 2
        assert len(store.history) == 4

    def test_trim_after_summary_loses_nothing(self):
        store = ContextStore(max_recent=4)
        for i in range(6):
            store.append(_turn(i))
        store.set_summary("S", folded_turns=6)
        assert store.trim() == 0
        assert store.folded == 4
        assert store.dropped_turns == 0

    def test_restore_marks_older_turns_folded(self):
        store = ContextStore()
        store.load_turns([_turn(i) for i in range(6)])
        store.restore(ContextSnapshot(
            summary="S", turns_since_last_summary=2, total_turns_processed=30,
        ))
        assert store.folded == 4
        assert store.total_turns_processed == 30
        assert store.unsummarized() == store.history[-2:]

    def test_estimate_tokens(self):
        store = ContextStore()
        store.append(Turn(role=Role.USER, content="x" * 40))
        assert store.estimate_tokens() == 10
        assert store.estimate_tokens("y" * 8) == 12


# =============================================================
# Summarization thresholds
# =============================================================

class TestSummarization:
    """Tests for when and how the running summary is produced."""

    @pytest.mark.asyncio
    async def test_initial_summary_at_threshold(self):
        summarizer = _summarizer("S1")
        manager = ContextManager(summarizer=summarizer, config=ContextConfig())

        await _add(manager, 0, 7)
        assert manager.summary is None
        summarizer.summarize.assert_not_called()

        await _add(manager, 7, 1)
        assert manager.summary == "S1"
        assert manager.turns_since_last_summary == 0
        assert manager.total_turns_processed == 8
        assert len(manager.history) == 8

        turns, prior = summarizer.summarize.call_args.args
        assert len(turns) == 8
        assert prior is None

    @pytest.mark.asyncio
    async def test_update_folds_only_new_turns(self):
        summarizer = _summarizer("S1", "S2")
        manager = ContextManager(summarizer=summarizer)

        await _add(manager, 0, 8)
        await _add(manager, 8, 3)
        assert manager.summary == "S1"
        assert manager.turns_since_last_summary == 3

        await _add(manager, 11, 1)
        assert manager.summary == "S2"
        assert manager.turns_since_last_summary == 0

        turns, prior = summarizer.summarize.call_args.args
        assert prior == "S1"
        assert [t.content for t in turns] == [f"message {i}" for i in range(8, 12)]

    @pytest.mark.asyncio
    async def test_single_flight(self):
        release = asyncio.Event()
        calls = 0

        async def slow_summarize(turns, prior=None):
            nonlocal calls
            calls += 1
            await release.wait()
            return "S"

        summarizer = AsyncMock()
        summarizer.summarize = slow_summarize
        manager = ContextManager(summarizer=summarizer)

        for i in range(8):
            manager.add_turn(_turn(i))
        await asyncio.sleep(0)
        assert manager.summarizing

        # Arrives while the summary is being built
        manager.add_turn(_turn(8))
        assert await manager.maybe_summarize() is False

        release.set()
        await manager.wait_idle()
        assert calls == 1
        assert manager.summary == "S"
        assert not manager.summarizing
        assert manager.turns_since_last_summary == 1

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_summary(self):
        summarizer = _summarizer("S1", SummarizationFailure("model down"))
        manager = ContextManager(summarizer=summarizer)

        await _add(manager, 0, 8)
        await _add(manager, 8, 4)

        assert summarizer.summarize.call_count == 2
        assert manager.summary == "S1"
        assert manager.turns_since_last_summary == 4
        assert not manager.summarizing

    @pytest.mark.asyncio
    async def test_empty_summary_is_a_failure(self):
        manager = ContextManager(summarizer=_summarizer("   "))
        await _add(manager, 0, 8)
        assert manager.summary is None
        assert manager.turns_since_last_summary == 8

    @pytest.mark.asyncio
    async def test_history_bounded_without_summarizer(self):
        manager = ContextManager(summarizer=None)
        await _add(manager, 0, 20)

        assert len(manager.history) == 12
        assert manager.history[-1].content == "message 19"
        assert manager.total_turns_processed == 20
        assert manager.get_stats()["dropped_turns"] == 8

    @pytest.mark.asyncio
    async def test_history_bounded_when_summarizer_fails(self):
        failures = [SummarizationFailure("down")] * 30
        manager = ContextManager(summarizer=_summarizer(*failures))
        await _add(manager, 0, 25)
        assert len(manager.history) <= 12
        assert manager.summary is None

    @pytest.mark.asyncio
    async def test_force_summary_update(self):
        summarizer = _summarizer("forced")
        manager = ContextManager(summarizer=summarizer)
        await _add(manager, 0, 3)

        assert await manager.force_summary_update() is True
        assert manager.summary == "forced"

    @pytest.mark.asyncio
    async def test_force_summary_update_empty_history(self):
        summarizer = _summarizer("unused")
        manager = ContextManager(summarizer=summarizer)
        assert await manager.force_summary_update() is False
        summarizer.summarize.assert_not_called()

    @pytest.mark.asyncio
    async def test_clear_discards_in_flight_summary(self):
        release = asyncio.Event()

        async def slow_summarize(turns, prior=None):
            await release.wait()
            return "stale"

        summarizer = AsyncMock()
        summarizer.summarize = slow_summarize
        manager = ContextManager(summarizer=summarizer)

        for i in range(8):
            manager.add_turn(_turn(i))
        await asyncio.sleep(0)
        manager.clear()

        release.set()
        await manager.wait_idle()
        assert manager.summary is None
        assert manager.history == []
        assert manager.total_turns_processed == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reset", ["clear", "import"])
    async def test_no_overlap_after_reset(self, reset):
        release = asyncio.Event()
        running = 0
        max_running = 0
        calls = []

        async def slow_summarize(turns, prior=None):
            nonlocal running, max_running
            running += 1
            max_running = max(max_running, running)
            calls.append([t.content for t in turns])
            try:
                await release.wait()
            finally:
                running -= 1
            return f"summary {len(calls)}"

        summarizer = AsyncMock()
        summarizer.summarize = slow_summarize
        manager = ContextManager(summarizer=summarizer)

        for i in range(8):
            manager.add_turn(_turn(i))
        await asyncio.sleep(0)
        assert manager.summarizing

        if reset == "clear":
            manager.clear()
        else:
            manager.import_from_messages([])
        assert manager.summarizing

        for i in range(100, 108):
            manager.add_turn(_turn(i))
        await asyncio.sleep(0)
        assert max_running == 1

        release.set()
        await manager.wait_idle()

        assert max_running == 1
        assert len(calls) == 2
        # The stale result is dropped; the held-back turns are summarized after
        assert calls[1] == [f"message {i}" for i in range(100, 108)]
        assert manager.summary == "summary 2"
        assert not manager.summarizing


# =============================================================
# Outbound payload
# =============================================================

class TestOutboundContext:
    """Tests for build_outbound_context()."""

    def test_empty_context_is_system_prompt_only(self):
        config = ContextConfig(system_prompt="You are a test.")
        manager = ContextManager(config=config)
        outbound = manager.build_outbound_context()
        assert len(outbound) == 1
        assert outbound[0].role == Role.SYSTEM
        assert outbound[0].content == "You are a test."

    @pytest.mark.asyncio
    async def test_summary_follows_system_prompt(self):
        manager = ContextManager(summarizer=_summarizer("S1"))
        await _add(manager, 0, 8)

        outbound = manager.build_outbound_context()
        assert [t.role for t in outbound[:2]] == [Role.SYSTEM, Role.SYSTEM]
        assert outbound[1].content == f"{SUMMARY_PREFIX}S1"
        assert outbound[2:] == manager.history

    @pytest.mark.asyncio
    async def test_build_is_repeatable(self):
        manager = ContextManager(summarizer=_summarizer("S1"))
        await _add(manager, 0, 9)
        assert manager.build_outbound_context() == manager.build_outbound_context()

    @pytest.mark.asyncio
    async def test_only_recent_window_sent(self):
        manager = ContextManager(config=ContextConfig(max_recent=4))
        for i in range(3):
            manager.add_turn(_turn(i))
        outbound = manager.build_outbound_context()
        assert len(outbound) == 4


# =============================================================
# Snapshots and import
# =============================================================

class TestSnapshots:
    """Tests for export/import of persisted context."""

    @pytest.mark.asyncio
    async def test_export_import_round_trip(self):
        source = ContextManager(summarizer=_summarizer("S1"))
        await _add(source, 0, 8)
        await _add(source, 8, 2)
        snapshot = source.export_snapshot()

        target = ContextManager()
        assert target.import_snapshot(snapshot.to_dict())
        assert target.summary == "S1"
        assert target.turns_since_last_summary == 2
        assert target.total_turns_processed == 10

    def test_import_snapshot_rejects_garbage(self):
        manager = ContextManager()
        assert manager.import_snapshot(None) is False
        assert manager.import_snapshot("not a snapshot") is False

    def test_import_snapshot_tolerates_bad_counters(self):
        manager = ContextManager()
        manager.import_snapshot({
            "runningSummary": "S",
            "messagesSinceLastSummary": "three",
            "totalMessagesProcessed": -1,
        })
        assert manager.summary == "S"
        assert manager.turns_since_last_summary == 0
        assert manager.total_turns_processed == 0

    def test_import_from_messages_skips_malformed(self):
        manager = ContextManager()
        count = manager.import_from_messages([
            StoredMessage(role=Role.USER, content="hello"),
            {"role": "assistant", "content": "hi there", "sent_at": "2024-05-01T10:00:00Z"},
            {"role": "wizard", "content": "??"},
            {"role": "user"},
            {"role": "system", "content": "ignored"},
            "garbage",
            {"role": "user", "content": "bye", "sent_at": "not-a-date"},
        ])
        assert count == 3
        assert [t.content for t in manager.history] == ["hello", "hi there", "bye"]
        assert manager.summary is None
        assert manager.turns_since_last_summary == 0
        assert manager.total_turns_processed == 3

    def test_import_from_messages_does_not_trim(self):
        manager = ContextManager(config=ContextConfig(max_recent=4))
        manager.import_from_messages([
            StoredMessage(role=Role.USER, content=f"m{i}") for i in range(10)
        ])
        assert len(manager.history) == 10
        assert len(manager.build_outbound_context()) == 5

    @pytest.mark.asyncio
    async def test_restored_context_resumes_updates(self):
        summarizer = _summarizer("S2")
        manager = ContextManager(summarizer=summarizer)
        manager.import_from_messages([
            StoredMessage(role=Role.USER, content=f"m{i}") for i in range(6)
        ])
        manager.import_snapshot(ContextSnapshot(
            summary="S1", turns_since_last_summary=3, total_turns_processed=6,
        ))

        manager.add_turn(Turn(role=Role.ASSISTANT, content="new"))
        await manager.wait_idle()

        assert manager.summary == "S2"
        turns, prior = summarizer.summarize.call_args.args
        assert prior == "S1"
        assert [t.content for t in turns] == ["m3", "m4", "m5", "new"]

    def test_stats(self):
        manager = ContextManager()
        manager.import_from_messages([StoredMessage(role=Role.USER, content="hello")])
        stats = manager.get_stats()
        assert stats["recent_turn_count"] == 1
        assert stats["has_summary"] is False
        assert stats["summary_word_count"] == 0
        assert stats["summarizing"] is False
