"""Context manager: running-summary context for one conversation.

Coordinates:
- The context store (recent turns, running summary, counters)
- The summarizer (initial summary, then incremental updates)
- Outbound payload building for model calls
- Snapshot export/import for persistence

Summarization runs as a background task and is single-flight: a second
trigger while one is outstanding is dropped, not queued. Whatever the
outcome of an attempt, history is trimmed back to the recency window
afterwards, so memory stays bounded even if the summarizer is down.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import structlog

from jarvis.config import ContextConfig
from jarvis.core.memory.store import ContextStore
from jarvis.core.types import ContextSnapshot, Role, StoredMessage, Turn

logger = structlog.get_logger()

SUMMARY_PREFIX = "Conversation context: "

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ContextManager:
    """Facade over ContextStore + Summarizer for a single conversation."""

    def __init__(
        self,
        summarizer: Any = None,
        config: ContextConfig | None = None,
    ) -> None:
        self.config = config or ContextConfig()
        self.store = ContextStore(max_recent=self.config.max_recent)
        self._summarizer = summarizer
        self._system_turn = Turn(
            role=Role.SYSTEM, content=self.config.system_prompt, created_at=_EPOCH
        )
        self._tasks: set[asyncio.Task[bool]] = set()
        # Bumped by clear() and history imports so an in-flight summary never
        # lands on a reset store. store.summarizing survives both, so a new
        # attempt still waits for the old call to return.
        self._generation = 0

    # --- Read-only views ---

    @property
    def summary(self) -> str | None:
        return self.store.summary

    @property
    def history(self) -> list[Turn]:
        return list(self.store.history)

    @property
    def summarizing(self) -> bool:
        return self.store.summarizing

    @property
    def turns_since_last_summary(self) -> int:
        return self.store.turns_since_last_summary

    @property
    def total_turns_processed(self) -> int:
        return self.store.total_turns_processed

    # --- Mutation ---

    def add_turn(self, turn: Turn) -> asyncio.Task[bool] | None:
        """Add a turn and schedule context optimization in the background.

        Only user and assistant turns enter the history. Returns the
        spawned task (or None when nothing needed scheduling) so callers
        that care can await it; normal callers don't.
        """
        if self.store.append(turn):
            logger.debug(
                "context_turn_added",
                role=turn.role.value,
                recent=len(self.store.history),
                since_summary=self.store.turns_since_last_summary,
            )
        return self._schedule()

    def _schedule(self) -> asyncio.Task[bool] | None:
        if self.store.summarizing:
            # The in-flight attempt trims when it finishes
            return None
        if not self._needs_summary() and len(self.store.history) <= self.store.max_recent:
            return None
        task = asyncio.get_running_loop().create_task(self.maybe_summarize())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _needs_summary(self) -> bool:
        store = self.store
        if store.summary is None:
            return store.total_turns_processed >= self.config.initial_threshold
        return store.turns_since_last_summary >= self.config.update_threshold

    async def maybe_summarize(self, force: bool = False) -> bool:
        """Create or update the running summary if a threshold is reached.

        Returns True when a new summary was installed. Re-entrant calls
        while a summarization is running are no-ops.
        """
        store = self.store
        if store.summarizing:
            logger.debug("context_optimization_skipped", reason="in_progress")
            return False

        generation = self._generation
        summarized = False
        if force or self._needs_summary():
            store.summarizing = True
            try:
                summarized = await self._summarize(generation)
            finally:
                store.summarizing = False

        if generation != self._generation:
            # Turns added after clear() were held back while this call ran
            self._schedule()
        else:
            lost = store.trim()
            if lost:
                logger.warning(
                    "context_turns_dropped",
                    dropped=lost,
                    total_dropped=store.dropped_turns,
                    has_summary=store.summary is not None,
                )
        return summarized

    async def _summarize(self, generation: int) -> bool:
        store = self.store
        initial = store.summary is None
        if initial:
            turns = list(store.history)
            prior = None
        else:
            turns = store.unsummarized()
            prior = store.summary
        anchor = len(store.history)
        kind = "initial" if initial else "update"

        if not turns:
            logger.debug("context_summary_nothing_to_fold", kind=kind)
            return False
        if self._summarizer is None:
            logger.debug("context_summarizer_unavailable", kind=kind)
            return False

        logger.info("context_summary_started", kind=kind, turns=len(turns))
        try:
            summary = await self._summarizer.summarize(turns, prior)
        except Exception as e:
            logger.warning(
                "context_summarization_failed",
                kind=kind,
                error=getattr(e, "message", str(e)),
                details=getattr(e, "details", None),
            )
            return False

        if generation != self._generation:
            logger.debug("context_summary_discarded", reason="context_cleared")
            return False
        if not isinstance(summary, str) or not summary.strip():
            logger.warning("context_summarization_failed", kind=kind, error="empty summary")
            return False

        store.set_summary(summary.strip(), anchor)
        logger.info(
            "context_summary_created" if initial else "context_summary_updated",
            words=len(store.summary.split()),
            folded=len(turns),
        )
        return True

    async def force_summary_update(self) -> bool:
        """Summarize now, regardless of thresholds (manual trigger)."""
        if not self.store.history:
            return False
        return await self.maybe_summarize(force=True)

    async def wait_idle(self) -> None:
        """Wait for any background optimization to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> None:
        """Reset to the initial empty state."""
        self._generation += 1
        self.store.reset()
        logger.debug("context_cleared")

    # --- Outbound payload ---

    def build_outbound_context(self) -> list[Turn]:
        """System prompt, then the summary (if any), then recent turns."""
        context = [self._system_turn]
        summary = self.store.summary
        if summary and summary.strip():
            context.append(Turn(
                role=Role.SYSTEM,
                content=f"{SUMMARY_PREFIX}{summary}",
                created_at=self.store.summary_at or _EPOCH,
            ))
        context.extend(self.store.recent())
        return context

    # --- Persistence ---

    def export_snapshot(self) -> ContextSnapshot:
        snapshot = self.store.snapshot()
        snapshot.last_updated = datetime.now(timezone.utc)
        return snapshot

    def import_snapshot(self, snapshot: ContextSnapshot | dict[str, Any] | None) -> bool:
        """Restore summary and counters. Returns False if nothing usable."""
        if isinstance(snapshot, dict):
            snapshot = ContextSnapshot.from_dict(snapshot)
        if not isinstance(snapshot, ContextSnapshot):
            logger.warning("context_snapshot_invalid")
            return False
        self.store.restore(snapshot)
        logger.debug(
            "context_snapshot_imported",
            has_summary=snapshot.summary is not None,
            total=snapshot.total_turns_processed,
        )
        return True

    def import_from_messages(self, messages: Iterable[StoredMessage | dict[str, Any]]) -> int:
        """Rebuild history from stored messages; malformed entries are skipped.

        No summary is generated here; the next turn's optimization pass
        decides whether one is due.
        """
        self._generation += 1
        turns: list[Turn] = []
        for msg in messages:
            turn = _to_turn(msg)
            if turn is not None:
                turns.append(turn)
        count = self.store.load_turns(turns)
        logger.debug("context_imported_from_messages", count=count)
        return count

    def get_stats(self) -> dict[str, Any]:
        store = self.store
        history = store.history
        return {
            "recent_turn_count": len(history),
            "total_turns_processed": store.total_turns_processed,
            "turns_since_last_summary": store.turns_since_last_summary,
            "estimated_tokens": store.estimate_tokens(self.config.system_prompt),
            "oldest_recent_turn": history[0].created_at.isoformat() if history else None,
            "newest_turn": history[-1].created_at.isoformat() if history else None,
            "summary": store.summary,
            "has_summary": bool(store.summary and store.summary.strip()),
            "summary_word_count": len(store.summary.split()) if store.summary else 0,
            "summarizing": store.summarizing,
            "dropped_turns": store.dropped_turns,
        }


def _to_turn(msg: StoredMessage | dict[str, Any]) -> Turn | None:
    """Convert a stored message into a Turn, or None if it is malformed."""
    if isinstance(msg, StoredMessage):
        role, content, sent_at = msg.role, msg.content, msg.sent_at
    elif isinstance(msg, dict):
        role, content, sent_at = msg.get("role"), msg.get("content"), msg.get("sent_at")
    else:
        return None

    try:
        role = Role(role)
    except (ValueError, TypeError):
        return None
    if role not in (Role.USER, Role.ASSISTANT) or not isinstance(content, str):
        return None

    return Turn(role=role, content=content, created_at=_parse_time(sent_at))


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("turn_timestamp_unparseable", value=value)
    return datetime.now(timezone.utc)
