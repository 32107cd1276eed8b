"""Context store: recent turns plus a single running summary.

Pure data and trimming policy. Deciding *when* to summarize lives in
the ContextManager; this module only knows what the state is and how
to shrink it.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from jarvis.core.types import ContextSnapshot, Role, Turn

# Roles that enter the history; system and error rows never do
_HISTORY_ROLES = (Role.USER, Role.ASSISTANT)


@dataclass
class ContextStore:
    """Ordered turns, running summary and counters for one conversation."""

    max_recent: int = 12
    history: list[Turn] = field(default_factory=list)
    summary: str | None = None
    turns_since_last_summary: int = 0
    total_turns_processed: int = 0
    summarizing: bool = False
    summary_at: datetime | None = None

    # Number of the oldest history turns already folded into the summary.
    # Trimming beyond this drops turns the summarizer never saw.
    folded: int = 0
    dropped_turns: int = 0

    def append(self, turn: Turn) -> bool:
        """Append a turn if its role belongs in the history."""
        if turn.role not in _HISTORY_ROLES:
            return False
        self.history.append(turn)
        self.turns_since_last_summary += 1
        self.total_turns_processed += 1
        return True

    def recent(self, count: int | None = None) -> list[Turn]:
        """Return the last ``count`` turns (default: the recency window)."""
        n = self.max_recent if count is None else count
        if n <= 0:
            return []
        return self.history[-n:]

    def unsummarized(self) -> list[Turn]:
        """Turns added since the last summary was created or updated."""
        if self.turns_since_last_summary <= 0:
            return []
        return self.history[-self.turns_since_last_summary:]

    def set_summary(self, summary: str, folded_turns: int) -> None:
        """Install a new summary covering the oldest ``folded_turns`` turns.

        Turns appended while the summarizer was running are not covered,
        so they stay counted as unsummarized.
        """
        self.summary = summary
        self.summary_at = datetime.now(timezone.utc)
        self.folded = min(len(self.history), folded_turns)
        self.turns_since_last_summary = len(self.history) - self.folded

    def trim(self) -> int:
        """Drop turns older than the recency window.

        Returns how many of the removed turns were never folded into the
        summary (0 when everything removed was already summarized).
        """
        excess = len(self.history) - self.max_recent
        if excess <= 0:
            return 0

        del self.history[:excess]
        lost = max(0, excess - self.folded)
        self.folded = max(0, self.folded - excess)
        # Anything unsummarized that was cut can no longer be folded later
        self.turns_since_last_summary = min(self.turns_since_last_summary, len(self.history))
        self.dropped_turns += lost
        return lost

    def reset(self) -> None:
        """Drop all conversation state.

        ``summarizing`` is left alone: it tracks a summarizer call that is
        still running and only that call may clear it.
        """
        self.history = []
        self.summary = None
        self.turns_since_last_summary = 0
        self.total_turns_processed = 0
        self.summary_at = None
        self.folded = 0
        self.dropped_turns = 0

    def load_turns(self, turns: Iterable[Turn]) -> int:
        """Replace the history with previously stored turns."""
        self.reset()
        self.history = [t for t in turns if t.role in _HISTORY_ROLES]
        self.total_turns_processed = len(self.history)
        return len(self.history)

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(
            summary=self.summary,
            turns_since_last_summary=self.turns_since_last_summary,
            total_turns_processed=self.total_turns_processed,
            last_updated=self.summary_at,
        )

    def restore(self, snapshot: ContextSnapshot) -> None:
        """Apply persisted counters and summary, keeping the history.

        The last ``turns_since_last_summary`` history turns are taken to be
        the unsummarized ones; everything before them is already folded.
        """
        self.summary = snapshot.summary
        self.summary_at = snapshot.last_updated or datetime.now(timezone.utc)
        self.turns_since_last_summary = snapshot.turns_since_last_summary
        self.total_turns_processed = snapshot.total_turns_processed
        if self.summary is None:
            self.folded = 0
        else:
            self.folded = max(0, len(self.history) - self.turns_since_last_summary)

    def estimate_tokens(self, system_prompt: str = "") -> int:
        """Rough token estimate for the outbound payload (~4 chars/token)."""
        total = sum(len(t.content) for t in self.history)
        total += len(system_prompt)
        if self.summary:
            total += len(self.summary) + len("Conversation context: ")
        return -(-total // 4)
