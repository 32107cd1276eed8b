"""Summarizer: folds conversation turns into a running summary.

Stateless wrapper around a single non-streaming model call. Two prompt
shapes are used:

1. Initial: summarize a batch of turns from scratch.
2. Update: merge newly added turns into an existing summary.

Any failure (transport, timeout, empty or malformed output) is raised as
SummarizationFailure; the caller decides what to keep.
"""

from __future__ import annotations

from typing import Any, Sequence

import structlog

from jarvis.config import ContextConfig, ModelsConfig
from jarvis.core.errors import SummarizationFailure
from jarvis.core.types import Role, Turn

logger = structlog.get_logger()

# Guard against oversized prompts from very long individual turns
_MAX_TURN_CHARS = 4000

_STATE_RULES = (
    "SPECIAL INSTRUCTIONS FOR ONGOING GAMES OR ACTIVITIES:\n"
    "- Track the complete sequence of moves or words used so far\n"
    "- Note whose turn it currently is\n"
    "- Preserve any special rules or patterns established"
)


class Summarizer:
    """Builds summarization prompts and runs them through a model backend.

    ``backend`` is anything with an async ``complete(messages=..., ...)``
    returning an object with a ``content`` attribute: the ModelRouter for
    local mode, the BackendClient for remote mode.
    """

    def __init__(
        self,
        backend: Any,
        config: ContextConfig | None = None,
        models: ModelsConfig | None = None,
    ) -> None:
        self._backend = backend
        self.config = config or ContextConfig()
        self._models = models or ModelsConfig()

    async def summarize(self, turns: Sequence[Turn], prior_summary: str | None = None) -> str:
        """Return a new summary covering ``prior_summary`` plus ``turns``."""
        if not turns:
            raise SummarizationFailure("No turns to summarize")

        if prior_summary:
            messages = self._update_prompt(prior_summary, turns)
            kind = "update"
        else:
            messages = self._initial_prompt(turns)
            kind = "initial"

        try:
            response = await self._backend.complete(
                messages=messages,
                model=self._models.summarize_model,
                temperature=self._models.summarize_temperature,
                top_p=self._models.summarize_top_p,
            )
        except SummarizationFailure:
            raise
        except Exception as e:
            raise SummarizationFailure(
                f"Summarizer call failed ({kind})", details=str(e)
            ) from e

        content = getattr(response, "content", None)
        if not isinstance(content, str) or not content.strip():
            raise SummarizationFailure(f"Summarizer returned no text ({kind})")

        summary = content.strip()
        word_count = len(summary.split())
        if word_count > self.config.max_summary_words:
            logger.warning(
                "summary_over_word_limit",
                words=word_count,
                limit=self.config.max_summary_words,
            )
        logger.debug("summary_generated", kind=kind, words=word_count, turns=len(turns))
        return summary

    def _initial_prompt(self, turns: Sequence[Turn]) -> list[dict[str, Any]]:
        system = (
            "You are a conversation summarizer. Your task is to analyze the ENTIRE "
            "conversation history and create a concise summary that:\n"
            "1. Captures ALL key points and topics discussed\n"
            "2. Maintains the current state of any ongoing activities/games\n"
            "3. Preserves important details from earlier in the conversation\n"
            "4. Is written in third-person perspective\n"
            f"5. Does NOT exceed {self.config.max_summary_words} words\n\n"
            f"{_STATE_RULES}\n\n"
            "Conversation to summarize:"
        )
        closing = (
            "Please generate a comprehensive summary of the above conversation, "
            "focusing particularly on maintaining the accurate state of any "
            "ongoing games or activities."
        )
        return [
            {"role": Role.SYSTEM.value, "content": system},
            *self._format_turns(turns),
            {"role": Role.USER.value, "content": closing},
        ]

    def _update_prompt(self, prior_summary: str, turns: Sequence[Turn]) -> list[dict[str, Any]]:
        system = (
            "You are a conversation summarizer. Your task is to update an existing "
            "summary with new messages while:\n"
            "1. Preserving ALL important information from the current summary\n"
            "2. Incorporating relevant new information\n"
            "3. Maintaining accurate state of any ongoing games/activities\n"
            f"4. Keeping the summary concise (under {self.config.max_summary_words} words)\n"
            "5. Using third-person perspective\n\n"
            f"{_STATE_RULES}\n\n"
            f'Current Summary:\n"{prior_summary}"\n\n'
            "New messages to incorporate:"
        )
        closing = (
            "Please update the summary by combining the current summary with the "
            "new messages, ensuring all game states and important details are "
            "preserved."
        )
        return [
            {"role": Role.SYSTEM.value, "content": system},
            *self._format_turns(turns),
            {"role": Role.USER.value, "content": closing},
        ]

    @staticmethod
    def _format_turns(turns: Sequence[Turn]) -> list[dict[str, Any]]:
        formatted: list[dict[str, Any]] = []
        for t in turns:
            content = t.content
            if len(content) > _MAX_TURN_CHARS:
                content = content[:_MAX_TURN_CHARS] + "... (truncated)"
            formatted.append({"role": t.role.value, "content": f"{t.role.value}: {content}"})
        return formatted
