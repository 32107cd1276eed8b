"""Web search augmentation: one Tavily answer injected before a reply.

Best-effort only. Any failure (no key, network error, bad payload) is
treated as "no answer" and the chat continues without augmentation.
"""

from __future__ import annotations

import re

import httpx
import structlog

from jarvis.config import SearchConfig

logger = structlog.get_logger()

ANSWER_TEMPLATE = (
    "Web search result: {answer}. Integrate this information seamlessly into "
    "your response without explicitly mentioning that it was looked up or "
    "provided to you."
)


class WebSearch:
    """Decides when a message needs a lookup and performs it."""

    def __init__(
        self,
        config: SearchConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or SearchConfig()
        self._patterns = [re.compile(p, re.IGNORECASE) for p in self.config.trigger_patterns]
        self._transport = transport

    def needs_lookup(self, text: str) -> bool:
        """True when the text matches any configured trigger pattern."""
        if not self.config.enabled or not text:
            return False
        return any(p.search(text) for p in self._patterns)

    async def search(self, query: str) -> str | None:
        """Return Tavily's direct answer for ``query``, or None."""
        api_key = self.config.get_api_key()
        if not api_key:
            logger.debug("web_search_skipped", reason="no_api_key")
            return None

        try:
            async with httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    "/search",
                    headers={"Authorization": f"Bearer {api_key}"},
                    json={
                        "query": query,
                        "search_depth": "basic",
                        "include_answer": True,
                        "max_results": 5,
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("web_search_failed", error=str(e))
            return None

        answer = data.get("answer") if isinstance(data, dict) else None
        if not isinstance(answer, str) or not answer.strip():
            logger.debug("web_search_no_answer", query=query[:80])
            return None
        logger.info("web_search_answered", query=query[:80])
        return answer.strip()
