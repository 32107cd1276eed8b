"""Model router: unified LLM interface via LiteLLM.

Supports cloud providers (OpenAI, Anthropic) and local models (Ollama)
for both streamed chat replies and one-shot completions (summaries).
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from typing import Any, AsyncIterator

import litellm
import structlog

from jarvis.config import JarvisConfig
from jarvis.core.errors import TransportError
from jarvis.core.types import ModelResponse, StreamChunk, Turn

logger = structlog.get_logger()

# Suppress LiteLLM's verbose logging
litellm.suppress_debug_info = True


def _to_messages(turns: Sequence[Turn | dict[str, Any]]) -> list[dict[str, Any]]:
    return [t.to_litellm() if isinstance(t, Turn) else dict(t) for t in turns]


class ModelRouter:
    """Routes LLM requests through LiteLLM with fallback support."""

    def __init__(self, config: JarvisConfig) -> None:
        self.config = config
        self._setup_provider_keys()

    def _setup_provider_keys(self) -> None:
        """Set up API keys from config into environment variables."""
        for provider_name, provider_cfg in self.config.models.providers.items():
            if provider_cfg.api_key_env:
                key = provider_cfg.get_api_key()
                if key:
                    # LiteLLM reads keys from env vars
                    os.environ.setdefault(provider_cfg.api_key_env, key)

            if provider_cfg.base_url and provider_name == "ollama":
                os.environ.setdefault("OLLAMA_API_BASE", provider_cfg.base_url)

    @property
    def default_model(self) -> str:
        return self.config.models.default

    def _base_kwargs(self, model_name: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": model_name}
        provider = model_name.split("/")[0] if "/" in model_name else ""
        provider_cfg = self.config.models.providers.get(provider)
        if provider_cfg and provider_cfg.base_url and provider != "ollama":
            kwargs["api_base"] = provider_cfg.base_url
        return kwargs

    async def complete(
        self,
        messages: Sequence[Turn | dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        """Send a non-streaming completion request.

        Tries the specified model first, then falls back through the chain.
        """
        target_model = model or self.default_model
        models_cfg = self.config.models

        models_to_try = [target_model]
        for fallback in models_cfg.fallback_chain:
            if fallback not in models_to_try:
                models_to_try.append(fallback)

        last_error: Exception | None = None

        for model_name in models_to_try:
            kwargs = self._base_kwargs(model_name)
            kwargs.update(
                messages=_to_messages(messages),
                temperature=temperature if temperature is not None else models_cfg.temperature,
                top_p=top_p if top_p is not None else models_cfg.top_p,
                max_tokens=max_tokens if max_tokens is not None else models_cfg.max_tokens,
                stream=False,
            )
            try:
                logger.debug("model_request", model=model_name)
                response = await litellm.acompletion(**kwargs)
                return self._parse_response(response, model_name)
            except Exception as e:
                last_error = e
                logger.warning("model_fallback", model=model_name, error=str(e))

        raise TransportError(
            f"All models failed. Last error: {last_error}", details=str(last_error)
        ) from last_error

    async def stream_chat(
        self,
        turns: Sequence[Turn | dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat reply as StreamChunks.

        A failure before the first chunk raises TransportError; a failure
        after streaming has started is reported as an error-marker chunk.
        """
        target_model = model or self.default_model
        models_cfg = self.config.models
        kwargs = self._base_kwargs(target_model)
        kwargs.update(
            messages=_to_messages(turns),
            temperature=temperature if temperature is not None else models_cfg.temperature,
            top_p=top_p if top_p is not None else models_cfg.top_p,
            max_tokens=max_tokens if max_tokens is not None else models_cfg.max_tokens,
            stream=True,
        )

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise TransportError(
                "Failed to communicate with the model server.", details=str(e)
            ) from e

        try:
            async for chunk in response:
                delta = chunk.choices[0].delta if chunk.choices else None
                if delta and delta.content:
                    yield StreamChunk(delta_text=delta.content)
        except Exception as e:
            logger.warning("model_stream_interrupted", model=target_model, error=str(e))
            yield StreamChunk(
                error="Stream interrupted: Failed to communicate with the model server.",
                details=str(e),
            )

    def _parse_response(self, response: Any, model_name: str) -> ModelResponse:
        """Parse LiteLLM response into ModelResponse."""
        choice = response.choices[0] if response.choices else None
        if not choice:
            return ModelResponse(model=model_name)

        usage = {}
        if hasattr(response, "usage") and response.usage:
            usage = {
                "prompt_tokens": getattr(response.usage, "prompt_tokens", 0),
                "completion_tokens": getattr(response.usage, "completion_tokens", 0),
                "total_tokens": getattr(response.usage, "total_tokens", 0),
            }

        return ModelResponse(
            content=choice.message.content,
            model=model_name,
            usage=usage,
            finish_reason=getattr(choice, "finish_reason", "") or "",
        )
