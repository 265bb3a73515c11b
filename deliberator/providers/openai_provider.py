"""
OpenAI Provider – Chat Completions
===================================
Responder backed by ``openai.AsyncOpenAI``.  Debate and consensus context
travels as a system message ahead of the prompt.
"""

from __future__ import annotations

from typing import Any

import openai

from deliberator.providers.base import ModelProvider, format_context, response_metadata
from deliberator.providers.factory import register
from deliberator.schemas import Context


@register("openai")
class OpenAIProvider(ModelProvider):
    """OpenAI chat responder.

    Parameters
    ----------
    api_key : str, optional
        Falls back to ``OPENAI_API_KEY``.
    model : str
        Chat model id (default ``"gpt-4o"``).
    temperature : float
        Sampling temperature (default ``0.7``).
    max_tokens : int, optional
        Hard cap on completion length; unset leaves it to the API.
    """

    api_key_env = "OPENAI_API_KEY"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o",
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> None:
        self._api_key = self._resolve_api_key(api_key)
        self._client: openai.AsyncOpenAI | None = None
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def display_name(self) -> str:
        return f"OpenAI {self._model}"

    def _has_usable_key(self) -> bool:
        return self._api_key.startswith("sk-")

    def _openai(self) -> openai.AsyncOpenAI:
        # AsyncOpenAI raises without a key; built on first use.
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self._api_key or None)
        return self._client

    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict[str, Any]]:
        preamble = format_context(context)
        messages = [{"role": "system", "content": preamble}] if preamble else []
        messages.append({"role": "user", "content": prompt})

        extra: dict[str, Any] = {}
        if self._max_tokens:
            extra["max_tokens"] = self._max_tokens
        completion = await self._openai().chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=self._temperature,
            **extra,
        )

        choice = completion.choices[0]
        usage = completion.usage
        return choice.message.content or "", response_metadata(
            completion.model,
            finish_reason=choice.finish_reason,
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
        )
