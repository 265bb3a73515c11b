"""
Google Provider – Gemini
=========================
Responder backed by ``google-generativeai``.  The SDK call is blocking, so
it runs in the default executor; context is prepended to the prompt.
"""

from __future__ import annotations

import asyncio
from typing import Any

import google.generativeai as genai

from deliberator.providers.base import ModelProvider, format_context, response_metadata
from deliberator.providers.factory import register
from deliberator.schemas import Context


@register("gemini")
class GeminiProvider(ModelProvider):
    """Gemini responder.

    Parameters
    ----------
    api_key : str, optional
        Falls back to ``GOOGLE_API_KEY``.
    model : str
        Model id (default ``"gemini-1.5-pro"``).
    temperature : float
        Sampling temperature (default ``0.7``).
    max_tokens : int, optional
        Maps to ``max_output_tokens``.
    """

    api_key_env = "GOOGLE_API_KEY"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gemini-1.5-pro",
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> None:
        self._api_key = self._resolve_api_key(api_key)
        if self._api_key:
            genai.configure(api_key=self._api_key)
        self._model_name = model
        self._model = genai.GenerativeModel(model)
        self._generation_config = genai.GenerationConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
        )

    @property
    def display_name(self) -> str:
        return f"Google {self._model_name}"

    def _generate_blocking(self, text: str) -> tuple[str, dict[str, Any]]:
        result = self._model.generate_content(text, generation_config=self._generation_config)
        usage = getattr(result, "usage_metadata", None)
        finish = result.candidates[0].finish_reason if result.candidates else None
        return result.text or "", response_metadata(
            self._model_name,
            finish_reason=getattr(finish, "name", finish),
            input_tokens=usage.prompt_token_count if usage else None,
            output_tokens=usage.candidates_token_count if usage else None,
        )

    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict[str, Any]]:
        preamble = format_context(context)
        text = f"{preamble}\n\n{prompt}" if preamble else prompt
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._generate_blocking, text)
