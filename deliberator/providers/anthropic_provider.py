"""
Anthropic Provider – Claude
============================
Responder backed by ``anthropic.AsyncAnthropic`` (Messages API).  Debate
and consensus context is sent as the ``system`` parameter.
"""

from __future__ import annotations

from typing import Any

import anthropic

from deliberator.providers.base import ModelProvider, format_context, response_metadata
from deliberator.providers.factory import register
from deliberator.schemas import Context


@register("anthropic")
class AnthropicProvider(ModelProvider):
    """Claude responder.

    Parameters
    ----------
    api_key : str, optional
        Falls back to ``ANTHROPIC_API_KEY``.
    model : str
        Model id (default ``"claude-3-5-sonnet-20241022"``).
    temperature : float
        Sampling temperature (default ``0.7``).
    max_tokens : int
        Required by the Messages API (default ``4096``).
    """

    api_key_env = "ANTHROPIC_API_KEY"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-3-5-sonnet-20241022",
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> None:
        self._api_key = self._resolve_api_key(api_key)
        self._client = anthropic.AsyncAnthropic(api_key=self._api_key or None)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def display_name(self) -> str:
        return f"Anthropic {self._model}"

    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict[str, Any]]:
        request: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        preamble = format_context(context)
        if preamble:
            request["system"] = preamble

        message = await self._client.messages.create(**request)
        text = "".join(getattr(block, "text", "") for block in message.content)
        return text, response_metadata(
            message.model,
            finish_reason=message.stop_reason,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )
