"""
Ollama Provider – Local LLMs
==============================
Responder backed by a local Ollama server's HTTP API (``/api/generate``).

Each local model registers as its own responder, ``ollama:<tag>``, so
several local models can deliberate side by side.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from deliberator.providers.base import ModelProvider, format_context, response_metadata
from deliberator.providers.factory import register
from deliberator.schemas import Context

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT = 5.0


def _ollama_base_url() -> str:
    return os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")


def _same_model(wanted: str, installed: str) -> bool:
    """``llama3.1`` matches ``llama3.1:latest``; an explicit tag must match exactly."""
    if ":" in wanted:
        return wanted == installed
    return installed.split(":", 1)[0] == wanted


@register("ollama")
class OllamaProvider(ModelProvider):
    """Local Ollama responder.

    Parameters
    ----------
    base_url : str, optional
        Ollama endpoint (default ``OLLAMA_BASE_URL`` or
        ``http://localhost:11434``).
    model : str
        Model tag (default ``"llama3.1"``).
    timeout : float
        HTTP timeout in seconds (default ``300``).  The resilience layer
        applies its own, usually shorter, per-attempt bound.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        base_url: str | None = None,
        model: str = "llama3.1",
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or _ollama_base_url()).rstrip("/")
        self._model = model
        self._http_timeout = timeout
        self._transport = transport
        self.name = f"ollama:{model}"

    @property
    def display_name(self) -> str:
        return f"Ollama {self._model}"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self._base_url, timeout=timeout, transport=self._transport)

    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict[str, Any]]:
        body: dict[str, Any] = {"model": self._model, "prompt": prompt, "stream": False}
        preamble = format_context(context)
        if preamble:
            body["system"] = preamble

        async with self._client(self._http_timeout) as client:
            resp = await client.post("/api/generate", json=body)
            resp.raise_for_status()
            data = resp.json()

        return data.get("response", ""), response_metadata(
            data.get("model", self._model),
            finish_reason=data.get("done_reason"),
            input_tokens=data.get("prompt_eval_count"),
            output_tokens=data.get("eval_count"),
            total_duration=data.get("total_duration"),
        )

    async def is_available(self) -> bool:
        """Reachable server with this model pulled."""
        installed = await self.list_local_models(self._base_url, transport=self._transport)
        return any(_same_model(self._model, tag) for tag in installed)

    @staticmethod
    async def list_local_models(
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> list[str]:
        """Full tags of every locally installed model; ``[]`` if Ollama is unreachable."""
        url = (base_url or _ollama_base_url()).rstrip("/")
        try:
            async with httpx.AsyncClient(base_url=url, timeout=_PROBE_TIMEOUT, transport=transport) as client:
                resp = await client.get("/api/tags")
        except (httpx.ConnectError, httpx.TimeoutException):
            logger.debug("Ollama not reachable at %s", url)
            return []
        if resp.status_code != 200:
            logger.debug("Ollama tag listing at %s returned HTTP %d", url, resp.status_code)
            return []
        return [m["name"] for m in resp.json().get("models", []) if m.get("name")]
