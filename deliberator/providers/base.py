"""
Model Provider – Strategy Interface (Abstract Base)
====================================================
Every responder backend implements this interface so the deliberation
phases can treat them interchangeably (Strategy Pattern).

:meth:`ModelProvider.generate` is the only entry point the pipeline uses.
It routes the raw :meth:`_call` through the resilience layer (circuit
breaker → retry on rate limits → per-attempt timeout) and builds a uniform
:class:`ModelResponse`.
"""

from __future__ import annotations

import logging
import math
import os
import time
from abc import ABC, abstractmethod
from typing import Any

from deliberator.config import ResilienceConfig
from deliberator.resilience import RetryPolicy, call_with_resilience
from deliberator.schemas import Context, ModelResponse

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token)."""
    return math.ceil(len(text) / 4)


def response_metadata(
    model: str,
    finish_reason: str | None = None,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Metadata in the shape every adapter reports.

    ``token_count`` carries the provider's output-token figure; ``None``
    makes :meth:`ModelProvider.generate` fall back to the estimate.
    """
    meta: dict[str, Any] = {
        "model": model,
        "finish_reason": finish_reason,
        "input_tokens": input_tokens,
        "token_count": output_tokens,
    }
    meta.update(extra)
    return meta


def format_context(context: Context | None) -> str:
    """Render *context* as a plain-text preamble for chat-style APIs.

    Returns ``""`` when there is nothing worth sending.
    """
    if context is None:
        return ""

    parts: list[str] = []
    if context.previous_responses:
        parts.append("Previous responses from other models:\n")
        for resp in context.previous_responses:
            parts.append(f"Model {resp.model_id}:\n{resp.text}\n")

    report = context.analysis_report
    if report is not None:
        parts.append("Analysis Report:\n")
        parts.append(f"Summary: {report.summary}\n")
        if report.common_themes:
            parts.append("Common Themes:")
            parts.extend(f"- {t.description}" for t in report.common_themes)
            parts.append("")
        if report.differences:
            parts.append("Key Differences:")
            parts.extend(f"- {d.type.value}: {d.description}" for d in report.differences)
            parts.append("")

    if context.debate_history:
        parts.append("Debate History:\n")
        for rnd in context.debate_history:
            parts.append(f"Round {rnd.round_number}:")
            for ex in rnd.exchanges:
                parts.append(f"  Model {ex.model_id}:")
                parts.append(f"    Critique: {ex.critique}")
                parts.append(f"    Defense: {ex.defense}")
                if ex.revised_position:
                    parts.append(f"    Revised Position: {ex.revised_position}")
            parts.append("")

    return "\n".join(parts).strip()


class ModelProvider(ABC):
    """Abstract async responder.

    Subclasses must implement :meth:`_call` which performs the raw API
    request.  Resilience settings are class-level defaults that
    :meth:`configure_resilience` overrides per instance.

    Attributes
    ----------
    name : str
        Stable responder id used as a key throughout the pipeline.
    enabled : bool
        Disabled responders are skipped by the query router.
    timeout : float
        Seconds a single attempt may take.
    api_key_env : str or None
        Environment variable holding the credential for hosted backends.
    """

    name: str = "base"
    enabled: bool = True
    timeout: float = 30.0
    retry_policy: RetryPolicy | None = None
    breaker_options: dict[str, Any] | None = None
    api_key_env: str | None = None
    _api_key: str = ""

    def _resolve_api_key(self, api_key: str | None) -> str:
        if api_key:
            return api_key
        return os.getenv(self.api_key_env, "") if self.api_key_env else ""

    def _has_usable_key(self) -> bool:
        return len(self._api_key) > 10

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def provider(self) -> str:
        """Backend tag, e.g. ``"ollama"`` for ``"ollama:llama3.1"``."""
        return self.name.split(":", 1)[0]

    def configure_resilience(self, config: ResilienceConfig) -> None:
        """Apply timeout, retry and breaker settings from *config*."""
        self.timeout = config.call_timeout
        self.retry_policy = RetryPolicy(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay,
            multiplier=config.backoff_multiplier,
            max_delay=config.max_delay,
        )
        self.breaker_options = {
            "failure_threshold": config.failure_threshold,
            "reset_timeout": config.reset_timeout,
            "success_threshold": config.success_threshold,
            "request_timeout": config.request_timeout,
        }

    @abstractmethod
    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict]:
        """Perform the actual API call.

        Returns
        -------
        tuple[str, dict]
            ``(generated_text, metadata_dict)``.  A ``"token_count"`` entry
            in the metadata overrides the length-based estimate.
        """
        ...

    async def generate(self, prompt: str, context: Context | None = None) -> ModelResponse:
        t0 = time.perf_counter()
        try:
            text, meta = await call_with_resilience(
                self.name,
                lambda: self._call(prompt, context),
                timeout=self.timeout,
                retry_policy=self.retry_policy,
                breaker_options=self.breaker_options,
            )
        except Exception as exc:
            logger.warning(
                "%s failed after %.2fs: %s: %s",
                self.name, time.perf_counter() - t0, type(exc).__name__, exc,
            )
            raise
        elapsed = time.perf_counter() - t0
        token_count = meta.get("token_count")
        if token_count is None:
            token_count = estimate_tokens(text)
        return ModelResponse(
            model_id=self.name,
            text=text,
            token_count=int(token_count),
            latency=elapsed,
            metadata=meta,
        )

    async def is_available(self) -> bool:
        """Quick health-check.

        Hosted backends (``api_key_env`` set) are available when a
        plausible key is configured; everything else is assumed up unless
        the subclass overrides this.
        """
        if self.api_key_env:
            return self._has_usable_key()
        return True
