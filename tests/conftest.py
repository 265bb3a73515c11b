"""
Shared fixtures for the deliberator test suite.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from deliberator.observer import EventBus
from deliberator.providers.base import ModelProvider
from deliberator.resilience import clear_circuit_breakers
from deliberator.schemas import Context, ModelResponse, Query
from deliberator.session_store import InMemorySessionStore


# ---------------------------------------------------------------------------
# Mock providers – canned responses, no network calls
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """A deterministic provider for testing.

    ``response_text`` is returned for every prompt unless ``responder`` is
    given, in which case ``responder(prompt)`` decides the reply.
    """

    def __init__(
        self,
        name: str = "mock",
        response_text: str = "Mock response.",
        available: bool = True,
        latency: float = 0.01,
        responder: Callable[[str], str] | None = None,
    ) -> None:
        self.name = name
        self._response_text = response_text
        self._available = available
        self._latency = latency
        self._responder = responder
        self.call_count = 0
        self.prompts: list[str] = []
        self.contexts: list[Context | None] = []

    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict[str, Any]]:
        self.call_count += 1
        self.prompts.append(prompt)
        self.contexts.append(context)
        await asyncio.sleep(self._latency)
        text = self._responder(prompt) if self._responder else self._response_text
        return text, {"mock": True}

    async def is_available(self) -> bool:
        return self._available


class FailingProvider(ModelProvider):
    """Always raises a non-retryable error."""

    def __init__(self, name: str = "failing", message: str = "boom") -> None:
        self.name = name
        self._message = message
        self.call_count = 0

    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict[str, Any]]:
        self.call_count += 1
        raise RuntimeError(self._message)


class FlakyProvider(ModelProvider):
    """Fails N times with a rate-limit error, then succeeds. For testing retry logic."""

    def __init__(self, name: str = "flaky", response_text: str = "Success!", fail_count: int = 2) -> None:
        self.name = name
        self._response_text = response_text
        self._fail_count = fail_count
        self.call_count = 0

    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict[str, Any]]:
        self.call_count += 1
        if self.call_count <= self._fail_count:
            raise RuntimeError(f"429 Too Many Requests (#{self.call_count})")
        return self._response_text, {"attempt": self.call_count}


class PhaseFailingProvider(MockProvider):
    """Answers the first ``ok_calls`` prompts, then fails every later one."""

    def __init__(self, name: str = "phase-failing", ok_calls: int = 1, **kwargs: Any) -> None:
        super().__init__(name=name, **kwargs)
        self._ok_calls = ok_calls

    async def _call(self, prompt: str, context: Context | None = None) -> tuple[str, dict[str, Any]]:
        if self.call_count >= self._ok_calls:
            self.call_count += 1
            raise RuntimeError(f"{self.name} went away")
        return await super()._call(prompt, context)


# ---------------------------------------------------------------------------
# Prompt-aware reply helpers
# ---------------------------------------------------------------------------

def phase_responder(
    answer: str,
    debate: str | None = None,
    proposal: str | None = None,
    vote: str = "YES",
) -> Callable[[str], str]:
    """Build a ``responder`` that answers according to the pipeline phase."""

    def respond(prompt: str) -> str:
        if prompt.startswith("Round "):
            return debate or f"STRENGTHS: Clear.\nWEAKNESSES: None.\nDEFENSE: Sound.\nREVISED_POSITION: {answer}"
        if prompt.startswith("Final Consensus Round"):
            return proposal or f"FINAL_SOLUTION: {answer}\nINCORPORATED_INSIGHTS: - shared view"
        if prompt.startswith("Please validate"):
            return vote
        return answer

    return respond


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _fresh_circuit_breakers():
    """Breakers are process-wide; start every test with an empty registry."""
    clear_circuit_breakers()
    yield
    clear_circuit_breakers()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def query() -> Query:
    return Query.create("What causes the Northern Lights?", "user-1")


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider(name="mock-alpha", response_text="The Northern Lights are caused by solar particles.")


@pytest.fixture
def mock_provider_b() -> MockProvider:
    return MockProvider(
        name="mock-beta",
        response_text="Aurora borealis occurs when charged particles from the sun interact with Earth's magnetic field.",
    )


@pytest.fixture
def mock_unavailable() -> MockProvider:
    return MockProvider(name="mock-offline", available=False)


@pytest.fixture
def sample_responses() -> list[ModelResponse]:
    """Realistic answers from three responders about the aurora."""
    return [
        ModelResponse(
            model_id="mock-alpha",
            text=(
                "The aurora is caused by charged solar particles colliding with atmospheric gases. "
                "Evidence from satellite data supports this."
            ),
            latency=1.0,
        ),
        ModelResponse(
            model_id="mock-beta",
            text=(
                "Charged solar particles colliding with atmospheric gases produce the aurora. "
                "The process starts when solar wind reaches the magnetosphere."
            ),
            latency=1.2,
        ),
        ModelResponse(
            model_id="mock-gamma",
            text="Bananas are yellow fruits grown in tropical climates.",
            latency=0.9,
        ),
    ]
