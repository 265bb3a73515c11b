"""
Tests for the provider layer: context rendering, the shared generate()
path and the adapters that can be exercised offline.
"""
from __future__ import annotations

import json

import httpx
import pytest

from deliberator.config import ResilienceConfig
from deliberator.providers.anthropic_provider import AnthropicProvider
from deliberator.providers.base import estimate_tokens, format_context, response_metadata
from deliberator.providers.ollama_provider import OllamaProvider
from deliberator.providers.openai_provider import OpenAIProvider
from deliberator.schemas import (
    AnalysisReport,
    Context,
    DebateExchange,
    DebateRound,
    Difference,
    DifferenceType,
    ModelResponse,
    Theme,
)
from tests.conftest import MockProvider


class TestFormatContext:

    def test_empty(self):
        assert format_context(None) == ""
        assert format_context(Context()) == ""

    def test_all_sections(self):
        context = Context(
            previous_responses=[ModelResponse(model_id="b", text="Solar wind.")],
            analysis_report=AnalysisReport(
                common_themes=[Theme("solar wind")],
                differences=[Difference(DifferenceType.CONCLUSION, "b and c differ")],
                summary="Analyzed 2 model responses.",
            ),
            debate_history=[DebateRound(1, [DebateExchange("b", "weak", "strong", "revised")])],
        )
        text = format_context(context)
        assert "Model b:\nSolar wind." in text
        assert "Summary: Analyzed 2 model responses." in text
        assert "- solar wind" in text
        assert "- conclusion: b and c differ" in text
        assert "Revised Position: revised" in text


class TestGenerate:

    @pytest.mark.asyncio
    async def test_builds_model_response(self):
        provider = MockProvider(name="m", response_text="abcdefghij")
        response = await provider.generate("hi")
        assert response.model_id == "m"
        assert response.text == "abcdefghij"
        assert response.token_count == estimate_tokens("abcdefghij") == 3
        assert response.latency > 0
        assert response.metadata == {"mock": True}

    @pytest.mark.asyncio
    async def test_reported_zero_tokens_is_kept(self):
        class ZeroTokens(MockProvider):
            async def _call(self, prompt, context=None):
                text, _ = await super()._call(prompt, context)
                return text, response_metadata("z", finish_reason="length", output_tokens=0)

        response = await ZeroTokens(name="z", response_text="some text that is not empty").generate("hi")
        assert response.token_count == 0

    def test_metadata_shape(self):
        meta = response_metadata("gpt", finish_reason="stop", output_tokens=7, extra=1)
        assert meta == {
            "model": "gpt",
            "finish_reason": "stop",
            "input_tokens": None,
            "token_count": 7,
            "extra": 1,
        }

    def test_configure_resilience(self):
        provider = MockProvider()
        provider.configure_resilience(ResilienceConfig(call_timeout=5.0, max_attempts=2, failure_threshold=3))
        assert provider.timeout == 5.0
        assert provider.retry_policy.max_attempts == 2
        assert provider.breaker_options["failure_threshold"] == 3


class TestHostedKeys:

    @pytest.mark.asyncio
    async def test_openai_key_prefix(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        assert await OpenAIProvider(api_key="sk-test-1234567890").is_available()
        assert not await OpenAIProvider(api_key="not-a-key").is_available()
        assert not await OpenAIProvider().is_available()

    @pytest.mark.asyncio
    async def test_anthropic_key_from_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-abcdefghijkl")
        provider = AnthropicProvider()
        assert provider.provider == "anthropic"
        assert await provider.is_available()


def _ollama(handler) -> OllamaProvider:
    return OllamaProvider(
        base_url="http://ollama.test",
        model="mistral",
        transport=httpx.MockTransport(handler),
    )


class TestOllama:

    @pytest.mark.asyncio
    async def test_generate_sends_context_as_system(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "mistral",
                "response": "Auroras come from solar wind.",
                "done_reason": "stop",
                "prompt_eval_count": 12,
                "eval_count": 6,
            })

        provider = _ollama(handler)
        context = Context(previous_responses=[ModelResponse(model_id="b", text="Peer view.")])
        response = await provider.generate("Why auroras?", context)

        assert seen["path"] == "/api/generate"
        assert seen["body"]["prompt"] == "Why auroras?"
        assert seen["body"]["stream"] is False
        assert "Peer view." in seen["body"]["system"]
        assert response.model_id == "ollama:mistral"
        assert response.token_count == 6
        assert response.metadata["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        provider = _ollama(lambda request: httpx.Response(500, json={"error": "oom"}))
        with pytest.raises(httpx.HTTPStatusError):
            await provider.generate("hi")

    @pytest.mark.asyncio
    async def test_availability_checks_installed_tags(self):
        tags = {"models": [{"name": "mistral:latest"}, {"name": "phi3:mini"}]}
        provider = _ollama(lambda request: httpx.Response(200, json=tags))
        assert await provider.is_available()

        other = OllamaProvider(
            base_url="http://ollama.test",
            model="llama3.1",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=tags)),
        )
        assert not await other.is_available()

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        assert not await _ollama(refuse).is_available()
        assert await OllamaProvider.list_local_models(
            "http://ollama.test", transport=httpx.MockTransport(refuse),
        ) == []
