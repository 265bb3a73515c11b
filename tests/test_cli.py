"""
Tests for the CLI entry point in main.py.
"""
from __future__ import annotations

import pytest

import main
from deliberator.config import Settings
from deliberator.providers import ProviderFactory
from tests.conftest import MockProvider, phase_responder

ANSWER = "Solar wind particles excite oxygen atoms in the upper atmosphere"


@pytest.fixture(autouse=True)
def _no_session_db(monkeypatch):
    monkeypatch.delenv("DELIBERATOR_SESSION_DB", raising=False)
    monkeypatch.delenv("DELIBERATOR_MAX_ROUNDS", raising=False)


@pytest.fixture
def mock_pool(monkeypatch):
    pool = [MockProvider(name=n, responder=phase_responder(ANSWER), latency=0.001) for n in ("a", "b")]

    async def fake_available(names=None):
        return list(pool)

    monkeypatch.setattr(ProviderFactory, "create_available", staticmethod(fake_available))
    return pool


class TestArgs:

    def test_defaults(self):
        args = main._parse_args(["What is light?"])
        assert args.query == "What is light?"
        assert args.providers is None
        assert args.single is None
        assert args.user == "cli"

    def test_max_rounds_override_clamps_min_rounds(self):
        args = main._parse_args(["--max-rounds", "2", "q"])
        settings = main._apply_overrides(Settings(), args)
        assert settings.debate.max_rounds == 2
        assert settings.debate.min_rounds == 1


class TestMain:

    @pytest.mark.asyncio
    async def test_multi_mode_prints_answer(self, mock_pool, capsys):
        assert await main._main(["What causes auroras?"]) == 0
        out = capsys.readouterr().out
        assert "FINAL ANSWER" in out
        assert ANSWER in out
        assert "Agreement : 1.00" in out

    @pytest.mark.asyncio
    async def test_single_mode(self, mock_pool, capsys):
        assert await main._main(["--single", "b", "What causes auroras?"]) == 0
        out = capsys.readouterr().out
        assert "Mode      : single" in out

    @pytest.mark.asyncio
    async def test_unknown_provider(self, capsys):
        assert await main._main(["--providers", "nonexistent", "q"]) == 2
        assert "Unknown provider" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_duplicate_provider(self, capsys):
        assert await main._main(["--providers", "ollama:mistral,ollama:mistral", "q"]) == 2
        assert "Model already registered: ollama:mistral" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_invalid_round_limit(self, capsys):
        assert await main._main(["--max-rounds", "9", "q"]) == 2
        assert "invalid configuration" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_routing_error_reported(self, mock_pool, capsys):
        assert await main._main(["--single", "ghost", "q"]) == 1
        assert "Model not found: ghost" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_no_providers(self, monkeypatch, capsys):
        async def nothing(names=None):
            return []

        monkeypatch.setattr(ProviderFactory, "create_available", staticmethod(nothing))
        assert await main._main(["q"]) == 1
        assert "No providers available" in capsys.readouterr().err
