"""
Tests for lexical similarity helpers and the analysis engine.
"""
from __future__ import annotations

import time

import pytest

from deliberator.analysis_engine import (
    GENERIC_THEME,
    TIMEOUT_SUMMARY,
    AnalysisEngine,
    categorize_difference,
    identify_methodology,
)
from deliberator.config import AnalysisConfig
from deliberator.schemas import DifferenceType, ModelResponse
from deliberator.similarity import (
    cosine_similarity,
    jaccard_similarity,
    mean_pairwise,
    ngrams,
    significant_words,
    split_sentences,
    tokenize,
)


class TestSimilarity:

    def test_tokenize_strips_punctuation_and_case(self):
        assert tokenize("The Answer! is: 42, ok") == ["the", "answer"]

    def test_ngrams_skip_short_words(self):
        assert ngrams("solar wind is a stream of charged particles") == [
            "solar wind stream",
            "wind stream charged",
            "stream charged particles",
        ]

    def test_split_sentences(self):
        assert split_sentences("One. Two!  Three?? ") == ["One", "Two", "Three"]

    def test_cosine_identical_and_disjoint(self):
        assert cosine_similarity("solar wind particles", "Solar wind particles!") == pytest.approx(1.0)
        assert cosine_similarity("solar wind", "banana bread") == 0.0

    def test_cosine_empty_is_zero(self):
        assert cosine_similarity("", "solar wind") == 0.0

    def test_jaccard(self):
        # {solar, wind, storm} vs {solar, wind, particles}
        assert jaccard_similarity("solar wind storm", "solar wind particles") == pytest.approx(0.5)

    def test_jaccard_empty_is_zero(self):
        assert jaccard_similarity("a b", "a b") == 0.0

    def test_mean_pairwise_needs_two_texts(self):
        assert mean_pairwise(["only one"]) == 0.0
        assert mean_pairwise(["solar wind", "solar wind", "solar wind"]) == pytest.approx(1.0)

    def test_significant_words(self):
        texts = ["solar wind heats", "solar storms", "banana"]
        assert significant_words(texts, min_share=0.5) == {"solar"}


class TestKeywordHeuristics:

    def test_methodology_by_keyword_count(self):
        assert identify_methodology("We analyze and evaluate the data carefully") == "analytical"
        assert identify_methodology("Compare this versus that") == "comparative"

    def test_methodology_defaults_to_general(self):
        assert identify_methodology("Hello there") == "general"

    def test_methodology_tie_goes_to_first_family(self):
        # one analytical hit, one empirical hit
        assert identify_methodology("assess the evidence") == "analytical"

    def test_difference_category_order(self):
        assert categorize_difference("Therefore it is blue", "because") is DifferenceType.CONCLUSION
        assert categorize_difference("we assume blue", "red") is DifferenceType.ASSUMPTIONS
        assert categorize_difference("blue because sky", "red") is DifferenceType.REASONING
        assert categorize_difference("blue sky", "red sun") is DifferenceType.METHODOLOGY


class TestAnalysisEngine:

    @pytest.mark.asyncio
    async def test_report_contents(self, sample_responses):
        report = await AnalysisEngine().analyze(sample_responses)

        shared = [t for t in report.common_themes if t.description == "charged solar particles"]
        assert shared
        assert shared[0].supporting_models == ["mock-alpha", "mock-beta"]
        assert shared[0].confidence == pytest.approx(2 / 3)

        assert [a.model_id for a in report.unique_approaches] == ["mock-alpha", "mock-beta", "mock-gamma"]
        assert report.unique_approaches[2].description == "Bananas are yellow fruits grown in tropical climates"

        involved = {tuple(d.involved_models) for d in report.differences}
        assert ("mock-alpha", "mock-gamma") in involved
        assert ("mock-beta", "mock-gamma") in involved
        assert report.summary.startswith("Analyzed 3 model responses.")

    @pytest.mark.asyncio
    async def test_themes_capped_and_sorted(self):
        text = "alpha beta gamma delta epsilon zeta theta iota kappa lambda"
        responses = [
            ModelResponse(model_id="a", text=text),
            ModelResponse(model_id="b", text=text),
            ModelResponse(model_id="c", text="alpha beta gamma"),
        ]
        report = await AnalysisEngine(AnalysisConfig(max_themes=5)).analyze(responses)
        assert len(report.common_themes) == 5
        assert report.common_themes[0].description == "alpha beta gamma"
        confidences = [t.confidence for t in report.common_themes]
        assert confidences == sorted(confidences, reverse=True)

    def test_generic_theme_when_no_shared_phrase(self):
        responses = [
            ModelResponse(model_id="a", text="photosynthesis converts sunlight"),
            ModelResponse(model_id="b", text="sunlight photosynthesis converts"),
        ]
        themes = AnalysisEngine().identify_common_themes(responses)
        assert len(themes) == 1
        assert themes[0].description == GENERIC_THEME
        assert themes[0].supporting_models == ["a", "b"]

    def test_no_differences_for_identical_answers(self):
        responses = [
            ModelResponse(model_id="a", text="Therefore the aurora comes from solar wind."),
            ModelResponse(model_id="b", text="Therefore the aurora comes from solar wind."),
        ]
        engine = AnalysisEngine()
        assert engine.categorize_differences(responses) == []
        report = engine.analyze_sync(responses)
        assert "Models show strong agreement with minimal differences." in report.summary

    def test_summary_singular_forms(self):
        summary = AnalysisEngine.generate_summary([], [], [], [ModelResponse(model_id="a", text="x")])
        assert summary.startswith("Analyzed 1 model response.")
        assert "No significant common themes identified." in summary

    @pytest.mark.asyncio
    async def test_timeout_returns_empty_report(self, monkeypatch, sample_responses):
        engine = AnalysisEngine(AnalysisConfig(timeout=0.01))
        original = engine.analyze_sync

        def slow_analyze(responses):
            time.sleep(0.2)
            return original(responses)

        monkeypatch.setattr(engine, "analyze_sync", slow_analyze)
        report = await engine.analyze(sample_responses)
        assert report.summary == TIMEOUT_SUMMARY
        assert report.common_themes == []
        assert report.unique_approaches == []
        assert report.differences == []
