"""
Analysis Engine – Cross-Response Comparison
============================================
Compares a set of responses lexically and produces an
:class:`AnalysisReport` that seeds the debate.

Algorithm
---------
1. **Themes** – 3-word phrases that occur in at least two responses.  When
   no phrase is shared, a single generic theme is emitted if the average
   pairwise cosine similarity clears the similarity threshold.
2. **Approaches** – one per response: its first sentence plus a
   methodology tag chosen by keyword counting.
3. **Differences** – every pair whose cosine similarity falls below the
   threshold, labelled by the first matching keyword family.
4. **Summary** – a deterministic digest of the three lists above.

The computation is pure and CPU-bound; it runs in a worker thread so the
soft timeout can fire while it is still busy.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import Counter
from itertools import combinations
from typing import Sequence

from deliberator.config import AnalysisConfig
from deliberator.resilience import CallTimeoutError, race_timeout
from deliberator.schemas import (
    AnalysisReport,
    Approach,
    Difference,
    DifferenceType,
    ModelResponse,
    Theme,
)
from deliberator.similarity import cosine_similarity, mean_pairwise, ngrams

logger = logging.getLogger(__name__)

TIMEOUT_SUMMARY = "Analysis incomplete due to timeout"
GENERIC_THEME = "All models provide similar overall approaches"

# Dict order is the tie-break order.
METHODOLOGY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "analytical": ("analyze", "analysis", "examine", "evaluate", "assess", "study"),
    "systematic": ("step", "process", "procedure", "method", "approach", "systematic"),
    "comparative": ("compare", "contrast", "versus", "difference", "similarity"),
    "empirical": ("data", "evidence", "observation", "experiment", "test"),
    "theoretical": ("theory", "concept", "principle", "framework", "model"),
    "practical": ("implement", "apply", "practice", "execute", "perform"),
}

# Checked in order; the first family present in either text wins.
DIFFERENCE_KEYWORDS: tuple[tuple[DifferenceType, tuple[str, ...]], ...] = (
    (DifferenceType.CONCLUSION,
     ("therefore", "thus", "conclude", "result", "outcome", "final", "answer", "solution")),
    (DifferenceType.ASSUMPTIONS,
     ("assume", "given", "suppose", "presume", "premise", "if", "provided")),
    (DifferenceType.REASONING,
     ("because", "since", "reason", "explain", "why", "cause", "due to")),
)


def identify_methodology(text: str) -> str:
    """Return the vocabulary with most keyword hits, or ``"general"``."""
    lower = text.lower()
    scores = {
        name: sum(1 for kw in keywords if kw in lower)
        for name, keywords in METHODOLOGY_KEYWORDS.items()
    }
    best = max(scores.values())
    if best == 0:
        return "general"
    return next(name for name, score in scores.items() if score == best)


def categorize_difference(text_a: str, text_b: str) -> DifferenceType:
    a, b = text_a.lower(), text_b.lower()
    for diff_type, words in DIFFERENCE_KEYWORDS:
        if any(w in a or w in b for w in words):
            return diff_type
    return DifferenceType.METHODOLOGY


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class AnalysisEngine:
    """Lexical comparison of a response set.

    Parameters
    ----------
    config : AnalysisConfig, optional
        Similarity threshold, n-gram size, theme cap and timeout.
    """

    def __init__(self, config: AnalysisConfig | None = None) -> None:
        self._config = config or AnalysisConfig()

    async def analyze(self, responses: Sequence[ModelResponse]) -> AnalysisReport:
        """Analyse *responses*, degrading to an empty report on timeout.

        Any other error propagates.
        """
        t0 = time.perf_counter()
        logger.info("Analysing %d response(s)", len(responses))
        loop = asyncio.get_running_loop()
        try:
            report = await race_timeout(
                loop.run_in_executor(None, self.analyze_sync, list(responses)),
                self._config.timeout,
                "Analysis timeout exceeded",
            )
        except CallTimeoutError:
            logger.warning(
                "Analysis exceeded %.1fs for %d response(s); returning empty report",
                self._config.timeout, len(responses),
            )
            return AnalysisReport(summary=TIMEOUT_SUMMARY)

        logger.info(
            "Analysis done in %.2fs: %d theme(s), %d difference(s)",
            time.perf_counter() - t0, len(report.common_themes), len(report.differences),
        )
        return report

    def analyze_sync(self, responses: list[ModelResponse]) -> AnalysisReport:
        themes = self.identify_common_themes(responses)
        approaches = self.extract_approaches(responses)
        differences = self.categorize_differences(responses)
        return AnalysisReport(
            common_themes=themes,
            unique_approaches=approaches,
            differences=differences,
            summary=self.generate_summary(themes, approaches, differences, responses),
        )

    # ------------------------------------------------------------------ #
    #  Themes                                                             #
    # ------------------------------------------------------------------ #

    def identify_common_themes(self, responses: Sequence[ModelResponse]) -> list[Theme]:
        if not responses:
            return []

        # phrase -> responder ids, in first-seen order
        occurrences: dict[str, list[str]] = {}
        for resp in responses:
            for phrase in ngrams(resp.text, self._config.ngram_size):
                supporters = occurrences.setdefault(phrase, [])
                if resp.model_id not in supporters:
                    supporters.append(resp.model_id)

        total = len(responses)
        themes = [
            Theme(description=phrase, supporting_models=ids, confidence=len(ids) / total)
            for phrase, ids in occurrences.items()
            if len(ids) >= 2
        ]
        themes.sort(key=lambda t: t.confidence, reverse=True)

        if not themes:
            avg = mean_pairwise([r.text for r in responses], cosine_similarity)
            if avg > self._config.similarity_threshold:
                themes.append(
                    Theme(
                        description=GENERIC_THEME,
                        supporting_models=[r.model_id for r in responses],
                        confidence=avg,
                    )
                )

        return themes[: self._config.max_themes]

    # ------------------------------------------------------------------ #
    #  Approaches & differences                                           #
    # ------------------------------------------------------------------ #

    def extract_approaches(self, responses: Sequence[ModelResponse]) -> list[Approach]:
        approaches = []
        for resp in responses:
            first = re.split(r"[.!?]+", resp.text)[0].strip()
            approaches.append(
                Approach(
                    model_id=resp.model_id,
                    description=first or resp.text[:100],
                    methodology=identify_methodology(resp.text),
                )
            )
        return approaches

    def categorize_differences(self, responses: Sequence[ModelResponse]) -> list[Difference]:
        differences: list[Difference] = []
        seen: set[tuple[DifferenceType, tuple[str, str]]] = set()
        for a, b in combinations(responses, 2):
            if cosine_similarity(a.text, b.text) >= self._config.similarity_threshold:
                continue
            diff_type = categorize_difference(a.text, b.text)
            key = (diff_type, tuple(sorted((a.model_id, b.model_id))))
            if key in seen:
                continue
            seen.add(key)
            differences.append(
                Difference(
                    type=diff_type,
                    description=f"{a.model_id} and {b.model_id} differ in their {diff_type.value}",
                    involved_models=[a.model_id, b.model_id],
                )
            )
        return differences

    # ------------------------------------------------------------------ #
    #  Summary                                                            #
    # ------------------------------------------------------------------ #

    @staticmethod
    def generate_summary(
        themes: Sequence[Theme],
        approaches: Sequence[Approach],
        differences: Sequence[Difference],
        responses: Sequence[ModelResponse],
    ) -> str:
        parts = [f"Analyzed {_plural(len(responses), 'model response')}."]

        if themes:
            parts.append(f"Found {_plural(len(themes), 'common theme')} across responses.")
        else:
            parts.append("No significant common themes identified.")

        methodologies = list(dict.fromkeys(a.methodology for a in approaches))
        if len(methodologies) > 1:
            parts.append(
                f"Models employed {len(methodologies)} different methodologies: "
                f"{', '.join(methodologies)}."
            )
        else:
            parts.append(f"All models used a {methodologies[0] if methodologies else 'similar'} approach.")

        if differences:
            counts = Counter(d.type.value for d in differences)
            breakdown = ", ".join(f"{n} {t}" for t, n in counts.items())
            parts.append(f"Identified {_plural(len(differences), 'difference')}: {breakdown}.")
        else:
            parts.append("Models show strong agreement with minimal differences.")

        return " ".join(parts)
