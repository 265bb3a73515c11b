"""
Debate Orchestrator – Structured Multi-Round Critique
======================================================
Every responder that answered the query is shown its own answer, the
latest positions of its peers and the analysis report, and asked to
critique, defend and optionally revise.  Rounds repeat until positions
converge or the round limit is reached.

Isolation
---------
A responder whose call fails in any round is removed for the rest of the
debate and listed in :attr:`DebateResult.excluded_models`.  Its earlier
exchanges stay in the history.

Disagreement
------------
``1 − mean pairwise Jaccard similarity`` of the positions in a round
(``0`` when fewer than two responders took part).
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import time
from typing import Sequence

from deliberator.config import DebateConfig
from deliberator.errors import ValidationError
from deliberator.observer import Event, EventBus, EventType
from deliberator.providers.base import ModelProvider
from deliberator.schemas import (
    AnalysisReport,
    Context,
    DebateExchange,
    DebateResult,
    DebateRound,
    ModelResponse,
    Query,
)
from deliberator.similarity import jaccard_similarity, mean_pairwise

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────────────
# Debate Prompt
# ──────────────────────────────────────────────────────────────────────

DEBATE_INSTRUCTIONS = (
    "Instructions:\n"
    "1. Identify specific strengths in other responses\n"
    "2. Identify specific weaknesses or flaws in other responses\n"
    "3. Defend your approach or acknowledge valid criticisms\n"
    "4. Revise your position if warranted\n\n"
    "Provide your response in this format:\n"
    "STRENGTHS: ...\n"
    "WEAKNESSES: ...\n"
    "DEFENSE: ...\n"
    "REVISED_POSITION: ..."
)

HISTORY_SNIPPET = 200


def format_debate_prompt(
    round_number: int,
    query: Query,
    own_response: ModelResponse,
    peer_positions: Sequence[ModelResponse],
    analysis: AnalysisReport,
    history: Sequence[DebateRound],
) -> str:
    lines = [
        f"Round {round_number} of Debate:",
        "",
        f"Original Query: {query.text}",
        "",
        f"Your Original Response: {own_response.text}",
        "",
        "Other Responses:",
    ]
    lines.extend(f"- Model {p.model_id}: {p.text}" for p in peer_positions)
    lines.append("")

    lines.append(f"Analysis Report: {analysis.summary}")
    if analysis.common_themes:
        lines.append("Common Themes: " + ", ".join(t.description for t in analysis.common_themes))
    if analysis.differences:
        lines.append(
            "Key Differences: "
            + "; ".join(f"{d.type.value} ({', '.join(d.involved_models)})" for d in analysis.differences)
        )
    lines.append("")

    if history:
        lines.append("Previous Debate:")
        for rnd in history:
            lines.append(f"Round {rnd.round_number}:")
            for ex in rnd.exchanges:
                lines.append(f"  {ex.model_id}:")
                if ex.critique:
                    lines.append(f"    Critique: {ex.critique[:HISTORY_SNIPPET]}...")
                if ex.defense:
                    lines.append(f"    Defense: {ex.defense[:HISTORY_SNIPPET]}...")
                if ex.revised_position:
                    lines.append(f"    Revised: {ex.revised_position[:HISTORY_SNIPPET]}...")
        lines.append("")

    lines.append(DEBATE_INSTRUCTIONS)
    return "\n".join(lines)


# ──────────────────────────────────────────────────────────────────────
# Response parsing
# ──────────────────────────────────────────────────────────────────────

_LABEL_RE = re.compile(
    r"^[#*\s]*(STRENGTHS?|WEAKNESS(?:ES)?|DEFEN[SC]E|REVISED[_ ]POSITION)[*\s]*:[*\s]*(.*)$",
    re.IGNORECASE,
)


def _section_for(label: str) -> str:
    label = label.upper()
    if label.startswith(("STRENGTH", "WEAKNESS")):
        return "critique"
    if label.startswith("DEFEN"):
        return "defense"
    return "revised"


def parse_debate_response(text: str, model_id: str) -> DebateExchange:
    """Split a labelled debate reply into critique, defense and revision.

    Strengths and weaknesses both feed the critique.  Lines before the first
    label are ignored.  A reply with no recognised label becomes the
    critique verbatim.
    """
    sections: dict[str, list[str]] = {"critique": [], "defense": [], "revised": []}
    current: str | None = None

    for raw in text.splitlines():
        line = raw.strip()
        match = _LABEL_RE.match(line)
        if match:
            current = _section_for(match.group(1))
            content = match.group(2).strip()
            if content:
                sections[current].append(content)
            continue
        if line and current:
            sections[current].append(line)

    critique = "\n".join(sections["critique"]).strip()
    defense = "\n".join(sections["defense"]).strip()
    revised = "\n".join(sections["revised"]).strip() or None

    if not (critique or defense or revised):
        critique = text.strip()

    return DebateExchange(
        model_id=model_id,
        critique=critique,
        defense=defense,
        revised_position=revised,
    )


def calculate_disagreement(exchanges: Sequence[DebateExchange]) -> float:
    if len(exchanges) < 2:
        return 0.0
    return 1.0 - mean_pairwise([ex.position for ex in exchanges], jaccard_similarity)


class DebateOrchestrator:
    """Run critique rounds over the responders that answered the query.

    Parameters
    ----------
    config : DebateConfig, optional
        Round bounds, convergence threshold and token guideline.
    event_bus : EventBus, optional
        Receives a ``DEBATE_ROUND`` event after every round.
    """

    def __init__(
        self,
        config: DebateConfig | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or DebateConfig()
        self._bus = event_bus

    async def conduct_debate(
        self,
        query: Query,
        responses: Sequence[ModelResponse],
        analysis: AnalysisReport,
        models: Sequence[ModelProvider],
        session_id: str = "",
    ) -> DebateResult:
        """Debate until convergence or ``max_rounds``.

        Raises
        ------
        ValidationError
            Fewer than two responses, or the responders and responses do
            not pair up one-to-one.
        """
        self._validate(responses, models)

        t0 = time.perf_counter()
        originals = {r.model_id: r for r in responses}
        active: list[ModelProvider] = list(models)
        excluded: list[str] = []
        rounds: list[DebateRound] = []

        logger.info("Starting debate for query %s with %d responder(s)", query.id, len(active))

        for round_number in range(1, self._config.max_rounds + 1):
            rnd, failed = await self._conduct_round(
                round_number, query, originals, analysis, active, rounds,
            )
            rounds.append(rnd)

            if failed:
                excluded.extend(failed)
                active = [m for m in active if m.name not in failed]

            logger.info(
                "Debate round %d: %d exchange(s), disagreement=%.3f, active=%d",
                round_number, len(rnd.exchanges), rnd.disagreement_level, len(active),
            )
            if self._bus:
                self._bus.publish(
                    Event(
                        EventType.DEBATE_ROUND,
                        message=(
                            f"Round {round_number}: disagreement={rnd.disagreement_level:.3f}, "
                            f"{len(rnd.exchanges)} exchange(s)"
                        ),
                        payload={
                            "round": round_number,
                            "exchanges": len(rnd.exchanges),
                            "disagreement": round(rnd.disagreement_level, 4),
                            "excluded": list(failed),
                        },
                        session_id=session_id,
                    )
                )

            if not active:
                logger.warning("No responder left after round %d; stopping debate", round_number)
                break
            if (
                round_number >= self._config.min_rounds
                and rnd.disagreement_level < self._config.convergence_threshold
            ):
                logger.info(
                    "Converged after round %d (disagreement %.3f < %.3f)",
                    round_number, rnd.disagreement_level, self._config.convergence_threshold,
                )
                break

        final_disagreement = rounds[-1].disagreement_level if rounds else 1.0
        return DebateResult(
            rounds=rounds,
            convergence_score=1.0 - final_disagreement,
            duration=time.perf_counter() - t0,
            excluded_models=excluded,
        )

    @staticmethod
    def _validate(responses: Sequence[ModelResponse], models: Sequence[ModelProvider]) -> None:
        if len(responses) < 2:
            raise ValidationError("At least 2 responses required for debate")
        if len(models) != len(responses):
            raise ValidationError(
                f"Number of models must match number of responses "
                f"({len(models)} models, {len(responses)} responses)"
            )
        answered = {r.model_id for r in responses}
        missing = [m.name for m in models if m.name not in answered]
        if missing:
            raise ValidationError(f"No response found for model(s): {', '.join(missing)}")

    @staticmethod
    def _latest_position(
        model_id: str,
        originals: dict[str, ModelResponse],
        history: Sequence[DebateRound],
    ) -> ModelResponse:
        """Peer's revised position from the latest round it took part in,
        else its first-round response."""
        for rnd in reversed(history):
            for ex in rnd.exchanges:
                if ex.model_id == model_id:
                    if ex.revised_position:
                        return dataclasses.replace(originals[model_id], text=ex.revised_position)
                    return originals[model_id]
        return originals[model_id]

    async def _conduct_round(
        self,
        round_number: int,
        query: Query,
        originals: dict[str, ModelResponse],
        analysis: AnalysisReport,
        active: Sequence[ModelProvider],
        history: list[DebateRound],
    ) -> tuple[DebateRound, list[str]]:
        previous = list(history)

        async def _exchange(model: ModelProvider) -> DebateExchange:
            peers = [
                self._latest_position(m.name, originals, previous)
                for m in active
                if m.name != model.name
            ]
            prompt = format_debate_prompt(
                round_number, query, originals[model.name], peers, analysis, previous,
            )
            context = Context(
                previous_responses=peers,
                analysis_report=analysis,
                debate_history=previous,
            )
            response = await model.generate(prompt, context)
            if response.token_count > self._config.max_tokens:
                logger.warning(
                    "%s exceeded token guideline in round %d: %d > %d",
                    model.name, round_number, response.token_count, self._config.max_tokens,
                )
            return parse_debate_response(response.text, model.name)

        results = await asyncio.gather(
            *(_exchange(m) for m in active), return_exceptions=True,
        )

        exchanges: list[DebateExchange] = []
        failed: list[str] = []
        for model, result in zip(active, results):
            if isinstance(result, BaseException):
                logger.error(
                    "%s failed in debate round %d and is excluded: %s: %s",
                    model.name, round_number, type(result).__name__, result,
                )
                failed.append(model.name)
            else:
                exchanges.append(result)

        return (
            DebateRound(
                round_number=round_number,
                exchanges=exchanges,
                disagreement_level=calculate_disagreement(exchanges),
            ),
            failed,
        )
