"""
Consensus Builder – Majority or Hybrid Synthesis
================================================
Turns a finished debate into a single :class:`ConsensusResult`.

Algorithm
---------
1. Every responder still active after the debate submits a final proposal.
2. Proposals are clustered greedily: each joins the first cluster whose
   first member is at least ``similarity_threshold`` (Jaccard) similar.
3. If the largest cluster holds more than ``majority_threshold`` of the
   proposals, its member with the most insights is the answer.
4. Otherwise a hybrid answer is stitched from sentences that share common
   vocabulary, and every participant votes YES/NO on it.

The whole procedure is bounded by ``timeout``; on expiry the last debate
round's best position is returned instead.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Sequence

from deliberator.config import ConsensusConfig
from deliberator.errors import ConsensusError
from deliberator.providers.base import ModelProvider
from deliberator.resilience import CallTimeoutError, race_timeout
from deliberator.schemas import (
    ConsensusResult,
    Context,
    DebateResult,
    Insight,
    Proposal,
    Query,
    Solution,
)
from deliberator.similarity import jaccard_similarity, significant_words, split_sentences

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "Unable to reach consensus within time limit"
FALLBACK_RATIONALE = (
    "Consensus building exceeded time limit. "
    "Returning best available solution from debate."
)
HISTORY_SNIPPET = 150

# ──────────────────────────────────────────────────────────────────────
# Prompt templates
# ──────────────────────────────────────────────────────────────────────

CONSENSUS_INSTRUCTIONS = (
    "Instructions:\n"
    "Based on the complete debate, provide your final proposed solution.\n"
    "Your proposal should:\n"
    "1. Incorporate valid insights from other models\n"
    "2. Address weaknesses identified during debate\n"
    "3. Represent your best answer to the original query\n\n"
    "Format your response as:\n"
    "FINAL_SOLUTION: [Your complete solution]\n"
    "INCORPORATED_INSIGHTS: [List key insights from other models that you incorporated]"
)

VALIDATION_PROMPT = (
    "Please validate the following proposed solution to the query.\n\n"
    "Original Query: {query}\n\n"
    "Proposed Solution: {solution}\n\n"
    "Does this solution adequately address the query? Respond with:\n"
    "YES - if the solution is acceptable\n"
    "NO - if the solution has significant issues\n\n"
    "Response: "
)


def format_consensus_prompt(query: Query, debate: DebateResult) -> str:
    lines = [
        "Final Consensus Round:",
        "",
        f"Original Query: {query.text}",
        "",
        "Debate Summary:",
        f"- Total rounds: {len(debate.rounds)}",
        f"- Convergence score: {debate.convergence_score:.2f}",
        "",
        "Debate History:",
    ]
    for rnd in debate.rounds:
        lines.append(f"Round {rnd.round_number} (disagreement: {rnd.disagreement_level:.2f}):")
        for ex in rnd.exchanges:
            stance = ex.revised_position or ex.defense
            if stance:
                lines.append(f"  {ex.model_id}: {stance[:HISTORY_SNIPPET]}...")
    lines.append("")
    lines.append(CONSENSUS_INSTRUCTIONS)
    return "\n".join(lines)


# ──────────────────────────────────────────────────────────────────────
# Parsing & clustering
# ──────────────────────────────────────────────────────────────────────

_SOLUTION_RE = re.compile(r"^[#*\s]*FINAL[_ ]SOLUTION[*\s]*:[*\s]*(.*)$", re.IGNORECASE)
_INSIGHTS_RE = re.compile(r"^[#*\s]*INCORPORATED[_ ]INSIGHTS[*\s]*:[*\s]*(.*)$", re.IGNORECASE)
_BULLET_RE = re.compile(r"^[-*•]\s*")


def parse_consensus_response(text: str, model_id: str) -> Proposal:
    """Read ``FINAL_SOLUTION`` and ``INCORPORATED_INSIGHTS`` sections.

    Without a solution label the whole reply is the solution.
    """
    solution: list[str] = []
    insights: list[str] = []
    current: str | None = None

    for raw in text.splitlines():
        line = raw.strip()
        solution_match = _SOLUTION_RE.match(line)
        insights_match = _INSIGHTS_RE.match(line)
        if solution_match:
            current = "solution"
            line = solution_match.group(1).strip()
        elif insights_match:
            current = "insights"
            line = insights_match.group(1).strip()
        if not line:
            continue
        if current == "solution":
            solution.append(line)
        elif current == "insights":
            insights.append(_BULLET_RE.sub("", line).strip())

    body = "\n".join(solution).strip() or text.strip()
    return Proposal(model_id=model_id, text=body, insights=[i for i in insights if i])


def cluster_proposals(proposals: Sequence[Proposal], threshold: float) -> list[list[Proposal]]:
    clusters: list[list[Proposal]] = []
    for proposal in proposals:
        for cluster in clusters:
            if jaccard_similarity(proposal.text, cluster[0].text) >= threshold:
                cluster.append(proposal)
                break
        else:
            clusters.append([proposal])
    return clusters


def select_representative(cluster: Sequence[Proposal]) -> Proposal:
    """Member with the most insights; the earliest wins ties."""
    best = cluster[0]
    for proposal in cluster[1:]:
        if len(proposal.insights) > len(best.insights):
            best = proposal
    return best


def synthesize_hybrid(proposals: Sequence[Proposal]) -> str:
    """Stitch sentences that use vocabulary common to half the proposals."""
    common = significant_words((p.text for p in proposals), min_share=0.5)

    sentences: list[str] = []
    seen: set[str] = set()
    for proposal in proposals:
        for sentence in split_sentences(proposal.text):
            lower = sentence.lower()
            words = re.sub(r"[^\w\s]", " ", lower).split()
            if lower not in seen and any(w in common for w in words):
                sentences.append(sentence)
                seen.add(lower)

    if not sentences:
        for proposal in proposals:
            first = re.split(r"[.!?]+", proposal.text)[0].strip()
            if first:
                sentences.append(first)

    return ". ".join(sentences) + "."


def extract_insights(proposals: Sequence[Proposal]) -> list[Insight]:
    insights: list[Insight] = []
    seen: set[str] = set()
    for proposal in proposals:
        for text in proposal.insights:
            key = text.lower().strip()
            if text and key not in seen:
                seen.add(key)
                insights.append(Insight(source=proposal.model_id, description=text))
    return insights


class ConsensusBuilder:
    """Synthesises one answer from the debate's surviving responders.

    Parameters
    ----------
    config : ConsensusConfig, optional
        Timeout plus majority and clustering thresholds.
    """

    def __init__(self, config: ConsensusConfig | None = None) -> None:
        self._config = config or ConsensusConfig()

    async def build_consensus(
        self,
        query: Query,
        debate: DebateResult,
        models: Sequence[ModelProvider],
    ) -> ConsensusResult:
        """Build consensus, falling back to the debate's last position on timeout.

        Raises
        ------
        ConsensusError
            No responder produced a proposal.
        """
        t0 = time.perf_counter()
        try:
            return await race_timeout(
                self._perform(query, debate, models, t0),
                self._config.timeout,
                "Consensus timeout exceeded",
            )
        except CallTimeoutError:
            logger.warning(
                "Consensus for query %s exceeded %.1fs; using debate fallback",
                query.id, self._config.timeout,
            )
            return self._fallback(debate, models, t0)

    async def _perform(
        self,
        query: Query,
        debate: DebateResult,
        models: Sequence[ModelProvider],
        t0: float,
    ) -> ConsensusResult:
        excluded = set(debate.excluded_models)
        participants = [m for m in models if m.name not in excluded]

        proposals = await self._collect_proposals(query, debate, participants)
        if not proposals:
            raise ConsensusError("No proposals generated by any model")

        clusters = cluster_proposals(proposals, self._config.similarity_threshold)
        largest = max(clusters, key=len)
        agreement = len(largest) / len(proposals)

        if agreement > self._config.majority_threshold:
            representative = select_representative(largest)
            solution = Solution(
                text=representative.text,
                supporting_models=[p.model_id for p in largest],
                incorporated_insights=extract_insights(largest),
                confidence=agreement,
            )
            rationale = self._majority_rationale(largest, len(proposals), agreement)
            logger.info("Majority consensus: %d/%d proposals agree", len(largest), len(proposals))
        else:
            hybrid = synthesize_hybrid(proposals)
            # every responder that answered collection votes, debate exclusions included
            votes = await self._validate_hybrid(query, hybrid, models)
            approvals = sum(votes)
            solution = Solution(
                text=hybrid,
                supporting_models=[m.name for m in models],
                incorporated_insights=extract_insights(proposals),
                confidence=approvals / len(models),
            )
            rationale = self._hybrid_rationale(proposals, len(clusters), approvals, len(models))
            logger.info(
                "Hybrid consensus from %d cluster(s); approved by %d/%d",
                len(clusters), approvals, len(models),
            )

        return ConsensusResult(
            final_solution=solution,
            agreement_level=agreement,
            rationale=rationale,
            duration=time.perf_counter() - t0,
        )

    async def _collect_proposals(
        self,
        query: Query,
        debate: DebateResult,
        participants: Sequence[ModelProvider],
    ) -> list[Proposal]:
        prompt = format_consensus_prompt(query, debate)
        context = Context(debate_history=list(debate.rounds))
        results = await asyncio.gather(
            *(m.generate(prompt, context) for m in participants),
            return_exceptions=True,
        )
        proposals = []
        for model, result in zip(participants, results):
            if isinstance(result, BaseException):
                logger.warning("%s failed to propose a solution: %s", model.name, result)
                continue
            proposals.append(parse_consensus_response(result.text, model.name))
        return proposals

    async def _validate_hybrid(
        self,
        query: Query,
        hybrid: str,
        voters: Sequence[ModelProvider],
    ) -> list[bool]:
        prompt = VALIDATION_PROMPT.format(query=query.text, solution=hybrid)
        results = await asyncio.gather(
            *(m.generate(prompt) for m in voters),
            return_exceptions=True,
        )
        votes = []
        for model, result in zip(voters, results):
            if isinstance(result, BaseException):
                logger.warning("%s failed to vote; counted as rejection: %s", model.name, result)
                votes.append(False)
            else:
                votes.append("YES" in result.text.upper())
        return votes

    @staticmethod
    def _majority_rationale(cluster: Sequence[Proposal], total: int, agreement: float) -> str:
        parts = [
            "Consensus reached through majority agreement.",
            f"{len(cluster)} out of {total} models ({agreement * 100:.0f}%) "
            "converged on a similar solution.",
            f"Supporting models: {', '.join(p.model_id for p in cluster)}.",
        ]
        insight_count = sum(len(p.insights) for p in cluster)
        if insight_count:
            parts.append(f"The solution incorporates {insight_count} key insights from the debate.")
        return " ".join(parts)

    @staticmethod
    def _hybrid_rationale(
        proposals: Sequence[Proposal],
        cluster_count: int,
        approvals: int,
        voters: int,
    ) -> str:
        parts = [
            "Consensus reached through hybrid synthesis.",
            f"No single solution achieved majority agreement "
            f"({cluster_count} distinct approaches identified).",
            "A hybrid solution was synthesized by combining common elements from all proposals.",
            f"The hybrid solution was validated and approved by {approvals} out of "
            f"{voters} models ({approvals / voters * 100:.0f}%).",
        ]
        insight_count = sum(len(p.insights) for p in proposals)
        if insight_count:
            parts.append(f"The solution incorporates {insight_count} insights from across all models.")
        return " ".join(parts)

    @staticmethod
    def _fallback(
        debate: DebateResult,
        models: Sequence[ModelProvider],
        t0: float,
    ) -> ConsensusResult:
        text = FALLBACK_TEXT
        supporters = [models[0].name] if models else []
        if debate.rounds and debate.rounds[-1].exchanges:
            first = debate.rounds[-1].exchanges[0]
            text = first.revised_position or first.defense or FALLBACK_TEXT
            supporters = [first.model_id]
        return ConsensusResult(
            final_solution=Solution(text=text, supporting_models=supporters, confidence=0.5),
            agreement_level=0.5,
            rationale=FALLBACK_RATIONALE,
            duration=time.perf_counter() - t0,
        )
