"""
Deliberator Data Schemas
========================
Typed dataclasses that carry data between every pipeline phase.
Values produced by a phase (responses, analysis reports, debate rounds) are
frozen so that later phases can share them without defensive copies.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp in the pipeline."""
    return datetime.now(timezone.utc)


class QueryMode(str, Enum):
    """Execution mode chosen at the boundary."""

    SINGLE = "single"
    MULTI = "multi"


class SessionStatus(str, Enum):
    """Session state machine.

    ``collecting → analyzing → debating → consensus → completed``, or
    ``failed`` from any state.
    """

    COLLECTING = "collecting"
    ANALYZING = "analyzing"
    DEBATING = "debating"
    CONSENSUS = "consensus"
    COMPLETED = "completed"
    FAILED = "failed"


class DifferenceType(str, Enum):
    """Categories used by the analysis engine to label a disagreement."""

    METHODOLOGY = "methodology"
    CONCLUSION = "conclusion"
    ASSUMPTIONS = "assumptions"
    REASONING = "reasoning"


class FailureCategory(Enum):
    """Retry-relevant buckets for a failed remote call."""

    TIMEOUT = auto()
    AUTH = auto()
    QUOTA = auto()
    TRANSIENT = auto()
    PERMANENT = auto()
    CIRCUIT_OPEN = auto()


@dataclass(frozen=True)
class Query:
    """The user's question, created once at the boundary and never mutated.

    Attributes:
        id:               Unique query identifier.
        text:             Free-text question.
        user_id:          Owning user.
        selected_models:  Optional explicit responder-id selection.
        created_at:       Creation time.
    """

    id: str
    text: str
    user_id: str
    selected_models: tuple[str, ...] | None = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        text: str,
        user_id: str,
        selected_models: list[str] | tuple[str, ...] | None = None,
    ) -> Query:
        """Build a query with a freshly allocated id."""
        return cls(
            id=uuid.uuid4().hex,
            text=text,
            user_id=user_id,
            selected_models=tuple(selected_models) if selected_models else None,
        )


@dataclass(frozen=True)
class ModelResponse:
    """One successful answer from one responder.

    Attributes:
        model_id:     Responder id that produced the text.
        text:         The generated text.
        token_count:  Provider-reported token count, else an estimate.
        latency:      Wall-clock seconds for the call.
        timestamp:    When the response was received.
        metadata:     Provider-specific metadata (finish reason, usage, …).
    """

    model_id: str
    text: str
    token_count: int = 0
    latency: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelFailure:
    """A failed call (timeout, provider error, open circuit, exhausted retries)."""

    model_id: str
    error: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class CollectionResult:
    responses: list[ModelResponse] = field(default_factory=list)
    failures: list[ModelFailure] = field(default_factory=list)
    duration: float = 0.0


@dataclass(frozen=True)
class Theme:
    description: str
    supporting_models: list[str] = field(default_factory=list)
    confidence: float = 0.0


@dataclass(frozen=True)
class Approach:
    model_id: str
    description: str
    methodology: str = "general"


@dataclass(frozen=True)
class Difference:
    type: DifferenceType
    description: str
    involved_models: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AnalysisReport:
    """Cross-response analysis derived from one set of responses.

    Attributes:
        common_themes:      Phrases shared by at least two responders.
        unique_approaches:  One methodology tag + description per responder.
        differences:        Categorised disagreements between response pairs.
        summary:            Deterministic natural-language digest.
        timestamp:          Creation time.
    """

    common_themes: list[Theme] = field(default_factory=list)
    unique_approaches: list[Approach] = field(default_factory=list)
    differences: list[Difference] = field(default_factory=list)
    summary: str = ""
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DebateExchange:
    """One responder's contribution to one debate round."""

    model_id: str
    critique: str = ""
    defense: str = ""
    revised_position: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def position(self) -> str:
        """Latest stance: revised position, else defense, else critique."""
        return self.revised_position or self.defense or self.critique


@dataclass(frozen=True)
class DebateRound:
    round_number: int
    exchanges: list[DebateExchange] = field(default_factory=list)
    disagreement_level: float = 0.0


@dataclass
class DebateResult:
    """Ordered rounds plus the final convergence score.

    ``excluded_models`` lists responders isolated after failing a round; the
    consensus phase does not ask them for a proposal.
    """

    rounds: list[DebateRound] = field(default_factory=list)
    convergence_score: float = 0.0
    duration: float = 0.0
    excluded_models: list[str] = field(default_factory=list)


@dataclass
class Proposal:
    model_id: str
    text: str
    insights: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Insight:
    source: str
    description: str
    incorporated: bool = True


@dataclass
class Solution:
    text: str
    supporting_models: list[str] = field(default_factory=list)
    incorporated_insights: list[Insight] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class ConsensusResult:
    final_solution: Solution
    agreement_level: float = 0.0
    rationale: str = ""
    duration: float = 0.0


@dataclass
class Context:
    """Optional prompt context handed to a responder.

    The pipeline never inspects it beyond passing it through; adapters use it
    to build richer prompts.
    """

    previous_responses: list[ModelResponse] = field(default_factory=list)
    analysis_report: AnalysisReport | None = None
    debate_history: list[DebateRound] = field(default_factory=list)


@dataclass
class Session:
    """Aggregate root persisted by the session store.

    Attributes:
        error:   Human-readable terminal error when ``status`` is ``failed``.
        errors:  Per-responder failures recorded along the way.
    """

    id: str
    user_id: str
    query: Query
    mode: QueryMode
    status: SessionStatus = SessionStatus.COLLECTING
    responses: list[ModelResponse] | None = None
    errors: list[ModelFailure] | None = None
    analysis: AnalysisReport | None = None
    debate: DebateResult | None = None
    consensus: ConsensusResult | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None


@dataclass
class SessionResult:
    """What a mode handler returns to the shell."""

    session_id: str
    result: str
    session: Session
