"""
Deliberator Configuration
=========================
Per-component settings as typed dataclasses.  Every similarity threshold and
round limit used by the pipeline lives here so callers can tune them without
touching the phase code.

``Settings.from_env()`` reads ``DELIBERATOR_*`` environment variables; entry
points call ``load_dotenv()`` first so a local ``.env`` file is honoured.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


def _check_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")


@dataclass
class ResilienceConfig:
    """Timeout, retry and circuit-breaker settings for every remote call.

    Attributes:
        call_timeout:       Seconds a single attempt may take.
        max_attempts:       Total attempts for retryable (rate-limit) errors.
        initial_delay:      Seconds before the first retry.
        backoff_multiplier: Growth factor between retries.
        max_delay:          Upper bound on a single backoff delay.
        failure_threshold:  Failures that open a responder's circuit.
        reset_timeout:      Seconds an open circuit waits before a trial call.
        success_threshold:  Half-open successes needed to close the circuit.
        request_timeout:    Independent bound the breaker races every call against.
    """

    call_timeout: float = 30.0
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 2
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        _check_positive("call_timeout", self.call_timeout)
        _check_positive("request_timeout", self.request_timeout)
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError("circuit thresholds must be at least 1")


@dataclass
class CollectorConfig:
    timeout: float = 30.0
    min_successful: int = 2

    def __post_init__(self) -> None:
        _check_positive("timeout", self.timeout)


@dataclass
class AnalysisConfig:
    """Analysis engine heuristics.

    ``similarity_threshold`` separates "similar" from "different" response
    pairs and gates the generic-theme fallback.
    """

    timeout: float = 10.0
    similarity_threshold: float = 0.3
    ngram_size: int = 3
    max_themes: int = 5

    def __post_init__(self) -> None:
        _check_positive("timeout", self.timeout)
        _check_unit_interval("similarity_threshold", self.similarity_threshold)
        if self.ngram_size < 1 or self.max_themes < 1:
            raise ValueError("ngram_size and max_themes must be at least 1")


MAX_DEBATE_ROUNDS = 5


@dataclass
class DebateConfig:
    min_rounds: int = 1
    max_rounds: int = 5
    convergence_threshold: float = 0.2
    max_tokens: int = 500

    def __post_init__(self) -> None:
        if not 1 <= self.min_rounds <= self.max_rounds <= MAX_DEBATE_ROUNDS:
            raise ValueError(
                f"Debate rounds must satisfy 1 <= min_rounds <= max_rounds <= "
                f"{MAX_DEBATE_ROUNDS}, got min={self.min_rounds} max={self.max_rounds}"
            )
        _check_unit_interval("convergence_threshold", self.convergence_threshold)


@dataclass
class ConsensusConfig:
    timeout: float = 60.0
    majority_threshold: float = 0.5
    similarity_threshold: float = 0.6

    def __post_init__(self) -> None:
        _check_positive("timeout", self.timeout)
        _check_unit_interval("majority_threshold", self.majority_threshold)
        _check_unit_interval("similarity_threshold", self.similarity_threshold)


@dataclass
class DeliberationConfig:
    timeout: float = 300.0
    min_models: int = 2
    max_models: int = 10

    def __post_init__(self) -> None:
        _check_positive("timeout", self.timeout)
        if not 1 <= self.min_models <= self.max_models:
            raise ValueError("min_models must be between 1 and max_models")


@dataclass
class Settings:
    """All component settings plus the session database path."""

    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    debate: DebateConfig = field(default_factory=DebateConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    deliberation: DeliberationConfig = field(default_factory=DeliberationConfig)
    session_db: Path | None = None

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from ``DELIBERATOR_*`` environment variables.

        Unset variables keep their defaults; malformed values raise
        ``ValueError``.
        """
        db = os.getenv("DELIBERATOR_SESSION_DB")
        return cls(
            resilience=ResilienceConfig(
                call_timeout=_env_float("DELIBERATOR_CALL_TIMEOUT", 30.0),
                max_attempts=_env_int("DELIBERATOR_MAX_ATTEMPTS", 3),
                initial_delay=_env_float("DELIBERATOR_INITIAL_DELAY", 1.0),
                max_delay=_env_float("DELIBERATOR_MAX_DELAY", 10.0),
                failure_threshold=_env_int("DELIBERATOR_FAILURE_THRESHOLD", 5),
                reset_timeout=_env_float("DELIBERATOR_RESET_TIMEOUT", 60.0),
                success_threshold=_env_int("DELIBERATOR_SUCCESS_THRESHOLD", 2),
            ),
            collector=CollectorConfig(
                timeout=_env_float("DELIBERATOR_COLLECTION_TIMEOUT", 30.0),
            ),
            analysis=AnalysisConfig(
                timeout=_env_float("DELIBERATOR_ANALYSIS_TIMEOUT", 10.0),
                similarity_threshold=_env_float("DELIBERATOR_ANALYSIS_SIMILARITY", 0.3),
            ),
            debate=DebateConfig(
                min_rounds=_env_int("DELIBERATOR_MIN_ROUNDS", 1),
                max_rounds=_env_int("DELIBERATOR_MAX_ROUNDS", 5),
                convergence_threshold=_env_float("DELIBERATOR_CONVERGENCE_THRESHOLD", 0.2),
            ),
            consensus=ConsensusConfig(
                timeout=_env_float("DELIBERATOR_CONSENSUS_TIMEOUT", 60.0),
                majority_threshold=_env_float("DELIBERATOR_MAJORITY_THRESHOLD", 0.5),
                similarity_threshold=_env_float("DELIBERATOR_CLUSTER_SIMILARITY", 0.6),
            ),
            deliberation=DeliberationConfig(
                timeout=_env_float("DELIBERATOR_SESSION_TIMEOUT", 300.0),
            ),
            session_db=Path(db) if db else None,
        )
