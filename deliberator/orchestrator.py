"""
Deliberation Orchestrator – The Multi-Responder Pipeline
=========================================================
The :class:`DeliberationOrchestrator` wires every phase together and
exposes a single ``await orchestrator.handle(query, models)`` entry point.

Pipeline
--------
1. **Collection** – :class:`ResponseCollector` fans the bare query out to
   every responder; at least two must answer.
2. **Analysis** – :class:`AnalysisEngine` compares the answers lexically.
3. **Debate** – :class:`DebateOrchestrator` runs critique rounds among the
   responders that answered.
4. **Consensus** – :class:`ConsensusBuilder` turns the debate into one
   answer by majority or hybrid synthesis.

Each phase's output is persisted and the session status advanced before
the next phase starts:
``collecting → analyzing → debating → consensus → completed``.  Any error,
including the overall timeout, marks the session ``failed`` and is
re-raised.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from deliberator.analysis_engine import AnalysisEngine
from deliberator.config import Settings
from deliberator.consensus_builder import ConsensusBuilder
from deliberator.debate_orchestrator import DebateOrchestrator
from deliberator.errors import (
    DeliberationTimeoutError,
    InsufficientResponsesError,
    ValidationError,
)
from deliberator.observer import Event, EventBus, EventType, LoggingObserver
from deliberator.providers.base import ModelProvider
from deliberator.resilience import CallTimeoutError, race_timeout
from deliberator.response_collector import ResponseCollector
from deliberator.schemas import (
    ModelFailure,
    Query,
    QueryMode,
    SessionResult,
    SessionStatus,
    utcnow,
)
from deliberator.session_store import SessionStore

logger = logging.getLogger(__name__)

ORCHESTRATOR_ID = "orchestrator"


class DeliberationOrchestrator:
    """Multi-mode query handler.

    Parameters
    ----------
    session_store : SessionStore
        Where the session and every phase output are persisted.
    settings : Settings, optional
        Per-phase configuration; defaults apply when omitted.
    event_bus : EventBus, optional
        Bus that receives progress events.  A private bus is created when
        omitted.
    enable_logging_observer : bool
        Attach a :class:`LoggingObserver` to the bus (default ``True``).
    """

    def __init__(
        self,
        session_store: SessionStore,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
        enable_logging_observer: bool = True,
    ) -> None:
        self._store = session_store
        self._settings = settings or Settings()

        self._bus = event_bus or EventBus()
        if enable_logging_observer:
            self._bus.subscribe_all(LoggingObserver())

        self._collector = ResponseCollector(self._settings.collector, event_bus=self._bus)
        self._analysis = AnalysisEngine(self._settings.analysis)
        self._debate = DebateOrchestrator(self._settings.debate, event_bus=self._bus)
        self._consensus = ConsensusBuilder(self._settings.consensus)

        # Sessions whose pipeline lost the overall-timeout race.
        self._abandoned: set[str] = set()

    @property
    def event_bus(self) -> EventBus:
        """Expose the bus so callers can subscribe to pipeline events."""
        return self._bus

    # ------------------------------------------------------------------ #
    #  Main entry point                                                   #
    # ------------------------------------------------------------------ #

    async def handle(self, query: Query, models: Sequence[ModelProvider]) -> SessionResult:
        """Run the full deliberation for *query* over *models*.

        Raises
        ------
        ValidationError
            Fewer than ``min_models`` or more than ``max_models`` responders;
            raised before any session is created.
        DeliberationTimeoutError
            The pipeline exceeded the overall timeout.
        """
        cfg = self._settings.deliberation
        if len(models) < cfg.min_models:
            raise ValidationError(
                f"Multi-model mode requires at least {cfg.min_models} models, got {len(models)}"
            )
        if len(models) > cfg.max_models:
            raise ValidationError(
                f"Multi-model mode supports maximum {cfg.max_models} models, got {len(models)}"
            )

        session = await self._store.create_session(query, QueryMode.MULTI)
        logger.info(
            "Session %s started for query=%r with %s",
            session.id, query.text[:80], [m.name for m in models],
        )

        try:
            return await race_timeout(
                self._execute(session.id, query, list(models)),
                cfg.timeout,
                f"Deliberation exceeded {cfg.timeout:g}-second timeout",
            )
        except CallTimeoutError as exc:
            self._abandoned.add(session.id)
            error = DeliberationTimeoutError(str(exc))
            await self._mark_failed(session.id, error)
            raise error from None
        except Exception as exc:
            await self._mark_failed(session.id, exc)
            raise

    async def _execute(
        self,
        session_id: str,
        query: Query,
        models: list[ModelProvider],
    ) -> SessionResult:
        t0 = time.perf_counter()

        # 1. Collection
        collection = await self._collector.collect_responses(query, models, session_id=session_id)
        await self._advance(
            session_id,
            status=SessionStatus.ANALYZING,
            responses=collection.responses,
            errors=collection.failures,
        )
        self._phase_completed(
            "collection", session_id,
            responses=len(collection.responses), failures=len(collection.failures),
        )

        # 2. Analysis
        analysis = await self._analysis.analyze(collection.responses)
        await self._advance(session_id, status=SessionStatus.DEBATING, analysis=analysis)
        self._phase_completed("analysis", session_id, themes=len(analysis.common_themes))

        # 3. Debate among responders that answered
        answered = {r.model_id for r in collection.responses}
        debaters = [m for m in models if m.name in answered]
        debate = await self._debate.conduct_debate(
            query, collection.responses, analysis, debaters, session_id=session_id,
        )
        await self._advance(session_id, status=SessionStatus.CONSENSUS, debate=debate)
        self._phase_completed(
            "debate", session_id,
            rounds=len(debate.rounds), convergence=round(debate.convergence_score, 4),
        )

        # 4. Consensus
        consensus = await self._consensus.build_consensus(query, debate, debaters)
        await self._advance(
            session_id,
            status=SessionStatus.COMPLETED,
            consensus=consensus,
            completed_at=utcnow(),
        )
        self._phase_completed(
            "consensus", session_id, agreement=round(consensus.agreement_level, 4),
        )

        final = await self._store.get_session(session_id)
        if final is None:
            raise RuntimeError(f"Failed to retrieve final session {session_id}")

        logger.info("Session %s completed in %.2fs", session_id, time.perf_counter() - t0)
        self._bus.publish(
            Event(
                EventType.SESSION_COMPLETED,
                message=f"Session completed: agreement={consensus.agreement_level:.2f}",
                payload={
                    "result": consensus.final_solution.text,
                    "agreement": consensus.agreement_level,
                    "confidence": consensus.final_solution.confidence,
                },
                session_id=session_id,
            )
        )
        return SessionResult(
            session_id=session_id,
            result=consensus.final_solution.text,
            session=final,
        )

    # ------------------------------------------------------------------ #
    #  Session helpers                                                    #
    # ------------------------------------------------------------------ #

    async def _advance(self, session_id: str, **fields: Any) -> None:
        if session_id in self._abandoned:
            raise DeliberationTimeoutError(f"Session {session_id} was abandoned after timeout")
        await self._store.update_session(session_id, **fields)

    async def _mark_failed(self, session_id: str, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        logger.error("Session %s failed: %s", session_id, message)

        session = await self._store.get_session(session_id)
        errors: list[ModelFailure] = list(session.errors or []) if session else []
        if isinstance(exc, InsufficientResponsesError):
            recorded = {(f.model_id, f.error) for f in errors}
            errors.extend(f for f in exc.failures if (f.model_id, f.error) not in recorded)
        errors.append(ModelFailure(model_id=ORCHESTRATOR_ID, error=message))

        await self._store.update_session(
            session_id,
            status=SessionStatus.FAILED,
            error=message,
            errors=errors,
        )
        self._bus.publish(
            Event(
                EventType.SESSION_FAILED,
                message=f"Session failed: {message}",
                payload={"error": message, "error_type": type(exc).__name__},
                session_id=session_id,
            )
        )

    def _phase_completed(self, phase: str, session_id: str, **payload: Any) -> None:
        self._bus.publish(
            Event(
                EventType.PHASE_COMPLETED,
                message=f"Phase {phase} completed: {payload}",
                payload={"phase": phase, **payload},
                session_id=session_id,
            )
        )
