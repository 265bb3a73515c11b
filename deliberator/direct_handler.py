"""
Direct Query Handler – Single-Responder Path
=============================================
Sends the query to exactly one responder and records the answer in a
single-mode session.  No analysis, debate or consensus takes place.
"""

from __future__ import annotations

import logging
from typing import Sequence

from deliberator.errors import ValidationError
from deliberator.observer import Event, EventBus, EventType
from deliberator.providers.base import ModelProvider
from deliberator.resilience import race_timeout
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


class DirectQueryHandler:
    """Single-mode query handler.

    Parameters
    ----------
    session_store : SessionStore
        Where the single-mode session is persisted.
    timeout : float
        Bound on the one responder call (default ``30``).
    event_bus : EventBus, optional
        Receives ``SESSION_COMPLETED`` / ``SESSION_FAILED``.
    """

    def __init__(
        self,
        session_store: SessionStore,
        timeout: float = 30.0,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = session_store
        self._timeout = timeout
        self._bus = event_bus

    async def handle(self, query: Query, models: Sequence[ModelProvider]) -> SessionResult:
        if len(models) != 1:
            raise ValidationError(
                f"Direct query handling requires exactly 1 model, got {len(models)}"
            )
        model = models[0]
        session = await self._store.create_session(query, QueryMode.SINGLE)

        try:
            response = await race_timeout(
                model.generate(query.text),
                self._timeout,
                f"Model {model.name} exceeded {self._timeout:g}-second timeout",
            )
        except Exception as exc:
            message = f"Model {model.name} failed: {exc}"
            logger.warning("Session %s: %s", session.id, message)
            await self._store.update_session(
                session.id,
                status=SessionStatus.FAILED,
                error=message,
                errors=[ModelFailure(model_id=model.name, error=str(exc) or type(exc).__name__)],
            )
            self._publish(EventType.SESSION_FAILED, message, {"error": message}, session.id)
            raise

        await self._store.update_session(
            session.id,
            status=SessionStatus.COMPLETED,
            responses=[response],
            completed_at=utcnow(),
        )
        final = await self._store.get_session(session.id)
        if final is None:
            raise RuntimeError(f"Failed to retrieve session {session.id}")

        self._publish(
            EventType.SESSION_COMPLETED,
            f"{model.name} answered in {response.latency:.2f}s",
            {"result": response.text, "model": model.name},
            session.id,
        )
        return SessionResult(session_id=session.id, result=response.text, session=final)

    def _publish(self, event_type: EventType, message: str, payload: dict, session_id: str) -> None:
        if self._bus:
            self._bus.publish(
                Event(event_type, message=message, payload=payload, session_id=session_id)
            )
