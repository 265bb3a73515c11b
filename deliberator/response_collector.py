"""
Response Collector – Blind Parallel Fan-Out
============================================
Sends the bare query text to every responder at once, with no context, and
partitions the outcomes into responses and failures.  One responder's
failure never affects another's call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from deliberator.config import CollectorConfig
from deliberator.errors import InsufficientResponsesError, ValidationError
from deliberator.observer import Event, EventBus, EventType
from deliberator.providers.base import ModelProvider
from deliberator.resilience import race_timeout
from deliberator.schemas import CollectionResult, ModelFailure, ModelResponse, Query

logger = logging.getLogger(__name__)


class ResponseCollector:
    """Stateless fan-out over a responder list.

    Parameters
    ----------
    config : CollectorConfig, optional
        Per-responder bound and the minimum number of successes.
    event_bus : EventBus, optional
        Receives ``MODEL_RESPONSE`` / ``MODEL_FAILURE`` per responder.
    """

    def __init__(
        self,
        config: CollectorConfig | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or CollectorConfig()
        self._bus = event_bus

    async def collect_responses(
        self,
        query: Query,
        models: Sequence[ModelProvider],
        session_id: str = "",
    ) -> CollectionResult:
        """Query every responder concurrently and wait for all of them.

        Raises
        ------
        ValidationError
            *models* is empty.
        InsufficientResponsesError
            Fewer than ``min_successful`` responders answered.
        """
        if not models:
            raise ValidationError("No models provided for response collection")

        t0 = time.perf_counter()
        logger.info("Collecting responses for query %s from %d responder(s)", query.id, len(models))

        results = await asyncio.gather(
            *(self._collect_one(query, m) for m in models),
            return_exceptions=True,
        )

        responses: list[ModelResponse] = []
        failures: list[ModelFailure] = []
        for model, result in zip(models, results):
            if isinstance(result, BaseException):
                failure = ModelFailure(model_id=model.name, error=str(result) or type(result).__name__)
                failures.append(failure)
                logger.warning("%s failed: %s", model.name, failure.error)
                self._publish(
                    EventType.MODEL_FAILURE,
                    f"{model.name} failed: {failure.error}",
                    {"model": model.name, "error": failure.error},
                    session_id,
                )
            else:
                responses.append(result)
                self._publish(
                    EventType.MODEL_RESPONSE,
                    f"Got response from {model.name} ({len(result.text)} chars, {result.latency:.2f}s)",
                    {
                        "model": model.name,
                        "tokens": result.token_count,
                        "latency": round(result.latency, 2),
                    },
                    session_id,
                )

        duration = time.perf_counter() - t0
        if len(responses) < self._config.min_successful:
            detail = "; ".join(f"{f.model_id}: {f.error}" for f in failures)
            message = (
                f"Insufficient responses: got {len(responses)}, need at least "
                f"{self._config.min_successful}. Failures: {detail}"
            )
            logger.error(message)
            raise InsufficientResponsesError(message, failures)

        logger.info(
            "Collection done in %.2fs: %d success(es), %d failure(s)",
            duration, len(responses), len(failures),
        )
        return CollectionResult(responses=responses, failures=failures, duration=duration)

    async def _collect_one(self, query: Query, model: ModelProvider) -> ModelResponse:
        return await race_timeout(
            model.generate(query.text),
            self._config.timeout,
            f"Model {model.name} exceeded {self._config.timeout:g}-second timeout",
        )

    def _publish(self, event_type: EventType, message: str, payload: dict, session_id: str) -> None:
        if self._bus:
            self._bus.publish(
                Event(event_type, message=message, payload=payload, session_id=session_id)
            )
