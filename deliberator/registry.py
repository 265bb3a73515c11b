"""
Model Registry
==============
Holds the resolved responder instances the shell can route queries to,
keyed by their stable responder id.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from deliberator.providers.base import ModelProvider

logger = logging.getLogger(__name__)


class ModelRegistry:
    """In-process catalogue of responders with an enabled flag each."""

    def __init__(self, providers: Iterable[ModelProvider] = ()) -> None:
        self._models: dict[str, ModelProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ModelProvider) -> None:
        if provider.name in self._models:
            raise ValueError(f"Model already registered: {provider.name}")
        self._models[provider.name] = provider
        logger.debug("Registered responder %s (%s)", provider.name, provider.provider)

    def get(self, model_id: str) -> ModelProvider | None:
        return self._models.get(model_id)

    def all(self) -> list[ModelProvider]:
        return list(self._models.values())

    def enabled(self) -> list[ModelProvider]:
        return [m for m in self._models.values() if m.enabled]

    def set_enabled(self, model_id: str, enabled: bool) -> None:
        """Enable or disable a responder.

        Raises
        ------
        KeyError
            If *model_id* is not registered.
        """
        model = self._models.get(model_id)
        if model is None:
            raise KeyError(f"Model not found: {model_id}")
        model.enabled = enabled

    async def health_check(self) -> dict[str, bool]:
        """Run every responder's health check concurrently.

        A check that raises counts as unhealthy.
        """
        models = self.all()
        checks = await asyncio.gather(
            *(m.is_available() for m in models),
            return_exceptions=True,
        )
        health = {m.name: ok is True for m, ok in zip(models, checks)}
        unhealthy = [name for name, ok in health.items() if not ok]
        if unhealthy:
            logger.info("Unhealthy responders: %s", unhealthy)
        return health

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models
