"""
Query Router
============
Validates an incoming query, resolves its responders from the
:class:`ModelRegistry` and dispatches to the handler for the chosen mode.
"""

from __future__ import annotations

from typing import Protocol, Sequence

from deliberator.config import DeliberationConfig
from deliberator.errors import ValidationError
from deliberator.providers.base import ModelProvider
from deliberator.registry import ModelRegistry
from deliberator.schemas import Query, QueryMode, SessionResult


class QueryHandler(Protocol):
    async def handle(self, query: Query, models: Sequence[ModelProvider]) -> SessionResult: ...


class QueryRouter:
    """Dispatch by :class:`QueryMode`.

    Parameters
    ----------
    registry : ModelRegistry
        Source of responders.
    direct_handler : QueryHandler
        Handles ``single`` mode.
    deliberation_handler : QueryHandler
        Handles ``multi`` mode.
    limits : DeliberationConfig, optional
        Responder-count bounds for ``multi`` mode.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        direct_handler: QueryHandler,
        deliberation_handler: QueryHandler,
        limits: DeliberationConfig | None = None,
    ) -> None:
        self._registry = registry
        self._direct = direct_handler
        self._deliberation = deliberation_handler
        self._limits = limits or DeliberationConfig()

    async def route(self, query: Query, mode: QueryMode) -> SessionResult:
        """Validate *query* and hand it to the handler for *mode*.

        Raises
        ------
        ValidationError
            Missing query fields, unknown or disabled responders, or a
            responder count the mode does not accept.
        """
        self._validate_query(query)
        models = self._resolve_models(query, mode)
        self._validate_count(models, mode)
        if mode is QueryMode.SINGLE:
            return await self._direct.handle(query, models)
        return await self._deliberation.handle(query, models)

    @staticmethod
    def _validate_query(query: Query) -> None:
        if not query.text or not query.text.strip():
            raise ValidationError("Query text is required")
        if not query.user_id or not query.user_id.strip():
            raise ValidationError("User ID is required")
        if not query.id or not query.id.strip():
            raise ValidationError("Query ID is required")

    def _lookup(self, model_id: str) -> ModelProvider:
        model = self._registry.get(model_id)
        if model is None:
            raise ValidationError(f"Model not found: {model_id}")
        if not model.enabled:
            raise ValidationError(f"Model is disabled: {model_id}")
        return model

    def _resolve_models(self, query: Query, mode: QueryMode) -> list[ModelProvider]:
        selected = query.selected_models or ()
        if mode is QueryMode.SINGLE:
            if len(selected) != 1:
                raise ValidationError("Single-model mode requires exactly one model to be selected")
            return [self._lookup(selected[0])]

        if selected:
            return [self._lookup(model_id) for model_id in selected]
        enabled = self._registry.enabled()
        if not enabled:
            raise ValidationError("No enabled models available")
        return enabled

    def _validate_count(self, models: Sequence[ModelProvider], mode: QueryMode) -> None:
        if mode is QueryMode.SINGLE:
            if len(models) != 1:
                raise ValidationError(f"Single-model mode requires exactly 1 model, got {len(models)}")
            return
        if len(models) < self._limits.min_models:
            raise ValidationError(
                f"Multi-model mode requires at least {self._limits.min_models} models, got {len(models)}"
            )
        if len(models) > self._limits.max_models:
            raise ValidationError(
                f"Multi-model mode supports maximum {self._limits.max_models} models, got {len(models)}"
            )
