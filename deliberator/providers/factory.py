"""
Provider Factory – Registration & Creation
===========================================
Each concrete provider self-registers with a ``@register("name")``
decorator.  Entry points call ``ProviderFactory.create("openai", api_key="…")``
without importing concrete classes.
"""

from __future__ import annotations

import logging
from typing import Any, Type

from deliberator.providers.base import ModelProvider

logger = logging.getLogger(__name__)

_REGISTRY: dict[str, Type[ModelProvider]] = {}


def register(name: str):
    """Class decorator that registers a :class:`ModelProvider` subclass."""

    def decorator(cls: Type[ModelProvider]):
        cls.name = name
        _REGISTRY[name] = cls
        return cls

    return decorator


class ProviderFactory:
    """Factory for constructing :class:`ModelProvider` instances by name."""

    @staticmethod
    def available_names() -> list[str]:
        """Return the names of all registered providers."""
        return list(_REGISTRY.keys())

    @staticmethod
    def create(name: str, **kwargs: Any) -> ModelProvider:
        """Instantiate a registered provider.

        ``ollama:<model_tag>`` is shorthand for an Ollama provider targeting
        that tag, e.g. ``ProviderFactory.create("ollama:mistral")``.

        Raises
        ------
        KeyError
            If *name* has not been registered.
        """
        if name.startswith("ollama:") and "ollama" in _REGISTRY:
            model_tag = name[len("ollama:"):]
            if model_tag:
                kwargs.setdefault("model", model_tag)
                return _REGISTRY["ollama"](**kwargs)

        if name not in _REGISTRY:
            raise KeyError(
                f"Unknown provider '{name}'. "
                f"Available: {ProviderFactory.available_names()}"
            )
        return _REGISTRY[name](**kwargs)

    @staticmethod
    def create_many(names: list[str], **provider_configs: dict[str, Any]) -> list[ModelProvider]:
        """Create one provider per entry of *names*.

        Unknown names raise ``KeyError``; providers whose constructor fails
        are logged and skipped.
        """
        providers: list[ModelProvider] = []
        for name in names:
            cfg = provider_configs.get(name, {})
            try:
                providers.append(ProviderFactory.create(name, **cfg))
            except KeyError:
                raise
            except Exception:
                logger.warning("Skipping provider '%s' (instantiation failed)", name, exc_info=True)
        return providers

    @staticmethod
    async def create_available(names: list[str] | None = None) -> list[ModelProvider]:
        """Create providers for *names* (default: every hosted backend) and
        keep only those whose health check passes."""
        if names is None:
            names = [n for n in _REGISTRY if n != "ollama"]
        providers = ProviderFactory.create_many(names)
        available: list[ModelProvider] = []
        for provider in providers:
            if await provider.is_available():
                available.append(provider)
            else:
                logger.info("Provider %s unavailable (skipped)", provider.name)
        return available
