"""
Providers package – auto-imports all concrete providers to trigger
``@register(...)`` decorators.
"""

from deliberator.providers.base import ModelProvider, format_context
from deliberator.providers.factory import ProviderFactory, register

# Import concrete providers so they self-register via @register(...)
from deliberator.providers import (  # noqa: F401
    openai_provider,
    anthropic_provider,
    gemini_provider,
    ollama_provider,
)

__all__ = ["ModelProvider", "ProviderFactory", "format_context", "register"]
