# husky/core/llm/__init__.py
"""Embedding/completion gateway."""

from husky.core.llm.circuit_breaker import CircuitBreaker
from husky.core.llm.client import LLMGateway, LLMProvider, OpenAICompatibleProvider, build_provider

__all__ = [
    "CircuitBreaker",
    "LLMGateway",
    "LLMProvider",
    "OpenAICompatibleProvider",
    "build_provider",
]
