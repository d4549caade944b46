# husky/core/__init__.py
"""Core modules for the Husky AI assistant."""

from husky.core.config import get_settings, Settings
from husky.core.llm.client import LLMGateway, build_provider
from husky.core.retrieval.vector_engine import FaissEngine, VectorIndex
from husky.core.retrieval.retriever import RetrievalEngine
from husky.core.retrieval.citation_manager import CitationManager, Citation
from husky.core.memory.store import SQLiteStore
from husky.core.memory.cache import SummaryCache
from husky.core.memory.manager import ChatSessionManager
from husky.core.ingestion.pipeline import IngestionPipeline
from husky.core.orchestrator import ResponseOrchestrator

__all__ = [
    "get_settings",
    "Settings",
    "LLMGateway",
    "build_provider",
    "FaissEngine",
    "VectorIndex",
    "RetrievalEngine",
    "CitationManager",
    "Citation",
    "SQLiteStore",
    "SummaryCache",
    "ChatSessionManager",
    "IngestionPipeline",
    "ResponseOrchestrator",
]
