# husky/core/retrieval/__init__.py
"""Retrieval modules."""

from husky.core.retrieval.vector_engine import FaissEngine, VectorIndex
from husky.core.retrieval.retriever import RetrievalEngine
from husky.core.retrieval.citation_manager import CitationManager, Citation

__all__ = [
    "FaissEngine",
    "VectorIndex",
    "RetrievalEngine",
    "CitationManager",
    "Citation",
]
