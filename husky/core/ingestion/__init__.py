# husky/core/ingestion/__init__.py
"""Directory ingestion modules."""

from husky.core.ingestion.directory_source import (
    DirectoryEntity,
    DirectorySource,
    InMemoryDirectorySource,
    JsonDirectorySource,
)
from husky.core.ingestion.pipeline import IngestionPipeline

__all__ = [
    "DirectoryEntity",
    "DirectorySource",
    "InMemoryDirectorySource",
    "JsonDirectorySource",
    "IngestionPipeline",
]
