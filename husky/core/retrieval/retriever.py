"""
Retrieval Engine: multi-collection semantic search over directory documents.

Pipeline:
  1. Embed the query once through the gateway
  2. Top-k nearest-neighbour search per target collection (concurrently)
  3. Merge candidates, deduplicate by document id keeping the best score
  4. Drop candidates below the similarity threshold
  5. Sort by similarity (ties: most recently updated first), truncate to N
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from husky.core.config import Settings, get_settings
from husky.core.errors import ValidationError
from husky.core.llm.client import LLMGateway
from husky.core.models import RetrievedDocument, SourceType
from husky.core.retrieval.vector_engine import VectorIndex

logger = logging.getLogger(__name__)


class RetrievalEngine:
    def __init__(
        self,
        gateway: LLMGateway,
        index: VectorIndex,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.index = index

    @staticmethod
    def _resolve_collections(collections: Iterable[str]) -> List[str]:
        resolved = []
        for name in collections:
            try:
                value = SourceType(name).value
            except ValueError:
                raise ValidationError(f"Unknown collection: {name}") from None
            if value not in resolved:
                resolved.append(value)
        return resolved

    @staticmethod
    def merge(
        candidates: Iterable[RetrievedDocument],
        min_similarity: float,
        max_documents: int,
    ) -> List[RetrievedDocument]:
        """Deduplicate, threshold, rank and truncate retrieval candidates."""
        best: Dict[str, RetrievedDocument] = {}
        for candidate in candidates:
            current = best.get(candidate.id)
            if current is None or candidate.similarity > current.similarity:
                best[candidate.id] = candidate

        kept = [c for c in best.values() if c.similarity >= min_similarity]
        kept.sort(key=lambda c: (c.similarity, c.document.freshness()), reverse=True)
        return kept[:max_documents]

    async def retrieve(
        self,
        query: str,
        collections: Optional[Iterable[str]] = None,
        k: Optional[int] = None,
        min_similarity: Optional[float] = None,
        max_documents: Optional[int] = None,
    ) -> List[RetrievedDocument]:
        """
        Return ranked grounding documents for a query.

        Args:
            query: User query text
            collections: Source types to search (default from settings)
            k: Candidates requested per collection
            min_similarity: Cosine similarity threshold
            max_documents: Global maximum number of documents returned

        Returns:
            Documents sorted by similarity descending; empty when nothing
            clears the threshold.
        """
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")

        k = k if k is not None else self.settings.retrieval_top_k
        min_similarity = (
            self.settings.retrieval_min_similarity
            if min_similarity is None
            else min_similarity
        )
        max_documents = (
            self.settings.retrieval_max_documents
            if max_documents is None
            else max_documents
        )
        targets = self._resolve_collections(
            collections if collections is not None else self.settings.retrieval_collections
        )
        if not targets or k <= 0 or max_documents <= 0:
            return []

        query_vector = await self.gateway.embed(query, input_type="query")

        per_collection = await asyncio.gather(
            *(self.index.search(name, query_vector, k) for name in targets)
        )
        candidates = [
            RetrievedDocument(document=document, similarity=similarity)
            for hits in per_collection
            for document, similarity in hits
        ]

        results = self.merge(candidates, min_similarity, max_documents)
        logger.info(
            f"Retrieved {len(results)}/{len(candidates)} candidates from "
            f"{len(targets)} collections (threshold={min_similarity})"
        )
        return results
