"""
Tests for the Retrieval Engine

Tests multi-collection search, thresholding, ranking and deduplication.
"""

import math

import pytest

from conftest import make_document
from husky.core.errors import ValidationError
from husky.core.models import RetrievedDocument, SourceType
from husky.core.retrieval.retriever import RetrievalEngine

CLIMATE_QUERY = "Who is working on climate tech?"


def at_similarity(similarity: float):
    """Vector whose cosine similarity to the climate axis is ``similarity``."""
    return [similarity, math.sqrt(1.0 - similarity * similarity), 0.0, 0.0]


class TestRetrievalEngine:
    @pytest.mark.asyncio
    async def test_climate_tech_scenario(self, retrieval, index, provider):
        for source_type, values in {
            SourceType.MEMBER: [0.97, 0.91, 0.83, 0.60],
            SourceType.TEAM: [0.95, 0.88, 0.79, 0.40],
            SourceType.PROJECT: [0.93, 0.86, 0.77, 0.20],
        }.items():
            for i, value in enumerate(values):
                await index.upsert(
                    make_document(source_type, f"{source_type.value}-{i}", at_similarity(value))
                )

        results = await retrieval.retrieve(
            CLIMATE_QUERY,
            collections=["member", "team", "project"],
            k=5,
            min_similarity=0.75,
            max_documents=8,
        )

        # 9 candidates clear the threshold; the global cap keeps the best 8
        assert len(results) == 8
        assert all(r.similarity >= 0.75 for r in results)
        similarities = [r.similarity for r in results]
        assert similarities == sorted(similarities, reverse=True)
        assert len({r.id for r in results}) == len(results)
        assert results[0].id == "member:member-0"
        assert "project:project-2" not in {r.id for r in results}
        assert provider.embed_calls == [[CLIMATE_QUERY]]

    @pytest.mark.asyncio
    async def test_nothing_above_threshold(self, retrieval, index):
        await index.upsert(make_document(SourceType.MEMBER, "m1", at_similarity(0.3)))

        results = await retrieval.retrieve(CLIMATE_QUERY, min_similarity=0.75)

        assert results == []

    @pytest.mark.asyncio
    async def test_defaults_come_from_settings(self, make_settings, gateway, index):
        settings = make_settings(RETRIEVAL_COLLECTIONS=["team"], RETRIEVAL_MAX_DOCUMENTS=1)
        engine = RetrievalEngine(gateway, index, settings)
        await index.upsert(make_document(SourceType.MEMBER, "m1", at_similarity(0.99)))
        await index.upsert(make_document(SourceType.TEAM, "t1", at_similarity(0.9)))
        await index.upsert(make_document(SourceType.TEAM, "t2", at_similarity(0.8)))

        results = await engine.retrieve(CLIMATE_QUERY)

        assert [r.id for r in results] == ["team:t1"]

    @pytest.mark.asyncio
    async def test_empty_query_is_rejected(self, retrieval):
        with pytest.raises(ValidationError):
            await retrieval.retrieve("   ")

    @pytest.mark.asyncio
    async def test_unknown_collection_is_rejected(self, retrieval):
        with pytest.raises(ValidationError):
            await retrieval.retrieve(CLIMATE_QUERY, collections=["planets"])

    @pytest.mark.asyncio
    async def test_zero_max_documents_skips_search(self, retrieval, provider):
        assert await retrieval.retrieve(CLIMATE_QUERY, max_documents=0) == []
        assert provider.embed_calls == []


class TestMerge:
    def _candidate(self, source_id, similarity, updated_at=None):
        return RetrievedDocument(
            document=make_document(
                SourceType.MEMBER, source_id, [1.0, 0.0, 0.0, 0.0], updated_at=updated_at
            ),
            similarity=similarity,
        )

    def test_deduplicates_keeping_best_score(self):
        merged = RetrievalEngine.merge(
            [self._candidate("a", 0.8), self._candidate("a", 0.9), self._candidate("b", 0.85)],
            min_similarity=0.5,
            max_documents=10,
        )

        assert [(r.id, r.similarity) for r in merged] == [
            ("member:a", 0.9),
            ("member:b", 0.85),
        ]

    def test_ties_prefer_most_recently_updated(self):
        merged = RetrievalEngine.merge(
            [
                self._candidate("old", 0.8, updated_at="2024-01-01T00:00:00+00:00"),
                self._candidate("new", 0.8, updated_at="2025-06-01T00:00:00+00:00"),
            ],
            min_similarity=0.5,
            max_documents=10,
        )

        assert [r.id for r in merged] == ["member:new", "member:old"]

    def test_threshold_is_inclusive(self):
        merged = RetrievalEngine.merge(
            [self._candidate("a", 0.75), self._candidate("b", 0.74)],
            min_similarity=0.75,
            max_documents=10,
        )

        assert [r.id for r in merged] == ["member:a"]
