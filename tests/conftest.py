"""Shared pytest fixtures."""

import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from husky.core.config import Settings
from husky.core.llm.client import LLMGateway
from husky.core.memory.cache import InMemoryCacheClient, SummaryCache
from husky.core.memory.manager import ChatSessionManager
from husky.core.memory.store import SQLiteStore
from husky.core.models import DirectoryDocument, SourceType
from husky.core.orchestrator import ResponseOrchestrator
from husky.core.retrieval.retriever import RetrievalEngine
from husky.core.retrieval.vector_engine import FaissEngine, VectorIndex

DIMENSION = 4

# Keyword → embedding used by the fake provider. Texts without a keyword get
# OTHER_VECTOR, which is orthogonal to all of these.
KEYWORD_VECTORS = {
    "climate": [1.0, 0.0, 0.0, 0.0],
    "biotech": [0.0, 1.0, 0.0, 0.0],
    "music": [0.0, 0.0, 1.0, 0.0],
}
OTHER_VECTOR = [0.0, 0.0, 0.0, 1.0]


class FakeProvider:
    """In-process LLMProvider with scripted answers and injectable failures."""

    name = "fake"

    def __init__(self):
        self.vectors: Dict[str, List[float]] = {}
        self.embed_calls: List[List[str]] = []
        self.embed_errors: List[BaseException] = []
        self.answer = "Here is what I found."
        self.answers: List[str] = []
        self.complete_errors: List[BaseException] = []
        self.complete_delay = 0.0
        self.chat_calls: List[List[Dict[str, str]]] = []
        self.summary_calls: List[List[Dict[str, str]]] = []
        self.summary_delay = 0.0
        self.summary_error: Optional[BaseException] = None
        self.stream_chunks = ["Here ", "is ", "what ", "I ", "found."]
        self.stream_delay = 0.0
        self.streams_closed = 0

    def vector_for(self, text: str) -> List[float]:
        if text in self.vectors:
            return self.vectors[text]
        lowered = text.lower()
        for keyword, vector in KEYWORD_VECTORS.items():
            if keyword in lowered:
                return vector
        return OTHER_VECTOR

    async def embed(self, texts: List[str], input_type: str) -> List[List[float]]:
        self.embed_calls.append(list(texts))
        if self.embed_errors:
            raise self.embed_errors.pop(0)
        return [self.vector_for(t) for t in texts]

    @staticmethod
    def is_summary_request(messages: List[Dict[str, str]]) -> bool:
        return "running summary" in messages[0]["content"]

    async def complete(self, messages, temperature: float, max_tokens: int) -> str:
        if self.is_summary_request(messages):
            self.summary_calls.append(messages)
            if self.summary_delay:
                await asyncio.sleep(self.summary_delay)
            if self.summary_error is not None:
                raise self.summary_error
            return f"Summary #{len(self.summary_calls)}"

        self.chat_calls.append(messages)
        if self.complete_delay:
            await asyncio.sleep(self.complete_delay)
        if self.complete_errors:
            raise self.complete_errors.pop(0)
        if self.answers:
            return self.answers.pop(0)
        return self.answer

    async def open_stream(self, messages, temperature: float, max_tokens: int):
        self.chat_calls.append(messages)
        if self.complete_errors:
            raise self.complete_errors.pop(0)
        return self._chunks()

    async def _chunks(self):
        try:
            for chunk in self.stream_chunks:
                if self.stream_delay:
                    await asyncio.sleep(self.stream_delay)
                yield chunk
        finally:
            self.streams_closed += 1


@pytest.fixture
def make_settings(tmp_path) -> Callable[..., Settings]:
    """Settings rooted in tmp_path with a 4-dimensional embedding space."""

    def _make(**overrides) -> Settings:
        values = {
            "DATA_DIR": str(tmp_path),
            "SQLITE_DB_PATH": str(tmp_path / "husky.db"),
            "VECTOR_DB_PATH": str(tmp_path / "vectors.db"),
            "DIRECTORY_EXPORT_PATH": str(tmp_path / "directory.json"),
            "LLM_PROVIDER": "openrouter",
            "OPENROUTER_API_KEY": "test-key",
            "OPENROUTER_EMBEDDING_DIMENSION": DIMENSION,
            "LLM_TIMEOUT_SECONDS": 1.0,
            "LLM_RETRY_MIN_WAIT": 0,
            "LLM_RETRY_MAX_WAIT": 0,
            "API_REQUESTS_PER_MINUTE": 0,
            "INGESTION_INTERVAL_SECONDS": 0,
            "RETRIEVAL_MIN_SIMILARITY": 0.5,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def gateway(provider, settings) -> LLMGateway:
    return LLMGateway(provider, settings)


@pytest.fixture
def engine(settings) -> FaissEngine:
    return FaissEngine(settings=settings)


@pytest.fixture
def index(engine) -> VectorIndex:
    return VectorIndex(engine)


@pytest.fixture
def store(settings) -> SQLiteStore:
    return SQLiteStore(settings=settings)


@pytest.fixture
def cache_client() -> InMemoryCacheClient:
    return InMemoryCacheClient()


@pytest.fixture
def cache(store, cache_client, settings) -> SummaryCache:
    return SummaryCache(store, cache_client, settings)


@pytest.fixture
def sessions(cache, gateway, settings) -> ChatSessionManager:
    return ChatSessionManager(cache, gateway, settings)


@pytest.fixture
def retrieval(gateway, index, settings) -> RetrievalEngine:
    return RetrievalEngine(gateway, index, settings)


@pytest.fixture
def orchestrator(sessions, retrieval, gateway, settings) -> ResponseOrchestrator:
    return ResponseOrchestrator(sessions, retrieval, gateway, settings=settings)


def make_document(
    source_type: SourceType,
    source_id: str,
    vector: List[float],
    name: Optional[str] = None,
    updated_at: Optional[str] = None,
    text: Optional[str] = None,
) -> DirectoryDocument:
    metadata = {"name": name or source_id}
    if updated_at:
        metadata["updated_at"] = updated_at
    return DirectoryDocument(
        source_type=source_type,
        source_id=source_id,
        content_hash=f"hash-{source_id}",
        text=text or f"Name: {name or source_id}",
        embedding=vector,
        metadata=metadata,
    )


def build_stack(settings: Settings, provider: FakeProvider):
    """Session manager and orchestrator wired for non-default settings."""
    gateway = LLMGateway(provider, settings)
    sessions = ChatSessionManager(
        SummaryCache(SQLiteStore(settings=settings), settings=settings), gateway, settings
    )
    index = VectorIndex(FaissEngine(settings=settings))
    orchestrator = ResponseOrchestrator(
        sessions, RetrievalEngine(gateway, index, settings), gateway, settings=settings
    )
    return sessions, orchestrator


def feedback_count(store: SQLiteStore, message_id: str) -> int:
    with store._connection() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM feedback WHERE message_id=?", (message_id,)
        ).fetchone()[0]
