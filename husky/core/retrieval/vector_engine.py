"""
FAISS Vector Engine with SQLite sidecar.
Uses IndexFlatIP (inner product) on L2-normalized vectors for cosine similarity.

One FAISS index per collection (directory source type). The sidecar is the
durable copy of every document including its vector; FAISS indexes are
rebuilt from it at start-up, so a crash never leaves them out of sync.
"""

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

import faiss
import numpy as np

from husky.core.config import Settings, get_settings
from husky.core.errors import PersistenceError, ValidationError
from husky.core.models import DirectoryDocument, SourceType, document_id

logger = logging.getLogger(__name__)

_COLUMNS = "pk, source_type, source_id, content_hash, text, metadata, version, updated_at"


class IndexedHash(NamedTuple):
    """What ingestion needs to know about an already indexed entity."""

    content_hash: str
    version: int
    updated_at: Optional[str]


class FaissCollection:
    """In-memory FAISS index for one collection, guarded by its own lock."""

    def __init__(self, name: str, dimension: int):
        self.name = name
        self.dimension = dimension
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))
        self.lock = threading.RLock()

    def replace(self, rowid: int, vector: np.ndarray) -> None:
        ids = np.array([rowid], dtype=np.int64)
        with self.lock:
            self.index.remove_ids(ids)
            self.index.add_with_ids(vector, ids)

    def remove(self, rowid: int) -> None:
        with self.lock:
            self.index.remove_ids(np.array([rowid], dtype=np.int64))

    def search(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        with self.lock:
            actual_k = min(k, self.index.ntotal)
            if actual_k == 0:
                return []
            similarities, indices = self.index.search(query, actual_k)
        return [
            (int(idx), float(sim))
            for idx, sim in zip(indices[0], similarities[0])
            if idx != -1
        ]

    @property
    def ntotal(self) -> int:
        with self.lock:
            return self.index.ntotal


class FaissEngine:
    """
    Per-collection FAISS indexes (IndexIDMap2 over IndexFlatIP) paired with a
    SQLite sidecar for document text, metadata, content hashes and vectors.

    Writes take ``_write_lock`` so the sidecar row and the FAISS entry change
    together; searches only take the collection lock.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.db_path = db_path or self.settings.vector_db_path
        self._write_lock = threading.Lock()
        self._init_sqlite()
        self.collections: Dict[str, FaissCollection] = {
            source_type.value: FaissCollection(
                source_type.value, self.settings.dimension_for(source_type.value)
            )
            for source_type in SourceType
        }
        self._load_collections()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_sqlite(self):
        """Initialize SQLite database for documents."""
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    pk INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    source_type TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    text TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_source_type "
                "ON documents(source_type)"
            )
            conn.commit()
        finally:
            conn.close()

    def _load_collections(self):
        """Rebuild FAISS indexes from the sidecar, dropping stale-dimension rows."""
        conn = self._connect()
        try:
            for name, collection in self.collections.items():
                rows = conn.execute(
                    "SELECT pk, embedding FROM documents WHERE source_type=?",
                    (name,),
                ).fetchall()
                ids, vectors, stale = [], [], []
                for rowid, blob in rows:
                    vector = np.frombuffer(blob, dtype="float32")
                    if vector.shape[0] != collection.dimension:
                        stale.append(rowid)
                        continue
                    ids.append(rowid)
                    vectors.append(vector)
                if stale:
                    logger.warning(
                        f"Collection '{name}': dropping {len(stale)} documents with "
                        f"dimension != {collection.dimension}; they will be re-embedded"
                    )
                    conn.executemany(
                        "DELETE FROM documents WHERE pk=?", [(r,) for r in stale]
                    )
                if ids:
                    matrix = self._normalize(np.vstack(vectors).astype("float32"))
                    collection.index.add_with_ids(matrix, np.array(ids, dtype=np.int64))
                logger.info(f"Collection '{name}': loaded {len(ids)} vectors")
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _normalize(vectors: np.ndarray) -> np.ndarray:
        """L2-normalize vectors so inner product == cosine similarity."""
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms = np.where(norms == 0, 1, norms)
        return vectors / norms

    def _collection(self, source_type: str) -> FaissCollection:
        try:
            return self.collections[SourceType(source_type).value]
        except ValueError:
            raise ValidationError(f"Unknown collection: {source_type}") from None

    def _as_query(self, collection: FaissCollection, vector: List[float]) -> np.ndarray:
        array = np.array([vector], dtype="float32")
        if array.shape[1] != collection.dimension:
            raise ValidationError(
                f"Vector dimension {array.shape[1]} does not match collection "
                f"'{collection.name}' dimension {collection.dimension}"
            )
        return self._normalize(array)

    @staticmethod
    def _row_to_document(row: tuple) -> DirectoryDocument:
        return DirectoryDocument(
            source_type=SourceType(row[1]),
            source_id=row[2],
            content_hash=row[3],
            text=row[4],
            metadata=json.loads(row[5]),
            version=row[6],
            updated_at=datetime.fromisoformat(row[7]),
        )

    # ── Writes ───────────────────────────────────────────────────────

    def upsert(self, document: DirectoryDocument) -> DirectoryDocument:
        """Insert or replace the document keyed by (source_type, source_id)."""
        collection = self._collection(document.source_type)
        vector = self._as_query(collection, document.embedding)
        updated_at = document.updated_at or datetime.now(timezone.utc)
        blob = np.asarray(document.embedding, dtype="float32").tobytes()

        with self._write_lock:
            try:
                conn = self._connect()
                try:
                    conn.execute(
                        """
                        INSERT INTO documents (id, source_type, source_id, content_hash,
                            text, metadata, embedding, version, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            content_hash=excluded.content_hash,
                            text=excluded.text,
                            metadata=excluded.metadata,
                            embedding=excluded.embedding,
                            version=excluded.version,
                            updated_at=excluded.updated_at
                        """,
                        (
                            document.id,
                            document.source_type.value,
                            document.source_id,
                            document.content_hash,
                            document.text,
                            json.dumps(document.metadata),
                            blob,
                            document.version,
                            updated_at.isoformat(),
                        ),
                    )
                    rowid = conn.execute(
                        "SELECT pk FROM documents WHERE id=?", (document.id,)
                    ).fetchone()[0]
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise PersistenceError(f"Vector upsert failed for {document.id}: {e}") from e
            collection.replace(rowid, vector)

        document.updated_at = updated_at
        return document

    def delete(self, doc_id: str) -> bool:
        """Tombstone-delete a document. Returns False if it was not indexed."""
        with self._write_lock:
            try:
                conn = self._connect()
                try:
                    row = conn.execute(
                        "SELECT pk, source_type FROM documents WHERE id=?", (doc_id,)
                    ).fetchone()
                    if not row:
                        return False
                    conn.execute("DELETE FROM documents WHERE pk=?", (row[0],))
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise PersistenceError(f"Vector delete failed for {doc_id}: {e}") from e
            self._collection(row[1]).remove(row[0])
        return True

    # ── Reads ────────────────────────────────────────────────────────

    def search(
        self, source_type: str, query_vector: List[float], k: int = 5
    ) -> List[Tuple[DirectoryDocument, float]]:
        """
        Search one collection for nearest neighbors using cosine similarity.

        Returns:
            List of (document, similarity) sorted by similarity descending.
            Documents are returned without their vectors.
        """
        collection = self._collection(source_type)
        hits = collection.search(self._as_query(collection, query_vector), k)
        if not hits:
            return []

        rowids = [rowid for rowid, _ in hits]
        try:
            conn = self._connect()
            try:
                placeholders = ",".join("?" for _ in rowids)
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM documents WHERE pk IN ({placeholders})",
                    rowids,
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Vector lookup failed: {e}") from e

        rows_by_id = {row[0]: row for row in rows}
        # Rows deleted since the FAISS search are simply skipped.
        return [
            (self._row_to_document(rows_by_id[rowid]), similarity)
            for rowid, similarity in hits
            if rowid in rows_by_id
        ]

    def get(self, doc_id: str) -> Optional[DirectoryDocument]:
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {_COLUMNS}, embedding FROM documents WHERE id=?", (doc_id,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        document = self._row_to_document(row)
        document.embedding = np.frombuffer(row[8], dtype="float32").tolist()
        return document

    def get_hashes(self, source_type: str) -> Dict[str, IndexedHash]:
        """Map source_id → (content_hash, version, source updated_at) for one collection."""
        self._collection(source_type)
        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT source_id, content_hash, version, metadata FROM documents "
                    "WHERE source_type=?",
                    (SourceType(source_type).value,),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Hash lookup failed: {e}") from e
        return {
            row[0]: IndexedHash(row[1], row[2], json.loads(row[3]).get("updated_at"))
            for row in rows
        }

    def refresh_metadata(self, doc_id: str, metadata: Dict) -> bool:
        """Replace a document's metadata in place; text, vector and version are kept."""
        with self._write_lock:
            try:
                conn = self._connect()
                try:
                    cursor = conn.execute(
                        "UPDATE documents SET metadata=? WHERE id=?",
                        (json.dumps(metadata), doc_id),
                    )
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise PersistenceError(f"Metadata refresh failed for {doc_id}: {e}") from e
        return cursor.rowcount > 0

    def count(self, source_type: Optional[str] = None) -> int:
        if source_type is not None:
            return self._collection(source_type).ntotal
        return sum(c.ntotal for c in self.collections.values())


class VectorIndex:
    """Async facade over FaissEngine; blocking work runs in worker threads."""

    def __init__(self, engine: Optional[FaissEngine] = None):
        self.engine = engine or FaissEngine()

    async def upsert(self, document: DirectoryDocument) -> DirectoryDocument:
        return await asyncio.to_thread(self.engine.upsert, document)

    async def delete(self, doc_id: str) -> bool:
        return await asyncio.to_thread(self.engine.delete, doc_id)

    async def delete_entity(self, source_type: SourceType, source_id: str) -> bool:
        return await self.delete(document_id(source_type, source_id))

    async def search(
        self, source_type: str, query_vector: List[float], k: int
    ) -> List[Tuple[DirectoryDocument, float]]:
        return await asyncio.to_thread(self.engine.search, source_type, query_vector, k)

    async def get_hashes(self, source_type: str) -> Dict[str, IndexedHash]:
        return await asyncio.to_thread(self.engine.get_hashes, source_type)

    async def refresh_metadata(self, doc_id: str, metadata: Dict) -> bool:
        return await asyncio.to_thread(self.engine.refresh_metadata, doc_id, metadata)

    def count(self, source_type: Optional[str] = None) -> int:
        return self.engine.count(source_type)
