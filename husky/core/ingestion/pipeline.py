"""
Ingestion Pipeline: mirrors directory entities into versioned vector documents.

Per collection:
  1. Enumerate the source and the content hashes already indexed
  2. Skip entities whose content hash is unchanged (no embedding, no upsert)
  3. Embed changed or new entities in batches with bounded parallelism,
     then upsert them
  4. Tombstone-delete documents whose source entity disappeared

A failing entity is recorded in the run report and never aborts the run.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from husky.core.config import Settings, get_settings
from husky.core.errors import (
    PartialIngestionFailure,
    PermanentProviderError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from husky.core.ingestion.directory_source import (
    DirectoryEntity,
    DirectorySource,
    compute_content_hash,
    render_entity,
)
from husky.core.llm.client import LLMGateway
from husky.core.models import (
    DirectoryDocument,
    IngestionReport,
    SourceType,
    document_id,
    utcnow,
)
from husky.core.retrieval.vector_engine import IndexedHash, VectorIndex

logger = logging.getLogger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"

_EntityOutcome = Union[str, PartialIngestionFailure]


@dataclass
class _PendingDocument:
    """An entity whose content changed and now needs an embedding."""

    entity: DirectoryEntity
    doc_id: str
    content_hash: str
    text: str
    metadata: Dict[str, Any]
    version: int


class IngestionPipeline:
    def __init__(
        self,
        source: DirectorySource,
        gateway: LLMGateway,
        index: VectorIndex,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.source = source
        self.gateway = gateway
        self.index = index
        self._semaphore = asyncio.Semaphore(self.settings.ingestion_concurrency)
        self._run_lock = asyncio.Lock()
        self.last_report: Optional[IngestionReport] = None

    # ── Runs ─────────────────────────────────────────────────────────

    async def run(
        self, source_types: Optional[Iterable[SourceType]] = None
    ) -> IngestionReport:
        """Run one full ingestion pass. Overlapping triggers run one after another."""
        targets = [SourceType(t) for t in (source_types or list(SourceType))]
        async with self._run_lock:
            report = IngestionReport()
            for source_type in targets:
                report.merge(await self._sync_collection(source_type))
            report.finished_at = utcnow()
            self.last_report = report
        logger.info(
            f"Ingestion run finished: processed={report.processed} "
            f"skipped={report.skipped} failed={report.failed} deleted={report.deleted}"
        )
        return report

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """Scheduled ingestion loop; cancel the task to stop it."""
        interval = interval_seconds or self.settings.ingestion_interval_seconds
        logger.info(f"Ingestion scheduler started (every {interval:.0f}s)")
        while True:
            try:
                await self.run()
            except Exception as e:
                # The schedule outlives any single broken run.
                logger.exception(f"Scheduled ingestion run failed: {e}")
            await asyncio.sleep(interval)

    # ── Change events ────────────────────────────────────────────────

    async def ingest_entity(self, entity: DirectoryEntity) -> IngestionReport:
        """Sync a single entity after a change event."""
        existing = await self.index.get_hashes(SourceType(entity.source_type).value)
        report = IngestionReport()
        self._tally(report, await self._ingest_entities([entity], existing))
        report.finished_at = utcnow()
        return report

    async def remove_entity(self, source_type: SourceType, source_id: str) -> bool:
        """Tombstone a single entity after a delete event."""
        deleted = await self.index.delete_entity(source_type, source_id)
        if deleted:
            logger.info(f"Tombstoned {document_id(source_type, source_id)}")
        return deleted

    # ── Internals ────────────────────────────────────────────────────

    async def _sync_collection(self, source_type: SourceType) -> IngestionReport:
        report = IngestionReport()
        try:
            entities = await self.source.list_entities(source_type)
            existing = await self.index.get_hashes(source_type.value)
        except Exception as e:
            # Never tombstone a collection whose enumeration failed.
            logger.error(f"Could not enumerate '{source_type.value}': {e}")
            report.failed += 1
            report.failures.append(PartialIngestionFailure(f"{source_type.value}:*", str(e)))
            return report

        by_id: Dict[str, DirectoryEntity] = {}
        unreadable: List[DirectoryEntity] = []
        for entity in entities:
            if entity.error and not entity.source_id:
                unreadable.append(entity)
            else:
                by_id[entity.source_id] = entity

        self._tally(
            report, await self._ingest_entities(unreadable + list(by_id.values()), existing)
        )

        for source_id in set(existing) - set(by_id):
            try:
                if await self.index.delete_entity(source_type, source_id):
                    report.deleted += 1
            except PersistenceError as e:
                doc_id = document_id(source_type, source_id)
                logger.warning(f"Tombstone failed for {doc_id}: {e}")
                report.failed += 1
                report.failures.append(PartialIngestionFailure(doc_id, str(e)))

        logger.info(
            f"Collection '{source_type.value}': {len(by_id)} entities, "
            f"{report.processed} embedded, {report.skipped} unchanged, "
            f"{report.deleted} deleted, {report.failed} failed"
        )
        return report

    async def _ingest_entities(
        self, entities: List[DirectoryEntity], existing: Dict[str, IndexedHash]
    ) -> List[_EntityOutcome]:
        outcomes: List[_EntityOutcome] = []
        pending: List[_PendingDocument] = []
        for entity in entities:
            planned = await self._plan(entity, existing.get(entity.source_id))
            if isinstance(planned, _PendingDocument):
                pending.append(planned)
            else:
                outcomes.append(planned)

        size = max(1, self.settings.embedding_batch_size)
        batches = [pending[i : i + size] for i in range(0, len(pending), size)]
        for batch_outcomes in await asyncio.gather(*(self._embed_batch(b) for b in batches)):
            outcomes.extend(batch_outcomes)
        return outcomes

    async def _plan(
        self, entity: DirectoryEntity, existing: Optional[IndexedHash]
    ) -> Union[_EntityOutcome, _PendingDocument]:
        doc_id = document_id(entity.source_type, entity.source_id)
        if entity.error:
            logger.warning(f"Skipping unreadable source row {doc_id}: {entity.error}")
            return PartialIngestionFailure(doc_id, entity.error)

        content_hash = compute_content_hash(entity)
        text, metadata = render_entity(entity)
        if existing and existing.content_hash == content_hash:
            if metadata.get("updated_at") != existing.updated_at:
                # Same content, newer timestamp: refresh freshness without re-embedding.
                try:
                    await self.index.refresh_metadata(doc_id, metadata)
                except PersistenceError as e:
                    logger.warning(f"Metadata refresh failed for {doc_id}: {e}")
                    return PartialIngestionFailure(doc_id, str(e))
            return SKIPPED

        if not entity.source_id or not text:
            return PartialIngestionFailure(doc_id, "entity has no retrievable content")
        return _PendingDocument(
            entity=entity,
            doc_id=doc_id,
            content_hash=content_hash,
            text=text,
            metadata=metadata,
            version=existing.version + 1 if existing else 1,
        )

    async def _embed_batch(self, batch: List[_PendingDocument]) -> List[_EntityOutcome]:
        async with self._semaphore:
            try:
                vectors = await self.gateway.embed_many(
                    [p.text for p in batch], input_type="passage"
                )
            except PermanentProviderError as e:
                if len(batch) == 1:
                    return [self._failed(batch[0], e)]
                logger.warning(
                    f"Batch of {len(batch)} rejected ({e}); embedding one at a time"
                )
                vectors = None
            except ProviderError as e:
                return [self._failed(p, e) for p in batch]

            if vectors is not None:
                if len(vectors) != len(batch):
                    reason = f"provider returned {len(vectors)} vectors for {len(batch)} texts"
                    return [self._failed(p, reason) for p in batch]
                return [await self._store(p, v) for p, v in zip(batch, vectors)]

        # One bad input must not fail its neighbours.
        outcomes: List[_EntityOutcome] = []
        for pending in batch:
            outcomes.extend(await self._embed_batch([pending]))
        return outcomes

    async def _store(self, pending: _PendingDocument, vector: List[float]) -> _EntityOutcome:
        try:
            await self.index.upsert(
                DirectoryDocument(
                    source_type=SourceType(pending.entity.source_type),
                    source_id=pending.entity.source_id,
                    content_hash=pending.content_hash,
                    text=pending.text,
                    embedding=vector,
                    metadata=pending.metadata,
                    version=pending.version,
                )
            )
        except (ValidationError, PersistenceError) as e:
            return self._failed(pending, e)
        return PROCESSED

    @staticmethod
    def _failed(pending: _PendingDocument, error: Any) -> PartialIngestionFailure:
        logger.warning(f"Ingestion failed for {pending.doc_id}: {error}")
        return PartialIngestionFailure(pending.doc_id, str(error))

    @staticmethod
    def _tally(report: IngestionReport, outcomes: List[_EntityOutcome]) -> None:
        for outcome in outcomes:
            if outcome == PROCESSED:
                report.processed += 1
            elif outcome == SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1
                report.failures.append(outcome)
