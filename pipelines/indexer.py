"""Indexing pipeline for DocSage.

Turns pending documents into chunks, embeds pending chunks into the vector
index and audits the two stores against each other.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from indexer.document_store import DocumentStore
from indexer.embeddings import EmbeddingClient
from indexer.vector_store import VectorIndex
from observability.logging import log_performance
from observability.metrics import chunks_created, documents_ingested, embeddings_total
from services.shared.models import (
    Chunk,
    DocumentStatus,
    EmbeddingStatus,
    vector_id_for,
)
from services.shared.results import BatchResult, IngestResult, ReconciliationReport
from .chunker import RecursiveChunker

logger = logging.getLogger(__name__)

# Chunk text kept in vector metadata for display without a store round trip
VECTOR_TEXT_LIMIT = 500


def _cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


class Indexer:
    """Segments documents and keeps the vector index in step with the store."""

    def __init__(self,
                 store: DocumentStore,
                 embedder: EmbeddingClient,
                 vector_index: VectorIndex,
                 chunker: Optional[RecursiveChunker] = None,
                 batch_size: int = 5,
                 batch_delay: float = 1.0):
        """Initialize indexer.

        Args:
            store: Document store
            embedder: Embedding client for chunk text
            vector_index: Destination for chunk vectors
            chunker: Segmenter; defaults to 1000/200 characters
            batch_size: Embedding calls issued concurrently per sub-batch
            batch_delay: Seconds to pause between sub-batches
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.embedder = embedder
        self.vector_index = vector_index
        self.chunker = chunker or RecursiveChunker()
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    async def ingest_document(self, document_id: int) -> IngestResult:
        """Segment one document and persist its chunks.

        A document that is already processed is left alone. On failure the
        document is marked failed and no chunks are kept.

        Raises:
            NotFoundError: If the document does not exist
        """
        document = await self.store.get_document(document_id)
        if document.status == DocumentStatus.PROCESSED.value:
            logger.debug(f"Document {document_id} already processed, skipping")
            documents_ingested.labels(outcome="skipped").inc()
            return IngestResult(document_id=document_id, chunk_count=0, skipped=True)

        try:
            segments = self.chunker.split(document.cleaned_content or "")
            total = len(segments)
            payload = [
                {
                    "text": segment.text,
                    "index": segment.index,
                    "metadata": {
                        "source_url": document.url,
                        "source_title": document.title,
                        "chunk_index": segment.index,
                        "total_chunks": total,
                        "document_id": document.id,
                        "start_offset": segment.start
                    }
                }
                for segment in segments
            ]
            await self.store.create_chunks(document_id, payload)
        except Exception as e:
            logger.error(f"Failed to segment document {document_id}: {e}")
            documents_ingested.labels(outcome="failure").inc()
            await self.store.mark_document_failed(document_id, str(e))
            raise

        if total == 0:
            logger.warning(f"Document {document_id} ({document.url}) has no text; stored without chunks")
        documents_ingested.labels(outcome="success").inc()
        chunks_created.inc(total)
        logger.info(f"Created {total} chunks for document {document_id}: {document.title}")
        return IngestResult(document_id=document_id, chunk_count=total)

    @log_performance(threshold_ms=60000)
    async def ingest_pending(self, cancel_event: Optional[asyncio.Event] = None) -> BatchResult:
        """Segment every pending document in scrape order."""
        result = BatchResult()
        documents = await self.store.find_documents(status=DocumentStatus.PENDING)
        logger.info(f"Found {len(documents)} pending documents to segment")

        for document in documents:
            if _cancelled(cancel_event):
                logger.info("Segmentation cancelled")
                result.cancelled = True
                break
            try:
                outcome = await self.ingest_document(document.id)
            except Exception as e:
                result.record_failure(document.id, e)
                continue
            if outcome.skipped:
                result.skipped.append(outcome)
            else:
                result.successful.append(outcome)

        logger.info(
            f"Segmentation finished: {result.success_count} processed, "
            f"{result.failure_count} failed, {len(result.skipped)} skipped"
        )
        return result

    @log_performance(threshold_ms=60000)
    async def embed_pending(self, limit: int = 100,
                            cancel_event: Optional[asyncio.Event] = None) -> BatchResult:
        """Embed up to ``limit`` pending chunks, oldest first.

        Chunks are embedded in sub-batches of ``batch_size`` concurrent
        calls. A failing chunk is marked failed and the run continues.
        """
        result = BatchResult()
        chunks = await self.store.get_pending_chunks(limit)
        logger.info(f"Found {len(chunks)} pending chunks to embed")

        for start in range(0, len(chunks), self.batch_size):
            if _cancelled(cancel_event):
                logger.info("Embedding cancelled")
                result.cancelled = True
                break

            batch = chunks[start:start + self.batch_size]
            outcomes = await asyncio.gather(*(self._embed_chunk(chunk) for chunk in batch))
            for chunk, error in zip(batch, outcomes):
                if error is None:
                    result.successful.append(chunk.id)
                else:
                    result.record_failure(chunk.id, error)

            logger.info(f"Embedded {min(start + self.batch_size, len(chunks))}/{len(chunks)} chunks")
            if start + self.batch_size < len(chunks) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        logger.info(
            f"Embedding finished: {result.success_count} embedded, {result.failure_count} failed"
        )
        return result

    def _vector_metadata(self, chunk: Chunk) -> Dict[str, Any]:
        document = chunk.document
        return {
            "chunk_id": chunk.id,
            "document_id": chunk.document_id,
            "chunk_index": chunk.chunk_index,
            "title": document.title if document is not None else None,
            "url": document.url if document is not None else None,
            "text": chunk.text[:VECTOR_TEXT_LIMIT]
        }

    async def _embed_chunk(self, chunk: Chunk) -> Optional[Exception]:
        """Embed and index one chunk; returns the error instead of raising."""
        vector_id = vector_id_for(chunk.id)
        try:
            vector = await self.embedder.embed(chunk.text)
            await self.vector_index.upsert(vector_id, vector, self._vector_metadata(chunk))
        except Exception as e:
            logger.warning(f"Failed to embed chunk {chunk.id}: {e}")
            embeddings_total.labels(outcome="failure").inc()
            await self._mark_failed(chunk.id, e)
            return e

        try:
            await self.store.mark_chunk_embedded(chunk.id, vector_id)
        except Exception as e:
            logger.error(f"Embedded chunk {chunk.id} but could not record it: {e}")
            embeddings_total.labels(outcome="failure").inc()
            try:
                await self.vector_index.delete([vector_id])
            except Exception as delete_error:
                logger.error(f"Could not remove vector {vector_id}; run reconcile: {delete_error}")
            await self._mark_failed(chunk.id, e)
            return e

        embeddings_total.labels(outcome="success").inc()
        return None

    async def _mark_failed(self, chunk_id: int, error: Exception) -> None:
        try:
            await self.store.mark_chunk_failed(chunk_id, str(error))
        except Exception as e:
            logger.error(f"Could not mark chunk {chunk_id} failed: {e}")

    async def reconcile(self, repair: bool = False) -> ReconciliationReport:
        """Compare chunk embedding status with the vector index.

        Reports embedded chunks without a vector and vectors without an
        embedded chunk. With ``repair`` the former go back to pending and the
        latter are deleted.
        """
        embedded = await self.store.list_chunks_by_status(EmbeddingStatus.EMBEDDED)
        vector_ids = set(await self.vector_index.list_ids())

        expected = {vector_id_for(chunk.id): chunk.id for chunk in embedded}
        report = ReconciliationReport(
            missing_vectors=sorted(chunk_id for vid, chunk_id in expected.items() if vid not in vector_ids),
            orphan_vectors=sorted(vid for vid in vector_ids if vid not in expected)
        )

        if report.consistent:
            logger.info(f"Reconciliation found {len(expected)} embedded chunks, all consistent")
            return report

        logger.warning(
            f"Reconciliation found {len(report.missing_vectors)} chunks missing vectors "
            f"and {len(report.orphan_vectors)} orphan vectors"
        )
        if repair:
            if report.missing_vectors:
                await self.store.reset_chunks(EmbeddingStatus.EMBEDDED, report.missing_vectors)
            if report.orphan_vectors:
                await self.vector_index.delete(report.orphan_vectors)
            report.repaired = True
            logger.info("Reconciliation repairs applied")
        return report

    async def retry_failed(self) -> Dict[str, int]:
        """Return failed documents and chunks to pending for another run."""
        documents = await self.store.reset_failed_documents()
        chunks = await self.store.reset_chunks(EmbeddingStatus.FAILED)
        logger.info(f"Re-queued {documents} failed documents and {chunks} failed chunks")
        return {"documents": documents, "chunks": chunks}

    async def clear_index(self) -> int:
        """Delete every vector and return embedded chunks to pending."""
        removed = await self.vector_index.delete_all()
        reset = await self.store.reset_chunks(EmbeddingStatus.EMBEDDED)
        logger.warning(f"Cleared {removed} vectors; {reset} chunks returned to pending")
        return removed

    async def stats(self) -> Dict[str, Any]:
        index_stats = await self.vector_index.stats()
        return {
            "documents": await self.store.document_stats(),
            "chunks": await self.store.chunk_stats(),
            "vectors": index_stats.to_dict()
        }

