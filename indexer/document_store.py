"""Document store for DocSage.

Relational persistence for documents, chunks and conversations through
SQLAlchemy. Methods are coroutines so callers treat the store like the other
external services; the underlying driver calls are synchronous.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, sessionmaker
from sqlalchemy.pool import StaticPool

from services.shared.errors import DuplicateDocumentError, NotFoundError
from services.shared.models import (
    Base,
    Chunk,
    Document,
    DocumentStatus,
    EmbeddingStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class DocumentStore:
    """SQLAlchemy-backed store with an explicit initialize/close lifecycle."""

    def __init__(self, database_url: str = "sqlite:///data/docsage.db", echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    async def initialize(self):
        """Create the engine and ensure the schema exists."""
        if self.engine is not None:
            return

        url = make_url(self.database_url)
        kwargs: Dict[str, Any] = {"echo": self.echo, "future": True}
        if url.get_backend_name() == "sqlite":
            kwargs["connect_args"] = {"check_same_thread": False}
            if url.database in (None, "", ":memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(self.database_url, **kwargs)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Document store initialized: {url.render_as_string(hide_password=True)}")

    async def close(self):
        """Dispose of the engine."""
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self._session_factory = None
            logger.info("Document store closed")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session: commits on success, rolls back on error."""
        if self._session_factory is None:
            raise RuntimeError("Document store not initialized. Call initialize() first.")
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Documents

    async def url_exists(self, url: str) -> bool:
        with self.session() as session:
            return session.scalar(select(Document.id).where(Document.url == url)) is not None

    async def create_document(self, url: str, title: str, raw_content: str,
                              cleaned_content: str, word_count: int,
                              metadata: Optional[Dict[str, Any]] = None) -> Document:
        """Persist a new pending document.

        Raises:
            DuplicateDocumentError: If a document with this URL exists
        """
        document = Document(
            url=url,
            title=title,
            raw_content=raw_content,
            cleaned_content=cleaned_content,
            word_count=word_count,
            status=DocumentStatus.PENDING.value,
            meta=metadata or {},
            scraped_at=utcnow()
        )
        try:
            with self.session() as session:
                session.add(document)
        except IntegrityError as e:
            raise DuplicateDocumentError(url) from e

        logger.debug(f"Stored document {document.id} for {url}")
        return document

    async def get_document(self, document_id: int) -> Document:
        with self.session() as session:
            document = session.get(Document, document_id)
            if document is None:
                raise NotFoundError("Document", document_id)
            return document

    async def get_document_by_url(self, url: str) -> Optional[Document]:
        with self.session() as session:
            return session.scalar(select(Document).where(Document.url == url))

    async def find_documents(self, status: Optional[DocumentStatus] = None,
                             limit: Optional[int] = None) -> List[Document]:
        """Documents in scrape order, optionally filtered by status."""
        stmt = select(Document).order_by(Document.scraped_at, Document.id)
        if status is not None:
            stmt = stmt.where(Document.status == DocumentStatus(status).value)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.session() as session:
            return list(session.scalars(stmt))

    async def mark_document_failed(self, document_id: int, error: Optional[str] = None) -> None:
        with self.session() as session:
            document = session.get(Document, document_id)
            if document is None:
                raise NotFoundError("Document", document_id)
            document.status = DocumentStatus.FAILED.value
            if error:
                document.meta = {**(document.meta or {}), "last_error": error}

    async def reset_failed_documents(self) -> int:
        """Move failed documents back to pending; returns how many moved."""
        with self.session() as session:
            result = session.execute(
                update(Document)
                .where(Document.status == DocumentStatus.FAILED.value)
                .values(status=DocumentStatus.PENDING.value, updated_at=utcnow())
            )
            return result.rowcount

    async def document_stats(self) -> Dict[str, int]:
        return self._status_counts(Document.status, DocumentStatus)

    # Chunks

    async def create_chunks(self, document_id: int, segments: Sequence[Dict[str, Any]]) -> List[Chunk]:
        """Create all chunks of a document and mark it processed, atomically.

        Each segment is a mapping with ``text``, ``index`` and optional
        ``metadata``. Either every chunk is stored and the document becomes
        ``processed``, or nothing changes.
        """
        with self.session() as session:
            document = session.get(Document, document_id)
            if document is None:
                raise NotFoundError("Document", document_id)

            chunks = []
            for segment in segments:
                chunk = Chunk(
                    document_id=document_id,
                    text=segment["text"],
                    chunk_index=segment["index"],
                    size=len(segment["text"]),
                    embedding_status=EmbeddingStatus.PENDING.value,
                    meta=segment.get("metadata") or {}
                )
                session.add(chunk)
                chunks.append(chunk)

            document.status = DocumentStatus.PROCESSED.value
            session.flush()
        return chunks

    async def get_document_chunks(self, document_id: int) -> List[Chunk]:
        with self.session() as session:
            stmt = (
                select(Chunk)
                .where(Chunk.document_id == document_id)
                .order_by(Chunk.chunk_index)
            )
            return list(session.scalars(stmt))

    async def get_pending_chunks(self, limit: int = 100) -> List[Chunk]:
        """Pending chunks, oldest first, with their documents loaded."""
        with self.session() as session:
            stmt = (
                select(Chunk)
                .options(joinedload(Chunk.document))
                .where(Chunk.embedding_status == EmbeddingStatus.PENDING.value)
                .order_by(Chunk.created_at, Chunk.id)
                .limit(limit)
            )
            return list(session.scalars(stmt))

    async def get_chunks(self, chunk_ids: Iterable[int]) -> Dict[int, Chunk]:
        """Chunks by id, with their documents loaded; missing ids are absent."""
        chunk_ids = list(chunk_ids)
        if not chunk_ids:
            return {}
        with self.session() as session:
            stmt = select(Chunk).options(joinedload(Chunk.document)).where(Chunk.id.in_(chunk_ids))
            return {chunk.id: chunk for chunk in session.scalars(stmt)}

    async def list_chunks_by_status(self, status: EmbeddingStatus) -> List[Chunk]:
        with self.session() as session:
            stmt = (
                select(Chunk)
                .where(Chunk.embedding_status == EmbeddingStatus(status).value)
                .order_by(Chunk.id)
            )
            return list(session.scalars(stmt))

    async def mark_chunk_embedded(self, chunk_id: int, vector_id: str) -> None:
        with self.session() as session:
            chunk = session.get(Chunk, chunk_id)
            if chunk is None:
                raise NotFoundError("Chunk", chunk_id)
            chunk.embedding_status = EmbeddingStatus.EMBEDDED.value
            chunk.vector_id = vector_id
            chunk.embedded_at = utcnow()

    async def mark_chunk_failed(self, chunk_id: int, error: Optional[str] = None) -> None:
        with self.session() as session:
            chunk = session.get(Chunk, chunk_id)
            if chunk is None:
                raise NotFoundError("Chunk", chunk_id)
            chunk.embedding_status = EmbeddingStatus.FAILED.value
            chunk.vector_id = None
            if error:
                chunk.meta = {**(chunk.meta or {}), "last_error": error}

    async def reset_chunks(self, from_status: EmbeddingStatus,
                           chunk_ids: Optional[Iterable[int]] = None) -> int:
        """Move chunks in ``from_status`` back to pending and clear their vector ids."""
        stmt = (
            update(Chunk)
            .where(Chunk.embedding_status == EmbeddingStatus(from_status).value)
            .values(embedding_status=EmbeddingStatus.PENDING.value, vector_id=None, embedded_at=None)
        )
        if chunk_ids is not None:
            chunk_ids = list(chunk_ids)
            if not chunk_ids:
                return 0
            stmt = stmt.where(Chunk.id.in_(chunk_ids))
        with self.session() as session:
            return session.execute(stmt).rowcount

    async def chunk_stats(self) -> Dict[str, int]:
        return self._status_counts(Chunk.embedding_status, EmbeddingStatus)

    def _status_counts(self, column, statuses) -> Dict[str, int]:
        with self.session() as session:
            rows = session.execute(select(column, func.count()).group_by(column)).all()
        counts = {status.value: 0 for status in statuses}
        counts.update({status: count for status, count in rows})
        counts["total"] = sum(count for _, count in rows)
        return counts
