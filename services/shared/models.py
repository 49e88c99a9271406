"""Shared database models for documents, chunks and conversations."""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

VECTOR_ID_PREFIX = "chunk-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def vector_id_for(chunk_id: int) -> str:
    """Deterministic vector id for a chunk; re-upserting replaces the same vector."""
    return f"{VECTOR_ID_PREFIX}{chunk_id}"


def chunk_id_from_vector_id(vector_id: str):
    """Inverse of :func:`vector_id_for`; None for ids not minted by it."""
    if not vector_id.startswith(VECTOR_ID_PREFIX):
        return None
    try:
        return int(vector_id[len(VECTOR_ID_PREFIX):])
    except ValueError:
        return None


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    EMBEDDED = "embedded"
    FAILED = "failed"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Document(Base):
    """A scraped page. ``processed`` means every chunk for it exists."""
    __tablename__ = 'documents'

    id = Column(Integer, primary_key=True)
    url = Column(String(2048), nullable=False, unique=True)
    title = Column(String(500), nullable=False)
    raw_content = Column(Text, nullable=False, default="")
    cleaned_content = Column(Text, nullable=False, default="")
    word_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=DocumentStatus.PENDING.value)
    meta = Column("metadata", JSON, nullable=True)
    scraped_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    chunks = relationship(
        "Chunk",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="Chunk.chunk_index"
    )

    __table_args__ = (
        Index('idx_documents_status', 'status'),
        Index('idx_documents_scraped_at', 'scraped_at'),
    )

    def __repr__(self) -> str:
        return f"<Document id={self.id} url={self.url!r} status={self.status}>"


class Chunk(Base):
    """A contiguous piece of a document's cleaned text."""
    __tablename__ = 'chunks'

    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey('documents.id', ondelete='CASCADE'), nullable=False)
    text = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    size = Column(Integer, nullable=False)
    embedding_status = Column(String(20), nullable=False, default=EmbeddingStatus.PENDING.value)
    vector_id = Column(String(100), nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    embedded_at = Column(DateTime(timezone=True), nullable=True)

    document = relationship("Document", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint('document_id', 'chunk_index', name='uq_chunks_document_index'),
        Index('idx_chunks_document_id', 'document_id'),
        Index('idx_chunks_embedding_status', 'embedding_status'),
        Index('idx_chunks_created_at', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<Chunk id={self.id} document_id={self.document_id} index={self.chunk_index}>"


class Conversation(Base):
    """A chat session keyed by an opaque session id."""
    __tablename__ = 'conversations'

    id = Column(Integer, primary_key=True)
    session_id = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(100), nullable=True)
    title = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, default=ConversationStatus.ACTIVE.value)
    meta = Column("metadata", JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_message_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.id"
    )

    __table_args__ = (
        Index('idx_conversations_user_id', 'user_id'),
        Index('idx_conversations_last_message_at', 'last_message_at'),
    )


class Message(Base):
    """One turn of a conversation. Immutable apart from ``feedback``."""
    __tablename__ = 'messages'

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    sources = Column(JSON, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    feedback = Column(JSON, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index('idx_messages_conversation_id', 'conversation_id'),
    )
