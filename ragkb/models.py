"""Database ORM models.

Defines the persistent entities of the knowledge base:
- RagDocument: one row per source document, unique on file_path, carrying the
  parsed metadata and the content hash used for incremental ingestion.
- RagChunk: a searchable fragment of a document with a pgvector embedding.
  Chunks are owned by their document (ON DELETE CASCADE).
"""
import uuid
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import relationship

from ragkb.config import settings
from ragkb.db import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RagDocument(Base):
    """A source document of the knowledge base.

    Indexes:
        - file_path is unique: at most one live document per source key
        - idx_rag_documents_category: speeds up category filters and counts
    """
    __tablename__ = "rag_documents"

    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    file_path = Column(Text, nullable=False, unique=True)
    title = Column(Text, nullable=False)
    category = Column(String(32), nullable=False, default="geral")
    route_pattern = Column(Text, nullable=True)
    menu_path = Column(Text, nullable=True)
    tags = Column(ARRAY(Text), nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSONB, nullable=False, default=dict)
    content_hash = Column(String(64), nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    chunks = relationship(
        "RagChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RagChunk.chunk_index",
    )

    __table_args__ = (Index("idx_rag_documents_category", "category"),)


class RagChunk(Base):
    """Vector-embedded fragment of a RagDocument.

    Notes:
        The embedding dimension is derived from settings.EMBEDDING_DIM and must
        match the embedding model configured in ragkb.config.Settings.
    """
    __tablename__ = "rag_chunks"

    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    document_id = Column(
        UUID(as_uuid=False),
        ForeignKey("rag_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    section_title = Column(Text, nullable=True)
    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=True)
    token_count = Column(Integer, nullable=True)
    meta = Column("metadata", JSONB, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    document = relationship("RagDocument", back_populates="chunks")

    __table_args__ = (
        Index("idx_rag_chunks_document", "document_id"),
        UniqueConstraint("document_id", "chunk_index", name="uq_rag_chunks_document_index"),
    )
