"""Store gateway between the knowledge base and PostgreSQL/pgvector.

The ingestion pipeline and the retriever only talk to a KnowledgeStore. A store
hands out a KnowledgeRepository bound to one transaction: everything done through
the repository inside ``with store.transaction() as repo:`` commits together or
not at all.

PgVectorStore is the production implementation. Vector search uses pgvector cosine
distance (similarity = 1 - distance); keyword candidates come from Postgres full-text
search over chunk content. Database failures surface as StoreError.
"""
import logging
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, TypeVar

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ragkb.db import fulltext_config, session_scope
from ragkb.embedding import encode_vector
from ragkb.errors import StoreError
from ragkb.models import RagChunk, RagDocument
from ragkb.schemas import KnowledgeBaseStatus

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Plain word tokens only; anything else could alter the tsquery syntax
LEXEME = re.compile(r"[^\W_]+")


@dataclass
class DocumentFields:
    """Document-level columns written on insert or update."""
    title: str
    category: str
    route_pattern: Optional[str]
    menu_path: Optional[str]
    tags: List[str]
    metadata: Dict[str, Any]
    content_hash: str

    def same_metadata(self, other: "StoredDocument") -> bool:
        return (
            self.title == other.title
            and self.category == other.category
            and self.route_pattern == other.route_pattern
            and self.menu_path == other.menu_path
            and list(self.tags) == list(other.tags)
            and self.metadata == other.metadata
        )


@dataclass
class StoredDocument:
    """Detached snapshot of a document row."""
    id: str
    file_path: str
    title: str
    category: str
    route_pattern: Optional[str]
    menu_path: Optional[str]
    tags: List[str]
    metadata: Dict[str, Any]
    content_hash: str
    updated_at: Optional[datetime] = None


@dataclass
class NewChunk:
    chunk_index: int
    content: str
    section_title: Optional[str]
    embedding: List[float]
    token_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChunkHit:
    """A chunk matched by a store query, joined with its document context."""
    chunk_id: str
    document_id: str
    content: str
    section_title: Optional[str]
    metadata: Dict[str, Any]
    similarity: float
    document_title: str
    category: str
    route_pattern: Optional[str]
    menu_path: Optional[str]
    tags: List[str]


class KnowledgeRepository(ABC):
    """Operations available inside one store transaction."""

    @abstractmethod
    def get_document(self, file_path: str) -> Optional[StoredDocument]:
        """Return the document stored under a source key, if any."""

    @abstractmethod
    def upsert_document(self, file_path: str, fields: DocumentFields, existing_id: Optional[str] = None) -> str:
        """Insert a new document, or update ``existing_id`` in place. Returns the id."""

    @abstractmethod
    def delete_chunks(self, document_id: str) -> int:
        """Delete every chunk of a document. Returns the number removed."""

    @abstractmethod
    def insert_chunks(self, document_id: str, chunks: Sequence[NewChunk]) -> int:
        """Bulk insert chunks for a document. Returns the number inserted."""

    @abstractmethod
    def delete_document(self, document_id: str) -> bool:
        """Delete a document and, by cascade, its chunks."""

    @abstractmethod
    def delete_all_documents(self) -> int:
        """Delete every document and, by cascade, every chunk."""

    @abstractmethod
    def similarity_search(
        self,
        query_vector: Sequence[float],
        threshold: float,
        limit: int,
        category: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> List[ChunkHit]:
        """Nearest chunks by cosine similarity, at or above ``threshold``, best first.

        ``category`` restricts to one category; ``tags`` keeps documents carrying
        at least one of the given tags.
        """

    @abstractmethod
    def keyword_search(
        self,
        terms: Sequence[str],
        query_vector: Sequence[float],
        limit: int,
        category: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> List[ChunkHit]:
        """Chunks whose content matches any of ``terms``, with their cosine similarity."""

    @abstractmethod
    def status(self) -> KnowledgeBaseStatus:
        """Document/chunk counts, per-category counts and last update time."""


class KnowledgeStore(ABC):
    """Factory of transactional repositories."""

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[KnowledgeRepository]:
        """Yield a repository; commit on success, roll back on error."""


def _store_operation(operation: str) -> Callable[[F], F]:
    """Translate SQLAlchemy errors raised by a repository method into StoreError."""
    def decorator(fn: F) -> F:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return fn(*args, **kwargs)
            except SQLAlchemyError as e:
                logger.error("Store operation %s failed: %s", operation, e)
                raise StoreError(operation, str(e)) from e
        return wrapper  # type: ignore[return-value]
    return decorator


class SqlKnowledgeRepository(KnowledgeRepository):
    """KnowledgeRepository over one SQLAlchemy session."""

    def __init__(self, session: Session, fulltext_language: Optional[str] = None):
        self.session = session
        self.fts = fulltext_config(fulltext_language)

    @_store_operation("get_document")
    def get_document(self, file_path: str) -> Optional[StoredDocument]:
        row = self.session.execute(
            select(RagDocument).where(RagDocument.file_path == file_path)
        ).scalar_one_or_none()
        if row is None:
            return None
        return StoredDocument(
            id=str(row.id),
            file_path=row.file_path,
            title=row.title,
            category=row.category,
            route_pattern=row.route_pattern,
            menu_path=row.menu_path,
            tags=list(row.tags or []),
            metadata=dict(row.meta or {}),
            content_hash=row.content_hash,
            updated_at=row.updated_at,
        )

    @_store_operation("upsert_document")
    def upsert_document(self, file_path: str, fields: DocumentFields, existing_id: Optional[str] = None) -> str:
        row = self.session.get(RagDocument, existing_id) if existing_id else None
        if row is None:
            row = RagDocument(file_path=file_path)
            self.session.add(row)
        row.title = fields.title
        row.category = fields.category
        row.route_pattern = fields.route_pattern
        row.menu_path = fields.menu_path
        row.tags = list(fields.tags)
        row.meta = dict(fields.metadata)
        row.content_hash = fields.content_hash
        self.session.flush()
        return str(row.id)

    @_store_operation("delete_chunks")
    def delete_chunks(self, document_id: str) -> int:
        result = self.session.execute(delete(RagChunk).where(RagChunk.document_id == document_id))
        return result.rowcount or 0

    @_store_operation("insert_chunks")
    def insert_chunks(self, document_id: str, chunks: Sequence[NewChunk]) -> int:
        self.session.add_all(
            [
                RagChunk(
                    document_id=document_id,
                    chunk_index=c.chunk_index,
                    content=c.content,
                    section_title=c.section_title,
                    embedding=c.embedding,
                    token_count=c.token_count,
                    meta=dict(c.metadata),
                )
                for c in chunks
            ]
        )
        self.session.flush()
        return len(chunks)

    @_store_operation("delete_document")
    def delete_document(self, document_id: str) -> bool:
        result = self.session.execute(delete(RagDocument).where(RagDocument.id == document_id))
        return bool(result.rowcount)

    @_store_operation("delete_all_documents")
    def delete_all_documents(self) -> int:
        result = self.session.execute(delete(RagDocument))
        return result.rowcount or 0

    @staticmethod
    def _filters(category: Optional[str], tags: Optional[Sequence[str]], params: Dict[str, Any]) -> str:
        clauses: List[str] = []
        if category:
            clauses.append("d.category = :category")
            params["category"] = category
        if tags:
            clauses.append("d.tags && CAST(:tags AS text[])")
            params["tags"] = list(tags)
        return "".join(f" AND {c}" for c in clauses)

    def _hits(self, sql: str, params: Dict[str, Any]) -> List[ChunkHit]:
        rows = self.session.execute(text(sql), params).mappings().all()
        return [
            ChunkHit(
                chunk_id=str(r["id"]),
                document_id=str(r["document_id"]),
                content=r["content"],
                section_title=r["section_title"],
                metadata=dict(r["metadata"] or {}),
                similarity=max(0.0, float(r["similarity"] or 0.0)),
                document_title=r["title"],
                category=r["category"],
                route_pattern=r["route_pattern"],
                menu_path=r["menu_path"],
                tags=list(r["tags"] or []),
            )
            for r in rows
        ]

    @_store_operation("similarity_search")
    def similarity_search(
        self,
        query_vector: Sequence[float],
        threshold: float,
        limit: int,
        category: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> List[ChunkHit]:
        params: Dict[str, Any] = {"qvec": encode_vector(query_vector), "threshold": threshold, "limit": limit}
        where = self._filters(category, tags, params)
        sql = f"""
            SELECT c.id, c.document_id, c.content, c.section_title, c.metadata,
                   1 - (c.embedding <=> CAST(:qvec AS vector)) AS similarity,
                   d.title, d.category, d.route_pattern, d.menu_path, d.tags
            FROM rag_chunks c
            JOIN rag_documents d ON d.id = c.document_id
            WHERE c.embedding IS NOT NULL
              AND 1 - (c.embedding <=> CAST(:qvec AS vector)) >= :threshold{where}
            ORDER BY c.embedding <=> CAST(:qvec AS vector), c.id
            LIMIT :limit
        """
        return self._hits(sql, params)

    @_store_operation("keyword_search")
    def keyword_search(
        self,
        terms: Sequence[str],
        query_vector: Sequence[float],
        limit: int,
        category: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> List[ChunkHit]:
        lexemes = [t for t in terms if LEXEME.fullmatch(t)]
        if not lexemes:
            return []
        params: Dict[str, Any] = {
            "qvec": encode_vector(query_vector),
            "tsq": " | ".join(lexemes),
            "limit": limit,
        }
        where = self._filters(category, tags, params)
        sql = f"""
            SELECT c.id, c.document_id, c.content, c.section_title, c.metadata,
                   1 - (c.embedding <=> CAST(:qvec AS vector)) AS similarity,
                   d.title, d.category, d.route_pattern, d.menu_path, d.tags
            FROM rag_chunks c
            JOIN rag_documents d ON d.id = c.document_id
            WHERE to_tsvector('{self.fts}', c.content) @@ to_tsquery('{self.fts}', :tsq){where}
            LIMIT :limit
        """
        # Savepoint: a rejected tsquery must not abort the enclosing transaction
        with self.session.begin_nested():
            return self._hits(sql, params)

    @_store_operation("status")
    def status(self) -> KnowledgeBaseStatus:
        total_documents = self.session.scalar(select(func.count()).select_from(RagDocument)) or 0
        total_chunks = self.session.scalar(select(func.count()).select_from(RagChunk)) or 0
        category_rows = self.session.execute(
            select(RagDocument.category, func.count()).group_by(RagDocument.category)
        ).all()
        last_updated = self.session.scalar(select(func.max(RagDocument.updated_at)))
        return KnowledgeBaseStatus(
            total_documents=total_documents,
            total_chunks=total_chunks,
            category_counts={category: count for category, count in category_rows},
            last_updated=last_updated,
        )


class PgVectorStore(KnowledgeStore):
    """KnowledgeStore backed by PostgreSQL with the pgvector extension.

    Args:
        session_factory: SQLAlchemy sessionmaker bound to the database.
        fulltext_language: Postgres text search configuration for keyword search.
    """

    def __init__(self, session_factory: sessionmaker, fulltext_language: Optional[str] = None):
        self.session_factory = session_factory
        self.fulltext_language = fulltext_language

    @contextmanager
    def transaction(self) -> Iterator[KnowledgeRepository]:
        try:
            with session_scope(self.session_factory) as session:
                yield SqlKnowledgeRepository(session, self.fulltext_language)
        except SQLAlchemyError as e:
            # Commit-time failures happen outside any repository method
            raise StoreError("commit", str(e)) from e
