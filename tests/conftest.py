"""Shared fixtures for the knowledge base test suite.

Provides:
- test_settings: small embedding dimension, permissive similarity threshold.
- memory_store: in-memory KnowledgeStore with transactional rollback.
- fake_openai / embedder: deterministic bag-of-words embeddings behind the real
  EmbeddingClient, so batching and response validation are exercised too.
- pipeline / retriever: components wired to the fixtures above.
"""
from __future__ import annotations

import copy
import hashlib
import re
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set

import pytest
from openai import OpenAIError

from ragkb.config import Settings
from ragkb.embedding import EmbeddingClient, cosine_similarity
from ragkb.errors import StoreError
from ragkb.ingestion import IngestionPipeline
from ragkb.retrieval import HybridRetriever
from ragkb.schemas import KnowledgeBaseStatus
from ragkb.store import (
    ChunkHit,
    DocumentFields,
    KnowledgeRepository,
    KnowledgeStore,
    NewChunk,
    StoredDocument,
)

EMBEDDING_DIM = 64
WORD = re.compile(r"[^\W_]+")


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class _State:
    def __init__(self) -> None:
        self.documents: Dict[str, StoredDocument] = {}
        self.chunks: Dict[str, Dict[str, Any]] = {}


class InMemoryRepository(KnowledgeRepository):
    """KnowledgeRepository over plain dicts; mirrors the SQL store's semantics."""

    def __init__(self, state: _State, fail_on: Set[str]):
        self.state = state
        self.fail_on = fail_on

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StoreError(operation, "simulated failure")

    def get_document(self, file_path: str) -> Optional[StoredDocument]:
        self._check("get_document")
        for doc in self.state.documents.values():
            if doc.file_path == file_path:
                return copy.deepcopy(doc)
        return None

    def upsert_document(self, file_path: str, fields: DocumentFields, existing_id: Optional[str] = None) -> str:
        self._check("upsert_document")
        doc = self.state.documents.get(existing_id) if existing_id else None
        if doc is None:
            if any(d.file_path == file_path for d in self.state.documents.values()):
                raise StoreError("upsert_document", f"duplicate file_path {file_path}")
            doc = StoredDocument(
                id=str(uuid.uuid4()),
                file_path=file_path,
                title="",
                category="geral",
                route_pattern=None,
                menu_path=None,
                tags=[],
                metadata={},
                content_hash="",
            )
            self.state.documents[doc.id] = doc
        doc.title = fields.title
        doc.category = fields.category
        doc.route_pattern = fields.route_pattern
        doc.menu_path = fields.menu_path
        doc.tags = list(fields.tags)
        doc.metadata = copy.deepcopy(fields.metadata)
        doc.content_hash = fields.content_hash
        doc.updated_at = datetime.now(timezone.utc)
        return doc.id

    def delete_chunks(self, document_id: str) -> int:
        self._check("delete_chunks")
        doomed = [cid for cid, c in self.state.chunks.items() if c["document_id"] == document_id]
        for cid in doomed:
            del self.state.chunks[cid]
        return len(doomed)

    def insert_chunks(self, document_id: str, chunks: Sequence[NewChunk]) -> int:
        self._check("insert_chunks")
        taken = {c["chunk_index"] for c in self.state.chunks.values() if c["document_id"] == document_id}
        for c in chunks:
            if c.chunk_index in taken:
                raise StoreError("insert_chunks", f"duplicate chunk_index {c.chunk_index}")
            taken.add(c.chunk_index)
            cid = str(uuid.uuid4())
            self.state.chunks[cid] = {
                "id": cid,
                "document_id": document_id,
                "chunk_index": c.chunk_index,
                "content": c.content,
                "section_title": c.section_title,
                "embedding": list(c.embedding),
                "token_count": c.token_count,
                "metadata": copy.deepcopy(c.metadata),
            }
        return len(chunks)

    def delete_document(self, document_id: str) -> bool:
        self._check("delete_document")
        if document_id not in self.state.documents:
            return False
        del self.state.documents[document_id]
        self.delete_chunks(document_id)
        return True

    def delete_all_documents(self) -> int:
        self._check("delete_all_documents")
        n = len(self.state.documents)
        self.state.documents.clear()
        self.state.chunks.clear()
        return n

    def _candidates(self, category: Optional[str], tags: Optional[Sequence[str]]):
        for chunk in self.state.chunks.values():
            doc = self.state.documents[chunk["document_id"]]
            if category and doc.category != category:
                continue
            if tags and not set(tags) & set(doc.tags):
                continue
            yield chunk, doc

    @staticmethod
    def _hit(chunk: Dict[str, Any], doc: StoredDocument, similarity: float) -> ChunkHit:
        return ChunkHit(
            chunk_id=chunk["id"],
            document_id=doc.id,
            content=chunk["content"],
            section_title=chunk["section_title"],
            metadata=dict(chunk["metadata"]),
            similarity=max(0.0, similarity),
            document_title=doc.title,
            category=doc.category,
            route_pattern=doc.route_pattern,
            menu_path=doc.menu_path,
            tags=list(doc.tags),
        )

    def similarity_search(self, query_vector, threshold, limit, category=None, tags=None) -> List[ChunkHit]:
        self._check("similarity_search")
        hits = []
        for chunk, doc in self._candidates(category, tags):
            sim = cosine_similarity(query_vector, chunk["embedding"])
            if sim >= threshold:
                hits.append(self._hit(chunk, doc, sim))
        hits.sort(key=lambda h: (-h.similarity, h.chunk_id))
        return hits[:limit]

    def keyword_search(self, terms, query_vector, limit, category=None, tags=None) -> List[ChunkHit]:
        self._check("keyword_search")
        wanted = {t.lower() for t in terms}
        hits = []
        for chunk, doc in self._candidates(category, tags):
            if wanted & set(WORD.findall(chunk["content"].lower())):
                hits.append(self._hit(chunk, doc, cosine_similarity(query_vector, chunk["embedding"])))
        return hits[:limit]

    def status(self) -> KnowledgeBaseStatus:
        self._check("status")
        counts: Dict[str, int] = {}
        for doc in self.state.documents.values():
            counts[doc.category] = counts.get(doc.category, 0) + 1
        stamps = [d.updated_at for d in self.state.documents.values() if d.updated_at]
        return KnowledgeBaseStatus(
            total_documents=len(self.state.documents),
            total_chunks=len(self.state.chunks),
            category_counts=counts,
            last_updated=max(stamps) if stamps else None,
        )


class InMemoryStore(KnowledgeStore):
    """Serialized transactions over a dict state; errors restore the prior snapshot."""

    def __init__(self) -> None:
        self.state = _State()
        self.fail_on: Set[str] = set()
        self.transactions = 0
        self._lock = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[KnowledgeRepository]:
        with self._lock:
            self.transactions += 1
            snapshot = copy.deepcopy(self.state)
            try:
                yield InMemoryRepository(self.state, self.fail_on)
            except BaseException:
                self.state.documents = snapshot.documents
                self.state.chunks = snapshot.chunks
                raise

    # Test helpers
    def document_by_path(self, file_path: str) -> Optional[StoredDocument]:
        return next((d for d in self.state.documents.values() if d.file_path == file_path), None)

    def chunks_of(self, document_id: str) -> List[Dict[str, Any]]:
        rows = [c for c in self.state.chunks.values() if c["document_id"] == document_id]
        return sorted(rows, key=lambda c: c["chunk_index"])


# ---------------------------------------------------------------------------
# Fake embeddings provider
# ---------------------------------------------------------------------------


def bag_of_words_vector(text: str, dim: int = EMBEDDING_DIM) -> List[float]:
    """Deterministic embedding: a bias component plus hashed word counts."""
    vec = [0.0] * dim
    vec[0] = 1.0
    for word in WORD.findall(text.lower()):
        slot = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % (dim - 1) + 1
        vec[slot] += 1.0
    return vec


class FakeOpenAI:
    """Minimal stand-in for ``OpenAI`` exposing ``embeddings.create``."""

    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim
        self.calls: List[List[str]] = []
        self.fail = False
        self.embeddings = SimpleNamespace(create=self._create)

    def _create(self, model: str, input: List[str], dimensions: Optional[int] = None):
        self.calls.append(list(input))
        if self.fail:
            raise OpenAIError("provider unavailable")
        data = [
            SimpleNamespace(index=i, embedding=bag_of_words_vector(text, self.dim))
            for i, text in enumerate(input)
        ]
        total = sum(len(text.split()) for text in input)
        # Provider order is not guaranteed; results carry their index
        return SimpleNamespace(data=list(reversed(data)), usage=SimpleNamespace(total_tokens=total))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        OPENAI_API_KEY="test-key",
        EMBEDDING_DIMENSIONS=EMBEDDING_DIM,
        EMBEDDING_BATCH_SIZE=4,
        INGEST_MAX_WORKERS=2,
        SIMILARITY_THRESHOLD=0.0,
        SEARCH_CANDIDATE_POOL=50,
        OTEL_CONSOLE_EXPORT=False,
    )


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def embedder(fake_openai: FakeOpenAI, test_settings: Settings) -> EmbeddingClient:
    return EmbeddingClient(client=fake_openai, settings=test_settings)


@pytest.fixture
def pipeline(memory_store, embedder, test_settings) -> IngestionPipeline:
    return IngestionPipeline(memory_store, embedder, settings=test_settings)


@pytest.fixture
def retriever(memory_store, embedder, test_settings) -> HybridRetriever:
    return HybridRetriever(memory_store, embedder, settings=test_settings)


@pytest.fixture
def words():
    """Factory of distinct words: words(3) -> 'palavra0 palavra1 palavra2'."""
    def make(n: int, prefix: str = "palavra", start: int = 0) -> str:
        return " ".join(f"{prefix}{i}" for i in range(start, start + n))
    return make
