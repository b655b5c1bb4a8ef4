"""Incremental ingestion of markdown documents into the knowledge base.

Per document: parse -> hash -> compare with the stored row -> chunk -> embed ->
replace. Re-ingesting an unchanged document performs no writes; a metadata-only
edit updates the document row without re-chunking; a body change replaces every
chunk of the document in one transaction.

Main entry points on IngestionPipeline:
- ingest_one: ingest one source document (file path, optional content override)
- ingest_directory: recursively ingest every matching file under a root
- reindex_all: delete everything, then ingest_directory
- remove_document / get_status: maintenance and read-side aggregate

Configuration:
- File discovery: ragkb.config.settings (DOCS_PATH, DOCS_EXTENSION, INGEST_MAX_WORKERS)
- Chunk params: CHUNK_MAX_TOKENS, CHUNK_OVERLAP_TOKENS, CHUNK_MIN_TOKENS
- Embeddings: OPENAI_EMBEDDING_MODEL, EMBEDDING_BATCH_SIZE
"""
from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional

from ragkb.chunker import Chunker
from ragkb.config import Settings, settings as default_settings
from ragkb.embedding import EmbeddingClient
from ragkb.errors import EmbeddingError, StoreError
from ragkb.obs import span
from ragkb.parser import DocumentParser
from ragkb.schemas import Frontmatter, IngestResult, KnowledgeBaseStatus
from ragkb.store import DocumentFields, KnowledgeStore, NewChunk
from ragkb.utils import KeyedLock, content_hash

logger = logging.getLogger(__name__)


def discover_files(root: str, extension: str = ".md") -> List[str]:
    """List files under ``root`` ending with ``extension``, recursively.

    Order is directory-traversal order (os.walk), not sorted.

    Raises:
        NotADirectoryError: If ``root`` is not a directory.
    """
    if not os.path.isdir(root):
        raise NotADirectoryError(f"not a directory: {root}")
    ext = extension.lower()
    files: List[str] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            if name.lower().endswith(ext):
                files.append(os.path.join(dirpath, name))
    return files


def _document_fields(frontmatter: Frontmatter, digest: str) -> DocumentFields:
    return DocumentFields(
        title=frontmatter.title,
        category=frontmatter.category,
        route_pattern=frontmatter.effective_route,
        menu_path=frontmatter.menu_path,
        tags=list(frontmatter.tags),
        metadata=frontmatter.document_metadata(),
        content_hash=digest,
    )


class IngestionPipeline:
    """Orchestrates parsing, chunking, embedding and storage of documents.

    Args:
        store: Transactional knowledge store.
        embedder: Embedding client used for chunk contents.
        parser: Document parser; the default metadata chain when omitted.
        chunker: Chunker; built from settings when omitted.
        settings: Discovery and concurrency settings.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: EmbeddingClient,
        parser: Optional[DocumentParser] = None,
        chunker: Optional[Chunker] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.store = store
        self.embedder = embedder
        self.parser = parser or DocumentParser()
        self.chunker = chunker or Chunker.from_settings(self.settings)
        self._locks = KeyedLock()

    def ingest_one(self, source_key: str, content: Optional[str] = None) -> IngestResult:
        """Ingest a single document.

        Concurrent calls for the same source key run one after the other.

        A metadata-only edit (same body hash) updates the Document row but does
        not re-chunk: existing chunks keep the ``[Documento: ...]``/``[Menu: ...]``
        header and ``metadata["category"]`` they were rendered with, and only the
        Document-level fields used by filters and results change. Use
        reindex_all (or edit the body) to re-render chunks.

        Args:
            source_key: File path identifying the document.
            content: Raw text to use instead of reading ``source_key`` from disk.

        Returns:
            IngestResult: success=False for zero-chunk documents and embedding
                failures; nothing is written in either case.

        Raises:
            StoreError: On database failures, tagged with ``source_key``.
            OSError: If the file cannot be read.
        """
        with self._locks.hold(source_key), span("ingest.document", {"source_key": source_key}):
            try:
                return self._ingest(source_key, content)
            except StoreError as e:
                logger.error("Store failure while ingesting %s: %s", source_key, e)
                raise StoreError(e.operation, e.detail, source_key=source_key) from e

    def _ingest(self, source_key: str, content: Optional[str]) -> IngestResult:
        logger.info("Ingesting document: %s", source_key)
        raw = content if content is not None else Path(source_key).read_text(encoding="utf-8")

        parsed = self.parser.parse(raw, source_key)
        frontmatter = parsed.frontmatter
        digest = content_hash(parsed.body)
        fields = _document_fields(frontmatter, digest)

        with self.store.transaction() as repo:
            existing = repo.get_document(source_key)
            if existing is not None and existing.content_hash == digest:
                if fields.same_metadata(existing):
                    logger.info("Document %s unchanged, skipping", source_key)
                    return IngestResult(
                        success=True,
                        document_id=existing.id,
                        title=existing.title,
                        chunks_created=0,
                        message="Document unchanged; no update needed",
                        source_key=source_key,
                    )
                repo.upsert_document(source_key, fields, existing_id=existing.id)
                logger.info("Document %s metadata updated; content unchanged", source_key)
                return IngestResult(
                    success=True,
                    document_id=existing.id,
                    title=frontmatter.title,
                    chunks_created=0,
                    message="Metadata updated; content unchanged",
                    source_key=source_key,
                )

        existing_id = existing.id if existing is not None else None
        chunks = self.chunker.chunk(parsed.body, frontmatter)
        if not chunks:
            logger.warning("Document %s produced no valid chunks", source_key)
            return IngestResult(
                success=False,
                document_id=existing_id,
                title=frontmatter.title,
                chunks_created=0,
                message="Document produced no valid chunks",
                source_key=source_key,
            )

        try:
            embeddings = self.embedder.embed_batch([c.content for c in chunks])
        except EmbeddingError as e:
            logger.error("Embedding failed for %s: %s", source_key, e)
            return IngestResult(
                success=False,
                document_id=existing_id,
                title=frontmatter.title,
                chunks_created=0,
                message=f"Embedding failed: {e}",
                source_key=source_key,
            )

        rows = [
            NewChunk(
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                section_title=chunk.section_title,
                embedding=emb.embedding,
                token_count=chunk.token_count,
                metadata={**chunk.metadata, "embedding_tokens": emb.token_count},
            )
            for chunk, emb in zip(chunks, embeddings)
        ]

        with self.store.transaction() as repo:
            # Re-read inside the write transaction; the row may have been removed meanwhile
            current = repo.get_document(source_key)
            current_id = current.id if current is not None else None
            if current_id is not None:
                removed = repo.delete_chunks(current_id)
                logger.info("Removed %d stale chunks of %s", removed, source_key)
            document_id = repo.upsert_document(source_key, fields, existing_id=current_id)
            repo.insert_chunks(document_id, rows)

        logger.info("Document %s ingested: %d chunks created", source_key, len(rows))
        return IngestResult(
            success=True,
            document_id=document_id,
            title=frontmatter.title,
            chunks_created=len(rows),
            message=f"Document ingested: {len(rows)} chunks created",
            source_key=source_key,
        )

    def _ingest_isolated(self, source_key: str) -> IngestResult:
        """ingest_one for directory runs: any failure becomes a failed result."""
        try:
            return self.ingest_one(source_key)
        except Exception as e:
            logger.exception("Failed to process %s", source_key)
            return IngestResult(
                success=False,
                document_id=None,
                title=os.path.basename(source_key),
                chunks_created=0,
                message=f"Error: {e}",
                source_key=source_key,
            )

    def ingest_directory(self, root: Optional[str] = None) -> List[IngestResult]:
        """Ingest every matching file under ``root``.

        Files are processed concurrently up to INGEST_MAX_WORKERS. One failing
        file never aborts the run; results follow discovery order.

        Args:
            root: Directory to scan; settings.DOCS_PATH when omitted.

        Returns:
            List[IngestResult]: One result per discovered file.
        """
        root = root or self.settings.DOCS_PATH
        files = discover_files(root, self.settings.DOCS_EXTENSION)
        logger.info("Found %d %s files in %s", len(files), self.settings.DOCS_EXTENSION, root)

        t0 = time.time()
        workers = min(self.settings.INGEST_MAX_WORKERS, len(files))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest") as pool:
                results = list(pool.map(self._ingest_isolated, files))
        else:
            results = [self._ingest_isolated(f) for f in files]

        successful = sum(1 for r in results if r.success)
        total_chunks = sum(r.chunks_created for r in results)
        logger.info(
            "Ingestion complete: %d/%d documents, %d chunks in %.1fs",
            successful, len(files), total_chunks, time.time() - t0,
        )
        return results

    def reindex_all(self, root: Optional[str] = None) -> List[IngestResult]:
        """Delete every stored document (chunks cascade), then ingest ``root`` again."""
        root = root or self.settings.DOCS_PATH
        if not os.path.isdir(root):
            raise NotADirectoryError(f"not a directory: {root}")
        logger.info("Reindexing the whole knowledge base from %s", root)
        with self.store.transaction() as repo:
            removed = repo.delete_all_documents()
        logger.info("Deleted %d documents", removed)
        return self.ingest_directory(root)

    def remove_document(self, document_id: str) -> bool:
        """Delete one document and its chunks. Returns False if it did not exist."""
        with self.store.transaction() as repo:
            removed = repo.delete_document(document_id)
        if removed:
            logger.info("Removed document %s", document_id)
        return removed

    def get_status(self) -> KnowledgeBaseStatus:
        with self.store.transaction() as repo:
            return repo.status()
