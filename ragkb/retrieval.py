"""Hybrid retrieval over the knowledge base.

This module implements:
- Unicode-aware tokenization and keyword term extraction
- HybridRetriever.search: vector similarity search with optional BM25 blending
- format_results_for_context: plain-text rendering of results for a prompt

Vector search uses pgvector cosine distance (similarity = 1 - distance) with a
minimum similarity threshold. In hybrid mode, keyword candidates from the store's
full-text search are merged into the pool, the pool is scored with BM25 (smoothed,
non-negative idf), BM25 scores are normalized by the pool maximum, and the final score is
``semantic_weight * similarity + fulltext_weight * lexical``.
Category and tags are hard filters applied by the store query.
"""
import logging
import re
from typing import Dict, List, Optional, Sequence

from rank_bm25 import BM25Plus

from ragkb.config import Settings, settings as default_settings
from ragkb.embedding import EmbeddingClient
from ragkb.errors import StoreError
from ragkb.obs import span
from ragkb.schemas import DocumentRef, SearchResult
from ragkb.store import ChunkHit, KnowledgeStore

logger = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = "Nenhum resultado encontrado na knowledge base."


def _tokenize(s: str) -> List[str]:
    """Lowercase word tokenization (Unicode letters and digits) used by BM25.

    Args:
        s: Input string.

    Returns:
        List[str]: Word tokens in lowercase, accents preserved.
    """
    return re.findall(r"[^\W_]+", s.lower())


def _extract_terms(question: str, min_len: int = 3, max_terms: int = 6) -> List[str]:
    """Extract distinctive keyword terms for the keyword candidate query.

    Selects unique terms of at least min_len characters, preferring longer tokens.

    Args:
        question: The user query text.
        min_len: Minimum token length to consider.
        max_terms: Maximum number of terms to return.

    Returns:
        List[str]: Ordered list of distinctive terms (longer first).
    """
    toks = [t for t in _tokenize(question) if len(t) >= min_len]
    seen = set()
    out: List[str] = []
    for t in sorted(toks, key=lambda x: (-len(x), x)):
        if t not in seen:
            seen.add(t)
            out.append(t)
        if len(out) >= max_terms:
            break
    return out


def _max_norm(xs: Sequence[float]) -> List[float]:
    """Scale non-negative scores into [0, 1] by the maximum.

    Returns zeros when every score is zero or the input is empty.
    """
    if not xs:
        return []
    mx = max(xs)
    if mx <= 1e-12:
        return [0.0 for _ in xs]
    return [max(0.0, x) / mx for x in xs]


def _to_result(hit: ChunkHit, lexical: float, score: float) -> SearchResult:
    return SearchResult(
        id=hit.chunk_id,
        document_id=hit.document_id,
        content=hit.content,
        section_title=hit.section_title,
        similarity=hit.similarity,
        lexical_score=lexical,
        score=score,
        document=DocumentRef(
            id=hit.document_id,
            title=hit.document_title or "Unknown",
            category=hit.category or "geral",
            route_pattern=hit.route_pattern,
            menu_path=hit.menu_path,
            tags=list(hit.tags),
        ),
        metadata=dict(hit.metadata),
    )


class HybridRetriever:
    """Ranked chunk search combining vector similarity and BM25.

    Args:
        store: Knowledge store to query.
        embedder: Embedding client used for the query text.
        settings: Top-k bounds, threshold, candidate pool and hybrid weights.
    """

    def __init__(self, store: KnowledgeStore, embedder: EmbeddingClient, settings: Optional[Settings] = None):
        self.store = store
        self.embedder = embedder
        self.settings = settings or default_settings

    def _clamp_top_k(self, top_k: Optional[int]) -> int:
        k = top_k if top_k is not None else self.settings.SEARCH_TOP_K
        return max(1, min(int(k), self.settings.SEARCH_MAX_TOP_K))

    def search(
        self,
        query: str,
        category: Optional[str] = None,
        top_k: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        use_hybrid: bool = True,
        similarity_threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        """Search the knowledge base.

        Args:
            query: Natural-language query.
            category: Only return chunks of documents in this category.
            top_k: Number of results (default SEARCH_TOP_K, capped at SEARCH_MAX_TOP_K).
            tags: Only return chunks of documents carrying at least one of these tags.
            use_hybrid: Blend BM25 with vector similarity when True.
            similarity_threshold: Minimum cosine similarity (default SIMILARITY_THRESHOLD).

        Returns:
            List[SearchResult]: Best first; empty when nothing qualifies.

        Raises:
            EmbeddingError: If the query cannot be embedded.
            StoreError: On database failures of the vector query. A failing keyword
                query is logged and the search continues on semantic results.
        """
        if not query or not query.strip():
            return []
        k = self._clamp_top_k(top_k)
        threshold = (
            similarity_threshold if similarity_threshold is not None else self.settings.SIMILARITY_THRESHOLD
        )
        pool_size = max(self.settings.SEARCH_CANDIDATE_POOL, k)
        tags = [t for t in (tags or []) if t] or None

        logger.info(
            "Search: %r (top_k=%d, category=%s, hybrid=%s)",
            query[:50], k, category or "all", use_hybrid,
        )
        with span("retrieve", {"top_k": k, "category": category, "hybrid": use_hybrid}):
            qvec = self.embedder.embed(query).embedding

            with self.store.transaction() as repo:
                vec_hits = repo.similarity_search(qvec, threshold, pool_size, category=category, tags=tags)
                kw_hits: List[ChunkHit] = []
                terms = _extract_terms(query) if use_hybrid else []
                if terms:
                    try:
                        kw_hits = repo.keyword_search(terms, qvec, pool_size, category=category, tags=tags)
                    except StoreError as e:
                        logger.warning("Keyword search failed, using semantic results only: %s", e)

            # Merge candidates by id; keyword-only hits must clear the same threshold
            by_id: Dict[str, ChunkHit] = {}
            for hit in vec_hits + [h for h in kw_hits if h.similarity >= threshold]:
                if hit.chunk_id not in by_id:
                    by_id[hit.chunk_id] = hit
            pool = list(by_id.values())
            if not pool:
                logger.info("Search returned no results")
                return []

            if use_hybrid:
                lexical = self._bm25_scores(query, pool)
                w_sem = self.settings.HYBRID_SEMANTIC_WEIGHT
                w_lex = self.settings.HYBRID_FULLTEXT_WEIGHT
                results = [
                    _to_result(h, lex, w_sem * h.similarity + w_lex * lex)
                    for h, lex in zip(pool, lexical)
                ]
            else:
                results = [_to_result(h, 0.0, h.similarity) for h in pool]

        results.sort(key=lambda r: (-r.score, -r.similarity, r.id))
        selected = results[:k]
        logger.info("Search returned %d results (pool=%d)", len(selected), len(pool))
        return selected

    @staticmethod
    def _bm25_scores(query: str, pool: List[ChunkHit]) -> List[float]:
        """BM25 over the candidate pool, normalized to [0, 1].

        Uses BM25+ idf, log((N + 1) / n), which stays positive even when a term
        occurs in most (or all) of a small pool. delta=0 keeps chunks without any
        query term at 0.
        """
        query_tokens = _tokenize(query)
        tokenized = [_tokenize(h.content) for h in pool]
        if not query_tokens or not any(tokenized):
            return [0.0 for _ in pool]
        bm25 = BM25Plus(tokenized, delta=0)
        return _max_norm([float(s) for s in bm25.get_scores(query_tokens)])


def format_results_for_context(results: Sequence[SearchResult]) -> str:
    """Render search results as a numbered plain-text context block.

    Args:
        results: Ranked results from HybridRetriever.search.

    Returns:
        str: Blocks separated by ``---`` lines, or NO_RESULTS_MESSAGE.
    """
    if not results:
        return NO_RESULTS_MESSAGE

    blocks: List[str] = []
    for i, r in enumerate(results, start=1):
        parts = [f"[Resultado {i}]", f"Documento: {r.document.title}"]
        if r.document.menu_path:
            parts.append(f"Menu: {r.document.menu_path}")
        if r.document.route_pattern:
            parts.append(f"Rota: {r.document.route_pattern}")
        if r.section_title:
            parts.append(f"Seção: {r.section_title}")
        parts.append(f"Similaridade: {r.similarity * 100:.1f}%")
        parts.append("")
        parts.append(r.content)
        blocks.append("\n".join(parts))
    return "\n\n---\n\n".join(blocks)
