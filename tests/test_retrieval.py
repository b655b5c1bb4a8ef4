"""Tests for ragkb.retrieval (hybrid ranking, filters, formatting)."""
import logging
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from ragkb.embedding import EmbeddingResult
from ragkb.errors import StoreError
from ragkb.retrieval import (
    NO_RESULTS_MESSAGE,
    HybridRetriever,
    _extract_terms,
    _max_norm,
    _tokenize,
    format_results_for_context,
)
from ragkb.schemas import DocumentRef, SearchResult
from ragkb.store import ChunkHit, KnowledgeStore


def _hit(chunk_id, similarity, content="texto genérico sobre o sistema", category="geral", **kw):
    return ChunkHit(
        chunk_id=chunk_id,
        document_id=kw.get("document_id", f"doc-{chunk_id}"),
        content=content,
        section_title=kw.get("section_title"),
        metadata={},
        similarity=similarity,
        document_title=kw.get("title", f"Documento {chunk_id}"),
        category=category,
        route_pattern=kw.get("route_pattern"),
        menu_path=kw.get("menu_path"),
        tags=kw.get("tags", []),
    )


class StubStore(KnowledgeStore):
    """Store whose repository returns fixed candidate lists."""

    def __init__(self, vector_hits=(), keyword_hits=()):
        self.repo = MagicMock()
        self.repo.similarity_search.return_value = list(vector_hits)
        self.repo.keyword_search.return_value = list(keyword_hits)

    @contextmanager
    def transaction(self):
        yield self.repo


@pytest.fixture
def query_embedder():
    embedder = MagicMock()
    embedder.embed.return_value = EmbeddingResult(embedding=[1.0, 0.0], token_count=3)
    return embedder


def _retriever(store, embedder, test_settings, **overrides):
    settings = test_settings.model_copy(update={"SIMILARITY_THRESHOLD": 0.5, **overrides})
    return HybridRetriever(store, embedder, settings=settings)


class TestHelpers:
    def test_tokenize_keeps_accents(self):
        assert _tokenize("Matrícula, TURMA_2024!") == ["matrícula", "turma", "2024"]

    def test_extract_terms_prefers_long_unique_terms(self):
        assert _extract_terms("como faço a matrícula da matrícula no app") == ["matrícula", "como", "faço", "app"]

    def test_max_norm(self):
        assert _max_norm([]) == []
        assert _max_norm([0.0, 0.0]) == [0.0, 0.0]
        assert _max_norm([1.0, 4.0, 2.0]) == [0.25, 1.0, 0.5]


class TestSearch:
    def test_blank_query_returns_nothing_without_embedding(self, query_embedder, test_settings):
        retriever = _retriever(StubStore(), query_embedder, test_settings)
        assert retriever.search("   ") == []
        query_embedder.embed.assert_not_called()

    def test_no_candidates_gives_empty_list(self, query_embedder, test_settings):
        retriever = _retriever(StubStore(), query_embedder, test_settings)
        assert retriever.search("matrícula") == []

    @pytest.mark.parametrize("requested, expected", [(None, 5), (0, 1), (-3, 1), (3, 3), (100, 20)])
    def test_top_k_is_clamped(self, query_embedder, test_settings, requested, expected):
        hits = [_hit(f"c{i:02d}", 0.9 - i * 0.01) for i in range(30)]
        retriever = _retriever(StubStore(hits), query_embedder, test_settings)
        assert len(retriever.search("sistema", top_k=requested)) == expected

    def test_semantic_only_ranks_by_similarity(self, query_embedder, test_settings):
        store = StubStore([_hit("b", 0.7), _hit("a", 0.9)], [_hit("k", 0.95)])
        retriever = _retriever(store, query_embedder, test_settings)

        results = retriever.search("matrícula", use_hybrid=False)

        assert [r.id for r in results] == ["a", "b"]
        assert all(r.score == r.similarity and r.lexical_score == 0.0 for r in results)
        store.repo.keyword_search.assert_not_called()

    def test_hybrid_rewards_keyword_matches(self, query_embedder, test_settings):
        vector_hits = [
            _hit("semantic", 0.80),
            _hit("f1", 0.60),
            _hit("f2", 0.60),
            _hit("f3", 0.60),
        ]
        keyword_hits = [_hit("lexical", 0.70, content="como fazer a matrícula do aluno na turma")]
        store = StubStore(vector_hits, keyword_hits)
        retriever = _retriever(store, query_embedder, test_settings)

        results = retriever.search("matrícula turma")

        assert results[0].id == "lexical"
        assert results[0].lexical_score == pytest.approx(1.0)
        assert results[0].score == pytest.approx(0.7 * 0.70 + 0.3 * 1.0)
        semantic = next(r for r in results if r.id == "semantic")
        assert semantic.score == pytest.approx(0.7 * 0.80)

    def test_single_candidate_with_term_gets_full_lexical_score(self, query_embedder, test_settings):
        only = _hit("a", 0.8, content="como fazer a matrícula do aluno")
        retriever = _retriever(StubStore([only], [only]), query_embedder, test_settings)

        results = retriever.search("matrícula")

        assert results[0].lexical_score == pytest.approx(1.0)
        assert results[0].score == pytest.approx(0.7 * 0.8 + 0.3)

    def test_term_match_outranks_slightly_closer_vector_in_two_candidate_pool(
        self, query_embedder, test_settings
    ):
        match = _hit("a", 0.80, content="como fazer a matrícula do aluno na turma")
        other = _hit("b", 0.82, content="relatório de frequência da turma no mês")
        retriever = _retriever(StubStore([other, match], [match]), query_embedder, test_settings)

        results = retriever.search("matrícula")

        assert [r.id for r in results] == ["a", "b"]
        assert results[0].lexical_score == pytest.approx(1.0)
        assert results[1].lexical_score == 0.0

    def test_term_in_every_candidate_still_scores(self, query_embedder, test_settings):
        hits = [
            _hit("a", 0.8, content="matrícula matrícula de alunos"),
            _hit("b", 0.8, content="taxa de matrícula"),
        ]
        retriever = _retriever(StubStore(hits, hits), query_embedder, test_settings)

        results = retriever.search("matrícula")

        assert all(r.lexical_score > 0.0 for r in results)
        assert results[0].id == "a"

    def test_keyword_failure_falls_back_to_semantic_results(self, query_embedder, test_settings, caplog):
        store = StubStore([_hit("a", 0.8, content="como fazer a matrícula")])
        store.repo.keyword_search.side_effect = StoreError("keyword_search", "bad tsquery")
        retriever = _retriever(store, query_embedder, test_settings)

        with caplog.at_level(logging.WARNING, logger="ragkb.retrieval"):
            results = retriever.search("matrícula")

        assert [r.id for r in results] == ["a"]
        assert "Keyword search failed" in caplog.text

    def test_vector_failure_still_raises(self, query_embedder, test_settings):
        store = StubStore()
        store.repo.similarity_search.side_effect = StoreError("similarity_search", "connection lost")
        retriever = _retriever(store, query_embedder, test_settings)
        with pytest.raises(StoreError):
            retriever.search("matrícula")

    def test_keyword_hits_below_threshold_are_excluded(self, query_embedder, test_settings):
        store = StubStore([_hit("v", 0.8)], [_hit("weak", 0.2, content="matrícula matrícula")])
        retriever = _retriever(store, query_embedder, test_settings)
        assert [r.id for r in retriever.search("matrícula")] == ["v"]

    def test_duplicate_candidates_are_merged(self, query_embedder, test_settings):
        same = _hit("x", 0.8, content="matrícula")
        store = StubStore([same], [same])
        retriever = _retriever(store, query_embedder, test_settings)
        assert [r.id for r in retriever.search("matrícula")] == ["x"]

    def test_ties_break_on_similarity_then_id(self, query_embedder, test_settings):
        store = StubStore([_hit("b", 0.8), _hit("a", 0.8), _hit("c", 0.9)])
        retriever = _retriever(store, query_embedder, test_settings)
        assert [r.id for r in retriever.search("zzz", use_hybrid=False)] == ["c", "a", "b"]

    def test_filters_and_pool_size_reach_the_store(self, query_embedder, test_settings):
        store = StubStore([_hit("v", 0.8)])
        retriever = _retriever(store, query_embedder, test_settings, SEARCH_CANDIDATE_POOL=40)

        retriever.search("matrícula", category="academico", tags=["alunos", ""], top_k=3)

        args, kwargs = store.repo.similarity_search.call_args
        assert args == ([1.0, 0.0], 0.5, 40)
        assert kwargs == {"category": "academico", "tags": ["alunos"]}
        kw_args, kw_kwargs = store.repo.keyword_search.call_args
        assert kw_args[0] == ["matrícula"]
        assert kw_kwargs["category"] == "academico"

    def test_explicit_threshold_overrides_settings(self, query_embedder, test_settings):
        store = StubStore([_hit("v", 0.8)])
        retriever = _retriever(store, query_embedder, test_settings)
        retriever.search("texto", similarity_threshold=0.75)
        assert store.repo.similarity_search.call_args.args[1] == 0.75


class TestEndToEnd:
    DOCS = {
        "docs/academico/matricula.md": (
            "---\ntitle: Matrícula de alunos\ncategory: academico\ntags: [alunos]\n---\n"
            "Para fazer a matrícula abra a turma e adicione o aluno."
        ),
        "docs/financeiro/matricula.md": (
            "---\ntitle: Taxa de matrícula\ncategory: financeiro\ntags: [cobranca]\n---\n"
            "A taxa de matrícula é cobrada no primeiro boleto."
        ),
    }

    @pytest.fixture
    def loaded(self, pipeline):
        for key, text in self.DOCS.items():
            assert pipeline.ingest_one(key, content=text).success
        return pipeline

    def test_category_filter_is_hard(self, loaded, retriever):
        results = retriever.search("matrícula", category="academico")
        assert results
        assert {r.document.category for r in results} == {"academico"}

    def test_without_filter_both_categories_match(self, loaded, retriever):
        results = retriever.search("matrícula")
        assert {r.document.category for r in results} == {"academico", "financeiro"}
        assert all(0.0 <= r.lexical_score <= 1.0 for r in results)
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)

    def test_tag_filter(self, loaded, retriever):
        results = retriever.search("matrícula", tags=["cobranca"])
        assert [r.document.title for r in results] == ["Taxa de matrícula"]

    def test_unknown_category_gives_no_results(self, loaded, retriever):
        assert retriever.search("matrícula", category="calendario") == []


class TestFormatting:
    def test_empty_results_message(self):
        assert format_results_for_context([]) == NO_RESULTS_MESSAGE

    def test_renders_numbered_blocks(self):
        result = SearchResult(
            id="c1",
            document_id="d1",
            content="[Documento: Matrícula]\n\nAbra a turma.",
            section_title="Passos",
            similarity=0.875,
            score=0.9,
            document=DocumentRef(
                id="d1", title="Matrícula", category="academico",
                route_pattern="/turmas", menu_path="Acadêmico > Turmas",
            ),
        )
        text = format_results_for_context([result, result.model_copy(update={"id": "c2"})])

        first, second = text.split("\n\n---\n\n")
        assert first.splitlines()[:6] == [
            "[Resultado 1]",
            "Documento: Matrícula",
            "Menu: Acadêmico > Turmas",
            "Rota: /turmas",
            "Seção: Passos",
            "Similaridade: 87.5%",
        ]
        assert second.startswith("[Resultado 2]")
