"""Operational command line for the knowledge base.

Usage:
  python -m ragkb.cli init-db
  python -m ragkb.cli ingest --path docs/knowledge-base/pages
  python -m ragkb.cli reindex
  python -m ragkb.cli status
  python -m ragkb.cli search "como fazer matrícula" --category academico --top-k 5

Configuration:
- Database: ragkb.config.settings.DATABASE_URL
- Embeddings: ragkb.config.settings.OPENAI_API_KEY / OPENAI_EMBEDDING_MODEL
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional, Sequence

from ragkb.config import settings
from ragkb.db import create_db_engine, create_session_factory, init_db
from ragkb.embedding import EmbeddingClient
from ragkb.ingestion import IngestionPipeline
from ragkb.retrieval import HybridRetriever, format_results_for_context
from ragkb.schemas import IngestResult
from ragkb.store import PgVectorStore

logger = logging.getLogger(__name__)


def _print_results(results: List[IngestResult]) -> int:
    ok = sum(1 for r in results if r.success)
    chunks = sum(r.chunks_created for r in results)
    for i, r in enumerate(results, start=1):
        mark = "OK " if r.success else "ERR"
        print(f"{i:>3}. [{mark}] {r.title} ({r.chunks_created} chunks) - {r.message}")
    print(f"[INGEST] {ok}/{len(results)} documents, {chunks} chunks")
    return 0 if ok == len(results) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Knowledge base ingestion and search.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the vector extension, tables and indexes")

    for name, help_text in (("ingest", "Ingest new or changed documents"), ("reindex", "Delete everything and ingest again")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--path", default=None, help="Document root (default: DOCS_PATH)")

    sub.add_parser("status", help="Show document/chunk counts per category")

    p = sub.add_parser("search", help="Run a hybrid search")
    p.add_argument("query")
    p.add_argument("--category", default=None)
    p.add_argument("--top-k", type=int, default=None)
    p.add_argument("--tag", action="append", dest="tags", default=None)
    p.add_argument("--semantic-only", action="store_true", help="Disable BM25 blending")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    engine = create_db_engine()
    if args.command == "init-db":
        init_db(engine)
        print("[INIT-DB] schema ready")
        return 0

    store = PgVectorStore(create_session_factory(engine), settings.FULLTEXT_LANGUAGE)
    embedder = EmbeddingClient(settings=settings)

    try:
        if args.command in ("ingest", "reindex"):
            pipeline = IngestionPipeline(store, embedder, settings=settings)
            run = pipeline.ingest_directory if args.command == "ingest" else pipeline.reindex_all
            return _print_results(run(args.path))

        if args.command == "status":
            status = IngestionPipeline(store, embedder, settings=settings).get_status()
            print(status.model_dump_json(indent=2))
            return 0

        retriever = HybridRetriever(store, embedder, settings=settings)
        results = retriever.search(
            args.query,
            category=args.category,
            top_k=args.top_k,
            tags=args.tags,
            use_hybrid=not args.semantic_only,
        )
        print(format_results_for_context(results))
        return 0
    except Exception:
        logger.exception("Command %s failed", args.command)
        raise


if __name__ == "__main__":
    sys.exit(main())
