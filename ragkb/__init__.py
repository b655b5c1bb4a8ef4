"""Knowledge base package: ingestion and hybrid retrieval for a RAG assistant.

Submodules overview:
- config: Settings and environment variable loading.
- tokens: Word-based token estimation.
- parser: Document metadata parsing (header block, bracket tags, path fallback).
- chunker: Heading-aware chunking with token budgets and overlap.
- embedding: OpenAI embedding client and pgvector vector codecs.
- db: Database engine/session helpers and schema initialization.
- models: ORM models (documents and chunks).
- store: Transactional store gateway over PostgreSQL/pgvector.
- ingestion: Incremental ingestion pipeline.
- retrieval: Hybrid vector + BM25 search.
- schemas: Pydantic contracts.
- obs: Observability utilities (tracing spans).
- utils: General-purpose helpers.
- cli: Operational command line.
"""
