"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session construction, the metadata base, and helpers:
- create_db_engine / create_session_factory: build the engine and session factory
  that are injected into the store.
- init_db: Ensures the pgvector extension exists, creates the tables, the IVFFLAT
  index over rag_chunks.embedding and a GIN full-text index over rag_chunks.content.
- session_scope: Context-managed transactional scope for imperative workflows.
- get_session_factory: lazily-built default factory from settings.DATABASE_URL,
  used by the CLI.
"""
import re
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ragkb.config import settings

Base = declarative_base()

_default_factory: Optional[sessionmaker] = None


def create_db_engine(url: Optional[str] = None) -> Engine:
    """Create an engine for the given URL (settings.DATABASE_URL by default)."""
    return create_engine(url or settings.DATABASE_URL, pool_pre_ping=True, future=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def get_session_factory() -> sessionmaker:
    """Return a cached session factory bound to settings.DATABASE_URL."""
    global _default_factory
    if _default_factory is None:
        _default_factory = create_session_factory(create_db_engine())
    return _default_factory


def fulltext_config(language: Optional[str] = None) -> str:
    """Validated text search configuration name, safe to inline into SQL."""
    name = (language or settings.FULLTEXT_LANGUAGE).lower()
    if not re.fullmatch(r"[a-z_]+", name):
        raise ValueError(f"invalid text search configuration: {name!r}")
    return name


def init_db(engine: Engine) -> None:
    """Initialize database extensions, tables, and indexes.

    Ensures the pgvector extension is available, creates tables from SQLAlchemy
    metadata, and creates the vector and full-text indexes if missing.

    This function is idempotent and safe to run multiple times.
    """
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()

    # Import models after Base is defined
    from ragkb import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    fts = fulltext_config()
    with engine.connect() as conn:
        # IVF index; run ANALYZE after bulk loads for good list selection
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS idx_rag_chunks_embedding_ivfflat
                ON rag_chunks USING ivfflat (embedding vector_cosine_ops)
                WITH (lists = 100)
                """
            )
        )
        conn.execute(
            text(
                f"""
                CREATE INDEX IF NOT EXISTS idx_rag_chunks_content_fts
                ON rag_chunks USING gin (to_tsvector('{fts}', content))
                """
            )
        )
        conn.commit()


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Args:
        factory: Session factory; the default factory when omitted.

    Yields:
        Session: A SQLAlchemy session.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
