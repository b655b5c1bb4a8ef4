"""Knowledge base configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- Embedding provider credentials, model and batching
- The PostgreSQL/pgvector store
- Ingestion parameters (document root, file extension, worker count)
- Chunking budgets and the token estimation ratio
- Retrieval knobs (top-k bounds, similarity threshold, hybrid weights)
- Optional console export of tracing spans

Components accept a Settings instance in their constructor and fall back to the
module-level ``settings`` when none is given.
"""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strongly-typed knowledge base settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Embedding provider
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 0  # 0 = derive from the model name
    EMBEDDING_BATCH_SIZE: int = Field(default=100, ge=1)
    EMBEDDING_MAX_RETRIES: int = 3
    EMBEDDING_TIMEOUT_SECONDS: float = 60.0

    # Data store
    DATABASE_URL: str = "postgresql+psycopg2://rag_user:rag_pass@db:5432/rag_db"
    FULLTEXT_LANGUAGE: str = "portuguese"

    # Ingestion
    DOCS_PATH: str = "docs/knowledge-base/pages"
    DOCS_EXTENSION: str = ".md"
    INGEST_MAX_WORKERS: int = Field(default=4, ge=1)

    # Chunking (token counts are word-based estimates)
    CHUNK_MAX_TOKENS: int = Field(default=512, ge=16)
    CHUNK_OVERLAP_TOKENS: int = Field(default=50, ge=0)
    CHUNK_MIN_TOKENS: int = Field(default=100, ge=0)
    CHUNK_LANGUAGE: str = "pt"
    TOKENS_PER_WORD: float = 0.0  # 0 = use the CHUNK_LANGUAGE ratio

    # Retrieval
    SEARCH_TOP_K: int = 5
    SEARCH_MAX_TOP_K: int = 20
    SEARCH_CANDIDATE_POOL: int = 50
    SIMILARITY_THRESHOLD: float = 0.5  # 0-1
    HYBRID_SEMANTIC_WEIGHT: float = 0.7
    HYBRID_FULLTEXT_WEIGHT: float = 0.3

    # Observability
    OTEL_CONSOLE_EXPORT: bool = False

    # Derived
    @property
    def EMBEDDING_DIM(self) -> int:
        """Embedding dimension for the configured embedding model.

        Returns:
            int: EMBEDDING_DIMENSIONS when set, otherwise the vector dimension
                inferred from OPENAI_EMBEDDING_MODEL.
        """
        if self.EMBEDDING_DIMENSIONS > 0:
            return self.EMBEDDING_DIMENSIONS
        model = self.OPENAI_EMBEDDING_MODEL.lower()
        if "text-embedding-3-large" in model:
            return 3072
        # text-embedding-3-small, ada-002
        return 1536

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()
