"""Pydantic contracts for the knowledge base.

Defines the structured payloads exchanged between the parser, the ingestion
pipeline, the retriever and their callers:
- Frontmatter: parsed document metadata (known optional fields plus an open map of
  extension fields).
- IngestResult: per-document ingestion outcome.
- KnowledgeBaseStatus: read-side aggregate of the store contents.
- DocumentRef / SearchResult: ranked retrieval output with enough document context
  to be rendered without a second lookup.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

RAG_CATEGORIES: Tuple[str, ...] = (
    "ia",
    "dashboard",
    "academico",
    "financeiro",
    "administracao",
    "calendario",
    "sites",
    "documentos",
    "configuracoes",
    "geral",
)
DEFAULT_CATEGORY = "geral"

_KNOWN_METADATA_FIELDS = ("permissions", "related_pages", "last_updated")


class Frontmatter(BaseModel):
    """Document metadata envelope produced by the parser.

    Header keys are accepted in camelCase (``menuPath``) or snake_case
    (``menu_path``). Keys that are not declared here are kept as extension fields
    and persisted with the document metadata.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    title: str
    category: str = DEFAULT_CATEGORY
    route: Optional[str] = None
    route_pattern: Optional[str] = Field(default=None, alias="routePattern")
    menu_path: Optional[str] = Field(default=None, alias="menuPath")
    tags: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    related_pages: List[str] = Field(default_factory=list, alias="relatedPages")
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")

    @field_validator("id", "title", "category", mode="before")
    @classmethod
    def _scalar_to_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("route", "route_pattern", "menu_path", "last_updated", mode="before")
    @classmethod
    def _optional_str(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, (date, datetime)):
            return v.isoformat()
        s = str(v).strip()
        return s or None

    @field_validator("tags", "permissions", "related_pages", mode="before")
    @classmethod
    def _as_list(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        if not isinstance(v, (list, tuple, set)):
            raise ValueError("expected a list or a comma-separated string")
        out: List[str] = []
        for item in v:
            s = str(item).strip()
            if s and s not in out:
                out.append(s)
        return out

    @property
    def effective_route(self) -> Optional[str]:
        """Route shown to users; routePattern wins over route."""
        return self.route_pattern or self.route

    @property
    def extension_fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})

    def document_metadata(self) -> Dict[str, Any]:
        """JSON-ready metadata map persisted on the Document row."""
        data = self.model_dump(mode="json")
        meta = {k: data[k] for k in _KNOWN_METADATA_FIELDS}
        for key in self.extension_fields:
            meta[key] = data.get(key)
        return meta


class IngestResult(BaseModel):
    """Outcome of ingesting one source document.

    Attributes:
        success: False for zero-chunk documents and per-document failures.
        document_id: Stored Document id, when one exists.
        title: Parsed document title (or file name when parsing never ran).
        chunks_created: Chunks written by this call; 0 for no-op re-ingestion.
        message: Human-readable outcome.
        source_key: Source locator the result refers to.
    """
    success: bool
    document_id: Optional[str] = None
    title: str = ""
    chunks_created: int = 0
    message: str = ""
    source_key: str = ""


class KnowledgeBaseStatus(BaseModel):
    total_documents: int = 0
    total_chunks: int = 0
    category_counts: Dict[str, int] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None


class DocumentRef(BaseModel):
    id: str
    title: str
    category: str = DEFAULT_CATEGORY
    route_pattern: Optional[str] = None
    menu_path: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class SearchResult(BaseModel):
    """A ranked chunk returned by the retriever.

    Attributes:
        id: Chunk id.
        document_id: Parent Document id.
        content: Chunk text including its rendered context header.
        section_title: Heading the chunk came from, if any.
        similarity: Cosine similarity to the query (1 - cosine distance).
        lexical_score: Pool-normalized BM25 score in [0, 1]; 0 in semantic-only mode.
        score: Composite ranking score.
        document: Parent document context.
        metadata: Chunk metadata (heading level, split flag, ...).
    """
    id: str
    document_id: str
    content: str
    section_title: Optional[str] = None
    similarity: float
    lexical_score: float = 0.0
    score: float
    document: DocumentRef
    metadata: Dict[str, Any] = Field(default_factory=dict)
