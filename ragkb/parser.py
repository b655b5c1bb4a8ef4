"""Document parsing: raw text -> (Frontmatter, body).

Metadata is resolved by an ordered chain of stages; the first stage that
recognises its convention wins:

1. HeaderBlockStage: a ``---`` fenced YAML key/value block at the top of the file.
2. BracketTagStage: ``[Documento: ...]``, ``[Menu: ...]``, ``[Rota: ...]`` tags in
   the first lines of the file.
3. FallbackStage: no metadata; title from the file name, category from the path.

Malformed metadata never raises: a stage that cannot make sense of its input logs
a warning and lets the next stage try.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError

from ragkb.schemas import DEFAULT_CATEGORY, RAG_CATEGORIES, Frontmatter
from ragkb.utils import normalize_source_path, source_stem

logger = logging.getLogger(__name__)

# Ordered: the first rule whose patterns occur in the normalized path wins.
CATEGORY_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("dashboard", ("/dashboard/", "/painel/")),
    ("ia", ("/ia/", "/agente")),
    ("academico", ("/academico/", "/turmas/", "/alunos/")),
    ("financeiro", ("/financeiro/", "/pagamentos/", "/mensalidades/")),
    ("administracao", ("/administracao/", "/admin/", "/usuarios/")),
    ("calendario", ("/calendario/", "/agenda/")),
    ("sites", ("/sites/",)),
    ("documentos", ("/documentos/", "/arquivos/")),
    ("configuracoes", ("/configuracoes/", "/config/")),
)

HEADER_BLOCK = re.compile(r"\A---[ \t]*\n(.*?)^---[ \t]*(?:\n|\Z)(.*)\Z", re.DOTALL | re.MULTILINE)
BRACKET_TAG = re.compile(r"^\[\s*(documento|menu|rota)\s*:\s*(.+?)\s*\]$", re.IGNORECASE)
MAX_TAG_LINES = 10


def infer_category(source_key: str) -> str:
    """Infer a document category from its source path.

    Args:
        source_key: File path or other path-like locator.

    Returns:
        str: The category of the first matching rule in CATEGORY_RULES, or
            DEFAULT_CATEGORY when none matches.
    """
    path = normalize_source_path(source_key)
    for category, patterns in CATEGORY_RULES:
        if any(p in path for p in patterns):
            return category
    return DEFAULT_CATEGORY


@dataclass
class ParsedDocument:
    frontmatter: Frontmatter
    body: str
    convention: str  # stage that produced it: "header", "tags" or "fallback"


class MetadataStage:
    """One link of the parsing chain."""

    name = "stage"

    def parse(self, raw_text: str, source_key: str) -> Optional[ParsedDocument]:
        """Return a ParsedDocument, or None to let the next stage try."""
        raise NotImplementedError


class HeaderBlockStage(MetadataStage):
    """YAML key/value block between two ``---`` lines at the top of the text."""

    name = "header"

    def parse(self, raw_text: str, source_key: str) -> Optional[ParsedDocument]:
        text = raw_text.lstrip("\ufeff").replace("\r\n", "\n")
        match = HEADER_BLOCK.match(text)
        if not match:
            return None
        block, body = match.group(1), match.group(2)

        try:
            loaded = yaml.safe_load(block)
        except yaml.YAMLError as e:
            logger.warning("Malformed header block in %s: %s", source_key, e)
            return None
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            logger.warning(
                "Header block in %s is not a key/value map (got %s)",
                source_key, type(loaded).__name__,
            )
            return None

        data: Dict[str, Any] = {str(k): v for k, v in loaded.items() if v is not None}
        data.setdefault("id", source_stem(source_key))
        if not str(data["id"]).strip():
            data["id"] = source_stem(source_key)
        if not str(data.get("title") or "").strip():
            data["title"] = data["id"]
        data["category"] = self._resolve_category(data.get("category"), source_key)

        try:
            frontmatter = Frontmatter.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid header fields in %s: %s", source_key, e)
            return None
        return ParsedDocument(frontmatter=frontmatter, body=body, convention=self.name)

    @staticmethod
    def _resolve_category(value: Any, source_key: str) -> str:
        if value is None or not str(value).strip():
            return infer_category(source_key)
        category = str(value).strip().lower()
        if category in RAG_CATEGORIES:
            return category
        inferred = infer_category(source_key)
        logger.warning(
            "Unknown category %r in %s; using %r", value, source_key, inferred
        )
        return inferred


class BracketTagStage(MetadataStage):
    """Inline ``[Documento: ...]`` / ``[Menu: ...]`` / ``[Rota: ...]`` tags."""

    name = "tags"

    def parse(self, raw_text: str, source_key: str) -> Optional[ParsedDocument]:
        lines = raw_text.lstrip("\ufeff").splitlines()
        tags: Dict[str, str] = {}
        stop = min(len(lines), MAX_TAG_LINES)
        for i, line in enumerate(lines[:MAX_TAG_LINES]):
            stripped = line.strip()
            if not stripped:
                continue
            match = BRACKET_TAG.match(stripped)
            if not match:
                stop = i
                break
            tags.setdefault(match.group(1).lower(), match.group(2))

        title = tags.get("documento")
        if not title:
            return None

        frontmatter = Frontmatter(
            id=source_stem(source_key),
            title=title,
            category=infer_category(source_key),
            menu_path=tags.get("menu"),
            route=tags.get("rota"),
        )
        body = "\n".join(lines[stop:])
        return ParsedDocument(frontmatter=frontmatter, body=body, convention=self.name)


class FallbackStage(MetadataStage):
    """No metadata: derive everything from the source path."""

    name = "fallback"

    def parse(self, raw_text: str, source_key: str) -> Optional[ParsedDocument]:
        stem = source_stem(source_key)
        frontmatter = Frontmatter(id=stem, title=stem, category=infer_category(source_key))
        return ParsedDocument(frontmatter=frontmatter, body=raw_text, convention=self.name)


DEFAULT_STAGES: Tuple[MetadataStage, ...] = (HeaderBlockStage(), BracketTagStage(), FallbackStage())


class DocumentParser:
    """Run the metadata stages in order and return the first match."""

    def __init__(self, stages: Optional[Sequence[MetadataStage]] = None):
        self.stages: List[MetadataStage] = list(stages or DEFAULT_STAGES)

    def parse(self, raw_text: str, source_key: str) -> ParsedDocument:
        raw_text = raw_text or ""
        for stage in self.stages:
            parsed = stage.parse(raw_text, source_key)
            if parsed is not None:
                logger.debug("Parsed %s with %s convention", source_key, parsed.convention)
                return parsed
        # Only reachable with a custom chain that lacks a fallback
        return FallbackStage().parse(raw_text, source_key)
