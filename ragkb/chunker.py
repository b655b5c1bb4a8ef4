"""Heading-aware chunking of document bodies into embeddable fragments.

Chunking strategy:
- Split the body into sections by markdown headings (``#`` to ``######``); heading
  lines inside fenced code blocks are ignored. Text before the first heading, or a
  body without headings, becomes a section titled after the document.
- A section whose estimated size lies in [min_tokens, max_tokens] becomes one chunk.
  Sections below min_tokens are DROPPED: they are considered too small to be useful
  on their own. This loses very short sections (a one-line FAQ answer, say); lower
  CHUNK_MIN_TOKENS if that matters for a corpus.
- Oversized sections are split on blank-line paragraphs, accumulated greedily up to
  max_tokens. Each new chunk starts with the trailing floor(overlap_tokens * 0.75)
  words of the previous one.
- If nothing survives, the whole body is chunked as one section. A document that is
  entirely below min_tokens still yields its single chunk.
- Every chunk is prefixed with a bracketed context header (document, menu, route,
  section) so it reads on its own.

Token counts are word-based approximations (see ragkb.tokens), not tokenizer output.
"""
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ragkb.config import Settings, settings as default_settings
from ragkb.schemas import Frontmatter
from ragkb.tokens import TokenEstimator
from ragkb.utils import normalize_body

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 512
DEFAULT_OVERLAP_TOKENS = 50
DEFAULT_MIN_TOKENS = 100
WORDS_PER_TOKEN = 0.75  # overlap budget conversion

HEADING = re.compile(r"^(#{1,6})\s+(.+)$")
FENCE = re.compile(r"^\s*(```|~~~)")
PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


@dataclass
class Section:
    title: str
    level: int
    content: str


@dataclass
class Chunk:
    """A fragment of a document ready to be embedded.

    Attributes:
        content: Fragment text prefixed with the rendered context header.
        text: Raw fragment text without the header.
        section_title: Heading the fragment belongs to.
        chunk_index: Zero-based position in emission order.
        token_count: Estimated tokens of ``text``.
        metadata: heading_level, document_key, category and is_split.
    """
    content: str
    text: str
    section_title: Optional[str]
    chunk_index: int
    token_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class Chunker:
    """Split document bodies into ordered, size-bounded chunks."""

    def __init__(
        self,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        min_tokens: int = DEFAULT_MIN_TOKENS,
        estimator: Optional[TokenEstimator] = None,
    ):
        self.estimator = estimator or TokenEstimator()
        self.max_tokens = max_tokens
        self.min_tokens = min_tokens
        self.overlap_tokens = overlap_tokens
        self.overlap_words = math.floor(overlap_tokens * WORDS_PER_TOKEN)
        self.max_words = self.estimator.max_words(max_tokens)

        if self.max_words < 1:
            raise ValueError(f"max_tokens={max_tokens} cannot hold a single word")
        if min_tokens > max_tokens:
            raise ValueError("min_tokens must not exceed max_tokens")
        if self.overlap_words >= self.max_words:
            raise ValueError("overlap must be smaller than the chunk budget")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Chunker":
        s = settings or default_settings
        return cls(
            max_tokens=s.CHUNK_MAX_TOKENS,
            overlap_tokens=s.CHUNK_OVERLAP_TOKENS,
            min_tokens=s.CHUNK_MIN_TOKENS,
            estimator=TokenEstimator.for_language(s.CHUNK_LANGUAGE, s.TOKENS_PER_WORD or None),
        )

    def chunk(self, body: str, frontmatter: Frontmatter) -> List[Chunk]:
        """Chunk a document body.

        Args:
            body: Document body without its metadata block.
            frontmatter: Parsed metadata; used for section defaults and headers.

        Returns:
            List[Chunk]: Ordered chunks; empty when the body has no text.
        """
        body = normalize_body(body)
        sections = self.extract_sections(body, frontmatter.title)
        logger.debug("Document %r: %d sections found", frontmatter.title, len(sections))

        pieces: List[Tuple[Section, str, bool]] = []
        for section in sections:
            tokens = self.estimator.estimate(section.content)
            if tokens > self.max_tokens:
                pieces.extend(self._split_section(section))
            elif tokens >= self.min_tokens:
                pieces.append((section, section.content, False))
            else:
                logger.debug(
                    "Dropping section %r of %r (%d tokens < %d)",
                    section.title, frontmatter.title, tokens, self.min_tokens,
                )

        if not pieces and body:
            whole = Section(title=frontmatter.title, level=1, content=body)
            pieces = self._split_section(whole, allow_undersized=True)

        chunks = [
            self._build_chunk(i, section, text, is_split, frontmatter)
            for i, (section, text, is_split) in enumerate(pieces)
        ]
        logger.info("Document %r: %d chunks created", frontmatter.title, len(chunks))
        return chunks

    def extract_sections(self, body: str, document_title: str) -> List[Section]:
        """Split a body into heading-delimited sections with non-empty content."""
        sections: List[Section] = []
        title, level = document_title, 1
        buffer: List[str] = []
        fence: Optional[str] = None

        for line in body.split("\n"):
            fence_match = FENCE.match(line)
            if fence_match:
                marker = fence_match.group(1)
                if fence is None:
                    fence = marker
                elif marker == fence:
                    fence = None
                buffer.append(line)
                continue

            heading = HEADING.match(line) if fence is None else None
            if heading:
                self._close_section(sections, title, level, buffer)
                title, level, buffer = heading.group(2).strip(), len(heading.group(1)), []
            else:
                buffer.append(line)

        self._close_section(sections, title, level, buffer)
        return sections

    @staticmethod
    def _close_section(sections: List[Section], title: str, level: int, buffer: List[str]) -> None:
        content = "\n".join(buffer).strip()
        if content:
            sections.append(Section(title=title, level=level, content=content))

    def _split_section(
        self, section: Section, allow_undersized: bool = False
    ) -> List[Tuple[Section, str, bool]]:
        """Greedy paragraph accumulation with word overlap between chunks."""
        texts: List[str] = []
        buffer = ""

        for unit in self._paragraph_units(section.content):
            candidate = f"{buffer}\n\n{unit}" if buffer else unit
            if buffer and self.estimator.estimate(candidate) > self.max_tokens:
                if self.estimator.estimate(buffer) < self.min_tokens:
                    # Top up an undersized buffer from the head of the next unit
                    words = unit.split()
                    room = self.max_words - len(buffer.split())
                    if room > 0:
                        buffer = f"{buffer}\n\n{' '.join(words[:room])}"
                        unit = " ".join(words[room:])
                texts.append(buffer)
                overlap = self._overlap(buffer)
                buffer = f"{overlap}\n\n{unit}" if overlap else unit
            else:
                buffer = candidate

        if buffer:
            tokens = self.estimator.estimate(buffer)
            if tokens >= self.min_tokens or (allow_undersized and not texts):
                texts.append(buffer)

        is_split = len(texts) > 1
        return [(section, text, is_split) for text in texts]

    def _paragraph_units(self, content: str) -> List[str]:
        """Paragraphs, with any paragraph too large to carry an overlap cut into word windows."""
        window = self.max_words - self.overlap_words
        units: List[str] = []
        for paragraph in PARAGRAPH_BREAK.split(content):
            paragraph = paragraph.strip()
            if not paragraph:
                continue
            words = paragraph.split()
            if len(words) <= window:
                units.append(paragraph)
            else:
                units.extend(" ".join(words[i:i + window]) for i in range(0, len(words), window))
        return units

    def _overlap(self, text: str) -> str:
        if self.overlap_words <= 0:
            return ""
        words = text.split()
        if len(words) <= self.overlap_words:
            return " ".join(words)
        return " ".join(words[-self.overlap_words:])

    def _build_chunk(
        self, index: int, section: Section, text: str, is_split: bool, frontmatter: Frontmatter
    ) -> Chunk:
        return Chunk(
            content=format_chunk_content(section.title, text, frontmatter),
            text=text,
            section_title=section.title,
            chunk_index=index,
            token_count=self.estimator.estimate(text),
            metadata={
                "heading_level": section.level,
                "document_key": frontmatter.id,
                "category": frontmatter.category,
                "is_split": is_split,
            },
        )


def format_chunk_content(section_title: Optional[str], text: str, frontmatter: Frontmatter) -> str:
    """Prefix a fragment with its document context header.

    Returns:
        str: One bracketed line per available field, a blank line, then the text.
    """
    parts = [f"[Documento: {frontmatter.title}]"]
    if frontmatter.menu_path:
        parts.append(f"[Menu: {frontmatter.menu_path}]")
    if frontmatter.effective_route:
        parts.append(f"[Rota: {frontmatter.effective_route}]")
    if section_title and section_title != frontmatter.title:
        parts.append(f"[Seção: {section_title}]")
    parts.append("")
    parts.append(text)
    return "\n".join(parts)
