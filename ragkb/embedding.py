"""Embedding client wrapping OpenAI's embeddings API, plus pgvector codecs.

Provides:
- EmbeddingClient.embed: embed a single text.
- EmbeddingClient.embed_batch: order-preserving batch embedding, split into
  provider-sized batches; a failing batch fails the whole call.
- encode_vector / parse_vector: pgvector literal serialization and its inverse.
- cosine_similarity: dot(a, b) / (|a| * |b|) with explicit errors.

Token counts: the embeddings API reports one aggregate usage figure per request.
For multi-text batches each item is assigned floor(total_tokens / batch_size), an
APPROXIMATION; single-text requests get the exact figure.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from openai import OpenAI, OpenAIError

from ragkb.config import Settings, settings as default_settings
from ragkb.errors import EmbeddingError
from ragkb.obs import span

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    embedding: List[float]
    token_count: int


class EmbeddingClient:
    """Batching client for the OpenAI embeddings endpoint.

    Args:
        client: OpenAI client; built from settings when omitted.
        settings: Model, dimensions, batch size and retry configuration.
    """

    def __init__(self, client: Optional[OpenAI] = None, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.model = self.settings.OPENAI_EMBEDDING_MODEL
        self.dimensions = self.settings.EMBEDDING_DIM
        self.batch_size = self.settings.EMBEDDING_BATCH_SIZE
        self._client = client

    @property
    def client(self) -> OpenAI:
        """Return the OpenAI client, creating it on first use.

        Retries and timeouts are delegated to the SDK (max_retries, timeout).
        """
        if self._client is None:
            if not self.settings.OPENAI_API_KEY:
                logger.warning("OPENAI_API_KEY not set; embedding requests will fail")
            self._client = OpenAI(
                api_key=self.settings.OPENAI_API_KEY,
                max_retries=self.settings.EMBEDDING_MAX_RETRIES,
                timeout=self.settings.EMBEDDING_TIMEOUT_SECONDS,
            )
        return self._client

    def embed(self, text: str) -> EmbeddingResult:
        """Embed a single string.

        Raises:
            EmbeddingError: On provider, network or response-shape failures.
        """
        return self._request([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        """Embed many strings, one result per input, in input order.

        Args:
            texts: Inputs of any length; sent in batches of ``batch_size``.

        Returns:
            List[EmbeddingResult]: Same length and order as ``texts``.

        Raises:
            EmbeddingError: If any batch fails; no partial result is returned.
        """
        texts = list(texts)
        if not texts:
            return []

        total_batches = math.ceil(len(texts) / self.batch_size)
        results: List[EmbeddingResult] = []
        for n, start in enumerate(range(0, len(texts), self.batch_size), start=1):
            batch = texts[start:start + self.batch_size]
            logger.info("Generating embeddings: batch %d/%d (%d texts)", n, total_batches, len(batch))
            with span("embedding.batch", {"batch": n, "size": len(batch)}):
                results.extend(self._request(batch))

        logger.info("Embeddings generated: %d texts processed", len(results))
        return results

    def _request(self, batch: List[str]) -> List[EmbeddingResult]:
        options = {"model": self.model, "input": batch}
        # Only the text-embedding-3 family accepts a dimensions parameter
        if self.model.startswith("text-embedding-3"):
            options["dimensions"] = self.dimensions
        try:
            resp = self.client.embeddings.create(**options)
        except OpenAIError as e:
            logger.error("Embedding request failed (%d texts): %s", len(batch), e)
            raise EmbeddingError(f"embedding request failed: {e}") from e

        data = sorted(resp.data, key=lambda d: d.index)
        if len(data) != len(batch):
            raise EmbeddingError(
                f"provider returned {len(data)} embeddings for {len(batch)} inputs"
            )
        for d in data:
            if len(d.embedding) != self.dimensions:
                raise EmbeddingError(
                    f"expected {self.dimensions}-dim embeddings, got {len(d.embedding)}"
                )

        total = resp.usage.total_tokens if resp.usage is not None else 0
        per_item = total if len(batch) == 1 else total // len(batch)
        return [EmbeddingResult(embedding=list(d.embedding), token_count=per_item) for d in data]


def encode_vector(vector: Sequence[float]) -> str:
    """Serialize a vector into pgvector literal syntax, e.g. ``[0.1,-2.0,0.0]``.

    Uses the shortest round-tripping float repr so parse_vector restores the exact values.
    """
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"


def parse_vector(literal: str) -> List[float]:
    """Parse a pgvector literal back into a list of floats."""
    inner = literal.strip()
    if not (inner.startswith("[") and inner.endswith("]")):
        raise ValueError(f"not a vector literal: {literal[:40]!r}")
    inner = inner[1:-1].strip()
    if not inner:
        return []
    return [float(x) for x in inner.split(",")]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors.

    Raises:
        ValueError: If the vectors differ in dimensionality or either has zero norm.
    """
    if len(a) != len(b):
        raise ValueError(f"vector dimensions differ: {len(a)} != {len(b)}")
    dot = math.fsum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        raise ValueError("cosine similarity is undefined for zero vectors")
    return dot / (norm_a * norm_b)
