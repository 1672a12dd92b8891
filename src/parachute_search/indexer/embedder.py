"""Embedding backends and vector helpers.

Backends turn text into fixed-length, L2-normalized vectors. The bundled
implementation talks to any OpenAI-compatible ``/embeddings`` endpoint
(hosted OpenAI, or Ollama's ``/v1`` API serving nomic-embed-text) and applies
Matryoshka truncation so the stored dimension can be smaller than the
model's native one.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import httpx
from openai import AsyncOpenAI

from ..config import Settings
from .errors import EmbeddingUnavailable, InvalidEmbedding

logger = logging.getLogger(__name__)

# Constants
DEFAULT_BATCH_SIZE = 64
MAX_RETRIES = 3
NORMALIZATION_TOLERANCE = 1e-4


def l2_normalize(vector: Sequence[float]) -> list[float]:
    """Normalize a vector to unit length (L2 norm).

    Returns the input unchanged (as a list) if it has zero magnitude.
    """
    magnitude = math.sqrt(sum(x * x for x in vector))
    if magnitude == 0:
        return list(vector)
    return [x / magnitude for x in vector]


def is_normalized(vector: Sequence[float], tolerance: float = NORMALIZATION_TOLERANCE) -> bool:
    """Check whether a vector has unit L2 norm within ``tolerance``."""
    magnitude = math.sqrt(sum(x * x for x in vector))
    return abs(magnitude - 1.0) <= tolerance


def truncate_embedding(
    vector: Sequence[float],
    dims: int,
    renormalize: bool = True,
) -> list[float]:
    """Matryoshka truncation: keep the first ``dims`` components.

    Args:
        vector: Full-length embedding.
        dims: Target dimension, at most ``len(vector)``.
        renormalize: Rescale the prefix to unit length. When False the
            prefix values are returned unchanged.

    Raises:
        ValueError: If ``dims`` is not positive or exceeds the vector length.
    """
    if dims <= 0:
        raise ValueError(f"Target dimension must be positive, got {dims}")
    if dims > len(vector):
        raise ValueError(f"Cannot truncate {len(vector)}-dim vector to {dims} dimensions")
    prefix = list(vector[:dims])
    return l2_normalize(prefix) if renormalize else prefix


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero magnitude."""
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


class EmbeddingBackend(ABC):
    """Turns text into unit-normalized vectors of a fixed dimension."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Dimension of every vector this backend returns."""

    @abstractmethod
    async def is_ready(self) -> bool:
        """Whether the backend can serve requests right now."""

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in as few backend calls as possible.

        Raises:
            EmbeddingUnavailable: If the backend cannot produce embeddings.
        """

    async def embed(self, text: str) -> list[float]:
        """Embed a single text.

        Raises:
            EmbeddingUnavailable: If the backend cannot produce an embedding.
        """
        vectors = await self.embed_batch([text])
        return vectors[0]


def _create_openai_client(
    api_key: str,
    base_url: str,
    timeout: float = 120.0,
) -> AsyncOpenAI:
    """Create an async OpenAI client for an OpenAI-compatible endpoint."""
    return AsyncOpenAI(
        api_key=api_key or "unused",
        base_url=base_url,
        timeout=httpx.Timeout(timeout, connect=10.0),
        max_retries=0,
    )


def _is_retryable(error: Exception) -> bool:
    error_str = str(error).lower()
    # Don't retry on auth/permission/bad-request errors
    if any(code in error_str for code in ["401", "403", "400"]):
        return False
    return any(
        marker in error_str
        for marker in ["429", "500", "502", "503", "timeout", "timed out", "connection"]
    )


class OpenAIEmbeddingBackend(EmbeddingBackend):
    """Embedding backend for OpenAI-compatible APIs.

    Vectors are truncated to ``dimensions`` and renormalized, so a 768-dim
    model such as nomic-embed-text can back a 256-dim index.
    """

    def __init__(
        self,
        model: str,
        dimensions: int,
        api_key: str = "",
        base_url: str = "https://api.openai.com/v1",
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = MAX_RETRIES,
        client: Optional[AsyncOpenAI] = None,
    ):
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self.model = model
        self._dimensions = dimensions
        self.batch_size = max(1, batch_size)
        self.max_retries = max(1, max_retries)
        self._client = client or _create_openai_client(api_key, base_url)
        self._ready = False

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def is_ready(self) -> bool:
        """Probe the model list once; a positive answer is cached."""
        if self._ready:
            return True
        try:
            page = await self._client.models.list()
        except Exception as e:
            logger.warning(f"Embedding backend not reachable: {e}")
            return False

        available = {model.id for model in page.data}
        self._ready = any(
            model_id == self.model or model_id.split(":", 1)[0] == self.model
            for model_id in available
        )
        if not self._ready:
            logger.warning(f"Embedding model '{self.model}' is not available on the backend")
        return self._ready

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        vectors: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            vectors.extend(await self._embed_batch_with_retry(batch))
        return vectors

    async def _embed_batch_with_retry(self, texts: list[str]) -> list[list[float]]:
        """Embed one API batch with exponential backoff retry."""
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = await self._client.embeddings.create(model=self.model, input=texts)
            except Exception as e:
                last_error = e
                if _is_retryable(e) and attempt < self.max_retries - 1:
                    sleep_time = 2**attempt
                    logger.debug(
                        f"Embedding attempt {attempt + 1} failed ({e}); retrying in {sleep_time}s"
                    )
                    await asyncio.sleep(sleep_time)
                    continue
                break

            if len(response.data) != len(texts):
                raise EmbeddingUnavailable(
                    f"Embedding API returned {len(response.data)} embeddings for "
                    f"{len(texts)} inputs"
                )
            ordered = sorted(response.data, key=lambda item: item.index)
            return [self._fit(item.embedding) for item in ordered]

        raise EmbeddingUnavailable(
            f"Embedding request failed: {last_error or 'unknown error'}"
        ) from last_error

    def _fit(self, raw: list[float]) -> list[float]:
        if len(raw) < self._dimensions:
            raise InvalidEmbedding(
                f"Embedding dimension mismatch: got {len(raw)}, expected at least "
                f"{self._dimensions}"
            )
        return truncate_embedding(raw, self._dimensions)


def create_embedding_backend(settings: Settings) -> EmbeddingBackend:
    """Build the embedding backend selected by ``settings.embedding_provider``.

    Raises:
        ValueError: If the provider is unknown or misconfigured.
    """
    provider = settings.embedding_provider.strip().lower()

    if provider == "ollama":
        return OpenAIEmbeddingBackend(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.embedding_api_key or "ollama",
            base_url=settings.embedding_api_base_url,
            batch_size=settings.embedding_batch_size,
        )

    if provider == "openai":
        if not settings.embedding_api_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set EMBEDDING_API_KEY or switch EMBEDDING_PROVIDER to ollama."
            )
        return OpenAIEmbeddingBackend(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.embedding_api_key,
            base_url=settings.embedding_api_base_url,
            batch_size=settings.embedding_batch_size,
        )

    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")
