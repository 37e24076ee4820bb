"""Embedding engine: text to fixed-length vectors.

The engine is a pluggable capability. Anything with an ``embed(text)`` method
returning a list of floats can be injected; ``EmbeddingService`` is the default
sentence-transformers implementation and ``EmbeddingPool`` runs any embedder on
a bounded worker pool with per-call timeouts.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Protocol, runtime_checkable

from sentence_transformers import SentenceTransformer

from flow_memory.errors import EmbeddingFailed
from flow_memory.utils import sanitize_for_embedding

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Anything that deterministically turns text into a vector."""

    def embed(self, text: str) -> list[float]: ...


class EmbeddingService:
    """Handles embedding generation using sentence-transformers.

    This service manages the lazy loading of the embedding model and
    provides methods for generating embeddings from text.
    """

    EMBEDDING_MODEL = "all-MiniLM-L6-v2"

    def __init__(
        self,
        model: SentenceTransformer | None = None,
        model_name: str | None = None,
    ) -> None:
        """Initialize the embedding service.

        Args:
            model: Optional pre-loaded SentenceTransformer model.
                   If None, model will be lazy-loaded on first use.
            model_name: Model to load lazily (defaults to EMBEDDING_MODEL).
        """
        self._model: SentenceTransformer | None = model
        self.model_name = model_name or self.EMBEDDING_MODEL

    @property
    def model(self) -> SentenceTransformer:
        """Lazy-load the embedding model on first use.

        Returns:
            The initialized SentenceTransformer model.

        Raises:
            EmbeddingFailed: If the model fails to load.
        """
        if self._model is None:
            try:
                self._model = SentenceTransformer(self.model_name)
            except Exception as e:
                raise EmbeddingFailed(
                    f"Failed to load embedding model '{self.model_name}': {e}"
                ) from e
        return self._model

    def embed(self, text: str) -> list[float]:
        """Generate a normalized embedding vector for text.

        Args:
            text: Text to embed.

        Returns:
            Embedding vector as list of floats.

        Raises:
            EmbeddingFailed: If text is empty after sanitization or encoding fails.
        """
        clean_text = sanitize_for_embedding(text)
        if not clean_text:
            raise EmbeddingFailed("Cannot generate embedding for empty text")

        try:
            embedding = self.model.encode(
                clean_text, convert_to_numpy=True, normalize_embeddings=True
            )
            return embedding.tolist()
        except EmbeddingFailed:
            raise
        except Exception as e:
            raise EmbeddingFailed(f"Failed to encode text: {e}") from e


class EmbeddingPool:
    """Runs an embedder on a bounded thread pool.

    Every call is bounded by a timeout that is independent of any store lock
    held by the caller, so slow or stuck model calls surface as
    ``EmbeddingFailed`` instead of blocking writers.
    """

    DEFAULT_MAX_WORKERS = 2
    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        embedder: Embedder,
        max_workers: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.embedder = embedder
        self.timeout = self.DEFAULT_TIMEOUT if timeout is None else timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or self.DEFAULT_MAX_WORKERS,
            thread_name_prefix="flow-memory-embed",
        )

    def _collect(self, future: Future, timeout: float | None) -> list[float]:
        try:
            vector = future.result(timeout=self.timeout if timeout is None else timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise EmbeddingFailed("Embedding timed out") from e
        except EmbeddingFailed:
            raise
        except Exception as e:
            raise EmbeddingFailed(f"Embedding failed: {e}") from e
        if not vector:
            raise EmbeddingFailed("Embedder returned an empty vector")
        return [float(v) for v in vector]

    def embed(self, text: str, timeout: float | None = None) -> list[float]:
        """Embed text on the pool.

        Raises:
            EmbeddingFailed: On embedder error, empty output, or timeout.
        """
        return self._collect(self._executor.submit(self.embedder.embed, text), timeout)

    def try_embed(self, text: str) -> list[float] | None:
        """Embed text, returning None (and logging) instead of raising."""
        try:
            return self.embed(text)
        except EmbeddingFailed as e:
            logger.warning("Embedding failed, storing without vector: %s", e)
            return None

    def embed_many(self, texts: list[str]) -> list[list[float] | None]:
        """Embed several texts concurrently; failed items come back as None."""
        futures = [self._executor.submit(self.embedder.embed, text) for text in texts]
        vectors: list[list[float] | None] = []
        for future in futures:
            try:
                vectors.append(self._collect(future, None))
            except EmbeddingFailed as e:
                logger.warning("Embedding failed for chunk: %s", e)
                vectors.append(None)
        return vectors

    def shutdown(self) -> None:
        """Stop the worker pool, cancelling queued work."""
        self._executor.shutdown(wait=False, cancel_futures=True)
