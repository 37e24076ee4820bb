"""Semantic retrieval over stored embeddings.

Ranking is split in two: a ``VectorIndex`` scores the candidates that have an
embedding, and ``SemanticRetriever`` applies the ordering rules every caller
relies on (score descending, ties broken by most recent ``created_at``,
candidates without an embedding last). The default index is an exact linear
scan; ``ChromaIndex`` swaps in an approximate nearest-neighbour index without
changing callers.
"""

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import chromadb
from chromadb.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """An entity that can be ranked."""

    id: str
    embedding: list[float] | None
    created_at: str
    item: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoredItem:
    """A ranked entity and its cosine similarity to the query."""

    item: dict[str, Any]
    similarity: float
    has_embedding: bool = True

    @property
    def relevance(self) -> int:
        """Similarity as a 0-100 integer for display."""
        return round(self.similarity * 100)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute dot(a, b) / (||a|| * ||b||).

    Returns 0.0 for empty, zero-norm or mismatched-length vectors.
    """
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class VectorIndex(Protocol):
    """Scores embedded candidates against a query vector."""

    def search(
        self,
        query: list[float],
        candidates: Sequence[Candidate],
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        """Return ``(candidate_id, similarity)`` pairs, best first."""
        ...

    def forget(self, ids: Sequence[str]) -> None:
        """Drop entries that no longer exist in the store."""
        ...


class LinearScanIndex:
    """Exact cosine similarity over every candidate."""

    def search(
        self,
        query: list[float],
        candidates: Sequence[Candidate],
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        scored = [
            (c.id, cosine_similarity(query, c.embedding))
            for c in candidates
            if c.embedding
        ]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored if limit is None else scored[:limit]

    def forget(self, ids: Sequence[str]) -> None:
        pass


class ChromaIndex:
    """Approximate nearest-neighbour search backed by a ChromaDB collection.

    Embeddings are mirrored lazily: candidates missing from the collection are
    added on first search. Searches are restricted to the candidate IDs so the
    store's SQL filters still apply.
    """

    def __init__(self, path: Path | None = None, collection_name: str = "facts") -> None:
        """Initialize the ChromaDB client and collection.

        Args:
            path: Directory for a persistent collection; in-memory if None.
            collection_name: Name of the collection to use.
        """
        if path is None:
            self.client = chromadb.EphemeralClient(settings=Settings(anonymized_telemetry=False))
        else:
            self.client = chromadb.PersistentClient(
                path=str(path),
                settings=Settings(anonymized_telemetry=False),
            )
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def _mirror(self, candidates: Sequence[Candidate]) -> None:
        ids = [c.id for c in candidates]
        existing = set(self.collection.get(ids=ids, include=[])["ids"])
        missing = [c for c in candidates if c.id not in existing]
        if missing:
            self.collection.add(
                ids=[c.id for c in missing],
                embeddings=[c.embedding for c in missing],
                metadatas=[{"item_id": c.id, "created_at": c.created_at} for c in missing],
            )

    def search(
        self,
        query: list[float],
        candidates: Sequence[Candidate],
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        embedded = [c for c in candidates if c.embedding]
        if not embedded:
            return []
        self._mirror(embedded)

        n_results = len(embedded) if limit is None else min(limit, len(embedded))
        results = self.collection.query(
            query_embeddings=[query],
            n_results=n_results,
            where={"item_id": {"$in": [c.id for c in embedded]}},
            include=["distances"],
        )
        if not results["ids"] or not results["ids"][0]:
            return []

        distances = results["distances"][0] if results["distances"] else []
        # Cosine distance is 1 - similarity
        return [
            (item_id, 1 - (distances[i] if i < len(distances) else 1.0))
            for i, item_id in enumerate(results["ids"][0])
        ]

    def forget(self, ids: Sequence[str]) -> None:
        if ids:
            self.collection.delete(ids=list(ids))


class SemanticRetriever:
    """Ranks candidates by cosine similarity to a query embedding."""

    def __init__(self, index: VectorIndex | None = None) -> None:
        self.index = index or LinearScanIndex()

    def rank(
        self,
        query: list[float] | None,
        candidates: Sequence[Candidate],
        limit: int | None = None,
    ) -> list[ScoredItem]:
        """Rank candidates against a query vector.

        Args:
            query: Query embedding, or None if the query could not be embedded
                (every candidate then scores 0 and recency decides).
            candidates: Entities to rank.
            limit: Optional maximum number of results.

        Returns:
            Scored items, best first. Candidates without an embedding score 0
            and always come after candidates that have one.
        """
        by_id = {c.id: c for c in candidates}
        hits: dict[str, float] = {}
        if query:
            hits = dict(self.index.search(query, candidates, None))

        embedded = [by_id[item_id] for item_id in hits if item_id in by_id]
        unembedded = [c for c in candidates if c.id not in hits]

        # Stable sorts: recency first, then score
        embedded.sort(key=lambda c: c.created_at or "", reverse=True)
        embedded.sort(key=lambda c: hits[c.id], reverse=True)
        unembedded.sort(key=lambda c: (c.embedding is not None, c.created_at or ""), reverse=True)

        ranked = [ScoredItem(c.item, hits[c.id], True) for c in embedded]
        ranked.extend(ScoredItem(c.item, 0.0, c.embedding is not None) for c in unembedded)
        return ranked if limit is None else ranked[:limit]

    def forget(self, ids: Sequence[str]) -> None:
        self.index.forget(ids)
