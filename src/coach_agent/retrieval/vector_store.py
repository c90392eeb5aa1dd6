"""Vector store interface and an in-memory nearest-neighbor adapter."""

from __future__ import annotations

from dataclasses import dataclass
from math import sqrt
from typing import Protocol

from coach_agent.types import Span


@dataclass(slots=True)
class IndexedDoc:
    doc_id: str
    content: str
    title: str | None = None
    url: str | None = None


class VectorStore(Protocol):
    """Minimal nearest-neighbor contract for retrieval."""

    def upsert(self, docs: list[IndexedDoc], embeddings: list[list[float]]) -> None:
        """Insert or update document vectors."""

    def similarity_search(self, query_embedding: list[float], k: int) -> list[Span]:
        """Return up to `k` spans with similarity scores, best first."""


@dataclass(slots=True)
class _StoredVector:
    doc: IndexedDoc
    embedding: list[float]


class InMemoryVectorStore:
    """Deterministic vector store used for tests and local runs."""

    def __init__(self) -> None:
        self._store: dict[str, _StoredVector] = {}

    def __len__(self) -> int:
        return len(self._store)

    def upsert(self, docs: list[IndexedDoc], embeddings: list[list[float]]) -> None:
        if len(docs) != len(embeddings):
            raise ValueError("docs and embeddings must have the same length")
        for doc, embedding in zip(docs, embeddings, strict=True):
            self._store[doc.doc_id] = _StoredVector(doc=doc, embedding=embedding)

    def similarity_search(self, query_embedding: list[float], k: int) -> list[Span]:
        ranked = sorted(
            (
                Span(
                    content=record.doc.content,
                    score=_cosine_similarity(query_embedding, record.embedding),
                    title=record.doc.title,
                    url=record.doc.url,
                )
                for record in self._store.values()
            ),
            key=lambda span: span.score,
            reverse=True,
        )
        return ranked[:k]


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
