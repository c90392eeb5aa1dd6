"""Span retrieval with a score floor and a single fallback broadening step."""

from __future__ import annotations

import asyncio
import logging
import re

from coach_agent.config import RetrievalConfig
from coach_agent.ingest.embedder import Embedder
from coach_agent.retrieval.vector_store import VectorStore
from coach_agent.types import RagMeta, RetrievalResult, Span

logger = logging.getLogger(__name__)


class SpanRetriever:
    """Embeds the query once, searches, filters and deduplicates.

    When no span clears `min_score`, the single best span is still returned
    if it lies within `fallback_margin` of the floor (never below
    `fallback_floor`). Any embedding or search failure, including a timeout,
    yields an empty result.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    async def retrieve(
        self,
        query: str,
        *,
        top_k: int | None = None,
        min_score: float | None = None,
    ) -> RetrievalResult:
        text = str(query or "").strip()[: self.config.max_query_chars]
        model = getattr(self.embedder, "model_name", None)
        if not text:
            return RetrievalResult(meta=RagMeta(count=0, mode=None, model=model))

        k = top_k or self.config.top_k
        floor = self.config.min_score if min_score is None else min_score
        try:
            candidates = await asyncio.wait_for(
                self._search(text, k), timeout=self.config.timeout_seconds
            )
        except Exception as exc:
            logger.warning("retrieval failed for query %r: %s", text[:80], exc)
            return RetrievalResult(meta=RagMeta(count=0, mode=None, model=model))

        spans = self._filter(candidates, floor)
        return RetrievalResult(
            spans=spans,
            meta=RagMeta(count=len(spans), mode="raw" if spans else None, model=model),
        )

    async def _search(self, text: str, k: int) -> list[Span]:
        embedding = await self.embedder.aembed_query(text)
        return await asyncio.to_thread(self.vector_store.similarity_search, embedding, k)

    def _filter(self, candidates: list[Span], floor: float) -> list[Span]:
        ranked = sorted(candidates, key=lambda span: span.score, reverse=True)
        kept = [span for span in ranked if span.score >= floor]
        if not kept and ranked:
            relaxed = max(self.config.fallback_floor, floor - self.config.fallback_margin)
            if ranked[0].score >= relaxed:
                kept = [ranked[0]]
        return self._dedupe(kept)

    def _dedupe(self, spans: list[Span]) -> list[Span]:
        seen: set[str] = set()
        unique: list[Span] = []
        for span in spans:
            key = re.sub(r"\s+", " ", span.content).strip().lower()[: self.config.dedupe_prefix_chars]
            if key in seen:
                continue
            seen.add(key)
            unique.append(span)
        return unique
