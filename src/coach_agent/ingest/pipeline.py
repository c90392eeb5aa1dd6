"""Document indexing: embed -> upsert."""

from __future__ import annotations

import uuid

from coach_agent.ingest.embedder import Embedder
from coach_agent.retrieval.vector_store import IndexedDoc, VectorStore

MAX_CONTENT_CHARS = 200_000


class DocumentIndexer:
    """Adds reference documents to the vector store used for grounding.

    Indexing is kept apart from query-time retrieval so it can run from an
    admin endpoint or a batch job.
    """

    def __init__(self, embedder: Embedder, vector_store: VectorStore) -> None:
        self._embedder = embedder
        self._vector_store = vector_store

    def index_document(
        self,
        content: str,
        *,
        title: str | None = None,
        url: str | None = None,
        doc_id: str | None = None,
    ) -> IndexedDoc:
        if not content or not content.strip():
            raise ValueError("content must be a non-empty string")

        doc = IndexedDoc(
            doc_id=doc_id or f"doc-{uuid.uuid4().hex[:12]}",
            content=content[:MAX_CONTENT_CHARS],
            title=(title or "")[:200] or None,
            url=url or None,
        )
        embedding = self._embedder.embed_documents([doc.content])
        self._vector_store.upsert([doc], embedding)
        return doc
