"""Embedding abstractions: a deterministic offline embedder and an OpenAI adapter."""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt
from typing import Any

_WORD = re.compile(r"[a-z0-9]+")


class Embedder(ABC):
    """Embedder interface used by indexing and retrieval components."""

    model_name: str = "unknown"

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one query."""

    async def aembed_query(self, text: str) -> list[float]:
        return await asyncio.to_thread(self.embed_query, text)


class HashingEmbedder(Embedder):
    """Deterministic bag-of-words embedding without external model calls.

    Used offline and in tests; scores are cosine similarities of hashed
    token counts, so identical wording scores close to 1.0.
    """

    model_name = "hashing-bow"

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in _WORD.findall(text.lower()):
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            vector[int.from_bytes(digest[:4], "little") % self.dimension] += 1.0

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class OpenAIEmbedder(Embedder):
    """`langchain_openai.OpenAIEmbeddings` behind the `Embedder` contract."""

    def __init__(self, model: str = "text-embedding-3-small", client: Any | None = None) -> None:
        if client is None:
            from langchain_openai import OpenAIEmbeddings

            client = OpenAIEmbeddings(model=model)
        self._client = client
        self.model_name = model

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return self._client.embed_documents(texts)

    def embed_query(self, text: str) -> list[float]:
        return self._client.embed_query(text)

    async def aembed_query(self, text: str) -> list[float]:
        return await self._client.aembed_query(text)
