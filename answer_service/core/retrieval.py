from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from threading import Lock
from typing import List, Optional, Protocol

import httpx

from answer_service.core.models import Knowledge
from answer_service.core.providers import EmbeddingBackend
from answer_service.core.settings import Settings

logger = logging.getLogger(__name__)

NO_KNOWLEDGE_MESSAGE = "no knowledge vectors found"
_TOKEN_RE = re.compile(r"\w+", flags=re.UNICODE)


class NoKnowledgeFound(Exception):
    def __init__(self, message: str = NO_KNOWLEDGE_MESSAGE) -> None:
        super().__init__(message)


class KnowledgeRetriever(Protocol):
    async def nearest(self, embedding: EmbeddingBackend, scope: str, query: str) -> List[Knowledge]: ...


class OpenSearchRetriever:
    """Embeds the query through the embedding service and runs a k-NN search."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._os_url = settings.os_url
        self._alias = settings.knowledge_vec_alias
        self._top_k = settings.retrieval_top_k
        self._timeout = settings.retrieval_timeout_ms / 1000.0
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _embed(self, client: httpx.AsyncClient, embedding: EmbeddingBackend, query: str) -> List[float]:
        payload = {"version": "v1", "model": embedding.model, "normalize": True, "texts": [query]}
        resp = await client.post(f"{embedding.url}/v1/embed", json=payload)
        resp.raise_for_status()
        vectors = resp.json().get("vectors") or []
        if not vectors or not isinstance(vectors[0], list):
            raise ValueError(f"embedding backend {embedding.name} returned no vector")
        return [float(item) for item in vectors[0]]

    async def _search(self, client: httpx.AsyncClient, vector: List[float], scope: str) -> List[Knowledge]:
        payload = {
            "size": self._top_k,
            "_source": ["name", "text"],
            "query": {
                "knn": {
                    "embedding": {
                        "vector": vector,
                        "k": self._top_k,
                        "filter": {"term": {"owner": scope}},
                    }
                }
            },
        }
        resp = await client.post(f"{self._os_url}/{self._alias}/_search", json=payload)
        resp.raise_for_status()
        hits = resp.json().get("hits", {}).get("hits", [])
        results: List[Knowledge] = []
        for hit in hits:
            source = hit.get("_source") or {}
            text = str(source.get("text") or "")
            if not text:
                continue
            results.append(
                Knowledge(
                    text=text,
                    score=float(hit.get("_score") or 0.0),
                    vector=str(source.get("name") or hit.get("_id") or ""),
                )
            )
        return results

    async def nearest(self, embedding: EmbeddingBackend, scope: str, query: str) -> List[Knowledge]:
        async with self._client() as client:
            vector = await self._embed(client, embedding, query)
            results = await self._search(client, vector, scope)
        if not results:
            raise NoKnowledgeFound()
        return results


@dataclass
class _Passage:
    owner: str
    vector: str
    text: str
    tokens: frozenset


def _tokens(text: str) -> frozenset:
    return frozenset(token.lower() for token in _TOKEN_RE.findall(text or ""))


class InMemoryRetriever:
    """Token-overlap retrieval over registered passages."""

    def __init__(self, top_k: int = 5) -> None:
        self._top_k = max(1, top_k)
        self._passages: List[_Passage] = []
        self._lock = Lock()

    def add(self, owner: str, vector: str, text: str) -> None:
        with self._lock:
            self._passages.append(_Passage(owner=owner, vector=vector, text=text, tokens=_tokens(text)))

    async def nearest(self, embedding: EmbeddingBackend, scope: str, query: str) -> List[Knowledge]:
        query_tokens = _tokens(query)
        with self._lock:
            passages = [item for item in self._passages if item.owner == scope]
        scored: List[Knowledge] = []
        for passage in passages:
            if not query_tokens:
                break
            overlap = len(query_tokens & passage.tokens)
            if overlap <= 0:
                continue
            scored.append(Knowledge(text=passage.text, score=overlap / len(query_tokens), vector=passage.vector))
        if not scored:
            raise NoKnowledgeFound()
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[: self._top_k]


def build_retriever(settings: Settings) -> KnowledgeRetriever:
    if settings.retrieval_mode == "opensearch":
        return OpenSearchRetriever(settings)
    return InMemoryRetriever(top_k=settings.retrieval_top_k)
