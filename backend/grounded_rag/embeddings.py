"""
Embedding Module

Embedding-generation collaborator used by the reranker and the knowledge
store. Query embeddings are cached in a small TTL + LRU map so the same
text embedded twice within a turn (store search, then reranking) only
costs one API call.
"""

import copy
import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import httpx
from openai import OpenAI

from langsmith import traceable

from .config import (
    CACHE_MAX_ENTRIES,
    EMBEDDING_CACHE_TTL_SECONDS,
    OPENAI_API_KEY,
    OPENAI_EMBEDDING_MODEL,
    OPENAI_EMBEDDING_DIMENSIONS,
    USE_OLLAMA,
    OLLAMA_ENDPOINT,
    OLLAMA_EMBEDDING_MODEL,
    OLLAMA_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


class Embedder:
    """Base embedder with a thread-safe in-memory cache."""

    def __init__(self):
        self._cache: "OrderedDict[str, Tuple[float, List[float]]]" = OrderedDict()
        self._cache_lock = Lock()

    @staticmethod
    def _normalize(text: str) -> str:
        return " ".join(text.strip().lower().split())

    def _cache_get(self, key: str) -> Optional[List[float]]:
        now = time.time()
        with self._cache_lock:
            payload = self._cache.get(key)
            if payload is None:
                return None
            ts, value = payload
            if now - ts > EMBEDDING_CACHE_TTL_SECONDS:
                self._cache.pop(key, None)
                return None
            self._cache.move_to_end(key)
            return copy.deepcopy(value)

    def _cache_set(self, key: str, value: List[float]) -> None:
        with self._cache_lock:
            self._cache[key] = (time.time(), copy.deepcopy(value))
            self._cache.move_to_end(key)
            while len(self._cache) > CACHE_MAX_ENTRIES:
                self._cache.popitem(last=False)

    def embed(self, text: str) -> List[float]:
        key = self._normalize(text)
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        vector = self._embed_uncached(text)
        self._cache_set(key, vector)
        return vector

    def _embed_uncached(self, text: str) -> List[float]:
        raise NotImplementedError


class OpenAIEmbedder(Embedder):
    def __init__(self, client: Optional[OpenAI] = None):
        super().__init__()
        self.client = client or OpenAI(api_key=OPENAI_API_KEY)

    @traceable(name="embeddings.openai", run_type="embedding")
    def _embed_uncached(self, text: str) -> List[float]:
        request_kwargs: Dict[str, Any] = {
            "model": OPENAI_EMBEDDING_MODEL,
            "input": text,
        }
        if OPENAI_EMBEDDING_DIMENSIONS > 0:
            request_kwargs["dimensions"] = OPENAI_EMBEDDING_DIMENSIONS

        response = self.client.embeddings.create(**request_kwargs)
        return response.data[0].embedding


class OllamaEmbedder(Embedder):
    def __init__(self, endpoint: str = OLLAMA_ENDPOINT, model: str = OLLAMA_EMBEDDING_MODEL):
        super().__init__()
        self.model = model
        self._client = httpx.Client(
            base_url=endpoint.rstrip("/"),
            timeout=httpx.Timeout(OLLAMA_TIMEOUT_SECONDS, connect=5.0),
        )

    @traceable(name="embeddings.ollama", run_type="embedding")
    def _embed_uncached(self, text: str) -> List[float]:
        resp = self._client.post("/api/embeddings", json={"model": self.model, "prompt": text})
        resp.raise_for_status()
        return resp.json()["embedding"]


# Singleton instance
_embedder: Optional[Embedder] = None


def get_embedder() -> Embedder:
    """Get or create the Embedder singleton."""
    global _embedder
    if _embedder is None:
        _embedder = OllamaEmbedder() if USE_OLLAMA else OpenAIEmbedder()
    return _embedder
