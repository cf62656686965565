"""
Pytest configuration and fixtures.
Collaborators (text generation, embeddings, knowledge store) are replaced
by small in-memory fakes so no test touches the network.
"""

from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pytest

from grounded_rag.embeddings import Embedder
from grounded_rag.keywords import KeywordExtractor
from grounded_rag.knowledge_store import KnowledgeStore
from grounded_rag.llm import ChatModel
from grounded_rag.memory import Conversation
from grounded_rag.models import DirectAnswer, StoreHit, StorePartition, TagFilter

Reply = Union[str, Exception, Callable[[str], str]]


class FakeChatModel(ChatModel):
    """Returns scripted replies; the last reply repeats once the script runs out."""

    model = "fake"

    def __init__(self, *replies: Reply, tokens: Optional[List[str]] = None):
        self.replies = list(replies) or [""]
        self.tokens = tokens
        self.calls: List[List[Dict[str, str]]] = []

    @property
    def prompts(self) -> List[str]:
        return [call[-1]["content"] for call in self.calls]

    def _next(self) -> Reply:
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]

    def complete(self, messages, *, temperature=None, max_tokens=None) -> str:
        self.calls.append(messages)
        reply = self._next()
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages[-1]["content"])
        return reply

    def stream(self, messages, *, temperature=None, max_tokens=None):
        if self.tokens is None:
            yield from super().stream(messages, temperature=temperature, max_tokens=max_tokens)
            return
        self.calls.append(messages)
        for token in self.tokens:
            if isinstance(token, Exception):
                raise token
            yield token


class FakeEmbedder(Embedder):
    """Looks vectors up by exact text; unknown texts get ``default``."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=None, error=None):
        super().__init__()
        self.vectors = vectors or {}
        self.default = default if default is not None else [1.0, 0.0]
        self.error = error
        self.requests: List[str] = []

    def _embed_uncached(self, text: str) -> List[float]:
        self.requests.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, self.default))


class FakeKnowledgeStore(KnowledgeStore):
    """
    In-memory store.

    ``search`` returns the hits queued for the namespace (documents namespace
    is ``None``); ``fetch_partitions`` serves partitions from ``documents``.
    """

    def __init__(
        self,
        search_results: Optional[Dict[Optional[str], List[StoreHit]]] = None,
        documents: Optional[Dict[str, Tuple[str, Dict[int, str]]]] = None,
        direct_answer: Optional[DirectAnswer] = None,
        search_error: Optional[Exception] = None,
    ):
        self.search_results = search_results or {}
        self.documents = documents or {}
        self.direct_answer = direct_answer or DirectAnswer()
        self.search_error = search_error
        self.search_calls: List[dict] = []
        self.fetch_calls: List[Tuple[str, List[int]]] = []
        self.ask_calls: List[Tuple[str, float]] = []
        self.upserts: List[Tuple[list, str]] = []
        self.deleted: List[Optional[str]] = []

    def search(self, query, filters=None, min_relevance=0.0, limit=3, namespace=None) -> List[StoreHit]:
        self.search_calls.append({
            "query": query,
            "filters": list(filters) if filters else None,
            "min_relevance": min_relevance,
            "limit": limit,
            "namespace": namespace,
        })
        if self.search_error is not None:
            raise self.search_error
        return [hit.model_copy(deep=True) for hit in self.search_results.get(namespace, [])]

    def fetch_partitions(self, document_id: str, partition_numbers: Iterable[int]) -> List[StorePartition]:
        numbers = list(partition_numbers)
        self.fetch_calls.append((document_id, numbers))
        _, partitions = self.documents.get(document_id, ("", {}))
        return [StorePartition(partition_number=n, text=partitions[n]) for n in numbers if n in partitions]

    def ask_direct(self, query: str, min_relevance: float) -> DirectAnswer:
        self.ask_calls.append((query, min_relevance))
        return self.direct_answer

    def is_document_ready(self, document_id: str) -> bool:
        return document_id in self.documents

    def delete_index(self, namespace: Optional[str] = None) -> None:
        self.deleted.append(namespace)

    def upsert_texts(self, records: Sequence[Tuple[str, str, dict]], namespace: str) -> int:
        self.upserts.append((list(records), namespace))
        return len(records)


def make_hit(document_id: str, source_name: str, *partitions: Tuple[int, str, float], **tags) -> StoreHit:
    """StoreHit with ``(partition_number, text, relevance)`` partitions, all sharing ``tags``."""
    return StoreHit(
        document_id=document_id,
        source_name=source_name,
        partitions=[
            StorePartition(
                partition_number=number,
                text=text,
                relevance=relevance,
                tags={k: [v] if isinstance(v, str) else list(v) for k, v in tags.items()},
            )
            for number, text, relevance in partitions
        ],
    )


@pytest.fixture
def conversation() -> Conversation:
    return Conversation("You are a helpful assistant.")


@pytest.fixture
def extractor() -> KeywordExtractor:
    return KeywordExtractor()


@pytest.fixture
def filters_of():
    """Render a list of TagFilters as ``key=value`` strings."""
    def _render(filters: Optional[List[TagFilter]]) -> List[str]:
        return [f"{f.key}={f.value}" for f in (filters or [])]
    return _render
