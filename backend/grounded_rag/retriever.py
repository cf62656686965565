"""
Retrieval Engine

Hybrid filtered retrieval over the knowledge store:

  1. Intent and keyword tags become a union of tag filters
  2. Filtered similarity search (unfiltered when there are no tags) with a
     relevance floor and a small result cap
  3. Adjacency expansion: partitions N-1 and N+1 of every hit's document
     are fetched so sentences split across chunk borders stay whole
  4. Zero hits fall back to the store's direct-answer ("ask") mode

Fragments are emitted in the store's relevance order; reranking happens
afterwards.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple

from langsmith import traceable

from .cancellation import CancellationToken
from .config import ASK_MIN_RELEVANCE, RETRIEVAL_LIMIT, RETRIEVAL_MIN_RELEVANCE
from .knowledge_store import KnowledgeStore, get_knowledge_store
from .models import DirectAnswer, RetrievedFragment, StoreHit, TagFilter

logger = logging.getLogger(__name__)

INTENT_FILTER_KEY = "intent"
KEYWORD_FILTER_KEY = "keywords"

MODE_SEARCH = "search"
MODE_ASK = "ask"
MODE_NONE = "none"


@dataclass
class RetrievalResult:
    """Fragments of one retrieval cycle plus how they were obtained."""

    fragments: List[RetrievedFragment] = field(default_factory=list)
    mode: str = MODE_NONE
    filters: List[TagFilter] = field(default_factory=list)
    direct_answer: Optional[DirectAnswer] = None

    @property
    def context_chunks(self) -> List[str]:
        chunks = [f.text for f in self.fragments if f.text]
        if self.direct_answer and self.direct_answer.answer_text:
            chunks.append(self.direct_answer.answer_text)
        return chunks


def build_filters(intent_tags: Iterable[str], keyword_tags: Iterable[str]) -> List[TagFilter]:
    """One filter per intent tag then one per keyword tag, duplicates dropped."""
    filters: List[TagFilter] = []
    for key, values in ((INTENT_FILTER_KEY, intent_tags), (KEYWORD_FILTER_KEY, keyword_tags)):
        for value in values or []:
            candidate = TagFilter(key=key, value=value)
            if value and candidate not in filters:
                filters.append(candidate)
    return filters


def _safe_score(value: float) -> float:
    if value is None or math.isnan(value) or math.isinf(value):
        return 0.0
    return float(value)


class RetrievalEngine:
    """Filtered search + adjacency expansion + recall fallback."""

    def __init__(
        self,
        store: Optional[KnowledgeStore] = None,
        min_relevance: float = RETRIEVAL_MIN_RELEVANCE,
        limit: int = RETRIEVAL_LIMIT,
        ask_min_relevance: float = ASK_MIN_RELEVANCE,
    ):
        self.store = store or get_knowledge_store()
        self.min_relevance = min_relevance
        self.limit = limit
        self.ask_min_relevance = ask_min_relevance

    def _search(self, query: str, filters: List[TagFilter]) -> List[StoreHit]:
        if filters:
            return self.store.search(query, filters, min_relevance=self.min_relevance, limit=self.limit)
        return self.store.search(query, None, min_relevance=self.min_relevance, limit=self.limit)

    def _neighbours(self, fragment: RetrievedFragment, cancel: CancellationToken) -> List[RetrievedFragment]:
        cancel.raise_if_cancelled()
        n = fragment.partition_number
        try:
            partitions = self.store.fetch_partitions(fragment.document_id, [n - 1, n + 1])
        except Exception as exc:
            logger.warning(
                "Adjacent partition lookup failed for %s:%d: %s", fragment.document_id, n, exc,
            )
            return []
        return [
            RetrievedFragment(
                document_id=fragment.document_id,
                source_name=fragment.source_name,
                partition_number=p.partition_number,
                text=p.text,
                # Neighbours inherit the score of the hit they were found through
                relevance_score=fragment.relevance_score,
            )
            for p in sorted(partitions, key=lambda p: p.partition_number)
            if p.partition_number in (n - 1, n + 1)
        ]

    def expand_adjacent(
        self,
        fragments: List[RetrievedFragment],
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[RetrievedFragment]:
        """Insert each hit's existing N-1/N+1 partitions right after it."""
        cancel = cancel_token or CancellationToken()
        seen: Set[Tuple[str, int]] = {f.key for f in fragments}
        expanded: List[RetrievedFragment] = []
        for fragment in fragments:
            expanded.append(fragment)
            for neighbour in self._neighbours(fragment, cancel):
                if neighbour.key in seen:
                    continue
                seen.add(neighbour.key)
                expanded.append(neighbour)
        return expanded

    @staticmethod
    def to_fragments(hits: List[StoreHit]) -> List[RetrievedFragment]:
        """Flatten store hits, keeping relevance order and (document, partition) identity."""
        fragments: List[RetrievedFragment] = []
        seen: Set[Tuple[str, int]] = set()
        for hit in hits:
            for partition in hit.partitions:
                fragment = RetrievedFragment(
                    document_id=hit.document_id,
                    source_name=hit.source_name,
                    partition_number=partition.partition_number,
                    text=partition.text,
                    relevance_score=_safe_score(partition.relevance),
                )
                if fragment.key in seen:
                    continue
                seen.add(fragment.key)
                fragments.append(fragment)
        return fragments

    def _ask(self, query: str, filters: List[TagFilter], cancel: CancellationToken) -> RetrievalResult:
        cancel.raise_if_cancelled()
        logger.info("No search hits, falling back to ask mode (min relevance %.2f)", self.ask_min_relevance)
        try:
            answer = self.store.ask_direct(query, self.ask_min_relevance)
        except Exception as exc:
            logger.warning("Ask-mode fallback failed: %s", exc)
            return RetrievalResult(mode=MODE_NONE, filters=filters)
        return RetrievalResult(
            fragments=list(answer.sources),
            mode=MODE_ASK,
            filters=filters,
            direct_answer=answer,
        )

    @traceable(name="retriever.retrieve", run_type="retriever")
    def retrieve(
        self,
        query: str,
        intent_tags: Iterable[str] = (),
        keyword_tags: Iterable[str] = (),
        cancel_token: Optional[CancellationToken] = None,
    ) -> RetrievalResult:
        """
        Retrieve fragments for ``query``.

        Args:
            query: The standalone question
            intent_tags: Category labels from the intent classifier
            keyword_tags: Locally extracted keywords and entities
            cancel_token: Checked before every store call; a cancelled
                token raises ``TurnCancelled``

        Returns:
            RetrievalResult in "search" mode with hits and their neighbours,
            "ask" mode when the search found nothing, or "none" when both
            store calls failed.
        """
        cancel = cancel_token or CancellationToken()
        filters = build_filters(intent_tags, keyword_tags)

        cancel.raise_if_cancelled()
        t_search = time.perf_counter()
        try:
            hits = self._search(query, filters)
        except Exception as exc:
            logger.warning("Knowledge store search failed: %s", exc)
            hits = []
        search_seconds = time.perf_counter() - t_search

        fragments = self.to_fragments(hits)
        if not fragments:
            return self._ask(query, filters, cancel)

        t_expand = time.perf_counter()
        expanded = self.expand_adjacent(fragments, cancel)
        logger.info(
            "Retrieved %d fragment(s) (%d hits + %d adjacent) with %d filter(s) in %.2fs (+%.2fs expansion)",
            len(expanded), len(fragments), len(expanded) - len(fragments), len(filters),
            search_seconds, time.perf_counter() - t_expand,
        )
        return RetrievalResult(fragments=expanded, mode=MODE_SEARCH, filters=filters)


# Singleton instance
_retrieval_engine: Optional[RetrievalEngine] = None


def get_retrieval_engine() -> RetrievalEngine:
    """Get or create RetrievalEngine singleton."""
    global _retrieval_engine
    if _retrieval_engine is None:
        _retrieval_engine = RetrievalEngine()
    return _retrieval_engine
