"""
Reranker Module

Second relevance pass over retrieved fragments.

Default strategy (``embedding``): cosine similarity between the query
embedding and each fragment's embedding, blended with the store score:

    final = similarity_weight * cosine + original_weight * relevance

Alternative strategy (``keyword``): share of the query's keywords found in
the fragment, blended 0.6 / 0.4 with the store score. No embedding calls.

Reranking is an enhancement only: any failure returns the input order, and
repeated failures disable the reranker for a cooldown period.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from langsmith import traceable

from .cancellation import CancellationToken
from .config import (
    RERANK_MAX_WORKERS,
    RERANK_ORIGINAL_WEIGHT,
    RERANK_SIMILARITY_WEIGHT,
    RERANK_STRATEGY,
    RERANK_TOP_K,
    RERANKER_FAILURE_COOLDOWN_SECONDS,
)
from .embeddings import Embedder, get_embedder
from .exceptions import TurnCancelled
from .keywords import KeywordExtractor, get_keyword_extractor
from .models import RetrievedFragment

logger = logging.getLogger(__name__)

KEYWORD_MATCH_WEIGHT = 0.6
KEYWORD_ORIGINAL_WEIGHT = 0.4
KEYWORD_QUERY_MAX_KEYWORDS = 10


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product over the product of magnitudes; 0.0 when either magnitude is 0."""
    if len(a) != len(b):
        raise ValueError(f"Vectors must have the same dimension ({len(a)} != {len(b)})")
    dot = sum(x * y for x, y in zip(a, b))
    magnitude = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if magnitude == 0.0:
        return 0.0
    return dot / magnitude


def _truncate(fragments: List[RetrievedFragment], top_k: int) -> List[RetrievedFragment]:
    return fragments[:top_k] if top_k >= 0 else fragments


def rerank_by_keyword_overlap(
    query: str,
    fragments: List[RetrievedFragment],
    extractor: Optional[KeywordExtractor] = None,
    top_k: int = RERANK_TOP_K,
) -> List[RetrievedFragment]:
    """Embedding-free rerank on the share of query keywords each fragment contains."""
    if not fragments or not query or not query.strip():
        return fragments

    extractor = extractor or get_keyword_extractor()
    keywords = {k.lower() for k in extractor.extract_keywords(query, KEYWORD_QUERY_MAX_KEYWORDS)}

    scored = []
    for fragment in fragments:
        text = fragment.text.lower()
        matches = sum(1 for k in keywords if k in text)
        keyword_score = matches / max(len(keywords), 1)
        blended = KEYWORD_MATCH_WEIGHT * keyword_score + KEYWORD_ORIGINAL_WEIGHT * fragment.relevance_score
        logger.debug(
            "Keyword rerank %s | matches %d/%d | score %.3f",
            fragment.citation, matches, len(keywords), blended,
        )
        scored.append((fragment, blended))

    scored.sort(key=lambda item: item[1], reverse=True)
    for fragment, blended in scored:
        fragment.relevance_score = blended
    return _truncate([fragment for fragment, _ in scored], top_k)


class Reranker:
    """
    Reorders fragments by semantic similarity to the query.

    Fragment embeddings are requested in parallel; results are merged by
    input position so the outcome does not depend on completion order.
    ``relevance_score`` of each fragment is overwritten with its blended
    score, but only after every score was computed.
    """

    def __init__(
        self,
        embedder: Optional[Embedder] = None,
        similarity_weight: float = RERANK_SIMILARITY_WEIGHT,
        original_weight: float = RERANK_ORIGINAL_WEIGHT,
        max_workers: int = RERANK_MAX_WORKERS,
        strategy: str = RERANK_STRATEGY,
        extractor: Optional[KeywordExtractor] = None,
    ):
        self._embedder = embedder
        self.similarity_weight = similarity_weight
        self.original_weight = original_weight
        self.max_workers = max(1, max_workers)
        self.strategy = strategy
        self.extractor = extractor
        self._disabled_until = 0.0
        self._consecutive_failures = 0
        logger.info(
            "Reranker initialized: strategy=%s weights=%.2f/%.2f",
            strategy, similarity_weight, original_weight,
        )

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = get_embedder()
        return self._embedder

    def _mark_success(self) -> None:
        self._consecutive_failures = 0
        self._disabled_until = 0.0

    def _mark_failure(self, reason: str) -> None:
        self._consecutive_failures += 1
        logger.warning("Reranker failure (%d), keeping original order: %s", self._consecutive_failures, reason)
        if self._consecutive_failures >= 3:
            self._disabled_until = time.time() + RERANKER_FAILURE_COOLDOWN_SECONDS
            logger.warning(
                "Reranker temporarily disabled for %.0fs",
                RERANKER_FAILURE_COOLDOWN_SECONDS,
            )

    def _embed(self, text: str, cancel: CancellationToken) -> List[float]:
        cancel.raise_if_cancelled()
        return self.embedder.embed(text)

    def _embed_all(self, texts: List[str], cancel: CancellationToken) -> List[List[float]]:
        if self.max_workers == 1 or len(texts) == 1:
            return [self._embed(t, cancel) for t in texts]
        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(texts)))
        futures = [pool.submit(self._embed, t, cancel) for t in texts]
        try:
            return [future.result() for future in futures]
        except TurnCancelled:
            # Requests not yet started are dropped
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        finally:
            pool.shutdown(wait=True)

    def blended_scores(
        self,
        query: str,
        fragments: List[RetrievedFragment],
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[float]:
        cancel = cancel_token or CancellationToken()
        query_vector = self._embed(query, cancel)
        fragment_vectors = self._embed_all([f.text for f in fragments], cancel)

        scores = []
        for fragment, vector in zip(fragments, fragment_vectors):
            similarity = cosine_similarity(query_vector, vector)
            blended = self.similarity_weight * similarity + self.original_weight * fragment.relevance_score
            logger.debug(
                "Rerank %s | original %.3f | similarity %.3f | blended %.3f",
                fragment.citation, fragment.relevance_score, similarity, blended,
            )
            scores.append(blended)
        return scores

    @traceable(name="reranker.rerank", run_type="chain")
    def rerank(
        self,
        query: str,
        fragments: List[RetrievedFragment],
        top_k: int = RERANK_TOP_K,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[RetrievedFragment]:
        """
        Rerank fragments against the query.

        Args:
            query: The standalone question
            fragments: Retrieved fragments in store order
            top_k: Keep only the best ``top_k``; negative keeps all
            cancel_token: Checked before every embedding call; a cancelled
                token raises ``TurnCancelled`` instead of degrading

        Returns:
            Fragments sorted by blended score, or ``fragments`` unchanged for
            fewer than two fragments, a blank query or any failure.
        """
        if len(fragments) < 2 or not query or not query.strip():
            return fragments

        if self.strategy == "keyword":
            return rerank_by_keyword_overlap(query, fragments, self.extractor, top_k)

        if time.time() < self._disabled_until:
            logger.debug("Reranker disabled (cooldown), returning original order")
            return fragments

        t_start = time.perf_counter()
        try:
            scores = self.blended_scores(query, fragments, cancel_token)
        except TurnCancelled:
            raise
        except Exception as exc:
            self._mark_failure(str(exc))
            return fragments
        self._mark_success()

        order = sorted(range(len(fragments)), key=lambda i: scores[i], reverse=True)
        for i in order:
            fragments[i].relevance_score = scores[i]
        reranked = _truncate([fragments[i] for i in order], top_k)

        if order != list(range(len(fragments))):
            logger.info("Reranking changed fragment order")
        logger.info("Reranked %d fragment(s) in %.2fs", len(fragments), time.perf_counter() - t_start)
        return reranked


# Singleton instance
_reranker: Optional[Reranker] = None


def get_reranker() -> Reranker:
    """Get or create Reranker singleton."""
    global _reranker
    if _reranker is None:
        _reranker = Reranker()
    return _reranker
