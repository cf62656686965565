"""
Intent & Keyword Classification

Attaches retrieval filters to a standalone question:

  - intent tags: a similarity search against the intent namespace, which
    holds curated example questions tagged ``intent`` (sub-category) and
    ``mainintent`` (category)
  - keyword tags: local keyword and entity extraction, no external call

The example questions come from the intent taxonomy, a JSON file of
``{category: {subcategory: [questions]}}`` loaded once per process.
"""

import hashlib
import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, Union

from langsmith import traceable

from .config import INTENT_MIN_RELEVANCE, INTENT_NAMESPACE, INTENT_SEARCH_LIMIT, INTENT_TAXONOMY_FILE
from .keywords import KeywordExtractor, get_keyword_extractor
from .knowledge_store import KnowledgeStore, get_knowledge_store
from .models import IntentTagSet

logger = logging.getLogger(__name__)

INTENT_TAG = "intent"
MAIN_INTENT_TAG = "mainintent"


class IntentTaxonomy:
    """Immutable category -> subcategory -> example questions mapping."""

    def __init__(self, categories: Mapping[str, Mapping[str, List[str]]]):
        self._categories = MappingProxyType({
            str(category): MappingProxyType({
                str(sub): tuple(q for q in questions if isinstance(q, str) and q.strip())
                for sub, questions in (subs or {}).items()
            })
            for category, subs in categories.items()
        })

    @property
    def categories(self) -> Mapping[str, Mapping[str, Tuple[str, ...]]]:
        return self._categories

    def __len__(self) -> int:
        return sum(len(qs) for subs in self._categories.values() for qs in subs.values())

    def examples(self) -> Iterator[Tuple[str, str, str]]:
        """Yield ``(category, subcategory, question)`` triples."""
        for category, subs in self._categories.items():
            for sub, questions in subs.items():
                for question in questions:
                    yield category, sub, question

    @classmethod
    def empty(cls) -> "IntentTaxonomy":
        return cls({})


def load_taxonomy(path: Union[str, Path, None] = None) -> IntentTaxonomy:
    """Load the taxonomy file; a missing file yields an empty taxonomy."""
    taxonomy_path = Path(path or INTENT_TAXONOMY_FILE)
    if not taxonomy_path.exists():
        logger.warning("Intent taxonomy file not found: %s", taxonomy_path)
        return IntentTaxonomy.empty()
    data = json.loads(taxonomy_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Intent taxonomy must be a JSON object: {taxonomy_path}")
    taxonomy = IntentTaxonomy(data)
    logger.info("Loaded intent taxonomy: %d categories, %d examples", len(taxonomy.categories), len(taxonomy))
    return taxonomy


def example_id(question: str) -> str:
    return hashlib.sha256(question.encode("utf-8")).hexdigest().upper()


class IntentClassifier:
    """Derives intent and keyword tags used as retrieval filters."""

    def __init__(
        self,
        store: Optional[KnowledgeStore] = None,
        extractor: Optional[KeywordExtractor] = None,
        namespace: str = INTENT_NAMESPACE,
    ):
        self.store = store or get_knowledge_store()
        self.extractor = extractor or get_keyword_extractor()
        self.namespace = namespace

    @traceable(name="intent.search_intents", run_type="retriever")
    def search_intents(self, question: str) -> List[str]:
        """Distinct intent then main-intent values across hits, first occurrence order."""
        hits = self.store.search(
            question,
            None,
            min_relevance=INTENT_MIN_RELEVANCE,
            limit=INTENT_SEARCH_LIMIT,
            namespace=self.namespace,
        )
        intents: List[str] = []
        for hit in hits:
            if not hit.partitions:
                continue
            partition = hit.partitions[0]
            for tag_name in (INTENT_TAG, MAIN_INTENT_TAG):
                value = partition.tag(tag_name)
                if value and value not in intents:
                    intents.append(value)
        return intents

    @traceable(name="intent.classify", run_type="chain")
    def classify(self, question: str) -> IntentTagSet:
        try:
            intents = self.search_intents(question)
        except Exception as exc:
            logger.warning("Intent search failed, continuing without intent tags: %s", exc)
            intents = []

        keywords = self.extractor.extract_tags(question)
        logger.info("Intent tags: %s | keyword tags: %s", intents, keywords)
        return IntentTagSet(intents=intents, keywords=keywords)

    def populate_index(self, taxonomy: IntentTaxonomy) -> int:
        """Upsert every taxonomy example question into the intent namespace."""
        records: Dict[str, Tuple[str, str, Dict[str, str]]] = {}
        for category, sub, question in taxonomy.examples():
            rid = example_id(question)
            records[rid] = (rid, question, {INTENT_TAG: sub, MAIN_INTENT_TAG: category})
        if not records:
            logger.warning("Intent taxonomy is empty, nothing to upsert")
            return 0
        return self.store.upsert_texts(list(records.values()), namespace=self.namespace)


# Singleton instance
_intent_classifier: Optional[IntentClassifier] = None


def get_intent_classifier() -> IntentClassifier:
    """Get or create IntentClassifier singleton."""
    global _intent_classifier
    if _intent_classifier is None:
        _intent_classifier = IntentClassifier()
    return _intent_classifier
