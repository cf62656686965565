"""
Keyword & Entity Extraction

Local text analysis used to add keyword filters to a retrieval request.
No external calls are made. Four extractors are combined:

  1. Frequency: most common non-stopword tokens longer than 3 characters
  2. Technical terms: substring match against a fixed vocabulary
  3. Key phrases: RAKE-style runs of 2-4 content words between stopwords
  4. Entities: runs of capitalized words (Latin-1 diacritics included)

Every ranking uses a secondary alphabetical sort so the output is
deterministic for a given input.
"""

import re
from collections import Counter
from typing import Iterable, List, Optional, Sequence

from .config import KEYWORD_MAX_KEYWORDS, KEYWORD_MAX_ENTITIES

STOPWORDS = frozenset({
    # German
    "der", "die", "das", "und", "oder", "aber", "in", "auf", "von", "zu", "mit", "für",
    "ist", "sind", "war", "waren", "wird", "werden", "wurde", "wurden", "hat", "haben",
    "ein", "eine", "einer", "einem", "einen", "des", "dem", "den", "als", "auch", "an",
    "bei", "nach", "um", "am", "im", "zum", "zur", "über", "unter", "durch", "vor",
    # English
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "having",
    "do", "does", "did", "doing", "would", "should", "could", "ought", "will", "shall",
    "may", "might", "must", "can", "this", "that", "these", "those", "i", "you", "he",
    "she", "it", "we", "they", "them", "their", "what", "which", "who", "when", "where",
    "why", "how", "all", "each", "every", "both", "few", "more", "most", "other", "some",
    "such", "no", "nor", "not", "only", "own", "same", "so", "than", "too", "very",
    "from", "up", "down", "out", "off", "over", "under", "again", "further", "then",
    "once", "here", "there", "about", "above", "after", "before", "below", "between",
    "during", "through", "into", "by", "as", "if", "because", "while", "until",
})

TECHNICAL_TERMS = (
    # api & web
    "api", "sdk", "http", "rest", "graphql", "grpc", "json", "xml", "yaml",
    "oauth", "jwt", "webhook", "endpoint", "middleware",
    # storage
    "sql", "nosql", "mongodb", "postgresql", "redis", "database", "cache",
    "storage", "repository", "index", "schema",
    # cloud & infrastructure
    "docker", "kubernetes", "azure", "aws", "gcp", "cloud", "serverless",
    "container", "deployment", "ingress", "namespace",
    # architecture
    "microservice", "architecture", "framework", "library", "plugin",
    "monolith", "distributed", "event-driven",
    # ai & retrieval
    "llm", "gpt", "embedding", "vector", "semantic", "transformer",
    "openai", "ollama", "inference", "fine-tuning", "prompt",
    "rag", "retrieval", "chunk", "chunking", "similarity", "cosine",
    "rerank", "reranking", "hybrid-search", "vector-search",
    # documents
    "pdf", "ocr", "markdown", "html", "document", "parser", "metadata",
    "table", "figure", "paragraph",
    # nlp & search
    "nlp", "tokenization", "stemming", "stopword", "tf-idf", "bm25",
    "keyword", "ngram", "classification", "elasticsearch", "lucene",
    "ranking", "scoring",
    # programming
    "python", "typescript", "javascript", "java", "async", "thread",
    "exception", "logging", "telemetry",
    # security
    "encryption", "certificate", "tls", "authentication", "authorization", "rbac",
)

_UPPER = "A-ZÀ-ÖØ-Þ"
_LOWER = "a-zß-öø-ÿ"
_ENTITY_RE = re.compile(rf"\b[{_UPPER}][{_LOWER}]+(?:\s+[{_UPPER}][{_LOWER}]+)*\b")
_TOKEN_SPLIT_RE = re.compile(r"\W+")
_WHITESPACE_RE = re.compile(r"\s+")


def _dedupe_casefold(items: Iterable[str]) -> List[str]:
    """Drop case-insensitive duplicates, keeping first occurrence order."""
    seen = set()
    result: List[str] = []
    for item in items:
        folded = item.casefold()
        if folded in seen:
            continue
        seen.add(folded)
        result.append(item)
    return result


class KeywordExtractor:
    """Extracts keywords, key phrases and named entities from free text."""

    def __init__(
        self,
        stopwords: Optional[Iterable[str]] = None,
        technical_terms: Optional[Sequence[str]] = None,
    ):
        self.stopwords = frozenset(w.lower() for w in (stopwords if stopwords is not None else STOPWORDS))
        self.technical_terms = tuple(technical_terms if technical_terms is not None else TECHNICAL_TERMS)
        # Longest alternatives first so "an" is not shadowed by "a"
        alternatives = "|".join(re.escape(w) for w in sorted(self.stopwords, key=len, reverse=True))
        self._phrase_delimiter_re = re.compile(rf"\b(?:{alternatives})\b|[^\w\s]+", re.IGNORECASE)

    # ── Method 1: frequency ──────────────────────────────────────────

    def frequent_words(self, text: str, top_n: int) -> List[str]:
        words = [
            w for w in _TOKEN_SPLIT_RE.split(text.lower())
            if len(w) > 3 and w not in self.stopwords
        ]
        ranked = sorted(Counter(words).items(), key=lambda item: (-item[1], item[0]))
        return [word for word, _ in ranked[:top_n]]

    # ── Method 2: technical vocabulary ───────────────────────────────

    def technical_terms_in(self, text: str) -> List[str]:
        lowered = text.lower()
        return [term for term in self.technical_terms if term in lowered]

    # ── Method 3: RAKE-style key phrases ─────────────────────────────

    def key_phrases(self, text: str, top_n: int) -> List[str]:
        if not text or not text.strip():
            return []

        candidates = [
            piece.strip() for piece in self._phrase_delimiter_re.split(text.lower())
        ]
        candidates = [
            c for c in candidates
            if c and len(c) > 3 and c not in self.stopwords
        ]

        phrases: List[str] = []
        for candidate in candidates:
            words = _WHITESPACE_RE.split(candidate)
            if 2 <= len(words) <= 4 and all(len(w) > 2 for w in words):
                phrases.append(" ".join(words))

        word_frequency = Counter(w for phrase in phrases for w in phrase.split(" "))

        scored = []
        for phrase, occurrences in Counter(phrases).items():
            words = phrase.split(" ")
            word_score = sum(word_frequency[w] for w in words)
            scored.append((phrase, word_score * occurrences + len(words) * 2))

        scored.sort(key=lambda item: (-item[1], item[0]))
        return [phrase for phrase, _ in scored[:top_n]]

    # ── Method 4: named entities ─────────────────────────────────────

    def named_entities(self, text: str, max_entities: int = KEYWORD_MAX_ENTITIES) -> List[str]:
        matches = [
            m.group(0) for m in _ENTITY_RE.finditer(text or "")
            if len(m.group(0)) > 2 and m.group(0).lower() not in self.stopwords
        ]
        ranked = sorted(Counter(matches).items(), key=lambda item: (-item[1], item[0]))
        return [entity for entity, _ in ranked[:max_entities]]

    # ── Combined ─────────────────────────────────────────────────────

    def extract_keywords(self, text: str, max_keywords: int = KEYWORD_MAX_KEYWORDS) -> List[str]:
        """Frequency + technical + phrase keywords, deduplicated case-insensitively."""
        if not text or not text.strip():
            return []

        merged = _dedupe_casefold(
            self.frequent_words(text, max_keywords // 2)
            + self.technical_terms_in(text)
            + self.key_phrases(text, max_keywords // 3)
        )
        return merged[:max_keywords]

    def extract_tags(
        self,
        text: str,
        max_keywords: int = KEYWORD_MAX_KEYWORDS,
        max_entities: int = KEYWORD_MAX_ENTITIES,
    ) -> List[str]:
        """Keywords and entities merged into one retrieval filter list."""
        if not text or not text.strip():
            return []
        return _dedupe_casefold(
            self.extract_keywords(text, max_keywords) + self.named_entities(text, max_entities)
        )


# Singleton instance
_extractor: Optional[KeywordExtractor] = None


def get_keyword_extractor() -> KeywordExtractor:
    """Get or create KeywordExtractor singleton."""
    global _extractor
    if _extractor is None:
        _extractor = KeywordExtractor()
    return _extractor
