"""
Query Rewriting Module

Turns the chat transcript plus the new user input into one or more
standalone questions, ranked by the model's confidence score. A rewrite
can never stall a turn: anything unusable collapses to a single question
wrapping the raw input.
"""

import logging
from typing import Any, Dict, List, Optional

from langsmith import traceable

from .config import REWRITE_PROMPT_FILE
from .llm import ChatModel, get_chat_model
from .memory import Conversation
from .models import StandaloneQuestion
from .output_parsing import parse_json_payload, preview, sanitize_model_output
from .prompts import load_prompt

logger = logging.getLogger(__name__)

_REWRITER_TEMPERATURE = 0.0
_REWRITER_MAX_TOKENS = 400

_DEFAULT_PROMPT = (
    "Rewrite the last user message of the conversation below into one or more "
    "standalone questions that can be understood without the conversation. "
    "Resolve pronouns and references using the earlier messages.\n"
    "Return ONLY a JSON array of objects with the keys \"standaloneQuestion\" "
    "(string) and \"score\" (confidence between 0 and 1).\n\n"
    "Conversation:\n{transcript}"
)


def _entry_field(entry: Dict[str, Any], name: str) -> Any:
    """Case-insensitive key lookup (models alternate between camel and Pascal case)."""
    lowered = {str(k).lower(): v for k, v in entry.items()}
    return lowered.get(name.lower())


def _to_score(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class QueryRewriter:
    """Produces ranked standalone questions from conversation context."""

    def __init__(self, llm: Optional[ChatModel] = None):
        self.llm = llm or get_chat_model("light")

    @property
    def prompt(self) -> str:
        return load_prompt(REWRITE_PROMPT_FILE, _DEFAULT_PROMPT)

    @staticmethod
    def fallback(user_input: str) -> List[StandaloneQuestion]:
        return [StandaloneQuestion(text=user_input, score=1.0)]

    @staticmethod
    def parse(raw: Optional[str]) -> Optional[List[StandaloneQuestion]]:
        """Parse a rewrite reply into questions sorted by score, or ``None``."""
        cleaned = sanitize_model_output(raw)
        if not cleaned:
            return None

        data = parse_json_payload(cleaned)
        if data is None:
            return None
        if isinstance(data, dict):
            # A single object instead of the requested array
            data = [data]
        if not isinstance(data, list):
            logger.warning("Rewrite payload has unexpected shape: %s", preview(cleaned))
            return None

        questions: List[StandaloneQuestion] = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            text = _entry_field(entry, "standaloneQuestion")
            if not isinstance(text, str) or not text.strip():
                continue
            questions.append(
                StandaloneQuestion(text=text.strip(), score=_to_score(_entry_field(entry, "score")))
            )

        # sorted() is stable: equal scores keep the model's order
        return sorted(questions, key=lambda q: q.score, reverse=True)

    @traceable(name="query_rewriter.rewrite", run_type="chain")
    def rewrite(self, conversation: Conversation, user_input: str) -> List[StandaloneQuestion]:
        """
        Rewrite ``user_input`` into standalone questions.

        Returns a non-empty list ordered by score descending. Falls back to
        the raw input on any failure, non-JSON reply or empty result.
        """
        try:
            transcript = conversation.transcript(user_input)
            raw = self.llm.complete(
                [{"role": "user", "content": self.prompt.format(transcript=transcript)}],
                temperature=_REWRITER_TEMPERATURE,
                max_tokens=_REWRITER_MAX_TOKENS,
            )
            logger.debug("Rewrite raw output: %s", preview(raw))
            questions = self.parse(raw)
        except Exception as exc:
            logger.warning("Query rewriting failed (using original input): %s", exc)
            return self.fallback(user_input)

        if not questions:
            logger.info("Rewrite produced no usable questions, using original input")
            return self.fallback(user_input)

        logger.info(
            "Rewrote input into %d standalone question(s); top='%s' (%.2f)",
            len(questions), questions[0].text[:80], questions[0].score,
        )
        return questions


# Singleton instance
_query_rewriter: Optional[QueryRewriter] = None


def get_query_rewriter() -> QueryRewriter:
    """Get or create QueryRewriter singleton."""
    global _query_rewriter
    if _query_rewriter is None:
        _query_rewriter = QueryRewriter()
    return _query_rewriter
