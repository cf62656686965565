"""
Grounding Check Module

Post-hoc check that an answer is supported by the retrieved context.

Policies (``GROUNDING_POLICY``):
  - ``lexical``: token overlap between the answer and any context chunk
  - ``llm``:     fact-check prompt on the light model; if that call fails
                 the lexical verdict is used instead
  - ``strict``:  both checks have to pass

Turns that skipped retrieval are grounded by definition. An ungrounded
answer keeps its text and gets a warning banner in front of it.
"""

import logging
import re
from typing import Iterable, List, Optional, Set, Tuple

from langsmith import traceable

from .config import FACT_CHECK_PROMPT_FILE, GROUNDING_MIN_OVERLAP, GROUNDING_POLICY, UNGROUNDED_WARNING
from .llm import ChatModel, get_chat_model
from .models import AnswerCandidate, GroundingVerdict
from .output_parsing import preview, sanitize_model_output
from .prompts import load_prompt

logger = logging.getLogger(__name__)

POLICY_LEXICAL = "lexical"
POLICY_LLM = "llm"
POLICY_STRICT = "strict"
POLICIES = (POLICY_LEXICAL, POLICY_LLM, POLICY_STRICT)

PASS_MARKER = "score: yes"

_TOKEN_SPLIT_RE = re.compile(r"[\s.,;:!?]+")

_DEFAULT_FACT_CHECK_PROMPT = (
    "You are a fact checker. Decide whether the ANSWER is supported by the CONTEXT.\n"
    "Reply with 'Score: YES' if every claim of the answer can be found in the context, "
    "otherwise reply with 'Score: NO', followed by one sentence of explanation.\n\n"
    "CONTEXT:\n{context}\n\n"
    "ANSWER:\n{answer}"
)


def _token_set(text: str) -> Set[str]:
    return {t.casefold() for t in _TOKEN_SPLIT_RE.split(text or "") if t}


def lexical_overlap(answer: str, chunks: Iterable[str]) -> int:
    """Largest number of distinct tokens the answer shares with a single chunk."""
    answer_tokens = _token_set(answer)
    best = 0
    for chunk in chunks:
        best = max(best, len(answer_tokens & _token_set(chunk)))
    return best


def lexical_grounding(answer: str, chunks: Iterable[str], min_overlap: int = GROUNDING_MIN_OVERLAP) -> bool:
    """Grounded when any chunk shares at least ``min_overlap`` tokens with the answer."""
    chunks = list(chunks)
    if not answer or not answer.strip() or not chunks:
        return False
    return lexical_overlap(answer, chunks) >= min_overlap


def apply_warning(text: str) -> str:
    return f"{UNGROUNDED_WARNING}\n{text}"


class GroundingChecker:
    """Attaches a grounding verdict to a generated answer."""

    def __init__(
        self,
        llm: Optional[ChatModel] = None,
        policy: str = GROUNDING_POLICY,
        min_overlap: int = GROUNDING_MIN_OVERLAP,
    ):
        if policy not in POLICIES:
            raise ValueError(f"Unknown grounding policy '{policy}', expected one of {POLICIES}")
        self._llm = llm
        self.policy = policy
        self.min_overlap = min_overlap

    @property
    def llm(self) -> ChatModel:
        if self._llm is None:
            self._llm = get_chat_model("light")
        return self._llm

    @property
    def prompt(self) -> str:
        return load_prompt(FACT_CHECK_PROMPT_FILE, _DEFAULT_FACT_CHECK_PROMPT)

    def _lexical(self, answer: str, chunks: List[str]) -> Tuple[bool, str]:
        overlap = lexical_overlap(answer, chunks) if chunks else 0
        grounded = lexical_grounding(answer, chunks, self.min_overlap)
        return grounded, f"lexical overlap {overlap} (threshold {self.min_overlap})"

    @traceable(name="grounding.fact_check", run_type="llm")
    def fact_check(self, answer: str, chunks: List[str]) -> Tuple[bool, str]:
        """Ask the light model; raises on collaborator failure."""
        reply = self.llm.generate(
            self.prompt.format(context="\n\n".join(chunks), answer=answer),
            temperature=0.0,
            max_tokens=200,
        )
        cleaned = sanitize_model_output(reply)
        return PASS_MARKER in cleaned.lower(), f"fact check: {preview(cleaned, 120)}"

    def verdict(self, answer: str, chunks: List[str]) -> Tuple[bool, str]:
        if self.policy == POLICY_LEXICAL or not chunks:
            return self._lexical(answer, chunks)

        lexical = self._lexical(answer, chunks)
        try:
            llm = self.fact_check(answer, chunks)
        except Exception as exc:
            logger.warning("Fact-check call failed, using lexical verdict: %s", exc)
            return lexical

        if self.policy == POLICY_STRICT:
            return lexical[0] and llm[0], f"{lexical[1]}; {llm[1]}"
        return llm

    @traceable(name="grounding.check", run_type="chain")
    def check(self, answer_text: str, context_chunks: Iterable[str], rag_performed: bool) -> AnswerCandidate:
        """
        Produce the final answer candidate.

        Args:
            answer_text: Generated answer
            context_chunks: Texts the answer was generated from
            rag_performed: Whether retrieval ran for this turn

        Returns:
            AnswerCandidate; its text carries the warning banner when the
            verdict is ungrounded.
        """
        if not rag_performed:
            return AnswerCandidate(
                text=answer_text,
                grounding_verdict=GroundingVerdict.GROUNDED,
                grounding_explanation="no retrieval for this turn",
            )

        chunks = [c for c in context_chunks if c and c.strip()]
        grounded, explanation = self.verdict(answer_text, chunks)
        logger.info("Grounding (%s): %s | %s", self.policy, "grounded" if grounded else "UNGROUNDED", explanation)

        if grounded:
            return AnswerCandidate(
                text=answer_text,
                grounding_verdict=GroundingVerdict.GROUNDED,
                grounding_explanation=explanation,
            )
        return AnswerCandidate(
            text=apply_warning(answer_text),
            grounding_verdict=GroundingVerdict.UNGROUNDED,
            grounding_explanation=explanation,
        )


# Singleton instance
_grounding_checker: Optional[GroundingChecker] = None


def get_grounding_checker() -> GroundingChecker:
    """Get or create GroundingChecker singleton."""
    global _grounding_checker
    if _grounding_checker is None:
        _grounding_checker = GroundingChecker()
    return _grounding_checker
