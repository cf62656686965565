"""
Generator Module

Produces the assistant answer from the conversation history and the turn's
retrieval context. Each fragment is rendered with a ``[source:partition]``
citation header so the model can cite it. When the turn skipped retrieval
the model is told it may answer from general knowledge.

The context block is built per call and never written to the conversation.
"""

import logging
from typing import Dict, Iterator, List, Optional

from langsmith import traceable

from .config import CHAT_SYSTEM_PROMPT_FILE
from .exceptions import GenerationError
from .llm import ChatModel, Messages, get_chat_model
from .memory import Conversation
from .prompts import load_prompt
from .retriever import RetrievalResult

logger = logging.getLogger(__name__)

DEFAULT_CHAT_SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions about the user's documents. "
    "Base your answers on the retrieved documents given with the question. "
    "Cite every statement you take from a document with its source tag in the form "
    "[source:partition], exactly as it appears above the document text. "
    "If the documents do not contain the answer, say so instead of guessing."
)

NO_CONTEXT = "No relevant documents found."

GENERAL_KNOWLEDGE_HINT = (
    "No document search was performed for this question. "
    "Answer from the conversation and your general knowledge."
)


def chat_system_prompt() -> str:
    return load_prompt(CHAT_SYSTEM_PROMPT_FILE, DEFAULT_CHAT_SYSTEM_PROMPT)


def build_context(retrieval: Optional[RetrievalResult]) -> str:
    if retrieval is None:
        return NO_CONTEXT
    parts: List[str] = []
    if retrieval.direct_answer and retrieval.direct_answer.answer_text:
        parts.append(f"Knowledge store answer:\n{retrieval.direct_answer.answer_text}")
    for fragment in retrieval.fragments:
        parts.append(f"{fragment.citation}\n{fragment.text}")
    if not parts:
        return NO_CONTEXT
    return "\n\n---\n\n".join(parts)


class AnswerGenerator:
    """Generates answers with the main-tier chat model."""

    def __init__(self, llm: Optional[ChatModel] = None):
        self._llm = llm

    @property
    def llm(self) -> ChatModel:
        if self._llm is None:
            self._llm = get_chat_model("main")
        return self._llm

    def build_messages(
        self,
        conversation: Conversation,
        question: str,
        retrieval: Optional[RetrievalResult],
        rag_performed: bool,
    ) -> Messages:
        messages: List[Dict[str, str]] = conversation.to_chat_messages()
        if rag_performed:
            context = build_context(retrieval)
            content = f"Retrieved Documents:\n{context}\n\n---\n\nUser Question: {question}"
        else:
            messages.append({"role": "system", "content": GENERAL_KNOWLEDGE_HINT})
            content = question
        messages.append({"role": "user", "content": content})
        return messages

    @traceable(name="generator.generate", run_type="chain")
    def generate(
        self,
        conversation: Conversation,
        question: str,
        retrieval: Optional[RetrievalResult] = None,
        rag_performed: bool = False,
    ) -> str:
        """Generate an answer (non-streaming). Raises GenerationError when no answer is produced."""
        messages = self.build_messages(conversation, question, retrieval, rag_performed)
        try:
            answer = self.llm.complete(messages)
        except Exception as exc:
            raise GenerationError(f"Answer generation failed: {exc}") from exc
        if not answer or not answer.strip():
            raise GenerationError("Answer generation returned an empty response")
        return answer

    @traceable(name="generator.generate_stream", run_type="chain")
    def generate_stream(
        self,
        conversation: Conversation,
        question: str,
        retrieval: Optional[RetrievalResult] = None,
        rag_performed: bool = False,
    ) -> Iterator[str]:
        """
        Stream the answer token by token.

        Falls back to a single non-streaming call when the stream fails
        before emitting anything. A failure after partial output raises
        GenerationError so the partial answer is never committed.
        """
        messages = self.build_messages(conversation, question, retrieval, rag_performed)
        emitted = False
        try:
            for token in self.llm.stream(messages):
                if token:
                    emitted = True
                    yield token
        except Exception as exc:
            if emitted:
                raise GenerationError(f"Answer stream broke off: {exc}") from exc
            logger.warning("Streaming failed, falling back to non-stream: %s", exc)

        if not emitted:
            yield self.generate(conversation, question, retrieval, rag_performed)


# Singleton instance
_generator: Optional[AnswerGenerator] = None


def get_generator() -> AnswerGenerator:
    """Get or create AnswerGenerator singleton."""
    global _generator
    if _generator is None:
        _generator = AnswerGenerator()
    return _generator
