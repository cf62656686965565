"""
Routing Module

Decides per turn whether the answer needs document retrieval. The model is
asked for ``{"requiresRAG": bool}``; its reply is parsed by an ordered chain
(object, then array, then a bare true/false token) and defaults to ``False``
when nothing matches.

A fixed vocabulary of document-referencing words in the raw user message
forces retrieval on. The override only ever turns ``False`` into ``True``.
"""

import logging
import re
from typing import Any, FrozenSet, Iterable, Optional

from langsmith import traceable

from .config import ROUTING_PROMPT_FILE
from .llm import ChatModel, get_chat_model
from .memory import Conversation
from .models import RoutingDecision
from .output_parsing import (
    coerce_bool,
    first_success,
    looks_like_json,
    parse_json_payload,
    preview,
    sanitize_model_output,
)
from .prompts import load_prompt

logger = logging.getLogger(__name__)

_ROUTER_TEMPERATURE = 0.0
_ROUTER_MAX_TOKENS = 50

# Matched as word prefixes, so inflections count ("summarized", "invoices")
FORCE_RAG_TERMS: FrozenSet[str] = frozenset({
    # English
    "document", "file", "pdf", "polic", "contract", "invoice", "report",
    "manual", "agreement", "summar", "attachment", "upload",
    # German
    "dokument", "datei", "vertrag", "verträg", "rechnung", "richtlinie",
    "bericht", "handbuch", "zusammenfass", "anhang",
})

# Also matched inside a word, for German compounds ("Mietvertrag", "Stromrechnung")
COMPOUND_RAG_TERMS: FrozenSet[str] = frozenset({
    "dokument", "datei", "vertrag", "verträg", "rechnung", "richtlinie",
    "bericht", "handbuch", "police", "zusammenfassung",
})

_DEFAULT_PROMPT = (
    "You decide whether the last user message of a conversation needs a search "
    "in the user's document store (contracts, policies, invoices, manuals, "
    "uploaded files) to be answered, or whether it can be answered from the "
    "conversation and general knowledge.\n"
    "Respond ONLY with JSON: {{\"requiresRAG\": true}} or {{\"requiresRAG\": false}}.\n\n"
    "Conversation:\n{chat}"
)

_WORD_RE = re.compile(r"\w+")


def _verdict_from_object(data: Any) -> Optional[bool]:
    if not isinstance(data, dict):
        return None
    for key, value in data.items():
        if str(key).lower() == "requiresrag":
            return coerce_bool(value)
    return None


def parse_as_object(cleaned: str) -> Optional[bool]:
    return _verdict_from_object(parse_json_payload(cleaned, quiet=True))


def parse_as_array(cleaned: str) -> Optional[bool]:
    data = parse_json_payload(cleaned, quiet=True)
    if not isinstance(data, list) or not data:
        return None
    logger.warning("Routing reply was a JSON array, using its first element: %s", preview(cleaned))
    first = data[0]
    if isinstance(first, dict):
        return _verdict_from_object(first)
    return coerce_bool(first)


def parse_as_bare_token(cleaned: str) -> Optional[bool]:
    if looks_like_json(cleaned):
        return None
    match = _WORD_RE.search(cleaned)
    if match is None:
        return None
    token = match.group(0).lower()
    if token == "true":
        return True
    if token == "false":
        return False
    return None


ROUTING_PARSERS = (parse_as_object, parse_as_array, parse_as_bare_token)


def parse_routing_reply(raw: Optional[str]) -> Optional[bool]:
    """Run the routing parser chain over a raw model reply."""
    cleaned = sanitize_model_output(raw)
    if not cleaned:
        return None
    return first_success(ROUTING_PARSERS, cleaned)


class Router:
    """RAG-or-not routing with a deterministic document-keyword override."""

    def __init__(
        self,
        llm: Optional[ChatModel] = None,
        force_rag_terms: Optional[Iterable[str]] = None,
        compound_terms: Optional[Iterable[str]] = None,
    ):
        self.llm = llm or get_chat_model("light")
        self.force_rag_terms = tuple(sorted(
            t.lower() for t in (force_rag_terms if force_rag_terms is not None else FORCE_RAG_TERMS)
        ))
        self.compound_terms = tuple(sorted(
            t.lower() for t in (compound_terms if compound_terms is not None else COMPOUND_RAG_TERMS)
        ))

    @property
    def prompt(self) -> str:
        return load_prompt(ROUTING_PROMPT_FILE, _DEFAULT_PROMPT)

    def mentions_documents(self, user_message: str) -> bool:
        for word in _WORD_RE.findall((user_message or "").lower()):
            if word.startswith(self.force_rag_terms):
                return True
            if any(term in word for term in self.compound_terms):
                return True
        return False

    def _ask_model(self, conversation: Conversation, user_message: str) -> str:
        chat = conversation.transcript(user_message)
        return self.llm.complete(
            [{"role": "user", "content": self.prompt.format(chat=chat)}],
            temperature=_ROUTER_TEMPERATURE,
            max_tokens=_ROUTER_MAX_TOKENS,
        )

    @traceable(name="router.route", run_type="chain")
    def route(self, conversation: Conversation, user_message: str) -> RoutingDecision:
        """
        Decide whether ``user_message`` needs retrieval.

        Never raises for model or collaborator failures: they degrade to
        ``needs_retrieval=False`` before the keyword override is applied.
        """
        raw = ""
        try:
            raw = self._ask_model(conversation, user_message) or ""
            verdict = parse_routing_reply(raw)
            if verdict is None:
                logger.warning("Unparseable routing reply, defaulting to no RAG: %s", preview(raw))
                verdict = False
        except Exception as exc:
            logger.warning("Routing call failed, defaulting to no RAG: %s", exc)
            verdict = False

        overridden = False
        if not verdict and self.mentions_documents(user_message):
            logger.info("Document keyword in user message, forcing RAG")
            verdict = True
            overridden = True

        logger.info("Rag search: %s", "yes" if verdict else "no")
        return RoutingDecision(needs_retrieval=verdict, raw_output=raw, overridden=overridden)


# Singleton instance
_router: Optional[Router] = None


def get_router() -> Router:
    """Get or create Router singleton."""
    global _router
    if _router is None:
        _router = Router()
    return _router
