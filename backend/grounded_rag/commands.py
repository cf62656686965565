"""
Control Directives

Slash commands typed into the chat are handled out of band: they never
reach the rewrite/route/retrieve flow and never enter the conversation.

    /q, /exit              end the session
    /clear                 reset the conversation to the system prompt
    /ri, /removeindex      delete the document and intent indexes, then clear
    /im, /reimport         re-run document ingestion, then clear
    /gi, /generateintents  populate the intent index from the taxonomy
    /h, /help              list the commands
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import INTENT_NAMESPACE
from .intent import IntentClassifier, IntentTaxonomy
from .knowledge_store import KnowledgeStore
from .memory import Conversation

logger = logging.getLogger(__name__)


class Directive(str, Enum):
    EXIT = "exit"
    CLEAR = "clear"
    REMOVE_INDEX = "removeindex"
    REIMPORT = "reimport"
    GENERATE_INTENTS = "generateintents"
    HELP = "help"
    UNKNOWN = "unknown"


_ALIASES = {
    "/q": Directive.EXIT,
    "/exit": Directive.EXIT,
    "/clear": Directive.CLEAR,
    "/ri": Directive.REMOVE_INDEX,
    "/removeindex": Directive.REMOVE_INDEX,
    "/im": Directive.REIMPORT,
    "/reimport": Directive.REIMPORT,
    "/gi": Directive.GENERATE_INTENTS,
    "/generateintents": Directive.GENERATE_INTENTS,
    "/h": Directive.HELP,
    "/help": Directive.HELP,
}

HELP_TEXT = (
    "Commands:\n"
    "\t/exit - Exit the program\n"
    "\t/clear - Clear the chat history\n"
    "\t/removeIndex - Delete all indexes\n"
    "\t/reimport - Reimport all documents\n"
    "\t/generateIntents - Build the intent index from the taxonomy\n"
    "\t/help - Show this list"
)

UNKNOWN_TEXT = "Unknown command. Type /help for a list of commands."


def parse_directive(user_input: str) -> Optional[Directive]:
    """Return the directive for a slash command, or ``None`` for a normal message."""
    text = (user_input or "").strip()
    if not text.startswith("/"):
        return None
    return _ALIASES.get(text.lower(), Directive.UNKNOWN)


class DocumentImporter:
    """Ingestion collaborator: re-imports the source documents into the store."""

    def reimport(self) -> int:
        raise NotImplementedError


@dataclass
class DirectiveResult:
    directive: Directive
    message: str
    exit: bool = False
    succeeded: bool = True


class CommandDispatcher:
    """Runs directives against the maintenance collaborators."""

    def __init__(
        self,
        store: Optional[KnowledgeStore] = None,
        classifier: Optional[IntentClassifier] = None,
        taxonomy: Optional[IntentTaxonomy] = None,
        importer: Optional[DocumentImporter] = None,
    ):
        self.store = store
        self.classifier = classifier
        self.taxonomy = taxonomy or IntentTaxonomy.empty()
        self.importer = importer

    def _remove_index(self, conversation: Conversation) -> str:
        if self.store is None:
            raise RuntimeError("no knowledge store configured")
        intent_namespace = self.classifier.namespace if self.classifier is not None else INTENT_NAMESPACE
        self.store.delete_index()
        self.store.delete_index(intent_namespace)
        conversation.reset()
        return "Document and intent indexes removed. Chat history cleared."

    def _reimport(self, conversation: Conversation) -> str:
        if self.importer is None:
            raise RuntimeError("no document importer configured")
        count = self.importer.reimport()
        conversation.reset()
        return f"Reimported {count} document(s). Chat history cleared."

    def _generate_intents(self) -> str:
        if self.classifier is None:
            raise RuntimeError("no intent classifier configured")
        count = self.classifier.populate_index(self.taxonomy)
        return f"Uploaded {count} intent example(s)."

    def dispatch(self, directive: Directive, conversation: Conversation) -> DirectiveResult:
        logger.info("Directive: %s", directive.value)

        if directive == Directive.EXIT:
            return DirectiveResult(directive, "Goodbye.", exit=True)
        if directive == Directive.CLEAR:
            conversation.reset()
            return DirectiveResult(directive, "Chat history cleared.")
        if directive == Directive.HELP:
            return DirectiveResult(directive, HELP_TEXT)
        if directive == Directive.UNKNOWN:
            return DirectiveResult(directive, UNKNOWN_TEXT, succeeded=False)

        try:
            if directive == Directive.REMOVE_INDEX:
                message = self._remove_index(conversation)
            elif directive == Directive.REIMPORT:
                message = self._reimport(conversation)
            else:
                message = self._generate_intents()
        except Exception as exc:
            logger.error("Directive %s failed: %s", directive.value, exc)
            return DirectiveResult(directive, f"Command failed: {exc}", succeeded=False)
        return DirectiveResult(directive, message)
