"""
Turn State Machine

One user turn walks through a fixed set of states::

    IDLE -> REWRITING -> ROUTING -> ROUTED_NO_RAG -> ANSWERING
                                 -> ROUTED_RAG -> CLASSIFYING -> RETRIEVING -> RERANKING -> ANSWERING
         ANSWERING -> GROUNDING_CHECK -> RESPONDED -> IDLE
    IDLE -> EXIT   (quit signal, terminal)

Pipeline steps return an event; ``TurnContext.absorb`` looks the event up
in ``TRANSITIONS`` and returns a new context carrying the event's data.
Contexts are immutable, so a turn that fails or is cancelled leaves
nothing half-applied.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Optional, Tuple

from .exceptions import InvalidTransition
from .memory import Conversation
from .models import AnswerCandidate, IntentTagSet, RetrievedFragment, RoutingDecision, StandaloneQuestion
from .retriever import RetrievalResult


class TurnState(str, Enum):
    IDLE = "idle"
    REWRITING = "rewriting"
    ROUTING = "routing"
    ROUTED_NO_RAG = "routed_no_rag"
    ROUTED_RAG = "routed_rag"
    CLASSIFYING = "classifying"
    RETRIEVING = "retrieving"
    RERANKING = "reranking"
    ANSWERING = "answering"
    GROUNDING_CHECK = "grounding_check"
    RESPONDED = "responded"
    EXIT = "exit"


class TurnEvent(str, Enum):
    USER_INPUT = "user_input"
    QUIT = "quit"
    REWRITTEN = "rewritten"
    RAG_NEEDED = "rag_needed"
    RAG_NOT_NEEDED = "rag_not_needed"
    PROCEED = "proceed"
    CLASSIFIED = "classified"
    RETRIEVED = "retrieved"
    RERANKED = "reranked"
    ANSWERED = "answered"
    CHECKED = "checked"
    COMMITTED = "committed"


S, E = TurnState, TurnEvent

TRANSITIONS = MappingProxyType({
    (S.IDLE, E.USER_INPUT): S.REWRITING,
    (S.IDLE, E.QUIT): S.EXIT,
    (S.REWRITING, E.REWRITTEN): S.ROUTING,
    (S.ROUTING, E.RAG_NOT_NEEDED): S.ROUTED_NO_RAG,
    (S.ROUTING, E.RAG_NEEDED): S.ROUTED_RAG,
    (S.ROUTED_NO_RAG, E.PROCEED): S.ANSWERING,
    (S.ROUTED_RAG, E.PROCEED): S.CLASSIFYING,
    (S.CLASSIFYING, E.CLASSIFIED): S.RETRIEVING,
    (S.RETRIEVING, E.RETRIEVED): S.RERANKING,
    (S.RERANKING, E.RERANKED): S.ANSWERING,
    (S.ANSWERING, E.ANSWERED): S.GROUNDING_CHECK,
    (S.GROUNDING_CHECK, E.CHECKED): S.RESPONDED,
    (S.RESPONDED, E.COMMITTED): S.IDLE,
})

del S, E


def next_state(state: TurnState, event: TurnEvent) -> TurnState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"No transition from {state.value} on {event.value}") from None


# ── Events ───────────────────────────────────────────────────────────
# Each event names its tag and the context fields it sets.


class Event:
    tag: TurnEvent

    def updates(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class UserInput(Event):
    text: str
    tag = TurnEvent.USER_INPUT


@dataclass(frozen=True)
class Quit(Event):
    tag = TurnEvent.QUIT


@dataclass(frozen=True)
class Rewritten(Event):
    questions: Tuple[StandaloneQuestion, ...]
    tag = TurnEvent.REWRITTEN

    def updates(self) -> Dict[str, Any]:
        return {"questions": self.questions}


@dataclass(frozen=True)
class Routed(Event):
    decision: RoutingDecision

    @property
    def tag(self) -> TurnEvent:
        return TurnEvent.RAG_NEEDED if self.decision.needs_retrieval else TurnEvent.RAG_NOT_NEEDED

    def updates(self) -> Dict[str, Any]:
        return {"routing": self.decision}


@dataclass(frozen=True)
class Proceed(Event):
    tag = TurnEvent.PROCEED


@dataclass(frozen=True)
class Classified(Event):
    tags: IntentTagSet
    tag = TurnEvent.CLASSIFIED

    def updates(self) -> Dict[str, Any]:
        return {"tags": self.tags}


@dataclass(frozen=True)
class Retrieved(Event):
    result: RetrievalResult
    tag = TurnEvent.RETRIEVED

    def updates(self) -> Dict[str, Any]:
        return {"retrieval": self.result, "fragments": tuple(self.result.fragments)}


@dataclass(frozen=True)
class Reranked(Event):
    fragments: Tuple[RetrievedFragment, ...]
    tag = TurnEvent.RERANKED

    def updates(self) -> Dict[str, Any]:
        return {"fragments": self.fragments}


@dataclass(frozen=True)
class Answered(Event):
    text: str
    tag = TurnEvent.ANSWERED

    def updates(self) -> Dict[str, Any]:
        return {"answer_text": self.text}


@dataclass(frozen=True)
class Checked(Event):
    candidate: AnswerCandidate
    tag = TurnEvent.CHECKED

    def updates(self) -> Dict[str, Any]:
        return {"candidate": self.candidate}


@dataclass(frozen=True)
class Committed(Event):
    tag = TurnEvent.COMMITTED


# ── Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TurnContext:
    """Everything one turn has produced so far."""

    conversation: Conversation = field(compare=False, repr=False)
    user_input: str
    state: TurnState = TurnState.IDLE
    trace: Tuple[TurnState, ...] = (TurnState.IDLE,)
    timings: Tuple[Tuple[str, float], ...] = ()
    questions: Tuple[StandaloneQuestion, ...] = ()
    routing: Optional[RoutingDecision] = None
    tags: Optional[IntentTagSet] = None
    retrieval: Optional[RetrievalResult] = None
    fragments: Tuple[RetrievedFragment, ...] = ()
    answer_text: Optional[str] = None
    candidate: Optional[AnswerCandidate] = None

    @property
    def question(self) -> str:
        """Top-ranked standalone question, or the raw input before rewriting."""
        return self.questions[0].text if self.questions else self.user_input

    @property
    def rag_performed(self) -> bool:
        return self.routing is not None and self.routing.needs_retrieval

    @property
    def context_retrieval(self) -> Optional[RetrievalResult]:
        """The retrieval result with fragments in their final (reranked) order."""
        if self.retrieval is None:
            return None
        return replace(self.retrieval, fragments=list(self.fragments))

    def absorb(self, event: Event, seconds: Optional[float] = None) -> "TurnContext":
        state = next_state(self.state, event.tag)
        changes: Dict[str, Any] = {"state": state, "trace": self.trace + (state,)}
        if seconds is not None:
            changes["timings"] = self.timings + ((self.state.value, seconds),)
        changes.update(event.updates())
        return replace(self, **changes)

