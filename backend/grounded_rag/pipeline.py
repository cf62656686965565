"""
Conversational RAG Pipeline Orchestrator

Runs one user turn through the state machine in ``state_machine``:

  1. Rewrite the input into ranked standalone questions
  2. Route: does the turn need document retrieval?
  3. (RAG) Classify intents and keywords, retrieve with those filters,
     expand adjacent partitions, rerank
  4. Generate the answer (with retrieved context, or general knowledge)
  5. Grounding check; ungrounded answers get a warning banner
  6. Commit user message + assistant message to the conversation

Slash commands bypass all of this (see ``commands``). The conversation is
only written in step 6, so failures and cancellation leave it unchanged.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from langsmith import traceable
from langsmith.run_helpers import get_current_run_tree

from .cancellation import CancellationToken
from .commands import CommandDispatcher, Directive, DocumentImporter, parse_directive
from .config import GREETING_MESSAGE, RERANK_TOP_K
from .exceptions import GenerationError, TurnCancelled
from .generator import AnswerGenerator, chat_system_prompt, get_generator
from .grounding import GroundingChecker, get_grounding_checker
from .intent import IntentClassifier, IntentTaxonomy, get_intent_classifier, load_taxonomy
from .knowledge_store import KnowledgeStore
from .memory import Conversation, ConversationStore
from .models import GroundingVerdict, RetrievedFragment, RoutingDecision, IntentTagSet, StandaloneQuestion
from .query_rewriter import QueryRewriter, get_query_rewriter
from .reranker import Reranker, get_reranker
from .retriever import RetrievalEngine, get_retrieval_engine
from .router import Router, get_router
from .state_machine import (
    Answered,
    Checked,
    Classified,
    Committed,
    Event,
    Proceed,
    Quit,
    Reranked,
    Retrieved,
    Rewritten,
    Routed,
    TurnContext,
    TurnState,
    UserInput,
)

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "I'm sorry, an error occurred while generating the response. Please try again."
CANCELLED_MESSAGE = "The request was cancelled."


@dataclass
class TurnResult:
    """Assistant message of one turn plus what the pipeline did to produce it."""

    message: str
    state_trace: List[TurnState] = field(default_factory=list)
    questions: List[StandaloneQuestion] = field(default_factory=list)
    routing: Optional[RoutingDecision] = None
    tags: Optional[IntentTagSet] = None
    fragments: List[RetrievedFragment] = field(default_factory=list)
    retrieval_mode: Optional[str] = None
    grounding_verdict: Optional[GroundingVerdict] = None
    timings: Dict[str, float] = field(default_factory=dict)
    directive: Optional[Directive] = None
    exit: bool = False
    failed: bool = False
    cancelled: bool = False
    run_id: Optional[str] = None

    @property
    def committed(self) -> bool:
        return bool(self.state_trace) and self.state_trace[-1] == TurnState.IDLE and TurnState.RESPONDED in self.state_trace

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.message,
            "standalone_questions": [q.model_dump() for q in self.questions],
            "rag": self.routing.needs_retrieval if self.routing else False,
            "intents": self.tags.intents if self.tags else [],
            "keywords": self.tags.keywords if self.tags else [],
            "sources": [
                {
                    "document_id": f.document_id,
                    "source": f.source_name,
                    "partition": f.partition_number,
                    "score": f.relevance_score,
                }
                for f in self.fragments
            ],
            "retrieval_mode": self.retrieval_mode,
            "grounding": self.grounding_verdict.value if self.grounding_verdict else None,
            "states": [s.value for s in self.state_trace],
            "timings": self.timings,
            "directive": self.directive.value if self.directive else None,
            "exit": self.exit,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "run_id": self.run_id,
        }


def _current_run_id() -> Optional[str]:
    try:
        run_tree = get_current_run_tree()
        if run_tree:
            return str(run_tree.id)
    except Exception as exc:
        logger.debug("No LangSmith run id: %s", exc)
    return None


def _result_from_context(ctx: TurnContext, message: str, **flags) -> TurnResult:
    return TurnResult(
        message=message,
        state_trace=list(ctx.trace),
        questions=list(ctx.questions),
        routing=ctx.routing,
        tags=ctx.tags,
        fragments=list(ctx.fragments),
        retrieval_mode=ctx.retrieval.mode if ctx.retrieval else None,
        grounding_verdict=ctx.candidate.grounding_verdict if ctx.candidate else None,
        timings=dict(ctx.timings),
        run_id=_current_run_id(),
        **flags,
    )


# ═════════════════════════════════════════════════════════════════════════════
# PIPELINE
# ═════════════════════════════════════════════════════════════════════════════

class ConversationalRagPipeline:
    """Query-to-answer orchestration for one conversation turn at a time."""

    def __init__(
        self,
        rewriter: Optional[QueryRewriter] = None,
        router: Optional[Router] = None,
        classifier: Optional[IntentClassifier] = None,
        retrieval: Optional[RetrievalEngine] = None,
        reranker: Optional[Reranker] = None,
        generator: Optional[AnswerGenerator] = None,
        grounding: Optional[GroundingChecker] = None,
        taxonomy: Optional[IntentTaxonomy] = None,
        store: Optional[KnowledgeStore] = None,
        importer: Optional[DocumentImporter] = None,
        rerank_top_k: int = RERANK_TOP_K,
    ):
        self.rewriter = rewriter or get_query_rewriter()
        self.router = router or get_router()
        self.classifier = classifier or get_intent_classifier()
        self.retrieval = retrieval or get_retrieval_engine()
        self.reranker = reranker or get_reranker()
        self.generator = generator or get_generator()
        self.grounding = grounding or get_grounding_checker()
        self.taxonomy = taxonomy if taxonomy is not None else load_taxonomy()
        self.rerank_top_k = rerank_top_k
        self.commands = CommandDispatcher(
            store=store if store is not None else self.retrieval.store,
            classifier=self.classifier,
            taxonomy=self.taxonomy,
            importer=importer,
        )
        self._steps: Dict[TurnState, Callable[[TurnContext, CancellationToken], Event]] = {
            TurnState.REWRITING: self._rewrite,
            TurnState.ROUTING: self._route,
            TurnState.ROUTED_NO_RAG: self._proceed,
            TurnState.ROUTED_RAG: self._proceed,
            TurnState.CLASSIFYING: self._classify,
            TurnState.RETRIEVING: self._retrieve,
            TurnState.RERANKING: self._rerank,
            TurnState.ANSWERING: self._answer,
            TurnState.GROUNDING_CHECK: self._check_grounding,
        }

    @staticmethod
    def new_conversation(greeting: Optional[str] = GREETING_MESSAGE) -> Conversation:
        conversation = Conversation(chat_system_prompt())
        if greeting:
            conversation.add_assistant_message(greeting)
        return conversation

    # ── Steps: (context) -> event ────────────────────────────────────

    def _rewrite(self, ctx: TurnContext, cancel: CancellationToken) -> Event:
        questions = self.rewriter.rewrite(ctx.conversation, ctx.user_input)
        return Rewritten(tuple(questions))

    def _route(self, ctx: TurnContext, cancel: CancellationToken) -> Event:
        return Routed(self.router.route(ctx.conversation, ctx.user_input))

    def _proceed(self, ctx: TurnContext, cancel: CancellationToken) -> Event:
        return Proceed()

    def _classify(self, ctx: TurnContext, cancel: CancellationToken) -> Event:
        return Classified(self.classifier.classify(ctx.question))

    def _retrieve(self, ctx: TurnContext, cancel: CancellationToken) -> Event:
        tags = ctx.tags or IntentTagSet()
        return Retrieved(self.retrieval.retrieve(ctx.question, tags.intents, tags.keywords, cancel))

    def _rerank(self, ctx: TurnContext, cancel: CancellationToken) -> Event:
        fragments = self.reranker.rerank(ctx.question, list(ctx.fragments), self.rerank_top_k, cancel)
        return Reranked(tuple(fragments))

    def _answer(self, ctx: TurnContext, cancel: CancellationToken) -> Event:
        text = self.generator.generate(
            ctx.conversation, ctx.question, ctx.context_retrieval, ctx.rag_performed,
        )
        return Answered(text)

    def _check_grounding(self, ctx: TurnContext, cancel: CancellationToken) -> Event:
        retrieval = ctx.context_retrieval
        chunks = retrieval.context_chunks if retrieval else []
        return Checked(self.grounding.check(ctx.answer_text or "", chunks, ctx.rag_performed))

    # ── Dispatch loop ────────────────────────────────────────────────

    def _advance(self, ctx: TurnContext, cancel: CancellationToken) -> TurnContext:
        """Run the step for the current state and return the next context.

        Callers rebind their own context after every call, so a step that
        raises leaves them holding the last state that completed.
        """
        cancel.raise_if_cancelled()
        step = self._steps[ctx.state]
        t_step = time.perf_counter()
        event = step(ctx, cancel)
        elapsed = time.perf_counter() - t_step
        logger.info("⏱ %s: %.2fs", ctx.state.value, elapsed)
        return ctx.absorb(event, elapsed)

    @staticmethod
    def _commit(ctx: TurnContext, cancel: CancellationToken) -> TurnContext:
        cancel.raise_if_cancelled()
        ctx.conversation.add_user_message(ctx.user_input)
        ctx.conversation.add_assistant_message(ctx.candidate.text)
        return ctx.absorb(Committed())

    def _directive_result(self, conversation: Conversation, directive: Directive) -> TurnResult:
        ctx = TurnContext(conversation, "")
        if directive == Directive.EXIT:
            ctx = ctx.absorb(Quit())
        outcome = self.commands.dispatch(directive, conversation)
        return TurnResult(
            message=outcome.message,
            state_trace=list(ctx.trace),
            directive=directive,
            exit=outcome.exit,
            failed=not outcome.succeeded,
        )

    # ── NON-STREAMING TURN ───────────────────────────────────────────

    @traceable(name="pipeline.handle_user_turn", run_type="chain")
    def handle_user_turn(
        self,
        conversation: Conversation,
        user_input: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TurnResult:
        """
        Answer one user message.

        The conversation gets the user message and the (possibly
        warning-prefixed) assistant answer appended on success. On failure
        or cancellation the returned message explains what happened and the
        conversation is left untouched.
        """
        cancel = cancel_token or CancellationToken()
        user_input = (user_input or "").strip()
        if not user_input:
            return TurnResult(message="", state_trace=[TurnState.IDLE])

        directive = parse_directive(user_input)
        if directive is not None:
            return self._directive_result(conversation, directive)

        t_start = time.perf_counter()
        ctx = TurnContext(conversation, user_input).absorb(UserInput(user_input))
        try:
            while ctx.state != TurnState.RESPONDED:
                ctx = self._advance(ctx, cancel)
            ctx = self._commit(ctx, cancel)
        except TurnCancelled:
            logger.info("Turn cancelled in state %s", ctx.state.value)
            return _result_from_context(ctx, CANCELLED_MESSAGE, cancelled=True)
        except GenerationError as exc:
            logger.error("Answer generation failed: %s", exc)
            return _result_from_context(ctx, FAILURE_MESSAGE, failed=True)
        except Exception:
            logger.exception("Unexpected error in state %s", ctx.state.value)
            return _result_from_context(ctx, FAILURE_MESSAGE, failed=True)

        logger.info("⏱ TOTAL: %.2fs", time.perf_counter() - t_start)
        return _result_from_context(ctx, ctx.candidate.text)

    # ── STREAMING TURN ───────────────────────────────────────────────

    @traceable(name="pipeline.stream_user_turn", run_type="chain")
    def stream_user_turn(
        self,
        conversation: Conversation,
        user_input: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[Dict[str, Any]]:
        """
        Answer one user message with streamed tokens.

        Yields ``{"type": "metadata"}`` once the context is ready, then
        ``{"type": "token", "content": ...}`` events, then one
        ``{"type": "final", "result": TurnResult, "candidate": ...}``. The
        final text may differ from the joined tokens by the grounding
        warning. The conversation is only appended before the final event.
        """
        cancel = cancel_token or CancellationToken()
        user_input = (user_input or "").strip()
        if not user_input:
            yield {"type": "final", "result": TurnResult(message="", state_trace=[TurnState.IDLE]), "candidate": None}
            return

        directive = parse_directive(user_input)
        if directive is not None:
            yield {"type": "final", "result": self._directive_result(conversation, directive), "candidate": None}
            return

        ctx = TurnContext(conversation, user_input).absorb(UserInput(user_input))
        try:
            while ctx.state != TurnState.ANSWERING:
                ctx = self._advance(ctx, cancel)
            yield {
                "type": "metadata",
                "standalone_questions": [q.text for q in ctx.questions],
                "rag": ctx.rag_performed,
                "sources": [f.citation for f in ctx.fragments],
            }

            t_answer = time.perf_counter()
            tokens: List[str] = []
            for token in self.generator.generate_stream(
                ctx.conversation, ctx.question, ctx.context_retrieval, ctx.rag_performed,
            ):
                cancel.raise_if_cancelled()
                tokens.append(token)
                yield {"type": "token", "content": token}
            text = "".join(tokens)
            if not text.strip():
                raise GenerationError("Answer stream produced no text")
            ctx = ctx.absorb(Answered(text), time.perf_counter() - t_answer)

            while ctx.state != TurnState.RESPONDED:
                ctx = self._advance(ctx, cancel)
            ctx = self._commit(ctx, cancel)
        except TurnCancelled:
            logger.info("Streaming turn cancelled in state %s", ctx.state.value)
            yield {"type": "final", "result": _result_from_context(ctx, CANCELLED_MESSAGE, cancelled=True), "candidate": None}
            return
        except GenerationError as exc:
            logger.error("Streaming answer generation failed: %s", exc)
            yield {"type": "final", "result": _result_from_context(ctx, FAILURE_MESSAGE, failed=True), "candidate": None}
            return
        except Exception:
            logger.exception("Unexpected error in state %s", ctx.state.value)
            yield {"type": "final", "result": _result_from_context(ctx, FAILURE_MESSAGE, failed=True), "candidate": None}
            return

        yield {"type": "final", "result": _result_from_context(ctx, ctx.candidate.text), "candidate": ctx.candidate}

    # ── SESSIONS ─────────────────────────────────────────────────────

    def handle_session_turn(
        self,
        sessions: ConversationStore,
        session_id: str,
        user_input: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TurnResult:
        """Load the session's conversation, run the turn, persist the outcome."""
        conversation = sessions.load(session_id)
        before = len(conversation)
        result = self.handle_user_turn(conversation, user_input, cancel_token)
        if result.exit:
            sessions.delete(session_id)
        elif len(conversation) != before or result.directive is not None:
            sessions.save(session_id, conversation)
        return result


# Singleton instance
_pipeline: Optional[ConversationalRagPipeline] = None


def get_pipeline() -> ConversationalRagPipeline:
    """Get or create ConversationalRagPipeline singleton."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ConversationalRagPipeline()
    return _pipeline
