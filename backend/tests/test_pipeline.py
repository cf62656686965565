"""End-to-end turn tests with every collaborator faked."""

import pytest

from conftest import FakeChatModel, FakeEmbedder, FakeKnowledgeStore, make_hit
from grounded_rag.commands import Directive
from grounded_rag.config import INTENT_NAMESPACE, UNGROUNDED_WARNING
from grounded_rag.generator import AnswerGenerator
from grounded_rag.grounding import GroundingChecker
from grounded_rag.intent import IntentClassifier, IntentTaxonomy
from grounded_rag.keywords import KeywordExtractor
from grounded_rag.memory import ConversationStore
from grounded_rag.models import GroundingVerdict, Role
from grounded_rag.pipeline import CANCELLED_MESSAGE, FAILURE_MESSAGE, ConversationalRagPipeline
from grounded_rag.query_rewriter import QueryRewriter
from grounded_rag.reranker import Reranker
from grounded_rag.retriever import RetrievalEngine
from grounded_rag.router import Router
from grounded_rag.cancellation import CancellationToken
from grounded_rag.state_machine import TurnState

QUESTION = "What did the contract say about termination notice?"
STANDALONE = "What does the contract say about the termination notice period?"
REWRITE_REPLY = f'[{{"standaloneQuestion": "{STANDALONE}", "score": 0.95}}]'
ANSWER = "The termination notice period is three months [lease.pdf:5]."

LEASE = (
    "lease.pdf",
    {
        4: "Either party may terminate this lease.",
        5: "The termination notice period is three months.",
        6: "Notice must be given in writing.",
    },
)

RAG_TRACE = [
    TurnState.IDLE,
    TurnState.REWRITING,
    TurnState.ROUTING,
    TurnState.ROUTED_RAG,
    TurnState.CLASSIFYING,
    TurnState.RETRIEVING,
    TurnState.RERANKING,
    TurnState.ANSWERING,
    TurnState.GROUNDING_CHECK,
    TurnState.RESPONDED,
    TurnState.IDLE,
]

NO_RAG_TRACE = [
    TurnState.IDLE,
    TurnState.REWRITING,
    TurnState.ROUTING,
    TurnState.ROUTED_NO_RAG,
    TurnState.ANSWERING,
    TurnState.GROUNDING_CHECK,
    TurnState.RESPONDED,
    TurnState.IDLE,
]


@pytest.fixture
def store():
    return FakeKnowledgeStore(
        search_results={
            None: [make_hit("lease", "lease.pdf", (5, LEASE[1][5], 0.82))],
            INTENT_NAMESPACE: [
                make_hit("ex1", "", (0, "How can I cancel my contract?", 0.9), intent="termination", mainintent="contracts"),
            ],
        },
        documents={"lease": LEASE},
    )


def build_pipeline(
    store,
    rewrite=REWRITE_REPLY,
    route='{"requiresRAG": true}',
    answer=ANSWER,
    tokens=None,
    classifier=None,
):
    answer_llm = answer if isinstance(answer, FakeChatModel) else FakeChatModel(answer, tokens=tokens)
    route_llm = route if isinstance(route, FakeChatModel) else FakeChatModel(route)
    return ConversationalRagPipeline(
        rewriter=QueryRewriter(llm=FakeChatModel(rewrite)),
        router=Router(llm=route_llm),
        classifier=classifier or IntentClassifier(store=store, extractor=KeywordExtractor()),
        retrieval=RetrievalEngine(store=store),
        reranker=Reranker(embedder=FakeEmbedder()),
        generator=AnswerGenerator(llm=answer_llm),
        grounding=GroundingChecker(policy="lexical"),
        taxonomy=IntentTaxonomy.empty(),
        store=store,
    )


def test_rag_turn_end_to_end(store, conversation, filters_of):
    """Keyword override forces retrieval even though the router says no"""
    answer_llm = FakeChatModel(ANSWER)
    pipeline = build_pipeline(store, route='{"requiresRAG": false}', answer=answer_llm)

    result = pipeline.handle_user_turn(conversation, QUESTION)

    assert result.state_trace == RAG_TRACE
    assert result.routing.needs_retrieval is True
    assert result.routing.overridden is True
    assert [q.text for q in result.questions] == [STANDALONE]
    assert result.tags.intents == ["termination", "contracts"]
    assert [(f.document_id, f.partition_number) for f in result.fragments] == [("lease", 5), ("lease", 4), ("lease", 6)]
    assert result.retrieval_mode == "search"
    assert result.grounding_verdict == GroundingVerdict.GROUNDED
    assert result.message == ANSWER
    assert result.committed

    document_search = [c for c in store.search_calls if c["namespace"] is None][0]
    assert document_search["query"] == STANDALONE
    assert "intent=termination" in filters_of(document_search["filters"])

    final_prompt = answer_llm.prompts[0]
    assert "[lease.pdf:5]\nThe termination notice period is three months." in final_prompt
    assert final_prompt.endswith(f"User Question: {STANDALONE}")


def test_successful_turn_appends_user_then_assistant(store, conversation):
    pipeline = build_pipeline(store)

    pipeline.handle_user_turn(conversation, QUESTION)

    assert [(m.role, m.content) for m in conversation.messages[1:]] == [
        (Role.USER, QUESTION),
        (Role.ASSISTANT, ANSWER),
    ]


def test_no_rag_turn(store, conversation):
    pipeline = build_pipeline(store, rewrite="not json", route='{"requiresRAG": false}', answer="I'm fine, thanks!")

    result = pipeline.handle_user_turn(conversation, "Hello, how are you?")

    assert result.state_trace == NO_RAG_TRACE
    assert store.search_calls == []
    assert result.fragments == []
    assert result.grounding_verdict == GroundingVerdict.GROUNDED
    assert result.message == "I'm fine, thanks!"
    assert [q.text for q in result.questions] == ["Hello, how are you?"]


def test_ungrounded_answer_is_committed_with_warning(store, conversation):
    pipeline = build_pipeline(store, answer="Bananas are yellow.")

    result = pipeline.handle_user_turn(conversation, QUESTION)

    assert result.grounding_verdict == GroundingVerdict.UNGROUNDED
    assert result.message == f"{UNGROUNDED_WARNING}\nBananas are yellow."
    assert conversation.messages[-1].content == result.message


def test_generation_failure_leaves_conversation_unchanged(store, conversation):
    pipeline = build_pipeline(store, answer=FakeChatModel(RuntimeError("model unavailable")))

    result = pipeline.handle_user_turn(conversation, QUESTION)

    assert result.failed is True
    assert result.message == FAILURE_MESSAGE
    assert result.state_trace[-1] == TurnState.ANSWERING
    assert [q.text for q in result.questions] == [STANDALONE]
    assert result.routing.needs_retrieval is True
    assert result.tags.intents == ["termination", "contracts"]
    assert len(conversation) == 1
    assert not result.committed


def test_unexpected_component_error_is_contained(store, conversation):
    class ExplodingClassifier:
        def classify(self, question):
            raise RuntimeError("bug")

    pipeline = build_pipeline(store, classifier=ExplodingClassifier())

    result = pipeline.handle_user_turn(conversation, QUESTION)

    assert result.failed is True
    assert result.state_trace[-1] == TurnState.CLASSIFYING
    assert len(conversation) == 1


def test_cancelled_before_start(store, conversation):
    token = CancellationToken()
    token.cancel()

    result = build_pipeline(store).handle_user_turn(conversation, QUESTION, token)

    assert result.cancelled is True
    assert result.message == CANCELLED_MESSAGE
    assert result.state_trace == [TurnState.IDLE, TurnState.REWRITING]
    assert len(conversation) == 1


def test_cancelled_mid_turn(store, conversation):
    token = CancellationToken()

    def cancel_and_decline(prompt):
        token.cancel()
        return '{"requiresRAG": true}'

    pipeline = build_pipeline(store, route=FakeChatModel(cancel_and_decline))

    result = pipeline.handle_user_turn(conversation, QUESTION, token)

    assert result.cancelled is True
    assert result.state_trace[-1] == TurnState.ROUTED_RAG
    assert store.search_calls == []
    assert len(conversation) == 1


def test_cancelled_inside_retrieval_stops_store_calls(conversation):
    """A cancel that lands during the search stops the neighbour lookups"""
    token = CancellationToken()

    class CancellingStore(FakeKnowledgeStore):
        def search(self, query, filters=None, min_relevance=0.0, limit=3, namespace=None):
            hits = super().search(query, filters, min_relevance, limit, namespace)
            if namespace is None:
                token.cancel()
            return hits

    store = CancellingStore(
        search_results={None: [make_hit("lease", "lease.pdf", (5, LEASE[1][5], 0.82))]},
        documents={"lease": LEASE},
    )

    result = build_pipeline(store).handle_user_turn(conversation, QUESTION, token)

    assert result.cancelled is True
    assert result.state_trace[-1] == TurnState.RETRIEVING
    assert result.tags is not None
    assert store.fetch_calls == []
    assert len(conversation) == 1


def test_directives_never_enter_the_conversation(store, conversation):
    pipeline = build_pipeline(store)
    conversation.add_user_message("earlier question")
    conversation.add_assistant_message("earlier answer")

    help_result = pipeline.handle_user_turn(conversation, "/help")
    assert help_result.directive == Directive.HELP
    assert help_result.state_trace == [TurnState.IDLE]
    assert len(conversation) == 3

    clear_result = pipeline.handle_user_turn(conversation, "/clear")
    assert clear_result.directive == Directive.CLEAR
    assert len(conversation) == 1


def test_quit_directive_reaches_exit(store, conversation):
    result = build_pipeline(store).handle_user_turn(conversation, "/q")

    assert result.exit is True
    assert result.state_trace == [TurnState.IDLE, TurnState.EXIT]
    assert len(conversation) == 1


def test_remove_index_directive_uses_store(store, conversation):
    result = build_pipeline(store).handle_user_turn(conversation, "/removeindex")

    assert result.directive == Directive.REMOVE_INDEX
    assert store.deleted == [None, INTENT_NAMESPACE]


def test_blank_input_is_ignored(store, conversation):
    result = build_pipeline(store).handle_user_turn(conversation, "   ")

    assert result.message == ""
    assert result.state_trace == [TurnState.IDLE]
    assert len(conversation) == 1


def test_streaming_turn(store, conversation):
    tokens = ["The termination notice period ", "is three months [lease.pdf:5]."]
    pipeline = build_pipeline(store, tokens=tokens)

    events = list(pipeline.stream_user_turn(conversation, QUESTION))

    assert events[0]["type"] == "metadata"
    assert events[0]["rag"] is True
    assert events[0]["sources"][0] == "[lease.pdf:5]"
    assert [e["content"] for e in events if e["type"] == "token"] == tokens
    final = events[-1]
    assert final["type"] == "final"
    assert final["result"].state_trace == RAG_TRACE
    assert final["candidate"].text == "".join(tokens)
    assert conversation.messages[-1].content == "".join(tokens)


def test_streaming_failure_after_partial_output_commits_nothing(store, conversation):
    pipeline = build_pipeline(store, tokens=["The termination ", ConnectionError("reset")])

    events = list(pipeline.stream_user_turn(conversation, QUESTION))

    assert [e["content"] for e in events if e["type"] == "token"] == ["The termination "]
    assert events[-1]["result"].failed is True
    assert events[-1]["result"].state_trace[-1] == TurnState.ANSWERING
    assert events[-1]["result"].routing.needs_retrieval is True
    assert len(conversation) == 1


def test_session_turn_persists_conversation(store):
    pipeline = build_pipeline(store)
    sessions = ConversationStore("You are a helpful assistant.")

    pipeline.handle_session_turn(sessions, "s1", QUESTION)
    restored = sessions.load("s1")

    assert [m.content for m in restored.messages[1:]] == [QUESTION, ANSWER]


def test_result_serialises(store, conversation):
    result = build_pipeline(store).handle_user_turn(conversation, QUESTION)

    data = result.to_dict()

    assert data["rag"] is True
    assert data["grounding"] == "grounded"
    assert data["sources"][0]["partition"] == 5
    assert data["states"][-1] == "idle"
