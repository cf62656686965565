"""Tests for RAG-or-not routing: parser chain and keyword override."""

import pytest

from conftest import FakeChatModel
from grounded_rag.router import Router, parse_routing_reply


@pytest.mark.parametrize("raw,expected", [
    ('{"requiresRAG": true}', True),
    ('{"requiresRAG": false}', False),
    ('```json\n{"requiresRAG": true}\n```', True),
    ('{"RequiresRag": "true"}', True),
    ('[{"requiresRAG": true}]', True),
    ("[false, true]", False),
    ("true", True),
    ("False. The question is small talk.", False),
    ("<think>needs documents</think>TRUE", True),
])
def test_parse_chain(raw, expected):
    assert parse_routing_reply(raw) is expected


@pytest.mark.parametrize("raw", ["", "maybe", '{"other": 1}', "[]", "[1, 2", "I cannot tell"])
def test_parse_chain_exhausted_returns_none(raw):
    assert parse_routing_reply(raw) is None


def test_unparseable_reply_defaults_to_no_retrieval(conversation):
    router = Router(llm=FakeChatModel("I am not sure what you mean."))

    decision = router.route(conversation, "hello there")

    assert decision.needs_retrieval is False
    assert decision.overridden is False
    assert decision.raw_output == "I am not sure what you mean."


def test_model_failure_defaults_to_no_retrieval(conversation):
    router = Router(llm=FakeChatModel(ConnectionError("service down")))

    decision = router.route(conversation, "how are you?")

    assert decision.needs_retrieval is False


@pytest.mark.parametrize("message", [
    "What did the contract say about termination notice?",
    "Please summarize the uploaded file",
    "Which policy covers water damage?",
    "Wie hoch ist die Rechnung vom März?",
    "Fasse das Dokument zusammen",
])
def test_document_keyword_forces_retrieval(conversation, message):
    """The override wins even when the model says no"""
    router = Router(llm=FakeChatModel('{"requiresRAG": false}'))

    decision = router.route(conversation, message)

    assert decision.needs_retrieval is True
    assert decision.overridden is True


@pytest.mark.parametrize("message", [
    "Which points got summarized in the meeting?",
    "Which of my invoices are overdue?",
    "Was steht im Mietvertrag zur Kündigung?",
    "Wie hoch war die letzte Stromrechnung?",
    "Gilt meine Hausratpolice auch im Keller?",
])
def test_override_matches_inflections_and_compounds(conversation, message):
    router = Router(llm=FakeChatModel("false"))

    assert router.route(conversation, message).needs_retrieval is True


def test_override_never_turns_true_into_false(conversation):
    router = Router(llm=FakeChatModel('{"requiresRAG": true}'))

    decision = router.route(conversation, "What was our revenue last year?")

    assert decision.needs_retrieval is True
    assert decision.overridden is False


def test_override_matches_whole_words_only(conversation):
    """'profile' must not trigger the 'file' override"""
    router = Router(llm=FakeChatModel("false"))

    decision = router.route(conversation, "Update my profile picture")

    assert decision.needs_retrieval is False


def test_routing_prompt_carries_chat(conversation):
    llm = FakeChatModel("false")

    Router(llm=llm).route(conversation, "good morning")

    assert "User: good morning" in llm.prompts[0]
