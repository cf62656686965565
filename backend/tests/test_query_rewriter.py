"""Tests for the query rewriter: ranking, filtering and fallbacks."""

import pytest

from conftest import FakeChatModel
from grounded_rag.query_rewriter import QueryRewriter

USER_INPUT = "and what about the second one?"


@pytest.mark.parametrize("raw", [
    "",
    "I think the user means the second contract.",
    "```json\n[{\"standaloneQuestion\": \"broken\"\n```",
    "<think>The user refers to the contract.</think>not json at all",
    "<think>unclosed reasoning [",
    "[]",
    '[{"standaloneQuestion": "   ", "score": 0.9}]',
    '{"unexpected": "shape"}',
    "42",
])
def test_malformed_payload_falls_back_to_raw_input(conversation, raw):
    """Any unusable rewrite yields exactly one question wrapping the input"""
    rewriter = QueryRewriter(llm=FakeChatModel(raw))

    questions = rewriter.rewrite(conversation, USER_INPUT)

    assert len(questions) == 1
    assert questions[0].text == USER_INPUT


def test_model_exception_falls_back(conversation):
    rewriter = QueryRewriter(llm=FakeChatModel(TimeoutError("model timed out")))

    questions = rewriter.rewrite(conversation, USER_INPUT)

    assert [q.text for q in questions] == [USER_INPUT]


def test_questions_sorted_by_score_and_blanks_dropped(conversation):
    raw = (
        "```json\n"
        '[{"standaloneQuestion": "What is the notice period?", "score": 0.4},'
        ' {"standaloneQuestion": "", "score": 0.99},'
        ' {"standaloneQuestion": "What is the notice period of the second contract?", "score": 0.9},'
        ' {"standaloneQuestion": "Which contracts exist?", "score": 0.4}]\n'
        "```"
    )
    rewriter = QueryRewriter(llm=FakeChatModel(raw))

    questions = rewriter.rewrite(conversation, USER_INPUT)

    assert [q.text for q in questions] == [
        "What is the notice period of the second contract?",
        "What is the notice period?",
        "Which contracts exist?",
    ]
    scores = [q.score for q in questions]
    assert scores == sorted(scores, reverse=True)


def test_think_block_before_valid_json_is_ignored(conversation):
    raw = '<think>resolve "it"</think>[{"standaloneQuestion": "When does the lease end?", "score": 0.8}]'
    rewriter = QueryRewriter(llm=FakeChatModel(raw))

    questions = rewriter.rewrite(conversation, "when does it end?")

    assert [q.text for q in questions] == ["When does the lease end?"]


def test_single_object_and_pascal_case_keys_are_accepted(conversation):
    raw = '{"StandaloneQuestion": "Who signed the contract?", "Score": "0.7"}'
    rewriter = QueryRewriter(llm=FakeChatModel(raw))

    questions = rewriter.rewrite(conversation, "who signed it?")

    assert questions[0].text == "Who signed the contract?"
    assert questions[0].score == pytest.approx(0.7)


def test_prompt_contains_transcript(conversation):
    conversation.add_user_message("Show me the lease contract")
    conversation.add_assistant_message("The lease contract runs until 2026.")
    llm = FakeChatModel('[{"standaloneQuestion": "Can the lease be extended?", "score": 1}]')

    QueryRewriter(llm=llm).rewrite(conversation, "can it be extended?")

    prompt = llm.prompts[0]
    assert "User: Show me the lease contract" in prompt
    assert "Assistant: The lease contract runs until 2026." in prompt
    assert prompt.rstrip().endswith("User: can it be extended?")
