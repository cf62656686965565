"""Tests for model output sanitisation and the parser chain helpers."""

from grounded_rag.output_parsing import (
    coerce_bool,
    first_success,
    looks_like_json,
    parse_json_payload,
    preview,
    sanitize_model_output,
    strip_code_fences,
    strip_think_block,
)


def test_strip_think_block_removes_first_block_only():
    """Only the first reasoning block is removed, tags included"""
    raw = "<think>plan</think>answer <think>second</think>"
    assert strip_think_block(raw) == "answer <think>second</think>"


def test_strip_think_block_unclosed_is_left_alone():
    raw = "<think>never closed [1, 2]"
    assert strip_think_block(raw) == raw


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '\n{"a": 1}\n'
    assert strip_code_fences("```\n[]\n```").strip() == "[]"


def test_sanitize_model_output_combines_both_steps():
    raw = '<think>hmm</think>\n```json\n[{"standaloneQuestion": "q"}]\n```\n'
    assert sanitize_model_output(raw) == '[{"standaloneQuestion": "q"}]'


def test_sanitize_model_output_handles_none():
    assert sanitize_model_output(None) == ""


def test_looks_like_json():
    assert looks_like_json("[1]")
    assert looks_like_json('{"a": 1}')
    assert not looks_like_json("true")
    assert not looks_like_json("")


def test_parse_json_payload_rejects_non_json_without_raising():
    assert parse_json_payload("Sure! Here are the questions") is None
    assert parse_json_payload("[1, 2") is None
    assert parse_json_payload('{"a": 1}') == {"a": 1}


def test_first_success_short_circuits():
    """Parsers after the first success are not called"""
    calls = []

    def failing(text):
        calls.append("failing")
        return None

    def succeeding(text):
        calls.append("succeeding")
        return text.upper()

    def never(text):
        calls.append("never")
        return "unreachable"

    assert first_success([failing, succeeding, never], "ok") == "OK"
    assert calls == ["failing", "succeeding"]


def test_first_success_false_is_a_success():
    """A parsed ``False`` must not be mistaken for a failure"""
    assert first_success([lambda t: False, lambda t: True], "x") is False


def test_coerce_bool():
    assert coerce_bool(True) is True
    assert coerce_bool("FALSE") is False
    assert coerce_bool(" yes ") is True
    assert coerce_bool(1) is None
    assert coerce_bool("maybe") is None


def test_preview_truncates_and_flattens():
    text = "line one\nline two " + "x" * 300
    result = preview(text, limit=20)
    assert "\n" not in result
    assert len(result) == 21
    assert result.endswith("…")
