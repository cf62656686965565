"""Tests for the OpenAI adapters and the embedding cache, with mocked clients."""

from types import SimpleNamespace
from unittest.mock import MagicMock

from conftest import FakeEmbedder
from grounded_rag.embeddings import OpenAIEmbedder
from grounded_rag.llm import OpenAIChatModel


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


def test_complete_passes_options_to_client():
    client = MagicMock()
    client.chat.completions.create.return_value = _completion("Hello!")
    model = OpenAIChatModel("gpt-test", timeout=5.0, client=client)

    reply = model.complete([{"role": "user", "content": "hi"}], temperature=0.0, max_tokens=50)

    assert reply == "Hello!"
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["temperature"] == 0.0
    assert kwargs["max_completion_tokens"] == 50
    assert kwargs["timeout"] == 5.0


def test_complete_without_choices_is_empty():
    client = MagicMock()
    client.chat.completions.create.return_value = SimpleNamespace(choices=[])

    assert OpenAIChatModel("gpt-test", timeout=5.0, client=client).complete([]) == ""


def test_generate_wraps_prompt_as_user_message():
    client = MagicMock()
    client.chat.completions.create.return_value = _completion("ok")

    OpenAIChatModel("gpt-test", timeout=5.0, client=client).generate("check this", temperature=0.0)

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"] == [{"role": "user", "content": "check this"}]


def test_stream_skips_empty_deltas():
    client = MagicMock()
    client.chat.completions.create.return_value = iter([
        _chunk("Three "), SimpleNamespace(choices=[]), _chunk(None), _chunk("months."),
    ])

    tokens = list(OpenAIChatModel("gpt-test", timeout=5.0, client=client).stream([]))

    assert tokens == ["Three ", "months."]
    assert client.chat.completions.create.call_args.kwargs["stream"] is True


def test_openai_embedder_caches_normalized_text():
    client = MagicMock()
    client.embeddings.create.return_value = SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2])])
    embedder = OpenAIEmbedder(client=client)

    first = embedder.embed("Notice period")
    second = embedder.embed("  notice   PERIOD ")

    assert first == second == [0.1, 0.2]
    assert client.embeddings.create.call_count == 1


def test_cached_vectors_are_copies():
    embedder = FakeEmbedder(default=[1.0, 0.0])

    vector = embedder.embed("text")
    vector.append(99.0)

    assert embedder.embed("text") == [1.0, 0.0]
