"""
Text Generation Module

Thin adapters over the text-generation service. Two backends are supported:
OpenAI chat completions (default) and a local Ollama server over HTTP
(``USE_OLLAMA=true``). Both expose the same ``complete`` / ``stream`` /
``generate`` surface so pipeline components never see the SDK.

Two tiers are configured: ``main`` for user-facing answers and ``light``
for the cheap classification-style calls (rewrite, routing, fact-check).
"""

import json
import logging
from typing import Dict, Iterator, List, Optional

import httpx
from openai import OpenAI

from langsmith import traceable

from .config import (
    OPENAI_API_KEY,
    OPENAI_CHAT_MODEL,
    OPENAI_LIGHT_MODEL,
    OPENAI_CHAT_TEMPERATURE,
    OPENAI_CHAT_MAX_TOKENS,
    LLM_TIMEOUT_SECONDS,
    LIGHT_LLM_TIMEOUT_SECONDS,
    USE_OLLAMA,
    OLLAMA_ENDPOINT,
    OLLAMA_TEXT_MODEL,
    OLLAMA_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

Messages = List[Dict[str, str]]


class ChatModel:
    """Common surface of every text-generation backend."""

    model: str = ""

    def complete(
        self,
        messages: Messages,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        raise NotImplementedError

    def stream(
        self,
        messages: Messages,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        # Backends without native streaming emit the whole reply at once
        yield self.complete(messages, temperature=temperature, max_tokens=max_tokens)

    def generate(self, prompt: str, **options) -> str:
        """Single-prompt convenience wrapper around ``complete``."""
        return self.complete([{"role": "user", "content": prompt}], **options)


class OpenAIChatModel(ChatModel):
    """Chat completions through the OpenAI SDK."""

    def __init__(self, model: str, timeout: float, client: Optional[OpenAI] = None):
        self.model = model
        self.timeout = timeout
        self.client = client or OpenAI(api_key=OPENAI_API_KEY)

    @traceable(name="llm.openai.complete", run_type="llm")
    def complete(
        self,
        messages: Messages,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=OPENAI_CHAT_TEMPERATURE if temperature is None else temperature,
            max_completion_tokens=max_tokens or OPENAI_CHAT_MAX_TOKENS,
            timeout=self.timeout,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    @traceable(name="llm.openai.stream", run_type="llm")
    def stream(
        self,
        messages: Messages,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        stream = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=OPENAI_CHAT_TEMPERATURE if temperature is None else temperature,
            max_completion_tokens=max_tokens or OPENAI_CHAT_MAX_TOKENS,
            timeout=self.timeout,
            stream=True,
        )
        for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                yield delta.content


class OllamaChatModel(ChatModel):
    """Chat through a local Ollama server (``/api/chat``)."""

    def __init__(self, model: str, endpoint: str = OLLAMA_ENDPOINT, timeout: float = OLLAMA_TIMEOUT_SECONDS):
        self.model = model
        self._client = httpx.Client(
            base_url=endpoint.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=5.0),
            limits=httpx.Limits(max_keepalive_connections=5, keepalive_expiry=120),
        )

    def _payload(self, messages: Messages, stream: bool, temperature, max_tokens) -> Dict:
        options: Dict = {"temperature": OPENAI_CHAT_TEMPERATURE if temperature is None else temperature}
        if max_tokens:
            options["num_predict"] = max_tokens
        return {"model": self.model, "messages": messages, "stream": stream, "options": options}

    @traceable(name="llm.ollama.complete", run_type="llm")
    def complete(
        self,
        messages: Messages,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        resp = self._client.post("/api/chat", json=self._payload(messages, False, temperature, max_tokens))
        resp.raise_for_status()
        return resp.json().get("message", {}).get("content", "")

    @traceable(name="llm.ollama.stream", run_type="llm")
    def stream(
        self,
        messages: Messages,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        payload = self._payload(messages, True, temperature, max_tokens)
        with self._client.stream("POST", "/api/chat", json=payload) as resp:
            resp.raise_for_status()
            for line in resp.iter_lines():
                if not line:
                    continue
                event = json.loads(line)
                content = event.get("message", {}).get("content")
                if content:
                    yield content
                if event.get("done"):
                    break

    def close(self) -> None:
        self._client.close()


# Singleton per tier
_chat_models: Dict[str, ChatModel] = {}


def get_chat_model(tier: str = "main") -> ChatModel:
    """Get or create the chat model for ``tier`` ("main" or "light")."""
    if tier not in _chat_models:
        if USE_OLLAMA:
            _chat_models[tier] = OllamaChatModel(OLLAMA_TEXT_MODEL)
        elif tier == "light":
            _chat_models[tier] = OpenAIChatModel(OPENAI_LIGHT_MODEL, LIGHT_LLM_TIMEOUT_SECONDS)
        else:
            _chat_models[tier] = OpenAIChatModel(OPENAI_CHAT_MODEL, LLM_TIMEOUT_SECONDS)
        logger.info("Chat model initialized: tier=%s model=%s", tier, _chat_models[tier].model)
    return _chat_models[tier]
