"""
Conversation Memory Module

``Conversation`` is the ordered chat history of one session. It always
starts with the system prompt and only ever grows by appending; ``reset``
(the ``/clear`` directive) is the single exception and goes back to the
system prompt alone.

``ConversationStore`` keeps one Conversation per session id in Redis with
TTL-based expiry, falling back to process memory when Redis is down. The
fallback applies the same TTL and keeps at most ``max_local_sessions``
entries, evicting the least recently used.
"""

import json
import logging
import time
import uuid
from collections import OrderedDict
from threading import Lock
from typing import Dict, List, Optional, Tuple

import redis

from .config import (
    REDIS_HOST,
    REDIS_PORT,
    REDIS_USERNAME,
    REDIS_PASSWORD,
    SESSION_TTL_SECONDS,
    LOCAL_SESSION_MAX_ENTRIES,
    HISTORY_USER_TURN_CAP,
    HISTORY_TAIL_MESSAGES,
)
from .models import ChatMessage, Role

logger = logging.getLogger(__name__)

_ROLE_LABELS = {Role.SYSTEM: "System", Role.USER: "User", Role.ASSISTANT: "Assistant"}


class Conversation:
    """Append-only chat history whose first entry is the system prompt."""

    def __init__(self, system_prompt: str, messages: Optional[List[ChatMessage]] = None):
        self._messages: List[ChatMessage] = [ChatMessage(role=Role.SYSTEM, content=system_prompt)]
        self._messages.extend(messages or [])

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def system_prompt(self) -> str:
        return self._messages[0].content

    @property
    def user_turn_count(self) -> int:
        return sum(1 for m in self._messages if m.role == Role.USER)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, role: Role, content: str) -> None:
        self._messages.append(ChatMessage(role=role, content=content))

    def add_user_message(self, content: str) -> None:
        self.append(Role.USER, content)

    def add_assistant_message(self, content: str) -> None:
        self.append(Role.ASSISTANT, content)

    def reset(self) -> None:
        self._messages = self._messages[:1]

    def transcript(
        self,
        new_input: str,
        user_turn_cap: int = HISTORY_USER_TURN_CAP,
        tail_messages: int = HISTORY_TAIL_MESSAGES,
    ) -> str:
        """Render the history plus ``new_input`` as one prompt string.

        Past ``user_turn_cap`` user turns only the system message and the
        last ``tail_messages`` messages are kept.
        """
        if self.user_turn_count > user_turn_cap:
            selected = [self._messages[0]] + self._messages[1:][-tail_messages:]
        else:
            selected = list(self._messages)

        lines = [f"{_ROLE_LABELS[m.role]}: {m.content}" for m in selected]
        lines.append(f"User: {new_input}")
        return "\n".join(lines)

    def to_chat_messages(self, include_system: bool = True) -> List[Dict[str, str]]:
        messages = self._messages if include_system else self._messages[1:]
        return [{"role": m.role.value, "content": m.content} for m in messages]

    def to_json(self) -> str:
        return json.dumps(self.to_chat_messages())

    @classmethod
    def from_json(cls, raw: str) -> "Conversation":
        data = json.loads(raw)
        if not data or data[0].get("role") != Role.SYSTEM.value:
            raise ValueError("Persisted conversation must start with a system message")
        messages = [ChatMessage(role=Role(m["role"]), content=m["content"]) for m in data]
        return cls(messages[0].content, messages[1:])


class ConversationStore:
    """Redis-backed per-session conversation storage."""

    KEY_PREFIX = "grounded-rag:session:"

    def __init__(
        self,
        system_prompt: str,
        greeting: Optional[str] = None,
        ttl: int = SESSION_TTL_SECONDS,
        max_local_sessions: int = LOCAL_SESSION_MAX_ENTRIES,
    ):
        self.system_prompt = system_prompt
        self.greeting = greeting
        self.ttl = ttl
        self.max_local_sessions = max(1, max_local_sessions)
        self._client: Optional[redis.Redis] = None
        self._local: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()
        self._local_lock = Lock()

    def connect(self) -> None:
        """Establish the Redis connection; stays in local mode on failure."""
        try:
            self._client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                username=REDIS_USERNAME,
                password=REDIS_PASSWORD,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            self._client.ping()
            logger.info("Redis connected (%s:%s)", REDIS_HOST, REDIS_PORT)
        except (redis.ConnectionError, redis.TimeoutError) as exc:
            logger.warning("Redis unavailable, using in-process session store: %s", exc)
            self._client = None

    def disconnect(self) -> None:
        if self._client:
            self._client.close()
            logger.info("Redis disconnected")

    @property
    def available(self) -> bool:
        if self._client is None:
            return False
        try:
            self._client.ping()
            return True
        except (redis.ConnectionError, redis.TimeoutError):
            return False

    @staticmethod
    def new_session_id() -> str:
        return uuid.uuid4().hex

    def new_conversation(self) -> Conversation:
        conversation = Conversation(self.system_prompt)
        if self.greeting:
            conversation.add_assistant_message(self.greeting)
        return conversation

    def _read(self, key: str) -> Optional[str]:
        if self.available:
            try:
                return self._client.get(key)
            except redis.RedisError as exc:
                logger.warning("Failed to read session %s: %s", key, exc)
        with self._local_lock:
            entry = self._local.get(key)
            if entry is None:
                return None
            ts, payload = entry
            if time.time() - ts > self.ttl:
                self._local.pop(key, None)
                return None
            self._local.move_to_end(key)
            return payload

    def load(self, session_id: str) -> Conversation:
        """Return the session's conversation, or a fresh one."""
        raw = self._read(f"{self.KEY_PREFIX}{session_id}")
        if raw is None:
            return self.new_conversation()
        try:
            return Conversation.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Discarding corrupt session %s: %s", session_id, exc)
            return self.new_conversation()

    def save(self, session_id: str, conversation: Conversation) -> None:
        key = f"{self.KEY_PREFIX}{session_id}"
        payload = conversation.to_json()
        if self.available:
            try:
                self._client.set(key, payload, ex=self.ttl)
                return
            except redis.RedisError as exc:
                logger.warning("Failed to write session %s: %s", session_id, exc)
        with self._local_lock:
            self._local[key] = (time.time(), payload)
            self._local.move_to_end(key)
            while len(self._local) > self.max_local_sessions:
                evicted, _ = self._local.popitem(last=False)
                logger.debug("Evicted local session %s", evicted)

    def delete(self, session_id: str) -> bool:
        key = f"{self.KEY_PREFIX}{session_id}"
        with self._local_lock:
            removed = self._local.pop(key, None) is not None
        if self.available:
            try:
                removed = bool(self._client.delete(key)) or removed
            except redis.RedisError as exc:
                logger.warning("Failed to delete session %s: %s", session_id, exc)
        return removed
