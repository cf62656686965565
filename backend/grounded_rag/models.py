"""
Data Models

Turn-scoped values passed between pipeline components. Everything here is
created fresh for a single turn except ``ChatMessage``, which ends up in
the session's ``Conversation``.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class StandaloneQuestion(BaseModel):
    """A self-contained reformulation of the user's input."""

    model_config = ConfigDict(frozen=True)

    text: str
    score: float = 0.0


class RoutingDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    needs_retrieval: bool
    raw_output: str = ""
    # True when the document-keyword override flipped the model's verdict
    overridden: bool = False


class IntentTagSet(BaseModel):
    """Category labels and locally extracted keywords for one question."""

    intents: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.intents and not self.keywords


class TagFilter(BaseModel):
    """One ``key == value`` condition on a stored record's tags."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str


class StorePartition(BaseModel):
    partition_number: int
    text: str = ""
    relevance: float = 0.0
    tags: Dict[str, List[str]] = Field(default_factory=dict)

    def tag(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.tags.get(name)
        if values:
            return values[0]
        return default


class StoreHit(BaseModel):
    """A knowledge-store search result: one document with matched partitions."""

    document_id: str
    source_name: str = ""
    partitions: List[StorePartition] = Field(default_factory=list)


class RetrievedFragment(BaseModel):
    """A retrieved document slice.

    ``relevance_score`` is overwritten by the reranker; the fragment only
    lives for one retrieval cycle.
    """

    document_id: str
    source_name: str = ""
    partition_number: int
    text: str = ""
    relevance_score: float = 0.0

    @property
    def key(self) -> Tuple[str, int]:
        return (self.document_id, self.partition_number)

    @property
    def citation(self) -> str:
        return f"[{self.source_name or self.document_id}:{self.partition_number}]"


class DirectAnswer(BaseModel):
    """Output of the knowledge store's direct-answer ("ask") mode."""

    answer_text: str = ""
    sources: List[RetrievedFragment] = Field(default_factory=list)


class GroundingVerdict(str, Enum):
    GROUNDED = "grounded"
    UNGROUNDED = "ungrounded"
    UNKNOWN = "unknown"


class AnswerCandidate(BaseModel):
    text: str
    grounding_verdict: GroundingVerdict = GroundingVerdict.UNKNOWN
    grounding_explanation: Optional[str] = None
