"""
Grounded RAG Package

Conversational retrieval-augmented generation with grounding checks.

Components:
- QueryRewriter: Turns chat history + new input into ranked standalone questions
- Router: Decides whether a turn needs document retrieval
- IntentClassifier: Intent tags from the intent index + local keyword tags
- RetrievalEngine: Filtered Pinecone search with adjacent-partition expansion
- Reranker: Embedding-similarity reranking blended with the store score
- AnswerGenerator: Produces the answer from history and retrieved context
- GroundingChecker: Lexical / LLM check that the answer is backed by the context
- ConversationStore: Redis-backed per-session conversation storage
- ConversationalRagPipeline: Runs a turn through the state machine
"""

from .commands import CommandDispatcher, Directive, DocumentImporter, parse_directive
from .generator import AnswerGenerator, get_generator
from .grounding import GroundingChecker, get_grounding_checker, lexical_grounding
from .intent import IntentClassifier, IntentTaxonomy, get_intent_classifier, load_taxonomy
from .keywords import KeywordExtractor, get_keyword_extractor
from .knowledge_store import KnowledgeStore, PineconeKnowledgeStore, get_knowledge_store
from .memory import Conversation, ConversationStore
from .pipeline import ConversationalRagPipeline, TurnResult, get_pipeline
from .query_rewriter import QueryRewriter, get_query_rewriter
from .reranker import Reranker, cosine_similarity, get_reranker, rerank_by_keyword_overlap
from .retriever import RetrievalEngine, RetrievalResult, get_retrieval_engine
from .router import Router, get_router
from .cancellation import CancellationToken
from .state_machine import TurnState

__all__ = [
    # Classes
    "QueryRewriter",
    "Router",
    "KeywordExtractor",
    "IntentClassifier",
    "IntentTaxonomy",
    "KnowledgeStore",
    "PineconeKnowledgeStore",
    "RetrievalEngine",
    "RetrievalResult",
    "Reranker",
    "AnswerGenerator",
    "GroundingChecker",
    "Conversation",
    "ConversationStore",
    "CommandDispatcher",
    "Directive",
    "DocumentImporter",
    "CancellationToken",
    "TurnState",
    "TurnResult",
    "ConversationalRagPipeline",

    # Functions
    "parse_directive",
    "load_taxonomy",
    "lexical_grounding",
    "cosine_similarity",
    "rerank_by_keyword_overlap",

    # Factory functions
    "get_query_rewriter",
    "get_router",
    "get_keyword_extractor",
    "get_intent_classifier",
    "get_knowledge_store",
    "get_retrieval_engine",
    "get_reranker",
    "get_generator",
    "get_grounding_checker",
    "get_pipeline",
]
