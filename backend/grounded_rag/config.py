"""
Grounded RAG Configuration

Central configuration for all pipeline components. Values are read once
from the environment (and an optional ``.env`` file) at import time.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return (os.getenv(name) or default).strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# API KEYS
# =============================================================================

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
PINECONE_API_KEY = os.getenv("PINECONE_API_KEY")

# =============================================================================
# LANGSMITH TRACING
# =============================================================================

_tracing_raw = os.getenv("LANGSMITH_TRACING") or os.getenv("LANGCHAIN_TRACING_V2") or os.getenv("LANGCHAIN_TRACING") or "false"
LANGSMITH_TRACING_ENABLED = _tracing_raw.lower() == "true"
LANGSMITH_API_KEY = os.getenv("LANGSMITH_API_KEY") or os.getenv("LANGCHAIN_API_KEY", "")
LANGSMITH_PROJECT = os.getenv("LANGSMITH_PROJECT") or os.getenv("LANGCHAIN_PROJECT", "grounded-rag")
LANGSMITH_ENDPOINT = os.getenv("LANGSMITH_ENDPOINT") or os.getenv("LANGCHAIN_ENDPOINT", "https://api.smith.langchain.com")

# Ensure the SDK env vars are set so LangSmith auto-instruments OpenAI calls
if LANGSMITH_TRACING_ENABLED and LANGSMITH_API_KEY:
    os.environ["LANGSMITH_TRACING"] = "true"
    os.environ["LANGCHAIN_TRACING_V2"] = "true"
    os.environ["LANGSMITH_API_KEY"] = LANGSMITH_API_KEY
    os.environ["LANGCHAIN_API_KEY"] = LANGSMITH_API_KEY
    os.environ["LANGSMITH_PROJECT"] = LANGSMITH_PROJECT
    os.environ["LANGCHAIN_PROJECT"] = LANGSMITH_PROJECT
    os.environ["LANGSMITH_ENDPOINT"] = LANGSMITH_ENDPOINT
    os.environ["LANGCHAIN_ENDPOINT"] = LANGSMITH_ENDPOINT

# =============================================================================
# REDIS CONFIGURATION (per-session conversation store)
# =============================================================================

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_USERNAME = os.getenv("REDIS_USERNAME", "default")
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "1800"))
# In-process fallback when Redis is down
LOCAL_SESSION_MAX_ENTRIES = int(os.getenv("LOCAL_SESSION_MAX_ENTRIES", "1000"))

# =============================================================================
# PINECONE CONFIGURATION (knowledge store + intent index)
# =============================================================================

PINECONE_INDEX_NAME = os.getenv("PINECONE_INDEX_NAME", "grounded-rag")
DOCUMENTS_NAMESPACE = os.getenv("DOCUMENTS_NAMESPACE", "default")
INTENT_NAMESPACE = os.getenv("INTENT_NAMESPACE", "intent")

# =============================================================================
# SYSTEM PROMPTS + TAXONOMY
# =============================================================================

SYSTEM_PROMPTS_DIR = Path(__file__).parent / "system_prompts"

CHAT_SYSTEM_PROMPT_FILE = "chat_system_prompt.txt"
REWRITE_PROMPT_FILE = "rewrite_prompt.txt"
ROUTING_PROMPT_FILE = "routing_prompt.txt"
FACT_CHECK_PROMPT_FILE = "fact_check_prompt.txt"
ASK_PROMPT_FILE = "ask_prompt.txt"

INTENT_TAXONOMY_FILE = os.getenv("INTENT_TAXONOMY_FILE", str(SYSTEM_PROMPTS_DIR / "intent_taxonomy.json"))

GREETING_MESSAGE = "Hello, I'm your assistant. Ask me anything about the documents in the knowledge store."

# =============================================================================
# MODEL CONFIGURATION
# =============================================================================

USE_OLLAMA = _env_bool("USE_OLLAMA")
OLLAMA_ENDPOINT = os.getenv("OLLAMA_ENDPOINT", "http://localhost:11434")
OLLAMA_TEXT_MODEL = os.getenv("OLLAMA_TEXT", "llama3.1")
OLLAMA_EMBEDDING_MODEL = os.getenv("OLLAMA_EMBEDDING", "nomic-embed-text")

OPENAI_CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o")
OPENAI_LIGHT_MODEL = os.getenv("OPENAI_LIGHT_MODEL", "gpt-4o-mini")
OPENAI_CHAT_TEMPERATURE = float(os.getenv("OPENAI_CHAT_TEMPERATURE", "0.2"))
OPENAI_CHAT_MAX_TOKENS = int(os.getenv("OPENAI_CHAT_MAX_TOKENS", "1000"))
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
OPENAI_EMBEDDING_DIMENSIONS = int(os.getenv("OPENAI_EMBEDDING_DIMENSIONS", "0"))

# =============================================================================
# CONVERSATION CONFIGURATION
# =============================================================================

# Past this many user turns the transcript keeps only system + recent tail
HISTORY_USER_TURN_CAP = int(os.getenv("HISTORY_USER_TURN_CAP", "9"))
HISTORY_TAIL_MESSAGES = int(os.getenv("HISTORY_TAIL_MESSAGES", "5"))

# =============================================================================
# RETRIEVAL CONFIGURATION
# =============================================================================

RETRIEVAL_MIN_RELEVANCE = float(os.getenv("RETRIEVAL_MIN_RELEVANCE", "0.4"))
RETRIEVAL_LIMIT = int(os.getenv("RETRIEVAL_LIMIT", "3"))
ASK_MIN_RELEVANCE = float(os.getenv("ASK_MIN_RELEVANCE", "0.7"))
ASK_LIMIT = int(os.getenv("ASK_LIMIT", "5"))
INTENT_MIN_RELEVANCE = float(os.getenv("INTENT_MIN_RELEVANCE", "0.0"))
INTENT_SEARCH_LIMIT = int(os.getenv("INTENT_SEARCH_LIMIT", "10"))
KEYWORD_MAX_KEYWORDS = int(os.getenv("KEYWORD_MAX_KEYWORDS", "10"))
KEYWORD_MAX_ENTITIES = int(os.getenv("KEYWORD_MAX_ENTITIES", "5"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "512"))
EMBEDDING_CACHE_TTL_SECONDS = float(os.getenv("EMBEDDING_CACHE_TTL_SECONDS", "3600"))

# =============================================================================
# RERANKING CONFIGURATION
# =============================================================================

RERANK_STRATEGY = os.getenv("RERANK_STRATEGY", "embedding")  # embedding | keyword
RERANK_SIMILARITY_WEIGHT = float(os.getenv("RERANK_SIMILARITY_WEIGHT", "0.7"))
RERANK_ORIGINAL_WEIGHT = float(os.getenv("RERANK_ORIGINAL_WEIGHT", "0.3"))
RERANK_TOP_K = int(os.getenv("RERANK_TOP_K", "-1"))
RERANK_MAX_WORKERS = int(os.getenv("RERANK_MAX_WORKERS", "4"))
RERANKER_FAILURE_COOLDOWN_SECONDS = float(os.getenv("RERANKER_FAILURE_COOLDOWN_SECONDS", "60"))

# =============================================================================
# GROUNDING CONFIGURATION
# =============================================================================

# lexical | llm | strict
GROUNDING_POLICY = os.getenv("GROUNDING_POLICY", "llm")
GROUNDING_MIN_OVERLAP = int(os.getenv("GROUNDING_MIN_OVERLAP", "3"))
UNGROUNDED_WARNING = "[Warning: This answer is not based on the retrieved documents.]"

# =============================================================================
# TIMEOUTS
# =============================================================================

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LIGHT_LLM_TIMEOUT_SECONDS = float(os.getenv("LIGHT_LLM_TIMEOUT_SECONDS", "15"))
OLLAMA_TIMEOUT_SECONDS = float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "120"))
