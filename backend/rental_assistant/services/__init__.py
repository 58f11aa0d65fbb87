"""
Services for the Rental Listing Assistant.

- BaseStore / InMemoryStore / RedisStore: Key-value document store
- CacheService: Fingerprinted TTL + LRU cache
- LLMService: Chat completions and embeddings
- HybridSearchService: Exact + semantic listing search
- SessionService: Conversation session management

The streaming pipeline lives in ``services.streaming_service``.
"""

from .store_service import BaseStore, InMemoryStore, RedisStore, create_store
from .cache_service import CacheEntry, CacheService
from .llm_service import LLMService, CompletionResult
from .search_service import HybridSearchService, matches_filters, cosine_similarity
from .session_service import ChatMessage, ChatSession, SessionService

__all__ = [
    "BaseStore",
    "InMemoryStore",
    "RedisStore",
    "create_store",
    "CacheEntry",
    "CacheService",
    "LLMService",
    "CompletionResult",
    "HybridSearchService",
    "matches_filters",
    "cosine_similarity",
    "ChatMessage",
    "ChatSession",
    "SessionService",
]
