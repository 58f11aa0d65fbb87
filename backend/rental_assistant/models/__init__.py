"""
Data models for the Rental Listing Assistant.
"""

from .schemas import (
    Property,
    NumericRange,
    SearchFilters,
    SearchQuery,
    SearchResult,
    ConversationMessage,
    HistoryResponse,
    ChatRequest,
    ChatResponse,
    SearchResponse,
    PropertyCreateResponse,
    HealthResponse,
)
from .state import ChatTurnState, QueryIntent, ActionType, PipelineStage

__all__ = [
    "Property",
    "NumericRange",
    "SearchFilters",
    "SearchQuery",
    "SearchResult",
    "ConversationMessage",
    "HistoryResponse",
    "ChatRequest",
    "ChatResponse",
    "SearchResponse",
    "PropertyCreateResponse",
    "HealthResponse",
    "ChatTurnState",
    "QueryIntent",
    "ActionType",
    "PipelineStage",
]
