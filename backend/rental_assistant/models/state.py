"""
LangGraph state definitions for the chat turn workflow.
"""

from typing import TypedDict, List, Optional, Dict, Any
from enum import Enum


class QueryIntent(str, Enum):
    """Enumeration of query intents, in the order the router evaluates them."""

    ACTION = "action"
    CHOICE = "choice"
    EXACT = "exact"
    HYBRID = "hybrid"
    SEMANTIC = "semantic"

    @property
    def is_search(self) -> bool:
        """Whether the intent is answered by a fresh catalog search."""
        if self in (QueryIntent.EXACT, QueryIntent.SEMANTIC, QueryIntent.HYBRID):
            return True
        if self in (QueryIntent.CHOICE, QueryIntent.ACTION):
            return False
        raise ValueError(f"Unhandled intent: {self}")


class ActionType(str, Enum):
    """Call-to-action requested by an ``ACTION`` utterance."""

    TOUR = "tour"
    APPLY = "apply"
    DETAILS = "details"


class PipelineStage(str, Enum):
    """Stages of the streaming delivery pipeline."""

    IDLE = "idle"
    CLASSIFYING = "classifying"
    SEARCHING = "searching"
    GENERATING = "generating"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChatTurnState(TypedDict, total=False):
    """
    State object passed through the LangGraph turn workflow.

    Each node returns a partial update; the compiled graph merges them.
    """

    # Input
    session_id: str
    user_message: str
    started_at: float

    # Classification
    intent: QueryIntent
    action: Optional[ActionType]
    choice_index: Optional[int]
    filters: Dict[str, Any]
    fingerprint: str

    # Search
    candidates: List[Any]  # List[Property]
    search_latency_ms: float
    search_cache_hit: bool

    # Conversation context
    history: List[Dict[str, Any]]
    last_shown_ids: List[str]
    selected_id: Optional[str]

    # Output
    answer: str
    answer_cache_hit: bool
    used_fallback: bool
    generation_latency_ms: float
    total_tokens: Optional[int]
    metrics: Dict[str, Any]


def create_initial_state(session_id: str, user_message: str, started_at: float) -> ChatTurnState:
    """
    Create an initial state object for a new chat turn.

    Args:
        session_id: Session identifier
        user_message: The user's message text
        started_at: Monotonic start time of the turn

    Returns:
        Initialized ChatTurnState
    """
    return ChatTurnState(
        session_id=session_id,
        user_message=user_message,
        started_at=started_at,
        action=None,
        choice_index=None,
        filters={},
        fingerprint="",
        candidates=[],
        search_latency_ms=0.0,
        search_cache_hit=False,
        history=[],
        last_shown_ids=[],
        selected_id=None,
        answer="",
        answer_cache_hit=False,
        used_fallback=False,
        generation_latency_ms=0.0,
        total_tokens=None,
        metrics={},
    )
