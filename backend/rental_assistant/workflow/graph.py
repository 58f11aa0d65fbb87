"""
LangGraph workflow definition for a single chat turn.
"""

import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from langgraph.graph import StateGraph, END

from ..agents.query_analyzer import QueryAnalyzer
from ..agents.response_agent import NO_PROPERTIES_MESSAGE, ResponseAgent
from ..config import Settings, get_settings
from ..models.schemas import Property, SearchFilters, SearchQuery
from ..models.state import ChatTurnState, QueryIntent, create_initial_state
from ..services.cache_service import CacheService
from ..services.search_service import HybridSearchService
from ..services.session_service import SessionService
from ..utils.helpers import query_fingerprint
from .metrics import TurnMetrics

logger = logging.getLogger(__name__)


class ChatWorkflow:
    """
    Orchestrates one chat turn.

    Uses LangGraph to define a directed graph of nodes with conditional
    routing: classify -> search -> generate | no_results -> finalize.
    A cached answer for a search intent skips straight to finalize.
    """

    def __init__(
        self,
        search_service: HybridSearchService,
        session_service: SessionService,
        response_agent: ResponseAgent,
        answer_cache: Optional[CacheService] = None,
        analyzer: Optional[QueryAnalyzer] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.search_service = search_service
        self.session_service = session_service
        self.response_agent = response_agent
        self.answer_cache = answer_cache
        self.analyzer = analyzer or search_service.analyzer
        self.last_metrics: Optional[TurnMetrics] = None
        self._graph = None
        self._compiled_app = None
        self._build_graph()

    def _build_graph(self):
        """Build the LangGraph workflow graph."""
        self._graph = StateGraph(ChatTurnState)

        self._graph.add_node("classify", self._classify_node)
        self._graph.add_node("search", self._search_node)
        self._graph.add_node("generate", self._generate_node)
        self._graph.add_node("no_results", self._no_results_node)
        self._graph.add_node("finalize", self._finalize_node)

        self._graph.set_entry_point("classify")

        self._graph.add_conditional_edges(
            "classify",
            self._route_after_classify,
            {"search": "search", "finalize": "finalize"},
        )
        self._graph.add_conditional_edges(
            "search",
            self._route_after_search,
            {"generate": "generate", "no_results": "no_results"},
        )
        self._graph.add_edge("generate", "finalize")
        self._graph.add_edge("no_results", "finalize")
        self._graph.add_edge("finalize", END)

        self._compiled_app = self._graph.compile()

    # ------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------

    @staticmethod
    def _route_after_classify(state: ChatTurnState) -> str:
        return "finalize" if state.get("answer_cache_hit") else "search"

    @staticmethod
    def _route_after_search(state: ChatTurnState) -> str:
        return "generate" if state.get("candidates") else "no_results"

    # ------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------

    async def _classify_node(self, state: ChatTurnState) -> Dict[str, Any]:
        """Classify the message, load session context, consult the answer cache."""
        query = self.analyzer.analyze(state["user_message"])
        filters = query.filters.to_dict()

        session = await self.session_service.get_or_create(state["session_id"])

        update: Dict[str, Any] = {
            "intent": query.intent,
            "action": query.action,
            "choice_index": query.choice_index,
            "filters": filters,
            "fingerprint": query_fingerprint(
                query.text,
                filters,
                namespace="answer",
                max_length=self.settings.QUERY_FINGERPRINT_MAX_LENGTH,
            ),
            "history": session.recent_messages(self.settings.HISTORY_CONTEXT_MESSAGES),
            "last_shown_ids": list(session.last_shown_ids),
            "selected_id": session.selected_id,
        }

        # Choice and action answers depend on session context
        if query.intent.is_search and self.answer_cache is not None:
            cached = self.answer_cache.get(update["fingerprint"])
            if cached is not None:
                update["answer"] = cached["text"]
                update["last_shown_ids"] = list(cached["shown_ids"])
                update["answer_cache_hit"] = True

        logger.debug(f"Classified {state['user_message'][:80]!r} as {query.intent.value} with {filters}")
        return update

    async def _search_node(self, state: ChatTurnState) -> Dict[str, Any]:
        """Resolve candidates from session context or the hybrid search."""
        intent: QueryIntent = state["intent"]
        update: Dict[str, Any] = {}

        if not intent.is_search:
            candidates, selected_id = await self._resolve_from_session(state)
            if candidates:
                update["candidates"] = candidates
                update["selected_id"] = selected_id
                return update
            logger.info(f"No session context for {intent.value}; searching the raw text instead")

        query = SearchQuery(
            intent=intent,
            text=state["user_message"],
            filters=SearchFilters.model_validate(state.get("filters") or {}),
        )
        result = await self.search_service.search(query)
        latency_ms = result.latency_ms
        candidates = result.properties

        if not candidates and not query.filters.is_empty():
            logger.info("No listings matched the filters; retrying with the full catalog")
            retry = await self.search_service.search(SearchQuery(intent=QueryIntent.EXACT, text="*"))
            latency_ms += retry.latency_ms
            candidates = retry.properties

        update.update(
            candidates=candidates,
            search_latency_ms=latency_ms,
            search_cache_hit=result.cache_hit,
        )
        if candidates:
            update["last_shown_ids"] = [prop.id for prop in candidates]
        return update

    async def _generate_node(self, state: ChatTurnState) -> Dict[str, Any]:
        intent: QueryIntent = state["intent"]
        selected = not intent.is_search and state.get("selected_id") is not None

        answer = await self.response_agent.generate(
            question=state["user_message"],
            candidates=state["candidates"],
            history=state.get("history"),
            action=state.get("action") if intent == QueryIntent.ACTION else None,
            selected=selected,
        )

        return {
            "answer": answer.text,
            "used_fallback": answer.used_fallback,
            "generation_latency_ms": answer.latency_ms,
            "total_tokens": answer.total_tokens,
        }

    async def _no_results_node(self, state: ChatTurnState) -> Dict[str, Any]:
        return {"answer": NO_PROPERTIES_MESSAGE}

    async def _finalize_node(self, state: ChatTurnState) -> Dict[str, Any]:
        """Write the session turn, cache the answer and record metrics."""
        intent: QueryIntent = state["intent"]
        answer = state.get("answer") or NO_PROPERTIES_MESSAGE

        await self.session_service.record_turn(
            state["session_id"],
            state["user_message"],
            answer,
            shown_ids=state.get("last_shown_ids"),
            selected_id=state.get("selected_id") if not intent.is_search else None,
        )

        cacheable = (
            intent.is_search
            and self.answer_cache is not None
            and not state.get("answer_cache_hit")
            and not state.get("used_fallback")
            and bool(state.get("candidates"))
        )
        if cacheable:
            self.answer_cache.set(
                state["fingerprint"],
                {"text": answer, "shown_ids": list(state.get("last_shown_ids") or [])},
            )

        metrics = TurnMetrics(
            session_id=state["session_id"],
            intent=intent.value,
            candidate_count=len(state.get("candidates") or []),
            search_latency_ms=state.get("search_latency_ms", 0.0),
            generation_latency_ms=state.get("generation_latency_ms", 0.0),
            total_latency_ms=(time.perf_counter() - state["started_at"]) * 1000,
            total_tokens=state.get("total_tokens"),
            search_cache_hit=state.get("search_cache_hit", False),
            answer_cache_hit=state.get("answer_cache_hit", False),
            used_fallback=state.get("used_fallback", False),
        )
        metrics.log(self.settings)
        self.last_metrics = metrics

        return {"answer": answer, "metrics": metrics.to_dict()}

    async def _resolve_from_session(self, state: ChatTurnState) -> Tuple[List[Property], Optional[str]]:
        """
        Candidates for Choice/Action intents.

        Choice picks the Nth listing shown last turn. Action targets the
        selected listing, else the only shown listing, else everything shown.
        """
        shown: List[str] = state.get("last_shown_ids") or []
        selected_id: Optional[str] = state.get("selected_id")

        if state["intent"] == QueryIntent.CHOICE:
            index = state.get("choice_index")
            if index is None or index >= len(shown):
                return [], None
            target = shown[index]
            return await self.search_service.get_properties([target]), target

        if selected_id:
            found = await self.search_service.get_properties([selected_id])
            if found:
                return found, selected_id
        if len(shown) == 1:
            return await self.search_service.get_properties(shown), shown[0]
        if shown:
            return await self.search_service.get_properties(shown), None
        return [], None

    # ------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------

    async def run(self, session_id: str, user_message: str) -> ChatTurnState:
        """
        Run the workflow for one message.

        Returns:
            Final state after workflow execution

        Raises:
            RateLimited: Generation was throttled through every retry
        """
        initial_state = create_initial_state(session_id, user_message, time.perf_counter())
        return await self._compiled_app.ainvoke(initial_state)

    async def generate(self, session_id: str, user_message: str) -> str:
        """Whole-answer entry point."""
        result = await self.run(session_id, user_message)
        return result["answer"]

    async def stream_updates(self, session_id: str, user_message: str) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """
        Yield ``(node_name, partial_update)`` as each node completes.

        Used by the streaming pipeline to track its stage.
        """
        initial_state = create_initial_state(session_id, user_message, time.perf_counter())
        async for chunk in self._compiled_app.astream(initial_state, stream_mode="updates"):
            for node_name, update in chunk.items():
                yield node_name, update or {}

    def get_graph_visualization(self) -> str:
        """
        Get a text representation of the workflow graph.
        """
        return """
            classify --(cached answer)--> finalize
               |
               v
             search --(no candidates)--> no_results --+
               |                                      |
               v                                      v
            generate ----------------------------> finalize --> END
        """
