"""
FastAPI main application for the Rental Listing Assistant.

This is the entry point for the backend API server.
"""

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
import logging
import time

from .agents.query_analyzer import QueryAnalyzer
from .agents.response_agent import ResponseAgent
from .config import Settings, get_settings
from .errors import RateLimited, StoreUnavailable
from .models.schemas import (
    ChatRequest,
    ChatResponse,
    ConversationMessage,
    HealthResponse,
    HistoryResponse,
    Property,
    PropertyCreateResponse,
    SearchResponse,
)
from .services.cache_service import CacheService
from .services.llm_service import LLMService
from .services.search_service import HybridSearchService
from .services.session_service import SessionService
from .services.store_service import BaseStore, create_store
from .services.streaming_service import StreamingPipeline
from .utils.helpers import generate_session_id
from .workflow.graph import ChatWorkflow
from . import __version__

# Settings
settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    settings: Settings
    store: BaseStore
    llm: LLMService
    search_cache: CacheService
    answer_cache: CacheService
    search: HybridSearchService
    sessions: SessionService
    workflow: ChatWorkflow
    streaming: StreamingPipeline


def build_services(
    settings: Optional[Settings] = None,
    store: Optional[BaseStore] = None,
    llm: Optional[LLMService] = None,
) -> Services:
    """
    Wire the store, caches, services and workflow together.

    Args:
        settings: Optional settings override
        store: Optional store (defaults to the configured backend)
        llm: Optional LLM service (defaults to an OpenAI-backed one)

    Returns:
        Services container
    """
    settings = settings or get_settings()
    store = store or create_store(settings)
    llm = llm or LLMService(settings)

    search_cache = CacheService(settings.CACHE_CAPACITY, settings.SEARCH_CACHE_TTL_SECONDS, name="search")
    answer_cache = CacheService(settings.CACHE_CAPACITY, settings.RESPONSE_CACHE_TTL_SECONDS, name="answer")
    analyzer = QueryAnalyzer(settings.KNOWN_CITIES)

    search = HybridSearchService(store, embedder=llm, cache=search_cache, settings=settings, analyzer=analyzer)
    sessions = SessionService(store, session_timeout_hours=settings.SESSION_TIMEOUT_HOURS)
    workflow = ChatWorkflow(
        search_service=search,
        session_service=sessions,
        response_agent=ResponseAgent(llm, settings),
        answer_cache=answer_cache,
        analyzer=analyzer,
        settings=settings,
    )

    return Services(
        settings=settings,
        store=store,
        llm=llm,
        search_cache=search_cache,
        answer_cache=answer_cache,
        search=search,
        sessions=sessions,
        workflow=workflow,
        streaming=StreamingPipeline(workflow, sessions, settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler for startup/shutdown events.
    """
    # Startup
    logger.info("Starting Rental Listing Assistant API...")
    logger.info(f"Version: {__version__}")

    services = build_services(settings)
    app.state.services = services

    if not await services.store.ping():
        logger.warning("Store did not answer ping; searches will degrade until it is reachable")
    if not services.llm.is_configured:
        logger.warning("OPENAI_API_KEY is not set; answers will use the fallback template")

    logger.info("Rental Listing Assistant API started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Rental Listing Assistant API...")
    await services.store.close()


# Create FastAPI application
app = FastAPI(
    title="Rental Listing Assistant API",
    description="""
    A leasing assistant for a small catalog of rental listings.

    Features:
    - Natural language search with structured filters
    - Semantic matching for descriptive queries
    - Short answers with tour and application links
    - Streaming responses
    """,
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-ID"],
)


def get_services(request: Request) -> Services:
    """Dependency returning the application's service container."""
    return request.app.state.services


def _rate_limited_response(error: RateLimited) -> JSONResponse:
    headers = {}
    if error.retry_after is not None:
        headers["Retry-After"] = str(max(1, int(round(error.retry_after))))
    return JSONResponse(status_code=429, content={"error": "rate_limited"}, headers=headers)


# ============================================================
# API Endpoints
# ============================================================

@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Rental Listing Assistant API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(services: Services = Depends(get_services)):
    """
    Health check endpoint to verify service status.
    """
    store_connected = await services.store.ping()

    return HealthResponse(
        status="healthy" if store_connected else "degraded",
        version=__version__,
        store_connected=store_connected,
        llm_configured=services.llm.is_configured,
    )


@app.post("/chat", response_model=ChatResponse, tags=["Chat"])
async def chat(request: ChatRequest, services: Services = Depends(get_services)):
    """
    Main endpoint for chatting with the assistant.

    Returns the whole answer at once.
    """
    if not request.message or not request.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")

    session_id = request.session_id or generate_session_id()
    logger.info(f"Chat from session {session_id}: {request.message[:50]}...")

    try:
        answer = await services.workflow.generate(session_id, request.message)
    except RateLimited as e:
        logger.warning(f"Rate limited for session {session_id}: {e}")
        return _rate_limited_response(e)
    except Exception as e:
        logger.error(f"Error processing chat message: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to process message")

    return ChatResponse(response=answer, session_id=session_id, timestamp=int(time.time() * 1000))


@app.post("/chat/stream", tags=["Chat"])
async def chat_stream(
    request: ChatRequest,
    x_session_id: Optional[str] = Header(None, alias="X-Session-ID"),
    services: Services = Depends(get_services),
):
    """
    Streaming chat endpoint (server-sent events).

    Frames are ``data: {"content": ...}`` followed by ``data: [DONE]``.
    The session id is echoed in the ``X-Session-ID`` response header.
    """
    if not request.message or not request.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")

    session_id = request.session_id or x_session_id or generate_session_id()
    stream = services.streaming.open(session_id, request.message)

    async def event_source():
        events = stream.events()
        try:
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"X-Session-ID": session_id, "Cache-Control": "no-cache"},
    )


@app.get("/properties", response_model=SearchResponse, tags=["Properties"])
async def search_properties(q: str = "", services: Services = Depends(get_services)):
    """
    Search listings with a free-text query; an empty query lists everything.
    """
    result = await services.search.search_text(q.strip() or "*")

    return SearchResponse(
        properties=result.properties,
        intent=result.query.intent,
        filters=result.query.filters.to_dict(),
        latency_ms=result.latency_ms,
        cache_hit=result.cache_hit,
    )


@app.post("/properties", response_model=PropertyCreateResponse, tags=["Properties"])
async def add_property(prop: Property, services: Services = Depends(get_services)):
    """
    Add (or replace) a listing and index its embedding.
    """
    try:
        listing_id = await services.search.add_property(prop)
    except StoreUnavailable as e:
        logger.error(f"Error storing listing {prop.id}: {e}")
        raise HTTPException(status_code=503, detail="Listing store unavailable")

    return PropertyCreateResponse(success=True, listing_id=listing_id)


@app.get("/history/{session_id}", response_model=HistoryResponse, tags=["Session"])
async def get_history(session_id: str, limit: int = 20, services: Services = Depends(get_services)):
    """
    Get conversation history for a session.
    """
    history = await services.sessions.get_history(session_id, limit)

    return HistoryResponse(
        session_id=session_id,
        history=[ConversationMessage(**message) for message in history],
        count=len(history),
    )


@app.delete("/session/{session_id}", tags=["Session"])
async def delete_session(session_id: str, services: Services = Depends(get_services)):
    """
    Delete a session and all its data.
    """
    deleted = await services.sessions.delete_session(session_id)

    return {
        "success": deleted,
        "message": "Session deleted" if deleted else "Session not found",
    }


@app.get("/workflow/diagram", tags=["Debug"])
async def get_workflow_diagram(services: Services = Depends(get_services)):
    """
    Get a visual representation of the workflow graph.
    """
    return {
        "diagram": services.workflow.get_graph_visualization(),
    }


@app.get("/stats", tags=["Debug"])
async def get_stats(services: Services = Depends(get_services)):
    """
    Get system statistics (for debugging/monitoring).
    """
    services.sessions.cleanup_stale_sessions()
    last_metrics = services.workflow.last_metrics

    return {
        "active_sessions": services.sessions.get_active_session_count(),
        "properties": await services.search.count_properties(),
        "search_cache": services.search_cache.stats(),
        "answer_cache": services.answer_cache.stats(),
        "last_turn": last_metrics.to_dict() if last_metrics else None,
    }


# ============================================================
# Run with Uvicorn (for development)
# ============================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "rental_assistant.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
