"""FastAPI server for the Cleaning Concierge.

Run with:
    uvicorn concierge.server:app --reload --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from concierge.agent import create_concierge_agent
from concierge.api.deps import ApiError
from concierge.api.routes import router
from concierge.config import COMPANY_NAME, CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from concierge.errors import KnowledgeBaseError, ToolInputError
from concierge.kb import get_knowledge_base
from concierge.services.llm import AnthropicCompletionProvider
from concierge.services.metrics import metrics
from concierge.services.sessions import InMemoryHistoryStore
from concierge.services.stores import get_handoff_inbox, get_leads_store
from concierge.streaming import StreamRegistry, StreamTimeouts
from concierge.tools import build_default_registry

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_id"


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the shared resources once and store them in app state.

    The history store, completion provider, tool registry and compiled
    agent are looked up by the routes through ``request.app.state`` so
    tests (or a multi-process deployment) can swap any of them.
    """
    get_knowledge_base()
    get_leads_store().ensure_file()
    get_handoff_inbox().ensure_file()

    registry = build_default_registry()
    application.state.history_store = InMemoryHistoryStore()
    application.state.provider = AnthropicCompletionProvider()
    application.state.tool_registry = registry
    application.state.agent = create_concierge_agent(registry)
    application.state.stream_registry = StreamRegistry()
    application.state.stream_timeouts = StreamTimeouts()
    logger.info("Concierge ready (%d tools).", len(registry))
    yield
    sent = metrics.flush()
    logger.info("Shutdown complete (%d metrics flushed).", sent)


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Cleaning Concierge",
    description=(
        "Booking and pricing assistant for a residential cleaning company: "
        "streamed chat, quotes, availability, bookings, payment links and hand-off."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the embeddable widget) ─────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


# ── Error handlers ───────────────────────────────────────────────────
@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(exc.to_wire(), status_code=exc.status_code)


@app.exception_handler(ToolInputError)
async def tool_input_error_handler(request: Request, exc: ToolInputError) -> JSONResponse:
    return JSONResponse({"error": "INVALID_REQUEST", "details": str(exc)}, status_code=400)


@app.exception_handler(KnowledgeBaseError)
async def knowledge_base_error_handler(request: Request, exc: KnowledgeBaseError) -> JSONResponse:
    logger.error("[%s] Knowledge base error: %s", getattr(request.state, "request_id", "?"), exc)
    return JSONResponse({"error": "KNOWLEDGE_BASE_ERROR", "details": str(exc)}, status_code=500)


# ── Session + request-ID middleware ──────────────────────────────────
@app.middleware("http")
async def add_session_and_request_id(request: Request, call_next) -> Response:
    """Attach a session id and a request id to every request.

    The session id comes from the ``session_id`` cookie or the
    ``X-Session-ID`` header; a new one is minted when neither is present
    and always written back as an HttpOnly cookie.  The request id is
    echoed in ``X-Request-ID`` so the widget can reference (or cancel)
    a stream; a route that had to mint a different id keeps its own header.
    """
    session_id = (
        request.cookies.get(SESSION_COOKIE)
        or request.headers.get("X-Session-ID")
        or str(uuid.uuid4())
    )
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
    request.state.session_id = session_id
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)

    response = await call_next(request)
    response.headers.setdefault("X-Request-ID", request_id)
    response.set_cookie(SESSION_COOKIE, session_id, path="/", httponly=True, samesite="lax")
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": f"{COMPANY_NAME} Cleaning Concierge",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Cleaning Concierge API on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "concierge.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
