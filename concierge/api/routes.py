"""FastAPI route definitions for the Cleaning Concierge API."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from concierge import config
from concierge.agent import run_agent
from concierge.api.deps import ApiError, Caller, get_caller, require_admin_key, require_bot_token
from concierge.api.schemas import (
    AgentRequest,
    AgentResponse,
    CancelRequest,
    CancelResponse,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    ManualLeadRequest,
    ResetResponse,
    ToolCatalogResponse,
)
from concierge.errors import ErrorKind, normalize_error
from concierge.kb import reload_knowledge_base
from concierge.models import ChatMessage
from concierge.services.diagnostics import diagnostics
from concierge.services.llm import build_chat_messages
from concierge.services.metrics import metrics
from concierge.services.stores import get_leads_store
from concierge.streaming import AbortReason, StreamSession, complete_reply
from concierge.tools import TOOL_CATALOG_VERSION
from concierge.tools.availability import AvailabilityArgs, get_availability
from concierge.tools.faq import reload_faq_sources
from concierge.tools.payments import PaymentLinkArgs, generate_payment_link
from concierge.tools.quote import QuoteArgs, calculate_quote

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_state(request: Request, name: str):
    """Fetch a resource created by the lifespan (see ``server.py``)."""
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return value


def _wants_json(request: Request) -> bool:
    return (
        request.headers.get("x-stream-mode", "").lower() == "json"
        or "application/json" in request.headers.get("accept", "")
    )


def _error_response(exc: Exception, request_id: str) -> JSONResponse:
    payload = normalize_error(exc)
    if payload.error is ErrorKind.SERVER_ERROR:
        logger.exception("[%s] Unexpected error", request_id)
    logger.error(
        "[%s] sse-error status=%d code=%s", request_id, payload.status, payload.error.value,
    )
    return JSONResponse(payload.to_wire(), status_code=payload.status)


# ── Health & diagnostics ─────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check with the last fallback/abort marker."""
    return HealthResponse(
        has_api_key=bool(config.ANTHROPIC_API_KEY),
        model=config.MODEL_NAME,
        last_request_id=diagnostics.last_request_id,
        last_reason=diagnostics.last_reason,
    )


@router.get("/diag/last")
async def last_markers():
    """Most recent stream lifecycle markers (not served in production)."""
    if config.ENVIRONMENT == "production":
        raise HTTPException(status_code=404, detail="Not Found")
    return {"markers": diagnostics.markers()}


# ── Chat ─────────────────────────────────────────────────────────────


@router.post("/chat", response_model=ChatResponse, dependencies=[Depends(require_bot_token)])
async def chat(body: ChatRequest, request: Request, caller: Caller = Depends(get_caller)):
    """Answer one chat message.

    Streams Server-Sent Events by default; ``X-Stream-Mode: json`` or
    ``Accept: application/json`` returns ``{"reply": ...}`` instead.
    Either way the turn is appended to the caller's history on success.
    """
    message = body.message.strip()
    if not message:
        raise ApiError(400, "MISSING_MESSAGE")
    key = caller.session_key()

    store = _get_state(request, "history_store")
    provider = _get_state(request, "provider")
    request_id = getattr(request.state, "request_id", None) or uuid.uuid4().hex[:8]

    messages = build_chat_messages(message, store.get(key))

    def update_history(reply: str) -> None:
        store.append(
            key,
            ChatMessage(role="user", content=message),
            ChatMessage(role="assistant", content=reply),
        )
        store.trim(key, config.MAX_HISTORY_TURNS)

    if _wants_json(request):
        try:
            reply = await complete_reply(provider, messages)
        except Exception as exc:
            return _error_response(exc, request_id)
        update_history(reply)
        logger.info("[%s] sse-done (%d chars, mode=json)", request_id, len(reply))
        return ChatResponse(reply=reply)

    registry = _get_state(request, "stream_registry")
    if request_id in registry:
        # Request ids stay unique among live streams.
        request_id = uuid.uuid4().hex[:8]

    session = StreamSession(
        provider,
        messages,
        request_id=request_id,
        on_reply=update_history,
        timeouts=getattr(request.app.state, "stream_timeouts", None),
    )
    registry.register(session, key)

    async def event_stream():
        try:
            async for event in session.events():
                yield event.encode()
        finally:
            registry.unregister(session)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "X-Request-ID": request_id,
        },
    )


@router.post(
    "/chat/cancel", response_model=CancelResponse, dependencies=[Depends(require_bot_token)],
)
async def cancel_chat(body: CancelRequest, request: Request, caller: Caller = Depends(get_caller)):
    """Stop a live stream opened by the same caller.

    Cancelled streams end with ``aborted``, never a fallback.  Streams of
    another tenant, session or client are reported as not cancelled.
    """
    registry = _get_state(request, "stream_registry")
    session = registry.get(body.request_id, caller.session_key())
    cancelled = session.cancel(AbortReason(body.reason)) if session is not None else False
    logger.info("[%s] Cancel requested (%s): %s", body.request_id, body.reason, cancelled)
    return CancelResponse(cancelled=cancelled)


@router.post(
    "/session/reset", response_model=ResetResponse, dependencies=[Depends(require_bot_token)],
)
async def reset_session(request: Request, caller: Caller = Depends(get_caller)):
    _get_state(request, "history_store").reset(caller.session_key())
    return ResetResponse()


# ── Agent ────────────────────────────────────────────────────────────


@router.post("/agent", response_model=AgentResponse, dependencies=[Depends(require_bot_token)])
async def agent_chat(body: AgentRequest, request: Request):
    """Run the tool-calling agent over a caller-supplied conversation."""
    agent = _get_state(request, "agent")
    request_id = getattr(request.state, "request_id", "?")
    try:
        result = await run_agent(agent, body.messages, body.metadata)
    except Exception as exc:
        return _error_response(exc, request_id)

    return AgentResponse(
        message=result.message,
        tools_used=result.tools_used,
        tool_results=result.tool_results,
        handoff=result.handoff,
    )


@router.get("/tools", response_model=ToolCatalogResponse)
async def tool_catalog(request: Request):
    registry = _get_state(request, "tool_registry")
    return ToolCatalogResponse(version=TOOL_CATALOG_VERSION, tools=registry.catalog())


# ── Manual form tools ────────────────────────────────────────────────


@router.post("/tools/quote")
async def quote(body: QuoteArgs):
    result = calculate_quote(body)
    metrics.record_funnel("quote_issued")
    return {"data": result.model_dump(mode="json")}


@router.post("/tools/availability")
async def availability(body: AvailabilityArgs):
    slots = get_availability(body)
    return {
        "data": {
            "slots": [slot.model_dump(mode="json") for slot in slots],
            "duration_hours": body.duration_hours,
        }
    }


@router.post("/tools/payment-link")
async def payment_link(body: PaymentLinkArgs):
    link = generate_payment_link(body)
    metrics.record_funnel("payment_link_generated")
    return {"data": link.model_dump(mode="json")}


# ── Leads & admin ────────────────────────────────────────────────────


@router.post("/leads", status_code=201)
async def create_lead(body: ManualLeadRequest, request: Request):
    """Store a lead from the contact form.  Needs a name plus a phone or email."""
    fields = {
        name: value.strip() if isinstance(value, str) else value
        for name, value in body.model_dump().items()
    }
    if not fields["name"] or not (fields["phone"] or fields["email"]):
        raise ApiError(400, "INVALID_LEAD", "Provide at least a name and phone or email.")

    entry = {
        "id": str(uuid.uuid4()),
        **fields,
        "session_id": request.state.session_id,
        "source": "manual_form",
        "created_at": datetime.now(UTC).isoformat(),
    }
    try:
        await asyncio.to_thread(get_leads_store().append, entry)
    except OSError as exc:
        logger.exception("Failed to write lead")
        raise ApiError(500, "STORE_WRITE_FAILED") from exc
    return {"lead": entry}


@router.get("/admin/leads", dependencies=[Depends(require_admin_key)])
async def list_leads():
    try:
        leads = await asyncio.to_thread(get_leads_store().read_all)
    except OSError as exc:
        logger.exception("Failed to read leads")
        raise ApiError(500, "STORE_READ_FAILED") from exc
    return {"leads": leads}


@router.post("/admin/reload-kb", dependencies=[Depends(require_admin_key)])
async def reload_kb():
    """Re-read ``cleaning.yml`` and rebuild the FAQ index."""
    kb = reload_knowledge_base()
    reload_faq_sources()
    return {
        "status": "ok",
        "reloaded_at": datetime.now(UTC).isoformat(),
        "service_areas": kb.company.service_areas,
    }
