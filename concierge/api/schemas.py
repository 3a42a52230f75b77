"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from concierge.models import ChatMessage


class ChatRequest(BaseModel):
    """Incoming chat message from the widget.

    An empty or whitespace-only message is rejected by the route with
    ``MISSING_MESSAGE``, so no minimum length is enforced here.
    """

    message: str = Field(default="", max_length=2000, description="The user's message")


class ChatResponse(BaseModel):
    """Synchronous (JSON-mode) reply."""

    reply: str = Field(..., description="The assistant's response message")


class CancelRequest(BaseModel):
    request_id: str = Field(..., min_length=1, description="X-Request-ID of the stream to stop")
    reason: Literal["user_abort", "client_watchdog"] = "user_abort"


class CancelResponse(BaseModel):
    ok: bool = True
    cancelled: bool


class ResetResponse(BaseModel):
    ok: bool = True


class AgentRequest(BaseModel):
    messages: list[ChatMessage] = Field(..., min_length=1)
    metadata: dict[str, Any] | None = None


class AgentResponse(BaseModel):
    message: ChatMessage
    tools_used: list[str]
    tool_results: dict[str, list[Any]]
    handoff: dict[str, str] | None = None


class ToolCatalogResponse(BaseModel):
    version: str
    tools: list[dict[str, Any]]


class ManualLeadRequest(BaseModel):
    """Lead captured by the widget's contact form."""

    name: str = ""
    phone: str = ""
    email: str = ""
    address: str = ""
    date: str = ""
    time_window: str = ""
    notes: str = ""
    quote_total: float | str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "cleaning-concierge"
    has_api_key: bool
    model: str
    streaming_enabled: bool = True
    last_request_id: str | None = None
    last_reason: str | None = None
