"""Error taxonomy for the chat orchestration engine.

Provider exceptions never reach the client as-is.  Every failure is mapped
once, by :func:`normalize_error`, onto a small closed set of kinds with a
stable HTTP status and a human-readable ``details`` string.
"""

from __future__ import annotations

import socket
from enum import Enum

import anthropic
import httpx
from pydantic import BaseModel


class ErrorKind(str, Enum):
    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    PROVIDER_UNREACHABLE = "PROVIDER_UNREACHABLE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NO_REPLY = "NO_REPLY"
    SERVER_ERROR = "SERVER_ERROR"


class ErrorPayload(BaseModel):
    """Structured error sent as an SSE ``error`` event or a JSON body."""

    status: int
    error: ErrorKind
    details: str
    reason: str | None = None

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class MissingCredentialError(RuntimeError):
    """Raised when the completion provider has no API key configured."""


class NoReplyError(RuntimeError):
    """Raised when the provider answered with empty content."""

    def __init__(self, message: str = "Assistant returned an empty reply."):
        super().__init__(message)


class KnowledgeBaseError(RuntimeError):
    """Raised when the pricing / knowledge base file is missing or invalid."""


class ToolInputError(ValueError):
    """Raised by a tool executor when its input breaks a business rule."""


_UNREACHABLE_ERRORS: tuple[type[BaseException], ...] = (
    anthropic.APIConnectionError,  # also covers APITimeoutError
    httpx.ConnectError,
    httpx.TimeoutException,
    socket.gaierror,
    ConnectionError,
    TimeoutError,
)


def normalize_error(exc: BaseException, *, reason: str | None = None) -> ErrorPayload:
    """Map any exception onto an :class:`ErrorPayload`."""
    if isinstance(exc, MissingCredentialError):
        return ErrorPayload(
            status=500,
            error=ErrorKind.MISSING_CREDENTIAL,
            details="Add ANTHROPIC_API_KEY to your environment and restart the server.",
            reason=reason,
        )

    if isinstance(exc, _UNREACHABLE_ERRORS):
        return ErrorPayload(
            status=503,
            error=ErrorKind.PROVIDER_UNREACHABLE,
            details="Unable to reach the language model provider. "
            "Check your internet connection or firewall.",
            reason=reason,
        )

    if isinstance(exc, NoReplyError):
        return ErrorPayload(
            status=502, error=ErrorKind.NO_REPLY, details=str(exc), reason=reason,
        )

    if isinstance(exc, anthropic.APIStatusError):
        return ErrorPayload(
            status=exc.status_code,
            error=ErrorKind.PROVIDER_ERROR,
            details=_provider_message(exc),
            reason=reason,
        )

    if isinstance(exc, anthropic.AnthropicError):
        return ErrorPayload(
            status=502,
            error=ErrorKind.PROVIDER_ERROR,
            details=str(exc) or "The language model provider reported an error.",
            reason=reason,
        )

    # Catch-all: the traceback is logged by the caller, never sent out.
    return ErrorPayload(
        status=500,
        error=ErrorKind.SERVER_ERROR,
        details="An internal error occurred. Please try again.",
        reason=reason,
    )


def _provider_message(exc: anthropic.APIStatusError) -> str:
    body = exc.body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return exc.message or str(exc)
