"""Completion provider backed by Anthropic through LangChain.

The orchestration code only needs two things from a model:

* ``stream(messages)``: an async iterator of text deltas, and
* ``complete(messages)``: one full reply.

:class:`CompletionProvider` captures that contract; tests substitute a
scripted fake, production uses :class:`AnthropicCompletionProvider`.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from concierge import config
from concierge.errors import MissingCredentialError
from concierge.models import ChatMessage
from concierge.prompts import get_chat_system_prompt
from concierge.services.metrics import metrics

logger = logging.getLogger(__name__)


# ── Message conversion ──────────────────────────────────────────────


def sanitize_history(history: Sequence[ChatMessage]) -> list[ChatMessage]:
    """Keep only non-empty user/assistant turns (stripped)."""
    return [
        ChatMessage(role=m.role, content=m.content.strip())
        for m in history
        if m.role in ("user", "assistant") and m.content and m.content.strip()
    ]


def build_chat_messages(user_text: str, history: Sequence[ChatMessage]) -> list[ChatMessage]:
    """Assemble the full context for one chat turn: system, history, user."""
    return [
        ChatMessage(role="system", content=get_chat_system_prompt(user_text)),
        *sanitize_history(history),
        ChatMessage(role="user", content=user_text),
    ]


def to_langchain_message(message: ChatMessage) -> BaseMessage:
    content = message.content or ""
    if message.role == "system":
        return SystemMessage(content=content)
    if message.role == "user":
        return HumanMessage(content=content, name=message.name)
    if message.role == "tool":
        return ToolMessage(content=content, tool_call_id=message.tool_call_id or "")
    return AIMessage(content=content, name=message.name)


def content_text(content: Any) -> str:
    """Flatten LangChain message content (str or content blocks) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


# ── Provider contract ───────────────────────────────────────────────


class CompletionProvider(ABC):
    """Minimal completion interface used by the chat orchestration."""

    model_name: str = "unknown"

    @abstractmethod
    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        """Open a streaming completion and return an iterator of text deltas.

        Errors raised while *opening* the stream surface from this
        coroutine; errors raised mid-stream surface from the iterator.
        """

    @abstractmethod
    async def complete(self, messages: Sequence[ChatMessage]) -> str:
        """Return one full (stripped) reply."""


class AnthropicCompletionProvider(CompletionProvider):
    """``ChatAnthropic`` wrapper.  The client is built lazily on first use."""

    def __init__(self, model_name: str | None = None, api_key: str | None = None):
        self.model_name = model_name or config.MODEL_NAME
        self._api_key = api_key
        self._llm: ChatAnthropic | None = None

    def _get_llm(self) -> ChatAnthropic:
        if self._llm is None:
            api_key = self._api_key or config.ANTHROPIC_API_KEY
            if not api_key:
                raise MissingCredentialError("Missing ANTHROPIC_API_KEY environment variable")
            self._llm = ChatAnthropic(
                model=self.model_name,
                api_key=api_key,
                temperature=config.LLM_TEMPERATURE,
                max_tokens=config.LLM_MAX_TOKENS,
                default_request_timeout=config.LLM_REQUEST_TIMEOUT_SECONDS,
                max_retries=0,
            )
        return self._llm

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        llm = self._get_llm()
        return self._iterate(llm, [to_langchain_message(m) for m in messages])

    async def _iterate(self, llm: ChatAnthropic, messages: list[BaseMessage]) -> AsyncIterator[str]:
        t0 = time.perf_counter()
        try:
            async for chunk in llm.astream(messages):
                token = content_text(chunk.content)
                if token:
                    yield token
        except Exception as exc:
            metrics.record_failure(
                "anthropic", "llm_stream",
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        metrics.record_success(
            "anthropic", "llm_stream", latency_ms=(time.perf_counter() - t0) * 1000,
        )

    async def complete(self, messages: Sequence[ChatMessage]) -> str:
        llm = self._get_llm()
        t0 = time.perf_counter()
        try:
            response = await llm.ainvoke([to_langchain_message(m) for m in messages])
        except Exception as exc:
            metrics.record_failure(
                "anthropic", "llm_complete",
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "llm_complete", latency_ms=elapsed)
        logger.debug("Completion from %s in %.0fms", self.model_name, elapsed)
        return content_text(response.content).strip()
