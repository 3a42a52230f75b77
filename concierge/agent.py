"""LangGraph tool-calling agent for the Cleaning Concierge.

Architecture:
  A two-node StateGraph:

    1. **chatbot**: ``ChatAnthropic`` bound to the fixed tool catalog,
       called with the agent instruction plus the whole conversation
    2. **tools**: runs every tool call of the last assistant message,
       in order, through the :class:`ToolRegistry`

  Routing:
    chatbot → (tool calls?)    → tools → (hand-off or budget spent?) → END
                                       → otherwise                   → chatbot
            → (no tool calls?) → END

  Budget:
    The model is called at most ``MAX_TOOL_EXECUTIONS`` times per request.
    When the budget runs out while the model still wants tools, the caller
    gets a fixed degraded reply instead of an error.

  Hand-off:
    A successful ``escalate_to_human`` call finishes the current round and
    then ends the run with a fixed reply and the hand-off id; the model is
    not called again.

  Memory:
    None.  Each ``/api/agent`` request carries its own message list, so the
    graph is compiled without a checkpointer.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from concierge import config
from concierge.errors import MissingCredentialError
from concierge.models import ChatMessage
from concierge.prompts import AGENT_SYSTEM_PROMPT
from concierge.services.llm import content_text, to_langchain_message
from concierge.services.metrics import metrics
from concierge.tools import ToolContext, ToolRegistry, ToolResult, build_default_registry

logger = logging.getLogger(__name__)

HANDOFF_TOOL_NAME = "escalate_to_human"
HANDOFF_REPLY = "We’ll call you back shortly."
DEGRADED_REPLY = (
    "I'm having trouble completing that request right now. "
    "Let's try again or check in with a human teammate."
)


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """The state that flows through the graph.

    ``messages`` uses the ``add_messages`` reducer; the other keys are
    overwritten by whichever node returns them.  ``rounds`` counts model
    calls, ``handoff_id`` is set once an escalation succeeds.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    rounds: int
    tools_used: list[str]
    tool_results: dict[str, list[Any]]
    handoff_id: str | None


@dataclass
class AgentResult:
    message: ChatMessage
    tools_used: list[str] = field(default_factory=list)
    tool_results: dict[str, list[Any]] = field(default_factory=dict)
    handoff: dict[str, str] | None = None


@dataclass(frozen=True)
class ToolCall:
    """One tool call requested by the model, arguments already decoded."""

    id: str
    name: str
    arguments: dict[str, Any] | None = None
    parse_error: str | None = None


def extract_tool_calls(message: AnyMessage) -> list[ToolCall]:
    """Valid calls first, then calls whose arguments failed to parse.

    A call without an id gets ``call_<position>`` so its tool result can
    still be paired with it.
    """
    valid = getattr(message, "tool_calls", None) or []
    invalid = getattr(message, "invalid_tool_calls", None) or []
    calls = [
        ToolCall(
            id=tc.get("id") or f"call_{index}",
            name=tc["name"],
            arguments=tc.get("args") or {},
        )
        for index, tc in enumerate(valid)
    ]
    for index, bad in enumerate(invalid, start=len(valid)):
        calls.append(ToolCall(
            id=bad.get("id") or f"call_{index}",
            name=bad.get("name") or "",
            parse_error=bad.get("error") or "Unable to parse tool arguments as JSON",
        ))
    return calls


def _role_of(message: AnyMessage) -> str:
    if isinstance(message, SystemMessage):
        return "system"
    if isinstance(message, HumanMessage):
        return "user"
    if isinstance(message, ToolMessage):
        return "tool"
    return "assistant"


def conversation_snapshot(messages: list[AnyMessage]) -> list[dict[str, Any]]:
    """Plain-dict copy of the conversation for hand-off records."""
    snapshot = []
    for message in messages:
        entry: dict[str, Any] = {"role": _role_of(message), "content": content_text(message.content)}
        if message.name:
            entry["name"] = message.name
        snapshot.append(entry)
    return snapshot


# ── LLM builder ─────────────────────────────────────────────────────


def _build_llm(registry: ToolRegistry):
    """Build the tool-calling model.  Needs ``ANTHROPIC_API_KEY``."""
    if not config.ANTHROPIC_API_KEY:
        raise MissingCredentialError("Missing ANTHROPIC_API_KEY environment variable")
    llm = ChatAnthropic(
        model=config.MODEL_NAME,
        api_key=config.ANTHROPIC_API_KEY,
        temperature=0.1,  # Low temperature for consistent tool arguments
        max_tokens=config.LLM_MAX_TOKENS,
        default_request_timeout=config.LLM_REQUEST_TIMEOUT_SECONDS,
    )
    return llm.bind_tools(registry.catalog())


# ── Node: chatbot ────────────────────────────────────────────────────


def _make_chatbot_node(registry: ToolRegistry):
    """Create the chatbot node.

    The bound model is built on first use and then shared by every round
    of every request, so a missing API key surfaces per request instead of
    at start-up.
    """
    holder: dict[str, Any] = {}

    async def chatbot_node(state: AgentState) -> dict:
        if "llm" not in holder:
            holder["llm"] = _build_llm(registry)
        llm_with_tools = holder["llm"]

        rounds = state.get("rounds", 0) + 1
        logger.debug("chatbot round %d (model=%s)", rounds, config.MODEL_NAME)
        system = SystemMessage(content=AGENT_SYSTEM_PROMPT)
        t0 = time.perf_counter()
        try:
            response = await llm_with_tools.ainvoke([system] + state["messages"])
        except Exception as exc:
            metrics.record_failure(
                "anthropic", "agent_invoke",
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        metrics.record_success(
            "anthropic", "agent_invoke", latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return {"messages": [response], "rounds": rounds}

    return chatbot_node


# ── Node: tools ──────────────────────────────────────────────────────


def _make_tools_node(registry: ToolRegistry):
    """Create the node that answers every tool call of the last message.

    Each call gets exactly one ``ToolMessage`` bound to its id, in the
    order the model declared them.  Failures become ``{"ok": false}``
    results; nothing here raises.
    """

    async def tools_node(state: AgentState, config: RunnableConfig) -> dict:
        messages = state["messages"]
        configurable = (config or {}).get("configurable", {})
        context = ToolContext(
            conversation=conversation_snapshot(messages),
            metadata=dict(configurable.get("metadata") or {}),
        )

        tools_used = list(state.get("tools_used") or [])
        tool_results = {name: list(items) for name, items in (state.get("tool_results") or {}).items()}
        handoff_id = state.get("handoff_id")
        replies: list[ToolMessage] = []

        for call in extract_tool_calls(messages[-1]):
            if call.parse_error is not None:
                result = ToolResult.failure(call.name, call.parse_error)
            else:
                result = await registry.dispatch(call.name, call.arguments, context)

            replies.append(ToolMessage(
                content=result.to_content(), tool_call_id=call.id, name=call.name or None,
            ))
            if not result.ok:
                continue

            if call.name not in tools_used:
                tools_used.append(call.name)
            tool_results.setdefault(call.name, []).append(result.data)
            if call.name == HANDOFF_TOOL_NAME and isinstance(result.data, dict):
                handoff_id = result.data.get("handoff_id") or handoff_id

        return {
            "messages": replies,
            "tools_used": tools_used,
            "tool_results": tool_results,
            "handoff_id": handoff_id,
        }

    return tools_node


# ── Conditional edges ────────────────────────────────────────────────


def route_after_chatbot(state: AgentState) -> str:
    """Go to the tools node when the model asked for any tool call."""
    if extract_tool_calls(state["messages"][-1]):
        return "tools"
    return END


def make_route_after_tools(max_rounds: int):
    def route_after_tools(state: AgentState) -> str:
        if state.get("handoff_id"):
            return END
        if state.get("rounds", 0) >= max_rounds:
            logger.warning("Tool budget exhausted after %d model calls", max_rounds)
            return END
        return "chatbot"

    return route_after_tools


# ── Graph assembly ───────────────────────────────────────────────────


def create_concierge_agent(
    registry: ToolRegistry | None = None,
    max_rounds: int | None = None,
):
    """Build and compile the concierge agent graph.

    Returns a compiled graph; run it with :func:`run_agent`.
    """
    registry = registry or build_default_registry()
    max_rounds = max_rounds or config.MAX_TOOL_EXECUTIONS

    graph = StateGraph(AgentState)
    graph.add_node("chatbot", _make_chatbot_node(registry))
    graph.add_node("tools", _make_tools_node(registry))
    graph.set_entry_point("chatbot")
    graph.add_conditional_edges("chatbot", route_after_chatbot, {"tools": "tools", END: END})
    graph.add_conditional_edges(
        "tools", make_route_after_tools(max_rounds), {"chatbot": "chatbot", END: END},
    )

    compiled = graph.compile()
    logger.debug(
        "Concierge agent compiled: model=%s tools=%d max_rounds=%d",
        config.MODEL_NAME, len(registry), max_rounds,
    )
    return compiled


async def run_agent(
    agent,
    messages: list[ChatMessage],
    metadata: dict[str, Any] | None = None,
    max_rounds: int | None = None,
) -> AgentResult:
    """Run one request through the graph and shape the final reply.

    Only user and assistant turns from the caller are forwarded; the
    system instruction is always the fixed agent prompt.  Errors from the
    model call propagate to the caller.
    """
    history = [
        to_langchain_message(m)
        for m in messages
        if m.role in ("user", "assistant") and m.content
    ]
    max_rounds = max_rounds or config.MAX_TOOL_EXECUTIONS
    state = await agent.ainvoke(
        {
            "messages": history,
            "rounds": 0,
            "tools_used": [],
            "tool_results": {},
            "handoff_id": None,
        },
        config={
            "configurable": {"metadata": metadata or {}},
            "recursion_limit": 2 * max_rounds + 2,
        },
    )

    handoff_id = state.get("handoff_id")
    last = state["messages"][-1]
    if handoff_id:
        reply = HANDOFF_REPLY
    elif isinstance(last, AIMessage) and not extract_tool_calls(last):
        reply = content_text(last.content)
    else:
        reply = DEGRADED_REPLY

    logger.info(
        "Agent finished after %d round(s): tools=%s handoff=%s",
        state.get("rounds", 0), json.dumps(state.get("tools_used", [])), bool(handoff_id),
    )
    return AgentResult(
        message=ChatMessage(role="assistant", content=reply),
        tools_used=list(state.get("tools_used") or []),
        tool_results=dict(state.get("tool_results") or {}),
        handoff={"handoff_id": handoff_id} if handoff_id else None,
    )
