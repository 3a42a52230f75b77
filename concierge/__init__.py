"""Cleaning Concierge: a multi-tenant booking and pricing assistant.

Architecture Overview
=====================

Two request flows share one completion provider (Claude via
``langchain-anthropic``):

1. **Streamed chat** (``/api/chat``): a :class:`~concierge.streaming.StreamSession`
   relays tokens as Server-Sent Events under first-token, overall and
   heartbeat timers.  When the stream stalls or fails it falls back, once,
   to a single non-streaming completion replayed as synthetic tokens.

2. **Tool-calling agent** (``/api/agent``): a LangGraph StateGraph with a
   ``chatbot`` node and a ``tools`` node.  Tool calls are validated by
   Pydantic models and executed with bounded retry, for at most
   ``MAX_TOOL_EXECUTIONS`` model round trips.

Key Design Decisions
--------------------
- **History**: per ``(tenant, session, client)`` key behind a
  ``HistoryStore`` interface, in memory by default, trimmed to the last
  ``MAX_HISTORY_TURNS`` turns.
- **Errors**: every provider failure is mapped once by
  ``errors.normalize_error`` onto a closed ``ErrorKind`` set.
- **Pricing**: ``kb/cleaning.yml`` is the single source of prices, hours,
  service areas and policies; tools never guess.
- **Dual Interface**: FastAPI server (production) + CLI chat loop
  (development/testing).

Package Structure
-----------------
- ``concierge/streaming.py`` - streaming delivery state machine
- ``concierge/agent.py`` - LangGraph tool loop
- ``concierge/config.py`` - configuration from env, ``.env`` and SSM
- ``concierge/prompts.py`` - system prompts
- ``concierge/server.py`` - FastAPI application
- ``concierge/main.py`` - CLI chat interface
- ``concierge/services/`` - provider, history, retry, stores, metrics
- ``concierge/tools/`` - tool registry and the seven tools
- ``concierge/kb/`` - knowledge base loader and policy docs
- ``concierge/api/`` - FastAPI routes, dependencies and schemas
"""
