"""CLI entry point for the Cleaning Concierge.

A terminal chat for development.  By default every message goes through
the same streaming state machine the SSE endpoint uses (tokens are printed
as they arrive, fallbacks included); ``--agent`` talks to the tool-calling
agent instead.  For production, use the FastAPI server
(``concierge/server.py``).

Usage:
    python -m concierge.main            # streamed chat
    python -m concierge.main --agent    # tool-calling agent
    python -m concierge.main --debug    # show API calls and state changes
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from concierge import config
from concierge.agent import create_concierge_agent, run_agent
from concierge.models import ChatMessage, SessionKey
from concierge.services.llm import AnthropicCompletionProvider, build_chat_messages
from concierge.services.sessions import InMemoryHistoryStore
from concierge.streaming import StreamSession

logger = logging.getLogger(__name__)

BOT_NAME = "Concierge"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("concierge").setLevel(logging.DEBUG if debug else logging.WARNING)


async def _stream_turn(provider, store, key: SessionKey, text: str) -> None:
    def update_history(reply: str) -> None:
        store.append(
            key,
            ChatMessage(role="user", content=text),
            ChatMessage(role="assistant", content=reply),
        )
        store.trim(key)

    session = StreamSession(
        provider,
        build_chat_messages(text, store.get(key)),
        request_id=uuid.uuid4().hex[:8],
        on_reply=update_history,
    )
    print(f"\n{BOT_NAME}: ", end="", flush=True)
    async for event in session.events():
        if event.name == "token":
            print(event.data["token"], end="", flush=True)
        elif event.name == "error":
            print(f"[error {event.data['status']}: {event.data['details']}]", end="")
        elif event.name == "aborted":
            print(f"[aborted: {event.data['reason']}]", end="")
    print("\n")


async def _agent_turn(agent, conversation: list[ChatMessage], text: str) -> None:
    conversation.append(ChatMessage(role="user", content=text))
    result = await run_agent(agent, conversation, {"channel": "cli"})
    conversation.append(result.message)
    print(f"\n{BOT_NAME}: {result.message.content}")
    if result.tools_used:
        print(f"  (tools: {', '.join(result.tools_used)})")
    if result.handoff:
        print(f"  (hand-off id: {result.handoff['handoff_id']})")
    print()


async def _chat_loop(use_agent: bool) -> None:
    store = InMemoryHistoryStore()
    provider = AnthropicCompletionProvider()
    agent = create_concierge_agent() if use_agent else None
    conversation: list[ChatMessage] = []
    key = SessionKey(config.DEFAULT_TENANT_ID, str(uuid.uuid4()), "cli")
    logger.info("Started new session: %s", key)

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            return

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Have a great day!")
            return

        if user_input.lower() == "new":
            store.reset(key)
            conversation.clear()
            key = SessionKey(key.tenant_id, str(uuid.uuid4()), key.client_id)
            print(f"\n>> New session started: {key.session_id[:8]}...\n")
            continue

        try:
            if agent is not None:
                await _agent_turn(agent, conversation, user_input)
            else:
                await _stream_turn(provider, store, key, user_input)
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\n{BOT_NAME}: I'm sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start a fresh session.\n")


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Cleaning Concierge CLI")
    parser.add_argument("--agent", action="store_true", help="Use the tool-calling agent")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print(f"  {config.COMPANY_NAME} Cleaning Concierge - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat_loop(use_agent=args.agent))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
