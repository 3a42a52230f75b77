"""Shared test fixtures for the Cleaning Concierge test suite."""

from __future__ import annotations

import asyncio
import os
import tempfile

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load
    and the JSON stores write to a throwaway directory.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ["BOT_PUBLIC_TOKEN"] = "test-bot-token-456"
    os.environ["ADMIN_PASSWORD"] = "test-admin-789"
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="concierge-tests-"))


@pytest.fixture
def bot_headers():
    """Headers of an authorised widget instance."""
    return {"X-Bot-Token": "test-bot-token-456", "X-Client-ID": "widget-1"}


class ScriptedProvider:
    """Completion provider double with a fixed script.

    Args:
        tokens: Deltas yielded by the stream, in order.
        token_delay: Seconds to wait before each token.
        stall: After the tokens, hang until cancelled.
        open_error: Raised when the stream is opened.
        stream_error: Raised after the tokens have been yielded.
        reply: Returned by ``complete``.
        complete_error: Raised by ``complete`` instead.
        complete_delay: Seconds ``complete`` takes.
    """

    model_name = "scripted-model"

    def __init__(
        self,
        tokens=(),
        *,
        token_delay: float = 0,
        stall: bool = False,
        open_error: BaseException | None = None,
        stream_error: BaseException | None = None,
        reply: str = "Our standard clean starts at 40 USD.",
        complete_error: BaseException | None = None,
        complete_delay: float = 0,
    ):
        self.tokens = list(tokens)
        self.token_delay = token_delay
        self.stall = stall
        self.open_error = open_error
        self.stream_error = stream_error
        self.reply = reply
        self.complete_error = complete_error
        self.complete_delay = complete_delay
        self.stream_calls = 0
        self.complete_calls = 0
        self.opened = asyncio.Event()
        self.last_messages = None

    @property
    def calls(self) -> int:
        return self.stream_calls + self.complete_calls

    async def stream(self, messages):
        self.stream_calls += 1
        self.last_messages = list(messages)
        if self.open_error is not None:
            raise self.open_error
        self.opened.set()
        return self._iterate()

    async def _iterate(self):
        for token in self.tokens:
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            yield token
        if self.stream_error is not None:
            raise self.stream_error
        if self.stall:
            await asyncio.Event().wait()

    async def complete(self, messages):
        self.complete_calls += 1
        self.last_messages = list(messages)
        if self.complete_delay:
            await asyncio.sleep(self.complete_delay)
        if self.complete_error is not None:
            raise self.complete_error
        return self.reply


@pytest.fixture
def scripted_provider():
    """Factory fixture for :class:`ScriptedProvider`."""
    return ScriptedProvider


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the JSON stores at a fresh directory for one test."""
    from concierge.services import stores

    monkeypatch.setattr(stores, "_leads", stores.JsonListStore(tmp_path / "leads.json"))
    monkeypatch.setattr(stores, "_handoffs", stores.JsonListStore(tmp_path / "handoff.json"))
    return tmp_path
