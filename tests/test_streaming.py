"""Tests for the streaming delivery state machine.

Covers:
  - Normal token relay and history update
  - Fallback on first-token timeout, overall timeout, setup / runtime
    failures and empty streams (exactly one ``done``, one fallback call)
  - Explicit cancellation (``user_abort``, ``client_watchdog``)
  - Error normalisation when the fallback fails too
  - Idempotent cleanup on client disconnect, timers released on every exit
  - Registry lookups scoped to the owning conversation
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from concierge.errors import MissingCredentialError
from concierge.models import ChatMessage, SessionKey
from concierge.services.diagnostics import DiagnosticsRecorder
from concierge.streaming import (
    AbortReason,
    SSEEvent,
    StreamRegistry,
    StreamSession,
    StreamState,
    StreamTimeouts,
    split_for_replay,
)

MESSAGES = [
    ChatMessage(role="system", content="You are a cleaning concierge."),
    ChatMessage(role="user", content="How much is a deep clean?"),
]

FAST = StreamTimeouts(first_token_ms=50, overall_ms=5000, heartbeat_ms=10_000)


def _session(provider, *, timeouts=FAST, replies=None, recorder=None) -> StreamSession:
    on_reply = replies.append if replies is not None else None
    return StreamSession(
        provider,
        MESSAGES,
        request_id="rid-test",
        on_reply=on_reply,
        timeouts=timeouts,
        token_delay_ms=(0, 0),
        recorder=recorder or DiagnosticsRecorder(),
    )


async def _collect(session: StreamSession) -> list[SSEEvent]:
    return [event async for event in session.events()]


def _names(events: list[SSEEvent]) -> list[str]:
    return [event.name for event in events]


# ── Helpers ──────────────────────────────────────────────────────────


class TestSplitForReplay:
    def test_keeps_trailing_whitespace_on_each_piece(self):
        assert split_for_replay("Hello there,  friend!") == ["Hello ", "there,  ", "friend!"]

    def test_single_word(self):
        assert split_for_replay("Hi") == ["Hi"]

    def test_sse_encoding(self):
        event = SSEEvent("token", {"token": "olá"})
        assert event.encode() == 'event: token\ndata: {"token": "olá"}\n\n'


# ── Happy path ───────────────────────────────────────────────────────


class TestStreamingHappyPath:
    @pytest.mark.asyncio
    async def test_tokens_are_relayed_then_done(self, scripted_provider):
        provider = scripted_provider(["Hello", " there", "!"])
        replies: list[str] = []
        session = _session(provider, replies=replies)

        events = await _collect(session)

        assert _names(events) == ["start", "token", "token", "token", "done"]
        assert [e.data["token"] for e in events if e.name == "token"] == ["Hello", " there", "!"]
        assert events[-1].data == {"reply": "Hello there!"}
        assert session.state is StreamState.DONE
        assert replies == ["Hello there!"]
        assert provider.complete_calls == 0

    @pytest.mark.asyncio
    async def test_first_token_marks_request(self, scripted_provider):
        session = _session(scripted_provider(["Hi"]))
        await _collect(session)
        assert session.request.received_first_token is True
        assert session.request.fallback_used is False

    @pytest.mark.asyncio
    async def test_empty_tokens_are_skipped(self, scripted_provider):
        session = _session(scripted_provider(["", "Hi", ""]))
        events = await _collect(session)
        assert [e.data["token"] for e in events if e.name == "token"] == ["Hi"]

    @pytest.mark.asyncio
    async def test_heartbeat_does_not_reset_first_token_timer(self, scripted_provider):
        provider = scripted_provider(stall=True)
        timeouts = StreamTimeouts(first_token_ms=120, overall_ms=5000, heartbeat_ms=20)
        events = await _collect(_session(provider, timeouts=timeouts))

        names = _names(events)
        assert "heartbeat" in names
        assert names.count("done") == 1
        assert events[-1].data["reason"] == "first_token_timeout"

    @pytest.mark.asyncio
    async def test_events_can_only_be_consumed_once(self, scripted_provider):
        session = _session(scripted_provider(["Hi"]))
        await _collect(session)
        with pytest.raises(RuntimeError):
            await _collect(session)


# ── Fallback ─────────────────────────────────────────────────────────


class TestFallback:
    @pytest.mark.asyncio
    async def test_first_token_timeout_yields_exactly_one_non_empty_done(self, scripted_provider):
        provider = scripted_provider(stall=True, reply="A deep clean starts at 56 USD.")
        replies: list[str] = []
        session = _session(provider, replies=replies)

        events = await _collect(session)

        dones = [e for e in events if e.name == "done"]
        assert len(dones) == 1
        assert dones[0].data == {
            "reply": "A deep clean starts at 56 USD.",
            "reason": "first_token_timeout",
        }
        tokens = "".join(e.data["token"] for e in events if e.name == "token")
        assert tokens == "A deep clean starts at 56 USD."
        assert provider.stream_calls == 1
        assert provider.complete_calls == 1
        assert replies == ["A deep clean starts at 56 USD."]
        assert session.state is StreamState.DONE
        assert session.request.fallback_used is True
        assert session.request.abort_reason is AbortReason.FIRST_TOKEN_TIMEOUT

    @pytest.mark.asyncio
    async def test_fallback_reuses_the_same_messages(self, scripted_provider):
        provider = scripted_provider(stall=True)
        await _collect(_session(provider))
        assert provider.last_messages == MESSAGES

    @pytest.mark.asyncio
    async def test_overall_timeout_falls_back_mid_stream(self, scripted_provider):
        provider = scripted_provider(["tick "] * 1000, token_delay=0.01)
        timeouts = StreamTimeouts(first_token_ms=1000, overall_ms=80, heartbeat_ms=10_000)

        events = await _collect(_session(provider, timeouts=timeouts))

        assert _names(events).count("done") == 1
        assert events[-1].data["reason"] == "overall_timeout"
        assert provider.complete_calls == 1

    @pytest.mark.asyncio
    async def test_setup_failure_falls_back(self, scripted_provider):
        provider = scripted_provider(open_error=httpx.ConnectError("dns failure"))
        events = await _collect(_session(provider))
        assert events[-1].name == "done"
        assert events[-1].data["reason"] == "stream_setup_failure"

    @pytest.mark.asyncio
    async def test_runtime_failure_falls_back(self, scripted_provider):
        provider = scripted_provider(["Hel"], stream_error=RuntimeError("connection reset"))
        events = await _collect(_session(provider))
        assert events[-1].name == "done"
        assert events[-1].data["reason"] == "stream_runtime_failure"
        assert provider.complete_calls == 1

    @pytest.mark.asyncio
    async def test_empty_stream_falls_back(self, scripted_provider):
        provider = scripted_provider(["  ", "\n"])
        events = await _collect(_session(provider))
        assert events[-1].data["reason"] == "empty_stream_reply"
        assert events[-1].data["reply"] == provider.reply

    @pytest.mark.asyncio
    async def test_fallback_runs_at_most_once(self, scripted_provider):
        # The overall timer would fire while the fallback is still running.
        provider = scripted_provider(stall=True, complete_delay=0.15)
        timeouts = StreamTimeouts(first_token_ms=30, overall_ms=60, heartbeat_ms=10_000)

        events = await _collect(_session(provider, timeouts=timeouts))

        assert provider.complete_calls == 1
        assert _names(events).count("done") == 1
        assert events[-1].data["reason"] == "first_token_timeout"

    @pytest.mark.asyncio
    async def test_fallback_is_recorded_in_diagnostics(self, scripted_provider):
        recorder = DiagnosticsRecorder()
        await _collect(_session(scripted_provider(stall=True), recorder=recorder))
        assert recorder.last_request_id == "rid-test"
        assert recorder.last_reason == "first_token_timeout"
        assert "fallback-used" in [m["event"] for m in recorder.markers()]


# ── Errors ───────────────────────────────────────────────────────────


class TestFallbackErrors:
    @pytest.mark.asyncio
    async def test_empty_fallback_reply_is_no_reply_error(self, scripted_provider):
        provider = scripted_provider(stall=True, reply="   ")
        replies: list[str] = []
        session = _session(provider, replies=replies)

        events = await _collect(session)

        assert "done" not in _names(events)
        assert events[-1].name == "error"
        assert events[-1].data == {
            "status": 502,
            "error": "NO_REPLY",
            "details": "Assistant returned an empty reply.",
            "reason": "first_token_timeout",
        }
        assert session.state is StreamState.ERROR
        assert replies == []

    @pytest.mark.asyncio
    async def test_missing_credential_surfaces_as_error(self, scripted_provider):
        provider = scripted_provider(
            open_error=MissingCredentialError("no key"),
            complete_error=MissingCredentialError("no key"),
        )
        events = await _collect(_session(provider))
        assert events[-1].name == "error"
        assert events[-1].data["status"] == 500
        assert events[-1].data["error"] == "MISSING_CREDENTIAL"
        assert events[-1].data["reason"] == "stream_setup_failure"

    @pytest.mark.asyncio
    async def test_unreachable_provider_is_503(self, scripted_provider):
        provider = scripted_provider(stall=True, complete_error=httpx.ConnectTimeout("timeout"))
        events = await _collect(_session(provider))
        assert events[-1].data["status"] == 503
        assert events[-1].data["error"] == "PROVIDER_UNREACHABLE"


# ── Cancellation ─────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_user_abort_before_first_token_never_falls_back(self, scripted_provider):
        provider = scripted_provider(stall=True)
        timeouts = StreamTimeouts(first_token_ms=5000, overall_ms=10_000, heartbeat_ms=10_000)
        session = _session(provider, timeouts=timeouts)

        events = []
        async for event in session.events():
            events.append(event)
            if event.name == "start":
                await provider.opened.wait()
                assert session.cancel(AbortReason.USER_ABORT) is True

        assert _names(events) == ["start", "aborted"]
        assert events[-1].data == {"reason": "user_abort"}
        assert provider.calls == 1
        assert session.state is StreamState.ABORTED

    @pytest.mark.asyncio
    async def test_client_watchdog_aborts_mid_stream(self, scripted_provider):
        provider = scripted_provider(["one ", "two "], stall=True)
        timeouts = StreamTimeouts(first_token_ms=5000, overall_ms=10_000, heartbeat_ms=10_000)
        session = _session(provider, timeouts=timeouts)

        events = []
        async for event in session.events():
            events.append(event)
            if event.name == "token" and event.data["token"] == "two ":
                session.cancel(AbortReason.CLIENT_WATCHDOG)

        assert events[-1].data == {"reason": "client_watchdog"}
        assert provider.complete_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_during_fallback_aborts(self, scripted_provider):
        provider = scripted_provider(stall=True, complete_delay=1.0)
        session = _session(provider)

        async def cancel_when_falling_back():
            while session.state is not StreamState.FALLBACK:
                await asyncio.sleep(0.005)
            session.cancel()

        canceller = asyncio.create_task(cancel_when_falling_back())
        events = await _collect(session)
        await canceller

        assert events[-1].name == "aborted"
        assert "done" not in _names(events)

    @pytest.mark.asyncio
    async def test_cancel_after_done_is_a_no_op(self, scripted_provider):
        session = _session(scripted_provider(["Hi"]))
        await _collect(session)
        assert session.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_as_empty_stream_finishes_skips_fallback(self, scripted_provider):
        provider = scripted_provider(["  "])
        replies: list[str] = []
        session = _session(provider, replies=replies)
        accepted: list[bool] = []

        events = []
        async for event in session.events():
            events.append(event)
            if event.name == "start":
                # Runs after the pump finishes, before the driver resumes.
                session._work.add_done_callback(lambda _: accepted.append(session.cancel()))

        assert accepted == [True]
        assert events[-1].name == "aborted"
        assert events[-1].data == {"reason": "user_abort"}
        assert "done" not in _names(events)
        assert provider.complete_calls == 0
        assert replies == []
        assert session.state is StreamState.ABORTED

    @pytest.mark.asyncio
    async def test_cancel_as_stream_finishes_skips_done(self, scripted_provider):
        provider = scripted_provider(["Hi"])
        replies: list[str] = []
        session = _session(provider, replies=replies)
        accepted: list[bool] = []

        events = []
        async for event in session.events():
            events.append(event)
            if event.name == "start":
                session._work.add_done_callback(
                    lambda _: accepted.append(session.cancel(AbortReason.CLIENT_WATCHDOG)),
                )

        assert accepted == [True]
        assert _names(events) == ["start", "token", "aborted"]
        assert events[-1].data == {"reason": "client_watchdog"}
        assert replies == []
        assert session.state is StreamState.ABORTED

    def test_only_caller_reasons_are_accepted(self, scripted_provider):
        session = _session(scripted_provider())
        with pytest.raises(ValueError):
            session.cancel(AbortReason.OVERALL_TIMEOUT)


# ── Cleanup ──────────────────────────────────────────────────────────


class TestCleanup:
    @pytest.mark.asyncio
    async def test_client_disconnect_cancels_work_without_fallback(self, scripted_provider):
        provider = scripted_provider(stall=True)
        session = _session(provider, timeouts=StreamTimeouts(5000, 10_000, 10_000))

        stream = session.events()
        first = await stream.__anext__()
        assert first.name == "start"
        await provider.opened.wait()
        await stream.aclose()
        await asyncio.sleep(0.01)

        assert session.request.client_closed is True
        assert provider.complete_calls == 0
        assert session.state is StreamState.STARTED

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, scripted_provider):
        recorder = DiagnosticsRecorder()
        session = _session(scripted_provider(), recorder=recorder)
        session.close()
        session.close()
        assert session.request.client_closed is True
        assert [m["event"] for m in recorder.markers()] == ["client-closed"]


TICKING = StreamTimeouts(first_token_ms=50, overall_ms=5000, heartbeat_ms=5)


async def _run_until_terminal(session: StreamSession, *, cancel_on_start: bool = False):
    """Collect every event, returning them with the heartbeat task seen after ``start``."""
    events: list[SSEEvent] = []
    heartbeat = None
    async for event in session.events():
        events.append(event)
        if event.name == "start":
            heartbeat = session._heartbeat
            if cancel_on_start:
                session.cancel()
    return events, heartbeat


def _drain(session: StreamSession) -> list[SSEEvent]:
    events = []
    while not session._queue.empty():
        event = session._queue.get_nowait()
        if event is not None:
            events.append(event)
    return events


async def _assert_timers_released(session: StreamSession, heartbeat) -> None:
    _drain(session)
    await asyncio.sleep(0.03)
    assert session._first_token_timer is None
    assert session._overall_timer is None
    assert session._heartbeat is None
    assert heartbeat is not None and heartbeat.done()
    assert _drain(session) == []


class TestTimerRelease:
    @pytest.mark.asyncio
    async def test_released_after_done(self, scripted_provider):
        provider = scripted_provider(["one ", "two ", "three"], token_delay=0.02)
        session = _session(provider, timeouts=TICKING)

        events, heartbeat = await _run_until_terminal(session)

        names = _names(events)
        assert "heartbeat" in names
        assert names[-1] == "done"
        assert session.state is StreamState.DONE
        await _assert_timers_released(session, heartbeat)

    @pytest.mark.asyncio
    async def test_released_after_fallback_done(self, scripted_provider):
        session = _session(scripted_provider(stall=True), timeouts=TICKING)

        events, heartbeat = await _run_until_terminal(session)

        assert _names(events)[-1] == "done"
        assert events[-1].data["reason"] == "first_token_timeout"
        await _assert_timers_released(session, heartbeat)

    @pytest.mark.asyncio
    async def test_released_after_abort(self, scripted_provider):
        session = _session(scripted_provider(stall=True), timeouts=TICKING)

        events, heartbeat = await _run_until_terminal(session, cancel_on_start=True)

        assert _names(events)[-1] == "aborted"
        assert session.state is StreamState.ABORTED
        await _assert_timers_released(session, heartbeat)

    @pytest.mark.asyncio
    async def test_released_after_error(self, scripted_provider):
        session = _session(scripted_provider(stall=True, reply="   "), timeouts=TICKING)

        events, heartbeat = await _run_until_terminal(session)

        assert _names(events)[-1] == "error"
        assert session.state is StreamState.ERROR
        await _assert_timers_released(session, heartbeat)

    @pytest.mark.asyncio
    async def test_released_after_aclose(self, scripted_provider):
        provider = scripted_provider(stall=True)
        session = _session(provider, timeouts=StreamTimeouts(5000, 10_000, 5))

        stream = session.events()
        assert (await stream.__anext__()).name == "start"
        heartbeat = session._heartbeat
        await provider.opened.wait()
        await stream.aclose()

        await _assert_timers_released(session, heartbeat)


class TestStreamRegistry:
    OWNER = SessionKey("default", "sess-1", "widget-1")

    def test_register_get_unregister(self, scripted_provider):
        registry = StreamRegistry()
        session = _session(scripted_provider())
        registry.register(session, self.OWNER)
        assert registry.get("rid-test", self.OWNER) is session
        assert "rid-test" in registry
        registry.unregister(session)
        assert registry.get("rid-test", self.OWNER) is None
        assert len(registry) == 0

    def test_other_conversation_cannot_find_stream(self, scripted_provider):
        registry = StreamRegistry()
        registry.register(_session(scripted_provider()), self.OWNER)

        assert registry.get("rid-test", SessionKey("default", "sess-1", "widget-2")) is None
        assert registry.get("rid-test", SessionKey("other", "sess-1", "widget-1")) is None

    def test_live_request_id_cannot_be_reused(self, scripted_provider):
        registry = StreamRegistry()
        first = _session(scripted_provider())
        registry.register(first, self.OWNER)

        with pytest.raises(ValueError):
            registry.register(_session(scripted_provider()), SessionKey("default", "sess-2", "w"))
        assert registry.get("rid-test", self.OWNER) is first

    def test_unregister_ignores_other_session_with_same_id(self, scripted_provider):
        registry = StreamRegistry()
        first = _session(scripted_provider())
        registry.register(first, self.OWNER)

        registry.unregister(_session(scripted_provider()))

        assert registry.get("rid-test", self.OWNER) is first
