"""Streaming delivery state machine for one chat turn.

A :class:`StreamSession` turns one user message into a sequence of SSE
events::

    IDLE ──start──▶ STARTED ──first token──▶ STREAMING ──exhausted──▶ DONE
                       │                        │
                       ├── timer / stream error ┴──▶ FALLBACK ──▶ DONE | ERROR
                       └── user_abort / client_watchdog ─────────▶ ABORTED

Three watchdogs are armed on start:

* **first token**: no token within ``first_token_ms`` → fallback;
* **overall**: stream still running after ``overall_ms`` → fallback;
* **heartbeat**: emits ``heartbeat`` every ``heartbeat_ms``; it never
  resets the other two.

The fallback issues exactly one non-streaming completion and replays it
as synthetic ``token`` events so the caller still sees a stream.  It runs
at most once per session.  Explicit cancellations (``user_abort`` and
``client_watchdog``) are terminal and never fall back.

The provider stream and the fallback each run in their own task; timers
and :meth:`StreamSession.cancel` interrupt the work by cancelling that
task after recording an :class:`AbortReason`.  :meth:`StreamSession.close`
is the single cleanup path and is safe to call any number of times.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from concierge import config
from concierge.errors import ErrorKind, ErrorPayload, NoReplyError, normalize_error
from concierge.models import ChatMessage, SessionKey
from concierge.services.diagnostics import DiagnosticsRecorder, diagnostics
from concierge.services.llm import CompletionProvider
from concierge.services.metrics import metrics

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    STREAMING = "streaming"
    FALLBACK = "fallback"
    DONE = "done"
    ABORTED = "aborted"
    ERROR = "error"


TERMINAL_STATES = frozenset({StreamState.DONE, StreamState.ABORTED, StreamState.ERROR})

_TRANSITIONS: dict[StreamState, frozenset[StreamState]] = {
    StreamState.IDLE: frozenset({StreamState.STARTED}),
    StreamState.STARTED: frozenset({
        StreamState.STREAMING, StreamState.FALLBACK, StreamState.ABORTED, StreamState.ERROR,
    }),
    StreamState.STREAMING: frozenset({
        StreamState.DONE, StreamState.FALLBACK, StreamState.ABORTED, StreamState.ERROR,
    }),
    StreamState.FALLBACK: frozenset({StreamState.DONE, StreamState.ABORTED, StreamState.ERROR}),
}


class AbortReason(str, Enum):
    FIRST_TOKEN_TIMEOUT = "first_token_timeout"
    OVERALL_TIMEOUT = "overall_timeout"
    USER_ABORT = "user_abort"
    CLIENT_WATCHDOG = "client_watchdog"
    STREAM_SETUP_FAILURE = "stream_setup_failure"
    STREAM_RUNTIME_FAILURE = "stream_runtime_failure"
    EMPTY_STREAM_REPLY = "empty_stream_reply"
    CLIENT_DISCONNECT = "client_disconnect"


# Reasons that end the turn without a fallback.
CANCEL_REASONS = frozenset({AbortReason.USER_ABORT, AbortReason.CLIENT_WATCHDOG})


class InvalidTransitionError(RuntimeError):
    pass


@dataclass(frozen=True)
class StreamTimeouts:
    first_token_ms: float = config.FIRST_TOKEN_TIMEOUT_MS
    overall_ms: float = config.OVERALL_TIMEOUT_MS
    heartbeat_ms: float = config.HEARTBEAT_MS


@dataclass
class StreamRequest:
    """Ephemeral state of one streaming HTTP exchange."""

    request_id: str
    started_at: float = field(default_factory=time.monotonic)
    received_first_token: bool = False
    fallback_used: bool = False
    client_closed: bool = False
    abort_reason: AbortReason | None = None
    fallback_reason: AbortReason | None = None


@dataclass(frozen=True)
class SSEEvent:
    name: str
    data: dict[str, Any]

    def encode(self) -> str:
        return f"event: {self.name}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


_REPLAY_PIECE_RE = re.compile(r"\S+\s*")


def split_for_replay(text: str) -> list[str]:
    """Split a full reply into word-sized pieces, keeping trailing spaces."""
    return _REPLAY_PIECE_RE.findall(text) or [text]


async def complete_reply(provider: CompletionProvider, messages: Sequence[ChatMessage]) -> str:
    """One non-streaming completion.  Raises :class:`NoReplyError` on empty text."""
    reply = (await provider.complete(messages) or "").strip()
    if not reply:
        raise NoReplyError()
    return reply


class StreamSession:
    """State machine for one streamed chat turn.

    Args:
        provider: Completion provider used for both the stream and the
            fallback call.
        messages: Full model context (system, history, user message).
        request_id: Correlation id for logs and diagnostics.
        on_reply: Called once with the final reply text, before ``done``.
            The route uses it to append the turn to the history store.
        timeouts: Watchdog configuration.
        token_delay_ms: Bounds of the random pause between replayed tokens.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        messages: Sequence[ChatMessage],
        *,
        request_id: str,
        on_reply: Callable[[str], None] | None = None,
        timeouts: StreamTimeouts | None = None,
        token_delay_ms: tuple[float, float] = (25, 40),
        recorder: DiagnosticsRecorder | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.provider = provider
        self.messages = list(messages)
        self.request = StreamRequest(request_id=request_id)
        self.state = StreamState.IDLE
        self.timeouts = timeouts or StreamTimeouts()
        self._on_reply = on_reply
        self._token_delay_ms = token_delay_ms
        self._recorder = recorder or diagnostics
        self._rng = rng or random.Random()

        self._queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()
        self._driver: asyncio.Task | None = None
        self._work: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None
        self._first_token_timer: asyncio.TimerHandle | None = None
        self._overall_timer: asyncio.TimerHandle | None = None
        self._stream_opened = False
        self._tokens: list[str] = []
        self._closed = False

    @property
    def rid(self) -> str:
        return self.request.request_id

    # ── Public API ────────────────────────────────────────────────────

    async def events(self) -> AsyncIterator[SSEEvent]:
        """Run the session and yield its events until a terminal state."""
        if self._driver is not None:
            raise RuntimeError("StreamSession.events() can only be consumed once")
        self._driver = asyncio.create_task(self._run(), name=f"stream-{self.rid}")
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    return
                yield event
        finally:
            self.close()

    def cancel(self, reason: AbortReason = AbortReason.USER_ABORT) -> bool:
        """Explicit cancellation from the caller.  Returns ``False`` if too late."""
        if reason not in CANCEL_REASONS:
            raise ValueError(f"{reason!r} is not a caller cancellation reason")
        if self._closed or self.state in TERMINAL_STATES:
            return False
        self.request.abort_reason = reason
        self._log_abort(reason)
        self._cancel_work()
        return True

    def close(self) -> None:
        """Release timers and tasks.  Side effects run only on the first call."""
        if self._closed:
            return
        self._closed = True
        self.request.client_closed = True
        self._clear_timers()
        self._cancel_work()
        if self._driver is not None and not self._driver.done():
            self._driver.cancel()
        if self.state not in TERMINAL_STATES:
            logger.info("[%s] Channel closed in state %s", self.rid, self.state.value)
            self._recorder.record("client-closed", rid=self.rid, state=self.state.value)

    # ── Driver ────────────────────────────────────────────────────────

    async def _run(self) -> None:
        try:
            self._start()
            await self._consume_stream()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[%s] Stream session crashed", self.rid)
            if StreamState.ERROR in _TRANSITIONS.get(self.state, frozenset()):
                self._fail(normalize_error(exc))
        finally:
            self._clear_timers()
            self._queue.put_nowait(None)

    def _start(self) -> None:
        self._transition(StreamState.STARTED)
        logger.info("[%s] SSE start (model=%s)", self.rid, self.provider.model_name)
        self._recorder.record("stream-start", rid=self.rid)
        self._emit("start", {})

        loop = asyncio.get_running_loop()
        self._first_token_timer = loop.call_later(
            self.timeouts.first_token_ms / 1000, self._interrupt, AbortReason.FIRST_TOKEN_TIMEOUT,
        )
        self._overall_timer = loop.call_later(
            self.timeouts.overall_ms / 1000, self._interrupt, AbortReason.OVERALL_TIMEOUT,
        )
        self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    async def _consume_stream(self) -> None:
        if self.request.abort_reason in CANCEL_REASONS:
            self._abort(self.request.abort_reason)
            return

        self._work = asyncio.create_task(self._pump())
        await asyncio.wait({self._work})
        work = self._work

        if self.request.abort_reason in CANCEL_REASONS:
            self._abort(self.request.abort_reason)
            return

        if work.cancelled() or (work.exception() is not None and self.request.abort_reason):
            reason = self.request.abort_reason or AbortReason.CLIENT_DISCONNECT
            if reason is AbortReason.CLIENT_DISCONNECT:
                self._abort(reason)
            else:
                await self._fallback(reason)
            return

        exc = work.exception()
        if exc is not None:
            reason = (
                AbortReason.STREAM_RUNTIME_FAILURE
                if self._stream_opened
                else AbortReason.STREAM_SETUP_FAILURE
            )
            logger.warning("[%s] Stream failed (%s): %s", self.rid, reason.value, exc)
            self._log_abort(reason)
            await self._fallback(reason)
            return

        self._clear_timers()
        reply = "".join(self._tokens).strip()
        if not reply:
            await self._fallback(AbortReason.EMPTY_STREAM_REPLY)
            return
        self._deliver_reply(reply)
        self._done(reply)

    async def _pump(self) -> None:
        iterator = await self.provider.stream(self.messages)
        self._stream_opened = True
        try:
            async for token in iterator:
                if not token:
                    continue
                if not self.request.received_first_token:
                    self._on_first_token()
                self._tokens.append(token)
                self._emit("token", {"token": token})
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    def _on_first_token(self) -> None:
        self.request.received_first_token = True
        if self._first_token_timer is not None:
            self._first_token_timer.cancel()
            self._first_token_timer = None
        self._transition(StreamState.STREAMING)
        elapsed = (time.monotonic() - self.request.started_at) * 1000
        logger.info("[%s] First token after %.0fms", self.rid, elapsed)
        self._recorder.record("first-token", rid=self.rid)

    # ── Fallback ──────────────────────────────────────────────────────

    async def _fallback(self, reason: AbortReason) -> None:
        if self.request.fallback_used:
            return
        if self.request.abort_reason in CANCEL_REASONS:
            self._abort(self.request.abort_reason)
            return
        self.request.fallback_used = True
        self.request.fallback_reason = reason
        self._clear_timers()
        self._transition(StreamState.FALLBACK)
        logger.info("[%s] fallback-used (reason=%s)", self.rid, reason.value)
        self._recorder.record("fallback-used", rid=self.rid, reason=reason.value)
        metrics.record_funnel("stream_fallback")

        self._work = asyncio.create_task(self._replay(reason))
        await asyncio.wait({self._work})
        work = self._work

        if work.cancelled():
            self._abort(self.request.abort_reason or AbortReason.USER_ABORT)
            return
        exc = work.exception()
        if exc is not None:
            payload = normalize_error(exc, reason=reason.value)
            if payload.error is ErrorKind.SERVER_ERROR:
                logger.error("[%s] Fallback failed", self.rid, exc_info=exc)
            self._fail(payload)

    async def _replay(self, reason: AbortReason) -> None:
        reply = await complete_reply(self.provider, self.messages)
        self._deliver_reply(reply)
        for piece in split_for_replay(reply):
            if self.request.client_closed:
                return
            self.request.received_first_token = True
            self._emit("token", {"token": piece})
            low, high = self._token_delay_ms
            await asyncio.sleep(self._rng.uniform(low, high) / 1000)
        self._done(reply, reason)

    # ── Terminal transitions ──────────────────────────────────────────

    def _done(self, reply: str, reason: AbortReason | None = None) -> None:
        self._transition(StreamState.DONE)
        data: dict[str, Any] = {"reply": reply}
        if reason is not None:
            data["reason"] = reason.value
        self._emit("done", data)
        logger.info("[%s] sse-done (%d chars)", self.rid, len(reply))
        self._recorder.record(
            "sse-done", rid=self.rid, chars=len(reply), reason=reason.value if reason else None,
        )

    def _abort(self, reason: AbortReason) -> None:
        self._clear_timers()
        self._transition(StreamState.ABORTED)
        self._emit("aborted", {"reason": reason.value})
        self._recorder.record("aborted", rid=self.rid, reason=reason.value)

    def _fail(self, payload: ErrorPayload) -> None:
        self._clear_timers()
        self._transition(StreamState.ERROR)
        logger.error(
            "[%s] sse-error status=%d code=%s", self.rid, payload.status, payload.error.value,
        )
        self._recorder.record(
            "sse-error", rid=self.rid, status=payload.status, code=payload.error.value,
        )
        self._emit("error", payload.to_wire())

    # ── Helpers ───────────────────────────────────────────────────────

    def _transition(self, new_state: StreamState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransitionError(f"{self.state.value} -> {new_state.value}")
        logger.debug("[%s] %s -> %s", self.rid, self.state.value, new_state.value)
        self.state = new_state

    def _interrupt(self, reason: AbortReason) -> None:
        """Timer callback: stop the in-flight stream and record why."""
        if self.request.fallback_used or self._closed or self.state in TERMINAL_STATES:
            return
        if self.request.abort_reason is None:
            self.request.abort_reason = reason
        self._log_abort(reason)
        self._cancel_work()

    def _log_abort(self, reason: AbortReason) -> None:
        logger.info("[%s] stream-abort (reason=%s)", self.rid, reason.value)
        self._recorder.record("stream-abort", rid=self.rid, reason=reason.value)

    def _deliver_reply(self, reply: str) -> None:
        if self._on_reply is not None:
            self._on_reply(reply)

    def _emit(self, name: str, data: dict[str, Any]) -> None:
        if self.request.client_closed:
            return
        self._queue.put_nowait(SSEEvent(name, data))

    async def _heartbeat_loop(self) -> None:
        interval = self.timeouts.heartbeat_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self._emit("heartbeat", {})

    def _cancel_work(self) -> None:
        if self._work is not None and not self._work.done():
            self._work.cancel()

    def _clear_timers(self) -> None:
        for handle in (self._first_token_timer, self._overall_timer):
            if handle is not None:
                handle.cancel()
        self._first_token_timer = None
        self._overall_timer = None
        if self._heartbeat is not None and not self._heartbeat.done():
            self._heartbeat.cancel()
        self._heartbeat = None


class StreamRegistry:
    """Live sessions by request id, each tied to the conversation that opened it.

    A cancel request only finds a stream when it comes from the same
    ``SessionKey``; request ids must be unique among live streams.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, tuple[SessionKey, StreamSession]] = {}

    def register(self, session: StreamSession, owner: SessionKey) -> None:
        if session.rid in self._sessions:
            raise ValueError(f"Stream {session.rid!r} is already live")
        self._sessions[session.rid] = (owner, session)

    def unregister(self, session: StreamSession) -> None:
        entry = self._sessions.get(session.rid)
        if entry is not None and entry[1] is session:
            del self._sessions[session.rid]

    def get(self, request_id: str, owner: SessionKey) -> StreamSession | None:
        entry = self._sessions.get(request_id)
        if entry is None or entry[0] != owner:
            return None
        return entry[1]

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
