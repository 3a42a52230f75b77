"""Read-only diagnostic markers for the health check.

Keeps the last few stream lifecycle markers (start, first token, fallback,
abort, done, error) and remembers the request id and reason of the most
recent fallback or abort, which ``GET /api/health`` reports.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any

MAX_MARKERS = 10

# Markers that update the "last known failure" fields.
_FAILURE_EVENTS = frozenset({"fallback-used", "stream-abort", "aborted"})


class DiagnosticsRecorder:
    def __init__(self, max_markers: int = MAX_MARKERS) -> None:
        self._markers: deque[dict[str, Any]] = deque(maxlen=max_markers)
        self._lock = threading.Lock()
        self.last_request_id: str | None = None
        self.last_reason: str | None = None

    def record(self, event: str, **data: Any) -> None:
        with self._lock:
            self._markers.append({"ts": int(time.time() * 1000), "event": event, **data})
            if event in _FAILURE_EVENTS:
                if data.get("rid"):
                    self.last_request_id = data["rid"]
                if data.get("reason"):
                    self.last_reason = data["reason"]

    def markers(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._markers)

    def clear(self) -> None:
        with self._lock:
            self._markers.clear()
            self.last_request_id = None
            self.last_reason = None


diagnostics = DiagnosticsRecorder()
