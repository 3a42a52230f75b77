"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for the completion
provider (``anthropic``) and for every tool the agent executes (``tool``),
plus funnel counters for quotes, bookings, payment links and hand-offs.

Design
------
* Data points are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.
* Each ``put_metric_data`` call sends up to 1 000 data points
  (the CloudWatch API limit per request).

Usage
-----
>>> from concierge.services.metrics import metrics
>>> metrics.record_success("anthropic", "llm_stream", latency_ms=812.0)
>>> metrics.record_failure("tool", "create_booking", error_type="ToolInputError")
>>> metrics.record_funnel("booking_created")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "Concierge"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call

FUNNEL_EVENTS = frozenset({
    "quote_issued",
    "booking_created",
    "payment_link_generated",
    "human_handoff",
    "deflection_success",
    "stream_fallback",
})


def _dims(**pairs: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in pairs.items()]


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful provider or tool call."""
        now = datetime.now(UTC)
        self._append(now, "Calls/RequestCount", 1, "Count",
                     _dims(Service=service, Status="success"))
        self._append(now, "Calls/Latency", latency_ms, "Milliseconds",
                     _dims(Service=service, Operation=operation))
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed provider or tool call."""
        now = datetime.now(UTC)
        self._append(now, "Calls/RequestCount", 1, "Count",
                     _dims(Service=service, Status="failure"))
        self._append(now, "Calls/ErrorCount", 1, "Count",
                     _dims(Service=service, ErrorType=error_type))
        if latency_ms > 0:
            self._append(now, "Calls/Latency", latency_ms, "Milliseconds",
                         _dims(Service=service, Operation=operation))
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    def record_funnel(self, event: str, value: float = 1) -> None:
        """Count one business event (quote issued, booking created, ...)."""
        if event not in FUNNEL_EVENTS:
            logger.warning("Ignoring unknown funnel event %r", event)
            return
        self._append(datetime.now(UTC), f"Funnel/{event}", value, "Count", [])
        logger.debug("Metric: funnel %s +%s", event, value)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []

        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _append(
        self,
        timestamp: datetime,
        name: str,
        value: float,
        unit: str,
        dimensions: list[dict[str, str]],
    ) -> None:
        datum = {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": timestamp,
            "Value": value,
            "Unit": unit,
        }
        with self._lock:
            self._buffer.append(datum)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
