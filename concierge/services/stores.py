"""Append-only JSON-file stores for leads and human hand-off requests.

Each store is one JSON array on disk under ``DATA_DIR``:

* ``leads.json``: leads saved by the agent or the manual lead form
* ``handoff.json``: escalations waiting for a human teammate

Writes are serialised by a ``threading.Lock`` and go through a temporary
file plus ``replace`` so a crash never leaves half-written JSON behind.
A file that holds something other than a JSON array is renamed to
``<name>.corrupt-<ms>`` and a new, empty list is started.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any

from concierge import config

logger = logging.getLogger(__name__)


class JsonListStore:
    """A JSON array on disk with append and read-all."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def ensure_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("[]", encoding="utf-8")

    def read_all(self) -> list[dict[str, Any]]:
        with self._lock:
            return self._read()

    def append(self, record: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            records = self._read()
            records.append(record)
            self._write(records)
        logger.debug("Appended record to %s (%d total)", self.path.name, len(records))
        return record

    def _read(self) -> list[dict[str, Any]]:
        self.ensure_file()
        raw = self.path.read_text(encoding="utf-8")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if not isinstance(parsed, list):
            self._quarantine()
            return []
        return parsed

    def _quarantine(self) -> Path:
        """Rename an unreadable file to ``<name>.corrupt-<ms>``."""
        target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time() * 1000)}")
        os.replace(self.path, target)
        logger.error("%s is not a JSON array; moved to %s", self.path, target.name)
        return target

    def _write(self, records: list[dict[str, Any]]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(records, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, self.path)


# ── Module-level singletons, created lazily under DATA_DIR ─────────

_leads: JsonListStore | None = None
_handoffs: JsonListStore | None = None


def get_leads_store() -> JsonListStore:
    global _leads
    if _leads is None:
        _leads = JsonListStore(config.DATA_DIR / "leads.json")
    return _leads


def get_handoff_inbox() -> JsonListStore:
    global _handoffs
    if _handoffs is None:
        _handoffs = JsonListStore(config.DATA_DIR / "handoff.json")
    return _handoffs
