"""Audit and delivery collaborators.

The orchestrator only knows the two protocols below. Emission is
fire-and-forget: a sink that raises is logged and ignored.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Protocol

from flowsmith.core.errors import atomic_write
from flowsmith.core.models import AuditRecord, TerminalSnapshot

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def emit(self, record: AuditRecord) -> None: ...


class DeliverySink(Protocol):
    def deliver(self, snapshot: TerminalSnapshot) -> None: ...


class MemoryAuditSink:
    """Keeps the most recent ``max_records`` records in memory."""

    def __init__(self, max_records: int = 10_000):
        self.records: deque[AuditRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def emit(self, record: AuditRecord) -> None:
        with self._lock:
            self.records.append(record)

    def for_request(self, request_id: str) -> list[AuditRecord]:
        with self._lock:
            return [r for r in self.records if r.request_id == request_id]

    def drain(self) -> list[AuditRecord]:
        """Remove and return every buffered record."""
        with self._lock:
            records = list(self.records)
            self.records.clear()
            return records


class FanoutAudit:
    """Emits to several audit sinks; one failing does not stop the others."""

    def __init__(self, sinks: list[AuditSink]):
        self.sinks = list(sinks)

    def emit(self, record: AuditRecord) -> None:
        for sink in self.sinks:
            try:
                sink.emit(record)
            except Exception:
                logger.warning("Audit via %r failed for %s", sink, record.request_id, exc_info=True)


class JsonlAuditSink:
    """Appends one JSON line per stage transition."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def emit(self, record: AuditRecord) -> None:
        line = json.dumps(record.to_dict()) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line)


class JsonOutboxDelivery:
    """Writes each terminal snapshot to ``<outbox>/<request_id>.json``."""

    def __init__(self, outbox_dir: Path):
        self.outbox_dir = Path(outbox_dir)

    def path_for(self, request_id: str) -> Path:
        return self.outbox_dir / f"{request_id}.json"

    def deliver(self, snapshot: TerminalSnapshot) -> None:
        atomic_write(self.path_for(snapshot.request_id), json.dumps(snapshot.to_dict(), indent=2))


class FanoutDelivery:
    """Delivers to several sinks; one failing does not stop the others."""

    def __init__(self, sinks: list[DeliverySink]):
        self.sinks = list(sinks)

    def deliver(self, snapshot: TerminalSnapshot) -> None:
        for sink in self.sinks:
            try:
                sink.deliver(snapshot)
            except Exception:
                logger.warning("Delivery via %r failed for %s", sink, snapshot.request_id, exc_info=True)
