"""Structured logging and verbosity levels for Flowsmith pipeline runs."""

from __future__ import annotations

import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any

from rich.console import Console


class Verbosity(IntEnum):
    """Verbosity levels for console output."""

    DEFAULT = 0  # Terminal outcome only
    VERBOSE = 1  # + per-stage progress, cache hits
    DEBUG = 2  # + every model attempt with latency and reason


@dataclass
class StageLog:
    """Per-stage statistics for one request."""

    name: str
    attempts: int = 0
    retries: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    tokens_used: int = 0
    errors: list[str] = field(default_factory=list)
    time_seconds: float = 0.0
    outcome: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "attempts": self.attempts,
            "retries": self.retries,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "tokens_used": self.tokens_used,
            "errors": list(self.errors),
            "time_seconds": self.time_seconds,
            "outcome": self.outcome,
        }


@dataclass
class RequestLog:
    """Structured log of one request's trip through the pipeline.

    The dict format is::

        {
            "request_id": "9f0c...",
            "stages": {
                "parse": {"attempts": 1, "cache_hits": 0, ...},
                ...
            },
            "total_attempts": 3,
            "total_cache_hits": 0,
            "total_time": 4.2,
            "state": "completed",
            "outcome": "validated",
        }
    """

    request_id: str
    stages: dict[str, StageLog] = field(default_factory=dict)
    total_time: float = 0.0
    total_attempts: int = 0
    total_cache_hits: int = 0
    total_tokens: int = 0
    state: str = ""
    outcome: str = ""

    def get_or_create_stage(self, name: str) -> StageLog:
        if name not in self.stages:
            self.stages[name] = StageLog(name=name)
        return self.stages[name]

    def finalize(self) -> None:
        """Compute totals from stage data."""
        self.total_attempts = sum(s.attempts for s in self.stages.values())
        self.total_cache_hits = sum(s.cache_hits for s in self.stages.values())
        self.total_tokens = sum(s.tokens_used for s in self.stages.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "stages": {name: stage.to_dict() for name, stage in self.stages.items()},
            "total_attempts": self.total_attempts,
            "total_cache_hits": self.total_cache_hits,
            "total_tokens": self.total_tokens,
            "total_time": self.total_time,
            "state": self.state,
            "outcome": self.outcome,
        }


class PipelineLogger:
    """Structured logger for pipeline runs.

    Writes JSONL events to log_dir/<run_id>.jsonl and optionally emits
    console output via Rich based on verbosity level. Safe to share
    between worker threads; every event carries its request_id.

    Also acts as a metrics sink for ResilientClient: ``llm_attempt``
    receives one record per model invocation attempt.

    ``requests`` only holds requests in flight. A finished RequestLog moves
    to a history of the last ``keep_finished`` requests.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.DEFAULT,
        log_dir: Path | None = None,
        console: Console | None = None,
        keep_finished: int = 100,
    ):
        self.verbosity = verbosity
        self.keep_finished = keep_finished
        self.log_dir = log_dir
        self.run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        self.requests: dict[str, RequestLog] = {}
        self.finished: OrderedDict[str, RequestLog] = OrderedDict()
        self._console = console or Console(stderr=True)
        self._lock = threading.Lock()
        self._log_file = None
        self._log_path: Path | None = None
        self._request_start: dict[str, float] = {}
        self._stage_start: dict[tuple[str, str], float] = {}

        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            self._log_path = log_dir / f"{self.run_id}.jsonl"
            self._log_file = open(self._log_path, "a")

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _write_event(self, event: dict[str, Any]) -> None:
        """Write a JSON event to the JSONL log file."""
        if self._log_file is not None:
            event["timestamp"] = datetime.now(timezone.utc).isoformat()
            self._log_file.write(json.dumps(event, default=str) + "\n")
            self._log_file.flush()

    def _console_print(self, message: str, min_verbosity: Verbosity) -> None:
        if self.verbosity >= min_verbosity:
            self._console.print(message)

    def _request(self, request_id: str) -> RequestLog:
        if request_id not in self.requests:
            self.requests[request_id] = RequestLog(request_id=request_id)
        return self.requests[request_id]

    # -- Request lifecycle --

    def request_start(self, request_id: str, priority: str) -> None:
        with self._lock:
            self._request(request_id)
            self._request_start[request_id] = time.time()
            self._write_event({"event": "request_start", "request_id": request_id, "priority": priority})
        self._console_print(f"[bold]Request[/bold] {request_id} ({priority})", Verbosity.VERBOSE)

    def request_finish(self, request_id: str, state: str, outcome: str) -> None:
        with self._lock:
            log = self.requests.pop(request_id, None) or RequestLog(request_id=request_id)
            start = self._request_start.pop(request_id, time.time())
            for key in [k for k in self._stage_start if k[0] == request_id]:
                del self._stage_start[key]
            log.total_time = time.time() - start
            log.state = state
            log.outcome = outcome
            log.finalize()
            self._write_event({
                "event": "request_finish",
                "request_id": request_id,
                "state": state,
                "outcome": outcome,
                "total_time": round(log.total_time, 3),
                "total_attempts": log.total_attempts,
                "total_cache_hits": log.total_cache_hits,
                "total_tokens": log.total_tokens,
            })
            self.finished[request_id] = log
            while len(self.finished) > self.keep_finished:
                self.finished.popitem(last=False)
        color = "green" if outcome == "validated" else "yellow" if outcome == "unresolved" else "red"
        self._console_print(
            f"[{color}]{outcome}[/{color}] {request_id} ({log.total_time:.1f}s)",
            Verbosity.DEFAULT,
        )

    # -- Stage events --

    def stage_start(self, request_id: str, stage: str) -> None:
        with self._lock:
            self._request(request_id).get_or_create_stage(stage)
            self._stage_start[(request_id, stage)] = time.time()
            self._write_event({"event": "stage_start", "request_id": request_id, "stage": stage})
        self._console_print(f"  [bold]Stage:[/bold] {stage}", Verbosity.VERBOSE)

    def stage_finish(self, request_id: str, stage: str, outcome: str) -> None:
        with self._lock:
            start = self._stage_start.pop((request_id, stage), time.time())
            elapsed = time.time() - start
            log = self._request(request_id).get_or_create_stage(stage)
            log.time_seconds = elapsed
            log.outcome = outcome
            self._write_event({
                "event": "stage_finish",
                "request_id": request_id,
                "stage": stage,
                "outcome": outcome,
                "time_seconds": round(elapsed, 3),
            })
        self._console_print(f"    {stage}: {outcome} ({elapsed:.1f}s)", Verbosity.VERBOSE)

    def stage_error(self, request_id: str, stage: str, kind: str, message: str, fatal: bool) -> None:
        with self._lock:
            self._request(request_id).get_or_create_stage(stage).errors.append(kind)
            self._write_event({
                "event": "stage_error",
                "request_id": request_id,
                "stage": stage,
                "kind": kind,
                "message": message,
                "fatal": fatal,
            })
        marker = "[red]x[/red]" if fatal else "[yellow]![/yellow]"
        self._console_print(f"      {marker} {kind}: {message}", Verbosity.VERBOSE)

    # -- Cache events --

    def cache_hit(self, request_id: str, stage: str, fingerprint: str) -> None:
        with self._lock:
            self._request(request_id).get_or_create_stage(stage).cache_hits += 1
            self._write_event({
                "event": "cache_hit",
                "request_id": request_id,
                "stage": stage,
                "fingerprint": fingerprint,
            })
        self._console_print(f"      [cyan]=[/cyan] {stage} (cached)", Verbosity.VERBOSE)

    def cache_miss(self, request_id: str, stage: str, fingerprint: str) -> None:
        with self._lock:
            self._request(request_id).get_or_create_stage(stage).cache_misses += 1
            self._write_event({
                "event": "cache_miss",
                "request_id": request_id,
                "stage": stage,
                "fingerprint": fingerprint,
            })

    # -- Model call metrics --

    def llm_attempt(self, record: Any) -> None:
        """Metrics sink for ResilientClient attempts.

        ``record.label`` is "<request_id>:<stage>" when invoked by a stage.
        """
        request_id, _, stage = record.label.partition(":")
        with self._lock:
            if stage:
                log = self._request(request_id).get_or_create_stage(stage)
                log.attempts += 1
                if record.attempt > 1:
                    log.retries += 1
                log.tokens_used += record.tokens
            self._write_event({
                "event": "llm_attempt",
                "request_id": request_id,
                "stage": stage,
                "attempt": record.attempt,
                "outcome": record.outcome,
                "latency_seconds": round(record.latency, 3),
                "reason": record.reason,
                "tokens": record.tokens,
            })
        self._console_print(
            f"        [dim]model call {record.label} #{record.attempt}: "
            f"{record.outcome} ({record.latency:.2f}s){' ' + record.reason if record.reason else ''}[/dim]",
            Verbosity.DEBUG,
        )

    # -- Artifact events --

    def artifact_replaced(self, request_id: str, applied: int, skipped: int, score: float) -> None:
        """Log that the auto-corrector swapped in a corrected artifact."""
        with self._lock:
            self._write_event({
                "event": "artifact_replaced",
                "request_id": request_id,
                "applied": applied,
                "skipped": skipped,
                "score": score,
            })
        self._console_print(
            f"      [green]~[/green] artifact corrected: {applied} applied, {skipped} skipped, score {score:.2f}",
            Verbosity.VERBOSE,
        )

    def get_request_log(self, request_id: str) -> RequestLog | None:
        with self._lock:
            return self.requests.get(request_id) or self.finished.get(request_id)

    def close(self) -> None:
        """Close the log file if open."""
        with self._lock:
            if self._log_file is not None:
                self._log_file.close()
                self._log_file = None
