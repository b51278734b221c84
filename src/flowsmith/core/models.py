"""Core data models for Flowsmith."""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from flowsmith.core.errors import ErrorKind, PipelineError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Priority(str, Enum):
    STANDARD = "standard"
    HIGH = "high"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return {"critical": 3, "major": 2, "minor": 1}[self.value]


class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    HALTED = "halted"


class Outcome(str, Enum):
    """What the delivery collaborator must render for a finished request."""

    HALTED = "halted"  # no artifact was produced
    UNRESOLVED = "unresolved"  # artifact produced, violations remain or validation never ran
    VALIDATED = "validated"  # artifact produced and passed every rule


class StageOutcome(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"  # non-fatal errors only
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawRequest:
    """The original brief as handed over by the trigger collaborator."""

    brief: str
    contact_ref: str | None = None
    priority: Priority = Priority.STANDARD

    @classmethod
    def from_dict(cls, data: dict) -> RawRequest:
        return cls(
            brief=data.get("brief", ""),
            contact_ref=data.get("contact_ref") or data.get("contactRef"),
            priority=Priority(data.get("priority", Priority.STANDARD.value)),
        )

    def to_dict(self) -> dict:
        return {
            "brief": self.brief,
            "contact_ref": self.contact_ref,
            "priority": self.priority.value,
        }


@dataclass(frozen=True)
class StageError:
    """One entry of Envelope.errors."""

    stage: str
    kind: ErrorKind
    message: str
    fatal: bool = False

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "kind": self.kind.value,
            "message": self.message,
            "fatal": self.fatal,
        }


@dataclass(frozen=True)
class StageTiming:
    stage: str
    entered_at: datetime
    exited_at: datetime

    @property
    def elapsed(self) -> float:
        return (self.exited_at - self.entered_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "entered_at": self.entered_at.isoformat(),
            "exited_at": self.exited_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Knowledge base + validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Patch:
    """A mechanically applicable structural fix, addressed by JSON Pointer.

    ``op`` is "add", "replace" or "remove". When ``expect`` is set, the value
    currently at ``path`` must equal it for the patch to apply.
    """

    op: str
    path: str
    value: Any = None
    expect: Any = None
    description: str = ""

    def to_dict(self) -> dict:
        d = {"op": self.op, "path": self.path, "description": self.description}
        if self.op != "remove":
            d["value"] = self.value
        return d


@dataclass(frozen=True)
class Finding:
    """A single place where a rule predicate failed."""

    location: str
    detail: str
    fix: Patch | None = None


@dataclass(frozen=True)
class Rule:
    """Immutable knowledge-base entry: predicate plus severity."""

    id: str
    severity: Severity
    predicate: Callable[[dict], list[Finding]]
    message: str
    fix_hint: str | None = None
    check: str = ""

    def evaluate(self, workflow: dict) -> list[Finding]:
        return self.predicate(workflow)


@dataclass(frozen=True)
class Violation:
    """A detected, non-fatal quality issue in an artifact."""

    rule_id: str
    severity: Severity
    message: str
    location: str = ""
    suggested_fix: Patch | str | None = None

    @property
    def mechanical(self) -> bool:
        return isinstance(self.suggested_fix, Patch)

    @property
    def key(self) -> tuple[str, str]:
        return (self.rule_id, self.location)

    def to_dict(self) -> dict:
        fix = self.suggested_fix
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "message": self.message,
            "location": self.location,
            "suggested_fix": fix.to_dict() if isinstance(fix, Patch) else fix,
        }


@dataclass(frozen=True)
class ValidationReport:
    score: float
    violations: tuple[Violation, ...] = ()
    corrected_count: int = 0
    kb_version: str = ""
    rules_evaluated: int = 0

    @property
    def passed(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "violations": [v.to_dict() for v in self.violations],
            "corrected_count": self.corrected_count,
            "kb_version": self.kb_version,
            "rules_evaluated": self.rules_evaluated,
        }


# ---------------------------------------------------------------------------
# Cache + collaborator records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    stage_name: str
    output: dict
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class AuditRecord:
    """Append-only stage transition record handed to the audit collaborator."""

    request_id: str
    stage: str
    entered_at: datetime
    exited_at: datetime
    outcome: StageOutcome

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "stage": self.stage,
            "entered_at": self.entered_at.isoformat(),
            "exited_at": self.exited_at.isoformat(),
            "outcome": self.outcome.value,
        }


@dataclass(frozen=True)
class TerminalSnapshot:
    """What the delivery collaborator receives once a request finishes."""

    request_id: str
    state: PipelineState
    outcome: Outcome
    contact_ref: str | None
    artifact: dict | None
    validation: ValidationReport | None
    errors: tuple[StageError, ...]

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "contact_ref": self.contact_ref,
            "artifact": self.artifact,
            "validation": self.validation.to_dict() if self.validation else None,
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def _frozen_outputs(outputs: dict[str, dict] | None = None) -> Mapping[str, dict]:
    return MappingProxyType(dict(outputs or {}))


@dataclass(frozen=True)
class Envelope:
    """The append-only aggregate carrying one request through the pipeline.

    Every ``with_*`` method returns a new Envelope; nothing is mutated in
    place, so a stage can be re-run against the Envelope it was given.
    """

    request_id: str
    raw_request: RawRequest
    stage_outputs: Mapping[str, dict] = field(default_factory=_frozen_outputs)
    errors: tuple[StageError, ...] = ()
    artifact: dict | None = None
    prior_artifact: dict | None = None
    validation: ValidationReport | None = None
    timestamps: tuple[StageTiming, ...] = ()
    state: PipelineState = PipelineState.PENDING
    current_stage: str | None = None

    @classmethod
    def open(cls, raw_request: RawRequest, request_id: str | None = None) -> Envelope:
        return cls(request_id=request_id or uuid4().hex, raw_request=raw_request)

    # -- stage outputs --

    def has_output(self, stage: str) -> bool:
        return stage in self.stage_outputs

    def output(self, stage: str) -> dict | None:
        """A private copy of a stage's output, or None when absent."""
        value = self.stage_outputs.get(stage)
        return copy.deepcopy(value) if value is not None else None

    def with_output(self, stage: str, output: dict) -> Envelope:
        if stage in self.stage_outputs:
            raise PipelineError(f"Stage output '{stage}' already written for request {self.request_id}")
        outputs = dict(self.stage_outputs)
        outputs[stage] = copy.deepcopy(output)
        return replace(self, stage_outputs=_frozen_outputs(outputs))

    # -- errors --

    def with_error(self, error: StageError) -> Envelope:
        return replace(self, errors=self.errors + (error,))

    def errors_for(self, stage: str) -> list[StageError]:
        return [e for e in self.errors if e.stage == stage]

    @property
    def fatal_error(self) -> StageError | None:
        for error in self.errors:
            if error.fatal:
                return error
        return None

    @property
    def has_fatal(self) -> bool:
        return self.fatal_error is not None

    # -- artifact + validation --

    def with_artifact(self, artifact: dict) -> Envelope:
        """Populate the artifact for the first time."""
        if self.artifact is not None:
            raise PipelineError("Artifact already present; use replace_artifact()")
        return replace(self, artifact=copy.deepcopy(artifact))

    def replace_artifact(self, artifact: dict, applied: int) -> Envelope:
        """Swap in a corrected artifact, keeping the previous one as prior_artifact."""
        if self.artifact is None:
            raise PipelineError("No artifact to replace")
        if applied < 1:
            raise PipelineError("Artifact replacement requires at least one applied fix")
        current = self.validation or ValidationReport(score=0.0)
        return replace(
            self,
            prior_artifact=self.artifact,
            artifact=copy.deepcopy(artifact),
            validation=replace(current, corrected_count=current.corrected_count + applied),
        )

    def with_validation(self, report: ValidationReport) -> Envelope:
        return replace(self, validation=report)

    # -- lifecycle --

    def with_timing(self, timing: StageTiming) -> Envelope:
        return replace(self, timestamps=self.timestamps + (timing,))

    def with_state(self, state: PipelineState, stage: str | None = None) -> Envelope:
        return replace(self, state=state, current_stage=stage)

    def stage_latencies(self) -> dict[str, float]:
        return {t.stage: t.elapsed for t in self.timestamps}

    @property
    def total_latency(self) -> float:
        if not self.timestamps:
            return 0.0
        return (self.timestamps[-1].exited_at - self.timestamps[0].entered_at).total_seconds()

    @property
    def outcome(self) -> Outcome:
        if self.artifact is None:
            return Outcome.HALTED
        if self.state is PipelineState.COMPLETED and self.validation is not None and self.validation.passed:
            return Outcome.VALIDATED
        return Outcome.UNRESOLVED

    def snapshot(self) -> TerminalSnapshot:
        """Detached terminal view; prefers the contact normalized at intake."""
        intake = self.stage_outputs.get("intake")
        return TerminalSnapshot(
            request_id=self.request_id,
            state=self.state,
            outcome=self.outcome,
            contact_ref=intake.get("contact_ref") if intake else self.raw_request.contact_ref,
            artifact=copy.deepcopy(self.artifact),
            validation=self.validation,
            errors=self.errors,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "raw_request": self.raw_request.to_dict(),
            "state": self.state.value,
            "outcome": self.outcome.value,
            "current_stage": self.current_stage,
            "stage_outputs": {k: copy.deepcopy(v) for k, v in self.stage_outputs.items()},
            "errors": [e.to_dict() for e in self.errors],
            "artifact": copy.deepcopy(self.artifact),
            "prior_artifact": copy.deepcopy(self.prior_artifact),
            "validation": self.validation.to_dict() if self.validation else None,
            "timestamps": [t.to_dict() for t in self.timestamps],
        }
