"""Pipeline stages: parse -> design -> synthesize -> validate -> correct.

A stage takes an Envelope and returns a new one. It never mutates the
Envelope it was given, so the orchestrator can re-run a stage without
re-running earlier ones. Per-request failures are recorded as StageError
entries on the returned Envelope, never raised.
"""

from __future__ import annotations

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path

from flowsmith.build.cache import ResponseCache
from flowsmith.build.corrector import AutoCorrector
from flowsmith.build.fingerprint import compute_stage_fingerprint
from flowsmith.build.intake import STAGE as INTAKE
from flowsmith.build.knowledge import KnowledgeBase
from flowsmith.build.parsing import ParseFailure, Parsed, ParseResult, check_workflow_shape, parse_model_json
from flowsmith.build.resilience import ResilientClient
from flowsmith.build.validators import KnowledgeValidator
from flowsmith.core.config import StageTimeouts
from flowsmith.core.errors import ErrorKind
from flowsmith.core.logging import PipelineLogger
from flowsmith.core.models import Envelope, Priority, StageError

PROMPTS_DIR = Path(__file__).parent / "prompts"


@dataclass
class StageContext:
    """Per-request context handed to every stage by the orchestrator."""

    request_id: str
    logger: PipelineLogger | None = None
    cancel: threading.Event | None = None


class BaseStage(ABC):
    """Abstract base class for all stages.

    ``reads`` lists the stage outputs this stage consumes; the orchestrator
    rejects a sequence where any of them is produced later. Outputs listed in
    ``required`` are fatal when absent; the rest are advisory.
    """

    name: str = ""
    reads: tuple[str, ...] = ()
    required: tuple[str, ...] = ()

    @abstractmethod
    def run(self, envelope: Envelope, ctx: StageContext) -> Envelope:
        ...

    def check_prior_outputs(self, envelope: Envelope) -> Envelope:
        """Record a structural error for every missing prior output."""
        for key in self.reads:
            if envelope.has_output(key):
                continue
            fatal = key in self.required
            envelope = envelope.with_error(StageError(
                self.name,
                ErrorKind.STRUCTURAL,
                f"Expected output of stage '{key}' is missing",
                fatal=fatal,
            ))
            if fatal:
                break
        return envelope

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def load_prompt(name: str) -> str:
    """Load a prompt template from the prompts/ directory."""
    return (PROMPTS_DIR / f"{name}.txt").read_text()


def get_prompt_id(name: str) -> str:
    """Versioned prompt id derived from the template content."""
    content = load_prompt(name)
    return f"{name}_v{hashlib.sha256(content.encode()).hexdigest()[:8]}"


def _as_text(value) -> str:
    return json.dumps(value, indent=2, sort_keys=True)


def _pattern_line(pattern: dict) -> str:
    nodes = pattern.get("nodes") or []
    line = f"- {pattern.get('name', 'Pattern')}: {pattern.get('description', '')}".rstrip(": ")
    if nodes:
        line += f" ({' -> '.join(map(str, nodes))})"
    return line


class LLMStage(BaseStage):
    """A stage that calls the model, consulting the response cache first.

    High-priority requests skip both the cache lookup and the cache write.
    The cache is only written after the stage output was accepted.
    """

    prompt_name: str = ""
    fatal_on_parse_failure: bool = True

    def __init__(
        self,
        client: ResilientClient,
        cache: ResponseCache | None = None,
        timeouts: StageTimeouts | None = None,
        model_config: dict | None = None,
    ):
        self.client = client
        self.cache = cache
        self.timeouts = timeouts or StageTimeouts()
        self.model_config = model_config or {}
        self.template = load_prompt(self.prompt_name)
        self.prompt_id = get_prompt_id(self.prompt_name)

    @abstractmethod
    def build_input(self, envelope: Envelope) -> dict:
        """The normalized input: everything the prompt depends on."""
        ...

    @abstractmethod
    def render(self, inputs: dict) -> str:
        ...

    def shape(self, value: dict) -> ParseResult:
        return Parsed(value)

    def accept(self, envelope: Envelope, output: dict) -> Envelope:
        return envelope.with_output(self.name, output)

    def run(self, envelope: Envelope, ctx: StageContext) -> Envelope:
        envelope = self.check_prior_outputs(envelope)
        if envelope.has_fatal:
            return envelope

        inputs = self.build_input(envelope)
        fingerprint = compute_stage_fingerprint(self.name, inputs, self.prompt_id, self.model_config).digest
        use_cache = self.cache is not None and envelope.raw_request.priority is not Priority.HIGH

        if use_cache:
            cached = self.cache.get(fingerprint)
            if cached is not None:
                if ctx.logger is not None:
                    ctx.logger.cache_hit(ctx.request_id, self.name, fingerprint)
                return self.accept(envelope, cached)
            if ctx.logger is not None:
                ctx.logger.cache_miss(ctx.request_id, self.name, fingerprint)

        result = self.client.invoke(
            self.render(inputs),
            self.timeouts.for_stage(self.name),
            label=f"{ctx.request_id}:{self.name}",
            cancel=ctx.cancel,
        )
        if result.error is not None:
            error = result.error
            if error.reason == "cancelled":
                kind = ErrorKind.CANCELLED
            elif error.transient:
                kind = ErrorKind.TRANSIENT_DEPENDENCY
            else:
                kind = ErrorKind.PERMANENT_DEPENDENCY
            return envelope.with_error(StageError(self.name, kind, f"{error.reason}: {error.message}", fatal=True))

        parsed = parse_model_json(result.response.content)
        if isinstance(parsed, Parsed):
            parsed = self.shape(parsed.value)
        if isinstance(parsed, ParseFailure):
            return envelope.with_error(StageError(
                self.name,
                ErrorKind.PERMANENT_DEPENDENCY,
                f"Unusable model output: {parsed.reason}",
                fatal=self.fatal_on_parse_failure,
            ))

        envelope = self.accept(envelope, parsed.value)
        if use_cache and not envelope.has_fatal:
            self.cache.put(fingerprint, parsed.value, stage_name=self.name)
        return envelope


class ParseStage(LLMStage):
    """Brief -> structured requirements."""

    name = "parse"
    prompt_name = "parse"
    reads = (INTAKE,)
    required = (INTAKE,)

    def build_input(self, envelope: Envelope) -> dict:
        return {"brief": envelope.output(INTAKE)["brief"]}

    def render(self, inputs: dict) -> str:
        return self.template.replace("{brief}", inputs["brief"])


class DesignStage(LLMStage):
    """Requirements -> node-level design. Advisory: bad output is non-fatal."""

    name = "design"
    prompt_name = "design"
    reads = ("parse",)
    required = ("parse",)
    fatal_on_parse_failure = False

    def build_input(self, envelope: Envelope) -> dict:
        return {"requirements": envelope.output("parse")}

    def render(self, inputs: dict) -> str:
        return self.template.replace("{requirements}", _as_text(inputs["requirements"]))


class SynthesizeStage(LLMStage):
    """Requirements + design + lessons learned -> workflow artifact."""

    name = "synthesize"
    prompt_name = "synthesize"
    reads = ("parse", "design")
    required = ("parse",)

    def __init__(self, client: ResilientClient, knowledge_base: KnowledgeBase, **kwargs):
        self.kb = knowledge_base
        super().__init__(client, **kwargs)

    def build_input(self, envelope: Envelope) -> dict:
        return {
            "requirements": envelope.output("parse"),
            "design": envelope.output("design"),
            "kb_version": self.kb.version,
            "best_practices": list(self.kb.best_practices),
            "patterns": [dict(p) for p in self.kb.patterns],
        }

    def render(self, inputs: dict) -> str:
        design = inputs["design"]
        practices = "\n".join(f"- {p}" for p in inputs["best_practices"]) or "- (none)"
        patterns = "\n".join(_pattern_line(p) for p in inputs.get("patterns", [])) or "- (none)"
        return (
            self.template.replace("{requirements}", _as_text(inputs["requirements"]))
            .replace("{design}", _as_text(design) if design is not None else "(no design available)")
            .replace("{best_practices}", practices)
            .replace("{patterns}", patterns)
        )

    def shape(self, value: dict) -> ParseResult:
        return check_workflow_shape(value)

    def accept(self, envelope: Envelope, output: dict) -> Envelope:
        return envelope.with_output(self.name, output).with_artifact(output)


class ValidateStage(BaseStage):
    """Score the artifact against the knowledge base. Never fatal on violations."""

    name = "validate"
    reads = ("synthesize",)
    required = ("synthesize",)

    def __init__(self, validator: KnowledgeValidator):
        self.validator = validator

    def run(self, envelope: Envelope, ctx: StageContext) -> Envelope:
        envelope = self.check_prior_outputs(envelope)
        if envelope.has_fatal:
            return envelope
        if envelope.artifact is None:
            return envelope.with_error(StageError(self.name, ErrorKind.STRUCTURAL, "No artifact to validate", fatal=True))

        report = self.validator.validate(envelope.artifact)
        return envelope.with_output(self.name, report.to_dict()).with_validation(report)


class CorrectStage(BaseStage):
    """Apply mechanical fixes, then store the re-validated report."""

    name = "correct"
    reads = ("validate",)
    required = ("validate",)

    def __init__(self, corrector: AutoCorrector):
        self.corrector = corrector

    def run(self, envelope: Envelope, ctx: StageContext) -> Envelope:
        envelope = self.check_prior_outputs(envelope)
        if envelope.has_fatal:
            return envelope
        if envelope.artifact is None or envelope.validation is None:
            return envelope.with_error(StageError(
                self.name, ErrorKind.STRUCTURAL, "No validated artifact to correct", fatal=True
            ))

        if envelope.validation.passed:
            return envelope.with_output(self.name, {"applied": 0, "skipped": 0, "unresolved": 0, "actions": []})

        result = self.corrector.correct(envelope.artifact, envelope.validation.violations)
        envelope = envelope.with_output(self.name, result.to_dict())
        if result.applied_count:
            envelope = envelope.replace_artifact(result.artifact, result.applied_count)
            if ctx.logger is not None:
                ctx.logger.artifact_replaced(
                    ctx.request_id, result.applied_count, result.skipped_count, result.report.score
                )
        envelope = envelope.with_validation(
            replace(result.report, corrected_count=envelope.validation.corrected_count)
        )

        remaining = envelope.validation.violations
        if remaining:
            envelope = envelope.with_error(StageError(
                self.name,
                ErrorKind.RULE_VIOLATION,
                f"{len(remaining)} violation(s) remain after correction "
                f"(score {envelope.validation.score:.2f}): {', '.join(sorted({v.rule_id for v in remaining}))}",
                fatal=False,
            ))
        return envelope


def default_stages(
    client: ResilientClient,
    knowledge_base: KnowledgeBase,
    cache: ResponseCache | None = None,
    timeouts: StageTimeouts | None = None,
    model_config: dict | None = None,
) -> list[BaseStage]:
    """The standard five-stage sequence."""
    validator = KnowledgeValidator(knowledge_base)
    common = {"cache": cache, "timeouts": timeouts, "model_config": model_config}
    return [
        ParseStage(client, **common),
        DesignStage(client, **common),
        SynthesizeStage(client, knowledge_base, **common),
        ValidateStage(validator),
        CorrectStage(AutoCorrector(validator)),
    ]
