"""WorkflowBuilder wires the pipeline together from Settings.

    with WorkflowBuilder(settings) as builder:
        envelope = builder.build("Every morning, post the weather to Slack")
        print(envelope.outcome, envelope.artifact)
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console

from flowsmith.build.cache import ResponseCache
from flowsmith.build.cassette import maybe_wrap_client
from flowsmith.build.corrector import AutoCorrector, CorrectionResult
from flowsmith.build.knowledge import KnowledgeBase, load_knowledge_base
from flowsmith.build.llm_client import LLMClient
from flowsmith.build.orchestrator import Orchestrator
from flowsmith.build.resilience import ResilientClient
from flowsmith.build.sinks import FanoutAudit, FanoutDelivery, JsonlAuditSink, JsonOutboxDelivery, MemoryAuditSink
from flowsmith.build.stages import default_stages
from flowsmith.build.validators import KnowledgeValidator
from flowsmith.config import Settings, get_settings
from flowsmith.core.config import LLMConfig, ResiliencePolicy, StageTimeouts
from flowsmith.core.logging import PipelineLogger, Verbosity
from flowsmith.core.models import Envelope, Priority, RawRequest, ValidationReport

logger = logging.getLogger(__name__)


class WorkflowBuilder:
    """Facade over the orchestrator and its collaborators.

    ``client`` is the model transport; when omitted an LLMClient is built
    from ``llm_config`` and wrapped for cassette record/replay if the
    environment asks for it. A bad knowledge base raises KnowledgeBaseError
    here, before any request is accepted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        llm_config: LLMConfig | None = None,
        policy: ResiliencePolicy | None = None,
        timeouts: StageTimeouts | None = None,
        client=None,
        knowledge_base: KnowledgeBase | None = None,
        outbox_dir: Path | None = None,
        verbosity: Verbosity | None = None,
        console: Console | None = None,
    ):
        self.settings = settings or get_settings()
        self.knowledge_base = knowledge_base or load_knowledge_base(self.settings.knowledge_base_path)
        self.llm_config = llm_config or LLMConfig.from_dict({})
        if client is None:
            client = maybe_wrap_client(LLMClient(self.llm_config))

        if verbosity is None:
            verbosity = Verbosity(min(max(self.settings.log_verbosity, 0), Verbosity.DEBUG))
        self.settings.ensure_storage_dir()
        self.logger = PipelineLogger(verbosity, log_dir=self.settings.log_dir, console=console)

        self.cache = ResponseCache(default_ttl=self.settings.cache_ttl_seconds)
        self.client = ResilientClient(client, policy)
        self.client.add_sink(self.logger.llm_attempt)
        self.validator = KnowledgeValidator(self.knowledge_base)

        deliveries = []
        if outbox_dir is not None:
            deliveries.append(JsonOutboxDelivery(outbox_dir))
        if self.settings.audit_enabled:
            from flowsmith.db.engine import get_audit_engine, get_audit_session_factory, init_audit_db
            from flowsmith.services.audit import SqlAuditSink

            init_audit_db(get_audit_engine(self.settings))
            self.audit = SqlAuditSink(get_audit_session_factory(self.settings))
            deliveries.append(self.audit)
        else:
            self.audit = MemoryAuditSink(self.settings.audit_memory_limit)
        audit = self.audit
        if self.settings.audit_log_enabled:
            audit = FanoutAudit([self.audit, JsonlAuditSink(self.settings.audit_log_path)])

        self.orchestrator = Orchestrator(
            default_stages(
                self.client,
                self.knowledge_base,
                cache=self.cache,
                timeouts=timeouts,
                model_config=self.llm_config.to_dict(),
            ),
            min_brief_length=self.settings.min_brief_length,
            max_brief_length=self.settings.max_brief_length,
            audit=audit,
            delivery=FanoutDelivery(deliveries) if deliveries else None,
            pipeline_logger=self.logger,
            max_workers=self.settings.max_workers,
            request_timeout=self.settings.request_timeout_seconds,
        )
        logger.debug(
            "WorkflowBuilder ready: kb=%s rules=%d provider=%s model=%s",
            self.knowledge_base.version,
            len(self.knowledge_base.rules),
            self.llm_config.provider,
            self.llm_config.model,
        )

    def build(
        self,
        brief: str,
        contact_ref: str | None = None,
        priority: Priority | str = Priority.STANDARD,
        request_id: str | None = None,
    ) -> Envelope:
        """Run one brief through the pipeline and return the final Envelope."""
        return self.run(RawRequest(brief, contact_ref, Priority(priority)), request_id)

    def run(self, raw: RawRequest, request_id: str | None = None) -> Envelope:
        return self.orchestrator.run(raw, request_id)

    def submit(self, raw: RawRequest, request_id: str | None = None) -> str:
        return self.orchestrator.submit(raw, request_id)

    def result(self, request_id: str, timeout: float | None = None) -> Envelope:
        return self.orchestrator.result(request_id, timeout)

    def cancel(self, request_id: str, reason: str = "cancelled by caller") -> bool:
        return self.orchestrator.cancel(request_id, reason)

    def validate(self, workflow: dict) -> ValidationReport:
        """Score a workflow against the loaded knowledge base."""
        return self.validator.validate(workflow)

    def correct(self, workflow: dict) -> CorrectionResult:
        """Validate then auto-correct a workflow outside the pipeline."""
        report = self.validator.validate(workflow)
        return AutoCorrector(self.validator).correct(workflow, report.violations)

    def close(self) -> None:
        self.orchestrator.shutdown()
        self.logger.close()

    def __enter__(self) -> WorkflowBuilder:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
