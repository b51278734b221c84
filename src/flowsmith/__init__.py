"""Flowsmith - turns natural-language automation briefs into validated workflows.

Usage:
    from flowsmith import Settings, WorkflowBuilder

    with WorkflowBuilder(Settings()) as builder:
        envelope = builder.build("When a form is submitted, e-mail the sales team")
        envelope.outcome      # Outcome.VALIDATED / UNRESOLVED / HALTED
        envelope.artifact     # the workflow document
        envelope.validation   # score and remaining violations
"""

from flowsmith.build.knowledge import KnowledgeBase, load_knowledge_base
from flowsmith.build.orchestrator import CancelToken, Orchestrator
from flowsmith.build.validators import KnowledgeValidator
from flowsmith.config import Settings
from flowsmith.core.models import (
    Envelope,
    Outcome,
    PipelineState,
    Priority,
    RawRequest,
    StageError,
    TerminalSnapshot,
    ValidationReport,
    Violation,
)
from flowsmith.pipeline import WorkflowBuilder

__all__ = [
    "CancelToken",
    "Envelope",
    "KnowledgeBase",
    "KnowledgeValidator",
    "Orchestrator",
    "Outcome",
    "PipelineState",
    "Priority",
    "RawRequest",
    "Settings",
    "StageError",
    "TerminalSnapshot",
    "ValidationReport",
    "Violation",
    "WorkflowBuilder",
    "load_knowledge_base",
]

__version__ = "0.1.0"
