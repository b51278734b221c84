"""Service layer for Flowsmith database operations."""

from flowsmith.services.audit import (
    SqlAuditSink,
    get_workflow,
    list_errors,
    list_transitions,
    record_errors,
    record_transition,
    record_workflow,
)

__all__ = [
    "SqlAuditSink",
    "get_workflow",
    "list_errors",
    "list_transitions",
    "record_errors",
    "record_transition",
    "record_workflow",
]
