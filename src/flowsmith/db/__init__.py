"""Audit database models and engine for Flowsmith."""

from flowsmith.db.audit import AuditBase, ErrorIncident, GeneratedWorkflow, StageTransition
from flowsmith.db.engine import (
    create_audit_engine,
    get_audit_engine,
    get_audit_session,
    init_audit_db,
    reset_engines,
)

__all__ = [
    "AuditBase",
    "ErrorIncident",
    "GeneratedWorkflow",
    "StageTransition",
    "create_audit_engine",
    "get_audit_engine",
    "get_audit_session",
    "init_audit_db",
    "reset_engines",
]
