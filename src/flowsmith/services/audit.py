"""Audit store operations.

Plain functions taking a Session, plus ``SqlAuditSink`` which adapts them
to the orchestrator's audit and delivery interfaces.
"""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from flowsmith.core.models import AuditRecord, StageError, TerminalSnapshot
from flowsmith.db.audit import ErrorIncident, GeneratedWorkflow, StageTransition
from flowsmith.db.engine import session_scope


def record_transition(session: Session, record: AuditRecord) -> StageTransition:
    """Store one stage transition.

    Args:
        session: Database session.
        record: Transition emitted by the orchestrator.

    Returns:
        The created StageTransition.
    """
    row = StageTransition(
        request_id=record.request_id,
        stage=record.stage,
        entered_at=record.entered_at,
        exited_at=record.exited_at,
        outcome=record.outcome.value,
    )
    session.add(row)
    return row


def record_errors(session: Session, request_id: str, errors: tuple[StageError, ...] | list[StageError]) -> list[ErrorIncident]:
    """Replace the stored error incidents of a request with ``errors``."""
    session.execute(delete(ErrorIncident).where(ErrorIncident.request_id == request_id))
    rows = [
        ErrorIncident(
            request_id=request_id,
            stage=error.stage,
            kind=error.kind.value,
            message=error.message,
            fatal=error.fatal,
        )
        for error in errors
    ]
    session.add_all(rows)
    return rows


def record_workflow(session: Session, snapshot: TerminalSnapshot) -> GeneratedWorkflow:
    """Store (or overwrite) the final result of a request.

    Args:
        session: Database session.
        snapshot: Terminal snapshot of the finished request.

    Returns:
        The stored GeneratedWorkflow.
    """
    row = session.get(GeneratedWorkflow, snapshot.request_id)
    if row is None:
        row = GeneratedWorkflow(request_id=snapshot.request_id)
        session.add(row)

    validation = snapshot.validation
    row.contact_ref = snapshot.contact_ref
    row.state = snapshot.state.value
    row.outcome = snapshot.outcome.value
    row.score = validation.score if validation is not None else None
    row.violation_count = len(validation.violations) if validation is not None else 0
    row.corrected_count = validation.corrected_count if validation is not None else 0
    row.kb_version = validation.kb_version if validation is not None else None
    row.workflow = snapshot.artifact
    return row


def list_transitions(session: Session, request_id: str) -> list[StageTransition]:
    """Transitions of one request, in the order they were recorded."""
    stmt = select(StageTransition).where(StageTransition.request_id == request_id).order_by(StageTransition.id)
    return list(session.scalars(stmt))


def list_errors(session: Session, request_id: str) -> list[ErrorIncident]:
    stmt = select(ErrorIncident).where(ErrorIncident.request_id == request_id).order_by(ErrorIncident.id)
    return list(session.scalars(stmt))


def get_workflow(session: Session, request_id: str) -> GeneratedWorkflow | None:
    return session.get(GeneratedWorkflow, request_id)


class SqlAuditSink:
    """Audit and delivery sink backed by the SQL audit store.

    Every call opens its own short session, so the sink can be shared by
    the orchestrator's worker threads.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def emit(self, record: AuditRecord) -> None:
        with session_scope(self.session_factory) as session:
            record_transition(session, record)

    def deliver(self, snapshot: TerminalSnapshot) -> None:
        with session_scope(self.session_factory) as session:
            record_workflow(session, snapshot)
            record_errors(session, snapshot.request_id, snapshot.errors)
