"""Audit store models.

- StageTransition: one row per stage entered and exited
- ErrorIncident: one row per StageError of a finished request
- GeneratedWorkflow: one row per finished request with its outcome
"""

import json
from datetime import datetime
from typing import Any, ClassVar

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class AuditBase(DeclarativeBase):
    """Base class for audit models."""

    type_annotation_map: ClassVar[dict[type, Any]] = {}


class StageTransition(AuditBase):
    __tablename__ = "stage_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(64), nullable=False)
    entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    exited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)

    __table_args__ = (Index("ix_stage_transitions_request", "request_id"),)


class ErrorIncident(AuditBase):
    __tablename__ = "error_incidents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    fatal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_error_incidents_request", "request_id"),)


class GeneratedWorkflow(AuditBase):
    __tablename__ = "generated_workflows"

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contact_ref: Mapped[str | None] = mapped_column(String(320), nullable=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    violation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    corrected_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    kb_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    workflow_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())

    @property
    def workflow(self) -> dict[str, Any] | None:
        """Deserialized workflow artifact."""
        if self.workflow_json is None:
            return None
        return json.loads(self.workflow_json)  # type: ignore[no-any-return]

    @workflow.setter
    def workflow(self, value: dict[str, Any] | None) -> None:
        self.workflow_json = json.dumps(value) if value is not None else None
