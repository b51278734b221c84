"""Flowsmith error types and utilities."""

from __future__ import annotations

import os
import tempfile
from enum import Enum
from pathlib import Path


def atomic_write(path: Path, content: str) -> None:
    """Write content to a file atomically using temp file + rename.

    Writes to a temporary file in the same directory, fsyncs it,
    then atomically replaces the target path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(fd, content.encode())
        os.fsync(fd)
        os.close(fd)
        os.replace(tmp, str(path))
    except BaseException:
        os.close(fd)
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class ErrorKind(str, Enum):
    """Taxonomy of per-request errors recorded on an Envelope."""

    VALIDATION_INPUT = "validation-input"
    TRANSIENT_DEPENDENCY = "transient-dependency"
    PERMANENT_DEPENDENCY = "permanent-dependency"
    STRUCTURAL = "structural"
    RULE_VIOLATION = "rule-violation"
    CANCELLED = "cancelled"


class FlowsmithError(Exception):
    """Base exception for Flowsmith."""

    pass


class PipelineError(FlowsmithError):
    """Error in pipeline configuration or a broken Envelope invariant."""

    pass


class KnowledgeBaseError(FlowsmithError):
    """The rule set could not be loaded. Fatal at startup."""

    pass


class PatchConflict(FlowsmithError):
    """A structural patch's precondition does not hold against the document."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{reason} at {path or '/'}")
