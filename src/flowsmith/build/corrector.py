"""Auto-corrector: apply mechanical fixes from a validation report.

Only violations whose suggested fix is a structural Patch are eligible.
Fixes are applied one at a time in severity order; before each one the
artifact is re-validated so a fix whose violation has disappeared, or whose
target has moved, is skipped instead of being applied blindly.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field

from flowsmith.build.patch import apply_patch
from flowsmith.build.validators import KnowledgeValidator, sort_violations
from flowsmith.core.errors import PatchConflict
from flowsmith.core.models import ValidationReport, Violation

logger = logging.getLogger(__name__)


@dataclass
class FixAction:
    """What happened to one violation during correction."""

    rule_id: str
    location: str
    action: str  # "applied", "skipped", "unresolved"
    description: str = ""
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "location": self.location,
            "action": self.action,
            "description": self.description,
            "reason": self.reason,
        }


@dataclass
class CorrectionResult:
    artifact: dict
    actions: list[FixAction] = field(default_factory=list)
    report: ValidationReport | None = None

    @property
    def applied_count(self) -> int:
        return sum(1 for a in self.actions if a.action == "applied")

    @property
    def skipped_count(self) -> int:
        return sum(1 for a in self.actions if a.action == "skipped")

    @property
    def unresolved_count(self) -> int:
        return sum(1 for a in self.actions if a.action == "unresolved")

    def to_dict(self) -> dict:
        return {
            "applied": self.applied_count,
            "skipped": self.skipped_count,
            "unresolved": self.unresolved_count,
            "actions": [a.to_dict() for a in self.actions],
        }


class AutoCorrector:
    def __init__(self, validator: KnowledgeValidator):
        self.validator = validator

    def correct(self, artifact: dict, violations: list[Violation] | tuple[Violation, ...]) -> CorrectionResult:
        """Apply every eligible fix, then re-validate once.

        The input artifact is left untouched; the corrected copy is on the
        returned CorrectionResult along with the final report.
        """
        current = copy.deepcopy(artifact)
        actions: list[FixAction] = []

        for violation in violations:
            if not violation.mechanical:
                actions.append(FixAction(
                    violation.rule_id,
                    violation.location,
                    "unresolved",
                    violation.suggested_fix or "",
                    "no mechanical fix",
                ))

        for violation in sort_violations([v for v in violations if v.mechanical]):
            patch = violation.suggested_fix
            live = {v.key: v for v in self.validator.violations(current)}.get(violation.key)
            if live is None:
                actions.append(FixAction(
                    violation.rule_id, violation.location, "skipped", patch.description, "violation no longer present"
                ))
                continue
            if live.suggested_fix != patch:
                actions.append(FixAction(
                    violation.rule_id, violation.location, "skipped", patch.description, "fix is stale"
                ))
                continue
            try:
                current = apply_patch(current, patch)
            except PatchConflict as exc:
                logger.info("Skipping fix for %s at %s: %s", violation.rule_id, violation.location, exc)
                actions.append(FixAction(violation.rule_id, violation.location, "skipped", patch.description, str(exc)))
                continue
            actions.append(FixAction(violation.rule_id, violation.location, "applied", patch.description))

        return CorrectionResult(artifact=current, actions=actions, report=self.validator.validate(current))
