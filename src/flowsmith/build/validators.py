"""Knowledge validator: score a workflow against the knowledge base."""

from __future__ import annotations

import logging

from flowsmith.build.knowledge import KnowledgeBase
from flowsmith.core.models import Severity, ValidationReport, Violation

logger = logging.getLogger(__name__)


def sort_violations(violations: list[Violation]) -> list[Violation]:
    """Severity descending, then rule id, then location."""
    return sorted(violations, key=lambda v: (-v.severity.rank, v.rule_id, v.location))


def compute_score(violations: list[Violation], penalties) -> float:
    """1.0 minus a per-violation penalty scaled by severity, floored at 0.0."""
    deduction = sum(penalties[v.severity] for v in violations)
    return round(max(0.0, 1.0 - deduction), 4)


class KnowledgeValidator:
    """Evaluates every rule of a KnowledgeBase against an artifact.

    Read-only: the artifact is never modified, so validating the same
    artifact twice yields identical reports.
    """

    def __init__(self, knowledge_base: KnowledgeBase):
        self.kb = knowledge_base

    def violations(self, artifact: dict) -> list[Violation]:
        found: list[Violation] = []
        for rule in self.kb.rules:
            for finding in rule.evaluate(artifact):
                found.append(Violation(
                    rule_id=rule.id,
                    severity=rule.severity,
                    message=f"{rule.message}: {finding.detail}",
                    location=finding.location,
                    suggested_fix=finding.fix if finding.fix is not None else rule.fix_hint,
                ))
        return sort_violations(found)

    def validate(self, artifact: dict) -> ValidationReport:
        violations = self.violations(artifact)
        report = ValidationReport(
            score=compute_score(violations, self.kb.penalties),
            violations=tuple(violations),
            kb_version=self.kb.version,
            rules_evaluated=len(self.kb.rules),
        )
        if violations:
            logger.debug(
                "Validation found %d violation(s) (%d critical), score %.2f",
                len(violations),
                sum(1 for v in violations if v.severity is Severity.CRITICAL),
                report.score,
            )
        return report
