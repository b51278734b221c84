"""Knowledge base: the versioned, immutable rule set used for validation.

Loaded once at process start from YAML. Rules name a registered check
(flowsmith.build.checks) and may pass it keyword parameters. Any problem
with the file is a KnowledgeBaseError, which callers treat as a fatal
startup condition.
"""

from __future__ import annotations

import functools
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

import yaml

from flowsmith.build.checks import get_check
from flowsmith.core.errors import KnowledgeBaseError
from flowsmith.core.models import Rule, Severity


@dataclass(frozen=True)
class KnowledgeBase:
    version: str
    rules: tuple[Rule, ...]
    penalties: Mapping[Severity, float]
    best_practices: tuple[str, ...] = ()
    patterns: tuple[Mapping, ...] = ()
    source: str = ""

    def penalty(self, severity: Severity) -> float:
        return self.penalties[severity]

    def rule(self, rule_id: str) -> Rule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def summary(self) -> dict:
        return {
            "version": self.version,
            "source": self.source,
            "rules": len(self.rules),
            "by_severity": {s.value: sum(1 for r in self.rules if r.severity is s) for s in Severity},
            "best_practices": len(self.best_practices),
            "patterns": len(self.patterns),
        }


def _build_rule(entry: dict, index: int) -> Rule:
    if not isinstance(entry, dict):
        raise KnowledgeBaseError(f"Rule #{index} must be a mapping")
    for key in ("id", "severity", "check", "message"):
        if not entry.get(key):
            raise KnowledgeBaseError(f"Rule #{index} is missing '{key}'")
    try:
        severity = Severity(entry["severity"])
    except ValueError:
        raise KnowledgeBaseError(f"Rule {entry['id']}: unknown severity {entry['severity']!r}") from None
    try:
        check = get_check(entry["check"])
    except ValueError as exc:
        raise KnowledgeBaseError(f"Rule {entry['id']}: {exc}") from exc

    params = entry.get("params") or {}
    if not isinstance(params, dict):
        raise KnowledgeBaseError(f"Rule {entry['id']}: params must be a mapping")
    predicate = functools.partial(check, **params) if params else check

    return Rule(
        id=str(entry["id"]),
        severity=severity,
        predicate=predicate,
        message=str(entry["message"]),
        fix_hint=entry.get("fix_hint"),
        check=entry["check"],
    )


def _build_penalties(raw) -> Mapping[Severity, float]:
    if not isinstance(raw, dict):
        raise KnowledgeBaseError("'penalties' must map every severity to a number")
    penalties = {}
    for severity in Severity:
        value = raw.get(severity.value)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not 0 < value <= 1:
            raise KnowledgeBaseError(f"Penalty for {severity.value} must be a number in (0, 1]")
        penalties[severity] = float(value)
    if not penalties[Severity.CRITICAL] > penalties[Severity.MAJOR] > penalties[Severity.MINOR]:
        raise KnowledgeBaseError("Penalties must decrease from critical to major to minor")
    return MappingProxyType(penalties)


def parse_knowledge_base(data, source: str = "") -> KnowledgeBase:
    """Build a KnowledgeBase from already-decoded YAML/JSON data."""
    if not isinstance(data, dict):
        raise KnowledgeBaseError("Knowledge base must be a mapping")
    version = data.get("version")
    if not version:
        raise KnowledgeBaseError("Knowledge base has no version")
    raw_rules = data.get("rules")
    if not isinstance(raw_rules, list) or not raw_rules:
        raise KnowledgeBaseError("Knowledge base has no rules")

    rules = tuple(_build_rule(entry, i) for i, entry in enumerate(raw_rules))
    ids = [r.id for r in rules]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise KnowledgeBaseError(f"Duplicate rule ids: {', '.join(duplicates)}")

    practices = data.get("best_practices") or []
    patterns = data.get("patterns") or []
    if not isinstance(practices, list) or not isinstance(patterns, list):
        raise KnowledgeBaseError("'best_practices' and 'patterns' must be lists")

    return KnowledgeBase(
        version=str(version),
        rules=rules,
        penalties=_build_penalties(data.get("penalties")),
        best_practices=tuple(str(p) for p in practices),
        patterns=tuple(MappingProxyType(dict(p)) for p in patterns if isinstance(p, dict)),
        source=source,
    )


def load_knowledge_base(path: Path) -> KnowledgeBase:
    """Load and validate the rule set at ``path``."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as exc:
        raise KnowledgeBaseError(f"Cannot read knowledge base {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise KnowledgeBaseError(f"Invalid YAML in knowledge base {path}: {exc}") from exc
    return parse_knowledge_base(data, source=str(path))
