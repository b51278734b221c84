"""Rule predicates for generated workflows.

Each check takes the workflow dict (plus optional keyword parameters from
the knowledge base) and returns one Finding per offending location. A
Finding may carry a structural Patch that repairs it mechanically.

Checks are read-only and must tolerate malformed input: a workflow with a
missing or mistyped field yields findings (or nothing), never an exception.
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Callable

from flowsmith.build.patch import pointer
from flowsmith.core.models import Finding, Patch

Check = Callable[..., list[Finding]]

_CHECKS: dict[str, Check] = {}

TRIGGER_MARKERS = ("trigger", "webhook", "manual")
DEFAULT_SECRET_KEYS = r"api[_-]?key|apikey|token|secret|password|authorization|bearer"
DEFAULT_SECRET_VALUES = r"^(sk-[A-Za-z0-9_-]{16,}|AIza[0-9A-Za-z_-]{30,}|xox[abp]-[0-9A-Za-z-]{10,})"


def register_check(name: str):
    """Decorator to register a check function by name."""

    def wrapper(fn: Check) -> Check:
        _CHECKS[name] = fn
        return fn

    return wrapper


def get_check(name: str) -> Check:
    if name not in _CHECKS:
        raise ValueError(f"Unknown check: {name}. Available: {sorted(_CHECKS)}")
    return _CHECKS[name]


def available_checks() -> list[str]:
    return sorted(_CHECKS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _nodes(workflow: dict) -> list[tuple[int, dict]]:
    nodes = workflow.get("nodes") if isinstance(workflow, dict) else None
    if not isinstance(nodes, list):
        return []
    return [(i, n) for i, n in enumerate(nodes) if isinstance(n, dict)]


def _connections(workflow: dict) -> dict:
    connections = workflow.get("connections") if isinstance(workflow, dict) else None
    return connections if isinstance(connections, dict) else {}


def _targets(outputs) -> list[list[dict]]:
    """The ``main`` output lists of one connection entry, malformed parts dropped."""
    if not isinstance(outputs, dict) or not isinstance(outputs.get("main"), list):
        return []
    return [o if isinstance(o, list) else [] for o in outputs["main"]]


def _is_key(value) -> bool:
    """Node ids and names must be plain scalars to be compared or looked up."""
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def _known(name, names: set) -> bool:
    return _is_key(name) and name in names


def is_trigger(node: dict) -> bool:
    node_type = str(node.get("type", "")).lower()
    return any(marker in node_type for marker in TRIGGER_MARKERS)


def default_position(index: int) -> list[int]:
    return [250 + 200 * index, 300]


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------


@register_check("unique_node_ids")
def unique_node_ids(workflow: dict) -> list[Finding]:
    seen: set = set()
    findings = []
    for i, node in _nodes(workflow):
        node_id = node.get("id")
        if not _is_key(node_id):
            continue
        if node_id in seen:
            path = pointer("nodes", i, "id")
            findings.append(Finding(
                location=path,
                detail=f"Duplicate node id {node_id!r}",
                fix=Patch("replace", path, value=f"{node_id}-{i}", expect=node_id,
                          description=f"Rename duplicate id to {node_id}-{i}"),
            ))
        seen.add(node_id)
    return findings


@register_check("node_positions")
def node_positions(workflow: dict) -> list[Finding]:
    findings = []
    for i, node in _nodes(workflow):
        position = node.get("position")
        valid = (
            isinstance(position, list)
            and len(position) == 2
            and all(isinstance(p, (int, float)) and not isinstance(p, bool) for p in position)
        )
        if valid:
            continue
        path = pointer("nodes", i, "position")
        if "position" in node:
            fix = Patch("replace", path, value=default_position(i), expect=position, description="Reset node position")
        else:
            fix = Patch("add", path, value=default_position(i), description="Add node position")
        findings.append(Finding(location=path, detail=f"Node {node.get('name', i)!s} has a missing or invalid position", fix=fix))
    return findings


@register_check("valid_connections")
def valid_connections(workflow: dict) -> list[Finding]:
    names = {n.get("name") for _, n in _nodes(workflow) if _is_key(n.get("name"))}
    findings = []
    for source, outputs in _connections(workflow).items():
        source_path = pointer("connections", source)
        if not _is_key(source) or source not in names:
            findings.append(Finding(
                location=source_path,
                detail=f"Connection from non-existent node {source!r}",
                fix=Patch("remove", source_path, expect=outputs, description=f"Drop connections of {source!r}"),
            ))
            continue
        for oi, targets in enumerate(_targets(outputs)):
            missing = [t.get("node") for t in targets if isinstance(t, dict) and not _known(t.get("node"), names)]
            if not missing:
                continue
            path = pointer("connections", source, "main", oi)
            kept = [t for t in targets if isinstance(t, dict) and _known(t.get("node"), names)]
            findings.append(Finding(
                location=path,
                detail=f"Connection to non-existent node(s): {', '.join(map(str, missing))}",
                fix=Patch("replace", path, value=kept, expect=targets, description="Drop dangling connection targets"),
            ))
    return findings


@register_check("no_hardcoded_credentials")
def no_hardcoded_credentials(
    workflow: dict,
    key_pattern: str = DEFAULT_SECRET_KEYS,
    value_pattern: str = DEFAULT_SECRET_VALUES,
) -> list[Finding]:
    key_re = re.compile(key_pattern, re.IGNORECASE)
    value_re = re.compile(value_pattern)
    findings = []

    def walk(value, tokens: tuple) -> None:
        if isinstance(value, dict):
            for k, v in value.items():
                if isinstance(v, str) and v and not v.startswith("={{") and key_re.search(str(k)):
                    findings.append(Finding(pointer(*tokens, k), f"Credential-like field {k!r} holds a literal value"))
                else:
                    walk(v, tokens + (k,))
        elif isinstance(value, list):
            for idx, v in enumerate(value):
                walk(v, tokens + (idx,))
        elif isinstance(value, str) and value_re.search(value):
            findings.append(Finding(pointer(*tokens), "Value looks like an API key"))

    for i, node in _nodes(workflow):
        walk(node.get("parameters", {}), ("nodes", i, "parameters"))
    return findings


@register_check("required_node_fields")
def required_node_fields(workflow: dict) -> list[Finding]:
    findings = []
    for i, node in _nodes(workflow):
        node_id, name = node.get("id"), node.get("name")
        label = name if _is_key(name) and name else node_id if _is_key(node_id) and node_id else i
        path = pointer("nodes", i, "id")
        if not node_id:
            findings.append(Finding(path, f"Node {label} is missing an id",
                                    Patch("add", path, value=f"node-{i}", description="Add node id")))
        elif not _is_key(node_id):
            findings.append(Finding(path, f"Node {label} has a malformed id",
                                    Patch("replace", path, value=f"node-{i}", expect=node_id, description="Replace malformed id")))
        path = pointer("nodes", i, "name")
        if not name:
            findings.append(Finding(path, f"Node {label} is missing a name",
                                    Patch("add", path, value=f"Node {i + 1}", description="Add node name")))
        elif not isinstance(name, str):
            findings.append(Finding(path, f"Node {label} has a malformed name",
                                    Patch("replace", path, value=f"Node {i + 1}", expect=name, description="Replace malformed name")))
        if not node.get("type"):
            findings.append(Finding(pointer("nodes", i, "type"), f"Node {label} is missing a type"))
        if "typeVersion" not in node:
            path = pointer("nodes", i, "typeVersion")
            findings.append(Finding(path, f"Node {label} is missing typeVersion",
                                    Patch("add", path, value=1, description="Set typeVersion to 1")))
    return findings


@register_check("node_reachability")
def node_reachability(workflow: dict) -> list[Finding]:
    nodes = _nodes(workflow)
    if not nodes:
        return []
    if not any(is_trigger(n) for _, n in nodes):
        return [Finding("/nodes", "Workflow has no trigger node")]

    connections = _connections(workflow)
    triggers = [n.get("name") for _, n in nodes if is_trigger(n) and _is_key(n.get("name"))]
    reached = set(triggers)
    queue = deque(triggers)
    while queue:
        current = queue.popleft()
        for targets in _targets(connections.get(current)):
            for target in targets:
                name = target.get("node") if isinstance(target, dict) else None
                if _is_key(name) and name not in reached:
                    reached.add(name)
                    queue.append(name)

    return [
        Finding(pointer("nodes", i), f"Node {node.get('name')!r} is unreachable from any trigger")
        for i, node in nodes
        if not is_trigger(node) and not _known(node.get("name"), reached)
    ]


@register_check("workflow_name")
def workflow_name(workflow: dict, default: str = "Custom Workflow") -> list[Finding]:
    if not isinstance(workflow, dict):
        return []
    name = workflow.get("name")
    if isinstance(name, str) and name.strip():
        return []
    if "name" in workflow:
        fix = Patch("replace", "/name", value=default, expect=name, description="Set workflow name")
    else:
        fix = Patch("add", "/name", value=default, description="Set workflow name")
    return [Finding("/name", "Workflow has no name", fix)]


@register_check("http_error_handling")
def http_error_handling(workflow: dict) -> list[Finding]:
    findings = []
    for i, node in _nodes(workflow):
        if not str(node.get("type", "")).endswith("httpRequest"):
            continue
        if node.get("continueOnFail") is True or node.get("onError"):
            continue
        path = pointer("nodes", i, "continueOnFail")
        if "continueOnFail" in node:
            fix = Patch("replace", path, value=True, expect=node["continueOnFail"], description="Enable continueOnFail")
        else:
            fix = Patch("add", path, value=True, description="Enable continueOnFail")
        findings.append(Finding(path, f"HTTP node {node.get('name', i)!s} has no error handling", fix))
    return findings
