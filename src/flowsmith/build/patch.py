"""Structural patches addressed by JSON Pointer (RFC 6901).

apply_patch() never touches its input: it returns a patched deep copy or
raises PatchConflict when the patch's precondition does not hold.
"""

from __future__ import annotations

import copy
from typing import Any

from flowsmith.core.errors import PatchConflict
from flowsmith.core.models import Patch

OPS = ("add", "replace", "remove")


def escape_token(token) -> str:
    return str(token).replace("~", "~0").replace("/", "~1")


def unescape_token(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def pointer(*tokens) -> str:
    """Build a pointer from raw tokens: pointer("nodes", 0, "id") -> "/nodes/0/id"."""
    return "".join("/" + escape_token(t) for t in tokens)


def split_pointer(path: str) -> list[str]:
    if path == "":
        return []
    if not path.startswith("/"):
        raise PatchConflict(path, "Pointer must start with '/'")
    return [unescape_token(t) for t in path[1:].split("/")]


def _step(container: Any, token: str, path: str) -> Any:
    if isinstance(container, dict):
        if token not in container:
            raise PatchConflict(path, f"Missing key {token!r}")
        return container[token]
    if isinstance(container, list):
        index = _index(container, token, path)
        if index >= len(container):
            raise PatchConflict(path, f"Index {index} out of range")
        return container[index]
    raise PatchConflict(path, f"Cannot descend into {type(container).__name__}")


def _index(container: list, token: str, path: str) -> int:
    if not token.isdigit():
        raise PatchConflict(path, f"Invalid list index {token!r}")
    return int(token)


def resolve(doc: Any, path: str) -> Any:
    """Value at ``path``; raises PatchConflict when it does not exist."""
    current = doc
    for token in split_pointer(path):
        current = _step(current, token, path)
    return current


def exists(doc: Any, path: str) -> bool:
    try:
        resolve(doc, path)
    except PatchConflict:
        return False
    return True


def apply_patch(doc: dict, patch: Patch) -> dict:
    """Return a copy of ``doc`` with ``patch`` applied."""
    if patch.op not in OPS:
        raise PatchConflict(patch.path, f"Unknown op {patch.op!r}")
    tokens = split_pointer(patch.path)
    if not tokens:
        raise PatchConflict(patch.path, "Cannot patch the document root")

    result = copy.deepcopy(doc)
    parent = result
    for token in tokens[:-1]:
        parent = _step(parent, token, patch.path)
    last = tokens[-1]

    if patch.op != "add" or patch.expect is not None:
        current = _step(parent, last, patch.path)
        if patch.expect is not None and current != patch.expect:
            raise PatchConflict(patch.path, "Current value no longer matches the expected value")

    value = copy.deepcopy(patch.value)
    if isinstance(parent, dict):
        if patch.op == "remove":
            del parent[last]
        else:
            parent[last] = value
    elif isinstance(parent, list):
        if patch.op == "add" and last == "-":
            parent.append(value)
            return result
        index = _index(parent, last, patch.path)
        if patch.op == "add":
            if index > len(parent):
                raise PatchConflict(patch.path, f"Index {index} out of range")
            parent.insert(index, value)
        elif patch.op == "replace":
            parent[index] = value
        else:
            del parent[index]
    else:
        raise PatchConflict(patch.path, f"Cannot patch inside {type(parent).__name__}")
    return result
