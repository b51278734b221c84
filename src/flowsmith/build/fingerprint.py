"""Stage fingerprints: self-describing, versioned hashes used as cache keys."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass

STAGE_SCHEME = "flowsmith:stage:v1"


@dataclass(frozen=True)
class Fingerprint:
    """A versioned hash that remembers what went into it.

    Two fingerprints match only when both scheme and digest agree, so bumping
    the scheme invalidates every cached output at once.
    """

    scheme: str
    digest: str  # SHA256 hex (full)
    components: dict[str, str]  # component_name -> component_hash

    def matches(self, other: Fingerprint | None) -> bool:
        if other is None:
            return False
        return self.scheme == other.scheme and self.digest == other.digest

    def explain_diff(self, other: Fingerprint | None) -> list[str]:
        """Human-readable list of reasons these fingerprints differ."""
        if other is None:
            return ["no stored fingerprint"]
        if self.scheme != other.scheme:
            return [f"scheme changed ({other.scheme} -> {self.scheme})"]
        changed = [
            k for k in sorted(set(self.components) | set(other.components))
            if self.components.get(k) != other.components.get(k)
        ]
        return [f"{k} changed" for k in changed] or ["unknown"]

    def to_dict(self) -> dict:
        return {"scheme": self.scheme, "digest": self.digest, "components": dict(self.components)}


def compute_digest(components: dict[str, str]) -> str:
    """Deterministic digest from sorted component hashes."""
    parts = "|".join(f"{k}={v}" for k, v in sorted(components.items()))
    return hashlib.sha256(parts.encode()).hexdigest()


def fingerprint_value(obj) -> str:
    """Deterministic SHA256 prefix for any JSON-like value.

    The builtin hash() is salted per process and undefined for dicts, so
    values are serialized to a canonical string first.
    """
    if obj is None:
        raw = ""
    elif isinstance(obj, str):
        raw = obj.replace("\r\n", "\n").rstrip()
    elif isinstance(obj, (dict, list, tuple)):
        raw = json.dumps(obj, sort_keys=True, default=str)
    else:
        raw = str(obj)
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def compute_stage_fingerprint(
    stage_name: str,
    normalized_input,
    prompt_id: str = "",
    model_config: dict | None = None,
) -> Fingerprint:
    """Cache key for one stage call: stage name plus its normalized input.

    The prompt template identity and the cache-relevant model settings are
    folded in, so editing a prompt or switching models never serves a stale
    output.
    """
    components = {
        "stage": fingerprint_value(stage_name),
        "input": fingerprint_value(normalized_input),
    }
    if prompt_id:
        components["prompt"] = fingerprint_value(prompt_id)
    if model_config:
        components["model"] = fingerprint_value(model_config)
    return Fingerprint(scheme=STAGE_SCHEME, digest=compute_digest(components), components=components)
