"""Cassettes: record and replay model calls for deterministic runs.

In ``record`` mode calls pass through to the real transport and responses are
saved to ``<dir>/calls.yaml``. In ``replay`` mode responses are served from
that file and the model is never contacted.

Configuration via environment variables:
  FLOWSMITH_CASSETTE_MODE  "record", "replay", or "off" (default: "off")
  FLOWSMITH_CASSETTE_DIR   cassette directory (required when mode != "off")
"""

from __future__ import annotations

import hashlib
import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from flowsmith.build.llm_client import LLMClient, LLMResponse
from flowsmith.core.errors import FlowsmithError, atomic_write

MODES = ("off", "record", "replay")


class CassetteMiss(FlowsmithError):
    """Raised in replay mode when no recorded call matches."""

    def __init__(self, key: str, preview: str = ""):
        self.key = key
        self.preview = preview
        msg = f"Cassette miss for key {key[:12]}..."
        if preview:
            msg += f" (prompt: {preview[:80]})"
        msg += "\nRun with FLOWSMITH_CASSETTE_MODE=record to capture this call."
        super().__init__(msg)


def compute_cassette_key(provider: str, model: str, messages: list[dict], max_tokens: int, temperature: float) -> str:
    """Deterministic key for a model request.

    Line endings and trailing whitespace in message text do not change the key.
    """
    normalized = [
        {k: (v.replace("\r\n", "\n").rstrip() if isinstance(v, str) else v) for k, v in sorted(msg.items())}
        for msg in messages
    ]
    payload = {
        "provider": provider,
        "model": model,
        "messages": normalized,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True, ensure_ascii=False).encode()).hexdigest()


@dataclass
class CassetteEntry:
    key: str
    request: dict = field(default_factory=dict)
    response: dict = field(default_factory=dict)

    def to_response(self, default_model: str) -> LLMResponse:
        resp = self.response
        input_tokens = resp.get("input_tokens", 0)
        output_tokens = resp.get("output_tokens", 0)
        return LLMResponse(
            content=resp.get("text", ""),
            model=resp.get("model", default_model),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )


class CassetteStore:
    """Thread-safe set of recorded calls backed by a YAML file."""

    def __init__(self, cassette_dir: Path):
        self.cassette_dir = Path(cassette_dir)
        self._entries: dict[str, CassetteEntry] = {}
        self._lock = threading.Lock()
        self._load()

    @property
    def path(self) -> Path:
        return self.cassette_dir / "calls.yaml"

    def _load(self) -> None:
        if not self.path.exists():
            return
        data = yaml.safe_load(self.path.read_text()) or []
        for item in data:
            if isinstance(item, dict) and item.get("key"):
                self._entries[item["key"]] = CassetteEntry(
                    key=item["key"],
                    request=item.get("request", {}),
                    response=item.get("response", {}),
                )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> CassetteEntry | None:
        with self._lock:
            return self._entries.get(key)

    def put(self, entry: CassetteEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry
            data = [{"key": e.key, "request": e.request, "response": e.response} for e in self._entries.values()]
            atomic_write(self.path, yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, width=120))


class CassetteClientWrapper:
    """Drop-in replacement for LLMClient that records or replays complete()."""

    def __init__(self, real_client: LLMClient, mode: str, store: CassetteStore):
        if mode not in ("record", "replay"):
            raise ValueError(f"Unknown cassette mode: {mode!r}")
        self.real_client = real_client
        self.mode = mode
        self.store = store
        self.config = real_client.config

    def complete(
        self,
        messages: list[dict],
        timeout: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        resolved_max_tokens = max_tokens if max_tokens is not None else self.config.max_tokens
        resolved_temperature = temperature if temperature is not None else self.config.temperature
        key = compute_cassette_key(
            self.config.provider, self.config.model, messages, resolved_max_tokens, resolved_temperature
        )

        entry = self.store.get(key)
        if entry is not None:
            return entry.to_response(self.config.model)

        preview = ""
        if messages and isinstance(messages[0].get("content"), str):
            preview = messages[0]["content"][:200]
        if self.mode == "replay":
            raise CassetteMiss(key, preview)

        response = self.real_client.complete(
            messages, timeout=timeout, max_tokens=max_tokens, temperature=temperature
        )
        self.store.put(CassetteEntry(
            key=key,
            request={
                "provider": self.config.provider,
                "model": self.config.model,
                "prompt_preview": preview,
            },
            response={
                "text": response.content,
                "model": response.model,
                "input_tokens": response.input_tokens,
                "output_tokens": response.output_tokens,
            },
        ))
        return response


def maybe_wrap_client(client: LLMClient) -> LLMClient | CassetteClientWrapper:
    """Wrap a client with cassette support when FLOWSMITH_CASSETTE_MODE asks for it."""
    mode = os.environ.get("FLOWSMITH_CASSETTE_MODE", "off").lower()
    if mode == "off" or not mode:
        return client
    if mode not in MODES:
        raise ValueError(f"FLOWSMITH_CASSETTE_MODE must be one of {', '.join(MODES)}, got {mode!r}")

    cassette_dir = os.environ.get("FLOWSMITH_CASSETTE_DIR")
    if not cassette_dir:
        raise ValueError(f"FLOWSMITH_CASSETTE_MODE={mode} requires FLOWSMITH_CASSETTE_DIR to be set")

    return CassetteClientWrapper(client, mode, CassetteStore(Path(cassette_dir)))
