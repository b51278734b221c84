"""Shared test fixtures for Flowsmith."""

from __future__ import annotations

import copy
import json
import threading

import anthropic
import httpx
import pytest

from flowsmith.build.knowledge import load_knowledge_base
from flowsmith.build.llm_client import LLMResponse
from flowsmith.config import DEFAULT_KNOWLEDGE_BASE, Settings, reset_settings
from flowsmith.core.config import LLMConfig
from flowsmith.db.engine import reset_engines

API_URL = "https://api.anthropic.com/v1/messages"

# Prompt markers -> stage name
PROMPT_MARKERS = {
    "requirements analyst": "parse",
    "workflow architect": "design",
    "workflow engineer": "synthesize",
}

SAMPLE_REQUIREMENTS = {
    "summary": "Post the weather forecast to Slack every morning",
    "trigger": "schedule",
    "steps": ["fetch forecast", "format message", "post to Slack"],
    "integrations": ["OpenWeather", "Slack"],
}

SAMPLE_DESIGN = {
    "nodes": [
        {"name": "Manual Trigger", "type": "n8n-nodes-base.manualTrigger", "purpose": "start"},
        {"name": "Set Message", "type": "n8n-nodes-base.set", "purpose": "build the message"},
    ]
}

VALID_WORKFLOW = {
    "name": "Weather to Slack",
    "nodes": [
        {
            "id": "1",
            "name": "Manual Trigger",
            "type": "n8n-nodes-base.manualTrigger",
            "typeVersion": 1,
            "position": [250, 300],
            "parameters": {},
        },
        {
            "id": "2",
            "name": "Set Message",
            "type": "n8n-nodes-base.set",
            "typeVersion": 1,
            "position": [450, 300],
            "parameters": {"values": {"string": [{"name": "text", "value": "Good morning"}]}},
        },
    ],
    "connections": {
        "Manual Trigger": {"main": [[{"node": "Set Message", "type": "main", "index": 0}]]},
    },
}


def stage_of(messages: list[dict]) -> str:
    content = messages[0]["content"] if messages else ""
    for marker, stage in PROMPT_MARKERS.items():
        if marker in content:
            return stage
    return "unknown"


def make_response(text: str, tokens: int = 15) -> LLMResponse:
    return LLMResponse(content=text, model="test-model", input_tokens=tokens - 5, output_tokens=5, total_tokens=tokens)


def status_error(status: int, headers: dict | None = None) -> anthropic.APIStatusError:
    """A realistic SDK status error, as raised by anthropic.Anthropic()."""
    request = httpx.Request("POST", API_URL)
    response = httpx.Response(status, headers=headers or {}, request=request)
    cls = anthropic.RateLimitError if status == 429 else anthropic.APIStatusError
    return cls(message=f"Error code: {status}", response=response, body=None)


def timeout_error() -> anthropic.APITimeoutError:
    return anthropic.APITimeoutError(request=httpx.Request("POST", API_URL))


def connection_error() -> anthropic.APIConnectionError:
    return anthropic.APIConnectionError(request=httpx.Request("POST", API_URL))


class FakeModelClient:
    """Scripted stand-in for LLMClient.

    ``script`` maps a stage name to either a single reply or a list of
    replies consumed in order (the last one repeats). A reply is a string,
    a dict (sent as JSON), or an exception instance to raise.
    """

    def __init__(self, script: dict | None = None):
        self.config = LLMConfig(provider="anthropic", model="test-model")
        self.script = {
            "parse": SAMPLE_REQUIREMENTS,
            "design": SAMPLE_DESIGN,
            "synthesize": VALID_WORKFLOW,
        }
        self.script.update(script or {})
        self.calls: list[dict] = []
        self._positions: dict[str, int] = {}
        self._lock = threading.Lock()

    def calls_for(self, stage: str) -> list[dict]:
        return [c for c in self.calls if c["stage"] == stage]

    def complete(self, messages, timeout=None, max_tokens=None, temperature=None) -> LLMResponse:
        stage = stage_of(messages)
        with self._lock:
            self.calls.append({"stage": stage, "messages": messages, "timeout": timeout})
            reply = self.script.get(stage, "")
            if isinstance(reply, list):
                index = self._positions.get(stage, 0)
                self._positions[stage] = index + 1
                reply = reply[min(index, len(reply) - 1)]
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return make_response(reply)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep host configuration out of every test."""
    for var in (
        "FLOWSMITH_LLM_PROVIDER",
        "FLOWSMITH_LLM_MODEL",
        "FLOWSMITH_LLM_BASE_URL",
        "FLOWSMITH_CASSETTE_MODE",
        "FLOWSMITH_CASSETTE_DIR",
        "FLOWSMITH_STORAGE_DIR",
        "FLOWSMITH_AUDIT_ENABLED",
    ):
        monkeypatch.delenv(var, raising=False)
    reset_settings()
    reset_engines()
    yield
    reset_settings()
    reset_engines()


@pytest.fixture
def no_sleep(monkeypatch):
    """Make retry backoff instantaneous; returns the list of requested delays."""
    delays: list[float] = []

    def pause(delay, cancel=None):
        delays.append(delay)
        return cancel is not None and cancel.is_set()

    monkeypatch.setattr("flowsmith.build.resilience.pause", pause)
    return delays


@pytest.fixture
def kb():
    return load_knowledge_base(DEFAULT_KNOWLEDGE_BASE)


@pytest.fixture
def valid_workflow():
    return copy.deepcopy(VALID_WORKFLOW)


@pytest.fixture
def broken_workflow():
    """Duplicate id, missing position, dangling connection and no name."""
    wf = copy.deepcopy(VALID_WORKFLOW)
    del wf["name"]
    wf["nodes"][1]["id"] = "1"
    del wf["nodes"][1]["position"]
    wf["connections"]["Manual Trigger"]["main"][0].append({"node": "Ghost", "type": "main", "index": 0})
    return wf


@pytest.fixture
def fake_client():
    return FakeModelClient()


@pytest.fixture
def settings(tmp_path):
    return Settings(storage_dir=tmp_path / "store", request_timeout_seconds=30.0, max_workers=2)
