"""Tests for cassette record/replay."""

from __future__ import annotations

import pytest
from conftest import FakeModelClient

from flowsmith.build.cassette import (
    CassetteClientWrapper,
    CassetteMiss,
    CassetteStore,
    compute_cassette_key,
    maybe_wrap_client,
)
from flowsmith.build.resilience import classify_error

MESSAGES = [{"role": "user", "content": "You are a requirements analyst. Build X"}]


class TestCassetteKey:
    def test_stable(self):
        a = compute_cassette_key("anthropic", "m", MESSAGES, 100, 0.2)
        assert a == compute_cassette_key("anthropic", "m", MESSAGES, 100, 0.2)

    def test_ignores_line_endings_and_trailing_space(self):
        crlf = [{"role": "user", "content": "line one\r\nline two  \n"}]
        lf = [{"role": "user", "content": "line one\nline two"}]
        assert compute_cassette_key("p", "m", crlf, 1, 0.0) == compute_cassette_key("p", "m", lf, 1, 0.0)

    @pytest.mark.parametrize("change", [
        {"provider": "openai"},
        {"model": "other"},
        {"max_tokens": 200},
        {"temperature": 0.9},
    ])
    def test_sensitive_to_request(self, change):
        base = {"provider": "anthropic", "model": "m", "max_tokens": 100, "temperature": 0.2}
        changed = {**base, **change}
        assert compute_cassette_key(messages=MESSAGES, **base) != compute_cassette_key(messages=MESSAGES, **changed)


class TestRecordReplay:
    def test_record_then_replay(self, tmp_path):
        fake = FakeModelClient()
        recorder = CassetteClientWrapper(fake, "record", CassetteStore(tmp_path))
        recorded = recorder.complete(MESSAGES)
        assert len(fake.calls) == 1
        assert (tmp_path / "calls.yaml").exists()

        offline = FakeModelClient({"parse": RuntimeError("must not be called")})
        player = CassetteClientWrapper(offline, "replay", CassetteStore(tmp_path))
        replayed = player.complete(MESSAGES)
        assert replayed.content == recorded.content
        assert replayed.total_tokens == recorded.total_tokens
        assert offline.calls == []

    def test_record_mode_reuses_existing_entries(self, tmp_path):
        fake = FakeModelClient()
        recorder = CassetteClientWrapper(fake, "record", CassetteStore(tmp_path))
        recorder.complete(MESSAGES)
        recorder.complete(MESSAGES)
        assert len(fake.calls) == 1
        assert len(recorder.store) == 1

    def test_replay_miss(self, tmp_path):
        player = CassetteClientWrapper(FakeModelClient(), "replay", CassetteStore(tmp_path))
        with pytest.raises(CassetteMiss) as exc_info:
            player.complete(MESSAGES)
        assert "requirements analyst" in exc_info.value.preview
        assert classify_error(exc_info.value).reason == "cassette-miss"
        assert not classify_error(exc_info.value).transient

    def test_bad_mode(self, tmp_path):
        with pytest.raises(ValueError):
            CassetteClientWrapper(FakeModelClient(), "rewind", CassetteStore(tmp_path))


class TestMaybeWrapClient:
    def test_off_by_default(self):
        fake = FakeModelClient()
        assert maybe_wrap_client(fake) is fake

    def test_wraps_when_configured(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FLOWSMITH_CASSETTE_MODE", "REPLAY")
        monkeypatch.setenv("FLOWSMITH_CASSETTE_DIR", str(tmp_path))
        wrapped = maybe_wrap_client(FakeModelClient())
        assert isinstance(wrapped, CassetteClientWrapper)
        assert wrapped.mode == "replay"

    def test_requires_dir(self, monkeypatch):
        monkeypatch.setenv("FLOWSMITH_CASSETTE_MODE", "record")
        with pytest.raises(ValueError, match="FLOWSMITH_CASSETTE_DIR"):
            maybe_wrap_client(FakeModelClient())

    def test_unknown_mode(self, monkeypatch):
        monkeypatch.setenv("FLOWSMITH_CASSETTE_MODE", "sometimes")
        with pytest.raises(ValueError, match="must be one of"):
            maybe_wrap_client(FakeModelClient())
