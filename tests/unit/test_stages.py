"""Tests for the individual pipeline stages."""

from __future__ import annotations

import pytest
from conftest import SAMPLE_DESIGN, SAMPLE_REQUIREMENTS, VALID_WORKFLOW, FakeModelClient, status_error

from flowsmith.build.cache import ResponseCache
from flowsmith.build.corrector import AutoCorrector
from flowsmith.build.resilience import ResilientClient
from flowsmith.build.stages import (
    CorrectStage,
    DesignStage,
    ParseStage,
    StageContext,
    SynthesizeStage,
    ValidateStage,
    default_stages,
    get_prompt_id,
    load_prompt,
)
from flowsmith.build.validators import KnowledgeValidator
from flowsmith.core.config import ResiliencePolicy
from flowsmith.core.errors import ErrorKind
from flowsmith.core.models import Envelope, Priority, RawRequest, Severity


def opened(brief: str = "post the weather to slack", priority: Priority = Priority.STANDARD) -> Envelope:
    envelope = Envelope.open(RawRequest(brief, priority=priority), request_id="req-1")
    return envelope.with_output("intake", {"brief": brief, "contact_ref": None, "priority": priority.value})


def resilient(fake: FakeModelClient, **policy) -> ResilientClient:
    return ResilientClient(fake, ResiliencePolicy(**policy))


@pytest.fixture
def ctx():
    return StageContext(request_id="req-1")


class TestPrompts:
    def test_templates_load(self):
        assert "{brief}" in load_prompt("parse")
        assert "{requirements}" in load_prompt("design")
        assert "{best_practices}" in load_prompt("synthesize")
        assert "{patterns}" in load_prompt("synthesize")

    def test_prompt_id_is_content_addressed(self):
        assert get_prompt_id("parse").startswith("parse_v")
        assert get_prompt_id("parse") == get_prompt_id("parse")
        assert get_prompt_id("parse") != get_prompt_id("design")


class TestParseStage:
    def test_success(self, fake_client, ctx):
        result = ParseStage(resilient(fake_client)).run(opened(), ctx)
        assert result.output("parse") == SAMPLE_REQUIREMENTS
        assert result.errors == ()
        [call] = fake_client.calls
        assert "post the weather to slack" in call["messages"][0]["content"]
        assert call["timeout"] == 30.0

    def test_missing_intake_is_fatal(self, fake_client, ctx):
        envelope = Envelope.open(RawRequest("brief text"), request_id="req-1")
        result = ParseStage(resilient(fake_client)).run(envelope, ctx)
        assert result.fatal_error.kind is ErrorKind.STRUCTURAL
        assert fake_client.calls == []

    def test_garbage_output_is_fatal(self, ctx):
        fake = FakeModelClient({"parse": "I am not JSON"})
        result = ParseStage(resilient(fake)).run(opened(), ctx)
        assert result.fatal_error.kind is ErrorKind.PERMANENT_DEPENDENCY
        assert "Unusable model output" in result.fatal_error.message
        assert not result.has_output("parse")

    def test_permanent_error(self, ctx):
        fake = FakeModelClient({"parse": status_error(400)})
        result = ParseStage(resilient(fake)).run(opened(), ctx)
        assert result.fatal_error.kind is ErrorKind.PERMANENT_DEPENDENCY
        assert len(fake.calls) == 1

    def test_transient_error_exhausted(self, ctx, no_sleep):
        fake = FakeModelClient({"parse": status_error(503)})
        result = ParseStage(resilient(fake, max_attempts=2)).run(opened(), ctx)
        assert result.fatal_error.kind is ErrorKind.TRANSIENT_DEPENDENCY
        assert "http-503" in result.fatal_error.message
        assert len(fake.calls) == 2

    def test_cancelled(self, fake_client):
        import threading

        cancel = threading.Event()
        cancel.set()
        result = ParseStage(resilient(fake_client)).run(opened(), StageContext("req-1", cancel=cancel))
        assert result.fatal_error.kind is ErrorKind.CANCELLED
        assert fake_client.calls == []


class TestCaching:
    def test_second_identical_request_hits_cache(self, fake_client, ctx):
        cache = ResponseCache()
        stage = ParseStage(resilient(fake_client), cache=cache)
        first = stage.run(opened(), ctx)
        second = stage.run(opened(), ctx)
        assert first.output("parse") == second.output("parse")
        assert len(fake_client.calls) == 1
        assert cache.stats()["hits"] == 1

    def test_high_priority_bypasses_cache(self, fake_client, ctx):
        cache = ResponseCache()
        stage = ParseStage(resilient(fake_client), cache=cache)
        stage.run(opened(), ctx)
        stage.run(opened(priority=Priority.HIGH), ctx)
        assert len(fake_client.calls) == 2
        assert cache.stats()["hits"] == 0

    def test_high_priority_does_not_write(self, fake_client, ctx):
        cache = ResponseCache()
        ParseStage(resilient(fake_client), cache=cache).run(opened(priority=Priority.HIGH), ctx)
        assert len(cache) == 0

    def test_failures_are_not_cached(self, ctx):
        cache = ResponseCache()
        fake = FakeModelClient({"parse": ["nonsense", SAMPLE_REQUIREMENTS]})
        stage = ParseStage(resilient(fake), cache=cache)
        assert stage.run(opened(), ctx).has_fatal
        assert stage.run(opened(), ctx).output("parse") == SAMPLE_REQUIREMENTS
        assert len(fake.calls) == 2

    def test_model_config_changes_fingerprint(self, fake_client, ctx):
        cache = ResponseCache()
        ParseStage(resilient(fake_client), cache=cache, model_config={"model": "a"}).run(opened(), ctx)
        ParseStage(resilient(fake_client), cache=cache, model_config={"model": "b"}).run(opened(), ctx)
        assert len(fake_client.calls) == 2


class TestDesignStage:
    def test_success(self, fake_client, ctx):
        envelope = opened().with_output("parse", SAMPLE_REQUIREMENTS)
        result = DesignStage(resilient(fake_client)).run(envelope, ctx)
        assert result.output("design") == SAMPLE_DESIGN
        assert "Post the weather forecast" in fake_client.calls[0]["messages"][0]["content"]

    def test_unparseable_design_is_not_fatal(self, ctx):
        fake = FakeModelClient({"design": "no design today"})
        envelope = opened().with_output("parse", SAMPLE_REQUIREMENTS)
        result = DesignStage(resilient(fake)).run(envelope, ctx)
        assert not result.has_fatal
        assert result.errors[0].stage == "design"
        assert not result.has_output("design")


class TestSynthesizeStage:
    def test_sets_artifact(self, fake_client, kb, ctx):
        envelope = opened().with_output("parse", SAMPLE_REQUIREMENTS).with_output("design", SAMPLE_DESIGN)
        result = SynthesizeStage(resilient(fake_client), kb).run(envelope, ctx)
        assert result.artifact == VALID_WORKFLOW
        assert result.output("synthesize") == VALID_WORKFLOW
        prompt = fake_client.calls[0]["messages"][0]["content"]
        assert kb.best_practices[0] in prompt

    def test_patterns_reach_prompt(self, fake_client, kb, ctx):
        envelope = opened().with_output("parse", SAMPLE_REQUIREMENTS)
        SynthesizeStage(resilient(fake_client), kb).run(envelope, ctx)
        prompt = fake_client.calls[0]["messages"][0]["content"]
        for name in ("Webhook Response", "API Integration", "Scheduled Task"):
            assert name in prompt
        assert "HTTP Request -> Transform Data -> Error Handler" in prompt
        assert "{patterns}" not in prompt

    def test_patterns_feed_fingerprint(self, fake_client, kb):
        envelope = opened().with_output("parse", SAMPLE_REQUIREMENTS)
        inputs = SynthesizeStage(resilient(fake_client), kb).build_input(envelope)
        assert [p["name"] for p in inputs["patterns"]] == ["Webhook Response", "API Integration", "Scheduled Task"]

    def test_missing_design_is_advisory(self, fake_client, kb, ctx):
        envelope = opened().with_output("parse", SAMPLE_REQUIREMENTS)
        result = SynthesizeStage(resilient(fake_client), kb).run(envelope, ctx)
        assert result.artifact == VALID_WORKFLOW
        [error] = result.errors
        assert error.kind is ErrorKind.STRUCTURAL
        assert not error.fatal
        assert "(no design available)" in fake_client.calls[0]["messages"][0]["content"]

    def test_missing_requirements_is_fatal(self, fake_client, kb, ctx):
        result = SynthesizeStage(resilient(fake_client), kb).run(opened(), ctx)
        assert result.has_fatal
        assert fake_client.calls == []

    def test_wrong_shape_is_fatal(self, kb, ctx):
        fake = FakeModelClient({"synthesize": {"workflow": "nope"}})
        envelope = opened().with_output("parse", SAMPLE_REQUIREMENTS)
        result = SynthesizeStage(resilient(fake), kb).run(envelope, ctx)
        assert result.has_fatal
        assert result.artifact is None


class TestValidateAndCorrect:
    @pytest.fixture
    def validator(self, kb):
        return KnowledgeValidator(kb)

    def synthesized(self, workflow: dict) -> Envelope:
        return opened().with_output("synthesize", workflow).with_artifact(workflow)

    def test_validate_records_report(self, validator, valid_workflow, ctx):
        result = ValidateStage(validator).run(self.synthesized(valid_workflow), ctx)
        assert result.validation.score == 1.0
        assert result.output("validate")["score"] == 1.0

    def test_violations_are_not_fatal(self, validator, broken_workflow, ctx):
        result = ValidateStage(validator).run(self.synthesized(broken_workflow), ctx)
        assert result.validation.score == 0.0
        assert not result.has_fatal

    def test_correct_replaces_artifact(self, validator, broken_workflow, ctx):
        validated = ValidateStage(validator).run(self.synthesized(broken_workflow), ctx)
        result = CorrectStage(AutoCorrector(validator)).run(validated, ctx)
        assert result.validation.score == 1.0
        assert result.validation.corrected_count == 4
        assert result.prior_artifact == broken_workflow
        assert result.output("correct")["applied"] == 4
        assert result.errors == ()

    def test_correct_single_major_violation(self, validator, valid_workflow, ctx):
        del valid_workflow["nodes"][1]["typeVersion"]
        validated = ValidateStage(validator).run(self.synthesized(valid_workflow), ctx)
        [violation] = validated.validation.violations
        assert violation.severity is Severity.MAJOR
        assert violation.mechanical
        assert validated.validation.score == pytest.approx(0.85)

        result = CorrectStage(AutoCorrector(validator)).run(validated, ctx)
        assert result.validation.score == 1.0
        assert result.validation.corrected_count == 1
        assert result.artifact["nodes"][1]["typeVersion"] == 1
        assert result.errors == ()

    def test_correct_noop_when_passed(self, validator, valid_workflow, ctx):
        validated = ValidateStage(validator).run(self.synthesized(valid_workflow), ctx)
        result = CorrectStage(AutoCorrector(validator)).run(validated, ctx)
        assert result.prior_artifact is None
        assert result.output("correct")["applied"] == 0

    def test_remaining_violations_recorded(self, validator, valid_workflow, ctx):
        valid_workflow["nodes"][1]["parameters"] = {"password": "hunter2"}
        validated = ValidateStage(validator).run(self.synthesized(valid_workflow), ctx)
        result = CorrectStage(AutoCorrector(validator)).run(validated, ctx)
        [error] = result.errors
        assert error.kind is ErrorKind.RULE_VIOLATION
        assert not error.fatal
        assert "no-hardcoded-credentials" in error.message
        assert result.prior_artifact is None


def test_default_stages(fake_client, kb):
    stages = default_stages(resilient(fake_client), kb)
    assert [s.name for s in stages] == ["parse", "design", "synthesize", "validate", "correct"]
