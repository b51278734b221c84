"""Tests for the pipeline logger."""

from __future__ import annotations

import io
import json

import pytest
from rich.console import Console

from flowsmith.build.resilience import MetricsRecord
from flowsmith.core.logging import PipelineLogger, Verbosity


def make_logger(verbosity=Verbosity.DEFAULT, log_dir=None):
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=False, width=200)
    return PipelineLogger(verbosity=verbosity, log_dir=log_dir, console=console), buffer


def read_events(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def drive(logger):
    logger.request_start("r1", "standard")
    logger.stage_start("r1", "parse")
    logger.cache_miss("r1", "parse", "abc")
    logger.llm_attempt(MetricsRecord("r1:parse", 1, "failure", 0.5, "http-503"))
    logger.llm_attempt(MetricsRecord("r1:parse", 2, "success", 0.2, tokens=40))
    logger.stage_finish("r1", "parse", "ok")
    logger.stage_start("r1", "design")
    logger.cache_hit("r1", "design", "def")
    logger.stage_error("r1", "design", "structural", "odd output", False)
    logger.stage_finish("r1", "design", "degraded")
    logger.artifact_replaced("r1", 2, 1, 0.95)
    logger.request_finish("r1", "completed", "validated")


class TestPipelineLogger:
    def test_counters(self):
        logger, _ = make_logger()
        drive(logger)
        log = logger.get_request_log("r1")

        parse = log.stages["parse"]
        assert parse.attempts == 2
        assert parse.retries == 1
        assert parse.tokens_used == 40
        assert parse.cache_misses == 1
        assert parse.outcome == "ok"
        assert log.stages["design"].cache_hits == 1
        assert log.stages["design"].errors == ["structural"]
        assert log.total_attempts == 2
        assert log.total_cache_hits == 1
        assert log.total_tokens == 40
        assert log.outcome == "validated"
        assert log.to_dict()["stages"]["parse"]["retries"] == 1

    def test_jsonl_events(self, tmp_path):
        logger, _ = make_logger(log_dir=tmp_path / "logs")
        drive(logger)
        logger.close()

        events = read_events(logger.log_path)
        assert [e["event"] for e in events] == [
            "request_start",
            "stage_start",
            "cache_miss",
            "llm_attempt",
            "llm_attempt",
            "stage_finish",
            "stage_start",
            "cache_hit",
            "stage_error",
            "stage_finish",
            "artifact_replaced",
            "request_finish",
        ]
        assert all(e["request_id"] == "r1" for e in events)
        assert all("timestamp" in e for e in events)
        assert events[3]["reason"] == "http-503"
        assert events[-1]["total_attempts"] == 2

    def test_default_verbosity_prints_outcome_only(self):
        logger, buffer = make_logger()
        drive(logger)
        output = buffer.getvalue()
        assert "validated r1" in output
        assert "Stage:" not in output
        assert "model call" not in output

    def test_verbose_prints_stages(self):
        logger, buffer = make_logger(Verbosity.VERBOSE)
        drive(logger)
        output = buffer.getvalue()
        assert "Stage: parse" in output
        assert "(cached)" in output
        assert "model call" not in output

    def test_debug_prints_attempts(self):
        logger, buffer = make_logger(Verbosity.DEBUG)
        drive(logger)
        assert "model call r1:parse #1: failure" in buffer.getvalue()

    def test_unlabelled_attempt_is_logged_without_stage(self):
        logger, _ = make_logger()
        logger.llm_attempt(MetricsRecord("", 1, "success", 0.1))
        assert logger.requests == {}

    @pytest.mark.parametrize("level", list(Verbosity))
    def test_close_is_idempotent(self, tmp_path, level):
        logger, _ = make_logger(level, tmp_path)
        logger.close()
        logger.close()


class TestRequestRetention:
    def test_finished_requests_leave_in_flight_map(self):
        logger, _ = make_logger()
        drive(logger)
        assert logger.requests == {}
        assert logger.get_request_log("r1").outcome == "validated"

    def test_history_is_bounded(self):
        logger = PipelineLogger(console=Console(file=io.StringIO()), keep_finished=2)
        for rid in ("a", "b", "c"):
            logger.request_start(rid, "standard")
            logger.stage_start(rid, "parse")
            logger.request_finish(rid, "halted", "halted")
        assert list(logger.finished) == ["b", "c"]
        assert logger.get_request_log("a") is None
        assert logger._stage_start == {}
