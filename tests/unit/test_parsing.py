"""Tests for tagged model-output parsing."""

from __future__ import annotations

from flowsmith.build.parsing import ParseFailure, Parsed, check_workflow_shape, parse_model_json


class TestParseModelJson:
    def test_plain_json(self):
        assert parse_model_json('{"a": 1}') == Parsed({"a": 1})

    def test_fenced_json(self):
        text = 'Here you go:\n```json\n{"nodes": []}\n```\nEnjoy.'
        assert parse_model_json(text) == Parsed({"nodes": []})

    def test_embedded_object(self):
        text = 'Sure! {"a": {"b": 2}} Let me know if you need more.'
        assert parse_model_json(text) == Parsed({"a": {"b": 2}})

    def test_empty(self):
        result = parse_model_json("   ")
        assert isinstance(result, ParseFailure)
        assert result.reason == "empty response"
        assert isinstance(parse_model_json(None), ParseFailure)

    def test_not_json(self):
        result = parse_model_json("I cannot help with that.")
        assert isinstance(result, ParseFailure)
        assert result.raw_text == "I cannot help with that."

    def test_array_is_not_an_object(self):
        result = parse_model_json("[1, 2, 3]")
        assert isinstance(result, ParseFailure)
        assert "expected a JSON object" in result.reason

    def test_broken_json_reports_position(self):
        result = parse_model_json('{"a": 1,,}')
        assert isinstance(result, ParseFailure)
        assert "invalid JSON" in result.reason

    def test_preview_is_truncated(self):
        result = parse_model_json("x" * 500)
        assert len(result.preview) == 200


class TestCheckWorkflowShape:
    def test_valid(self, valid_workflow):
        assert check_workflow_shape(valid_workflow) == Parsed(valid_workflow)

    def test_missing_nodes(self):
        result = check_workflow_shape({"connections": {}})
        assert isinstance(result, ParseFailure)
        assert "nodes" in result.reason

    def test_empty_nodes(self):
        assert isinstance(check_workflow_shape({"nodes": [], "connections": {}}), ParseFailure)

    def test_non_object_node(self):
        assert isinstance(check_workflow_shape({"nodes": ["x"], "connections": {}}), ParseFailure)

    def test_missing_connections(self):
        result = check_workflow_shape({"nodes": [{"id": "1"}]})
        assert isinstance(result, ParseFailure)
        assert "connections" in result.reason
