"""Tests for the built-in rule checks."""

from __future__ import annotations

import pytest

from flowsmith.build.checks import (
    available_checks,
    default_position,
    get_check,
    http_error_handling,
    is_trigger,
    no_hardcoded_credentials,
    node_positions,
    node_reachability,
    register_check,
    required_node_fields,
    unique_node_ids,
    valid_connections,
    workflow_name,
)
from flowsmith.build.patch import apply_patch


class TestRegistry:
    def test_builtins_registered(self):
        assert {
            "unique_node_ids",
            "node_positions",
            "valid_connections",
            "no_hardcoded_credentials",
            "required_node_fields",
            "node_reachability",
            "workflow_name",
            "http_error_handling",
        } <= set(available_checks())

    def test_unknown_check(self):
        with pytest.raises(ValueError, match="Unknown check"):
            get_check("nope")

    def test_register_custom(self):
        @register_check("always_fine_for_tests")
        def always_fine(workflow):
            return []

        assert get_check("always_fine_for_tests") is always_fine


class TestValidWorkflowIsClean:
    @pytest.mark.parametrize("name", [
        "unique_node_ids",
        "node_positions",
        "valid_connections",
        "no_hardcoded_credentials",
        "required_node_fields",
        "node_reachability",
        "workflow_name",
        "http_error_handling",
    ])
    def test_no_findings(self, name, valid_workflow):
        assert get_check(name)(valid_workflow) == []

    @pytest.mark.parametrize("bad", [
        None,
        [],
        "text",
        {"nodes": "x", "connections": []},
        {"nodes": [1, None]},
        {"nodes": [{"id": ["1"], "name": {"a": 1}, "type": "x.webhook"}], "connections": {"n": {"main": [[{"node": ["n"]}]]}}},
    ])
    def test_malformed_input_never_raises(self, bad):
        for name in available_checks():
            get_check(name)(bad)


class TestUniqueNodeIds:
    def test_duplicate_renamed(self, valid_workflow):
        valid_workflow["nodes"][1]["id"] = "1"
        [finding] = unique_node_ids(valid_workflow)
        assert finding.location == "/nodes/1/id"
        fixed = apply_patch(valid_workflow, finding.fix)
        assert fixed["nodes"][1]["id"] == "1-1"
        assert unique_node_ids(fixed) == []


class TestNodePositions:
    def test_missing_position_added(self, valid_workflow):
        del valid_workflow["nodes"][1]["position"]
        [finding] = node_positions(valid_workflow)
        assert finding.fix.op == "add"
        assert apply_patch(valid_workflow, finding.fix)["nodes"][1]["position"] == default_position(1)

    @pytest.mark.parametrize("position", [[1], "0,0", [1, "2"], [True, 2]])
    def test_invalid_position_replaced(self, valid_workflow, position):
        valid_workflow["nodes"][0]["position"] = position
        [finding] = node_positions(valid_workflow)
        assert finding.fix.op == "replace"
        assert finding.fix.expect == position


class TestValidConnections:
    def test_dangling_target_dropped(self, valid_workflow):
        valid_workflow["connections"]["Manual Trigger"]["main"][0].append({"node": "Ghost"})
        [finding] = valid_connections(valid_workflow)
        assert finding.location == "/connections/Manual Trigger/main/0"
        assert "Ghost" in finding.detail
        fixed = apply_patch(valid_workflow, finding.fix)
        assert fixed["connections"]["Manual Trigger"]["main"][0] == [
            {"node": "Set Message", "type": "main", "index": 0}
        ]

    def test_unknown_source_removed(self, valid_workflow):
        valid_workflow["connections"]["Ghost"] = {"main": [[{"node": "Set Message"}]]}
        [finding] = valid_connections(valid_workflow)
        assert finding.fix.op == "remove"
        assert "Ghost" not in apply_patch(valid_workflow, finding.fix)["connections"]


class TestCredentials:
    def test_literal_api_key_field(self, valid_workflow):
        valid_workflow["nodes"][1]["parameters"] = {"headers": {"apiKey": "abc123"}}
        [finding] = no_hardcoded_credentials(valid_workflow)
        assert finding.location == "/nodes/1/parameters/headers/apiKey"
        assert finding.fix is None

    def test_expression_is_allowed(self, valid_workflow):
        valid_workflow["nodes"][1]["parameters"] = {"token": "={{ $credentials.slack.token }}"}
        assert no_hardcoded_credentials(valid_workflow) == []

    def test_secret_looking_value(self, valid_workflow):
        valid_workflow["nodes"][1]["parameters"] = {"body": ["sk-" + "a" * 24]}
        [finding] = no_hardcoded_credentials(valid_workflow)
        assert finding.location == "/nodes/1/parameters/body/0"

    def test_custom_patterns(self, valid_workflow):
        valid_workflow["nodes"][1]["parameters"] = {"passphrase": "hunter2"}
        assert no_hardcoded_credentials(valid_workflow) == []
        assert len(no_hardcoded_credentials(valid_workflow, key_pattern="passphrase")) == 1


class TestRequiredFields:
    def test_missing_fields(self, valid_workflow):
        node = valid_workflow["nodes"][1]
        del node["id"], node["type"], node["typeVersion"]
        findings = required_node_fields(valid_workflow)
        by_location = {f.location: f for f in findings}
        assert set(by_location) == {"/nodes/1/id", "/nodes/1/type", "/nodes/1/typeVersion"}
        assert by_location["/nodes/1/type"].fix is None
        assert by_location["/nodes/1/id"].fix.value == "node-1"
        assert by_location["/nodes/1/typeVersion"].fix.value == 1


class TestReachability:
    def test_orphan_node(self, valid_workflow):
        valid_workflow["connections"] = {}
        [finding] = node_reachability(valid_workflow)
        assert finding.location == "/nodes/1"
        assert "Set Message" in finding.detail

    def test_no_trigger(self, valid_workflow):
        valid_workflow["nodes"][0]["type"] = "n8n-nodes-base.set"
        [finding] = node_reachability(valid_workflow)
        assert finding.location == "/nodes"

    def test_is_trigger(self):
        assert is_trigger({"type": "n8n-nodes-base.webhook"})
        assert is_trigger({"type": "n8n-nodes-base.scheduleTrigger"})
        assert not is_trigger({"type": "n8n-nodes-base.httpRequest"})


class TestWorkflowName:
    def test_missing_name(self, valid_workflow):
        del valid_workflow["name"]
        [finding] = workflow_name(valid_workflow)
        assert apply_patch(valid_workflow, finding.fix)["name"] == "Custom Workflow"

    def test_blank_name_with_custom_default(self, valid_workflow):
        valid_workflow["name"] = "  "
        [finding] = workflow_name(valid_workflow, default="Untitled")
        assert finding.fix.op == "replace"
        assert apply_patch(valid_workflow, finding.fix)["name"] == "Untitled"


class TestHttpErrorHandling:
    def test_http_node_without_error_handling(self, valid_workflow):
        valid_workflow["nodes"][1]["type"] = "n8n-nodes-base.httpRequest"
        [finding] = http_error_handling(valid_workflow)
        assert apply_patch(valid_workflow, finding.fix)["nodes"][1]["continueOnFail"] is True

    def test_on_error_setting_is_enough(self, valid_workflow):
        valid_workflow["nodes"][1]["type"] = "n8n-nodes-base.httpRequest"
        valid_workflow["nodes"][1]["onError"] = "continueErrorOutput"
        assert http_error_handling(valid_workflow) == []


class TestMalformedIdsAndNames:
    def test_list_id_is_reported_not_raised(self, valid_workflow):
        valid_workflow["nodes"][1]["id"] = ["2"]
        assert unique_node_ids(valid_workflow) == []
        [finding] = required_node_fields(valid_workflow)
        assert finding.location == "/nodes/1/id"
        assert "malformed id" in finding.detail
        fixed = apply_patch(valid_workflow, finding.fix)
        assert fixed["nodes"][1]["id"] == "node-1"
        assert required_node_fields(fixed) == []

    def test_dict_name_is_reported_not_raised(self, valid_workflow):
        valid_workflow["nodes"][1]["name"] = {"text": "Set Message"}
        [finding] = required_node_fields(valid_workflow)
        assert finding.location == "/nodes/1/name"
        assert finding.fix.expect == {"text": "Set Message"}
        assert apply_patch(valid_workflow, finding.fix)["nodes"][1]["name"] == "Node 2"

        [dangling] = valid_connections(valid_workflow)
        assert dangling.location == "/connections/Manual Trigger/main/0"
        [orphan] = node_reachability(valid_workflow)
        assert orphan.location == "/nodes/1"

    def test_unhashable_connection_target(self, valid_workflow):
        valid_workflow["connections"]["Manual Trigger"]["main"][0].append({"node": ["Set Message"]})
        [finding] = valid_connections(valid_workflow)
        assert apply_patch(valid_workflow, finding.fix)["connections"]["Manual Trigger"]["main"][0] == [
            {"node": "Set Message", "type": "main", "index": 0}
        ]
        assert node_reachability(valid_workflow) == []

    def test_trigger_with_malformed_name(self, valid_workflow):
        valid_workflow["nodes"][0]["name"] = ["Manual Trigger"]
        [orphan] = node_reachability(valid_workflow)
        assert orphan.location == "/nodes/1"
