"""Tests for transform and gate nodes and the schema validator."""

import pytest
from conftest import make_graph, turn

from railgraph.graph.transform import execute_gate, execute_transform
from railgraph.graph.validator import OutputValidator, validate_simple_schema
from railgraph.schemas.graph import GraphNode

# === HELPER FUNCTIONS ===


def transform_node(**config) -> GraphNode:
    return GraphNode.model_validate({"id": "t", "type": "transform", "config": config})


def gate_graph(**config):
    """A gate ``g`` with children ``ok`` (first) and ``fix`` (second)."""
    return make_graph(
        [{"id": "g", "type": "gate", "config": config}, turn("ok"), turn("fix")],
        [("g", "ok"), ("g", "fix")],
    )


# === TRANSFORM TESTS ===


class TestTransform:
    def test_pick(self):
        node = transform_node(mode="pick", pick_path="raw.items[1].name")
        result = execute_transform(node, {"raw": {"items": [{"name": "a"}, {"name": "b"}]}})
        assert result.ok
        assert result.output == "b"

    def test_pick_missing_path_yields_none(self):
        result = execute_transform(transform_node(mode="pick", pick_path="nope"), {"x": 1})
        assert result.output is None

    def test_merge_dicts(self):
        node = transform_node(mode="merge", merge={"source": "web"})
        assert execute_transform(node, {"text": "hi"}).output == {"text": "hi", "source": "web"}

    def test_merge_non_dict_wraps(self):
        node = transform_node(mode="merge", merge={"source": "web"})
        assert execute_transform(node, "hi").output == {"input": "hi", "merge": {"source": "web"}}

    def test_template(self):
        node = transform_node(mode="template", template="Summary: {{input}}")
        assert execute_transform(node, "done").output == {"text": "Summary: done"}


# === GATE TESTS ===


class TestGate:
    """The gate routes to one child and skips the others."""

    def test_pass_routes_to_first_child(self):
        graph = gate_graph()
        result = execute_gate(graph.get_node("g"), {"DECISION": "PASS"}, graph)

        assert result.ok
        assert result.output["target"] == "ok"
        assert result.skip_node_ids == {"fix"}

    def test_lowercase_alias(self):
        graph = gate_graph()
        result = execute_gate(graph.get_node("g"), {"decision": "reject"}, graph)
        assert result.output["target"] == "fix"

    def test_explicit_targets(self):
        graph = gate_graph(pass_node_id="fix", reject_node_id="ok")
        result = execute_gate(graph.get_node("g"), {"DECISION": "PASS"}, graph)
        assert result.output["target"] == "fix"
        assert result.skip_node_ids == {"ok"}

    @pytest.mark.parametrize(
        "value,decision,note",
        [
            ('{"DECISION": "REJECT", "why": "x"}', "REJECT", "DECISION=REJECT inferred from JSON text"),
            ({"text": "Looks good. PASS"}, "PASS", "PASS inferred from keyword"),
            ("pass? no. REJECT", "REJECT", "REJECT inferred from keyword"),
        ],
    )
    def test_inferred_decision(self, value, decision, note):
        graph = gate_graph()
        result = execute_gate(graph.get_node("g"), value, graph)
        assert result.output["decision"] == decision
        assert result.output["notes"] == [note]
        assert note in result.message

    def test_undecidable(self):
        graph = gate_graph()
        result = execute_gate(graph.get_node("g"), {"text": "maybe"}, graph)
        assert not result.ok
        assert result.error.startswith("gate decision must be PASS or REJECT")

    def test_schema_failure(self):
        graph = gate_graph(schema={"type": "object", "required": ["DECISION"]})
        result = execute_gate(graph.get_node("g"), {"verdict": "PASS"}, graph)
        assert not result.ok
        assert result.error == "schema validation failed: $.DECISION: required"

    def test_reject_without_second_child(self):
        graph = make_graph(
            [{"id": "g", "type": "gate", "config": {}}, turn("ok")], [("g", "ok")]
        )
        result = execute_gate(graph.get_node("g"), {"DECISION": "REJECT"}, graph)
        assert result.output["target"] is None
        assert result.skip_node_ids == {"ok"}


# === VALIDATOR TESTS ===


class TestSchemaValidator:
    SCHEMA = {
        "type": "object",
        "required": ["name", "tags"],
        "properties": {
            "name": {"type": "string"},
            "level": {"enum": ["low", "high"]},
            "tags": {"type": "array", "items": {"type": "string"}},
        },
    }

    def test_valid(self):
        data = {"name": "x", "level": "low", "tags": ["a"]}
        assert validate_simple_schema(self.SCHEMA, data) == []

    def test_error_paths(self):
        errors = validate_simple_schema(self.SCHEMA, {"level": "mid", "tags": ["a", 2]})
        assert errors == [
            "$.name: required",
            "$.level: value must be one of enum",
            "$.tags[1]: expected type string",
        ]

    @pytest.mark.parametrize(
        "expected,value,ok",
        [
            ("integer", 3.0, True),
            ("integer", True, False),
            ("number", True, False),
            ("null", None, True),
            ("boolean", 0, False),
        ],
    )
    def test_types(self, expected, value, ok):
        assert (validate_simple_schema({"type": expected}, value) == []) is ok

    def test_output_validator_without_schema(self):
        result = OutputValidator().validate_schema(None, "anything")
        assert result.success
        assert result.error == ""
