"""
Tests for workflow validation and Blueprint compilation.

Validation is batch: every issue in a graph must be reported together.
"""

import pytest

from conftest import node_def
from qflow.models.blueprint import Connection, NodeInstance, WorkflowGraph, WorkflowSettings
from qflow.models.node_registry import NodeRegistry
from qflow.services.blueprint_compiler import (
    CompilationError,
    _toposort,
    compile_or_raise,
    compile_workflow,
)

PASS_THROUGH = "def main(value):\n    return value\n"
SOURCE = "def main():\n    return 1\n"


@pytest.fixture
def node_registry(type_registry):
    registry = NodeRegistry(type_registry)
    registry.register(node_def("list_source", SOURCE, outputs=[("out", "list")]))
    registry.register(node_def("string_source", SOURCE, outputs=[("out", "string")]))
    registry.register(node_def("array_sink", PASS_THROUGH, inputs=[("value", "array")]))
    registry.register(node_def("integer_sink", PASS_THROUGH, inputs=[("value", "integer")]))
    registry.register(node_def(
        "list_step", PASS_THROUGH, inputs=[("value", "list")], outputs=[("out", "list")],
    ))
    return registry


def graph(instances, connections=()):
    return WorkflowGraph(
        id="wf",
        name="test",
        instances=[NodeInstance(instance_id=iid, definition_id=did) for iid, did in instances],
        connections=[
            Connection(source=s, source_port=sp, target=t, target_port=tp, conversion=conv)
            for s, sp, t, tp, conv in (
                c if len(c) == 5 else (*c, None) for c in connections
            )
        ],
    )


def codes(result):
    return sorted(issue.code for issue in result.issues)


class TestCompileValid:

    def test_compatible_chain(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("sink", "array_sink"), ("source", "list_source")],
                [("source", "out", "sink", "value")],
            ),
            node_registry,
            type_registry,
        )
        assert result.success
        blueprint = result.blueprint
        order = [blueprint.nodes[i].instance_id for i in blueprint.execution_order]
        assert order == ["source", "sink"]
        source = blueprint.node("source")
        sink = blueprint.node("sink")
        assert blueprint.adjacency[source.index] == [sink.index]
        assert len(blueprint.incoming[sink.index]) == 1
        conn = blueprint.connections[0]
        assert (conn.source_type, conn.target_type) == ("list", "array")

    def test_initial_input_satisfies_required_port(self, node_registry, type_registry):
        result = compile_workflow(
            graph([("sink", "integer_sink")]),
            node_registry,
            type_registry,
            initial_inputs={"sink": {"value": 3}},
        )
        assert result.success

    def test_explicit_conversion(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("source", "string_source"), ("sink", "integer_sink")],
                [("source", "out", "sink", "value", "parse_int")],
            ),
            node_registry,
            type_registry,
        )
        assert result.success
        assert result.blueprint.connections[0].conversion == "parse_int"

    def test_descendants(self, node_registry, type_registry):
        blueprint = compile_or_raise(
            graph(
                [("a", "list_source"), ("b", "list_step"), ("c", "list_step"), ("d", "list_step")],
                [("a", "out", "b", "value"), ("b", "out", "c", "value"), ("a", "out", "d", "value")],
            ),
            node_registry,
            type_registry,
        )
        b = blueprint.node("b").index
        c = blueprint.node("c").index
        assert blueprint.descendants(b) == [c]


class TestCompileRejections:

    def test_incompatible_connection_names_the_connection(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("source", "string_source"), ("sink", "integer_sink")],
                [("source", "out", "sink", "value")],
            ),
            node_registry,
            type_registry,
        )
        assert not result.success
        assert result.blueprint is None
        assert len(result.issues) == 1
        issue = result.issues[0]
        assert issue.code == "incompatible_types"
        assert issue.connection == "source.out -> sink.value"
        assert "parse_int" in issue.message

    def test_every_incompatible_connection_is_reported(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [
                    ("s1", "string_source"), ("s2", "string_source"),
                    ("k1", "integer_sink"), ("k2", "array_sink"),
                ],
                [("s1", "out", "k1", "value"), ("s2", "out", "k2", "value")],
            ),
            node_registry,
            type_registry,
        )
        connections = {i.connection for i in result.issues if i.code == "incompatible_types"}
        assert connections == {"s1.out -> k1.value", "s2.out -> k2.value"}

    def test_batch_reports_all_issue_kinds(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("a", "list_source"), ("a", "list_source"), ("ghost", "missing_def"), ("sink", "integer_sink")],
                [("a", "nope", "sink", "value"), ("a", "out", "nowhere", "value")],
            ),
            node_registry,
            type_registry,
        )
        assert codes(result) == [
            "duplicate_instance",
            "unknown_instance",
            "unknown_node",
            "unknown_port",
        ]

    def test_missing_required_input(self, node_registry, type_registry):
        result = compile_workflow(graph([("sink", "integer_sink")]), node_registry, type_registry)
        assert codes(result) == ["missing_input"]
        assert result.issues[0].instance_id == "sink"
        assert result.issues[0].port == "value"

    def test_fan_in_rejected(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("a", "list_source"), ("b", "list_source"), ("sink", "array_sink")],
                [("a", "out", "sink", "value"), ("b", "out", "sink", "value")],
            ),
            node_registry,
            type_registry,
        )
        assert codes(result) == ["multiple_connections"]

    def test_connected_and_supplied_rejected(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("a", "list_source"), ("sink", "array_sink")],
                [("a", "out", "sink", "value")],
            ),
            node_registry,
            type_registry,
            initial_inputs={"sink": {"value": [1]}},
        )
        assert codes(result) == ["multiple_connections"]

    def test_initial_input_for_unknown_port(self, node_registry, type_registry):
        result = compile_workflow(
            graph([("sink", "integer_sink")]),
            node_registry,
            type_registry,
            initial_inputs={"sink": {"value": 1, "extra": 2}, "ghost": {"value": 1}},
        )
        assert codes(result) == ["unknown_instance", "unknown_port"]

    def test_unknown_conversion(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("source", "string_source"), ("sink", "integer_sink")],
                [("source", "out", "sink", "value", "telepathy")],
            ),
            node_registry,
            type_registry,
        )
        assert codes(result) == ["unknown_conversion"]

    def test_mismatched_conversion(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("source", "string_source"), ("sink", "integer_sink")],
                [("source", "out", "sink", "value", "parse_float")],
            ),
            node_registry,
            type_registry,
        )
        assert codes(result) == ["conversion_mismatch"]

    def test_cycle_rejected(self, node_registry, type_registry):
        result = compile_workflow(
            graph(
                [("a", "list_step"), ("b", "list_step"), ("c", "list_step")],
                [("a", "out", "b", "value"), ("b", "out", "c", "value"), ("c", "out", "a", "value")],
            ),
            node_registry,
            type_registry,
        )
        assert codes(result) == ["cycle"]
        assert "a, b, c" in result.issues[0].message

    def test_self_loop_rejected(self, node_registry, type_registry):
        result = compile_workflow(
            graph([("a", "list_step")], [("a", "out", "a", "value")]),
            node_registry,
            type_registry,
        )
        assert codes(result) == ["cycle"]

    def test_empty_workflow(self, node_registry, type_registry):
        result = compile_workflow(graph([]), node_registry, type_registry)
        assert codes(result) == ["empty_workflow"]

    def test_compile_or_raise(self, node_registry, type_registry):
        with pytest.raises(CompilationError) as exc_info:
            compile_or_raise(graph([("sink", "integer_sink")]), node_registry, type_registry)
        assert [i.code for i in exc_info.value.issues] == ["missing_input"]

    def test_invalid_limit_overrides(self, node_registry, type_registry):
        workflow = graph([("source", "list_source")])
        workflow.settings = WorkflowSettings(
            limits={"cpu_share": 5.0, "memory_mb": -1, "wall_timeout_seconds": "soon"},
        )
        result = compile_workflow(workflow, node_registry, type_registry)
        assert codes(result) == ["invalid_limits"] * 3
        messages = " ".join(issue.message for issue in result.issues)
        assert "cpu_share" in messages and "memory_mb" in messages

    def test_unknown_limit_rejected(self, node_registry, type_registry):
        workflow = graph([("source", "list_source")])
        workflow.settings = WorkflowSettings(limits={"gpu": 1})
        result = compile_workflow(workflow, node_registry, type_registry)
        assert codes(result) == ["invalid_limits"]

    def test_valid_limit_overrides(self, node_registry, type_registry):
        workflow = graph([("source", "list_source")])
        workflow.settings = WorkflowSettings(limits={"memory_mb": 256, "network": True})
        assert compile_workflow(workflow, node_registry, type_registry).success


class TestToposort:

    def test_order_respects_edges(self):
        order, cyclic = _toposort(4, [(0, 1), (1, 2), (0, 3), (3, 2)])
        assert not cyclic
        assert order.index(0) < order.index(1) < order.index(2)
        assert order.index(3) < order.index(2)

    def test_nodes_behind_cycle_are_reported(self):
        order, cyclic = _toposort(4, [(0, 1), (1, 2), (2, 1), (2, 3)])
        assert order == [0]
        assert cyclic == {1, 2, 3}
