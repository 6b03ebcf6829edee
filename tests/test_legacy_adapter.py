"""Tests for the step-list <-> graph conversion."""

from __future__ import annotations

from flowkernel.service.legacy import (
    default_edges_only,
    ensure_target,
    flow_to_steps,
    map_node_to_step,
    map_step_to_node_config,
    nodes_to_steps,
    steps_to_dag,
    steps_to_flow,
    steps_to_nodes,
    topo_order,
)
from flowkernel.storage.models import Edge, Node


class TestStepsToGraph:
    """Step lists become nodes linked by sequential default edges."""

    def test_steps_to_dag_links_consecutive_steps(self):
        steps = [
            {"id": "s1", "type": "navigate", "url": "https://example.test"},
            {"id": "s2", "type": "click", "target": {"selector": "#go"}},
            {"id": "s3", "type": "assert", "expression": "true"},
        ]
        nodes, edges = steps_to_dag(steps)

        assert [node.id for node in nodes] == ["s1", "s2", "s3"]
        assert [node.kind for node in nodes] == ["navigate", "click", "assert"]
        assert nodes[0].config == {"url": "https://example.test"}
        assert [(edge.source, edge.target, edge.label) for edge in edges] == [
            ("s1", "s2", "default"),
            ("s2", "s3", "default"),
        ]
        assert edges[0].id == "e_0_s1_s2"

    def test_missing_ids_and_types_get_defaults(self):
        nodes = steps_to_nodes([{"foo": 1}, {"id": "", "type": ""}, "not-a-step"])
        assert [node.id for node in nodes] == ["n_0", "n_1", "n_2"]
        assert all(node.kind == "script" for node in nodes)
        assert nodes[2].config == {}

    def test_repeated_step_ids_still_give_unique_edges(self):
        _, edges = steps_to_dag([{"id": "a"}, {"id": "a"}, {"id": "a"}])
        assert len({edge.id for edge in edges}) == 2

    def test_empty_and_single(self):
        assert steps_to_dag([]) == ([], [])
        nodes, edges = steps_to_dag([{"id": "only", "type": "log"}])
        assert len(nodes) == 1 and edges == []

    def test_target_fields_are_normalized(self):
        config = map_step_to_node_config({"id": "x", "type": "drag", "start": "#a", "end": {"selector": "#b"}})
        assert config["start"] == {"candidates": []}
        assert config["end"] == {"selector": "#b"}
        assert ensure_target(None) == {"candidates": []}

    def test_steps_to_flow(self):
        flow = steps_to_flow("legacy", [{"id": "a", "type": "log"}, {"id": "b", "type": "log"}], variables={"x": 1})
        assert flow.id == "legacy"
        assert flow.entry_node().id == "a"
        assert flow.variables == {"x": 1}


class TestGraphToSteps:
    """Graphs flatten into steps in dependency order without losing nodes."""

    def test_delay_maps_to_wait_step(self):
        step = map_node_to_step(Node(id="d", kind="delay", config={"sleep": 250}))
        assert step == {"id": "d", "type": "wait", "condition": {"sleep": 250}}

    def test_delay_defaults_and_clamps(self):
        assert map_node_to_step(Node(id="d", kind="delay"))["condition"] == {"sleep": 1000}
        assert map_node_to_step(Node(id="d", kind="delay", config={"sleep": -5}))["condition"] == {"sleep": 0}
        assert map_node_to_step(Node(id="d", kind="delay", config={"sleep": "oops"}))["condition"] == {"sleep": 1000}

    def test_other_kinds_inline_their_config(self):
        step = map_node_to_step(Node(id="c", kind="click", config={"target": {"selector": "#b"}, "button": "left"}))
        assert step == {"id": "c", "type": "click", "target": {"selector": "#b"}, "button": "left"}

    def test_topological_order(self):
        nodes = [Node(id="c", kind="log"), Node(id="a", kind="log"), Node(id="b", kind="log")]
        edges = [Edge(id="1", source="a", target="b"), Edge(id="2", source="b", target="c")]
        assert [node.id for node in topo_order(nodes, edges)] == ["a", "b", "c"]

    def test_cycle_falls_back_to_storage_order(self):
        nodes = [Node(id="a", kind="log"), Node(id="b", kind="log")]
        edges = [Edge(id="1", source="a", target="b"), Edge(id="2", source="b", target="a")]
        assert [node.id for node in topo_order(nodes, edges)] == ["a", "b"]

    def test_label_filter_and_unknown_endpoints(self):
        nodes = [Node(id="b", kind="log"), Node(id="a", kind="log")]
        edges = [
            Edge(id="1", source="a", target="b", label="onError"),
            Edge(id="2", source="a", target="ghost"),
        ]
        assert [node.id for node in topo_order(nodes, edges, label="default")] == ["b", "a"]
        assert [node.id for node in topo_order(nodes, edges)] == ["a", "b"]
        assert [edge.id for edge in default_edges_only(edges)] == ["2"]

    def test_nodes_to_steps_never_drops_nodes(self):
        nodes = [Node(id=f"n{i}", kind="log") for i in range(5)]
        edges = [Edge(id="1", source="n4", target="n0")]
        steps = nodes_to_steps(nodes, edges)
        assert sorted(step["id"] for step in steps) == [f"n{i}" for i in range(5)]
        assert [step["id"] for step in steps].index("n4") < [step["id"] for step in steps].index("n0")

    def test_flow_round_trip_keeps_order(self):
        steps = [
            {"id": "a", "type": "navigate", "url": "https://example.test"},
            {"id": "b", "type": "fill", "value": "x"},
        ]
        flow = steps_to_flow("f", steps)
        assert flow_to_steps(flow) == steps
