"""Conversion between the linear step list and the node/edge graph.

Older persisted scripts and some external consumers only understand an
ordered list of steps, each a JSON object with ``id``, ``type`` and the
kind-specific fields inlined. The kernel always executes the graph form;
these helpers translate at the boundary and never drop a node.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from flowkernel.storage.models import DEFAULT_LABEL, Edge, Flow, Node

DEFAULT_STEP_KIND = "script"
DEFAULT_DELAY_MS = 1000
_TARGET_FIELDS = ("target", "start", "end")


def ensure_target(value: Any) -> Dict[str, Any]:
    """Canonical target descriptor: mappings pass through, anything else is empty."""
    if isinstance(value, Mapping):
        return dict(value)
    return {"candidates": []}


def _normalize_targets(fields: Dict[str, Any]) -> Dict[str, Any]:
    for key in _TARGET_FIELDS:
        if fields.get(key):
            fields[key] = ensure_target(fields[key])
    return fields


def map_step_to_node_config(step: Any) -> Dict[str, Any]:
    if not isinstance(step, Mapping):
        return {}
    config = {key: value for key, value in step.items() if key not in ("id", "type")}
    return _normalize_targets(config)


def steps_to_nodes(steps: Sequence[Any]) -> List[Node]:
    nodes: List[Node] = []
    for index, step in enumerate(steps):
        fields = step if isinstance(step, Mapping) else {}
        step_id = fields.get("id")
        kind = fields.get("type")
        nodes.append(
            Node(
                id=step_id if isinstance(step_id, str) and step_id else f"n_{index}",
                kind=kind if isinstance(kind, str) and kind else DEFAULT_STEP_KIND,
                config=map_step_to_node_config(step),
            )
        )
    return nodes


def steps_to_dag(steps: Sequence[Any]) -> Tuple[List[Node], List[Edge]]:
    """Nodes plus sequential ``default`` edges linking consecutive steps.

    Edge ids embed the position so repeated step ids still give unique edges.
    """
    nodes = steps_to_nodes(steps)
    edges = [
        Edge(
            id=f"e_{index}_{current.id}_{following.id}",
            source=current.id,
            target=following.id,
            label=DEFAULT_LABEL,
        )
        for index, (current, following) in enumerate(zip(nodes, nodes[1:]))
    ]
    return nodes, edges


def map_node_to_step(node: Node) -> Dict[str, Any]:
    config = node.config or {}
    if node.kind == "delay":
        raw = config.get("sleep", config.get("ms"))
        try:
            sleep_ms = float(raw) if raw is not None else DEFAULT_DELAY_MS
        except (TypeError, ValueError):
            sleep_ms = DEFAULT_DELAY_MS
        sleep_ms = max(0, sleep_ms)
        if float(sleep_ms).is_integer():
            sleep_ms = int(sleep_ms)
        return {"id": node.id, "type": "wait", "condition": {"sleep": sleep_ms}}
    step: Dict[str, Any] = {"id": node.id, "type": node.kind}
    step.update(config)
    return _normalize_targets(step)


def topo_order(
    nodes: Sequence[Node],
    edges: Iterable[Edge],
    label: Optional[str] = None,
) -> List[Node]:
    """Kahn's algorithm over the edges carrying ``label`` (every edge when None).

    Edges touching unknown nodes are ignored. When the edges admit no
    complete order the nodes come back in storage order, so the result
    always has the same length as the input.
    """
    by_id = {node.id: node for node in nodes}
    indegree = {node.id: 0 for node in nodes}
    successors: Dict[str, List[str]] = {node.id: [] for node in nodes}
    for edge in edges:
        if label is not None and edge.label != label:
            continue
        if edge.source not in by_id or edge.target not in by_id:
            continue
        successors[edge.source].append(edge.target)
        indegree[edge.target] += 1

    queue = deque(node.id for node in nodes if indegree[node.id] == 0)
    ordered: List[Node] = []
    emitted = set()
    while queue:
        node_id = queue.popleft()
        if node_id in emitted:
            continue
        emitted.add(node_id)
        ordered.append(by_id[node_id])
        for target in successors[node_id]:
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)

    if len(ordered) != len(nodes):
        return list(nodes)
    return ordered


def default_edges_only(edges: Iterable[Edge]) -> List[Edge]:
    return [edge for edge in edges if edge.label == DEFAULT_LABEL]


def nodes_to_steps(nodes: Sequence[Node], edges: Sequence[Edge] = ()) -> List[Dict[str, Any]]:
    ordered = topo_order(nodes, edges) if edges else list(nodes)
    return [map_node_to_step(node) for node in ordered]


def flow_to_steps(flow: Flow) -> List[Dict[str, Any]]:
    return nodes_to_steps(flow.nodes, flow.edges)


def steps_to_flow(
    flow_id: str,
    steps: Sequence[Any],
    *,
    variables: Optional[Mapping[str, Any]] = None,
    name: Optional[str] = None,
    subflows: Optional[Mapping[str, Flow]] = None,
) -> Flow:
    nodes, edges = steps_to_dag(steps)
    return Flow(
        id=flow_id,
        nodes=tuple(nodes),
        edges=tuple(edges),
        variables=dict(variables or {}),
        subflows=dict(subflows or {}),
        name=name,
    )


__all__ = [
    "ensure_target",
    "map_step_to_node_config",
    "steps_to_nodes",
    "steps_to_dag",
    "map_node_to_step",
    "topo_order",
    "default_edges_only",
    "nodes_to_steps",
    "flow_to_steps",
    "steps_to_flow",
]
