from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Optional, Set

from flowkernel.service.errors import FlowValidationError
from flowkernel.storage.models import DEFAULT_LABEL, Edge, Flow, Node


def find_edge(flow: Flow, node_id: str, label: str) -> Optional[Edge]:
    for edge in flow.outgoing(node_id):
        if edge.label == label:
            return edge
    return None


def find_next_node(
    flow: Flow,
    node_id: str,
    label: str = DEFAULT_LABEL,
    *,
    fallback: Iterable[str] = (),
) -> Optional[Node]:
    """Follow the edge labelled ``label`` out of ``node_id``.

    ``fallback`` lists further labels tried in order when no edge carries
    ``label``. Returns None when nothing matches, which completes the frame.
    """
    for candidate in (label, *fallback):
        edge = find_edge(flow, node_id, candidate)
        if edge is not None:
            return flow.node(edge.target)
    return None


def _find_cycle(flow: Flow) -> Optional[List[str]]:
    adjacency: Dict[str, List[str]] = {node.id: [] for node in flow.nodes}
    for edge in flow.edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)

    white, grey, black = 0, 1, 2
    color = {node_id: white for node_id in adjacency}
    for root in adjacency:
        if color[root] != white:
            continue
        path: List[str] = [root]
        stack = [(root, iter(adjacency[root]))]
        color[root] = grey
        while stack:
            current, children = stack[-1]
            advanced = False
            for child in children:
                if color[child] == grey:
                    return path[path.index(child):] + [child]
                if color[child] == white:
                    color[child] = grey
                    path.append(child)
                    stack.append((child, iter(adjacency[child])))
                    advanced = True
                    break
            if not advanced:
                color[current] = black
                path.pop()
                stack.pop()
    return None


def flow_problems(flow: Flow, *, _seen: Optional[Set[int]] = None) -> List[str]:
    """Structural problems of ``flow`` and its embedded subflows."""
    problems: List[str] = []
    if not flow.nodes:
        problems.append(f"flow '{flow.id}' has no nodes")
        return problems

    counts = Counter(node.id for node in flow.nodes)
    for node_id, count in counts.items():
        if count > 1:
            problems.append(f"node id '{node_id}' appears {count} times")
    for node in flow.nodes:
        if not node.kind:
            problems.append(f"node '{node.id}' has no kind")

    for edge in flow.edges:
        if edge.source not in counts:
            problems.append(f"edge '{edge.id}' starts at unknown node '{edge.source}'")
        if edge.target not in counts:
            problems.append(f"edge '{edge.id}' ends at unknown node '{edge.target}'")

    seen_labels: Set[tuple] = set()
    for edge in flow.edges:
        key = (edge.source, edge.label)
        if key in seen_labels:
            problems.append(f"node '{edge.source}' has more than one '{edge.label}' edge")
        seen_labels.add(key)

    if flow.entry_node_id and flow.entry_node_id not in counts:
        problems.append(f"entry node '{flow.entry_node_id}' does not exist")
    elif flow.entry_node() is None:
        problems.append(f"flow '{flow.id}' has no entry node")

    cycle = _find_cycle(flow)
    if cycle:
        problems.append("cycle detected: " + " -> ".join(cycle))

    seen = _seen if _seen is not None else set()
    seen.add(id(flow))
    for key, sub in flow.subflows.items():
        if id(sub) in seen:
            continue
        problems.extend(f"subflow '{key}': {problem}" for problem in flow_problems(sub, _seen=seen))
    return problems


def validate_flow(flow: Flow) -> Flow:
    problems = flow_problems(flow)
    if problems:
        raise FlowValidationError(
            f"flow '{flow.id}' is invalid: {problems[0]}",
            detail={"flow_id": flow.id, "problems": problems},
        )
    return flow


__all__ = ["find_edge", "find_next_node", "flow_problems", "validate_flow"]
