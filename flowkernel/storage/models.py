from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

DEFAULT_LABEL = "default"
TRUE_LABEL = "true"
FALSE_LABEL = "false"
LOOP_BODY_LABEL = "loop-body"
LOOP_EXIT_LABEL = "loop-exit"
ON_ERROR_LABEL = "onError"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


CONTROL_KINDS = frozenset({"if", "foreach", "while", "loopElements", "executeFlow"})


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class ErrorInfo:
    """Classification carried by a failed node, frame or run."""

    code: str
    message: str
    retryable: bool = True
    data: Optional[Dict[str, Any]] = None
    cause: Optional["ErrorInfo"] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.data:
            out["data"] = self.data
        if self.cause is not None:
            out["cause"] = self.cause.to_dict()
        return out

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ErrorInfo":
        payload = payload or {}
        cause = payload.get("cause")
        return cls(
            code=str(payload.get("code") or "handler_error"),
            message=str(payload.get("message") or "handler reported failure"),
            retryable=bool(payload.get("retryable", True)),
            data=payload.get("data"),
            cause=cls.from_dict(cause) if isinstance(cause, Mapping) else None,
        )


@dataclass(frozen=True)
class Node:
    id: str
    kind: str
    config: Dict[str, Any] = field(default_factory=dict)
    policy: Optional[Dict[str, Any]] = None
    disabled: bool = False
    name: Optional[str] = None

    @property
    def is_control(self) -> bool:
        return self.kind in CONTROL_KINDS

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "kind": self.kind, "config": copy.deepcopy(self.config)}
        if self.policy:
            out["policy"] = dict(self.policy)
        if self.disabled:
            out["disabled"] = True
        if self.name:
            out["name"] = self.name
        return out

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Node":
        return cls(
            id=str(payload["id"]),
            kind=str(payload.get("kind") or payload.get("type") or ""),
            config=dict(payload.get("config") or {}),
            policy=dict(payload["policy"]) if payload.get("policy") else None,
            disabled=bool(payload.get("disabled", False)),
            name=payload.get("name"),
        )


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    label: str = DEFAULT_LABEL

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "from": self.source, "to": self.target, "label": self.label}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], index: int = 0) -> "Edge":
        source = str(payload.get("from", payload.get("source", "")))
        target = str(payload.get("to", payload.get("target", "")))
        return cls(
            id=str(payload.get("id") or f"e_{index}_{source}_{target}"),
            source=source,
            target=target,
            label=str(payload.get("label") or DEFAULT_LABEL),
        )


@dataclass(frozen=True)
class Flow:
    """Immutable authored graph. Validation lives in ``service.traversal``."""

    id: str
    nodes: Tuple[Node, ...]
    edges: Tuple[Edge, ...] = ()
    variables: Dict[str, Any] = field(default_factory=dict)
    entry_node_id: Optional[str] = None
    subflows: Dict[str, "Flow"] = field(default_factory=dict)
    policy: Optional[Dict[str, Any]] = None
    name: Optional[str] = None
    version: int = 1

    def node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def entry_node(self) -> Optional[Node]:
        if self.entry_node_id:
            return self.node(self.entry_node_id)
        targets = {edge.target for edge in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "version": self.version,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "variables": copy.deepcopy(self.variables),
        }
        if self.name:
            out["name"] = self.name
        if self.entry_node_id:
            out["entryNodeId"] = self.entry_node_id
        if self.policy:
            out["policy"] = dict(self.policy)
        if self.subflows:
            out["subflows"] = {key: sub.to_dict() for key, sub in self.subflows.items()}
        return out

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Flow":
        subflows = payload.get("subflows") or {}
        return cls(
            id=str(payload["id"]),
            nodes=tuple(Node.from_dict(n) for n in payload.get("nodes") or []),
            edges=tuple(Edge.from_dict(e, i) for i, e in enumerate(payload.get("edges") or [])),
            variables=dict(payload.get("variables") or {}),
            entry_node_id=payload.get("entryNodeId") or payload.get("entry_node_id"),
            subflows={
                str(key): cls.from_dict({"id": key, **sub}) for key, sub in subflows.items()
            },
            policy=dict(payload["policy"]) if payload.get("policy") else None,
            name=payload.get("name"),
            version=int(payload.get("version") or 1),
        )


class BreakpointSet:
    """Per-run breakpoint node ids, mutable while the run executes."""

    def __init__(self, node_ids: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._ids: set[str] = {str(n) for n in node_ids}

    def contains(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._ids

    def add(self, node_id: str) -> None:
        with self._lock:
            self._ids.add(node_id)

    def remove(self, node_id: str) -> None:
        with self._lock:
            self._ids.discard(node_id)

    def replace(self, node_ids: Iterable[str]) -> None:
        fresh = {str(n) for n in node_ids}
        with self._lock:
            self._ids = fresh

    def snapshot(self) -> List[str]:
        with self._lock:
            return sorted(self._ids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


@dataclass
class TraceEntry:
    node_id: str
    outcome: str
    timestamp: datetime = field(default_factory=_utcnow)
    depth: int = 0
    attempt: int = 1
    label: Optional[str] = None
    error: Optional[ErrorInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "outcome": self.outcome,
            "timestamp": self.timestamp.isoformat(),
            "depth": self.depth,
            "attempt": self.attempt,
            "label": self.label,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class CallFrame:
    flow_id: str
    invoked_by: Optional[str]
    scope: Any
    shared: bool = False
    current_node_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flowId": self.flow_id,
            "invokedBy": self.invoked_by,
            "shared": self.shared,
            "currentNodeId": self.current_node_id,
        }


@dataclass
class Run:
    id: str
    flow: Flow
    scope: Any
    status: RunStatus = RunStatus.PENDING
    current_node_id: Optional[str] = None
    call_stack: List[CallFrame] = field(default_factory=list)
    trace: List[TraceEntry] = field(default_factory=list)
    breakpoints: BreakpointSet = field(default_factory=BreakpointSet)
    error: Optional[ErrorInfo] = None
    pause_reason: Optional[str] = None
    outputs: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        flow: Flow,
        scope: Any,
        *,
        breakpoints: Iterable[str] = (),
        run_id: Optional[str] = None,
    ) -> "Run":
        return cls(
            id=run_id or str(uuid.uuid4()),
            flow=flow,
            scope=scope,
            breakpoints=BreakpointSet(breakpoints),
        )

    def to_summary(self) -> Dict[str, Any]:
        took_ms = None
        if self.started_at and self.finished_at:
            took_ms = int((self.finished_at - self.started_at).total_seconds() * 1000)
        return {
            "id": self.id,
            "flowId": self.flow.id,
            "status": self.status.value,
            "currentNodeId": self.current_node_id,
            "pauseReason": self.pause_reason,
            "depth": len(self.call_stack),
            "breakpoints": self.breakpoints.snapshot(),
            "error": self.error.to_dict() if self.error else None,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "tookMs": took_ms,
        }
