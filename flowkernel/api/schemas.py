from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Maximum nested JSON depth accepted in flow definitions and variables
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000
MAX_NODES_PER_FLOW = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON payloads.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class FlowRequest(BaseModel):
    """A flow in graph form (``nodes``/``edges``) or as a legacy ``steps`` list."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, max_length=128)
    name: Optional[str] = Field(None, max_length=256)
    nodes: Optional[List[dict]] = None
    edges: List[dict] = Field(default_factory=list)
    steps: Optional[List[dict]] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    entry_node_id: Optional[str] = Field(None, alias="entryNodeId")
    subflows: Dict[str, dict] = Field(default_factory=dict)
    policy: Optional[dict] = None
    replace: bool = False

    @model_validator(mode="after")
    def _validate_shape(self) -> "FlowRequest":
        if (self.nodes is None) == (self.steps is None):
            raise ValueError("provide exactly one of 'nodes' or 'steps'")
        count = len(self.nodes if self.nodes is not None else self.steps or [])
        if count > MAX_NODES_PER_FLOW:
            raise ValueError(f"flow has {count} nodes, maximum is {MAX_NODES_PER_FLOW}")
        _validate_json_depth(self.variables)
        _validate_json_depth(self.subflows)
        return self

    def to_flow_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"replace", "steps"}, exclude_none=True)


class FlowSummary(BaseModel):
    id: str
    name: Optional[str] = None
    version: int = 1
    node_count: int
    edge_count: int
    subflows: List[str] = Field(default_factory=list)


class FlowListResponse(BaseModel):
    items: List[FlowSummary]


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    flow_id: str = Field(..., alias="flowId", min_length=1)
    variables: Dict[str, Any] = Field(default_factory=dict)
    breakpoints: List[str] = Field(default_factory=list)
    pause_on_start: bool = Field(False, alias="pauseOnStart")
    run_id: Optional[str] = Field(None, alias="runId", max_length=128)

    @field_validator("variables")
    @classmethod
    def _validate_variables(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class RunCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=256)


class RunListResponse(BaseModel):
    items: List[dict]


class DebuggerCommand(BaseModel):
    """One debugger RPC command, tagged by ``type`` (``debug.attach`` ...)."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., min_length=1, max_length=64)
    run_id: Optional[str] = Field(None, alias="runId")
    flow_id: Optional[str] = Field(None, alias="flowId")
    node_id: Optional[str] = Field(None, alias="nodeId")
    node_ids: Optional[List[str]] = Field(None, alias="nodeIds")
    name: Optional[str] = None
    value: Any = None
    frame: Optional[int] = None

    @field_validator("value")
    @classmethod
    def _validate_value(cls, value: Any) -> Any:
        _validate_json_depth(value)
        return value


class DebuggerResponse(BaseModel):
    ok: bool
    state: Optional[dict] = None
    value: Any = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    version: str
    handler_kinds: List[str]
    active_runs: int
    timestamp: str
