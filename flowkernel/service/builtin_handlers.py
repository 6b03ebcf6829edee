from __future__ import annotations

from typing import Any, Dict, Mapping

from flowkernel.service.errors import CANCELLED
from flowkernel.service.expression import evaluate, evaluate_condition
from flowkernel.service.registry import ExecutionContext, HandlerResult, PluginRegistry

ASSERTION_FAILED = "assertion_failed"

_WAIT_SCHEMA = {
    "type": "object",
    "properties": {
        "ms": {"type": "number", "minimum": 0},
        "sleep": {"type": "number", "minimum": 0},
        "condition": {
            "type": "object",
            "properties": {"sleep": {"type": "number", "minimum": 0}},
        },
    },
}

_ASSIGN_SCHEMA = {
    "type": "object",
    "properties": {
        "values": {"type": "object"},
        "name": {"type": "string", "minLength": 1},
    },
    "anyOf": [{"required": ["values"]}, {"required": ["name"]}],
}

_APPEND_SCHEMA = {
    "type": "object",
    "properties": {"listVar": {"type": "string", "minLength": 1}},
    "required": ["listVar", "value"],
}

_EVALUATE_SCHEMA = {
    "type": "object",
    "properties": {
        "expression": {"type": "string"},
        "saveAs": {"type": "string", "minLength": 1},
    },
    "required": ["expression", "saveAs"],
}

_LOG_SCHEMA = {
    "type": "object",
    "properties": {
        "message": {},
        "level": {"enum": ["debug", "info", "warning", "error"]},
    },
}

_ASSERT_SCHEMA = {
    "type": "object",
    "properties": {"message": {"type": "string"}},
    "required": ["condition"],
}


def _sleep_ms(config: Mapping[str, Any]) -> float:
    condition = config.get("condition")
    if isinstance(condition, Mapping) and condition.get("sleep") is not None:
        return float(condition["sleep"])
    for key in ("ms", "sleep"):
        if config.get(key) is not None:
            return float(config[key])
    return 0.0


async def wait_handler(config: Mapping[str, Any], scope: Mapping[str, Any], context: ExecutionContext) -> HandlerResult:
    """Sleep for ``ms`` (or ``condition.sleep``) unless the run is cancelled first."""
    interrupted = await context.cancel_token.sleep(max(0.0, _sleep_ms(config)) / 1000.0)
    if interrupted:
        return HandlerResult.failure(CANCELLED, "wait interrupted by cancellation", retryable=False)
    return HandlerResult.success()


async def assign_handler(config: Mapping[str, Any], scope: Mapping[str, Any], context: ExecutionContext) -> HandlerResult:
    values: Dict[str, Any] = dict(config.get("values") or {})
    if config.get("name"):
        values[str(config["name"])] = config.get("value")
    return HandlerResult.success(values)


async def append_handler(config: Mapping[str, Any], scope: Mapping[str, Any], context: ExecutionContext) -> HandlerResult:
    name = str(config["listVar"])
    if name.startswith("vars."):
        name = name[len("vars."):]
    current = scope.get(name)
    if current is None:
        items = []
    elif isinstance(current, list):
        items = list(current)
    else:
        return HandlerResult.failure(
            "type_error", f"variable '{name}' is not a list", retryable=False
        )
    items.append(config.get("value"))
    return HandlerResult.success({name: items})


async def evaluate_handler(config: Mapping[str, Any], scope: Mapping[str, Any], context: ExecutionContext) -> HandlerResult:
    return HandlerResult.success({str(config["saveAs"]): evaluate(config["expression"], scope)})


async def log_handler(config: Mapping[str, Any], scope: Mapping[str, Any], context: ExecutionContext) -> HandlerResult:
    level = str(config.get("level") or "info")
    if context.logger is not None:
        getattr(context.logger, level)("flow_log", message=config.get("message"))
    return HandlerResult.success()


async def assert_handler(config: Mapping[str, Any], scope: Mapping[str, Any], context: ExecutionContext) -> HandlerResult:
    condition = config.get("condition")
    passed = condition if isinstance(condition, bool) else evaluate_condition(condition, scope)
    if passed:
        return HandlerResult.success()
    return HandlerResult.failure(
        ASSERTION_FAILED,
        str(config.get("message") or f"assertion failed: {condition}"),
        retryable=False,
        data={"condition": condition},
    )


BUILTIN_HANDLERS = {
    "wait": (wait_handler, _WAIT_SCHEMA),
    "delay": (wait_handler, _WAIT_SCHEMA),
    "assign": (assign_handler, _ASSIGN_SCHEMA),
    "append": (append_handler, _APPEND_SCHEMA),
    "evaluate": (evaluate_handler, _EVALUATE_SCHEMA),
    "log": (log_handler, _LOG_SCHEMA),
    "assert": (assert_handler, _ASSERT_SCHEMA),
}


def register_builtin_handlers(registry: PluginRegistry, *, replace: bool = False) -> PluginRegistry:
    for kind, (handler, schema) in BUILTIN_HANDLERS.items():
        if registry.has(kind) and not replace:
            continue
        registry.register(kind, handler, config_schema=schema, replace=replace)
    return registry


__all__ = [
    "ASSERTION_FAILED",
    "BUILTIN_HANDLERS",
    "register_builtin_handlers",
    "wait_handler",
    "assign_handler",
    "append_handler",
    "evaluate_handler",
    "log_handler",
    "assert_handler",
]
