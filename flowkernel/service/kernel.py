from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from types import MappingProxyType
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    FrozenSet,
    Mapping,
    Optional,
)

from flowkernel.config import Settings, get_settings
from flowkernel.logging import get_logger, log_run_trace
from flowkernel.service import events as ev
from flowkernel.service.errors import (
    CALL_DEPTH_EXCEEDED,
    HANDLER_ERROR,
    HANDLER_FAILURE,
    LOOP_LIMIT_EXCEEDED,
    PROVIDER_UNAVAILABLE,
    STEP_LIMIT_EXCEEDED,
    SUBFLOW_NOT_FOUND,
    TIMEOUT,
    UNKNOWN_NODE_KIND,
    VALIDATION_ERROR,
    LoopLimitExceeded,
    UnknownNodeKind,
)
from flowkernel.service.events import EventBus
from flowkernel.service.expression import (
    UNDEFINED,
    evaluate_condition,
    is_truthy,
    lookup,
    resolve_templates,
)
from flowkernel.service.registry import (
    CancellationToken,
    ExecutionContext,
    HandlerResult,
    PluginRegistry,
)
from flowkernel.service.scope import Scope
from flowkernel.service.traversal import find_edge, find_next_node
from flowkernel.storage.models import (
    DEFAULT_LABEL,
    FALSE_LABEL,
    LOOP_EXIT_LABEL,
    ON_ERROR_LABEL,
    TRUE_LABEL,
    CallFrame,
    ErrorInfo,
    Flow,
    Node,
    Run,
    RunStatus,
    TraceEntry,
)

DEFAULT_ITEM_VAR = "item"

# Failures that no node policy may retry, continue past or reroute
FATAL_CODES: FrozenSet[str] = frozenset({UNKNOWN_NODE_KIND, LOOP_LIMIT_EXCEEDED})

_ON_ERROR_CHOICES = ("stop", "continue", "retry")
_BACKOFF_CHOICES = ("none", "linear", "exp")

FlowResolver = Callable[[str], Optional[Flow]]


def _pick(values: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in values and values[key] is not None:
            return values[key]
    return default


@dataclass(frozen=True)
class FailurePolicy:
    """How a node reacts to failure, merged from the flow default and the node."""

    on_error: str = "stop"
    retries: int = 0
    backoff_ms: int = 0
    backoff: str = "exp"
    max_backoff_ms: int = 0
    fallback: str = "stop"
    retry_on: Optional[FrozenSet[str]] = None
    timeout_ms: int = 15000

    @classmethod
    def resolve(cls, *layers: Optional[Mapping[str, Any]], settings: Settings) -> "FailurePolicy":
        merged: Dict[str, Any] = {}
        for layer in layers:
            if layer:
                merged.update(layer)

        on_error = str(_pick(merged, "onError", "on_error", default="stop"))
        if on_error not in _ON_ERROR_CHOICES:
            raise ValueError(f"onError must be one of {', '.join(_ON_ERROR_CHOICES)}")
        backoff = str(_pick(merged, "backoff", default="exp"))
        if backoff not in _BACKOFF_CHOICES:
            raise ValueError(f"backoff must be one of {', '.join(_BACKOFF_CHOICES)}")
        fallback = str(_pick(merged, "fallback", default="stop"))
        if fallback not in ("stop", "continue"):
            raise ValueError("fallback must be 'stop' or 'continue'")

        retries = int(_pick(merged, "retries", "maxRetries", "max_retries", default=settings.default_node_retries))
        timeout_ms = int(_pick(merged, "timeoutMs", "timeout_ms", default=settings.default_node_timeout_ms))
        if timeout_ms <= 0:
            timeout_ms = settings.default_node_timeout_ms
        retry_on = _pick(merged, "retryOn", "retry_on")

        return cls(
            on_error=on_error,
            retries=max(0, min(retries, settings.max_retries_hard_cap)),
            backoff_ms=max(0, int(_pick(merged, "backoffMs", "backoff_ms", default=settings.default_backoff_ms))),
            backoff=backoff,
            max_backoff_ms=max(0, int(_pick(merged, "maxBackoffMs", "max_backoff_ms", default=settings.max_backoff_ms))),
            fallback=fallback,
            retry_on=frozenset(str(code) for code in retry_on) if retry_on else None,
            timeout_ms=min(timeout_ms, settings.max_node_timeout_ms),
        )

    def delay_ms(self, retry_number: int) -> int:
        if self.backoff == "none":
            delay = self.backoff_ms
        elif self.backoff == "linear":
            delay = self.backoff_ms * retry_number
        else:
            delay = self.backoff_ms * (2 ** (retry_number - 1))
        return min(delay, self.max_backoff_ms) if self.max_backoff_ms else delay

    def allows_retry(self, error: ErrorInfo, attempt: int) -> bool:
        if self.on_error != "retry" or not error.retryable:
            return False
        if self.retry_on is not None and error.code not in self.retry_on:
            return False
        return attempt <= self.retries


@dataclass
class Outcome:
    """Result of a node attempt, a node dispatch, or a whole frame."""

    status: str  # completed | failed | cancelled
    label: Optional[str] = None
    error: Optional[ErrorInfo] = None
    node_id: Optional[str] = None

    @classmethod
    def ok(cls, label: Optional[str] = DEFAULT_LABEL) -> "Outcome":
        return cls(status="completed", label=label)

    @classmethod
    def fail(cls, error: ErrorInfo, node_id: Optional[str] = None) -> "Outcome":
        return cls(status="failed", error=error, node_id=node_id)

    @classmethod
    def cancel(cls) -> "Outcome":
        return cls(status="cancelled")


def _invalid(message: str, **data: Any) -> Outcome:
    return Outcome.fail(ErrorInfo(code=VALIDATION_ERROR, message=message, retryable=False, data=data or None))


async def _iterate(source: Any) -> AsyncIterator[Any]:
    if inspect.isawaitable(source):
        source = await source
    if source is None:
        return
    if hasattr(source, "__aiter__"):
        async for item in source:
            yield item
    else:
        for item in source:
            yield item


class RunKernel:
    """Sequential graph walker for one Run.

    The kernel owns the run's status, scope writes, trace and event
    emission. Debugger operations reach it through ``pause``, ``resume``,
    ``step_over``, ``cancel``, ``get_var`` and ``set_var``; the breakpoint
    set lives on the Run and is read right before every dispatch.
    """

    def __init__(
        self,
        run: Run,
        *,
        registry: PluginRegistry,
        events: EventBus,
        settings: Optional[Settings] = None,
        flow_resolver: Optional[FlowResolver] = None,
        element_provider: Any = None,
        pause_on_start: bool = False,
    ) -> None:
        self.run = run
        self.registry = registry
        self.events = events
        self.settings = settings or get_settings()
        self.flow_resolver = flow_resolver
        self.element_provider = element_provider
        self.cancel_token = CancellationToken()
        self.task: Optional[asyncio.Task] = None
        self.logger = get_logger(__name__).bind(run_id=run.id, flow_id=run.flow.id)
        self._scope_lock = asyncio.Lock()
        self._resume_event = asyncio.Event()
        self._pause_on_start = pause_on_start
        self._pause_requested = False
        self._step_armed = False

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    @property
    def step_mode(self) -> str:
        return "stepOver" if self._step_armed else "none"

    def start(self) -> asyncio.Task:
        if self.task is None:
            self.task = asyncio.ensure_future(self.execute())
        return self.task

    async def wait(self) -> Run:
        if self.task is not None:
            await asyncio.shield(self.task)
        return self.run

    def pause(self) -> bool:
        """Request a pause before the next dispatch."""
        if self.run.status not in (RunStatus.PENDING, RunStatus.RUNNING):
            return False
        self._pause_requested = True
        return True

    def resume(self) -> bool:
        if self.run.status != RunStatus.PAUSED:
            return False
        self._step_armed = False
        self._release("resume")
        return True

    def step_over(self) -> bool:
        """Let exactly one dispatch happen, then pause before the next node."""
        if self.run.status != RunStatus.PAUSED:
            return False
        self._step_armed = True
        self._release("step")
        return True

    def cancel(self, reason: Optional[str] = None) -> bool:
        if self.run.status.is_terminal:
            return False
        self.logger.info("run_cancel_requested", reason=reason, status=self.run.status.value)
        self.cancel_token.cancel(reason or "cancelled")
        self._resume_event.set()
        if self.run.status == RunStatus.PENDING and self.task is None:
            self._finalize(Outcome.cancel())
        return True

    def get_var(self, name: str, frame: Optional[int] = None) -> Any:
        scope = self._frame_scope(frame)
        parts = name.split(".")
        if parts[0] == "vars" and len(parts) > 1:
            parts = parts[1:]
        value = lookup(scope, parts)
        return None if value is UNDEFINED else value

    async def set_var(self, name: str, value: Any, frame: Optional[int] = None) -> None:
        scope = self._frame_scope(frame)
        async with self._scope_lock:
            if frame is None or frame == 0 or not isinstance(scope, Scope):
                scope[name] = value
            else:
                scope.set_local(name, value)
        self._emit(ev.VARS_PATCH, patch={name: value}, frame=frame or 0, source="debugger")

    def _frame_scope(self, frame: Optional[int]) -> Any:
        if frame is None:
            return self.run.scope
        stack = self.run.call_stack
        if isinstance(frame, bool) or not isinstance(frame, int) or not 0 <= frame < max(len(stack), 1):
            raise IndexError(f"frame {frame} is out of range")
        if not stack:
            return self.run.scope
        return stack[frame].scope

    def _release(self, mode: str) -> None:
        self._pause_requested = False
        self.run.status = RunStatus.RUNNING
        self.run.pause_reason = None
        self._emit(ev.RUN_RESUMED, nodeId=self.run.current_node_id, mode=mode)
        self._resume_event.set()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self) -> Run:
        run = self.run
        if run.status != RunStatus.PENDING:
            return run
        if self.cancel_token.cancelled:
            self._finalize(Outcome.cancel())
            return run

        run.status = RunStatus.RUNNING
        run.started_at = datetime.now(timezone.utc)
        self._emit(ev.RUN_STARTED, flowId=run.flow.id)
        self.logger.info("run_started", breakpoints=run.breakpoints.snapshot())

        root = CallFrame(flow_id=run.flow.id, invoked_by=None, scope=run.scope)
        run.call_stack.append(root)
        try:
            outcome = await self._run_frame(run.flow, run.scope, root)
        except asyncio.CancelledError:
            self.cancel_token.cancel("task_cancelled")
            self._finalize(Outcome.cancel())
            raise
        except Exception as exc:
            self.logger.exception("run_kernel_error", error_type=type(exc).__name__, error=str(exc))
            outcome = Outcome.fail(
                ErrorInfo(code="internal", message=f"kernel error: {exc}", retryable=False)
            )
        self._finalize(outcome)
        return run

    def _finalize(self, outcome: Outcome) -> None:
        run = self.run
        if run.status.is_terminal:
            return
        run.call_stack.clear()
        run.finished_at = datetime.now(timezone.utc)
        run.pause_reason = None
        took_ms = (
            int((run.finished_at - run.started_at).total_seconds() * 1000) if run.started_at else 0
        )
        if self.cancel_token.cancelled or outcome.status == "cancelled":
            run.status = RunStatus.CANCELLED
            self._emit(ev.RUN_CANCELLED, reason=self.cancel_token.reason, tookMs=took_ms)
        elif outcome.status == "failed":
            run.status = RunStatus.FAILED
            run.error = outcome.error
            self._emit(
                ev.RUN_FAILED,
                nodeId=outcome.node_id,
                error=outcome.error.to_dict() if outcome.error else None,
                tookMs=took_ms,
            )
        else:
            run.status = RunStatus.COMPLETED
            run.outputs = run.scope.snapshot() if isinstance(run.scope, Scope) else dict(run.scope)
            self._emit(ev.RUN_COMPLETED, outputs=run.outputs, tookMs=took_ms)
        self._resume_event.set()
        self.logger.info("run_finished", status=run.status.value, took_ms=took_ms)
        log_run_trace(run.id, [entry.to_dict() for entry in run.trace], logger=self.logger)

    async def _run_frame(self, flow: Flow, scope: Scope, frame: CallFrame) -> Outcome:
        depth = len(self.run.call_stack) - 1
        node = flow.entry_node()
        if node is None:
            return _invalid(f"flow '{flow.id}' has no entry node", flowId=flow.id)

        steps = 0
        while node is not None:
            if self.cancel_token.cancelled:
                return Outcome.cancel()
            steps += 1
            if steps > self.settings.max_steps_per_frame:
                return Outcome.fail(
                    ErrorInfo(
                        code=STEP_LIMIT_EXCEEDED,
                        message=f"frame for flow '{flow.id}' exceeded {self.settings.max_steps_per_frame} steps",
                        retryable=False,
                    ),
                    node_id=node.id,
                )

            frame.current_node_id = node.id
            self.run.current_node_id = node.id
            await self._checkpoint(node, depth)
            if self.cancel_token.cancelled:
                return Outcome.cancel()

            outcome = await self._dispatch(flow, node, scope, depth)
            if outcome.status != "completed":
                if outcome.node_id is None:
                    outcome.node_id = node.id
                return outcome

            fallback = (DEFAULT_LABEL,) if outcome.label == LOOP_EXIT_LABEL else ()
            node = find_next_node(flow, node.id, outcome.label or DEFAULT_LABEL, fallback=fallback)
        return Outcome.ok(None)

    async def _checkpoint(self, node: Node, depth: int) -> None:
        """Pause point evaluated immediately before ``node`` is dispatched."""
        reason = None
        if self._pause_on_start:
            self._pause_on_start = False
            reason = "start"
        elif self._step_armed:
            self._step_armed = False
            reason = "step"
        elif self._pause_requested:
            self._pause_requested = False
            reason = "command"
        elif self.run.breakpoints.contains(node.id):
            reason = "breakpoint"
        if reason is None:
            return

        self._resume_event.clear()
        self.run.status = RunStatus.PAUSED
        self.run.pause_reason = reason
        self._emit(ev.RUN_PAUSED, reason=reason, nodeId=node.id, depth=depth)
        self.logger.info("run_paused", reason=reason, node_id=node.id, depth=depth)
        await self._resume_event.wait()

    async def _dispatch(self, flow: Flow, node: Node, scope: Scope, depth: int) -> Outcome:
        if node.disabled:
            self._emit(ev.NODE_SKIPPED, nodeId=node.id, kind=node.kind, depth=depth, reason="disabled")
            self._trace(node, "skipped", depth, label=DEFAULT_LABEL)
            return Outcome.ok(DEFAULT_LABEL)

        try:
            policy = FailurePolicy.resolve(flow.policy, node.policy, settings=self.settings)
        except (TypeError, ValueError) as exc:
            error = ErrorInfo(code=VALIDATION_ERROR, message=f"invalid policy: {exc}", retryable=False)
            self._emit(ev.NODE_STARTED, nodeId=node.id, kind=node.kind, attempt=1, depth=depth)
            self._trace(node, "failed", depth, error=error)
            self._emit(ev.NODE_FAILED, nodeId=node.id, attempt=1, error=error.to_dict(), decision="stop")
            return Outcome.fail(error, node_id=node.id)

        attempt = 0
        while True:
            attempt += 1
            self._emit(ev.NODE_STARTED, nodeId=node.id, kind=node.kind, attempt=attempt, depth=depth)
            started = time.monotonic()
            result = await self._attempt(flow, node, scope, depth, attempt, policy)
            took_ms = int((time.monotonic() - started) * 1000)

            if result.status == "cancelled":
                self._trace(node, "cancelled", depth, attempt=attempt)
                return result
            if result.status == "completed":
                self._trace(node, "completed", depth, attempt=attempt, label=result.label)
                self._emit(
                    ev.NODE_COMPLETED,
                    nodeId=node.id,
                    label=result.label,
                    attempt=attempt,
                    tookMs=took_ms,
                    depth=depth,
                )
                return result

            error = result.error
            decision = self._decide(flow, node, policy, error, attempt)
            self._trace(node, "failed", depth, attempt=attempt, error=error)
            self._emit(
                ev.NODE_FAILED,
                nodeId=node.id,
                attempt=attempt,
                error=error.to_dict(),
                decision=decision,
                tookMs=took_ms,
                depth=depth,
            )
            self.logger.warning(
                "node_failed",
                node_id=node.id,
                kind=node.kind,
                attempt=attempt,
                error_code=error.code,
                error=error.message,
                decision=decision,
            )

            if decision == "retry":
                delay_ms = policy.delay_ms(attempt)
                if delay_ms > 0:
                    self.logger.info("node_backoff", node_id=node.id, attempt=attempt, backoff_ms=delay_ms)
                if await self.cancel_token.sleep(delay_ms / 1000.0) or self.cancel_token.cancelled:
                    return Outcome.cancel()
                continue
            if decision == "continue":
                return Outcome.ok(DEFAULT_LABEL)
            if decision == "onError":
                return Outcome.ok(ON_ERROR_LABEL)
            return Outcome.fail(error, node_id=node.id)

    def _decide(
        self, flow: Flow, node: Node, policy: FailurePolicy, error: ErrorInfo, attempt: int
    ) -> str:
        if error.code in FATAL_CODES:
            return "stop"
        if policy.allows_retry(error, attempt):
            return "retry"
        action = policy.fallback if policy.on_error == "retry" else policy.on_error
        if action == "continue":
            return "continue"
        if find_edge(flow, node.id, ON_ERROR_LABEL) is not None:
            return "onError"
        return "stop"

    async def _attempt(
        self,
        flow: Flow,
        node: Node,
        scope: Scope,
        depth: int,
        attempt: int,
        policy: FailurePolicy,
    ) -> Outcome:
        if node.kind == "if":
            return self._run_if(node, scope)
        if node.kind == "foreach":
            return await self._run_foreach(flow, node, scope, depth)
        if node.kind == "loopElements":
            return await self._run_loop_elements(flow, node, scope, depth, attempt)
        if node.kind == "while":
            return await self._run_while(flow, node, scope, depth)
        if node.kind == "executeFlow":
            return await self._run_execute_flow(flow, node, scope, depth)
        return await self._run_primitive(flow, node, scope, depth, attempt, policy)

    # ------------------------------------------------------------------
    # Primitive nodes
    # ------------------------------------------------------------------

    def _context(self, flow: Flow, node: Node, scope: Scope, depth: int, attempt: int) -> ExecutionContext:
        return ExecutionContext(
            run_id=self.run.id,
            flow_id=flow.id,
            node_id=node.id,
            cancel_token=self.cancel_token,
            attempt=attempt,
            depth=depth,
            logger=self.logger.bind(node_id=node.id, attempt=attempt),
            _subexecute=partial(self._subexecute, flow, node, scope, depth),
        )

    async def _run_primitive(
        self,
        flow: Flow,
        node: Node,
        scope: Scope,
        depth: int,
        attempt: int,
        policy: FailurePolicy,
    ) -> Outcome:
        if not self.registry.has(node.kind):
            return Outcome.fail(UnknownNodeKind(node.kind).to_info(), node_id=node.id)

        config = resolve_templates(node.config, scope)
        violations = self.registry.validate_config(node.kind, config)
        if violations:
            return _invalid(f"config for '{node.kind}' is invalid: {violations[0]}", violations=violations)

        context = self._context(flow, node, scope, depth, attempt)
        view = MappingProxyType(scope.snapshot())
        task = asyncio.ensure_future(self.registry.invoke(node.kind, config, view, context))
        result = await self._settle(node, task, policy.timeout_ms)
        if isinstance(result, Outcome):
            return result
        if not result.ok:
            return Outcome.fail(result.error or ErrorInfo(code=HANDLER_ERROR, message="handler failed"))
        if result.values:
            await self._merge(scope, result.values, node.id)
        return Outcome.ok(DEFAULT_LABEL)

    async def _settle(self, node: Node, task: asyncio.Future, timeout_ms: int) -> HandlerResult | Outcome:
        """Wait for a handler task under its timeout and the run's cancellation token."""
        cancel_wait = asyncio.ensure_future(self.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=timeout_ms / 1000.0,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not cancel_wait.done():
                cancel_wait.cancel()

        if task not in done:
            if cancel_wait in done:
                grace = self.settings.cancel_grace_ms / 1000.0
                settled, _ = await asyncio.wait({task}, timeout=grace)
                if not settled:
                    self.logger.warning("handler_cancel_grace_expired", node_id=node.id, grace_ms=self.settings.cancel_grace_ms)
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                return Outcome.cancel()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self.logger.warning("node_timeout", node_id=node.id, timeout_ms=timeout_ms)
            return Outcome.fail(
                ErrorInfo(code=TIMEOUT, message=f"node '{node.id}' timed out after {timeout_ms}ms")
            )

        if task.cancelled():
            if self.cancel_token.cancelled:
                return Outcome.cancel()
            return Outcome.fail(ErrorInfo(code=HANDLER_ERROR, message="handler was cancelled"))
        exc = task.exception()
        if exc is not None:
            if isinstance(exc, UnknownNodeKind):
                return Outcome.fail(exc.to_info())
            self.logger.warning(
                "handler_raised", node_id=node.id, error_type=type(exc).__name__, error=str(exc)
            )
            return Outcome.fail(
                ErrorInfo(
                    code=HANDLER_ERROR,
                    message=str(exc) or type(exc).__name__,
                    data={"type": type(exc).__name__},
                )
            )
        if self.cancel_token.cancelled:
            return Outcome.cancel()
        return task.result()

    async def _merge(self, scope: Scope, values: Mapping[str, Any], node_id: str) -> None:
        async with self._scope_lock:
            for name, value in values.items():
                scope[name] = value
        self._emit(ev.VARS_PATCH, nodeId=node_id, patch=dict(values), source="node")

    # ------------------------------------------------------------------
    # Control-flow nodes
    # ------------------------------------------------------------------

    def _condition(self, condition: Any, scope: Scope) -> bool:
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, str):
            return evaluate_condition(condition, scope)
        if isinstance(condition, Mapping):
            if "expression" in condition:
                return evaluate_condition(condition["expression"], scope)
            if "var" in condition:
                parts = str(condition["var"]).split(".")
                if parts[0] == "vars" and len(parts) > 1:
                    parts = parts[1:]
                value = lookup(scope, parts)
                if "equals" in condition:
                    return value is not UNDEFINED and value == condition["equals"]
                return is_truthy(value)
        self.logger.warning("condition_unrecognized", condition_type=type(condition).__name__)
        return False

    def _run_if(self, node: Node, scope: Scope) -> Outcome:
        config = node.config
        branches = config.get("branches")
        if isinstance(branches, list) and branches:
            for branch in branches:
                if not isinstance(branch, Mapping):
                    continue
                if self._condition(branch.get("condition", branch.get("expr")), scope):
                    return Outcome.ok(str(branch.get("label") or branch.get("id") or TRUE_LABEL))
            else_label = config.get("else")
            return Outcome.ok(str(else_label) if else_label else FALSE_LABEL)
        return Outcome.ok(TRUE_LABEL if self._condition(config.get("condition"), scope) else FALSE_LABEL)

    def _lookup_flow(self, flow: Flow, ref: Any) -> Optional[Flow]:
        if not ref:
            return None
        ref = str(ref)
        found = flow.subflows.get(ref) or self.run.flow.subflows.get(ref)
        if found is None and self.flow_resolver is not None:
            found = self.flow_resolver(ref)
        return found

    def _missing_flow(self, ref: Any) -> Outcome:
        return Outcome.fail(
            ErrorInfo(
                code=SUBFLOW_NOT_FOUND,
                message=f"subflow '{ref}' not found",
                retryable=False,
                data={"flowId": ref},
            )
        )

    async def _call_subflow(
        self, subflow: Flow, child: Scope, node: Node, *, shared: bool
    ) -> Outcome:
        if len(self.run.call_stack) >= self.settings.max_call_depth:
            return Outcome.fail(
                ErrorInfo(
                    code=CALL_DEPTH_EXCEEDED,
                    message=f"call depth limit {self.settings.max_call_depth} reached",
                    retryable=False,
                )
            )
        frame = CallFrame(flow_id=subflow.id, invoked_by=node.id, scope=child, shared=shared)
        self.run.call_stack.append(frame)
        try:
            outcome = await self._run_frame(subflow, child, frame)
        finally:
            if self.run.call_stack and self.run.call_stack[-1] is frame:
                self.run.call_stack.pop()
            self.run.current_node_id = node.id

        if outcome.status == "completed":
            return Outcome.ok(DEFAULT_LABEL)
        if outcome.status == "cancelled":
            return outcome
        cause = outcome.error or ErrorInfo(code=HANDLER_ERROR, message="subflow failed")
        return Outcome.fail(
            ErrorInfo(
                code=HANDLER_FAILURE,
                message=f"subflow '{subflow.id}' failed at node '{outcome.node_id}': {cause.message}",
                retryable=cause.retryable,
                data={"flowId": subflow.id, "nodeId": outcome.node_id},
                cause=cause,
            )
        )

    async def _run_foreach(self, flow: Flow, node: Node, scope: Scope, depth: int) -> Outcome:
        config = node.config
        list_var = config.get("listVar")
        if not list_var:
            return _invalid(f"foreach node '{node.id}' requires listVar")
        subflow = self._lookup_flow(flow, config.get("subflowId"))
        if subflow is None:
            return self._missing_flow(config.get("subflowId"))
        item_var = str(config.get("itemVar") or DEFAULT_ITEM_VAR)
        index_var = config.get("indexVar")

        parts = str(list_var).split(".")
        if parts[0] == "vars" and len(parts) > 1:
            parts = parts[1:]
        items = lookup(scope, parts)
        if items is UNDEFINED or items is None:
            items = []
        elif not isinstance(items, (list, tuple)):
            self.logger.warning("foreach_not_a_list", node_id=node.id, list_var=list_var, value_type=type(items).__name__)
            items = []

        for index, item in enumerate(list(items)):
            if self.cancel_token.cancelled:
                return Outcome.cancel()
            bindings = {item_var: item}
            if index_var:
                bindings[str(index_var)] = index
            child = Scope(bindings, parent=scope, shared=True)
            outcome = await self._call_subflow(subflow, child, node, shared=True)
            if outcome.status != "completed":
                return outcome
        return Outcome.ok(LOOP_EXIT_LABEL)

    async def _run_loop_elements(
        self, flow: Flow, node: Node, scope: Scope, depth: int, attempt: int
    ) -> Outcome:
        if self.element_provider is None:
            return Outcome.fail(
                ErrorInfo(
                    code=PROVIDER_UNAVAILABLE,
                    message="no live-collection provider is configured for loopElements",
                    retryable=False,
                )
            )
        config = resolve_templates(node.config, scope)
        selector = config.get("selector")
        if not selector:
            return _invalid(f"loopElements node '{node.id}' requires selector")
        subflow = self._lookup_flow(flow, config.get("subflowId"))
        if subflow is None:
            return self._missing_flow(config.get("subflowId"))
        item_var = str(config.get("itemVar") or DEFAULT_ITEM_VAR)
        save_as = config.get("saveAs")

        context = self._context(flow, node, scope, depth, attempt)
        collected = []
        try:
            async for item in _iterate(self.element_provider.enumerate(selector, context)):
                if self.cancel_token.cancelled:
                    return Outcome.cancel()
                collected.append(item)
                child = Scope({item_var: item}, parent=scope, shared=True)
                outcome = await self._call_subflow(subflow, child, node, shared=True)
                if outcome.status != "completed":
                    return outcome
        except Exception as exc:
            self.logger.warning("element_enumeration_failed", node_id=node.id, selector=selector, error=str(exc))
            return Outcome.fail(ErrorInfo(code=HANDLER_ERROR, message=f"enumeration failed: {exc}"))

        if save_as:
            await self._merge(scope, {str(save_as): collected}, node.id)
        return Outcome.ok(LOOP_EXIT_LABEL)

    async def _run_while(self, flow: Flow, node: Node, scope: Scope, depth: int) -> Outcome:
        config = node.config
        raw_bound = config.get("maxIterations")
        try:
            if isinstance(raw_bound, bool):
                raise ValueError("boolean bound")
            bound = int(raw_bound)
        except (TypeError, ValueError):
            bound = 0
        if bound <= 0:
            return _invalid(
                f"while node '{node.id}' requires a positive maxIterations", maxIterations=raw_bound
            )
        bound = min(bound, self.settings.max_loop_iterations)
        subflow = self._lookup_flow(flow, config.get("subflowId"))
        if subflow is None:
            return self._missing_flow(config.get("subflowId"))

        iterations = 0
        condition = config.get("condition")
        while self._condition(condition, scope):
            if iterations >= bound:
                return Outcome.fail(LoopLimitExceeded(node.id, bound).info)
            if self.cancel_token.cancelled:
                return Outcome.cancel()
            child = Scope(parent=scope, shared=True)
            outcome = await self._call_subflow(subflow, child, node, shared=True)
            if outcome.status != "completed":
                return outcome
            iterations += 1
        return Outcome.ok(LOOP_EXIT_LABEL)

    async def _run_execute_flow(self, flow: Flow, node: Node, scope: Scope, depth: int) -> Outcome:
        config = resolve_templates(node.config, scope)
        target = self._lookup_flow(flow, config.get("flowId"))
        if target is None:
            return self._missing_flow(config.get("flowId"))
        args = config.get("args") or {}
        if not isinstance(args, Mapping):
            return _invalid(f"executeFlow node '{node.id}' args must be an object")
        inline = config.get("inline", True)
        outcome, _ = await self._invoke_flow(
            target, node, scope, args=args, inline=bool(inline), returns=config.get("returns")
        )
        return outcome

    async def _invoke_flow(
        self,
        target: Flow,
        node: Node,
        scope: Scope,
        *,
        args: Mapping[str, Any],
        inline: bool,
        returns: Any = None,
    ) -> tuple[Outcome, Scope]:
        if inline:
            child = Scope(parent=scope, shared=True)
            async with self._scope_lock:
                for name, value in target.variables.items():
                    if name not in child:
                        child[name] = value
                for name, value in args.items():
                    child[name] = value
        else:
            child = Scope(dict(args), parent=scope, shared=False)
            for name, value in target.variables.items():
                if name not in args:
                    child.set_local(name, value)

        outcome = await self._call_subflow(target, child, node, shared=inline)
        if outcome.status == "completed" and not inline and returns:
            bindings = self._return_bindings(returns)
            values = {
                parent_name: child[child_name]
                for parent_name, child_name in bindings.items()
                if child_name in child
            }
            if values:
                await self._merge(scope, values, node.id)
        return outcome, child

    @staticmethod
    def _return_bindings(returns: Any) -> Dict[str, str]:
        if isinstance(returns, str):
            return {returns: returns}
        if isinstance(returns, Mapping):
            return {str(parent): str(child) for parent, child in returns.items()}
        if isinstance(returns, (list, tuple)):
            return {str(name): str(name) for name in returns}
        return {}

    async def _subexecute(
        self,
        flow: Flow,
        node: Node,
        scope: Scope,
        depth: int,
        flow_id: str,
        *,
        args: Dict[str, Any],
        inline: bool,
    ) -> HandlerResult:
        target = self._lookup_flow(flow, flow_id)
        if target is None:
            return HandlerResult(status="failure", error=self._missing_flow(flow_id).error)
        outcome, child = await self._invoke_flow(target, node, scope, args=args, inline=inline)
        if outcome.status == "completed":
            return HandlerResult.success(child.local_snapshot())
        if outcome.status == "cancelled":
            return HandlerResult.failure("cancelled", "run was cancelled", retryable=False)
        return HandlerResult(status="failure", error=outcome.error)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _emit(self, event_type: str, **payload: Any) -> None:
        self.events.emit(self.run.id, event_type, **payload)

    def _trace(
        self,
        node: Node,
        outcome: str,
        depth: int,
        *,
        attempt: int = 1,
        label: Optional[str] = None,
        error: Optional[ErrorInfo] = None,
    ) -> None:
        self.run.trace.append(
            TraceEntry(
                node_id=node.id,
                outcome=outcome,
                depth=depth,
                attempt=attempt,
                label=label,
                error=error,
            )
        )


__all__ = ["FailurePolicy", "Outcome", "RunKernel", "FATAL_CODES", "DEFAULT_ITEM_VAR"]
