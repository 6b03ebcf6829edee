from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from flowkernel.logging import get_logger
from flowkernel.service import events as ev
from flowkernel.service.engine import FlowEngine
from flowkernel.service.errors import DebuggerCommandError, NotFoundError, ServiceError
from flowkernel.service.events import EventBus, RunEvent
from flowkernel.service.expression import UNDEFINED, lookup
from flowkernel.service.scope import Scope
from flowkernel.storage.models import Run, RunStatus

logger = get_logger(__name__)

COMMAND_PREFIX = "debug."
STATE_EVENT = "debug.state"

FORWARDED_EVENTS = frozenset(
    {
        ev.RUN_PAUSED,
        ev.RUN_RESUMED,
        ev.NODE_STARTED,
        ev.NODE_COMPLETED,
        ev.NODE_FAILED,
        ev.NODE_SKIPPED,
        *ev.TERMINAL_EVENTS,
    }
)
# Events after which attached observers get a fresh DebuggerState pushed
REFRESH_EVENTS = frozenset(
    {ev.RUN_PAUSED, ev.RUN_RESUMED, ev.NODE_STARTED, ev.NODE_FAILED, *ev.TERMINAL_EVENTS}
)

Observer = Callable[[Dict[str, Any]], None]


@dataclass
class DebuggerState:
    run_id: str
    attached: bool
    execution: str
    breakpoints: List[str] = field(default_factory=list)
    pause_reason: Optional[str] = None
    current_node_id: Optional[str] = None
    step_mode: str = "none"
    depth: int = 0
    pause_requested: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "status": "attached" if self.attached else "detached",
            "execution": self.execution,
            "breakpoints": [{"nodeId": node_id, "enabled": True} for node_id in self.breakpoints],
            "pauseReason": self.pause_reason,
            "currentNodeId": self.current_node_id,
            "stepMode": self.step_mode,
            "depth": self.depth,
            "pauseRequested": self.pause_requested,
        }


@dataclass
class _Session:
    run_id: str
    attached: bool = True
    last_node_id: Optional[str] = None
    last_pause_reason: Optional[str] = None


class DebuggerController:
    """Command façade over the engine's run kernels.

    Commands that do not fit the run's attach or execution state raise
    :class:`DebuggerCommandError` before touching the kernel. ``handle``
    wraps every operation into the ``{ok, state?, value?}`` response shape.
    """

    def __init__(self, engine: FlowEngine, events: Optional[EventBus] = None) -> None:
        self.engine = engine
        self.events = events or engine.events
        self._lock = threading.RLock()
        self._sessions: Dict[str, _Session] = {}
        self._observers: Dict[Optional[str], List[Observer]] = {}
        self._last_values: Dict[str, Dict[str, Any]] = {}
        # attached sessions whose run the engine no longer holds, oldest first
        self._retired: "OrderedDict[str, None]" = OrderedDict()
        self._retain = engine.settings.max_runs_retained
        self._unsubscribe: Optional[Callable[[], None]] = self.events.subscribe(self._on_event)
        self._unsubscribe_forget: Optional[Callable[[], None]] = self.events.on_forget(self._on_forget)

    def close(self) -> None:
        for unsubscribe in (self._unsubscribe, self._unsubscribe_forget):
            if unsubscribe is not None:
                unsubscribe()
        self._unsubscribe = self._unsubscribe_forget = None
        with self._lock:
            self._sessions.clear()
            self._observers.clear()
            self._last_values.clear()
            self._retired.clear()

    def _drop(self, run_id: str) -> None:
        with self._lock:
            self._sessions.pop(run_id, None)
            self._last_values.pop(run_id, None)
            self._retired.pop(run_id, None)

    def _on_forget(self, run_id: str) -> None:
        """The engine discarded or pruned ``run_id``.

        Detached sessions are dropped at once. Attached ones keep their last
        values for ``getVar`` until more than ``max_runs_retained`` of them
        have piled up.
        """
        with self._lock:
            session = self._sessions.get(run_id)
            if session is None or not session.attached:
                self._drop(run_id)
                return
            self._retired[run_id] = None
            while len(self._retired) > self._retain:
                oldest, _ = self._retired.popitem(last=False)
                self._drop(oldest)

    # ------------------------------------------------------------------
    # Lookups and guards
    # ------------------------------------------------------------------

    def _run(self, run_id: str) -> Run:
        try:
            return self.engine.get_run(run_id)
        except NotFoundError as exc:
            raise DebuggerCommandError(
                f"run '{run_id}' not found",
                status_code=404,
                error_code="not_found",
                detail={"run_id": run_id},
            ) from exc

    def _require_attached(self, run_id: str) -> _Session:
        with self._lock:
            session = self._sessions.get(run_id)
        if session is not None and session.attached:
            return session
        self._run(run_id)
        raise DebuggerCommandError(
            f"debugger is not attached to run '{run_id}'", detail={"run_id": run_id}
        )

    def _kernel(self, run_id: str):
        kernel = self.engine.find_kernel(run_id)
        if kernel is None:
            raise DebuggerCommandError(
                f"run '{run_id}' is no longer executing", detail={"run_id": run_id}
            )
        return kernel

    def _reject(self, command: str, run: Run, needs: str) -> DebuggerCommandError:
        return DebuggerCommandError(
            f"cannot {command}: run '{run.id}' is {run.status.value}, expected {needs}",
            detail={"run_id": run.id, "status": run.status.value, "command": command},
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _build_state(self, run_id: str) -> DebuggerState:
        with self._lock:
            session = self._sessions.get(run_id)
        kernel = self.engine.find_kernel(run_id)
        try:
            run: Optional[Run] = self.engine.get_run(run_id)
        except NotFoundError:
            run = None
        if run is None:
            return DebuggerState(
                run_id=run_id,
                attached=bool(session and session.attached),
                execution="unknown",
                current_node_id=session.last_node_id if session else None,
                pause_reason=session.last_pause_reason if session else None,
            )
        return DebuggerState(
            run_id=run_id,
            attached=bool(session and session.attached),
            execution=run.status.value,
            breakpoints=run.breakpoints.snapshot(),
            pause_reason=run.pause_reason,
            current_node_id=run.current_node_id or (session.last_node_id if session else None),
            step_mode=kernel.step_mode if kernel is not None else "none",
            depth=max(len(run.call_stack) - 1, 0),
            pause_requested=kernel.pause_requested if kernel is not None else False,
        )

    async def get_state(self, run_id: str) -> DebuggerState:
        self._require_attached(run_id)
        return self._build_state(run_id)

    # ------------------------------------------------------------------
    # Attachment
    # ------------------------------------------------------------------

    async def attach(self, run_id: str) -> DebuggerState:
        run = self._run(run_id)
        with self._lock:
            session = self._sessions.get(run_id)
            if session is None:
                session = _Session(run_id=run_id, last_node_id=run.current_node_id)
                self._sessions[run_id] = session
                scope = run.scope
                self._last_values[run_id] = scope.snapshot() if isinstance(scope, Scope) else dict(scope)
            session.attached = True
        logger.info("debugger_attached", run_id=run_id, status=run.status.value)
        state = self._build_state(run_id)
        self._push_state(run_id, state)
        return state

    async def detach(self, run_id: str) -> DebuggerState:
        with self._lock:
            session = self._sessions.get(run_id)
            if session is not None:
                session.attached = False
        if session is None:
            self._run(run_id)
        logger.info("debugger_detached", run_id=run_id)
        state = self._build_state(run_id)
        self._push_state(run_id, state)
        if run_id in self._retired:
            self._drop(run_id)
        return state

    # ------------------------------------------------------------------
    # Execution control
    # ------------------------------------------------------------------

    async def pause(self, run_id: str) -> DebuggerState:
        self._require_attached(run_id)
        kernel = self._kernel(run_id)
        if kernel.status not in (RunStatus.PENDING, RunStatus.RUNNING):
            raise self._reject("pause", kernel.run, "running")
        kernel.pause()
        return self._build_state(run_id)

    async def resume(self, run_id: str) -> DebuggerState:
        self._require_attached(run_id)
        kernel = self._kernel(run_id)
        if kernel.status != RunStatus.PAUSED:
            raise self._reject("resume", kernel.run, "paused")
        kernel.resume()
        return self._build_state(run_id)

    async def step_over(self, run_id: str) -> DebuggerState:
        self._require_attached(run_id)
        kernel = self._kernel(run_id)
        if kernel.status != RunStatus.PAUSED:
            raise self._reject("stepOver", kernel.run, "paused")
        kernel.step_over()
        return self._build_state(run_id)

    # ------------------------------------------------------------------
    # Breakpoints
    # ------------------------------------------------------------------

    async def set_breakpoints(self, run_id: str, node_ids: List[str]) -> DebuggerState:
        self._require_attached(run_id)
        if not isinstance(node_ids, (list, tuple)):
            raise DebuggerCommandError("nodeIds must be a list", detail={"run_id": run_id})
        self._run(run_id).breakpoints.replace(str(node_id) for node_id in node_ids)
        return self._after_breakpoint_change(run_id)

    async def add_breakpoint(self, run_id: str, node_id: str) -> DebuggerState:
        self._require_attached(run_id)
        if not node_id:
            raise DebuggerCommandError("nodeId is required", detail={"run_id": run_id})
        self._run(run_id).breakpoints.add(str(node_id))
        return self._after_breakpoint_change(run_id)

    async def remove_breakpoint(self, run_id: str, node_id: str) -> DebuggerState:
        self._require_attached(run_id)
        if not node_id:
            raise DebuggerCommandError("nodeId is required", detail={"run_id": run_id})
        self._run(run_id).breakpoints.remove(str(node_id))
        return self._after_breakpoint_change(run_id)

    def _after_breakpoint_change(self, run_id: str) -> DebuggerState:
        state = self._build_state(run_id)
        logger.info("debugger_breakpoints_changed", run_id=run_id, breakpoints=state.breakpoints)
        self._push_state(run_id, state)
        return state

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    async def get_var(self, run_id: str, name: str, frame: Optional[int] = None) -> Any:
        self._require_attached(run_id)
        if not name:
            raise DebuggerCommandError("name is required", detail={"run_id": run_id})
        kernel = self.engine.find_kernel(run_id)
        if kernel is not None:
            try:
                return kernel.get_var(name, frame)
            except IndexError as exc:
                raise DebuggerCommandError(str(exc), detail={"run_id": run_id, "frame": frame}) from exc

        parts = name.split(".")
        if parts[0] == "vars" and len(parts) > 1:
            parts = parts[1:]
        try:
            value = lookup(self.engine.get_run(run_id).scope, parts)
        except NotFoundError:
            with self._lock:
                value = lookup(self._last_values.get(run_id, {}), parts)
        return None if value is UNDEFINED else value

    async def set_var(self, run_id: str, name: str, value: Any, frame: Optional[int] = None) -> DebuggerState:
        self._require_attached(run_id)
        if not name:
            raise DebuggerCommandError("name is required", detail={"run_id": run_id})
        kernel = self._kernel(run_id)
        if kernel.status.is_terminal:
            raise self._reject("setVar", kernel.run, "an active run")
        try:
            await kernel.set_var(name, value, frame)
        except IndexError as exc:
            raise DebuggerCommandError(str(exc), detail={"run_id": run_id, "frame": frame}) from exc
        logger.info("debugger_var_set", run_id=run_id, name=name, frame=frame)
        return self._build_state(run_id)

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    def subscribe(self, listener: Observer, run_id: Optional[str] = None) -> Callable[[], None]:
        """Receive forwarded run events and ``debug.state`` pushes.

        A listener bound to a run gets that run's events while a debugger
        session is attached; ``run_id=None`` listens to every attached run.
        """
        with self._lock:
            self._observers.setdefault(run_id, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._observers.get(run_id)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                    if not listeners:
                        self._observers.pop(run_id, None)

        return _unsubscribe

    def _notify(self, run_id: str, message: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._observers.get(run_id, ())) + list(self._observers.get(None, ()))
        for listener in listeners:
            try:
                listener(message)
            except Exception as exc:
                logger.warning("debugger_observer_failed", run_id=run_id, error=str(exc))

    def _push_state(self, run_id: str, state: DebuggerState) -> None:
        self._notify(run_id, {"type": STATE_EVENT, "runId": run_id, "state": state.to_dict()})

    def _on_event(self, event: RunEvent) -> None:
        run_id = event.run_id
        if event.type == ev.VARS_PATCH:
            patch = event.payload.get("patch")
            if isinstance(patch, Mapping) and not event.payload.get("frame"):
                with self._lock:
                    if run_id in self._sessions:
                        self._last_values.setdefault(run_id, {}).update(patch)

        with self._lock:
            session = self._sessions.get(run_id)
            if session is not None:
                node_id = event.payload.get("nodeId")
                if node_id and event.type in (ev.NODE_STARTED, ev.RUN_PAUSED):
                    session.last_node_id = node_id
                if event.type == ev.RUN_PAUSED:
                    session.last_pause_reason = event.payload.get("reason")
            attached = session is not None and session.attached

        if not attached:
            return
        if event.type in FORWARDED_EVENTS:
            self._notify(run_id, event.to_dict())
        if event.type in REFRESH_EVENTS:
            self._push_state(run_id, self._build_state(run_id))

    # ------------------------------------------------------------------
    # RPC entry point
    # ------------------------------------------------------------------

    async def handle(self, command: Mapping[str, Any]) -> Dict[str, Any]:
        """Execute one debugger command and return a response mapping."""
        if not isinstance(command, Mapping):
            return {"ok": False, "error": "command must be an object"}
        raw_type = str(command.get("type") or "")
        op = raw_type[len(COMMAND_PREFIX):] if raw_type.startswith(COMMAND_PREFIX) else raw_type

        try:
            if op == "listRuns":
                runs = self.engine.list_runs(flow_id=command.get("flowId"))
                return {"ok": True, "value": [run.to_summary() for run in runs]}

            run_id = command.get("runId")
            if op not in _STATE_COMMANDS and op not in _VALUE_COMMANDS:
                return {"ok": False, "error": f"unknown debug command: {raw_type or '<missing>'}"}
            if not run_id:
                return {"ok": False, "error": "runId is required"}
            run_id = str(run_id)

            if op == "getVar":
                value = await self.get_var(run_id, command.get("name") or "", command.get("frame"))
                return {"ok": True, "value": value}

            if op == "attach":
                state = await self.attach(run_id)
            elif op == "detach":
                state = await self.detach(run_id)
            elif op == "pause":
                state = await self.pause(run_id)
            elif op == "resume":
                state = await self.resume(run_id)
            elif op == "stepOver":
                state = await self.step_over(run_id)
            elif op == "setBreakpoints":
                state = await self.set_breakpoints(run_id, command.get("nodeIds") or [])
            elif op == "addBreakpoint":
                state = await self.add_breakpoint(run_id, command.get("nodeId") or "")
            elif op == "removeBreakpoint":
                state = await self.remove_breakpoint(run_id, command.get("nodeId") or "")
            elif op == "setVar":
                state = await self.set_var(
                    run_id, command.get("name") or "", command.get("value"), command.get("frame")
                )
            else:
                state = await self.get_state(run_id)
            return {"ok": True, "state": state.to_dict()}
        except ServiceError as exc:
            logger.info("debugger_command_rejected", command=raw_type, error=exc.message)
            return {"ok": False, "error": exc.message}
        except Exception as exc:
            logger.error(
                "debugger_command_failed",
                command=raw_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return {"ok": False, "error": "internal error"}


_STATE_COMMANDS = frozenset(
    {
        "attach",
        "detach",
        "pause",
        "resume",
        "stepOver",
        "setBreakpoints",
        "addBreakpoint",
        "removeBreakpoint",
        "getState",
        "setVar",
    }
)
_VALUE_COMMANDS = frozenset({"getVar"})


__all__ = ["DebuggerController", "DebuggerState", "STATE_EVENT", "FORWARDED_EVENTS"]
