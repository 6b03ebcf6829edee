from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from flowkernel.api.schemas import (
    DebuggerCommand,
    DebuggerResponse,
    Envelope,
    FlowListResponse,
    FlowRequest,
    FlowSummary,
    RunCancelRequest,
    RunListResponse,
    RunRequest,
)
from flowkernel.logging import get_logger, sanitize_run_trace
from flowkernel.service.debugger import STATE_EVENT
from flowkernel.service.errors import BadRequestError, NotFoundError, ValidationError
from flowkernel.service.legacy import flow_to_steps, steps_to_flow
from flowkernel.service.runtime import get_runtime
from flowkernel.storage.models import Flow, Run, RunStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Bound on queued push frames per WebSocket; on overflow the backlog is
# replaced by one resync marker
WS_QUEUE_MAXSIZE = 1000


def _enqueue_frame(queue: asyncio.Queue, message: Dict[str, Any]) -> None:
    """Queue an outgoing push frame without ever blocking the event bus.

    A full queue is drained and a ``debug.state`` frame flagged ``resync`` is
    sent in its place, so the client knows events were lost and should poll
    ``debug.getState``. Frames that are delivered keep their order.
    """
    if queue.full():
        dropped = 0
        while not queue.empty():
            queue.get_nowait()
            dropped += 1
        logger.warning("debugger_ws_backlog_dropped", run_id=message.get("runId"), dropped=dropped)
        queue.put_nowait({"type": STATE_EVENT, "runId": message.get("runId"), "resync": True, "dropped": dropped})
    queue.put_nowait(message)


def _flow_summary(flow: Flow) -> FlowSummary:
    return FlowSummary(
        id=flow.id,
        name=flow.name,
        version=flow.version,
        node_count=len(flow.nodes),
        edge_count=len(flow.edges),
        subflows=sorted(flow.subflows),
    )


def _run_detail(run: Run) -> Dict[str, Any]:
    detail = run.to_summary()
    detail["trace"] = sanitize_run_trace([entry.to_dict() for entry in run.trace])
    detail["outputs"] = run.outputs
    return detail


# ----------------------------------------------------------------------
# Flows
# ----------------------------------------------------------------------


@router.post("/flows", response_model=Envelope, status_code=201, tags=["flows"])
async def create_flow(body: FlowRequest):
    runtime = get_runtime()
    try:
        if body.steps is not None:
            subflows = {key: Flow.from_dict({"id": key, **sub}) for key, sub in body.subflows.items()}
            flow = steps_to_flow(
                body.id, body.steps, variables=body.variables, name=body.name, subflows=subflows
            )
        else:
            flow = Flow.from_dict(body.to_flow_payload())
    except (KeyError, TypeError, ValueError) as exc:
        raise BadRequestError(f"malformed flow: {exc}") from exc
    saved = runtime.engine.register_flow(flow, replace=body.replace)
    logger.info("flow_registered", flow_id=saved.id, legacy=body.steps is not None)
    return Envelope(status="ok", data=saved.to_dict())


@router.get("/flows", response_model=Envelope, tags=["flows"])
async def list_flows():
    runtime = get_runtime()
    items = [_flow_summary(flow) for flow in runtime.engine.list_flows()]
    return Envelope(status="ok", data=FlowListResponse(items=items))


@router.get("/flows/{flow_id}", response_model=Envelope, tags=["flows"])
async def get_flow(
    flow_id: str,
    fmt: str = Query("graph", alias="format", pattern="^(graph|steps)$"),
):
    runtime = get_runtime()
    flow = runtime.engine.get_flow(flow_id)
    if fmt == "steps":
        return Envelope(status="ok", data={"id": flow.id, "steps": flow_to_steps(flow)})
    return Envelope(status="ok", data=flow.to_dict())


@router.delete("/flows/{flow_id}", response_model=Envelope, tags=["flows"])
async def delete_flow(flow_id: str):
    runtime = get_runtime()
    runtime.engine.delete_flow(flow_id)
    return Envelope(status="ok", data={"id": flow_id, "deleted": True})


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------


@router.post("/runs", response_model=Envelope, status_code=201, tags=["runs"])
async def start_run(body: RunRequest):
    runtime = get_runtime()
    kernel = runtime.engine.create_run(
        body.flow_id,
        variables=body.variables,
        breakpoints=body.breakpoints,
        pause_on_start=body.pause_on_start,
        run_id=body.run_id,
    )
    runtime.engine.start_run(kernel.run.id)
    return Envelope(status="ok", data=kernel.run.to_summary())


@router.get("/runs", response_model=Envelope, tags=["runs"])
async def list_runs(
    flow_id: Optional[str] = Query(None, alias="flowId"),
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    runtime = get_runtime()
    run_status = None
    if status:
        try:
            run_status = RunStatus(status)
        except ValueError as exc:
            raise ValidationError(f"unknown run status '{status}'") from exc
    runs = runtime.engine.list_runs(flow_id=flow_id, status=run_status, limit=limit)
    return Envelope(status="ok", data=RunListResponse(items=[run.to_summary() for run in runs]))


@router.get("/runs/{run_id}", response_model=Envelope, tags=["runs"])
async def get_run(run_id: str):
    runtime = get_runtime()
    return Envelope(status="ok", data=_run_detail(runtime.engine.get_run(run_id)))


@router.post("/runs/{run_id}/cancel", response_model=Envelope, tags=["runs"])
async def cancel_run(run_id: str, body: Optional[RunCancelRequest] = None):
    runtime = get_runtime()
    reason = body.reason if body else None
    run = await runtime.engine.cancel_run(run_id, reason=reason or "cancelled via api")
    return Envelope(status="ok", data=run.to_summary())


@router.delete("/runs/{run_id}", response_model=Envelope, tags=["runs"])
async def discard_run(run_id: str):
    runtime = get_runtime()
    await runtime.engine.discard_run(run_id)
    return Envelope(status="ok", data={"id": run_id, "deleted": True})


# ----------------------------------------------------------------------
# Debugger
# ----------------------------------------------------------------------


@router.post(
    "/debugger",
    response_model=DebuggerResponse,
    response_model_exclude_unset=True,
    tags=["debugger"],
)
async def debugger_command(command: DebuggerCommand):
    runtime = get_runtime()
    result = await runtime.debugger.handle(command.model_dump(by_alias=True, exclude_unset=True))
    return DebuggerResponse(**result)


@router.websocket("/debugger/events")
async def debugger_events(ws: WebSocket, run_id: Optional[str] = Query(None)):
    """Push forwarded run events and state refreshes; accepts commands inline.

    Incoming text frames are debugger commands; each is answered with a
    ``debug.response`` frame echoing the command's ``id``.
    """
    runtime = get_runtime()
    if run_id is not None:
        try:
            runtime.engine.get_run(run_id)
        except NotFoundError:
            await ws.close(code=4404)
            return
    await ws.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=WS_QUEUE_MAXSIZE)

    def _listener(message: Dict[str, Any]) -> None:
        loop.call_soon_threadsafe(_enqueue_frame, queue, message)

    unsubscribe = runtime.debugger.subscribe(_listener, run_id=run_id)

    async def _pump() -> None:
        while True:
            message = await queue.get()
            await ws.send_json(message)

    pump = asyncio.create_task(_pump())
    try:
        while True:
            raw = await ws.receive_text()
            try:
                command = json.loads(raw)
            except json.JSONDecodeError:
                await ws.send_json({"type": "debug.response", "ok": False, "error": "invalid JSON"})
                continue
            if not isinstance(command, dict):
                await ws.send_json({"type": "debug.response", "ok": False, "error": "command must be an object"})
                continue
            if run_id is not None and not command.get("runId") and command.get("type") != "debug.listRuns":
                command["runId"] = run_id
            result = await runtime.debugger.handle(command)
            await ws.send_json({"type": "debug.response", "id": command.get("id"), **result})
    except WebSocketDisconnect:
        logger.info("debugger_ws_disconnected", run_id=run_id)
    except Exception as exc:
        logger.error("debugger_ws_error", run_id=run_id, error_type=type(exc).__name__, error=str(exc))
    finally:
        unsubscribe()
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
