from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from flowkernel.config import Settings, get_settings
from flowkernel.logging import get_logger
from flowkernel.service.errors import ConflictError, NotFoundError, ValidationError
from flowkernel.service.events import EventBus
from flowkernel.service.kernel import RunKernel
from flowkernel.service.registry import PluginRegistry
from flowkernel.service.scope import Scope
from flowkernel.service.traversal import validate_flow
from flowkernel.storage.errors import ConstraintViolation
from flowkernel.storage.memory import MemoryStore
from flowkernel.storage.models import Flow, Run, RunStatus

logger = get_logger(__name__)


class FlowEngine:
    """Owns flows, runs and their kernels.

    Runs execute as tasks on the running event loop; at most
    ``settings.max_concurrent_runs`` of them walk their graph at once, the
    rest wait in ``pending``.
    """

    def __init__(
        self,
        store: MemoryStore,
        registry: PluginRegistry,
        *,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        element_provider: Any = None,
        shared_values: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.events = events or EventBus()
        self.settings = settings or get_settings()
        self.element_provider = element_provider
        self.shared_values: Dict[str, Any] = dict(shared_values or {})
        self.kernels: Dict[str, RunKernel] = {}
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_runs)

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def register_flow(self, flow: Union[Flow, Mapping[str, Any]], *, replace: bool = False) -> Flow:
        if not isinstance(flow, Flow):
            try:
                flow = Flow.from_dict(flow)
            except (KeyError, TypeError, ValueError) as exc:
                raise ValidationError(f"malformed flow: {exc}") from exc
        validate_flow(flow)
        try:
            return self.store.save_flow(flow, replace=replace)
        except ConstraintViolation as exc:
            raise ConflictError(f"flow '{flow.id}' already exists", detail=exc.detail) from exc

    def get_flow(self, flow_id: str) -> Flow:
        flow = self.store.get_flow(flow_id)
        if flow is None:
            raise NotFoundError(f"flow '{flow_id}' not found", detail={"flow_id": flow_id})
        return flow

    def resolve_flow(self, flow_id: str) -> Optional[Flow]:
        return self.store.get_flow(flow_id)

    def list_flows(self) -> List[Flow]:
        return self.store.list_flows()

    def delete_flow(self, flow_id: str) -> None:
        if not self.store.delete_flow(flow_id):
            raise NotFoundError(f"flow '{flow_id}' not found", detail={"flow_id": flow_id})

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(
        self,
        flow: Union[str, Flow],
        *,
        variables: Optional[Mapping[str, Any]] = None,
        breakpoints: Iterable[str] = (),
        pause_on_start: bool = False,
        run_id: Optional[str] = None,
    ) -> RunKernel:
        """Create a pending run. Nothing executes until :meth:`start_run`."""
        if isinstance(flow, Flow):
            validate_flow(flow)
        else:
            flow = self.get_flow(flow)
        if run_id and (run_id in self.kernels or self.store.get_run(run_id) is not None):
            raise ConflictError(f"run '{run_id}' already exists", detail={"run_id": run_id})

        bindings = copy.deepcopy(self.shared_values)
        bindings.update(copy.deepcopy(flow.variables))
        bindings.update(variables or {})
        run = Run.new(flow, Scope(bindings), breakpoints=breakpoints, run_id=run_id)
        kernel = RunKernel(
            run,
            registry=self.registry,
            events=self.events,
            settings=self.settings,
            flow_resolver=self.resolve_flow,
            element_provider=self.element_provider,
            pause_on_start=pause_on_start,
        )
        self.kernels[run.id] = kernel
        self.store.save_run(run)
        logger.info(
            "run_created",
            run_id=run.id,
            flow_id=flow.id,
            breakpoints=len(run.breakpoints),
            pause_on_start=pause_on_start,
        )
        return kernel

    def start_run(self, run_id: str) -> asyncio.Task:
        kernel = self.get_kernel(run_id)
        if kernel.task is not None:
            return kernel.task
        if kernel.status != RunStatus.PENDING:
            raise ConflictError(
                f"run '{run_id}' is {kernel.status.value}", detail={"run_id": run_id}
            )
        kernel.task = asyncio.ensure_future(self._execute_bounded(kernel))
        kernel.task.add_done_callback(self._on_task_done)
        return kernel.task

    async def run_flow(self, flow: Union[str, Flow], **kwargs: Any) -> Run:
        """Create, start and await a run to its terminal state."""
        kernel = self.create_run(flow, **kwargs)
        await self.start_run(kernel.run.id)
        return kernel.run

    async def _execute_bounded(self, kernel: RunKernel) -> Run:
        if await self._acquire_slot(kernel):
            try:
                run = await kernel.execute()
            finally:
                self._semaphore.release()
        else:
            # cancelled while queued; execute() finalizes without dispatching
            run = await kernel.execute()
        self._prune()
        return run

    async def _acquire_slot(self, kernel: RunKernel) -> bool:
        """Wait for a free run slot. Returns False if the run is cancelled first."""
        if kernel.cancel_token.cancelled:
            return False
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        cancelled = asyncio.ensure_future(kernel.cancel_token.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if acquire.done() and not acquire.cancelled():
                self._semaphore.release()
            else:
                acquire.cancel()
            raise
        finally:
            cancelled.cancel()
        if acquire.done():
            return True
        acquire.cancel()
        logger.info("run_cancelled_while_queued", run_id=kernel.run.id)
        return False

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("run_task_failed", error_type=type(exc).__name__, error=str(exc))

    def _prune(self) -> None:
        for run_id in self.store.prune_finished_runs(self.settings.max_runs_retained):
            self.kernels.pop(run_id, None)
            self.events.forget(run_id)

    async def cancel_run(self, run_id: str, *, reason: Optional[str] = None, wait: bool = True) -> Run:
        kernel = self.get_kernel(run_id)
        kernel.cancel(reason)
        if wait and kernel.task is not None and not kernel.task.done():
            await asyncio.gather(asyncio.shield(kernel.task), return_exceptions=True)
        return kernel.run

    def find_kernel(self, run_id: str) -> Optional[RunKernel]:
        return self.kernels.get(run_id)

    def get_kernel(self, run_id: str) -> RunKernel:
        kernel = self.kernels.get(run_id)
        if kernel is None:
            raise NotFoundError(f"run '{run_id}' not found", detail={"run_id": run_id})
        return kernel

    def get_run(self, run_id: str) -> Run:
        kernel = self.kernels.get(run_id)
        if kernel is not None:
            return kernel.run
        run = self.store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"run '{run_id}' not found", detail={"run_id": run_id})
        return run

    def list_runs(
        self,
        *,
        flow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Run]:
        return self.store.list_runs(flow_id=flow_id, status=status, limit=limit)

    async def discard_run(self, run_id: str) -> None:
        """Forget a run. An active run is cancelled first."""
        run = self.get_run(run_id)
        if not run.status.is_terminal:
            await self.cancel_run(run_id, reason="discarded")
        self.kernels.pop(run_id, None)
        self.store.delete_run(run_id)
        self.events.forget(run_id)
        logger.info("run_discarded", run_id=run_id)

    async def shutdown(self) -> None:
        active = [kernel for kernel in self.kernels.values() if not kernel.status.is_terminal]
        for kernel in active:
            kernel.cancel("shutdown")
        tasks = [kernel.task for kernel in active if kernel.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("engine_shutdown", cancelled_runs=len(active))


__all__ = ["FlowEngine"]
