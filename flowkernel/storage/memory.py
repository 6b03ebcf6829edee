from __future__ import annotations

import threading
from typing import Dict, List, Optional

from flowkernel.logging import get_logger
from flowkernel.storage.errors import ConstraintViolation
from flowkernel.storage.models import Flow, Run, RunStatus


class MemoryStore:
    """Process-local registry of Flows and Runs.

    Nothing is persisted; a restart forgets every flow and run.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.flows: Dict[str, Flow] = {}
        self.runs: Dict[str, Run] = {}
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def save_flow(self, flow: Flow, *, replace: bool = False) -> Flow:
        with self._data_lock:
            existing = self.flows.get(flow.id)
            if existing is not None and not replace:
                raise ConstraintViolation(
                    "flow already exists",
                    entity="flow",
                    key=flow.id,
                    detail={"version": existing.version},
                )
            self.flows[flow.id] = flow
        self.logger.info("flow_saved", flow_id=flow.id, nodes=len(flow.nodes), replaced=existing is not None)
        return flow

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with self._data_lock:
            return self.flows.get(flow_id)

    def list_flows(self) -> List[Flow]:
        with self._data_lock:
            return sorted(self.flows.values(), key=lambda f: f.id)

    def delete_flow(self, flow_id: str) -> bool:
        with self._data_lock:
            removed = self.flows.pop(flow_id, None) is not None
        if removed:
            self.logger.info("flow_deleted", flow_id=flow_id)
        return removed

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def save_run(self, run: Run) -> Run:
        with self._data_lock:
            self.runs[run.id] = run
        return run

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._data_lock:
            return self.runs.get(run_id)

    def list_runs(
        self,
        *,
        flow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Run]:
        with self._data_lock:
            runs = [
                run
                for run in self.runs.values()
                if (flow_id is None or run.flow.id == flow_id)
                and (status is None or run.status == status)
            ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit] if limit else runs

    def delete_run(self, run_id: str) -> bool:
        with self._data_lock:
            return self.runs.pop(run_id, None) is not None

    def prune_finished_runs(self, keep: int) -> List[str]:
        """Drop the oldest terminal runs beyond ``keep``; returns the pruned ids."""
        with self._data_lock:
            finished = sorted(
                (run for run in self.runs.values() if run.status.is_terminal),
                key=lambda r: r.finished_at or r.created_at,
            )
            excess = len(finished) - keep
            if excess <= 0:
                return []
            pruned = [run.id for run in finished[:excess]]
            for run_id in pruned:
                self.runs.pop(run_id, None)
        self.logger.info("runs_pruned", count=len(pruned), keep=keep)
        return pruned


__all__ = ["MemoryStore"]
