"""Tests for flow registration, run lifecycle and the in-memory store."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from flowkernel.config import Settings
from flowkernel.service.engine import FlowEngine
from flowkernel.service.errors import ConflictError, FlowValidationError, NotFoundError, ValidationError
from flowkernel.service.traversal import flow_problems
from flowkernel.storage.errors import ConstraintViolation
from flowkernel.storage.memory import MemoryStore
from flowkernel.storage.models import Flow, Run, RunStatus


def _flow(flow_id="simple", **extra):
    return Flow.from_dict(
        {"id": flow_id, "nodes": [{"id": "a", "kind": "assign", "config": {"values": {"a": 1}}}], **extra}
    )


# ==============================================================================
# Flow validation
# ==============================================================================


class TestFlowValidation:
    """Structural checks applied when a flow is registered or run."""

    def test_valid_flow_has_no_problems(self):
        assert flow_problems(_flow()) == []

    @pytest.mark.parametrize(
        "payload, fragment",
        [
            ({"id": "empty", "nodes": []}, "has no nodes"),
            (
                {"id": "dup", "nodes": [{"id": "a", "kind": "log"}, {"id": "a", "kind": "log"}]},
                "appears 2 times",
            ),
            ({"id": "kindless", "nodes": [{"id": "a"}]}, "has no kind"),
            (
                {"id": "dangling", "nodes": [{"id": "a", "kind": "log"}], "edges": [{"from": "a", "to": "zz"}]},
                "unknown node 'zz'",
            ),
            (
                {
                    "id": "cyclic",
                    "nodes": [{"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}],
                    "edges": [{"from": "a", "to": "b"}, {"from": "b", "to": "a"}],
                    "entryNodeId": "a",
                },
                "cycle detected",
            ),
            (
                {
                    "id": "forked",
                    "nodes": [{"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}, {"id": "c", "kind": "log"}],
                    "edges": [{"from": "a", "to": "b"}, {"from": "a", "to": "c"}],
                },
                "more than one 'default' edge",
            ),
            ({"id": "bad-entry", "nodes": [{"id": "a", "kind": "log"}], "entryNodeId": "x"}, "does not exist"),
            (
                {"id": "parent", "nodes": [{"id": "a", "kind": "log"}], "subflows": {"child": {"nodes": []}}},
                "subflow 'child'",
            ),
        ],
    )
    def test_problems_are_reported(self, payload, fragment):
        problems = flow_problems(Flow.from_dict(payload))
        assert any(fragment in problem for problem in problems), problems

    def test_register_rejects_invalid_flow(self, engine):
        with pytest.raises(FlowValidationError) as excinfo:
            engine.register_flow({"id": "bad", "nodes": []})
        assert excinfo.value.status_code == 400
        assert excinfo.value.detail["problems"]

    def test_register_rejects_malformed_payload(self, engine):
        with pytest.raises(ValidationError):
            engine.register_flow({"nodes": []})


# ==============================================================================
# Flows
# ==============================================================================


class TestFlows:
    def test_register_and_get(self, engine):
        engine.register_flow(_flow())
        assert engine.get_flow("simple").id == "simple"
        assert [flow.id for flow in engine.list_flows()] == ["simple"]

    def test_duplicate_needs_replace(self, engine):
        engine.register_flow(_flow())
        with pytest.raises(ConflictError):
            engine.register_flow(_flow())
        replaced = engine.register_flow(_flow(name="renamed"), replace=True)
        assert engine.get_flow("simple") is replaced

    def test_missing_flow(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_flow("nope")
        with pytest.raises(NotFoundError):
            engine.delete_flow("nope")
        assert engine.resolve_flow("nope") is None

    def test_delete(self, engine):
        engine.register_flow(_flow())
        engine.delete_flow("simple")
        assert engine.list_flows() == []


# ==============================================================================
# Runs
# ==============================================================================


class TestRunLifecycle:
    async def test_run_registered_flow_by_id(self, engine, recorded):
        engine.register_flow(_flow())
        run = await engine.run_flow("simple")

        assert run.status == RunStatus.COMPLETED
        assert engine.get_run(run.id) is run
        summary = run.to_summary()
        assert summary["status"] == "completed"
        assert summary["flowId"] == "simple"
        assert summary["tookMs"] is not None
        assert run.created_at.tzinfo is not None
        assert run.started_at.utcoffset().total_seconds() == 0
        assert run.finished_at.tzinfo is not None

    async def test_create_run_with_unknown_flow(self, engine):
        with pytest.raises(NotFoundError):
            engine.create_run("missing")

    async def test_duplicate_run_id(self, engine):
        engine.create_run(_flow(), run_id="fixed")
        with pytest.raises(ConflictError):
            engine.create_run(_flow(), run_id="fixed")

    async def test_start_run_is_idempotent(self, engine):
        kernel = engine.create_run(_flow())
        first = engine.start_run(kernel.run.id)
        assert engine.start_run(kernel.run.id) is first
        await first

    async def test_cancelled_pending_run_cannot_start(self, engine):
        kernel = engine.create_run(_flow())
        await engine.cancel_run(kernel.run.id)
        with pytest.raises(ConflictError):
            engine.start_run(kernel.run.id)

    async def test_scope_is_isolated_between_runs(self, engine):
        flow = _flow(variables={"items": [1]})
        first = engine.create_run(flow)
        first.run.scope["items"].append(2)
        second = engine.create_run(flow)
        assert second.run.scope["items"] == [1]
        assert flow.variables == {"items": [1]}

    async def test_list_and_filter_runs(self, engine):
        done = await engine.run_flow(_flow())
        pending = engine.create_run(_flow("other"))

        assert {run.id for run in engine.list_runs()} == {done.id, pending.run.id}
        assert [run.id for run in engine.list_runs(status=RunStatus.PENDING)] == [pending.run.id]
        assert [run.id for run in engine.list_runs(flow_id="simple")] == [done.id]
        assert len(engine.list_runs(limit=1)) == 1

    async def test_discard_active_run_cancels_it(self, engine, registry):
        started = asyncio.Event()

        async def hang(config, scope, context):
            started.set()
            await context.cancel_token.wait()
            return None

        registry.register("hang", hang)
        kernel = engine.create_run(Flow.from_dict({"id": "hang", "nodes": [{"id": "h", "kind": "hang"}]}))
        engine.start_run(kernel.run.id)
        await asyncio.wait_for(started.wait(), timeout=2)

        await engine.discard_run(kernel.run.id)
        assert kernel.status == RunStatus.CANCELLED
        with pytest.raises(NotFoundError):
            engine.get_run(kernel.run.id)

    async def test_concurrency_limit_keeps_runs_pending(self, registry, events):
        engine = FlowEngine(MemoryStore(), registry, events=events, settings=Settings(max_concurrent_runs=1))
        first = engine.create_run(_flow(), pause_on_start=True)
        second = engine.create_run(_flow())
        engine.start_run(first.run.id)
        task = engine.start_run(second.run.id)

        deadline = time.monotonic() + 2
        while first.status != RunStatus.PAUSED:
            assert time.monotonic() < deadline
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.02)
        assert second.status == RunStatus.PENDING

        first.resume()
        run = await task
        assert run.status == RunStatus.COMPLETED

    async def test_run_waiting_for_a_slot_can_be_cancelled(self, registry, events):
        engine = FlowEngine(MemoryStore(), registry, events=events, settings=Settings(max_concurrent_runs=1))
        holder = engine.create_run(_flow(), pause_on_start=True)
        queued = engine.create_run(_flow("other"))
        engine.start_run(holder.run.id)
        task = engine.start_run(queued.run.id)

        deadline = time.monotonic() + 2
        while holder.status != RunStatus.PAUSED:
            assert time.monotonic() < deadline
            await asyncio.sleep(0.005)
        assert queued.status == RunStatus.PENDING

        run = await asyncio.wait_for(engine.cancel_run(queued.run.id, reason="user"), timeout=1.0)
        assert run.status == RunStatus.CANCELLED
        assert run.trace == []
        assert task.done()
        assert holder.status == RunStatus.PAUSED

        # the held slot is released normally and can be reused
        holder.resume()
        assert (await holder.wait()).status == RunStatus.COMPLETED
        later = await asyncio.wait_for(engine.run_flow(_flow("third")), timeout=1.0)
        assert later.status == RunStatus.COMPLETED

    async def test_shutdown_cancels_active_runs(self, engine):
        kernel = engine.create_run(_flow(), pause_on_start=True)
        engine.start_run(kernel.run.id)
        while kernel.status != RunStatus.PAUSED:
            await asyncio.sleep(0.005)
        await engine.shutdown()
        assert kernel.status == RunStatus.CANCELLED

    async def test_finished_runs_are_pruned(self, registry, events):
        engine = FlowEngine(MemoryStore(), registry, events=events, settings=Settings(max_runs_retained=2))
        runs = [await engine.run_flow(_flow()) for _ in range(4)]
        kept = {run.id for run in engine.list_runs()}
        assert kept == {runs[2].id, runs[3].id}
        assert engine.find_kernel(runs[0].id) is None


# ==============================================================================
# Store
# ==============================================================================


class TestMemoryStore:
    def test_save_flow_conflict(self):
        store = MemoryStore()
        store.save_flow(_flow())
        with pytest.raises(ConstraintViolation) as excinfo:
            store.save_flow(_flow())
        assert excinfo.value.detail["flow_id"] == "simple"

    def test_list_runs_newest_first(self):
        store = MemoryStore()
        old = Run.new(_flow(), {}, run_id="old")
        old.created_at = datetime.now(timezone.utc) - timedelta(minutes=5)
        new = Run.new(_flow(), {}, run_id="new")
        store.save_run(old)
        store.save_run(new)
        assert [run.id for run in store.list_runs()] == ["new", "old"]

    def test_prune_keeps_active_runs(self):
        store = MemoryStore()
        active = Run.new(_flow(), {}, run_id="active")
        store.save_run(active)
        for index in range(3):
            run = Run.new(_flow(), {}, run_id=f"done-{index}")
            run.status = RunStatus.COMPLETED
            run.finished_at = datetime.now(timezone.utc) + timedelta(seconds=index)
            store.save_run(run)

        assert store.prune_finished_runs(1) == ["done-0", "done-1"]
        assert {run.id for run in store.list_runs()} == {"active", "done-2"}
        assert store.prune_finished_runs(5) == []
