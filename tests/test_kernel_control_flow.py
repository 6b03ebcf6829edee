"""Tests for while loops, nested flow invocation and live-collection loops."""

from __future__ import annotations

import pytest

from flowkernel.config import Settings
from flowkernel.service.engine import FlowEngine
from flowkernel.service.registry import HandlerResult
from flowkernel.storage.memory import MemoryStore
from flowkernel.storage.models import Flow, RunStatus


def _increment(node_id="inc", name="count"):
    return {
        "id": node_id,
        "kind": "evaluate",
        "config": {"expression": f"vars.{name} + 1", "saveAs": name},
    }


def _while_flow(condition, max_iterations, **node_extra):
    return Flow.from_dict(
        {
            "id": "looping",
            "nodes": [
                {
                    "id": "loop",
                    "kind": "while",
                    "config": {"condition": condition, "maxIterations": max_iterations, "subflowId": "body"},
                    **node_extra,
                },
                {"id": "after", "kind": "assign", "config": {"values": {"exited": True}}},
            ],
            "edges": [{"from": "loop", "to": "after"}],
            "subflows": {"body": {"nodes": [_increment()]}},
        }
    )


def _root_cause(error):
    while error.cause is not None:
        error = error.cause
    return error


# ==============================================================================
# while
# ==============================================================================


class TestWhile:
    """Bounded condition loops."""

    async def test_loop_exits_when_condition_turns_false(self, engine):
        run = await engine.run_flow(_while_flow("vars.count < 5", 10), variables={"count": 0})
        assert run.status == RunStatus.COMPLETED
        assert run.outputs["count"] == 5
        assert run.outputs["exited"] is True

    async def test_false_condition_runs_zero_iterations(self, engine):
        run = await engine.run_flow(_while_flow("false", 3), variables={"count": 0})
        assert run.outputs["count"] == 0

    @pytest.mark.parametrize("bound", [1, 3, 7])
    async def test_always_true_fails_after_exactly_max_iterations(self, engine, recorded, bound):
        run = await engine.run_flow(_while_flow("true", bound), variables={"count": 0})

        assert run.status == RunStatus.FAILED
        assert run.error.code == "loop_limit_exceeded"
        assert run.error.retryable is False
        assert run.error.data == {"nodeId": "loop", "maxIterations": bound}
        assert run.scope["count"] == bound
        assert "exited" not in run.scope
        body_runs = [e for e in recorded if e["type"] == "node.completed" and e["nodeId"] == "inc"]
        assert len(body_runs) == bound

    async def test_loop_limit_is_never_retried_or_continued(self, engine, recorded):
        flow = _while_flow("true", 2, policy={"onError": "continue"})
        run = await engine.run_flow(flow, variables={"count": 0})
        assert run.status == RunStatus.FAILED
        assert run.scope["count"] == 2
        assert [e["decision"] for e in recorded if e["type"] == "node.failed"] == ["stop"]

        flow = _while_flow("true", 2, policy={"onError": "retry", "retries": 3})
        run = await engine.run_flow(flow, variables={"count": 0})
        assert run.status == RunStatus.FAILED
        assert run.scope["count"] == 2

    @pytest.mark.parametrize("bound", [None, 0, -1, "lots", True])
    async def test_max_iterations_is_required(self, engine, bound):
        run = await engine.run_flow(_while_flow("true", bound), variables={"count": 0})
        assert run.status == RunStatus.FAILED
        assert run.error.code == "validation_error"
        assert run.scope["count"] == 0

    async def test_bound_is_clamped_by_settings(self, registry, events):
        engine = FlowEngine(
            MemoryStore(), registry, events=events, settings=Settings(max_loop_iterations=4, default_backoff_ms=0)
        )
        run = await engine.run_flow(_while_flow("true", 1000), variables={"count": 0})
        assert run.error.data["maxIterations"] == 4
        assert run.scope["count"] == 4

    async def test_body_failure_propagates_with_cause(self, engine):
        flow = Flow.from_dict(
            {
                "id": "failing-body",
                "nodes": [
                    {"id": "loop", "kind": "while", "config": {"condition": "true", "maxIterations": 5, "subflowId": "body"}},
                ],
                "subflows": {
                    "body": {"nodes": [{"id": "check", "kind": "assert", "config": {"condition": "vars.ok"}}]}
                },
            }
        )
        run = await engine.run_flow(flow, variables={"ok": False})
        assert run.status == RunStatus.FAILED
        assert run.error.code == "handler_failure"
        assert run.error.data == {"flowId": "body", "nodeId": "check"}
        assert run.error.cause.code == "assertion_failed"


# ==============================================================================
# executeFlow
# ==============================================================================


class TestExecuteFlow:
    """Nested flow invocation in inline and isolated modes."""

    def _child(self):
        return Flow.from_dict(
            {
                "id": "greeter",
                "variables": {"greeting": "hello"},
                "nodes": [
                    {
                        "id": "echo",
                        "kind": "assign",
                        "config": {"values": {"message": "${vars.greeting} ${vars.name}"}},
                    }
                ],
            }
        )

    def _parent(self, **config):
        return Flow.from_dict(
            {
                "id": "caller",
                "nodes": [
                    {"id": "call", "kind": "executeFlow", "config": {"flowId": "greeter", **config}},
                    {"id": "after", "kind": "assign", "config": {"values": {"done": True}}},
                ],
                "edges": [{"from": "call", "to": "after"}],
            }
        )

    async def test_inline_shares_scope_with_caller(self, engine):
        engine.register_flow(self._child())
        run = await engine.run_flow(self._parent(args={"name": "ada"}))

        assert run.status == RunStatus.COMPLETED
        assert run.outputs["message"] == "hello ada"
        assert run.outputs["name"] == "ada"
        assert run.outputs["done"] is True

    async def test_inline_caller_variables_win_over_child_defaults(self, engine):
        engine.register_flow(self._child())
        run = await engine.run_flow(self._parent(args={"name": "ada"}), variables={"greeting": "hi"})
        assert run.outputs["message"] == "hi ada"

    async def test_isolated_keeps_child_writes_private(self, engine):
        engine.register_flow(self._child())
        run = await engine.run_flow(self._parent(inline=False, args={"name": "bob"}))

        assert run.status == RunStatus.COMPLETED
        assert "message" not in run.outputs
        assert "name" not in run.outputs

    async def test_isolated_returns_are_copied_back(self, engine):
        engine.register_flow(self._child())
        run = await engine.run_flow(self._parent(inline=False, args={"name": "bob"}, returns={"greetingText": "message"}))
        assert run.outputs["greetingText"] == "hello bob"
        assert "message" not in run.outputs

    async def test_args_are_templated(self, engine):
        engine.register_flow(self._child())
        run = await engine.run_flow(
            self._parent(inline=False, args={"name": "${vars.user}"}, returns=["message"]),
            variables={"user": "cy"},
        )
        assert run.outputs["message"] == "hello cy"

    async def test_embedded_subflow_is_preferred(self, engine):
        parent = Flow.from_dict(
            {
                "id": "with-embedded",
                "nodes": [{"id": "call", "kind": "executeFlow", "config": {"flowId": "inner"}}],
                "subflows": {"inner": {"nodes": [{"id": "set", "kind": "assign", "config": {"values": {"from": "embedded"}}}]}},
            }
        )
        run = await engine.run_flow(parent)
        assert run.outputs["from"] == "embedded"

    async def test_missing_flow_fails(self, engine):
        run = await engine.run_flow(self._parent())
        assert run.status == RunStatus.FAILED
        assert run.error.code == "subflow_not_found"
        assert run.error.retryable is False

    async def test_child_failure_wraps_cause(self, engine):
        engine.register_flow(
            Flow.from_dict(
                {"id": "greeter", "nodes": [{"id": "nope", "kind": "assert", "config": {"condition": False, "message": "bad"}}]}
            )
        )
        run = await engine.run_flow(self._parent())
        assert run.error.code == "handler_failure"
        assert run.error.cause.code == "assertion_failed"
        assert run.error.cause.message == "bad"

    async def test_recursion_hits_call_depth_limit(self, registry, events):
        engine = FlowEngine(MemoryStore(), registry, events=events, settings=Settings(max_call_depth=4))
        engine.register_flow(
            Flow.from_dict({"id": "recur", "nodes": [{"id": "again", "kind": "executeFlow", "config": {"flowId": "recur"}}]})
        )
        run = await engine.run_flow("recur")
        assert run.status == RunStatus.FAILED
        assert run.error.code == "handler_failure"
        assert _root_cause(run.error).code == "call_depth_exceeded"
        assert run.call_stack == []

    async def test_handler_requested_subexecution(self, engine, registry):
        engine.register_flow(
            Flow.from_dict(
                {"id": "doubler", "nodes": [{"id": "d", "kind": "evaluate", "config": {"expression": "vars.n * 2", "saveAs": "doubled"}}]}
            )
        )

        async def delegate(config, scope, context):
            result = await context.request_subexecution("doubler", args={"n": scope["n"]})
            if not result.ok:
                return result
            return HandlerResult.success(result=result.values["doubled"])

        registry.register("delegate", delegate)
        flow = Flow.from_dict({"id": "outer", "nodes": [{"id": "x", "kind": "delegate"}]})
        run = await engine.run_flow(flow, variables={"n": 21})

        assert run.status == RunStatus.COMPLETED
        assert run.outputs["result"] == 42
        assert "doubled" not in run.outputs


# ==============================================================================
# loopElements
# ==============================================================================


class ListProvider:
    def __init__(self, items):
        self.items = items
        self.selectors = []

    def enumerate(self, selector, context):
        self.selectors.append(selector)
        return list(self.items)


class StreamingProvider:
    def __init__(self, items):
        self.items = items

    async def enumerate(self, selector, context):
        for item in self.items:
            yield item


class BrokenProvider:
    def enumerate(self, selector, context):
        raise ConnectionError("page went away")


def _elements_flow(selector=".row"):
    return Flow.from_dict(
        {
            "id": "scrape",
            "nodes": [
                {
                    "id": "rows",
                    "kind": "loopElements",
                    "config": {"selector": selector, "subflowId": "body", "itemVar": "el", "saveAs": "elements"},
                }
            ],
            "subflows": {
                "body": {"nodes": [{"id": "collect", "kind": "append", "config": {"listVar": "seen", "value": "${vars.el}"}}]}
            },
        }
    )


class TestLoopElements:
    """Iteration over collections supplied by an external provider."""

    def _engine(self, registry, events, settings, provider):
        return FlowEngine(MemoryStore(), registry, events=events, settings=settings, element_provider=provider)

    @pytest.mark.parametrize("provider_cls", [ListProvider, StreamingProvider])
    async def test_body_runs_per_element(self, registry, events, settings, provider_cls):
        engine = self._engine(registry, events, settings, provider_cls(["a", "b", "c"]))
        run = await engine.run_flow(_elements_flow())

        assert run.status == RunStatus.COMPLETED
        assert run.outputs["seen"] == ["a", "b", "c"]
        assert run.outputs["elements"] == ["a", "b", "c"]
        assert "el" not in run.outputs

    async def test_selector_is_templated(self, registry, events, settings):
        provider = ListProvider([])
        engine = self._engine(registry, events, settings, provider)
        run = await engine.run_flow(_elements_flow("${vars.sel}"), variables={"sel": "li.item"})
        assert provider.selectors == ["li.item"]
        assert run.outputs["elements"] == []

    async def test_without_provider_fails(self, engine):
        run = await engine.run_flow(_elements_flow())
        assert run.status == RunStatus.FAILED
        assert run.error.code == "provider_unavailable"

    async def test_provider_error_fails_node(self, registry, events, settings):
        engine = self._engine(registry, events, settings, BrokenProvider())
        run = await engine.run_flow(_elements_flow())
        assert run.status == RunStatus.FAILED
        assert run.error.code == "handler_error"
        assert "page went away" in run.error.message
