"""Tests for the workflow executor: scheduling, branching, failures and lifecycle."""

import asyncio
import dataclasses

import pytest

from blockflow.errors import StructuralError
from blockflow.graph.executor import WorkflowExecutor
from blockflow.graph.handlers import BlockResult, default_registry
from blockflow.graph.workflow import WorkflowGraph
from blockflow.runner.tool_registry import ToolRegistry
from blockflow.runtime.event_bus import EventBus, EventType
from blockflow.schemas.result import RunStatus


def echo(block, inputs, ctx):
    return dict(inputs)


def boom(block, inputs, ctx):
    raise RuntimeError("boom")


# ---- Fake handler that records what it was given ----
class RecordingHandler:
    def __init__(self):
        self.seen = []

    async def execute(self, block, inputs, ctx):
        self.seen.append((block.id, ctx.state_key, inputs))
        return BlockResult(output={"echo": inputs})


def _linear(**overrides):
    a = {"id": "a", "type": "echo", "name": "A", "config": {"text": "hi"}}
    a.update(overrides)
    return WorkflowGraph.load(
        {
            "id": "linear",
            "blocks": [
                {"id": "start", "type": "starter", "name": "Start"},
                a,
                {"id": "b", "type": "echo", "name": "B", "config": {"value": "<a.text>"}},
            ],
            "edges": [
                {"source": "start", "target": "a"},
                {"source": "a", "target": "b"},
            ],
        }
    )


def _condition_graph(conditions):
    return WorkflowGraph.load(
        {
            "id": "branching",
            "blocks": [
                {"id": "start", "type": "starter"},
                {"id": "cond", "type": "condition", "config": {"conditions": conditions}},
                {"id": "yes_block", "type": "echo", "config": {"branch": "yes"}},
                {"id": "after_yes", "type": "echo", "config": {"from": "<yes_block.branch>"}},
                {"id": "no_block", "type": "echo", "config": {"branch": "no"}},
                {"id": "after_no", "type": "echo", "config": {"from": "<no_block.branch>"}},
            ],
            "edges": [
                {"source": "start", "target": "cond"},
                {"source": "cond", "target": "yes_block", "sourceHandle": "condition-yes"},
                {"source": "yes_block", "target": "after_yes"},
                {"source": "cond", "target": "no_block", "sourceHandle": "condition-no"},
                {"source": "no_block", "target": "after_no"},
            ],
        }
    )


@pytest.fixture
def registry(registry):
    registry.register_function("echo", echo)
    registry.register_function("boom", boom)
    return registry


class TestDataFlow:
    @pytest.mark.asyncio
    async def test_linear_run_resolves_upstream_output(self, registry, engine_config):
        executor = WorkflowExecutor(_linear(), registry=registry, config=engine_config)
        result = await executor.execute(workflow_input={"message": "hello"})

        assert result.success
        assert result.status == RunStatus.COMPLETED
        assert not result.is_paused
        assert result.output == {"value": "hi"}
        assert result.metadata.executed_block_count == 3
        assert executor.context.get_output("start") == {
            "input": {"message": "hello"},
            "message": "hello",
        }
        assert [log["blockId"] for log in result.logs] == ["start", "a", "b"]

    @pytest.mark.asyncio
    async def test_handler_class_receives_resolved_inputs(self, registry, engine_config):
        recorder = RecordingHandler()
        registry.register("record", recorder)
        graph = _linear()
        graph = WorkflowGraph.load(
            {
                **graph.to_state(),
                "blocks": [
                    *graph.to_state()["blocks"][:2],
                    {"id": "b", "type": "record", "config": {"value": "<a.text>", "n": 1}},
                ],
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()

        assert recorder.seen == [("b", "b", {"value": "hi", "n": 1})]
        assert result.output == {"echo": {"value": "hi", "n": 1}}
        # Executors work on a copy; the shared catalog is untouched
        assert not default_registry.has("record")

    @pytest.mark.asyncio
    async def test_disabled_block_keeps_path_live(self, registry, engine_config):
        executor = WorkflowExecutor(
            _linear(enabled=False), registry=registry, config=engine_config
        )
        result = await executor.execute()

        assert result.success
        assert result.output == {"value": None}
        assert executor.context.disabled_blocks == {"a"}
        assert "a" not in executor.context.executed_blocks
        assert result.metadata.executed_block_count == 2

    @pytest.mark.asyncio
    async def test_response_block_defines_output(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {"id": "a", "type": "echo", "config": {"text": "<start.message>"}},
                    {"id": "resp", "type": "response", "config": {"data": {"reply": "<a.text>"}}},
                    {"id": "tail", "type": "echo", "config": {"ignored": True}},
                ],
                "edges": [
                    {"source": "start", "target": "a"},
                    {"source": "a", "target": "resp"},
                    {"source": "a", "target": "tail"},
                ],
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute(workflow_input={"message": "ping"})

        assert result.output == {"data": {"reply": "ping"}, "status": 200, "headers": {}}

    @pytest.mark.asyncio
    async def test_function_block_calls_tool(self, registry, engine_config):
        tools = ToolRegistry()

        def add(a: int, b: int) -> int:
            return a + b

        async def whoami(execution_id: str) -> dict:
            return {"execution": execution_id}

        tools.register_function(add)
        tools.register_function(whoami)
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {
                        "id": "sum",
                        "type": "function",
                        "config": {"tool": "add", "params": {"a": "<start.a>", "b": 3}},
                    },
                    {"id": "me", "type": "tool", "config": {"tool": "whoami"}},
                ],
                "edges": [
                    {"source": "start", "target": "sum"},
                    {"source": "sum", "target": "me"},
                ],
            }
        )
        executor = WorkflowExecutor(
            graph, registry=registry, tool_registry=tools, config=engine_config
        )
        result = await executor.execute(workflow_input={"a": 2}, execution_id="exec-42")

        assert executor.context.get_output("sum") == {"result": 5}
        assert result.output == {"execution": "exec-42"}

    @pytest.mark.asyncio
    async def test_variables_block_updates_workflow_variables(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {"id": "vars", "type": "variables", "config": {"variables": {"counter": 5}}},
                    {"id": "read", "type": "echo", "config": {"value": "<variable.counter>"}},
                ],
                "edges": [
                    {"source": "start", "target": "vars"},
                    {"source": "vars", "target": "read"},
                ],
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute(workflow_variables={"other": 1})

        assert result.output == {"value": 5}
        assert executor.context.workflow_variables == {"other": 1, "counter": 5}

    @pytest.mark.asyncio
    async def test_unreachable_block_is_neither_run_nor_skipped(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {"id": "a", "type": "echo"},
                    {"id": "orphan", "type": "echo"},
                ],
                "edges": [{"source": "start", "target": "a"}],
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()

        assert result.success
        assert "orphan" not in executor.context.executed_blocks
        assert "orphan" not in executor.context.skipped_blocks


class TestBranching:
    CONDITIONS = [
        {"id": "yes", "title": "if", "value": "<start.score> > 5"},
        {"id": "no", "title": "else", "value": ""},
    ]

    @pytest.mark.asyncio
    async def test_unselected_branch_is_skipped_transitively(self, registry, engine_config):
        executor = WorkflowExecutor(
            _condition_graph(self.CONDITIONS), registry=registry, config=engine_config
        )
        result = await executor.execute(workflow_input={"score": 10})
        ctx = executor.context

        assert result.success
        assert {"yes_block", "after_yes"} <= ctx.executed_blocks
        assert ctx.skipped_blocks == {"no_block", "after_no"}
        assert ctx.get_output("cond")["selectedConditionId"] == "yes"
        assert ctx.get_output("after_yes") == {"from": "yes"}

    @pytest.mark.asyncio
    async def test_else_branch(self, registry, engine_config):
        executor = WorkflowExecutor(
            _condition_graph(self.CONDITIONS), registry=registry, config=engine_config
        )
        await executor.execute(workflow_input={"score": 1})

        assert executor.context.skipped_blocks == {"yes_block", "after_yes"}
        assert executor.context.get_output("after_no") == {"from": "no"}

    @pytest.mark.asyncio
    async def test_js_style_condition(self, registry, engine_config):
        conditions = [
            {"id": "yes", "title": "if", "value": "<start.score> > 5 && <start.flag> === true"},
            {"id": "no", "title": "else", "value": ""},
        ]
        executor = WorkflowExecutor(
            _condition_graph(conditions), registry=registry, config=engine_config
        )
        await executor.execute(workflow_input={"score": 7, "flag": True})

        assert "yes_block" in executor.context.executed_blocks

    @pytest.mark.asyncio
    async def test_no_matching_condition_skips_every_branch(self, registry, engine_config):
        conditions = [{"id": "yes", "title": "if", "value": "<start.score> > 5"}]
        executor = WorkflowExecutor(
            _condition_graph(conditions), registry=registry, config=engine_config
        )
        result = await executor.execute(workflow_input={"score": 0})

        assert result.success
        assert executor.context.skipped_blocks == {"yes_block", "after_yes", "no_block", "after_no"}
        assert executor.context.get_output("cond")["conditionResult"] is False

    @pytest.mark.asyncio
    async def test_converging_branches_run_merge_once(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {"id": "cond", "type": "condition", "config": {"conditions": self.CONDITIONS}},
                    {"id": "yes_block", "type": "echo", "config": {"v": 1}},
                    {"id": "no_block", "type": "echo", "config": {"v": 2}},
                    {"id": "merge", "type": "echo", "config": {"yes": "<yes_block.v>"}},
                ],
                "edges": [
                    {"source": "start", "target": "cond"},
                    {"source": "cond", "target": "yes_block", "sourceHandle": "condition-yes"},
                    {"source": "cond", "target": "no_block", "sourceHandle": "condition-no"},
                    {"source": "yes_block", "target": "merge"},
                    {"source": "no_block", "target": "merge"},
                ],
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute(workflow_input={"score": 9})

        assert [log["blockId"] for log in result.logs].count("merge") == 1
        assert result.output == {"yes": 1}

    @pytest.mark.asyncio
    async def test_router_follows_selected_target(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {
                        "id": "route",
                        "type": "router",
                        "config": {
                            "routes": [
                                {"target": "c", "condition": "<start.pick> == 'c'"},
                                {"target": "Billing"},
                            ]
                        },
                    },
                    {"id": "b", "type": "echo", "name": "Billing", "config": {"v": "b"}},
                    {"id": "c", "type": "echo", "config": {"v": "c"}},
                ],
                "edges": [
                    {"source": "start", "target": "route"},
                    {"source": "route", "target": "b"},
                    {"source": "route", "target": "c"},
                ],
            }
        )

        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        await executor.execute(workflow_input={"pick": "c"})
        assert executor.context.skipped_blocks == {"b"}
        assert executor.context.get_output("route")["selectedPath"]["blockId"] == "c"

        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        await executor.execute(workflow_input={"pick": "other"})
        assert executor.context.skipped_blocks == {"c"}
        assert executor.context.router_decisions == {"route": "b"}


class TestFailures:
    @pytest.mark.asyncio
    async def test_block_failure_fails_fast(self, registry, engine_config):
        executor = WorkflowExecutor(_linear(type="boom"), registry=registry, config=engine_config)
        result = await executor.execute()

        assert not result.success
        assert result.status == RunStatus.FAILED
        assert result.error == "boom"
        assert result.error_details["type"] == "BlockExecutionError"
        assert result.error_details["block_id"] == "a"
        assert "b" not in executor.context.executed_blocks
        assert result.logs[-1]["blockId"] == "a"
        assert result.logs[-1]["success"] is False

    @pytest.mark.asyncio
    async def test_error_edge_handles_failure(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {"id": "a", "type": "boom"},
                    {"id": "b", "type": "echo", "config": {"ok": True}},
                    {"id": "handler", "type": "echo", "config": {"caught": "<a.error>"}},
                ],
                "edges": [
                    {"source": "start", "target": "a"},
                    {"source": "a", "target": "b"},
                    {"source": "a", "target": "handler", "sourceHandle": "error"},
                ],
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()

        assert result.success
        assert result.output == {"caught": "boom"}
        assert executor.context.errored_blocks == {"a"}
        assert executor.context.skipped_blocks == {"b"}

    @pytest.mark.asyncio
    async def test_missing_required_reference_fails_run(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {
                        "id": "a",
                        "type": "echo",
                        "config": {"prompt": "<start.question>"},
                        "required_references": ["<start.question>"],
                    },
                ],
                "edges": [{"source": "start", "target": "a"}],
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute(workflow_input={})

        assert not result.success
        assert result.error_details["type"] == "ReferenceResolutionError"
        assert result.error_details["token"] == "<start.question>"
        assert result.error_details["block_id"] == "a"

    @pytest.mark.asyncio
    async def test_block_timeout(self, registry, engine_config):
        async def slow(block, inputs, ctx):
            await asyncio.sleep(1)

        registry.register_function("slow", slow)
        config = dataclasses.replace(engine_config, block_timeout_seconds=0.05)
        executor = WorkflowExecutor(_linear(type="slow"), registry=registry, config=config)
        result = await executor.execute()

        assert result.status == RunStatus.FAILED
        assert "timed out" in result.error

    def test_unknown_block_type_rejected_at_construction(self, registry):
        graph = _linear(type="mystery")
        with pytest.raises(StructuralError, match="mystery"):
            WorkflowExecutor(graph, registry=registry)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_status_transitions(self, registry, engine_config):
        executor = WorkflowExecutor(_linear(), registry=registry, config=engine_config)
        assert executor.status == RunStatus.PENDING

        await executor.execute()
        assert executor.status == RunStatus.COMPLETED

        with pytest.raises(RuntimeError, match="already used"):
            await executor.execute()

    @pytest.mark.asyncio
    async def test_cancellation_stops_before_next_dispatch(self, registry, engine_config):
        holder = {}

        def cancel_run(block, inputs, ctx):
            holder["executor"].cancel()
            return {"text": "done"}

        registry.register_function("cancel", cancel_run)
        executor = WorkflowExecutor(_linear(type="cancel"), registry=registry, config=engine_config)
        holder["executor"] = executor

        result = await executor.execute()

        assert not result.success
        assert result.status == RunStatus.CANCELLED
        assert executor.status == RunStatus.CANCELLED
        assert "a" in executor.context.executed_blocks
        assert "b" not in executor.context.executed_blocks

    @pytest.mark.asyncio
    async def test_ready_blocks_respect_max_concurrency(self, registry, engine_config):
        active = 0
        peak = 0

        async def tracked(block, inputs, ctx):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return {"id": block.id}

        registry.register_function("tracked", tracked)
        names = [f"w{i}" for i in range(6)]
        graph = WorkflowGraph.load(
            {
                "blocks": [{"id": "start", "type": "starter"}]
                + [{"id": n, "type": "tracked"} for n in names],
                "edges": [{"source": "start", "target": n} for n in names],
            }
        )
        config = dataclasses.replace(engine_config, max_concurrency=2)
        executor = WorkflowExecutor(graph, registry=registry, config=config)
        result = await executor.execute()

        assert result.success
        assert peak == 2
        assert set(names) <= executor.context.executed_blocks

    @pytest.mark.asyncio
    async def test_events_are_published(self, registry, engine_config):
        bus = EventBus()
        executor = WorkflowExecutor(
            _linear(), registry=registry, config=engine_config, event_bus=bus
        )
        result = await executor.execute(execution_id="exec-events")

        history = bus.get_history(execution_id=result.execution_id)
        types = [event.type for event in reversed(history)]
        assert types[0] == EventType.EXECUTION_STARTED
        assert types[-1] == EventType.EXECUTION_COMPLETED
        assert types.count(EventType.BLOCK_COMPLETED) == 3
        started = bus.get_history(event_type=EventType.BLOCK_STARTED)
        assert all(event.data["block_type"] for event in started)
        assert history[0].data["output"] == result.output

    @pytest.mark.asyncio
    async def test_pause_event_names_wait_block(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {"id": "w", "type": "wait"},
                ],
                "edges": [{"source": "start", "target": "w"}],
            }
        )
        bus = EventBus()
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config, event_bus=bus)
        await executor.execute(execution_id="exec-paused")

        paused = bus.get_history(event_type=EventType.EXECUTION_PAUSED)
        assert [event.block_id for event in paused] == ["w"]
        assert paused[0].data["wait_block_info"]["stateKey"] == "w"

    @pytest.mark.asyncio
    async def test_result_wire_form_is_camel_case(self, registry, engine_config):
        executor = WorkflowExecutor(_linear(), registry=registry, config=engine_config)
        result = await executor.execute(execution_id="exec-wire")
        wire = result.to_wire()

        assert wire["executionId"] == "exec-wire"
        assert wire["isPaused"] is False
        assert wire["metadata"]["executedBlockCount"] == 3
        assert "checkpoint" not in wire
