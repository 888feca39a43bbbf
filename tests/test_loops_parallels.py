"""Tests for loop and parallel group execution."""

import asyncio
import dataclasses
import json

import pytest

from blockflow.graph.executor import WorkflowExecutor
from blockflow.graph.handlers import BlockResult
from blockflow.graph.workflow import WorkflowGraph


def _loop_graph(loop, interior, after_config=None):
    """start -> loop1 -> [interior...] ; loop1 -> after"""
    blocks = [{"id": "start", "type": "starter"}, {"id": "loop1", "type": "loop"}]
    blocks.extend(interior)
    blocks.append({"id": "after", "type": "echo", "config": after_config or {}})
    edges = [
        {"source": "start", "target": "loop1"},
        {"source": "loop1", "target": interior[0]["id"], "sourceHandle": "loop-start-source"},
        {"source": "loop1", "target": "after", "sourceHandle": "loop-end-source"},
    ]
    for upstream, downstream in zip(interior, interior[1:]):
        edges.append({"source": upstream["id"], "target": downstream["id"]})
    return WorkflowGraph.load(
        {
            "id": "loop-wf",
            "blocks": blocks,
            "edges": edges,
            "loops": {"loop1": {"nodes": [b["id"] for b in interior], **loop}},
        }
    )


def _parallel_graph(parallel, interior_type, interior_config):
    return WorkflowGraph.load(
        {
            "id": "parallel-wf",
            "blocks": [
                {"id": "start", "type": "starter"},
                {"id": "fan", "type": "parallel"},
                {"id": "work", "type": interior_type, "config": interior_config},
            ],
            "edges": [
                {"source": "start", "target": "fan"},
                {"source": "fan", "target": "work", "sourceHandle": "parallel-start-source"},
            ],
            "parallels": {"fan": {"nodes": ["work"], **parallel}},
        }
    )


@pytest.fixture
def registry(registry):
    def echo(block, inputs, ctx):
        return dict(inputs)

    def double(block, inputs, ctx):
        return inputs["value"] * 2

    registry.register_function("echo", echo)
    registry.register_function("double", double)
    return registry


class TestLoops:
    @pytest.mark.asyncio
    async def test_for_each_collects_results_in_order(self, registry, engine_config):
        graph = _loop_graph(
            {"loopType": "forEach", "forEachItems": [1, 2, 3]},
            [{"id": "x", "type": "double", "config": {"value": "<loop.currentItem>"}}],
            after_config={"doubled": "<loop.results>"},
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()
        ctx = executor.context

        assert result.success
        assert ctx.get_output("loop1")["results"] == [2, 4, 6]
        assert ctx.get_output("loop1")["items"] == [1, 2, 3]
        assert ctx.get_output("after") == {"doubled": [2, 4, 6]}
        assert {f"x_loop_loop1_iteration_{i}" for i in range(3)} <= ctx.executed_blocks
        assert "x" not in ctx.block_states

    @pytest.mark.asyncio
    async def test_for_each_items_from_reference(self, registry, engine_config):
        graph = _loop_graph(
            {"loopType": "forEach", "forEachItems": "<start.numbers>"},
            [{"id": "x", "type": "double", "config": {"value": "<loop.currentItem>"}}],
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        await executor.execute(workflow_input={"numbers": [5, 6]})

        assert executor.context.get_output("loop1")["results"] == [10, 12]

    @pytest.mark.asyncio
    async def test_for_each_over_object_iterates_pairs(self, registry, engine_config):
        graph = _loop_graph(
            {"loopType": "forEach", "forEachItems": '{"a": 1, "b": 2}'},
            [{"id": "x", "type": "echo", "config": {"pair": "<loop.currentItem>"}}],
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        await executor.execute()

        results = executor.context.get_output("loop1")["results"]
        assert results == [{"pair": ["a", 1]}, {"pair": ["b", 2]}]

    @pytest.mark.asyncio
    async def test_empty_collection_runs_no_iterations(self, registry, engine_config):
        graph = _loop_graph(
            {"loopType": "forEach", "forEachItems": "<start.numbers>"},
            [{"id": "x", "type": "double", "config": {"value": "<loop.currentItem>"}}],
            after_config={"done": True},
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute(workflow_input={"numbers": []})

        assert result.success
        assert executor.context.get_output("loop1")["results"] == []
        assert executor.context.get_output("after") == {"done": True}

    @pytest.mark.asyncio
    async def test_for_loop_defaults_iteration_count(self, registry, engine_config):
        graph = _loop_graph(
            {"loopType": "for"},
            [{"id": "x", "type": "echo", "config": {"i": "<loop.index>"}}],
        )
        config = dataclasses.replace(engine_config, default_loop_iterations=3)
        executor = WorkflowExecutor(graph, registry=registry, config=config)
        await executor.execute()

        output = executor.context.get_output("loop1")
        assert output["iterations"] == 3
        assert output["results"] == [{"i": 0}, {"i": 1}, {"i": 2}]
        assert "items" not in output

    @pytest.mark.asyncio
    async def test_iterations_share_workflow_variables(self, registry, engine_config):
        def increment(block, inputs, ctx):
            count = (inputs.get("count") or 0) + 1
            return BlockResult(output={"count": count}, variables={"count": count})

        registry.register_function("increment", increment)
        graph = _loop_graph(
            {"iterations": 4},
            [{"id": "inc", "type": "increment", "config": {"count": "<variable.count>"}}],
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        await executor.execute()

        assert executor.context.workflow_variables["count"] == 4
        assert executor.context.get_output("loop1")["results"][-1] == {"count": 4}

    @pytest.mark.asyncio
    async def test_chained_interior_reads_same_iteration(self, registry, engine_config):
        graph = _loop_graph(
            {"loopType": "forEach", "forEachItems": [1, 2]},
            [
                {"id": "x", "type": "double", "config": {"value": "<loop.currentItem>"}},
                {"id": "y", "type": "echo", "config": {"seen": "<x>", "i": "<loop.index>"}},
            ],
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        await executor.execute()

        # Terminal block of each iteration is the iteration result
        assert executor.context.get_output("loop1")["results"] == [
            {"seen": 2, "i": 0},
            {"seen": 4, "i": 1},
        ]

    @pytest.mark.asyncio
    async def test_member_without_edges_reads_upstream_of_loop(self, registry, engine_config):
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {"id": "a", "type": "echo", "config": {"text": "hi"}},
                    {"id": "loop1", "type": "loop"},
                    {"id": "x", "type": "echo", "config": {"got": "<a.text>"}},
                ],
                "edges": [
                    {"source": "start", "target": "a"},
                    {"source": "a", "target": "loop1"},
                ],
                "loops": {"loop1": {"nodes": ["x"], "iterations": 2}},
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()

        assert result.success
        assert executor.context.get_output("loop1")["results"] == [{"got": "hi"}, {"got": "hi"}]

    @pytest.mark.asyncio
    async def test_failure_inside_loop_fails_run(self, registry, engine_config):
        def fail_on_two(block, inputs, ctx):
            if inputs["value"] == 2:
                raise ValueError("two is not allowed")
            return inputs["value"]

        registry.register_function("picky", fail_on_two)
        graph = _loop_graph(
            {"loopType": "forEach", "forEachItems": [1, 2, 3]},
            [{"id": "x", "type": "picky", "config": {"value": "<loop.currentItem>"}}],
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()

        assert not result.success
        assert result.error == "two is not allowed"
        assert result.error_details["block_id"] == "x"
        assert "x_loop_loop1_iteration_2" not in executor.context.executed_blocks


class TestParallels:
    @pytest.mark.asyncio
    async def test_results_follow_branch_index_not_completion_order(
        self, registry, engine_config
    ):
        async def staggered(block, inputs, ctx):
            item = inputs["item"]
            await asyncio.sleep(inputs["delay"] * 0.01)
            return item * 10

        registry.register_function("staggered", staggered)

        outputs = []
        for delays in ("<parallel.currentItem>", "<parallel.index>"):
            graph = _parallel_graph(
                {"parallelType": "collection", "distribution": [3, 2, 1]},
                "staggered",
                {"item": "<parallel.currentItem>", "delay": delays},
            )
            executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
            await executor.execute()
            outputs.append(executor.context.get_output("fan"))

        assert outputs[0]["results"] == [30, 20, 10]
        assert json.dumps(outputs[0]) == json.dumps(outputs[1])

    @pytest.mark.asyncio
    async def test_count_parallel_branch_keys(self, registry, engine_config):
        graph = _parallel_graph({"count": 3}, "echo", {"branch": "<parallel.index>"})
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()
        ctx = executor.context

        assert result.success
        assert ctx.get_output("fan")["results"] == [{"branch": 0}, {"branch": 1}, {"branch": 2}]
        assert ctx.get_output("work_parallel_fan_iteration_1") == {"branch": 1}

    @pytest.mark.asyncio
    async def test_max_concurrency_bounds_branches(self, registry, engine_config):
        active = 0
        peak = 0

        async def tracked(block, inputs, ctx):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return inputs["i"]

        registry.register_function("tracked", tracked)
        graph = _parallel_graph({"count": 6, "maxConcurrency": 2}, "tracked", {"i": "<parallel.index>"})
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        await executor.execute()

        assert peak == 2
        assert executor.context.get_output("fan")["results"] == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_branch_failure_fails_run(self, registry, engine_config):
        def fail_second(block, inputs, ctx):
            if inputs["i"] == 1:
                raise RuntimeError("branch broke")
            return inputs["i"]

        registry.register_function("fragile", fail_second)
        graph = _parallel_graph({"count": 3}, "fragile", {"i": "<parallel.index>"})
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()

        assert not result.success
        assert result.error == "branch broke"


class TestNesting:
    @pytest.mark.asyncio
    async def test_parallel_inside_loop(self, registry, engine_config):
        def combine(block, inputs, ctx):
            return inputs["item"] * 10 + inputs["branch"]

        registry.register_function("combine", combine)
        graph = WorkflowGraph.load(
            {
                "blocks": [
                    {"id": "start", "type": "starter"},
                    {"id": "outer", "type": "loop"},
                    {"id": "inner", "type": "parallel"},
                    {
                        "id": "y",
                        "type": "combine",
                        "config": {"item": "<loop.currentItem>", "branch": "<parallel.index>"},
                    },
                ],
                "edges": [
                    {"source": "start", "target": "outer"},
                    {"source": "outer", "target": "inner", "sourceHandle": "loop-start-source"},
                    {"source": "inner", "target": "y", "sourceHandle": "parallel-start-source"},
                ],
                "loops": {
                    "outer": {"nodes": ["inner", "y"], "loopType": "forEach", "forEachItems": [1, 2]}
                },
                "parallels": {"inner": {"nodes": ["y"], "count": 2}},
            }
        )
        executor = WorkflowExecutor(graph, registry=registry, config=engine_config)
        result = await executor.execute()
        ctx = executor.context

        assert result.success
        outer = ctx.get_output("outer")["results"]
        assert [iteration["results"] for iteration in outer] == [[10, 11], [20, 21]]
        assert ctx.get_output("y_loop_outer_iteration_1_parallel_inner_iteration_0") == 20
        assert ctx.get_output("inner_loop_outer_iteration_0")["iterations"] == 2
