"""Tests for execution context encoding and the checkpoint schema."""

import json

import pytest

from blockflow.graph.context import BlockLog, ExecutionContext, GroupExecution
from blockflow.graph.workflow import WorkflowGraph
from blockflow.schemas.checkpoint import (
    CONTEXT_ENCODING_VERSION,
    Checkpoint,
    CheckpointSummary,
    decode_execution_context,
    encode_execution_context,
)


@pytest.fixture
def graph():
    return WorkflowGraph.load(
        {
            "id": "ckpt",
            "blocks": [
                {"id": "start", "type": "starter"},
                {"id": "cond", "type": "condition"},
                {"id": "a", "type": "function"},
                {"id": "b", "type": "function", "enabled": False},
            ],
            "edges": [
                {"source": "start", "target": "cond"},
                {"source": "cond", "target": "a", "sourceHandle": "condition-yes"},
                {"source": "cond", "target": "b", "sourceHandle": "condition-no"},
            ],
        }
    )


@pytest.fixture
def context(graph):
    ctx = ExecutionContext(
        workflow=graph,
        workflow_id=graph.id,
        execution_id="exec-ckpt",
        environment_variables={"API_KEY": "k"},
        workflow_variables={"count": 2},
        workflow_input={"message": "hi"},
    )
    ctx.record_output("start", {"message": "hi"}, 1.5)
    ctx.record_output("cond", {"selectedConditionId": "yes"})
    ctx.condition_decisions["cond"] = "condition-yes"
    ctx.mark_skipped("b")
    ctx.mark_disabled("z")
    ctx.group_executions["loop1"] = GroupExecution(total=3, items=[1, 2, 3], current_iteration=1)
    ctx.block_logs.append(
        BlockLog(
            block_id="start",
            block_name="start",
            block_type="starter",
            started_at="2026-01-01T00:00:00+00:00",
            ended_at="2026-01-01T00:00:01+00:00",
            duration_ms=1.5,
            success=True,
            output={"message": "hi"},
        )
    )
    ctx.metadata["waitBlockInfo"] = {"blockId": "w", "stateKey": "w"}
    return ctx


class TestContextEncoding:
    def test_encoding_uses_plain_json_types(self, context):
        encoded = encode_execution_context(context)

        assert encoded["version"] == CONTEXT_ENCODING_VERSION
        assert encoded["executedBlocks"] == ["cond", "start"]
        assert encoded["skippedBlocks"] == ["b"]
        assert encoded["conditionDecisions"] == [["cond", "condition-yes"]]
        assert encoded["blockStates"][0] == [
            "start",
            {"output": {"message": "hi"}, "executed": True, "executionTime": 1.5},
        ]
        # Survives a JSON round trip unchanged
        assert json.loads(json.dumps(encoded)) == encoded

    def test_decode_restores_every_field(self, context, graph):
        encoded = json.loads(json.dumps(encode_execution_context(context)))
        restored = decode_execution_context(encoded, graph)

        assert restored.workflow is graph
        assert restored.execution_id == "exec-ckpt"
        assert restored.executed_blocks == {"start", "cond"}
        assert restored.skipped_blocks == {"b"}
        assert restored.disabled_blocks == {"z"}
        assert restored.get_output("start") == {"message": "hi"}
        assert restored.block_states["start"].execution_time == 1.5
        assert restored.condition_decisions == {"cond": "condition-yes"}
        assert restored.environment_variables == {"API_KEY": "k"}
        assert restored.workflow_variables == {"count": 2}
        assert restored.workflow_input == {"message": "hi"}
        assert restored.group_executions["loop1"].current_iteration == 1
        assert restored.group_executions["loop1"].results == [None, None, None]
        assert restored.block_logs[0].block_id == "start"
        assert restored.wait_block_info == {"blockId": "w", "stateKey": "w"}
        assert restored.metadata["startTime"] == context.metadata["startTime"]

    def test_unknown_version_is_rejected(self, context, graph):
        encoded = encode_execution_context(context)
        encoded["version"] = 99

        with pytest.raises(ValueError, match="encoding version"):
            decode_execution_context(encoded, graph)


class TestCheckpoint:
    def test_json_round_trip(self, context):
        checkpoint = Checkpoint.from_context(context, metadata={"pendingBlocks": ["a"]})
        text = checkpoint.to_json()
        raw = json.loads(text)

        assert raw["executionId"] == "exec-ckpt"
        assert raw["workflowId"] == "ckpt"
        assert "workflowState" in raw
        assert "executionContext" in raw

        again = Checkpoint.from_json(text)
        assert again.execution_id == checkpoint.execution_id
        assert again.metadata == {"pendingBlocks": ["a"]}
        assert again.environment_variables == {"API_KEY": "k"}

    def test_restore_context_rebuilds_graph(self, context):
        checkpoint = Checkpoint.from_json(Checkpoint.from_context(context).to_json())
        restored = checkpoint.restore_context()

        assert restored.workflow.id == "ckpt"
        assert restored.workflow.get_block("b").enabled is False
        assert restored.executed_blocks == context.executed_blocks

    def test_accepts_snake_case_fields(self, context):
        data = Checkpoint.from_context(context).model_dump()
        assert Checkpoint.model_validate(data).execution_id == "exec-ckpt"

    def test_summary(self, context):
        checkpoint = Checkpoint.from_context(
            context, metadata={"waitBlockInfo": {"blockId": "w"}}
        )
        summary = CheckpointSummary.from_checkpoint(checkpoint)

        assert summary.execution_id == "exec-ckpt"
        assert summary.wait_block_info == {"blockId": "w"}
        assert summary.model_dump(by_alias=True)["pausedAt"] == checkpoint.paused_at


class TestPendingWaits:
    def test_waits_resume_in_branch_order(self, graph):
        ctx = ExecutionContext(workflow=graph, workflow_id=graph.id, execution_id="exec-w")
        for index in (1, 0):
            key = f"w_parallel_fan_iteration_{index}"
            ctx.record_output(key, {"status": "waiting"})
            ctx.add_pending_wait({"blockId": "w", "stateKey": key, "iterationPath": [index]})

        assert ctx.wait_block_info["stateKey"] == "w_parallel_fan_iteration_0"

        assert ctx.apply_resume_input("first")
        assert ctx.get_output("w_parallel_fan_iteration_0")["resume_input"] == "first"
        assert [w["stateKey"] for w in ctx.pending_waits] == ["w_parallel_fan_iteration_1"]

        assert ctx.apply_resume_input("second")
        assert ctx.pending_waits == []
        assert ctx.wait_block_info is None
        assert not ctx.apply_resume_input("extra")

    def test_pending_waits_and_depth_survive_encoding(self, graph):
        ctx = ExecutionContext(
            workflow=graph, workflow_id=graph.id, execution_id="exec-w", workflow_depth=2
        )
        ctx.add_pending_wait({"blockId": "w", "stateKey": "w"})

        restored = decode_execution_context(
            json.loads(json.dumps(encode_execution_context(ctx))), graph
        )

        assert restored.workflow_depth == 2
        assert restored.pending_waits == [{"blockId": "w", "stateKey": "w"}]
