"""
Checkpoint Schema - Durable snapshot of a paused run.

A checkpoint bundles the graph, the encoded ExecutionContext and the run
inputs, so any process holding the same block handlers can continue the run.

ExecutionContext holds dicts and sets; the encoding below writes maps as
ordered ``[key, value]`` arrays and sets as sorted arrays, tagged with a
version number, so a checkpoint never depends on an in-memory collection type.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from blockflow.graph.context import BlockLog, BlockState, ExecutionContext, GroupExecution
from blockflow.graph.workflow import WorkflowGraph

CONTEXT_ENCODING_VERSION = 1
CHECKPOINT_SCHEMA_VERSION = 1


def _pairs(mapping: dict[str, Any]) -> list[list[Any]]:
    return [[key, value] for key, value in mapping.items()]


def _unpairs(pairs: list[list[Any]] | None) -> dict[str, Any]:
    return {key: value for key, value in (pairs or [])}


def encode_execution_context(ctx: ExecutionContext) -> dict[str, Any]:
    """Encode a context into plain JSON types."""
    return {
        "version": CONTEXT_ENCODING_VERSION,
        "workflowId": ctx.workflow_id,
        "executionId": ctx.execution_id,
        "workspaceId": ctx.workspace_id,
        "isDeployedContext": ctx.is_deployed_context,
        "workflowDepth": ctx.workflow_depth,
        "blockStates": [[key, state.to_dict()] for key, state in ctx.block_states.items()],
        "executedBlocks": sorted(ctx.executed_blocks),
        "skippedBlocks": sorted(ctx.skipped_blocks),
        "disabledBlocks": sorted(ctx.disabled_blocks),
        "erroredBlocks": sorted(ctx.errored_blocks),
        "environmentVariables": _pairs(ctx.environment_variables),
        "workflowVariables": _pairs(ctx.workflow_variables),
        "workflowInput": ctx.workflow_input,
        "conditionDecisions": _pairs(ctx.condition_decisions),
        "routerDecisions": _pairs(ctx.router_decisions),
        "groupExecutions": [[key, ge.to_dict()] for key, ge in ctx.group_executions.items()],
        "blockLogs": [log.to_dict() for log in ctx.block_logs],
        "metadata": dict(ctx.metadata),
    }


def decode_execution_context(data: dict[str, Any], workflow: WorkflowGraph) -> ExecutionContext:
    """
    Rebuild a context from ``encode_execution_context`` output.

    Raises:
        ValueError: if the encoding version is not understood
    """
    version = data.get("version")
    if version != CONTEXT_ENCODING_VERSION:
        raise ValueError(f"Unsupported execution context encoding version: {version!r}")

    return ExecutionContext(
        workflow=workflow,
        workflow_id=data["workflowId"],
        execution_id=data["executionId"],
        workspace_id=data.get("workspaceId"),
        is_deployed_context=data.get("isDeployedContext", False),
        workflow_depth=data.get("workflowDepth", 0),
        block_states={
            key: BlockState.from_dict(value) for key, value in data.get("blockStates", [])
        },
        executed_blocks=set(data.get("executedBlocks", [])),
        skipped_blocks=set(data.get("skippedBlocks", [])),
        disabled_blocks=set(data.get("disabledBlocks", [])),
        errored_blocks=set(data.get("erroredBlocks", [])),
        environment_variables=_unpairs(data.get("environmentVariables")),
        workflow_variables=_unpairs(data.get("workflowVariables")),
        workflow_input=data.get("workflowInput"),
        condition_decisions=_unpairs(data.get("conditionDecisions")),
        router_decisions=_unpairs(data.get("routerDecisions")),
        group_executions={
            key: GroupExecution.from_dict(value) for key, value in data.get("groupExecutions", [])
        },
        block_logs=[BlockLog.from_dict(entry) for entry in data.get("blockLogs", [])],
        metadata=dict(data.get("metadata", {})),
    )


class Checkpoint(BaseModel):
    """
    Snapshot of a paused run, keyed by ``execution_id``.

    Consumed exactly once by a resume; a resumed run that pauses again
    writes a new checkpoint under the same id.
    """

    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    execution_id: str
    workflow_id: str
    workflow_state: dict[str, Any]
    execution_context: dict[str, Any]
    environment_variables: dict[str, str] = Field(default_factory=dict)
    workflow_input: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    paused_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    @classmethod
    def from_context(
        cls, ctx: ExecutionContext, metadata: dict[str, Any] | None = None
    ) -> "Checkpoint":
        return cls(
            execution_id=ctx.execution_id,
            workflow_id=ctx.workflow_id,
            workflow_state=ctx.workflow.to_state(),
            execution_context=encode_execution_context(ctx),
            environment_variables=dict(ctx.environment_variables),
            workflow_input=ctx.workflow_input,
            metadata=dict(metadata or {}),
        )

    def restore_context(self, workflow: WorkflowGraph | None = None) -> ExecutionContext:
        graph = workflow or WorkflowGraph.load(self.workflow_state)
        return decode_execution_context(self.execution_context, graph)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, text: str) -> "Checkpoint":
        return cls.model_validate_json(text)


class CheckpointSummary(BaseModel):
    """Listing entry for a paused run."""

    execution_id: str
    workflow_id: str
    paused_at: str
    wait_block_info: dict[str, Any] | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        return cls(
            execution_id=checkpoint.execution_id,
            workflow_id=checkpoint.workflow_id,
            paused_at=checkpoint.paused_at,
            wait_block_info=checkpoint.metadata.get("waitBlockInfo"),
        )
