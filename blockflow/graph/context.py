"""
Execution Context - The mutable record of one workflow run.

Everything a run learns lives here: per-block results, which blocks ran or
were skipped, branch decisions, loop/parallel progress, variables and logs.
The graph itself stays immutable. A context can be encoded into a checkpoint
and rebuilt in another process (see ``blockflow.schemas.checkpoint``).

Blocks inside loops and parallels run once per iteration, so results are
keyed by a *state key*: the block id plus one ``_{kind}_{group}_iteration_{n}``
suffix per enclosing iteration. Top-level blocks use their plain id.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from blockflow.graph.workflow import WorkflowGraph


@dataclass
class BlockState:
    """Result of one block execution (one per iteration inside groups)."""

    output: Any = None
    executed: bool = False
    execution_time: float = 0.0  # milliseconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "output": self.output,
            "executed": self.executed,
            "executionTime": self.execution_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlockState":
        return cls(
            output=data.get("output"),
            executed=data.get("executed", False),
            execution_time=data.get("executionTime", 0.0),
        )


@dataclass
class Frame:
    """One active loop or parallel iteration."""

    group_id: str
    kind: str  # "loop" | "parallel"
    index: int
    item: Any = None
    items: Any = None

    @property
    def suffix(self) -> str:
        return f"_{self.kind}_{self.group_id}_iteration_{self.index}"

    def to_dict(self) -> dict[str, Any]:
        return {"groupId": self.group_id, "kind": self.kind, "index": self.index}


def state_key(block_id: str, frames: list[Frame]) -> str:
    return block_id + "".join(frame.suffix for frame in frames)


@dataclass
class BlockLog:
    """Log entry for one executed block."""

    block_id: str
    block_name: str
    block_type: str
    started_at: str
    ended_at: str
    duration_ms: float
    success: bool
    output: Any = None
    error: str | None = None
    frames: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockId": self.block_id,
            "blockName": self.block_name,
            "blockType": self.block_type,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "durationMs": self.duration_ms,
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "frames": self.frames,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlockLog":
        return cls(
            block_id=data["blockId"],
            block_name=data.get("blockName", ""),
            block_type=data.get("blockType", ""),
            started_at=data.get("startedAt", ""),
            ended_at=data.get("endedAt", ""),
            duration_ms=data.get("durationMs", 0.0),
            success=data.get("success", True),
            output=data.get("output"),
            error=data.get("error"),
            frames=data.get("frames", []),
        )


@dataclass
class GroupExecution:
    """Progress of one loop or parallel container run."""

    total: int
    items: Any = None
    current_iteration: int = 0
    results: list[Any] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.results) < self.total:
            self.results.extend([None] * (self.total - len(self.results)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "items": self.items,
            "currentIteration": self.current_iteration,
            "results": self.results,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GroupExecution":
        return cls(
            total=data["total"],
            items=data.get("items"),
            current_iteration=data.get("currentIteration", 0),
            results=list(data.get("results", [])),
        )


@dataclass
class ExecutionContext:
    """
    Mutable state of a run in progress.

    Only the coordinator writes here. Concurrently dispatched blocks return
    their results to it, and keys are disjoint per block and iteration.
    """

    workflow: WorkflowGraph
    workflow_id: str
    execution_id: str
    workspace_id: str | None = None
    is_deployed_context: bool = False
    # 0 for a top-level run, +1 per enclosing workflow block
    workflow_depth: int = 0

    block_states: dict[str, BlockState] = field(default_factory=dict)
    executed_blocks: set[str] = field(default_factory=set)
    skipped_blocks: set[str] = field(default_factory=set)
    # Disabled blocks: not run, but their outgoing edges stay live
    disabled_blocks: set[str] = field(default_factory=set)
    # Blocks that failed and were routed along their error edges
    errored_blocks: set[str] = field(default_factory=set)

    environment_variables: dict[str, str] = field(default_factory=dict)
    workflow_variables: dict[str, Any] = field(default_factory=dict)
    workflow_input: Any = None

    # state key -> selected "condition-<id>" handle
    condition_decisions: dict[str, str] = field(default_factory=dict)
    # state key -> selected target block id
    router_decisions: dict[str, str] = field(default_factory=dict)

    group_executions: dict[str, GroupExecution] = field(default_factory=dict)
    block_logs: list[BlockLog] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.metadata.setdefault("startTime", datetime.now(UTC).isoformat())

    # ------------------------------------------------------------------
    # Block state
    # ------------------------------------------------------------------

    def key_for(self, block_id: str, frames: list[Frame]) -> str:
        """State key of a block as seen from the given iteration frames."""
        chain = self.workflow.group_chain(block_id)
        return state_key(block_id, [f for f in frames if f.group_id in chain])

    def get_output(self, key: str) -> Any:
        state = self.block_states.get(key)
        return state.output if state else None

    def has_output(self, key: str) -> bool:
        state = self.block_states.get(key)
        return state is not None and state.executed

    def record_output(self, key: str, output: Any, execution_time: float = 0.0) -> None:
        self.block_states[key] = BlockState(
            output=output, executed=True, execution_time=execution_time
        )
        self.executed_blocks.add(key)
        self.skipped_blocks.discard(key)

    def mark_skipped(self, key: str) -> None:
        self.skipped_blocks.add(key)

    def mark_disabled(self, key: str) -> None:
        self.disabled_blocks.add(key)

    def is_decided(self, key: str) -> bool:
        return (
            key in self.executed_blocks
            or key in self.skipped_blocks
            or key in self.disabled_blocks
        )

    # ------------------------------------------------------------------
    # Wait / resume bookkeeping
    # ------------------------------------------------------------------

    @property
    def wait_block_info(self) -> dict[str, Any] | None:
        """The wait block the next resume input goes to."""
        return self.metadata.get("waitBlockInfo")

    @property
    def pending_waits(self) -> list[dict[str, Any]]:
        """Every wait block still waiting for input, in resume order."""
        pending = self.metadata.get("pendingWaits")
        if pending is None:
            info = self.wait_block_info
            return [info] if info else []
        return list(pending)

    def add_pending_wait(self, info: dict[str, Any]) -> None:
        pending = self.pending_waits
        pending.append(info)
        # Parallel branches may pause in any order; resume them by position
        pending.sort(key=lambda w: (w.get("iterationPath", []), w.get("blockOrder", 0)))
        self.metadata["pendingWaits"] = pending
        self.metadata["waitBlockInfo"] = pending[0]

    def apply_resume_input(self, resume_input: Any, wait_key: str | None = None) -> bool:
        """
        Merge external input into one paused wait block's output.

        ``wait_key`` picks a pending wait by state key; by default the first
        pending wait is resumed. Returns False when there is nothing to resume.
        """
        pending = self.pending_waits
        if wait_key is None:
            info = pending[0] if pending else None
        else:
            info = next(
                (w for w in pending if w.get("stateKey", w.get("blockId")) == wait_key), None
            )
        if not info:
            return False

        key = info.get("stateKey", info.get("blockId"))
        state = self.block_states.get(key)
        if state is not None:
            output = dict(state.output) if isinstance(state.output, dict) else {"value": state.output}
            output["resume_input"] = resume_input
            output["status"] = "resumed"
            state.output = output
            self.metadata.setdefault("resumeHistory", []).append(
                {
                    "blockId": info.get("blockId"),
                    "stateKey": key,
                    "resumedAt": datetime.now(UTC).isoformat(),
                }
            )

        pending.remove(info)
        if pending:
            self.metadata["pendingWaits"] = pending
            self.metadata["waitBlockInfo"] = pending[0]
        else:
            self.metadata.pop("pendingWaits", None)
            self.metadata.pop("waitBlockInfo", None)
        return state is not None
