"""
Result Schema - What a run returns to its caller.

The wire form uses camelCase keys (``isPaused``, ``executedBlockCount``...)
to match what editor and API clients consume; ``to_wire()`` produces it.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RunStatus(StrEnum):
    """Lifecycle of a workflow run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


# Allowed transitions; PAUSED only leaves through an explicit resume
RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PAUSED, RunStatus.CANCELLED}
    ),
    RunStatus.PAUSED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ExecutionMetadata(_WireModel):
    duration: float = 0.0  # milliseconds
    executed_block_count: int = 0
    start_time: str | None = None
    end_time: str | None = None
    wait_block_info: dict[str, Any] | None = None


class ExecutionResult(_WireModel):
    """Outcome of ``execute`` / ``resume``."""

    success: bool
    output: Any = None
    error: str | None = None
    error_details: dict[str, Any] | None = None
    logs: list[dict[str, Any]] = Field(default_factory=list)
    is_paused: bool = False
    status: RunStatus = RunStatus.COMPLETED
    execution_id: str | None = None
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)

    # The in-memory checkpoint of a paused run; persisted separately
    checkpoint: Any = Field(default=None, exclude=True)
