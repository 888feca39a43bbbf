"""
blockflow - Execution engine for block-based workflow graphs.

Load a serialized graph, run it against live inputs, and pause/resume runs
that wait on external events:

    from blockflow import WorkflowExecutor, WorkflowGraph

    graph = WorkflowGraph.load(data)
    result = await WorkflowExecutor(graph).execute(workflow_input={"message": "hi"})
"""

from blockflow.config import EngineConfig
from blockflow.errors import (
    BlockExecutionError,
    BlockflowError,
    CheckpointNotFoundError,
    ExecutionCancelledError,
    ReferenceResolutionError,
    StructuralError,
)
from blockflow.execution.pause_resume import PauseResumeService, ResumeData
from blockflow.graph import (
    BlockRegistry,
    BlockResult,
    BlockSpec,
    EdgeSpec,
    ExecutionContext,
    LoopSpec,
    ParallelSpec,
    ReferenceResolver,
    WorkflowExecutor,
    WorkflowGraph,
    default_registry,
)
from blockflow.runner.tool_registry import ToolRegistry
from blockflow.runtime.event_bus import EventBus, EventType, ExecutionEvent
from blockflow.schemas.checkpoint import Checkpoint
from blockflow.schemas.result import ExecutionResult, RunStatus
from blockflow.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    # Graph
    "WorkflowGraph",
    "BlockSpec",
    "EdgeSpec",
    "LoopSpec",
    "ParallelSpec",
    "ReferenceResolver",
    "ExecutionContext",
    # Execution
    "WorkflowExecutor",
    "ExecutionResult",
    "RunStatus",
    "BlockRegistry",
    "BlockResult",
    "default_registry",
    "ToolRegistry",
    "EventBus",
    "EventType",
    "ExecutionEvent",
    # Pause / resume
    "Checkpoint",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "PauseResumeService",
    "ResumeData",
    # Errors
    "BlockflowError",
    "StructuralError",
    "ReferenceResolutionError",
    "BlockExecutionError",
    "CheckpointNotFoundError",
    "ExecutionCancelledError",
]
