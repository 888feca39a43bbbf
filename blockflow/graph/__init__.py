"""Graph structures: blocks, edges, groups, references and execution."""

from blockflow.graph.block import BlockSpec, BlockType, normalize_block_name
from blockflow.graph.context import BlockLog, BlockState, ExecutionContext, Frame, GroupExecution
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.executor import WorkflowExecutor
from blockflow.graph.groups import LoopSpec, LoopType, ParallelSpec, ParallelType
from blockflow.graph.handlers import (
    BlockContext,
    BlockHandler,
    BlockRegistry,
    BlockResult,
    WaitInfo,
    WorkflowHandler,
    default_registry,
)
from blockflow.graph.references import SYSTEM_REFERENCE_PREFIXES, ReferenceResolver
from blockflow.graph.safe_eval import EvaluationError, safe_eval
from blockflow.graph.workflow import WorkflowGraph

__all__ = [
    # Graph model
    "BlockSpec",
    "BlockType",
    "EdgeSpec",
    "LoopSpec",
    "LoopType",
    "ParallelSpec",
    "ParallelType",
    "WorkflowGraph",
    "normalize_block_name",
    # References
    "ReferenceResolver",
    "SYSTEM_REFERENCE_PREFIXES",
    "safe_eval",
    "EvaluationError",
    # Run state
    "ExecutionContext",
    "BlockState",
    "BlockLog",
    "Frame",
    "GroupExecution",
    # Handlers
    "BlockContext",
    "BlockHandler",
    "BlockRegistry",
    "BlockResult",
    "WaitInfo",
    "WorkflowHandler",
    "default_registry",
    # Execution
    "WorkflowExecutor",
]
