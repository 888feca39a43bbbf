"""
Block handlers - What each block type does when dispatched.

The scheduler never branches on block type names: every type maps to a
handler in a ``BlockRegistry``, resolved once when the executor is built.
Built-in handlers cover the control blocks (starter, condition, router,
variables, response, wait), the tool-calling blocks (function, tool) and
child workflows (workflow); anything else is registered by the embedding application.

A handler receives the block spec, its config with references already
resolved, and a ``BlockContext``. It returns a ``BlockResult`` (or a plain
value, which becomes the block output).
"""

import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from blockflow.errors import BlockExecutionError, BlockflowError
from blockflow.graph.block import BlockSpec, BlockType
from blockflow.graph.context import ExecutionContext, Frame
from blockflow.graph.edge import condition_handle
from blockflow.graph.references import ReferenceResolver
from blockflow.graph.safe_eval import safe_eval
from blockflow.graph.workflow import WorkflowGraph
from blockflow.runner.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

WAIT_TRIGGER_TYPES = frozenset({"manual", "input", "api", "webhook", "schedule"})

MAX_WORKFLOW_DEPTH = 10
CHILD_ERROR_PREFIX = "Error in child workflow"


@dataclass
class WaitInfo:
    """Signal from a block that the run must pause for an external event."""

    block_id: str
    block_name: str
    paused_at: str
    trigger_type: str = "manual"
    description: str = ""
    trigger_config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockId": self.block_id,
            "blockName": self.block_name,
            "pausedAt": self.paused_at,
            "triggerType": self.trigger_type,
            "description": self.description,
            "triggerConfig": self.trigger_config,
        }


@dataclass
class BlockResult:
    """
    Outcome of one block execution.

    ``selected_handle`` picks a ``condition-<id>`` branch, ``selected_target``
    picks a router target, ``variables`` are written to the workflow
    variables by the scheduler, and ``wait`` pauses the run.
    """

    output: Any = None
    selected_handle: str | None = None
    selected_target: str | None = None
    variables: dict[str, Any] | None = None
    wait: WaitInfo | None = None


@dataclass
class BlockContext:
    """Read-only view of the run handed to block handlers."""

    execution: ExecutionContext
    block: BlockSpec
    frames: list[Frame]
    state_key: str
    resolver: ReferenceResolver
    tools: ToolRegistry
    # Handlers that start nested runs inherit these
    registry: "BlockRegistry | None" = None
    config: Any = None

    @property
    def workflow_input(self) -> Any:
        return self.execution.workflow_input

    @property
    def workflow_variables(self) -> dict[str, Any]:
        return dict(self.execution.workflow_variables)

    @property
    def iteration(self) -> Frame | None:
        return self.frames[-1] if self.frames else None

    def evaluate(self, expression: str) -> Any:
        """Evaluate an expression whose references are bound as placeholders."""
        rewritten, bindings = self.resolver.resolve_expression(
            expression, self.block, self.execution, self.frames
        )
        return safe_eval(rewritten, bindings)

    def resolve(self, value: Any) -> Any:
        return self.resolver.resolve_value(value, self.block, self.execution, self.frames)


@runtime_checkable
class BlockHandler(Protocol):
    async def execute(
        self, block: BlockSpec, inputs: dict[str, Any], ctx: BlockContext
    ) -> BlockResult | Any: ...


class FunctionHandler:
    """Adapts a plain ``func(block, inputs, ctx)`` (sync or async) to a handler."""

    def __init__(self, func: Callable[..., Any]):
        self.func = func

    async def execute(self, block: BlockSpec, inputs: dict[str, Any], ctx: BlockContext) -> Any:
        result = self.func(block, inputs, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


def as_block_result(value: Any) -> BlockResult:
    if isinstance(value, BlockResult):
        return value
    return BlockResult(output=value)


def _load_json(value: Any) -> Any:
    if isinstance(value, str) and value.strip():
        return json.loads(value)
    return value


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


class StarterHandler:
    """Emits the workflow input so every block can read it as ``<start.*>``."""

    async def execute(self, block, inputs, ctx) -> BlockResult:
        workflow_input = ctx.workflow_input
        if isinstance(workflow_input, dict):
            return BlockResult(output={"input": workflow_input, **workflow_input})
        return BlockResult(output={"input": workflow_input})


class ConditionHandler:
    """
    Picks the first condition whose expression is true.

    ``conditions`` is a list (or JSON string) of ``{"id", "title", "value"}``.
    An ``else`` entry, or one with an empty expression, always matches.
    """

    async def execute(self, block, inputs, ctx) -> BlockResult:
        conditions = _load_json(block.config.get("conditions", []))
        for condition in conditions or []:
            condition_id = str(condition.get("id", ""))
            title = condition.get("title", "")
            expression = str(condition.get("value", "") or "").strip()
            if title == "else" or not expression:
                matched = True
            else:
                matched = bool(ctx.evaluate(expression))
            if matched:
                return BlockResult(
                    output={
                        "conditionResult": True,
                        "selectedConditionId": condition_id,
                        "selectedOption": title or condition_id,
                    },
                    selected_handle=condition_handle(condition_id),
                )

        logger.info(f"No condition matched in block '{block.id}'")
        return BlockResult(
            output={"conditionResult": False, "selectedConditionId": None, "selectedOption": None},
        )


class RouterHandler:
    """
    Sends the run down exactly one outgoing edge.

    Either ``routes`` (``[{"target", "condition"}]``, first truthy wins) or a
    ``target`` value naming the next block by id or name.
    """

    async def execute(self, block, inputs, ctx) -> BlockResult:
        graph = ctx.execution.workflow
        candidates = {edge.target for edge in graph.get_outgoing_edges(block.id)}

        target = None
        for route in _load_json(block.config.get("routes", [])) or []:
            condition = str(route.get("condition", "") or "").strip()
            if not condition or ctx.evaluate(condition):
                target = ctx.resolve(route.get("target"))
                break
        if target is None:
            target = inputs.get("target")
        if target is None:
            raise ValueError(f"Router '{block.id}' selected no route")

        target = str(target)
        if target not in candidates:
            by_name = {
                (graph.get_block(c).name or c).lower(): c for c in candidates
            }
            target = by_name.get(target.lower(), target)
        if target not in candidates:
            raise ValueError(f"Router '{block.id}' selected '{target}', which it does not connect to")

        chosen = graph.get_block(target)
        return BlockResult(
            output={
                "selectedPath": {
                    "blockId": chosen.id,
                    "blockType": chosen.type,
                    "blockTitle": chosen.display_name,
                }
            },
            selected_target=target,
        )


class VariablesHandler:
    """Assigns workflow variables from ``variables`` (dict or list of name/value)."""

    async def execute(self, block, inputs, ctx) -> BlockResult:
        raw = inputs.get("variables", {})
        if isinstance(raw, str):
            raw = _load_json(raw)
        if isinstance(raw, list):
            assigned = {item["name"]: item.get("value") for item in raw if item.get("name")}
        else:
            assigned = dict(raw or {})
        return BlockResult(output={"assigned": assigned}, variables=assigned)


class ToolHandler:
    """Calls a registered tool by name with the resolved ``params``."""

    async def execute(self, block, inputs, ctx) -> BlockResult:
        name = inputs.get("tool") or inputs.get("function")
        if not name:
            raise ValueError(f"Block '{block.id}' does not name a tool")
        params = inputs.get("params") or {}
        result = await ctx.tools.call(name, params)
        output = result if isinstance(result, dict) else {"result": result}
        return BlockResult(output=output)


class ResponseHandler:
    """Declares the run output."""

    async def execute(self, block, inputs, ctx) -> BlockResult:
        return BlockResult(
            output={
                "data": inputs.get("data"),
                "status": inputs.get("status", 200),
                "headers": inputs.get("headers", {}),
            }
        )


class WaitHandler:
    """Pauses the run until it is resumed with external input."""

    async def execute(self, block, inputs, ctx) -> BlockResult:
        trigger_type = inputs.get("triggerType", "manual")
        if trigger_type not in WAIT_TRIGGER_TYPES:
            raise ValueError(
                f"Unknown wait trigger type '{trigger_type}'. Valid: {sorted(WAIT_TRIGGER_TYPES)}"
            )
        trigger_config = inputs.get("triggerConfig") or {}
        description = inputs.get("description", "")
        paused_at = datetime.now(UTC).isoformat()

        return BlockResult(
            output={
                "pausedAt": paused_at,
                "triggerType": trigger_type,
                "triggerConfig": trigger_config,
                "status": "waiting",
                "message": description or f"Waiting for {trigger_type} trigger",
            },
            wait=WaitInfo(
                block_id=block.id,
                block_name=block.display_name,
                paused_at=paused_at,
                trigger_type=trigger_type,
                description=description,
                trigger_config=trigger_config,
            ),
        )


class WorkflowHandler:
    """
    Runs a child workflow inline and returns its output.

    The child graph is taken from the block's raw ``workflow`` config, or
    looked up by ``workflowId`` in the catalog this handler was built with.
    ``inputMapping`` (an object or JSON string) or ``input`` becomes the
    child's workflow input. The child inherits environment variables, tools,
    block registry and engine config, and must finish without pausing.
    """

    def __init__(self, workflows: dict[str, Any] | None = None):
        self.workflows: dict[str, Any] = dict(workflows or {})

    def add_workflow(self, workflow_id: str, workflow_state: Any) -> None:
        self.workflows[workflow_id] = workflow_state

    async def execute(self, block, inputs, ctx) -> BlockResult:
        # Deferred: the executor module imports this one
        from blockflow.graph.executor import WorkflowExecutor

        parent = ctx.execution
        workflow_id = inputs.get("workflowId")
        state = block.config.get("workflow")
        if state is None and workflow_id is not None:
            state = self.workflows.get(workflow_id)
        if state is None:
            if workflow_id:
                raise BlockExecutionError(block.id, f"Child workflow {workflow_id} not found")
            raise BlockExecutionError(block.id, "No workflow selected for execution")
        name = workflow_id or block.display_name

        def failure(cause: str) -> BlockExecutionError:
            # Failures from deeper children already carry the prefix
            if cause.startswith(CHILD_ERROR_PREFIX):
                return BlockExecutionError(block.id, cause)
            return BlockExecutionError(block.id, f'{CHILD_ERROR_PREFIX} "{name}": {cause}')

        if parent.workflow_depth >= MAX_WORKFLOW_DEPTH:
            raise failure(f"Maximum workflow nesting depth of {MAX_WORKFLOW_DEPTH} exceeded")

        try:
            graph = WorkflowGraph.load(state)
        except BlockflowError as e:
            raise failure(e.message) from e
        name = workflow_id or graph.id or block.display_name

        child_input: Any = {}
        if inputs.get("inputMapping") is not None:
            mapping = inputs["inputMapping"]
            if isinstance(mapping, str):
                try:
                    mapping = json.loads(mapping)
                except json.JSONDecodeError:
                    mapping = None
            child_input = mapping if isinstance(mapping, dict) else {}
        elif inputs.get("input") is not None:
            child_input = inputs["input"]

        child_execution_id = f"{parent.execution_id}_sub_{ctx.state_key}"
        logger.info(
            f"Executing child workflow {name} ({child_execution_id}) at depth {parent.workflow_depth}"
        )
        try:
            executor = WorkflowExecutor(
                graph, registry=ctx.registry, tool_registry=ctx.tools, config=ctx.config
            )
        except BlockflowError as e:
            raise failure(e.message) from e
        result = await executor.execute(
            workflow_input=child_input,
            environment_variables=parent.environment_variables,
            workflow_variables=_load_json(block.config.get("variables")) or {},
            execution_id=child_execution_id,
            workspace_id=parent.workspace_id,
            is_deployed_context=parent.is_deployed_context,
            workflow_depth=parent.workflow_depth + 1,
        )

        if result.is_paused:
            raise failure("child workflows cannot pause; remove its wait blocks")
        if not result.success:
            raise failure(result.error or "Child workflow execution failed")

        logger.info(f"Child workflow {name} completed in {result.metadata.duration}ms")
        return BlockResult(
            output={
                "success": True,
                "childWorkflowName": name,
                "childExecutionId": child_execution_id,
                "result": result.output if result.output is not None else {},
            }
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class BlockRegistry:
    """Maps block type tags to handlers."""

    def __init__(self, handlers: dict[str, BlockHandler] | None = None):
        self._handlers: dict[str, BlockHandler] = dict(handlers or {})

    def register(self, block_type: str, handler: BlockHandler) -> None:
        if not hasattr(handler, "execute"):
            raise TypeError(f"Handler for '{block_type}' has no execute() method")
        self._handlers[block_type] = handler

    def register_function(self, block_type: str, func: Callable[..., Any]) -> None:
        """Register ``func(block, inputs, ctx)`` as the handler for a type."""
        self.register(block_type, FunctionHandler(func))

    def get(self, block_type: str) -> BlockHandler:
        if block_type not in self._handlers:
            raise KeyError(f"No handler registered for block type '{block_type}'")
        return self._handlers[block_type]

    def has(self, block_type: str) -> bool:
        return block_type in self._handlers

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def copy(self) -> "BlockRegistry":
        return BlockRegistry(self._handlers)


def _builtin_registry() -> BlockRegistry:
    registry = BlockRegistry()
    registry.register(BlockType.STARTER, StarterHandler())
    registry.register(BlockType.TRIGGER, StarterHandler())
    registry.register(BlockType.CONDITION, ConditionHandler())
    registry.register(BlockType.ROUTER, RouterHandler())
    registry.register(BlockType.VARIABLES, VariablesHandler())
    registry.register(BlockType.FUNCTION, ToolHandler())
    registry.register(BlockType.TOOL, ToolHandler())
    registry.register(BlockType.RESPONSE, ResponseHandler())
    registry.register(BlockType.WAIT, WaitHandler())
    registry.register(BlockType.WORKFLOW, WorkflowHandler())
    return registry


# Process-wide catalog; executors work on a copy
default_registry = _builtin_registry()
