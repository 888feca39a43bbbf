"""
Workflow Executor - Runs workflow graphs.

The executor:
1. Takes a validated WorkflowGraph and resolves a handler for every block
2. Creates (or rehydrates) an ExecutionContext
3. Walks the graph in dependency layers, dispatching ready blocks
4. Expands loop and parallel containers into nested traversals
5. Pauses at wait blocks, checkpointing the run for a later resume
6. Returns an ExecutionResult

Only the coordinator coroutine of each scope writes to the context; blocks
dispatched together return their results and the coordinator commits them
in layer order after the join.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from blockflow.config import EngineConfig
from blockflow.errors import (
    BlockExecutionError,
    BlockflowError,
    ExecutionCancelledError,
    StructuralError,
)
from blockflow.graph.block import BlockSpec, BlockType
from blockflow.graph.context import BlockLog, ExecutionContext, Frame, GroupExecution, state_key
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.groups import LoopType, ParallelType
from blockflow.graph.handlers import (
    BlockContext,
    BlockHandler,
    BlockRegistry,
    BlockResult,
    as_block_result,
    default_registry,
)
from blockflow.graph.references import ReferenceResolver
from blockflow.graph.workflow import WorkflowGraph
from blockflow.observability.logging import set_trace_context, trace_context
from blockflow.runner.tool_registry import ToolRegistry
from blockflow.runtime.event_bus import EventBus
from blockflow.schemas.checkpoint import Checkpoint, decode_execution_context
from blockflow.schemas.result import (
    RUN_TRANSITIONS,
    ExecutionMetadata,
    ExecutionResult,
    RunStatus,
)

_READY = "ready"
_WAIT = "wait"
_SKIP = "skip"
_UNREACHABLE = "unreachable"


@dataclass
class _Outcome:
    """What a dispatched block hands back to its scope coordinator."""

    block_id: str
    key: str
    result: BlockResult | None = None
    error: BlockflowError | None = None
    group_paused: bool = False
    started_at: str = ""
    duration_ms: float = 0.0
    frames: list[Frame] = field(default_factory=list)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class WorkflowExecutor:
    """
    Executes one workflow run.

    Example:
        graph = WorkflowGraph.load(data)
        executor = WorkflowExecutor(graph, tool_registry=tools)
        result = await executor.execute(workflow_input={"message": "hi"})

        if result.is_paused:
            # later, possibly in another process
            data = await service.resume_execution(result.execution_id)
            executor, context = WorkflowExecutor.create_from_paused_state(
                data.workflow_state, data.execution_context, extra_inputs={"ok": True}
            )
            result = await executor.resume_from_context(context)
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        registry: BlockRegistry | None = None,
        tool_registry: ToolRegistry | None = None,
        config: EngineConfig | None = None,
        pause_service: Any | None = None,
        event_bus: EventBus | None = None,
    ):
        self.graph = graph
        self.registry = (registry or default_registry).copy()
        self.tools = tool_registry or ToolRegistry()
        self.config = config or EngineConfig()
        self.pause_service = pause_service
        self.event_bus = event_bus
        self.resolver = ReferenceResolver(graph)
        self.logger = logging.getLogger(__name__)

        self.context: ExecutionContext | None = None
        self._status = RunStatus.PENDING
        self._cancel_event = asyncio.Event()
        self._pause_event = asyncio.Event()
        self._resume_applied = False
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._handlers = self._resolve_handlers()

    def _resolve_handlers(self) -> dict[str, BlockHandler]:
        problems = self.graph.structural_errors(self.registry)
        if problems:
            raise problems[0]
        handlers = {}
        for block in self.graph.blocks:
            if block.is_container:
                continue
            try:
                handlers[block.id] = self.registry.get(block.type)
            except KeyError as e:
                raise StructuralError(str(e.args[0]), block_id=block.id) from e
        return handlers

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    @property
    def status(self) -> RunStatus:
        return self._status

    def _transition(self, new_status: RunStatus) -> None:
        if new_status not in RUN_TRANSITIONS[self._status]:
            raise RuntimeError(f"Illegal run transition {self._status} -> {new_status}")
        self._status = new_status

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next dispatch."""
        self.logger.info("⏹ Cancellation requested")
        self._cancel_event.set()

    def request_pause(self) -> None:
        """Request a pause; takes effect before the next dispatch."""
        self.logger.info("⏸ Pause requested")
        self._pause_event.set()

    async def execute(
        self,
        workflow_input: Any = None,
        environment_variables: dict[str, str] | None = None,
        workflow_variables: dict[str, Any] | None = None,
        execution_id: str | None = None,
        workspace_id: str | None = None,
        is_deployed_context: bool = False,
        workflow_depth: int = 0,
    ) -> ExecutionResult:
        """Run the workflow from its entry block."""
        if self._status != RunStatus.PENDING:
            raise RuntimeError(f"Executor already used (status: {self._status})")

        self.context = ExecutionContext(
            workflow=self.graph,
            workflow_id=self.graph.id,
            execution_id=execution_id or str(uuid.uuid4()),
            workspace_id=workspace_id,
            is_deployed_context=is_deployed_context,
            workflow_depth=workflow_depth,
            environment_variables=dict(environment_variables or {}),
            workflow_variables=dict(workflow_variables or {}),
            workflow_input=workflow_input if workflow_input is not None else {},
        )
        return await self._drive(self.context, resumed=False)

    async def resume_from_context(
        self, context: ExecutionContext, resume_input: Any = None, wait_key: str | None = None
    ) -> ExecutionResult:
        """
        Continue a paused run at its first still-ready block.

        One pending wait is resumed per call. While other waits remain
        pending, the run pauses again right away under the same execution id.
        """
        if self._status not in (RunStatus.PENDING, RunStatus.PAUSED):
            raise RuntimeError(f"Cannot resume from status {self._status}")
        if context.workflow is not self.graph:
            context.workflow = self.graph
        if self._resume_applied:
            self._resume_applied = False
        elif context.wait_block_info:
            context.apply_resume_input(resume_input, wait_key=wait_key)
        self._pause_event.clear()
        self.context = context
        return await self._drive(context, resumed=True)

    @classmethod
    def create_from_paused_state(
        cls,
        workflow_state: dict[str, Any],
        execution_context: dict[str, Any] | ExecutionContext,
        environment_variables: dict[str, str] | None = None,
        workflow_input: Any = None,
        extra_inputs: Any = None,
        run_meta: dict[str, Any] | None = None,
        wait_key: str | None = None,
        **executor_kwargs: Any,
    ) -> tuple["WorkflowExecutor", ExecutionContext]:
        """
        Rebuild an executor and context from a checkpoint.

        Prior block states and executed blocks are preserved, so the run
        continues exactly where it stopped. ``extra_inputs`` is merged into
        the paused wait block's output under ``resume_input``; ``wait_key``
        selects which pending wait receives it when several are waiting.
        """
        graph = WorkflowGraph.load(workflow_state)
        if isinstance(execution_context, ExecutionContext):
            context = execution_context
            context.workflow = graph
        else:
            context = decode_execution_context(execution_context, graph)

        if environment_variables is not None:
            context.environment_variables = dict(environment_variables)
        if workflow_input is not None:
            context.workflow_input = workflow_input
        if run_meta:
            context.metadata.update(run_meta)
        if context.wait_block_info:
            context.apply_resume_input(extra_inputs, wait_key=wait_key)

        executor = cls(graph, **executor_kwargs)
        executor.context = context
        executor._resume_applied = True
        return executor, context

    @classmethod
    async def resume_paused(
        cls,
        pause_service: Any,
        execution_id: str,
        extra_inputs: Any = None,
        wait_key: str | None = None,
        **executor_kwargs: Any,
    ) -> ExecutionResult | None:
        """Consume a stored checkpoint and continue the run; None if nothing is paused."""
        data = await pause_service.resume_execution(execution_id)
        if data is None:
            return None
        executor, context = cls.create_from_paused_state(
            data.workflow_state,
            data.execution_context,
            environment_variables=data.environment_variables,
            workflow_input=data.workflow_input,
            extra_inputs=extra_inputs,
            wait_key=wait_key,
            pause_service=pause_service,
            **executor_kwargs,
        )
        return await executor.resume_from_context(context)

    async def _drive(self, ctx: ExecutionContext, resumed: bool) -> ExecutionResult:
        started = time.perf_counter()
        self._transition(RunStatus.RUNNING)
        # Other branches still waiting for their own input
        still_waiting = resumed and ctx.wait_block_info is not None
        if not still_waiting:
            ctx.metadata.pop("pendingBlocks", None)

        previous_trace = trace_context.get()
        set_trace_context(execution_id=ctx.execution_id, workflow_id=ctx.workflow_id)
        tool_token = ToolRegistry.set_execution_context(
            execution_id=ctx.execution_id,
            workflow_id=ctx.workflow_id,
            workspace_id=ctx.workspace_id,
        )

        try:
            if resumed:
                self.logger.info(f"🔄 Resuming execution {ctx.execution_id}")
                if self.event_bus:
                    await self.event_bus.emit_execution_resumed(*self._run_ids)
            else:
                self.logger.info(
                    f"🚀 Starting workflow '{self.graph.id}' (execution {ctx.execution_id})"
                )
                if self.event_bus:
                    await self.event_bus.emit_execution_started(*self._run_ids, ctx.workflow_input)

            try:
                paused = still_waiting or await self._run_scope(None, [])
            except ExecutionCancelledError as e:
                self._transition(RunStatus.CANCELLED)
                self.logger.info("⏹ Execution cancelled")
                if self.event_bus:
                    await self.event_bus.emit_execution_cancelled(*self._run_ids)
                return self._build_result(
                    ctx, started, success=False, status=RunStatus.CANCELLED,
                    error=e.message, error_details=e.to_dict(),
                )
            except BlockflowError as e:
                self._transition(RunStatus.FAILED)
                self.logger.error(f"✗ Execution failed: {e.message}", extra={"block_id": e.block_id})
                if self.event_bus:
                    await self.event_bus.emit_execution_failed(
                        *self._run_ids, e.message, block_id=e.block_id
                    )
                return self._build_result(
                    ctx, started, success=False, status=RunStatus.FAILED,
                    error=e.message, error_details=e.to_dict(),
                )

            if paused:
                return await self._pause(ctx, started)

            self._transition(RunStatus.COMPLETED)
            output = self._final_output(ctx)
            self.logger.info(
                f"✓ Execution complete: {len(ctx.executed_blocks)} blocks executed"
            )
            if self.event_bus:
                await self.event_bus.emit_execution_completed(*self._run_ids, output)
            return self._build_result(
                ctx, started, success=True, status=RunStatus.COMPLETED, output=output
            )
        finally:
            ToolRegistry.reset_execution_context(tool_token)
            trace_context.set(previous_trace)

    async def _pause(self, ctx: ExecutionContext, started: float) -> ExecutionResult:
        self._transition(RunStatus.PAUSED)
        wait_info = ctx.wait_block_info
        checkpoint = Checkpoint.from_context(
            ctx,
            metadata={
                "waitBlockInfo": wait_info,
                "pendingWaits": ctx.pending_waits,
                "pendingBlocks": ctx.metadata.get("pendingBlocks", []),
            },
        )
        if self.pause_service is not None:
            await self.pause_service.pause_execution(checkpoint=checkpoint)

        if wait_info:
            waiting = len(ctx.pending_waits)
            where = f"at block '{wait_info['blockId']}'" + (
                f" ({waiting} waits pending)" if waiting > 1 else ""
            )
        else:
            where = "on request"
        self.logger.info(f"⏸ Execution {ctx.execution_id} paused {where}")
        if self.event_bus:
            await self.event_bus.emit_execution_paused(*self._run_ids, wait_info)
        result = self._build_result(
            ctx, started, success=True, status=RunStatus.PAUSED,
            output=self._final_output(ctx),
        )
        result.is_paused = True
        result.checkpoint = checkpoint
        return result

    def _build_result(
        self,
        ctx: ExecutionContext,
        started: float,
        success: bool,
        status: RunStatus,
        output: Any = None,
        error: str | None = None,
        error_details: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            success=success,
            output=output,
            error=error,
            error_details=error_details,
            logs=[log.to_dict() for log in ctx.block_logs],
            status=status,
            execution_id=ctx.execution_id,
            metadata=ExecutionMetadata(
                duration=round((time.perf_counter() - started) * 1000, 3),
                executed_block_count=len(ctx.executed_blocks),
                start_time=ctx.metadata.get("startTime"),
                end_time=_now(),
                wait_block_info=ctx.wait_block_info if status == RunStatus.PAUSED else None,
            ),
        )

    def _final_output(self, ctx: ExecutionContext) -> Any:
        for block in self.graph.blocks:
            if (
                block.type == BlockType.RESPONSE
                and self.graph.group_of(block.id) is None
                and block.id in ctx.executed_blocks
            ):
                return ctx.get_output(block.id)
        for log in reversed(ctx.block_logs):
            if not log.frames and log.success and log.block_id in ctx.executed_blocks:
                return ctx.get_output(log.block_id)
        return None

    @property
    def _run_ids(self) -> tuple[str, str]:
        return self.context.workflow_id, self.context.execution_id

    # ------------------------------------------------------------------
    # Scope traversal
    # ------------------------------------------------------------------

    async def _run_scope(self, group_id: str | None, frames: list[Frame]) -> bool:
        """
        Run the blocks of one scope (top level or one group iteration).

        Returns True when the run paused inside this scope.
        """
        members = self.graph.members(group_id)
        steps = 0
        while True:
            if self._cancel_event.is_set():
                raise ExecutionCancelledError(block_id=group_id)

            ready, changed = await self._scan(members, frames)
            if not ready:
                if changed:
                    continue
                return False

            if self._pause_event.is_set():
                self._note_pending([state_key(b, frames) for b in ready])
                return True

            steps += 1
            if steps > self.config.max_steps:
                raise BlockflowError(
                    f"Exceeded max_steps ({self.config.max_steps}) while running "
                    f"{'group ' + repr(group_id) if group_id else 'workflow'}",
                    block_id=group_id,
                )

            outcomes = await asyncio.gather(
                *(self._dispatch(block_id, frames) for block_id in ready),
                return_exceptions=True,
            )

            paused = False
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
                if await self._commit(outcome):
                    paused = True

            if paused:
                self._note_pending(self._peek_ready(members, frames))
                return True

    async def _scan(self, members: list[str], frames: list[Frame]) -> tuple[list[str], bool]:
        """Ready blocks in declaration order; marks newly skipped and disabled blocks."""
        ctx = self.context
        ready: list[str] = []
        changed = False
        for block_id in members:
            key = state_key(block_id, frames)
            if ctx.is_decided(key):
                continue
            verdict = self._readiness(block_id, frames)
            if verdict == _SKIP:
                ctx.mark_skipped(key)
                changed = True
                self.logger.debug(f"Skipping block '{block_id}': no live incoming path")
                if self.event_bus:
                    await self.event_bus.emit_block_skipped(*self._run_ids, block_id, "no_live_path")
            elif verdict == _READY:
                if not self.graph.get_block(block_id).enabled:
                    ctx.mark_disabled(key)
                    changed = True
                    self.logger.info(f"Skipping disabled block '{block_id}'")
                    if self.event_bus:
                        await self.event_bus.emit_block_skipped(*self._run_ids, block_id, "disabled")
                else:
                    ready.append(block_id)
        return ready, changed

    def _note_pending(self, keys: list[str]) -> None:
        pending = self.context.metadata.setdefault("pendingBlocks", [])
        pending.extend(k for k in keys if k not in pending)

    def _peek_ready(self, members: list[str], frames: list[Frame]) -> list[str]:
        return [
            state_key(block_id, frames)
            for block_id in members
            if not self.context.is_decided(state_key(block_id, frames))
            and self._readiness(block_id, frames) == _READY
        ]

    def _readiness(self, block_id: str, frames: list[Frame]) -> str:
        incoming = self.graph.get_incoming_edges(block_id)
        if not incoming:
            block = self.graph.get_block(block_id)
            # Interior blocks without edges start their iteration
            if block.is_entry or self.graph.group_of(block_id) is not None:
                return _READY
            return _UNREACHABLE

        live = False
        for edge in incoming:
            if edge.is_group_start:
                live = True
                continue
            source_key = self.context.key_for(edge.source, frames)
            if not self.context.is_decided(source_key):
                return _WAIT
            if self._edge_is_live(edge, source_key):
                live = True
        return _READY if live else _SKIP

    def _edge_is_live(self, edge: EdgeSpec, source_key: str) -> bool:
        ctx = self.context
        if source_key in ctx.skipped_blocks:
            return False
        if source_key in ctx.disabled_blocks:
            return not edge.is_error_path
        if edge.is_error_path:
            return source_key in ctx.errored_blocks
        if source_key in ctx.errored_blocks:
            return False
        if edge.is_condition_branch:
            return ctx.condition_decisions.get(source_key) == edge.source_handle
        if source_key in ctx.router_decisions:
            return ctx.router_decisions[source_key] == edge.target
        return True

    # ------------------------------------------------------------------
    # Dispatch and commit
    # ------------------------------------------------------------------

    async def _dispatch(self, block_id: str, frames: list[Frame]) -> _Outcome:
        block = self.graph.get_block(block_id)
        key = state_key(block_id, frames)
        set_trace_context(block_id=block_id)

        if block.is_container:
            return await self._run_group(block, key, frames)

        started_at = _now()
        t0 = time.perf_counter()
        if self.event_bus:
            await self.event_bus.emit_block_started(*self._run_ids, block_id, block.type)
        self.logger.debug(f"▶ Dispatching block '{block.display_name}' ({block.type})")

        result = None
        error: BlockflowError | None = None
        try:
            inputs = self.resolver.resolve_config(block, self.context, frames)
            block_ctx = BlockContext(
                execution=self.context,
                block=block,
                frames=list(frames),
                state_key=key,
                resolver=self.resolver,
                tools=self.tools,
                registry=self.registry,
                config=self.config,
            )
            async with self._semaphore:
                result = as_block_result(await self._call_handler(block, inputs, block_ctx))
        except BlockflowError as e:
            error = e
        except Exception as e:
            error = BlockExecutionError(block_id, e)

        return _Outcome(
            block_id=block_id,
            key=key,
            result=result,
            error=error,
            started_at=started_at,
            duration_ms=round((time.perf_counter() - t0) * 1000, 3),
            frames=list(frames),
        )

    async def _call_handler(self, block: BlockSpec, inputs: dict[str, Any], block_ctx: BlockContext):
        handler = self._handlers[block.id]
        timeout = self.config.block_timeout_seconds
        if not timeout:
            return await handler.execute(block, inputs, block_ctx)
        try:
            return await asyncio.wait_for(handler.execute(block, inputs, block_ctx), timeout)
        except TimeoutError as e:
            raise BlockExecutionError(block.id, f"Block timed out after {timeout}s") from e

    async def _commit(self, outcome: _Outcome) -> bool:
        """Write one outcome into the context. Returns True if the run must pause."""
        ctx = self.context
        block = self.graph.get_block(outcome.block_id)
        extra = {
            "block_id": block.id,
            "block_type": block.type,
            "duration_ms": outcome.duration_ms,
            "iteration": [f.to_dict() for f in outcome.frames] or None,
        }

        if outcome.group_paused:
            return True

        if outcome.error is not None:
            error = outcome.error
            self._log_block(outcome, block, success=False, error=error.message)
            if self.event_bus:
                await self.event_bus.emit_block_failed(*self._run_ids, block.id, error.message)
            routes_error = any(e.is_error_path for e in self.graph.get_outgoing_edges(block.id))
            if routes_error and not isinstance(error, ExecutionCancelledError):
                ctx.record_output(outcome.key, {"error": error.message}, outcome.duration_ms)
                ctx.errored_blocks.add(outcome.key)
                self.logger.warning(
                    f"✗ Block '{block.display_name}' failed, routing to error path: {error.message}",
                    extra=extra,
                )
                return False
            self.logger.error(f"✗ Block '{block.display_name}' failed: {error.message}", extra=extra)
            raise error

        result = outcome.result
        ctx.record_output(outcome.key, result.output, outcome.duration_ms)
        if result.selected_handle:
            ctx.condition_decisions[outcome.key] = result.selected_handle
        if result.selected_target:
            ctx.router_decisions[outcome.key] = result.selected_target
        if result.variables:
            ctx.workflow_variables.update(result.variables)

        self._log_block(outcome, block, success=True, output=result.output)
        self.logger.info(
            f"✓ Block '{block.display_name}' completed in {outcome.duration_ms}ms", extra=extra
        )
        if self.event_bus:
            await self.event_bus.emit_block_completed(*self._run_ids, block.id, result.output)

        if result.wait is not None:
            info = result.wait.to_dict()
            info["stateKey"] = outcome.key
            info["iterationPath"] = [f.index for f in outcome.frames]
            info["blockOrder"] = self.graph.order_of(block.id)
            ctx.add_pending_wait(info)
            return True
        return False

    def _log_block(
        self,
        outcome: _Outcome,
        block: BlockSpec,
        success: bool,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        self.context.block_logs.append(
            BlockLog(
                block_id=block.id,
                block_name=block.display_name,
                block_type=block.type,
                started_at=outcome.started_at,
                ended_at=_now(),
                duration_ms=outcome.duration_ms,
                success=success,
                output=output,
                error=error,
                frames=[f.to_dict() for f in outcome.frames],
            )
        )

    # ------------------------------------------------------------------
    # Loops and parallels
    # ------------------------------------------------------------------

    async def _run_group(self, block: BlockSpec, key: str, frames: list[Frame]) -> _Outcome:
        ctx = self.context
        group_id = block.id
        started_at = _now()
        t0 = time.perf_counter()
        outcome = _Outcome(block_id=group_id, key=key, started_at=started_at, frames=list(frames))

        try:
            execution = ctx.group_executions.get(key)
            if execution is None:
                items, total = self._group_plan(block, frames)
                execution = GroupExecution(total=total, items=items)
                ctx.group_executions[key] = execution
                if self.event_bus:
                    await self.event_bus.emit_block_started(*self._run_ids, group_id, block.type)
                self.logger.info(
                    f"↻ Running {block.type} '{block.display_name}' with {total} iterations"
                )

            if self.graph.group_kind(group_id) == BlockType.LOOP:
                paused = await self._run_loop(group_id, execution, frames)
            else:
                paused = await self._run_parallel(group_id, execution, frames)
        except ExecutionCancelledError:
            raise
        except BlockflowError as e:
            outcome.error = e
            outcome.duration_ms = round((time.perf_counter() - t0) * 1000, 3)
            return outcome

        outcome.duration_ms = round((time.perf_counter() - t0) * 1000, 3)
        if paused:
            outcome.group_paused = True
            return outcome

        output = {
            "results": list(execution.results),
            "iterations": execution.total,
            "completed": True,
        }
        if execution.items is not None:
            output["items"] = execution.items
        outcome.result = BlockResult(output=output)
        return outcome

    def _group_plan(self, block: BlockSpec, frames: list[Frame]) -> tuple[Any, int]:
        """Items (or None) and iteration count for a container about to start."""
        group_id = block.id
        if group_id in self.graph.loops:
            loop = self.graph.loops[group_id]
            if loop.loop_type == LoopType.FOR_EACH:
                items = self._resolve_collection(loop.for_each_items, block, frames)
                return items, len(items)
            iterations = loop.iterations
            if iterations is None:
                iterations = self.config.default_loop_iterations
            return None, iterations

        parallel = self.graph.parallels[group_id]
        if parallel.parallel_type == ParallelType.COLLECTION:
            items = self._resolve_collection(parallel.distribution, block, frames)
            return items, len(items)
        count = parallel.count
        if count is None:
            count = self.config.default_loop_iterations
        return None, count

    def _resolve_collection(self, raw: Any, block: BlockSpec, frames: list[Frame]) -> list[Any]:
        value = self.resolver.resolve_value(raw, block, self.context, frames)
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise BlockExecutionError(
                    block.id, f"Collection for '{block.id}' is not valid JSON: {e.msg}"
                ) from e
        if isinstance(value, dict):
            return [[k, v] for k, v in value.items()]
        if isinstance(value, (list, tuple)):
            return list(value)
        if value is None:
            return []
        raise BlockExecutionError(
            block.id, f"Collection for '{block.id}' must be a list or object, got {type(value).__name__}"
        )

    async def _run_loop(self, group_id: str, execution: GroupExecution, frames: list[Frame]) -> bool:
        for index in range(execution.current_iteration, execution.total):
            execution.current_iteration = index
            item = execution.items[index] if execution.items is not None else None
            frame = Frame(group_id, BlockType.LOOP, index, item=item, items=execution.items)
            iteration_frames = [*frames, frame]

            if self.event_bus:
                await self.event_bus.emit_group_iteration_started(*self._run_ids, group_id, index)
            if await self._run_scope(group_id, iteration_frames):
                return True
            execution.results[index] = self._iteration_result(group_id, iteration_frames)

        execution.current_iteration = execution.total
        return False

    async def _run_parallel(
        self, group_id: str, execution: GroupExecution, frames: list[Frame]
    ) -> bool:
        spec = self.graph.parallels[group_id]
        limit = spec.max_concurrency or self.config.default_parallel_concurrency
        gate = asyncio.Semaphore(limit)

        async def run_branch(index: int) -> bool:
            item = execution.items[index] if execution.items is not None else None
            frame = Frame(group_id, BlockType.PARALLEL, index, item=item, items=execution.items)
            branch_frames = [*frames, frame]
            async with gate:
                if self.event_bus:
                    await self.event_bus.emit_group_iteration_started(
                        *self._run_ids, group_id, index
                    )
                paused = await self._run_scope(group_id, branch_frames)
            if not paused:
                # Stored by index, so completion order never affects the aggregate
                execution.results[index] = self._iteration_result(group_id, branch_frames)
            return paused

        outcomes = await asyncio.gather(
            *(run_branch(i) for i in range(execution.total)), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        if any(outcomes):
            return True
        execution.current_iteration = execution.total
        return False

    def _iteration_result(self, group_id: str, frames: list[Frame]) -> Any:
        """Output of the iteration's terminal block(s)."""
        ctx = self.context
        executed = [
            m for m in self.graph.members(group_id) if state_key(m, frames) in ctx.executed_blocks
        ]
        executed_set = set(executed)
        terminal = [
            m
            for m in executed
            if not any(e.target in executed_set for e in self.graph.get_outgoing_edges(m))
        ]
        outputs = [ctx.get_output(state_key(m, frames)) for m in terminal]
        if not outputs:
            return None
        if len(outputs) == 1:
            return outputs[0]
        return outputs
