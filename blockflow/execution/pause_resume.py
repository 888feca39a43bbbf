"""
Pause/Resume Service - Durable handoff of paused runs.

The executor calls ``pause_execution`` when a run reaches a wait block; an
API layer, webhook or CLI later calls ``resume_execution`` with the same
execution id and hands the result to ``WorkflowExecutor.create_from_paused_state``.
Pausing and resuming the same id are serialized by a per-id lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from blockflow.errors import CheckpointNotFoundError
from blockflow.graph.context import ExecutionContext
from blockflow.schemas.checkpoint import Checkpoint, CheckpointSummary
from blockflow.storage.checkpoint_store import CheckpointStore, InMemoryCheckpointStore

logger = logging.getLogger(__name__)


@dataclass
class ResumeData:
    """Everything needed to rebuild a paused run."""

    execution_id: str
    workflow_id: str
    workflow_state: dict[str, Any]
    execution_context: dict[str, Any]
    environment_variables: dict[str, str] = field(default_factory=dict)
    workflow_input: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "ResumeData":
        return cls(
            execution_id=checkpoint.execution_id,
            workflow_id=checkpoint.workflow_id,
            workflow_state=checkpoint.workflow_state,
            execution_context=checkpoint.execution_context,
            environment_variables=dict(checkpoint.environment_variables),
            workflow_input=checkpoint.workflow_input,
            metadata=dict(checkpoint.metadata),
        )


class PauseResumeService:
    """Persists and hands back paused runs, keyed by execution id."""

    def __init__(self, store: CheckpointStore | None = None):
        self.store = store or InMemoryCheckpointStore()
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[execution_id] = lock
        return lock

    def _release_lock(self, execution_id: str) -> None:
        lock = self._locks.get(execution_id)
        if lock is not None and not lock.locked():
            del self._locks[execution_id]

    async def pause_execution(
        self,
        execution_id: str | None = None,
        checkpoint: Checkpoint | None = None,
        context: ExecutionContext | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """
        Persist a paused run, replacing any earlier checkpoint for its id.

        Pass either a ready ``checkpoint`` or the ``context`` to snapshot.
        """
        if checkpoint is None:
            if context is None:
                raise ValueError("pause_execution needs a checkpoint or a context")
            checkpoint = Checkpoint.from_context(context, metadata=metadata)
        if execution_id is not None and execution_id != checkpoint.execution_id:
            raise ValueError(
                f"Checkpoint belongs to '{checkpoint.execution_id}', not '{execution_id}'"
            )

        async with self._lock_for(checkpoint.execution_id):
            await self.store.save(checkpoint)
        logger.info(
            f"Paused execution {checkpoint.execution_id} of workflow {checkpoint.workflow_id}"
        )
        return checkpoint

    async def get_paused_execution(self, execution_id: str) -> Checkpoint | None:
        return await self.store.load(execution_id)

    async def list_paused_executions(
        self, workflow_id: str | None = None
    ) -> list[CheckpointSummary]:
        return await self.store.list(workflow_id)

    async def resume_execution(self, execution_id: str) -> ResumeData | None:
        """
        Consume the checkpoint for ``execution_id``.

        Returns None when nothing is paused under that id; callers report this
        as a normal condition.
        """
        async with self._lock_for(execution_id):
            checkpoint = await self.store.take(execution_id)
        self._release_lock(execution_id)
        if checkpoint is None:
            logger.warning(f"No paused execution found for {execution_id}")
            return None
        logger.info(f"Resuming execution {execution_id}")
        return ResumeData.from_checkpoint(checkpoint)

    async def require_paused_execution(self, execution_id: str) -> ResumeData:
        """Like ``resume_execution`` but raises CheckpointNotFoundError when absent."""
        data = await self.resume_execution(execution_id)
        if data is None:
            raise CheckpointNotFoundError(execution_id)
        return data

    async def delete_paused_execution(self, execution_id: str) -> bool:
        async with self._lock_for(execution_id):
            deleted = await self.store.delete(execution_id)
        self._release_lock(execution_id)
        return deleted

    async def is_execution_paused(self, execution_id: str) -> bool:
        return await self.store.exists(execution_id)
