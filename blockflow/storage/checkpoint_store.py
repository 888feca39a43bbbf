"""
Checkpoint Store - Where paused runs are kept.

One record per execution id. ``take`` reads and removes a record in one step,
which makes a checkpoint a single-writer, single-reader handoff: a resume
consumes it, and a run that pauses again writes a fresh one.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

from blockflow.schemas.checkpoint import Checkpoint, CheckpointSummary
from blockflow.utils.io import atomic_write

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class CheckpointStore(ABC):
    """Persistence contract for paused-run checkpoints."""

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> None:
        """Store a checkpoint, replacing any existing one for the same id."""

    @abstractmethod
    async def load(self, execution_id: str) -> Checkpoint | None:
        """Return the checkpoint without consuming it."""

    @abstractmethod
    async def take(self, execution_id: str) -> Checkpoint | None:
        """Return and remove the checkpoint."""

    @abstractmethod
    async def delete(self, execution_id: str) -> bool:
        """Remove a checkpoint; True if one existed."""

    async def exists(self, execution_id: str) -> bool:
        return await self.load(execution_id) is not None

    @abstractmethod
    async def list(self, workflow_id: str | None = None) -> list[CheckpointSummary]:
        """Summaries of stored checkpoints, oldest pause first."""


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store, used by default and in tests."""

    def __init__(self):
        self._records: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: Checkpoint) -> None:
        # Stored serialized so callers never share mutable state with the store
        async with self._lock:
            self._records[checkpoint.execution_id] = checkpoint.to_json()

    async def load(self, execution_id: str) -> Checkpoint | None:
        async with self._lock:
            raw = self._records.get(execution_id)
        return Checkpoint.from_json(raw) if raw is not None else None

    async def take(self, execution_id: str) -> Checkpoint | None:
        async with self._lock:
            raw = self._records.pop(execution_id, None)
        return Checkpoint.from_json(raw) if raw is not None else None

    async def delete(self, execution_id: str) -> bool:
        async with self._lock:
            return self._records.pop(execution_id, None) is not None

    async def list(self, workflow_id: str | None = None) -> list[CheckpointSummary]:
        async with self._lock:
            raws = list(self._records.values())
        summaries = [CheckpointSummary.from_checkpoint(Checkpoint.from_json(r)) for r in raws]
        if workflow_id:
            summaries = [s for s in summaries if s.workflow_id == workflow_id]
        return sorted(summaries, key=lambda s: s.paused_at)


class FileCheckpointStore(CheckpointStore):
    """
    One JSON file per execution id.

    Directory structure:
        {base_path}/
            {execution_id}.json

    Writes go through a temp file + rename, so a crash mid-write never
    leaves a truncated checkpoint. Blocking file I/O runs in a thread.
    """

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)
        self._lock = asyncio.Lock()

    @staticmethod
    def _is_safe(execution_id: str) -> bool:
        return bool(_SAFE_KEY.match(execution_id)) and ".." not in execution_id

    def _path(self, execution_id: str) -> Path:
        if not self._is_safe(execution_id):
            raise ValueError(f"Invalid execution id for file storage: {execution_id!r}")
        return self.base_path / f"{execution_id}.json"

    async def save(self, checkpoint: Checkpoint) -> None:
        path = self._path(checkpoint.execution_id)

        def _write() -> None:
            self.base_path.mkdir(parents=True, exist_ok=True)
            with atomic_write(path) as f:
                f.write(checkpoint.to_json())
            logger.debug(f"Saved checkpoint {checkpoint.execution_id} to {path}")

        async with self._lock:
            await asyncio.to_thread(_write)

    def _read(self, path: Path) -> Checkpoint | None:
        if not path.exists():
            return None
        return Checkpoint.from_json(path.read_text(encoding="utf-8"))

    async def load(self, execution_id: str) -> Checkpoint | None:
        # Ids that could never have been saved here are simply absent
        if not self._is_safe(execution_id):
            return None
        path = self._path(execution_id)
        async with self._lock:
            return await asyncio.to_thread(self._read, path)

    async def take(self, execution_id: str) -> Checkpoint | None:
        if not self._is_safe(execution_id):
            return None
        path = self._path(execution_id)

        def _take() -> Checkpoint | None:
            checkpoint = self._read(path)
            if checkpoint is not None:
                path.unlink()
            return checkpoint

        async with self._lock:
            return await asyncio.to_thread(_take)

    async def delete(self, execution_id: str) -> bool:
        if not self._is_safe(execution_id):
            return False
        path = self._path(execution_id)

        def _delete() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        async with self._lock:
            return await asyncio.to_thread(_delete)

    async def list(self, workflow_id: str | None = None) -> list[CheckpointSummary]:
        def _scan() -> list[CheckpointSummary]:
            if not self.base_path.exists():
                return []
            summaries = []
            for path in self.base_path.glob("*.json"):
                try:
                    checkpoint = self._read(path)
                except ValueError as e:
                    logger.warning(f"Skipping unreadable checkpoint {path}: {e}")
                    continue
                if checkpoint is not None:
                    summaries.append(CheckpointSummary.from_checkpoint(checkpoint))
            return summaries

        async with self._lock:
            summaries = await asyncio.to_thread(_scan)
        if workflow_id:
            summaries = [s for s in summaries if s.workflow_id == workflow_id]
        return sorted(summaries, key=lambda s: s.paused_at)
