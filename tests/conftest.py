"""Shared fixtures for the blockflow test suite."""

import pytest

import blockflow.config as config_module
from blockflow.config import EngineConfig
from blockflow.execution.pause_resume import PauseResumeService
from blockflow.graph.handlers import default_registry
from blockflow.observability import clear_trace_context
from blockflow.storage.checkpoint_store import InMemoryCheckpointStore


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the user's ~/.blockflow config and BLOCKFLOW_* env out of tests."""
    monkeypatch.setattr(config_module, "BLOCKFLOW_CONFIG_FILE", tmp_path / "no-config.json")
    for name in (
        "MAX_CONCURRENCY",
        "DEFAULT_PARALLEL_CONCURRENCY",
        "DEFAULT_LOOP_ITERATIONS",
        "MAX_STEPS",
        "BLOCK_TIMEOUT_SECONDS",
        "CHECKPOINT_DIR",
        "LOG_LEVEL",
        "LOG_FORMAT",
    ):
        monkeypatch.delenv(f"BLOCKFLOW_{name}", raising=False)
    yield
    clear_trace_context()


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(
        max_concurrency=8,
        default_parallel_concurrency=4,
        default_loop_iterations=5,
        max_steps=500,
        block_timeout_seconds=None,
        checkpoint_dir=tmp_path / "checkpoints",
    )


@pytest.fixture
def registry():
    """A private copy of the built-in block registry for custom test handlers."""
    return default_registry.copy()


@pytest.fixture
def pause_service():
    return PauseResumeService(InMemoryCheckpointStore())
