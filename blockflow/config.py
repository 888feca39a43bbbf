"""Engine configuration.

Defaults are read from the ``engine`` section of
~/.blockflow/configuration.json; ``BLOCKFLOW_*`` environment variables take
precedence over the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

BLOCKFLOW_HOME = Path.home() / ".blockflow"
BLOCKFLOW_CONFIG_FILE = BLOCKFLOW_HOME / "configuration.json"

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_PARALLEL_CONCURRENCY = 4
DEFAULT_LOOP_ITERATIONS = 5
DEFAULT_MAX_STEPS = 500


def get_blockflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load the configuration file, returning {} when absent or unreadable."""
    config_file = path or BLOCKFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _engine_setting(name: str, default: Any) -> Any:
    env_value = os.environ.get(f"BLOCKFLOW_{name.upper()}")
    if env_value is not None and env_value != "":
        return env_value
    return get_blockflow_config().get("engine", {}).get(name, default)


def _int_setting(name: str, default: int) -> int:
    value = _engine_setting(name, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_float_setting(name: str) -> float | None:
    value = _engine_setting(name, None)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def get_checkpoint_dir() -> Path:
    """Directory used by the file checkpoint store."""
    return Path(_engine_setting("checkpoint_dir", str(BLOCKFLOW_HOME / "checkpoints")))


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Runtime limits and defaults for workflow execution."""

    # Ceiling for sibling-ready blocks dispatched concurrently
    max_concurrency: int = field(
        default_factory=lambda: _int_setting("max_concurrency", DEFAULT_MAX_CONCURRENCY)
    )
    # Fan-out for parallel groups that do not declare max_concurrency
    default_parallel_concurrency: int = field(
        default_factory=lambda: _int_setting(
            "default_parallel_concurrency", DEFAULT_PARALLEL_CONCURRENCY
        )
    )
    default_loop_iterations: int = field(
        default_factory=lambda: _int_setting("default_loop_iterations", DEFAULT_LOOP_ITERATIONS)
    )
    # Dispatch rounds allowed per scope before the run is failed
    max_steps: int = field(default_factory=lambda: _int_setting("max_steps", DEFAULT_MAX_STEPS))
    block_timeout_seconds: float | None = field(
        default_factory=lambda: _optional_float_setting("block_timeout_seconds")
    )
    checkpoint_dir: Path = field(default_factory=get_checkpoint_dir)
    log_level: str = field(default_factory=lambda: str(_engine_setting("log_level", "INFO")))
    log_format: str = field(default_factory=lambda: str(_engine_setting("log_format", "auto")))

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.default_parallel_concurrency < 1:
            raise ValueError("default_parallel_concurrency must be at least 1")
        self.checkpoint_dir = Path(self.checkpoint_dir)
