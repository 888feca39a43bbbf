"""
Block Protocol - The nodes of a workflow graph.

A block is one step of a workflow: a trigger, a tool call, a conditional, a
loop or parallel container. Blocks are produced by the serializer from editor
state and are immutable during a run; everything a run learns about a block
lives in the ExecutionContext instead.
"""

import re
from typing import Any

from pydantic import BaseModel, Field


class BlockType:
    """Block type tags understood by the built-in handler registry."""

    STARTER = "starter"
    TRIGGER = "trigger"
    CONDITION = "condition"
    ROUTER = "router"
    VARIABLES = "variables"
    FUNCTION = "function"
    TOOL = "tool"
    RESPONSE = "response"
    WAIT = "wait"
    WORKFLOW = "workflow"
    LOOP = "loop"
    PARALLEL = "parallel"


# Types that may act as the single entry point of a workflow
ENTRY_BLOCK_TYPES = frozenset({BlockType.STARTER, BlockType.TRIGGER})

# Container blocks are walked by the scheduler rather than dispatched
CONTAINER_BLOCK_TYPES = frozenset({BlockType.LOOP, BlockType.PARALLEL})

_NON_ALNUM = re.compile(r"[\W_]+")


def normalize_block_name(name: str) -> str:
    """
    Canonical reference prefix for a block name or id.

    "Agent 1" -> "agent1", "fetch-user_data" -> "fetchuserdata".
    """
    return _NON_ALNUM.sub("", name.lower())


class BlockSpec(BaseModel):
    """
    Specification for one block of a workflow.

    Examples:
        BlockSpec(id="b1", type="starter", name="Start")

        BlockSpec(
            id="fmt",
            type="function",
            name="Format",
            config={"tool": "format_text", "params": {"text": "<start.message>"}},
            required_references=["start.message"],
        )
    """

    id: str
    type: str = Field(description="Block type tag, resolved against a BlockRegistry")
    name: str = ""
    position: dict[str, float] | None = Field(
        default=None, description="Editor layout metadata, ignored by the engine"
    )
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    # Inner text of reference tokens (e.g. "agent.content") that must resolve
    required_references: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def reference_prefix(self) -> str:
        return normalize_block_name(self.display_name)

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_BLOCK_TYPES

    @property
    def is_entry(self) -> bool:
        return self.type in ENTRY_BLOCK_TYPES
