"""
Edge Protocol - How blocks connect in a workflow graph.

An edge is a directed data-flow dependency. Blocks with several named outputs
tag their edges with a source handle:

- source: the default output
- error: followed only when the source block fails
- condition-<id>: followed only when that condition branch is selected
- loop-start-source / parallel-start-source: from a container into its interior
- loop-end-source / parallel-end-source: from a container to the rest of the graph
"""

from pydantic import BaseModel, Field, model_validator

SOURCE_HANDLE = "source"
ERROR_HANDLE = "error"
CONDITION_HANDLE_PREFIX = "condition-"
LOOP_START_HANDLE = "loop-start-source"
LOOP_END_HANDLE = "loop-end-source"
PARALLEL_START_HANDLE = "parallel-start-source"
PARALLEL_END_HANDLE = "parallel-end-source"

START_HANDLES = frozenset({LOOP_START_HANDLE, PARALLEL_START_HANDLE})
END_HANDLES = frozenset({LOOP_END_HANDLE, PARALLEL_END_HANDLE})


def condition_handle(condition_id: str) -> str:
    return f"{CONDITION_HANDLE_PREFIX}{condition_id}"


class EdgeSpec(BaseModel):
    """
    Specification for an edge between blocks.

    Examples:
        EdgeSpec(source="start", target="agent")

        # Taken only when the "yes" branch of a condition block is selected
        EdgeSpec(source="check", target="notify", source_handle="condition-yes")
    """

    id: str = ""
    source: str = Field(description="Source block ID")
    target: str = Field(description="Target block ID")
    source_handle: str | None = None
    target_handle: str | None = None

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_keys(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            if "sourceHandle" in data and "source_handle" not in data:
                data["source_handle"] = data.pop("sourceHandle")
            if "targetHandle" in data and "target_handle" not in data:
                data["target_handle"] = data.pop("targetHandle")
        return data

    @model_validator(mode="after")
    def _derive_id(self) -> "EdgeSpec":
        if not self.id:
            handle = f":{self.source_handle}" if self.source_handle else ""
            self.id = f"{self.source}{handle}->{self.target}"
        return self

    @property
    def is_error_path(self) -> bool:
        return self.source_handle == ERROR_HANDLE

    @property
    def is_condition_branch(self) -> bool:
        return bool(self.source_handle) and self.source_handle.startswith(CONDITION_HANDLE_PREFIX)

    @property
    def is_group_start(self) -> bool:
        return self.source_handle in START_HANDLES

    @property
    def is_group_end(self) -> bool:
        return self.source_handle in END_HANDLES
