"""Loop and parallel group specifications."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class LoopType(StrEnum):
    FOR = "for"
    FOR_EACH = "forEach"


class ParallelType(StrEnum):
    COUNT = "count"
    COLLECTION = "collection"


def _accept_camel(data: Any, mapping: dict[str, str]) -> Any:
    if isinstance(data, dict):
        data = dict(data)
        for camel, snake in mapping.items():
            if camel in data and snake not in data:
                data[snake] = data.pop(camel)
    return data


class LoopSpec(BaseModel):
    """
    A loop group: its member blocks are re-run once per iteration.

    ``iterations`` bounds a ``for`` loop; ``for_each_items`` is the collection
    walked by a ``forEach`` loop (a list, a dict, a JSON string or a reference
    token resolved when the loop starts). When ``iterations`` is omitted the
    engine default applies.
    """

    id: str
    nodes: list[str] = Field(default_factory=list)
    loop_type: LoopType = LoopType.FOR
    iterations: int | None = None
    for_each_items: Any = None

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_keys(cls, data):
        return _accept_camel(data, {"loopType": "loop_type", "forEachItems": "for_each_items"})


class ParallelSpec(BaseModel):
    """
    A parallel group: its member blocks run once per branch, concurrently.

    ``count`` sets the number of branches for a ``count`` group; for a
    ``collection`` group each item of ``distribution`` gets its own branch.
    """

    id: str
    nodes: list[str] = Field(default_factory=list)
    parallel_type: ParallelType = ParallelType.COUNT
    count: int | None = None
    distribution: Any = None
    max_concurrency: int | None = Field(
        default=None, description="Per-group fan-out ceiling; engine default when unset"
    )

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_keys(cls, data):
        data = _accept_camel(
            data, {"parallelType": "parallel_type", "maxConcurrency": "max_concurrency"}
        )
        # Editor state stores a collection parallel's items without a type tag
        if (
            isinstance(data, dict)
            and "parallel_type" not in data
            and data.get("distribution") not in (None, "", [])
        ):
            data["parallel_type"] = ParallelType.COLLECTION
        return data
