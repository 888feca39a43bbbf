"""
Workflow Graph - The validated, immutable model a run executes.

The graph is blocks + edges + loop/parallel groups. Groups are represented by
a container block whose id equals the group id; edges into a group end at the
container, the container's start-handle edges lead to the interior, and any
other edge leaving the container is an exit. Because every edge stays inside
one scope (top level or a single group interior), the full edge set is a DAG
and the scheduler can treat each group as a single node of its parent scope.
"""

import json
import logging
from collections import deque
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr, model_validator

from blockflow.errors import StructuralError
from blockflow.graph.block import BlockSpec, BlockType
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.groups import LoopSpec, LoopType, ParallelSpec, ParallelType

logger = logging.getLogger(__name__)

GroupSpec = LoopSpec | ParallelSpec


def _keyed(value: Any) -> dict[str, Any]:
    """Accept groups either as {id: spec} or as a list of specs with ids."""
    if value is None:
        return {}
    if isinstance(value, dict):
        out = {}
        for key, spec in value.items():
            if isinstance(spec, dict):
                spec = {"id": key, **spec}
            out[key] = spec
        return out
    out = {}
    for spec in value:
        spec_id = spec["id"] if isinstance(spec, dict) else spec.id
        out[spec_id] = spec
    return out


class WorkflowGraph(BaseModel):
    """
    Complete workflow graph.

    Build one with ``WorkflowGraph.load(data)`` (or ``from_state`` for editor
    state); both validate and raise ``StructuralError`` naming the offending
    block or edge. Constructing the model directly skips validation, call
    ``validate()`` to get the list of problems instead.
    """

    id: str = "workflow"
    name: str = ""
    blocks: list[BlockSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    loops: dict[str, LoopSpec] = Field(default_factory=dict)
    parallels: dict[str, ParallelSpec] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    _blocks_by_id: dict[str, BlockSpec] = PrivateAttr(default_factory=dict)
    _order: dict[str, int] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _incoming: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _group_of: dict[str, str | None] = PrivateAttr(default_factory=dict)
    _ancestors: dict[str, frozenset[str]] = PrivateAttr(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize_collections(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            blocks = data.get("blocks")
            if isinstance(blocks, dict):
                data["blocks"] = [
                    {"id": key, **spec} if isinstance(spec, dict) else spec
                    for key, spec in blocks.items()
                ]
            data["loops"] = _keyed(data.get("loops"))
            data["parallels"] = _keyed(data.get("parallels"))
        return data

    def model_post_init(self, __context: Any) -> None:
        self._index()

    def _index(self) -> None:
        self._blocks_by_id = {}
        self._order = {}
        for i, block in enumerate(self.blocks):
            self._blocks_by_id.setdefault(block.id, block)
            self._order.setdefault(block.id, i)

        self._outgoing = {block.id: [] for block in self.blocks}
        self._incoming = {block.id: [] for block in self.blocks}
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)

        self._group_of = {}
        self._ancestors = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, data: dict[str, Any] | str, registry: Any | None = None) -> "WorkflowGraph":
        """Build and validate a graph, raising StructuralError on the first problem."""
        if isinstance(data, str):
            data = json.loads(data)
        graph = cls.model_validate(data)
        problems = graph.structural_errors(registry)
        if problems:
            raise problems[0]
        logger.debug(
            f"Loaded workflow '{graph.id}' with {len(graph.blocks)} blocks, "
            f"{len(graph.edges)} edges, {len(graph.groups)} groups"
        )
        return graph

    @classmethod
    def from_state(
        cls,
        state: dict[str, Any],
        workflow_id: str = "workflow",
        registry: Any | None = None,
    ) -> "WorkflowGraph":
        """
        Serialize editor state into a validated graph.

        Editor blocks keep their settings as ``subBlocks: {key: {"value": v}}``;
        these are flattened into ``config``. Any ``config`` already present wins.
        """
        raw_blocks = state.get("blocks", {})
        if isinstance(raw_blocks, dict):
            raw_blocks = [{"id": key, **spec} for key, spec in raw_blocks.items()]

        blocks = []
        for raw in raw_blocks:
            config = {
                key: sub.get("value") if isinstance(sub, dict) else sub
                for key, sub in (raw.get("subBlocks") or {}).items()
            }
            config.update(raw.get("config") or {})
            blocks.append(
                {
                    "id": raw["id"],
                    "type": raw["type"],
                    "name": raw.get("name", ""),
                    "position": raw.get("position"),
                    "config": config,
                    "enabled": raw.get("enabled", True),
                    "required_references": raw.get("requiredReferences", []),
                }
            )

        return cls.load(
            {
                "id": state.get("id", workflow_id),
                "name": state.get("name", ""),
                "blocks": blocks,
                "edges": state.get("edges", []),
                "loops": state.get("loops", {}),
                "parallels": state.get("parallels", {}),
            },
            registry=registry,
        )

    def to_state(self) -> dict[str, Any]:
        """JSON-safe form that ``load`` accepts back."""
        return self.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, registry: Any | None = None) -> list[str]:  # type: ignore[override]
        """Validate the graph structure, returning human-readable problems."""
        return [str(problem) for problem in self.structural_errors(registry)]

    def structural_errors(self, registry: Any | None = None) -> list[StructuralError]:
        errors = self._check_identity()
        if errors:
            return errors

        errors = self._check_membership()
        if errors:
            return errors

        errors.extend(self._check_entry())
        errors.extend(self._check_edge_scopes())
        if not errors:
            errors.extend(self._check_acyclic())
        errors.extend(self._check_group_parameters())

        if registry is not None:
            for block in self.blocks:
                if not block.is_container and not registry.has(block.type):
                    errors.append(
                        StructuralError(
                            f"No handler registered for block type '{block.type}'",
                            block_id=block.id,
                        )
                    )
        return errors

    def _check_identity(self) -> list[StructuralError]:
        errors = []
        seen: set[str] = set()
        for block in self.blocks:
            if block.id in seen:
                errors.append(
                    StructuralError(f"Duplicate block id '{block.id}'", block_id=block.id)
                )
            seen.add(block.id)

        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in seen:
                    errors.append(
                        StructuralError(
                            f"Edge '{edge.id}' references missing block '{endpoint}'",
                            block_id=endpoint,
                            edge_id=edge.id,
                        )
                    )

        for group_id, group in self.groups.items():
            container = self._blocks_by_id.get(group_id)
            kind = "loop" if group_id in self.loops else "parallel"
            if group_id in self.loops and group_id in self.parallels:
                errors.append(
                    StructuralError(
                        f"Group '{group_id}' is declared as both loop and parallel",
                        block_id=group_id,
                    )
                )
            if container is None or container.type != kind:
                errors.append(
                    StructuralError(
                        f"Group '{group_id}' has no '{kind}' container block",
                        block_id=group_id,
                    )
                )
            for node in group.nodes:
                if node == group_id:
                    errors.append(
                        StructuralError(
                            f"Group '{group_id}' lists its own container", block_id=group_id
                        )
                    )
                elif node not in seen:
                    errors.append(
                        StructuralError(
                            f"Group '{group_id}' lists missing block '{node}'", block_id=node
                        )
                    )

        for block in self.blocks:
            if block.is_container and block.id not in self.groups:
                errors.append(
                    StructuralError(
                        f"Container block '{block.id}' has no matching group", block_id=block.id
                    )
                )
        return errors

    def _check_membership(self) -> list[StructuralError]:
        errors = []
        containing: dict[str, list[str]] = {}
        for group_id, group in self.groups.items():
            for node in group.nodes:
                containing.setdefault(node, []).append(group_id)

        group_of: dict[str, str | None] = {}
        for block in self.blocks:
            candidates = containing.get(block.id, [])
            innermost = None
            for candidate in candidates:
                others = [g for g in candidates if g != candidate]
                if all(candidate in self.groups[other].nodes for other in others):
                    innermost = candidate
                    break
            if candidates and innermost is None:
                errors.append(
                    StructuralError(
                        f"Block '{block.id}' belongs to overlapping groups "
                        f"{sorted(candidates)} that are not nested",
                        block_id=block.id,
                    )
                )
            group_of[block.id] = innermost

        # Nesting must be a tree
        for group_id in self.groups:
            seen = {group_id}
            parent = group_of.get(group_id)
            while parent is not None:
                if parent in seen:
                    errors.append(
                        StructuralError(
                            f"Group '{group_id}' is nested inside itself", block_id=group_id
                        )
                    )
                    break
                seen.add(parent)
                parent = group_of.get(parent)

        if not errors:
            self._group_of = group_of
        return errors

    def _check_entry(self) -> list[StructuralError]:
        entries = [b for b in self.blocks if b.is_entry and self.group_of(b.id) is None]
        if not entries:
            return [StructuralError("Workflow has no starter or trigger block")]
        if len(entries) > 1:
            return [
                StructuralError(
                    f"Workflow has {len(entries)} entry blocks; exactly one is allowed",
                    block_id=entries[1].id,
                )
            ]
        entry = entries[0]
        errors = []
        for edge in self._incoming.get(entry.id, []):
            errors.append(
                StructuralError(
                    f"Entry block '{entry.id}' has an incoming edge",
                    block_id=entry.id,
                    edge_id=edge.id,
                )
            )
        return errors

    def _check_edge_scopes(self) -> list[StructuralError]:
        errors = []
        for edge in self.edges:
            source_scope = self.group_of(edge.source)
            target_scope = self.group_of(edge.target)
            if edge.is_group_start:
                source = self._blocks_by_id[edge.source]
                if not source.is_container:
                    errors.append(
                        StructuralError(
                            f"Edge '{edge.id}' uses a start handle on non-container "
                            f"block '{edge.source}'",
                            block_id=edge.source,
                            edge_id=edge.id,
                        )
                    )
                elif target_scope != edge.source:
                    errors.append(
                        StructuralError(
                            f"Edge '{edge.id}' starts group '{edge.source}' but targets "
                            f"'{edge.target}', which is not a member",
                            block_id=edge.target,
                            edge_id=edge.id,
                        )
                    )
                continue

            if source_scope == target_scope:
                continue
            if target_scope is not None and not self._is_within(source_scope, target_scope):
                message = (
                    f"Edge '{edge.id}' enters group '{target_scope}' other than "
                    f"through its container"
                )
            else:
                message = (
                    f"Edge '{edge.id}' leaves group '{source_scope}' other than "
                    f"through its container exit"
                )
            errors.append(StructuralError(message, block_id=edge.target, edge_id=edge.id))
        return errors

    def _is_within(self, scope: str | None, group_id: str) -> bool:
        while scope is not None:
            if scope == group_id:
                return True
            scope = self.group_of(scope)
        return False

    def _check_acyclic(self) -> list[StructuralError]:
        in_degree = {block.id: 0 for block in self.blocks}
        for edge in self.edges:
            in_degree[edge.target] += 1

        queue = deque(block_id for block_id, degree in in_degree.items() if degree == 0)
        visited = 0
        while queue:
            current = queue.popleft()
            visited += 1
            for edge in self._outgoing.get(current, []):
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    queue.append(edge.target)

        if visited == len(in_degree):
            return []
        stuck = next(b.id for b in self.blocks if in_degree[b.id] > 0)
        scope = self.group_of(stuck)
        where = f"inside group '{scope}'" if scope else "in the workflow"
        return [StructuralError(f"Cycle detected {where} involving block '{stuck}'", block_id=stuck)]

    def _check_group_parameters(self) -> list[StructuralError]:
        errors = []
        for loop_id, loop in self.loops.items():
            if loop.iterations is not None and loop.iterations <= 0:
                errors.append(
                    StructuralError(
                        f"Loop '{loop_id}' must run at least one iteration", block_id=loop_id
                    )
                )
            if loop.loop_type == LoopType.FOR_EACH and loop.for_each_items in (None, ""):
                errors.append(
                    StructuralError(
                        f"forEach loop '{loop_id}' has no collection to iterate",
                        block_id=loop_id,
                    )
                )
        for parallel_id, parallel in self.parallels.items():
            if parallel.count is not None and parallel.count <= 0:
                errors.append(
                    StructuralError(
                        f"Parallel '{parallel_id}' must run at least one branch",
                        block_id=parallel_id,
                    )
                )
            if parallel.max_concurrency is not None and parallel.max_concurrency <= 0:
                errors.append(
                    StructuralError(
                        f"Parallel '{parallel_id}' max_concurrency must be positive",
                        block_id=parallel_id,
                    )
                )
            if parallel.parallel_type == ParallelType.COLLECTION and parallel.distribution in (
                None,
                "",
            ):
                errors.append(
                    StructuralError(
                        f"Collection parallel '{parallel_id}' has no distribution",
                        block_id=parallel_id,
                    )
                )
        return errors

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def groups(self) -> dict[str, GroupSpec]:
        return {**self.loops, **self.parallels}

    def get_block(self, block_id: str) -> BlockSpec | None:
        return self._blocks_by_id.get(block_id)

    def get_outgoing_edges(self, block_id: str) -> list[EdgeSpec]:
        return list(self._outgoing.get(block_id, []))

    def get_incoming_edges(self, block_id: str) -> list[EdgeSpec]:
        return list(self._incoming.get(block_id, []))

    def order_of(self, block_id: str) -> int:
        """Declaration position, used to keep dispatch order deterministic."""
        return self._order.get(block_id, len(self._order))

    @property
    def entry_block(self) -> BlockSpec:
        for block in self.blocks:
            if block.is_entry and self.group_of(block.id) is None:
                return block
        raise StructuralError("Workflow has no starter or trigger block")

    def group_kind(self, group_id: str) -> str:
        return BlockType.LOOP if group_id in self.loops else BlockType.PARALLEL

    def group_of(self, block_id: str) -> str | None:
        """Innermost group containing the block (None for top-level blocks)."""
        if not self._group_of and self.groups:
            self._check_membership()
        return self._group_of.get(block_id)

    def group_chain(self, block_id: str) -> list[str]:
        """Enclosing groups of a block, outermost first."""
        chain = []
        group_id = self.group_of(block_id)
        while group_id is not None:
            chain.append(group_id)
            group_id = self.group_of(group_id)
        chain.reverse()
        return chain

    def members(self, group_id: str | None) -> list[str]:
        """Blocks whose innermost scope is ``group_id``, in declaration order."""
        return [b.id for b in self.blocks if self.group_of(b.id) == group_id]

    def all_members(self, group_id: str) -> list[str]:
        """Every block nested anywhere inside the group, in declaration order."""
        return [b.id for b in self.blocks if group_id in self.group_chain(b.id)]

    def ancestors(self, block_id: str) -> frozenset[str]:
        """Blocks with a directed path to ``block_id`` (cached; the graph is immutable)."""
        cached = self._ancestors.get(block_id)
        if cached is not None:
            return cached

        found: set[str] = set()
        stack = [edge.source for edge in self._incoming.get(block_id, [])]
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(edge.source for edge in self._incoming.get(current, []))

        result = frozenset(found)
        self._ancestors[block_id] = result
        return result

    def sorted_ids(self, block_ids: Iterable[str]) -> list[str]:
        return sorted(block_ids, key=self.order_of)
