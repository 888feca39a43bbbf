"""
Reference Resolver - Which upstream outputs a block may read, and reading them.

Block configs embed two kinds of tokens:

- ``<prefix.path.to.field>`` reads a block output or a system value
- ``{{NAME}}`` reads an environment variable

A ``<...>`` token is only a reference when it looks like one (no leading
space, no comparison or arithmetic operators) AND its prefix is accessible
from the requesting block. Everything else stays literal text, which lets a
condition such as ``<a.score> > <b.score>`` keep its operator.

Accessible prefixes for a block are the normalized ids and names of its
ancestors, itself, the entry block and the members of every group enclosing
it, plus the system prefixes ``start``, ``loop``, ``parallel`` and
``variable``.
"""

import json
import logging
import re
from typing import Any

from blockflow.errors import ReferenceResolutionError
from blockflow.graph.block import BlockSpec, BlockType, normalize_block_name
from blockflow.graph.context import ExecutionContext, Frame
from blockflow.graph.workflow import WorkflowGraph

logger = logging.getLogger(__name__)

SYSTEM_REFERENCE_PREFIXES = frozenset({"start", "loop", "parallel", "variable"})

REFERENCE_PATTERN = re.compile(r"<([^<>]+)>")
ENV_VAR_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")
_TOKEN_PATTERN = re.compile(r"<([^<>]+)>|\{\{([^{}]+)\}\}")

_INVALID_REFERENCE_CHARS = re.compile(r"[+*/=<>!]")
_INDEX_PART = re.compile(r"([^\[\]]*)((?:\[\d+\])*)$")

_MISSING = object()


def is_likely_reference(inner: str) -> bool:
    """Whether the text between ``<`` and ``>`` has the shape of a reference."""
    if not inner or inner.startswith(" "):
        return False
    if re.match(r"^\s*[<>=!]+\s*$", inner) or re.search(r"\s[<>=!]+\s", inner):
        return False
    if re.match(r"^[<>=!]+\s", inner):
        return False

    if "." in inner:
        before_dot, after_dot = inner.split(".", 1)
        if " " in after_dot:
            return False
        if _INVALID_REFERENCE_CHARS.search(before_dot) or _INVALID_REFERENCE_CHARS.search(
            after_dot
        ):
            return False
    elif (
        _INVALID_REFERENCE_CHARS.search(inner)
        or re.match(r"^\d", inner)
        or re.search(r"\s\d", inner)
    ):
        return False
    return True


def parse_path(path: str) -> list[str | int]:
    """Split ``items[0].name`` into ``["items", 0, "name"]``."""
    parts: list[str | int] = []
    for segment in path.split("."):
        if not segment:
            continue
        match = _INDEX_PART.match(segment)
        if match is None:
            parts.append(segment)
            continue
        name, indexes = match.groups()
        if name:
            parts.append(name)
        parts.extend(int(i) for i in re.findall(r"\[(\d+)\]", indexes))
    return parts


def get_path(value: Any, path: list[str | int]) -> Any:
    """Walk a dotted path through dicts and lists; returns _MISSING when absent."""
    current = value
    for part in path:
        if isinstance(current, dict):
            if part in current:
                current = current[part]
            elif str(part) in current:
                current = current[str(part)]
            else:
                return _MISSING
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def stringify(value: Any) -> str:
    if value is None or value is _MISSING:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ReferenceResolver:
    """
    Resolves reference tokens for blocks of one graph.

    Prefix sets are cached per block id; the graph is immutable for the
    lifetime of the resolver.
    """

    def __init__(self, graph: WorkflowGraph):
        self.graph = graph
        self._accessible: dict[str, dict[str, str]] = {}

    # ------------------------------------------------------------------
    # Accessibility
    # ------------------------------------------------------------------

    def accessible_blocks(self, block_id: str) -> dict[str, str]:
        """Map of accessible normalized prefix -> block id."""
        cached = self._accessible.get(block_id)
        if cached is not None:
            return cached

        graph = self.graph
        ids = set(graph.ancestors(block_id))
        ids.add(block_id)
        ids.add(graph.entry_block.id)
        for group_id in graph.group_chain(block_id):
            ids.update(graph.groups[group_id].nodes)
            # Whatever feeds a container is upstream of every block inside it
            ids.add(group_id)
            ids.update(graph.ancestors(group_id))

        by_prefix: dict[str, str] = {}
        ordered = graph.sorted_ids(ids)
        # Names win over ids when both normalize to the same prefix
        for candidate in ordered:
            block = graph.get_block(candidate)
            if block is not None and block.name:
                by_prefix.setdefault(normalize_block_name(block.name), candidate)
        for candidate in ordered:
            by_prefix.setdefault(normalize_block_name(candidate), candidate)

        self._accessible[block_id] = by_prefix
        return by_prefix

    def accessible_prefixes(self, block_id: str) -> frozenset[str]:
        return frozenset(self.accessible_blocks(block_id)) | SYSTEM_REFERENCE_PREFIXES

    def is_reference(self, inner: str, block_id: str) -> bool:
        if not is_likely_reference(inner):
            return False
        prefix = normalize_block_name(inner.split(".", 1)[0])
        return bool(prefix) and prefix in self.accessible_prefixes(block_id)

    def extract_references(self, text: str, block_id: str) -> list[str]:
        """Inner text of every genuine reference in ``text``, in order."""
        return [m for m in REFERENCE_PATTERN.findall(text) if self.is_reference(m, block_id)]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_config(
        self, block: BlockSpec, ctx: ExecutionContext, frames: list[Frame] | None = None
    ) -> dict[str, Any]:
        """Resolve every reference inside a block's config."""
        resolved = self.resolve_value(block.config, block, ctx, frames or [])
        return resolved if isinstance(resolved, dict) else {}

    def resolve_value(
        self, value: Any, block: BlockSpec, ctx: ExecutionContext, frames: list[Frame]
    ) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value, block, ctx, frames)
        if isinstance(value, dict):
            return {k: self.resolve_value(v, block, ctx, frames) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v, block, ctx, frames) for v in value]
        return value

    def resolve_expression(
        self, expression: str, block: BlockSpec, ctx: ExecutionContext, frames: list[Frame]
    ) -> tuple[str, dict[str, Any]]:
        """
        Swap each reference for a placeholder name.

        Returns the rewritten expression and the placeholder bindings, ready
        for ``safe_eval``. Environment variables are bound the same way.
        """
        bindings: dict[str, Any] = {}

        def _bind(match: re.Match) -> str:
            inner, env_name = match.group(1), match.group(2)
            if env_name is not None:
                value = self._env_value(env_name, ctx)
            elif self.is_reference(inner, block.id):
                value = self._lookup(inner, block, ctx, frames)
                value = None if value is _MISSING else value
            else:
                return match.group(0)
            placeholder = f"__ref_{len(bindings)}"
            bindings[placeholder] = value
            return placeholder

        return _TOKEN_PATTERN.sub(_bind, expression), bindings

    def _resolve_string(
        self, text: str, block: BlockSpec, ctx: ExecutionContext, frames: list[Frame]
    ) -> Any:
        whole = _TOKEN_PATTERN.fullmatch(text.strip())
        if whole is not None:
            inner, env_name = whole.group(1), whole.group(2)
            if env_name is not None:
                return self._env_value(env_name, ctx)
            if self.is_reference(inner, block.id):
                value = self._lookup(inner, block, ctx, frames)
                return None if value is _MISSING else value
            return text

        def _substitute(match: re.Match) -> str:
            inner, env_name = match.group(1), match.group(2)
            if env_name is not None:
                return self._env_value(env_name, ctx)
            if not self.is_reference(inner, block.id):
                return match.group(0)
            return stringify(self._lookup(inner, block, ctx, frames))

        return _TOKEN_PATTERN.sub(_substitute, text)

    def _env_value(self, name: str, ctx: ExecutionContext) -> str:
        key = name.strip()
        if key not in ctx.environment_variables:
            logger.warning(f"Environment variable '{key}' is not set")
            return ""
        return ctx.environment_variables[key]

    def _lookup(
        self, inner: str, block: BlockSpec, ctx: ExecutionContext, frames: list[Frame]
    ) -> Any:
        raw_prefix, _, rest = inner.partition(".")
        prefix = normalize_block_name(raw_prefix)
        path = parse_path(rest)

        target = self.accessible_blocks(block.id).get(prefix)
        if target is not None and prefix not in SYSTEM_REFERENCE_PREFIXES:
            value = self._block_value(target, path, ctx, frames)
        elif prefix in SYSTEM_REFERENCE_PREFIXES:
            value = self._system_value(prefix, path, block, ctx, frames)
        else:
            value = _MISSING

        if value is _MISSING:
            required = {r.strip().strip("<>") for r in block.required_references}
            if inner.strip() in required:
                raise ReferenceResolutionError(
                    f"<{inner}>", block.id, reason="referenced output is not available"
                )
            logger.debug(f"Optional reference <{inner}> in block '{block.id}' is unresolved")
        return value

    def _block_value(
        self, target: str, path: list[str | int], ctx: ExecutionContext, frames: list[Frame]
    ) -> Any:
        key = ctx.key_for(target, frames)
        if not ctx.has_output(key):
            return _MISSING
        return get_path(ctx.get_output(key), path)

    def _system_value(
        self,
        prefix: str,
        path: list[str | int],
        block: BlockSpec,
        ctx: ExecutionContext,
        frames: list[Frame],
    ) -> Any:
        if prefix == "start":
            entry_key = self.graph.entry_block.id
            if not ctx.has_output(entry_key):
                return _MISSING
            return get_path(ctx.get_output(entry_key), path)

        if prefix == "variable":
            if not path:
                return dict(ctx.workflow_variables)
            name, rest = str(path[0]), path[1:]
            if name in ctx.workflow_variables:
                return get_path(ctx.workflow_variables[name], rest)
            wanted = normalize_block_name(name)
            for key, value in ctx.workflow_variables.items():
                if normalize_block_name(key) == wanted:
                    return get_path(value, rest)
            return _MISSING

        # loop / parallel: innermost active frame of that kind
        for frame in reversed(frames):
            if frame.kind == prefix:
                view = {
                    "index": frame.index,
                    "iteration": frame.index,
                    "currentItem": frame.item,
                    "items": frame.items,
                }
                return get_path(view, path) if path else view

        # Outside any iteration: aggregate of the nearest completed group upstream
        kind = BlockType.LOOP if prefix == "loop" else BlockType.PARALLEL
        upstream = [
            b
            for b in self.graph.sorted_ids(self.graph.ancestors(block.id))
            if self.graph.get_block(b).type == kind
        ]
        for candidate in reversed(upstream):
            key = ctx.key_for(candidate, frames)
            if ctx.has_output(key):
                return get_path(ctx.get_output(key), path)
        return _MISSING
