"""Registry of external tools invoked by function and tool blocks."""

import asyncio
import contextvars
import importlib.util
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Per-execution context overrides. Each asyncio task gets its own copy, so
# concurrently running workflows never see each other's ids.
_execution_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "_execution_context", default=None
)


@dataclass
class ToolDefinition:
    """Name, description and JSON-schema parameters of a tool."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    tool: ToolDefinition
    executor: Callable[..., Any]


def tool(name: str | None = None, description: str | None = None) -> Callable:
    """Mark a function in a tools module for discovery."""

    def decorator(func: Callable) -> Callable:
        func._tool_metadata = {"name": name or func.__name__, "description": description}
        return func

    return decorator


class ToolRegistry:
    """
    Manages tool discovery and registration.

    Tools are plain callables (sync or async) taking keyword parameters.
    Sync tools run in a worker thread so they never block the event loop.
    """

    # Run identifiers injected into tool calls for tools that accept them
    CONTEXT_PARAMS = frozenset({"workspace_id", "workflow_id", "execution_id"})

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        tool: ToolDefinition,
        executor: Callable[..., Any],
    ) -> None:
        """
        Register a single tool with its executor.

        Args:
            name: Tool name (must match tool.name)
            tool: Tool definition
            executor: Callable invoked with the tool's parameters as keywords
        """
        if name in self._tools:
            logger.debug(f"Replacing registered tool '{name}'")
        self._tools[name] = RegisteredTool(tool=tool, executor=executor)

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        Register a function as a tool, auto-generating the definition.

        Args:
            func: Function to register
            name: Tool name (defaults to function name)
            description: Tool description (defaults to docstring)
        """
        tool_name = name or func.__name__
        tool_desc = description or func.__doc__ or f"Execute {tool_name}"

        sig = inspect.signature(func)
        properties = {}
        required = []

        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls") or param_name in self.CONTEXT_PARAMS:
                continue
            if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
                continue

            param_type = "string"
            if param.annotation is int:
                param_type = "integer"
            elif param.annotation is float:
                param_type = "number"
            elif param.annotation is bool:
                param_type = "boolean"
            elif param.annotation is dict:
                param_type = "object"
            elif param.annotation is list:
                param_type = "array"

            properties[param_name] = {"type": param_type}
            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        definition = ToolDefinition(
            name=tool_name,
            description=tool_desc.strip(),
            parameters={"type": "object", "properties": properties, "required": required},
        )
        self.register(tool_name, definition, func)

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load tools from a Python module file.

        Looks for functions decorated with ``@tool`` and, failing that, a
        ``TOOLS`` dict mapping names to callables.

        Returns:
            Number of tools discovered
        """
        module_path = Path(module_path)
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location(f"blockflow_tools_{module_path.stem}", module_path)
        if spec is None or spec.loader is None:
            return 0

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        count = 0
        for attr in dir(module):
            obj = getattr(module, attr)
            if callable(obj) and hasattr(obj, "_tool_metadata"):
                metadata = obj._tool_metadata
                self.register_function(
                    obj, name=metadata.get("name", attr), description=metadata.get("description")
                )
                count += 1

        for name, func in getattr(module, "TOOLS", {}).items():
            if callable(func) and not self.has_tool(name):
                self.register_function(func, name=name)
                count += 1

        logger.info(f"Discovered {count} tools from {module_path}")
        return count

    def get_tools(self) -> dict[str, ToolDefinition]:
        return {name: rt.tool for name, rt in self._tools.items()}

    def get_registered_names(self) -> list[str]:
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def call(self, name: str, params: dict[str, Any] | None = None) -> Any:
        """
        Invoke a tool by name.

        Raises:
            KeyError: if no tool with that name is registered
        """
        if name not in self._tools:
            raise KeyError(f"Unknown tool: {name}")

        executor = self._tools[name].executor
        kwargs = dict(params or {})
        context = _execution_context.get() or {}
        accepted = _accepted_params(executor)
        for key in self.CONTEXT_PARAMS:
            if key in context and key not in kwargs and (accepted is None or key in accepted):
                kwargs[key] = context[key]

        if inspect.iscoroutinefunction(executor):
            return await executor(**kwargs)
        result = await asyncio.to_thread(executor, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def set_execution_context(**context) -> contextvars.Token:
        """Set per-execution context values (concurrency-safe via contextvars)."""
        current = _execution_context.get() or {}
        return _execution_context.set({**current, **context})

    @staticmethod
    def reset_execution_context(token: contextvars.Token) -> None:
        _execution_context.reset(token)


def _accepted_params(func: Callable) -> set[str] | None:
    """Parameter names a callable accepts, or None when it takes **kwargs."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return set()
    if any(p.kind == p.VAR_KEYWORD for p in sig.parameters.values()):
        return None
    return set(sig.parameters)
