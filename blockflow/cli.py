"""
Command-line interface for blockflow.

Usage:
    blockflow run workflow.json --input '{"message": "hi"}' --env API_KEY=secret
    blockflow run workflow.json --tools tools.py --checkpoint-dir ./paused
    blockflow resume <execution_id> --input '{"approved": true}' --tools tools.py
    blockflow validate workflow.json
    blockflow paused --workflow-id my-workflow
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from blockflow.config import EngineConfig
from blockflow.errors import StructuralError
from blockflow.execution.pause_resume import PauseResumeService
from blockflow.graph.executor import WorkflowExecutor
from blockflow.graph.handlers import default_registry
from blockflow.graph.workflow import WorkflowGraph
from blockflow.observability import configure_logging
from blockflow.runner.tool_registry import ToolRegistry
from blockflow.storage.checkpoint_store import FileCheckpointStore


def _parse_env(pairs: list[str] | None) -> dict[str, str]:
    env = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise argparse.ArgumentTypeError(f"--env expects KEY=VALUE, got '{pair}'")
        key, value = pair.split("=", 1)
        env[key] = value
    return env


def _parse_input(raw: str | None):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"--input is not valid JSON: {e.msg}") from e


def _load_workflow(path: str) -> WorkflowGraph:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if "blocks" in data and isinstance(data["blocks"], dict):
        return WorkflowGraph.from_state(data, workflow_id=data.get("id", Path(path).stem))
    data.setdefault("id", Path(path).stem)
    return WorkflowGraph.load(data)


def _tool_registry(paths: list[str] | None) -> ToolRegistry:
    registry = ToolRegistry()
    for path in paths or []:
        registry.discover_from_module(Path(path))
    return registry


def _pause_service(args, config: EngineConfig) -> PauseResumeService:
    directory = Path(args.checkpoint_dir) if args.checkpoint_dir else config.checkpoint_dir
    return PauseResumeService(FileCheckpointStore(directory))


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_run(args: argparse.Namespace) -> int:
    """Run a workflow file."""
    config = EngineConfig()
    configure_logging(args.log_level or config.log_level, config.log_format)
    try:
        graph = _load_workflow(args.workflow)
        executor = WorkflowExecutor(
            graph,
            tool_registry=_tool_registry(args.tools),
            config=config,
            pause_service=_pause_service(args, config),
        )
        result = asyncio.run(
            executor.execute(
                workflow_input=_parse_input(args.input),
                environment_variables=_parse_env(args.env),
                execution_id=args.execution_id,
            )
        )
    except (StructuralError, argparse.ArgumentTypeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    _print(result.to_wire())
    return 0 if result.success else 1


def cmd_resume(args: argparse.Namespace) -> int:
    """Resume a paused execution from the checkpoint directory."""
    config = EngineConfig()
    configure_logging(args.log_level or config.log_level, config.log_format)
    service = _pause_service(args, config)
    try:
        result = asyncio.run(
            WorkflowExecutor.resume_paused(
                service,
                args.execution_id,
                extra_inputs=_parse_input(args.input),
                tool_registry=_tool_registry(args.tools),
                config=config,
            )
        )
    except (StructuralError, argparse.ArgumentTypeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if result is None:
        _print({"success": False, "error": f"No paused execution found for '{args.execution_id}'"})
        return 1
    _print(result.to_wire())
    return 0 if result.success else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a workflow file without running it."""
    try:
        graph = _load_workflow(args.workflow)
    except StructuralError as e:
        _print({"valid": False, "errors": [e.to_dict()]})
        return 1

    unknown = [
        b.id for b in graph.blocks if not b.is_container and not default_registry.has(b.type)
    ]
    _print(
        {
            "valid": True,
            "workflow": graph.id,
            "blocks": len(graph.blocks),
            "edges": len(graph.edges),
            "groups": sorted(graph.groups),
            # Custom block types need handlers registered by the embedding application
            "customBlockTypes": sorted({graph.get_block(b).type for b in unknown}),
        }
    )
    return 0


def cmd_paused(args: argparse.Namespace) -> int:
    """List paused executions."""
    config = EngineConfig()
    service = _pause_service(args, config)
    summaries = asyncio.run(service.list_paused_executions(args.workflow_id))
    _print([s.model_dump(by_alias=True) for s in summaries])
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Run a workflow")
    run_parser.add_argument("workflow", help="Path to a workflow JSON file")
    run_parser.add_argument("--input", help="Workflow input as JSON")
    run_parser.add_argument("--env", action="append", help="Environment variable KEY=VALUE")
    run_parser.add_argument("--tools", action="append", help="Python module with @tool functions")
    run_parser.add_argument("--checkpoint-dir", help="Directory for paused-run checkpoints")
    run_parser.add_argument("--execution-id", help="Execution id (defaults to a UUID)")
    run_parser.add_argument("--log-level", help="Logging level")
    run_parser.set_defaults(func=cmd_run)

    resume_parser = subparsers.add_parser("resume", help="Resume a paused execution")
    resume_parser.add_argument("execution_id", help="Id of the paused execution")
    resume_parser.add_argument("--input", help="Resume input as JSON")
    resume_parser.add_argument("--tools", action="append", help="Python module with @tool functions")
    resume_parser.add_argument("--checkpoint-dir", help="Directory for paused-run checkpoints")
    resume_parser.add_argument("--log-level", help="Logging level")
    resume_parser.set_defaults(func=cmd_resume)

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow")
    validate_parser.add_argument("workflow", help="Path to a workflow JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    paused_parser = subparsers.add_parser("paused", help="List paused executions")
    paused_parser.add_argument("--workflow-id", help="Only list runs of this workflow")
    paused_parser.add_argument("--checkpoint-dir", help="Directory for paused-run checkpoints")
    paused_parser.set_defaults(func=cmd_paused)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="blockflow",
        description="blockflow - Run block-based workflow graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
