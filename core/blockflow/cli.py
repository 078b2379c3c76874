"""
Command-line interface for blockflow.

Usage:
    blockflow validate workflow.json
    blockflow plan workflow.json
    blockflow run workflow.json --adapter my_backends:create_adapter
    blockflow run workflow.json            # offline dry run, echoes prompts

The adapter is given as "module:factory"; the factory is called with the
loaded ModelConfig and must return a GenerationAdapter.
"""

import argparse
import asyncio
import importlib
import json
import logging
import sys
from pathlib import Path

from blockflow.config import EngineConfig
from blockflow.generation import GenerationAdapter, MockGenerationAdapter
from blockflow.graph import GraphValidator, Scheduler, WorkflowGraph, WorkflowValidationError
from blockflow.observability import configure_logging
from blockflow.runtime import ExecutionController, ExecutionOptions, RetryPolicy
from blockflow.runtime.resource_manager import ExecutionPriority

logger = logging.getLogger(__name__)


def _load_graph(path: str) -> WorkflowGraph | None:
    graph_file = Path(path)
    if not graph_file.exists():
        print(f"Error: File not found: {graph_file}", file=sys.stderr)
        return None
    try:
        return WorkflowGraph.from_file(graph_file)
    except (ValueError, OSError) as e:
        print(f"Error reading workflow {graph_file}: {e}", file=sys.stderr)
        return None


def _load_adapter(target: str, config: EngineConfig) -> GenerationAdapter:
    """Import "module:factory" and call the factory with the model configuration."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Adapter must be given as module:factory, got {target!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    adapter = factory(config.model)
    if not isinstance(adapter, GenerationAdapter):
        raise TypeError(f"{target} returned {type(adapter).__name__}, not a GenerationAdapter")
    return adapter


def cmd_validate(args: argparse.Namespace) -> int:
    """Print validation findings; exit 1 when the workflow is invalid."""
    graph = _load_graph(args.file)
    if graph is None:
        return 1

    config = EngineConfig.load(args.config)
    report = GraphValidator(
        performance_threshold=config.performance_connection_threshold,
        strict_variables=config.strict_variables,
    ).validate(graph.blocks, graph.connections)

    for issue in report.errors:
        print(f"ERROR   [{issue.type}] {issue.message}")
    for issue in report.warnings:
        print(f"WARNING [{issue.type}] {issue.message}")

    if report.is_valid:
        print(f"✓ {len(graph.blocks)} blocks, {len(graph.connections)} connections: valid")
        return 0
    print(f"✗ {len(report.errors)} error(s)")
    return 1


def cmd_plan(args: argparse.Namespace) -> int:
    """Print the execution order."""
    graph = _load_graph(args.file)
    if graph is None:
        return 1

    config = EngineConfig.load(args.config)
    report = GraphValidator(
        performance_threshold=config.performance_connection_threshold,
        strict_variables=config.strict_variables,
    ).validate(graph.blocks, graph.connections)
    if not report.is_valid:
        print(f"Error: {report.error}", file=sys.stderr)
        return 1

    order = Scheduler().execution_order(graph.blocks, graph.connections)
    for position, block_id in enumerate(order, start=1):
        block = graph.get_block(block_id)
        upstream = [graph.get_block(uid).label for uid in graph.upstream_ids(block_id)]
        after = f"  <- {', '.join(upstream)}" if upstream else ""
        print(f"{position:3d}. {block.label} ({block.type}){after}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run a workflow and print the result as JSON."""
    graph = _load_graph(args.file)
    if graph is None:
        return 1

    config = EngineConfig.load(args.config)
    if args.adapter:
        try:
            adapter = _load_adapter(args.adapter, config)
        except (ImportError, AttributeError, ValueError, TypeError) as e:
            print(f"Error loading adapter {args.adapter}: {e}", file=sys.stderr)
            return 1
    else:
        logger.warning("No --adapter given; running offline with the mock adapter")
        adapter = MockGenerationAdapter()

    options = ExecutionOptions(
        priority=ExecutionPriority(args.priority),
        retry_policy=RetryPolicy(max_retries=args.max_retries),
        skip_failed_dependents=args.skip_failed_dependents,
    )

    async def run():
        controller = ExecutionController(adapter, config)
        return await controller.execute_workflow(graph, options)

    try:
        result = asyncio.run(run())
    except WorkflowValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False))
    print(result.summary(), file=sys.stderr)
    return 0 if result.status == "completed" else 1


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Check a workflow for errors")
    validate_parser.add_argument("file", help="Workflow JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    plan_parser = subparsers.add_parser("plan", help="Show the block execution order")
    plan_parser.add_argument("file", help="Workflow JSON file")
    plan_parser.set_defaults(func=cmd_plan)

    run_parser = subparsers.add_parser("run", help="Execute a workflow")
    run_parser.add_argument("file", help="Workflow JSON file")
    run_parser.add_argument(
        "--adapter",
        help="Generation adapter factory as module:factory (default: offline mock)",
    )
    run_parser.add_argument(
        "--priority",
        choices=[p.value for p in ExecutionPriority],
        default=ExecutionPriority.NORMAL.value,
    )
    run_parser.add_argument("--max-retries", type=int, default=0)
    run_parser.add_argument(
        "--skip-failed-dependents",
        action="store_true",
        help="Skip blocks whose upstream block failed",
    )
    run_parser.set_defaults(func=cmd_run)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="blockflow",
        description="Validate, plan and run block workflows",
    )
    parser.add_argument(
        "--config",
        help="Configuration file (default: ~/.blockflow/configuration.json)",
    )
    parser.add_argument("--log-level", default="WARNING")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
