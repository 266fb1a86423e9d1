"""
Command-line interface for bookflow.

Usage:
    bookflow plan units.json
    bookflow checkpoints <session_id> [--storage ~/.bookflow/store]
    bookflow recover <session_id> [--storage ~/.bookflow/store]

``plan`` reads a JSON list of work units (or an outline object with a
``units`` list) and prints the execution plan. ``checkpoints`` and
``recover`` inspect a file store; ``recover`` prints the state the session
would resume from without running anything.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from bookflow.config import RuntimeConfig
from bookflow.errors import BaseError
from bookflow.graph.planner import build_execution_plan
from bookflow.observability.logging import configure_logging
from bookflow.schemas.work_unit import WorkUnit
from bookflow.storage.backend import FileStore
from bookflow.storage.checkpoint_store import CheckpointStore, analyze_state_compression


def _load_units(path: Path) -> list[WorkUnit]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("units") or data.get("chapters") or []
    return [WorkUnit.model_validate(item) for item in data]


def _checkpoint_store(args: argparse.Namespace) -> CheckpointStore:
    config = RuntimeConfig.load()
    storage = Path(args.storage).expanduser() if args.storage else config.storage_path
    return CheckpointStore(FileStore(storage), config=config.checkpoint)


def cmd_plan(args: argparse.Namespace) -> int:
    try:
        units = _load_units(Path(args.units_file))
        plan = build_execution_plan(units)
    except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
        print(f"Cannot read units: {e}", file=sys.stderr)
        return 2
    except BaseError as e:
        print(f"Error ({e.code}): {e.message}", file=sys.stderr)
        return 1

    if args.json:
        print(plan.model_dump_json(indent=2))
        return 0

    print(f"Layers: {plan.total_layers}")
    print(f"Parallelism: {plan.parallelism_factor}")
    print(f"Estimated duration: {plan.estimated_total_duration:.0f}s")
    for layer in plan.layers:
        numbers = ", ".join(str(n) for n in layer.unit_numbers)
        print(f"  [{layer.layer_index}] units {numbers} (~{layer.estimated_duration:.0f}s)")
    return 0


def cmd_checkpoints(args: argparse.Namespace) -> int:
    store = _checkpoint_store(args)
    summaries = asyncio.run(store.list_checkpoints(args.session_id))
    if not summaries:
        print(f"No checkpoints for session {args.session_id}")
        return 1
    if args.json:
        print(json.dumps([s.model_dump() for s in summaries], indent=2))
        return 0
    for summary in summaries:
        progress = (
            f"{summary.overall_progress:.0f}%" if summary.overall_progress is not None else "-"
        )
        print(f"{summary.timestamp}  {summary.node_name:<20} {summary.stage or '-':<20} {progress}")
    return 0


def cmd_recover(args: argparse.Namespace) -> int:
    store = _checkpoint_store(args)
    try:
        state = asyncio.run(store.recover_workflow(args.session_id))
    except BaseError as e:
        print(f"Error ({e.code}): {e.message}", file=sys.stderr)
        return 1
    if state is None:
        print(f"No checkpoint for session {args.session_id}")
        return 1

    if args.json:
        print(state.model_dump_json(indent=2, exclude={"source_document"}))
        return 0

    report = analyze_state_compression(state)
    print(f"Session:   {state.session_id}")
    print(f"Stage:     {state.current_stage} ({state.status})")
    print(f"Progress:  {state.progress.overall_progress:.0f}%")
    print(f"Units:     {state.progress.units_completed}/{state.progress.total_units}")
    if state.error:
        print(f"Error:     {state.error} (needs retry: {state.needs_retry})")
    print(f"Snapshot:  {report.compressed_size} bytes")
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    plan_parser = subparsers.add_parser("plan", help="Show the execution plan for a unit list")
    plan_parser.add_argument("units_file", help="JSON file with the work units")
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")
    plan_parser.set_defaults(func=cmd_plan)

    for name, func, help_text in (
        ("checkpoints", cmd_checkpoints, "List the checkpoints of a session"),
        ("recover", cmd_recover, "Show the state a session would resume from"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("session_id", help="Session ID")
        sub.add_argument("--storage", help="Store directory (default: configured storage path)")
        sub.add_argument("--json", action="store_true", help="Print JSON")
        sub.set_defaults(func=func)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="bookflow",
        description="bookflow - inspect execution plans and workflow checkpoints",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level or RuntimeConfig.load().log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
