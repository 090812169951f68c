"""Command-line entrypoint: run a workflow definition file once."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from pydantic import ValidationError as SchemaError

from agent_hierarchy.config.settings import get_settings
from agent_hierarchy.definitions.models import WorkflowDefinition
from agent_hierarchy.engine.errors import DefinitionError
from agent_hierarchy.engine.service import OrchestrationEngine


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agent-hierarchy",
        description="Execute hierarchical agent workflows.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a workflow definition JSON file.")
    run_parser.add_argument("definition", type=Path, help="Path to the workflow definition.")
    run_parser.add_argument(
        "--input",
        default="{}",
        help="Initial input as a JSON object.",
    )
    run_parser.add_argument(
        "--mode",
        choices=("deterministic", "llm"),
        default=None,
        help="Gateway mode; defaults to AGENT_HIERARCHY_GATEWAY_MODE.",
    )
    run_parser.add_argument("--verbose", action="store_true", help="Log engine activity.")

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API with uvicorn.")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.command == "serve":
        return _serve(args.host, args.port)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        definition = WorkflowDefinition.model_validate_json(
            args.definition.read_text(encoding="utf-8")
        )
    except (OSError, SchemaError) as exc:
        print(f"Could not load workflow definition: {exc}", file=sys.stderr)
        return 2

    try:
        initial_input = json.loads(args.input)
    except json.JSONDecodeError as exc:
        print(f"--input is not valid JSON: {exc}", file=sys.stderr)
        return 2
    if not isinstance(initial_input, dict):
        print("--input must be a JSON object", file=sys.stderr)
        return 2

    engine = OrchestrationEngine.from_settings(get_settings(), requested_mode=args.mode)
    try:
        record = engine.submit_run(definition, initial_input)
    except DefinitionError as exc:
        print(f"Invalid workflow definition: {exc}", file=sys.stderr)
        return 2
    finally:
        engine.shutdown()

    print(record.model_dump_json(indent=2))
    return 0 if record.status == "completed" else 1


def _serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("agent_hierarchy.api.main:app", host=host, port=port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
