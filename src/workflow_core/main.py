"""CLI entrypoint: validate and convert definitions and flow graphs.

Inputs and outputs are JSON documents; YAML or other formats must be decoded by
the caller first.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError

from workflow_core import __version__
from workflow_core.config import WorkflowSettings
from workflow_core.logging import configure_logging
from workflow_core.workflow.definition import parse_definition
from workflow_core.workflow.errors import InvalidDefinition, InvalidFlow
from workflow_core.workflow.flow import Flow, flow_to_legacy, legacy_to_flow, validate_flow
from workflow_core.workflow.models import ProcessType

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workflow-core",
        description="Validate and convert workflow definitions and flow graphs",
    )
    parser.add_argument("--version", action="version", version=f"workflow-core {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_def = subparsers.add_parser(
        "validate-definition", help="Check a state-chart definition for structural errors"
    )
    validate_def.add_argument("path", type=Path, help="JSON definition file")

    validate_fl = subparsers.add_parser(
        "validate-flow", help="Check a flow graph for structural errors"
    )
    validate_fl.add_argument("path", type=Path, help="JSON flow file")

    to_flow = subparsers.add_parser("to-flow", help="Convert a definition to a flow graph")
    to_flow.add_argument("path", type=Path, help="JSON definition file")
    to_flow.add_argument("--out", type=Path, default=None, help="Write output here")

    to_def = subparsers.add_parser("to-definition", help="Convert a flow graph to a definition")
    to_def.add_argument("path", type=Path, help="JSON flow file")
    to_def.add_argument(
        "--process-type",
        choices=[p.value for p in ProcessType],
        default=None,
        help="Process type of the resulting definition (default: taken from the flow)",
    )
    to_def.add_argument("--out", type=Path, default=None, help="Write output here")

    return parser


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _emit(payload: dict[str, Any], out: Path | None) -> None:
    text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    if out is None:
        sys.stdout.write(text)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text, encoding="utf-8")
    logger.info("Wrote output", extra={"path": str(out)})


def _print_errors(errors: list[str]) -> None:
    for error in errors:
        print(f"error: {error}", file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = WorkflowSettings()
    configure_logging(settings.log_level, json_output=settings.json_logs)

    try:
        raw = _read_json(args.path)
    except (OSError, json.JSONDecodeError) as e:
        print(f"error: cannot read {args.path}: {e}", file=sys.stderr)
        return 2

    try:
        if args.command == "validate-definition":
            parse_definition(raw)
            print(f"{args.path}: ok")
            return 0

        if args.command == "validate-flow":
            errors = validate_flow(Flow.model_validate(raw))
            if errors:
                _print_errors(errors)
                return 1
            print(f"{args.path}: ok")
            return 0

        if args.command == "to-flow":
            flow = legacy_to_flow(parse_definition(raw))
            _emit(flow.model_dump(mode="json"), args.out)
            return 0

        if args.command == "to-definition":
            definition = flow_to_legacy(Flow.model_validate(raw), process_type=args.process_type)
            _emit(definition.model_dump(mode="json"), args.out)
            return 0

    except (InvalidDefinition, InvalidFlow) as e:
        _print_errors(e.errors)
        return 1
    except ValidationError as e:
        _print_errors([str(err["msg"]) for err in e.errors()])
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
