"""
strata command-line entry point.
"""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from strata.config.settings import get_settings
from strata.logging import configure_logging


def _add_common(parser: argparse.ArgumentParser, *, state: bool = True) -> None:
    parser.add_argument("--output", choices=["text", "json"], default="text", help="Output format")
    if state:
        parser.add_argument("--state", dest="state_path", help="State file (default: STRATA_STATE_PATH)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="strata", description="Dependency-ordered infrastructure apply/destroy")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show unchanged resources and debug logs")
    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser("validate", help="Validate a declaration")
    validate_parser.add_argument("declaration", help="Path to declaration YAML file")
    _add_common(validate_parser, state=False)

    graph_parser = subparsers.add_parser("graph", help="Show dependency levels")
    graph_parser.add_argument("declaration", help="Path to declaration YAML file")
    graph_parser.add_argument("--destroy", action="store_true", help="Show destroy order")
    _add_common(graph_parser, state=False)

    plan_parser = subparsers.add_parser("plan", help="Preview changes (dry run)")
    plan_parser.add_argument("declaration", help="Path to declaration YAML file")
    plan_parser.add_argument("--destroy", action="store_true", help="Preview a destroy")
    plan_parser.add_argument("--prune", action="store_true", help="Include undeclared resources in state")
    _add_common(plan_parser)

    apply_parser = subparsers.add_parser("apply", help="Create, update or replace resources")
    apply_parser.add_argument("declaration", help="Path to declaration YAML file")
    apply_parser.add_argument("--prune", action="store_true", help="Delete resources in state that are no longer declared")
    apply_parser.add_argument("--concurrency", type=int, help="Maximum concurrent provider operations")
    _add_common(apply_parser)

    destroy_parser = subparsers.add_parser("destroy", help="Delete resources, dependents first")
    destroy_parser.add_argument("declaration", nargs="?", help="Declaration to destroy (default: everything in state)")
    destroy_parser.add_argument("--concurrency", type=int, help="Maximum concurrent provider operations")
    _add_common(destroy_parser)

    refresh_parser = subparsers.add_parser("refresh", help="Report drift between state and provider")
    _add_common(refresh_parser)

    state_parser = subparsers.add_parser("state", help="Inspect recorded state")
    state_subparsers = state_parser.add_subparsers(dest="state_command")
    state_list_parser = state_subparsers.add_parser("list", help="List resources in state")
    _add_common(state_list_parser)
    state_show_parser = state_subparsers.add_parser("show", help="Show one resource")
    state_show_parser.add_argument("name", help="Logical resource name")
    _add_common(state_show_parser)

    unlock_parser = subparsers.add_parser("force-unlock", help="Remove a stale state lock")
    unlock_parser.add_argument("--state", dest="state_path", help="State file (default: STRATA_STATE_PATH)")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging("DEBUG" if args.verbose else settings.log_level, json=settings.log_json)

    if args.command == "validate":
        from strata.cli.plan import validate_command

        sys.exit(validate_command(args.declaration, output_format=args.output))

    if args.command == "graph":
        from strata.cli.plan import graph_command

        sys.exit(graph_command(args.declaration, destroy=args.destroy, output_format=args.output))

    if args.command == "plan":
        from strata.cli.plan import plan_command

        sys.exit(plan_command(
            args.declaration,
            destroy=args.destroy,
            prune=args.prune,
            state_path=args.state_path,
            output_format=args.output,
            verbose=args.verbose,
        ))

    if args.command == "apply":
        from strata.cli.apply import apply_command

        sys.exit(apply_command(
            args.declaration,
            prune=args.prune,
            concurrency=args.concurrency,
            state_path=args.state_path,
            output_format=args.output,
            verbose=args.verbose,
        ))

    if args.command == "destroy":
        from strata.cli.apply import destroy_command

        sys.exit(destroy_command(
            args.declaration,
            concurrency=args.concurrency,
            state_path=args.state_path,
            output_format=args.output,
            verbose=args.verbose,
        ))

    if args.command == "refresh":
        from strata.cli.state import refresh_command

        sys.exit(refresh_command(state_path=args.state_path, output_format=args.output))

    if args.command == "state":
        from strata.cli.state import state_list_command, state_show_command

        if args.state_command == "list":
            sys.exit(state_list_command(state_path=args.state_path, output_format=args.output))
        if args.state_command == "show":
            sys.exit(state_show_command(args.name, state_path=args.state_path, output_format=args.output))
        parser.parse_args(["state", "--help"])

    if args.command == "force-unlock":
        from strata.cli.state import force_unlock_command

        sys.exit(force_unlock_command(state_path=args.state_path))

    parser.print_help()


if __name__ == "__main__":
    main()
