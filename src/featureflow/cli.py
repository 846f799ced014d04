"""CLI entry point for featureflow."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the featureflow CLI."""
    parser = argparse.ArgumentParser(
        prog="featureflow",
        description="Feature pipeline tracker: agent steps, human gates, versioned handoffs",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Generate .featureflow/featureflow.toml from source defaults",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: config)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: config)")

    new_parser = subparsers.add_parser("new", help="Create a feature")
    new_parser.add_argument("title", help="Feature title")

    show_parser = subparsers.add_parser("show", help="Show a feature's pipeline steps")
    show_parser.add_argument("feature_id")

    run_parser = subparsers.add_parser("run", help="Run automated steps until a human gate")
    run_parser.add_argument("feature_id")

    status_parser = subparsers.add_parser("status", help="Move a feature to a new status")
    status_parser.add_argument("feature_id")
    status_parser.add_argument("status")

    _args = parser.parse_args(argv)
    _setup_logging(_args.verbose)

    if _args.init:
        from featureflow.config import init_config

        path = init_config(Path.cwd())
        print(f"Wrote {path}")
        return 0

    if _args.command is None:
        parser.print_help()
        return 0

    from featureflow.config import load_config, resolve_database_path
    from featureflow.state_db import StateDB

    project_root = Path.cwd()
    config = load_config(project_root)
    db = StateDB(resolve_database_path(project_root, config))
    try:
        if _args.command == "serve":
            return _serve(db, config, _args.host, _args.port)
        if _args.command == "new":
            return _new(db, _args.title)
        if _args.command == "show":
            return _show(db, config, _args.feature_id)
        if _args.command == "run":
            return _run(db, config, _args.feature_id)
        if _args.command == "status":
            return _status(db, _args.feature_id, _args.status)
    finally:
        db.close()

    parser.print_help()
    return 0


def _setup_logging(verbose: bool) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _serve(db, config, host: str | None, port: int | None) -> int:
    from featureflow.server import create_app

    app = create_app(db, config)
    app.run(
        host=host or config.server.host,
        port=port or config.server.port,
        threaded=True,
    )
    return 0


def _new(db, title: str) -> int:
    from featureflow.service import create_feature

    feature = create_feature(db, title)
    print(feature.id)
    return 0


def _show(db, config, feature_id: str) -> int:
    from rich.console import Console

    from featureflow.dashboard import render_steps
    from featureflow.diagnostics import diagnose
    from featureflow.service import load_feature
    from featureflow.state_db import FeatureNotFound, utc_now
    from featureflow.steps import build_step_configs, derive_steps

    try:
        feature = load_feature(db, feature_id)
    except FeatureNotFound as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    configs = build_step_configs(config.agents)
    now_ms = int(utc_now().timestamp() * 1000)
    steps = derive_steps(feature, now_ms, configs)
    Console().print(
        render_steps(feature, steps, diagnose(feature, now_ms, config.diagnostics), configs)
    )
    return 0


def _run(db, config, feature_id: str) -> int:
    from featureflow.runner import PipelineRunner
    from featureflow.state_db import ConflictError, FeatureNotFound

    try:
        result = PipelineRunner(db, config).run(feature_id)
    except (ConflictError, FeatureNotFound) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"{result.feature.status.value} ({result.stopped_reason.value})")
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    return 0


def _status(db, feature_id: str, status: str) -> int:
    from featureflow.service import update_status
    from featureflow.state_db import ConflictError, FeatureNotFound
    from featureflow.state_machine import InvalidTransition, parse_status

    target = parse_status(status)
    if target is None:
        print(f"Error: unknown status '{status}'", file=sys.stderr)
        return 2
    try:
        feature = update_status(db, feature_id, target)
    except (InvalidTransition, ConflictError, FeatureNotFound) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"{feature.id}: {feature.status.value}")
    return 0


def _get_version() -> str:
    from featureflow import __version__

    return __version__


if __name__ == "__main__":
    sys.exit(main())
