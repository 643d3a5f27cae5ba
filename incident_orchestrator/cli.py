"""
Command-line entry point for the incident response orchestrator.

Runs the control loop either once (``--once``) or continuously until
interrupted. Executions interrupted by a previous run are failed on startup.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time

from incident_orchestrator.core.config import OrchestratorConfig, get_config, set_config
from incident_orchestrator.core.exceptions import OrchestratorError
from incident_orchestrator.core.logging import configure_logging, get_logger
from incident_orchestrator.orchestrator.factory import create_control_loop, describe_loop

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="incident-orchestrator",
        description="Detect, triage and remediate operational incidents",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON configuration file (default: search standard locations)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the state database (default: storage.db_path from config)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick, wait for its executions, and exit",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the system status as JSON and exit",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="With --once, maximum seconds to wait for executions",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.config:
            set_config(OrchestratorConfig.from_file(args.config))
        config = get_config()
    except (OSError, ValueError, OrchestratorError) as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        verbose=args.verbose,
        json_format=config.logging.json_format,
    )

    try:
        loop = create_control_loop(config, db_path=args.db)
    except OrchestratorError as e:
        logger.error(f"Failed to start orchestrator: {e}")
        return 2

    if args.status:
        print(json.dumps(describe_loop(loop), indent=2))
        loop.close()
        return 0

    loop.recover_interrupted()

    if args.once:
        report = loop.tick()
        finished = loop.wait_for_executions(timeout=args.timeout)
        loop.close()
        logger.info(
            f"Tick complete: {len(report.new_incidents)} new incidents, "
            f"{len(report.coalesced)} coalesced, {len(report.resolved_incidents)} resolved"
        )
        if not finished:
            logger.warning("Executions still running after timeout")
            return 1
        return 0 if not report.errors else 1

    loop.start()
    try:
        while loop.is_running():
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        loop.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
