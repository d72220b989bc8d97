"""Command line tool for installing, validating and upgrading cluster monitoring."""

import argparse
import asyncio
import logging
import sys
import traceback

from monitoring_lifecycle.exceptions import LifecycleException
from . import status, upgrade, validate

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for validating the lifecycle of cluster monitoring.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    status.StatusAction.register(subparsers)
    validate.ValidateAction.register(subparsers)
    upgrade.UpgradeAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Monitoring-lifecycle command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except LifecycleException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("monitoring-lifecycle error: ", err, file=sys.stderr)
        for note in getattr(err, "__notes__", []):
            print(note, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
