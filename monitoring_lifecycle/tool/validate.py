"""Monitoring-lifecycle validate action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast

from monitoring_lifecycle.exceptions import LifecycleException

from . import clients
from .format import struct_formatter


_LOGGER = logging.getLogger(__name__)


def add_output_flags(args: ArgumentParser) -> None:
    """Add the flags for printing a run report."""
    args.add_argument(
        "--output",
        "-o",
        choices=["yaml", "json"],
        default="yaml",
        help="Output format of the run report",
    )


class ValidateAction:
    """Install the monitoring chart if needed and validate it end to end."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "validate",
                help="Install and validate the monitoring stack",
                description=(
                    "Install the monitoring chart when it is missing, then check "
                    "workload readiness, the exposed endpoints and alert delivery "
                    "to a webhook receiver."
                ),
            ),
        )
        clients.add_config_flags(args)
        add_output_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        async with clients.orchestrator(config) as orchestrator:
            try:
                report = await orchestrator.run()
            except LifecycleException as err:
                err.add_note(f"Last lifecycle state: {orchestrator.state}")
                raise
        struct_formatter(output).print(report.to_dict())
