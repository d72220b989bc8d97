"""Monitoring-lifecycle upgrade action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast

from monitoring_lifecycle.exceptions import LifecycleException
from monitoring_lifecycle.orchestrator import LifecycleState

from . import clients
from .format import struct_formatter
from .validate import add_output_flags


_LOGGER = logging.getLogger(__name__)


class UpgradeAction:
    """Upgrade the monitoring chart to the newest version and validate it."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "upgrade",
                help="Upgrade the monitoring stack to the newest version",
                description=(
                    "Upgrade the monitoring chart to the newest published version "
                    "and validate the stack again. A chart that is not installed is "
                    "first installed at the version before the newest."
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
                report = await orchestrator.run_upgrade()
            except LifecycleException as err:
                err.add_note(f"Last lifecycle state: {orchestrator.state}")
                raise
        if report.state == LifecycleState.SKIPPED:
            print(
                f"{LifecycleState.SKIPPED}: chart already at the latest version "
                f"{report.version_after}"
            )
            return
        struct_formatter(output).print(report.to_dict())
