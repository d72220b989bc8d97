"""Monitoring-lifecycle status action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
import tempfile
from typing import cast

from monitoring_lifecycle.config import read_config

from . import clients
from .format import PrintFormatter, struct_formatter


_LOGGER = logging.getLogger(__name__)


class StatusAction:
    """Print the install state of the monitoring chart."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "status",
                help="Print the install state of the monitoring chart",
                description="Print the installed and published versions of the monitoring chart.",
            ),
        )
        clients.add_config_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["yaml", "json"],
            default=None,
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        output: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        run_config = await read_config(config)
        with tempfile.TemporaryDirectory() as tmp_dir:
            charts = clients.chart_manager(run_config, pathlib.Path(tmp_dir))
            state = await charts.status(run_config.chart.namespace, run_config.chart.name)

        if output:
            struct_formatter(output).print(state.to_dict())
            return
        PrintFormatter().print(
            [
                {
                    "name": run_config.chart.name,
                    "namespace": run_config.chart.namespace,
                    "installed": state.is_installed,
                    "version": state.installed_version,
                    "latest": state.latest_version,
                }
            ]
        )
