"""
otcx/cli/__init__.py

otcx CLI: root Click command group.

This file is the sole entry point for the `otcx` terminal command.
It is registered in pyproject.toml as:

    [project.scripts]
    otcx = "otcx.cli:cli"

Adding a new command:
    1. Create otcx/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)
"""

from pathlib import Path
from typing import Optional

import click

from otcx.cli.common import EXIT_USAGE, CliState, _Color, emit_error
from otcx.cli.export import export_command, keygen_command
from otcx.cli.market import market_command, orders_command
from otcx.cli.review import review_group
from otcx.cli.verify import verify_command
from otcx.cli.watch import watch_command
from otcx.config import OtcxConfig, configure_logging
from otcx.core.exceptions import ConfigError


@click.group()
@click.version_option(package_name="otcx")
@click.option(
    "--config", "config_path",
    type    = click.Path(dir_okay=False, path_type=Path),
    default = None,
    envvar  = "OTCX_CONFIG",
    metavar = "FILE",
    help    = "YAML configuration file. Env: OTCX_CONFIG.",
)
@click.option(
    "--state", "state_path",
    type    = click.Path(dir_okay=False, path_type=Path),
    default = None,
    envvar  = "OTCX_STATE",
    metavar = "FILE",
    help    = "Ledger state file. Env: OTCX_STATE.",
)
@click.option(
    "--log-level",
    type    = click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default = None,
    help    = "Override logging.level from config.",
)
@click.option(
    "--no-color",
    is_flag = True,
    default = False,
    help    = "Disable ANSI color output.",
)
@click.pass_context
def cli(
    ctx:         click.Context,
    config_path: Optional[Path],
    state_path:  Optional[Path],
    log_level:   Optional[str],
    no_color:    bool,
) -> None:
    """
    otcx: escrow settlement coordination for the OTC points market.

    \b
    Commands:
      market         Market statistics per project and venue-wide.
      orders         Orders of one project by bucket, with actions.
      review         List, accept and reject settlement proofs.
      export         Export a project's proofs (csv, xlsx, signed json).
      keygen         Generate an Ed25519 report signing key.
      verify-report  Check an exported report's digest and signature.
      watch          Refresh one project on a schedule.

    \b
    Quick start:
      otcx --state ledger.yaml market
      otcx --state ledger.yaml review list grass
      otcx --state ledger.yaml review accept grass --approved-only
      otcx --state ledger.yaml export grass --format json --output report.json
    """
    _Color.configure(not no_color)
    try:
        config = OtcxConfig.load(config_path)
    except ConfigError as e:
        emit_error(str(e))
        ctx.exit(EXIT_USAGE)

    if log_level:
        config.logging.level = log_level.upper()
    configure_logging(config.logging.level, config.logging.format)

    ctx.obj = CliState(config=config, state_path=state_path)


cli.add_command(market_command)
cli.add_command(orders_command)
cli.add_command(review_group)
cli.add_command(export_command)
cli.add_command(keygen_command)
cli.add_command(verify_command)
cli.add_command(watch_command)
