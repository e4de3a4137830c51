"""``samlsp`` command group."""

from __future__ import annotations

import click

from samlsp import __version__
from samlsp.cli.certs import certs
from samlsp.cli.config import config
from samlsp.cli.db import db
from samlsp.cli.metadata import decode, metadata
from samlsp.cli.serve import serve


@click.group()
@click.version_option(__version__, prog_name="samlsp")
@click.option(
    "--log-level",
    type=click.Choice(["ERROR", "INFO", "DEBUG", "TRACE"], case_sensitive=False),
    default=None,
    help="Overrides logging.level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """samlsp - SAML 2.0 Service Provider."""
    ctx.obj = {"log_level": log_level}


for command in (certs, config, db, decode, metadata, serve):
    cli.add_command(command)
