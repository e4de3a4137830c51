"""Metadata and message inspection CLI commands."""

from __future__ import annotations

from pathlib import Path

import click

from samlsp.core.errors import ConfigurationError, MalformedMessage


@click.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path, dir_okay=False),  # type: ignore[type-var]
    help="Write metadata to a file instead of stdout.",
)
def metadata(output: Path | None) -> None:
    """Print the SP metadata for the current configuration."""
    from samlsp.core.config import build_provider_configs, load_config
    from samlsp.core.saml.metadata import build_metadata

    try:
        sp, _ = build_provider_configs(load_config().saml)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None

    document = build_metadata(sp)
    if output:
        output.write_bytes(document)
        click.echo(f"Metadata written to: {output}")
    else:
        click.echo(document.decode("utf-8"), nl=False)


@click.command()
@click.argument("value")
@click.option(
    "--redirect",
    is_flag=True,
    help="Value came from an HTTP-Redirect URL (inflate after base64).",
)
def decode(value: str, redirect: bool) -> None:
    """Decode a SAMLRequest or SAMLResponse parameter and pretty-print it.

    VALUE must already be URL-decoded.
    """
    from samlsp.core.saml.bindings import decode_message
    from samlsp.core.saml.utils import pretty_print_xml

    try:
        xml = decode_message(value, redirect)
    except MalformedMessage as e:
        raise click.ClickException(str(e)) from None
    click.echo(pretty_print_xml(xml))
