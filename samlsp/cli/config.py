"""Configuration management CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click
import yaml

from samlsp.core.errors import ConfigurationError

# Common option for JSON output
json_option = click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)

# Settings never echoed back in clear
SECRET_FIELDS = ("session_secret", "application_token")


def _mask_secrets(data: dict[str, Any]) -> dict[str, Any]:
    masked: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            masked[key] = _mask_secrets(value)
        elif key in SECRET_FIELDS and value:
            masked[key] = "********"
        else:
            masked[key] = value
    return masked


@click.group()
def config() -> None:
    """Manage samlsp configuration."""
    pass


@config.command("init")
@click.option(
    "--path",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),  # type: ignore[type-var]
    help="Where to write the file. Defaults to ~/.samlsp/config.yaml",
)
@click.option(
    "--from-env",
    is_flag=True,
    help="Write the currently effective settings (file plus environment) instead of the annotated example.",
)
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite an existing configuration file.",
)
def config_init(config_path: Path | None, from_env: bool, force: bool) -> None:
    """Write a configuration file.

    Examples:

        # Annotated example at the default location
        samlsp config init

        # Freeze the settings from SAML_* environment variables into a file
        samlsp config init --from-env --path ./samlsp.yaml
    """
    from samlsp.core.config import DEFAULT_CONFIG_FILE, get_default_config_yaml, load_config

    target = config_path or DEFAULT_CONFIG_FILE
    if target.exists() and not force:
        raise click.ClickException(f"Configuration file already exists: {target}\nUse --force to overwrite")

    if from_env:
        try:
            load_config().save(target)
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from None
    else:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(get_default_config_yaml())

    click.echo(f"Configuration written to: {target}")


@config.command("show")
@json_option
def config_show(output_json: bool) -> None:
    """Show the effective configuration, secrets masked."""
    from samlsp.core.config import load_config

    try:
        app_config = load_config()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None

    data = _mask_secrets(app_config.to_dict())
    if output_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False), nl=False)


@config.command("check")
def config_check() -> None:
    """Load the SAML settings and key material, and report problems."""
    from samlsp.core.config import build_provider_configs, load_config

    try:
        sp, idp = build_provider_configs(load_config().saml)
    except ConfigurationError as e:
        raise click.ClickException(f"Configuration invalid: {e}") from None

    click.echo("Configuration valid.")
    click.echo(f"  SP entity ID: {sp.issuer}")
    click.echo(f"  ACS URL: {sp.acs_url}")
    click.echo(f"  SLO URL: {sp.slo_url}")
    click.echo(f"  Signs requests: {sp.signing_key is not None}")
    click.echo(f"  Decrypts assertions: {sp.decryption_key is not None}")
    click.echo(f"  IdP entity ID: {idp.entity_id}")
    click.echo(f"  IdP certificates: {len(idp.certificates)}")
    click.echo(f"  IdP single logout: {idp.slo_url or 'not configured'}")
