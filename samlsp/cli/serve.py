"""``samlsp serve``."""

from __future__ import annotations

import click

from samlsp.core.errors import ConfigurationError


@click.command()
@click.option("--host", "-h", default=None, help="Bind address (default: server.host, 127.0.0.1).")
@click.option("--port", "-p", type=int, default=None, help="Bind port (default: server.port, 3000).")
@click.option("--debug", is_flag=True, help="Run Flask in debug mode.")
@click.pass_obj
def serve(obj: dict | None, host: str | None, port: int | None, debug: bool) -> None:
    """Run the SP web server.

    Settings come from the config file and SAMLSP_* environment variables.
    Terminate TLS in a reverse proxy and set saml.base_url to the public
    HTTPS address.
    """
    from samlsp.app import run_server
    from samlsp.core.config import load_config
    from samlsp.core.logging import LogLevel, configure_logging

    try:
        config = load_config()
        config.server.debug = config.server.debug or debug

        level = LogLevel.parse((obj or {}).get("log_level") or config.logging.level)
        log_file = str(config.logging.log_file) if config.logging.log_file else None
        configure_logging(level=level, trace_enabled=level == LogLevel.TRACE, log_file=log_file)

        run_server(app_config=config, host=host, port=port)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None
