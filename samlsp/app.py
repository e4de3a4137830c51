"""Flask application factory."""

from __future__ import annotations

import logging
import os
import secrets
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from flask import Flask, Response, request

from samlsp.core.config import load_config
from samlsp.core.logging import redact_sensitive
from samlsp.core.saml.sp import ServiceProvider

if TYPE_CHECKING:
    from samlsp.core.config import AppConfig

access_logger = logging.getLogger("samlsp.access")
logger = logging.getLogger(__name__)

# Extension key under which the ServiceProvider is registered
EXTENSION_KEY = "samlsp"

# Minimum seconds between two housekeeping runs
HOUSEKEEPING_INTERVAL_SECONDS = 30


def _secret_key(app_config: AppConfig) -> str:
    """Session cookie secret: configured value, else a persistent generated one."""
    if app_config.server.session_secret:
        return app_config.server.session_secret

    secret_key = os.environ.get("SAMLSP_SECRET_KEY")
    if secret_key:
        return secret_key

    key_path = Path.home() / ".samlsp" / "flask_secret.key"
    if key_path.exists():
        return key_path.read_text().strip()
    secret_key = secrets.token_hex(32)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(secret_key)
    key_path.chmod(0o600)
    return secret_key


def build_service_provider(app_config: AppConfig) -> ServiceProvider:
    """Build the ServiceProvider with the configured storage backend.

    Raises:
        ConfigurationError: If the SAML settings are incomplete or invalid.
    """
    if app_config.storage.backend == "sql":
        from samlsp.storage import Database, SQLPendingRequestStore, SQLSessionStore

        database = Database(db_path=app_config.storage.db_path)
        database.init_db()
        return ServiceProvider.from_settings(
            app_config.saml,
            pending=SQLPendingRequestStore(database),
            sessions=SQLSessionStore(database),
        )
    return ServiceProvider.from_settings(app_config.saml)


def create_app(
    app_config: AppConfig | None = None,
    provider: ServiceProvider | None = None,
    config: dict | None = None,
) -> Flask:
    """Flask app serving the SAML endpoints for one ServiceProvider.

    Args:
        app_config: Settings; read from the config file and environment when omitted.
        provider: Ready-made ServiceProvider, e.g. with test stores and clock.
        config: Extra Flask config applied last.
    """
    if app_config is None:
        app_config = load_config()
    if provider is None:
        provider = build_service_provider(app_config)

    app = Flask(__name__)
    app.config.from_mapping(
        SECRET_KEY=_secret_key(app_config),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        HOUSEKEEPING_INTERVAL_SECONDS=HOUSEKEEPING_INTERVAL_SECONDS,
    )
    if config:
        app.config.from_mapping(config)

    app.extensions[EXTENSION_KEY] = provider

    housekeeping_lock = threading.Lock()
    last_housekeeping: float | None = None

    @app.before_request
    def housekeeping() -> None:
        nonlocal last_housekeeping
        # A request that finds housekeeping already running skips it
        if not housekeeping_lock.acquire(blocking=False):
            return
        try:
            now = time.monotonic()
            interval = app.config["HOUSEKEEPING_INTERVAL_SECONDS"]
            if last_housekeeping is not None and now - last_housekeeping < interval:
                return
            last_housekeeping = now
            provider.housekeeping()
        finally:
            housekeeping_lock.release()

    @app.after_request
    def access_log(response: Response) -> Response:
        access_logger.info(
            f'{request.remote_addr} "{request.method} {redact_sensitive(request.full_path.rstrip("?"))}" '
            f'{response.status_code} {response.content_length or "-"} "{request.user_agent.string}"'
        )
        return response

    from samlsp.web import routes

    routes.init_app(app)

    return app


def run_server(
    app_config: AppConfig | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Serve the app with the Flask development server.

    ``host`` and ``port`` take precedence over ``server.host`` and ``server.port``.
    """
    app_config = app_config or load_config()
    bind = (host or app_config.server.host, port or app_config.server.port)

    app = create_app(app_config)
    logger.info(f"SAML service provider listening on {bind[0]}:{bind[1]}")
    app.run(host=bind[0], port=bind[1], debug=app_config.server.debug)
