"""Application configuration management.

Loads configuration from config.yaml files and environment variables.
Environment variables take precedence over config file settings.

Two layers live here:

- Mutable settings dataclasses (``AppConfig`` and friends) that mirror the
  YAML file and can be saved back to it.
- Frozen ``ServiceProviderConfig`` / ``IdentityProviderConfig`` objects built
  from those settings by :func:`build_provider_configs`. Building them reads
  and parses every key and certificate, so a bad PEM file or a key that does
  not match its certificate fails at startup with ``ConfigurationError``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from samlsp.core.crypto.certs import (
    CertificateError,
    keypair_matches,
    load_certificate,
    load_private_key,
)
from samlsp.core.errors import ConfigurationError

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".samlsp"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Environment variable prefix
ENV_PREFIX = "SAMLSP_"

BINDING_REDIRECT = "redirect"
BINDING_POST = "post"

DEFAULT_CLOCK_SKEW_SECONDS = 120
DEFAULT_REQUEST_WINDOW_SECONDS = 300
DEFAULT_SLO_TIMEOUT_SECONDS = 5.0

DEFAULT_MAIL_ATTRIBUTES = (
    "urn:oid:0.9.2342.19200300.100.1.3",
    "mail",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
)

# Legacy environment variable names, honoured for drop-in deployments
LEGACY_ENV = {
    "idp_cert": "SAML_IDP_CERT",
    "decryption_key": "SAML_SP_DECRYPTION_KEY",
    "decryption_cert": "SAML_SP_DECRYPTION_CERT",
    "signing_key": "SAML_SP_SIGNING_KEY",
    "signing_cert": "SAML_SP_SIGNING_CERT",
    "idp_sso_url": "SAML_IDP_LOGIN_URL",
    "idp_slo_url": "SAML_IDP_LOGOUT_URL",
    "issuer": "SAML_ISSUER",
    "session_secret": "SESSION_SECRET",
    "application_token": "CLOUD_SECRET",
    "port": "PORT",
}


def _path_or_none(value: Any) -> Path | None:
    return Path(value).expanduser() if value else None


@dataclass
class ServerSettings:
    """Server configuration settings."""

    host: str = "127.0.0.1"
    port: int = 3000
    debug: bool = False
    session_secret: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerSettings:
        """Create ServerSettings from a dictionary."""
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=data.get("port", 3000),
            debug=data.get("debug", False),
            session_secret=data.get("session_secret"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "session_secret": self.session_secret,
        }


@dataclass
class IdPSettings:
    """Settings for the single trusted Identity Provider."""

    entity_id: str = ""
    sso_url: str = ""
    slo_url: str | None = None
    cert_paths: list[Path] = field(default_factory=list)
    backchannel_slo: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IdPSettings:
        """Create IdPSettings from a dictionary."""
        certs = data.get("cert_paths") or data.get("cert_path") or []
        if isinstance(certs, str):
            certs = [certs]
        return cls(
            entity_id=data.get("entity_id", ""),
            sso_url=data.get("sso_url", ""),
            slo_url=data.get("slo_url"),
            cert_paths=[Path(p).expanduser() for p in certs],
            backchannel_slo=data.get("backchannel_slo", False),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_id": self.entity_id,
            "sso_url": self.sso_url,
            "slo_url": self.slo_url,
            "cert_paths": [str(p) for p in self.cert_paths],
            "backchannel_slo": self.backchannel_slo,
        }


@dataclass
class SAMLSettings:
    """Service Provider protocol settings."""

    issuer: str = ""
    base_url: str = "http://localhost:3000"
    acs_url: str | None = None
    slo_url: str | None = None
    signing_key_path: Path | None = None
    signing_cert_path: Path | None = None
    decryption_key_path: Path | None = None
    decryption_cert_path: Path | None = None
    force_authn: bool = False
    clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS
    allow_unsolicited: bool = False
    request_binding: str = BINDING_REDIRECT
    request_window_seconds: int = DEFAULT_REQUEST_WINDOW_SECONDS
    slo_timeout_seconds: float = DEFAULT_SLO_TIMEOUT_SECONDS
    mail_attributes: list[str] = field(default_factory=lambda: list(DEFAULT_MAIL_ATTRIBUTES))
    application_token: str | None = None
    idp: IdPSettings = field(default_factory=IdPSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SAMLSettings:
        """Create SAMLSettings from a dictionary."""
        idp_data = data.get("idp", {})
        return cls(
            issuer=data.get("issuer", ""),
            base_url=data.get("base_url", "http://localhost:3000"),
            acs_url=data.get("acs_url"),
            slo_url=data.get("slo_url"),
            signing_key_path=_path_or_none(data.get("signing_key_path")),
            signing_cert_path=_path_or_none(data.get("signing_cert_path")),
            decryption_key_path=_path_or_none(data.get("decryption_key_path")),
            decryption_cert_path=_path_or_none(data.get("decryption_cert_path")),
            force_authn=data.get("force_authn", False),
            clock_skew_seconds=data.get("clock_skew_seconds", DEFAULT_CLOCK_SKEW_SECONDS),
            allow_unsolicited=data.get("allow_unsolicited", False),
            request_binding=data.get("request_binding", BINDING_REDIRECT),
            request_window_seconds=data.get("request_window_seconds", DEFAULT_REQUEST_WINDOW_SECONDS),
            slo_timeout_seconds=data.get("slo_timeout_seconds", DEFAULT_SLO_TIMEOUT_SECONDS),
            mail_attributes=list(data.get("mail_attributes") or DEFAULT_MAIL_ATTRIBUTES),
            application_token=data.get("application_token"),
            idp=IdPSettings.from_dict(idp_data) if idp_data else IdPSettings(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "issuer": self.issuer,
            "base_url": self.base_url,
            "acs_url": self.acs_url,
            "slo_url": self.slo_url,
            "signing_key_path": str(self.signing_key_path) if self.signing_key_path else None,
            "signing_cert_path": str(self.signing_cert_path) if self.signing_cert_path else None,
            "decryption_key_path": str(self.decryption_key_path) if self.decryption_key_path else None,
            "decryption_cert_path": str(self.decryption_cert_path) if self.decryption_cert_path else None,
            "force_authn": self.force_authn,
            "clock_skew_seconds": self.clock_skew_seconds,
            "allow_unsolicited": self.allow_unsolicited,
            "request_binding": self.request_binding,
            "request_window_seconds": self.request_window_seconds,
            "slo_timeout_seconds": self.slo_timeout_seconds,
            "mail_attributes": list(self.mail_attributes),
            "application_token": self.application_token,
            "idp": self.idp.to_dict(),
        }


@dataclass
class StorageSettings:
    """Session and pending-request storage settings."""

    backend: str = "memory"
    db_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageSettings:
        """Create StorageSettings from a dictionary."""
        return cls(
            backend=data.get("backend", "memory"),
            db_path=_path_or_none(data.get("db_path")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "backend": self.backend,
            "db_path": str(self.db_path) if self.db_path else None,
        }


@dataclass
class LoggingSettings:
    """Logging settings."""

    level: str = "info"
    log_file: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingSettings:
        """Create LoggingSettings from a dictionary."""
        return cls(
            level=data.get("level", "info"),
            log_file=_path_or_none(data.get("log_file")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "log_file": str(self.log_file) if self.log_file else None,
        }


@dataclass
class AppConfig:
    """Main application configuration."""

    server: ServerSettings = field(default_factory=ServerSettings)
    saml: SAMLSettings = field(default_factory=SAMLSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> AppConfig:
        """Create AppConfig from a dictionary."""
        return cls(
            server=ServerSettings.from_dict(data.get("server") or {}),
            saml=SAMLSettings.from_dict(data.get("saml") or {}),
            storage=StorageSettings.from_dict(data.get("storage") or {}),
            logging=LoggingSettings.from_dict(data.get("logging") or {}),
            config_path=config_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "server": self.server.to_dict(),
            "saml": self.saml.to_dict(),
            "storage": self.storage.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def save(self, path: Path | None = None) -> None:
        """Save configuration to a YAML file.

        Args:
            path: Path to save to. Uses config_path or default if not specified.
        """
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_env_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from e


def _get_env_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from e


def _get_env(*keys: str) -> str | None:
    """Return the first non-empty value among several environment variables."""
    for key in keys:
        value = os.environ.get(key)
        if value:
            return value
    return None


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration.

    Configuration is loaded in this order (later values override earlier):
    1. Default values
    2. config.yaml file (if exists)
    3. Environment variables (``SAMLSP_*`` first, then the legacy names)

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        AppConfig with merged settings.

    Raises:
        ConfigurationError: If the config file exists but is not valid YAML.
    """
    config = AppConfig()

    file_path = config_path or Path(os.environ.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_FILE))
    if file_path.exists():
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid configuration file {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {file_path} must contain a mapping")
        config = AppConfig.from_dict(data, config_path=file_path)

    # Server settings
    server = config.server
    if os.environ.get(f"{ENV_PREFIX}HOST"):
        server.host = os.environ[f"{ENV_PREFIX}HOST"]
    port = _get_env(f"{ENV_PREFIX}PORT", LEGACY_ENV["port"])
    if port:
        try:
            server.port = int(port)
        except ValueError as e:
            raise ConfigurationError(f"Invalid port: {port!r}") from e
    server.debug = _get_env_bool(f"{ENV_PREFIX}DEBUG", server.debug)
    server.session_secret = (
        _get_env(f"{ENV_PREFIX}SESSION_SECRET", LEGACY_ENV["session_secret"]) or server.session_secret
    )

    # SAML settings
    saml = config.saml
    saml.issuer = _get_env(f"{ENV_PREFIX}ISSUER", LEGACY_ENV["issuer"]) or saml.issuer
    saml.base_url = _get_env(f"{ENV_PREFIX}BASE_URL") or saml.base_url
    saml.acs_url = _get_env(f"{ENV_PREFIX}ACS_URL") or saml.acs_url
    saml.slo_url = _get_env(f"{ENV_PREFIX}SLO_URL") or saml.slo_url

    for attr, legacy in (
        ("signing_key_path", "signing_key"),
        ("signing_cert_path", "signing_cert"),
        ("decryption_key_path", "decryption_key"),
        ("decryption_cert_path", "decryption_cert"),
    ):
        value = _get_env(f"{ENV_PREFIX}{attr.removesuffix('_path').upper()}", LEGACY_ENV[legacy])
        if value:
            setattr(saml, attr, Path(value).expanduser())

    saml.force_authn = _get_env_bool(f"{ENV_PREFIX}FORCE_AUTHN", saml.force_authn)
    saml.allow_unsolicited = _get_env_bool(f"{ENV_PREFIX}ALLOW_UNSOLICITED", saml.allow_unsolicited)
    saml.clock_skew_seconds = _get_env_int(f"{ENV_PREFIX}CLOCK_SKEW_SECONDS", saml.clock_skew_seconds)
    saml.request_window_seconds = _get_env_int(
        f"{ENV_PREFIX}REQUEST_WINDOW_SECONDS", saml.request_window_seconds
    )
    saml.slo_timeout_seconds = _get_env_float(f"{ENV_PREFIX}SLO_TIMEOUT_SECONDS", saml.slo_timeout_seconds)
    saml.request_binding = _get_env(f"{ENV_PREFIX}REQUEST_BINDING") or saml.request_binding
    saml.application_token = (
        _get_env(f"{ENV_PREFIX}APPLICATION_TOKEN", LEGACY_ENV["application_token"]) or saml.application_token
    )

    idp = saml.idp
    idp.entity_id = _get_env(f"{ENV_PREFIX}IDP_ENTITY_ID") or idp.entity_id
    idp.sso_url = _get_env(f"{ENV_PREFIX}IDP_SSO_URL", LEGACY_ENV["idp_sso_url"]) or idp.sso_url
    idp.slo_url = _get_env(f"{ENV_PREFIX}IDP_SLO_URL", LEGACY_ENV["idp_slo_url"]) or idp.slo_url
    idp_cert = _get_env(f"{ENV_PREFIX}IDP_CERT", LEGACY_ENV["idp_cert"])
    if idp_cert:
        idp.cert_paths = [Path(p).expanduser() for p in idp_cert.split(os.pathsep) if p]
    idp.backchannel_slo = _get_env_bool(f"{ENV_PREFIX}IDP_BACKCHANNEL_SLO", idp.backchannel_slo)

    # Storage and logging
    storage = config.storage
    storage.backend = _get_env(f"{ENV_PREFIX}STORAGE_BACKEND") or storage.backend
    if os.environ.get(f"{ENV_PREFIX}DB_PATH"):
        storage.db_path = Path(os.environ[f"{ENV_PREFIX}DB_PATH"]).expanduser()

    config.logging.level = _get_env(f"{ENV_PREFIX}LOG_LEVEL") or config.logging.level
    if os.environ.get(f"{ENV_PREFIX}LOG_FILE"):
        config.logging.log_file = Path(os.environ[f"{ENV_PREFIX}LOG_FILE"]).expanduser()

    return config


@dataclass(frozen=True)
class ServiceProviderConfig:
    """Immutable Service Provider configuration with parsed key material."""

    issuer: str
    acs_url: str
    slo_url: str
    signing_key: rsa.RSAPrivateKey | None = None
    signing_cert: x509.Certificate | None = None
    decryption_key: rsa.RSAPrivateKey | None = None
    decryption_cert: x509.Certificate | None = None
    force_authn: bool = False
    clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS
    allow_unsolicited: bool = False
    request_binding: str = BINDING_REDIRECT
    request_window_seconds: int = DEFAULT_REQUEST_WINDOW_SECONDS
    slo_timeout_seconds: float = DEFAULT_SLO_TIMEOUT_SECONDS
    mail_attributes: tuple[str, ...] = DEFAULT_MAIL_ATTRIBUTES
    application_token: str | None = None

    def __post_init__(self) -> None:
        if not self.issuer:
            raise ConfigurationError("SP issuer (entity ID) is required")
        if not self.acs_url or not self.slo_url:
            raise ConfigurationError("SP assertion consumer and logout URLs are required")
        if self.request_binding not in (BINDING_REDIRECT, BINDING_POST):
            raise ConfigurationError(f"Unsupported request binding: {self.request_binding}")
        if (self.signing_key is None) != (self.signing_cert is None):
            raise ConfigurationError("SP signing key and certificate must be configured together")
        if self.signing_key is not None and not keypair_matches(self.signing_key, self.signing_cert):
            raise ConfigurationError("SP signing certificate does not match the signing key")
        if self.decryption_key is not None and self.decryption_cert is not None:
            if not keypair_matches(self.decryption_key, self.decryption_cert):
                raise ConfigurationError("SP decryption certificate does not match the decryption key")
        if self.clock_skew_seconds < 0 or self.request_window_seconds <= 0:
            raise ConfigurationError("Clock skew and request window must be positive")


@dataclass(frozen=True)
class IdentityProviderConfig:
    """Immutable trusted Identity Provider configuration."""

    entity_id: str
    sso_url: str
    certificates: tuple[x509.Certificate, ...]
    slo_url: str | None = None
    backchannel_slo: bool = False

    def __post_init__(self) -> None:
        if not self.entity_id:
            raise ConfigurationError("IdP entity ID is required")
        if not self.sso_url:
            raise ConfigurationError("IdP single sign-on URL is required")
        if not self.certificates:
            raise ConfigurationError("At least one IdP signing certificate is required")


def _load_key(path: Path | None, label: str) -> rsa.RSAPrivateKey | None:
    if path is None:
        return None
    try:
        return load_private_key(path)
    except CertificateError as e:
        raise ConfigurationError(f"Invalid {label}: {e}") from e


def _load_cert(path: Path | None, label: str) -> x509.Certificate | None:
    if path is None:
        return None
    try:
        return load_certificate(path)
    except CertificateError as e:
        raise ConfigurationError(f"Invalid {label}: {e}") from e


def build_provider_configs(
    settings: SAMLSettings,
) -> tuple[ServiceProviderConfig, IdentityProviderConfig]:
    """Build the frozen SP and IdP configuration from loaded settings.

    Args:
        settings: SAML settings from :func:`load_config`.

    Returns:
        Tuple of (ServiceProviderConfig, IdentityProviderConfig).

    Raises:
        ConfigurationError: If any required value is missing or any key or
            certificate file cannot be parsed.
    """
    base_url = settings.base_url.rstrip("/")

    sp = ServiceProviderConfig(
        issuer=settings.issuer,
        acs_url=settings.acs_url or f"{base_url}/auth/saml/sso",
        slo_url=settings.slo_url or f"{base_url}/auth/saml/slo",
        signing_key=_load_key(settings.signing_key_path, "SP signing key"),
        signing_cert=_load_cert(settings.signing_cert_path, "SP signing certificate"),
        decryption_key=_load_key(settings.decryption_key_path, "SP decryption key"),
        decryption_cert=_load_cert(settings.decryption_cert_path, "SP decryption certificate"),
        force_authn=settings.force_authn,
        clock_skew_seconds=settings.clock_skew_seconds,
        allow_unsolicited=settings.allow_unsolicited,
        request_binding=settings.request_binding,
        request_window_seconds=settings.request_window_seconds,
        slo_timeout_seconds=settings.slo_timeout_seconds,
        mail_attributes=tuple(settings.mail_attributes),
        application_token=settings.application_token,
    )

    certificates = tuple(
        cert
        for cert in (_load_cert(path, "IdP certificate") for path in settings.idp.cert_paths)
        if cert is not None
    )
    idp = IdentityProviderConfig(
        entity_id=settings.idp.entity_id,
        sso_url=settings.idp.sso_url,
        certificates=certificates,
        slo_url=settings.idp.slo_url,
        backchannel_slo=settings.idp.backchannel_slo,
    )
    return sp, idp


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# samlsp Configuration File
# Environment variables override these settings (prefix: SAMLSP_).
# The SAML_* / SESSION_SECRET / CLOUD_SECRET / PORT names are honoured too.

server:
  # Server bind address
  host: "127.0.0.1"

  # Server port
  port: 3000

  # Enable debug mode (not recommended for production)
  debug: false

  # Secret used to sign the browser session cookie (SESSION_SECRET)
  # session_secret: "change-me"

saml:
  # SP entity ID, sent as Issuer in every request (SAML_ISSUER)
  issuer: "https://sp.example.com/metadata"

  # Public base URL; ACS and SLO URLs are derived from it unless set below
  base_url: "http://localhost:3000"
  # acs_url: "http://localhost:3000/auth/saml/sso"
  # slo_url: "http://localhost:3000/auth/saml/slo"

  # SP key pairs, PEM files (SAML_SP_SIGNING_KEY, SAML_SP_SIGNING_CERT, ...)
  # signing_key_path: ~/.samlsp/certs/signing.key
  # signing_cert_path: ~/.samlsp/certs/signing.crt
  # decryption_key_path: ~/.samlsp/certs/decryption.key
  # decryption_cert_path: ~/.samlsp/certs/decryption.crt

  # Ask the IdP to re-authenticate the user on every login
  force_authn: false

  # Tolerated clock difference with the IdP, in seconds
  clock_skew_seconds: 120

  # Accept IdP-initiated (unsolicited) responses
  allow_unsolicited: false

  # AuthnRequest binding: redirect or post
  request_binding: redirect

  # How long an issued AuthnRequest/LogoutRequest stays answerable, in seconds
  request_window_seconds: 300

  # Timeout for backchannel logout calls to the IdP, in seconds
  slo_timeout_seconds: 5.0

  # Attribute names tried, in order, for the user's mail address
  mail_attributes:
    - "urn:oid:0.9.2342.19200300.100.1.3"
    - "mail"
    - "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress"

  # Opaque token passed through to downstream systems (CLOUD_SECRET)
  # application_token: ""

  idp:
    entity_id: "https://idp.example.com/saml"
    # SAML_IDP_LOGIN_URL
    sso_url: "https://idp.example.com/saml/sso"
    # SAML_IDP_LOGOUT_URL; leave unset if the IdP has no SLO
    # slo_url: "https://idp.example.com/saml/slo"
    # Trusted IdP signing certificates (SAML_IDP_CERT)
    cert_paths: []
    # Send LogoutRequests over SOAP instead of redirecting the browser
    backchannel_slo: false

storage:
  # memory or sql
  backend: memory
  # db_path: ~/.samlsp/samlsp.db

logging:
  # error, info, debug or trace
  level: info
  # log_file: ~/.samlsp/samlsp.log
"""
