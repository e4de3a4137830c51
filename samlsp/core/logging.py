"""Protocol logging for the SP's SAML traffic.

Two kinds of traffic are recorded:

- SAML messages that travel through the browser (AuthnRequest, Response,
  LogoutRequest, LogoutResponse), through :meth:`ProtocolLogger.log_message`.
- Direct HTTP calls from the SP to the IdP (SOAP backchannel logout),
  through :class:`LoggingTransport`.

Log levels:
- ERROR: failed backchannel calls only
- INFO: flow milestones and one line per backchannel call
- DEBUG: message sizes, HTTP headers and timing
- TRACE: whole SAML messages and HTTP bodies (requires explicit enable)

Below TRACE, SAML payloads, NameIDs, session indexes, keys and credentials
are masked by :func:`redact_sensitive` before anything is written.
"""

from __future__ import annotations

import itertools
import logging
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any

import httpx

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Every samlsp.* module logger propagates here
package_logger = logging.getLogger("samlsp")

logger = logging.getLogger("samlsp.protocol")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Longest HTTP body written at TRACE level
MAX_BODY_CHARS = 2000


class LogLevel(IntEnum):
    """Protocol logging levels, numbered like the stdlib ones."""

    ERROR = logging.ERROR
    INFO = logging.INFO
    DEBUG = logging.DEBUG
    TRACE = TRACE

    @classmethod
    def parse(cls, value: LogLevel | str) -> LogLevel:
        """Level from an enum member or a case-insensitive name; unknown names mean INFO."""
        if isinstance(value, LogLevel):
            return value
        return cls.__members__.get(value.upper(), cls.INFO)


SENSITIVE_PATTERNS = [
    # SAML binding parameters (query strings and form bodies)
    (re.compile(r"(SAMLRequest=)[^&\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(SAMLResponse=)[^&\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(Signature=)[^&\s]+"), r"\1[REDACTED]"),
    # Identity values inside SAML XML
    (re.compile(r"(<(?:\w+:)?NameID\b[^>]*>)[^<]+(</)"), r"\1[REDACTED]\2"),
    (re.compile(r"(<(?:\w+:)?SessionIndex>)[^<]+(</)"), r"\1[REDACTED]\2"),
    (re.compile(r'(SessionIndex=")[^"]+(")'), r"\1[REDACTED]\2"),
    (re.compile(r"(<(?:\w+:)?(?:SignatureValue|CipherValue)>)[^<]+(</)"), r"\1[REDACTED]\2"),
    # Key material
    (
        re.compile(r"-----BEGIN ([A-Z ]*)PRIVATE KEY-----.*?-----END \1PRIVATE KEY-----", re.DOTALL),
        r"[REDACTED PRIVATE KEY]",
    ),
    # Credentials in header lines and bare header values
    (re.compile(r"(Authorization:\s*\w+\s+)[^\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"^((?:Basic|Bearer)\s+)[^\s]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"((?:Set-)?Cookie:\s*)[^\r\n]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"^(session=)[^;\s]+"), r"\1[REDACTED]"),
    # Session tokens in JSON bodies
    (re.compile(r'"(session_token|cloud_token|token)"\s*:\s*"[^"]+"', re.IGNORECASE), r'"\1": "[REDACTED]"'),
]


def redact_sensitive(text: str) -> str:
    """Mask SAML payloads, identities, keys and credentials in ``text``."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _clip(body: str) -> str:
    return body if len(body) <= MAX_BODY_CHARS else f"{body[:MAX_BODY_CHARS]}..."


def _section(title: str, headers: dict[str, str]) -> list[str]:
    return [f"  {title}:", *(f"    {name}: {value}" for name, value in headers.items())]


@dataclass
class HTTPExchange:
    """One backchannel HTTP call from the SP to the IdP."""

    id: str
    sent_at: datetime
    method: str
    url: str
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    status: int | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    elapsed_ms: float | None = None
    error: str | None = None

    def redacted(self) -> HTTPExchange:
        """Copy with every sensitive value masked."""

        def mask(value: str | None) -> str | None:
            return None if value is None else redact_sensitive(value)

        return replace(
            self,
            url=redact_sensitive(self.url),
            request_headers={k: redact_sensitive(v) for k, v in self.request_headers.items()},
            request_body=mask(self.request_body),
            response_headers={k: redact_sensitive(v) for k, v in self.response_headers.items()},
            response_body=mask(self.response_body),
        )

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        exchange = self if include_sensitive else self.redacted()
        data = asdict(exchange)
        data["sent_at"] = exchange.sent_at.isoformat()
        return data

    def format_log(self, level: LogLevel, include_sensitive: bool = False) -> str:
        """Render the exchange as log text.

        One summary line at INFO; DEBUG adds headers and TRACE adds bodies.
        """
        exchange = self if include_sensitive else self.redacted()
        lines = [f"HTTP {exchange.method} {exchange.url} -> {exchange.status or 'ERROR'}"]
        if exchange.elapsed_ms is not None:
            lines.append(f"  Duration: {exchange.elapsed_ms:.1f}ms")
        if exchange.error:
            lines.append(f"  Error: {exchange.error}")

        if level <= LogLevel.DEBUG:
            lines.extend(_section("Request Headers", exchange.request_headers))
            if exchange.response_headers:
                lines.extend(_section("Response Headers", exchange.response_headers))

        if level <= LogLevel.TRACE:
            for title, body in (("Request Body", exchange.request_body), ("Response Body", exchange.response_body)):
                if body:
                    lines += [f"  {title}:", f"    {_clip(body)}"]

        return "\n".join(lines)


@dataclass
class MessageRecord:
    """A SAML message that passed through the browser."""

    direction: str
    message_type: str
    size: int
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ProtocolLog:
    """Traffic recorded for one SAML flow, named after the message that started it."""

    flow_id: str
    flow_type: str
    messages: list[MessageRecord] = field(default_factory=list)
    exchanges: list[HTTPExchange] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def complete(self) -> None:
        self.completed_at = datetime.now(UTC)

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "flow_type": self.flow_type,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "messages": [f"{m.direction} {m.message_type} ({m.size} bytes)" for m in self.messages],
            "exchanges": [e.to_dict(include_sensitive) for e in self.exchanges],
            "exchange_count": len(self.exchanges),
        }


class ProtocolLogger:
    """Writes SAML protocol traffic to the ``samlsp.protocol`` logger.

    At most one flow is open at a time. Traffic logged while a flow is open
    is also collected in its :class:`ProtocolLog`.

    Attributes:
        level: Minimum level that is written.
        trace_enabled: TRACE output is only produced when this is set,
            whatever ``level`` says.
    """

    def __init__(self, level: LogLevel = LogLevel.INFO, trace_enabled: bool = False) -> None:
        self.level = level
        self.trace_enabled = trace_enabled
        self.current: ProtocolLog | None = None

    @property
    def effective_level(self) -> LogLevel:
        if self.level <= LogLevel.TRACE and not self.trace_enabled:
            return LogLevel.DEBUG
        return self.level

    @property
    def include_sensitive(self) -> bool:
        """Unredacted output is limited to an explicitly enabled TRACE."""
        return self.effective_level <= LogLevel.TRACE

    def start_flow(self, flow_id: str, flow_type: str) -> ProtocolLog:
        """Open a new flow, replacing any flow still open.

        Args:
            flow_id: Usually the ID of the SAML message that starts the flow.
            flow_type: ``saml_sso`` or ``saml_slo``.
        """
        self.current = ProtocolLog(flow_id=flow_id, flow_type=flow_type)
        logger.info(f"{flow_type} {flow_id}: recording started")
        return self.current

    def end_flow(self) -> ProtocolLog | None:
        """Close the open flow and return it, or None if none was open."""
        log, self.current = self.current, None
        if log is None:
            return None
        log.complete()
        logger.info(
            f"{log.flow_type} {log.flow_id}: {len(log.messages)} messages, {len(log.exchanges)} HTTP exchanges"
        )
        return log

    @contextmanager
    def flow(self, flow_id: str, flow_type: str) -> Iterator[ProtocolLog]:
        """Record a flow for the duration of a ``with`` block."""
        log = self.start_flow(flow_id, flow_type)
        try:
            yield log
        finally:
            self.end_flow()

    def log_message(self, direction: str, message_type: str, xml: str) -> None:
        """Record a SAML message that travels through the browser.

        Args:
            direction: "outbound" or "inbound".
            message_type: SAML message name, e.g. "AuthnRequest".
            xml: The serialized message.
        """
        if self.current is not None:
            self.current.messages.append(MessageRecord(direction, message_type, len(xml)))

        level = self.effective_level
        if level <= LogLevel.TRACE:
            logger.log(TRACE, f"{direction} {message_type}:\n{xml}")
        elif level <= LogLevel.DEBUG:
            logger.debug(f"{direction} {message_type} ({len(xml)} bytes)")

    def log_exchange(self, exchange: HTTPExchange) -> None:
        """Record a backchannel HTTP exchange."""
        if self.current is not None:
            self.current.exchanges.append(exchange)

        level = self.effective_level
        if level <= LogLevel.INFO:
            logger.log(
                logging.INFO if level == LogLevel.INFO else logging.DEBUG,
                exchange.format_log(level, self.include_sensitive),
            )
        if exchange.error:
            logger.error(f"Backchannel {exchange.method} {redact_sensitive(exchange.url)} failed: {exchange.error}")

    def create_transport(self, transport: httpx.BaseTransport | None = None) -> LoggingTransport:
        """Wrap ``transport`` (default ``httpx.HTTPTransport``) so its calls are recorded here."""
        return LoggingTransport(self, transport)


class LoggingTransport(httpx.BaseTransport):
    """httpx transport that hands every call to a :class:`ProtocolLogger`."""

    def __init__(self, protocol_logger: ProtocolLogger, transport: httpx.BaseTransport | None = None) -> None:
        self.protocol_logger = protocol_logger
        self.inner = transport or httpx.HTTPTransport()
        self._sequence = itertools.count(1)

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        exchange = HTTPExchange(
            id=f"http_{next(self._sequence):04d}",
            sent_at=datetime.now(UTC),
            method=request.method,
            url=str(request.url),
            request_headers=dict(request.headers),
            request_body=request.content.decode("utf-8", errors="replace") if request.content else None,
        )
        started = time.perf_counter()
        try:
            response = self.inner.handle_request(request)
            response.read()
        except httpx.HTTPError as e:
            exchange.error = f"{type(e).__name__}: {e}"
            raise
        else:
            exchange.status = response.status_code
            exchange.response_headers = dict(response.headers)
            exchange.response_body = response.text
        finally:
            exchange.elapsed_ms = (time.perf_counter() - started) * 1000
            self.protocol_logger.log_exchange(exchange)
        return response

    def close(self) -> None:
        self.inner.close()


class LoggingClient(httpx.Client):
    """httpx client whose traffic is recorded by a :class:`ProtocolLogger`.

    Redirects are never followed: SAML SOAP endpoints answer directly.

    Args:
        protocol_logger: Logger to record with. Uses the global one if omitted.
        transport: Inner transport, e.g. ``httpx.MockTransport`` in tests.
        **kwargs: Passed on to ``httpx.Client``.
    """

    def __init__(
        self,
        protocol_logger: ProtocolLogger | None = None,
        transport: httpx.BaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        self.protocol_logger = protocol_logger or get_protocol_logger()
        kwargs["follow_redirects"] = False
        super().__init__(transport=self.protocol_logger.create_transport(transport), **kwargs)


_global_logger: ProtocolLogger | None = None


def get_protocol_logger() -> ProtocolLogger:
    """The process-wide protocol logger, created on first use."""
    global _global_logger
    if _global_logger is None:
        _global_logger = ProtocolLogger()
    return _global_logger


def set_protocol_logger(logger_instance: ProtocolLogger) -> None:
    global _global_logger
    _global_logger = logger_instance


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    trace_enabled: bool = False,
    log_file: str | None = None,
) -> ProtocolLogger:
    """Send ``samlsp`` logs to stderr (and ``log_file``) and install a new protocol logger.

    Args:
        level: ERROR, INFO, DEBUG or TRACE, as a member or a name.
        trace_enabled: Allow TRACE output, which includes unredacted SAML messages.
        log_file: Optional file that receives the same records.

    Returns:
        The protocol logger now returned by :func:`get_protocol_logger`.
    """
    level = LogLevel.parse(level)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    formatter = logging.Formatter(LOG_FORMAT)
    package_logger.handlers.clear()
    package_logger.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    protocol_logger = ProtocolLogger(level=level, trace_enabled=trace_enabled)
    set_protocol_logger(protocol_logger)
    if trace_enabled:
        logger.warning("TRACE logging enabled: SAML messages and identities are written unredacted")
    return protocol_logger
