"""Service Provider facade.

Wires the Request Builder, Response Validator, Session Binder and SLO
Coordinator around one SP/IdP configuration pair and the shared stores, so
the web layer only deals with a single object.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from samlsp.core.config import (
    BINDING_POST,
    IdentityProviderConfig,
    SAMLSettings,
    ServiceProviderConfig,
    build_provider_configs,
)
from samlsp.core.crypto.adapter import CryptoAdapter
from samlsp.core.logging import ProtocolLogger, get_protocol_logger
from samlsp.core.saml.metadata import build_metadata
from samlsp.core.saml.replay import MemoryPendingRequestStore, PendingRequestStore
from samlsp.core.saml.requests import RequestBuilder
from samlsp.core.saml.response import ResponseValidator
from samlsp.core.saml.session import MemorySessionStore, Session, SessionBinder, SessionStore
from samlsp.core.saml.slo import LogoutOutcome, SLOCoordinator

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class LoginStart:
    """Where to send the browser to start SP-initiated SSO.

    Exactly one of ``redirect_url`` (HTTP-Redirect) and ``form``
    (HTTP-POST, with 'action' and 'fields') is set.
    """

    request_id: str
    redirect_url: str | None = None
    form: dict[str, Any] | None = field(default=None)


class ServiceProvider:
    """A SAML Service Provider bound to one trusted IdP.

    Args:
        sp: Service Provider configuration.
        idp: Trusted Identity Provider configuration.
        pending: Pending-request store. In-memory if omitted.
        sessions: Session store. In-memory if omitted.
        protocol_logger: Protocol logger. Uses the global one if omitted.
        transport: Inner httpx transport for backchannel logout.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        sp: ServiceProviderConfig,
        idp: IdentityProviderConfig,
        pending: PendingRequestStore | None = None,
        sessions: SessionStore | None = None,
        protocol_logger: ProtocolLogger | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sp = sp
        self.idp = idp
        self.pending = pending if pending is not None else MemoryPendingRequestStore()
        self.sessions = sessions if sessions is not None else MemorySessionStore()
        self.protocol_logger = protocol_logger or get_protocol_logger()
        self.clock = clock

        self.crypto = CryptoAdapter(
            signing_key=sp.signing_key,
            signing_cert=sp.signing_cert,
            decryption_key=sp.decryption_key,
        )
        self.builder = RequestBuilder(sp, idp, self.crypto, self.pending, self.protocol_logger, clock)
        self.validator = ResponseValidator(sp, idp, self.crypto, self.pending, self.protocol_logger, clock)
        self.binder = SessionBinder(sp, self.sessions, clock)
        self.slo = SLOCoordinator(
            self.builder,
            self.validator,
            self.binder,
            self.pending,
            protocol_logger=self.protocol_logger,
            transport=transport,
            clock=clock,
        )
        self._metadata: bytes | None = None

    @classmethod
    def from_settings(cls, settings: SAMLSettings, **kwargs: Any) -> ServiceProvider:
        """Build a ServiceProvider from loaded settings.

        Raises:
            ConfigurationError: If the settings are incomplete or key material is invalid.
        """
        sp, idp = build_provider_configs(settings)
        return cls(sp, idp, **kwargs)

    @property
    def metadata(self) -> bytes:
        """SP metadata, built once per configuration."""
        if self._metadata is None:
            self._metadata = build_metadata(self.sp)
        return self._metadata

    def start_login(self, relay_state: str | None = None) -> LoginStart:
        """Issue an AuthnRequest over the configured request binding."""
        if self.sp.request_binding == BINDING_POST:
            form, request_id = self.builder.build_authn_post_form(relay_state)
            return LoginStart(request_id=request_id, form=form)
        url, request_id = self.builder.build_authn_request(relay_state)
        return LoginStart(request_id=request_id, redirect_url=url)

    def finish_login(
        self,
        raw_response: str,
        pending_request_id: str | None = None,
        is_redirect: bool = False,
    ) -> Session:
        """Validate a SAMLResponse and bind a session to its assertion.

        Raises:
            ValidationError: If the response fails any validation step.
        """
        assertion = self.validator.validate_response(raw_response, pending_request_id, is_redirect)
        return self.binder.bind(assertion)

    def housekeeping(self, now: datetime | None = None) -> list[LogoutOutcome]:
        """Drop expired single-use IDs and time out unanswered logouts."""
        now = now or self.clock()
        purged = self.pending.purge_expired(now)
        outcomes = self.slo.expire_pending(now)
        if purged or outcomes:
            logger.debug(f"Housekeeping purged {purged} expired IDs, expired {len(outcomes)} pending logouts")
        return outcomes
