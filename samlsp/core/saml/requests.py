"""Request Builder: outbound AuthnRequest, LogoutRequest and LogoutResponse.

Every request ID the builder hands out is registered in the pending-request
store before the URL is returned, so the matching response can later be
recognised, and consumed exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from lxml import etree

from samlsp.core.crypto.adapter import CryptoAdapter
from samlsp.core.logging import ProtocolLogger, get_protocol_logger
from samlsp.core.saml.bindings import (
    BINDING_HTTP_POST,
    NAMEID_FORMAT_UNSPECIFIED,
    SAML_NS_URI,
    SAMLP_NS,
    build_post_form,
    build_redirect_url,
    format_instant,
    generate_id,
)
from samlsp.core.saml.logout import LogoutStatus, SAMLLogoutRequest, SAMLLogoutResponse, wrap_soap
from samlsp.core.saml.replay import KIND_AUTHN, KIND_LOGOUT, PendingRequestStore

if TYPE_CHECKING:
    from samlsp.core.config import IdentityProviderConfig, ServiceProviderConfig
    from samlsp.core.saml.session import Session

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SAMLAuthnRequest:
    """Represents a SAML AuthnRequest."""

    id: str
    issue_instant: str
    issuer: str
    destination: str
    acs_url: str
    protocol_binding: str = BINDING_HTTP_POST
    name_id_policy_format: str = NAMEID_FORMAT_UNSPECIFIED
    force_authn: bool = False

    def to_element(self) -> etree._Element:
        """Build the AuthnRequest element."""
        root = etree.Element(f"{{{SAMLP_NS}}}AuthnRequest", nsmap={"samlp": SAMLP_NS, "saml": SAML_NS_URI})
        root.set("ID", self.id)
        root.set("Version", "2.0")
        root.set("IssueInstant", self.issue_instant)
        root.set("Destination", self.destination)
        root.set("AssertionConsumerServiceURL", self.acs_url)
        root.set("ProtocolBinding", self.protocol_binding)
        if self.force_authn:
            root.set("ForceAuthn", "true")

        etree.SubElement(root, f"{{{SAML_NS_URI}}}Issuer").text = self.issuer
        policy = etree.SubElement(root, f"{{{SAMLP_NS}}}NameIDPolicy")
        policy.set("Format", self.name_id_policy_format)
        policy.set("AllowCreate", "true")
        return root


class RequestBuilder:
    """Builds and registers outbound SAML messages for one SP/IdP pair.

    Args:
        sp: Service Provider configuration.
        idp: Trusted Identity Provider configuration.
        crypto: Adapter holding the SP signing key.
        pending: Store that receives every issued request ID.
        protocol_logger: Logger for outbound messages. Uses the global one if omitted.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        sp: ServiceProviderConfig,
        idp: IdentityProviderConfig,
        crypto: CryptoAdapter,
        pending: PendingRequestStore,
        protocol_logger: ProtocolLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sp = sp
        self.idp = idp
        self.crypto = crypto
        self.pending = pending
        self.protocol_logger = protocol_logger or get_protocol_logger()
        self.clock = clock

    def _serialize(self, element: etree._Element, sign: bool) -> bytes:
        if sign and self.crypto.can_sign:
            element = self.crypto.sign_element(element)
        return etree.tostring(element, xml_declaration=True, encoding="UTF-8")

    def _register(self, request_id: str, kind: str, now: datetime, data: dict[str, str] | None = None) -> None:
        expires_at = now + timedelta(seconds=self.sp.request_window_seconds)
        if not self.pending.add(request_id, kind, expires_at, data, now=now):
            # IDs carry 128 random bits; a collision means the store is broken
            raise RuntimeError(f"Pending request ID already registered: {request_id}")

    # -- AuthnRequest ---------------------------------------------------------

    def create_authn_request(self, now: datetime | None = None) -> SAMLAuthnRequest:
        """Create an AuthnRequest without registering it."""
        now = now or self.clock()
        return SAMLAuthnRequest(
            id=generate_id(),
            issue_instant=format_instant(now),
            issuer=self.sp.issuer,
            destination=self.idp.sso_url,
            acs_url=self.sp.acs_url,
            force_authn=self.sp.force_authn,
        )

    def build_authn_request(self, relay_state: str | None = None) -> tuple[str, str]:
        """Build an HTTP-Redirect AuthnRequest URL.

        Args:
            relay_state: Optional RelayState, returned untouched by the IdP.

        Returns:
            Tuple of (redirect_url, request_id).
        """
        now = self.clock()
        request = self.create_authn_request(now)
        xml = self._serialize(request.to_element(), sign=False)
        self._register(request.id, KIND_AUTHN, now)

        url = build_redirect_url(self.idp.sso_url, "SAMLRequest", xml, relay_state, self.crypto)
        self.protocol_logger.log_message("outbound", "AuthnRequest", xml.decode("utf-8"))
        logger.info(f"Issued AuthnRequest {request.id} to {self.idp.entity_id}")
        return url, request.id

    def build_authn_post_form(self, relay_state: str | None = None) -> tuple[dict[str, Any], str]:
        """Build an HTTP-POST AuthnRequest form, XML-signed when a key is configured.

        Returns:
            Tuple of (form descriptor with 'action' and 'fields', request_id).
        """
        now = self.clock()
        request = self.create_authn_request(now)
        xml = self._serialize(request.to_element(), sign=True)
        self._register(request.id, KIND_AUTHN, now)

        self.protocol_logger.log_message("outbound", "AuthnRequest", xml.decode("utf-8"))
        logger.info(f"Issued AuthnRequest {request.id} (POST) to {self.idp.entity_id}")
        return build_post_form(self.idp.sso_url, "SAMLRequest", xml, relay_state), request.id

    # -- LogoutRequest --------------------------------------------------------

    def create_logout_request(self, session: Session, now: datetime) -> SAMLLogoutRequest:
        """Create a LogoutRequest for a bound session without registering it.

        Raises:
            ValueError: If the IdP has no logout endpoint.
        """
        if not self.idp.slo_url:
            raise ValueError("IdP single logout URL not configured")
        return SAMLLogoutRequest(
            id=generate_id(),
            issue_instant=format_instant(now),
            issuer=self.sp.issuer,
            destination=self.idp.slo_url,
            name_id=session.name_id,
            name_id_format=session.name_id_format or NAMEID_FORMAT_UNSPECIFIED,
            name_qualifier=session.name_qualifier,
            sp_name_qualifier=session.sp_name_qualifier,
            session_index=session.session_index,
            not_on_or_after=format_instant(now + timedelta(seconds=self.sp.request_window_seconds)),
        )

    def build_logout_request(self, session: Session, relay_state: str | None = None) -> tuple[str, str]:
        """Build an HTTP-Redirect LogoutRequest URL for a session.

        The request is registered as a pending logout carrying the session
        token, so the LogoutResponse (or the pending timeout) can find the
        session to revoke.

        Returns:
            Tuple of (redirect_url, request_id).
        """
        now = self.clock()
        request = self.create_logout_request(session, now)
        xml = self._serialize(request.to_element(), sign=False)
        self._register(request.id, KIND_LOGOUT, now, {"session_token": session.token})

        url = build_redirect_url(self.idp.slo_url, "SAMLRequest", xml, relay_state, self.crypto)
        self.protocol_logger.log_message("outbound", "LogoutRequest", xml.decode("utf-8"))
        logger.info(f"Issued LogoutRequest {request.id} to {self.idp.entity_id}")
        return url, request.id

    def build_logout_request_soap(self, session: Session) -> tuple[bytes, str]:
        """Build a signed LogoutRequest wrapped in a SOAP envelope.

        Returns:
            Tuple of (SOAP envelope bytes, request_id).
        """
        now = self.clock()
        request = self.create_logout_request(session, now)
        element = request.to_element()
        if self.crypto.can_sign:
            element = self.crypto.sign_element(element)
        envelope = wrap_soap(element)
        self._register(request.id, KIND_LOGOUT, now, {"session_token": session.token})

        self.protocol_logger.log_message("outbound", "LogoutRequest", envelope.decode("utf-8"))
        logger.info(f"Issued backchannel LogoutRequest {request.id} to {self.idp.entity_id}")
        return envelope, request.id

    # -- LogoutResponse -------------------------------------------------------

    def build_logout_response(
        self,
        request_id: str | None,
        status: LogoutStatus | str = LogoutStatus.SUCCESS,
        relay_state: str | None = None,
        status_message: str | None = None,
    ) -> str:
        """Build an HTTP-Redirect LogoutResponse URL answering an IdP LogoutRequest.

        Args:
            request_id: ID of the LogoutRequest being answered, if it was readable.
            status: Top-level status code.
            relay_state: RelayState received with the request, passed back untouched.
            status_message: Optional status message.

        Returns:
            URL at the IdP logout endpoint carrying the LogoutResponse.

        Raises:
            ValueError: If the IdP has no logout endpoint.
        """
        if not self.idp.slo_url:
            raise ValueError("IdP single logout URL not configured")

        response = SAMLLogoutResponse(
            id=generate_id(),
            issue_instant=format_instant(self.clock()),
            issuer=self.sp.issuer,
            destination=self.idp.slo_url,
            in_response_to=request_id,
            status_code=str(status),
            status_message=status_message,
        )
        xml = self._serialize(response.to_element(), sign=False)
        self.protocol_logger.log_message("outbound", "LogoutResponse", xml.decode("utf-8"))
        logger.info(f"Issued LogoutResponse {response.id} ({response.status_code}) to {self.idp.entity_id}")
        return build_redirect_url(self.idp.slo_url, "SAMLResponse", xml, relay_state, self.crypto)
