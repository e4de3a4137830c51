"""SLO Coordinator: SP-initiated and IdP-initiated Single Logout.

Logout runs as an explicit state machine. Every path ends in one of
``completed``, ``local_logout_only`` or ``failed``; a logout that never gets
an answer from the IdP is expired by :meth:`SLOCoordinator.expire_pending`
and falls back to ``local_logout_only`` instead of hanging in
``sp_initiated_pending``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx

from samlsp.core.errors import (
    ResponseNotRequested,
    ResponseStatusError,
    SAMLError,
    SLOTransportFailure,
    ValidationError,
)
from samlsp.core.logging import LoggingClient, ProtocolLogger, get_protocol_logger
from samlsp.core.saml.bindings import decode_message, parse_xml
from samlsp.core.saml.logout import LogoutStatus, SAMLLogoutResponse, unwrap_soap
from samlsp.core.saml.replay import KIND_LOGOUT, PendingRequestStore
from samlsp.core.saml.requests import RequestBuilder
from samlsp.core.saml.response import ResponseValidator
from samlsp.core.saml.session import Session, SessionBinder

if TYPE_CHECKING:
    from samlsp.core.config import IdentityProviderConfig, ServiceProviderConfig

logger = logging.getLogger(__name__)

SOAP_ACTION = "http://www.oasis-open.org/committees/security"


def utcnow() -> datetime:
    return datetime.now(UTC)


class SLOState(StrEnum):
    """States of a logout."""

    IDLE = "idle"
    AWAITING_NOT_AUTHENTICATED_CHECK = "awaiting_not_authenticated_check"
    SP_INITIATED_PENDING = "sp_initiated_pending"
    COMPLETED = "completed"
    LOCAL_LOGOUT_ONLY = "local_logout_only"
    FAILED = "failed"
    IDP_INITIATED_RECEIVED = "idp_initiated_received"


TERMINAL_STATES = frozenset({SLOState.COMPLETED, SLOState.LOCAL_LOGOUT_ONLY, SLOState.FAILED})


@dataclass
class LogoutOutcome:
    """Result of one step of a logout.

    ``redirect_url`` is set when the browser has to go to the IdP next:
    the LogoutRequest for front-channel SP-initiated logout, or the
    LogoutResponse answering an IdP-initiated one.
    """

    state: SLOState
    transitions: list[SLOState] = field(default_factory=list)
    redirect_url: str | None = None
    request_id: str | None = None
    reason: SAMLError | None = None
    sessions_revoked: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def soft_failure(self) -> bool:
        """True when the local session ended but the IdP could not confirm it."""
        return self.state == SLOState.LOCAL_LOGOUT_ONLY and self.reason is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "redirect_url": self.redirect_url,
            "request_id": self.request_id,
            "reason": self.reason.code if self.reason else None,
            "sessions_revoked": self.sessions_revoked,
        }


class SLOCoordinator:
    """Drives logout between the local session store and the IdP.

    Args:
        builder: Builds outbound LogoutRequest and LogoutResponse messages.
        validator: Validates inbound logout messages.
        binder: Owns the local sessions.
        pending: Store holding pending LogoutRequest IDs.
        protocol_logger: Logger for backchannel HTTP. Uses the global one if omitted.
        transport: Inner httpx transport for the backchannel, e.g. ``httpx.MockTransport``.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        builder: RequestBuilder,
        validator: ResponseValidator,
        binder: SessionBinder,
        pending: PendingRequestStore,
        protocol_logger: ProtocolLogger | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.builder = builder
        self.validator = validator
        self.binder = binder
        self.pending = pending
        self.protocol_logger = protocol_logger or get_protocol_logger()
        self.transport = transport
        self.clock = clock

    @property
    def idp(self) -> IdentityProviderConfig:
        return self.builder.idp

    @property
    def sp(self) -> ServiceProviderConfig:
        return self.builder.sp

    # -- SP-initiated ---------------------------------------------------------

    def begin_logout(self, session_token: str | None, relay_state: str | None = None) -> LogoutOutcome:
        """Start logout for the session behind a token.

        Raises:
            NotAuthenticated: If there is no active session. Nothing is sent
                to the IdP in that case.
        """
        transitions = [SLOState.IDLE, SLOState.AWAITING_NOT_AUTHENTICATED_CHECK]
        session = self.binder.lookup(session_token)

        if not self.idp.slo_url:
            self.binder.revoke(session.token)
            transitions.append(SLOState.LOCAL_LOGOUT_ONLY)
            logger.info("IdP has no logout endpoint, logged out locally")
            return LogoutOutcome(SLOState.LOCAL_LOGOUT_ONLY, transitions, sessions_revoked=1)

        if self.idp.backchannel_slo:
            return self._backchannel_logout(session, transitions)

        url, request_id = self.builder.build_logout_request(session, relay_state)
        transitions.append(SLOState.SP_INITIATED_PENDING)
        return LogoutOutcome(SLOState.SP_INITIATED_PENDING, transitions, redirect_url=url, request_id=request_id)

    def _backchannel_logout(self, session: Session, transitions: list[SLOState]) -> LogoutOutcome:
        envelope, request_id = self.builder.build_logout_request_soap(session)
        transitions.append(SLOState.SP_INITIATED_PENDING)

        failure: SAMLError | None = None
        with self.protocol_logger.flow(request_id, "saml_slo"):
            try:
                response = self._send_soap(envelope, request_id)
                if not response.is_success:
                    failure = SLOTransportFailure(
                        f"IdP answered backchannel logout with {response.status_code}",
                        message_id=request_id,
                    )
            except SLOTransportFailure as e:
                failure = e

        self.pending.consume(request_id, KIND_LOGOUT, self.clock())
        revoked = 1 if self.binder.revoke(session.token) else 0

        state = SLOState.LOCAL_LOGOUT_ONLY if failure else SLOState.COMPLETED
        transitions.append(state)
        if failure:
            logger.warning(f"Backchannel logout {request_id} fell back to local logout: {failure}")
        else:
            logger.info(f"Backchannel logout {request_id} completed")
        return LogoutOutcome(state, transitions, request_id=request_id, reason=failure, sessions_revoked=revoked)

    def _send_soap(self, envelope: bytes, request_id: str) -> SAMLLogoutResponse:
        """POST a SOAP LogoutRequest and validate the reply.

        Raises:
            SLOTransportFailure: On timeout, transport error, non-2xx status
                or an invalid LogoutResponse.
        """
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": SOAP_ACTION}
        try:
            with LoggingClient(
                protocol_logger=self.protocol_logger,
                transport=self.transport,
                timeout=self.sp.slo_timeout_seconds,
            ) as client:
                http_response = client.post(self.idp.slo_url, content=envelope, headers=headers)
                http_response.raise_for_status()
        except httpx.TimeoutException as e:
            raise SLOTransportFailure(
                f"Backchannel logout timed out after {self.sp.slo_timeout_seconds}s", message_id=request_id
            ) from e
        except httpx.HTTPStatusError as e:
            raise SLOTransportFailure(
                f"Backchannel logout returned HTTP {e.response.status_code}", message_id=request_id
            ) from e
        except httpx.HTTPError as e:
            raise SLOTransportFailure(f"Backchannel logout failed: {e}", message_id=request_id) from e

        try:
            element = unwrap_soap(parse_xml(http_response.content))
            return self.validator.validate_logout_response_element(element, request_id)
        except ValidationError as e:
            raise SLOTransportFailure(f"Invalid backchannel LogoutResponse: {e}", message_id=request_id) from e

    def complete_logout(
        self,
        raw: str,
        is_redirect: bool = False,
        query_string: str | None = None,
        session_token: str | None = None,
    ) -> LogoutOutcome:
        """Finish a front-channel logout with the IdP's LogoutResponse.

        The session is revoked whatever the IdP answered. The pending
        logout found through ``InResponseTo`` names the session; when the
        response cannot be trusted, ``session_token`` (from the browser) is
        revoked instead.
        """
        now = self.clock()
        transitions = [SLOState.SP_INITIATED_PENDING]
        reason: SAMLError | None = None
        response: SAMLLogoutResponse | None = None

        try:
            response = self.validator.validate_logout_response(raw, None, is_redirect, query_string)
        except ValidationError as e:
            reason = e

        entry = None
        if response is not None:
            if response.in_response_to:
                entry = self.pending.consume(response.in_response_to, KIND_LOGOUT, now)
            if entry is None:
                reason = ResponseNotRequested(
                    f"LogoutResponse answers no pending logout ({response.in_response_to!r})",
                    message_id=response.id,
                )
            elif not response.is_success:
                reason = ResponseStatusError(
                    f"IdP logout status {response.status_code}: {response.status_description}",
                    message_id=response.id,
                )

        token = entry.data.get("session_token") if entry else session_token
        revoked = 1 if token and self.binder.revoke(token) else 0

        state = SLOState.LOCAL_LOGOUT_ONLY if reason else SLOState.COMPLETED
        transitions.append(state)
        if reason:
            logger.warning(f"Logout fell back to local logout ({reason.code}): {reason}")
        else:
            logger.info(f"Logout {entry.id} completed")
        return LogoutOutcome(
            state,
            transitions,
            request_id=entry.id if entry else None,
            reason=reason,
            sessions_revoked=revoked,
        )

    def expire_pending(self, now: datetime | None = None) -> list[LogoutOutcome]:
        """Fall back to local logout for every pending logout past its window."""
        now = now or self.clock()
        outcomes = []
        for entry in self.pending.pop_expired(KIND_LOGOUT, now):
            token = entry.data.get("session_token")
            revoked = 1 if token and self.binder.revoke(token) else 0
            reason = SLOTransportFailure(f"No LogoutResponse for {entry.id} before it expired", message_id=entry.id)
            logger.warning(f"{reason}, logged out locally")
            outcomes.append(
                LogoutOutcome(
                    SLOState.LOCAL_LOGOUT_ONLY,
                    [SLOState.SP_INITIATED_PENDING, SLOState.LOCAL_LOGOUT_ONLY],
                    request_id=entry.id,
                    reason=reason,
                    sessions_revoked=revoked,
                )
            )
        return outcomes

    # -- IdP-initiated --------------------------------------------------------

    def handle_idp_logout_request(
        self,
        raw: str,
        is_redirect: bool = False,
        query_string: str | None = None,
        relay_state: str | None = None,
    ) -> LogoutOutcome:
        """Answer a LogoutRequest sent by the IdP.

        A valid request revokes every session of its subject (narrowed to the
        session index when given) and is answered with Success, even if no
        session matched. An invalid request revokes nothing and is answered
        with Requester.
        """
        transitions = [SLOState.IDLE, SLOState.IDP_INITIATED_RECEIVED]

        try:
            request = self.validator.validate_logout_request(raw, is_redirect, query_string)
        except ValidationError as e:
            request_id = _peek_message_id(raw, is_redirect)
            url = self._respond(request_id, LogoutStatus.REQUESTER, relay_state)
            transitions.append(SLOState.FAILED)
            return LogoutOutcome(SLOState.FAILED, transitions, redirect_url=url, request_id=request_id, reason=e)

        revoked = self.binder.revoke_subject(request.name_id, request.session_index)
        url = self._respond(request.id, LogoutStatus.SUCCESS, relay_state)
        transitions.append(SLOState.COMPLETED)
        return LogoutOutcome(
            SLOState.COMPLETED, transitions, redirect_url=url, request_id=request.id, sessions_revoked=revoked
        )

    def _respond(self, request_id: str | None, status: LogoutStatus, relay_state: str | None) -> str | None:
        if not self.idp.slo_url:
            return None
        return self.builder.build_logout_response(request_id, status, relay_state)


def _peek_message_id(raw: str, is_redirect: bool) -> str | None:
    """Best-effort ID of a rejected message, for InResponseTo only."""
    try:
        return parse_xml(decode_message(raw, is_redirect)).get("ID")
    except ValidationError:
        return None
