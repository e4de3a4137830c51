"""Tests for the SLO Coordinator."""

from dataclasses import replace
from urllib.parse import parse_qs, quote_plus, urlsplit

import httpx
import pytest
from lxml import etree

from conftest import IDP_SLO_URL
from samlsp.core.errors import (
    MalformedMessage,
    NotAuthenticated,
    ResponseNotRequested,
    ResponseStatusError,
    SignatureInvalid,
    SLOTransportFailure,
)
from samlsp.core.logging import ProtocolLogger
from samlsp.core.saml.bindings import SAML_NS, STATUS_RESPONDER, decode_message
from samlsp.core.saml.logout import LogoutStatus
from samlsp.core.saml.slo import SOAP_ACTION, SLOState
from samlsp.core.saml.sp import ServiceProvider


class RecordingIdP:
    """httpx handler standing in for the IdP's SOAP logout endpoint."""

    def __init__(self, idp, mode: str = "ok") -> None:
        self.idp = idp
        self.mode = mode
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.mode == "unreachable":
            raise httpx.ConnectError("connection refused", request=request)
        if self.mode == "error":
            return httpx.Response(500, text="Internal Server Error")
        if self.mode == "garbage":
            return httpx.Response(200, text="<html>not soap</html>")

        envelope = etree.fromstring(request.content)
        request_id = envelope.find("soap:Body/samlp:LogoutRequest", SAML_NS).get("ID")
        status = STATUS_RESPONDER if self.mode == "refused" else LogoutStatus.SUCCESS.value
        return httpx.Response(200, content=self.idp.soap_logout_response(request_id, status))


def _login(provider: ServiceProvider, idp, **kwargs) -> str:
    _, request_id = provider.builder.build_authn_request()
    session = provider.finish_login(idp.response(in_response_to=request_id, **kwargs), request_id)
    return session.token


def _is_active(provider: ServiceProvider, token: str) -> bool:
    session = provider.sessions.get(token)
    return session is not None and session.is_active


@pytest.fixture
def backchannel(sp_config, idp_config, clock, idp):
    """Provider using SOAP logout against a recording IdP."""

    def make(mode: str = "ok") -> tuple[ServiceProvider, RecordingIdP]:
        handler = RecordingIdP(idp, mode)
        provider = ServiceProvider(
            sp_config,
            replace(idp_config, backchannel_slo=True),
            protocol_logger=ProtocolLogger(),
            transport=httpx.MockTransport(handler),
            clock=clock,
        )
        return provider, handler

    return make


class TestNotAuthenticated:
    """Logout without a session."""

    @pytest.mark.parametrize("token", [None, "", "no-such-token"])
    def test_no_session_no_idp_traffic(self, backchannel, token):
        provider, handler = backchannel()

        with pytest.raises(NotAuthenticated) as exc_info:
            provider.slo.begin_logout(token)

        assert handler.requests == []
        assert exc_info.value.public_message == "You were not already logged in."

    def test_revoked_session_counts_as_no_session(self, backchannel, idp):
        provider, handler = backchannel()
        token = _login(provider, idp)
        provider.binder.revoke(token)

        with pytest.raises(NotAuthenticated):
            provider.slo.begin_logout(token)
        assert handler.requests == []


class TestFrontChannel:
    """SP-initiated logout through the browser."""

    def test_begin_redirects_and_keeps_session(self, provider, idp):
        token = _login(provider, idp)

        outcome = provider.slo.begin_logout(token, relay_state="/bye")

        assert outcome.state == SLOState.SP_INITIATED_PENDING
        assert outcome.transitions == [
            SLOState.IDLE,
            SLOState.AWAITING_NOT_AUTHENTICATED_CHECK,
            SLOState.SP_INITIATED_PENDING,
        ]
        assert not outcome.is_terminal
        assert outcome.redirect_url.startswith(f"{IDP_SLO_URL}?SAMLRequest=")
        assert parse_qs(urlsplit(outcome.redirect_url).query)["RelayState"] == ["/bye"]
        assert _is_active(provider, token)

    def test_complete_with_success(self, provider, idp):
        token = _login(provider, idp)
        request_id = provider.slo.begin_logout(token).request_id
        raw, query = idp.logout_response(request_id)

        outcome = provider.slo.complete_logout(raw, is_redirect=True, query_string=query)

        assert outcome.state == SLOState.COMPLETED
        assert outcome.reason is None
        assert outcome.sessions_revoked == 1
        assert not _is_active(provider, token)

    def test_complete_over_post(self, provider, idp):
        token = _login(provider, idp)
        request_id = provider.slo.begin_logout(token).request_id
        raw, _ = idp.logout_response(request_id, redirect=False)

        assert provider.slo.complete_logout(raw).state == SLOState.COMPLETED
        assert not _is_active(provider, token)

    def test_idp_failure_status_still_logs_out_locally(self, provider, idp):
        token = _login(provider, idp)
        request_id = provider.slo.begin_logout(token).request_id
        raw, query = idp.logout_response(request_id, STATUS_RESPONDER)

        outcome = provider.slo.complete_logout(raw, is_redirect=True, query_string=query)

        assert outcome.state == SLOState.LOCAL_LOGOUT_ONLY
        assert isinstance(outcome.reason, ResponseStatusError)
        assert outcome.soft_failure
        assert not _is_active(provider, token)

    def test_unsigned_response_falls_back_to_browser_token(self, provider, idp):
        token = _login(provider, idp)
        request_id = provider.slo.begin_logout(token).request_id
        raw, query = idp.logout_response(request_id, sign=False)

        outcome = provider.slo.complete_logout(raw, is_redirect=True, query_string=query, session_token=token)

        assert outcome.state == SLOState.LOCAL_LOGOUT_ONLY
        assert isinstance(outcome.reason, SignatureInvalid)
        assert not _is_active(provider, token)

    def test_forged_response_beside_signed_request_is_refused(self, provider, idp):
        token = _login(provider, idp)
        request_id = provider.slo.begin_logout(token).request_id
        _, signed_query = idp.logout_request()
        forged, _ = idp.logout_response(request_id, sign=False)

        outcome = provider.slo.complete_logout(
            forged, is_redirect=True, query_string=f"{signed_query}&SAMLResponse={quote_plus(forged)}"
        )

        assert outcome.state == SLOState.LOCAL_LOGOUT_ONLY
        assert isinstance(outcome.reason, MalformedMessage)

    def test_signature_over_another_response_is_refused(self, provider, idp):
        token = _login(provider, idp)
        request_id = provider.slo.begin_logout(token).request_id
        _, signed_query = idp.logout_response("_other_request")
        forged, _ = idp.logout_response(request_id, sign=False)

        outcome = provider.slo.complete_logout(forged, is_redirect=True, query_string=signed_query)

        assert outcome.state == SLOState.LOCAL_LOGOUT_ONLY
        assert isinstance(outcome.reason, SignatureInvalid)

    def test_response_to_unknown_request(self, provider, idp):
        token = _login(provider, idp)
        raw, query = idp.logout_response("_not_ours")

        outcome = provider.slo.complete_logout(raw, is_redirect=True, query_string=query, session_token=token)

        assert outcome.state == SLOState.LOCAL_LOGOUT_ONLY
        assert isinstance(outcome.reason, ResponseNotRequested)
        assert not _is_active(provider, token)

    def test_unanswered_logout_expires_to_local_logout(self, provider, idp, clock):
        token = _login(provider, idp)
        request_id = provider.slo.begin_logout(token).request_id

        assert provider.housekeeping() == []
        clock.advance(301)
        outcomes = provider.housekeeping()

        assert [o.request_id for o in outcomes] == [request_id]
        assert outcomes[0].state == SLOState.LOCAL_LOGOUT_ONLY
        assert isinstance(outcomes[0].reason, SLOTransportFailure)
        assert not _is_active(provider, token)

    def test_no_idp_endpoint_means_local_logout(self, sp_config, idp_config, clock, idp):
        provider = ServiceProvider(sp_config, replace(idp_config, slo_url=None), clock=clock)
        token = _login(provider, idp)

        outcome = provider.slo.begin_logout(token)

        assert outcome.state == SLOState.LOCAL_LOGOUT_ONLY
        assert outcome.redirect_url is None
        assert not outcome.soft_failure
        assert not _is_active(provider, token)


class TestBackchannel:
    """SP-initiated logout over SOAP."""

    def test_success(self, backchannel, idp):
        provider, handler = backchannel()
        token = _login(provider, idp)

        outcome = provider.slo.begin_logout(token)

        assert outcome.state == SLOState.COMPLETED
        assert outcome.transitions[-2:] == [SLOState.SP_INITIATED_PENDING, SLOState.COMPLETED]
        assert not _is_active(provider, token)
        assert len(handler.requests) == 1
        sent = handler.requests[0]
        assert str(sent.url) == IDP_SLO_URL
        assert sent.headers["SOAPAction"] == SOAP_ACTION

    @pytest.mark.parametrize("mode", ["error", "timeout", "unreachable", "garbage"])
    def test_transport_failure_is_soft(self, backchannel, idp, mode):
        provider, _ = backchannel(mode)
        token = _login(provider, idp)

        outcome = provider.slo.begin_logout(token)

        assert outcome.state == SLOState.LOCAL_LOGOUT_ONLY
        assert isinstance(outcome.reason, SLOTransportFailure)
        assert outcome.soft_failure
        assert outcome.sessions_revoked == 1
        assert provider.sessions.get(token).revoked_at is not None
        with pytest.raises(NotAuthenticated):
            provider.binder.lookup(token)

    def test_refused_status_is_soft(self, backchannel, idp):
        provider, _ = backchannel("refused")
        token = _login(provider, idp)

        outcome = provider.slo.begin_logout(token)

        assert outcome.state == SLOState.LOCAL_LOGOUT_ONLY
        assert not _is_active(provider, token)

    def test_pending_entry_is_consumed(self, backchannel, idp, clock):
        provider, _ = backchannel("timeout")
        token = _login(provider, idp)
        provider.slo.begin_logout(token)

        clock.advance(301)
        assert provider.housekeeping() == []

    def test_outcome_to_dict(self, backchannel, idp):
        provider, _ = backchannel("error")
        outcome = provider.slo.begin_logout(_login(provider, idp))

        data = outcome.to_dict()
        assert data["state"] == "local_logout_only"
        assert data["reason"] == "slo_transport_failure"


class TestIdPInitiated:
    """LogoutRequests sent by the IdP."""

    def _response_status(self, url: str) -> tuple[str, str | None]:
        value = parse_qs(urlsplit(url).query)["SAMLResponse"][0]
        root = etree.fromstring(decode_message(value, is_redirect=True))
        return root.find("samlp:Status/samlp:StatusCode", SAML_NS).get("Value"), root.get("InResponseTo")

    def test_valid_request_revokes_subject(self, provider, idp):
        token = _login(provider, idp)
        other = _login(provider, idp, name_id="bob@example.com")
        raw, query = idp.logout_request("alice@example.com", relay_state="rs-1")

        outcome = provider.slo.handle_idp_logout_request(raw, True, query, relay_state="rs-1")

        assert outcome.state == SLOState.COMPLETED
        assert outcome.transitions == [SLOState.IDLE, SLOState.IDP_INITIATED_RECEIVED, SLOState.COMPLETED]
        assert outcome.sessions_revoked == 1
        assert not _is_active(provider, token)
        assert _is_active(provider, other)
        status, in_response_to = self._response_status(outcome.redirect_url)
        assert status == LogoutStatus.SUCCESS.value
        assert in_response_to == outcome.request_id
        assert parse_qs(urlsplit(outcome.redirect_url).query)["RelayState"] == ["rs-1"]

    def test_session_index_narrows_revocation(self, provider, idp):
        first = _login(provider, idp, session_index="_s1")
        second = _login(provider, idp, session_index="_s2")
        raw, query = idp.logout_request("alice@example.com", "_s2")

        provider.slo.handle_idp_logout_request(raw, True, query)

        assert _is_active(provider, first)
        assert not _is_active(provider, second)

    def test_post_binding(self, provider, idp):
        token = _login(provider, idp)
        raw, _ = idp.logout_request("alice@example.com", redirect=False)

        outcome = provider.slo.handle_idp_logout_request(raw, False, None)

        assert outcome.state == SLOState.COMPLETED
        assert not _is_active(provider, token)

    def test_unknown_subject_still_succeeds(self, provider, idp):
        raw, query = idp.logout_request("nobody@example.com")

        outcome = provider.slo.handle_idp_logout_request(raw, True, query)

        assert outcome.state == SLOState.COMPLETED
        assert outcome.sessions_revoked == 0

    def test_unsigned_request_is_refused(self, provider, idp):
        token = _login(provider, idp)
        raw, query = idp.logout_request("alice@example.com", sign=False)

        outcome = provider.slo.handle_idp_logout_request(raw, True, query)

        assert outcome.state == SLOState.FAILED
        assert isinstance(outcome.reason, SignatureInvalid)
        assert _is_active(provider, token)
        status, in_response_to = self._response_status(outcome.redirect_url)
        assert status == LogoutStatus.REQUESTER.value
        assert in_response_to == outcome.request_id

    def test_forged_request_is_refused(self, provider, idp, rogue_idp):
        token = _login(provider, idp)
        raw, query = rogue_idp.logout_request("alice@example.com")

        outcome = provider.slo.handle_idp_logout_request(raw, True, query)

        assert outcome.state == SLOState.FAILED
        assert _is_active(provider, token)

    def test_replayed_request_is_refused(self, provider, idp):
        raw, query = idp.logout_request("alice@example.com")

        assert provider.slo.handle_idp_logout_request(raw, True, query).state == SLOState.COMPLETED
        outcome = provider.slo.handle_idp_logout_request(raw, True, query)

        assert outcome.state == SLOState.FAILED
        assert isinstance(outcome.reason, ResponseNotRequested)

    def test_garbage_request_is_refused(self, provider):
        outcome = provider.slo.handle_idp_logout_request("%%%", True, "SAMLRequest=%25%25%25")

        assert outcome.state == SLOState.FAILED
        assert outcome.request_id is None
