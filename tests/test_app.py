"""Tests for the Flask application."""

import logging
from dataclasses import replace
from urllib.parse import parse_qs, urlsplit

import pytest
from flask.testing import FlaskClient
from lxml import etree

from conftest import IDP_SLO_URL, IDP_SSO_URL, race
from samlsp.app import create_app
from samlsp.core.config import AppConfig, ServerSettings
from samlsp.core.saml.bindings import decode_message
from samlsp.core.saml.metadata import METADATA_CONTENT_TYPE
from samlsp.core.saml.sp import ServiceProvider
from samlsp.web.routes.saml import PENDING_REQUEST_KEY, SESSION_TOKEN_KEY


def _client(provider: ServiceProvider) -> FlaskClient:
    app = create_app(
        AppConfig(server=ServerSettings(session_secret="test-secret-key")),
        provider=provider,
        config={"TESTING": True},
    )
    return app.test_client()


def _request_id(url: str) -> str:
    value = parse_qs(urlsplit(url).query)["SAMLRequest"][0]
    return etree.fromstring(decode_message(value, is_redirect=True)).get("ID")


def _pending_request_id(client: FlaskClient) -> str:
    with client.session_transaction() as sess:
        return sess[PENDING_REQUEST_KEY]


def _log_in(client: FlaskClient, idp) -> dict:
    client.get("/login")
    response = client.post(
        "/auth/saml/sso",
        data={"SAMLResponse": idp.response(in_response_to=_pending_request_id(client))},
    )
    assert response.status_code == 200
    return response.json


def test_health_endpoint(client: FlaskClient) -> None:
    """Test the health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json == {"status": "healthy"}


def test_index_when_logged_out(client: FlaskClient) -> None:
    response = client.get("/")
    assert response.status_code == 200
    assert response.json["authenticated"] is False
    assert response.json["message"] == "You are not logged in."


def test_metadata_endpoint(client: FlaskClient, provider: ServiceProvider) -> None:
    response = client.get("/auth/saml/metadata")
    assert response.status_code == 200
    assert response.mimetype == METADATA_CONTENT_TYPE
    assert response.data == provider.metadata


class TestHousekeeping:
    """Expired-entry sweeps triggered by requests."""

    @pytest.fixture
    def runs(self, provider: ServiceProvider, monkeypatch: pytest.MonkeyPatch) -> list[int]:
        runs: list[int] = []
        sweep = provider.housekeeping

        def counting_sweep(*args, **kwargs):
            runs.append(1)
            return sweep(*args, **kwargs)

        monkeypatch.setattr(provider, "housekeeping", counting_sweep)
        return runs

    def test_runs_once_per_interval(self, app, runs) -> None:
        client = app.test_client()
        for _ in range(3):
            client.get("/health")

        assert len(runs) == 1

    def test_runs_on_every_request_without_interval(self, app, runs) -> None:
        app.config["HOUSEKEEPING_INTERVAL_SECONDS"] = 0
        client = app.test_client()
        for _ in range(3):
            client.get("/health")

        assert len(runs) == 3

    def test_concurrent_requests_sweep_once(self, app, runs) -> None:
        statuses = race(lambda: app.test_client().get("/health").status_code, workers=8)

        assert statuses == [200] * 8
        assert len(runs) == 1


class TestLogin:
    """SSO through the browser."""

    def test_login_redirects_to_idp(self, client: FlaskClient) -> None:
        response = client.get("/login?RelayState=/home")

        assert response.status_code == 302
        location = response.headers["Location"]
        assert location.startswith(f"{IDP_SSO_URL}?SAMLRequest=")
        assert "RelayState=%2Fhome" in location
        assert _pending_request_id(client).startswith("_")

    def test_login_post_binding_renders_form(self, sp_config, idp_config, clock) -> None:
        provider = ServiceProvider(replace(sp_config, request_binding="post"), idp_config, clock=clock)

        response = _client(provider).get("/login")

        assert response.status_code == 200
        assert f'action="{IDP_SSO_URL}"' in response.get_data(as_text=True)
        assert 'name="SAMLRequest"' in response.get_data(as_text=True)

    def test_successful_login(self, client: FlaskClient, idp) -> None:
        user = _log_in(client, idp)

        assert user["nameID"] == "alice@example.com"
        assert user["mail"] == "alice@example.com"
        assert user["cloudToken"] == "cloud-token-123"

        index = client.get("/").json
        assert index["authenticated"] is True
        assert index["greeting"] == "Hi there, Alice!"
        assert index["nameIDFormatDescription"] == "Email Address"
        assert {"name": "urn:oid:2.5.4.42", "friendlyName": "givenName", "values": ["Alice"]} in index[
            "attributeList"
        ]

    def test_failed_login_redirects_with_generic_message(self, client: FlaskClient, rogue_idp) -> None:
        client.get("/login")
        response = client.post(
            "/auth/saml/sso",
            data={"SAMLResponse": rogue_idp.response(in_response_to=_pending_request_id(client))},
        )

        assert response.status_code == 302
        assert urlsplit(response.headers["Location"]).query == "error=1"
        with client.session_transaction() as sess:
            assert SESSION_TOKEN_KEY not in sess
            assert sess["_flashes"] == [("error", "Authentication failed.")]

    def test_pending_request_is_single_use(self, client: FlaskClient, idp) -> None:
        client.get("/login")
        raw = idp.response(in_response_to=_pending_request_id(client))

        assert client.post("/auth/saml/sso", data={"SAMLResponse": raw}).status_code == 200
        assert client.post("/auth/saml/sso", data={"SAMLResponse": raw}).status_code == 302

    def test_unsolicited_response_is_refused(self, client: FlaskClient, idp) -> None:
        response = client.post("/auth/saml/sso", data={"SAMLResponse": idp.response()})
        assert response.status_code == 302


class TestLogout:
    """Single logout through the browser."""

    def test_logout_without_session(self, client: FlaskClient) -> None:
        response = client.get("/logout")

        assert response.status_code == 401
        assert response.json == {
            "error": "not_authenticated",
            "message": "You were not already logged in.",
        }

    def test_sp_initiated_logout_round_trip(self, client: FlaskClient, idp) -> None:
        _log_in(client, idp)

        response = client.get("/logout")
        assert response.status_code == 302
        location = response.headers["Location"]
        assert location.startswith(f"{IDP_SLO_URL}?SAMLRequest=")
        request_id = _request_id(location)

        raw, query = idp.logout_response(request_id)
        response = client.get("/auth/saml/slo", query_string=query)

        assert response.status_code == 200
        assert response.get_data(as_text=True) == "You are now logged out."
        assert client.get("/").json["authenticated"] is False

    def test_local_logout_when_idp_has_no_endpoint(self, sp_config, idp_config, clock, idp) -> None:
        client = _client(ServiceProvider(sp_config, replace(idp_config, slo_url=None), clock=clock))
        _log_in(client, idp)

        response = client.get("/logout")

        assert response.status_code == 200
        assert response.get_data(as_text=True) == "You are now logged out."
        assert client.get("/").json["authenticated"] is False

    def test_idp_initiated_logout(self, client: FlaskClient, idp) -> None:
        _log_in(client, idp)
        raw, query = idp.logout_request("alice@example.com")

        response = client.get("/auth/saml/slo", query_string=query)

        assert response.status_code == 302
        assert response.headers["Location"].startswith(f"{IDP_SLO_URL}?SAMLResponse=")
        assert client.get("/").json["authenticated"] is False
        with client.session_transaction() as sess:
            assert SESSION_TOKEN_KEY not in sess

    def test_slo_without_message(self, client: FlaskClient) -> None:
        response = client.post("/auth/saml/slo", data={})

        assert response.status_code == 400
        assert response.json["error"] == "malformed_message"


def test_access_log_redacts_saml_parameters(client: FlaskClient, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="samlsp.access"):
        client.get("/auth/saml/slo?SAMLResponse=c2VjcmV0&RelayState=x")

    messages = [r.getMessage() for r in caplog.records if r.name == "samlsp.access"]
    assert messages
    assert "c2VjcmV0" not in messages[-1]
    assert "SAMLResponse=[REDACTED]" in messages[-1]
