"""SAML login, logout and metadata routes."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from flask import (
    Blueprint,
    Response,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)

from samlsp.core.errors import NotAuthenticated, SLOTransportFailure, ValidationError
from samlsp.core.saml.metadata import METADATA_CONTENT_TYPE
from samlsp.core.saml.slo import LogoutOutcome

if TYPE_CHECKING:
    from werkzeug.wrappers import Response as WerkzeugResponse

    from samlsp.core.saml.sp import ServiceProvider

logger = logging.getLogger(__name__)

# Get the directories relative to this package
_web_dir = Path(__file__).parent.parent
_templates_dir = _web_dir / "templates"

saml_bp = Blueprint(
    "saml",
    __name__,
    template_folder=str(_templates_dir),
)

# Flask session keys
SESSION_TOKEN_KEY = "samlsp_session"
PENDING_REQUEST_KEY = "samlsp_pending_request"

LOGGED_OUT_MESSAGE = "You are now logged out."


def get_provider() -> ServiceProvider:
    """The ServiceProvider registered on the current app."""
    from samlsp.app import EXTENSION_KEY

    return current_app.extensions[EXTENSION_KEY]


def _binding_params() -> tuple[dict, bool, str | None]:
    """Message parameters, whether they came over HTTP-Redirect, and the raw query."""
    if request.method == "GET":
        return request.args, True, request.query_string.decode("latin-1")
    return request.form, False, None


def _logged_out(outcome: LogoutOutcome) -> Response:
    message = LOGGED_OUT_MESSAGE
    if isinstance(outcome.reason, SLOTransportFailure):
        message = f"{message} {outcome.reason.public_message}"
    return Response(message, mimetype="text/plain")


@saml_bp.route("/login")
def login() -> str | WerkzeugResponse:
    """Start SP-initiated SSO. Always hands the browser to the IdP."""
    if request.args.get("error"):
        logger.info("Login restarted after a failed SSO attempt")

    start = get_provider().start_login(relay_state=request.args.get("RelayState"))
    session[PENDING_REQUEST_KEY] = start.request_id

    if start.form is not None:
        return render_template("post_form.html", form=start.form)
    return redirect(start.redirect_url)


@saml_bp.route("/auth/saml/sso", methods=["GET", "POST"])
def sso() -> Response | WerkzeugResponse:
    """Assertion Consumer Service.

    Handles both SP-initiated (with prior AuthnRequest) and IdP-initiated
    (unsolicited) responses.
    """
    params, is_redirect, _ = _binding_params()
    pending_request_id = session.pop(PENDING_REQUEST_KEY, None)

    try:
        sp_session = get_provider().finish_login(params.get("SAMLResponse", ""), pending_request_id, is_redirect)
    except ValidationError as e:
        flash(e.public_message, "error")
        return redirect(url_for("saml.login", error=1))

    # New identity, new cookie contents
    session.clear()
    session[SESSION_TOKEN_KEY] = sp_session.token
    return jsonify(sp_session.to_user())


@saml_bp.route("/logout")
def logout() -> Response | WerkzeugResponse | tuple[Response, int]:
    """Start SP-initiated Single Logout."""
    try:
        outcome = get_provider().slo.begin_logout(
            session.get(SESSION_TOKEN_KEY), relay_state=request.args.get("RelayState")
        )
    except NotAuthenticated as e:
        session.pop(SESSION_TOKEN_KEY, None)
        return jsonify({"error": e.code, "message": e.public_message}), 401

    if outcome.redirect_url:
        return redirect(outcome.redirect_url)

    session.pop(SESSION_TOKEN_KEY, None)
    return _logged_out(outcome)


@saml_bp.route("/auth/saml/slo", methods=["GET", "POST"])
def slo() -> Response | WerkzeugResponse | tuple[Response, int]:
    """Single Logout Service: LogoutResponses and IdP-initiated LogoutRequests."""
    provider = get_provider()
    params, is_redirect, query_string = _binding_params()

    if "SAMLResponse" in params:
        outcome = provider.slo.complete_logout(
            params["SAMLResponse"],
            is_redirect,
            query_string,
            session_token=session.get(SESSION_TOKEN_KEY),
        )
        session.pop(SESSION_TOKEN_KEY, None)
        return _logged_out(outcome)

    if "SAMLRequest" in params:
        outcome = provider.slo.handle_idp_logout_request(
            params["SAMLRequest"],
            is_redirect,
            query_string,
            relay_state=params.get("RelayState"),
        )
        token = session.get(SESSION_TOKEN_KEY)
        if token:
            current = provider.sessions.get(token)
            if current is None or not current.is_active:
                session.pop(SESSION_TOKEN_KEY, None)
        if outcome.redirect_url:
            return redirect(outcome.redirect_url)
        return Response(LOGGED_OUT_MESSAGE, mimetype="text/plain")

    return jsonify({"error": "malformed_message", "message": "No SAML message received."}), 400


@saml_bp.route("/auth/saml/metadata")
def metadata() -> Response:
    """SP metadata. Public and unauthenticated."""
    return Response(get_provider().metadata, mimetype=METADATA_CONTENT_TYPE)
