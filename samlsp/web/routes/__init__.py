"""Web routes for samlsp."""

from flask import Blueprint, Flask, session

from samlsp.core.errors import NotAuthenticated
from samlsp.core.saml.utils import get_attribute_name, get_nameid_format_description
from samlsp.web.routes.saml import SESSION_TOKEN_KEY, get_provider

# First-name attribute shown on the home page
GIVEN_NAME_ATTRIBUTE = "urn:oid:2.5.4.42"

main_bp = Blueprint("main", __name__)


@main_bp.route("/")
def index() -> dict:
    """Current identity, or a notice that nobody is logged in."""
    provider = get_provider()
    try:
        sp_session = provider.binder.lookup(session.get(SESSION_TOKEN_KEY))
    except NotAuthenticated:
        session.pop(SESSION_TOKEN_KEY, None)
        return {"authenticated": False, "message": "You are not logged in.", "login_url": "/login"}

    user = sp_session.to_user()
    given_name = sp_session.attributes.get(GIVEN_NAME_ATTRIBUTE) or [None]
    return {
        "authenticated": True,
        "greeting": f"Hi there, {given_name[0]}!" if given_name[0] else "Hi there!",
        "user": user,
        "nameIDFormatDescription": get_nameid_format_description(sp_session.name_id_format),
        "attributeList": [
            {"name": name, "friendlyName": get_attribute_name(name), "values": values}
            for name, values in sp_session.attributes.items()
        ],
        "logout_url": "/logout",
    }


@main_bp.route("/health")
def health() -> dict[str, str]:
    """Health check endpoint (unauthenticated)."""
    return {"status": "healthy"}


def init_app(app: Flask) -> None:
    """Register blueprints with the Flask app."""
    from samlsp.web.routes.saml import saml_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(saml_bp)
