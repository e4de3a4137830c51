"""SAML 2.0 Web Browser SSO and Single Logout."""

from samlsp.core.saml.logout import (
    LogoutStatus,
    SAMLLogoutRequest,
    SAMLLogoutResponse,
    get_logout_status_description,
)
from samlsp.core.saml.metadata import METADATA_CONTENT_TYPE, build_metadata
from samlsp.core.saml.replay import MemoryPendingRequestStore, PendingEntry, PendingRequestStore
from samlsp.core.saml.requests import RequestBuilder, SAMLAuthnRequest
from samlsp.core.saml.response import Assertion, ResponseValidator
from samlsp.core.saml.session import MemorySessionStore, Session, SessionBinder, SessionStore
from samlsp.core.saml.slo import LogoutOutcome, SLOCoordinator, SLOState
from samlsp.core.saml.sp import LoginStart, ServiceProvider

__all__ = [
    "Assertion",
    "LoginStart",
    "LogoutOutcome",
    "LogoutStatus",
    "METADATA_CONTENT_TYPE",
    "MemoryPendingRequestStore",
    "MemorySessionStore",
    "PendingEntry",
    "PendingRequestStore",
    "RequestBuilder",
    "ResponseValidator",
    "SAMLAuthnRequest",
    "SAMLLogoutRequest",
    "SAMLLogoutResponse",
    "SLOCoordinator",
    "SLOState",
    "ServiceProvider",
    "Session",
    "SessionBinder",
    "SessionStore",
    "build_metadata",
    "get_logout_status_description",
]
