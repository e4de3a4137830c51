"""Pytest configuration and fixtures.

Besides the usual app/client fixtures this provides ``idp``, a small
in-process Identity Provider that issues signed (and optionally encrypted)
responses and logout messages with real keys, so the SP is always tested
against genuine XML-DSig and XML-ENC.
"""

import threading
from collections.abc import Callable, Generator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs

import pytest
import xmlsec
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from flask import Flask
from flask.testing import FlaskClient
from lxml import etree

from samlsp.app import create_app
from samlsp.core.config import AppConfig, IdentityProviderConfig, ServerSettings, ServiceProviderConfig
from samlsp.core.crypto.adapter import XENC_NS, XENC11_NS, CryptoAdapter
from samlsp.core.crypto.certs import certificate_pem, generate_private_key, generate_self_signed_certificate
from samlsp.core.logging import ProtocolLogger
from samlsp.core.saml.bindings import (
    NAMEID_FORMAT_EMAIL,
    SAML_NS_URI,
    SAMLP_NS,
    STATUS_SUCCESS,
    SUBJECT_CONFIRMATION_BEARER,
    build_redirect_url,
    encode_post,
    format_instant,
    generate_id,
)
from samlsp.core.saml.logout import SAMLLogoutRequest, SAMLLogoutResponse, wrap_soap
from samlsp.core.saml.sp import ServiceProvider

SP_ENTITY_ID = "https://sp.example.com/metadata"
SP_ACS_URL = "https://sp.example.com/auth/saml/sso"
SP_SLO_URL = "https://sp.example.com/auth/saml/slo"

IDP_ENTITY_ID = "https://idp.example.com/saml"
IDP_SSO_URL = "https://idp.example.com/saml/sso"
IDP_SLO_URL = "https://idp.example.com/saml/slo"

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)

AES128_CBC = f"{XENC_NS}aes128-cbc"
AES256_CBC = f"{XENC_NS}aes256-cbc"
AES128_GCM = f"{XENC11_NS}aes128-gcm"
AES256_GCM = f"{XENC11_NS}aes256-gcm"

DEFAULT_ATTRIBUTES = {
    "urn:oid:0.9.2342.19200300.100.1.3": ["alice@example.com"],
    "urn:oid:2.5.4.42": ["Alice"],
    "groups": ["admins", "staff"],
}


def race(action: Callable[[], Any], workers: int = 16) -> list[Any]:
    """Run ``action`` on ``workers`` threads released together; return every result."""
    barrier = threading.Barrier(workers)

    def run(_: int) -> Any:
        barrier.wait()
        return action()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(run, range(workers)))


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass(frozen=True)
class KeyPair:
    key: rsa.RSAPrivateKey
    cert: x509.Certificate


def _keypair(common_name: str) -> KeyPair:
    key = generate_private_key()
    return KeyPair(key, generate_self_signed_certificate(key, common_name=common_name))


def _saml(tag: str) -> str:
    return f"{{{SAML_NS_URI}}}{tag}"


def _samlp(tag: str) -> str:
    return f"{{{SAMLP_NS}}}{tag}"


# Content encryption URI -> (xmlsec transform, session key bits)
CONTENT_CIPHERS = {
    AES128_CBC: (xmlsec.constants.TransformAes128Cbc, 128),
    AES256_CBC: (xmlsec.constants.TransformAes256Cbc, 256),
    AES128_GCM: (xmlsec.constants.TransformAes128Gcm, 128),
    AES256_GCM: (xmlsec.constants.TransformAes256Gcm, 256),
}


def encrypt_element(element: etree._Element, cert: x509.Certificate, algorithm: str, wrapper_tag: str) -> etree._Element:
    """Encrypt an element for ``cert`` the way an IdP builds EncryptedAssertion."""
    transform, key_bits = CONTENT_CIPHERS[algorithm]
    wrapper = etree.Element(wrapper_tag, nsmap={"saml": SAML_NS_URI})
    wrapper.append(element)

    template = xmlsec.template.encrypted_data_create(
        wrapper, transform, type=xmlsec.constants.TypeEncElement, ns="xenc"
    )
    xmlsec.template.encrypted_data_ensure_cipher_value(template)
    key_info = xmlsec.template.encrypted_data_ensure_key_info(template, ns="ds")
    encrypted_key = xmlsec.template.add_encrypted_key(key_info, xmlsec.constants.TransformRsaOaep)
    xmlsec.template.encrypted_data_ensure_cipher_value(encrypted_key)

    manager = xmlsec.KeysManager()
    manager.add_key(xmlsec.Key.from_memory(certificate_pem(cert).encode(), xmlsec.KeyFormat.CERT_PEM, None))
    context = xmlsec.EncryptionContext(manager)
    context.key = xmlsec.Key.generate(xmlsec.constants.KeyDataAes, key_bits, xmlsec.constants.KeyDataTypeSession)
    context.encrypt_xml(template, element)
    return wrapper


class IdPSimulator:
    """Issues SAML messages as the trusted IdP would."""

    def __init__(self, keys: KeyPair, sp_decryption_cert: x509.Certificate, clock: FrozenClock) -> None:
        self.keys = keys
        self.crypto = CryptoAdapter(signing_key=keys.key, signing_cert=keys.cert)
        self.sp_decryption_cert = sp_decryption_cert
        self.clock = clock

    def assertion(
        self,
        *,
        in_response_to: str | None = None,
        name_id: str = "alice@example.com",
        name_id_format: str = NAMEID_FORMAT_EMAIL,
        attributes: dict[str, list[str]] | None = None,
        session_index: str | None = "_session_1",
        audience: str = SP_ENTITY_ID,
        recipient: str = SP_ACS_URL,
        issuer: str = IDP_ENTITY_ID,
        lifetime: int = 300,
        not_before: datetime | None = None,
        assertion_id: str | None = None,
    ) -> etree._Element:
        now = self.clock()
        expiry = format_instant(now + timedelta(seconds=lifetime))

        assertion = etree.Element(_saml("Assertion"), nsmap={"saml": SAML_NS_URI})
        assertion.set("ID", assertion_id or generate_id())
        assertion.set("Version", "2.0")
        assertion.set("IssueInstant", format_instant(now))
        etree.SubElement(assertion, _saml("Issuer")).text = issuer

        subject = etree.SubElement(assertion, _saml("Subject"))
        name_id_elem = etree.SubElement(subject, _saml("NameID"), Format=name_id_format)
        name_id_elem.text = name_id
        confirmation = etree.SubElement(subject, _saml("SubjectConfirmation"), Method=SUBJECT_CONFIRMATION_BEARER)
        data = etree.SubElement(confirmation, _saml("SubjectConfirmationData"))
        data.set("Recipient", recipient)
        data.set("NotOnOrAfter", expiry)
        if in_response_to:
            data.set("InResponseTo", in_response_to)

        conditions = etree.SubElement(assertion, _saml("Conditions"))
        conditions.set("NotBefore", format_instant(not_before or now - timedelta(seconds=30)))
        conditions.set("NotOnOrAfter", expiry)
        restriction = etree.SubElement(conditions, _saml("AudienceRestriction"))
        etree.SubElement(restriction, _saml("Audience")).text = audience

        authn = etree.SubElement(assertion, _saml("AuthnStatement"), AuthnInstant=format_instant(now))
        if session_index:
            authn.set("SessionIndex", session_index)
        context = etree.SubElement(authn, _saml("AuthnContext"))
        etree.SubElement(context, _saml("AuthnContextClassRef")).text = (
            "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"
        )

        statement = etree.SubElement(assertion, _saml("AttributeStatement"))
        for name, values in (DEFAULT_ATTRIBUTES if attributes is None else attributes).items():
            attribute = etree.SubElement(statement, _saml("Attribute"), Name=name)
            for value in values:
                etree.SubElement(attribute, _saml("AttributeValue")).text = value
        return assertion

    def response_xml(
        self,
        assertion: etree._Element | None = None,
        *,
        in_response_to: str | None = None,
        sign_assertion: bool = True,
        sign_response: bool = False,
        encrypt: str | None = None,
        status: str = STATUS_SUCCESS,
        destination: str = SP_ACS_URL,
        **assertion_kwargs,
    ) -> bytes:
        """Build a complete Response document."""
        response = etree.Element(_samlp("Response"), nsmap={"samlp": SAMLP_NS, "saml": SAML_NS_URI})
        response.set("ID", generate_id())
        response.set("Version", "2.0")
        response.set("IssueInstant", format_instant(self.clock()))
        response.set("Destination", destination)
        if in_response_to:
            response.set("InResponseTo", in_response_to)
        etree.SubElement(response, _saml("Issuer")).text = IDP_ENTITY_ID
        status_elem = etree.SubElement(response, _samlp("Status"))
        etree.SubElement(status_elem, _samlp("StatusCode"), Value=status)

        if status == STATUS_SUCCESS:
            if assertion is None:
                assertion = self.assertion(in_response_to=in_response_to, **assertion_kwargs)
            if sign_assertion:
                assertion = self.crypto.sign_element(assertion)
            if encrypt:
                assertion = encrypt_element(
                    assertion, self.sp_decryption_cert, encrypt, _saml("EncryptedAssertion")
                )
            response.append(assertion)

        if sign_response:
            response = self.crypto.sign_element(response)
        return etree.tostring(response, xml_declaration=True, encoding="UTF-8")

    def response(self, assertion: etree._Element | None = None, **kwargs) -> str:
        """A Response as the HTTP-POST ``SAMLResponse`` value."""
        return encode_post(self.response_xml(assertion, **kwargs))

    def _redirect(self, endpoint: str, param: str, xml: bytes, relay_state: str | None, sign: bool) -> tuple[str, str]:
        url = build_redirect_url(endpoint, param, xml, relay_state, self.crypto if sign else None)
        query = url.split("?", 1)[1]
        return parse_qs(query)[param][0], query

    def logout_request_xml(
        self,
        name_id: str = "alice@example.com",
        session_index: str | None = None,
        *,
        request_id: str | None = None,
        lifetime: int = 300,
        issuer: str = IDP_ENTITY_ID,
    ) -> etree._Element:
        now = self.clock()
        return SAMLLogoutRequest(
            id=request_id or generate_id(),
            issue_instant=format_instant(now),
            issuer=issuer,
            destination=SP_SLO_URL,
            name_id=name_id,
            name_id_format=NAMEID_FORMAT_EMAIL,
            session_index=session_index,
            not_on_or_after=format_instant(now + timedelta(seconds=lifetime)),
        ).to_element()

    def logout_request(
        self,
        name_id: str = "alice@example.com",
        session_index: str | None = None,
        *,
        redirect: bool = True,
        sign: bool = True,
        relay_state: str | None = None,
        **kwargs,
    ) -> tuple[str, str | None]:
        """An IdP-initiated LogoutRequest as ``(SAMLRequest value, raw query or None)``."""
        element = self.logout_request_xml(name_id, session_index, **kwargs)
        if redirect:
            xml = etree.tostring(element, xml_declaration=True, encoding="UTF-8")
            return self._redirect(SP_SLO_URL, "SAMLRequest", xml, relay_state, sign)
        if sign:
            element = self.crypto.sign_element(element)
        return encode_post(etree.tostring(element, xml_declaration=True, encoding="UTF-8")), None

    def logout_response_element(self, in_response_to: str | None, status: str = STATUS_SUCCESS) -> etree._Element:
        return SAMLLogoutResponse(
            id=generate_id(),
            issue_instant=format_instant(self.clock()),
            issuer=IDP_ENTITY_ID,
            destination=SP_SLO_URL,
            in_response_to=in_response_to,
            status_code=status,
        ).to_element()

    def logout_response(
        self,
        in_response_to: str | None,
        status: str = STATUS_SUCCESS,
        *,
        redirect: bool = True,
        sign: bool = True,
    ) -> tuple[str, str | None]:
        """A LogoutResponse as ``(SAMLResponse value, raw query or None)``."""
        element = self.logout_response_element(in_response_to, status)
        if redirect:
            xml = etree.tostring(element, xml_declaration=True, encoding="UTF-8")
            return self._redirect(SP_SLO_URL, "SAMLResponse", xml, None, sign)
        if sign:
            element = self.crypto.sign_element(element)
        return encode_post(etree.tostring(element, xml_declaration=True, encoding="UTF-8")), None

    def soap_logout_response(self, in_response_to: str | None, status: str = STATUS_SUCCESS) -> bytes:
        """A SOAP envelope carrying an unsigned LogoutResponse."""
        return wrap_soap(self.logout_response_element(in_response_to, status))


# -- Key material -------------------------------------------------------------


@pytest.fixture(scope="session")
def sp_signing_keys() -> KeyPair:
    return _keypair("sp-signing")


@pytest.fixture(scope="session")
def sp_decryption_keys() -> KeyPair:
    return _keypair("sp-decryption")


@pytest.fixture(scope="session")
def idp_keys() -> KeyPair:
    return _keypair("idp-signing")


@pytest.fixture(scope="session")
def rogue_keys() -> KeyPair:
    """Key pair the SP does not trust."""
    return _keypair("rogue-idp")


# -- Configuration and components ---------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def sp_config(sp_signing_keys: KeyPair, sp_decryption_keys: KeyPair) -> ServiceProviderConfig:
    return ServiceProviderConfig(
        issuer=SP_ENTITY_ID,
        acs_url=SP_ACS_URL,
        slo_url=SP_SLO_URL,
        signing_key=sp_signing_keys.key,
        signing_cert=sp_signing_keys.cert,
        decryption_key=sp_decryption_keys.key,
        decryption_cert=sp_decryption_keys.cert,
        application_token="cloud-token-123",
    )


@pytest.fixture
def idp_config(idp_keys: KeyPair) -> IdentityProviderConfig:
    return IdentityProviderConfig(
        entity_id=IDP_ENTITY_ID,
        sso_url=IDP_SSO_URL,
        certificates=(idp_keys.cert,),
        slo_url=IDP_SLO_URL,
    )


@pytest.fixture
def provider(
    sp_config: ServiceProviderConfig,
    idp_config: IdentityProviderConfig,
    clock: FrozenClock,
) -> ServiceProvider:
    return ServiceProvider(sp_config, idp_config, protocol_logger=ProtocolLogger(), clock=clock)


@pytest.fixture
def idp(idp_keys: KeyPair, sp_decryption_keys: KeyPair, clock: FrozenClock) -> IdPSimulator:
    return IdPSimulator(idp_keys, sp_decryption_keys.cert, clock)


@pytest.fixture
def rogue_idp(rogue_keys: KeyPair, sp_decryption_keys: KeyPair, clock: FrozenClock) -> IdPSimulator:
    return IdPSimulator(rogue_keys, sp_decryption_keys.cert, clock)


# -- Flask ----------------------------------------------------------------------


@pytest.fixture
def app(provider: ServiceProvider) -> Generator[Flask, None, None]:
    """Create application for testing around the fixture provider."""
    app = create_app(
        AppConfig(server=ServerSettings(session_secret="test-secret-key")),
        provider=provider,
        config={"TESTING": True},
    )
    yield app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
