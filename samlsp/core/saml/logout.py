"""SAML Single Logout message types.

LogoutRequest and LogoutResponse as dataclasses that can be rendered to, and
read from, lxml elements. Reading does no validation of its own; inbound
messages go through :mod:`samlsp.core.saml.response` first.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from lxml import etree

from samlsp.core.errors import MalformedMessage
from samlsp.core.saml.bindings import (
    NAMEID_FORMAT_UNSPECIFIED,
    SAML_NS,
    SAML_NS_URI,
    SAMLP_NS,
    SOAP_ENV_NS,
)


class LogoutStatus(StrEnum):
    """SAML Logout status codes."""

    SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
    REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"
    RESPONDER = "urn:oasis:names:tc:SAML:2.0:status:Responder"
    PARTIAL_LOGOUT = "urn:oasis:names:tc:SAML:2.0:status:PartialLogout"
    UNKNOWN_PRINCIPAL = "urn:oasis:names:tc:SAML:2.0:status:UnknownPrincipal"


LOGOUT_STATUS_DESCRIPTIONS = {
    LogoutStatus.SUCCESS: "logout completed",
    LogoutStatus.REQUESTER: "the IdP rejected the LogoutRequest",
    LogoutStatus.RESPONDER: "the IdP failed while logging out",
    LogoutStatus.PARTIAL_LOGOUT: "only some session participants were logged out",
    LogoutStatus.UNKNOWN_PRINCIPAL: "the IdP does not know the NameID",
}


def get_logout_status_description(status_code: str) -> str:
    """Short explanation of a top-level StatusCode URI; unknown URIs are returned as-is."""
    try:
        return LOGOUT_STATUS_DESCRIPTIONS[LogoutStatus(status_code)]
    except ValueError:
        return status_code


def _saml(tag: str) -> str:
    return f"{{{SAML_NS_URI}}}{tag}"


def _samlp(tag: str) -> str:
    return f"{{{SAMLP_NS}}}{tag}"


NSMAP = {"samlp": SAMLP_NS, "saml": SAML_NS_URI}


@dataclass
class SAMLLogoutRequest:
    """A LogoutRequest, either built by the SP or received from the IdP."""

    id: str
    issue_instant: str
    issuer: str
    destination: str
    name_id: str
    name_id_format: str = NAMEID_FORMAT_UNSPECIFIED
    name_qualifier: str | None = None
    sp_name_qualifier: str | None = None
    session_index: str | None = None
    reason: str | None = None
    not_on_or_after: str | None = None

    def to_element(self) -> etree._Element:
        """Build the LogoutRequest element."""
        root = etree.Element(_samlp("LogoutRequest"), nsmap=NSMAP)
        root.set("ID", self.id)
        root.set("Version", "2.0")
        root.set("IssueInstant", self.issue_instant)
        root.set("Destination", self.destination)
        if self.reason:
            root.set("Reason", self.reason)
        if self.not_on_or_after:
            root.set("NotOnOrAfter", self.not_on_or_after)

        etree.SubElement(root, _saml("Issuer")).text = self.issuer
        name_id = etree.SubElement(root, _saml("NameID"))
        name_id.set("Format", self.name_id_format)
        if self.name_qualifier:
            name_id.set("NameQualifier", self.name_qualifier)
        if self.sp_name_qualifier:
            name_id.set("SPNameQualifier", self.sp_name_qualifier)
        name_id.text = self.name_id
        if self.session_index:
            etree.SubElement(root, _samlp("SessionIndex")).text = self.session_index
        return root

    @classmethod
    def from_element(cls, root: etree._Element) -> SAMLLogoutRequest:
        """Read a LogoutRequest from a parsed element.

        Raises:
            MalformedMessage: If the element is not a LogoutRequest or lacks a NameID.
        """
        if root.tag != _samlp("LogoutRequest"):
            raise MalformedMessage(f"Expected LogoutRequest, got {root.tag}")

        name_id_elem = root.find("saml:NameID", SAML_NS)
        if name_id_elem is None:
            raise MalformedMessage("LogoutRequest has no NameID")

        return cls(
            id=root.get("ID", ""),
            issue_instant=root.get("IssueInstant", ""),
            issuer=(root.findtext("saml:Issuer", default="", namespaces=SAML_NS) or "").strip(),
            destination=root.get("Destination", ""),
            name_id="".join(name_id_elem.itertext()).strip(),
            name_id_format=name_id_elem.get("Format", NAMEID_FORMAT_UNSPECIFIED),
            name_qualifier=name_id_elem.get("NameQualifier"),
            sp_name_qualifier=name_id_elem.get("SPNameQualifier"),
            session_index=(root.findtext("samlp:SessionIndex", namespaces=SAML_NS) or "").strip() or None,
            reason=root.get("Reason"),
            not_on_or_after=root.get("NotOnOrAfter"),
        )


@dataclass
class SAMLLogoutResponse:
    """Represents a SAML LogoutResponse message."""

    id: str
    issue_instant: str
    issuer: str
    destination: str | None
    in_response_to: str | None
    status_code: str = LogoutStatus.SUCCESS.value
    status_message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status_code == LogoutStatus.SUCCESS.value

    @property
    def status_description(self) -> str:
        """Get human-readable description of the status code."""
        return get_logout_status_description(self.status_code)

    def to_element(self) -> etree._Element:
        """Build the LogoutResponse element."""
        root = etree.Element(_samlp("LogoutResponse"), nsmap=NSMAP)
        root.set("ID", self.id)
        root.set("Version", "2.0")
        root.set("IssueInstant", self.issue_instant)
        if self.destination:
            root.set("Destination", self.destination)
        if self.in_response_to:
            root.set("InResponseTo", self.in_response_to)

        etree.SubElement(root, _saml("Issuer")).text = self.issuer
        status = etree.SubElement(root, _samlp("Status"))
        etree.SubElement(status, _samlp("StatusCode")).set("Value", self.status_code)
        if self.status_message:
            etree.SubElement(status, _samlp("StatusMessage")).text = self.status_message
        return root

    @classmethod
    def from_element(cls, root: etree._Element) -> SAMLLogoutResponse:
        """Read a LogoutResponse from a parsed element.

        Raises:
            MalformedMessage: If the element is not a LogoutResponse or has no status.
        """
        if root.tag != _samlp("LogoutResponse"):
            raise MalformedMessage(f"Expected LogoutResponse, got {root.tag}")

        status_elem = root.find("samlp:Status/samlp:StatusCode", SAML_NS)
        if status_elem is None or not status_elem.get("Value"):
            raise MalformedMessage("LogoutResponse has no StatusCode")

        return cls(
            id=root.get("ID", ""),
            issue_instant=root.get("IssueInstant", ""),
            issuer=(root.findtext("saml:Issuer", default="", namespaces=SAML_NS) or "").strip(),
            destination=root.get("Destination"),
            in_response_to=root.get("InResponseTo"),
            status_code=status_elem.get("Value"),
            status_message=root.findtext("samlp:Status/samlp:StatusMessage", namespaces=SAML_NS),
        )


def wrap_soap(element: etree._Element) -> bytes:
    """Wrap a SAML message in a SOAP 1.1 envelope for the SOAP binding."""
    envelope = etree.Element(f"{{{SOAP_ENV_NS}}}Envelope", nsmap={"SOAP-ENV": SOAP_ENV_NS})
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    body.append(element)
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def unwrap_soap(envelope: etree._Element) -> etree._Element:
    """Return the single SAML message inside a SOAP envelope.

    Raises:
        MalformedMessage: If the document is not a SOAP envelope with one body child.
    """
    if envelope.tag != f"{{{SOAP_ENV_NS}}}Envelope":
        raise MalformedMessage(f"Expected SOAP Envelope, got {envelope.tag}")
    body = envelope.find("soap:Body", SAML_NS)
    children = [child for child in body if isinstance(child.tag, str)] if body is not None else []
    if len(children) != 1:
        raise MalformedMessage("SOAP Body must contain exactly one SAML message")
    return children[0]
