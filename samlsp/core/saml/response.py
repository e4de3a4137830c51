"""Response Validator: inbound SAML Response, LogoutResponse and LogoutRequest.

Validation of a login Response runs as a fixed sequence of hard gates:

1. Transport decoding (base64, inflate for HTTP-Redirect)
2. Hardened XML parsing
3. Top-level status, and exactly one (possibly encrypted) assertion
4. XML signature on the Response and/or the Assertion, then issuer
5. Validity window of Conditions and bearer SubjectConfirmationData
6. AudienceRestriction
7. InResponseTo against the pending-request store
8. Assertion ID replay cache
9. NameID, session index and attribute extraction

Claims are only ever read from the element the signature verifier returned,
never from the raw document, so injected unsigned content cannot be picked
up by the later steps.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote_plus

from lxml import etree

from samlsp.core.crypto.adapter import CryptoAdapter
from samlsp.core.errors import (
    AssertionExpired,
    AudienceMismatch,
    MalformedMessage,
    ResponseNotRequested,
    ResponseStatusError,
    SignatureInvalid,
    ValidationError,
)
from samlsp.core.logging import ProtocolLogger, get_protocol_logger
from samlsp.core.saml.bindings import (
    DS_NS,
    SAML_NS,
    SAML_NS_URI,
    SAMLP_NS,
    STATUS_SUCCESS,
    SUBJECT_CONFIRMATION_BEARER,
    decode_message,
    parse_instant,
    parse_xml,
    raw_query_values,
    split_signed_query,
)
from samlsp.core.saml.logout import SAMLLogoutRequest, SAMLLogoutResponse
from samlsp.core.saml.replay import KIND_ASSERTION, KIND_AUTHN, KIND_INBOUND, PendingRequestStore

if TYPE_CHECKING:
    from samlsp.core.config import IdentityProviderConfig, ServiceProviderConfig

logger = logging.getLogger(__name__)

RESPONSE_TAG = f"{{{SAMLP_NS}}}Response"
ASSERTION_TAG = f"{{{SAML_NS_URI}}}Assertion"
ENCRYPTED_ASSERTION_TAG = f"{{{SAML_NS_URI}}}EncryptedAssertion"
SIGNATURE_TAG = f"{{{DS_NS}}}Signature"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Assertion:
    """A validated SAML assertion.

    Only produced by :meth:`ResponseValidator.validate_response`; every field
    comes from signature-verified content.
    """

    assertion_id: str
    issuer: str
    name_id: str
    name_id_format: str | None = None
    name_qualifier: str | None = None
    sp_name_qualifier: str | None = None
    session_index: str | None = None
    not_before: datetime | None = None
    not_on_or_after: datetime | None = None
    audiences: list[str] = field(default_factory=list)
    authn_instant: datetime | None = None
    authn_context_class_ref: str | None = None
    attributes: dict[str, list[str]] = field(default_factory=dict)
    in_response_to: str | None = None
    response_id: str | None = None

    def first(self, name: str) -> str | None:
        """Return the first value of an attribute, or None."""
        values = self.attributes.get(name)
        return values[0] if values else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "assertion_id": self.assertion_id,
            "issuer": self.issuer,
            "name_id": self.name_id,
            "name_id_format": self.name_id_format,
            "name_qualifier": self.name_qualifier,
            "sp_name_qualifier": self.sp_name_qualifier,
            "session_index": self.session_index,
            "not_before": self.not_before.isoformat() if self.not_before else None,
            "not_on_or_after": self.not_on_or_after.isoformat() if self.not_on_or_after else None,
            "audiences": list(self.audiences),
            "authn_instant": self.authn_instant.isoformat() if self.authn_instant else None,
            "authn_context_class_ref": self.authn_context_class_ref,
            "attributes": {k: list(v) for k, v in self.attributes.items()},
            "in_response_to": self.in_response_to,
            "response_id": self.response_id,
        }


def _text(element: etree._Element | None) -> str | None:
    if element is None:
        return None
    return "".join(element.itertext())


def _optional_instant(element: etree._Element, attribute: str) -> datetime | None:
    value = element.get(attribute)
    return parse_instant(value) if value else None


class ResponseValidator:
    """Validates inbound SAML messages for one SP/IdP pair.

    Args:
        sp: Service Provider configuration.
        idp: Trusted Identity Provider configuration.
        crypto: Adapter used for signature checks and decryption.
        pending: Store holding pending request IDs and seen assertion IDs.
        protocol_logger: Logger for inbound messages. Uses the global one if omitted.
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

    @property
    def skew(self) -> timedelta:
        return timedelta(seconds=self.sp.clock_skew_seconds)

    # -- Login Response -------------------------------------------------------

    def validate_response(
        self,
        raw: str,
        pending_request_id: str | None = None,
        is_redirect: bool = False,
    ) -> Assertion:
        """Validate a SAMLResponse and return its assertion.

        Args:
            raw: The ``SAMLResponse`` parameter value as received.
            pending_request_id: ID of the AuthnRequest this browser session
                issued, if any.
            is_redirect: True if the response arrived over HTTP-Redirect.

        Returns:
            The validated Assertion.

        Raises:
            ValidationError: One of its subclasses, naming the failed gate.
        """
        try:
            return self._validate_response(raw, pending_request_id, is_redirect)
        except ValidationError as e:
            logger.warning(f"Rejected SAML Response ({e.code}): {e}")
            raise

    def _validate_response(self, raw: str, pending_request_id: str | None, is_redirect: bool) -> Assertion:
        now = self.clock()

        xml = decode_message(raw, is_redirect)
        root = parse_xml(xml)
        self.protocol_logger.log_message("inbound", "Response", xml.decode("utf-8", errors="replace"))

        if root.tag != RESPONSE_TAG:
            raise MalformedMessage(f"Expected samlp:Response, got {root.tag}")
        response_id = root.get("ID")
        if not response_id:
            raise MalformedMessage("Response has no ID")

        self._check_status(root)
        self._find_single_assertion(root)

        # Signature gates. Both present signatures must verify; at least one must exist.
        response_signed = root.find(SIGNATURE_TAG) is not None
        if response_signed:
            root = self._verify_signed(xml, RESPONSE_TAG, response_id)

        node = self._find_single_assertion(root)
        if node.tag == ENCRYPTED_ASSERTION_TAG:
            assertion = self.crypto.decrypt_element(node)
            if assertion.tag != ASSERTION_TAG:
                raise MalformedMessage(f"EncryptedAssertion decrypted to {assertion.tag}")
        else:
            assertion = node

        assertion_id = assertion.get("ID")
        if not assertion_id:
            raise MalformedMessage("Assertion has no ID")

        if assertion.find(SIGNATURE_TAG) is not None:
            assertion = self._verify_signed(etree.tostring(assertion), ASSERTION_TAG, assertion_id)
        elif not response_signed:
            raise SignatureInvalid("Neither the Response nor the Assertion is signed")

        # Issuer
        self._check_issuer(root.findtext("saml:Issuer", namespaces=SAML_NS), required=False)
        self._check_issuer(assertion.findtext("saml:Issuer", namespaces=SAML_NS), required=True)

        destination = root.get("Destination")
        if destination and destination != self.sp.acs_url:
            raise AudienceMismatch(f"Response Destination {destination!r} is not {self.sp.acs_url!r}")

        # Timing
        conditions = assertion.find("saml:Conditions", SAML_NS)
        not_before = _optional_instant(conditions, "NotBefore") if conditions is not None else None
        not_on_or_after = _optional_instant(conditions, "NotOnOrAfter") if conditions is not None else None
        self._check_window(now, not_before, not_on_or_after, "Assertion")
        confirmation_in_response_to, confirmation_expiry = self._check_subject_confirmation(assertion, now)

        # Audience
        audiences = self._check_audience(conditions)

        # InResponseTo. Response-level value is only trusted when the Response was signed.
        in_response_to = root.get("InResponseTo") if response_signed else None
        if in_response_to and confirmation_in_response_to and in_response_to != confirmation_in_response_to:
            raise ResponseNotRequested("Response and SubjectConfirmationData disagree on InResponseTo")
        in_response_to = in_response_to or confirmation_in_response_to
        self._check_in_response_to(in_response_to, pending_request_id, now)

        # Replay of the assertion itself
        expires_at = min(
            (t for t in (not_on_or_after, confirmation_expiry) if t is not None),
            default=now + timedelta(seconds=self.sp.request_window_seconds),
        )
        if not self.pending.add(assertion_id, KIND_ASSERTION, expires_at + self.skew, now=now):
            raise ResponseNotRequested(f"Assertion {assertion_id} was already consumed")

        result = self._extract(assertion, assertion_id, response_id, in_response_to)
        result.not_before = not_before
        result.not_on_or_after = not_on_or_after
        result.audiences = audiences
        logger.info(f"Accepted assertion {assertion_id} from {result.issuer} for response {response_id}")
        return result

    def _check_status(self, root: etree._Element) -> None:
        status = root.find("samlp:Status/samlp:StatusCode", SAML_NS)
        if status is None:
            raise MalformedMessage("Response has no StatusCode")
        code = status.get("Value")
        if code != STATUS_SUCCESS:
            sub = status.find("samlp:StatusCode", SAML_NS)
            detail = f"{code} / {sub.get('Value')}" if sub is not None else code
            message = root.findtext("samlp:Status/samlp:StatusMessage", namespaces=SAML_NS)
            raise ResponseStatusError(
                f"IdP returned status {detail}" + (f": {message}" if message else ""),
                message_id=root.get("ID"),
            )

    def _find_single_assertion(self, root: etree._Element) -> etree._Element:
        found = list(root.iter(ASSERTION_TAG, ENCRYPTED_ASSERTION_TAG))
        if len(found) != 1:
            raise MalformedMessage(f"Response must carry exactly one assertion, found {len(found)}")
        if found[0].getparent() is not root:
            raise MalformedMessage("Assertion is not a direct child of the Response")
        return found[0]

    def _verify_signed(self, data: bytes, expected_tag: str, expected_id: str) -> etree._Element:
        signed = self.crypto.verify_element(data, self.idp.certificates)
        if signed.tag != expected_tag or signed.get("ID") != expected_id:
            raise SignatureInvalid(
                f"Signature covers {signed.tag} {signed.get('ID')!r}, not {expected_tag} {expected_id!r}"
            )
        return signed

    def _check_issuer(self, issuer: str | None, required: bool) -> None:
        if issuer is None:
            if required:
                raise SignatureInvalid("Assertion has no Issuer")
            return
        if issuer.strip() != self.idp.entity_id:
            raise SignatureInvalid(f"Untrusted issuer {issuer.strip()!r}")

    def _check_window(
        self,
        now: datetime,
        not_before: datetime | None,
        not_on_or_after: datetime | None,
        label: str,
    ) -> None:
        if not_before is not None and now + self.skew < not_before:
            raise AssertionExpired(f"{label} not valid before {not_before.isoformat()}")
        if not_on_or_after is not None and now - self.skew >= not_on_or_after:
            raise AssertionExpired(f"{label} expired at {not_on_or_after.isoformat()}")

    def _check_subject_confirmation(
        self,
        assertion: etree._Element,
        now: datetime,
    ) -> tuple[str | None, datetime | None]:
        """Check bearer SubjectConfirmationData; returns (InResponseTo, NotOnOrAfter)."""
        bearer = [
            sc
            for sc in assertion.findall("saml:Subject/saml:SubjectConfirmation", SAML_NS)
            if sc.get("Method") == SUBJECT_CONFIRMATION_BEARER
        ]
        if not bearer:
            raise MalformedMessage("Assertion has no bearer SubjectConfirmation")

        last_error: ValidationError | None = None
        for confirmation in bearer:
            data = confirmation.find("saml:SubjectConfirmationData", SAML_NS)
            if data is None:
                last_error = MalformedMessage("Bearer SubjectConfirmation has no data")
                continue
            recipient = data.get("Recipient")
            if recipient and recipient != self.sp.acs_url:
                last_error = AudienceMismatch(f"SubjectConfirmation Recipient {recipient!r} is not this SP")
                continue
            expiry = _optional_instant(data, "NotOnOrAfter")
            try:
                self._check_window(now, _optional_instant(data, "NotBefore"), expiry, "SubjectConfirmation")
            except AssertionExpired as e:
                last_error = e
                continue
            return data.get("InResponseTo"), expiry

        raise last_error

    def _check_audience(self, conditions: etree._Element | None) -> list[str]:
        restrictions = conditions.findall("saml:AudienceRestriction", SAML_NS) if conditions is not None else []
        if not restrictions:
            raise AudienceMismatch("Assertion has no AudienceRestriction")

        audiences: list[str] = []
        for restriction in restrictions:
            values = [(_text(a) or "").strip() for a in restriction.findall("saml:Audience", SAML_NS)]
            if self.sp.issuer not in values:
                raise AudienceMismatch(f"SP {self.sp.issuer!r} not in audiences {values}")
            audiences.extend(values)
        return audiences

    def _check_in_response_to(
        self,
        in_response_to: str | None,
        pending_request_id: str | None,
        now: datetime,
    ) -> None:
        if pending_request_id is not None:
            if in_response_to != pending_request_id:
                raise ResponseNotRequested(
                    f"InResponseTo {in_response_to!r} does not match pending request {pending_request_id!r}"
                )
            if self.pending.consume(pending_request_id, KIND_AUTHN, now) is None:
                raise ResponseNotRequested(f"Request {pending_request_id} is unknown, expired or already answered")
        elif in_response_to:
            if self.pending.consume(in_response_to, KIND_AUTHN, now) is None:
                if not self.sp.allow_unsolicited:
                    raise ResponseNotRequested(f"Request {in_response_to} is unknown, expired or already answered")
                logger.info(f"InResponseTo {in_response_to} matches no pending request, accepted as unsolicited")
        elif not self.sp.allow_unsolicited:
            raise ResponseNotRequested("Unsolicited responses are not accepted")

    def _extract(
        self,
        assertion: etree._Element,
        assertion_id: str,
        response_id: str,
        in_response_to: str | None,
    ) -> Assertion:
        subject = assertion.find("saml:Subject", SAML_NS)
        name_id = subject.find("saml:NameID", SAML_NS) if subject is not None else None
        if name_id is None and subject is not None:
            encrypted_id = subject.find("saml:EncryptedID", SAML_NS)
            if encrypted_id is not None:
                name_id = self.crypto.decrypt_element(encrypted_id)
                if name_id.tag != f"{{{SAML_NS_URI}}}NameID":
                    raise MalformedMessage(f"EncryptedID decrypted to {name_id.tag}")
        if name_id is None:
            raise MalformedMessage("Assertion has no NameID")

        authn = assertion.find("saml:AuthnStatement", SAML_NS)
        attributes: dict[str, list[str]] = {}
        for statement in assertion.findall("saml:AttributeStatement", SAML_NS):
            for attr in statement:
                if attr.tag == f"{{{SAML_NS_URI}}}EncryptedAttribute":
                    attr = self.crypto.decrypt_element(attr)
                if attr.tag != f"{{{SAML_NS_URI}}}Attribute" or not attr.get("Name"):
                    continue
                values = attributes.setdefault(attr.get("Name"), [])
                values.extend(_text(v) or "" for v in attr.findall("saml:AttributeValue", SAML_NS))

        return Assertion(
            assertion_id=assertion_id,
            issuer=(assertion.findtext("saml:Issuer", namespaces=SAML_NS) or "").strip(),
            name_id=_text(name_id) or "",
            name_id_format=name_id.get("Format"),
            name_qualifier=name_id.get("NameQualifier"),
            sp_name_qualifier=name_id.get("SPNameQualifier"),
            session_index=authn.get("SessionIndex") if authn is not None else None,
            authn_instant=_optional_instant(authn, "AuthnInstant") if authn is not None else None,
            authn_context_class_ref=(
                authn.findtext("saml:AuthnContext/saml:AuthnContextClassRef", namespaces=SAML_NS)
                if authn is not None
                else None
            ),
            attributes=attributes,
            in_response_to=in_response_to,
            response_id=response_id,
        )

    # -- Logout messages ------------------------------------------------------

    def _authenticate(
        self,
        root: etree._Element,
        xml: bytes,
        is_redirect: bool,
        query_string: str | None,
        message_param: str,
        require_signature: bool = True,
    ) -> etree._Element:
        """Verify a logout message's signature and return the trusted element.

        On the redirect binding the signed ``message_param`` value must decode
        to ``xml``.
        """
        if is_redirect:
            query = query_string or ""
            signed = split_signed_query(query, message_param)
            if signed is None:
                raise SignatureInvalid("Redirect-binding message carries no query signature")
            octets, sig_alg, signature = signed
            self.crypto.verify_query(octets, signature, sig_alg, self.idp.certificates)
            signed_value = unquote_plus(raw_query_values(query)[message_param])
            if decode_message(signed_value, is_redirect=True) != xml:
                raise SignatureInvalid(f"Query signature covers a different {message_param} than the one validated")
            return root

        if root.find(SIGNATURE_TAG) is not None:
            message_id = root.get("ID")
            if not message_id:
                raise MalformedMessage(f"{root.tag} has no ID")
            return self._verify_signed(xml, root.tag, message_id)
        if require_signature:
            raise SignatureInvalid(f"{etree.QName(root).localname} is not signed")
        return root

    def _check_logout_envelope(self, issuer: str, destination: str | None) -> None:
        if issuer != self.idp.entity_id:
            raise SignatureInvalid(f"Untrusted issuer {issuer!r}")
        if destination and destination != self.sp.slo_url:
            raise AudienceMismatch(f"Destination {destination!r} is not {self.sp.slo_url!r}")

    def validate_logout_response(
        self,
        raw: str,
        expected_request_id: str | None = None,
        is_redirect: bool = False,
        query_string: str | None = None,
    ) -> SAMLLogoutResponse:
        """Validate a LogoutResponse received through the browser.

        Args:
            raw: The ``SAMLResponse`` parameter value.
            expected_request_id: ID of the LogoutRequest it must answer, if known.
            is_redirect: True for HTTP-Redirect binding.
            query_string: Raw query string (HTTP-Redirect only).

        Returns:
            The parsed LogoutResponse. A non-success status is returned, not raised.

        Raises:
            ValidationError: If the message is malformed, unsigned, untrusted
                or answers a different request.
        """
        try:
            xml = decode_message(raw, is_redirect)
            root = parse_xml(xml)
            return self._validate_logout_response_element(
                root, xml, expected_request_id, is_redirect, query_string, require_signature=True
            )
        except ValidationError as e:
            logger.warning(f"Rejected LogoutResponse ({e.code}): {e}")
            raise

    def validate_logout_response_element(
        self,
        root: etree._Element,
        expected_request_id: str | None = None,
    ) -> SAMLLogoutResponse:
        """Validate a LogoutResponse taken from a SOAP backchannel reply.

        The SOAP channel is a direct TLS connection to the IdP, so an unsigned
        response is accepted there; a present signature must still verify.
        """
        try:
            return self._validate_logout_response_element(
                root, etree.tostring(root), expected_request_id, False, None, require_signature=False
            )
        except ValidationError as e:
            logger.warning(f"Rejected backchannel LogoutResponse ({e.code}): {e}")
            raise

    def _validate_logout_response_element(
        self,
        root: etree._Element,
        xml: bytes,
        expected_request_id: str | None,
        is_redirect: bool,
        query_string: str | None,
        require_signature: bool,
    ) -> SAMLLogoutResponse:
        self.protocol_logger.log_message("inbound", "LogoutResponse", xml.decode("utf-8", errors="replace"))
        SAMLLogoutResponse.from_element(root)
        trusted = self._authenticate(root, xml, is_redirect, query_string, "SAMLResponse", require_signature)
        response = SAMLLogoutResponse.from_element(trusted)
        self._check_logout_envelope(response.issuer, response.destination)
        if expected_request_id is not None and response.in_response_to != expected_request_id:
            raise ResponseNotRequested(
                f"LogoutResponse answers {response.in_response_to!r}, expected {expected_request_id!r}"
            )
        return response

    def validate_logout_request(
        self,
        raw: str,
        is_redirect: bool = False,
        query_string: str | None = None,
    ) -> SAMLLogoutRequest:
        """Validate an IdP-initiated LogoutRequest.

        Args:
            raw: The ``SAMLRequest`` parameter value.
            is_redirect: True for HTTP-Redirect binding.
            query_string: Raw query string (HTTP-Redirect only).

        Returns:
            The parsed, trusted LogoutRequest.

        Raises:
            ValidationError: If the request is malformed, unsigned, untrusted,
                expired or replayed.
        """
        try:
            return self._validate_logout_request(raw, is_redirect, query_string)
        except ValidationError as e:
            logger.warning(f"Rejected LogoutRequest ({e.code}): {e}")
            raise

    def _validate_logout_request(self, raw: str, is_redirect: bool, query_string: str | None) -> SAMLLogoutRequest:
        now = self.clock()
        xml = decode_message(raw, is_redirect)
        root = parse_xml(xml)
        self.protocol_logger.log_message("inbound", "LogoutRequest", xml.decode("utf-8", errors="replace"))

        SAMLLogoutRequest.from_element(root)
        trusted = self._authenticate(root, xml, is_redirect, query_string, "SAMLRequest")
        request = SAMLLogoutRequest.from_element(trusted)
        if not request.id:
            raise MalformedMessage("LogoutRequest has no ID")
        self._check_logout_envelope(request.issuer, request.destination)

        not_on_or_after = parse_instant(request.not_on_or_after) if request.not_on_or_after else None
        self._check_window(now, None, not_on_or_after, "LogoutRequest")

        expires_at = (not_on_or_after or now + timedelta(seconds=self.sp.request_window_seconds)) + self.skew
        if not self.pending.add(request.id, KIND_INBOUND, expires_at, now=now):
            raise ResponseNotRequested(f"LogoutRequest {request.id} was already processed")
        return request
