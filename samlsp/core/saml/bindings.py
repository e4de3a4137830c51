"""SAML namespaces, constants and HTTP binding codecs.

Covers the two browser bindings the SP speaks:

- HTTP-Redirect: raw DEFLATE + base64 + URL encoding, with the detached
  query-string signature (``SigAlg`` / ``Signature``).
- HTTP-POST: base64 of the XML document, carried in a form field.
"""

from __future__ import annotations

import base64
import binascii
import re
import secrets
import zlib
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote_plus, unquote_plus

from lxml import etree

from samlsp.core.crypto.adapter import SIG_ALG_RSA_SHA256, CryptoAdapter
from samlsp.core.errors import MalformedMessage


# SAML namespaces
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS_URI = "urn:oasis:names:tc:SAML:2.0:assertion"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XENC_NS = "http://www.w3.org/2001/04/xmlenc#"
SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

SAML_NS = {
    "samlp": SAMLP_NS,
    "saml": SAML_NS_URI,
    "md": MD_NS,
    "ds": DS_NS,
    "xenc": XENC_NS,
    "soap": SOAP_ENV_NS,
}

# Binding URIs
BINDING_HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
BINDING_SOAP = "urn:oasis:names:tc:SAML:2.0:bindings:SOAP"

# Status codes
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
STATUS_REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"
STATUS_RESPONDER = "urn:oasis:names:tc:SAML:2.0:status:Responder"
STATUS_PARTIAL_LOGOUT = "urn:oasis:names:tc:SAML:2.0:status:PartialLogout"

# NameID formats
NAMEID_FORMAT_UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"
NAMEID_FORMAT_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
NAMEID_FORMAT_PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"
NAMEID_FORMAT_TRANSIENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:transient"

SUBJECT_CONFIRMATION_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"

# Upper bound on an inflated redirect-binding message
MAX_INFLATED_SIZE = 256 * 1024

_FRACTION = re.compile(r"(\.\d{1,6})\d*")


def generate_id() -> str:
    """Generate a SAML message ID: ``_`` followed by 32 hex characters."""
    return f"_{secrets.token_hex(16)}"


def format_instant(value: datetime) -> str:
    """Format a datetime as a SAML ``xs:dateTime`` in UTC."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_instant(value: str) -> datetime:
    """Parse a SAML ``xs:dateTime`` into an aware UTC datetime.

    Raises:
        MalformedMessage: If the value is not a valid timestamp.
    """
    text = _FRACTION.sub(r"\1", value.strip())
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise MalformedMessage(f"Invalid timestamp {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def encode_redirect(xml: bytes) -> str:
    """Encode a message for HTTP-Redirect binding (raw deflate + base64)."""
    # zlib.compress output minus its 2-byte header and 4-byte checksum
    compressed = zlib.compress(xml)[2:-4]
    return base64.b64encode(compressed).decode("ascii")


def encode_post(xml: bytes) -> str:
    """Encode a message for HTTP-POST binding (base64 only)."""
    return base64.b64encode(xml).decode("ascii")


def decode_message(data: str, is_redirect: bool) -> bytes:
    """Decode a transport-encoded SAML message.

    Args:
        data: The ``SAMLRequest`` / ``SAMLResponse`` parameter value, already
            URL-decoded.
        is_redirect: True for HTTP-Redirect (inflate after base64).

    Returns:
        The XML document as bytes.

    Raises:
        MalformedMessage: If the data is not valid base64 or DEFLATE.
    """
    if not data:
        raise MalformedMessage("Empty SAML message")
    try:
        decoded = base64.b64decode("".join(data.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedMessage(f"SAML message is not valid base64: {e}") from e

    if not is_redirect:
        return decoded

    inflater = zlib.decompressobj(-15)
    try:
        inflated = inflater.decompress(decoded, MAX_INFLATED_SIZE)
    except zlib.error as e:
        raise MalformedMessage(f"SAML message is not valid DEFLATE data: {e}") from e
    if inflater.unconsumed_tail:
        raise MalformedMessage("Inflated SAML message exceeds size limit")
    return inflated


def parse_xml(xml: bytes) -> etree._Element:
    """Parse an inbound SAML document with a hardened parser.

    Entity expansion, DTD loading and network access are disabled, and any
    document carrying a DOCTYPE is refused outright.

    Raises:
        MalformedMessage: If the document is not well-formed or has a DOCTYPE.
    """
    parser = etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        remove_comments=True,
        remove_pis=True,
    )
    try:
        root = etree.fromstring(xml, parser=parser)
    except etree.XMLSyntaxError as e:
        raise MalformedMessage(f"SAML message is not well-formed XML: {e}") from e
    if root.getroottree().docinfo.doctype:
        raise MalformedMessage("SAML message must not contain a DOCTYPE")
    return root


def build_redirect_url(
    endpoint: str,
    param: str,
    xml: bytes,
    relay_state: str | None = None,
    crypto: CryptoAdapter | None = None,
) -> str:
    """Build an HTTP-Redirect binding URL, signing the query when possible.

    The signature covers ``param=…&RelayState=…&SigAlg=…`` exactly as the
    URL-encoded octets appear in the final URL.

    Args:
        endpoint: IdP endpoint URL, may already carry a query string.
        param: ``SAMLRequest`` or ``SAMLResponse``.
        xml: Serialized message.
        relay_state: Optional RelayState, passed through untouched.
        crypto: Adapter holding the SP signing key; unsigned if None or keyless.

    Returns:
        Complete URL to redirect the browser to.
    """
    query = f"{param}={quote_plus(encode_redirect(xml))}"
    if relay_state is not None:
        query += f"&RelayState={quote_plus(relay_state)}"

    if crypto is not None and crypto.can_sign:
        query += f"&SigAlg={quote_plus(SIG_ALG_RSA_SHA256)}"
        _, signature = crypto.sign_query(query.encode("ascii"))
        query += f"&Signature={quote_plus(signature)}"

    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{query}"


def build_post_form(
    endpoint: str,
    param: str,
    xml: bytes,
    relay_state: str | None = None,
) -> dict[str, Any]:
    """Build data for an HTTP-POST binding form.

    Returns:
        Dictionary with 'action' URL and 'fields' for form inputs.
    """
    fields = {param: encode_post(xml)}
    if relay_state is not None:
        fields["RelayState"] = relay_state
    return {"action": endpoint, "fields": fields}


MESSAGE_PARAMS = ("SAMLRequest", "SAMLResponse")
SIGNED_QUERY_PARAMS = (*MESSAGE_PARAMS, "RelayState", "SigAlg", "Signature")


def raw_query_values(query_string: str) -> dict[str, str]:
    """Map parameter names to their still URL-encoded values.

    Raises:
        MalformedMessage: If a SAML binding parameter appears twice.
    """
    raw: dict[str, str] = {}
    for pair in query_string.split("&"):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        key = unquote_plus(key)
        if key in raw and key in SIGNED_QUERY_PARAMS:
            raise MalformedMessage(f"Query repeats the {key} parameter")
        raw.setdefault(key, value)
    return raw


def split_signed_query(query_string: str, message_param: str) -> tuple[bytes, str, str] | None:
    """Extract the signed octets and signature from a redirect-binding query.

    The octets are rebuilt from the raw, still URL-encoded parameter values
    in the order the binding mandates, so re-encoding differences between
    the IdP and this SP cannot break verification. Only ``message_param``
    contributes the SAML message; a query carrying both a request and a
    response is rejected.

    Args:
        query_string: The raw query string as received (no leading ``?``).
        message_param: ``SAMLRequest`` or ``SAMLResponse``, whichever message
            is being validated.

    Returns:
        ``(signed_octets, sig_alg, signature_b64)``, or None if the query
        carries no signature.

    Raises:
        MalformedMessage: If the query lacks ``message_param``, carries both
            message parameters or repeats a binding parameter.
    """
    if message_param not in MESSAGE_PARAMS:
        raise ValueError(f"Not a SAML message parameter: {message_param}")
    raw = raw_query_values(query_string)

    if all(p in raw for p in MESSAGE_PARAMS):
        raise MalformedMessage("Query carries both SAMLRequest and SAMLResponse")
    if "Signature" not in raw or "SigAlg" not in raw:
        return None
    if message_param not in raw:
        raise MalformedMessage(f"Signed query carries no {message_param}")

    parts = [f"{message_param}={raw[message_param]}"]
    if "RelayState" in raw:
        parts.append(f"RelayState={raw['RelayState']}")
    parts.append(f"SigAlg={raw['SigAlg']}")

    return (
        "&".join(parts).encode("utf-8"),
        unquote_plus(raw["SigAlg"]),
        unquote_plus(raw["Signature"]),
    )
