"""SAML display helpers."""

from __future__ import annotations

from lxml import etree


def pretty_print_xml(xml: str | bytes, indent: str = "  ") -> str:
    """Pretty-print an XML document with proper indentation.

    Args:
        xml: Raw XML.
        indent: Indentation string (default: 2 spaces).

    Returns:
        Formatted XML without declaration. Input that does not parse is
        returned unchanged.
    """
    raw = xml.encode("utf-8") if isinstance(xml, str) else xml
    parser = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)
    try:
        root = etree.fromstring(raw, parser=parser)
    except etree.XMLSyntaxError:
        return raw.decode("utf-8", errors="replace")
    etree.indent(root, space=indent)
    return etree.tostring(root, encoding="unicode")


# Common SAML attribute names and their friendly names
SAML_ATTRIBUTE_NAMES: dict[str, str] = {
    "urn:oid:0.9.2342.19200300.100.1.1": "uid",
    "urn:oid:0.9.2342.19200300.100.1.3": "mail",
    "urn:oid:2.5.4.3": "cn",
    "urn:oid:2.5.4.4": "sn",
    "urn:oid:2.5.4.42": "givenName",
    "urn:oid:2.16.840.1.113730.3.1.241": "displayName",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.6": "eduPersonPrincipalName",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.7": "eduPersonEntitlement",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress": "emailaddress",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name": "name",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname": "givenname",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname": "surname",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/upn": "upn",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups": "groups",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/role": "role",
}

# NameID format descriptions
NAMEID_FORMAT_DESCRIPTIONS: dict[str, str] = {
    "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress": "Email Address",
    "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified": "Unspecified",
    "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent": "Persistent",
    "urn:oasis:names:tc:SAML:2.0:nameid-format:transient": "Transient",
    "urn:oasis:names:tc:SAML:1.1:nameid-format:X509SubjectName": "X.509 Subject Name",
    "urn:oasis:names:tc:SAML:1.1:nameid-format:WindowsDomainQualifiedName": "Windows Domain",
    "urn:oasis:names:tc:SAML:2.0:nameid-format:kerberos": "Kerberos Principal",
    "urn:oasis:names:tc:SAML:2.0:nameid-format:entity": "Entity",
}


def get_attribute_name(attr_name: str) -> str:
    """Friendly name for a SAML attribute.

    Known OIDs and claim URIs map to their usual short name; anything else
    falls back to the last path or URN segment.
    """
    if attr_name in SAML_ATTRIBUTE_NAMES:
        return SAML_ATTRIBUTE_NAMES[attr_name]
    if "/" in attr_name:
        return attr_name.rsplit("/", 1)[-1]
    if ":" in attr_name:
        return attr_name.rsplit(":", 1)[-1]
    return attr_name


def get_nameid_format_description(format_uri: str | None) -> str:
    """Get human-readable description for a NameID format."""
    if not format_uri:
        return NAMEID_FORMAT_DESCRIPTIONS["urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"]
    return NAMEID_FORMAT_DESCRIPTIONS.get(format_uri, f"Custom format: {format_uri}")
