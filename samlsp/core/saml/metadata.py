"""Metadata Builder: SP metadata document.

The document carries no IDs, timestamps or ``validUntil``, so the output is
byte-identical for a given configuration and can be diffed or cached.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from cryptography import x509
from lxml import etree

from samlsp.core.crypto.adapter import BLOCK_CIPHERS, KEY_TRANSPORT_OAEP_MGF1P
from samlsp.core.crypto.certs import certificate_body
from samlsp.core.saml.bindings import (
    BINDING_HTTP_POST,
    BINDING_HTTP_REDIRECT,
    DS_NS,
    MD_NS,
    NAMEID_FORMAT_UNSPECIFIED,
    SAMLP_NS,
)

if TYPE_CHECKING:
    from samlsp.core.config import ServiceProviderConfig

METADATA_CONTENT_TYPE = "application/samlmetadata+xml"

NSMAP = {"md": MD_NS, "ds": DS_NS}


def _md(tag: str) -> str:
    return f"{{{MD_NS}}}{tag}"


def _key_descriptor(parent: etree._Element, use: str, cert: x509.Certificate) -> etree._Element:
    descriptor = etree.SubElement(parent, _md("KeyDescriptor"), use=use)
    key_info = etree.SubElement(descriptor, f"{{{DS_NS}}}KeyInfo")
    x509_data = etree.SubElement(key_info, f"{{{DS_NS}}}X509Data")
    etree.SubElement(x509_data, f"{{{DS_NS}}}X509Certificate").text = certificate_body(cert)
    return descriptor


def build_metadata(sp: ServiceProviderConfig) -> bytes:
    """Render the SP's ``md:EntityDescriptor``.

    Only certificates are published, never keys. The encryption
    KeyDescriptor lists the block ciphers the SP can decrypt.

    Args:
        sp: Service Provider configuration.

    Returns:
        UTF-8 encoded metadata XML, with declaration.
    """
    root = etree.Element(_md("EntityDescriptor"), nsmap=NSMAP, entityID=sp.issuer)
    descriptor = etree.SubElement(root, _md("SPSSODescriptor"))
    descriptor.set("AuthnRequestsSigned", "true" if sp.signing_key is not None else "false")
    descriptor.set("WantAssertionsSigned", "true")
    descriptor.set("protocolSupportEnumeration", SAMLP_NS)

    if sp.signing_cert is not None:
        _key_descriptor(descriptor, "signing", sp.signing_cert)
    if sp.decryption_cert is not None:
        encryption = _key_descriptor(descriptor, "encryption", sp.decryption_cert)
        for algorithm in BLOCK_CIPHERS:
            etree.SubElement(encryption, _md("EncryptionMethod"), Algorithm=algorithm)
        etree.SubElement(encryption, _md("EncryptionMethod"), Algorithm=KEY_TRANSPORT_OAEP_MGF1P)

    for binding in (BINDING_HTTP_REDIRECT, BINDING_HTTP_POST):
        etree.SubElement(descriptor, _md("SingleLogoutService"), Binding=binding, Location=sp.slo_url)

    etree.SubElement(descriptor, _md("NameIDFormat")).text = NAMEID_FORMAT_UNSPECIFIED

    acs = etree.SubElement(descriptor, _md("AssertionConsumerService"))
    acs.set("Binding", BINDING_HTTP_POST)
    acs.set("Location", sp.acs_url)
    acs.set("index", "1")
    acs.set("isDefault", "true")

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)
