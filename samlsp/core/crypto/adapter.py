"""Crypto adapter wrapping signxml, xmlsec, lxml and cryptography.

Everything the protocol layers need from XML-DSig, XML-ENC and the
HTTP-Redirect binding signature goes through :class:`CryptoAdapter`, so
the rest of the engine never touches key material directly.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Sequence
from copy import deepcopy

import xmlsec
from cryptography import x509
from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree
from signxml import XMLSigner, XMLVerifier
from signxml.algorithms import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.exceptions import InvalidInput, InvalidSignature

from samlsp.core.crypto.certs import certificate_pem, private_key_pem
from samlsp.core.errors import DecryptionFailed, MalformedMessage, SignatureInvalid

logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XENC_NS = "http://www.w3.org/2001/04/xmlenc#"
XENC11_NS = "http://www.w3.org/2009/xmlenc11#"

# Query-string signature algorithms for the HTTP-Redirect binding
SIG_ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SIG_ALG_RSA_SHA384 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha384"
SIG_ALG_RSA_SHA512 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512"

QUERY_SIGNATURE_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    SIG_ALG_RSA_SHA256: hashes.SHA256,
    SIG_ALG_RSA_SHA384: hashes.SHA384,
    SIG_ALG_RSA_SHA512: hashes.SHA512,
}

# XML-ENC content encryption accepted from the IdP and advertised in metadata
BLOCK_CIPHERS = (
    f"{XENC_NS}aes128-cbc",
    f"{XENC_NS}aes192-cbc",
    f"{XENC_NS}aes256-cbc",
    f"{XENC11_NS}aes128-gcm",
    f"{XENC11_NS}aes192-gcm",
    f"{XENC11_NS}aes256-gcm",
)

KEY_TRANSPORT_OAEP_MGF1P = f"{XENC_NS}rsa-oaep-mgf1p"
KEY_TRANSPORT_OAEP = f"{XENC11_NS}rsa-oaep"
KEY_TRANSPORTS = (KEY_TRANSPORT_OAEP_MGF1P, KEY_TRANSPORT_OAEP)


def _xenc(tag: str) -> str:
    return f"{{{XENC_NS}}}{tag}"


class CryptoAdapter:
    """Signs, verifies and decrypts SAML messages for one SP.

    Args:
        signing_key: SP private key used for outbound signatures, if any.
        signing_cert: Certificate matching ``signing_key``.
        decryption_key: SP private key used to unwrap encrypted assertions.
    """

    def __init__(
        self,
        signing_key: rsa.RSAPrivateKey | None = None,
        signing_cert: x509.Certificate | None = None,
        decryption_key: rsa.RSAPrivateKey | None = None,
    ) -> None:
        self._signing_key = signing_key
        self._signing_key_pem = (
            private_key_pem(signing_key).encode("utf-8") if signing_key else None
        )
        self._signing_cert_pem = certificate_pem(signing_cert) if signing_cert else None
        self._decryption_key_pem = (
            private_key_pem(decryption_key).encode("utf-8") if decryption_key else None
        )

    @property
    def can_sign(self) -> bool:
        return self._signing_key is not None

    # -- XML-DSig -----------------------------------------------------------

    def sign_element(self, element: etree._Element) -> etree._Element:
        """Return a copy of ``element`` with an enveloped signature.

        The signature references the element's ``ID`` attribute and is placed
        right after its ``saml:Issuer`` child, where the SAML schema wants it.

        Raises:
            ValueError: If the adapter has no signing key or the element has no ID.
        """
        if self._signing_key_pem is None:
            raise ValueError("No signing key configured")
        element_id = element.get("ID")
        if not element_id:
            raise ValueError("Element to sign has no ID attribute")

        placeholder = etree.Element(f"{{{DS_NS}}}Signature", Id="placeholder", nsmap={"ds": DS_NS})
        issuer = element.find("{urn:oasis:names:tc:SAML:2.0:assertion}Issuer")
        if issuer is not None:
            issuer.addnext(placeholder)
        else:
            element.insert(0, placeholder)

        signer = XMLSigner(
            method=SignatureConstructionMethod.enveloped,
            signature_algorithm=SignatureMethod.RSA_SHA256,
            digest_algorithm=DigestAlgorithm.SHA256,
            c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
        )
        try:
            return signer.sign(
                element,
                key=self._signing_key_pem,
                cert=self._signing_cert_pem,
                reference_uri=f"#{element_id}",
            )
        finally:
            if placeholder.getparent() is not None:
                placeholder.getparent().remove(placeholder)

    def verify_element(
        self,
        data: bytes,
        certificates: Sequence[x509.Certificate],
    ) -> etree._Element:
        """Verify the first XML signature in ``data`` against trusted certificates.

        Args:
            data: Serialized XML whose signature covers the root element.
            certificates: Trusted IdP signing certificates, tried in order.

        Returns:
            The element the signature actually covers, as returned by the
            verifier. Callers must read claims from this element only.

        Raises:
            SignatureInvalid: If no certificate verifies the signature.
        """
        if not certificates:
            raise SignatureInvalid("No trusted IdP certificate configured")

        last_error: Exception | None = None
        for cert in certificates:
            try:
                result = XMLVerifier().verify(
                    data,
                    x509_cert=certificate_pem(cert),
                )
            except (InvalidSignature, InvalidInput) as e:
                last_error = e
                continue
            logger.debug(f"Signature verified with certificate serial {cert.serial_number:x}")
            return result.signed_xml

        raise SignatureInvalid(f"XML signature verification failed: {last_error}")

    # -- HTTP-Redirect query signatures ---------------------------------------

    def sign_query(self, signed_octets: bytes) -> tuple[str, str]:
        """Sign redirect-binding octets; returns ``(SigAlg, base64 signature)``."""
        if self._signing_key is None:
            raise ValueError("No signing key configured")
        signature = self._signing_key.sign(signed_octets, padding.PKCS1v15(), hashes.SHA256())
        return SIG_ALG_RSA_SHA256, base64.b64encode(signature).decode("ascii")

    def verify_query(
        self,
        signed_octets: bytes,
        signature_b64: str,
        sig_alg: str,
        certificates: Sequence[x509.Certificate],
    ) -> None:
        """Verify a redirect-binding query signature.

        Raises:
            SignatureInvalid: On unsupported algorithm or bad signature.
        """
        hash_cls = QUERY_SIGNATURE_HASHES.get(sig_alg)
        if hash_cls is None:
            raise SignatureInvalid(f"Unsupported SigAlg: {sig_alg}")
        try:
            signature = base64.b64decode(signature_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SignatureInvalid(f"Signature is not valid base64: {e}") from e

        for cert in certificates:
            public_key = cert.public_key()
            if not isinstance(public_key, rsa.RSAPublicKey):
                continue
            try:
                public_key.verify(signature, signed_octets, padding.PKCS1v15(), hash_cls())
            except CryptoInvalidSignature:
                continue
            return
        raise SignatureInvalid("Query string signature did not verify against any IdP certificate")

    # -- XML-ENC ------------------------------------------------------------

    def decrypt_element(self, wrapper: etree._Element) -> etree._Element:
        """Decrypt an ``EncryptedAssertion``, ``EncryptedID`` or ``EncryptedAttribute``.

        xmlsec replaces the ``EncryptedData`` child of ``wrapper`` with the
        plaintext element, which is parsed in the namespace context of
        ``wrapper``. Only RSA-OAEP key transport and AES-CBC / AES-GCM
        content encryption are accepted.

        Returns:
            The decrypted element, now a child of ``wrapper``.

        Raises:
            DecryptionFailed: If no key is configured, an algorithm is not
                accepted or xmlsec cannot decrypt the data.
            MalformedMessage: If the plaintext is not a single XML element.
        """
        if self._decryption_key_pem is None:
            raise DecryptionFailed("Encrypted element received but no SP decryption key is configured")

        encrypted_data = wrapper.find(_xenc("EncryptedData"))
        if encrypted_data is None:
            raise DecryptionFailed("EncryptedData element not found")
        _check_algorithm(encrypted_data, BLOCK_CIPHERS, "data encryption")
        for encrypted_key in wrapper.iter(_xenc("EncryptedKey")):
            _check_algorithm(encrypted_key, KEY_TRANSPORTS, "key transport")
        _attach_sibling_key(wrapper, encrypted_data)

        manager = xmlsec.KeysManager()
        try:
            manager.add_key(xmlsec.Key.from_memory(self._decryption_key_pem, xmlsec.KeyFormat.PEM, None))
            xmlsec.tree.add_ids(wrapper, ["Id"])
            decrypted = xmlsec.EncryptionContext(manager).decrypt(encrypted_data)
        except xmlsec.Error as e:
            raise DecryptionFailed(f"XML decryption failed: {e}") from e

        if not isinstance(decrypted, etree._Element):
            raise MalformedMessage("Encrypted content is not an XML element")
        etree.strip_tags(decrypted, etree.Comment, etree.ProcessingInstruction)
        return decrypted


def _check_algorithm(element: etree._Element, accepted: Sequence[str], purpose: str) -> None:
    method = element.find(_xenc("EncryptionMethod"))
    algorithm = method.get("Algorithm") if method is not None else None
    if algorithm not in accepted:
        raise DecryptionFailed(f"Unsupported {purpose} algorithm: {algorithm}")


def _attach_sibling_key(wrapper: etree._Element, encrypted_data: etree._Element) -> None:
    """Copy an ``EncryptedKey`` that sits beside ``EncryptedData`` into its KeyInfo.

    Some IdPs place the key next to the data without a RetrievalMethod,
    where xmlsec does not look for it.
    """
    key_info = encrypted_data.find(f"{{{DS_NS}}}KeyInfo")
    if key_info is not None and len(key_info):
        return
    sibling = wrapper.find(_xenc("EncryptedKey"))
    if sibling is None:
        return
    if key_info is None:
        key_info = etree.Element(f"{{{DS_NS}}}KeyInfo")
        method = encrypted_data.find(_xenc("EncryptionMethod"))
        if method is not None:
            method.addnext(key_info)
        else:
            encrypted_data.insert(0, key_info)
    key_info.append(deepcopy(sibling))
