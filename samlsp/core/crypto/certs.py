"""SP key pairs and IdP certificates.

SAML peers pin certificates directly instead of validating a chain, so the
SP uses long-lived self-signed certificates. This module generates them,
reads and writes PEM files, and reads IdP certificates in either PEM or the
bare base64 form copied out of metadata.
"""

from __future__ import annotations

import base64
import os
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

DEFAULT_CERT_DIR = Path.home() / ".samlsp" / "certs"

RSA_KEY_BITS = 2048
CERT_LIFETIME_DAYS = 3650

# Backdating absorbs clock drift on the IdP
NOT_BEFORE_SLACK = timedelta(minutes=5)


class CertificateError(Exception):
    """Key or certificate material is missing or unusable."""


class CertificateLoadError(CertificateError):
    pass


class KeyLoadError(CertificateError):
    pass


@dataclass(frozen=True)
class CertificateInfo:
    """Human-facing summary of a certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint_sha256: str
    is_self_signed: bool
    key_type: str
    key_size: int

    @classmethod
    def from_certificate(cls, cert: x509.Certificate) -> CertificateInfo:
        public_key = cert.public_key()
        rsa_key = isinstance(public_key, rsa.RSAPublicKey)
        return cls(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial_number=f"{cert.serial_number:x}",
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
            is_self_signed=cert.subject == cert.issuer,
            key_type="RSA" if rsa_key else type(public_key).__name__,
            key_size=public_key.key_size if rsa_key else 0,
        )

    def to_dict(self) -> dict[str, str | int | bool]:
        data = asdict(self)
        data["not_before"] = self.not_before.isoformat()
        data["not_after"] = self.not_after.isoformat()
        return data


def generate_private_key(key_size: int = RSA_KEY_BITS) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_self_signed_certificate(
    private_key: rsa.RSAPrivateKey,
    common_name: str = "samlsp",
    organization: str = "SAML Service Provider",
    days_valid: int = CERT_LIFETIME_DAYS,
) -> x509.Certificate:
    """Issue a self-signed certificate usable for both signing and key transport.

    Args:
        private_key: Key that is certified and signs the certificate.
        common_name: Subject CN, usually the SP host name.
        organization: Subject O.
        days_valid: Lifetime counted from now.
    """
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )
    usage = dict.fromkeys(
        (
            "content_commitment",
            "data_encipherment",
            "key_agreement",
            "key_cert_sign",
            "crl_sign",
            "encipher_only",
            "decipher_only",
        ),
        False,
    )
    issued = datetime.now(UTC)

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued - NOT_BEFORE_SLACK)
        .not_valid_after(issued + timedelta(days=days_valid))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(digital_signature=True, key_encipherment=True, **usage), critical=True)
    )
    return builder.sign(private_key, hashes.SHA256())


def private_key_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Unencrypted PKCS#8 PEM."""
    raw = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return raw.decode("ascii")


def certificate_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def certificate_body(cert: x509.Certificate) -> str:
    """Base64 DER without PEM armour, the content of ``ds:X509Certificate``."""
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")


def save_private_key(private_key: rsa.RSAPrivateKey, path: Path) -> None:
    """Write the key as PEM, readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as fh:
        fh.write(private_key_pem(private_key))
    # O_CREAT leaves the mode of an existing file alone
    path.chmod(0o600)


def save_certificate(cert: x509.Certificate, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(certificate_pem(cert), encoding="ascii")


def load_private_key_pem(pem_data: bytes, password: bytes | None = None) -> rsa.RSAPrivateKey:
    """Parse an RSA private key.

    Raises:
        KeyLoadError: The data is not a PEM private key, or the key is not RSA.
    """
    try:
        key = serialization.load_pem_private_key(pem_data, password=password)
    except (ValueError, TypeError) as e:
        raise KeyLoadError(f"not a usable PEM private key ({e})") from e
    if isinstance(key, rsa.RSAPrivateKey):
        return key
    raise KeyLoadError(f"only RSA keys are supported, got {type(key).__name__}")


def load_certificate_pem(data: bytes) -> x509.Certificate:
    """Parse a certificate given as PEM or as bare base64 DER.

    Raises:
        CertificateLoadError: The data is neither.
    """
    try:
        if b"-----BEGIN" in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(base64.b64decode(b"".join(data.split()), validate=True))
    except ValueError as e:
        raise CertificateLoadError(f"not a usable certificate ({e})") from e


def _read(path: Path, error: type[CertificateError]) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise error(f"cannot read {path}: {e.strerror or e}") from e


def load_private_key(path: Path, password: bytes | None = None) -> rsa.RSAPrivateKey:
    """Read an RSA private key from a PEM file.

    Raises:
        KeyLoadError: The file is missing, unreadable or not an RSA key.
    """
    try:
        return load_private_key_pem(_read(path, KeyLoadError), password)
    except KeyLoadError as e:
        raise KeyLoadError(f"{path}: {e}") from e


def load_certificate(path: Path) -> x509.Certificate:
    """Read a certificate file, PEM or bare base64.

    Raises:
        CertificateLoadError: The file is missing, unreadable or not a certificate.
    """
    try:
        return load_certificate_pem(_read(path, CertificateLoadError))
    except CertificateLoadError as e:
        raise CertificateLoadError(f"{path}: {e}") from e


def keypair_matches(private_key: rsa.RSAPrivateKey, cert: x509.Certificate) -> bool:
    """True if ``cert`` certifies the public half of ``private_key``."""
    cert_key = cert.public_key()
    return (
        isinstance(cert_key, rsa.RSAPublicKey)
        and cert_key.public_numbers() == private_key.public_key().public_numbers()
    )


def get_certificate_info(cert: x509.Certificate) -> CertificateInfo:
    return CertificateInfo.from_certificate(cert)


def is_certificate_valid(cert: x509.Certificate, at: datetime | None = None) -> bool:
    """True if ``at`` (default now) lies within the certificate's validity window."""
    moment = at or datetime.now(UTC)
    return cert.not_valid_before_utc <= moment <= cert.not_valid_after_utc
