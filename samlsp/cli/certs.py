"""SP key pair CLI commands."""

from __future__ import annotations

from pathlib import Path

import click

TIME_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


@click.group()
def certs() -> None:
    """Create and inspect SP key pairs.

    The signing pair signs outgoing AuthnRequests and LogoutRequests; the
    decryption pair unwraps EncryptedAssertions. Both certificates appear
    in the SP metadata.
    """


@certs.command("generate")
@click.option(
    "--purpose",
    type=click.Choice(["signing", "decryption"]),
    default="signing",
    show_default=True,
    help="Role of the key pair; also names the files.",
)
@click.option("--common-name", "-cn", default="samlsp", show_default=True, help="Certificate subject CN.")
@click.option("--days", "-d", type=int, default=3650, show_default=True, help="Certificate lifetime.")
@click.option(
    "--output",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),  # type: ignore[type-var]
    help="Directory for <purpose>.crt and <purpose>.key (default: ~/.samlsp/certs).",
)
@click.option("--force", "-f", is_flag=True, help="Replace existing files.")
def certs_generate(purpose: str, common_name: str, days: int, output: Path | None, force: bool) -> None:
    """Write a new RSA key and self-signed certificate.

    Point saml.signing_key_path / saml.signing_cert_path (or the decryption
    equivalents) at the written files.

    Example:

        samlsp certs generate --purpose decryption -cn sp.example.com
    """
    from samlsp.core.crypto.certs import (
        DEFAULT_CERT_DIR,
        CertificateInfo,
        generate_private_key,
        generate_self_signed_certificate,
        save_certificate,
        save_private_key,
    )

    directory = output or DEFAULT_CERT_DIR
    key_path, cert_path = directory / f"{purpose}.key", directory / f"{purpose}.crt"
    existing = [p for p in (key_path, cert_path) if p.exists()]
    if existing and not force:
        raise click.ClickException(f"{existing[0]} already exists; pass --force to replace it")

    key = generate_private_key()
    cert = generate_self_signed_certificate(key, common_name=common_name, days_valid=days)
    save_private_key(key, key_path)
    save_certificate(cert, cert_path)

    info = CertificateInfo.from_certificate(cert)
    click.echo(f"Wrote {purpose} key pair for {info.subject}")
    click.echo(f"  key:         {key_path}")
    click.echo(f"  certificate: {cert_path}")
    click.echo(f"  expires:     {info.not_after.strftime(TIME_FORMAT)}")
    click.echo(f"  sha256:      {info.fingerprint_sha256}")


@certs.command("info")
@click.argument("cert_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))  # type: ignore[type-var]
def certs_info(cert_path: Path) -> None:
    """Describe a certificate file (PEM or bare base64)."""
    from samlsp.core.crypto.certs import CertificateInfo, CertificateLoadError, is_certificate_valid, load_certificate

    try:
        cert = load_certificate(cert_path)
    except CertificateLoadError as e:
        raise click.ClickException(str(e)) from None

    info = CertificateInfo.from_certificate(cert)
    rows = [
        ("Subject", info.subject),
        ("Issuer", "(self-signed)" if info.is_self_signed else info.issuer),
        ("Serial", info.serial_number),
        ("Valid from", info.not_before.strftime(TIME_FORMAT)),
        ("Valid until", info.not_after.strftime(TIME_FORMAT)),
        ("Key", f"{info.key_type} {info.key_size} bits"),
        ("SHA-256", info.fingerprint_sha256),
    ]
    click.echo(str(cert_path))
    for label, value in rows:
        click.echo(f"  {label + ':':<13}{value}")

    valid = is_certificate_valid(cert)
    click.secho(f"  {'Status:':<13}{'VALID' if valid else 'EXPIRED'}", fg="green" if valid else "red")
