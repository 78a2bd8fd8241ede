"""Management certificate storage and resolution.

Certificates are referenced everywhere else by thumbprint (upper-case hex
SHA-1 of the DER encoding). The file store keeps one PEM file per
certificate, holding the certificate and its unencrypted private key, so that
the HTTP transport can present it as a client certificate. Two scopes are
consulted in order: the user scope (under the settings directory) and the
machine scope. New certificates are only ever written to the user scope.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12

logger = logging.getLogger(__name__)

CERTIFICATE_FILE_SUFFIX = ".pem"


class CertificateError(Exception):
    """Raised when certificate material cannot be loaded or stored."""

    pass


@dataclass(frozen=True)
class Certificate:
    """A resolved management certificate."""

    thumbprint: str
    subject: str
    path: Path | None = None
    not_valid_after: str | None = None


def compute_thumbprint(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA1()).hex().upper()  # noqa: S303


def normalize_thumbprint(thumbprint: str) -> str:
    return thumbprint.replace(" ", "").replace(":", "").upper()


def load_pkcs12(data: bytes, password: str | bytes | None = None) -> tuple[object, x509.Certificate]:
    """Load the private key and certificate from a PKCS#12 blob.

    Publish-settings certificates carry no password; depending on the tool
    that produced them, that is either no encryption or an empty password, so
    both are tried when no password is given.

    Raises:
        CertificateError: If the blob cannot be decoded or holds no certificate.
    """
    if isinstance(password, str):
        password = password.encode("utf-8")
    candidates = [password] if password else [None, b""]

    last_error: Exception | None = None
    for candidate in candidates:
        try:
            key, cert, _ = pkcs12.load_key_and_certificates(data, candidate)
        except ValueError as e:
            last_error = e
            continue
        if cert is None:
            raise CertificateError("PKCS#12 data does not contain a certificate")
        return key, cert

    raise CertificateError(f"Failed to load PKCS#12 certificate: {last_error}") from last_error


class CredentialResolver(Protocol):
    """Keyed-by-thumbprint certificate store."""

    def store(self, data: bytes, password: str | bytes | None = None) -> str:
        """Install PKCS#12 certificate material and return its thumbprint."""
        ...

    def resolve(self, thumbprint: str) -> Certificate | None:
        """Find a certificate by thumbprint, or None if no scope has it."""
        ...

    def remove(self, thumbprint: str) -> bool:
        """Remove a certificate from the writable scope. Returns whether it existed."""
        ...


class FileCertificateStore:
    """File-backed CredentialResolver with a user and an optional machine scope."""

    def __init__(self, user_dir: Path, machine_dir: Path | None = None) -> None:
        self.user_dir = user_dir
        self.machine_dir = machine_dir

    @property
    def scopes(self) -> list[Path]:
        dirs = [self.user_dir]
        if self.machine_dir is not None:
            dirs.append(self.machine_dir)
        return dirs

    def _path_in(self, scope: Path, thumbprint: str) -> Path:
        return scope / f"{normalize_thumbprint(thumbprint)}{CERTIFICATE_FILE_SUFFIX}"

    def store(self, data: bytes, password: str | bytes | None = None) -> str:
        key, cert = load_pkcs12(data, password)
        thumbprint = compute_thumbprint(cert)

        pem = cert.public_bytes(serialization.Encoding.PEM)
        if key is not None:
            pem = (
                key.private_bytes(  # type: ignore[attr-defined]
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                )
                + pem
            )
        else:
            logger.warning(
                "Certificate has no private key; it cannot authenticate requests",
                extra={"thumbprint": thumbprint},
            )

        self.user_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        path = self._path_in(self.user_dir, thumbprint)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(pem)
        except OSError as e:
            raise CertificateError(f"Failed to write certificate {thumbprint} to {path}: {e}") from e

        logger.info("Installed management certificate", extra={"thumbprint": thumbprint})
        return thumbprint

    def resolve(self, thumbprint: str) -> Certificate | None:
        for scope in self.scopes:
            path = self._path_in(scope, thumbprint)
            if not path.is_file():
                continue
            try:
                cert = x509.load_pem_x509_certificate(path.read_bytes())
            except (OSError, ValueError) as e:
                logger.warning(
                    "Skipping unreadable certificate file",
                    extra={"path": str(path), "error": str(e)},
                )
                continue
            return Certificate(
                thumbprint=compute_thumbprint(cert),
                subject=cert.subject.rfc4514_string(),
                path=path,
                not_valid_after=cert.not_valid_after_utc.isoformat(),
            )
        return None

    def remove(self, thumbprint: str) -> bool:
        path = self._path_in(self.user_dir, thumbprint)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Removed management certificate", extra={"thumbprint": normalize_thumbprint(thumbprint)})
        return True
