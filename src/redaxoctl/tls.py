"""Locally-trusted certificate provisioning for instances.

Certificates are issued by mkcert for ``<name>.local``, its ``www.`` alias,
``localhost`` and the loopback address. A missing mkcert binary is not an
error: :meth:`CertificateProvisioner.issue` returns ``None`` and the instance
simply runs without TLS. Issued material is re-read with ``cryptography`` and
checked before it is handed to the web container.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .providers.mkcert import MkcertError, MkcertProvider

LOGGER = logging.getLogger(__name__)

CA_MARKER_NAME = "mkcert-ca.installed"


class CertificateError(RuntimeError):
    """Raised when certificate issuance or validation fails."""


class TLSValidationSeverity(Enum):
    """Validation severities for TLS checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSValidationFinding:
    """Individual validation check outcome."""

    check: str
    severity: TLSValidationSeverity
    message: str


@dataclass(frozen=True)
class TLSValidationReport:
    """Aggregate validation results for an issued certificate."""

    certificate: Path
    key: Path
    findings: tuple[TLSValidationFinding, ...]
    not_valid_after: datetime | None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is TLSValidationSeverity.ERROR for f in self.findings)

    @property
    def warnings(self) -> list[str]:
        """Messages of warning findings."""
        return [f.message for f in self.findings if f.severity is TLSValidationSeverity.WARNING]

    @property
    def errors(self) -> list[str]:
        """Messages of error findings."""
        return [f.message for f in self.findings if f.severity is TLSValidationSeverity.ERROR]


@dataclass(frozen=True)
class IssuedCertificate:
    """Certificate and key files produced for an instance."""

    cert_path: Path
    key_path: Path
    domains: tuple[str, ...]
    not_valid_after: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cert_path": str(self.cert_path),
            "key_path": str(self.key_path),
            "domains": list(self.domains),
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


def certificate_domains(name: str) -> tuple[str, ...]:
    """Return the names a certificate for instance *name* must cover."""
    domain = f"{name}.local"
    return (domain, f"www.{domain}", "localhost", "127.0.0.1")


def certificate_paths(name: str, ssl_dir: Path) -> tuple[Path, Path]:
    """Return the certificate and key file paths for *name* under *ssl_dir*."""
    return ssl_dir / f"{name}.pem", ssl_dir / f"{name}-key.pem"


class CertificateValidator:
    """Check issued material: parse, key match, SAN coverage and expiry."""

    def __init__(self, warn_expiry_days: int = 30) -> None:
        """Capture the expiry warning threshold in days."""
        self._warn_expiry_days = warn_expiry_days

    def validate(
        self,
        cert_path: Path,
        key_path: Path,
        domains: Sequence[str],
        *,
        now: datetime | None = None,
    ) -> TLSValidationReport:
        """Validate the certificate/key pair and return a report."""
        now = now or datetime.now(UTC)
        findings: list[TLSValidationFinding] = []
        not_after: datetime | None = None

        try:
            cert_obj = _load_certificate(cert_path)
            key_obj = _load_private_key(key_path)
        except (OSError, ValueError, TypeError) as exc:
            findings.append(
                TLSValidationFinding(
                    "parse", TLSValidationSeverity.ERROR, f"Unreadable material: {exc}"
                )
            )
            return TLSValidationReport(cert_path, key_path, tuple(findings), None)

        if _public_keys_match(cert_obj, key_obj):
            findings.append(
                TLSValidationFinding(
                    "match", TLSValidationSeverity.OK, "Certificate and key match."
                )
            )
        else:
            findings.append(
                TLSValidationFinding(
                    "match",
                    TLSValidationSeverity.ERROR,
                    "Certificate does not match the provided key.",
                )
            )

        missing = sorted(set(domains) - _subject_alt_names(cert_obj))
        if missing:
            findings.append(
                TLSValidationFinding(
                    "san",
                    TLSValidationSeverity.ERROR,
                    f"Certificate does not cover: {', '.join(missing)}",
                )
            )
        else:
            findings.append(
                TLSValidationFinding("san", TLSValidationSeverity.OK, "All names covered.")
            )

        not_after = cert_obj.not_valid_after_utc
        if not_after <= now:
            findings.append(
                TLSValidationFinding(
                    "expiry",
                    TLSValidationSeverity.ERROR,
                    f"Certificate expired on {not_after.isoformat()}",
                )
            )
        else:
            days_remaining = (not_after - now).days
            severity = (
                TLSValidationSeverity.WARNING
                if days_remaining <= self._warn_expiry_days
                else TLSValidationSeverity.OK
            )
            findings.append(
                TLSValidationFinding(
                    "expiry",
                    severity,
                    f"Certificate valid until {not_after.isoformat()} ({days_remaining} day(s))",
                )
            )

        return TLSValidationReport(cert_path, key_path, tuple(findings), not_after)


class CertificateProvisioner:
    """Issue and validate per-instance certificates, and install the local CA once."""

    def __init__(
        self,
        mkcert: MkcertProvider,
        validator: CertificateValidator,
        runtime_dir: Path,
    ) -> None:
        """Wire the mkcert collaborator, validator and marker directory."""
        self.mkcert = mkcert
        self.validator = validator
        self.runtime_dir = runtime_dir

    @property
    def ca_marker(self) -> Path:
        """Marker file recording a completed CA installation."""
        return self.runtime_dir / CA_MARKER_NAME

    def available(self) -> bool:
        """Return ``True`` when certificates can be issued."""
        return self.mkcert.available()

    def issue(self, name: str, ssl_dir: Path) -> IssuedCertificate | None:
        """Issue a certificate for instance *name*; ``None`` when mkcert is missing."""
        if not self.mkcert.available():
            LOGGER.warning("mkcert not installed; TLS unavailable for %s", name)
            return None

        domains = certificate_domains(name)
        cert_path, key_path = certificate_paths(name, ssl_dir)
        try:
            self.mkcert.issue(domains, cert_path, key_path)
        except MkcertError as exc:
            raise CertificateError(f"Certificate issuance for {name} failed: {exc}") from exc

        report = self.validator.validate(cert_path, key_path, domains)
        if report.has_errors:
            raise CertificateError(
                f"Issued certificate for {name} is invalid: {'; '.join(report.errors)}"
            )
        for message in report.warnings:
            LOGGER.warning("certificate for %s: %s", name, message)
        return IssuedCertificate(
            cert_path=cert_path,
            key_path=key_path,
            domains=domains,
            not_valid_after=report.not_valid_after,
        )

    def ensure_ca_installed(self) -> bool:
        """Install the mkcert CA once per host; return ``True`` if it ran now."""
        if self.ca_marker.exists():
            return False
        if not self.mkcert.available():
            return False
        try:
            self.mkcert.install_ca()
        except MkcertError as exc:
            raise CertificateError(f"Installing the local CA failed: {exc}") from exc
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        self.ca_marker.write_text(datetime.now(UTC).isoformat() + "\n", encoding="utf-8")
        return True


def _subject_alt_names(cert: x509.Certificate) -> set[str]:
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return set()
    names: set[str] = set(extension.value.get_values_for_type(x509.DNSName))
    names.update(str(address) for address in extension.value.get_values_for_type(x509.IPAddress))
    return names


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "CA_MARKER_NAME",
    "CertificateError",
    "CertificateProvisioner",
    "CertificateValidator",
    "IssuedCertificate",
    "TLSValidationFinding",
    "TLSValidationReport",
    "TLSValidationSeverity",
    "certificate_domains",
    "certificate_paths",
]
