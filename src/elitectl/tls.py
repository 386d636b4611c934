"""Self-signed TLS bundle for HTTPS deployments."""
from __future__ import annotations

import ipaddress
import os
import socket
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

CERT_FILENAME = "cert.pem"
KEY_FILENAME = "key.pem"
CA_FILENAME = "ca.pem"
KEY_SIZE = 2048
VALIDITY_DAYS = 1825
WARN_EXPIRY_DAYS = 30


class CertificateError(RuntimeError):
    """Raised when the TLS bundle cannot be generated or read."""


class CertificateSeverity(Enum):
    """Severity of a certificate check."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class CertificateFinding:
    """Outcome of one certificate check."""

    check: str
    severity: CertificateSeverity
    message: str


@dataclass(frozen=True)
class CertificateReport:
    """Summary of the installed certificate."""

    path: Path
    subject: str
    names: tuple[str, ...]
    not_valid_before: datetime
    not_valid_after: datetime
    findings: tuple[CertificateFinding, ...]

    @property
    def status(self) -> CertificateSeverity:
        """Return the worst severity among the findings."""
        severities = {finding.severity for finding in self.findings}
        if CertificateSeverity.ERROR in severities:
            return CertificateSeverity.ERROR
        if CertificateSeverity.WARNING in severities:
            return CertificateSeverity.WARNING
        return CertificateSeverity.OK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "path": str(self.path),
            "subject": self.subject,
            "names": list(self.names),
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
            "status": self.status.value,
            "findings": [
                {"check": f.check, "severity": f.severity.value, "message": f.message}
                for f in self.findings
            ],
        }


def detect_host_address() -> str | None:
    """Return the host's primary IPv4 address, or None when offline.

    Connecting a UDP socket only selects a route; no packet is sent.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("192.0.2.1", 80))
            address = probe.getsockname()[0]
    except OSError:
        return None
    if not address or address.startswith("127."):
        return None
    return str(address)


def subject_alt_names(
    domain: str,
    extra_domains: list[str] | tuple[str, ...] = (),
    host_address: str | None = None,
) -> list[x509.GeneralName]:
    """Return SAN entries covering localhost, *domain*, its wildcard and extras."""
    dns_names = ["localhost"]
    if domain != "localhost":
        dns_names.extend([f"*.{domain}", domain])
    addresses = ["127.0.0.1"]
    if host_address:
        addresses.append(host_address)
    for extra in extra_domains:
        try:
            ipaddress.ip_address(extra)
        except ValueError:
            dns_names.append(extra)
        else:
            addresses.append(extra)

    names: list[x509.GeneralName] = []
    for name in dict.fromkeys(dns_names):
        names.append(x509.DNSName(name))
    for address in dict.fromkeys(addresses):
        names.append(x509.IPAddress(ipaddress.ip_address(address)))
    return names


class CertificateManager:
    """Generate and inspect the bundle in ``certs_dir``."""

    def __init__(self, certs_dir: Path) -> None:
        """Remember where the bundle lives."""
        self.certs_dir = certs_dir

    @property
    def cert_path(self) -> Path:
        """Return the certificate path."""
        return self.certs_dir / CERT_FILENAME

    @property
    def key_path(self) -> Path:
        """Return the private key path."""
        return self.certs_dir / KEY_FILENAME

    @property
    def ca_path(self) -> Path:
        """Return the CA copy handed to clients."""
        return self.certs_dir / CA_FILENAME

    def exists(self) -> bool:
        """Return True when both certificate and key are present."""
        return self.cert_path.exists() and self.key_path.exists()

    def ensure(self, domain: str, extra_domains: list[str] | tuple[str, ...] = ()) -> bool:
        """Generate the bundle when it is missing; return True when generated."""
        if self.exists():
            return False
        self.generate(domain, extra_domains)
        return True

    def generate(
        self,
        domain: str,
        extra_domains: list[str] | tuple[str, ...] = (),
        *,
        host_address: str | None = None,
        now: datetime | None = None,
    ) -> Path:
        """Write a fresh self-signed certificate, key and CA copy."""
        now = now or datetime.now(UTC)
        if host_address is None:
            host_address = detect_host_address()

        key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
        name = x509.Name(
            [
                x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
                x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "Development"),
                x509.NameAttribute(NameOID.LOCALITY_NAME, "Local"),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Rediacc"),
                x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "Elite Standalone"),
                x509.NameAttribute(NameOID.COMMON_NAME, domain),
            ]
        )
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=VALIDITY_DAYS))
            .add_extension(
                x509.SubjectAlternativeName(
                    subject_alt_names(domain, extra_domains, host_address)
                ),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )

        cert_bytes = certificate.public_bytes(serialization.Encoding.PEM)
        key_bytes = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        try:
            self.certs_dir.mkdir(parents=True, exist_ok=True)
            _write_bytes(self.key_path, key_bytes, 0o600)
            _write_bytes(self.cert_path, cert_bytes, 0o644)
            _write_bytes(self.ca_path, cert_bytes, 0o644)
        except OSError as exc:
            raise CertificateError(f"Failed to write TLS bundle to {self.certs_dir}: {exc}") from exc
        return self.cert_path

    def inspect(self, *, now: datetime | None = None) -> CertificateReport:
        """Return subject, names, validity and findings for the installed certificate."""
        now = now or datetime.now(UTC)
        if not self.cert_path.exists():
            raise CertificateError(f"Certificate not found: {self.cert_path}")
        try:
            certificate = _load_certificate(self.cert_path)
        except ValueError as exc:
            raise CertificateError(f"Failed to parse certificate {self.cert_path}: {exc}") from exc

        findings: list[CertificateFinding] = []
        not_before = certificate.not_valid_before_utc
        not_after = certificate.not_valid_after_utc
        if not_after <= now:
            findings.append(
                CertificateFinding(
                    check="expiry",
                    severity=CertificateSeverity.ERROR,
                    message=f"Certificate expired on {not_after.isoformat()}",
                )
            )
        else:
            days_remaining = (not_after - now).days
            if days_remaining < WARN_EXPIRY_DAYS:
                findings.append(
                    CertificateFinding(
                        check="expiry",
                        severity=CertificateSeverity.WARNING,
                        message=(
                            "Certificate expires soon "
                            f"({not_after.isoformat()}, {days_remaining} day(s) remaining)"
                        ),
                    )
                )
            else:
                findings.append(
                    CertificateFinding(
                        check="expiry",
                        severity=CertificateSeverity.OK,
                        message=f"Certificate valid until {not_after.isoformat()}",
                    )
                )

        if self.key_path.exists():
            try:
                private_key = serialization.load_pem_private_key(
                    self.key_path.read_bytes(), password=None
                )
            except (ValueError, TypeError) as exc:
                findings.append(
                    CertificateFinding(
                        check="key",
                        severity=CertificateSeverity.ERROR,
                        message=f"Failed to parse private key: {exc}",
                    )
                )
            else:
                matches = _public_keys_match(certificate, private_key.public_key())
                findings.append(
                    CertificateFinding(
                        check="key",
                        severity=CertificateSeverity.OK if matches else CertificateSeverity.ERROR,
                        message=(
                            "Certificate and key match."
                            if matches
                            else "Certificate does not match the private key."
                        ),
                    )
                )
        else:
            findings.append(
                CertificateFinding(
                    check="key",
                    severity=CertificateSeverity.ERROR,
                    message=f"Private key not found: {self.key_path}",
                )
            )

        return CertificateReport(
            path=self.cert_path,
            subject=certificate.subject.rfc4514_string(),
            names=tuple(_names(certificate)),
            not_valid_before=not_before,
            not_valid_after=not_after,
            findings=tuple(findings),
        )

    def destroy(self) -> bool:
        """Remove the bundle files; return True when anything was deleted."""
        removed = False
        for path in (self.cert_path, self.key_path, self.ca_path):
            if path.exists():
                path.unlink()
                removed = True
        return removed


def _write_bytes(path: Path, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, mode)


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _names(certificate: x509.Certificate) -> list[str]:
    try:
        extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    names = [str(name) for name in extension.value.get_values_for_type(x509.DNSName)]
    names.extend(str(ip) for ip in extension.value.get_values_for_type(x509.IPAddress))
    return names


def _public_keys_match(certificate: x509.Certificate, public_key: object) -> bool:
    cert_bytes = certificate.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = public_key.public_bytes(  # type: ignore[attr-defined]
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "CertificateError",
    "CertificateFinding",
    "CertificateManager",
    "CertificateReport",
    "CertificateSeverity",
    "detect_host_address",
    "subject_alt_names",
]
