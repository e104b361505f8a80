"""
Certificate lifecycle data types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from cryptography import x509
from cryptography.hazmat.primitives import serialization


class CertificateState(str, Enum):
    """Per-domain certificate state."""

    UNINITIALIZED = "uninitialized"
    PENDING = "pending"
    VALID = "valid"
    RENEWING = "renewing"
    FAILED = "failed"


@dataclass(frozen=True)
class IssuedCertificate:
    """PEM material returned by an issuer."""

    cert_chain: bytes = field(repr=False)
    private_key: bytes = field(repr=False)


@dataclass(frozen=True)
class CertificateEntry:
    """A certificate chain and its key for one domain."""

    domain: str
    cert_chain: bytes = field(repr=False)
    private_key: bytes = field(repr=False)
    not_after: datetime

    @classmethod
    def from_pem(cls, domain: str, cert_chain: bytes, private_key: bytes) -> "CertificateEntry":
        """Build an entry, reading ``not_after`` from the leaf certificate."""
        leaf = x509.load_pem_x509_certificate(cert_chain)
        return cls(
            domain=domain,
            cert_chain=cert_chain,
            private_key=private_key,
            not_after=leaf.not_valid_after_utc,
        )

    @classmethod
    def from_bundle(cls, domain: str, bundle: bytes) -> "CertificateEntry":
        """Split a key-plus-chain PEM bundle into an entry.

        Raises ValueError when the bundle lacks a key or a certificate.
        """
        key = serialization.load_pem_private_key(bundle, password=None)
        certificates = x509.load_pem_x509_certificates(bundle)
        return cls.from_pem(
            domain,
            b"".join(cert.public_bytes(serialization.Encoding.PEM) for cert in certificates),
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ),
        )

    def to_bundle(self) -> bytes:
        """Key followed by the chain; loadable by ``SSLContext.load_cert_chain``."""
        key = self.private_key if self.private_key.endswith(b"\n") else self.private_key + b"\n"
        return key + self.cert_chain

    def is_expired(self, now: datetime) -> bool:
        return now >= self.not_after

    def needs_renewal(self, now: datetime, renew_before: timedelta) -> bool:
        return now > self.not_after - renew_before


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
