"""
Certificate Store Cache — holds the Active Certificate Handle.

The handle is an immutable object; publishing a renewal swaps one reference.
TLS handshake threads read that reference without taking any lock, so a
reader sees either the previous handle or the new one, never a mix.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from acmeclient import crypto
from acmeclient.crypto import DomainKey
from errors import NoCertificateAvailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificateMetadata:
    not_before: datetime
    not_after: datetime
    domains: tuple[str, ...]


@dataclass(frozen=True)
class ActiveCertificate:
    """Parsed CertificateRecord: the bytes as stored plus what TLS needs."""

    pfx: bytes
    certificate: x509.Certificate = field(repr=False)
    private_key: DomainKey = field(repr=False)
    chain: tuple[x509.Certificate, ...] = field(repr=False)
    metadata: CertificateMetadata

    @classmethod
    def from_pfx(cls, data: bytes, password: str = "") -> "ActiveCertificate":
        bundle = crypto.load_pfx(data, password)
        cert = bundle.cert.certificate
        return cls(
            pfx=bytes(data),
            certificate=cert,
            private_key=bundle.key,
            chain=tuple(c.certificate for c in bundle.additional_certs),
            metadata=CertificateMetadata(
                not_before=cert.not_valid_before_utc,
                not_after=cert.not_valid_after_utc,
                domains=crypto.certificate_domains(cert),
            ),
        )

    @property
    def domains(self) -> tuple[str, ...]:
        return self.metadata.domains

    @property
    def not_after(self) -> datetime:
        return self.metadata.not_after

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(tz=timezone.utc)) >= self.metadata.not_after

    def fullchain_pem(self) -> bytes:
        """Leaf + intermediates, for listeners that load PEM files."""
        certs = (self.certificate,) + self.chain
        return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)

    def private_key_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


class CertificateCache:
    """Single-slot holder of the current ActiveCertificate."""

    def __init__(self) -> None:
        self._current: Optional[ActiveCertificate] = None
        # serializes publishers only; readers never take it
        self._publish_lock = threading.Lock()

    def current(self) -> Optional[ActiveCertificate]:
        """Non-blocking read for the handshake path; None before first issuance."""
        return self._current

    def require(self) -> ActiveCertificate:
        """Like current() but fails closed: raises when nothing was issued yet."""
        handle = self._current
        if handle is None:
            raise NoCertificateAvailable("no certificate has been issued yet")
        return handle

    def publish(self, handle: ActiveCertificate) -> None:
        if not isinstance(handle, ActiveCertificate):
            raise TypeError(f"expected ActiveCertificate, got {type(handle).__name__}")
        with self._publish_lock:
            previous = self._current
            self._current = handle
        logger.info(
            "Published certificate for %s (valid until %s)%s",
            ", ".join(handle.domains),
            handle.not_after.isoformat(),
            "" if previous is None else f", replacing one valid until {previous.not_after.isoformat()}",
        )
