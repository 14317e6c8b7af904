"""
Error taxonomy for the renewal engine.

Every protocol stage has its own exception type so the orchestrator and the
lifecycle hooks can tell *where* an attempt died without parsing messages.
All of them derive from EngineError; none of them ever escapes a tick.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for all renewal engine failures."""


class ConfigurationInvalid(EngineError, ValueError):
    """Options are unusable (no domains, no renewal threshold, bad CSR field)."""


class StorageUnavailable(EngineError):
    """The backing medium of a store could not be reached."""

    def __init__(self, key: str, detail: str = "") -> None:
        self.key = key
        super().__init__(f"storage unavailable for key {key!r}: {detail}" if detail else
                         f"storage unavailable for key {key!r}")


class AccountRegistrationFailed(EngineError):
    """The ACME directory refused to register the account."""


class OrderRejected(EngineError):
    """newOrder was refused (malformed identifier, rate limit, ...)."""


class ChallengeValidationFailed(EngineError):
    """An HTTP-01 authorization ended invalid, expired, or timed out."""

    def __init__(self, domain: str, detail: str = "") -> None:
        self.domain = domain
        self.detail = detail
        super().__init__(f"challenge validation failed for {domain}: {detail}" if detail else
                         f"challenge validation failed for {domain}")


class FinalizationFailed(EngineError):
    """The CA did not turn the order valid after the CSR was submitted."""


class DownloadFailed(EngineError):
    """The issued chain could not be downloaded or bundled."""


class NoCertificateAvailable(EngineError):
    """Raised to fail a TLS handshake closed before the first issuance."""
