"""
ACME Session — one full issuance exchange for the configured domain set.

State machine (linear, no skipping, no going back):

  New
    → AccountReady           load or register the account
    → OrderCreated           POST /newOrder
    → ChallengesPublished    write every token, then tell the CA to validate
    → ChallengesValidated    poll authorizations; tokens are removed either way
    → OrderFinalized         submit the CSR, poll until the order is valid
    → CertificateDownloaded  fetch the chain, bundle it with the domain key
    → Complete

Any stage can end in Failed(reason); *reason* is the stage's own error type
from errors.py so the orchestrator can report exactly where it died.
Nothing is persisted except the account record and the short-lived
challenge tokens; the certificate bundle is only handed back in memory.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterator, Optional

import requests

from acmeclient import crypto
from acmeclient import jws as jwslib
from acmeclient.client import AcmeClient, AcmeError
from acmeclient.jws import AcmeAccount
from config import RenewalOptions
from errors import (
    AccountRegistrationFailed,
    ChallengeValidationFailed,
    DownloadFailed,
    EngineError,
    FinalizationFailed,
    OrderRejected,
)
from storage.base import ACCOUNT_KEY, KeyValueStore

logger = logging.getLogger(__name__)

_MAX_POLL_DELAY = 10.0

_AUTHZ_IN_PROGRESS = frozenset({"pending"})
_ORDER_IN_PROGRESS = frozenset({"pending", "ready", "processing"})


class SessionState(str, enum.Enum):
    NEW = "New"
    ACCOUNT_READY = "AccountReady"
    ORDER_CREATED = "OrderCreated"
    CHALLENGES_PUBLISHED = "ChallengesPublished"
    CHALLENGES_VALIDATED = "ChallengesValidated"
    ORDER_FINALIZED = "OrderFinalized"
    CERTIFICATE_DOWNLOADED = "CertificateDownloaded"
    COMPLETE = "Complete"
    FAILED = "Failed"


_ORDER = [
    SessionState.NEW,
    SessionState.ACCOUNT_READY,
    SessionState.ORDER_CREATED,
    SessionState.CHALLENGES_PUBLISHED,
    SessionState.CHALLENGES_VALIDATED,
    SessionState.ORDER_FINALIZED,
    SessionState.CERTIFICATE_DOWNLOADED,
    SessionState.COMPLETE,
]


@dataclass(frozen=True)
class _PendingChallenge:
    domain: str
    auth_url: str
    challenge_url: str
    token: str


class AcmeSession:
    """Single-use driver of one issuance; call run() exactly once."""

    def __init__(
        self,
        options: RenewalOptions,
        client: AcmeClient,
        cert_store: KeyValueStore,
        challenge_store: KeyValueStore,
        stop_event: threading.Event | None = None,
        poll_interval: float = 2.0,
        authz_timeout: float = 120.0,
        order_timeout: float = 120.0,
    ) -> None:
        self.options = options
        self.client = client
        self.cert_store = cert_store
        self.challenge_store = challenge_store
        self.poll_interval = poll_interval
        self.authz_timeout = authz_timeout
        self.order_timeout = order_timeout
        self._stop = stop_event or threading.Event()

        self.state = SessionState.NEW
        self.history: list[SessionState] = [SessionState.NEW]
        self.failure: Optional[Exception] = None

        self._account: Optional[AcmeAccount] = None
        self._order: dict = {}
        self._order_url = ""
        self._challenges: list[_PendingChallenge] = []
        self._published_tokens: list[str] = []
        self._domain_key: Optional[crypto.DomainKey] = None
        self._certificate_url = ""
        self._bundle: Optional[bytes] = None

    # ── Driver ────────────────────────────────────────────────────────────

    def run(self) -> bytes:
        """Run every stage in order and return the PKCS#12 bundle."""
        if self.state is not SessionState.NEW:
            raise RuntimeError(f"session already ran (state={self.state.value})")

        domains = ", ".join(self.options.domains)
        logger.info("ACME session started for %s via %s", domains, self.client.directory_url)
        try:
            self._ensure_account()
            self._advance(SessionState.ACCOUNT_READY)

            self._create_order()
            self._advance(SessionState.ORDER_CREATED)

            try:
                self._publish_challenges()
                self._advance(SessionState.CHALLENGES_PUBLISHED)

                self._validate_challenges()
                self._advance(SessionState.CHALLENGES_VALIDATED)
            finally:
                self._cleanup_challenges()

            self._finalize_order()
            self._advance(SessionState.ORDER_FINALIZED)

            self._download_certificate()
            self._advance(SessionState.CERTIFICATE_DOWNLOADED)
        except Exception as exc:
            self.failure = exc
            logger.error(
                "ACME session for %s failed after %s: %s", domains, self.state.value, exc
            )
            self.state = SessionState.FAILED
            self.history.append(SessionState.FAILED)
            raise

        self._advance(SessionState.COMPLETE)
        logger.info("ACME session for %s complete", domains)
        assert self._bundle is not None
        return self._bundle

    def _advance(self, target: SessionState) -> None:
        expected = _ORDER[_ORDER.index(self.state) + 1]
        if target is not expected:
            raise RuntimeError(f"illegal transition {self.state.value} → {target.value}")
        self.state = target
        self.history.append(target)
        logger.debug("ACME session → %s", target.value)

    # ── AccountReady ──────────────────────────────────────────────────────

    def _ensure_account(self) -> None:
        stored = self.cert_store.get(ACCOUNT_KEY)
        if stored is not None:
            try:
                self._account = AcmeAccount.from_bytes(stored)
            except (ValueError, KeyError, TypeError) as exc:
                # never overwrite an account the operator may still need
                raise AccountRegistrationFailed(f"stored account record is unreadable: {exc}") from exc
            logger.info("Using existing ACME account %s", self._account.url)
            return

        logger.info("No ACME account stored — registering %s", self.options.email)
        account_key = jwslib.generate_account_key()
        with _translate(AccountRegistrationFailed):
            account_url = self.client.create_account(account_key, self.options.email)
        self._account = AcmeAccount(key=account_key, url=account_url)
        self.cert_store.set(ACCOUNT_KEY, self._account.to_bytes())
        logger.info("Registered new ACME account: %s", account_url)

    # ── OrderCreated ──────────────────────────────────────────────────────

    def _create_order(self) -> None:
        with _translate(OrderRejected):
            self._order, self._order_url = self.client.create_order(
                self.account, list(self.options.domains)
            )
        if self._order.get("status") == "invalid":
            raise OrderRejected(f"order created in invalid state: {self._order}")
        if not self._order.get("authorizations") or not self._order.get("finalize"):
            raise OrderRejected("order response lacks authorizations or finalize URL")
        logger.info(
            "Order %s created — %d authorization(s)",
            self._order_url, len(self._order["authorizations"]),
        )

    # ── ChallengesPublished ───────────────────────────────────────────────

    def _publish_challenges(self) -> None:
        all_domains = ", ".join(self.options.domains)
        for auth_url in self._order["authorizations"]:
            with _translate(partial(ChallengeValidationFailed, all_domains)):
                authz = self.client.get_authorization(self.account, auth_url)
            domain = authz.get("identifier", {}).get("value", all_domains)

            # Servers may reuse a still-valid authorization (RFC 8555 §7.5)
            if authz.get("status") == "valid":
                logger.info("Authorization for %s already valid — nothing to publish", domain)
                continue
            if authz.get("status") != "pending":
                raise ChallengeValidationFailed(domain, f"authorization is {authz.get('status')}")

            challenge = next(
                (c for c in authz.get("challenges", []) if c.get("type") == "http-01"), None
            )
            if challenge is None or "token" not in challenge or "url" not in challenge:
                raise ChallengeValidationFailed(domain, "CA offered no http-01 challenge")

            token = challenge["token"]
            key_auth = jwslib.compute_key_authorization(token, self.account.key)
            self._published_tokens.append(token)
            # a store may refuse a token it cannot hold as a key
            with _translate(partial(ChallengeValidationFailed, domain)):
                self.challenge_store.set(token, key_auth.encode())
            self._challenges.append(
                _PendingChallenge(domain=domain, auth_url=auth_url,
                                  challenge_url=challenge["url"], token=token)
            )
            logger.info("Published HTTP-01 token for %s", domain)

        # Only now is the responder ready for every probe the CA may send
        for pending in self._challenges:
            with _translate(partial(ChallengeValidationFailed, pending.domain)):
                self.client.respond_to_challenge(self.account, pending.challenge_url)
            logger.info("Asked CA to validate %s", pending.domain)

    # ── ChallengesValidated ───────────────────────────────────────────────

    def _validate_challenges(self) -> None:
        for pending in self._challenges:
            fail = partial(ChallengeValidationFailed, pending.domain)
            with _translate(fail):
                authz = self._poll(
                    lambda p=pending: self.client.get_authorization(self.account, p.auth_url),
                    _AUTHZ_IN_PROGRESS,
                    self.authz_timeout,
                    fail,
                )
            status = authz.get("status")
            if status != "valid":
                raise ChallengeValidationFailed(pending.domain, _challenge_error(authz) or status)
            logger.info("Authorization for %s is VALID", pending.domain)

    def _cleanup_challenges(self) -> None:
        while self._published_tokens:
            token = self._published_tokens.pop()
            try:
                self.challenge_store.delete(token)
            except (EngineError, ValueError) as exc:
                logger.warning("Failed to remove challenge token %s: %s", token, exc)

    # ── OrderFinalized ────────────────────────────────────────────────────

    def _finalize_order(self) -> None:
        self._domain_key = crypto.generate_domain_key(self.options.key_algorithm)
        csr_der = crypto.create_csr(self._domain_key, list(self.options.domains), self.options.csr)

        logger.info("Finalizing order %s — submitting CSR", self._order_url)
        with _translate(FinalizationFailed):
            self.client.finalize_order(self.account, self._order["finalize"], csr_der)
            order = self._poll(
                lambda: self.client.get_order(self.account, self._order_url),
                _ORDER_IN_PROGRESS,
                self.order_timeout,
                FinalizationFailed,
            )
        if order.get("status") != "valid":
            raise FinalizationFailed(f"order became {order.get('status')}: {order.get('error', '')}")
        if not order.get("certificate"):
            raise FinalizationFailed("order valid but no certificate URL")
        self._certificate_url = order["certificate"]

    # ── CertificateDownloaded ─────────────────────────────────────────────

    def _download_certificate(self) -> None:
        assert self._domain_key is not None
        with _translate(DownloadFailed):
            chain_pem = self.client.download_certificate(self.account, self._certificate_url)
            self._bundle = crypto.bundle_pfx(self._domain_key, chain_pem, self.options.pfx_password)
        logger.info("Downloaded certificate chain (%d bytes PEM)", len(chain_pem))

    # ── Helpers ───────────────────────────────────────────────────────────

    @property
    def account(self) -> AcmeAccount:
        if self._account is None:
            raise RuntimeError("account not ready")
        return self._account

    def _poll(
        self,
        fetch: Callable[[], dict],
        in_progress: frozenset,
        timeout: float,
        fail: Callable[[str], EngineError],
    ) -> dict:
        """
        Re-fetch until the status leaves *in_progress*.  The delay doubles
        from poll_interval up to _MAX_POLL_DELAY; the whole wait is bounded
        by *timeout* and cut short when the stop event is set.
        """
        deadline = time.monotonic() + timeout
        delay = self.poll_interval
        while True:
            body = fetch()
            status = body.get("status")
            if status not in in_progress:
                return body
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise fail(f"still {status} after {timeout:.0f}s")
            if self._stop.wait(min(delay, remaining)):
                raise fail("cancelled by shutdown")
            delay = min(delay * 2, _MAX_POLL_DELAY)


@contextmanager
def _translate(error: Callable[[str], EngineError]) -> Iterator[None]:
    """Turn transport and protocol errors into the stage's own error type."""
    try:
        yield
    except EngineError:
        raise
    except (AcmeError, requests.RequestException, KeyError, ValueError) as exc:
        raise error(str(exc)) from exc


def _challenge_error(authz: dict) -> str:
    for challenge in authz.get("challenges", []):
        error = challenge.get("error")
        if error:
            return error.get("detail") or error.get("type", "")
    return ""
