"""
Low-level ACME RFC 8555 HTTP client.

The client keeps only transport state: the cached directory and the most
recent anti-replay nonce.  Account material is passed in on every call so
the session state machine stays the single owner of protocol progress.

RFC 8555 compliance notes
--------------------------
* POST-as-GET: orders, authorizations and certificates are fetched with a
  signed empty payload, never plain GET.
* badNonce retry: ACME servers return a fresh ``Replay-Nonce`` header even on
  error responses.  ``_post_signed`` re-signs with it up to ``_NONCE_RETRIES``
  times.
"""
from __future__ import annotations

import base64
from typing import Optional

import requests
from josepy.jwk import JWKRSA

from acmeclient import jws as jwslib
from acmeclient.jws import AcmeAccount

_NONCE_RETRIES = 3


class AcmeError(Exception):
    """Raised when the ACME server returns an error response."""

    def __init__(self, status_code: int, body: dict) -> None:
        self.status_code = status_code
        self.body = body
        problem_type = body.get("type", "unknown")
        detail = body.get("detail", str(body))
        super().__init__(f"ACME {status_code}: {problem_type} — {detail}")

    @property
    def problem_type(self) -> str:
        return self.body.get("type", "")


class AcmeClient:
    """Minimal RFC 8555 client (tested against Pebble and Let's Encrypt staging)."""

    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self._directory: Optional[dict] = None
        self._nonce: Optional[str] = None
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "hotcert/1.0"})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Directory & nonce ─────────────────────────────────────────────────

    def get_directory(self) -> dict:
        """GET /directory — discover ACME endpoint URLs (cached)."""
        if self._directory is None:
            resp = self._session.get(self.directory_url, timeout=self.timeout)
            resp.raise_for_status()
            self._directory = resp.json()
        return self._directory

    def get_nonce(self) -> str:
        """HEAD /newNonce — fetch a fresh anti-replay nonce."""
        resp = self._session.head(self.get_directory()["newNonce"], timeout=self.timeout)
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError(resp.status_code, {"detail": "No Replay-Nonce header"})
        return nonce

    # ── Account ───────────────────────────────────────────────────────────

    def create_account(self, account_key: JWKRSA, email: str) -> str:
        """
        POST /newAccount agreeing to the terms of service.
        Returns the account URL from the Location header.
        """
        payload = {
            "termsOfServiceAgreed": True,
            "contact": [f"mailto:{email}"],
        }
        resp = self._post_signed(payload, account_key, self.get_directory()["newAccount"])
        account_url = resp.headers.get("Location", "")
        if not account_url:
            raise AcmeError(resp.status_code, {"detail": "newAccount response has no Location"})
        return account_url

    # ── Orders ────────────────────────────────────────────────────────────

    def create_order(self, account: AcmeAccount, domains: list[str]) -> tuple[dict, str]:
        """
        POST /newOrder for one or more DNS identifiers.
        Returns (order_body, order_url).
        """
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp = self._post_signed(payload, account.key, self.get_directory()["newOrder"], account.url)
        return resp.json(), resp.headers.get("Location", "")

    def get_order(self, account: AcmeAccount, order_url: str) -> dict:
        return self._post_signed(None, account.key, order_url, account.url).json()

    # ── Authorizations & challenges ───────────────────────────────────────

    def get_authorization(self, account: AcmeAccount, auth_url: str) -> dict:
        return self._post_signed(None, account.key, auth_url, account.url).json()

    def respond_to_challenge(self, account: AcmeAccount, challenge_url: str) -> dict:
        """POST {} to the challenge URL to tell the CA to start validating."""
        return self._post_signed({}, account.key, challenge_url, account.url).json()

    # ── Finalization & certificate download ───────────────────────────────

    def finalize_order(self, account: AcmeAccount, finalize_url: str, csr_der: bytes) -> dict:
        """POST /finalize with the DER-encoded CSR; returns the order body."""
        csr_b64 = base64.urlsafe_b64encode(csr_der).rstrip(b"=").decode()
        return self._post_signed({"csr": csr_b64}, account.key, finalize_url, account.url).json()

    def download_certificate(self, account: AcmeAccount, cert_url: str) -> str:
        """POST-as-GET the certificate URL and return the PEM chain (leaf first)."""
        resp = self._post_signed(
            None, account.key, cert_url, account.url,
            accept="application/pem-certificate-chain",
        )
        return resp.text

    # ── Internal ──────────────────────────────────────────────────────────

    def _post_signed(
        self,
        payload: dict | None,
        account_key: JWKRSA,
        url: str,
        account_url: str | None = None,
        accept: str = "application/json",
    ) -> requests.Response:
        """
        Sign *payload* with *account_key* and POST to *url*, retrying up to
        ``_NONCE_RETRIES`` times on ``badNonce`` responses.
        """
        for attempt in range(_NONCE_RETRIES):
            nonce = self._nonce or self.get_nonce()
            self._nonce = None
            body = jwslib.sign_request(payload, account_key, nonce, url, account_url)
            resp = self._session.post(
                url,
                json=body,
                headers={
                    "Content-Type": "application/jose+json",
                    "Accept": accept,
                },
                timeout=self.timeout,
            )
            # Every response (errors included) carries the next usable nonce
            self._nonce = resp.headers.get("Replay-Nonce") or None
            if resp.ok:
                return resp

            try:
                error_body = resp.json()
            except ValueError:
                error_body = {"detail": resp.text}

            if "badNonce" in error_body.get("type", "") and attempt < _NONCE_RETRIES - 1:
                continue

            raise AcmeError(resp.status_code, error_body)

        raise AcmeError(0, {"detail": "Exceeded nonce retry limit"})

