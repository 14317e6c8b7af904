"""
Shared pytest fixtures.

FakeAcmeServer
--------------
Plays a minimal ACME CA on top of the `responses` library: directory, nonces,
accounts, orders, HTTP-01 authorizations, finalization (it really signs the
submitted CSR with a throwaway CA) and chain download.  Tests flip its
attributes to make a given stage fail.

Pebble
------
`requires_pebble` skips integration tests unless Pebble listens on
localhost:14000.
"""
from __future__ import annotations

import base64
import datetime
import json
import re
import socket
from dataclasses import dataclass

import pytest
import responses as resp_lib
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from acmeclient import crypto
from acmeclient import jws as jwslib
from acmeclient.client import AcmeClient
from config import RenewalOptions
from storage.memory import MemoryStore

DIRECTORY_URL = "https://acme.test/directory"

FAKE_DIRECTORY = {
    "newNonce": "https://acme.test/newNonce",
    "newAccount": "https://acme.test/newAccount",
    "newOrder": "https://acme.test/newOrder",
    "revokeCert": "https://acme.test/revokeCert",
    "keyChange": "https://acme.test/keyChange",
}

FAKE_NONCE = "testnonce12345"


# ─── Pebble availability check ────────────────────────────────────────────────

def _pebble_running(host: str = "localhost", port: int = 14000) -> bool:
    """Return True if Pebble's ACME port is open."""
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


requires_pebble = pytest.mark.skipif(
    not _pebble_running(),
    reason="Pebble not running — start with: docker run -p 14000:14000 -e PEBBLE_VA_ALWAYS_VALID=1 ghcr.io/letsencrypt/pebble",
)


# ─── Test CA ──────────────────────────────────────────────────────────────────

@dataclass
class TestCA:
    key: rsa.RSAPrivateKey
    cert: x509.Certificate

    __test__ = False  # not a test class despite the name

    def issue(
        self,
        public_key,
        domains: list[str],
        not_before: datetime.datetime | None = None,
        not_after: datetime.datetime | None = None,
    ) -> x509.Certificate:
        now = datetime.datetime.now(datetime.timezone.utc)
        not_before = not_before or now - datetime.timedelta(minutes=5)
        not_after = not_after or not_before + datetime.timedelta(days=90)
        return (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
            .issuer_name(self.cert.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False
            )
            .sign(self.key, hashes.SHA256())
        )

    def chain_pem(self, leaf: x509.Certificate) -> str:
        return b"".join(
            c.public_bytes(serialization.Encoding.PEM) for c in (leaf, self.cert)
        ).decode()


@pytest.fixture(scope="session")
def test_ca() -> TestCA:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "hotcert test CA")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return TestCA(key=key, cert=cert)


@pytest.fixture(scope="session")
def domain_key():
    return crypto.generate_domain_key("rsa")


@pytest.fixture(scope="session")
def account_key():
    return jwslib.generate_account_key(key_size=2048)


@pytest.fixture()
def make_pfx(test_ca: TestCA, domain_key):
    """Build a CertificateRecord (PKCS#12 bytes) valid from *not_before* to *not_after*."""

    def _make(domains, not_before=None, not_after=None, password: str = "") -> bytes:
        leaf = test_ca.issue(domain_key.public_key(), list(domains), not_before, not_after)
        return crypto.bundle_pfx(domain_key, test_ca.chain_pem(leaf), password)

    return _make


# ─── Options & stores ─────────────────────────────────────────────────────────

@pytest.fixture()
def options() -> RenewalOptions:
    return RenewalOptions(
        email="admin@example.com",
        domains=("example.com",),
        time_until_expiry_before_renewal=datetime.timedelta(days=30),
        directory_url=DIRECTORY_URL,
    )


@pytest.fixture()
def cert_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def challenge_store() -> MemoryStore:
    return MemoryStore()


# ─── Fake ACME server ─────────────────────────────────────────────────────────

def decode_jws(request) -> tuple[dict, dict | None]:
    """Return (protected_header, payload) of a flattened JWS request body."""
    body = json.loads(request.body)
    protected = json.loads(_b64url_decode(body["protected"]))
    payload = json.loads(_b64url_decode(body["payload"])) if body["payload"] else None
    return protected, payload


def _b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


class FakeAcmeServer:
    """
    Minimal stateful ACME CA.  Knobs:

      account_error       — problem document returned by newAccount
      order_error         — problem document returned by newOrder
      authz_outcome       — {domain: "valid" | "invalid" | "pending"} after the challenge is triggered
      finalize_error      — problem document returned by finalize
      order_final_status  — status the order reaches after finalize ("valid" / "invalid")
      download_status     — HTTP status of the certificate download
      token_overrides     — {domain: token} replacing the default http-01 token
    """

    def __init__(self, rsps: resp_lib.RequestsMock, ca: TestCA, challenge_store=None) -> None:
        self.rsps = rsps
        self.ca = ca
        self.challenge_store = challenge_store

        self.account_error: dict | None = None
        self.order_error: dict | None = None
        self.authz_outcome: dict[str, str] = {}
        self.finalize_error: dict | None = None
        self.order_final_status = "valid"
        self.download_status = 200
        self.token_overrides: dict[str, str] = {}

        self.account_registrations = 0
        self.domains: list[str] = []
        self.triggered: list[str] = []
        self.tokens_present_at_first_trigger: list[str] | None = None
        self.chain_pem: str | None = None
        self._nonce = 0

        rsps.add(resp_lib.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
        rsps.add_callback(resp_lib.HEAD, FAKE_DIRECTORY["newNonce"], callback=self._new_nonce)
        rsps.add_callback(resp_lib.POST, FAKE_DIRECTORY["newAccount"], callback=self._new_account)
        rsps.add_callback(resp_lib.POST, FAKE_DIRECTORY["newOrder"], callback=self._new_order)
        rsps.add_callback(resp_lib.POST, re.compile(r"https://acme\.test/authz/.+"), callback=self._authz)
        rsps.add_callback(resp_lib.POST, re.compile(r"https://acme\.test/chall/.+"), callback=self._challenge)
        rsps.add_callback(resp_lib.POST, "https://acme.test/finalize/1", callback=self._finalize)
        rsps.add_callback(resp_lib.POST, "https://acme.test/order/1", callback=self._order)
        rsps.add_callback(resp_lib.POST, "https://acme.test/cert/1", callback=self._certificate)

    @staticmethod
    def token_for(domain: str) -> str:
        return "token-" + domain.replace(".", "-")

    # ── handlers ──────────────────────────────────────────────────────────

    def _headers(self, **extra: str) -> dict:
        self._nonce += 1
        return {"Replay-Nonce": f"nonce-{self._nonce}", **extra}

    def _json(self, status: int, body: dict, **headers: str):
        return status, self._headers(**headers), json.dumps(body)

    def _new_nonce(self, request):
        return 200, self._headers(), ""

    def _new_account(self, request):
        if self.account_error:
            return self._json(400, self.account_error)
        self.account_registrations += 1
        return self._json(201, {"status": "valid"}, Location="https://acme.test/acct/1")

    def _new_order(self, request):
        if self.order_error:
            return self._json(400, self.order_error)
        _, payload = decode_jws(request)
        self.domains = [i["value"] for i in payload["identifiers"]]
        return self._json(
            201,
            {
                "status": "pending",
                "identifiers": payload["identifiers"],
                "authorizations": [f"https://acme.test/authz/{d}" for d in self.domains],
                "finalize": "https://acme.test/finalize/1",
            },
            Location="https://acme.test/order/1",
        )

    def _authz(self, request):
        domain = request.url.rsplit("/", 1)[1]
        challenge = {
            "type": "http-01",
            "url": f"https://acme.test/chall/{domain}",
            "token": self.token_overrides.get(domain, self.token_for(domain)),
            "status": "pending",
        }
        status = "pending"
        if domain in self.triggered:
            status = self.authz_outcome.get(domain, "valid")
            if status == "invalid":
                challenge["status"] = "invalid"
                challenge["error"] = {
                    "type": "urn:ietf:params:acme:error:unauthorized",
                    "detail": f"Invalid response from http://{domain}/.well-known/acme-challenge/",
                }
        return self._json(
            200,
            {
                "status": status,
                "identifier": {"type": "dns", "value": domain},
                "challenges": [challenge, {"type": "dns-01", "url": "https://acme.test/dns", "token": "x"}],
            },
        )

    def _challenge(self, request):
        domain = request.url.rsplit("/", 1)[1]
        if self.tokens_present_at_first_trigger is None and self.challenge_store is not None:
            self.tokens_present_at_first_trigger = [
                d for d in self.domains if self.challenge_store.get(self.token_for(d)) is not None
            ]
        self.triggered.append(domain)
        return self._json(200, {"type": "http-01", "status": "processing"})

    def _finalize(self, request):
        if self.finalize_error:
            return self._json(400, self.finalize_error)
        _, payload = decode_jws(request)
        csr = x509.load_der_x509_csr(_b64url_decode(payload["csr"]))
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        leaf = self.ca.issue(csr.public_key(), san.value.get_values_for_type(x509.DNSName))
        self.chain_pem = self.ca.chain_pem(leaf)
        return self._json(200, {"status": "processing", "finalize": "https://acme.test/finalize/1"})

    def _order(self, request):
        if self.chain_pem is None:
            return self._json(200, {"status": "ready"})
        if self.order_final_status != "valid":
            return self._json(200, {"status": self.order_final_status, "error": {"detail": "CA refused"}})
        return self._json(200, {"status": "valid", "certificate": "https://acme.test/cert/1"})

    def _certificate(self, request):
        if self.download_status != 200:
            return self._json(self.download_status, {"type": "urn:ietf:params:acme:error:serverInternal"})
        return 200, self._headers(**{"Content-Type": "application/pem-certificate-chain"}), self.chain_pem


@pytest.fixture()
def fake_acme(test_ca, challenge_store):
    with resp_lib.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield FakeAcmeServer(rsps, test_ca, challenge_store)


@pytest.fixture()
def acme_client() -> AcmeClient:
    return AcmeClient(DIRECTORY_URL)
