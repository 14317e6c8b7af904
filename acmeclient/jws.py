"""
JWK / JWS utilities for the ACME protocol (RFC 8555).

Uses *josepy* (the library powering Certbot) for the key wrapper and the
RFC 7638 thumbprint.

Responsibilities (boundary with acmeclient/crypto.py):
  - Generate the **account** RSA key and (de)serialize the account record
  - Compute the HTTP-01 key-authorization
  - Sign ACME POST bodies as JWS (with jwk or kid header)
"""
from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy.jwk import JWKRSA


# ─── Account record ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AcmeAccount:
    """Account key pair plus the account URL the CA assigned to it."""

    key: JWKRSA
    url: str

    def to_bytes(self) -> bytes:
        """Serialize for the "account" entry of the certificate store."""
        pem = self.key.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return json.dumps({"url": self.url, "key": pem.decode()}).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> "AcmeAccount":
        record = json.loads(data)
        private_key = serialization.load_pem_private_key(record["key"].encode(), password=None)
        return cls(key=JWKRSA(key=private_key), url=record["url"])


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    """Generate a new RSA account key wrapped in a josepy JWKRSA."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return JWKRSA(key=private_key)


# ─── JWK thumbprint ───────────────────────────────────────────────────────────


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """base64url SHA-256 thumbprint of the public JWK (RFC 7638)."""
    return _b64url(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    """Return the HTTP-01 key-authorization string for *token*."""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


# ─── JWS signing ─────────────────────────────────────────────────────────────


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request payload and return the flattened JWS to POST.

    Without *account_url* the protected header embeds the public JWK (used
    for newAccount); with it, the shorter "kid" form is used.  A None
    payload produces the empty POST-as-GET body.
    """
    header: dict[str, Any] = {
        "alg": "RS256",
        "nonce": nonce,
        "url": url,
    }
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = account_key.public_key().to_json()

    protected = _b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode())

    signing_input = f"{protected}.{payload_b64}".encode()
    signature = account_key.key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    return {
        "protected": protected,
        "payload": payload_b64,
        "signature": _b64url(signature),
    }


def _b64url(data: bytes) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()
