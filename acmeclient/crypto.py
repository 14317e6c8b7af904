"""
Domain private-key generation, CSR creation and PKCS#12 bundling.

Boundary: this module owns everything cryptographic that is *domain*-specific.
Account-key operations (JWK, JWS) live in acmeclient/jws.py.
"""
from __future__ import annotations

from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from config import CsrSubject

DomainKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


def generate_domain_key(algorithm: str = "rsa", key_size: int = 2048) -> DomainKey:
    """RSA (default) or EC P-256 key for a domain certificate."""
    if algorithm == "ec":
        return ec.generate_private_key(ec.SECP256R1())
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def create_csr(
    private_key: DomainKey,
    domains: list[str],
    subject: CsrSubject | None = None,
) -> bytes:
    """
    Create a DER-encoded CSR.

    CN is the first domain; every domain is listed as a SubjectAlternativeName.
    Empty subject fields are left out of the distinguished name.
    """
    if not domains:
        raise ValueError("create_csr needs at least one domain")
    subject = subject or CsrSubject()

    attributes = [
        (NameOID.COUNTRY_NAME, subject.country),
        (NameOID.STATE_OR_PROVINCE_NAME, subject.state),
        (NameOID.LOCALITY_NAME, subject.locality),
        (NameOID.ORGANIZATION_NAME, subject.organization),
        (NameOID.ORGANIZATIONAL_UNIT_NAME, subject.organizational_unit),
        (NameOID.COMMON_NAME, domains[0]),
    ]
    name = x509.Name([x509.NameAttribute(oid, value) for oid, value in attributes if value])

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(name)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
    )
    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


def bundle_pfx(private_key: DomainKey, chain_pem: str, password: str = "") -> bytes:
    """
    Combine the downloaded PEM chain (leaf first) with the domain key into a
    single PKCS#12 blob.  Raises ValueError if the chain holds no certificate.
    """
    certs = x509.load_pem_x509_certificates(chain_pem.encode())
    if not certs:
        raise ValueError("certificate chain is empty")
    leaf, intermediates = certs[0], certs[1:]
    encryption = (
        serialization.BestAvailableEncryption(password.encode())
        if password else serialization.NoEncryption()
    )
    return pkcs12.serialize_key_and_certificates(
        name=_common_name(leaf).encode() or None,
        key=private_key,
        cert=leaf,
        cas=intermediates or None,
        encryption_algorithm=encryption,
    )


def load_pfx(data: bytes, password: str = "") -> pkcs12.PKCS12KeyAndCertificates:
    """Parse a PKCS#12 blob produced by bundle_pfx."""
    bundle = pkcs12.load_pkcs12(data, password.encode() if password else None)
    if bundle.cert is None or bundle.key is None:
        raise ValueError("PKCS#12 bundle lacks a certificate or private key")
    return bundle


def certificate_domains(cert: x509.Certificate) -> tuple[str, ...]:
    """SAN DNS names of *cert*, falling back to the CN."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        names = []
    if not names:
        cn = _common_name(cert)
        names = [cn] if cn else []
    return tuple(names)


def _common_name(cert: x509.Certificate) -> str:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else ""
