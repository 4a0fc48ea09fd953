"""
Shared test fixtures for the cfdi-proxy test suite.

Builds throw-away RSA certificates shaped like SAT credentials:
  - FIEL: RFC in x500UniqueIdentifier, no organizational unit
  - CSD: same shape plus an organizational unit (branch name)
  - expired FIEL: validity window entirely in the past

Keys are generated once per session; certificates are cheap to sign.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.x509.oid import NameOID

from cfdi_proxy.adapters.credentials import FielCredentialValidator
from cfdi_proxy.domain.models import FielIdentity, SigningCredential

TEST_RFC = "AAA010101AAA"
TEST_NAME = "EMPRESA DE PRUEBA SA DE CV"
PASSPHRASE = "12345678a"
# "30001000000500003416" read as ASCII bytes, the way SAT encodes serials
FIEL_SERIAL = int.from_bytes(b"30001000000500003416", "big")


@dataclass(frozen=True)
class CertificateBundle:
    """DER certificate + encrypted PKCS#8 DER key, as a caller uploads them."""

    certificate: bytes = field(repr=False)
    private_key: bytes = field(repr=False)
    passphrase: str = field(repr=False)
    key: RSAPrivateKey = field(repr=False)

    def credential(self, passphrase: str | None = None) -> SigningCredential:
        return SigningCredential(
            certificate=self.certificate,
            private_key=self.private_key,
            passphrase=self.passphrase if passphrase is None else passphrase,
        )


def build_bundle(
    key: RSAPrivateKey,
    rfc: str = TEST_RFC,
    organizational_unit: str | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
    passphrase: str = PASSPHRASE,
) -> CertificateBundle:
    now = datetime.now(UTC)
    attributes = [
        x509.NameAttribute(NameOID.COMMON_NAME, TEST_NAME),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, TEST_NAME),
        x509.NameAttribute(NameOID.X500_UNIQUE_IDENTIFIER, f"{rfc} / HEGT7610034S2"),
        x509.NameAttribute(NameOID.SERIAL_NUMBER, " / HEGT761003MDFRNN09"),
    ]
    if organizational_unit is not None:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, organizational_unit))
    issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "AC UAT"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "SERVICIO DE ADMINISTRACION TRIBUTARIA"),
        ]
    )
    certificate = (
        x509.CertificateBuilder()
        .subject_name(x509.Name(attributes))
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(FIEL_SERIAL)
        .not_valid_before(not_before or now - timedelta(days=30))
        .not_valid_after(not_after or now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return CertificateBundle(
        certificate=certificate.public_bytes(serialization.Encoding.DER),
        private_key=key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
        ),
        passphrase=passphrase,
        key=key,
    )


@pytest.fixture(scope="session")
def rsa_key() -> RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def fiel_bundle(rsa_key: RSAPrivateKey) -> CertificateBundle:
    return build_bundle(rsa_key)


@pytest.fixture(scope="session")
def csd_bundle(rsa_key: RSAPrivateKey) -> CertificateBundle:
    return build_bundle(rsa_key, organizational_unit="Sucursal Centro")


@pytest.fixture(scope="session")
def expired_bundle(rsa_key: RSAPrivateKey) -> CertificateBundle:
    now = datetime.now(UTC)
    return build_bundle(
        rsa_key, not_before=now - timedelta(days=800), not_after=now - timedelta(days=5)
    )


@pytest.fixture(scope="session")
def fiel_identity(fiel_bundle: CertificateBundle) -> FielIdentity:
    return FielCredentialValidator().validate(fiel_bundle.credential()).value()
