"""
FIEL credential validator — uploaded bytes → verified signing identity.

Adapter layer — implements the CredentialValidator port with `cryptography`.

Checks, in order (first failure wins):
  1. The certificate decodes (DER as SAT ships it, PEM accepted too).
  2. The private key decodes with the passphrase (encrypted PKCS#8 DER,
     PEM accepted too) and is RSA.
  3. The key belongs to the certificate.
  4. The certificate is a FIEL. SAT issues FIEL certificates without an
     organizational unit in the subject; CSD (seal) certificates carry the
     branch name there and must be rejected.
  5. The current time is inside the validity window.

The passphrase and key bytes are never logged; events carry only the RFC
and certificate number.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.x509.oid import NameOID

from cfdi_proxy.domain.models import FielIdentity, SigningCredential
from cfdi_proxy.railway import ErrorCode, Result

log = structlog.get_logger()

# x500UniqueIdentifier: "RFC / RFC of the legal representative"
_OID_UNIQUE_IDENTIFIER = x509.ObjectIdentifier("2.5.4.45")

type Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class FielCredentialValidator:
    """
    Validate uploaded FIEL material.

    Implements the CredentialValidator port. `clock` is injectable so
    expiry can be tested without crafting certificates in the past.
    """

    def __init__(self, clock: Clock = _utc_now) -> None:
        self._clock = clock

    def validate(self, credential: SigningCredential) -> Result[FielIdentity]:
        """
        Decode and verify the credential.

        Returns Success(FielIdentity) or a Failure with
        INVALID_CREDENTIAL_FORMAT, WRONG_CREDENTIAL_CLASS or CREDENTIAL_EXPIRED.
        """
        return (
            _load_certificate(credential.certificate)
            .flat_map(
                lambda certificate: _load_private_key(
                    credential.private_key, credential.passphrase
                ).flat_map(lambda key: _pair(certificate, key))
            )
            .flat_map(_require_fiel)
            .flat_map(self._require_current)
            .map(_build_identity)
            .peek(
                lambda identity: log.info(
                    "credential.validated",
                    rfc=identity.rfc,
                    certificate_number=identity.certificate_number,
                )
            )
            .peek_failure(
                lambda failure: log.warning(
                    "credential.rejected", code=failure.code.value, reason=failure.message
                )
            )
        )

    def _require_current(
        self, pair: tuple[x509.Certificate, RSAPrivateKey]
    ) -> Result[tuple[x509.Certificate, RSAPrivateKey]]:
        certificate, _ = pair
        now = self._clock()
        if now > certificate.not_valid_after_utc:
            return Result.failure(ErrorCode.CREDENTIAL_EXPIRED, "The FIEL certificate has expired")
        if now < certificate.not_valid_before_utc:
            return Result.failure(
                ErrorCode.CREDENTIAL_EXPIRED, "The FIEL certificate is not valid yet"
            )
        return Result.success(pair)


# ─────────────────────── Decoding ───────────────────────


def _load_certificate(raw: bytes) -> Result[x509.Certificate]:
    if not raw:
        return Result.failure(ErrorCode.INVALID_CREDENTIAL_FORMAT, "The certificate file is empty")
    try:
        return Result.success(x509.load_der_x509_certificate(raw))
    except ValueError:
        pass
    return Result.from_computation(
        lambda: x509.load_pem_x509_certificate(raw),
        ErrorCode.INVALID_CREDENTIAL_FORMAT,
        "The certificate could not be read",
    )


def _load_private_key(raw: bytes, passphrase: str) -> Result[RSAPrivateKey]:
    if not raw:
        return Result.failure(ErrorCode.INVALID_CREDENTIAL_FORMAT, "The private key file is empty")
    password = passphrase.encode("utf-8") if passphrase else None
    key = _try_load(serialization.load_der_private_key, raw, password) or _try_load(
        serialization.load_pem_private_key, raw, password
    )
    if key is None:
        return Result.failure(
            ErrorCode.INVALID_CREDENTIAL_FORMAT,
            "The private key could not be opened; check the file and the passphrase",
        )
    if not isinstance(key, RSAPrivateKey):
        return Result.failure(ErrorCode.INVALID_CREDENTIAL_FORMAT, "The private key is not an RSA key")
    return Result.success(key)


def _try_load(
    loader: Callable[..., object], raw: bytes, password: bytes | None
) -> object | None:
    try:
        return loader(raw, password=password)
    except TypeError:
        # unencrypted key sent with a passphrase
        if password is None:
            return None
        return _try_load(loader, raw, None)
    except (ValueError, UnsupportedAlgorithm):
        return None


def _pair(
    certificate: x509.Certificate, key: RSAPrivateKey
) -> Result[tuple[x509.Certificate, RSAPrivateKey]]:
    public_key = certificate.public_key()
    if not isinstance(public_key, RSAPublicKey) or (
        public_key.public_numbers() != key.public_key().public_numbers()
    ):
        return Result.failure(
            ErrorCode.INVALID_CREDENTIAL_FORMAT,
            "The private key does not belong to the certificate",
        )
    return Result.success((certificate, key))


# ─────────────────────── Classification ───────────────────────


def _require_fiel(
    pair: tuple[x509.Certificate, RSAPrivateKey],
) -> Result[tuple[x509.Certificate, RSAPrivateKey]]:
    certificate, _ = pair
    units = certificate.subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)
    if any(str(unit.value).strip() for unit in units):
        return Result.failure(
            ErrorCode.WRONG_CREDENTIAL_CLASS, "The provided files are not a valid FIEL"
        )
    if not _subject_rfc(certificate):
        return Result.failure(
            ErrorCode.WRONG_CREDENTIAL_CLASS, "The certificate does not identify a taxpayer (RFC)"
        )
    return Result.success(pair)


def _subject_rfc(certificate: x509.Certificate) -> str:
    values = certificate.subject.get_attributes_for_oid(_OID_UNIQUE_IDENTIFIER)
    if not values:
        return ""
    value = values[0].value
    text = value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)
    return text.split("/")[0].strip().upper()


def _subject_name(certificate: x509.Certificate) -> str:
    for oid in (NameOID.COMMON_NAME, NameOID.ORGANIZATION_NAME):
        values = certificate.subject.get_attributes_for_oid(oid)
        if values:
            return str(values[0].value).strip()
    return ""


def certificate_number(serial_number: int) -> str:
    """
    SAT certificate number from the X.509 serial.

    SAT encodes the 20-digit number as ASCII inside the serial
    (0x3330303031... → "30001..."). Serials that are not ASCII fall back
    to their hex form.
    """
    hex_serial = format(serial_number, "x")
    if len(hex_serial) % 2:
        hex_serial = "0" + hex_serial
    raw = bytes.fromhex(hex_serial)
    if raw.isascii() and raw.decode("ascii").isprintable():
        return raw.decode("ascii")
    return hex_serial.upper()


def _build_identity(pair: tuple[x509.Certificate, RSAPrivateKey]) -> FielIdentity:
    certificate, key = pair
    return FielIdentity(
        rfc=_subject_rfc(certificate),
        legal_name=_subject_name(certificate),
        certificate_number=certificate_number(certificate.serial_number),
        serial_number=certificate.serial_number,
        issuer_name=certificate.issuer.rfc4514_string(),
        valid_from=certificate.not_valid_before_utc,
        valid_until=certificate.not_valid_after_utc,
        certificate_der=certificate.public_bytes(serialization.Encoding.DER),
        certificate=certificate,
        private_key=key,
    )
