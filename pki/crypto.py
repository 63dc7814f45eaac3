"""
Key generation, serial numbers, validity windows and PKCS#12 bundling.

Boundary: this module owns the local cryptographic primitives.  Anything that
talks to a remote key lives in pki/signature.py and keyvault/.
"""
from __future__ import annotations

import calendar
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import CertificatePublicKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12

from pki.errors import SerializationError, ValidationError

RSA_KEY_SIZE = 4096
SERIAL_NUMBER_BYTES = 9
BACKDATE = timedelta(days=1)


def generate_rsa_key(key_size: int = RSA_KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate an RSA private key for a certificate subject."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


# ─── Serial numbers & validity ────────────────────────────────────────────────


def generate_serial_number() -> int:
    """
    Draw a fresh 9-byte serial from the OS CSPRNG.

    72 bits of entropy make collisions practically negligible; a zero draw
    (not a valid serial) is simply redrawn.
    """
    while True:
        serial = int.from_bytes(secrets.token_bytes(SERIAL_NUMBER_BYTES), "big")
        if serial:
            return serial


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's end."""
    index = moment.month - 1 + months
    year, month = moment.year + index // 12, index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def validity_window(months: int, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """
    Return (not_before, not_after).

    not_before is backdated one day to absorb clock skew between issuer and
    verifier; not_after is counted from not_before.
    """
    now = now or datetime.now(tz=timezone.utc)
    not_before = now - BACKDATE
    try:
        return not_before, add_months(not_before, months)
    except (ValueError, OverflowError) as exc:
        raise ValidationError(f"Validity of {months} months is out of range: {exc}", stage="validate") from exc


# ─── Public key comparison ────────────────────────────────────────────────────


def public_key_der(key: CertificatePublicKeyTypes) -> bytes:
    """DER SubjectPublicKeyInfo of *key*."""
    return key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def public_keys_match(a: CertificatePublicKeyTypes, b: CertificatePublicKeyTypes) -> bool:
    return public_key_der(a) == public_key_der(b)


# ─── Parsing & PKCS#12 ────────────────────────────────────────────────────────


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a DER or PEM certificate, raising SerializationError on garbage."""
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as exc:
        raise SerializationError(f"Malformed certificate: {exc}", cause=exc) from exc


def export_pkcs12(
    name: str,
    key: rsa.RSAPrivateKey,
    certificate: x509.Certificate,
    password: str,
    cas: Optional[list[x509.Certificate]] = None,
) -> bytes:
    """Bundle *key* and *certificate* into a password-protected PFX."""
    return pkcs12.serialize_key_and_certificates(
        name=name.encode(),
        key=key,
        cert=certificate,
        cas=cas,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )


def load_pkcs12(data: bytes, password: Optional[str]) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    """Return (private_key, certificate) from a PFX; both must be present."""
    try:
        key, cert, _ = pkcs12.load_key_and_certificates(
            data, password.encode() if password else None
        )
    except ValueError as exc:
        raise SerializationError(f"Cannot read PKCS#12 bundle: {exc}", cause=exc) from exc
    if key is None or cert is None:
        raise SerializationError("PKCS#12 bundle must hold a private key and a certificate")
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SerializationError(f"Only RSA keys are supported, got {type(key).__name__}")
    return key, cert
