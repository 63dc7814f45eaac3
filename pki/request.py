"""
Subject identities and certificate signing requests.

A CertificateRequest is the unsigned half of a certificate: subject, public
key and the fully populated, ordered extension list.  It is built once and
consumed exactly once by the issuer; a new issuance always builds a new one.
"""
from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa

from pki.errors import CsrBuildFailed, SerializationError, ValidationError
from pki.extensions import Extension, ExtensionParams, Role, extensions_for_role

logger = logging.getLogger(__name__)

HostnameResolver = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class SubjectIdentity:
    """An X.500 distinguished name, e.g. ``CN=Test Root``."""

    name: x509.Name

    @classmethod
    def parse(cls, value: str) -> "SubjectIdentity":
        if not value or not value.strip():
            raise ValidationError("Subject must not be empty", stage="validate")
        try:
            name = x509.Name.from_rfc4514_string(value.strip())
        except ValueError as exc:
            raise ValidationError(f"Invalid subject {value!r}: {exc}", stage="validate") from exc
        if not list(name):
            raise ValidationError(f"Subject {value!r} has no attributes", stage="validate")
        return cls(name)

    @property
    def value(self) -> str:
        return self.name.rfc4514_string()

    def __str__(self) -> str:
        return self.value


def is_dns_name(name: str) -> bool:
    """True when *name* can be written as an X.509 dNSName (ASCII, A-labels)."""
    if not name.isascii():
        return False
    try:
        x509.DNSName(name)
    except ValueError:
        return False
    return True


def resolve_canonical_hostname(fqdn: str) -> Optional[str]:
    """Return the canonical host name for *fqdn*, or None when lookup fails."""
    try:
        canonical, _, _ = socket.gethostbyname_ex(fqdn)
    except OSError as exc:
        logger.warning("Could not resolve %s (%s); using the literal name only", fqdn, exc)
        return None
    return canonical or None


class CertificateRequest:
    """
    Immutable request: subject + public key + SHA-384 / PKCS#1 v1.5 +
    ordered extensions.  ``consume()`` hands it to signing exactly once.
    """

    hash_algorithm = hashes.SHA384()
    padding = asym_padding.PKCS1v15()

    def __init__(
        self,
        subject: SubjectIdentity,
        public_key: rsa.RSAPublicKey,
        role: Role,
        validity_months: int,
        extensions: Tuple[Extension, ...],
    ) -> None:
        self._subject = subject
        self._public_key = public_key
        self._role = role
        self._validity_months = validity_months
        self._extensions = tuple(extensions)
        try:
            self._x509_extensions = [(ext.to_x509(public_key), ext.critical) for ext in self._extensions]
        except ValueError as exc:
            raise CsrBuildFailed(f"Invalid extension for {subject}: {exc}", stage="build_csr", cause=exc) from exc
        self._consumed = False
        self._lock = threading.Lock()

    @property
    def subject(self) -> SubjectIdentity:
        return self._subject

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self._public_key

    @property
    def role(self) -> Role:
        return self._role

    @property
    def validity_months(self) -> int:
        return self._validity_months

    @property
    def extensions(self) -> Tuple[Extension, ...]:
        return self._extensions

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> "CertificateRequest":
        with self._lock:
            if self._consumed:
                raise CsrBuildFailed(
                    f"Certificate request for {self._subject} was already signed", stage="sign"
                )
            self._consumed = True
        return self

    def x509_extensions(self) -> list[tuple[x509.ExtensionType, bool]]:
        """The extensions (in authoring order) as CertificateBuilder arguments."""
        return list(self._x509_extensions)

    def __repr__(self) -> str:
        return (
            f"CertificateRequest(subject={self._subject.value!r}, role={self._role.name}, "
            f"validity_months={self._validity_months}, extensions={len(self._extensions)})"
        )


class CertificateRequestBuilder:
    """
    Turns (subject, public key, role) into a CertificateRequest.

    DNS resolution for SSL server SANs is delegated to *resolver*; inject a
    stub in tests.
    """

    def __init__(self, resolver: HostnameResolver = resolve_canonical_hostname) -> None:
        self._resolver = resolver

    def build(
        self,
        subject: SubjectIdentity,
        public_key: rsa.RSAPublicKey,
        role: Role,
        validity_months: int,
        extra: Optional[ExtensionParams] = None,
    ) -> CertificateRequest:
        extra = extra or ExtensionParams()
        if validity_months <= 0:
            raise ValidationError(
                f"validity_months must be > 0, got {validity_months}", stage="build_csr"
            )
        if not isinstance(subject, SubjectIdentity):
            raise ValidationError("subject must be a SubjectIdentity", stage="build_csr")
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise CsrBuildFailed(
                f"Only RSA public keys are supported, got {type(public_key).__name__}",
                stage="build_csr",
            )

        if role is Role.SSL_SERVER:
            extra = ExtensionParams(
                extended_key_usages=extra.extended_key_usages,
                dns_names=self._server_dns_names(subject, extra.dns_names),
            )

        extensions = extensions_for_role(role, extra)
        logger.debug("Built %s request for %s with %d extensions", role.name, subject, len(extensions))
        return CertificateRequest(subject, public_key, role, validity_months, extensions)

    def from_pkcs10(
        self,
        csr_bytes: bytes,
        role: Role,
        validity_months: int,
        extra: Optional[ExtensionParams] = None,
    ) -> CertificateRequest:
        """Build a request from a backend's pending PKCS#10 CSR (DER or PEM)."""
        csr = load_pkcs10(csr_bytes)
        return self.build(SubjectIdentity(csr.subject), csr.public_key(), role, validity_months, extra)

    def _server_dns_names(self, subject: SubjectIdentity, dns_names: Tuple[str, ...]) -> Tuple[str, ...]:
        names = list(dns_names)
        if not names:
            names = [a.value for a in subject.name.get_attributes_for_oid(x509.NameOID.COMMON_NAME)]
        names = [str(n).strip() for n in names if str(n).strip()]
        if not names:
            raise ValidationError("An SSL server certificate needs at least one DNS name", stage="build_csr")
        for name in names:
            if not is_dns_name(name):
                raise ValidationError(
                    f"Invalid DNS name {name!r}; internationalised names must be given in A-label (xn--) form",
                    stage="build_csr",
                )

        canonical = self._resolver(names[0])
        if canonical and is_dns_name(canonical):
            names.append(canonical)
        elif canonical:
            logger.warning("Ignoring canonical name %r of %s: not a valid DNS name", canonical, names[0])
        return tuple(dict.fromkeys(names))  # deduplicate, preserve order


def load_pkcs10(csr_bytes: bytes) -> x509.CertificateSigningRequest:
    """Parse and signature-check a PKCS#10 request."""
    try:
        if csr_bytes.lstrip().startswith(b"-----BEGIN"):
            csr = x509.load_pem_x509_csr(csr_bytes)
        else:
            csr = x509.load_der_x509_csr(csr_bytes)
    except ValueError as exc:
        raise SerializationError(f"Malformed PKCS#10 request: {exc}", stage="build_csr", cause=exc) from exc
    if not csr.is_signature_valid:
        raise SerializationError("PKCS#10 request signature does not verify", stage="build_csr")
    return csr
