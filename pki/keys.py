"""
Key handles and key-material providers.

A KeyHandle is either local (an owned key pair) or remote (a key held by Key
Vault, of which only the public key and a signing capability are known here).
Both expose the same capability: `public_key()` and `signature_generator()`.

Providers decide where subject keys come from:
  KeyVaultKeyProvider  — keys are created in Key Vault; the certificate is
                         committed by merging it into the pending operation.
  LocalKeyProvider     — keys are generated in-process; the certificate is
                         returned as DER (and PKCS#12 when exportable).
"""
from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from keyvault.base import ISSUER_SELF, ISSUER_UNKNOWN, CertificatePolicy, KeyVaultBackend
from pki.crypto import RSA_KEY_SIZE, export_pkcs12, generate_rsa_key, load_certificate, load_pkcs12
from pki.errors import KeyObtainFailed, ValidationError
from pki.request import SubjectIdentity, load_pkcs10
from pki.signature import LocalSignatureGenerator, RemoteSignatureGenerator, SignatureGenerator

logger = logging.getLogger(__name__)

# The temporary self-issued certificate only has to sign one request.
BOOTSTRAP_VALIDITY_MONTHS = 1


# ─── Handles ──────────────────────────────────────────────────────────────────


class KeyHandle(abc.ABC):
    name: str

    @abc.abstractmethod
    def public_key(self) -> rsa.RSAPublicKey:
        ...

    @abc.abstractmethod
    def signature_generator(self) -> SignatureGenerator:
        ...


@dataclass(frozen=True, eq=False)
class LocalKeyHandle(KeyHandle):
    name: str
    private_key: rsa.RSAPrivateKey
    exportable: bool = True

    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    def signature_generator(self) -> SignatureGenerator:
        return LocalSignatureGenerator(self.private_key)


@dataclass(frozen=True, eq=False)
class RemoteKeyHandle(KeyHandle):
    """
    key_ref is the Key Vault key id.  A key that only exists inside a pending
    create operation has no usable key_ref and cannot sign yet.
    """

    name: str
    uri: str
    remote_public_key: rsa.RSAPublicKey
    backend: KeyVaultBackend
    key_ref: Optional[str] = None

    def public_key(self) -> rsa.RSAPublicKey:
        return self.remote_public_key

    def signature_generator(self) -> SignatureGenerator:
        if not self.key_ref:
            raise KeyObtainFailed(f"Pending key {self.name} cannot sign until merged", stage="obtain_key")
        return RemoteSignatureGenerator(self.backend, self.key_ref, self.remote_public_key)


@dataclass(frozen=True)
class SignerIdentity:
    """Who signs: subject DN of the signer certificate plus its signing capability."""

    name: x509.Name
    generator: SignatureGenerator
    certificate: Optional[x509.Certificate] = None


@dataclass(frozen=True)
class IssuanceArtifacts:
    der: bytes
    pkcs12: Optional[bytes] = None
    confirmation: dict[str, Any] = field(default_factory=dict)


# ─── Providers ────────────────────────────────────────────────────────────────


class KeyMaterialProvider(abc.ABC):
    @abc.abstractmethod
    def obtain(self, name: str, subject: SubjectIdentity, validity_months: int, *, reuse: bool = True) -> KeyHandle:
        """A fresh handle for the subject key of certificate *name*."""

    @abc.abstractmethod
    def bootstrap(self, name: str, subject: SubjectIdentity) -> KeyHandle:
        """A signing-capable handle for a new self-signed trust anchor."""

    @abc.abstractmethod
    def resolve_signer(self, name: str) -> SignerIdentity:
        ...

    @abc.abstractmethod
    def commit(self, name: str, handle: KeyHandle, certificate: x509.Certificate) -> IssuanceArtifacts:
        """The single commit point of an issuance."""

    def discard(self, name: str) -> None:
        """Best-effort cleanup of transient key material."""


def resolve_keyvault_signer(backend: KeyVaultBackend, name: str) -> SignerIdentity:
    """Fetch the signer certificate and bind a remote generator to its key."""
    cer, key_ref = backend.get_existing_certificate(name)
    certificate = load_certificate(cer)
    public_key = certificate.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise KeyObtainFailed(f"Signer {name} does not hold an RSA key", stage="resolve_signer")
    return SignerIdentity(
        name=certificate.subject,
        generator=RemoteSignatureGenerator(backend, key_ref, public_key),
        certificate=certificate,
    )


def load_pkcs12_signer(data: bytes, password: Optional[str]) -> SignerIdentity:
    """Signer identity from a local PFX (key + certificate)."""
    key, certificate = load_pkcs12(data, password)
    return SignerIdentity(certificate.subject, LocalSignatureGenerator(key), certificate)


class KeyVaultKeyProvider(KeyMaterialProvider):
    def __init__(self, backend: KeyVaultBackend, key_size: int = RSA_KEY_SIZE, exportable: bool = False) -> None:
        self.backend = backend
        self.key_size = key_size
        self.exportable = exportable

    def obtain(self, name, subject, validity_months, *, reuse=True) -> KeyHandle:
        policy = CertificatePolicy(
            subject=subject.value,
            issuer_name=ISSUER_UNKNOWN,
            key_size=self.key_size,
            exportable=self.exportable,
            reuse_key=reuse,
            validity_months=validity_months,
        )
        self.backend.create_key(name, policy)
        csr = load_pkcs10(self.backend.get_pending_csr(name))
        return RemoteKeyHandle(
            name=name,
            uri=f"{getattr(self.backend, 'vault_uri', '')}/certificates/{name}",
            remote_public_key=csr.public_key(),
            backend=self.backend,
        )

    def bootstrap(self, name, subject) -> KeyHandle:
        policy = CertificatePolicy(
            subject=subject.value,
            issuer_name=ISSUER_SELF,
            key_size=self.key_size,
            exportable=False,
            reuse_key=False,
            validity_months=BOOTSTRAP_VALIDITY_MONTHS,
        )
        self.backend.create_key(name, policy)
        self.backend.wait_for_completion(name)
        signer = resolve_keyvault_signer(self.backend, name)
        return RemoteKeyHandle(
            name=name,
            uri=f"{getattr(self.backend, 'vault_uri', '')}/certificates/{name}",
            remote_public_key=signer.generator.public_key(),
            backend=self.backend,
            key_ref=signer.generator.key_ref,  # type: ignore[attr-defined]
        )

    def resolve_signer(self, name) -> SignerIdentity:
        return resolve_keyvault_signer(self.backend, name)

    def commit(self, name, handle, certificate) -> IssuanceArtifacts:
        der = certificate.public_bytes(serialization.Encoding.DER)
        confirmation = self.backend.merge_signed_certificate(name, der)
        return IssuanceArtifacts(der=der, confirmation=confirmation)


class LocalKeyProvider(KeyMaterialProvider):
    """
    In-process key pairs.  Keys are remembered per certificate name between
    `bootstrap`/`obtain` (so a reuse request binds to the same key) and
    forgotten on `discard`.
    """

    def __init__(
        self,
        key_size: int = RSA_KEY_SIZE,
        exportable: bool = True,
        password: Optional[str] = None,
        signer_backend: Optional[KeyVaultBackend] = None,
    ) -> None:
        self.key_size = key_size
        self.exportable = exportable
        self.password = password
        self.signer_backend = signer_backend
        self._keys: dict[str, rsa.RSAPrivateKey] = {}
        self._lock = threading.Lock()

    def obtain(self, name, subject, validity_months, *, reuse=True) -> KeyHandle:
        with self._lock:
            key = self._keys.get(name) if reuse else None
            if key is None:
                key = generate_rsa_key(self.key_size)
                self._keys[name] = key
        return LocalKeyHandle(name=name, private_key=key, exportable=self.exportable)

    def bootstrap(self, name, subject) -> KeyHandle:
        return self.obtain(name, subject, BOOTSTRAP_VALIDITY_MONTHS, reuse=False)

    def resolve_signer(self, name) -> SignerIdentity:
        if self.signer_backend is None:
            raise ValidationError(f"No key vault configured to resolve signer {name}", stage="resolve_signer")
        return resolve_keyvault_signer(self.signer_backend, name)

    def commit(self, name, handle, certificate) -> IssuanceArtifacts:
        der = certificate.public_bytes(serialization.Encoding.DER)
        pkcs12 = None
        if isinstance(handle, LocalKeyHandle) and handle.exportable and self.password:
            pkcs12 = export_pkcs12(name, handle.private_key, certificate, self.password)
        self.discard(name)
        return IssuanceArtifacts(der=der, pkcs12=pkcs12)

    def discard(self, name: str) -> None:
        with self._lock:
            self._keys.pop(name, None)
