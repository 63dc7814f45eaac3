"""
In-process key vault.

Implements KeyVaultBackend entirely in memory: keys never leave the object,
self-issued create operations complete immediately, others stay pending with
a CSR until a signed certificate is merged.  Used for offline runs and as the
remote service in tests (`sign_calls` counts remote signing round-trips).
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from keyvault.base import ISSUER_SELF, CertificatePolicy, KeyVaultBackend, PendingOperation
from keyvault.client import KeyVaultError, validate_certificate_name
from pki.crypto import (
    generate_rsa_key,
    generate_serial_number,
    load_certificate,
    load_pkcs12,
    public_keys_match,
    validity_window,
)
from pki.errors import KeyMismatch
from pki.request import SubjectIdentity

logger = logging.getLogger(__name__)

_TAG_HASHES = {"RS256": hashes.SHA256, "RS384": hashes.SHA384, "RS512": hashes.SHA512}


@dataclass
class _Entry:
    key: rsa.RSAPrivateKey
    version: int
    policy: CertificatePolicy
    certificate: Optional[x509.Certificate] = None
    pending_csr: Optional[bytes] = None
    versions: dict[int, rsa.RSAPrivateKey] = field(default_factory=dict)


class InMemoryKeyVault(KeyVaultBackend):
    def __init__(self, vault_uri: str = "memory://vault", key_size: Optional[int] = None) -> None:
        self.vault_uri = vault_uri.rstrip("/")
        # overrides the policy key size (tests use 2048 for speed)
        self.key_size = key_size
        self.sign_calls = 0
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    # ── Certificates ──────────────────────────────────────────────────────

    def create_key(self, name: str, policy: CertificatePolicy) -> PendingOperation:
        validate_certificate_name(name)
        with self._lock:
            entry = self._entries.get(name)
            if entry is not None and policy.reuse_key:
                key, version = entry.key, entry.version
            else:
                key = generate_rsa_key(self.key_size or policy.key_size)
                version = entry.version + 1 if entry else 1
            if entry is None:
                entry = _Entry(key=key, version=version, policy=policy)
                self._entries[name] = entry
            entry.key, entry.version, entry.policy = key, version, policy
            entry.versions[version] = key

            if policy.issuer_name == ISSUER_SELF:
                entry.certificate = _self_issue(key, policy)
                entry.pending_csr = None
                logger.info("Created self-issued certificate %s (version %d)", name, version)
                return PendingOperation(name=name, status="completed")

            entry.pending_csr = _csr(key, policy.subject)
            logger.info("Created pending operation %s (version %d)", name, version)
            return PendingOperation(name=name, status="inProgress", csr=entry.pending_csr)

    def get_pending_csr(self, name: str) -> bytes:
        entry = self._entry(name)
        if entry.pending_csr is None:
            raise KeyVaultError(404, {"error": {"code": "PendingCertificateNotFound", "message": f"No pending operation for {name}"}})
        return entry.pending_csr

    def wait_for_completion(self, name: str) -> PendingOperation:
        entry = self._entry(name)
        status = "inProgress" if entry.pending_csr is not None else "completed"
        return PendingOperation(name=name, status=status, csr=entry.pending_csr)

    def get_existing_certificate(self, name: str) -> tuple[bytes, str]:
        entry = self._entry(name)
        if entry.certificate is None:
            raise KeyVaultError(404, {"error": {"code": "CertificateNotFound", "message": f"{name} has no certificate yet"}})
        return entry.certificate.public_bytes(serialization.Encoding.DER), self._key_ref(name, entry.version)

    def merge_signed_certificate(self, name: str, cert_bytes: bytes) -> dict[str, Any]:
        certificate = load_certificate(cert_bytes)
        with self._lock:
            entry = self._entry(name)
            if entry.pending_csr is None:
                raise KeyVaultError(404, {"error": {"code": "PendingCertificateNotFound", "message": f"No pending operation for {name}"}})
            if not public_keys_match(entry.key.public_key(), certificate.public_key()):
                raise KeyMismatch(f"Certificate public key does not match pending operation {name}", stage="commit")
            entry.certificate = certificate
            entry.pending_csr = None
        logger.info("Merged certificate into %s", name)
        return {"id": f"{self.vault_uri}/certificates/{name}/{entry.version}", "kid": self._key_ref(name, entry.version)}

    def import_pkcs12(self, name: str, data: bytes, password: Optional[str]) -> dict[str, Any]:
        validate_certificate_name(name)
        key, certificate = load_pkcs12(data, password)
        with self._lock:
            entry = self._entries.get(name)
            version = entry.version + 1 if entry else 1
            policy = CertificatePolicy(subject=certificate.subject.rfc4514_string(), exportable=True)
            new = _Entry(key=key, version=version, policy=policy, certificate=certificate)
            new.versions = dict(entry.versions) if entry else {}
            new.versions[version] = key
            self._entries[name] = new
        return {"id": f"{self.vault_uri}/certificates/{name}/{version}", "kid": self._key_ref(name, version)}

    def delete_certificate(self, name: str) -> None:
        with self._lock:
            if self._entries.pop(name, None) is None:
                raise KeyVaultError(404, {"error": {"code": "CertificateNotFound", "message": name}})

    # ── Keys ──────────────────────────────────────────────────────────────

    def sign_digest(self, key_ref: str, algorithm_tag: str, digest: bytes) -> bytes:
        try:
            hash_cls = _TAG_HASHES[algorithm_tag]
        except KeyError:
            raise KeyVaultError(400, {"error": {"code": "BadParameter", "message": f"Unsupported alg {algorithm_tag}"}}) from None
        key = self._key_for_ref(key_ref)
        with self._lock:
            self.sign_calls += 1
        return key.sign(digest, padding.PKCS1v15(), Prehashed(hash_cls()))

    # ── Internal ──────────────────────────────────────────────────────────

    def _entry(self, name: str) -> _Entry:
        entry = self._entries.get(validate_certificate_name(name))
        if entry is None:
            raise KeyVaultError(404, {"error": {"code": "CertificateNotFound", "message": f"{name} not found"}})
        return entry

    def _key_ref(self, name: str, version: int) -> str:
        return f"{self.vault_uri}/keys/{name}/{version}"

    def _key_for_ref(self, key_ref: str) -> rsa.RSAPrivateKey:
        prefix = f"{self.vault_uri}/keys/"
        name, _, version = key_ref[len(prefix):].partition("/") if key_ref.startswith(prefix) else ("", "", "")
        entry = self._entries.get(name)
        if entry is None or not version.isdigit() or int(version) not in entry.versions:
            raise KeyVaultError(404, {"error": {"code": "KeyNotFound", "message": key_ref}})
        return entry.versions[int(version)]


def _csr(key: rsa.RSAPrivateKey, subject: str) -> bytes:
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(SubjectIdentity.parse(subject).name)
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.DER)


def _self_issue(key: rsa.RSAPrivateKey, policy: CertificatePolicy) -> x509.Certificate:
    name = SubjectIdentity.parse(policy.subject).name
    not_before, not_after = validity_window(policy.validity_months)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(generate_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
