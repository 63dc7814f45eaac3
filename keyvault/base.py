"""
The remote key capability consumed by the issuer.

A backend holds RSA keys and certificates by name and exposes only what
issuance needs: create a key (optionally self-issued), read the pending CSR,
sign a digest, fetch an existing certificate, merge a signed certificate into
a pending operation, import a PFX and delete.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Optional

ISSUER_SELF = "Self"
ISSUER_UNKNOWN = "Unknown"


@dataclass(frozen=True)
class CertificatePolicy:
    subject: str
    issuer_name: str = ISSUER_UNKNOWN
    key_size: int = 4096
    exportable: bool = False
    reuse_key: bool = True
    validity_months: int = 1

    def to_json(self) -> dict:
        """Key Vault certificate policy body."""
        return {
            "key_props": {
                "exportable": self.exportable,
                "kty": "RSA",
                "key_size": self.key_size,
                "reuse_key": self.reuse_key,
            },
            "secret_props": {"contentType": "application/x-pkcs12"},
            "x509_props": {
                "subject": self.subject,
                "validity_months": self.validity_months,
            },
            "issuer": {"name": self.issuer_name},
        }


@dataclass(frozen=True)
class PendingOperation:
    name: str
    status: str                   # inProgress | completed | failed | cancelled
    csr: Optional[bytes] = None   # DER PKCS#10, present while inProgress
    request_id: str = ""

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class KeyVaultBackend(abc.ABC):
    @abc.abstractmethod
    def create_key(self, name: str, policy: CertificatePolicy) -> PendingOperation:
        ...

    @abc.abstractmethod
    def get_pending_csr(self, name: str) -> bytes:
        """DER PKCS#10 request of the pending create operation for *name*."""

    @abc.abstractmethod
    def wait_for_completion(self, name: str) -> PendingOperation:
        """Block until a self-issued create operation has finished."""

    @abc.abstractmethod
    def sign_digest(self, key_ref: str, algorithm_tag: str, digest: bytes) -> bytes:
        ...

    @abc.abstractmethod
    def get_existing_certificate(self, name: str) -> tuple[bytes, str]:
        """Return (DER certificate, key reference) of the current version."""

    @abc.abstractmethod
    def merge_signed_certificate(self, name: str, cert_bytes: bytes) -> dict[str, Any]:
        """Commit *cert_bytes* into the pending operation; returns a confirmation."""

    @abc.abstractmethod
    def import_pkcs12(self, name: str, data: bytes, password: Optional[str]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    def delete_certificate(self, name: str) -> None:
        ...
