"""
Error taxonomy for certificate issuance.

Every error carries the *operation* (e.g. ``issue_signed``) and the *stage*
(e.g. ``sign``) it was raised from, so callers can decide between retrying the
whole issuance and aborting.  Nothing is committed before the merge step, so
``RemoteSigningFailed`` and ``KeyObtainFailed`` are always safe to retry.
"""
from __future__ import annotations

from typing import Optional


class PkiError(Exception):
    """
    Base class for all issuance errors.

    issuance_stage is the terminal IssuanceStage (e.g. SIGNING_FAILED) when the
    error ended a CertificateIssuer pipeline, else None.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        stage: str = "",
        cause: Optional[BaseException] = None,
    ) -> None:
        self.operation = operation
        self.stage = stage
        self.cause = cause
        self.issuance_stage = None
        prefix = "/".join(p for p in (operation, stage) if p)
        super().__init__(f"[{prefix}] {message}" if prefix else message)


class ValidationError(PkiError):
    """Bad or missing input, detected before any remote call."""


class KeyObtainFailed(PkiError):
    """The subject or signer key could not be created or fetched."""


class CsrBuildFailed(PkiError):
    """The certificate request could not be built (or was reused)."""


class UnsupportedAlgorithm(PkiError):
    """Hash algorithm other than SHA-256/384/512 was requested."""


class UnsupportedPadding(PkiError):
    """Signature padding other than PKCS#1 v1.5 was requested."""


class RemoteSigningFailed(PkiError):
    """The remote sign-digest call failed or timed out."""


class KeyMismatch(PkiError):
    """A certificate's public key does not match the pending key."""


class SerializationError(PkiError):
    """Malformed CSR / certificate / PKCS#12 bytes from a backend."""


class CommitFailed(PkiError):
    """The final merge / upload of the signed certificate failed."""
