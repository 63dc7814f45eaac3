"""
Certificate issuance pipeline.

Every issuance walks the same stages:

    KEY_OBTAINED → CSR_BUILT → SIGNED → FINALIZED

and stops in KEY_OBTAIN_FAILED / CSR_BUILD_FAILED / SIGNING_FAILED /
COMMIT_FAILED on error.  There is no internal retry; everything before the
commit (the Key Vault merge, or handing back local bytes) is staging only, so
a caller may safely re-run a failed issuance from scratch.

The issuer keeps no per-issuance state, so one instance can serve many
concurrent issuances.
"""
from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional, Type

import requests
import structlog
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding

from keyvault.client import KeyVaultError
from keyvault.credentials import CredentialError
from pki.crypto import generate_serial_number, public_keys_match, validity_window
from pki.errors import (
    CommitFailed,
    CsrBuildFailed,
    KeyMismatch,
    KeyObtainFailed,
    PkiError,
    RemoteSigningFailed,
    ValidationError,
)
from pki.extensions import ExtensionParams, Role
from pki.keys import IssuanceArtifacts, KeyHandle, KeyMaterialProvider, SignerIdentity
from pki.request import CertificateRequest, CertificateRequestBuilder, SubjectIdentity
from pki.signature import rsa_pkcs1_algorithm

logger = logging.getLogger(__name__)

# Collaborator failures that get wrapped into the stage's error type.
_REMOTE_ERRORS = (KeyVaultError, CredentialError, requests.RequestException, OSError)
# Local failures of the cryptography builders.
_LOCAL_ERRORS = (ValueError, OverflowError)


class IssuanceStage(enum.Enum):
    KEY_OBTAINED = "key_obtained"
    CSR_BUILT = "csr_built"
    SIGNED = "signed"
    FINALIZED = "finalized"
    KEY_OBTAIN_FAILED = "key_obtain_failed"
    CSR_BUILD_FAILED = "csr_build_failed"
    SIGNING_FAILED = "signing_failed"
    COMMIT_FAILED = "commit_failed"

    @property
    def terminal(self) -> bool:
        return self not in (IssuanceStage.KEY_OBTAINED, IssuanceStage.CSR_BUILT, IssuanceStage.SIGNED)


@dataclass(frozen=True)
class SignedCertificate:
    certificate: x509.Certificate
    algorithm_identifier: bytes

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def issuer(self) -> x509.Name:
        return self.certificate.issuer

    @property
    def subject(self) -> x509.Name:
        return self.certificate.subject

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    def public_key(self):
        return self.certificate.public_key()

    @property
    def extensions(self) -> x509.Extensions:
        return self.certificate.extensions

    @property
    def signature(self) -> bytes:
        return self.certificate.signature

    @property
    def der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)


@dataclass(frozen=True)
class IssuanceResult:
    name: str
    certificate: SignedCertificate
    stage: IssuanceStage
    pkcs12: Optional[bytes] = None
    confirmation: Optional[dict[str, Any]] = None

    @property
    def der(self) -> bytes:
        return self.certificate.der


class _Issuance:
    """Stage tracker for one run of the pipeline."""

    def __init__(self, operation: str, name: str, on_failure: Callable[[], None]) -> None:
        self.operation = operation
        self.stage: Optional[IssuanceStage] = None
        self._on_failure = on_failure
        self._log = structlog.get_logger(__name__).bind(operation=operation, certificate=name)

    def advance(self, stage: IssuanceStage) -> None:
        self.stage = stage
        self._log.info("issuance stage", stage=stage.value)

    @contextmanager
    def step(self, failed: IssuanceStage, error_cls: Type[PkiError], label: str,
             wrap: tuple = _REMOTE_ERRORS) -> Iterator[None]:
        try:
            yield
        except PkiError as exc:
            self._fail(failed, exc)
            if not exc.operation:
                exc.operation = self.operation
            exc.issuance_stage = failed
            raise
        except wrap as exc:
            self._fail(failed, exc)
            error = error_cls(str(exc), operation=self.operation, stage=label, cause=exc)
            error.issuance_stage = failed
            raise error from exc

    def _fail(self, stage: IssuanceStage, exc: BaseException) -> None:
        self.stage = stage
        self._log.error("issuance failed", stage=stage.value, error=str(exc))
        self._on_failure()


class CertificateIssuer:
    """
    Issues certificates for every Role through one pipeline.

    provider: where subject keys live and how the result is committed.
    builder:  request builder (inject one with a stub resolver in tests).
    clock:    returns "now" as an aware UTC datetime.
    """

    def __init__(
        self,
        provider: KeyMaterialProvider,
        builder: Optional[CertificateRequestBuilder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.provider = provider
        self.builder = builder or CertificateRequestBuilder()
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    # ── Protocols ─────────────────────────────────────────────────────────

    def issue_self_signed(
        self,
        name: str,
        subject: SubjectIdentity,
        validity_months: int,
        extra: Optional[ExtensionParams] = None,
    ) -> IssuanceResult:
        """
        Bootstrap a trust anchor: the root request is signed by a generator
        bound to the same key, so issuer == subject.
        """
        _validate(name, subject, validity_months, self._clock())
        run = _Issuance("issue_self_signed", name, lambda: self._cleanup(name))

        with run.step(IssuanceStage.KEY_OBTAIN_FAILED, KeyObtainFailed, "obtain_key"):
            bootstrap = self.provider.bootstrap(name, subject)
            handle = self.provider.obtain(name, subject, validity_months, reuse=True)
            if not public_keys_match(bootstrap.public_key(), handle.public_key()):
                raise KeyMismatch(
                    f"Key of {name} changed between bootstrap and request",
                    operation=run.operation, stage="obtain_key",
                )
            signer = SignerIdentity(subject.name, bootstrap.signature_generator())
        run.advance(IssuanceStage.KEY_OBTAINED)

        return self._finish(run, name, subject, Role.ROOT_CA, handle, signer, validity_months, extra)

    def issue_signed(
        self,
        name: str,
        subject: SubjectIdentity,
        role: Role,
        signer: SignerIdentity,
        validity_months: int,
        extra: Optional[ExtensionParams] = None,
    ) -> IssuanceResult:
        """Issue an intermediate or leaf certificate under *signer*."""
        _validate(name, subject, validity_months, self._clock())
        if role is Role.ROOT_CA:
            raise ValidationError("A root certificate must be self-signed", operation="issue_signed", stage="validate")
        run = _Issuance("issue_signed", name, lambda: self._cleanup(name))

        with run.step(IssuanceStage.KEY_OBTAIN_FAILED, KeyObtainFailed, "obtain_key"):
            handle = self.provider.obtain(name, subject, validity_months, reuse=True)
        run.advance(IssuanceStage.KEY_OBTAINED)

        return self._finish(run, name, subject, role, handle, signer, validity_months, extra)

    def resolve_signer(self, name: str) -> SignerIdentity:
        """Look up an existing signer certificate and bind to its key."""
        try:
            return self.provider.resolve_signer(name)
        except _REMOTE_ERRORS as exc:
            raise KeyObtainFailed(
                f"Cannot resolve signer {name}: {exc}", operation="resolve_signer", stage="resolve_signer", cause=exc
            ) from exc

    # ── Steps ─────────────────────────────────────────────────────────────

    def sign_request(self, request: CertificateRequest, signer: SignerIdentity) -> SignedCertificate:
        """
        Sign *request* as *signer*.  The serial is drawn fresh here, the request
        is consumed, and the result is verified against the signer's key.
        """
        identifier = signer.generator.algorithm_identifier(request.hash_algorithm)
        request.consume()

        not_before, not_after = validity_window(request.validity_months, self._clock())
        builder = (
            x509.CertificateBuilder()
            .subject_name(request.subject.name)
            .issuer_name(signer.name)
            .public_key(request.public_key)
            .serial_number(generate_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
        )
        for extension, critical in request.x509_extensions():
            builder = builder.add_extension(extension, critical=critical)

        certificate = builder.sign(signer.generator.as_private_key(), request.hash_algorithm)

        expected_oid = rsa_pkcs1_algorithm(request.hash_algorithm).oid
        if certificate.signature_algorithm_oid.dotted_string != expected_oid:
            raise RemoteSigningFailed(
                f"Signature algorithm {certificate.signature_algorithm_oid.dotted_string} != {expected_oid}",
                stage="sign",
            )
        try:
            signer.generator.public_key().verify(
                certificate.signature,
                certificate.tbs_certificate_bytes,
                asym_padding.PKCS1v15(),
                request.hash_algorithm,
            )
        except InvalidSignature as exc:
            raise RemoteSigningFailed(
                "Signature does not verify against the signer's public key", stage="sign", cause=exc
            ) from exc
        return SignedCertificate(certificate, identifier)

    def merge(self, name: str, handle: KeyHandle, signed: SignedCertificate) -> IssuanceArtifacts:
        """Commit *signed* to the key/operation reserved by *handle*."""
        if not public_keys_match(handle.public_key(), signed.public_key()):
            raise KeyMismatch(f"Certificate public key does not match pending key {name}", stage="commit")
        return self.provider.commit(name, handle, signed.certificate)

    # ── Internal ──────────────────────────────────────────────────────────

    def _finish(
        self,
        run: _Issuance,
        name: str,
        subject: SubjectIdentity,
        role: Role,
        handle: KeyHandle,
        signer: SignerIdentity,
        validity_months: int,
        extra: Optional[ExtensionParams],
    ) -> IssuanceResult:
        with run.step(IssuanceStage.CSR_BUILD_FAILED, CsrBuildFailed, "build_csr", wrap=_REMOTE_ERRORS + _LOCAL_ERRORS):
            request = self.builder.build(subject, handle.public_key(), role, validity_months, extra)
        run.advance(IssuanceStage.CSR_BUILT)

        with run.step(IssuanceStage.SIGNING_FAILED, RemoteSigningFailed, "sign", wrap=_REMOTE_ERRORS + _LOCAL_ERRORS):
            signed = self.sign_request(request, signer)
        run.advance(IssuanceStage.SIGNED)

        with run.step(IssuanceStage.COMMIT_FAILED, CommitFailed, "commit"):
            artifacts = self.merge(name, handle, signed)
        run.advance(IssuanceStage.FINALIZED)

        return IssuanceResult(
            name=name,
            certificate=signed,
            stage=IssuanceStage.FINALIZED,
            pkcs12=artifacts.pkcs12,
            confirmation=artifacts.confirmation,
        )

    def _cleanup(self, name: str) -> None:
        try:
            self.provider.discard(name)
        except Exception as exc:  # primary error still propagates
            logger.warning("Cleanup of transient key %s failed: %s", name, exc)


def _validate(name: str, subject: SubjectIdentity, validity_months: int, now: datetime) -> None:
    if not name:
        raise ValidationError("Certificate name must not be empty", stage="validate")
    if not isinstance(subject, SubjectIdentity):
        raise ValidationError("subject must be a SubjectIdentity", stage="validate")
    if not isinstance(validity_months, int) or validity_months <= 0:
        raise ValidationError(f"validity_months must be > 0, got {validity_months}", stage="validate")
    # not_after must be representable
    validity_window(validity_months, now)
