"""
Issuance pipeline tests against the in-memory Key Vault.

Covers the self-signed root round trip, chains built under it, serial and
validity rules, KeyMismatch on merge, stage reporting on failure and
concurrent issuance through one issuer.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, SignatureAlgorithmOID

from keyvault.client import KeyVaultError
from pki.crypto import add_months, generate_serial_number, load_certificate
from pki.errors import CommitFailed, KeyMismatch, KeyObtainFailed, RemoteSigningFailed, ValidationError
from pki.extensions import ExtensionParams, Role
from pki.issuer import CertificateIssuer, IssuanceStage
from pki.keys import KeyVaultKeyProvider, LocalKeyProvider, SignerIdentity
from pki.request import SubjectIdentity
from pki.signature import RemoteSignatureGenerator

TEST_KEY_SIZE = 2048
ROOT = SubjectIdentity.parse("CN=Test Root")


def _verify_with(certificate: x509.Certificate, public_key) -> None:
    public_key.verify(
        certificate.signature,
        certificate.tbs_certificate_bytes,
        padding.PKCS1v15(),
        certificate.signature_hash_algorithm,
    )


@pytest.fixture()
def root(kv_issuer):
    return kv_issuer.issue_self_signed("test-root", ROOT, 120)


# ─── Self-signed root ─────────────────────────────────────────────────────────

def test_self_signed_root_round_trip(root, vault):
    cert = root.certificate.certificate
    assert root.stage is IssuanceStage.FINALIZED
    assert cert.issuer == cert.subject == ROOT.name
    assert cert.signature_algorithm_oid == SignatureAlgorithmOID.RSA_WITH_SHA384

    bc = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    assert bc.value.ca is True and bc.critical

    # verifies with its own public key
    _verify_with(cert, cert.public_key())

    # the certificate is now what the vault serves for the name
    cer, _ = vault.get_existing_certificate("test-root")
    assert load_certificate(cer) == cert


def test_root_validity_window(root):
    cert = root.certificate
    now = datetime.now(tz=timezone.utc)
    assert now - timedelta(days=1, minutes=5) <= cert.not_before <= now - timedelta(days=1) + timedelta(minutes=5)
    assert cert.not_after == add_months(cert.not_before, 120)
    assert cert.not_after - cert.not_before >= timedelta(days=365 * 10)


def test_root_code_signing_eku(root):
    eku = root.certificate.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
    assert list(eku.value) == [ExtendedKeyUsageOID.CODE_SIGNING]


def test_root_signature_is_remote(root, vault):
    # one signature for the root itself; the bootstrap certificate is self-issued by the vault
    assert vault.sign_calls == 1
    assert root.certificate.algorithm_identifier == bytes.fromhex("300d06092a864886f70d01010c0500")


def test_validity_clock_is_injectable(vault, builder):
    fixed = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)
    issuer = CertificateIssuer(KeyVaultKeyProvider(vault, key_size=TEST_KEY_SIZE), builder=builder, clock=lambda: fixed)
    result = issuer.issue_self_signed("clocked-root", ROOT, 1)
    assert result.certificate.not_before == datetime(2024, 1, 30, 12, 0, tzinfo=timezone.utc)
    assert result.certificate.not_after == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)


# ─── Chains ───────────────────────────────────────────────────────────────────

def test_intermediate_and_leaf_chain(kv_issuer, root):
    root_signer = kv_issuer.resolve_signer("test-root")
    assert root_signer.name == ROOT.name

    intermediate = kv_issuer.issue_signed(
        "issuing-ca", SubjectIdentity.parse("CN=Issuing CA"), Role.INTERMEDIATE_CA, root_signer, 60
    )
    inter_cert = intermediate.certificate.certificate
    inter_cert.verify_directly_issued_by(root.certificate.certificate)
    assert inter_cert.issuer == ROOT.name

    leaf = kv_issuer.issue_signed(
        "code-signer",
        SubjectIdentity.parse("CN=Code Signer"),
        Role.CODE_SIGNING,
        kv_issuer.resolve_signer("issuing-ca"),
        12,
    )
    leaf.certificate.certificate.verify_directly_issued_by(inter_cert)


def test_code_signing_scenario(kv_issuer, root):
    result = kv_issuer.issue_signed(
        "code-signer", SubjectIdentity.parse("CN=Code Signer"), Role.CODE_SIGNING,
        kv_issuer.resolve_signer("test-root"), 1,
    )
    ext = result.certificate.extensions
    assert list(ext.get_extension_for_class(x509.ExtendedKeyUsage).value) == [ExtendedKeyUsageOID.CODE_SIGNING]

    ku = ext.get_extension_for_class(x509.KeyUsage).value
    assert ku.digital_signature
    assert not (ku.key_cert_sign or ku.crl_sign or ku.key_encipherment or ku.content_commitment)
    assert ext.get_extension_for_class(x509.BasicConstraints).value.ca is False


def test_ssl_server_certificate(kv_issuer, root):
    result = kv_issuer.issue_signed(
        "web01", SubjectIdentity.parse("CN=web01"), Role.SSL_SERVER,
        kv_issuer.resolve_signer("test-root"), 12,
        ExtensionParams(dns_names=("web01.example.com",)),
    )
    san = result.certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert san.critical
    assert san.value.get_values_for_type(x509.DNSName) == ["web01.example.com"]


def test_repeated_issuance_differs_only_in_serial_and_signature(kv_issuer, root):
    signer = kv_issuer.resolve_signer("test-root")
    subject = SubjectIdentity.parse("CN=Code Signer")
    first = kv_issuer.issue_signed("signer-a", subject, Role.CODE_SIGNING, signer, 1)
    second = kv_issuer.issue_signed("signer-b", subject, Role.CODE_SIGNING, signer, 1)

    assert first.certificate.serial_number != second.certificate.serial_number
    assert first.certificate.signature != second.certificate.signature
    assert list(first.certificate.extensions) == list(second.certificate.extensions)


def test_root_cannot_be_issued_signed(kv_issuer, root):
    with pytest.raises(ValidationError):
        kv_issuer.issue_signed("other-root", ROOT, Role.ROOT_CA, kv_issuer.resolve_signer("test-root"), 1)


# ─── Serials ──────────────────────────────────────────────────────────────────

def test_serial_numbers_unique():
    serials = {generate_serial_number() for _ in range(1000)}
    assert len(serials) == 1000
    assert all(0 < s < 2 ** 72 for s in serials)


# ─── Local key material ───────────────────────────────────────────────────────

def test_local_leaf_signed_by_vault_key(local_issuer, kv_issuer, root):
    result = local_issuer.issue_signed(
        "signer-pfx", SubjectIdentity.parse("CN=Local Signer"), Role.CODE_SIGNING,
        local_issuer.resolve_signer("test-root"), 1,
    )
    assert result.pkcs12 is not None
    key, cert, _ = pkcs12.load_key_and_certificates(result.pkcs12, b"pfx-pass")
    assert cert == result.certificate.certificate
    assert key.public_key().public_numbers() == cert.public_key().public_numbers()
    cert.verify_directly_issued_by(root.certificate.certificate)


def test_local_root_without_password_has_no_pfx(builder):
    issuer = CertificateIssuer(LocalKeyProvider(key_size=TEST_KEY_SIZE), builder=builder)
    result = issuer.issue_self_signed("local-root", ROOT, 12)
    assert result.pkcs12 is None
    _verify_with(result.certificate.certificate, result.certificate.public_key())


def test_local_provider_without_backend_cannot_resolve(builder):
    issuer = CertificateIssuer(LocalKeyProvider(key_size=TEST_KEY_SIZE), builder=builder)
    with pytest.raises(ValidationError):
        issuer.resolve_signer("test-root")


# ─── Failures ─────────────────────────────────────────────────────────────────

def test_merge_rejects_foreign_key(kv_issuer, vault, root, subject_key):
    handle = kv_issuer.provider.obtain("pending-leaf", SubjectIdentity.parse("CN=leaf"), 1)
    request = kv_issuer.builder.build(SubjectIdentity.parse("CN=leaf"), subject_key.public_key(), Role.CODE_SIGNING, 1)
    signed = kv_issuer.sign_request(request, kv_issuer.resolve_signer("test-root"))

    with pytest.raises(KeyMismatch):
        kv_issuer.merge("pending-leaf", handle, signed)
    # nothing was committed
    assert vault.wait_for_completion("pending-leaf").status == "inProgress"


def test_vault_rejects_foreign_key_on_merge(vault, subject_key, root, kv_issuer):
    kv_issuer.provider.obtain("pending-leaf", SubjectIdentity.parse("CN=leaf"), 1)
    request = kv_issuer.builder.build(SubjectIdentity.parse("CN=leaf"), subject_key.public_key(), Role.CODE_SIGNING, 1)
    signed = kv_issuer.sign_request(request, kv_issuer.resolve_signer("test-root"))
    with pytest.raises(KeyMismatch):
        vault.merge_signed_certificate("pending-leaf", signed.der)


def test_missing_signer_is_key_obtain_failure(kv_issuer):
    with pytest.raises(KeyObtainFailed) as exc_info:
        kv_issuer.resolve_signer("does-not-exist")
    assert isinstance(exc_info.value.cause, KeyVaultError)
    assert exc_info.value.cause.status_code == 404


def test_signing_failure_reports_stage(kv_issuer, vault, root, counting_signer, signer_key):
    failing = counting_signer(signer_key, fail_with=KeyVaultError(403, {"error": {"code": "Forbidden"}}))
    signer = SignerIdentity(ROOT.name, RemoteSignatureGenerator(failing, "kid", signer_key.public_key()))

    with pytest.raises(RemoteSigningFailed) as exc_info:
        kv_issuer.issue_signed("leaf", SubjectIdentity.parse("CN=leaf"), Role.CODE_SIGNING, signer, 1)
    assert exc_info.value.operation == "issue_signed"
    assert exc_info.value.issuance_stage is IssuanceStage.SIGNING_FAILED
    assert len(failing.calls) == 1
    # the pending operation was never merged
    assert vault.wait_for_completion("leaf").status == "inProgress"


def test_wrong_signer_key_fails_verification(kv_issuer, root, signer_key, subject_key, counting_signer):
    # generator claims subject_key's public key but signs with signer_key
    liar = SignerIdentity(
        ROOT.name, RemoteSignatureGenerator(counting_signer(signer_key), "kid", subject_key.public_key())
    )
    with pytest.raises(RemoteSigningFailed):
        kv_issuer.issue_signed("leaf", SubjectIdentity.parse("CN=leaf"), Role.CODE_SIGNING, liar, 1)


def test_zero_validity_rejected_before_any_key_work(kv_issuer, vault):
    with pytest.raises(ValidationError):
        kv_issuer.issue_self_signed("zero-root", ROOT, 0)
    with pytest.raises(KeyVaultError):
        vault.get_existing_certificate("zero-root")


def test_obtain_failure_reports_stage(kv_issuer, vault, root, monkeypatch):
    signer = kv_issuer.resolve_signer("test-root")

    def refuse(name, policy):
        raise KeyVaultError(403, {"error": {"code": "Forbidden", "message": "certificates/create denied"}})

    monkeypatch.setattr(vault, "create_key", refuse)
    with pytest.raises(KeyObtainFailed) as exc_info:
        kv_issuer.issue_signed("leaf", SubjectIdentity.parse("CN=leaf"), Role.CODE_SIGNING, signer, 1)
    assert exc_info.value.issuance_stage is IssuanceStage.KEY_OBTAIN_FAILED
    assert exc_info.value.operation == "issue_signed"
    assert isinstance(exc_info.value.cause, KeyVaultError)


def test_unicode_dns_name_fails_before_signing(kv_issuer, vault, root):
    signer = kv_issuer.resolve_signer("test-root")
    with pytest.raises(ValidationError) as exc_info:
        kv_issuer.issue_signed(
            "web01", SubjectIdentity.parse("CN=web01"), Role.SSL_SERVER, signer, 12,
            ExtensionParams(dns_names=("bücher.example",)),
        )
    assert exc_info.value.issuance_stage is IssuanceStage.CSR_BUILD_FAILED
    assert exc_info.value.operation == "issue_signed"
    # only the root was ever signed
    assert vault.sign_calls == 1
    assert vault.wait_for_completion("web01").status == "inProgress"


def test_out_of_range_validity_rejected_before_any_key_work(kv_issuer, vault):
    with pytest.raises(ValidationError):
        kv_issuer.issue_self_signed("big-root", ROOT, 200000)
    with pytest.raises(KeyVaultError):
        vault.get_existing_certificate("big-root")


class RecordingProvider(KeyVaultKeyProvider):
    """Key Vault provider that remembers which names were discarded."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.discarded: list[str] = []

    def discard(self, name: str) -> None:
        self.discarded.append(name)


def test_commit_failure_reports_stage_and_cleans_up(vault, builder, monkeypatch):
    provider = RecordingProvider(vault, key_size=TEST_KEY_SIZE)
    issuer = CertificateIssuer(provider, builder=builder)
    root = issuer.issue_self_signed("test-root", ROOT, 12)
    assert provider.discarded == []

    def conflict(name, cert_bytes):
        raise KeyVaultError(409, {"error": {"code": "Conflict", "message": "pending operation cancelled"}})

    monkeypatch.setattr(vault, "merge_signed_certificate", conflict)
    with pytest.raises(CommitFailed) as exc_info:
        issuer.issue_signed(
            "leaf", SubjectIdentity.parse("CN=leaf"), Role.CODE_SIGNING, issuer.resolve_signer("test-root"), 1
        )
    assert exc_info.value.issuance_stage is IssuanceStage.COMMIT_FAILED
    assert exc_info.value.cause.status_code == 409
    assert provider.discarded == ["leaf"]
    assert root.stage is IssuanceStage.FINALIZED


def test_local_key_discarded_after_failed_commit(builder, monkeypatch):
    provider = LocalKeyProvider(key_size=TEST_KEY_SIZE, password="pfx-pass")
    issuer = CertificateIssuer(provider, builder=builder)
    handles = []
    obtain = provider.obtain

    def remember(*args, **kwargs):
        handle = obtain(*args, **kwargs)
        handles.append(handle)
        return handle

    def broken_export(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(provider, "obtain", remember)
    monkeypatch.setattr("pki.keys.export_pkcs12", broken_export)
    with pytest.raises(CommitFailed) as exc_info:
        issuer.issue_self_signed("local-root", ROOT, 12)
    assert exc_info.value.issuance_stage is IssuanceStage.COMMIT_FAILED

    # the failed key is forgotten; a retry starts from a fresh key
    retry = obtain("local-root", ROOT, 12, reuse=True)
    assert retry.private_key is not handles[-1].private_key


# ─── Concurrency ──────────────────────────────────────────────────────────────

def test_concurrent_issuance(kv_issuer, root):
    signer = kv_issuer.resolve_signer("test-root")

    def issue(i: int):
        return kv_issuer.issue_signed(
            f"leaf-{i}", SubjectIdentity.parse(f"CN=leaf {i}"), Role.CODE_SIGNING, signer, 1
        )

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(issue, range(8)))

    assert {r.stage for r in results} == {IssuanceStage.FINALIZED}
    assert len({r.certificate.serial_number for r in results}) == 8
    for result in results:
        result.certificate.certificate.verify_directly_issued_by(root.certificate.certificate)
