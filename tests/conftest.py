"""
Shared pytest fixtures.

Keys are 2048-bit throughout the suite to keep key generation fast; nothing in
the issuance path depends on the key size.

`vault` is an in-memory Key Vault, so issuance tests exercise the full remote
path (create → pending CSR → digest signing → merge) without network access.
"""
from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from keyvault.memory import InMemoryKeyVault
from pki.crypto import generate_rsa_key
from pki.issuer import CertificateIssuer
from pki.keys import KeyVaultKeyProvider, LocalKeyProvider
from pki.request import CertificateRequestBuilder

TEST_KEY_SIZE = 2048

_TAG_HASHES = {"RS256": hashes.SHA256, "RS384": hashes.SHA384, "RS512": hashes.SHA512}


class CountingSigner:
    """Digest signer backed by a local key that records every remote call."""

    def __init__(self, private_key, fail_with: Exception | None = None) -> None:
        self.private_key = private_key
        self.fail_with = fail_with
        self.calls: list[tuple[str, str, bytes]] = []

    def sign_digest(self, key_ref: str, algorithm_tag: str, digest: bytes) -> bytes:
        self.calls.append((key_ref, algorithm_tag, digest))
        if self.fail_with is not None:
            raise self.fail_with
        return self.private_key.sign(digest, padding.PKCS1v15(), Prehashed(_TAG_HASHES[algorithm_tag]()))


# ─── Keys ─────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def signer_key():
    return generate_rsa_key(TEST_KEY_SIZE)


@pytest.fixture(scope="session")
def subject_key():
    return generate_rsa_key(TEST_KEY_SIZE)


# ─── Issuance wiring ──────────────────────────────────────────────────────────

@pytest.fixture()
def builder():
    """Request builder whose hostname lookups always fail (no DNS in tests)."""
    return CertificateRequestBuilder(resolver=lambda name: None)


@pytest.fixture()
def vault():
    return InMemoryKeyVault(vault_uri="https://test-vault.vault.azure.net", key_size=TEST_KEY_SIZE)


@pytest.fixture()
def kv_issuer(vault, builder):
    return CertificateIssuer(KeyVaultKeyProvider(vault, key_size=TEST_KEY_SIZE), builder=builder)


@pytest.fixture()
def local_issuer(vault, builder):
    provider = LocalKeyProvider(key_size=TEST_KEY_SIZE, password="pfx-pass", signer_backend=vault)
    return CertificateIssuer(provider, builder=builder)


@pytest.fixture()
def counting_signer():
    """The CountingSigner class, for tests that build their own stub."""
    return CountingSigner
