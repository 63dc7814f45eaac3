"""
Unit tests for pki/keys.py — key handles and the two key-material providers.
"""
from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from pki.crypto import public_keys_match
from pki.errors import KeyObtainFailed
from pki.keys import KeyVaultKeyProvider, LocalKeyHandle, LocalKeyProvider, RemoteKeyHandle
from pki.request import SubjectIdentity
from pki.signature import RemoteSignatureGenerator

SUBJECT = SubjectIdentity.parse("CN=Test Root")


@pytest.fixture()
def provider(vault):
    return KeyVaultKeyProvider(vault, key_size=2048)


def test_obtain_creates_pending_operation(provider, vault):
    handle = provider.obtain("leaf", SUBJECT, 12)
    assert isinstance(handle, RemoteKeyHandle)
    assert handle.uri == "https://test-vault.vault.azure.net/certificates/leaf"
    assert vault.wait_for_completion("leaf").status == "inProgress"


def test_pending_handle_cannot_sign(provider):
    handle = provider.obtain("leaf", SUBJECT, 12)
    with pytest.raises(KeyObtainFailed):
        handle.signature_generator()


def test_bootstrap_handle_signs_remotely(provider, vault):
    handle = provider.bootstrap("root", SUBJECT)
    generator = handle.signature_generator()
    assert isinstance(generator, RemoteSignatureGenerator)

    signature = generator.produce_signature(b"data", hashes.SHA384())
    handle.public_key().verify(signature, b"data", padding.PKCS1v15(), hashes.SHA384())
    assert vault.sign_calls == 1


def test_obtain_after_bootstrap_reuses_key(provider):
    bootstrap = provider.bootstrap("root", SUBJECT)
    handle = provider.obtain("root", SUBJECT, 120, reuse=True)
    assert public_keys_match(bootstrap.public_key(), handle.public_key())


def test_obtain_without_reuse_rotates_key(provider):
    first = provider.obtain("leaf", SUBJECT, 1)
    second = provider.obtain("leaf", SUBJECT, 1, reuse=False)
    assert not public_keys_match(first.public_key(), second.public_key())


def test_local_provider_reuse_and_discard():
    provider = LocalKeyProvider(key_size=2048)
    first = provider.bootstrap("root", SUBJECT)
    again = provider.obtain("root", SUBJECT, 12, reuse=True)
    assert isinstance(first, LocalKeyHandle)
    assert again.private_key is first.private_key

    provider.discard("root")
    fresh = provider.obtain("root", SUBJECT, 12, reuse=True)
    assert fresh.private_key is not first.private_key
