"""
Unit tests for pki/signature.py — algorithm identifiers and the remote
signature generator.  The remote service is a call-counting stub.
"""
from __future__ import annotations

import hashlib

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from pki.errors import RemoteSigningFailed, UnsupportedAlgorithm, UnsupportedPadding
from pki.signature import (
    RSA_PKCS1_ALGORITHMS,
    LocalSignatureGenerator,
    RemoteSignatureGenerator,
    rsa_pkcs1_algorithm,
)

KEY_REF = "https://test-vault.vault.azure.net/keys/root/1"


@pytest.fixture()
def stub(counting_signer, signer_key):
    return counting_signer(signer_key)


@pytest.fixture()
def remote(stub, signer_key):
    return RemoteSignatureGenerator(stub, KEY_REF, signer_key.public_key())


# ─── Algorithm identifiers ────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "hash_algorithm, expected",
    [
        (hashes.SHA256(), "300d06092a864886f70d01010b0500"),
        (hashes.SHA384(), "300d06092a864886f70d01010c0500"),
        (hashes.SHA512(), "300d06092a864886f70d01010d0500"),
    ],
)
def test_algorithm_identifier_bytes(remote, hash_algorithm, expected):
    identifier = remote.algorithm_identifier(hash_algorithm)
    assert identifier == bytes.fromhex(expected)
    assert len(identifier) == 15


def test_remote_tags():
    assert [a.remote_tag for a in RSA_PKCS1_ALGORITHMS.values()] == ["RS256", "RS384", "RS512"]


def test_unsupported_hash_has_no_identifier(remote, stub):
    with pytest.raises(UnsupportedAlgorithm):
        remote.algorithm_identifier(hashes.SHA1())
    assert stub.calls == []


# ─── RemoteSignatureGenerator ─────────────────────────────────────────────────

def test_remote_signs_digest_only(remote, stub, signer_key):
    data = b"to-be-signed certificate bytes"
    signature = remote.produce_signature(data, hashes.SHA384(), padding.PKCS1v15())

    assert len(stub.calls) == 1
    key_ref, tag, digest = stub.calls[0]
    assert key_ref == KEY_REF
    assert tag == "RS384"
    assert digest == hashlib.sha384(data).digest()

    # verifies as an ordinary RSA-PKCS#1 v1.5 signature over the data
    signer_key.public_key().verify(signature, data, padding.PKCS1v15(), hashes.SHA384())


def test_remote_default_padding_is_pkcs1(remote, stub):
    remote.produce_signature(b"data", hashes.SHA256())
    assert stub.calls[0][1] == "RS256"


def test_unsupported_hash_makes_no_remote_call(remote, stub):
    with pytest.raises(UnsupportedAlgorithm):
        remote.produce_signature(b"data", hashes.SHA1(), padding.PKCS1v15())
    assert stub.calls == []


def test_unsupported_padding_makes_no_remote_call(remote, stub):
    pss = padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=32)
    with pytest.raises(UnsupportedPadding):
        remote.produce_signature(b"data", hashes.SHA256(), pss)
    assert stub.calls == []


def test_remote_failure_is_wrapped(counting_signer, signer_key):
    boom = ConnectionError("vault unreachable")
    failing = counting_signer(signer_key, fail_with=boom)
    generator = RemoteSignatureGenerator(failing, KEY_REF, signer_key.public_key())

    with pytest.raises(RemoteSigningFailed) as exc_info:
        generator.produce_signature(b"data", hashes.SHA384())

    assert exc_info.value.cause is boom
    assert exc_info.value.__cause__ is boom
    assert exc_info.value.stage == "sign"


def test_rsa_pkcs1_algorithm_lookup():
    assert rsa_pkcs1_algorithm(hashes.SHA512()).oid == "1.2.840.113549.1.1.13"


# ─── cryptography adapter ─────────────────────────────────────────────────────

def test_as_private_key_is_sign_only(remote, signer_key):
    key = remote.as_private_key()
    assert isinstance(key, rsa.RSAPrivateKey)
    assert key.key_size == signer_key.key_size
    assert key.public_key().public_numbers() == signer_key.public_key().public_numbers()

    with pytest.raises(NotImplementedError):
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    with pytest.raises(NotImplementedError):
        key.private_numbers()


def test_adapter_sign_routes_through_generator(remote, stub):
    remote.as_private_key().sign(b"tbs", padding.PKCS1v15(), hashes.SHA384())
    assert len(stub.calls) == 1


# ─── LocalSignatureGenerator ──────────────────────────────────────────────────

def test_local_generator_uses_real_key(subject_key):
    generator = LocalSignatureGenerator(subject_key)
    assert generator.as_private_key() is subject_key

    signature = generator.produce_signature(b"data", hashes.SHA256())
    subject_key.public_key().verify(signature, b"data", padding.PKCS1v15(), hashes.SHA256())


def test_local_generator_rejects_pss(subject_key):
    pss = padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=32)
    with pytest.raises(UnsupportedPadding):
        LocalSignatureGenerator(subject_key).produce_signature(b"data", hashes.SHA256(), pss)
