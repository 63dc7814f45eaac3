"""
X.509 signature generators.

A SignatureGenerator is the capability "sign these bytes and tell me how the
signature is identified".  Two implementations share the interface:

  LocalSignatureGenerator   — wraps an in-process RSA key.
  RemoteSignatureGenerator  — hashes locally and sends only the digest to a
                              remote key service (Azure Key Vault).  The private
                              key never leaves the service.

`cryptography`'s CertificateBuilder wants a private-key object, so
`as_private_key()` returns an RSAPrivateKey whose only working operation is
`sign`, routed back through the generator.
"""
from __future__ import annotations

import abc
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import AsymmetricPadding

from pki.errors import RemoteSigningFailed, UnsupportedAlgorithm, UnsupportedPadding

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RsaPkcs1Algorithm:
    hash_name: str
    remote_tag: str
    oid: str
    identifier: bytes   # DER AlgorithmIdentifier SEQUENCE, NULL parameters


# SEQUENCE { OID 1.2.840.113549.1.1.n, NULL }
_RSA_PKCS1_PREFIX = bytes([0x30, 0x0D, 0x06, 0x09, 0x2A, 0x86, 0x48, 0x86, 0xF7, 0x0D, 0x01, 0x01])
_NULL = bytes([0x05, 0x00])

RSA_PKCS1_ALGORITHMS = {
    "sha256": RsaPkcs1Algorithm("sha256", "RS256", "1.2.840.113549.1.1.11", _RSA_PKCS1_PREFIX + bytes([11]) + _NULL),
    "sha384": RsaPkcs1Algorithm("sha384", "RS384", "1.2.840.113549.1.1.12", _RSA_PKCS1_PREFIX + bytes([12]) + _NULL),
    "sha512": RsaPkcs1Algorithm("sha512", "RS512", "1.2.840.113549.1.1.13", _RSA_PKCS1_PREFIX + bytes([13]) + _NULL),
}

DEFAULT_HASH = hashes.SHA384()


def rsa_pkcs1_algorithm(hash_algorithm: hashes.HashAlgorithm) -> RsaPkcs1Algorithm:
    """Look up the RSA-PKCS#1 v1.5 entry for *hash_algorithm* or fail fast."""
    name = getattr(hash_algorithm, "name", None)
    try:
        return RSA_PKCS1_ALGORITHMS[name]  # type: ignore[index]
    except KeyError:
        raise UnsupportedAlgorithm(
            f"The hash algorithm {name or hash_algorithm!r} is not supported "
            f"(expected one of {', '.join(RSA_PKCS1_ALGORITHMS)})",
            stage="sign",
        ) from None


def ensure_pkcs1v15(padding: Optional[AsymmetricPadding]) -> None:
    if padding is not None and not isinstance(padding, asym_padding.PKCS1v15):
        raise UnsupportedPadding(
            f"The padding algorithm {padding.name} is not supported", stage="sign"
        )


class DigestSigner(Protocol):
    """The remote capability consumed by RemoteSignatureGenerator."""

    def sign_digest(self, key_ref: str, algorithm_tag: str, digest: bytes) -> bytes: ...


# ─── Generators ───────────────────────────────────────────────────────────────


class SignatureGenerator(abc.ABC):
    """Produces X.509 signature values for one fixed key."""

    @abc.abstractmethod
    def produce_signature(
        self,
        data: bytes,
        hash_algorithm: hashes.HashAlgorithm,
        padding: Optional[AsymmetricPadding] = None,
    ) -> bytes:
        """Sign *data* (the TBS bytes) with RSA-PKCS#1 v1.5 over *hash_algorithm*."""

    @abc.abstractmethod
    def public_key(self) -> rsa.RSAPublicKey:
        ...

    def algorithm_identifier(self, hash_algorithm: hashes.HashAlgorithm) -> bytes:
        """DER AlgorithmIdentifier for RSA-PKCS#1 v1.5 with *hash_algorithm*."""
        return rsa_pkcs1_algorithm(hash_algorithm).identifier

    def as_private_key(self) -> rsa.RSAPrivateKey:
        """A key object `x509.CertificateBuilder.sign` accepts."""
        return _GeneratorBackedRSAKey(self)


class LocalSignatureGenerator(SignatureGenerator):
    def __init__(self, private_key: rsa.RSAPrivateKey) -> None:
        self._key = private_key

    def produce_signature(self, data, hash_algorithm, padding=None) -> bytes:
        rsa_pkcs1_algorithm(hash_algorithm)
        ensure_pkcs1v15(padding)
        return self._key.sign(data, asym_padding.PKCS1v15(), hash_algorithm)

    def public_key(self) -> rsa.RSAPublicKey:
        return self._key.public_key()

    def as_private_key(self) -> rsa.RSAPrivateKey:
        return self._key


class RemoteSignatureGenerator(SignatureGenerator):
    """
    Signs through `signer.sign_digest(key_ref, tag, digest)`.

    Hash and padding are validated before the remote call, so an unsupported
    request never reaches the service.
    """

    def __init__(self, signer: DigestSigner, key_ref: str, public_key: rsa.RSAPublicKey) -> None:
        self._signer = signer
        self.key_ref = key_ref
        self._public_key = public_key

    def produce_signature(self, data, hash_algorithm, padding=None) -> bytes:
        algorithm = rsa_pkcs1_algorithm(hash_algorithm)
        ensure_pkcs1v15(padding)

        digest = hashlib.new(algorithm.hash_name, data).digest()
        logger.debug("Remote %s sign of %d-byte digest with %s", algorithm.remote_tag, len(digest), self.key_ref)
        try:
            return self._signer.sign_digest(self.key_ref, algorithm.remote_tag, digest)
        except Exception as exc:
            raise RemoteSigningFailed(
                f"Remote signing with {self.key_ref} failed: {exc}", stage="sign", cause=exc
            ) from exc

    def public_key(self) -> rsa.RSAPublicKey:
        return self._public_key


# ─── cryptography adapter ─────────────────────────────────────────────────────


class _GeneratorBackedRSAKey(rsa.RSAPrivateKey):
    """
    RSAPrivateKey facade over a SignatureGenerator.

    CertificateBuilder identifies the key type by isinstance and then calls
    `sign(tbs_bytes, padding, algorithm)`; everything that would need the
    private material raises.
    """

    def __init__(self, generator: SignatureGenerator) -> None:
        self._generator = generator

    def sign(self, data, padding, algorithm) -> bytes:
        return self._generator.produce_signature(data, algorithm, padding)

    def public_key(self) -> rsa.RSAPublicKey:
        return self._generator.public_key()

    @property
    def key_size(self) -> int:
        return self._generator.public_key().key_size

    def decrypt(self, ciphertext: bytes, padding: AsymmetricPadding) -> bytes:
        raise NotImplementedError("Remote keys can only sign")

    def private_numbers(self) -> rsa.RSAPrivateNumbers:
        raise NotImplementedError("Remote key material is not exportable")

    def private_bytes(
        self,
        encoding: serialization.Encoding,
        format: serialization.PrivateFormat,
        encryption_algorithm: serialization.KeySerializationEncryption,
    ) -> bytes:
        raise NotImplementedError("Remote key material is not exportable")

    def __copy__(self) -> "_GeneratorBackedRSAKey":
        return self

    def __deepcopy__(self, memo: dict) -> "_GeneratorBackedRSAKey":
        return self
