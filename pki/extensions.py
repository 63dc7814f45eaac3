"""
X.509 extension variants and the per-role extension templates.

Extensions are plain data until the moment the certificate is built; each
variant knows how to turn itself into the matching ``cryptography`` extension
via ``to_x509(public_key)``.  Authoring order is preserved all the way into the
encoded certificate.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import CertificatePublicKeyTypes
from cryptography.x509.oid import ExtendedKeyUsageOID, ObjectIdentifier

# ─── OIDs ─────────────────────────────────────────────────────────────────────

SERVER_AUTH_OID = ExtendedKeyUsageOID.SERVER_AUTH          # 1.3.6.1.5.5.7.3.1
CLIENT_AUTH_OID = ExtendedKeyUsageOID.CLIENT_AUTH          # 1.3.6.1.5.5.7.3.2
CODE_SIGNING_OID = ExtendedKeyUsageOID.CODE_SIGNING        # 1.3.6.1.5.5.7.3.3

# Marker read by `dotnet dev-certs` to recognise an ASP.NET Core HTTPS cert.
ASPNET_HTTPS_OID = ObjectIdentifier("1.3.6.1.4.1.311.84.1.1")
ASPNET_HTTPS_CERT_VERSION = 2


class Role(enum.Enum):
    ROOT_CA = "root"
    INTERMEDIATE_CA = "intermediate"
    CODE_SIGNING = "signing"
    SSL_SERVER = "ssl-server"


class KeyUsageFlags(enum.Flag):
    DIGITAL_SIGNATURE = enum.auto()
    CONTENT_COMMITMENT = enum.auto()
    KEY_ENCIPHERMENT = enum.auto()
    DATA_ENCIPHERMENT = enum.auto()
    KEY_AGREEMENT = enum.auto()
    KEY_CERT_SIGN = enum.auto()
    CRL_SIGN = enum.auto()


# ─── Extension variants ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class BasicConstraints:
    is_ca: bool
    path_length: Optional[int] = None
    critical: bool = True

    def to_x509(self, public_key: CertificatePublicKeyTypes) -> x509.ExtensionType:
        # path length is only meaningful (and only encodable) on a CA
        return x509.BasicConstraints(
            ca=self.is_ca, path_length=self.path_length if self.is_ca else None
        )


@dataclass(frozen=True)
class KeyUsage:
    flags: KeyUsageFlags
    critical: bool = False

    def to_x509(self, public_key: CertificatePublicKeyTypes) -> x509.ExtensionType:
        return x509.KeyUsage(
            digital_signature=self._has(KeyUsageFlags.DIGITAL_SIGNATURE),
            content_commitment=self._has(KeyUsageFlags.CONTENT_COMMITMENT),
            key_encipherment=self._has(KeyUsageFlags.KEY_ENCIPHERMENT),
            data_encipherment=self._has(KeyUsageFlags.DATA_ENCIPHERMENT),
            key_agreement=self._has(KeyUsageFlags.KEY_AGREEMENT),
            key_cert_sign=self._has(KeyUsageFlags.KEY_CERT_SIGN),
            crl_sign=self._has(KeyUsageFlags.CRL_SIGN),
            encipher_only=False,
            decipher_only=False,
        )

    def _has(self, flag: KeyUsageFlags) -> bool:
        return bool(self.flags & flag)


@dataclass(frozen=True)
class ExtendedKeyUsage:
    oids: Tuple[ObjectIdentifier, ...]
    critical: bool = False

    def to_x509(self, public_key: CertificatePublicKeyTypes) -> x509.ExtensionType:
        return x509.ExtendedKeyUsage(list(self.oids))


@dataclass(frozen=True)
class SubjectKeyIdentifier:
    """Derived from the request's public key when the certificate is built."""

    critical: bool = False

    def to_x509(self, public_key: CertificatePublicKeyTypes) -> x509.ExtensionType:
        return x509.SubjectKeyIdentifier.from_public_key(public_key)


@dataclass(frozen=True)
class SubjectAlternativeName:
    dns_names: Tuple[str, ...]
    critical: bool = False

    def to_x509(self, public_key: CertificatePublicKeyTypes) -> x509.ExtensionType:
        return x509.SubjectAlternativeName([x509.DNSName(n) for n in self.dns_names])


@dataclass(frozen=True)
class ApplicationSpecific:
    """Opaque extension; *payload* is written verbatim as the extnValue."""

    oid: ObjectIdentifier
    payload: bytes
    critical: bool = False

    def to_x509(self, public_key: CertificatePublicKeyTypes) -> x509.ExtensionType:
        return x509.UnrecognizedExtension(self.oid, self.payload)


Extension = Union[
    BasicConstraints,
    KeyUsage,
    ExtendedKeyUsage,
    SubjectKeyIdentifier,
    SubjectAlternativeName,
    ApplicationSpecific,
]


# ─── Role templates ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExtensionParams:
    """
    Per-issuance inputs that complete a role template.

    extended_key_usages: overrides the CA roles' EKU list.  ``None`` keeps the
                         role default, an empty tuple drops the extension.
    dns_names:           SAN entries for SSL_SERVER (the first one is the FQDN).
    """

    extended_key_usages: Optional[Tuple[ObjectIdentifier, ...]] = None
    dns_names: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RoleTemplate:
    basic_constraints: BasicConstraints
    key_usage: KeyUsage
    subject_key_identifier: bool
    extended_key_usage: Optional[ExtendedKeyUsage]
    eku_overridable: bool = False
    subject_alternative_name: bool = False
    application_specific: Tuple[ApplicationSpecific, ...] = ()


_CA_KEY_USAGE = KeyUsage(
    KeyUsageFlags.KEY_CERT_SIGN | KeyUsageFlags.CRL_SIGN | KeyUsageFlags.DIGITAL_SIGNATURE,
    critical=False,
)

ROLE_TEMPLATES = {
    Role.ROOT_CA: RoleTemplate(
        basic_constraints=BasicConstraints(is_ca=True, path_length=0, critical=True),
        key_usage=_CA_KEY_USAGE,
        subject_key_identifier=True,
        extended_key_usage=ExtendedKeyUsage((CODE_SIGNING_OID,), critical=True),
        eku_overridable=True,
    ),
    Role.INTERMEDIATE_CA: RoleTemplate(
        basic_constraints=BasicConstraints(is_ca=True, path_length=0, critical=True),
        key_usage=_CA_KEY_USAGE,
        subject_key_identifier=True,
        extended_key_usage=ExtendedKeyUsage(
            (SERVER_AUTH_OID, CLIENT_AUTH_OID, CODE_SIGNING_OID), critical=True
        ),
        eku_overridable=True,
    ),
    Role.CODE_SIGNING: RoleTemplate(
        basic_constraints=BasicConstraints(is_ca=False, critical=True),
        key_usage=KeyUsage(KeyUsageFlags.DIGITAL_SIGNATURE, critical=True),
        subject_key_identifier=False,
        extended_key_usage=ExtendedKeyUsage((CODE_SIGNING_OID,), critical=True),
    ),
    Role.SSL_SERVER: RoleTemplate(
        basic_constraints=BasicConstraints(is_ca=False, critical=True),
        key_usage=KeyUsage(
            KeyUsageFlags.KEY_ENCIPHERMENT | KeyUsageFlags.DIGITAL_SIGNATURE, critical=True
        ),
        subject_key_identifier=True,
        extended_key_usage=ExtendedKeyUsage((SERVER_AUTH_OID,), critical=False),
        subject_alternative_name=True,
        application_specific=(
            ApplicationSpecific(ASPNET_HTTPS_OID, bytes([ASPNET_HTTPS_CERT_VERSION])),
        ),
    ),
}


def extensions_for_role(role: Role, params: ExtensionParams) -> Tuple[Extension, ...]:
    """
    Expand *role*'s template into the ordered extension list.

    Order: BasicConstraints, KeyUsage, SubjectKeyIdentifier, ExtendedKeyUsage,
    SubjectAlternativeName, application-specific markers.
    """
    template = ROLE_TEMPLATES[role]
    out: list[Extension] = [template.basic_constraints, template.key_usage]

    if template.subject_key_identifier:
        out.append(SubjectKeyIdentifier())

    eku = template.extended_key_usage
    if template.eku_overridable and params.extended_key_usages is not None:
        critical = eku.critical if eku else True
        eku = ExtendedKeyUsage(tuple(params.extended_key_usages), critical) if params.extended_key_usages else None
    if eku is not None:
        out.append(eku)

    if template.subject_alternative_name:
        out.append(SubjectAlternativeName(tuple(params.dns_names), critical=True))

    out.extend(template.application_specific)
    return tuple(out)
