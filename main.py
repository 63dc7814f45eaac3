"""
Key Vault certificate tools — CLI entry point.

Usage:
  python main.py create-root --subject "CN=Test Root" --certificate-name test-root
  python main.py create-intermediate --subject "CN=Issuing CA" --certificate-name issuing-ca \
      --signer-certificate-name test-root
  python main.py create-signing --subject "CN=Code Signer" --file-name signer.pfx \
      --signer-certificate-name issuing-ca
  python main.py create-ssl-server --subject "CN=web01" --fqdn web01.example.com \
      --certificate-name web01 --signer-certificate-name issuing-ca
  python main.py import-pfx --certificate-name web01 --file-name web01.pfx
  python main.py delete --certificate-name web01

Connection and authentication come from .env / environment (see config.py);
the --KeyVaultUri / --TenantId / --ClientId / --ClientSecret /
--WorkloadIdentity flags override them for one run.
"""
from __future__ import annotations

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import Callable, Optional

import structlog
from pydantic import ValidationError as SettingsError

from keyvault.base import KeyVaultBackend
from keyvault.client import KeyVaultError, make_client
from keyvault.credentials import CredentialError
from pki.errors import PkiError, ValidationError
from pki.extensions import ExtensionParams, Role
from pki.issuer import CertificateIssuer, IssuanceResult
from pki.keys import KeyMaterialProvider, KeyVaultKeyProvider, LocalKeyProvider, SignerIdentity, load_pkcs12_signer
from pki.request import SubjectIdentity

PasswordPrompt = Callable[[str], Optional[str]]
BackendFactory = Callable[..., KeyVaultBackend]

log = logging.getLogger(__name__)


# ── Logging setup ─────────────────────────────────────────────────────────────


def configure_logging(level: str = "INFO") -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def prompt_password(kind: str) -> Optional[str]:
    """Ask twice on the terminal; returns None when the entries differ."""
    first = getpass.getpass(f"Enter {kind} password: ")
    second = getpass.getpass(f"Confirm {kind} password: ")
    if first != second:
        log.error("Passwords do not match")
        return None
    return first


# ── Runners ───────────────────────────────────────────────────────────────────


class _Run:
    """Per-invocation wiring: settings with CLI overrides, backend, prompts."""

    def __init__(self, args: argparse.Namespace, backend_factory: BackendFactory,
                 password_prompt: PasswordPrompt) -> None:
        from config import Settings, settings  # noqa: PLC0415

        overrides = {}
        if args.vault_uri:
            overrides["KEYVAULT_URI"] = args.vault_uri
        if args.tenant_id:
            overrides["AZURE_TENANT_ID"] = args.tenant_id
        if args.client_id:
            overrides["AZURE_CLIENT_ID"] = args.client_id
        if args.client_secret:
            overrides["AZURE_CLIENT_SECRET"] = args.client_secret
            overrides["AUTH_MODE"] = "client_secret"
        if args.workload_identity:
            overrides["AUTH_MODE"] = "workload_identity"
        if args.access_token:
            overrides["AZURE_ACCESS_TOKEN"] = args.access_token
            overrides["AUTH_MODE"] = "access_token"

        self.cfg = Settings(**overrides) if overrides else settings
        self.args = args
        self._backend_factory = backend_factory
        self._password_prompt = password_prompt
        self._backend: Optional[KeyVaultBackend] = None

    @property
    def backend(self) -> KeyVaultBackend:
        if self._backend is None:
            self._backend = self._backend_factory(self.cfg)
        return self._backend

    def prompt(self, kind: str) -> Optional[str]:
        return self._password_prompt(kind)

    def pfx_password(self) -> str:
        """Password for a PFX file; prompted unless running non-interactively."""
        if self.args.password:
            return self.args.password
        if self.cfg.AUTH_MODE == "workload_identity":
            raise ValidationError("--Password is required with --WorkloadIdentity", stage="validate")
        password = self.prompt("PFX")
        if not password:
            raise ValidationError("A password is required to write a PFX file", stage="validate")
        return password

    def provider(self, role: Role) -> KeyMaterialProvider:
        if self.args.certificate_name:
            # TLS server keys are exportable
            return KeyVaultKeyProvider(
                self.backend, key_size=self.cfg.RSA_KEY_SIZE, exportable=role is Role.SSL_SERVER
            )
        return LocalKeyProvider(
            key_size=self.cfg.RSA_KEY_SIZE,
            password=self.pfx_password(),
            signer_backend=self.backend if self.args.signer_certificate_name else None,
        )

    def signer(self, issuer: CertificateIssuer) -> SignerIdentity:
        if self.args.signer_file:
            data = Path(self.args.signer_file).read_bytes()
            return load_pkcs12_signer(data, self.args.signer_password)
        if not self.args.signer_certificate_name:
            raise ValidationError("--SignerCertificateName or --signer-file is required", stage="validate")
        return issuer.resolve_signer(self.args.signer_certificate_name)

    def write(self, result: IssuanceResult) -> None:
        from storage.filesystem import write_certificate_files  # noqa: PLC0415

        file_name = self.args.file_name or result.name
        written = write_certificate_files(
            self.cfg.CERT_OUTPUT_PATH,
            file_name,
            result.certificate.certificate,
            result.der,
            pkcs12=result.pkcs12,
        )
        log.info(
            "Issued %s (serial %x, subject %s, issuer %s, valid until %s) -> %s",
            result.name,
            result.certificate.serial_number,
            result.certificate.subject.rfc4514_string(),
            result.certificate.issuer.rfc4514_string(),
            result.certificate.not_after.isoformat(),
            ", ".join(written.values()),
        )


def _issuance_name(args: argparse.Namespace) -> str:
    if args.certificate_name:
        return args.certificate_name
    return Path(args.file_name).stem


def _expire_months(args: argparse.Namespace, default: int) -> int:
    return args.expire_months if args.expire_months is not None else default


def cmd_create_root(run: _Run) -> None:
    args = run.args
    issuer = CertificateIssuer(run.provider(Role.ROOT_CA))
    result = issuer.issue_self_signed(
        _issuance_name(args),
        SubjectIdentity.parse(args.subject),
        _expire_months(args, run.cfg.ROOT_EXPIRE_MONTHS),
    )
    run.write(result)


def _issue_signed(run: _Run, role: Role, extra: Optional[ExtensionParams] = None) -> None:
    args = run.args
    issuer = CertificateIssuer(run.provider(role))
    signer = run.signer(issuer)
    result = issuer.issue_signed(
        _issuance_name(args),
        SubjectIdentity.parse(args.subject),
        role,
        signer,
        _expire_months(args, run.cfg.DEFAULT_EXPIRE_MONTHS),
        extra,
    )
    run.write(result)


def cmd_create_intermediate(run: _Run) -> None:
    _issue_signed(run, Role.INTERMEDIATE_CA)


def cmd_create_signing(run: _Run) -> None:
    _issue_signed(run, Role.CODE_SIGNING)


def cmd_create_ssl_server(run: _Run) -> None:
    _issue_signed(run, Role.SSL_SERVER, ExtensionParams(dns_names=tuple(run.args.fqdn or ())))


def cmd_import_pfx(run: _Run) -> None:
    args = run.args
    data = Path(args.file_name).read_bytes()
    password = args.password
    if password is None and run.cfg.AUTH_MODE != "workload_identity":
        password = run.prompt("PFX")
    confirmation = run.backend.import_pkcs12(args.certificate_name, data, password or None)
    log.info("Imported %s as %s (%s)", args.file_name, args.certificate_name, confirmation.get("id", ""))


def cmd_delete(run: _Run) -> None:
    run.backend.delete_certificate(run.args.certificate_name)
    log.info("Deleted %s", run.args.certificate_name)


# ── CLI ───────────────────────────────────────────────────────────────────────


def _add_connection_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("Key Vault connection")
    group.add_argument("--vault-uri", "--KeyVaultUri", dest="vault_uri", help="Key Vault URI (overrides KEYVAULT_URI)")
    group.add_argument("--tenant-id", "--TenantId", dest="tenant_id", help="Entra ID tenant id")
    group.add_argument("--client-id", "--ClientId", dest="client_id", help="Entra ID application (client) id")
    auth = group.add_mutually_exclusive_group()
    auth.add_argument("--client-secret", "--ClientSecret", dest="client_secret", help="Entra ID client secret")
    auth.add_argument("--workload-identity", "--WorkloadIdentity", dest="workload_identity", action="store_true",
                      help="Authenticate with the federated workload identity token")
    auth.add_argument("--access-token", "--AccessToken", dest="access_token",
                      help="Pre-obtained Key Vault access token")


def _add_target_options(parser: argparse.ArgumentParser, file_help: str) -> None:
    parser.add_argument("--subject", "--Subject", dest="subject", required=True,
                        help='Subject name in the form "CN=<subject name>"')
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--certificate-name", "--CertificateName", dest="certificate_name",
                        help="Name of the certificate to create in Key Vault")
    target.add_argument("--file-name", "--FileName", dest="file_name", help=file_help)
    parser.add_argument("--password", "--Password", dest="password", help="Password for the PFX file")
    parser.add_argument("--expire-months", "--ExpireMonths", "--ExpireMonth", dest="expire_months", type=int,
                        help="Number of months until the certificate expires")


def _add_signer_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--signer-certificate-name", "--SignerCertificateName", dest="signer_certificate_name",
                        help="Name of the signer certificate in Key Vault")
    parser.add_argument("--signer-file", dest="signer_file", help="PFX file holding the signer key and certificate")
    parser.add_argument("--signer-password", dest="signer_password", help="Password of --signer-file")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create X.509 certificates whose signing keys live in Azure Key Vault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-root --Subject "CN=Test Root" --CertificateName test-root --ExpireMonths 120
  python main.py create-signing --Subject "CN=Signer" --FileName signer.pfx --SignerCertificateName test-root
  python main.py delete --CertificateName test-root
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-root", help="Create a self-signed root CA certificate")
    _add_target_options(p, "Write the root key and certificate to this PFX file instead of Key Vault")
    _add_connection_options(p)
    # a root signs itself
    p.set_defaults(func=cmd_create_root, signer_certificate_name=None, signer_file=None, signer_password=None)

    p = sub.add_parser("create-intermediate", help="Create an intermediate CA certificate")
    _add_target_options(p, "Write the key and certificate to this PFX file instead of Key Vault")
    _add_signer_options(p)
    _add_connection_options(p)
    p.set_defaults(func=cmd_create_intermediate)

    p = sub.add_parser("create-signing", help="Create a code-signing certificate")
    _add_target_options(p, "Write the key and certificate to this PFX file instead of Key Vault")
    _add_signer_options(p)
    _add_connection_options(p)
    p.set_defaults(func=cmd_create_signing)

    p = sub.add_parser("create-ssl-server", help="Create a TLS server certificate")
    _add_target_options(p, "Write the key and certificate to this PFX file instead of Key Vault")
    _add_signer_options(p)
    p.add_argument("--fqdn", "--FQDN", dest="fqdn", nargs="+", metavar="NAME",
                   help="DNS names for the SubjectAlternativeName (default: the subject CN)")
    _add_connection_options(p)
    p.set_defaults(func=cmd_create_ssl_server)

    p = sub.add_parser("import-pfx", help="Import a PFX file into Key Vault")
    p.add_argument("--certificate-name", "--CertificateName", dest="certificate_name", required=True)
    p.add_argument("--file-name", "--FileName", dest="file_name", required=True, help="PFX file to import")
    p.add_argument("--password", "--Password", dest="password", help="Password of the PFX file")
    _add_connection_options(p)
    p.set_defaults(func=cmd_import_pfx)

    p = sub.add_parser("delete", help="Delete a certificate from Key Vault")
    p.add_argument("--certificate-name", "--CertificateName", dest="certificate_name", required=True)
    _add_connection_options(p)
    p.set_defaults(func=cmd_delete)

    return parser


def main(
    argv: Optional[list[str]] = None,
    *,
    backend_factory: BackendFactory = make_client,
    password_prompt: PasswordPrompt = prompt_password,
) -> int:
    args = build_parser().parse_args(argv)

    try:
        from config import settings  # noqa: PLC0415
        configure_logging(settings.LOG_LEVEL)
        run = _Run(args, backend_factory, password_prompt)
        args.func(run)
    except (PkiError, KeyVaultError, CredentialError) as exc:
        log.error("%s failed: %s", args.command, exc)
        return 1
    except SettingsError as exc:
        log.error("Invalid configuration: %s", exc)
        return 1
    except OSError as exc:
        log.error("%s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
