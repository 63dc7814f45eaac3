"""
Azure Key Vault REST client (certificates + keys, api-version 7.4).

The client is stateless apart from its HTTP session and credential: every
call is a single request (plus throttling retries), which keeps it easy to
test with the `responses` library.

Throttling: Key Vault answers 429 (and occasionally 503) with a Retry-After
header.  `_request` retries up to `_THROTTLE_RETRIES` times, sleeping for the
advertised interval.
"""
from __future__ import annotations

import base64
import logging
import re
import time
from typing import Any, Optional
from urllib.parse import quote

import requests

from keyvault.base import CertificatePolicy, KeyVaultBackend, PendingOperation
from keyvault.credentials import TokenCredential
from pki.crypto import load_certificate, public_keys_match
from pki.errors import KeyMismatch, SerializationError, ValidationError
from pki.request import load_pkcs10

logger = logging.getLogger(__name__)

API_VERSION = "7.4"
_THROTTLE_RETRIES = 3
_RETRY_STATUSES = {429, 503}
_NAME_RE = re.compile(r"^[0-9A-Za-z-]{1,127}$")


class KeyVaultError(Exception):
    """Raised when Key Vault returns an error response."""

    def __init__(self, status_code: int, body: dict) -> None:
        self.status_code = status_code
        self.body = body
        error = body.get("error", {}) if isinstance(body.get("error"), dict) else {}
        code = error.get("code", "unknown")
        message = error.get("message", body.get("detail", str(body)))
        self.code = code
        super().__init__(f"Key Vault {status_code}: {code} — {message}")


def validate_certificate_name(name: str) -> str:
    if not name or not _NAME_RE.match(name):
        raise ValidationError(
            f"Invalid Key Vault certificate name {name!r}: use 1-127 letters, digits or '-'",
            stage="validate",
        )
    return name


class AzureKeyVaultClient(KeyVaultBackend):
    def __init__(
        self,
        vault_uri: str,
        credential: TokenCredential,
        api_version: str = API_VERSION,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
        poll_interval: float = 2.0,
    ) -> None:
        if not vault_uri.startswith("https://"):
            raise ValidationError(f"Key Vault URI must be https, got {vault_uri!r}", stage="validate")
        self.vault_uri = vault_uri.rstrip("/")
        self.credential = credential
        self.api_version = api_version
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "kv-cert-tools/1.0"})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Certificates ──────────────────────────────────────────────────────

    def create_key(self, name: str, policy: CertificatePolicy) -> PendingOperation:
        """POST /certificates/{name}/create — starts a (pending) create operation."""
        body = self._request("POST", self._cert_url(name, "create"), json={"policy": policy.to_json()}).json()
        logger.info("Started create operation for %s (issuer=%s)", name, policy.issuer_name)
        return _pending_from_json(name, body)

    def get_pending_csr(self, name: str) -> bytes:
        body = self._request("GET", self._cert_url(name, "pending")).json()
        csr = body.get("csr")
        if not csr:
            raise SerializationError(f"Pending operation for {name} carries no CSR", stage="obtain_key")
        return _b64decode(csr, f"CSR of {name}")

    def wait_for_completion(
        self,
        name: str,
        max_attempts: int = 30,
        poll_interval: Optional[float] = None,
    ) -> PendingOperation:
        """
        Poll the pending operation until it is 'completed'.
        Raises KeyVaultError when it fails, is cancelled, or never completes.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        for _ in range(max_attempts):
            operation = _pending_from_json(name, self._request("GET", self._cert_url(name, "pending")).json())
            if operation.completed:
                return operation
            if operation.status in ("failed", "cancelled"):
                raise KeyVaultError(0, {"detail": f"Create operation for {name} {operation.status}"})
            time.sleep(interval)

        raise KeyVaultError(0, {"detail": f"Create operation for {name} did not complete after {max_attempts} polls"})

    def get_existing_certificate(self, name: str) -> tuple[bytes, str]:
        body = self._request("GET", self._cert_url(name, "")).json()
        if not body.get("cer") or not body.get("kid"):
            raise SerializationError(f"Certificate {name} has no public certificate or key id", stage="resolve_signer")
        return _b64decode(body["cer"], f"certificate {name}"), body["kid"]

    def merge_signed_certificate(self, name: str, cert_bytes: bytes) -> dict[str, Any]:
        """
        POST /certificates/{name}/pending/merge.

        The pending CSR's key is compared with the certificate's first; a
        mismatch raises KeyMismatch and nothing is sent.
        """
        certificate = load_certificate(cert_bytes)
        pending = load_pkcs10(self.get_pending_csr(name))
        if not public_keys_match(pending.public_key(), certificate.public_key()):
            raise KeyMismatch(f"Certificate public key does not match pending operation {name}", stage="commit")

        x5c = base64.b64encode(cert_bytes).decode()
        resp = self._request("POST", self._cert_url(name, "pending/merge"), json={"x5c": [x5c]})
        logger.info("Merged signed certificate into %s", name)
        return resp.json()

    def import_pkcs12(self, name: str, data: bytes, password: Optional[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {"value": base64.b64encode(data).decode()}
        if password:
            payload["pwd"] = password
        resp = self._request("POST", self._cert_url(name, "import"), json=payload)
        logger.info("Imported PFX as %s", name)
        return resp.json()

    def delete_certificate(self, name: str) -> None:
        self._request("DELETE", self._cert_url(name, ""))
        logger.info("Deleted certificate %s", name)

    # ── Keys ──────────────────────────────────────────────────────────────

    def sign_digest(self, key_ref: str, algorithm_tag: str, digest: bytes) -> bytes:
        """POST {kid}/sign — the digest is sent base64url encoded, never the data."""
        resp = self._request(
            "POST",
            f"{key_ref.rstrip('/')}/sign",
            json={"alg": algorithm_tag, "value": _b64url(digest)},
        )
        value = resp.json().get("value")
        if not value:
            raise SerializationError(f"Sign response for {key_ref} carries no value", stage="sign")
        return _b64url_decode(value)

    # ── Internal ──────────────────────────────────────────────────────────

    def _cert_url(self, name: str, suffix: str) -> str:
        validate_certificate_name(name)
        url = f"{self.vault_uri}/certificates/{quote(name)}"
        return f"{url}/{suffix}" if suffix else url

    def _request(self, method: str, url: str, json: Optional[dict] = None) -> requests.Response:
        """Authenticated request with throttling retries; raises KeyVaultError."""
        for attempt in range(_THROTTLE_RETRIES + 1):
            resp = self._session.request(
                method,
                url,
                params={"api-version": self.api_version},
                json=json,
                headers={"Authorization": f"Bearer {self.credential.get_token()}"},
                timeout=self.timeout,
            )
            if resp.ok:
                return resp

            if resp.status_code in _RETRY_STATUSES and attempt < _THROTTLE_RETRIES:
                delay = _retry_after(resp)
                logger.warning("Key Vault throttled %s %s (%d); retrying in %.1fs", method, url, resp.status_code, delay)
                time.sleep(delay)
                continue

            try:
                error_body = resp.json()
            except ValueError:
                error_body = {"detail": resp.text}
            raise KeyVaultError(resp.status_code, error_body)

        # Should never reach here, but satisfy the type checker
        raise KeyVaultError(0, {"detail": "Exceeded throttling retry limit"})


def make_client(cfg=None) -> AzureKeyVaultClient:
    """
    Create an AzureKeyVaultClient from *cfg* (default: the application settings).
    Late-imports config to avoid circular imports at module load time.
    """
    from config import make_credential, settings  # noqa: PLC0415

    cfg = cfg or settings
    if not cfg.KEYVAULT_URI:
        raise ValidationError("KEYVAULT_URI is not set", stage="validate")
    return AzureKeyVaultClient(
        vault_uri=cfg.KEYVAULT_URI,
        credential=make_credential(cfg),
        api_version=cfg.KEYVAULT_API_VERSION,
        timeout=cfg.KEYVAULT_TIMEOUT,
        ca_bundle=cfg.KEYVAULT_CA_BUNDLE,
        insecure=cfg.KEYVAULT_INSECURE,
    )


# ─── Internal helpers ─────────────────────────────────────────────────────────


def _pending_from_json(name: str, body: dict) -> PendingOperation:
    csr = body.get("csr")
    return PendingOperation(
        name=name,
        status=body.get("status", "inProgress"),
        csr=_b64decode(csr, f"CSR of {name}") if csr else None,
        request_id=body.get("request_id", ""),
    )


def _retry_after(resp: requests.Response) -> float:
    try:
        return max(0.0, float(resp.headers.get("Retry-After", "1")))
    except ValueError:
        return 1.0


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as exc:
        raise SerializationError(f"Malformed base64 in {what}: {exc}") from exc


def _b64url(data: bytes) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode, adding padding as needed."""
    pad = 4 - len(s) % 4
    if pad != 4:
        s += "=" * pad
    return base64.urlsafe_b64decode(s)
