"""
Entra ID (Azure AD) bearer-token providers for the Key Vault client.

Only the non-interactive OAuth2 client-credentials flows are implemented:
  StaticTokenCredential       — a token obtained elsewhere (e.g. `az account get-access-token`)
  ClientSecretCredential      — tenant + client id + client secret
  WorkloadIdentityCredential  — tenant + client id + federated token file (AKS, GitHub OIDC)
"""
from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Optional

import requests

logger = logging.getLogger(__name__)

KEYVAULT_SCOPE = "https://vault.azure.net/.default"
DEFAULT_AUTHORITY = "https://login.microsoftonline.com"

# Refresh this many seconds before the token actually expires.
_EXPIRY_MARGIN = 300


class CredentialError(Exception):
    """Raised when a token cannot be obtained."""


class TokenCredential:
    """Base class: caches the access token until shortly before it expires."""

    def __init__(self) -> None:
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get_token(self) -> str:
        # one fetch at a time; concurrent callers wait and reuse its token
        with self._lock:
            if self._token and time.time() < self._expires_at - _EXPIRY_MARGIN:
                return self._token
            token, expires_in = self._fetch_token()
            self._token, self._expires_at = token, time.time() + expires_in
            return token

    def _fetch_token(self) -> tuple[str, float]:
        raise NotImplementedError


class StaticTokenCredential(TokenCredential):
    def __init__(self, token: str) -> None:
        super().__init__()
        if not token:
            raise CredentialError("Access token must not be empty")
        self._static = token

    def get_token(self) -> str:
        return self._static


class _ClientCredentialsFlow(TokenCredential):
    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        authority_host: str = DEFAULT_AUTHORITY,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__()
        if not tenant_id or not client_id:
            raise CredentialError("TenantId and ClientId are required")
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.token_url = f"{authority_host.rstrip('/')}/{tenant_id}/oauth2/v2.0/token"
        self.timeout = timeout
        self._session = session or requests.Session()

    def _client_assertion(self) -> dict:
        raise NotImplementedError

    def _fetch_token(self) -> tuple[str, float]:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "scope": KEYVAULT_SCOPE,
            **self._client_assertion(),
        }
        try:
            resp = self._session.post(self.token_url, data=form, timeout=self.timeout)
        except requests.RequestException as exc:
            raise CredentialError(f"Token request to {self.token_url} failed: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = {"error_description": resp.text}
        if not resp.ok or "access_token" not in body:
            detail = body.get("error_description") or body.get("error") or resp.status_code
            raise CredentialError(f"Token request rejected: {detail}")

        logger.info("Obtained Key Vault token for client %s", self.client_id)
        return body["access_token"], float(body.get("expires_in", 3600))


class ClientSecretCredential(_ClientCredentialsFlow):
    def __init__(self, tenant_id: str, client_id: str, client_secret: str, **kwargs) -> None:
        super().__init__(tenant_id, client_id, **kwargs)
        if not client_secret:
            raise CredentialError("Client secret must not be empty")
        self._client_secret = client_secret

    def _client_assertion(self) -> dict:
        return {"client_secret": self._client_secret}


class WorkloadIdentityCredential(_ClientCredentialsFlow):
    """Exchanges the federated service-account token for a Key Vault token."""

    def __init__(self, tenant_id: str, client_id: str, token_file: str, **kwargs) -> None:
        super().__init__(tenant_id, client_id, **kwargs)
        if not token_file:
            raise CredentialError("AZURE_FEDERATED_TOKEN_FILE must be set for workload identity")
        self.token_file = Path(token_file)

    def _client_assertion(self) -> dict:
        try:
            # re-read every time: the projected token is rotated on disk
            assertion = self.token_file.read_text().strip()
        except OSError as exc:
            raise CredentialError(f"Cannot read federated token {self.token_file}: {exc}") from exc
        return {
            "client_assertion_type": "urn:ietf:params:oauth:client-assertion-type:jwt-bearer",
            "client_assertion": assertion,
        }
