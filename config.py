"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file;
command-line flags override both.
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Key Vault ──────────────────────────────────────────────────────────
    KEYVAULT_URI: str = ""
    KEYVAULT_API_VERSION: str = "7.4"
    KEYVAULT_TIMEOUT: int = 30
    KEYVAULT_CA_BUNDLE: str = ""     # Path to CA cert bundle; empty = system default
    KEYVAULT_INSECURE: bool = False  # Skip TLS verification (never use in production)

    # ── Entra ID authentication ────────────────────────────────────────────
    AUTH_MODE: Literal["client_secret", "workload_identity", "access_token"] = "client_secret"
    AZURE_TENANT_ID: str = ""
    AZURE_CLIENT_ID: str = ""
    AZURE_CLIENT_SECRET: str = ""
    AZURE_ACCESS_TOKEN: str = ""
    AZURE_AUTHORITY_HOST: str = "https://login.microsoftonline.com"
    AZURE_FEDERATED_TOKEN_FILE: Optional[str] = None

    # ── Issuance defaults ──────────────────────────────────────────────────
    RSA_KEY_SIZE: int = 4096
    DEFAULT_EXPIRE_MONTHS: int = 1
    ROOT_EXPIRE_MONTHS: int = 120

    # ── Output / logging ───────────────────────────────────────────────────
    CERT_OUTPUT_PATH: str = "."
    LOG_LEVEL: str = "INFO"

    @field_validator("KEYVAULT_URI")
    @classmethod
    def validate_vault_uri(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and not v.startswith("https://"):
            raise ValueError("KEYVAULT_URI must be an https:// URL")
        return v

    @field_validator("RSA_KEY_SIZE")
    @classmethod
    def validate_key_size(cls, v: int) -> int:
        if v < 2048 or v % 1024:
            raise ValueError("RSA_KEY_SIZE must be a multiple of 1024 and at least 2048")
        return v

    @field_validator("DEFAULT_EXPIRE_MONTHS", "ROOT_EXPIRE_MONTHS")
    @classmethod
    def validate_months(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("expiry in months must be > 0")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR")
        return v

    @model_validator(mode="after")
    def validate_client_secret(self) -> "Settings":
        if self.AZURE_CLIENT_SECRET and not (self.AZURE_TENANT_ID and self.AZURE_CLIENT_ID):
            raise ValueError("AZURE_TENANT_ID and AZURE_CLIENT_ID are required with AZURE_CLIENT_SECRET")
        return self


def make_credential(cfg: Settings):
    """Build the token credential selected by cfg.AUTH_MODE."""
    from keyvault.credentials import (  # noqa: PLC0415
        ClientSecretCredential,
        StaticTokenCredential,
        WorkloadIdentityCredential,
    )

    if cfg.AUTH_MODE == "access_token":
        return StaticTokenCredential(cfg.AZURE_ACCESS_TOKEN)
    if cfg.AUTH_MODE == "workload_identity":
        return WorkloadIdentityCredential(
            cfg.AZURE_TENANT_ID,
            cfg.AZURE_CLIENT_ID,
            cfg.AZURE_FEDERATED_TOKEN_FILE or "",
            authority_host=cfg.AZURE_AUTHORITY_HOST,
            timeout=cfg.KEYVAULT_TIMEOUT,
        )
    return ClientSecretCredential(
        cfg.AZURE_TENANT_ID,
        cfg.AZURE_CLIENT_ID,
        cfg.AZURE_CLIENT_SECRET,
        authority_host=cfg.AZURE_AUTHORITY_HOST,
        timeout=cfg.KEYVAULT_TIMEOUT,
    )


# Module-level singleton: import and use everywhere.
settings = Settings()
