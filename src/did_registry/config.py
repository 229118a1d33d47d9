"""Runtime configuration for the DID registry.

Values come from environment variables prefixed with ``DID_REGISTRY_``
(and an optional ``.env`` file), e.g. ``DID_REGISTRY_STORE_BACKEND=couchdb``.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RegistrySettings(BaseSettings):
    """Typed registry settings."""

    model_config = SettingsConfigDict(
        env_prefix="DID_REGISTRY_",
        env_file=".env",
        extra="ignore",
    )

    # Identity
    did_method: str = "example"
    issuer_did: str = "did:example:government"
    # Multibase Ed25519 seed; an ephemeral key is generated when unset.
    issuer_private_key: SecretStr | None = None
    proof_suite: Literal["Ed25519Signature2020", "Sha256DigestProof2024"] = "Ed25519Signature2020"

    # Lifetimes
    credential_validity_days: int = Field(default=365, ge=1)
    grant_ttl_hours: int = Field(default=24, ge=1)

    # Store
    store_backend: Literal["memory", "couchdb"] = "memory"
    couchdb_url: str = "http://localhost:5984"
    couchdb_username: str = "admin"
    couchdb_password: SecretStr = SecretStr("adminpw")
    did_database: str = "did_db"
    credential_database: str = "credential_db"
    authorization_database: str = "authorization_db"
    audit_database: str = "access_log_db"
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    store_retry_attempts: int = Field(default=3, ge=1)

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # HTTP binding
    host: str = "0.0.0.0"
    port: int = 3001

    @field_validator("did_method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if not v or not v.isalnum() or not v.islower():
            raise ValueError("DID method must be lowercase alphanumeric")
        return v

    @field_validator("issuer_did")
    @classmethod
    def validate_issuer(cls, v: str) -> str:
        if v.count(":") < 2 or not v.startswith("did:"):
            raise ValueError("issuer_did must look like did:<method>:<id>")
        return v

    @property
    def credential_validity(self) -> timedelta:
        return timedelta(days=self.credential_validity_days)

    @property
    def grant_ttl(self) -> timedelta:
        return timedelta(hours=self.grant_ttl_hours)
