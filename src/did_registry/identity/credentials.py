"""Verifiable Credentials: issuance, storage and verification."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from did_registry.common.exceptions import (
    InvalidClaimsError,
    InvalidInputError,
    NotFoundError,
)
from did_registry.common.types import (
    CREDENTIALS_CONTEXT,
    CREDENTIALS_EXAMPLES_CONTEXT,
    DID,
    Clock,
    ProofPurpose,
    Timestamp,
    format_timestamp,
    truncate_to_millis,
    utc_now,
)
from did_registry.identity.identifiers import KeyPair, parse_did
from did_registry.identity.proofs import Proof, ProofSuite, ProofVerifier
from did_registry.store.backend import DocumentStore

logger = structlog.get_logger()

DEFAULT_VALIDITY = timedelta(days=365)
RESERVED_CLAIM = "id"


class VerifiableCredential(BaseModel):
    """
    W3C Verifiable Credential binding claims to a subject DID.

    Immutable once issued. Re-issuing produces a new credential.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    context: list[str] = Field(
        default_factory=lambda: [CREDENTIALS_CONTEXT, CREDENTIALS_EXAMPLES_CONTEXT],
        alias="@context",
    )
    id: str
    type: list[str] = Field(default_factory=lambda: ["VerifiableCredential", "IdentityCredential"])
    issuer: DID
    issuance_date: Timestamp = Field(alias="issuanceDate")
    expiration_date: Timestamp = Field(alias="expirationDate")
    credential_subject: dict[str, Any] = Field(alias="credentialSubject")
    proof: Proof | None = None

    @property
    def subject_id(self) -> str:
        return self.credential_subject.get("id", "")

    def claim_names(self) -> list[str]:
        """Claim names in issuance order, without the subject id."""
        return [name for name in self.credential_subject if name != RESERVED_CLAIM]

    def is_expired(self, now: datetime) -> bool:
        return now > self.expiration_date

    def to_document(self) -> dict[str, Any]:
        """Convert to W3C VC JSON format"""
        document = self.model_dump(mode="json", by_alias=True)
        if document.get("proof") is None:
            document.pop("proof", None)
        return document

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> VerifiableCredential:
        """
        Parse a credential document.

        Raises:
            InvalidInputError: if required fields are missing or malformed
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise InvalidInputError(
                "Malformed verifiable credential",
                details={"errors": [err["loc"] for err in e.errors()]},
                cause=e,
            ) from e


def validate_claims(claims: Any) -> dict[str, Any]:
    """
    Check that claims are a non-empty JSON mapping without the reserved ``id``.

    Raises:
        InvalidClaimsError: otherwise
    """
    if not isinstance(claims, Mapping) or not claims:
        raise InvalidClaimsError("Claims must be a non-empty mapping")

    for name in claims:
        if not isinstance(name, str) or not name.strip():
            raise InvalidClaimsError("Claim names must be non-empty strings", details={"claim": repr(name)})
        if name == RESERVED_CLAIM:
            raise InvalidClaimsError(
                'Claim name "id" is reserved for the subject identifier',
                details={"claim": name},
            )

    try:
        json.dumps(dict(claims), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidClaimsError("Claim values must be JSON-serializable", cause=e) from e

    return dict(claims)


class CredentialIssuer:
    """Issues signed verifiable credentials."""

    def __init__(
        self,
        suite: ProofSuite,
        validity: timedelta = DEFAULT_VALIDITY,
        clock: Clock = utc_now,
    ) -> None:
        self.suite = suite
        self.validity = validity
        self.clock = clock
        self._logger = logger.bind(component="credential_issuer")

    def issue(
        self,
        subject_did: str,
        claims: Mapping[str, Any],
        issuer_did: str,
        issuer_key: KeyPair,
    ) -> VerifiableCredential:
        """
        Issue a new credential.

        Args:
            subject_did: DID the claims are about
            claims: Claim name -> value; must not contain ``id``
            issuer_did: DID of the issuer
            issuer_key: Issuer key pair including its private half

        Returns:
            Signed credential

        Raises:
            InvalidClaimsError: if claims are empty or malformed
            InvalidInputError: if a DID is malformed or the key is not the issuer's
        """
        parse_did(subject_did)
        parse_did(issuer_did)
        subject_claims = validate_claims(claims)
        if issuer_key.controller != issuer_did:
            raise InvalidInputError(
                "Issuer key does not belong to the issuer DID",
                details={"issuer": issuer_did, "keyController": issuer_key.controller},
            )

        now = truncate_to_millis(self.clock())
        unsigned = VerifiableCredential(
            id=f"{subject_did}#vc-{int(now.timestamp() * 1000)}",
            issuer=DID(issuer_did),
            issuance_date=now,
            expiration_date=now + self.validity,
            credential_subject={"id": subject_did, **subject_claims},
        )

        proof = self.suite.sign(
            unsigned.to_document(),
            issuer_key,
            ProofPurpose.ASSERTION_METHOD,
            created=now,
        )
        credential = unsigned.model_copy(update={"proof": proof})

        self._logger.info(
            "credential_issued",
            credential_id=credential.id,
            subject=subject_did,
            claims=credential.claim_names(),
        )
        return credential


class CredentialRepository:
    """
    Keeps exactly one current credential per subject.

    Saving a credential for a subject that already has one supersedes the
    stored record.
    """

    def __init__(self, store: DocumentStore, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock
        self._logger = logger.bind(component="credential_repository")

    @staticmethod
    def key_for(did: str) -> str:
        return f"{did}-credentials"

    async def save(self, credential: VerifiableCredential) -> None:
        """
        Store ``credential`` as the subject's current credential.

        Raises:
            ConflictError: if another writer updated the record concurrently
        """
        key = self.key_for(credential.subject_id)
        revision = None
        try:
            revision = (await self.store.get(key)).revision
        except NotFoundError:
            pass

        body = {
            "did": credential.subject_id,
            "credential": credential.to_document(),
            "issued": format_timestamp(self.clock()),
        }
        await self.store.put(key, body, revision=revision)

        if revision is not None:
            self._logger.info(
                "credential_superseded",
                subject=credential.subject_id,
                credential_id=credential.id,
            )

    async def get(self, did: str) -> VerifiableCredential:
        """
        Current credential of a subject.

        Raises:
            NotFoundError: if the subject has no credential
        """
        try:
            stored = await self.store.get(self.key_for(did))
        except NotFoundError as e:
            raise NotFoundError(f"No credentials found for DID {did}", key=did, cause=e) from e
        return VerifiableCredential.model_validate(stored.body["credential"])


class VerificationStatus(StrEnum):
    """Credential verification status"""

    VALID = "valid"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    INVALID_PROOF = "invalid_proof"


@dataclass
class VerificationResult:
    """Result of credential verification"""

    status: VerificationStatus
    credential_id: str
    issuer: str
    checks: dict[str, bool] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.status == VerificationStatus.VALID

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "valid": self.is_valid,
            "credentialId": self.credential_id,
            "issuer": self.issuer,
            "checks": self.checks,
            "errors": self.errors,
        }


class CredentialVerifier:
    """
    Verifies issuer-signed credentials.

    Checks, in order:
    1. Structure
    2. Expiration
    3. Issuer proof (key published under the issuer's assertionMethod)
    """

    def __init__(self, proofs: ProofVerifier, clock: Clock = utc_now) -> None:
        self.proofs = proofs
        self.clock = clock
        self._logger = logger.bind(component="credential_verifier")

    async def verify(self, document: Mapping[str, Any]) -> VerificationResult:
        checks = {"structure": False, "expiration": False, "proof": False}

        try:
            credential = VerifiableCredential.from_document(document)
        except InvalidInputError as e:
            return VerificationResult(
                VerificationStatus.MALFORMED,
                str(document.get("id", "")),
                str(document.get("issuer", "")),
                checks,
                [e.message],
            )
        checks["structure"] = credential.proof is not None
        if credential.proof is None:
            return VerificationResult(
                VerificationStatus.MALFORMED, credential.id, credential.issuer, checks, ["Missing proof"]
            )

        if credential.is_expired(self.clock()):
            return VerificationResult(
                VerificationStatus.EXPIRED, credential.id, credential.issuer, checks, ["Credential has expired"]
            )
        checks["expiration"] = True

        outcome = await self.proofs.check(
            document,
            expected_purpose=ProofPurpose.ASSERTION_METHOD,
            expected_controller=credential.issuer,
        )
        checks["proof"] = outcome.valid
        if not outcome.valid:
            self._logger.warning("credential_proof_invalid", credential_id=credential.id, reason=outcome.reason)
            return VerificationResult(
                VerificationStatus.INVALID_PROOF,
                credential.id,
                credential.issuer,
                checks,
                [outcome.reason or "Proof verification failed"],
            )

        return VerificationResult(VerificationStatus.VALID, credential.id, credential.issuer, checks)
