"""Selective-disclosure presentations derived from a credential."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from did_registry.common.exceptions import (
    InvalidInputError,
    NotFoundError,
    UnknownAttributeError,
)
from did_registry.common.types import (
    CREDENTIALS_CONTEXT,
    DID,
    Clock,
    ProofPurpose,
    utc_now,
)
from did_registry.identity.credentials import (
    RESERVED_CLAIM,
    CredentialRepository,
    CredentialVerifier,
    VerifiableCredential,
)
from did_registry.identity.identifiers import KeyPair
from did_registry.identity.proofs import Proof, ProofSuite, ProofVerifier, canonicalize

logger = structlog.get_logger()

# Outer credential fields carried into a presentation; the issuer proof is not,
# because it covers the full claim set.
CARRIED_CREDENTIAL_FIELDS = ("@context", "id", "type", "issuer", "issuanceDate", "expirationDate")


class VerifiablePresentation(BaseModel):
    """
    Holder-signed bundle disclosing a subset of one credential's claims.

    Derived and disposable: rebuilt whenever the disclosed set changes.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    context: list[str] = Field(default_factory=lambda: [CREDENTIALS_CONTEXT], alias="@context")
    id: str
    type: list[str] = Field(default_factory=lambda: ["VerifiablePresentation"])
    holder: DID
    verifiable_credential: list[dict[str, Any]] = Field(alias="verifiableCredential")
    disclosed_attributes: list[str] = Field(alias="disclosedAttributes")
    proof: Proof | None = None

    def to_document(self) -> dict[str, Any]:
        document = self.model_dump(mode="json", by_alias=True)
        if document.get("proof") is None:
            document.pop("proof", None)
        return document


def disclosed_attributes(presentation: VerifiablePresentation) -> set[str]:
    """Claim names actually present in the embedded credentials, minus ``id``."""
    names: set[str] = set()
    for credential in presentation.verifiable_credential:
        names.update(k for k in credential.get("credentialSubject", {}) if k != RESERVED_CLAIM)
    return names


def attribute_map(presentation: VerifiablePresentation) -> dict[str, Any]:
    """Subject id plus the disclosed claim values."""
    result: dict[str, Any] = {"id": presentation.holder}
    for credential in presentation.verifiable_credential:
        result.update(credential.get("credentialSubject", {}))
    return result


class PresentationBuilder:
    """
    Builds presentations restricted to an approved attribute set.

    For the same credential and attribute set the unsigned body is
    byte-identical across calls; only the proof differs.
    """

    def __init__(self, suite: ProofSuite, clock: Clock = utc_now) -> None:
        self.suite = suite
        self.clock = clock
        self._logger = logger.bind(component="presentation_builder")

    def build(
        self,
        subject_did: str,
        credential: VerifiableCredential,
        approved_attributes: Iterable[str],
        holder_key: KeyPair,
    ) -> VerifiablePresentation:
        """
        Derive a presentation disclosing ``{id} ∪ approved_attributes``.

        Raises:
            InvalidInputError: if the credential or key does not belong to the subject
            UnknownAttributeError: if an attribute is not in the credential
        """
        if credential.subject_id != subject_did:
            raise InvalidInputError(
                "Credential subject does not match holder",
                details={"holder": subject_did, "subject": credential.subject_id},
            )
        if holder_key.controller != subject_did:
            raise InvalidInputError(
                "Holder key does not belong to the subject",
                details={"holder": subject_did, "keyController": holder_key.controller},
            )

        valid = credential.claim_names()
        approved = sorted(set(approved_attributes))
        for name in approved:
            if name not in valid:
                raise UnknownAttributeError(name, valid)

        source = credential.to_document()
        embedded = {name: source[name] for name in CARRIED_CREDENTIAL_FIELDS}
        embedded["credentialSubject"] = {
            "id": subject_did,
            **{name: credential.credential_subject[name] for name in approved},
        }

        body = {
            "@context": [CREDENTIALS_CONTEXT],
            "type": ["VerifiablePresentation"],
            "holder": subject_did,
            "verifiableCredential": [embedded],
            "disclosedAttributes": approved,
        }
        body["id"] = f"{subject_did}#vp-{hashlib.sha256(canonicalize(body)).hexdigest()[:16]}"

        proof = self.suite.sign(body, holder_key, ProofPurpose.AUTHENTICATION, created=self.clock())
        presentation = VerifiablePresentation.model_validate({**body, "proof": proof.to_document()})

        self._logger.debug(
            "presentation_built",
            presentation_id=presentation.id,
            holder=subject_did,
            disclosed=approved,
        )
        return presentation


@dataclass
class PresentationCheck:
    """Outcome of verifying a presentation, with per-check diagnostics."""

    valid: bool
    presentation_id: str = ""
    holder: str = ""
    checks: dict[str, bool] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "presentationId": self.presentation_id,
            "holder": self.holder,
            "checks": self.checks,
            "errors": self.errors,
        }


class PresentationVerifier:
    """
    Verifies a presentation and ties it back to the issuer-signed credential.

    Checks:
    1. Structure
    2. Holder proof under the holder's ``authentication`` relationship
    3. Disclosed set matches the embedded claims
    4. Embedded credential is the subject's current, issuer-verified
       credential and every disclosed value matches it
    """

    def __init__(
        self,
        proofs: ProofVerifier,
        credentials: CredentialRepository,
        credential_verifier: CredentialVerifier,
    ) -> None:
        self.proofs = proofs
        self.credentials = credentials
        self.credential_verifier = credential_verifier

    async def verify(self, document: Mapping[str, Any]) -> PresentationCheck:
        checks = {"structure": False, "holderProof": False, "disclosure": False, "credential": False}

        try:
            presentation = VerifiablePresentation.model_validate(dict(document))
        except ValidationError as e:
            return PresentationCheck(False, checks=checks, errors=[f"Malformed presentation: {e.error_count()} invalid field(s)"])
        result = PresentationCheck(False, presentation.id, presentation.holder, checks)

        if presentation.proof is None or len(presentation.verifiable_credential) != 1:
            result.errors.append("Presentation needs a proof and exactly one credential")
            return result
        if not isinstance(presentation.verifiable_credential[0].get("credentialSubject"), Mapping):
            result.errors.append("Embedded credential has no credentialSubject object")
            return result
        checks["structure"] = True

        holder_proof = await self.proofs.check(
            document,
            expected_purpose=ProofPurpose.AUTHENTICATION,
            expected_controller=presentation.holder,
        )
        checks["holderProof"] = holder_proof.valid
        if not holder_proof.valid:
            result.errors.append(holder_proof.reason or "Holder proof invalid")
            return result

        embedded = presentation.verifiable_credential[0]
        subject = embedded["credentialSubject"]
        if subject.get("id") != presentation.holder or disclosed_attributes(presentation) != set(
            presentation.disclosed_attributes
        ):
            result.errors.append("Disclosed attributes do not match the embedded claims")
            return result
        checks["disclosure"] = True

        try:
            current = await self.credentials.get(presentation.holder)
        except NotFoundError:
            result.errors.append(f"No credential on record for {presentation.holder}")
            return result

        issuer_check = await self.credential_verifier.verify(current.to_document())
        source = current.to_document()
        mismatched = [
            name
            for name in CARRIED_CREDENTIAL_FIELDS
            if embedded.get(name) != source.get(name)
        ] + [
            name
            for name, value in subject.items()
            if current.credential_subject.get(name, object()) != value
        ]
        if not issuer_check.is_valid:
            result.errors.extend(issuer_check.errors)
        if mismatched:
            result.errors.append(f"Embedded credential differs from issued credential: {sorted(mismatched)}")
        checks["credential"] = issuer_check.is_valid and not mismatched

        result.valid = all(checks.values())
        return result
