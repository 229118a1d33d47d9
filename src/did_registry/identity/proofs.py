"""Detachable proofs over canonicalized JSON documents."""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from did_registry.common.exceptions import (
    InvalidInputError,
    NotFoundError,
    ProofInvalidError,
)
from did_registry.common.types import ProofPurpose, Timestamp, format_timestamp, utc_now
from did_registry.identity.identifiers import (
    KeyPair,
    b64url_decode,
    b64url_encode,
    did_from_verification_method,
)

if TYPE_CHECKING:
    from did_registry.identity.documents import DIDDocument

logger = structlog.get_logger()


class Proof(BaseModel):
    """Proof attached to a credential or presentation."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: str
    created: Timestamp
    verification_method: str = Field(alias="verificationMethod")
    proof_purpose: ProofPurpose = Field(alias="proofPurpose")
    proof_value: str = Field(alias="proofValue")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def canonicalize(document: Mapping[str, Any]) -> bytes:
    """
    Deterministic serialization: sorted keys, compact separators, UTF-8.

    Two documents that differ only in key order canonicalize identically.
    """
    return json.dumps(
        document,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def unsigned_body(document: Mapping[str, Any]) -> dict[str, Any]:
    """The document minus its ``proof`` member."""
    return {k: v for k, v in document.items() if k != "proof"}


def signing_input(document: Mapping[str, Any], options: Mapping[str, Any]) -> bytes:
    """Digest of the proof options followed by the digest of the document body."""
    options_digest = hashlib.sha256(canonicalize(options)).digest()
    body_digest = hashlib.sha256(canonicalize(unsigned_body(document))).digest()
    return options_digest + body_digest


class ProofSuite(ABC):
    """
    A proof algorithm.

    Suites are stateless; the same instance may sign and verify for any
    number of keys.
    """

    type: str = ""
    key_type: str = ""

    def sign(
        self,
        document: Mapping[str, Any],
        keys: KeyPair,
        purpose: ProofPurpose,
        created: datetime | None = None,
    ) -> Proof:
        """
        Produce a proof over ``document`` (its ``proof`` member is ignored).

        Raises:
            InvalidInputError: if ``keys`` has no private half
        """
        if not keys.has_private_key:
            raise InvalidInputError(
                "Signing requires the private key",
                details={"verificationMethod": keys.key_id},
            )
        options = {
            "type": self.type,
            "created": format_timestamp(created or utc_now()),
            "verificationMethod": keys.key_id,
            "proofPurpose": str(purpose),
        }
        value = self._sign_bytes(signing_input(document, options), keys)
        return Proof.model_validate({**options, "proofValue": value})

    def verify(self, document: Mapping[str, Any], proof: Proof, public_key: str) -> bool:
        """True only if the proof's algorithm is this suite's and the value checks out."""
        if proof.type != self.type:
            return False
        options = proof.to_document()
        options.pop("proofValue", None)
        try:
            return self._verify_bytes(signing_input(document, options), proof.proof_value, public_key)
        except ValueError:
            return False

    @abstractmethod
    def _sign_bytes(self, data: bytes, keys: KeyPair) -> str:
        pass

    @abstractmethod
    def _verify_bytes(self, data: bytes, proof_value: str, public_key: str) -> bool:
        pass


class Ed25519Signature2020(ProofSuite):
    """Ed25519 signatures; proof values are multibase base64url."""

    type = "Ed25519Signature2020"
    key_type = "Ed25519VerificationKey2020"

    def _sign_bytes(self, data: bytes, keys: KeyPair) -> str:
        assert keys.private_key is not None
        return "u" + b64url_encode(keys.private_key.sign(data))

    def _verify_bytes(self, data: bytes, proof_value: str, public_key: str) -> bool:
        if not proof_value.startswith("u") or not public_key.startswith("u"):
            return False
        key = ed25519.Ed25519PublicKey.from_public_bytes(b64url_decode(public_key[1:]))
        try:
            key.verify(b64url_decode(proof_value[1:]), data)
        except InvalidSignature:
            return False
        return True


class Sha256DigestProof2024(ProofSuite):
    """
    Hash-only proof with no signature.

    Detects tampering but proves nothing about who produced the document.
    For tests only; never use where authenticity matters.
    """

    type = "Sha256DigestProof2024"
    key_type = "Ed25519VerificationKey2020"

    def _sign_bytes(self, data: bytes, keys: KeyPair) -> str:
        return "u" + b64url_encode(hashlib.sha256(data).digest())

    def _verify_bytes(self, data: bytes, proof_value: str, public_key: str) -> bool:
        return proof_value == "u" + b64url_encode(hashlib.sha256(data).digest())


PROOF_SUITES: dict[str, type[ProofSuite]] = {
    Ed25519Signature2020.type: Ed25519Signature2020,
    Sha256DigestProof2024.type: Sha256DigestProof2024,
}


def get_proof_suite(name: str) -> ProofSuite:
    """Instantiate a proof suite by its type name."""
    try:
        return PROOF_SUITES[name]()
    except KeyError as e:
        raise InvalidInputError(
            f"Unsupported proof suite: {name}",
            details={"supported": sorted(PROOF_SUITES)},
        ) from e


class DocumentResolver(Protocol):
    async def resolve(self, did: str) -> DIDDocument: ...


@dataclass(frozen=True)
class ProofCheck:
    """Outcome of verifying one proof."""

    valid: bool
    reason: str | None = None
    verification_method: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "verificationMethod": self.verification_method,
        }


class ProofVerifier:
    """
    Verifies embedded proofs against keys published in DID Documents.

    The verification method must belong to the expected controller, be
    listed in the controller's DID Document, and be referenced from the
    relationship named by the proof purpose.
    """

    def __init__(
        self,
        resolver: DocumentResolver,
        suites: Mapping[str, ProofSuite] | None = None,
    ) -> None:
        self.resolver = resolver
        self.suites = dict(suites) if suites else {name: cls() for name, cls in PROOF_SUITES.items()}
        self._logger = logger.bind(component="proof_verifier")

    async def check(
        self,
        document: Mapping[str, Any],
        expected_purpose: ProofPurpose | None = None,
        expected_controller: str | None = None,
    ) -> ProofCheck:
        raw = document.get("proof")
        if not isinstance(raw, Mapping):
            return ProofCheck(False, "Missing proof")

        try:
            proof = Proof.model_validate(raw)
        except ValidationError as e:
            return ProofCheck(False, f"Malformed proof: {e.error_count()} invalid field(s)")

        method_id = proof.verification_method
        if expected_purpose is not None and proof.proof_purpose != expected_purpose:
            return ProofCheck(False, f"Unexpected proof purpose {proof.proof_purpose}", method_id)

        controller = did_from_verification_method(method_id)
        if expected_controller is not None and controller != expected_controller:
            return ProofCheck(False, f"Proof was not made by {expected_controller}", method_id)

        suite = self.suites.get(proof.type)
        if suite is None:
            return ProofCheck(False, f"Unsupported proof type {proof.type}", method_id)

        try:
            did_document = await self.resolver.resolve(controller)
        except (NotFoundError, InvalidInputError):
            return ProofCheck(False, f"Unresolvable verification method {method_id}", method_id)

        method = did_document.find_verification_method(method_id)
        if method is None:
            return ProofCheck(False, f"Unresolvable verification method {method_id}", method_id)
        if method_id not in did_document.relationship(proof.proof_purpose):
            return ProofCheck(
                False,
                f"{method_id} is not authorized for {proof.proof_purpose}",
                method_id,
            )
        if method.get("type") != suite.key_type:
            return ProofCheck(False, f"Key type {method.get('type')} does not match {proof.type}", method_id)

        if not suite.verify(document, proof, method.get("publicKeyMultibase", "")):
            self._logger.warning("proof_mismatch", verification_method=method_id)
            return ProofCheck(False, "Signature does not match document", method_id)

        return ProofCheck(True, None, method_id)

    async def require_valid(
        self,
        document: Mapping[str, Any],
        expected_purpose: ProofPurpose | None = None,
        expected_controller: str | None = None,
    ) -> ProofCheck:
        """Like ``check`` but raises ProofInvalidError on failure."""
        result = await self.check(document, expected_purpose, expected_controller)
        if not result.valid:
            raise ProofInvalidError(
                result.reason or "Proof verification failed",
                details=result.to_dict(),
            )
        return result
