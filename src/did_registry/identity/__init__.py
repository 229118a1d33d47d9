"""Identifiers, DID Documents, credentials, proofs and presentations."""

from did_registry.identity.identifiers import IdentifierGenerator, KeyPair, parse_did
from did_registry.identity.proofs import (
    Ed25519Signature2020,
    Proof,
    ProofSuite,
    ProofVerifier,
    Sha256DigestProof2024,
    canonicalize,
    get_proof_suite,
)
from did_registry.identity.documents import DIDDocument, DIDDocumentRegistry, ServiceEndpoint
from did_registry.identity.credentials import (
    CredentialIssuer,
    CredentialRepository,
    CredentialVerifier,
    VerifiableCredential,
    VerificationResult,
)
from did_registry.identity.presentation import (
    PresentationBuilder,
    PresentationCheck,
    PresentationVerifier,
    VerifiablePresentation,
    disclosed_attributes,
)

__all__ = [
    "IdentifierGenerator",
    "KeyPair",
    "parse_did",
    "Ed25519Signature2020",
    "Proof",
    "ProofSuite",
    "ProofVerifier",
    "Sha256DigestProof2024",
    "canonicalize",
    "get_proof_suite",
    "DIDDocument",
    "DIDDocumentRegistry",
    "ServiceEndpoint",
    "CredentialIssuer",
    "CredentialRepository",
    "CredentialVerifier",
    "VerifiableCredential",
    "VerificationResult",
    "PresentationBuilder",
    "PresentationCheck",
    "PresentationVerifier",
    "VerifiablePresentation",
    "disclosed_attributes",
]
