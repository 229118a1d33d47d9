"""Registry service: the operations any binding (HTTP, CLI, tests) calls."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog

from did_registry.common.decorators import trace_span
from did_registry.common.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    StoreUnavailableError,
)
from did_registry.common.types import DID, AccessRequestStatus, Clock, utc_now
from did_registry.config import RegistrySettings
from did_registry.governance.audit import AccessAuditLog, AccessAuditRecord
from did_registry.governance.authorization import (
    DEFAULT_GRANT_TTL,
    AccessRequest,
    AuthorizationGrant,
    AuthorizationRegistry,
)
from did_registry.governance.gateway import AccessGateway
from did_registry.identity.credentials import (
    DEFAULT_VALIDITY,
    CredentialIssuer,
    CredentialRepository,
    CredentialVerifier,
    VerifiableCredential,
    VerificationResult,
)
from did_registry.identity.documents import DIDDocument, DIDDocumentRegistry, ServiceEndpoint
from did_registry.identity.identifiers import IdentifierGenerator, KeyPair
from did_registry.identity.presentation import (
    PresentationBuilder,
    PresentationCheck,
    PresentationVerifier,
)
from did_registry.identity.proofs import (
    Ed25519Signature2020,
    ProofSuite,
    ProofVerifier,
    get_proof_suite,
)
from did_registry.store.backend import (
    BoundedStore,
    DocumentStore,
    InMemoryDocumentStore,
)
from did_registry.store.couchdb import CouchDocumentStore

logger = structlog.get_logger()

PAIR_SPAN_ATTRIBUTES = {"subject_did": "registry.subject", "organization_id": "registry.organization"}


@dataclass(frozen=True)
class RegistryStores:
    """One store per record family."""

    dids: DocumentStore
    credentials: DocumentStore
    grants: DocumentStore
    audit: DocumentStore

    def all(self) -> list[DocumentStore]:
        return [self.dids, self.credentials, self.grants, self.audit]

    @classmethod
    def in_memory(cls) -> RegistryStores:
        return cls(
            dids=InMemoryDocumentStore("did_db"),
            credentials=InMemoryDocumentStore("credential_db"),
            grants=InMemoryDocumentStore("authorization_db"),
            audit=InMemoryDocumentStore("access_log_db"),
        )

    @classmethod
    def from_settings(cls, settings: RegistrySettings) -> RegistryStores:
        """Build the configured stores, each bounded by the store timeout."""

        def make(database: str) -> DocumentStore:
            inner: DocumentStore
            if settings.store_backend == "couchdb":
                inner = CouchDocumentStore(
                    base_url=settings.couchdb_url,
                    database=database,
                    auth=(settings.couchdb_username, settings.couchdb_password.get_secret_value()),
                    timeout_seconds=settings.store_timeout_seconds,
                    retry_attempts=settings.store_retry_attempts,
                )
            else:
                inner = InMemoryDocumentStore(database)
            return BoundedStore(inner, timeout_seconds=settings.store_timeout_seconds)

        return cls(
            dids=make(settings.did_database),
            credentials=make(settings.credential_database),
            grants=make(settings.authorization_database),
            audit=make(settings.audit_database),
        )


@dataclass(frozen=True)
class Registration:
    """
    Result of registering a subject.

    ``keys`` carries the private half only when the registry minted the
    identity in-process; ``to_document()`` never includes it.
    """

    did: DID
    document: DIDDocument
    credential: VerifiableCredential
    keys: KeyPair

    def to_document(self) -> dict[str, Any]:
        return {
            "did": self.did,
            "didDocument": self.document.to_document(),
            "credential": self.credential.to_document(),
        }


class RegistryService:
    """
    Central service for registry operations.

    Combines:
    - DID registration and resolution
    - Credential issuance and verification
    - Authorization grants and access requests
    - Audited attribute reads

    Example:
        ```python
        service = await RegistryService.from_settings(RegistrySettings())

        did, keys = IdentifierGenerator().mint()
        await service.register_subject({"name": "Ana", "age": 30}, keys.public_view())

        await service.authorize(did, "OrgX", ["name"], keys)
        attributes = await service.read_attributes(did, "OrgX")
        ```
    """

    def __init__(
        self,
        stores: RegistryStores,
        issuer_key: KeyPair,
        suite: ProofSuite | None = None,
        clock: Clock = utc_now,
        credential_validity: timedelta = DEFAULT_VALIDITY,
        grant_ttl: timedelta = DEFAULT_GRANT_TTL,
        did_method: str = "example",
    ) -> None:
        self.stores = stores
        self.issuer_key = issuer_key
        self.suite = suite or Ed25519Signature2020()
        self.clock = clock

        # Components
        self.generator = IdentifierGenerator(did_method)
        self.documents = DIDDocumentRegistry(stores.dids, clock)
        self.proofs = ProofVerifier(self.documents, suites={self.suite.type: self.suite})
        self.credentials = CredentialRepository(stores.credentials, clock)
        self.issuer = CredentialIssuer(self.suite, credential_validity, clock)
        self.credential_verifier = CredentialVerifier(self.proofs, clock)
        self.builder = PresentationBuilder(self.suite, clock)
        self.presentation_verifier = PresentationVerifier(
            self.proofs, self.credentials, self.credential_verifier
        )
        self.grants = AuthorizationRegistry(
            stores.grants, self.credentials, self.builder, self.proofs, clock, grant_ttl
        )
        self.audit = AccessAuditLog(stores.audit, clock)
        self.gateway = AccessGateway(self.grants, self.audit)

        self._logger = logger.bind(component="registry_service")

    @property
    def issuer_did(self) -> DID:
        return self.issuer_key.controller

    #region Lifecycle

    @classmethod
    async def from_settings(cls, settings: RegistrySettings, clock: Clock = utc_now) -> RegistryService:
        """
        Build a started service from settings.

        Raises:
            ConfigurationError: if a store is unreachable or the stored
                issuer document does not match the configured key
        """
        if settings.issuer_private_key is not None:
            issuer_key = KeyPair.import_private(
                DID(settings.issuer_did), settings.issuer_private_key.get_secret_value()
            )
        else:
            logger.warning("issuer_key_ephemeral", issuer=settings.issuer_did)
            issuer_key = KeyPair.generate(DID(settings.issuer_did))

        service = cls(
            RegistryStores.from_settings(settings),
            issuer_key,
            suite=get_proof_suite(settings.proof_suite),
            clock=clock,
            credential_validity=settings.credential_validity,
            grant_ttl=settings.grant_ttl,
            did_method=settings.did_method,
        )
        await service.start()
        return service

    async def start(self) -> None:
        """
        Check every store and publish the issuer's DID Document.

        Raises:
            ConfigurationError: on any startup failure
        """
        for store in self.stores.all():
            try:
                await store.ping()
            except StoreUnavailableError as e:
                self._logger.error("store_unreachable", store=store.name, error=e.message)
                raise ConfigurationError(f"Store {store.name} is unreachable", cause=e) from e

        try:
            published = await self.documents.resolve(self.issuer_did)
        except NotFoundError:
            await self.documents.register(DIDDocument.for_key(self.issuer_key.public_view(), clock=self.clock))
            self._logger.info("issuer_published", issuer=self.issuer_did)
            return

        method = published.find_verification_method(self.issuer_key.key_id)
        if method is None or method.get("publicKeyMultibase") != self.issuer_key.public_key:
            raise ConfigurationError(
                "Configured issuer key does not match the published issuer DID Document",
                details={"issuer": self.issuer_did},
            )

    async def aclose(self) -> None:
        for store in self.stores.all():
            inner = store.inner if isinstance(store, BoundedStore) else store
            if isinstance(inner, CouchDocumentStore):
                await inner.aclose()

    async def health(self) -> dict[str, Any]:
        """Store reachability; never raises for an unreachable store."""
        stores: dict[str, str] = {}
        for store in self.stores.all():
            try:
                await store.ping()
                stores[store.name] = "UP"
            except StoreUnavailableError as e:
                self._logger.warning("store_unhealthy", store=store.name, error=e.message)
                stores[store.name] = "DOWN"

        status = "UP" if all(v == "UP" for v in stores.values()) else "DOWN"
        return {"status": status, "service": "DID Registry", "issuer": self.issuer_did, "stores": stores}

    #endregion

    #region DIDs

    async def register_subject(
        self,
        claims: dict[str, Any],
        subject_key: KeyPair | None = None,
    ) -> Registration:
        """
        Register a subject: publish its DID Document and issue its credential.

        Retrying with the same key completes a registration whose credential
        was never saved.

        Args:
            claims: Claims to certify
            subject_key: Subject's public key; minted in-process when omitted

        Raises:
            InvalidClaimsError: if claims are empty or malformed
            ConflictError: if the DID is already registered
        """
        if subject_key is None:
            _, subject_key = self.generator.mint()

        # Fail on bad claims before anything is published.
        credential = self.issuer.issue(subject_key.controller, claims, self.issuer_did, self.issuer_key)

        try:
            document = await self.documents.register(
                DIDDocument.for_key(subject_key.public_view(), clock=self.clock)
            )
        except ConflictError as e:
            document = await self._resume_registration(subject_key, e)
        await self.credentials.save(credential)

        self._logger.info("subject_registered", did=subject_key.controller)
        return Registration(subject_key.controller, document, credential, subject_key)

    async def _resume_registration(self, subject_key: KeyPair, conflict: ConflictError) -> DIDDocument:
        # A published document for the same key without a credential is an
        # earlier registration that failed after publishing.
        document = await self.documents.resolve(subject_key.controller)
        method = document.find_verification_method(subject_key.key_id)
        if method is None or method.get("publicKeyMultibase") != subject_key.public_key:
            raise conflict
        try:
            await self.credentials.get(subject_key.controller)
        except NotFoundError:
            self._logger.info("registration_resumed", did=subject_key.controller)
            return document
        raise conflict

    async def resolve_did(self, did: str) -> DIDDocument:
        return await self.documents.resolve(did)

    async def list_dids(self) -> list[DIDDocument]:
        return await self.documents.list_documents()

    async def update_did_document(self, did: str, service: ServiceEndpoint) -> DIDDocument:
        """Add a service endpoint to a DID Document."""
        return await self.documents.add_service(did, service)

    #endregion

    #region Credentials

    async def issue_credential(self, did: str, claims: dict[str, Any]) -> VerifiableCredential:
        """
        Issue a fresh credential for a registered subject, superseding the current one.

        Existing grants keep their embedded presentations; re-authorize to
        disclose from the new credential.

        Raises:
            NotFoundError: if the DID is not registered
        """
        await self.documents.resolve(did)
        credential = self.issuer.issue(did, claims, self.issuer_did, self.issuer_key)
        await self.credentials.save(credential)
        return credential

    async def get_credential(self, did: str) -> VerifiableCredential:
        return await self.credentials.get(did)

    async def verify_credential(self, document: dict[str, Any]) -> VerificationResult:
        return await self.credential_verifier.verify(document)

    async def verify_presentation(self, document: dict[str, Any]) -> PresentationCheck:
        result = await self.presentation_verifier.verify(document)
        self._logger.info(
            "presentation_verified",
            presentation_id=result.presentation_id,
            valid=result.valid,
        )
        return result

    #endregion

    #region Authorization

    @trace_span("registry.authorize", record_args=PAIR_SPAN_ATTRIBUTES)
    async def authorize(
        self,
        subject_did: str,
        organization_id: str,
        attributes: list[str],
        holder_key: KeyPair,
    ) -> AuthorizationGrant:
        return await self.grants.authorize(subject_did, organization_id, attributes, holder_key)

    @trace_span("registry.revoke", record_args=PAIR_SPAN_ATTRIBUTES)
    async def revoke(self, subject_did: str, organization_id: str) -> None:
        await self.grants.revoke(subject_did, organization_id)

    async def get_grant(self, subject_did: str, organization_id: str) -> AuthorizationGrant:
        return await self.grants.get_grant(subject_did, organization_id)

    async def list_grants(
        self,
        subject_did: str | None = None,
        organization_id: str | None = None,
    ) -> list[AuthorizationGrant]:
        return await self.grants.list_grants(subject_did, organization_id)

    async def request_access(
        self,
        subject_did: str,
        organization_id: str,
        attributes: list[str],
    ) -> AccessRequest:
        """
        Record an organization's access request for a registered subject.

        Raises:
            NotFoundError: if the DID is not registered
        """
        await self.documents.resolve(subject_did)
        return await self.grants.request_access(subject_did, organization_id, attributes)

    async def list_requests(
        self,
        subject_did: str | None = None,
        organization_id: str | None = None,
        status: AccessRequestStatus | None = None,
    ) -> list[AccessRequest]:
        return await self.grants.list_requests(subject_did, organization_id, status)

    #endregion

    #region Access

    @trace_span(
        "registry.read_attributes",
        record_args={**PAIR_SPAN_ATTRIBUTES, "request_id": "registry.request_id"},
    )
    async def read_attributes(
        self,
        subject_did: str,
        organization_id: str,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        if request_id is not None and not request_id.strip():
            raise InvalidInputError("Request id must not be blank")
        return await self.gateway.read_attributes(subject_did, organization_id, request_id)

    async def list_access_log(
        self,
        subject_did: str | None = None,
        organization_id: str | None = None,
        limit: int = 100,
    ) -> list[AccessAuditRecord]:
        return await self.audit.query(subject_did, organization_id, limit=limit)

    #endregion
