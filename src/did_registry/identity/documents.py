"""DID Documents and their store-backed registry."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from did_registry.common.exceptions import ConflictError, InvalidInputError, NotFoundError
from did_registry.common.types import (
    DID,
    DID_CONTEXT,
    ED25519_2020_CONTEXT,
    Clock,
    ProofPurpose,
    Timestamp,
    truncate_to_millis,
    utc_now,
)
from did_registry.identity.identifiers import KeyPair, parse_did
from did_registry.store.backend import DocumentStore

logger = structlog.get_logger()


class ServiceEndpoint(BaseModel):
    """Service endpoint in a DID Document."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: str
    service_endpoint: str = Field(alias="serviceEndpoint")


class DIDDocument(BaseModel):
    """
    W3C DID Document.

    Holds public verification material only. Documents are never deleted;
    updates replace the stored copy and bump ``updated``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    context: list[str] = Field(
        default_factory=lambda: [DID_CONTEXT, ED25519_2020_CONTEXT],
        alias="@context",
    )
    id: DID
    controller: DID
    verification_method: list[dict[str, Any]] = Field(default_factory=list, alias="verificationMethod")
    authentication: list[str] = Field(default_factory=list)
    assertion_method: list[str] = Field(default_factory=list, alias="assertionMethod")
    service: list[ServiceEndpoint] = Field(default_factory=list)
    created: Timestamp
    updated: Timestamp

    @classmethod
    def for_key(
        cls,
        keys: KeyPair,
        services: list[ServiceEndpoint] | None = None,
        clock: Clock = utc_now,
    ) -> DIDDocument:
        """Build a document whose single key serves authentication and assertion."""
        now = truncate_to_millis(clock())
        return cls(
            id=keys.controller,
            controller=keys.controller,
            verification_method=[keys.to_verification_method()],
            authentication=[keys.key_id],
            assertion_method=[keys.key_id],
            service=services or [],
            created=now,
            updated=now,
        )

    def find_verification_method(self, method_id: str) -> dict[str, Any] | None:
        for method in self.verification_method:
            if method.get("id") == method_id:
                return method
        return None

    def relationship(self, purpose: ProofPurpose) -> list[str]:
        if purpose == ProofPurpose.AUTHENTICATION:
            return self.authentication
        return self.assertion_method

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DIDDocumentRegistry:
    """Registers, resolves and updates DID Documents."""

    def __init__(self, store: DocumentStore, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock
        self._logger = logger.bind(component="did_documents")

    async def register(self, document: DIDDocument) -> DIDDocument:
        """
        Store a new DID Document.

        Raises:
            InvalidInputError: if the document carries no verification method
            ConflictError: if the DID is already registered
        """
        parse_did(document.id)
        if not document.verification_method:
            raise InvalidInputError("DID Document needs at least one verification method")
        for method in document.verification_method:
            has_private = any(name.lower().startswith("private") for name in method)
            if "publicKeyMultibase" not in method or has_private:
                raise InvalidInputError(
                    "Verification methods must carry public key material only",
                    details={"id": method.get("id")},
                )

        try:
            await self.store.put(
                document.id,
                {"did": document.id, "didDocument": document.to_document()},
            )
        except ConflictError as e:
            raise ConflictError(
                f"DID {document.id} is already registered",
                details={"did": document.id},
                cause=e,
            ) from e

        self._logger.info("did_registered", did=document.id)
        return document

    async def resolve(self, did: str) -> DIDDocument:
        """
        Resolve a DID to its current document.

        Raises:
            InvalidInputError: if the DID is malformed
            NotFoundError: if the DID is unknown
        """
        parse_did(did)
        try:
            stored = await self.store.get(did)
        except NotFoundError as e:
            raise NotFoundError(f"DID {did} not found", key=did, cause=e) from e
        return DIDDocument.model_validate(stored.body["didDocument"])

    async def list_documents(self) -> list[DIDDocument]:
        return [
            DIDDocument.model_validate(doc.body["didDocument"])
            for doc in await self.store.list_all("did:")
        ]

    async def add_service(self, did: str, service: ServiceEndpoint) -> DIDDocument:
        """
        Append a service endpoint to a DID Document and bump ``updated``.

        Raises:
            NotFoundError: if the DID is unknown
            InvalidInputError: if the service id is not under the DID
            ConflictError: on a concurrent update or duplicate service id
        """
        if not service.id.startswith(f"{did}#"):
            raise InvalidInputError(
                "Service id must be a fragment of the DID",
                details={"did": did, "serviceId": service.id},
            )

        try:
            stored = await self.store.get(did)
        except NotFoundError as e:
            raise NotFoundError(f"DID {did} not found", key=did, cause=e) from e

        document = DIDDocument.model_validate(stored.body["didDocument"])
        if any(existing.id == service.id for existing in document.service):
            raise ConflictError(
                f"Service {service.id} already exists",
                details={"did": did, "serviceId": service.id},
            )

        updated = document.model_copy(
            update={"service": [*document.service, service], "updated": truncate_to_millis(self.clock())}
        )
        await self.store.put(
            did,
            {"did": did, "didDocument": updated.to_document()},
            revision=stored.revision,
        )

        self._logger.info("did_updated", did=did, service_id=service.id)
        return updated
