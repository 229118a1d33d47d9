"""Authorization grants: consent records for selective disclosure."""

from __future__ import annotations

import re
import secrets
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from did_registry.common.exceptions import (
    AuthorizationExpiredError,
    ConflictError,
    GrantNotFoundError,
    InvalidInputError,
    NotAuthorizedError,
    NotFoundError,
    StoreUnavailableError,
    UnknownAttributeError,
)
from did_registry.common.types import (
    DID,
    AccessRequestStatus,
    Clock,
    GrantState,
    OrganizationID,
    ProofPurpose,
    RequestID,
    Revision,
    Timestamp,
    truncate_to_millis,
    utc_now,
)
from did_registry.identity.credentials import CredentialRepository
from did_registry.identity.identifiers import KeyPair, parse_did
from did_registry.identity.presentation import PresentationBuilder, VerifiablePresentation
from did_registry.identity.proofs import ProofVerifier
from did_registry.store.backend import DocumentStore

logger = structlog.get_logger()

DEFAULT_GRANT_TTL = timedelta(hours=24)
ORGANIZATION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
REQUEST_PREFIX = "request:"


def validate_organization(organization_id: str) -> OrganizationID:
    if not isinstance(organization_id, str) or not ORGANIZATION_PATTERN.match(organization_id):
        raise InvalidInputError(
            "Invalid organization id",
            details={"organizationId": organization_id},
        )
    return OrganizationID(organization_id)


def validate_attributes(attributes: Any) -> list[str]:
    """
    Normalize a requested attribute list: sorted, duplicates collapsed.

    Raises:
        InvalidInputError: if not a non-empty list of non-empty strings
    """
    if isinstance(attributes, str) or not isinstance(attributes, Iterable):
        raise InvalidInputError("Attributes must be a list of attribute names")
    names = list(attributes)
    if not names:
        raise InvalidInputError("At least one attribute is required")
    for name in names:
        if not isinstance(name, str) or not name.strip():
            raise InvalidInputError("Attribute names must be non-empty strings", details={"attribute": repr(name)})
    return sorted(set(names))


class AuthorizationGrant(BaseModel):
    """
    Time-boxed consent for one organization to read some of a subject's claims.

    At most one grant exists per (subject, organization). Expiry is derived
    at read time; nothing sweeps expired grants.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    subject: DID
    organization: OrganizationID
    attributes: list[str]
    issued_at: Timestamp = Field(alias="issuedAt")
    expires_at: Timestamp = Field(alias="expiresAt")
    presentation: VerifiablePresentation

    @property
    def key(self) -> str:
        return AuthorizationRegistry.key_for(self.subject, self.organization)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_document(self) -> dict[str, Any]:
        document = self.model_dump(mode="json", by_alias=True, exclude={"presentation"})
        document["presentation"] = self.presentation.to_document()
        return document


class AccessRequest(BaseModel):
    """An organization's request to see some of a subject's attributes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: RequestID
    subject: DID
    organization: OrganizationID
    attributes: list[str]
    status: AccessRequestStatus = AccessRequestStatus.PENDING
    requested_at: Timestamp = Field(alias="requestedAt")
    approved_at: Timestamp | None = Field(default=None, alias="approvedAt")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AuthorizationRegistry:
    """
    Grant lifecycle per (subject, organization): absent -> active -> absent.

    Every call re-reads the store; a concurrent write on the same key
    surfaces as ConflictError.

    Example:
        ```python
        grants = AuthorizationRegistry(store, credentials, builder, proofs)

        grant = await grants.authorize("did:example:abc123", "OrgX", ["name"], holder_key)
        await grants.check_access("did:example:abc123", "OrgX")
        await grants.revoke("did:example:abc123", "OrgX")
        ```
    """

    def __init__(
        self,
        store: DocumentStore,
        credentials: CredentialRepository,
        builder: PresentationBuilder,
        proofs: ProofVerifier,
        clock: Clock = utc_now,
        ttl: timedelta = DEFAULT_GRANT_TTL,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.builder = builder
        self.proofs = proofs
        self.clock = clock
        self.ttl = ttl
        self._logger = logger.bind(component="authorization_registry")

    @staticmethod
    def key_for(subject_did: str, organization_id: str) -> str:
        return f"{subject_did}::{organization_id}"

    #region Grants

    async def authorize(
        self,
        subject_did: str,
        organization_id: str,
        attributes: Iterable[str],
        holder_key: KeyPair,
    ) -> AuthorizationGrant:
        """
        Grant an organization access to some of the subject's claims.

        Replaces any existing grant for the pair, resetting its expiry.

        Args:
            subject_did: Subject whose claims are disclosed
            organization_id: Relying organization
            attributes: Claim names to disclose
            holder_key: Subject key pair, used only to sign the presentation

        Raises:
            InvalidInputError: on malformed DID, organization or attributes
            NotFoundError: if the subject has no credential
            UnknownAttributeError: if an attribute is not a claim of the credential
            ProofInvalidError: if the holder key is not the subject's registered key
            ConflictError: on a concurrent write to the same grant
        """
        parse_did(subject_did)
        organization = validate_organization(organization_id)
        approved = validate_attributes(attributes)

        credential = await self.credentials.get(subject_did)
        valid = credential.claim_names()
        for name in approved:
            if name not in valid:
                raise UnknownAttributeError(name, valid)

        presentation = self.builder.build(subject_did, credential, approved, holder_key)
        await self.proofs.require_valid(
            presentation.to_document(),
            expected_purpose=ProofPurpose.AUTHENTICATION,
            expected_controller=subject_did,
        )

        now = truncate_to_millis(self.clock())
        grant = AuthorizationGrant(
            subject=DID(subject_did),
            organization=organization,
            attributes=approved,
            issued_at=now,
            expires_at=now + self.ttl,
            presentation=presentation,
        )

        revision = await self._current_revision(grant.key)
        await self.store.put(grant.key, grant.to_document(), revision=revision)
        await self._approve_requests(subject_did, organization, approved, now)

        self._logger.info(
            "grant_issued",
            subject=subject_did,
            organization=organization,
            attributes=approved,
            expires_at=grant.expires_at.isoformat(),
            replaced=revision is not None,
        )
        return grant

    async def revoke(self, subject_did: str, organization_id: str) -> None:
        """
        Delete the grant for the pair.

        Raises:
            GrantNotFoundError: if no grant exists
        """
        key = self.key_for(subject_did, organization_id)
        try:
            stored = await self.store.get(key)
            await self.store.remove(key, stored.revision)
        except NotFoundError as e:
            raise GrantNotFoundError(
                f"No authorization found for {subject_did} and {organization_id}",
                key=key,
                cause=e,
            ) from e

        self._logger.info("grant_revoked", subject=subject_did, organization=organization_id)

    async def check_access(self, subject_did: str, organization_id: str) -> AuthorizationGrant:
        """
        Return the live grant for the pair.

        Raises:
            NotAuthorizedError: if no grant exists
            AuthorizationExpiredError: if the grant's expiry has passed
        """
        grant = await self._load(subject_did, organization_id)
        if grant is None:
            raise NotAuthorizedError(
                f"Organization {organization_id} is not authorized to access {subject_did}",
                details={"subject": subject_did, "organization": organization_id},
            )
        if grant.is_expired(self.clock()):
            raise AuthorizationExpiredError(
                f"Authorization for {organization_id} to access {subject_did} has expired",
                details={
                    "subject": subject_did,
                    "organization": organization_id,
                    "expiresAt": grant.to_document()["expiresAt"],
                },
            )
        return grant

    async def get_grant(self, subject_did: str, organization_id: str) -> AuthorizationGrant:
        """Stored grant regardless of expiry; GrantNotFoundError if absent."""
        grant = await self._load(subject_did, organization_id)
        if grant is None:
            raise GrantNotFoundError(
                f"No authorization found for {subject_did} and {organization_id}",
                key=self.key_for(subject_did, organization_id),
            )
        return grant

    async def state(self, subject_did: str, organization_id: str) -> GrantState:
        grant = await self._load(subject_did, organization_id)
        if grant is None:
            return GrantState.ABSENT
        return GrantState.EXPIRED if grant.is_expired(self.clock()) else GrantState.ACTIVE

    async def list_grants(
        self,
        subject_did: str | None = None,
        organization_id: str | None = None,
    ) -> list[AuthorizationGrant]:
        grants = []
        for doc in await self.store.list_all("did:"):
            grant = AuthorizationGrant.model_validate(doc.body)
            if subject_did and grant.subject != subject_did:
                continue
            if organization_id and grant.organization != organization_id:
                continue
            grants.append(grant)
        return grants

    async def _load(self, subject_did: str, organization_id: str) -> AuthorizationGrant | None:
        try:
            stored = await self.store.get(self.key_for(subject_did, organization_id))
        except NotFoundError:
            return None
        return AuthorizationGrant.model_validate(stored.body)

    async def _current_revision(self, key: str) -> Revision | None:
        try:
            return (await self.store.get(key)).revision
        except NotFoundError:
            return None

    #endregion

    #region Access requests

    async def request_access(
        self,
        subject_did: str,
        organization_id: str,
        attributes: Iterable[str],
    ) -> AccessRequest:
        """
        Record an organization's pending request for a subject's attributes.

        The request grants nothing; the subject still has to authorize.
        """
        parse_did(subject_did)
        organization = validate_organization(organization_id)
        request = AccessRequest(
            id=RequestID(f"req-{secrets.token_hex(8)}"),
            subject=DID(subject_did),
            organization=organization,
            attributes=validate_attributes(attributes),
            requested_at=truncate_to_millis(self.clock()),
        )
        await self.store.put(f"{REQUEST_PREFIX}{request.id}", request.to_document())

        self._logger.info(
            "access_requested",
            request_id=request.id,
            subject=subject_did,
            organization=organization,
            attributes=request.attributes,
        )
        return request

    async def list_requests(
        self,
        subject_did: str | None = None,
        organization_id: str | None = None,
        status: AccessRequestStatus | None = None,
    ) -> list[AccessRequest]:
        requests = []
        for doc in await self.store.list_all(REQUEST_PREFIX):
            request = AccessRequest.model_validate(doc.body)
            if subject_did and request.subject != subject_did:
                continue
            if organization_id and request.organization != organization_id:
                continue
            if status and request.status != status:
                continue
            requests.append(request)
        return sorted(requests, key=lambda r: r.requested_at)

    async def _approve_requests(
        self,
        subject_did: str,
        organization_id: str,
        granted: list[str],
        now: datetime,
    ) -> None:
        # The grant is already committed; a failed approval leaves the request pending.
        try:
            docs = await self.store.list_all(REQUEST_PREFIX)
        except StoreUnavailableError as e:
            self._logger.warning("access_request_approval_skipped", subject=subject_did, error=e.message)
            return

        for doc in docs:
            request = AccessRequest.model_validate(doc.body)
            if (
                request.subject != subject_did
                or request.organization != organization_id
                or request.status != AccessRequestStatus.PENDING
                or not set(request.attributes) <= set(granted)
            ):
                continue
            approved = request.model_copy(
                update={"status": AccessRequestStatus.APPROVED, "approved_at": now}
            )
            try:
                await self.store.put(doc.key, approved.to_document(), revision=doc.revision)
            except (ConflictError, StoreUnavailableError) as e:
                self._logger.warning("access_request_approval_failed", request_id=request.id, error=e.message)
                continue
            self._logger.debug("access_request_approved", request_id=request.id)

    #endregion
